"""
Notes API Router

REST endpoints for note CRUD, semantic retrieval and index maintenance.
Every route is scoped to the owner passed by the upstream auth layer and
answers with the ``{success, data, error, timestamp}`` envelope.

Embedding generation never runs inline: create and update schedule a
debounced background job on the Index Maintainer, so a fresh note shows
up in semantic results only once its vector has been written.
"""

import logging
import uuid

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from clipnotes.api.deps import get_maintainer, get_owner_id, get_retrieval_engine
from clipnotes.core.database import get_db
from clipnotes.repositories.notes import note_repository as repo
from clipnotes.schemas.common import APIResponse, ok
from clipnotes.schemas.notes import (
    AnswerResponse,
    AskRequest,
    BackfillResponse,
    DeleteManyRequest,
    DeleteResponse,
    IndexStatus,
    NoteCreate,
    NoteRead,
    NoteUpdate,
    ScoredNote,
    SearchRequest,
    SummaryRequest,
    SummaryResponse,
)
from clipnotes.services.embeddings import IndexMaintainer
from clipnotes.services.retrieval import RetrievalEngine, ScoredHit

logger = logging.getLogger(__name__)

router = APIRouter()


def _scored(hits: list[ScoredHit]) -> list[ScoredNote]:
    return [
        ScoredNote(note=NoteRead.model_validate(hit.note), score=hit.score)
        for hit in hits
    ]


# ---------------------------------------------------------------------------
# CRUD
# ---------------------------------------------------------------------------


@router.post(
    "",
    response_model=APIResponse[NoteRead],
    status_code=status.HTTP_201_CREATED,
)
async def create_note(
    payload: NoteCreate,
    owner_id: str = Depends(get_owner_id),
    db: AsyncSession = Depends(get_db),
    maintainer: IndexMaintainer = Depends(get_maintainer),
):
    """
    Create a new note.

    The note is immediately visible to listings; it joins semantic search
    after the background embedding job has stored its vector.
    """
    note = await repo.create_note(
        db,
        owner_id,
        video_ref=payload.video_ref,
        offset_seconds=payload.offset_seconds,
        title=payload.title,
        body=payload.body,
        tag_names=payload.tags,
    )
    maintainer.schedule_note(note.id)
    return ok(NoteRead.model_validate(note))


@router.get("", response_model=APIResponse[list[NoteRead]])
async def list_notes(
    owner_id: str = Depends(get_owner_id),
    db: AsyncSession = Depends(get_db),
):
    """List the owner's live notes, most recent first."""
    notes = await repo.list_by_owner(db, owner_id)
    return ok([NoteRead.model_validate(n) for n in notes])


@router.get("/video/{video_ref}", response_model=APIResponse[list[NoteRead]])
async def list_video_notes(
    video_ref: str,
    owner_id: str = Depends(get_owner_id),
    db: AsyncSession = Depends(get_db),
):
    """List the owner's live notes for one video, in timeline order."""
    notes = await repo.list_by_owner_and_video(db, owner_id, video_ref)
    return ok([NoteRead.model_validate(n) for n in notes])


@router.post("/delete", response_model=APIResponse[DeleteResponse])
async def delete_notes(
    payload: DeleteManyRequest,
    owner_id: str = Depends(get_owner_id),
    db: AsyncSession = Depends(get_db),
):
    """Soft-delete several notes; unknown or already-deleted ids are ignored."""
    deleted = await repo.soft_delete(db, owner_id, payload.ids)
    return ok(DeleteResponse(deleted=deleted))


# ---------------------------------------------------------------------------
# Retrieval
# ---------------------------------------------------------------------------


@router.post("/search", response_model=APIResponse[list[ScoredNote]])
async def search_notes(
    payload: SearchRequest,
    owner_id: str = Depends(get_owner_id),
    db: AsyncSession = Depends(get_db),
    engine: RetrievalEngine = Depends(get_retrieval_engine),
):
    """
    Semantic search using cosine similarity.

    Returns:
        Up to ``k`` notes ranked by similarity (ties: newest first).

    Raises:
        502: If the query could not be embedded.
    """
    hits = await engine.search(db, owner_id, payload.query, payload.video_ref, payload.k)
    return ok(_scored(hits))


@router.post("/summarize", response_model=APIResponse[SummaryResponse])
async def summarize_video(
    payload: SummaryRequest,
    owner_id: str = Depends(get_owner_id),
    db: AsyncSession = Depends(get_db),
    engine: RetrievalEngine = Depends(get_retrieval_engine),
):
    summary = await engine.summarize(db, owner_id, payload.video_ref, payload.style)
    return ok(SummaryResponse(**summary._asdict()))


@router.post("/ask", response_model=APIResponse[AnswerResponse])
async def ask_notes(
    payload: AskRequest,
    owner_id: str = Depends(get_owner_id),
    db: AsyncSession = Depends(get_db),
    engine: RetrievalEngine = Depends(get_retrieval_engine),
):
    """Answer a question from the most relevant notes."""
    result = await engine.answer(
        db, owner_id, payload.question, payload.video_ref, payload.context_k
    )
    return ok(
        AnswerResponse(
            answer=result.answer,
            question=result.question,
            relevant_notes=_scored(result.relevant_notes),
            context_count=result.context_count,
            generated_at=result.generated_at,
        )
    )


# ---------------------------------------------------------------------------
# Index maintenance
# ---------------------------------------------------------------------------


@router.post(
    "/embeddings/backfill",
    response_model=APIResponse[BackfillResponse],
    status_code=status.HTTP_202_ACCEPTED,
)
async def backfill_embeddings(
    owner_id: str = Depends(get_owner_id),
    maintainer: IndexMaintainer = Depends(get_maintainer),
):
    """Start embedding the owner's notes that lack a vector (returns 202)."""
    maintainer.schedule_backfill(owner_id)
    logger.info("Backfill scheduled for owner %s", owner_id)
    return ok(BackfillResponse(message="Embedding backfill started", owner_id=owner_id))


@router.get("/embeddings/status", response_model=APIResponse[IndexStatus])
async def embedding_status(
    owner_id: str = Depends(get_owner_id),
    db: AsyncSession = Depends(get_db),
    maintainer: IndexMaintainer = Depends(get_maintainer),
):
    return ok(await maintainer.status(db, owner_id))


# ---------------------------------------------------------------------------
# Single note (declared last so the static paths above win)
# ---------------------------------------------------------------------------


@router.get("/{note_id}", response_model=APIResponse[NoteRead])
async def read_note(
    note_id: uuid.UUID,
    owner_id: str = Depends(get_owner_id),
    db: AsyncSession = Depends(get_db),
):
    """Retrieve a single note by ID."""
    note = await repo.get_note(db, owner_id, note_id)
    return ok(NoteRead.model_validate(note))


@router.patch("/{note_id}", response_model=APIResponse[NoteRead])
async def update_note(
    note_id: uuid.UUID,
    payload: NoteUpdate,
    owner_id: str = Depends(get_owner_id),
    db: AsyncSession = Depends(get_db),
    maintainer: IndexMaintainer = Depends(get_maintainer),
):
    """Update title, body or tags. The embedding is cleared and regenerated."""
    note = await repo.update_note(
        db,
        owner_id,
        note_id,
        title=payload.title,
        body=payload.body,
        tag_names=payload.tags,
    )
    maintainer.schedule_note(note.id)
    return ok(NoteRead.model_validate(note))


@router.delete("/{note_id}", response_model=APIResponse[DeleteResponse])
async def delete_note(
    note_id: uuid.UUID,
    owner_id: str = Depends(get_owner_id),
    db: AsyncSession = Depends(get_db),
):
    deleted = await repo.soft_delete(db, owner_id, [note_id])
    return ok(DeleteResponse(deleted=deleted))
