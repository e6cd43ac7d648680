"""
Retrieval Engine

Semantic queries over stored note embeddings: search, summarize and answer.

The engine is stateless. Candidate vectors are read from the Note Store and
ranked in-process with numpy; the provider is only called to embed the
query and to run completions.

Usage::

    engine = RetrievalEngine(EmbeddingClient())
    async with session_factory() as session:
        hits = await engine.search(session, owner_id, "eviction policy", k=5)
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from datetime import UTC, datetime
from typing import NamedTuple

import numpy as np
from sqlalchemy.ext.asyncio import AsyncSession

from clipnotes.core.errors import (
    ClipnotesError,
    InvalidInputError,
    NotFoundError,
    UpstreamError,
)
from clipnotes.models import Note
from clipnotes.repositories.notes import NoteRepository, note_repository
from clipnotes.services.ai import EmbeddingClient

logger = logging.getLogger(__name__)

DEFAULT_K = 10
MAX_K = 50
DEFAULT_CONTEXT_K = 5

SUMMARY_INSTRUCTIONS = {
    "brief": "Provide a brief, concise summary of the main themes and topics.",
    "detailed": (
        "Provide a detailed summary organized by themes and topics; "
        "include specific timestamps where relevant."
    ),
    "key_points": "Extract the key points and main takeaways in a bullet list.",
}

ANSWER_PROMPT = (
    "Based on the following video notes (in markdown) answer this question: "
    "'{question}'. {context}. If the notes do not contain enough information, "
    "say so clearly; you may reference timestamps."
)


class ScoredHit(NamedTuple):
    """A ranked search result."""

    note: Note
    score: float


class Summary(NamedTuple):
    summary_text: str
    video_ref: str
    style: str
    note_count: int
    generated_at: datetime


class Answer(NamedTuple):
    answer: str
    question: str
    relevant_notes: list[ScoredHit]
    context_count: int
    generated_at: datetime


def cosine_similarity(query: np.ndarray, vector: np.ndarray) -> float:
    """Cosine of the angle between two vectors; 0.0 if either has zero norm."""
    denominator = float(np.linalg.norm(query) * np.linalg.norm(vector))
    if denominator == 0.0:
        return 0.0
    return float(np.dot(query, vector) / denominator)


def rank(query: Sequence[float], notes: Sequence[Note]) -> list[ScoredHit]:
    """
    Score ``notes`` against ``query`` and sort them.

    Order: score descending, then created_at descending, then id ascending
    (as a string). Notes without an embedding are skipped.
    """
    q = np.asarray(query, dtype=np.float64)
    hits = [
        ScoredHit(note, cosine_similarity(q, np.asarray(note.embedding, dtype=np.float64)))
        for note in notes
        if note.embedding is not None
    ]
    hits.sort(
        key=lambda hit: (-hit.score, -hit.note.created_at.timestamp(), str(hit.note.id))
    )
    return hits


def format_note_section(note: Note) -> str:
    """Markdown body shared by summary transcripts and answer context."""
    parts = []
    if note.title:
        parts.append(f"**Title:** {note.title}\n\n")
    parts.append(f"**Content:**\n{note.body}\n\n")
    if note.tag_names:
        parts.append(f"**Tags:** {', '.join(note.tag_names)}\n\n")
    return "".join(parts)


def build_transcript(notes: Sequence[Note]) -> str:
    """Deterministic markdown transcript, one section per note, in input order."""
    sections = ["Video Notes Summary Request\n\n"]
    for note in notes:
        sections.append(f"## Timestamp: {note.offset_seconds:.2f} seconds\n")
        sections.append(format_note_section(note))
        sections.append("---\n\n")
    return "".join(sections)


def build_context(hits: Sequence[ScoredHit]) -> str:
    sections = []
    for position, hit in enumerate(hits, 1):
        sections.append(
            f"### Note {position} (Timestamp: {hit.note.offset_seconds:.2f} seconds, "
            f"Relevance: {hit.score:.3f})\n\n"
        )
        sections.append(format_note_section(hit.note))
    return "".join(sections)


def clamp_k(k: int | None) -> int:
    if k is None or k <= 0 or k > MAX_K:
        return DEFAULT_K
    return k


class RetrievalEngine:
    """Search, summarize and answer over one owner's live notes."""

    def __init__(self, client: EmbeddingClient, notes: NoteRepository | None = None) -> None:
        self._client = client
        self._notes = notes or note_repository

    async def search(
        self,
        session: AsyncSession,
        owner_id: str,
        query: str,
        video_ref: str | None = None,
        k: int | None = DEFAULT_K,
    ) -> list[ScoredHit]:
        """
        Rank the owner's embedded notes by similarity to ``query``.

        Args:
            session: Database session.
            owner_id: Owner scope (required).
            query: Free text to embed.
            video_ref: Optional restriction to one video; blank means all.
            k: Result count; values outside 1..50 fall back to 10.

        Raises:
            InvalidInputError: Empty query or missing owner.
            UpstreamError: The query could not be embedded; the store is
                not read in that case.
        """
        _require_owner(owner_id)
        if not query or not query.strip():
            raise InvalidInputError("Query must not be empty")
        k = clamp_k(k)
        if video_ref is not None and not video_ref.strip():
            video_ref = None

        try:
            query_vector = await self._client.embed(query)
        except InvalidInputError:
            raise
        except ClipnotesError as e:
            raise UpstreamError(
                f"Failed to embed search query: {e.message}",
                {"code": e.code, "details": e.details},
            ) from e

        candidates = await self._notes.list_embedded(session, owner_id, video_ref)
        hits = rank(query_vector, candidates)[:k]
        logger.info(
            "Search for owner %s: %d candidate(s), %d hit(s) returned",
            owner_id,
            len(candidates),
            len(hits),
        )
        return hits

    async def summarize(
        self,
        session: AsyncSession,
        owner_id: str,
        video_ref: str,
        style: str | None = "brief",
    ) -> Summary:
        """
        Summarize every live note of one video through the completion model.

        Raises:
            NotFoundError: The owner has no live notes for ``video_ref``.
            InvalidInputError: Unknown style.
            UpstreamError: The completion failed.
        """
        _require_owner(owner_id)
        style = style or "brief"
        instruction = SUMMARY_INSTRUCTIONS.get(style)
        if instruction is None:
            raise InvalidInputError(
                f"Unknown summary style '{style}'",
                {"allowed": sorted(SUMMARY_INSTRUCTIONS)},
            )

        notes = await self._notes.list_by_owner_and_video(session, owner_id, video_ref)
        if not notes:
            raise NotFoundError(f"No notes found for video '{video_ref}'")

        prompt = f"{instruction}\n\n{build_transcript(notes)}"
        summary_text = await self._complete(prompt, "summary")
        return Summary(
            summary_text=summary_text,
            video_ref=video_ref,
            style=style,
            note_count=len(notes),
            generated_at=datetime.now(UTC),
        )

    async def answer(
        self,
        session: AsyncSession,
        owner_id: str,
        question: str,
        video_ref: str | None = None,
        context_k: int | None = DEFAULT_CONTEXT_K,
    ) -> Answer:
        """Answer ``question`` from the ``context_k`` most relevant notes."""
        if context_k is None or context_k <= 0:
            context_k = DEFAULT_CONTEXT_K

        hits = await self.search(session, owner_id, question, video_ref, context_k)
        prompt = ANSWER_PROMPT.format(question=question, context=build_context(hits))
        answer = await self._complete(prompt, "answer")
        return Answer(
            answer=answer,
            question=question,
            relevant_notes=hits,
            context_count=len(hits),
            generated_at=datetime.now(UTC),
        )

    async def _complete(self, prompt: str, purpose: str) -> str:
        try:
            return await self._client.complete(prompt)
        except ClipnotesError as e:
            logger.error("Completion for %s failed: %s", purpose, e)
            raise UpstreamError(
                f"Failed to generate {purpose}: {e.message}",
                {"code": e.code, "remote": e.details},
            ) from e


def _require_owner(owner_id: str) -> None:
    if not owner_id:
        raise InvalidInputError("owner_id is required")
