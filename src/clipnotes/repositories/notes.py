"""
Note Repository

Data access layer for Note entities. Every read path is defined over live
notes (``deleted_at IS NULL``); there is no include-deleted mode.

Writes run as one transaction per call: the note row, its interned tags
and its ``note_tags`` links either all commit or all roll back.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Iterable, Sequence
from datetime import datetime

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.attributes import set_committed_value

from clipnotes.core.errors import InvalidInputError, NotFoundError
from clipnotes.models import EMBEDDING_DIMENSION, Note, note_tags
from clipnotes.models.base import utcnow
from clipnotes.repositories.base import BaseRepository, db_errors
from clipnotes.repositories.tags import TagRepository, tag_repository

logger = logging.getLogger(__name__)

_LIVE = Note.deleted_at.is_(None)


class NoteRepository(BaseRepository[Note]):
    """
    Repository for Note entities.

    Inherits ``get_by_id`` from BaseRepository (no liveness filter; used by
    the index maintainer, which checks liveness itself) and adds:
        - create / update / soft delete with tag interning
        - owner and owner+video listings
        - embedding bookkeeping for the index maintainer
    """

    def __init__(self, tags: TagRepository | None = None) -> None:
        super().__init__(Note)
        self.tags = tags or tag_repository

    # ------------------------------------------------------------------
    # Write operations
    # ------------------------------------------------------------------

    async def create_note(
        self,
        session: AsyncSession,
        owner_id: str,
        *,
        video_ref: str,
        offset_seconds: float,
        title: str = "",
        body: str = "",
        tag_names: Iterable[str] = (),
    ) -> Note:
        """
        Insert a note with its tags atomically. The embedding starts null.

        Raises:
            InvalidInputError: Negative offset or empty video reference.
            ConflictError / TransientError: Database failures (rolled back).
        """
        if offset_seconds < 0:
            raise InvalidInputError("offset_seconds must be >= 0")
        if not video_ref or not video_ref.strip():
            raise InvalidInputError("video_ref is required")

        async with db_errors(session, "create_note"):
            note = Note(
                owner_id=owner_id,
                video_ref=video_ref.strip(),
                offset_seconds=float(offset_seconds),
                title=title,
                body=body,
                tags=[],
            )
            session.add(note)
            note.tags = await self.tags.intern_all(session, tag_names)
            await session.commit()

        logger.debug("Created note %s for owner %s", note.id, owner_id)
        return note

    async def update_note(
        self,
        session: AsyncSession,
        owner_id: str,
        note_id: uuid.UUID,
        *,
        title: str | None = None,
        body: str | None = None,
        tag_names: Iterable[str] | None = None,
    ) -> Note:
        """
        Change title/body/tags of a live note and clear its embedding.

        ``None`` leaves a field untouched; ``tag_names`` replaces the whole
        tag set when given.

        Raises:
            InvalidInputError: If no field is supplied.
            NotFoundError: If the note is missing, deleted or foreign.
        """
        if title is None and body is None and tag_names is None:
            raise InvalidInputError("No fields to update")

        async with db_errors(session, "update_note"):
            note = await self._get_live(session, owner_id, note_id)
            if note is None:
                raise NotFoundError(f"Note {note_id} not found")

            if title is not None:
                note.title = title
            if body is not None:
                note.body = body
            if tag_names is not None:
                note.tags = await self.tags.intern_all(session, tag_names)

            now = utcnow()
            # Bulk UPDATE for the vector: the ORM never compares array values
            await session.execute(
                update(Note)
                .where(Note.id == note_id)
                .values(embedding=None, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            set_committed_value(note, "embedding", None)
            set_committed_value(note, "updated_at", now)
            await session.commit()

        return note

    async def soft_delete(
        self,
        session: AsyncSession,
        owner_id: str,
        note_ids: Iterable[uuid.UUID],
    ) -> int:
        """
        Mark the owner's live notes as deleted and purge their tag links.

        Already-deleted and foreign ids are ignored.

        Returns:
            Number of notes that transitioned to deleted.
        """
        ids = list(dict.fromkeys(note_ids))
        if not ids:
            return 0

        now = utcnow()
        async with db_errors(session, "soft_delete"):
            result = await session.execute(
                update(Note)
                .where(Note.owner_id == owner_id, Note.id.in_(ids), _LIVE)
                .values(deleted_at=now, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            await self._purge_tag_links(session, ids)
            await session.commit()

        count = result.rowcount or 0
        logger.debug("Soft-deleted %d/%d notes for owner %s", count, len(ids), owner_id)
        return count

    async def cleanup_orphan_tag_links(self, session: AsyncSession) -> int:
        """Remove every note_tags row whose note is soft-deleted."""
        async with db_errors(session, "cleanup_orphan_tag_links"):
            removed = await self._purge_tag_links(session, None)
            await session.commit()
        return removed

    async def write_embedding(
        self,
        session: AsyncSession,
        note_id: uuid.UUID,
        vector: Sequence[float],
        *,
        expected_updated_at: datetime | None = None,
    ) -> bool:
        """
        Store an embedding if the note is still live.

        When ``expected_updated_at`` is given the write also requires that
        the note has not been modified since it was read, so a vector built
        from stale text never lands on a freshly edited note.

        Returns:
            True if a row was updated, False if the note was deleted or
            changed in the meantime.

        Raises:
            InvalidInputError: If the vector does not have D components.
        """
        if len(vector) != EMBEDDING_DIMENSION:
            raise InvalidInputError(
                f"Embedding must have {EMBEDDING_DIMENSION} dimensions, "
                f"got {len(vector)}"
            )

        conditions = [Note.id == note_id, _LIVE]
        if expected_updated_at is not None:
            conditions.append(Note.updated_at == expected_updated_at)

        async with db_errors(session, "write_embedding"):
            result = await session.execute(
                update(Note)
                .where(*conditions)
                .values(embedding=[float(v) for v in vector], updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            await session.commit()

        return bool(result.rowcount)

    # ------------------------------------------------------------------
    # Read operations
    # ------------------------------------------------------------------

    async def get_note(
        self,
        session: AsyncSession,
        owner_id: str,
        note_id: uuid.UUID,
    ) -> Note:
        """
        Get one live note of the owner.

        Raises:
            NotFoundError: If the note is missing, deleted or foreign.
        """
        async with db_errors(session, "get_note"):
            note = await self._get_live(session, owner_id, note_id)
        if note is None:
            raise NotFoundError(f"Note {note_id} not found")
        return note

    async def list_by_owner(self, session: AsyncSession, owner_id: str) -> Sequence[Note]:
        """All live notes of the owner, newest first."""
        stmt = (
            select(Note)
            .where(Note.owner_id == owner_id, _LIVE)
            .order_by(Note.created_at.desc(), Note.id)
        )
        return await self._scalars(session, stmt, "list_by_owner")

    async def list_by_owner_and_video(
        self,
        session: AsyncSession,
        owner_id: str,
        video_ref: str,
    ) -> Sequence[Note]:
        """Live notes of the owner on one video, in playback order."""
        stmt = (
            select(Note)
            .where(Note.owner_id == owner_id, Note.video_ref == video_ref, _LIVE)
            .order_by(Note.offset_seconds.asc(), Note.created_at.asc(), Note.id)
        )
        return await self._scalars(session, stmt, "list_by_owner_and_video")

    async def list_missing_embedding(
        self,
        session: AsyncSession,
        owner_id: str | None = None,
        limit: int | None = None,
    ) -> Sequence[Note]:
        """Live notes without an embedding, oldest first, optionally per owner."""
        stmt = select(Note).where(_LIVE, Note.embedding.is_(None))
        if owner_id is not None:
            stmt = stmt.where(Note.owner_id == owner_id)
        stmt = stmt.order_by(Note.created_at.asc(), Note.id)
        if limit is not None:
            stmt = stmt.limit(limit)
        return await self._scalars(session, stmt, "list_missing_embedding")

    async def list_embedded(
        self,
        session: AsyncSession,
        owner_id: str,
        video_ref: str | None = None,
    ) -> Sequence[Note]:
        """Retrieval candidates: live notes of the owner that have a vector."""
        stmt = select(Note).where(
            Note.owner_id == owner_id,
            _LIVE,
            Note.embedding.is_not(None),
        )
        if video_ref is not None:
            stmt = stmt.where(Note.video_ref == video_ref)
        return await self._scalars(session, stmt, "list_embedded")

    async def count_embedding_status(
        self,
        session: AsyncSession,
        owner_id: str,
    ) -> tuple[int, int]:
        """
        Count the owner's live notes.

        Returns:
            Tuple of (total_live_notes, with_embedding).
        """
        stmt = select(func.count(Note.id), func.count(Note.embedding)).where(
            Note.owner_id == owner_id, _LIVE
        )
        async with db_errors(session, "count_embedding_status"):
            row = (await session.execute(stmt)).one()
        return int(row[0] or 0), int(row[1] or 0)

    async def owners_missing_embedding(self, session: AsyncSession) -> list[str]:
        """Distinct owners that have at least one live note without a vector."""
        stmt = (
            select(Note.owner_id)
            .where(_LIVE, Note.embedding.is_(None))
            .distinct()
            .order_by(Note.owner_id)
        )
        async with db_errors(session, "owners_missing_embedding"):
            result = await session.execute(stmt)
            return list(result.scalars().all())

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _get_live(
        self,
        session: AsyncSession,
        owner_id: str,
        note_id: uuid.UUID,
    ) -> Note | None:
        stmt = select(Note).where(
            Note.id == note_id,
            Note.owner_id == owner_id,
            _LIVE,
        )
        result = await session.execute(stmt)
        return result.scalars().first()

    async def _scalars(self, session: AsyncSession, stmt, operation: str) -> Sequence[Note]:
        async with db_errors(session, operation):
            result = await session.execute(stmt)
            return result.scalars().all()

    @staticmethod
    async def _purge_tag_links(
        session: AsyncSession,
        note_ids: list[uuid.UUID] | None,
    ) -> int:
        deleted_notes = select(Note.id).where(Note.deleted_at.is_not(None))
        if note_ids is not None:
            deleted_notes = deleted_notes.where(Note.id.in_(note_ids))
        result = await session.execute(
            delete(note_tags).where(note_tags.c.note_id.in_(deleted_notes))
        )
        return result.rowcount or 0


# Module-level instance for convenience imports
note_repository = NoteRepository()
