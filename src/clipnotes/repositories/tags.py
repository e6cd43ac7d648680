"""
Tag Repository

Interning of tag names and owner-scoped tag reads.

Tags are shared across owners: the same normalized name always maps to
one row. Reads are restricted to tags that the owner's live notes use.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from clipnotes.core.errors import ConflictError, InvalidInputError
from clipnotes.models import TAG_NAME_MAX_LENGTH, Note, Tag, note_tags
from clipnotes.repositories.base import BaseRepository, db_errors

logger = logging.getLogger(__name__)


def normalize_tag_name(name: str) -> str:
    """Canonical tag form: trimmed and lower-cased. Idempotent."""
    return name.strip().lower()


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


class TagRepository(BaseRepository[Tag]):
    """
    Repository for Tag entities.

    ``find_or_create`` collapses concurrent creations of the same name into
    a single row: the insert runs inside a SAVEPOINT and a unique violation
    is resolved by re-reading the winner.
    """

    def __init__(self) -> None:
        super().__init__(Tag)

    async def get_by_name(self, session: AsyncSession, name: str) -> Tag | None:
        """Look up a tag by its already-normalized name."""
        result = await session.execute(select(Tag).where(Tag.name == name))
        return result.scalars().first()

    async def find_or_create(self, session: AsyncSession, name: str) -> Tag:
        """
        Return the tag for ``name``, creating it on first use.

        Runs inside the caller's transaction and does not commit.

        Raises:
            InvalidInputError: If the name is empty after normalization or
                longer than the column allows.
            ConflictError: If the insert lost a race and the winner is
                still not visible.
        """
        normalized = normalize_tag_name(name)
        if not normalized:
            raise InvalidInputError("Tag name cannot be empty")
        if len(normalized) > TAG_NAME_MAX_LENGTH:
            raise InvalidInputError(
                f"Tag name exceeds {TAG_NAME_MAX_LENGTH} characters",
                {"length": len(normalized)},
            )

        tag = await self.get_by_name(session, normalized)
        if tag is not None:
            return tag

        tag = Tag(name=normalized)
        try:
            async with session.begin_nested():
                session.add(tag)
        except IntegrityError:
            logger.debug("Tag '%s' created concurrently, re-reading", normalized)
            winner = await self.get_by_name(session, normalized)
            if winner is None:
                raise ConflictError(f"Tag '{normalized}' could not be interned")
            return winner
        return tag

    async def intern_all(
        self,
        session: AsyncSession,
        names: Iterable[str],
    ) -> list[Tag]:
        """
        Intern a list of raw tag names, preserving first-seen order.

        Blank entries are skipped and duplicates (after normalization)
        collapse to one tag.
        """
        tags: list[Tag] = []
        seen: set[str] = set()
        for raw in names:
            normalized = normalize_tag_name(raw)
            if not normalized or normalized in seen:
                continue
            seen.add(normalized)
            tags.append(await self.find_or_create(session, normalized))
        return tags

    # ------------------------------------------------------------------
    # Owner-scoped reads
    # ------------------------------------------------------------------

    @staticmethod
    def _used_by_owner(owner_id: str):
        return (
            select(note_tags.c.tag_id)
            .join(Note, Note.id == note_tags.c.note_id)
            .where(Note.owner_id == owner_id, Note.deleted_at.is_(None))
        )

    async def list_for_owner(
        self,
        session: AsyncSession,
        owner_id: str,
        limit: int = 100,
    ) -> Sequence[Tag]:
        """Tags used by the owner's live notes, alphabetical."""
        stmt = (
            select(Tag)
            .where(Tag.id.in_(self._used_by_owner(owner_id)))
            .order_by(Tag.name)
            .limit(limit)
        )
        async with db_errors(session, "list_tags"):
            result = await session.execute(stmt)
            return result.scalars().all()

    async def search(
        self,
        session: AsyncSession,
        owner_id: str,
        substring: str,
        limit: int = 10,
    ) -> Sequence[Tag]:
        """
        Case-insensitive substring match over the owner's tags.

        Raises:
            InvalidInputError: If the query is blank.
        """
        needle = normalize_tag_name(substring)
        if not needle:
            raise InvalidInputError("Tag search query cannot be empty")

        stmt = (
            select(Tag)
            .where(
                Tag.id.in_(self._used_by_owner(owner_id)),
                Tag.name.ilike(f"%{_escape_like(needle)}%", escape="\\"),
            )
            .order_by(Tag.name)
            .limit(limit)
        )
        async with db_errors(session, "tag_search"):
            result = await session.execute(stmt)
            return result.scalars().all()


# Module-level instance for convenience imports
tag_repository = TagRepository()
