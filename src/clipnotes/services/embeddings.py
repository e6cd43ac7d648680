"""
Embedding Service

Background maintenance of the semantic note index. Keeps ``notes.embedding``
converging toward "present and fresh" for every live note without blocking
request handlers.

Triggers:
    - On create/update: a debounced single-note job.
    - Per-owner backfill: batches of notes missing a vector, with pacing.
    - Global sweep: the backfill repeated for every owner with gaps.

Every job runs as an asyncio task owned by ``IndexMaintainer`` and opens its
own database sessions, since background work outlives the request that
scheduled it. ``shutdown()`` cancels whatever is still pending; remaining
notes are picked up by a later sweep.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Awaitable, Callable, Coroutine
from typing import Any, NamedTuple

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from clipnotes.core.config import settings
from clipnotes.core.errors import ClipnotesError, TransientError, UpstreamError
from clipnotes.models import Note
from clipnotes.repositories.notes import NoteRepository, note_repository
from clipnotes.schemas.notes import IndexStatus
from clipnotes.services.ai import EmbeddingClient, compose_for_embedding

logger = logging.getLogger(__name__)

RETRY_DELAY_SECONDS = 2  # Base delay, multiplied by attempt number (linear backoff)


class BackfillReport(NamedTuple):
    """Outcome of one owner backfill."""

    owner_id: str
    total: int
    processed: int
    skipped: int
    failed: int


class IndexMaintainer:
    """
    Owner of the background embedding task pool.

    Usage::

        maintainer = IndexMaintainer(get_session_factory(), EmbeddingClient())
        maintainer.schedule_note(note.id)
        maintainer.schedule_backfill(owner_id)
        ...
        await maintainer.shutdown()
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        client: EmbeddingClient,
        notes: NoteRepository | None = None,
        *,
        batch_size: int | None = None,
        inter_batch_delay: float | None = None,
        error_cooldown: float | None = None,
        creation_debounce: float | None = None,
        max_retries: int | None = None,
        cost_per_embedding: float | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._session_factory = session_factory
        self._client = client
        self._notes = notes or note_repository
        self.batch_size = max(1, batch_size or settings.BACKFILL_BATCH_SIZE)
        self.inter_batch_delay = _or(inter_batch_delay, settings.INTER_BATCH_DELAY)
        self.error_cooldown = _or(error_cooldown, settings.ERROR_COOLDOWN)
        self.creation_debounce = _or(creation_debounce, settings.CREATION_DEBOUNCE)
        self.max_retries = max(1, max_retries or settings.EMBED_MAX_RETRIES)
        self.cost_per_embedding = _or(cost_per_embedding, settings.EMBEDDING_COST_PER_NOTE)
        self._sleep = sleep
        self._tasks: set[asyncio.Task[Any]] = set()
        self._closed = False

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    def schedule_note(self, note_id: uuid.UUID) -> asyncio.Task[bool]:
        """Embed one note after the creation debounce."""
        return self._spawn(self._embed_note_later(note_id), f"embed-note-{note_id}")

    def schedule_backfill(self, owner_id: str) -> asyncio.Task[BackfillReport]:
        """Start an asynchronous backfill for one owner."""
        return self._spawn(self.backfill_owner(owner_id), f"backfill-{owner_id}")

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def shutdown(self) -> None:
        """Cancel outstanding jobs and wait for them to unwind."""
        self._closed = True
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
            logger.info("Index maintainer stopped (%d task(s) cancelled)", len(tasks))

    def _spawn(self, coro: Coroutine[Any, Any, Any], name: str) -> asyncio.Task[Any]:
        if self._closed:
            coro.close()
            raise RuntimeError("Index maintainer is shut down")
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Background task %s failed: %s", task.get_name(), exc)

    # ------------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------------

    async def _embed_note_later(self, note_id: uuid.UUID) -> bool:
        await self._sleep(self.creation_debounce)
        return await self.process_note(note_id)

    async def process_note(self, note_id: uuid.UUID) -> bool:
        """
        Generate and store the embedding for a single note.

        Retries transient failures with linear backoff; any other failure
        is logged and the note is left for a later sweep.

        Returns:
            True if the note ends up with an embedding written by this job.
        """
        for attempt in range(self.max_retries):
            # New session per attempt: previous session may be in failed state
            async with self._session_factory() as session:
                note = await self._notes.get_by_id(session, note_id)
            if note is None or note.deleted_at is not None:
                logger.debug("Note %s gone before embedding", note_id)
                return False
            if note.embedding is not None:
                return False

            try:
                return await self._embed_and_store(note) == "embedded"
            except TransientError as e:
                logger.error(
                    "Error processing embedding for note %s (attempt %d/%d): %s",
                    note_id,
                    attempt + 1,
                    self.max_retries,
                    e,
                )
                if attempt < self.max_retries - 1:
                    # Linear backoff: 2s, 4s, 6s...
                    await self._sleep(RETRY_DELAY_SECONDS * (attempt + 1))
                    continue
            except ClipnotesError as e:
                logger.error("Failed to embed note %s: %s", note_id, e)
                return False

        logger.error(
            "Failed to process embedding for note %s after %d attempts",
            note_id,
            self.max_retries,
        )
        return False

    async def backfill_owner(self, owner_id: str) -> BackfillReport:
        """
        Embed every live note of ``owner_id`` that lacks a vector.

        Notes are processed in batches of ``batch_size``; the job waits
        ``error_cooldown`` after a provider/database failure and
        ``inter_batch_delay`` between batches. Single-note failures never
        abort the batch.
        """
        async with self._session_factory() as session:
            notes = list(await self._notes.list_missing_embedding(session, owner_id))

        total = len(notes)
        if total == 0:
            logger.info("Backfill for owner %s: nothing to do", owner_id)
            return BackfillReport(owner_id, 0, 0, 0, 0)

        logger.info("Found %d notes needing embeddings for owner %s", total, owner_id)
        processed = skipped = failed = 0

        try:
            for start in range(0, total, self.batch_size):
                if start:
                    await self._sleep(self.inter_batch_delay)

                for note in notes[start : start + self.batch_size]:
                    try:
                        outcome = await self._embed_and_store(note)
                    except (TransientError, UpstreamError) as e:
                        failed += 1
                        logger.warning(
                            "Embedding failed for note %s (%s), cooling down %.1fs",
                            note.id,
                            e.code,
                            self.error_cooldown,
                        )
                        await self._sleep(self.error_cooldown)
                        continue
                    except Exception:
                        failed += 1
                        logger.exception("Unexpected error embedding note %s", note.id)
                        continue

                    if outcome == "embedded":
                        processed += 1
                    else:
                        skipped += 1

                logger.info(
                    "Processed %d/%d notes for owner %s",
                    processed,
                    total,
                    owner_id,
                )
        except asyncio.CancelledError:
            logger.info(
                "Backfill for owner %s cancelled at %d/%d", owner_id, processed, total
            )
            raise

        logger.info(
            "Completed embedding backfill for owner %s: %d/%d processed "
            "(%d skipped, %d failed)",
            owner_id,
            processed,
            total,
            skipped,
            failed,
        )
        return BackfillReport(owner_id, total, processed, skipped, failed)

    async def sweep(self) -> list[BackfillReport]:
        """Purge orphaned tag links, then backfill every owner with gaps."""
        async with self._session_factory() as session:
            purged = await self._notes.cleanup_orphan_tag_links(session)
            owners = await self._notes.owners_missing_embedding(session)

        logger.info(
            "Sweep started: %d owner(s) need backfill, %d orphaned tag link(s) purged",
            len(owners),
            purged,
        )
        reports: list[BackfillReport] = []
        for owner_id in owners:
            reports.append(await self.backfill_owner(owner_id))
        logger.info(
            "Sweep finished: %d note(s) embedded",
            sum(report.processed for report in reports),
        )
        return reports

    async def status(self, session: AsyncSession, owner_id: str) -> IndexStatus:
        """Read-only coverage report for one owner."""
        total, with_embedding = await self._notes.count_embedding_status(session, owner_id)
        without = total - with_embedding
        return IndexStatus(
            total_live_notes=total,
            with_embedding=with_embedding,
            without_embedding=without,
            completion_ratio=(with_embedding / total) if total else 0.0,
            needs_backfill=without > 0,
            estimated_cost=without * self.cost_per_embedding,
        )

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _embed_and_store(self, note: Note) -> str:
        """
        Compose, embed and conditionally write one note.

        Returns:
            'embedded', 'empty' (nothing to embed) or 'stale' (note deleted
            or edited since it was read).
        """
        text = compose_for_embedding(note.title, note.body, note.tag_names)
        if not text:
            logger.warning("No text content to embed for note %s", note.id)
            return "empty"

        vector = await self._client.embed(text)

        async with self._session_factory() as session:
            written = await self._notes.write_embedding(
                session,
                note.id,
                vector,
                expected_updated_at=note.updated_at,
            )

        if not written:
            logger.info("Note %s changed or was deleted before write, skipped", note.id)
            return "stale"
        logger.info("Embedding generated for note %s", note.id)
        return "embedded"


def _or(value: float | None, default: float) -> float:
    return default if value is None else value
