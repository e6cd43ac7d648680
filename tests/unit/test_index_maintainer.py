"""
Index Maintainer Unit Tests

Background embedding jobs against the SQLite store and the fake provider.
Sleeps are recorded instead of awaited, so pacing is asserted exactly.
"""

import asyncio

import pytest

from clipnotes.core.errors import RateLimitedError, UpstreamError
from clipnotes.repositories.notes import note_repository as notes
from clipnotes.services.ai import compose_for_embedding
from clipnotes.services.embeddings import IndexMaintainer

OWNER = "U1"
OTHER = "U2"


async def _seed(session_factory, count, owner=OWNER, **fields):
    created = []
    async with session_factory() as session:
        for i in range(count):
            values = {
                "video_ref": "v_x",
                "offset_seconds": float(i),
                "title": f"note {i}",
                "body": f"body {i}",
            }
            values.update(fields)
            created.append(await notes.create_note(session, owner, **values))
    return created


async def _missing(session_factory, owner=OWNER):
    async with session_factory() as session:
        return await notes.list_missing_embedding(session, owner)


# ---------------------------------------------------------------------------
# Single-note job
# ---------------------------------------------------------------------------


class TestProcessNote:
    @pytest.mark.asyncio
    async def test_embeds_composed_text(self, maintainer, session_factory, fake_client):
        (note,) = await _seed(session_factory, 1, title="deref", body="guard", tag_names=["Rust"])

        assert await maintainer.process_note(note.id) is True
        assert fake_client.embedded == [compose_for_embedding("deref", "guard", ["rust"])]
        assert await _missing(session_factory) == []

    @pytest.mark.asyncio
    async def test_empty_note_is_skipped(self, maintainer, session_factory, fake_client):
        (note,) = await _seed(session_factory, 1, title="", body="")

        assert await maintainer.process_note(note.id) is False
        assert fake_client.embedded == []

    @pytest.mark.asyncio
    async def test_deleted_note_is_skipped(self, maintainer, session_factory, fake_client):
        (note,) = await _seed(session_factory, 1)
        async with session_factory() as session:
            await notes.soft_delete(session, OWNER, [note.id])

        assert await maintainer.process_note(note.id) is False
        assert fake_client.embedded == []

    @pytest.mark.asyncio
    async def test_transient_failure_retried_with_backoff(
        self, maintainer, session_factory, fake_client, sleeps
    ):
        (note,) = await _seed(session_factory, 1)
        fake_client.fail_with = RateLimitedError("slow down")
        fake_client.fail_times = 2

        assert await maintainer.process_note(note.id) is True
        assert len(fake_client.embedded) == 3
        assert sleeps.calls == [2, 4]

    @pytest.mark.asyncio
    async def test_gives_up_after_max_retries(
        self, maintainer, session_factory, fake_client, sleeps
    ):
        (note,) = await _seed(session_factory, 1)
        fake_client.fail_with = RateLimitedError("slow down")

        assert await maintainer.process_note(note.id) is False
        assert len(fake_client.embedded) == 3
        assert len(await _missing(session_factory)) == 1

    @pytest.mark.asyncio
    async def test_upstream_failure_not_retried(
        self, maintainer, session_factory, fake_client
    ):
        (note,) = await _seed(session_factory, 1)
        fake_client.fail_with = UpstreamError("bad status")

        assert await maintainer.process_note(note.id) is False
        assert len(fake_client.embedded) == 1


class TestScheduling:
    @pytest.mark.asyncio
    async def test_schedule_note_debounces_then_embeds(
        self, maintainer, session_factory, sleeps
    ):
        (note,) = await _seed(session_factory, 1)

        task = maintainer.schedule_note(note.id)
        assert maintainer.pending == 1
        assert await task is True

        assert sleeps.calls[0] == 2.0
        assert await _missing(session_factory) == []
        await asyncio.sleep(0)
        assert maintainer.pending == 0

    @pytest.mark.asyncio
    async def test_shutdown_cancels_pending_jobs(self, session_factory, fake_client):
        (note,) = await _seed(session_factory, 1)
        slow = IndexMaintainer(session_factory, fake_client, creation_debounce=30.0)

        task = slow.schedule_note(note.id)
        await asyncio.sleep(0)
        await slow.shutdown()

        assert task.cancelled()
        assert fake_client.embedded == []
        with pytest.raises(RuntimeError):
            slow.schedule_backfill(OWNER)


# ---------------------------------------------------------------------------
# Backfill and sweep
# ---------------------------------------------------------------------------


class TestBackfill:
    @pytest.mark.asyncio
    async def test_batches_with_inter_batch_delay(
        self, maintainer, session_factory, fake_client, sleeps
    ):
        await _seed(session_factory, 5)

        report = await maintainer.backfill_owner(OWNER)

        assert report.total == 5
        assert report.processed == 5
        assert report.failed == 0
        assert len(fake_client.embedded) == 5
        # batch size 2 -> batches of 2, 2, 1 -> two pauses
        assert sleeps.calls == [2.0, 2.0]
        assert await _missing(session_factory) == []

    @pytest.mark.asyncio
    async def test_nothing_missing_means_no_provider_calls(
        self, maintainer, session_factory, fake_client
    ):
        await _seed(session_factory, 2)
        await maintainer.backfill_owner(OWNER)
        fake_client.embedded.clear()

        report = await maintainer.backfill_owner(OWNER)

        assert report.total == 0
        assert fake_client.embedded == []

    @pytest.mark.asyncio
    async def test_failure_cools_down_and_continues(
        self, maintainer, session_factory, fake_client, sleeps
    ):
        await _seed(session_factory, 3)
        fake_client.fail_with = RateLimitedError("slow down")
        fake_client.fail_times = 1

        report = await maintainer.backfill_owner(OWNER)

        assert report.failed == 1
        assert report.processed == 2
        assert 5.0 in sleeps.calls
        assert len(await _missing(session_factory)) == 1

    @pytest.mark.asyncio
    async def test_only_owner_notes(self, maintainer, session_factory):
        await _seed(session_factory, 2)
        await _seed(session_factory, 1, owner=OTHER)

        report = await maintainer.backfill_owner(OWNER)

        assert report.processed == 2
        assert len(await _missing(session_factory, OTHER)) == 1

    @pytest.mark.asyncio
    async def test_empty_notes_counted_as_skipped(self, maintainer, session_factory):
        await _seed(session_factory, 1, title="", body="")
        report = await maintainer.backfill_owner(OWNER)
        assert report.skipped == 1
        assert report.processed == 0

    @pytest.mark.asyncio
    async def test_scheduled_backfill(self, maintainer, session_factory):
        await _seed(session_factory, 2)
        report = await maintainer.schedule_backfill(OWNER)
        assert report.processed == 2


class TestSweep:
    @pytest.mark.asyncio
    async def test_sweeps_every_owner(self, maintainer, session_factory):
        await _seed(session_factory, 2)
        await _seed(session_factory, 1, owner=OTHER)

        reports = await maintainer.sweep()

        assert sorted(r.owner_id for r in reports) == [OWNER, OTHER]
        assert sum(r.processed for r in reports) == 3
        assert await _missing(session_factory) == []
        assert await _missing(session_factory, OTHER) == []


class TestStatus:
    @pytest.mark.asyncio
    async def test_status_counts_and_cost(self, maintainer, session_factory):
        created = await _seed(session_factory, 4)
        await maintainer.process_note(created[0].id)

        async with session_factory() as session:
            status = await maintainer.status(session, OWNER)

        assert status.total_live_notes == 4
        assert status.with_embedding == 1
        assert status.without_embedding == 3
        assert status.completion_ratio == pytest.approx(0.25)
        assert status.needs_backfill is True
        assert status.estimated_cost == pytest.approx(0.00006)

    @pytest.mark.asyncio
    async def test_status_without_notes(self, maintainer, session_factory):
        async with session_factory() as session:
            status = await maintainer.status(session, OWNER)

        assert status.total_live_notes == 0
        assert status.completion_ratio == 0.0
        assert status.needs_backfill is False
