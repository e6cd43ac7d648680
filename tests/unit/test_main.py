"""
API Unit Tests

HTTP surface exercised in-process: the app runs on httpx's ASGI transport
with the database dependency pointed at the SQLite fixture and the
services placed on ``app.state`` directly (lifespan is not run).
"""

import asyncio
from unittest.mock import AsyncMock, patch

import httpx
import pytest
import pytest_asyncio
from fastapi.testclient import TestClient

from clipnotes.core.database import get_db
from clipnotes.core.errors import TransportError
from clipnotes.main import app
from clipnotes.services.embeddings import IndexMaintainer

OWNER_HEADERS = {"X-Owner-Id": "U1"}


@pytest_asyncio.fixture
async def api_maintainer(session_factory, fake_client):
    """Maintainer whose debounced jobs stay parked for the whole test."""
    index_maintainer = IndexMaintainer(
        session_factory, fake_client, batch_size=50, creation_debounce=60.0
    )
    yield index_maintainer
    await index_maintainer.shutdown()


@pytest_asyncio.fixture
async def client(session_factory, api_maintainer, retrieval):
    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.state.maintainer = api_maintainer
    app.state.retrieval = retrieval

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as http:
        yield http

    app.dependency_overrides.clear()


async def _create(client, **fields):
    payload = {"video_ref": "v_x", "offset_seconds": 10, "title": "intro", "body": "hello"}
    payload.update(fields)
    response = await client.post("/api/v1/notes", json=payload, headers=OWNER_HEADERS)
    assert response.status_code == 201, response.text
    return response.json()["data"]


def test_health_check():
    """
    Verify /health returns the expected structure.

    TestClient triggers the lifespan handler, so the database wait is mocked.
    """
    with patch("clipnotes.main.wait_for_db", new_callable=AsyncMock) as mock_db:
        mock_db.return_value = True

        with TestClient(app) as test_client:
            response = test_client.get("/health")

            assert response.status_code == 200
            data = response.json()
            assert data["status"] == "ok"
            assert data["service"] == "clipnotes"
            assert data["provider"] == "mock"


# ---------------------------------------------------------------------------
# Envelope and identity
# ---------------------------------------------------------------------------


class TestEnvelope:
    @pytest.mark.asyncio
    async def test_missing_owner_is_401(self, client):
        response = await client.get("/api/v1/notes")

        assert response.status_code == 401
        body = response.json()
        assert body["success"] is False
        assert body["data"] is None
        assert body["error"]["code"] == "UNAUTHORIZED"
        assert "timestamp" in body

    @pytest.mark.asyncio
    async def test_validation_error_is_400_invalid_input(self, client):
        response = await client.post(
            "/api/v1/notes",
            json={"video_ref": "v_x", "offset_seconds": -1},
            headers=OWNER_HEADERS,
        )

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "INVALID_INPUT"

    @pytest.mark.asyncio
    async def test_unknown_note_is_404(self, client):
        response = await client.get(
            "/api/v1/notes/00000000-0000-0000-0000-000000000001",
            headers=OWNER_HEADERS,
        )

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "NOT_FOUND"


# ---------------------------------------------------------------------------
# Notes
# ---------------------------------------------------------------------------


class TestNotesApi:
    @pytest.mark.asyncio
    async def test_create_returns_201_and_schedules_embedding(self, client, api_maintainer):
        note = await _create(client, tags=["Rust", "safety "])

        assert note["tags"] == ["rust", "safety"]
        assert note["has_embedding"] is False
        assert "embedding" not in note
        assert api_maintainer.pending == 1

    @pytest.mark.asyncio
    async def test_overlong_tag_is_400(self, client):
        response = await client.post(
            "/api/v1/notes",
            json={"video_ref": "v_x", "offset_seconds": 1, "tags": ["t" * 101]},
            headers=OWNER_HEADERS,
        )

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "INVALID_INPUT"

    @pytest.mark.asyncio
    async def test_overlong_tag_on_update_is_400(self, client):
        note = await _create(client)
        response = await client.patch(
            f"/api/v1/notes/{note['id']}",
            json={"tags": ["t" * 101]},
            headers=OWNER_HEADERS,
        )

        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_read_update_delete_cycle(self, client):
        note = await _create(client)
        url = f"/api/v1/notes/{note['id']}"

        fetched = await client.get(url, headers=OWNER_HEADERS)
        assert fetched.json()["data"]["title"] == "intro"

        patched = await client.patch(url, json={"title": "renamed"}, headers=OWNER_HEADERS)
        assert patched.status_code == 200
        assert patched.json()["data"]["title"] == "renamed"

        deleted = await client.delete(url, headers=OWNER_HEADERS)
        assert deleted.json()["data"] == {"deleted": 1}

        again = await client.delete(url, headers=OWNER_HEADERS)
        assert again.json()["data"] == {"deleted": 0}

        gone = await client.get(url, headers=OWNER_HEADERS)
        assert gone.status_code == 404

    @pytest.mark.asyncio
    async def test_other_owner_cannot_read(self, client):
        note = await _create(client)
        response = await client.get(
            f"/api/v1/notes/{note['id']}", headers={"X-Owner-Id": "U2"}
        )
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_bulk_delete(self, client):
        a = await _create(client)
        b = await _create(client)

        response = await client.post(
            "/api/v1/notes/delete",
            json={"ids": [a["id"], b["id"]]},
            headers=OWNER_HEADERS,
        )

        assert response.json()["data"] == {"deleted": 2}
        listed = await client.get("/api/v1/notes", headers=OWNER_HEADERS)
        assert listed.json()["data"] == []

    @pytest.mark.asyncio
    async def test_list_for_video_in_offset_order(self, client):
        await _create(client, offset_seconds=90, title="outro")
        await _create(client, offset_seconds=10, title="intro")

        response = await client.get("/api/v1/notes/video/v_x", headers=OWNER_HEADERS)

        assert [n["title"] for n in response.json()["data"]] == ["intro", "outro"]


# ---------------------------------------------------------------------------
# Retrieval and maintenance
# ---------------------------------------------------------------------------


class TestRetrievalApi:
    @pytest.mark.asyncio
    async def test_summarize_empty_video_is_404(self, client):
        response = await client.post(
            "/api/v1/notes/summarize",
            json={"video_ref": "v_empty"},
            headers=OWNER_HEADERS,
        )

        assert response.status_code == 404
        assert response.json()["success"] is False

    @pytest.mark.asyncio
    async def test_summarize_defaults_to_brief(self, client):
        await _create(client)
        response = await client.post(
            "/api/v1/notes/summarize", json={"video_ref": "v_x"}, headers=OWNER_HEADERS
        )

        data = response.json()["data"]
        assert response.status_code == 200
        assert data["style"] == "brief"
        assert data["note_count"] == 1

    @pytest.mark.asyncio
    async def test_search_and_ask_after_backfill(self, client, api_maintainer):
        note = await _create(client, title="eviction policy", body="lru")
        await api_maintainer.backfill_owner("U1")

        search = await client.post(
            "/api/v1/notes/search",
            json={"query": "eviction", "k": 0},
            headers=OWNER_HEADERS,
        )
        hits = search.json()["data"]
        assert hits[0]["note"]["id"] == note["id"]
        assert hits[0]["note"]["has_embedding"] is True
        assert isinstance(hits[0]["score"], float)

        ask = await client.post(
            "/api/v1/notes/ask",
            json={"question": "what is the eviction policy?"},
            headers=OWNER_HEADERS,
        )
        data = ask.json()["data"]
        assert data["context_count"] == 1
        assert data["relevant_notes"][0]["note"]["id"] == note["id"]

    @pytest.mark.asyncio
    async def test_search_with_blank_video_is_unfiltered(self, client, api_maintainer):
        note = await _create(client, video_ref="v_abc", title="deref nullable")
        await api_maintainer.backfill_owner("U1")

        response = await client.post(
            "/api/v1/notes/search",
            json={"query": "nil check", "video_ref": ""},
            headers=OWNER_HEADERS,
        )

        assert [h["note"]["id"] for h in response.json()["data"]] == [note["id"]]

    @pytest.mark.asyncio
    async def test_search_upstream_failure_is_502(self, client, fake_client):
        fake_client.fail_with = TransportError("down")
        response = await client.post(
            "/api/v1/notes/search", json={"query": "x"}, headers=OWNER_HEADERS
        )

        assert response.status_code == 502
        assert response.json()["error"]["code"] == "UPSTREAM"

    @pytest.mark.asyncio
    async def test_backfill_accepted_and_status(self, client, api_maintainer):
        await _create(client)

        status_before = await client.get(
            "/api/v1/notes/embeddings/status", headers=OWNER_HEADERS
        )
        assert status_before.json()["data"]["without_embedding"] == 1

        response = await client.post(
            "/api/v1/notes/embeddings/backfill", headers=OWNER_HEADERS
        )
        assert response.status_code == 202
        assert response.json()["data"]["owner_id"] == "U1"

        for _ in range(200):
            if api_maintainer.pending == 1:  # only the parked on-create job
                break
            await asyncio.sleep(0.01)

        status_after = await client.get(
            "/api/v1/notes/embeddings/status", headers=OWNER_HEADERS
        )
        data = status_after.json()["data"]
        assert data["with_embedding"] == 1
        assert data["needs_backfill"] is False


# ---------------------------------------------------------------------------
# Tags
# ---------------------------------------------------------------------------


class TestTagsApi:
    @pytest.mark.asyncio
    async def test_list_and_search(self, client):
        await _create(client, tags=["Performance", "rust"])

        listed = await client.get("/api/v1/tags", headers=OWNER_HEADERS)
        assert [t["name"] for t in listed.json()["data"]] == ["performance", "rust"]

        found = await client.post(
            "/api/v1/tags/search", json={"query": "PERF"}, headers=OWNER_HEADERS
        )
        assert [t["name"] for t in found.json()["data"]] == ["performance"]

    @pytest.mark.asyncio
    async def test_limit_out_of_range_rejected(self, client):
        response = await client.get("/api/v1/tags?limit=501", headers=OWNER_HEADERS)
        assert response.status_code == 400
