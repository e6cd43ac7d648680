"""
Pytest Configuration and Fixtures

Shared fixtures for the offline test suite: a throwaway SQLite database
standing in for PostgreSQL, a deterministic fake provider, and the
maintainer and retrieval services wired to both.

Cross-component tests open a fresh session per step: a session that only
read keeps its snapshot until it commits or closes.
"""

import os

from dotenv import load_dotenv

# ---------------------------------------------------------------------------
# Test environment defaults: MUST be before any clipnotes imports.
#
# 1. Load .env first so that local credentials are available.
# 2. setdefault fills in anything still missing (CI runners, fresh clones
#    without a .env file) so that pydantic Settings validation doesn't crash.
# 3. The provider key and vector size are forced: tests never hit the
#    network and use 8-dim vectors.
# ---------------------------------------------------------------------------
load_dotenv()  # .env → os.environ (no-op if file is missing)

_test_env = {
    "POSTGRES_USER": "clipnotes",
    "POSTGRES_PASSWORD": "clipnotes_password",
    "POSTGRES_HOST": "localhost",
    "POSTGRES_PORT": "5432",
    "POSTGRES_DB": "clipnotes_db",
}
for _key, _value in _test_env.items():
    os.environ.setdefault(_key, _value)
os.environ["PROVIDER_API_KEY"] = "mock"
os.environ["EMBEDDING_DIMENSION"] = "8"

# ---------------------------------------------------------------------------
# Imports (safe now that env vars are set)
# ---------------------------------------------------------------------------
import hashlib  # noqa: E402
import math  # noqa: E402
import re  # noqa: E402
import time  # noqa: E402
import uuid  # noqa: E402
from collections.abc import AsyncGenerator, Generator  # noqa: E402

import httpx  # noqa: E402
import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from sqlalchemy import event  # noqa: E402
from sqlalchemy.ext.asyncio import (  # noqa: E402
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from clipnotes.models import EMBEDDING_DIMENSION, Base  # noqa: E402
from clipnotes.services.embeddings import IndexMaintainer  # noqa: E402
from clipnotes.services.retrieval import RetrievalEngine  # noqa: E402


# ---------------------------------------------------------------------------
# Fake provider
# ---------------------------------------------------------------------------


class FakeEmbeddingClient:
    """
    Deterministic stand-in for ``EmbeddingClient``.

    Each word is hashed into one of ``dimension - 1`` buckets; component 0
    is a constant bias, so every pair of vectors has a positive cosine.
    Set ``fail_with`` to make the next calls raise.
    """

    is_mock = True

    def __init__(self, dimension: int = EMBEDDING_DIMENSION) -> None:
        self.dimension = dimension
        self.embedded: list[str] = []
        self.prompts: list[str] = []
        self.fail_with: Exception | None = None
        self.fail_times: int | None = None  # None = every call
        self.completion = "Generated answer."

    def _maybe_fail(self) -> None:
        if self.fail_with is None:
            return
        if self.fail_times is not None:
            if self.fail_times <= 0:
                return
            self.fail_times -= 1
        raise self.fail_with

    def vector_for(self, text: str) -> list[float]:
        vector = [0.0] * self.dimension
        vector[0] = 1.0
        for word in re.findall(r"\w+", text.lower()):
            bucket = int(hashlib.md5(word.encode()).hexdigest(), 16) % (self.dimension - 1)
            vector[bucket + 1] += 1.0
        norm = math.sqrt(sum(v * v for v in vector))
        return [v / norm for v in vector]

    async def embed(self, text: str) -> list[float]:
        self.embedded.append(text)
        self._maybe_fail()
        return self.vector_for(text)

    async def complete(self, prompt: str) -> str:
        self.prompts.append(prompt)
        self._maybe_fail()
        return self.completion

    async def aclose(self) -> None:
        pass


class SleepRecorder:
    """Records requested sleeps instead of waiting."""

    def __init__(self) -> None:
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def engine(tmp_path) -> AsyncGenerator[AsyncEngine, None]:
    """
    File-backed SQLite engine with the full schema.

    pysqlite's implicit transaction handling is turned off and BEGIN is
    emitted explicitly, so SAVEPOINT (used by tag interning) behaves as
    on PostgreSQL.
    """
    db_engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'clipnotes.db'}")

    @event.listens_for(db_engine.sync_engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.close()

    @event.listens_for(db_engine.sync_engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN")

    async with db_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield db_engine
    await db_engine.dispose()


@pytest.fixture
def session_factory(engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, expire_on_commit=False)


@pytest_asyncio.fixture
async def session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as db_session:
        yield db_session


@pytest.fixture
def fake_client() -> FakeEmbeddingClient:
    return FakeEmbeddingClient()


@pytest.fixture
def sleeps() -> SleepRecorder:
    return SleepRecorder()


# ---------------------------------------------------------------------------
# Services
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def maintainer(
    session_factory, fake_client, sleeps
) -> AsyncGenerator[IndexMaintainer, None]:
    """
    Index maintainer on the fake provider with recorded (instant) sleeps.

    Batch size 2 keeps batching observable with a handful of notes.
    """
    index_maintainer = IndexMaintainer(
        session_factory,
        fake_client,
        batch_size=2,
        inter_batch_delay=2.0,
        error_cooldown=5.0,
        creation_debounce=2.0,
        max_retries=3,
        cost_per_embedding=0.00002,
        sleep=sleeps,
    )
    yield index_maintainer
    await index_maintainer.shutdown()


@pytest.fixture
def retrieval(fake_client) -> RetrievalEngine:
    return RetrievalEngine(fake_client)


# ---------------------------------------------------------------------------
# Live stack (tests marked ``live``)
# ---------------------------------------------------------------------------

LIVE_BASE_URL = os.getenv("CLIPNOTES_BASE_URL", "http://localhost:8000")


@pytest.fixture(scope="session")
def wait_for_api():
    """
    Block until the API is ready or timeout expires.

    Polls /health with 1s intervals for up to 30s and fails the session if
    the stack is unreachable.
    """
    url = f"{LIVE_BASE_URL}/health"
    timeout = 30
    start = time.time()

    while time.time() - start < timeout:
        try:
            res = httpx.get(url, timeout=1.0)
            if res.status_code == 200:
                return
        except httpx.RequestError:
            time.sleep(1)

    pytest.fail("API unreachable. Is the stack running?")


@pytest.fixture(scope="session")
def api_client(wait_for_api) -> Generator[httpx.Client, None, None]:
    """HTTP client on /api/v1 with a per-session owner header."""
    headers = {"X-Owner-Id": f"live-{uuid.uuid4().hex[:12]}"}
    with httpx.Client(
        base_url=f"{LIVE_BASE_URL}/api/v1", headers=headers, timeout=10.0
    ) as client:
        yield client
