"""
Clipnotes Backend Application

FastAPI application entrypoint with async lifespan management.
Handles startup checks (database), wires the provider client, the
retrieval engine and the index maintainer, and shuts them down cleanly.
"""

import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy import text
from starlette.exceptions import HTTPException as StarletteHTTPException

from clipnotes import __version__
from clipnotes.api.v1.notes import router as notes_router
from clipnotes.api.v1.tags import router as tags_router
from clipnotes.core.config import settings
from clipnotes.core.database import dispose_engine, get_engine, get_session_factory
from clipnotes.core.errors import ClipnotesError
from clipnotes.core.logging import setup_logging
from clipnotes.schemas.common import error_body
from clipnotes.services.ai import EmbeddingClient
from clipnotes.services.embeddings import IndexMaintainer
from clipnotes.services.retrieval import RetrievalEngine

# Initialize logging before any log statements
setup_logging()
logger = logging.getLogger(__name__)

STATUS_CLIENT_CLOSED_REQUEST = 499


async def wait_for_db(retries: int = 10, delay: int = 1) -> bool:
    """
    Wait for PostgreSQL to become available.

    Useful in containerized environments where the database may start
    after the application. Implements retry logic with linear delay.

    Returns:
        True if connection established, False if all retries exhausted.
    """
    engine = get_engine()
    for i in range(retries):
        try:
            async with engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
                logger.info("Postgres connection established")
                return True
        except Exception as e:
            logger.warning("Waiting for Postgres (%d/%d)... Error: %s", i + 1, retries, e)
            await asyncio.sleep(delay)
    return False


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan handler.

    Startup:
        - Validates database connectivity (required, blocks startup on failure)
        - Builds the provider client, retrieval engine and index maintainer

    Shutdown:
        - Cancels pending embedding jobs (a later sweep picks them up)
        - Closes the provider connection pool and disposes the engine
    """
    logger.info("Starting Clipnotes %s...", __version__)
    logger.info("Log Level: %s", settings.LOG_LEVEL)

    if not await wait_for_db():
        logger.critical("Could not connect to Postgres. Shutting down.")
        raise RuntimeError("Database connection failed")

    client = EmbeddingClient()
    app.state.client = client
    app.state.retrieval = RetrievalEngine(client)
    app.state.maintainer = IndexMaintainer(get_session_factory(), client)
    logger.info(
        "Provider ready (model=%s, dimension=%d, mock=%s)",
        settings.EMBEDDING_MODEL,
        settings.EMBEDDING_DIMENSION,
        client.is_mock,
    )

    yield  # Application runs here

    logger.info("Shutting down Clipnotes...")
    await app.state.maintainer.shutdown()
    await client.aclose()
    await dispose_engine()


class CancellationMiddleware:
    """
    Answer 499 when a handler is aborted by an inner cancellation.

    Cancellation of the serving task itself is re-raised untouched.
    """

    def __init__(self, app) -> None:
        self.app = app

    async def __call__(self, scope, receive, send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        started = False

        async def send_wrapper(message) -> None:
            nonlocal started
            if message["type"] == "http.response.start":
                started = True
            await send(message)

        try:
            await self.app(scope, receive, send_wrapper)
        except asyncio.CancelledError:
            task = asyncio.current_task()
            if started or (task is not None and task.cancelling()):
                raise
            logger.info("Request %s %s cancelled", scope.get("method"), scope.get("path"))
            response = JSONResponse(
                error_body("CANCELLED", "Request was cancelled"),
                status_code=STATUS_CLIENT_CLOSED_REQUEST,
            )
            await response(scope, receive, send)


app = FastAPI(title=settings.PROJECT_NAME, version=__version__, lifespan=lifespan)
app.add_middleware(CancellationMiddleware)

app.include_router(notes_router, prefix="/api/v1/notes", tags=["Notes"])
app.include_router(tags_router, prefix="/api/v1/tags", tags=["Tags"])


@app.exception_handler(ClipnotesError)
async def clipnotes_error_handler(request: Request, exc: ClipnotesError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s (%s)", request.method, request.url.path, exc, exc.code)
    else:
        logger.debug("%s %s rejected: %s", request.method, request.url.path, exc)
    return JSONResponse(
        error_body(exc.code, exc.message, exc.details),
        status_code=exc.status_code,
    )


@app.exception_handler(RequestValidationError)
async def validation_error_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    return JSONResponse(
        error_body("INVALID_INPUT", "Request validation failed", _jsonable(exc.errors())),
        status_code=400,
    )


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return JSONResponse(
        error_body(f"HTTP_{exc.status_code}", str(exc.detail)),
        status_code=exc.status_code,
        headers=getattr(exc, "headers", None),
    )


@app.get("/health")
async def health_check():
    """
    Health check endpoint for load balancers and orchestrators.

    Returns:
        Static health status plus the provider mode.
    """
    client = getattr(app.state, "client", None)
    return {
        "status": "ok",
        "service": "clipnotes",
        "version": __version__,
        "provider": "mock" if client is None or client.is_mock else "live",
    }


def _jsonable(errors: list[dict]) -> list[dict]:
    # ctx may hold exception instances
    return [
        {key: (str(value) if key == "ctx" else value) for key, value in error.items()}
        for error in errors
    ]
