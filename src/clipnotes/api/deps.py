"""
API Dependencies

Request-scoped values injected into route handlers: the owner identity
supplied by the upstream auth layer and the long-lived services created
in the application lifespan.
"""

from fastapi import Header, Request

from clipnotes.core.config import settings
from clipnotes.core.errors import InvalidInputError, UnauthorizedError
from clipnotes.services.embeddings import IndexMaintainer
from clipnotes.services.retrieval import RetrievalEngine


async def get_owner_id(
    owner_id: str | None = Header(default=None, alias=settings.OWNER_HEADER),
) -> str:
    """Validated owner id; every note operation is scoped by it."""
    if owner_id is None or not owner_id.strip():
        raise UnauthorizedError(f"Missing {settings.OWNER_HEADER} header")
    owner_id = owner_id.strip()
    if len(owner_id) > 64:
        raise InvalidInputError("Owner id exceeds 64 characters")
    return owner_id


def get_retrieval_engine(request: Request) -> RetrievalEngine:
    return request.app.state.retrieval


def get_maintainer(request: Request) -> IndexMaintainer:
    return request.app.state.maintainer
