"""
Tags API Router

Read-only views over the shared tag table, restricted to tags carried by
the caller's live notes.
"""

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from clipnotes.api.deps import get_owner_id
from clipnotes.core.database import get_db
from clipnotes.repositories.tags import tag_repository as repo
from clipnotes.schemas.common import APIResponse, ok
from clipnotes.schemas.tags import TagRead, TagSearchRequest

router = APIRouter()


@router.get("", response_model=APIResponse[list[TagRead]])
async def list_tags(
    limit: int = Query(default=100, ge=1, le=500),
    owner_id: str = Depends(get_owner_id),
    db: AsyncSession = Depends(get_db),
):
    """Tags used by the owner, alphabetical."""
    tags = await repo.list_for_owner(db, owner_id, limit)
    return ok([TagRead.model_validate(t) for t in tags])


@router.post("/search", response_model=APIResponse[list[TagRead]])
async def search_tags(
    payload: TagSearchRequest,
    owner_id: str = Depends(get_owner_id),
    db: AsyncSession = Depends(get_db),
):
    """Case-insensitive substring match over the owner's tags."""
    tags = await repo.search(db, owner_id, payload.query, payload.limit)
    return ok([TagRead.model_validate(t) for t in tags])
