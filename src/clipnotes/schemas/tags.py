"""Tag Schemas."""

import uuid
from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


class TagRead(BaseModel):
    id: uuid.UUID
    name: str
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class TagSearchRequest(BaseModel):
    """Request body for tag search (default 10 results, max 50)."""

    query: str = Field(..., min_length=1, max_length=100)
    limit: int = Field(default=10, ge=1, le=50)
