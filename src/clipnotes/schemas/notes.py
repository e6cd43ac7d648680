"""
Note Schemas

Pydantic models for Note API request/response validation.
Separates concerns: NoteCreate (input), NoteUpdate (partial), NoteRead
(output), plus the retrieval and index-maintenance payloads.
"""

import uuid
from datetime import datetime
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from clipnotes.models import TAG_NAME_MAX_LENGTH

SummaryStyle = Literal["brief", "detailed", "key_points"]
TagName = Annotated[str, Field(max_length=TAG_NAME_MAX_LENGTH)]


class NoteCreate(BaseModel):
    """Request schema for POST /notes."""

    video_ref: str = Field(
        ...,
        min_length=1,
        max_length=255,
        description="External video identifier",
    )
    offset_seconds: float = Field(..., ge=0, description="Position in the video")
    title: str = Field(default="", max_length=200)
    body: str = Field(default="", description="Note content, markdown allowed")
    tags: list[TagName] = Field(default_factory=list, description="Raw tag names")


class NoteUpdate(BaseModel):
    """
    Request schema for PATCH /notes/{id}.

    All fields optional to support partial updates. ``tags`` replaces the
    whole tag set when present.
    """

    title: str | None = Field(None, max_length=200)
    body: str | None = None
    tags: list[TagName] | None = None


class NoteRead(BaseModel):
    """Full Note representation (the embedding itself is never exposed)."""

    id: uuid.UUID
    video_ref: str
    offset_seconds: float
    title: str
    body: str
    tags: list[str] = Field(default_factory=list)
    has_embedding: bool = False
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)  # Enables ORM model conversion

    @field_validator("tags", mode="before")
    @classmethod
    def _tag_names(cls, value: Any) -> Any:
        """Accept Tag ORM rows as well as plain names."""
        if value is None:
            return []
        return [getattr(tag, "name", tag) for tag in value]


class DeleteManyRequest(BaseModel):
    """Request body for bulk soft delete."""

    ids: list[uuid.UUID] = Field(..., min_length=1, max_length=500)


class DeleteResponse(BaseModel):
    deleted: int


# ---------------------------------------------------------------------------
# Retrieval
# ---------------------------------------------------------------------------


class SearchRequest(BaseModel):
    """Request schema for semantic search. Out-of-range k falls back to 10."""

    query: str = Field(..., min_length=1, description="Search query text")
    video_ref: str | None = Field(None, description="Restrict to one video")
    k: int = Field(default=10, description="Number of results (1-50)")


class ScoredNote(BaseModel):
    """A search hit: the note and its cosine similarity to the query."""

    note: NoteRead
    score: float = Field(description="Cosine similarity (higher = more relevant)")


class SummaryRequest(BaseModel):
    video_ref: str = Field(..., min_length=1)
    style: SummaryStyle = "brief"


class SummaryResponse(BaseModel):
    summary_text: str
    video_ref: str
    style: SummaryStyle
    note_count: int
    generated_at: datetime


class AskRequest(BaseModel):
    """Request body for question answering over the owner's notes."""

    question: str = Field(..., min_length=1, max_length=2000)
    video_ref: str | None = None
    context_k: int = Field(default=5, description="Notes used as context")


class AnswerResponse(BaseModel):
    answer: str
    question: str
    relevant_notes: list[ScoredNote] = Field(default_factory=list)
    context_count: int
    generated_at: datetime


# ---------------------------------------------------------------------------
# Index maintenance
# ---------------------------------------------------------------------------


class IndexStatus(BaseModel):
    """Embedding coverage for one owner. ``estimated_cost`` is advisory (USD)."""

    total_live_notes: int
    with_embedding: int
    without_embedding: int
    completion_ratio: float
    needs_backfill: bool
    estimated_cost: float


class BackfillResponse(BaseModel):
    message: str
    owner_id: str
