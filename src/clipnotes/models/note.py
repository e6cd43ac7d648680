"""
Note Models

Core entities for timestamped video notes and their interned tags.
Uses the pgvector extension for the nullable embedding column.

Tables:
    notes    : One row per note; soft-deleted via ``deleted_at``.
    tags     : Normalized, deployment-wide unique tag names.
    note_tags: Association of notes and tags, primary key (note_id, tag_id).
"""

from __future__ import annotations

import uuid
from datetime import datetime

from pgvector.sqlalchemy import Vector
from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    String,
    Table,
    Text,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from clipnotes.core.config import settings
from clipnotes.models.base import Base, TimestampMixin, utcnow

EMBEDDING_DIMENSION: int = settings.EMBEDDING_DIMENSION
TAG_NAME_MAX_LENGTH = 100

note_tags = Table(
    "note_tags",
    Base.metadata,
    Column(
        "note_id",
        Uuid,
        ForeignKey("notes.id", ondelete="CASCADE"),
        primary_key=True,
    ),
    Column(
        "tag_id",
        Uuid,
        ForeignKey("tags.id", ondelete="CASCADE"),
        primary_key=True,
        index=True,
    ),
    Column("created_at", DateTime(timezone=True), nullable=False, default=utcnow),
)


class Tag(Base):
    """
    A named label shared by reference across notes.

    Attributes:
        id: UUID primary key.
        name: Lower-cased, trimmed name; unique within the deployment.
        created_at: Insertion timestamp.
    """

    __tablename__ = "tags"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(
        String(TAG_NAME_MAX_LENGTH), unique=True, nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
    )

    def __repr__(self) -> str:
        return f"<Tag(name='{self.name}')>"


class Note(Base, TimestampMixin):
    """
    Timestamped annotation on a video, owned by exactly one owner.

    Attributes:
        id: UUID primary key.
        owner_id: Opaque principal id supplied by the auth layer.
        video_ref: External video identifier.
        offset_seconds: Position in the video (>= 0).
        title: Short title, may be empty.
        body: Free text, possibly markdown.
        embedding: D-dim vector (nullable until the index maintainer runs).
        deleted_at: Soft delete marker; set rows are invisible to reads.
        tags: Interned Tag rows via ``note_tags`` (eager, alphabetical).
    """

    __tablename__ = "notes"
    __table_args__ = (
        CheckConstraint("offset_seconds >= 0", name="ck_notes_offset_non_negative"),
        Index("ix_notes_owner_video", "owner_id", "video_ref"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    owner_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    video_ref: Mapped[str] = mapped_column(String(255), nullable=False)
    offset_seconds: Mapped[float] = mapped_column(Float, nullable=False)
    title: Mapped[str] = mapped_column(String(200), nullable=False, default="")
    body: Mapped[str] = mapped_column(Text, nullable=False, default="")
    # Nullable: embedding is generated async after create/update
    embedding: Mapped[list[float] | None] = mapped_column(
        Vector(EMBEDDING_DIMENSION),
        nullable=True,
    )
    deleted_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    tags: Mapped[list[Tag]] = relationship(
        secondary=note_tags,
        lazy="selectin",
        order_by=Tag.name,
    )

    @property
    def tag_names(self) -> list[str]:
        return [tag.name for tag in self.tags]

    @property
    def has_embedding(self) -> bool:
        return self.embedding is not None

    def __repr__(self) -> str:
        return (
            f"<Note(id={self.id!s:.8}, video='{self.video_ref}', "
            f"offset={self.offset_seconds})>"
        )
