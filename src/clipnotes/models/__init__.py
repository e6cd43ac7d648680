"""Models package - re-exports all models for convenient imports."""

from clipnotes.models.base import Base, TimestampMixin
from clipnotes.models.note import (
    EMBEDDING_DIMENSION,
    TAG_NAME_MAX_LENGTH,
    Note,
    Tag,
    note_tags,
)

__all__ = [
    "Base",
    "TimestampMixin",
    "Note",
    "Tag",
    "note_tags",
    "EMBEDDING_DIMENSION",
    "TAG_NAME_MAX_LENGTH",
]
