"""Pydantic models for notes and search results."""

from datetime import UTC, datetime

from pydantic import BaseModel, Field


def utcnow() -> str:
    """ISO-8601 timestamp for the current instant."""
    return datetime.now(UTC).isoformat()


class StoredNote(BaseModel):
    """Record persisted by the key-value engine for a single uid."""

    content: str
    revision: int = Field(..., ge=1, description="Backend-wide modification counter")
    updated_at: str = Field(default_factory=utcnow)


class Note(BaseModel):
    """A note as returned to callers."""

    uid: str
    content: str


class SearchHit(BaseModel):
    """One entry of a search result sequence."""

    uid: str
    snippet: str
    updated_at: str
