"""Types for the memory system."""

import uuid
from datetime import datetime, timezone
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

MemoryType = Literal["working", "episodic", "semantic", "procedural"]
Scope = Literal["session", "project", "user"]
MemoryStatus = Literal["active", "archived", "forgotten"]

MEMORY_TYPES: tuple[str, ...] = ("working", "episodic", "semantic", "procedural")
SCOPES: tuple[str, ...] = ("session", "project", "user")
STATUSES: tuple[str, ...] = ("active", "archived", "forgotten")

MAX_CONTENT_LENGTH = 8192


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_memory_id() -> str:
    return uuid.uuid4().hex


def as_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC; convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def normalize_tags(tags: Any) -> tuple[str, ...]:
    """Strip, lowercase and de-duplicate tags; stored sorted."""
    if tags is None:
        return ()
    if isinstance(tags, str):
        tags = [tags]
    cleaned = {str(t).strip().lower() for t in tags if t is not None and str(t).strip()}
    return tuple(sorted(cleaned))


class MemoryRecord(BaseModel):
    """
    A persisted note.

    Immutable value: state changes produce a new record via ``model_copy``.
    ``memory_strength`` is intentionally absent; see ``engram.memory.decay``.
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_memory_id, min_length=1)
    content: str
    memory_type: MemoryType
    scope: Scope
    importance: float = Field(default=0.5, ge=0.0, le=1.0, allow_inf_nan=False)
    tags: tuple[str, ...] = ()
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    last_accessed_at: datetime = Field(default_factory=utcnow)
    access_count: int = Field(default=0, ge=0)
    status: MemoryStatus = "active"
    session_id: str | None = None
    accessed_sessions: tuple[str, ...] = ()
    embedding: list[float] | None = Field(default=None, repr=False)
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("content")
    @classmethod
    def _check_content(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("content cannot be empty")
        if len(v) > MAX_CONTENT_LENGTH:
            raise ValueError(f"content exceeds maximum length of {MAX_CONTENT_LENGTH}")
        return v

    @field_validator("tags", mode="before")
    @classmethod
    def _check_tags(cls, v: Any) -> tuple[str, ...]:
        return normalize_tags(v)

    @field_validator("created_at", "updated_at", "last_accessed_at")
    @classmethod
    def _check_tz(cls, v: datetime) -> datetime:
        return as_utc(v)

    @property
    def is_active(self) -> bool:
        return self.status == "active"

    @property
    def was_promoted(self) -> bool:
        return "promoted_at" in self.metadata


class RetrievalLogEntry(BaseModel):
    """One logged retrieval (or lifecycle) event. Only ``was_useful`` changes after creation."""

    id: int | None = None
    event_type: Literal["search", "access", "lifecycle_transition", "consolidation", "evolution"] = "search"
    query: str | None = None
    scopes: list[str] = Field(default_factory=list)
    strategy: str = "bm25"
    results_count: int = Field(default=0, ge=0)
    memory_ids: list[str] = Field(default_factory=list)
    was_useful: bool | None = None
    session_id: str | None = None
    memory_id: str | None = None
    old_status: str | None = None
    new_status: str | None = None
    created_at: datetime = Field(default_factory=utcnow)

    @field_validator("created_at")
    @classmethod
    def _check_tz(cls, v: datetime) -> datetime:
        return as_utc(v)


QueueReason = Literal["stale", "promotable", "duplicate-candidate"]
QueueStatus = Literal["pending", "done", "failed"]


class ConsolidationItem(BaseModel):
    """A pending unit of consolidation work."""

    id: int | None = None
    memory_id: str
    reason: QueueReason
    priority: float = Field(default=0.5, allow_inf_nan=False)
    status: QueueStatus = "pending"
    detail: dict[str, Any] = Field(default_factory=dict)
    error: str | None = None
    created_at: datetime = Field(default_factory=utcnow)
    processed_at: datetime | None = None
