"""Scope chain and promotion rules.

session -> project -> user. Promotion is one-way; this module only evaluates
the predicate, the consolidation engine performs the move.
"""

from dataclasses import dataclass
from typing import Any, Mapping

from engram.memory.types import SCOPES, MemoryRecord


@dataclass(frozen=True)
class PromotionThresholds:
    importance: float = 0.5
    access_count: int = 2
    distinct_sessions: int = 3

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any] | None) -> "PromotionThresholds":
        if not data:
            return cls()
        return cls(
            importance=float(data.get("importance", cls.importance)),
            access_count=int(data.get("access_count", cls.access_count)),
            distinct_sessions=int(data.get("distinct_sessions", cls.distinct_sessions)),
        )


class ScopeRegistry:
    """Ordered scope chain plus the promotion predicate."""

    CHAIN: tuple[str, ...] = SCOPES
    # Bound on per-record session provenance.
    MAX_TRACKED_SESSIONS = 10

    def __init__(self, thresholds: PromotionThresholds | None = None):
        self.thresholds = thresholds or PromotionThresholds()

    @classmethod
    def next_scope(cls, scope: str) -> str | None:
        idx = cls.CHAIN.index(scope)
        return cls.CHAIN[idx + 1] if idx + 1 < len(cls.CHAIN) else None

    @classmethod
    def rank(cls, scope: str) -> int:
        return cls.CHAIN.index(scope)

    @classmethod
    def record_session(cls, sessions: tuple[str, ...], session_id: str) -> tuple[str, ...]:
        """Add a session id to the provenance set, keeping insertion order and the cap."""
        if session_id in sessions or len(sessions) >= cls.MAX_TRACKED_SESSIONS:
            return sessions
        return sessions + (session_id,)

    def promotion_target(
        self,
        memory: MemoryRecord,
        thresholds: PromotionThresholds | None = None,
    ) -> str | None:
        """Scope the record should be promoted to now, or None."""
        t = thresholds or self.thresholds
        if not memory.is_active:
            return None
        if memory.scope == "session":
            if memory.importance >= t.importance and memory.access_count >= t.access_count:
                return "project"
            return None
        if memory.scope == "project":
            if len(set(memory.accessed_sessions)) >= t.distinct_sessions:
                return "user"
            return None
        return None

    def is_promotable(self, memory: MemoryRecord, thresholds: PromotionThresholds | None = None) -> bool:
        return self.promotion_target(memory, thresholds) is not None
