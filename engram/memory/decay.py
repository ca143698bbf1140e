"""Exponential decay of memory strength.

strength = importance * exp(-ln(2) / H * hours_since_last_access)

H is the half-life of the memory type. Strength is derived on demand from
stored facts and never persisted.
"""

import math
from datetime import datetime
from typing import Mapping

from loguru import logger

from engram.errors import InvariantViolation
from engram.memory.scopes import ScopeRegistry
from engram.memory.types import MemoryRecord, as_utc, utcnow

# Half-lives in hours.
DEFAULT_HALF_LIVES: dict[str, float] = {
    "working": 1.0,
    "episodic": 24.0,
    "semantic": 168.0,
    "procedural": 720.0,
}

_EPSILON = 1e-9


def decay_rate(memory_type: str, half_lives: Mapping[str, float] | None = None) -> float:
    """k = ln(2) / H for the given memory type."""
    table = half_lives or DEFAULT_HALF_LIVES
    half_life = table.get(memory_type, DEFAULT_HALF_LIVES[memory_type])
    return math.log(2) / half_life


def elapsed_hours(last_accessed_at: datetime, now: datetime) -> float:
    """Hours since last access; clock skew (negative) counts as zero."""
    seconds = (as_utc(now) - as_utc(last_accessed_at)).total_seconds()
    return max(0.0, seconds / 3600.0)


def strength(
    importance: float,
    memory_type: str,
    last_accessed_at: datetime,
    now: datetime,
    half_lives: Mapping[str, float] | None = None,
) -> float:
    """Current strength in [0, importance]."""
    if importance <= 0.0:
        return 0.0
    elapsed = elapsed_hours(last_accessed_at, now)
    if elapsed == 0.0:
        return importance
    return importance * math.exp(-decay_rate(memory_type, half_lives) * elapsed)


def check_strength(value: float, importance: float, strict: bool = False) -> float:
    """
    Enforce 0 <= strength <= importance.

    In strict mode a breach raises InvariantViolation. Otherwise it is logged
    and the value clamped.
    """
    if math.isfinite(value) and -_EPSILON <= value <= importance + _EPSILON:
        return min(max(value, 0.0), importance)
    if strict:
        raise InvariantViolation(f"strength {value!r} outside [0, {importance}]")
    logger.error(f"Strength {value!r} outside [0, {importance}], clamping")
    if not math.isfinite(value):
        return 0.0
    return min(max(value, 0.0), importance)


def compute_strength(
    memory: MemoryRecord,
    now: datetime | None = None,
    half_lives: Mapping[str, float] | None = None,
    strict: bool = False,
) -> float:
    """Strength of a stored record, checked against its invariant."""
    value = strength(
        memory.importance,
        memory.memory_type,
        memory.last_accessed_at,
        now or utcnow(),
        half_lives,
    )
    return check_strength(value, memory.importance, strict=strict)


def touch(memory: MemoryRecord, now: datetime | None = None, session_id: str | None = None) -> MemoryRecord:
    """Access strengthening: reset decay and count the access. Importance is untouched."""
    now = now or utcnow()
    sessions = memory.accessed_sessions
    if session_id:
        sessions = ScopeRegistry.record_session(sessions, session_id)
    return memory.model_copy(update={
        "last_accessed_at": as_utc(now),
        "updated_at": as_utc(now),
        "access_count": memory.access_count + 1,
        "accessed_sessions": sessions,
    })
