"""Memory records, decay, scopes and persistence."""

from engram.memory.decay import compute_strength, strength, touch
from engram.memory.scopes import PromotionThresholds, ScopeRegistry
from engram.memory.store import MemoryDB
from engram.memory.types import ConsolidationItem, MemoryRecord, RetrievalLogEntry

__all__ = [
    "MemoryRecord",
    "RetrievalLogEntry",
    "ConsolidationItem",
    "MemoryDB",
    "ScopeRegistry",
    "PromotionThresholds",
    "compute_strength",
    "strength",
    "touch",
]
