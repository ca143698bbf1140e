"""Retrieval: index primitive, ranking engine and rank fusion."""

from engram.retrieval.engine import RetrievalEngine, RetrievalResult, ScoredMemory, composite_score
from engram.retrieval.index import IndexHit, LocalIndex, MemoryIndex
from engram.retrieval.rrf import FusedItem, aggregate, fuse

__all__ = [
    "RetrievalEngine",
    "RetrievalResult",
    "ScoredMemory",
    "composite_score",
    "IndexHit",
    "LocalIndex",
    "MemoryIndex",
    "FusedItem",
    "aggregate",
    "fuse",
]
