"""Index primitive: raw lexical and vector sub-scores for the active records of one scope."""

import re
import sqlite3
from dataclasses import dataclass
from typing import Protocol

import numpy as np
from loguru import logger
from rank_bm25 import BM25Plus

from engram.errors import IndexUnavailable
from engram.memory.store import MemoryDB
from engram.memory.types import MemoryRecord


def tokenize(text: str) -> list[str]:
    """Lowercase alphanumeric words."""
    return re.findall(r"\w+", text.lower())


def cosine_similarity(a: list[float] | np.ndarray, b: list[float] | np.ndarray) -> float:
    a_arr, b_arr = np.asarray(a, dtype=np.float32), np.asarray(b, dtype=np.float32)
    if a_arr.shape != b_arr.shape:
        return 0.0
    norm_a, norm_b = np.linalg.norm(a_arr), np.linalg.norm(b_arr)
    return 0.0 if norm_a == 0 or norm_b == 0 else float(np.dot(a_arr, b_arr) / (norm_a * norm_b))


@dataclass
class IndexHit:
    """One candidate with its raw sub-scores. A None sub-score means no match of that kind."""
    record: MemoryRecord
    lexical: float | None = None
    vector: float | None = None


class MemoryIndex(Protocol):
    async def search(
        self,
        scope: str,
        query: str,
        query_embedding: list[float] | None,
        limit: int,
    ) -> list[IndexHit]:
        ...


class LocalIndex:
    """
    In-process index over the SQLite store.

    Lexical: BM25Plus over the scope's active records, only for records sharing
    at least one token with the query, normalised by the best score so the top
    lexical hit scores 1.0.
    Vector: cosine similarity clipped to [0, 1]; kept when it reaches
    min_vector_similarity or when the record also matched lexically.
    """

    def __init__(self, db: MemoryDB, min_vector_similarity: float = 0.3):
        self.db = db
        self.min_vector_similarity = min_vector_similarity

    def _load(self, scope: str) -> list[MemoryRecord]:
        try:
            return self.db.list_memories(scope=scope, status="active")
        except sqlite3.Error as e:
            raise IndexUnavailable(f"index read failed for scope {scope!r}: {e}") from e

    async def search(
        self,
        scope: str,
        query: str,
        query_embedding: list[float] | None,
        limit: int,
    ) -> list[IndexHit]:
        records = self._load(scope)
        if not records:
            return []

        lexical = self._lexical_scores(records, query)
        vector = self._vector_scores(records, query_embedding) if query_embedding else {}

        hits: list[IndexHit] = []
        for r in records:
            lex = lexical.get(r.id)
            vec = vector.get(r.id)
            if vec is not None and vec < self.min_vector_similarity and lex is None:
                vec = None
            if lex is None and vec is None:
                continue
            hits.append(IndexHit(record=r, lexical=lex, vector=vec))

        hits.sort(key=lambda h: (-max(h.lexical or 0.0, h.vector or 0.0), h.record.id))
        logger.debug(f"Index scope={scope} candidates={len(records)} hits={len(hits)}")
        return hits[:limit]

    @staticmethod
    def _lexical_scores(records: list[MemoryRecord], query: str) -> dict[str, float]:
        q_tokens = tokenize(query)
        if not q_tokens:
            return {}
        corpus = [tokenize(r.content) + list(r.tags) for r in records]
        if not any(corpus):
            return {}
        bm25 = BM25Plus(corpus)
        scores = bm25.get_scores(q_tokens)
        q_set = set(q_tokens)
        matched = {
            r.id: float(s)
            for r, doc, s in zip(records, corpus, scores)
            if q_set.intersection(doc) and s > 0
        }
        if not matched:
            return {}
        best = max(matched.values())
        return {mid: s / best for mid, s in matched.items()}

    @staticmethod
    def _vector_scores(records: list[MemoryRecord], query_embedding: list[float]) -> dict[str, float]:
        out: dict[str, float] = {}
        for r in records:
            if not r.embedding or len(r.embedding) != len(query_embedding):
                continue
            out[r.id] = min(1.0, max(0.0, cosine_similarity(query_embedding, r.embedding)))
        return out
