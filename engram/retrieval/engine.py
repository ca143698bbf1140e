"""
Retrieval and ranking.

Fans a query out over the requested scopes, takes raw sub-scores from the
index, recomputes strength at query time and combines them with the weights of
a single EvolutionSnapshot.
"""

import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Sequence

from loguru import logger

from engram.config.schema import RetrievalConfig
from engram.errors import EmbeddingUnavailable, IndexUnavailable
from engram.evolution.state import STRATEGIES, EvolutionSnapshot, EvolutionStateStore, RetrievalWeights
from engram.memory.decay import compute_strength
from engram.memory.embeddings import EmbeddingProvider
from engram.memory.store import MemoryDB
from engram.memory.types import MEMORY_TYPES, SCOPES, MemoryRecord, RetrievalLogEntry, utcnow
from engram.retrieval.index import IndexHit, MemoryIndex
from engram.retrieval.rrf import fuse


def _check_unit(name: str, value: float | None) -> None:
    if value is None:
        return
    if not math.isfinite(value) or value < 0.0 or value > 1.0:
        raise ValueError(f"{name} sub-score must be within [0, 1], got {value!r}")


def composite_score(
    lexical: float | None,
    vector: float | None,
    strength: float,
    weights: RetrievalWeights,
) -> float:
    """
    Weighted combination of sub-scores.

    Hybrid formula when a vector sub-score exists, lexical-only otherwise.
    A missing lexical sub-score counts as 0.
    """
    _check_unit("lexical", lexical)
    _check_unit("vector", vector)
    _check_unit("strength", strength)
    lex = lexical or 0.0
    if vector is not None:
        w = weights.hybrid
        return w.lexical * lex + w.vector * vector + w.strength * strength
    w2 = weights.lexical_only
    return w2.lexical * lex + w2.strength * strength


@dataclass
class ScoredMemory:
    record: MemoryRecord
    score: float
    strength: float
    lexical: float | None = None
    vector: float | None = None
    mode: str = "lexical_only"

    @property
    def id(self) -> str:
        return self.record.id

    @property
    def scope(self) -> str:
        return self.record.scope


@dataclass
class RetrievalResult:
    items: list[ScoredMemory]
    strategy: str
    scopes: list[str]
    log_id: int | None = None
    embedding_used: bool = False
    state_versions: dict[str, int] = field(default_factory=dict)

    @property
    def ids(self) -> list[str]:
        return [i.id for i in self.items]


def _rank_key(item: ScoredMemory):
    return (-item.score, -item.record.last_accessed_at.timestamp(), item.record.id)


class RetrievalEngine:
    """Query -> ranked, scope-weighted memories."""

    def __init__(
        self,
        db: MemoryDB,
        index: MemoryIndex,
        embedder: EmbeddingProvider,
        state: EvolutionStateStore,
        config: RetrievalConfig | None = None,
        strict_invariants: bool = False,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.index = index
        self.embedder = embedder
        self.state = state
        self.config = config or RetrievalConfig()
        self.strict_invariants = strict_invariants
        self.clock = clock

    @staticmethod
    def resolve_strategy(hint: str, snapshot: EvolutionSnapshot) -> str:
        if hint == "auto":
            return snapshot.default_strategy
        if hint not in STRATEGIES:
            raise ValueError(f"unknown strategy {hint!r}, expected auto or one of {', '.join(STRATEGIES)}")
        return hint

    async def _embed_query(self, query: str) -> list[float] | None:
        try:
            return await self.embedder.embed(query)
        except EmbeddingUnavailable as e:
            logger.debug(f"Embedding unavailable, lexical-only retrieval: {e}")
        except Exception as e:
            logger.debug(f"Embedding provider error, lexical-only retrieval: {e}")
        return None

    async def _search_scope(self, scope: str, query: str, embedding: list[float] | None) -> list[IndexHit]:
        try:
            return await self.index.search(scope, query, embedding, self.config.candidate_limit)
        except IndexUnavailable:
            raise
        except Exception as e:
            raise IndexUnavailable(f"index search failed for scope {scope!r}: {e}") from e

    def _score(self, hit: IndexHit, snapshot: EvolutionSnapshot, now: datetime, use_vector: bool) -> ScoredMemory:
        r = hit.record
        s = compute_strength(r, now, snapshot.half_lives, strict=self.strict_invariants)
        vector = hit.vector if use_vector else None
        base = composite_score(hit.lexical, vector, s, snapshot.retrieval_weights)
        return ScoredMemory(
            record=r,
            score=base * snapshot.scope_weight(r.scope),
            strength=s,
            lexical=hit.lexical,
            vector=vector,
            mode="hybrid" if vector is not None else "lexical_only",
        )

    async def retrieve(
        self,
        query: str,
        scopes: Sequence[str] | None = None,
        strategy_hint: str = "auto",
        limit: int | None = None,
        session_id: str | None = None,
        snapshot: EvolutionSnapshot | None = None,
        memory_types: Sequence[str] | None = None,
    ) -> RetrievalResult:
        query = (query or "").strip()
        if not query:
            raise ValueError("query cannot be empty")
        scopes = list(dict.fromkeys(scopes or SCOPES))
        unknown = [s for s in scopes if s not in SCOPES]
        if unknown:
            raise ValueError(f"unknown scope(s): {', '.join(unknown)}")
        types = set(memory_types or MEMORY_TYPES)
        bad_types = sorted(types - set(MEMORY_TYPES))
        if bad_types:
            raise ValueError(f"unknown memory type(s): {', '.join(bad_types)}")
        if limit is None:
            limit = self.config.default_limit
        if limit < 1:
            raise ValueError("limit must be >= 1")

        snapshot = snapshot or self.state.snapshot()
        strategy = self.resolve_strategy(strategy_hint, snapshot)
        now = self.clock()

        embedding = await self._embed_query(query) if strategy in ("hybrid", "rrf") else None
        if embedding is None and strategy != "bm25":
            strategy = "bm25"

        hits: list[IndexHit] = []
        for scope in scopes:
            hits.extend(await self._search_scope(scope, query, embedding))

        # The index pre-filters, but status may have changed since.
        seen: set[str] = set()
        live: list[IndexHit] = []
        for h in hits:
            r = h.record
            if r.status != "active" or r.scope not in scopes or r.memory_type not in types or r.id in seen:
                continue
            seen.add(r.id)
            live.append(h)

        if strategy == "rrf":
            items = self._rank_rrf(live, snapshot, now)
        else:
            use_vector = strategy == "hybrid"
            items = [self._score(h, snapshot, now, use_vector) for h in live]
            if not use_vector:
                items = [i for i in items if i.lexical is not None]
            items.sort(key=_rank_key)
        items = items[:limit]

        logger.debug(f"Retrieve '{query[:40]}' scopes={scopes} strategy={strategy} results={len(items)}")

        log_id = None
        if self.config.log_retrievals:
            log_id = self.db.append_log(RetrievalLogEntry(
                event_type="search",
                query=query,
                scopes=scopes,
                strategy=strategy,
                results_count=len(items),
                memory_ids=[i.id for i in items],
                session_id=session_id,
                created_at=now,
            ))

        return RetrievalResult(
            items=items,
            strategy=strategy,
            scopes=scopes,
            log_id=log_id,
            embedding_used=embedding is not None,
            state_versions=dict(snapshot.versions),
        )

    def _rank_rrf(self, hits: list[IndexHit], snapshot: EvolutionSnapshot, now: datetime) -> list[ScoredMemory]:
        """Fuse the lexical-only and hybrid rankings; the fused RRF score replaces the composite."""
        lexical_ranked = sorted(
            (self._score(h, snapshot, now, use_vector=False) for h in hits if h.lexical is not None),
            key=_rank_key,
        )
        hybrid_ranked = sorted((self._score(h, snapshot, now, use_vector=True) for h in hits), key=_rank_key)
        by_id = {i.id: i for i in hybrid_ranked}
        fused = fuse(
            {"bm25": [i.id for i in lexical_ranked], "hybrid": [i.id for i in hybrid_ranked]},
            k=self.config.rrf_k,
            recency={h.record.id: h.record.last_accessed_at for h in hits},
        )
        out: list[ScoredMemory] = []
        for f in fused:
            base = by_id[f.id]
            out.append(ScoredMemory(
                record=base.record,
                score=f.score,
                strength=base.strength,
                lexical=base.lexical,
                vector=base.vector,
                mode="rrf",
            ))
        return out
