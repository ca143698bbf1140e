"""MemoryService: the operations an outer layer (CLI, tool server) calls."""

from datetime import datetime
from typing import Any, Callable, Iterable, Mapping, Sequence

from loguru import logger
from pydantic import BaseModel, Field

from engram.config.schema import Config
from engram.consolidation.engine import ConsolidationEngine, ConsolidationSummary
from engram.errors import EmbeddingUnavailable
from engram.evolution.loop import EvolutionLoop, EvolutionOutcome
from engram.evolution.state import EvolutionStateStore
from engram.memory.decay import compute_strength
from engram.memory.embeddings import EmbeddingProvider, create_embedding_provider
from engram.memory.scopes import ScopeRegistry
from engram.memory.store import MemoryDB
from engram.memory.types import SCOPES, MemoryRecord, RetrievalLogEntry, normalize_tags, utcnow
from engram.retrieval.engine import RetrievalEngine, RetrievalResult
from engram.retrieval.index import LocalIndex, MemoryIndex
from engram.retrieval.rrf import AggregatedMemory, aggregate


class RetrievalOptions(BaseModel):
    strategy: str = "auto"
    limit: int | None = Field(default=None, ge=1)
    session_id: str | None = None
    memory_types: list[str] | None = None


class MemoryService:
    """Wires storage, index, embeddings and the ranking/consolidation/evolution engines together."""

    def __init__(
        self,
        config: Config | None = None,
        db: MemoryDB | None = None,
        embedder: EmbeddingProvider | None = None,
        index: MemoryIndex | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.config = config or Config()
        self.clock = clock
        self.db = db or MemoryDB(self.config.db_path)
        self.embedder = embedder or create_embedding_provider(self.config.embedding)
        self.index = index or LocalIndex(self.db, self.config.retrieval.min_vector_similarity)
        self.state = EvolutionStateStore(self.db, history_limit=self.config.evolution.history_limit)
        strict = self.config.decay.strict_invariants
        self.retrieval = RetrievalEngine(
            self.db, self.index, self.embedder, self.state, self.config.retrieval,
            strict_invariants=strict, clock=clock,
        )
        self.consolidation = ConsolidationEngine(
            self.db, self.state, self.config.consolidation, strict_invariants=strict, clock=clock,
        )
        self.evolution = EvolutionLoop(self.db, self.state, self.config.evolution, clock=clock)

    # ---------- write path ----------
    async def store_memory(
        self,
        content: str,
        memory_type: str = "semantic",
        scope: str = "project",
        tags: Iterable[str] | None = None,
        importance: float = 0.5,
        session_id: str | None = None,
        metadata: Mapping[str, Any] | None = None,
    ) -> MemoryRecord:
        now = self.clock()
        record = MemoryRecord(
            content=content,
            memory_type=memory_type,
            scope=scope,
            tags=tags,
            importance=importance,
            session_id=session_id,
            created_at=now,
            updated_at=now,
            last_accessed_at=now,
            metadata=dict(metadata or {}),
        )
        try:
            embedding = await self.embedder.embed(record.content)
            record = record.model_copy(update={"embedding": embedding})
        except EmbeddingUnavailable as e:
            logger.debug(f"Storing {record.id} without embedding: {e}")
        return self.db.add_memory(record)

    def get(self, memory_id: str) -> MemoryRecord:
        return self.db.require_memory(memory_id)

    # ---------- read path ----------
    async def retrieve_and_rank(
        self,
        query: str,
        scopes: Sequence[str] | None = None,
        options: RetrievalOptions | None = None,
    ) -> RetrievalResult:
        options = options or RetrievalOptions()
        return await self.retrieval.retrieve(
            query,
            scopes=scopes,
            strategy_hint=options.strategy,
            limit=options.limit,
            session_id=options.session_id,
            memory_types=options.memory_types,
        )

    def compute_strength(self, memory: MemoryRecord | str, now: datetime | None = None) -> float:
        if isinstance(memory, str):
            memory = self.get(memory)
        snapshot = self.state.snapshot()
        return compute_strength(
            memory, now or self.clock(), snapshot.half_lives, strict=self.config.decay.strict_invariants,
        )

    def aggregate(
        self,
        result_sets: Mapping[str, Sequence[MemoryRecord] | RetrievalResult],
        limit: int = 10,
    ) -> list[AggregatedMemory]:
        """Fuse labelled result sets with RRF and drop exact content duplicates."""
        records = {
            label: [i.record for i in rs.items] if isinstance(rs, RetrievalResult) else list(rs)
            for label, rs in result_sets.items()
        }
        return aggregate(records, limit=limit, k=self.config.retrieval.rrf_k)

    # ---------- feedback ----------
    def mark_used(self, memory_ids: Iterable[str], session_id: str | None = None) -> int:
        """Access strengthening: reset decay and count the use."""
        ids = list(dict.fromkeys(memory_ids))
        if not ids:
            return 0
        now = self.clock()
        touched = self.db.mark_accessed(ids, now=now, session_id=session_id)
        self.db.append_log(RetrievalLogEntry(
            event_type="access", memory_ids=ids, results_count=touched, session_id=session_id, created_at=now,
        ))
        return touched

    def record_feedback(
        self,
        log_id: int,
        was_useful: bool,
        used_ids: Iterable[str] | None = None,
        session_id: str | None = None,
    ) -> RetrievalLogEntry:
        entry = self.db.attach_feedback(log_id, was_useful)
        if was_useful:
            ids = list(used_ids) if used_ids is not None else entry.memory_ids
            self.mark_used(ids, session_id or entry.session_id)
        return entry

    # ---------- lifecycle ----------
    def _transition(self, memory_id: str, new_status: str, metadata: dict[str, Any], **changes: Any) -> MemoryRecord:
        before, after = self.db.update_memory(memory_id, status=new_status, metadata=metadata, **changes)
        if before.status != after.status:
            self.db.append_log(RetrievalLogEntry(
                event_type="lifecycle_transition",
                memory_id=memory_id,
                old_status=before.status,
                new_status=after.status,
                created_at=self.clock(),
            ))
        return after

    def forget(self, memory_id: str, reason: str | None = None) -> MemoryRecord:
        current = self.get(memory_id)
        if current.status == "forgotten":
            return current
        return self._transition(memory_id, "forgotten", {"forget_reason": reason or "unspecified"}, updated_at=self.clock())

    def reactivate(self, memory_id: str) -> MemoryRecord:
        """Operator action: bring an archived memory back. Forgotten is terminal."""
        current = self.get(memory_id)
        if current.status == "forgotten":
            raise ValueError(f"memory {memory_id} is forgotten and cannot be reactivated")
        if current.status == "active":
            return current
        now = self.clock()
        return self._transition(memory_id, "active", {"reactivated_at": now.isoformat()}, last_accessed_at=now, updated_at=now)

    def tag(self, memory_id: str, tags: Iterable[str]) -> MemoryRecord:
        new_tags = normalize_tags(tags)
        if not new_tags:
            raise ValueError("no tags given")
        _, after = self.db.update_memory(memory_id, tags=new_tags, updated_at=self.clock())
        return after

    def update_importance(self, memory_id: str, importance: float) -> MemoryRecord:
        _, after = self.db.update_memory(memory_id, importance=importance, updated_at=self.clock())
        return after

    def promote(self, memory_id: str, target_scope: str) -> MemoryRecord:
        """Operator action: move an active memory to a higher scope."""
        if target_scope not in SCOPES:
            raise ValueError(f"unknown scope {target_scope!r}")
        current = self.get(memory_id)
        if not current.is_active:
            raise ValueError(f"memory {memory_id} is {current.status} and cannot be promoted")
        if ScopeRegistry.rank(target_scope) <= ScopeRegistry.rank(current.scope):
            raise ValueError(f"cannot promote memory {memory_id} from {current.scope} to {target_scope}")
        now = self.clock()
        _, after = self.db.update_memory(
            memory_id,
            scope=target_scope,
            metadata={"promoted_at": now.isoformat(), "promoted_from": current.scope},
            updated_at=now,
        )
        self.db.append_log(RetrievalLogEntry(
            event_type="consolidation",
            memory_id=memory_id,
            old_status=current.scope,
            new_status=target_scope,
            created_at=now,
        ))
        logger.info(f"Promoted {memory_id}: {current.scope} -> {target_scope}")
        return after

    # ---------- batch passes ----------
    def run_consolidation_pass(self) -> ConsolidationSummary:
        return self.consolidation.run_pass(self.clock())

    def run_evolution_pass(self, dry_run: bool = False, lookback_days: int | None = None) -> EvolutionOutcome:
        return self.evolution.run_pass(dry_run=dry_run, lookback_days=lookback_days)

    def rollback(self, key: str) -> dict[str, Any]:
        return self.state.rollback(key)

    # ---------- introspection ----------
    async def peek(self, scope: str | None = None, sample_n: int = 5, focus: str | None = None) -> dict[str, Any]:
        """
        Counts, top tags and date range plus up to `sample_n` sample records.

        With `focus` the samples are the best lexical matches for it (no
        embedding call, nothing logged); otherwise they are random active records.
        """
        if scope is not None and scope not in SCOPES:
            raise ValueError(f"unknown scope {scope!r}")
        if sample_n < 0:
            raise ValueError("sample_n must be >= 0")
        samples: list[MemoryRecord] = []
        if sample_n and focus and focus.strip():
            hits = []
            for s in [scope] if scope else SCOPES:
                hits.extend(h for h in await self.index.search(s, focus, None, sample_n) if h.lexical is not None)
            hits.sort(key=lambda h: (-h.lexical, h.record.id))
            samples = [h.record for h in hits[:sample_n]]
        elif sample_n:
            samples = self.db.sample_memories(scope, sample_n)
        return {
            **self.db.stats(scope=scope),
            "scopes_queried": [scope] if scope else list(SCOPES),
            "samples": samples,
        }

    def partition(self, by: str, scope: str | None = None, max_partitions: int = 4) -> list[dict[str, Any]]:
        """Partition descriptors (key, count, avg_importance) for planning sub-queries."""
        return self.db.partition(by, scope=scope, max_partitions=max_partitions)

    def status(self) -> dict[str, Any]:
        snapshot = self.state.snapshot()
        return {
            **self.db.stats(),
            "pending_consolidation": len(self.db.pending_items()),
            "embedding_provider": self.embedder.name,
            "evolution": {
                "default_strategy": snapshot.default_strategy,
                "retrieval_weights": snapshot.value("retrieval_weights"),
                "scope_weights": snapshot.value("scope_weights"),
                "versions": dict(snapshot.versions),
                "fallbacks": list(snapshot.fallbacks),
            },
        }
