"""
Consolidation pass: promote, archive and merge memories.

scan() inspects active records and enqueues work; apply() drains the queue one
item at a time. A failing item is marked failed and the pass moves on.
"""

from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Callable

import numpy as np
from loguru import logger

from engram.config.schema import ConsolidationConfig
from engram.evolution.state import EvolutionSnapshot, EvolutionStateStore
from engram.memory.decay import compute_strength
from engram.memory.scopes import ScopeRegistry
from engram.memory.store import MemoryDB
from engram.memory.types import SCOPES, ConsolidationItem, MemoryRecord, RetrievalLogEntry, utcnow


class Action(Enum):
    ARCHIVE = "archive"
    PROMOTE = "promote"
    MERGE = "merge"
    SKIP = "skip"


@dataclass
class Transition:
    """One applied state change. old/new are statuses, or scopes for promotions."""
    memory_id: str
    action: Action
    old: str
    new: str
    item_id: int | None = None


@dataclass
class ConsolidationSummary:
    scanned: int = 0
    enqueued: int = 0
    counts: Counter = field(default_factory=Counter)
    transitions: list[Transition] = field(default_factory=list)
    failed_items: list[int] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.transitions)


def _keeper_order(m: MemoryRecord):
    # Higher importance, more accesses, older, then id.
    return (-m.importance, -m.access_count, m.created_at, m.id)


class ConsolidationEngine:
    def __init__(
        self,
        db: MemoryDB,
        state: EvolutionStateStore,
        config: ConsolidationConfig | None = None,
        strict_invariants: bool = False,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.state = state
        self.config = config or ConsolidationConfig()
        self.strict_invariants = strict_invariants
        self.clock = clock
        self.registry = ScopeRegistry()

    def run_pass(self, now: datetime | None = None) -> ConsolidationSummary:
        now = now or self.clock()
        snapshot = self.state.snapshot()
        summary = ConsolidationSummary()
        self.scan(now, snapshot, summary)
        self.apply(now, snapshot, summary)
        logger.info(
            f"Consolidation pass: scanned={summary.scanned} enqueued={summary.enqueued} "
            f"archived={summary.counts['archived']} promoted={summary.counts['promoted']} "
            f"merged={summary.counts['merged']} skipped={summary.counts['skipped']} "
            f"failed={summary.counts['failed']}"
        )
        return summary

    # ---------- scan ----------
    def _strength(self, m: MemoryRecord, now: datetime, snapshot: EvolutionSnapshot) -> float:
        return compute_strength(m, now, snapshot.half_lives, strict=self.strict_invariants)

    def _enqueue(self, summary: ConsolidationSummary, item: ConsolidationItem) -> None:
        if self.db.enqueue(item) is not None:
            summary.enqueued += 1

    def scan(self, now: datetime, snapshot: EvolutionSnapshot, summary: ConsolidationSummary) -> None:
        thresholds = snapshot.thresholds
        by_scope: dict[str, list[MemoryRecord]] = {s: [] for s in SCOPES}

        for m in self.db.iter_active(self.config.batch_size):
            summary.scanned += 1
            target = self.registry.promotion_target(m, thresholds)
            if target:
                self._enqueue(summary, ConsolidationItem(
                    memory_id=m.id, reason="promotable", priority=m.importance,
                    detail={"target_scope": target}, created_at=now,
                ))
            else:
                s = self._strength(m, now, snapshot)
                if s < self.config.archive_threshold and not m.was_promoted:
                    self._enqueue(summary, ConsolidationItem(
                        memory_id=m.id, reason="stale", priority=1.0 - s,
                        detail={"strength": s}, created_at=now,
                    ))
            if m.embedding:
                by_scope[m.scope].append(m)

        for scope, records in by_scope.items():
            for lesser, keeper, sim in self.find_duplicates(records):
                self._enqueue(summary, ConsolidationItem(
                    memory_id=lesser.id, reason="duplicate-candidate", priority=sim,
                    detail={"keeper_id": keeper.id, "similarity": sim, "scope": scope}, created_at=now,
                ))

    def find_duplicates(self, records: list[MemoryRecord]) -> list[tuple[MemoryRecord, MemoryRecord, float]]:
        """(lesser, keeper, similarity) pairs at or above duplicate_threshold; each record loses at most once."""
        groups: dict[int, list[MemoryRecord]] = {}
        for m in records:
            groups.setdefault(len(m.embedding), []).append(m)

        pairs: list[tuple[float, MemoryRecord, MemoryRecord]] = []
        for group in groups.values():
            if len(group) < 2:
                continue
            mat = np.asarray([m.embedding for m in group], dtype=np.float32)
            norms = np.linalg.norm(mat, axis=1, keepdims=True)
            norms[norms == 0] = 1.0
            mat = mat / norms
            sims = mat @ mat.T
            rows, cols = np.triu_indices(len(group), k=1)
            for i, j in zip(rows.tolist(), cols.tolist()):
                sim = float(sims[i, j])
                if sim >= self.config.duplicate_threshold:
                    a, b = sorted((group[i], group[j]), key=_keeper_order)
                    pairs.append((sim, a, b))

        pairs.sort(key=lambda p: (-p[0], p[2].id))
        losers: set[str] = set()
        out: list[tuple[MemoryRecord, MemoryRecord, float]] = []
        for sim, keeper, lesser in pairs:
            if keeper.id in losers or lesser.id in losers:
                continue
            losers.add(lesser.id)
            out.append((lesser, keeper, min(sim, 1.0)))
        return out

    # ---------- apply ----------
    def apply(self, now: datetime, snapshot: EvolutionSnapshot, summary: ConsolidationSummary) -> None:
        for item in self.db.pending_items():
            try:
                transition = self._apply_item(item, now, snapshot)
            except Exception as e:
                logger.error(f"Consolidation item {item.id} ({item.reason} {item.memory_id}) failed: {e}")
                self.db.finish_item(item.id, "failed", error=str(e))
                summary.counts["failed"] += 1
                summary.failed_items.append(item.id)
                continue

            if transition is None:
                self.db.finish_item(item.id, "done", detail={**item.detail, "outcome": "skipped"})
                summary.counts["skipped"] += 1
                continue

            transition.item_id = item.id
            self.db.finish_item(item.id, "done", detail={**item.detail, "outcome": transition.action.value})
            summary.transitions.append(transition)
            summary.counts[{"archive": "archived", "promote": "promoted", "merge": "merged"}[transition.action.value]] += 1

    def _apply_item(self, item: ConsolidationItem, now: datetime, snapshot: EvolutionSnapshot) -> Transition | None:
        m = self.db.get_memory(item.memory_id)
        if m is None or not m.is_active:
            logger.debug(f"Skip {item.reason} {item.memory_id}: no longer active")
            return None
        if item.reason == "stale":
            return self._archive(m, now, snapshot)
        if item.reason == "promotable":
            return self._promote(m, now, snapshot)
        if item.reason == "duplicate-candidate":
            return self._merge(m, item, now)
        raise ValueError(f"unknown queue reason {item.reason!r}")

    def _log_transition(self, memory_id: str, old: str, new: str, now: datetime, event_type: str = "lifecycle_transition") -> None:
        self.db.append_log(RetrievalLogEntry(
            event_type=event_type, memory_id=memory_id, old_status=old, new_status=new, created_at=now,
        ))

    def _archive(self, m: MemoryRecord, now: datetime, snapshot: EvolutionSnapshot) -> Transition | None:
        if m.was_promoted or self.registry.is_promotable(m, snapshot.thresholds):
            return None
        if self._strength(m, now, snapshot) >= self.config.archive_threshold:
            return None
        self.db.update_memory(m.id, status="archived", metadata={"archived_at": now.isoformat()}, updated_at=now)
        self._log_transition(m.id, "active", "archived", now)
        logger.debug(f"Archived {m.id}")
        return Transition(m.id, Action.ARCHIVE, "active", "archived")

    def _promote(self, m: MemoryRecord, now: datetime, snapshot: EvolutionSnapshot) -> Transition | None:
        target = self.registry.promotion_target(m, snapshot.thresholds)
        if target is None:
            return None
        self.db.update_memory(
            m.id,
            scope=target,
            metadata={"promoted_at": now.isoformat(), "promoted_from": m.scope},
            updated_at=now,
        )
        self._log_transition(m.id, m.scope, target, now, event_type="consolidation")
        logger.debug(f"Promoted {m.id}: {m.scope} -> {target}")
        return Transition(m.id, Action.PROMOTE, m.scope, target)

    def _merge(self, lesser: MemoryRecord, item: ConsolidationItem, now: datetime) -> Transition | None:
        keeper_id = item.detail.get("keeper_id")
        if not keeper_id or self.db.get_memory(keeper_id) is None:
            return None
        merged = self.db.merge_memories(keeper_id, lesser.id, now)
        if merged is None:
            return None
        self._log_transition(lesser.id, "active", "forgotten", now)
        logger.debug(f"Merged {lesser.id} into {keeper_id} (similarity {item.detail.get('similarity', 0):.3f})")
        return Transition(lesser.id, Action.MERGE, "active", "forgotten")
