"""Effectiveness statistics over the retrieval log."""

import math
from dataclasses import dataclass
from typing import Mapping, Sequence

from engram.memory.types import RetrievalLogEntry


@dataclass(frozen=True)
class StrategyStats:
    strategy: str
    total_calls: int
    useful: int
    useless: int
    unknown: int

    @property
    def with_feedback(self) -> int:
        return self.useful + self.useless

    @property
    def effectiveness(self) -> float:
        """useful / (useful + useless); NaN without feedback."""
        return self.useful / self.with_feedback if self.with_feedback else math.nan


@dataclass(frozen=True)
class ScopeStats:
    scope: str
    total_retrieved: int
    useful: int

    @property
    def effectiveness(self) -> float:
        return self.useful / self.total_retrieved if self.total_retrieved else 0.0


def analyze_strategies(logs: Sequence[RetrievalLogEntry]) -> dict[str, StrategyStats]:
    counts: dict[str, list[int]] = {}
    for log in logs:
        c = counts.setdefault(log.strategy or "unknown", [0, 0, 0, 0])
        c[0] += 1
        if log.was_useful is True:
            c[1] += 1
        elif log.was_useful is False:
            c[2] += 1
        else:
            c[3] += 1
    stats = [StrategyStats(s, *c) for s, c in counts.items()]
    stats.sort(key=lambda s: (-s.total_calls, s.strategy))
    return {s.strategy: s for s in stats}


def analyze_scopes(
    logs: Sequence[RetrievalLogEntry],
    memory_scopes: Mapping[str, str],
) -> dict[str, ScopeStats]:
    """
    Usefulness of retrieved memories per scope.

    Only entries carrying feedback count; each returned id is attributed to the
    scope the memory lives in now.
    """
    counts: dict[str, list[int]] = {}
    for log in logs:
        if log.was_useful is None:
            continue
        for mid in log.memory_ids:
            c = counts.setdefault(memory_scopes.get(mid, "unknown"), [0, 0])
            c[0] += 1
            if log.was_useful:
                c[1] += 1
    stats = [ScopeStats(s, *c) for s, c in counts.items()]
    stats.sort(key=lambda s: (-s.total_retrieved, s.scope))
    return {s.scope: s for s in stats}
