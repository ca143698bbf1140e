"""
Bounded proposal pipeline.

gather -> volume check -> compute delta -> clamp -> validate. Each stage
returns a value object; a stage that decides "no" returns a Rejection, which
is a normal outcome and not an error.
"""

import math
from dataclasses import dataclass, field
from typing import Any

from engram.config.schema import EvolutionConfig
from engram.evolution.analyze import ScopeStats, StrategyStats
from engram.evolution.state import (
    RETRIEVAL_STRATEGY,
    RETRIEVAL_WEIGHTS,
    SCOPE_WEIGHTS,
    STRATEGIES,
    WEIGHT_TOLERANCE,
    EvolutionSnapshot,
    renormalize,
)
from engram.memory.types import SCOPES

# Calls with feedback a strategy needs before it can become the default.
STRATEGY_MIN_CALLS = 10
# Changes smaller than this are noise.
MIN_CHANGE = 0.005

INSUFFICIENT_DATA = "insufficient_data"
NO_SIGNAL = "no_signal"
OUT_OF_BOUNDS = "out_of_bounds"
CONFLICT = "conflict"


@dataclass(frozen=True)
class Rejection:
    reason: str
    detail: str = ""


@dataclass
class Evidence:
    """Output of the gather stage."""
    snapshot: EvolutionSnapshot
    strategies: dict[str, StrategyStats]
    scopes: dict[str, ScopeStats]
    log_count: int
    lookback_days: int

    @property
    def feedback_count(self) -> int:
        return sum(s.with_feedback for s in self.strategies.values())


@dataclass
class ParameterChange:
    key: str
    name: str
    current: Any
    proposed: Any
    reason: str


@dataclass
class Delta:
    """Raw, unclamped deltas."""
    hybrid: dict[str, float] = field(default_factory=dict)
    scopes: dict[str, float] = field(default_factory=dict)
    strategy: str | None = None
    reasons: dict[str, str] = field(default_factory=dict)

    @property
    def empty(self) -> bool:
        return not self.hybrid and not self.scopes and self.strategy is None


@dataclass
class Proposal:
    """Clamped, renormalised candidate values for the affected keys."""
    values: dict[str, Any]
    changes: list[ParameterChange]

    @property
    def keys(self) -> list[str]:
        return list(self.values)


def check_volume(evidence: Evidence, config: EvolutionConfig) -> Rejection | None:
    if evidence.feedback_count < config.min_log_volume:
        return Rejection(
            INSUFFICIENT_DATA,
            f"{evidence.feedback_count} entries with feedback in {evidence.lookback_days}d, need {config.min_log_volume}",
        )
    return None


def _effective(stats: StrategyStats | None, min_samples: int) -> float | None:
    if stats is None or stats.with_feedback < min_samples or math.isnan(stats.effectiveness):
        return None
    return stats.effectiveness


def compute_delta(evidence: Evidence, config: EvolutionConfig) -> Delta:
    delta = Delta()
    strategies = evidence.strategies

    hybrid_eff = _effective(strategies.get("hybrid"), config.min_samples)
    bm25_eff = _effective(strategies.get("bm25"), config.min_samples)
    if hybrid_eff is not None and bm25_eff is not None:
        gap = hybrid_eff - bm25_eff
        step = gap * config.step_scale
        if abs(step) >= MIN_CHANGE:
            delta.hybrid = {"vector": step, "lexical": -step}
            delta.reasons[RETRIEVAL_WEIGHTS] = (
                f"hybrid effectiveness {hybrid_eff:.0%} vs bm25 {bm25_eff:.0%}"
            )

    eligible = [
        s for s in evidence.scopes.values()
        if s.scope in SCOPES and s.total_retrieved >= config.min_samples
    ]
    if len(eligible) >= 2:
        mean_eff = sum(s.effectiveness for s in eligible) / len(eligible)
        for s in eligible:
            d = (s.effectiveness - mean_eff) * config.step_scale
            if abs(d) >= MIN_CHANGE:
                delta.scopes[s.scope] = d
        if delta.scopes:
            delta.reasons[SCOPE_WEIGHTS] = ", ".join(
                f"{s.scope} {s.effectiveness:.0%}" for s in eligible
            ) + f" vs mean {mean_eff:.0%}"

    current = evidence.snapshot.default_strategy
    ranked = sorted(
        (
            s for s in strategies.values()
            if s.strategy in STRATEGIES and s.with_feedback >= STRATEGY_MIN_CALLS
        ),
        key=lambda s: (-s.effectiveness, s.strategy),
    )
    current_stats = strategies.get(current)
    if ranked and current_stats is not None and current_stats.with_feedback >= STRATEGY_MIN_CALLS:
        best = ranked[0]
        if best.strategy != current and best.effectiveness > current_stats.effectiveness + config.strategy_switch_margin:
            delta.strategy = best.strategy
            delta.reasons[RETRIEVAL_STRATEGY] = (
                f"{best.strategy} {best.effectiveness:.0%} vs {current} {current_stats.effectiveness:.0%}"
            )
    return delta


def _clamp(value: float, limit: float) -> float:
    return max(-limit, min(limit, value))


def clamp(delta: Delta, snapshot: EvolutionSnapshot, config: EvolutionConfig) -> Proposal:
    """Clamp each weight delta to max_step, apply it, and renormalise retrieval groups."""
    values: dict[str, Any] = {}
    changes: list[ParameterChange] = []

    if delta.hybrid:
        current = snapshot.value(RETRIEVAL_WEIGHTS)
        hybrid = dict(current["hybrid"])
        for name, d in delta.hybrid.items():
            hybrid[name] = hybrid[name] + _clamp(d, config.max_step)
        hybrid = renormalize(hybrid)
        for name in current["hybrid"]:
            if abs(hybrid[name] - current["hybrid"][name]) > WEIGHT_TOLERANCE:
                changes.append(ParameterChange(
                    RETRIEVAL_WEIGHTS, f"hybrid.{name}", current["hybrid"][name], hybrid[name],
                    delta.reasons.get(RETRIEVAL_WEIGHTS, ""),
                ))
        values[RETRIEVAL_WEIGHTS] = {
            "hybrid": hybrid,
            "lexical_only": renormalize(current["lexical_only"]),
        }

    if delta.scopes:
        current = snapshot.value(SCOPE_WEIGHTS)
        scopes = dict(current)
        for scope, d in delta.scopes.items():
            scopes[scope] = current[scope] + _clamp(d, config.max_step)
            changes.append(ParameterChange(
                SCOPE_WEIGHTS, scope, current[scope], scopes[scope], delta.reasons.get(SCOPE_WEIGHTS, ""),
            ))
        values[SCOPE_WEIGHTS] = scopes

    if delta.strategy is not None:
        values[RETRIEVAL_STRATEGY] = {"default_strategy": delta.strategy}
        changes.append(ParameterChange(
            RETRIEVAL_STRATEGY, "default_strategy", snapshot.default_strategy, delta.strategy,
            delta.reasons.get(RETRIEVAL_STRATEGY, ""),
        ))

    return Proposal(values=values, changes=changes)


def validate(proposal: Proposal, config: EvolutionConfig) -> Rejection | None:
    if not proposal.changes:
        return Rejection(NO_SIGNAL, "no parameter would change")

    weights = proposal.values.get(RETRIEVAL_WEIGHTS)
    if weights is not None:
        for group, ws in weights.items():
            total = sum(ws.values())
            if abs(total - 1.0) > WEIGHT_TOLERANCE:
                return Rejection(OUT_OF_BOUNDS, f"{group} weights sum to {total:.6f}")
            for name, w in ws.items():
                if not (config.weight_min <= w <= config.weight_max):
                    return Rejection(
                        OUT_OF_BOUNDS,
                        f"{group}.{name}={w:.4f} outside [{config.weight_min}, {config.weight_max}]",
                    )

    scopes = proposal.values.get(SCOPE_WEIGHTS)
    if scopes is not None:
        for scope, w in scopes.items():
            if not (config.scope_weight_min <= w <= config.scope_weight_max):
                return Rejection(
                    OUT_OF_BOUNDS,
                    f"scope {scope}={w:.4f} outside [{config.scope_weight_min}, {config.scope_weight_max}]",
                )
    return None
