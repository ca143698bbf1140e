"""Tests for evolution state, analysis and the bounded evolution loop."""

import math

import pytest

from engram.config.schema import EvolutionConfig
from engram.errors import ConfigurationError, StaleStateError
from engram.evolution.analyze import analyze_scopes, analyze_strategies
from engram.evolution.loop import EvolutionLoop
from engram.evolution.propose import (
    CONFLICT,
    INSUFFICIENT_DATA,
    NO_SIGNAL,
    OUT_OF_BOUNDS,
    Evidence,
    clamp,
    compute_delta,
    validate,
)
from engram.evolution.state import DEFAULT_STATE, EvolutionSnapshot
from engram.memory.types import RetrievalLogEntry


@pytest.fixture
def loop(db, state, clock):
    return EvolutionLoop(db, state, EvolutionConfig(), clock=clock)


def _log(db, clock, strategy, useful, useless, memory_ids=(), unknown=0):
    for flag, n in ((True, useful), (False, useless), (None, unknown)):
        for _ in range(n):
            db.append_log(RetrievalLogEntry(
                strategy=strategy, was_useful=flag, memory_ids=list(memory_ids),
                results_count=len(memory_ids), created_at=clock(),
            ))


# ── Analysis ──────────────────────────────────────────────────────────


class TestAnalyze:
    def test_strategy_effectiveness(self):
        logs = [
            RetrievalLogEntry(strategy="bm25", was_useful=True),
            RetrievalLogEntry(strategy="bm25", was_useful=False),
            RetrievalLogEntry(strategy="bm25", was_useful=True),
            RetrievalLogEntry(strategy="hybrid"),
        ]
        stats = analyze_strategies(logs)
        assert stats["bm25"].effectiveness == pytest.approx(2 / 3)
        assert stats["bm25"].total_calls == 3
        assert math.isnan(stats["hybrid"].effectiveness)
        assert stats["hybrid"].unknown == 1

    def test_scope_utility_counts_feedback_entries(self):
        logs = [
            RetrievalLogEntry(memory_ids=["a", "b"], was_useful=True),
            RetrievalLogEntry(memory_ids=["a"], was_useful=False),
            RetrievalLogEntry(memory_ids=["b"]),
        ]
        stats = analyze_scopes(logs, {"a": "session", "b": "user"})
        assert stats["session"].total_retrieved == 2
        assert stats["session"].effectiveness == pytest.approx(0.5)
        assert stats["user"].total_retrieved == 1
        assert stats["user"].effectiveness == 1.0


# ── State store ───────────────────────────────────────────────────────


class TestStateStore:
    def test_seeded_defaults(self, state):
        snap = state.snapshot()
        assert snap.value("retrieval_weights") == DEFAULT_STATE["retrieval_weights"]
        assert snap.default_strategy == "hybrid"
        assert snap.scope_weight("session") == 1.5
        assert snap.thresholds.distinct_sessions == 3
        assert set(snap.versions.values()) == {1}

    def test_snapshot_is_immutable(self, state):
        snap = state.snapshot()
        with pytest.raises(Exception):
            snap.retrieval_weights.hybrid.lexical = 0.9

    @pytest.mark.parametrize("bad", [
        {"hybrid": {"lexical": 0.5, "vector": 0.5, "strength": 0.5}, "lexical_only": {"lexical": 0.6, "strength": 0.4}},
        {"hybrid": {"lexical": "x"}},
        None,
        [1, 2, 3],
    ])
    def test_malformed_row_falls_back_to_default(self, db, state, bad):
        db.write_state_raw("retrieval_weights", bad)
        snap = state.snapshot()
        assert snap.value("retrieval_weights") == DEFAULT_STATE["retrieval_weights"]
        assert snap.fallbacks == ("retrieval_weights",)
        assert snap.scope_weight("user") == 0.7

    def test_commit_validates_before_writing(self, state):
        with pytest.raises(ConfigurationError):
            state.commit({"scope_weights": {"session": -1, "project": 1, "user": 1}}, {"scope_weights": 1})
        assert state.snapshot().versions["scope_weights"] == 1

    def test_commit_cas(self, state):
        new = {"session": 1.4, "project": 1.0, "user": 0.8}
        assert state.commit({"scope_weights": new}, {"scope_weights": 1}) == {"scope_weights": 2}
        with pytest.raises(StaleStateError):
            state.commit({"scope_weights": new}, {"scope_weights": 1})

    def test_rollback_restores_previous_value(self, state):
        new = {"session": 1.4, "project": 1.0, "user": 0.8}
        state.commit({"scope_weights": new}, {"scope_weights": 1})
        restored = state.rollback("scope_weights")

        assert restored == DEFAULT_STATE["scope_weights"]
        snap = state.snapshot()
        assert snap.value("scope_weights") == DEFAULT_STATE["scope_weights"]
        assert snap.versions["scope_weights"] == 3

    def test_rollback_without_history(self, state):
        with pytest.raises(ValueError):
            state.rollback("scope_weights")
        with pytest.raises(ConfigurationError):
            state.rollback("nonsense")


# ── Proposal stages ───────────────────────────────────────────────────


def _evidence(hybrid_eff: float, bm25_eff: float, n: int = 40) -> Evidence:
    logs = []
    for strategy, eff in (("hybrid", hybrid_eff), ("bm25", bm25_eff)):
        useful = round(eff * n)
        logs += [RetrievalLogEntry(strategy=strategy, was_useful=True)] * useful
        logs += [RetrievalLogEntry(strategy=strategy, was_useful=False)] * (n - useful)
    return Evidence(
        snapshot=EvolutionSnapshot.default(),
        strategies=analyze_strategies(logs),
        scopes={},
        log_count=len(logs),
        lookback_days=7,
    )


class TestProposalStages:
    @pytest.mark.parametrize("hybrid_eff,bm25_eff", [
        (1.0, 0.0), (0.0, 1.0), (0.6, 0.5), (0.5, 0.6), (0.9, 0.85), (0.25, 0.75),
    ])
    def test_weights_stay_normalised_and_bounded(self, hybrid_eff, bm25_eff):
        config = EvolutionConfig()
        evidence = _evidence(hybrid_eff, bm25_eff)
        proposal = clamp(compute_delta(evidence, config), evidence.snapshot, config)
        assert validate(proposal, config) is None

        for group in proposal.values["retrieval_weights"].values():
            assert sum(group.values()) == pytest.approx(1.0, abs=1e-6)
            assert all(config.weight_min <= w <= config.weight_max for w in group.values())
        for change in proposal.changes:
            if change.key == "retrieval_weights":
                assert abs(change.proposed - change.current) <= config.max_step + 1e-9

    def test_equal_effectiveness_is_no_signal(self):
        config = EvolutionConfig()
        evidence = _evidence(0.5, 0.5)
        proposal = clamp(compute_delta(evidence, config), evidence.snapshot, config)
        assert validate(proposal, config).reason == NO_SIGNAL

    def test_per_strategy_minimum(self):
        config = EvolutionConfig()
        evidence = _evidence(1.0, 0.0, n=10)
        assert compute_delta(evidence, config).hybrid == {}


# ── Loop ──────────────────────────────────────────────────────────────


class TestEvolutionLoop:
    def test_insufficient_data(self, loop, db, clock, state):
        _log(db, clock, "hybrid", 5, 5, unknown=50)
        outcome = loop.run_pass()
        assert not outcome.accepted
        assert outcome.reason == INSUFFICIENT_DATA
        assert outcome.feedback_count == 10
        assert state.snapshot().versions["retrieval_weights"] == 1

    def test_hybrid_better_shifts_weight_to_vector(self, loop, db, clock, state):
        _log(db, clock, "hybrid", 27, 3)
        _log(db, clock, "bm25", 9, 21)
        outcome = loop.run_pass()

        assert outcome.accepted and outcome.applied
        hybrid = state.snapshot().value("retrieval_weights")["hybrid"]
        assert hybrid["vector"] == pytest.approx(0.35)
        assert hybrid["lexical"] == pytest.approx(0.25)
        assert hybrid["strength"] == pytest.approx(0.4)
        assert sum(hybrid.values()) == pytest.approx(1.0)
        assert state.snapshot().versions["retrieval_weights"] == 2

        [entry] = db.list_logs(event_type="evolution")
        assert "retrieval_weights" in entry.query

    def test_dry_run_writes_nothing(self, loop, db, clock, state):
        _log(db, clock, "hybrid", 27, 3)
        _log(db, clock, "bm25", 9, 21)
        outcome = loop.run_pass(dry_run=True)

        assert outcome.accepted and not outcome.applied
        assert outcome.retrieval_weights["hybrid"]["vector"] == pytest.approx(0.35)
        assert state.snapshot().value("retrieval_weights") == DEFAULT_STATE["retrieval_weights"]
        assert db.list_logs(event_type="evolution") == []

    def test_out_of_bounds_rejected(self, loop, db, clock, state):
        db.write_state_raw("retrieval_weights", {
            "hybrid": {"lexical": 0.08, "vector": 0.52, "strength": 0.4},
            "lexical_only": {"lexical": 0.6, "strength": 0.4},
        })
        _log(db, clock, "hybrid", 27, 3)
        _log(db, clock, "bm25", 9, 21)
        outcome = loop.run_pass()

        assert outcome.reason == OUT_OF_BOUNDS
        assert state.snapshot().value("retrieval_weights")["hybrid"]["lexical"] == 0.08

    def test_scope_weights_follow_usefulness(self, loop, db, clock, make_memory, state):
        s = make_memory("session note", scope="session")
        u = make_memory("user note", scope="user")
        _log(db, clock, "bm25", 20, 0, memory_ids=[s.id])
        _log(db, clock, "bm25", 0, 20, memory_ids=[u.id])
        outcome = loop.run_pass()

        assert outcome.accepted
        weights = state.snapshot().value("scope_weights")
        assert weights["session"] == pytest.approx(1.55)
        assert weights["user"] == pytest.approx(0.65)
        assert weights["project"] == 1.0

    def test_better_strategy_becomes_default(self, loop, db, clock, state):
        _log(db, clock, "bm25", 18, 2)
        _log(db, clock, "hybrid", 5, 15)
        outcome = loop.run_pass()

        assert outcome.accepted
        assert state.snapshot().default_strategy == "bm25"
        hybrid = state.snapshot().value("retrieval_weights")["hybrid"]
        assert hybrid["vector"] == pytest.approx(0.25)

    def test_concurrent_commit_is_conflict(self, loop, db, clock, state, monkeypatch):
        _log(db, clock, "hybrid", 27, 3)
        _log(db, clock, "bm25", 9, 21)
        original = loop.gather

        def racing_gather(days):
            evidence = original(days)
            # Another writer commits between our read and our commit.
            state.commit(
                {"retrieval_weights": DEFAULT_STATE["retrieval_weights"]},
                {"retrieval_weights": evidence.snapshot.versions["retrieval_weights"]},
            )
            return evidence

        monkeypatch.setattr(loop, "gather", racing_gather)
        outcome = loop.run_pass()

        assert not outcome.accepted
        assert outcome.reason == CONFLICT
        snap = state.snapshot()
        assert snap.versions["retrieval_weights"] == 2
        assert snap.value("retrieval_weights") == DEFAULT_STATE["retrieval_weights"]

    def test_old_entries_outside_window_ignored(self, loop, db, clock):
        _log(db, clock, "hybrid", 27, 3)
        _log(db, clock, "bm25", 9, 21)
        clock.advance(days=8)
        outcome = loop.run_pass()
        assert outcome.reason == INSUFFICIENT_DATA

    def test_apply_then_rollback(self, loop, db, clock, state):
        _log(db, clock, "hybrid", 27, 3)
        _log(db, clock, "bm25", 9, 21)
        loop.run_pass()
        state.rollback("retrieval_weights")
        assert state.snapshot().value("retrieval_weights") == DEFAULT_STATE["retrieval_weights"]
