"""Evolution pass: turn logged retrieval outcomes into bounded parameter updates."""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable

from loguru import logger

from engram.config.schema import EvolutionConfig
from engram.errors import StaleStateError
from engram.evolution.analyze import analyze_scopes, analyze_strategies
from engram.evolution.propose import (
    CONFLICT,
    Evidence,
    ParameterChange,
    Proposal,
    Rejection,
    check_volume,
    clamp,
    compute_delta,
    validate,
)
from engram.evolution.state import RETRIEVAL_WEIGHTS, EvolutionStateStore
from engram.memory.store import MemoryDB
from engram.memory.types import RetrievalLogEntry, utcnow


@dataclass
class EvolutionOutcome:
    accepted: bool
    applied: bool = False
    dry_run: bool = False
    reason: str | None = None
    detail: str = ""
    changes: list[ParameterChange] = field(default_factory=list)
    proposed: dict[str, Any] = field(default_factory=dict)
    versions: dict[str, int] = field(default_factory=dict)
    retrieval_weights: dict[str, Any] = field(default_factory=dict)
    log_count: int = 0
    feedback_count: int = 0


class EvolutionLoop:
    """
    Single writer of the evolution state.

    Stages run in order and each returns a value object; the first Rejection
    ends the pass. Commits are compare-and-swap on the versions observed when
    the snapshot was read.
    """

    def __init__(
        self,
        db: MemoryDB,
        state: EvolutionStateStore,
        config: EvolutionConfig | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.state = state
        self.config = config or EvolutionConfig()
        self.clock = clock

    def gather(self, lookback_days: int) -> Evidence:
        """Read the window of search entries. Read failures propagate."""
        since = self.clock() - timedelta(days=lookback_days)
        snapshot = self.state.snapshot()
        logs = self.db.list_logs(since=since, event_type="search")
        ids = {mid for log in logs if log.was_useful is not None for mid in log.memory_ids}
        memory_scopes = {mid: m.scope for mid, m in self.db.get_memories(ids).items()}
        return Evidence(
            snapshot=snapshot,
            strategies=analyze_strategies(logs),
            scopes=analyze_scopes(logs, memory_scopes),
            log_count=len(logs),
            lookback_days=lookback_days,
        )

    def _rejected(self, evidence: Evidence, rejection: Rejection, proposal: Proposal | None = None) -> EvolutionOutcome:
        logger.info(f"Evolution proposal rejected: {rejection.reason} ({rejection.detail})")
        return EvolutionOutcome(
            accepted=False,
            reason=rejection.reason,
            detail=rejection.detail,
            changes=proposal.changes if proposal else [],
            proposed=proposal.values if proposal else {},
            versions=dict(evidence.snapshot.versions),
            retrieval_weights=evidence.snapshot.value(RETRIEVAL_WEIGHTS),
            log_count=evidence.log_count,
            feedback_count=evidence.feedback_count,
        )

    def run_pass(self, dry_run: bool = False, lookback_days: int | None = None) -> EvolutionOutcome:
        lookback_days = lookback_days or self.config.lookback_days
        with self.state.write_lock:
            evidence = self.gather(lookback_days)

            rejection = check_volume(evidence, self.config)
            if rejection:
                return self._rejected(evidence, rejection)

            delta = compute_delta(evidence, self.config)
            proposal = clamp(delta, evidence.snapshot, self.config)

            rejection = validate(proposal, self.config)
            if rejection:
                return self._rejected(evidence, rejection, proposal)

            weights_after = proposal.values.get(RETRIEVAL_WEIGHTS, evidence.snapshot.value(RETRIEVAL_WEIGHTS))
            outcome = EvolutionOutcome(
                accepted=True,
                dry_run=dry_run,
                changes=proposal.changes,
                proposed=proposal.values,
                versions=dict(evidence.snapshot.versions),
                retrieval_weights=weights_after,
                log_count=evidence.log_count,
                feedback_count=evidence.feedback_count,
            )
            if dry_run:
                logger.info(f"Evolution dry run: {len(proposal.changes)} change(s) proposed")
                return outcome

            expected = {key: evidence.snapshot.versions.get(key, 0) for key in proposal.keys}
            try:
                new_versions = self.state.commit(proposal.values, expected)
            except StaleStateError as e:
                logger.warning(f"Evolution commit lost the race: {e}")
                return self._rejected(evidence, Rejection(CONFLICT, str(e)), proposal)

            outcome.applied = True
            outcome.versions.update(new_versions)
            self.db.append_log(RetrievalLogEntry(
                event_type="evolution",
                query="; ".join(f"{c.key}.{c.name}: {c.current} -> {c.proposed}" for c in proposal.changes),
                strategy=evidence.snapshot.default_strategy,
                results_count=len(proposal.changes),
                created_at=self.clock(),
            ))
            logger.info(
                f"Evolution applied {len(proposal.changes)} change(s) from "
                f"{evidence.feedback_count} feedback entries"
            )
            return outcome
