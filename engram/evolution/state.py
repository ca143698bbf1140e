"""
Versioned ranking parameters.

Each key of the evolution_state table is parsed into a frozen value. A
retrieval reads one EvolutionSnapshot and uses it for the whole call; writes
replace rows through compare-and-swap on the per-key version.
"""

import math
import threading
from typing import Any, Mapping

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from engram.errors import ConfigurationError
from engram.memory.decay import DEFAULT_HALF_LIVES
from engram.memory.scopes import PromotionThresholds
from engram.memory.store import MemoryDB

WEIGHT_TOLERANCE = 1e-6
STRATEGIES: tuple[str, ...] = ("hybrid", "bm25", "rrf")

RETRIEVAL_WEIGHTS = "retrieval_weights"
SCOPE_WEIGHTS = "scope_weights"
DECAY_HALF_LIVES = "decay_half_lives"
PROMOTION_THRESHOLDS = "promotion_thresholds"
RETRIEVAL_STRATEGY = "retrieval_strategy"

DEFAULT_STATE: dict[str, Any] = {
    RETRIEVAL_WEIGHTS: {
        "hybrid": {"lexical": 0.3, "vector": 0.3, "strength": 0.4},
        "lexical_only": {"lexical": 0.6, "strength": 0.4},
    },
    SCOPE_WEIGHTS: {"session": 1.5, "project": 1.0, "user": 0.7},
    DECAY_HALF_LIVES: dict(DEFAULT_HALF_LIVES),
    PROMOTION_THRESHOLDS: {"importance": 0.5, "access_count": 2, "distinct_sessions": 3},
    RETRIEVAL_STRATEGY: {"default_strategy": "hybrid"},
}


def _check_sum(values: Mapping[str, float], group: str) -> None:
    total = sum(values.values())
    if abs(total - 1.0) > WEIGHT_TOLERANCE:
        raise ValueError(f"{group} weights must sum to 1.0, got {total:.6f}")


class HybridWeights(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    lexical: float = Field(ge=0.0, le=1.0, allow_inf_nan=False)
    vector: float = Field(ge=0.0, le=1.0, allow_inf_nan=False)
    strength: float = Field(ge=0.0, le=1.0, allow_inf_nan=False)

    @model_validator(mode="after")
    def _sums_to_one(self) -> "HybridWeights":
        _check_sum(self.model_dump(), "hybrid")
        return self


class LexicalOnlyWeights(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    lexical: float = Field(ge=0.0, le=1.0, allow_inf_nan=False)
    strength: float = Field(ge=0.0, le=1.0, allow_inf_nan=False)

    @model_validator(mode="after")
    def _sums_to_one(self) -> "LexicalOnlyWeights":
        _check_sum(self.model_dump(), "lexical_only")
        return self


class RetrievalWeights(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    hybrid: HybridWeights
    lexical_only: LexicalOnlyWeights


class ScopeWeights(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    session: float = Field(gt=0.0, allow_inf_nan=False)
    project: float = Field(gt=0.0, allow_inf_nan=False)
    user: float = Field(gt=0.0, allow_inf_nan=False)

    def get(self, scope: str) -> float:
        return getattr(self, scope)


class HalfLives(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    working: float = Field(gt=0.0, allow_inf_nan=False)
    episodic: float = Field(gt=0.0, allow_inf_nan=False)
    semantic: float = Field(gt=0.0, allow_inf_nan=False)
    procedural: float = Field(gt=0.0, allow_inf_nan=False)


class PromotionSettings(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    importance: float = Field(ge=0.0, le=1.0, allow_inf_nan=False)
    access_count: int = Field(ge=0)
    distinct_sessions: int = Field(ge=1)


class StrategySettings(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    default_strategy: str

    @field_validator("default_strategy")
    @classmethod
    def _known(cls, v: str) -> str:
        if v not in STRATEGIES:
            raise ValueError(f"unknown strategy {v!r}")
        return v


_PARSERS: dict[str, type[BaseModel]] = {
    RETRIEVAL_WEIGHTS: RetrievalWeights,
    SCOPE_WEIGHTS: ScopeWeights,
    DECAY_HALF_LIVES: HalfLives,
    PROMOTION_THRESHOLDS: PromotionSettings,
    RETRIEVAL_STRATEGY: StrategySettings,
}
STATE_KEYS: tuple[str, ...] = tuple(_PARSERS)


def parse_state_value(key: str, value: Any) -> BaseModel:
    """Validate one stored row. Raises ConfigurationError when malformed."""
    parser = _PARSERS.get(key)
    if parser is None:
        raise ConfigurationError(f"unknown evolution state key {key!r}")
    try:
        return parser.model_validate(value)
    except ValidationError as e:
        raise ConfigurationError(f"malformed {key}: {e.errors()[0]['msg']}") from e


class EvolutionSnapshot(BaseModel):
    """Immutable view of all ranking parameters, read once per request."""

    model_config = ConfigDict(frozen=True)

    retrieval_weights: RetrievalWeights
    scope_weights: ScopeWeights
    decay_half_lives: HalfLives
    promotion_thresholds: PromotionSettings
    retrieval_strategy: StrategySettings
    versions: dict[str, int] = Field(default_factory=dict)
    fallbacks: tuple[str, ...] = ()

    @classmethod
    def default(cls) -> "EvolutionSnapshot":
        return cls(**{k: parse_state_value(k, v) for k, v in DEFAULT_STATE.items()})

    @property
    def default_strategy(self) -> str:
        return self.retrieval_strategy.default_strategy

    @property
    def half_lives(self) -> dict[str, float]:
        return self.decay_half_lives.model_dump()

    @property
    def thresholds(self) -> PromotionThresholds:
        return PromotionThresholds.from_mapping(self.promotion_thresholds.model_dump())

    def scope_weight(self, scope: str) -> float:
        return self.scope_weights.get(scope)

    def value(self, key: str) -> dict[str, Any]:
        """Plain JSON value of one key."""
        return getattr(self, key).model_dump()


class EvolutionStateStore:
    """Reads snapshots and commits replacements of the evolution_state rows."""

    def __init__(self, db: MemoryDB, history_limit: int = 10):
        self.db = db
        self.history_limit = history_limit
        # Serialises writers in this process; versions protect across processes.
        self.write_lock = threading.RLock()
        self.seed()

    def seed(self) -> None:
        self.db.seed_state(DEFAULT_STATE)

    def snapshot(self) -> EvolutionSnapshot:
        rows = self.db.read_state()
        values: dict[str, BaseModel] = {}
        versions: dict[str, int] = {}
        fallbacks: list[str] = []
        for key in STATE_KEYS:
            row = rows.get(key)
            versions[key] = row.version if row else 0
            try:
                if row is None:
                    raise ConfigurationError(f"missing {key}")
                values[key] = parse_state_value(key, row.value)
            except ConfigurationError as e:
                logger.warning(f"Evolution state {key} unusable ({e}), using defaults")
                values[key] = parse_state_value(key, DEFAULT_STATE[key])
                fallbacks.append(key)
        return EvolutionSnapshot(**values, versions=versions, fallbacks=tuple(fallbacks))

    def commit(self, updates: Mapping[str, Any], expected_versions: Mapping[str, int]) -> dict[str, int]:
        """
        Atomically replace several keys.

        Values are validated before anything is written. Raises StaleStateError
        when any key moved past its expected version.
        """
        for key, value in updates.items():
            parse_state_value(key, value)
        payload = {key: (int(expected_versions.get(key, 0)), value) for key, value in updates.items()}
        with self.write_lock:
            versions = self.db.replace_state(payload, history_limit=self.history_limit)
        logger.info(f"Evolution state committed: {', '.join(f'{k}@v{v}' for k, v in versions.items())}")
        return versions

    def rollback(self, key: str) -> dict[str, Any]:
        """Restore the most recent prior value of key."""
        if key not in _PARSERS:
            raise ConfigurationError(f"unknown evolution state key {key!r}")
        with self.write_lock:
            row = self.db.read_state().get(key)
            if row is None:
                raise ConfigurationError(f"no stored value for {key!r}")
            restored = self.db.pop_state_history(key, row.version)
        logger.info(f"Evolution state {key} rolled back to previous value")
        return restored


def renormalize(weights: Mapping[str, float]) -> dict[str, float]:
    """Scale a weight group so it sums to 1.0."""
    total = sum(weights.values())
    if total <= 0 or not math.isfinite(total):
        raise ValueError(f"cannot renormalise weights summing to {total}")
    return {k: v / total for k, v in weights.items()}

