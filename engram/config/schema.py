"""Configuration schema using Pydantic."""

from pathlib import Path

from pydantic import BaseModel, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class StorageConfig(BaseModel):
    """SQLite persistence configuration."""
    db_path: str = "~/.engram/memory.db"

    @property
    def path(self) -> Path:
        return Path(self.db_path).expanduser()


class EmbeddingConfig(BaseModel):
    """Embedding provider configuration."""
    enabled: bool = True
    model: str = Field(default="text-embedding-3-small", description="LiteLLM embedding model")
    dimensions: int = Field(default=384, ge=8, le=8192)
    cache_size: int = Field(default=1000, ge=0, le=100000)
    max_requests_per_minute: int = Field(default=3000, ge=1, le=10000, description="Rate limit for embedding API")


class RetrievalConfig(BaseModel):
    """Retrieval and fusion configuration."""
    default_limit: int = Field(default=10, ge=1, le=200)
    candidate_limit: int = Field(default=50, ge=1, le=1000, description="Candidates pulled from the index per scope")
    min_vector_similarity: float = Field(default=0.3, ge=0.0, le=1.0, description="Vector-only candidates below this are dropped")
    rrf_k: int = Field(default=60, ge=0, description="RRF smoothing constant")
    log_retrievals: bool = True


class DecayConfig(BaseModel):
    """Decay model configuration."""
    strict_invariants: bool = Field(default=False, description="Raise instead of clamping when strength leaves [0, importance]")


class ConsolidationConfig(BaseModel):
    """Consolidation pass configuration."""
    archive_threshold: float = Field(default=0.05, ge=0.0, le=1.0)
    duplicate_threshold: float = Field(default=0.92, ge=0.5, le=1.0)
    batch_size: int = Field(default=200, ge=1, le=10000)


class EvolutionConfig(BaseModel):
    """Evolution loop bounds."""
    min_log_volume: int = Field(default=20, ge=1, description="Feedback entries needed before any proposal")
    min_samples: int = Field(default=20, ge=1, description="Samples needed per scope/strategy to contribute")
    max_step: float = Field(default=0.05, gt=0.0, le=0.5, description="Largest change to any single weight per pass")
    step_scale: float = Field(default=0.2, gt=0.0, le=1.0, description="Effectiveness gap -> weight delta factor")
    weight_min: float = Field(default=0.05, ge=0.0, le=1.0)
    weight_max: float = Field(default=0.9, ge=0.0, le=1.0)
    scope_weight_min: float = Field(default=0.1, gt=0.0)
    scope_weight_max: float = Field(default=3.0, gt=0.0)
    history_limit: int = Field(default=10, ge=1, le=100)
    lookback_days: int = Field(default=7, ge=1, le=365)
    strategy_switch_margin: float = Field(default=0.1, ge=0.0, le=1.0)

    @model_validator(mode="after")
    def _check_bounds(self) -> "EvolutionConfig":
        if self.weight_min >= self.weight_max:
            raise ValueError("weight_min must be below weight_max")
        if self.scope_weight_min >= self.scope_weight_max:
            raise ValueError("scope_weight_min must be below scope_weight_max")
        return self


class Config(BaseSettings):
    """Root configuration for engram."""
    model_config = SettingsConfigDict(env_prefix="ENGRAM_", env_nested_delimiter="__")

    storage: StorageConfig = Field(default_factory=StorageConfig)
    embedding: EmbeddingConfig = Field(default_factory=EmbeddingConfig)
    retrieval: RetrievalConfig = Field(default_factory=RetrievalConfig)
    decay: DecayConfig = Field(default_factory=DecayConfig)
    consolidation: ConsolidationConfig = Field(default_factory=ConsolidationConfig)
    evolution: EvolutionConfig = Field(default_factory=EvolutionConfig)
    log_level: str = "INFO"

    @property
    def db_path(self) -> Path:
        """Get expanded database path."""
        return self.storage.path
