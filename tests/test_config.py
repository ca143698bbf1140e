"""Tests for configuration loading."""

import json

import pytest
from pydantic import ValidationError

from engram.config.loader import load_config, save_config
from engram.config.schema import Config, EvolutionConfig
from engram.memory.embeddings import LiteLLMEmbeddingProvider, NullEmbeddingProvider, create_embedding_provider


class TestConfig:
    def test_defaults(self):
        config = Config()
        assert config.retrieval.rrf_k == 60
        assert config.consolidation.archive_threshold == 0.05
        assert config.consolidation.duplicate_threshold == 0.92
        assert config.evolution.max_step == 0.05
        assert config.db_path.name == "memory.db"

    def test_env_override(self, monkeypatch):
        monkeypatch.setenv("ENGRAM_RETRIEVAL__RRF_K", "30")
        monkeypatch.setenv("ENGRAM_DECAY__STRICT_INVARIANTS", "true")
        config = Config()
        assert config.retrieval.rrf_k == 30
        assert config.decay.strict_invariants is True

    def test_rrf_k_must_be_non_negative(self):
        with pytest.raises(ValidationError):
            Config(retrieval={"rrf_k": -1})

    def test_evolution_bounds_must_be_ordered(self):
        with pytest.raises(ValidationError):
            EvolutionConfig(weight_min=0.5, weight_max=0.4)


class TestLoader:
    def test_missing_file_gives_defaults(self, tmp_path):
        assert load_config(tmp_path / "none.json").retrieval.default_limit == 10

    def test_broken_file_gives_defaults(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text("{not json")
        assert load_config(path).retrieval.rrf_k == 60

    def test_invalid_values_give_defaults(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text(json.dumps({"retrieval": {"rrf_k": -5}}))
        assert load_config(path).retrieval.rrf_k == 60

    def test_save_and_load(self, tmp_path):
        path = tmp_path / "nested" / "config.json"
        config = Config(retrieval={"default_limit": 3}, embedding={"enabled": False})
        save_config(config, path)

        loaded = load_config(path)
        assert loaded.retrieval.default_limit == 3
        assert loaded.embedding.enabled is False


class TestEmbeddingFactory:
    def test_disabled_gives_null_provider(self):
        provider = create_embedding_provider(Config(embedding={"enabled": False}).embedding)
        assert isinstance(provider, NullEmbeddingProvider)

    def test_enabled_gives_litellm_provider(self):
        provider = create_embedding_provider(Config().embedding)
        assert isinstance(provider, LiteLLMEmbeddingProvider)
        assert provider.name == "litellm:text-embedding-3-small"
