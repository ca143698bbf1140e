"""Tests for composite scoring and the retrieval engine."""

import sqlite3
from unittest.mock import AsyncMock, patch

import pytest

from engram.errors import IndexUnavailable
from engram.evolution.state import EvolutionSnapshot
from engram.retrieval.engine import RetrievalEngine, composite_score
from engram.retrieval.index import IndexHit, LocalIndex
from engram.service import RetrievalOptions


# ── composite_score ───────────────────────────────────────────────────


class TestCompositeScore:
    def test_hybrid_example(self):
        weights = EvolutionSnapshot.default().retrieval_weights
        assert composite_score(0.8, 0.6, 0.5, weights) == pytest.approx(0.62)

    def test_lexical_only_without_vector(self):
        weights = EvolutionSnapshot.default().retrieval_weights
        assert composite_score(0.8, None, 0.5, weights) == pytest.approx(0.6 * 0.8 + 0.4 * 0.5)

    def test_missing_lexical_counts_as_zero(self):
        weights = EvolutionSnapshot.default().retrieval_weights
        assert composite_score(None, 0.5, 0.5, weights) == pytest.approx(0.3 * 0.5 + 0.4 * 0.5)

    @pytest.mark.parametrize("bad", [float("nan"), -0.1, 1.2])
    def test_rejects_malformed_sub_scores(self, bad):
        weights = EvolutionSnapshot.default().retrieval_weights
        with pytest.raises(ValueError):
            composite_score(bad, 0.5, 0.5, weights)


# ── RetrievalEngine ───────────────────────────────────────────────────


class TestRetrieve:
    async def test_lexical_only_when_embeddings_unavailable(self, offline_service):
        await offline_service.store_memory("pytest fixtures live in conftest", importance=0.5)
        result = await offline_service.retrieve_and_rank("where do pytest fixtures live")

        assert result.strategy == "bm25"
        assert not result.embedding_used
        [item] = result.items
        assert item.mode == "lexical_only"
        assert item.vector is None
        # project weight 1.0, lexical normalised to 1.0, strength == importance at t=0
        assert item.score == pytest.approx(0.6 * 1.0 + 0.4 * 0.5)

    async def test_hybrid_uses_vector_scores(self, service):
        await service.store_memory("pytest fixtures live in conftest")
        result = await service.retrieve_and_rank("pytest fixtures live in conftest")

        assert result.strategy == "hybrid"
        assert result.embedding_used
        [item] = result.items
        assert item.mode == "hybrid"
        assert item.vector == pytest.approx(1.0)

    async def test_bm25_hint_never_embeds(self, service, embedder):
        await service.store_memory("ruff replaces flake8")
        calls = len(embedder.calls)
        result = await service.retrieve_and_rank("ruff", options=RetrievalOptions(strategy="bm25"))
        assert result.strategy == "bm25"
        assert len(embedder.calls) == calls

    async def test_rrf_strategy(self, service):
        await service.store_memory("docker compose up starts the stack")
        await service.store_memory("the stack uses postgres")
        result = await service.retrieve_and_rank("stack", options=RetrievalOptions(strategy="rrf"))
        assert result.strategy == "rrf"
        assert {i.mode for i in result.items} == {"rrf"}
        assert len(result.items) == 2

    async def test_session_scope_outranks_user_scope(self, offline_service):
        u = await offline_service.store_memory("commit messages use imperative mood", scope="user")
        s = await offline_service.store_memory("commit messages use imperative mood", scope="session")
        result = await offline_service.retrieve_and_rank("commit messages")
        assert result.ids == [s.id, u.id]
        assert result.items[0].score == pytest.approx(result.items[1].score * 1.5 / 0.7)

    async def test_inactive_records_excluded(self, offline_service):
        keep = await offline_service.store_memory("makefile target for lint")
        gone = await offline_service.store_memory("makefile target for tests")
        old = await offline_service.store_memory("makefile target for docs")
        offline_service.forget(gone.id, reason="wrong")
        offline_service.db.update_memory(old.id, status="archived")

        result = await offline_service.retrieve_and_rank("makefile target")
        assert result.ids == [keep.id]

    async def test_stale_index_hits_rechecked(self, offline_service):
        rec = await offline_service.store_memory("isort profile black")
        archived = rec.model_copy(update={"status": "archived"})
        offline_service.retrieval.index = AsyncMock()
        offline_service.retrieval.index.search = AsyncMock(return_value=[IndexHit(archived, lexical=1.0)])
        result = await offline_service.retrieve_and_rank("isort")
        assert result.items == []

    async def test_ties_broken_by_recency_then_id(self, offline_service, clock):
        a = await offline_service.store_memory("same words here", importance=0.0)
        clock.advance(hours=1)
        b = await offline_service.store_memory("same words here", importance=0.0)
        result = await offline_service.retrieve_and_rank("same words")
        assert result.ids == [b.id, a.id]

    async def test_limit_and_validation(self, offline_service):
        for i in range(5):
            await offline_service.store_memory(f"logging tip number {i}")
        result = await offline_service.retrieve_and_rank("logging tip", options=RetrievalOptions(limit=2))
        assert len(result.items) == 2

        with pytest.raises(ValueError):
            await offline_service.retrieve_and_rank("   ")
        with pytest.raises(ValueError):
            await offline_service.retrieve_and_rank("x", scopes=["global"])
        with pytest.raises(ValueError):
            await offline_service.retrieve_and_rank("x", options=RetrievalOptions(strategy="magic"))

    async def test_zero_limit_is_rejected(self, offline_service):
        await offline_service.store_memory("logging tip")
        with pytest.raises(ValueError):
            await offline_service.retrieval.retrieve("logging", limit=0)

    async def test_memory_type_filter(self, offline_service):
        await offline_service.store_memory("deploy with make release", memory_type="procedural")
        episode = await offline_service.store_memory("deploy broke on friday", memory_type="episodic")

        result = await offline_service.retrieve_and_rank(
            "deploy", options=RetrievalOptions(memory_types=["episodic"]),
        )
        assert result.ids == [episode.id]
        assert len((await offline_service.retrieve_and_rank("deploy")).items) == 2
        with pytest.raises(ValueError):
            await offline_service.retrieve_and_rank("deploy", options=RetrievalOptions(memory_types=["dream"]))

    async def test_search_is_logged(self, offline_service):
        rec = await offline_service.store_memory("alembic migrations live in db/")
        result = await offline_service.retrieve_and_rank("alembic", options=RetrievalOptions(session_id="s9"))

        entry = offline_service.db.get_log(result.log_id)
        assert entry.event_type == "search"
        assert entry.memory_ids == [rec.id]
        assert entry.results_count == 1
        assert entry.strategy == "bm25"
        assert entry.session_id == "s9"
        assert entry.scopes == ["session", "project", "user"]

    async def test_logging_can_be_disabled(self, offline_service):
        offline_service.retrieval.config = offline_service.retrieval.config.model_copy(update={"log_retrievals": False})
        result = await offline_service.retrieve_and_rank("anything")
        assert result.log_id is None
        assert offline_service.db.list_logs() == []

    async def test_retrieval_does_not_strengthen(self, offline_service):
        rec = await offline_service.store_memory("tox is not used")
        await offline_service.retrieve_and_rank("tox")
        assert offline_service.get(rec.id).access_count == 0


class TestSnapshot:
    async def test_uses_given_snapshot_without_reading_state(self, offline_service):
        await offline_service.store_memory("black line length 100")
        snapshot = offline_service.state.snapshot()
        with patch.object(offline_service.state, "snapshot", side_effect=AssertionError("read twice")):
            result = await offline_service.retrieval.retrieve("black", snapshot=snapshot)
        assert len(result.items) == 1

    async def test_auto_follows_default_strategy(self, service):
        service.db.write_state_raw("retrieval_strategy", {"default_strategy": "bm25"})
        result = await service.retrieve_and_rank("anything")
        assert result.strategy == "bm25"

    async def test_malformed_weights_fall_back_to_defaults(self, offline_service):
        offline_service.db.write_state_raw("retrieval_weights", {"hybrid": {"lexical": 2.0}})
        await offline_service.store_memory("pre-commit runs mypy", importance=0.5)
        result = await offline_service.retrieve_and_rank("mypy")
        assert result.items[0].score == pytest.approx(0.8)


class TestIndexFailure:
    async def test_index_error_surfaces(self, db, state, embedder):
        index = AsyncMock()
        index.search = AsyncMock(side_effect=RuntimeError("segment corrupt"))
        engine = RetrievalEngine(db, index, embedder, state)
        with pytest.raises(IndexUnavailable):
            await engine.retrieve("anything")

    async def test_sqlite_error_in_local_index(self, db, state, embedder):
        index = LocalIndex(db)
        engine = RetrievalEngine(db, index, embedder, state)
        with patch.object(db, "list_memories", side_effect=sqlite3.OperationalError("database is locked")):
            with pytest.raises(IndexUnavailable):
                await engine.retrieve("anything")
