"""Tests for reciprocal rank fusion and result-set aggregation."""

import itertools
from datetime import datetime, timedelta, timezone

import pytest

from engram.memory.types import MemoryRecord
from engram.retrieval.rrf import aggregate, content_hash, fuse

T0 = datetime(2026, 3, 1, tzinfo=timezone.utc)


class TestFuse:
    def test_example_from_two_lists(self):
        fused = fuse([["m1", "m2", "m3"], ["m2", "m1", "m4"]], k=60)
        scores = {f.id: f.score for f in fused}

        assert scores["m1"] == pytest.approx(1 / 61 + 1 / 62)
        assert scores["m2"] == pytest.approx(1 / 62 + 1 / 61)
        assert scores["m3"] == pytest.approx(1 / 63)
        assert scores["m4"] == pytest.approx(1 / 63)
        # Tie between m1/m2 broken by id without recency.
        assert [f.id for f in fused] == ["m1", "m2", "m3", "m4"]

    def test_tie_broken_by_recency(self):
        recency = {"m1": T0, "m2": T0 + timedelta(hours=1)}
        fused = fuse([["m1", "m2"], ["m2", "m1"]], recency=recency)
        assert [f.id for f in fused] == ["m2", "m1"]

    def test_list_order_does_not_matter(self):
        a, b, c = ["x", "y", "z"], ["z", "q"], ["y", "x", "w", "q"]
        first = fuse([a, b, c])
        second = fuse([c, a, b])
        assert [f.id for f in first] == [f.id for f in second]
        for f1, f2 in zip(first, second):
            assert f1.score == pytest.approx(f2.score)

    def test_equal_rank_sets_tie_under_every_list_order(self):
        def ranked(at: dict[str, int], tag: str) -> list[str]:
            ids = [f"{tag}{i}" for i in range(1, 8)]
            for mid, rank in at.items():
                ids[rank - 1] = mid
            return ids

        a = ranked({"x": 1, "y": 6}, "a")
        b = ranked({"x": 6, "y": 7}, "b")
        c = ranked({"x": 7, "y": 1}, "c")
        for order in itertools.permutations([a, b, c]):
            fused = fuse(list(order))
            scores = {f.id: f.score for f in fused}
            assert scores["x"] == scores["y"]
            assert [f.id for f in fused][:2] == ["x", "y"]

    def test_sources_reported(self):
        fused = fuse({"bm25": ["a", "b"], "hybrid": ["b"]})
        by_id = {f.id: f for f in fused}
        assert by_id["b"].sources == ["bm25", "hybrid"]
        assert by_id["a"].sources == ["bm25"]

    def test_duplicate_in_one_list_counts_once(self):
        fused = fuse([["a", "a", "b"]])
        assert {f.id: f.score for f in fused}["a"] == pytest.approx(1 / 61)

    def test_k_zero_allowed_negative_rejected(self):
        assert fuse([["a"]], k=0)[0].score == pytest.approx(1.0)
        with pytest.raises(ValueError):
            fuse([["a"]], k=-1)

    def test_empty(self):
        assert fuse([]) == []
        assert fuse([[], []]) == []


def _mem(mid: str, content: str, hours: int = 0) -> MemoryRecord:
    ts = T0 + timedelta(hours=hours)
    return MemoryRecord(id=mid, content=content, memory_type="semantic", scope="project",
                        created_at=ts, updated_at=ts, last_accessed_at=ts)


class TestAggregate:
    def test_dedups_exact_content(self):
        a = _mem("a", "Run tests with pytest -x")
        a_copy = _mem("a2", "  Run tests with pytest -x  ")
        b = _mem("b", "Use uv for environments")
        out = aggregate({"semantic": [a, b], "keyword": [a_copy, b]}, limit=10)

        contents = [x.record.content for x in out]
        assert len(contents) == len(set(contents)) == 2
        kept = next(x for x in out if x.record.content == a.content)
        assert kept.sources == ["keyword", "semantic"]

    def test_limit(self):
        recs = [_mem(f"m{i}", f"note {i}") for i in range(5)]
        assert len(aggregate({"x": recs}, limit=3)) == 3
        with pytest.raises(ValueError):
            aggregate({"x": recs}, limit=0)

    def test_content_hash_ignores_outer_whitespace(self):
        assert content_hash(" a ") == content_hash("a")
