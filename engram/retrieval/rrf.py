"""
Reciprocal Rank Fusion.

score(d) = sum over lists containing d of 1 / (k + rank), rank 1-based.
Rank-only, so lists whose raw scores are not comparable can be merged.
"""

import hashlib
import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import Mapping, Sequence

from engram.memory.types import MemoryRecord

DEFAULT_K = 60


@dataclass
class FusedItem:
    id: str
    score: float
    sources: list[str] = field(default_factory=list)


def _check_k(k: int) -> None:
    if k < 0:
        raise ValueError(f"RRF k must be >= 0, got {k}")


def _sort_key(recency: Mapping[str, datetime] | None):
    def key(item: FusedItem):
        ts = recency.get(item.id) if recency else None
        return (-item.score, -(ts.timestamp() if ts else float("-inf")), item.id)
    return key


def fuse(
    lists: Sequence[Sequence[str]] | Mapping[str, Sequence[str]],
    k: int = DEFAULT_K,
    recency: Mapping[str, datetime] | None = None,
) -> list[FusedItem]:
    """
    Fuse ranked id lists.

    `lists` is either a sequence of id lists (sources are reported as the list
    index) or a mapping label -> id list. Ties are broken by recency (newer
    first) when given, then by id. A duplicate id inside one list counts at its
    best rank only.
    """
    _check_k(k)
    labelled = lists.items() if isinstance(lists, Mapping) else ((str(i), ids) for i, ids in enumerate(lists))

    fused: dict[str, FusedItem] = {}
    contribs: dict[str, list[float]] = {}
    for label, ids in labelled:
        seen: set[str] = set()
        for rank, mid in enumerate(ids, start=1):
            if mid in seen:
                continue
            seen.add(mid)
            item = fused.setdefault(mid, FusedItem(id=mid, score=0.0))
            contribs.setdefault(mid, []).append(1.0 / (k + rank))
            item.sources.append(label)

    # fsum is correctly rounded, so equal rank sets give bit-equal scores in any list order.
    for item in fused.values():
        item.score = math.fsum(contribs[item.id])
        item.sources.sort()
    return sorted(fused.values(), key=_sort_key(recency))


def content_hash(content: str) -> str:
    return hashlib.sha256(content.strip().encode("utf-8")).hexdigest()


@dataclass
class AggregatedMemory:
    record: MemoryRecord
    score: float
    sources: list[str]


def aggregate(
    result_sets: Mapping[str, Sequence[MemoryRecord]],
    limit: int = 10,
    k: int = DEFAULT_K,
) -> list[AggregatedMemory]:
    """
    Merge labelled result sets of records with RRF, then drop exact content duplicates.

    The best-ranked record of a content group is kept and inherits the sources
    of the duplicates it absorbed.
    """
    if limit < 1:
        raise ValueError("limit must be >= 1")
    records: dict[str, MemoryRecord] = {}
    for rs in result_sets.values():
        for r in rs:
            records.setdefault(r.id, r)

    fused = fuse({label: [r.id for r in rs] for label, rs in result_sets.items()}, k=k,
                 recency={mid: r.last_accessed_at for mid, r in records.items()})

    by_hash: dict[str, AggregatedMemory] = {}
    ordered: list[AggregatedMemory] = []
    for item in fused:
        rec = records[item.id]
        h = content_hash(rec.content)
        kept = by_hash.get(h)
        if kept is not None:
            kept.sources = sorted(set(kept.sources) | set(item.sources))
            continue
        agg = AggregatedMemory(record=rec, score=item.score, sources=list(item.sources))
        by_hash[h] = agg
        ordered.append(agg)
    return ordered[:limit]
