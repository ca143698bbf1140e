"""
engram.memory.store

SQL-only persistence layer.

Tables:
- memory               one row per MemoryRecord, partitioned by `scope`
- retrieval_log        append-only; only `was_useful` is updated later
- consolidation_queue  pending/done/failed units of consolidation work
- evolution_state      one live row per parameter key, versioned for CAS

Every call opens its own connection (WAL, 30s busy timeout). Read-modify-write
sequences run inside BEGIN IMMEDIATE so concurrent writers serialise.
"""

from __future__ import annotations

import json
import sqlite3
from collections import Counter
from datetime import datetime
from pathlib import Path
from typing import Any, Iterable, Iterator, Mapping

import numpy as np
from loguru import logger

from engram.errors import MemoryNotFoundError, StaleStateError
from engram.memory.decay import touch
from engram.memory.types import (
    SCOPES,
    STATUSES,
    ConsolidationItem,
    MemoryRecord,
    RetrievalLogEntry,
    as_utc,
    normalize_tags,
    utcnow,
)


def _ts(value: datetime | None) -> str | None:
    return as_utc(value).isoformat() if value else None


def _dt(value: str | None) -> datetime | None:
    return as_utc(datetime.fromisoformat(value)) if value else None


def _pack_embedding(embedding: list[float] | None) -> bytes | None:
    if embedding is None:
        return None
    return sqlite3.Binary(np.asarray(embedding, dtype=np.float32).tobytes())


def _unpack_embedding(blob: bytes | None) -> list[float] | None:
    if not blob:
        return None
    return np.frombuffer(blob, dtype=np.float32).tolist()


PARTITION_KEYS = ("tag", "date", "type", "scope", "importance_band")

_IMPORTANCE_BANDS = (
    ("0.00-0.25", 0.0, 0.25),
    ("0.25-0.50", 0.25, 0.5),
    ("0.50-0.75", 0.5, 0.75),
    ("0.75-1.00", 0.75, float("inf")),
)


class StateRow:
    """Raw evolution_state row."""

    __slots__ = ("key", "value", "version", "updated_at", "history")

    def __init__(self, key: str, value: Any, version: int, updated_at: datetime | None, history: list[Any]):
        self.key = key
        self.value = value
        self.version = version
        self.updated_at = updated_at
        self.history = history


class MemoryDB:
    """SQLite persistence for memories, retrieval log, consolidation queue and evolution state."""

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path).expanduser()
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _con(self) -> sqlite3.Connection:
        con = sqlite3.connect(str(self.db_path), timeout=30.0, isolation_level=None)
        con.row_factory = sqlite3.Row
        con.execute("PRAGMA journal_mode=WAL;")
        con.execute("PRAGMA synchronous=NORMAL;")
        return con

    def _init_db(self) -> None:
        con = self._con()
        try:
            con.execute(
                "CREATE TABLE IF NOT EXISTS memory("
                "id TEXT PRIMARY KEY, content TEXT NOT NULL, "
                "memory_type TEXT NOT NULL CHECK (memory_type IN ('working','episodic','semantic','procedural')), "
                "scope TEXT NOT NULL CHECK (scope IN ('session','project','user')), "
                "importance REAL NOT NULL DEFAULT 0.5, tags TEXT NOT NULL DEFAULT '[]', embedding BLOB, "
                "created_at TEXT NOT NULL, updated_at TEXT NOT NULL, last_accessed_at TEXT NOT NULL, "
                "access_count INTEGER NOT NULL DEFAULT 0, "
                "status TEXT NOT NULL DEFAULT 'active' CHECK (status IN ('active','archived','forgotten')), "
                "session_id TEXT, accessed_sessions TEXT NOT NULL DEFAULT '[]', metadata TEXT NOT NULL DEFAULT '{}')"
            )
            con.execute(
                "CREATE TABLE IF NOT EXISTS retrieval_log("
                "id INTEGER PRIMARY KEY AUTOINCREMENT, event_type TEXT NOT NULL DEFAULT 'search', "
                "query TEXT, scopes TEXT NOT NULL DEFAULT '[]', strategy TEXT NOT NULL DEFAULT 'bm25', "
                "results_count INTEGER NOT NULL DEFAULT 0, memory_ids TEXT NOT NULL DEFAULT '[]', "
                "was_useful INTEGER, session_id TEXT, memory_id TEXT, old_status TEXT, new_status TEXT, "
                "created_at TEXT NOT NULL)"
            )
            con.execute(
                "CREATE TABLE IF NOT EXISTS consolidation_queue("
                "id INTEGER PRIMARY KEY AUTOINCREMENT, memory_id TEXT NOT NULL, "
                "reason TEXT NOT NULL CHECK (reason IN ('stale','promotable','duplicate-candidate')), "
                "priority REAL NOT NULL DEFAULT 0.5, "
                "status TEXT NOT NULL DEFAULT 'pending' CHECK (status IN ('pending','done','failed')), "
                "detail TEXT NOT NULL DEFAULT '{}', error TEXT, created_at TEXT NOT NULL, processed_at TEXT)"
            )
            con.execute(
                "CREATE TABLE IF NOT EXISTS evolution_state("
                "key TEXT PRIMARY KEY, value TEXT NOT NULL, version INTEGER NOT NULL DEFAULT 1, "
                "updated_at TEXT NOT NULL, history TEXT NOT NULL DEFAULT '[]')"
            )

            con.execute("CREATE INDEX IF NOT EXISTS memory_scope_status_idx ON memory(scope, status)")
            con.execute("CREATE INDEX IF NOT EXISTS memory_type_idx ON memory(memory_type)")
            con.execute("CREATE INDEX IF NOT EXISTS rl_event_created_idx ON retrieval_log(event_type, created_at)")
            con.execute("CREATE INDEX IF NOT EXISTS cq_status_priority_idx ON consolidation_queue(status, priority DESC)")
        finally:
            con.close()

    # ---------- row mapping ----------
    @staticmethod
    def _row_to_memory(r: sqlite3.Row) -> MemoryRecord:
        return MemoryRecord(
            id=r["id"],
            content=r["content"],
            memory_type=r["memory_type"],
            scope=r["scope"],
            importance=r["importance"],
            tags=json.loads(r["tags"] or "[]"),
            created_at=_dt(r["created_at"]),
            updated_at=_dt(r["updated_at"]),
            last_accessed_at=_dt(r["last_accessed_at"]),
            access_count=r["access_count"],
            status=r["status"],
            session_id=r["session_id"],
            accessed_sessions=tuple(json.loads(r["accessed_sessions"] or "[]")),
            embedding=_unpack_embedding(r["embedding"]),
            metadata=json.loads(r["metadata"] or "{}"),
        )

    @staticmethod
    def _row_to_log(r: sqlite3.Row) -> RetrievalLogEntry:
        useful = r["was_useful"]
        return RetrievalLogEntry(
            id=r["id"],
            event_type=r["event_type"],
            query=r["query"],
            scopes=json.loads(r["scopes"] or "[]"),
            strategy=r["strategy"],
            results_count=r["results_count"],
            memory_ids=json.loads(r["memory_ids"] or "[]"),
            was_useful=None if useful is None else bool(useful),
            session_id=r["session_id"],
            memory_id=r["memory_id"],
            old_status=r["old_status"],
            new_status=r["new_status"],
            created_at=_dt(r["created_at"]),
        )

    @staticmethod
    def _row_to_item(r: sqlite3.Row) -> ConsolidationItem:
        return ConsolidationItem(
            id=r["id"],
            memory_id=r["memory_id"],
            reason=r["reason"],
            priority=r["priority"],
            status=r["status"],
            detail=json.loads(r["detail"] or "{}"),
            error=r["error"],
            created_at=_dt(r["created_at"]),
            processed_at=_dt(r["processed_at"]),
        )

    # ---------- memories ----------
    def add_memory(self, m: MemoryRecord) -> MemoryRecord:
        con = self._con()
        try:
            con.execute(
                "INSERT INTO memory(id, content, memory_type, scope, importance, tags, embedding, "
                "created_at, updated_at, last_accessed_at, access_count, status, session_id, "
                "accessed_sessions, metadata) VALUES(?,?,?,?,?,?,?,?,?,?,?,?,?,?,?)",
                (
                    m.id, m.content, m.memory_type, m.scope, m.importance, json.dumps(list(m.tags)),
                    _pack_embedding(m.embedding), _ts(m.created_at), _ts(m.updated_at),
                    _ts(m.last_accessed_at), m.access_count, m.status, m.session_id,
                    json.dumps(list(m.accessed_sessions)), json.dumps(m.metadata),
                ),
            )
        finally:
            con.close()
        logger.debug(f"Stored memory {m.id} ({m.memory_type}/{m.scope}): {m.content[:50]}")
        return m

    def get_memory(self, memory_id: str) -> MemoryRecord | None:
        con = self._con()
        try:
            r = con.execute("SELECT * FROM memory WHERE id=?", (memory_id,)).fetchone()
            return self._row_to_memory(r) if r else None
        finally:
            con.close()

    def require_memory(self, memory_id: str) -> MemoryRecord:
        m = self.get_memory(memory_id)
        if m is None:
            raise MemoryNotFoundError(memory_id)
        return m

    def get_memories(self, memory_ids: Iterable[str]) -> dict[str, MemoryRecord]:
        ids = list(dict.fromkeys(memory_ids))
        if not ids:
            return {}
        con = self._con()
        try:
            marks = ",".join("?" for _ in ids)
            rows = con.execute(f"SELECT * FROM memory WHERE id IN ({marks})", ids).fetchall()
            return {r["id"]: self._row_to_memory(r) for r in rows}
        finally:
            con.close()

    def list_memories(
        self,
        scope: str | None = None,
        status: str | None = "active",
        limit: int | None = None,
        offset: int = 0,
    ) -> list[MemoryRecord]:
        where: list[str] = []
        params: list[object] = []
        if scope:
            where.append("scope=?")
            params.append(scope)
        if status:
            where.append("status=?")
            params.append(status)
        sql = "SELECT * FROM memory"
        if where:
            sql += " WHERE " + " AND ".join(where)
        sql += " ORDER BY created_at ASC, id ASC"
        if limit is not None:
            sql += " LIMIT ? OFFSET ?"
            params.extend([int(limit), int(offset)])
        con = self._con()
        try:
            return [self._row_to_memory(r) for r in con.execute(sql, params).fetchall()]
        finally:
            con.close()

    def iter_active(self, batch_size: int = 200) -> Iterator[MemoryRecord]:
        """Yield active records in stable batches (snapshot per batch)."""
        offset = 0
        while True:
            batch = self.list_memories(status="active", limit=batch_size, offset=offset)
            if not batch:
                return
            yield from batch
            offset += len(batch)

    # Helpers below run inside a transaction the caller already opened.
    def _fetch(self, con: sqlite3.Connection, memory_id: str) -> MemoryRecord:
        r = con.execute("SELECT * FROM memory WHERE id=?", (memory_id,)).fetchone()
        if not r:
            raise MemoryNotFoundError(memory_id)
        return self._row_to_memory(r)

    def _write(self, con: sqlite3.Connection, m: MemoryRecord) -> None:
        con.execute(
            "UPDATE memory SET scope=?, importance=?, tags=?, updated_at=?, last_accessed_at=?, "
            "access_count=?, status=?, accessed_sessions=?, metadata=? WHERE id=?",
            (
                m.scope, m.importance, json.dumps(list(m.tags)), _ts(m.updated_at),
                _ts(m.last_accessed_at), m.access_count, m.status,
                json.dumps(list(m.accessed_sessions)), json.dumps(m.metadata), m.id,
            ),
        )

    def _apply_changes(
        self, con: sqlite3.Connection, memory_id: str, changes: dict[str, Any]
    ) -> tuple[MemoryRecord, MemoryRecord]:
        before = self._fetch(con, memory_id)
        if "metadata" in changes:
            changes["metadata"] = {**before.metadata, **changes["metadata"]}
        if "tags" in changes:
            changes["tags"] = normalize_tags(set(before.tags) | set(normalize_tags(changes["tags"])))
        changes.setdefault("updated_at", utcnow())
        # Re-validate through the model so boundary invariants hold.
        after = MemoryRecord.model_validate({**before.model_dump(), **changes})
        self._write(con, after)
        return before, after

    def update_memory(self, memory_id: str, **changes: Any) -> tuple[MemoryRecord, MemoryRecord]:
        """
        Atomic read-modify-write of one record.

        `metadata` in changes is merged into the existing metadata; `tags` are
        unioned with the existing tags. Returns (before, after).
        """
        con = self._con()
        try:
            con.execute("BEGIN IMMEDIATE")
            try:
                result = self._apply_changes(con, memory_id, changes)
                con.execute("COMMIT")
                return result
            except Exception:
                con.execute("ROLLBACK")
                raise
        finally:
            con.close()

    def merge_memories(
        self, keeper_id: str, lesser_id: str, now: datetime | None = None
    ) -> tuple[MemoryRecord, MemoryRecord] | None:
        """
        Fold `lesser_id` into `keeper_id` in one transaction.

        The keeper gains the tag union, the higher importance and a
        `merged_from` entry; the lesser record becomes forgotten with
        `merged_into`. Returns (keeper, lesser) as written, or None when either
        record is no longer active, they differ in scope or are the same record.
        Nothing is written unless both updates succeed.
        """
        now = now or utcnow()
        con = self._con()
        try:
            con.execute("BEGIN IMMEDIATE")
            try:
                keeper = self._fetch(con, keeper_id)
                lesser = self._fetch(con, lesser_id)
                if keeper.id == lesser.id or not (keeper.is_active and lesser.is_active) or keeper.scope != lesser.scope:
                    con.execute("ROLLBACK")
                    return None
                merged_from = sorted(set(keeper.metadata.get("merged_from", [])) | {lesser.id})
                _, keeper = self._apply_changes(con, keeper.id, {
                    "tags": lesser.tags,
                    "importance": max(keeper.importance, lesser.importance),
                    "metadata": {"merged_from": merged_from},
                    "updated_at": now,
                })
                _, lesser = self._apply_changes(con, lesser.id, {
                    "status": "forgotten",
                    "metadata": {"merged_into": keeper.id},
                    "updated_at": now,
                })
                con.execute("COMMIT")
                return keeper, lesser
            except Exception:
                con.execute("ROLLBACK")
                raise
        finally:
            con.close()

    def mark_accessed(self, memory_ids: Iterable[str], now: datetime | None = None, session_id: str | None = None) -> int:
        """Access strengthening for a batch of ids. Returns the number of active records touched."""
        now = now or utcnow()
        touched = 0
        con = self._con()
        try:
            con.execute("BEGIN IMMEDIATE")
            try:
                for mid in dict.fromkeys(memory_ids):
                    r = con.execute("SELECT * FROM memory WHERE id=? AND status='active'", (mid,)).fetchone()
                    if not r:
                        continue
                    self._write(con, touch(self._row_to_memory(r), now, session_id))
                    touched += 1
                con.execute("COMMIT")
            except Exception:
                con.execute("ROLLBACK")
                raise
        finally:
            con.close()
        return touched

    def stats(self, scope: str | None = None, top_tags: int = 20) -> dict[str, Any]:
        """Counts by type/status, tag frequency and date range."""
        where, params = ("WHERE scope=?", [scope]) if scope else ("", [])
        con = self._con()
        try:
            by_type = {
                r["memory_type"]: r["n"]
                for r in con.execute(f"SELECT memory_type, COUNT(*) AS n FROM memory {where} GROUP BY memory_type", params)
            }
            by_status = {s: 0 for s in STATUSES}
            for r in con.execute(f"SELECT status, COUNT(*) AS n FROM memory {where} GROUP BY status", params):
                by_status[r["status"]] = r["n"]
            by_scope = {
                r["scope"]: r["n"]
                for r in con.execute(f"SELECT scope, COUNT(*) AS n FROM memory {where} GROUP BY scope", params)
            }
            rng = con.execute(f"SELECT MIN(created_at) AS lo, MAX(created_at) AS hi FROM memory {where}", params).fetchone()
            tag_rows = con.execute(f"SELECT tags FROM memory {where}", params).fetchall()
        finally:
            con.close()

        ct = Counter()
        for r in tag_rows:
            ct.update(json.loads(r["tags"] or "[]"))
        return {
            "type_counts": by_type,
            "status_counts": by_status,
            "scope_counts": by_scope,
            "top_tags": ct.most_common(top_tags),
            "date_range": {"min": rng["lo"], "max": rng["hi"]},
        }

    def sample_memories(self, scope: str | None = None, n: int = 5) -> list[MemoryRecord]:
        """Up to n random active records."""
        where, params = ("AND scope=?", [scope]) if scope else ("", [])
        con = self._con()
        try:
            rows = con.execute(
                f"SELECT * FROM memory WHERE status='active' {where} ORDER BY RANDOM() LIMIT ?",
                [*params, int(n)],
            ).fetchall()
            return [self._row_to_memory(r) for r in rows]
        finally:
            con.close()

    def partition(self, by: str, scope: str | None = None, max_partitions: int = 4) -> list[dict[str, Any]]:
        """
        Group active records for planning follow-up queries.

        by: tag (most frequent first), date (calendar month of created_at,
        oldest first), type, scope (chain order) or importance_band (four
        quartile bands, the last one including 1.0). Each partition is
        {"key", "count", "avg_importance"}; empty bands and scopes are reported
        with count 0.
        """
        if by not in PARTITION_KEYS:
            raise ValueError(f"unknown partition key {by!r}, expected one of {', '.join(PARTITION_KEYS)}")
        if max_partitions < 1:
            raise ValueError("max_partitions must be >= 1")
        records = self.list_memories(scope=scope, status="active")

        groups: dict[str, list[float]] = {}
        if by == "scope":
            groups = {s: [] for s in SCOPES if scope in (None, s)}
        elif by == "importance_band":
            groups = {key: [] for key, _, _ in _IMPORTANCE_BANDS}
        for m in records:
            if by == "tag":
                keys = list(m.tags)
            elif by == "date":
                keys = [m.created_at.strftime("%Y-%m")]
            elif by == "type":
                keys = [m.memory_type]
            elif by == "scope":
                keys = [m.scope]
            else:
                keys = [next(key for key, lo, hi in _IMPORTANCE_BANDS if lo <= m.importance < hi)]
            for key in keys:
                groups.setdefault(key, []).append(m.importance)

        parts = [
            {"key": key, "count": len(vals), "avg_importance": sum(vals) / len(vals) if vals else 0.0}
            for key, vals in groups.items()
        ]
        if by in ("tag", "type"):
            parts.sort(key=lambda p: (-p["count"], p["key"]))
        elif by == "date":
            parts.sort(key=lambda p: p["key"])
        return parts[:max_partitions]

    # ---------- retrieval log ----------
    def append_log(self, e: RetrievalLogEntry) -> int:
        con = self._con()
        try:
            cur = con.execute(
                "INSERT INTO retrieval_log(event_type, query, scopes, strategy, results_count, memory_ids, "
                "was_useful, session_id, memory_id, old_status, new_status, created_at) "
                "VALUES(?,?,?,?,?,?,?,?,?,?,?,?)",
                (
                    e.event_type, e.query, json.dumps(e.scopes), e.strategy, e.results_count,
                    json.dumps(e.memory_ids), None if e.was_useful is None else int(e.was_useful),
                    e.session_id, e.memory_id, e.old_status, e.new_status, _ts(e.created_at),
                ),
            )
            return int(cur.lastrowid)
        finally:
            con.close()

    def attach_feedback(self, log_id: int, was_useful: bool) -> RetrievalLogEntry:
        con = self._con()
        try:
            con.execute("BEGIN IMMEDIATE")
            try:
                r = con.execute("SELECT * FROM retrieval_log WHERE id=?", (int(log_id),)).fetchone()
                if not r:
                    raise KeyError(f"retrieval log entry {log_id} not found")
                if r["event_type"] != "search":
                    raise ValueError(f"feedback only applies to search entries, got {r['event_type']!r}")
                if r["was_useful"] is not None:
                    raise ValueError(f"feedback already recorded for retrieval log entry {log_id}")
                con.execute("UPDATE retrieval_log SET was_useful=? WHERE id=?", (int(bool(was_useful)), int(log_id)))
                r = con.execute("SELECT * FROM retrieval_log WHERE id=?", (int(log_id),)).fetchone()
                con.execute("COMMIT")
                return self._row_to_log(r)
            except Exception:
                con.execute("ROLLBACK")
                raise
        finally:
            con.close()

    def get_log(self, log_id: int) -> RetrievalLogEntry | None:
        con = self._con()
        try:
            r = con.execute("SELECT * FROM retrieval_log WHERE id=?", (int(log_id),)).fetchone()
            return self._row_to_log(r) if r else None
        finally:
            con.close()

    def list_logs(self, since: datetime | None = None, event_type: str | None = "search", limit: int | None = None) -> list[RetrievalLogEntry]:
        where: list[str] = []
        params: list[object] = []
        if event_type:
            where.append("event_type=?")
            params.append(event_type)
        if since:
            where.append("created_at>=?")
            params.append(_ts(since))
        sql = "SELECT * FROM retrieval_log"
        if where:
            sql += " WHERE " + " AND ".join(where)
        sql += " ORDER BY created_at DESC, id DESC"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(int(limit))
        con = self._con()
        try:
            return [self._row_to_log(r) for r in con.execute(sql, params).fetchall()]
        finally:
            con.close()

    # ---------- consolidation queue ----------
    def enqueue(self, item: ConsolidationItem) -> int | None:
        """Insert a pending item unless one is already pending for (memory_id, reason)."""
        con = self._con()
        try:
            con.execute("BEGIN IMMEDIATE")
            try:
                dup = con.execute(
                    "SELECT id FROM consolidation_queue WHERE memory_id=? AND reason=? AND status='pending'",
                    (item.memory_id, item.reason),
                ).fetchone()
                if dup:
                    con.execute("COMMIT")
                    return None
                cur = con.execute(
                    "INSERT INTO consolidation_queue(memory_id, reason, priority, status, detail, created_at) "
                    "VALUES(?,?,?,?,?,?)",
                    (item.memory_id, item.reason, item.priority, "pending", json.dumps(item.detail), _ts(item.created_at)),
                )
                con.execute("COMMIT")
                return int(cur.lastrowid)
            except Exception:
                con.execute("ROLLBACK")
                raise
        finally:
            con.close()

    def pending_items(self, limit: int | None = None) -> list[ConsolidationItem]:
        sql = "SELECT * FROM consolidation_queue WHERE status='pending' ORDER BY priority DESC, id ASC"
        params: list[object] = []
        if limit is not None:
            sql += " LIMIT ?"
            params.append(int(limit))
        con = self._con()
        try:
            return [self._row_to_item(r) for r in con.execute(sql, params).fetchall()]
        finally:
            con.close()

    def list_items(self, status: str | None = None) -> list[ConsolidationItem]:
        sql = "SELECT * FROM consolidation_queue"
        params: list[object] = []
        if status:
            sql += " WHERE status=?"
            params.append(status)
        sql += " ORDER BY id ASC"
        con = self._con()
        try:
            return [self._row_to_item(r) for r in con.execute(sql, params).fetchall()]
        finally:
            con.close()

    def finish_item(self, item_id: int, status: str, error: str | None = None, detail: Mapping[str, Any] | None = None) -> None:
        if status not in ("done", "failed"):
            raise ValueError(f"invalid queue status: {status!r}")
        con = self._con()
        try:
            if detail is None:
                con.execute(
                    "UPDATE consolidation_queue SET status=?, error=?, processed_at=? WHERE id=?",
                    (status, error, _ts(utcnow()), int(item_id)),
                )
            else:
                con.execute(
                    "UPDATE consolidation_queue SET status=?, error=?, processed_at=?, detail=? WHERE id=?",
                    (status, error, _ts(utcnow()), json.dumps(dict(detail)), int(item_id)),
                )
        finally:
            con.close()

    # ---------- evolution state ----------
    def seed_state(self, defaults: Mapping[str, Any]) -> None:
        """Create missing rows with default values (idempotent)."""
        now = _ts(utcnow())
        con = self._con()
        try:
            for key, value in defaults.items():
                con.execute(
                    "INSERT OR IGNORE INTO evolution_state(key, value, version, updated_at, history) "
                    "VALUES(?,?,1,?,'[]')",
                    (key, json.dumps(value), now),
                )
        finally:
            con.close()

    def read_state(self) -> dict[str, StateRow]:
        """All rows in a single read (one consistent view)."""
        con = self._con()
        try:
            rows = con.execute("SELECT * FROM evolution_state").fetchall()
        finally:
            con.close()
        out: dict[str, StateRow] = {}
        for r in rows:
            try:
                value = json.loads(r["value"])
            except json.JSONDecodeError:
                value = None
            try:
                history = json.loads(r["history"] or "[]")
            except json.JSONDecodeError:
                history = []
            out[r["key"]] = StateRow(r["key"], value, int(r["version"]), _dt(r["updated_at"]), history)
        return out

    def write_state_raw(self, key: str, value: Any) -> None:
        """Overwrite a row without CAS or history. Operator/test use only."""
        con = self._con()
        try:
            con.execute(
                "INSERT INTO evolution_state(key, value, version, updated_at, history) VALUES(?,?,1,?,'[]') "
                "ON CONFLICT(key) DO UPDATE SET value=excluded.value, version=evolution_state.version+1, "
                "updated_at=excluded.updated_at",
                (key, json.dumps(value), _ts(utcnow())),
            )
        finally:
            con.close()

    def replace_state(
        self,
        updates: Mapping[str, tuple[int, Any]],
        history_limit: int = 10,
        now: datetime | None = None,
    ) -> dict[str, int]:
        """
        Compare-and-swap replacement of several rows in one transaction.

        updates maps key -> (expected_version, new_value). If any row's version
        differs from the expected one nothing is written and StaleStateError is
        raised. The previous value is pushed onto the row's bounded history.
        Returns key -> new version.
        """
        now_s = _ts(now or utcnow())
        new_versions: dict[str, int] = {}
        con = self._con()
        try:
            con.execute("BEGIN IMMEDIATE")
            try:
                for key, (expected, value) in updates.items():
                    r = con.execute("SELECT * FROM evolution_state WHERE key=?", (key,)).fetchone()
                    current_version = int(r["version"]) if r else 0
                    if current_version != expected:
                        raise StaleStateError(
                            f"evolution_state[{key}] is at version {current_version}, expected {expected}"
                        )
                    history: list[Any] = json.loads(r["history"] or "[]") if r else []
                    if r:
                        history.append({"value": json.loads(r["value"]), "version": current_version, "updated_at": r["updated_at"]})
                    history = history[-history_limit:]
                    con.execute(
                        "INSERT INTO evolution_state(key, value, version, updated_at, history) VALUES(?,?,?,?,?) "
                        "ON CONFLICT(key) DO UPDATE SET value=excluded.value, version=excluded.version, "
                        "updated_at=excluded.updated_at, history=excluded.history",
                        (key, json.dumps(value), current_version + 1, now_s, json.dumps(history)),
                    )
                    new_versions[key] = current_version + 1
                con.execute("COMMIT")
            except Exception:
                con.execute("ROLLBACK")
                raise
        finally:
            con.close()
        return new_versions

    def pop_state_history(self, key: str, expected_version: int) -> Any:
        """Restore the most recent history value of a row (CAS on version). Returns the restored value."""
        con = self._con()
        try:
            con.execute("BEGIN IMMEDIATE")
            try:
                r = con.execute("SELECT * FROM evolution_state WHERE key=?", (key,)).fetchone()
                if not r:
                    raise KeyError(f"evolution_state[{key}] not found")
                if int(r["version"]) != expected_version:
                    raise StaleStateError(
                        f"evolution_state[{key}] is at version {r['version']}, expected {expected_version}"
                    )
                history = json.loads(r["history"] or "[]")
                if not history:
                    raise ValueError(f"no history to roll back for {key!r}")
                previous = history.pop()
                con.execute(
                    "UPDATE evolution_state SET value=?, version=version+1, updated_at=?, history=? WHERE key=?",
                    (json.dumps(previous["value"]), _ts(utcnow()), json.dumps(history), key),
                )
                con.execute("COMMIT")
                return previous["value"]
            except Exception:
                con.execute("ROLLBACK")
                raise
        finally:
            con.close()
