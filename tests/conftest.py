"""Shared fixtures: temporary database, fixed clock, fake embeddings."""

import re
import zlib
from datetime import datetime, timedelta, timezone

import pytest

from engram.config.schema import Config
from engram.errors import EmbeddingUnavailable
from engram.evolution.state import EvolutionStateStore
from engram.memory.store import MemoryDB
from engram.memory.types import MemoryRecord
from engram.service import MemoryService

FIXED_NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


class FixedClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime = FIXED_NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, hours: float = 0.0, days: float = 0.0) -> datetime:
        self.now = self.now + timedelta(hours=hours, days=days)
        return self.now


class FakeEmbedder:
    """Bag-of-words hashing embedder. Same text, same vector."""

    name = "fake"
    dimensions = 32

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.calls: list[str] = []

    async def embed(self, text: str) -> list[float]:
        self.calls.append(text)
        if self.fail:
            raise EmbeddingUnavailable("fake provider offline")
        vec = [0.0] * self.dimensions
        for token in re.findall(r"\w+", text.lower()):
            vec[zlib.crc32(token.encode()) % self.dimensions] += 1.0
        return vec


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def db(tmp_path):
    return MemoryDB(tmp_path / "memory.db")


@pytest.fixture
def state(db):
    return EvolutionStateStore(db)


@pytest.fixture
def embedder():
    return FakeEmbedder()


@pytest.fixture
def config(tmp_path):
    return Config(storage={"db_path": str(tmp_path / "engram.db")})


@pytest.fixture
def service(config, embedder, clock):
    return MemoryService(config, embedder=embedder, clock=clock)


@pytest.fixture
def offline_service(config, clock):
    return MemoryService(config, embedder=FakeEmbedder(fail=True), clock=clock)


@pytest.fixture
def make_memory(db, clock):
    """Insert a MemoryRecord straight into the database."""

    def _make(content: str = "use ruff for linting", **kw) -> MemoryRecord:
        now = clock()
        fields = {
            "content": content,
            "memory_type": "semantic",
            "scope": "project",
            "importance": 0.5,
            "created_at": now,
            "updated_at": now,
            "last_accessed_at": now,
        }
        fields.update(kw)
        return db.add_memory(MemoryRecord(**fields))

    return _make
