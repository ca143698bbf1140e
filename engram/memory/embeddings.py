"""Embedding providers: text in, fixed-length float vector out."""

import asyncio
import threading
import time
from collections import OrderedDict
from typing import Protocol, runtime_checkable

from loguru import logger

from engram.config.schema import EmbeddingConfig
from engram.errors import EmbeddingUnavailable


@runtime_checkable
class EmbeddingProvider(Protocol):
    name: str
    dimensions: int

    async def embed(self, text: str) -> list[float]:
        """Return the embedding of text or raise EmbeddingUnavailable."""
        ...


class RateLimiter:
    """Token bucket refilled continuously at max_requests_per_minute."""

    def __init__(self, max_requests_per_minute: int = 3000):
        self.max_requests = max_requests_per_minute
        self.tokens = float(max_requests_per_minute)
        self.last_update = time.monotonic()
        self.lock = threading.Lock()

    def _try_take(self) -> bool:
        with self.lock:
            now = time.monotonic()
            elapsed = now - self.last_update
            self.tokens = min(self.max_requests, self.tokens + (elapsed * self.max_requests / 60.0))
            self.last_update = now
            if self.tokens >= 1.0:
                self.tokens -= 1.0
                return True
            return False

    async def acquire(self) -> None:
        while not self._try_take():
            await asyncio.sleep(0.1)


class LiteLLMEmbeddingProvider:
    """Embeddings through litellm with an in-process LRU cache."""

    def __init__(
        self,
        model: str = "text-embedding-3-small",
        dimensions: int = 384,
        max_requests_per_minute: int = 3000,
        cache_size: int = 1000,
    ):
        self.model = model
        self.name = f"litellm:{model}"
        self.dimensions = dimensions
        self._rate_limiter = RateLimiter(max_requests_per_minute)
        self._cache: OrderedDict[str, list[float]] = OrderedDict()
        self._cache_size = cache_size
        self._cache_lock = threading.Lock()

    async def embed(self, text: str) -> list[float]:
        with self._cache_lock:
            if text in self._cache:
                self._cache.move_to_end(text)
                return self._cache[text]
        await self._rate_limiter.acquire()
        from litellm import aembedding
        try:
            response = await aembedding(model=self.model, input=[text], dimensions=self.dimensions)
            embedding = [float(x) for x in response.data[0]["embedding"]]
        except Exception as e:
            logger.warning(f"Embedding failed ({self.model}): {e}")
            raise EmbeddingUnavailable(str(e)) from e
        if not embedding:
            raise EmbeddingUnavailable(f"{self.model} returned an empty embedding")
        if len(embedding) != self.dimensions:
            raise EmbeddingUnavailable(
                f"{self.model} returned {len(embedding)} dimensions, expected {self.dimensions}"
            )
        with self._cache_lock:
            self._cache[text] = embedding
            if len(self._cache) > self._cache_size:
                self._cache.popitem(last=False)
        return embedding


class NullEmbeddingProvider:
    """Provider used when embeddings are disabled. Always unavailable."""

    name = "none"
    dimensions = 0

    async def embed(self, text: str) -> list[float]:
        raise EmbeddingUnavailable("embedding provider disabled")


def create_embedding_provider(config: EmbeddingConfig) -> EmbeddingProvider:
    if not config.enabled:
        logger.info("Embeddings disabled, retrieval will be lexical-only")
        return NullEmbeddingProvider()
    return LiteLLMEmbeddingProvider(
        model=config.model,
        dimensions=config.dimensions,
        max_requests_per_minute=config.max_requests_per_minute,
        cache_size=config.cache_size,
    )
