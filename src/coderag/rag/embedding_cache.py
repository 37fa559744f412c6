"""LRU cache for query embeddings with single-flight deduplication."""

import asyncio
import hashlib
from collections import OrderedDict
from typing import Optional

from ..llm import Embedder
from ..logging_config import get_logger

logger = get_logger(__name__)

DEFAULT_CACHE_SIZE = 1000


class EmbeddingCache:
    """Memoizes ``embedder.embed`` results keyed by the SHA-256 of the text.

    Concurrent requests for the same text share one in-flight embedder call.
    Hits and shared in-flight requests both count as hits. A failed call is
    not cached and does not block later attempts for the same text.
    """

    def __init__(self, max_size: int = DEFAULT_CACHE_SIZE):
        if max_size <= 0:
            raise ValueError(f"max_size must be positive, got {max_size}")
        self.max_size = max_size
        self._cache: OrderedDict[str, list[float]] = OrderedDict()
        self._pending: dict[str, asyncio.Future] = {}
        self._hits = 0
        self._misses = 0

    @staticmethod
    def _key(text: str) -> str:
        return hashlib.sha256(text.encode("utf-8")).hexdigest()

    async def get_or_embed(self, text: str, embedder: Embedder) -> list[float]:
        key = self._key(text)

        cached = self._cache.get(key)
        if cached is not None:
            self._cache.move_to_end(key)
            self._hits += 1
            return cached

        pending: Optional[asyncio.Future] = self._pending.get(key)
        if pending is not None:
            self._hits += 1
            # Shielded so one waiter's cancellation does not cancel the shared call
            return await asyncio.shield(pending)

        self._misses += 1
        future = asyncio.ensure_future(embedder.embed(text))
        self._pending[key] = future
        try:
            result = await asyncio.shield(future)
        finally:
            self._pending.pop(key, None)

        if len(self._cache) >= self.max_size:
            evicted, _ = self._cache.popitem(last=False)
            logger.debug("Evicted embedding %s", evicted[:12])
        self._cache[key] = result
        return result

    def clear(self) -> None:
        self._cache.clear()
        self._pending.clear()
        self._hits = 0
        self._misses = 0

    def stats(self) -> dict:
        total = self._hits + self._misses
        return {
            "size": len(self._cache),
            "hits": self._hits,
            "misses": self._misses,
            "hit_rate": self._hits / total if total else 0.0,
        }

    def __len__(self) -> int:
        return len(self._cache)
