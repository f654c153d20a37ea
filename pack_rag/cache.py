"""
Query-embedding cache.

Sits in the model-backend layer, above the per-question core: only query
embeddings are cached, never indices, hits or lookup tables. Vectors are
stored as raw little-endian float32 bytes under a key built from the
embedding model id and a digest of the text.
"""
import hashlib
import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

import diskcache
import numpy as np

logger = logging.getLogger(__name__)

_VECTOR_DTYPE = np.dtype("<f4")


class EmbeddingCache(ABC):
    """Vector cache keyed by (embed model id, text)."""

    backend_name = "abstract"

    def __init__(self):
        self.hits = 0
        self.misses = 0

    @staticmethod
    def key(model_id: str, text: str) -> str:
        digest = hashlib.sha256(text.encode("utf-8")).hexdigest()[:16]
        return f"embed:{model_id}:{digest}"

    @abstractmethod
    def _load(self, key: str) -> Optional[bytes]:
        pass

    @abstractmethod
    def _store(self, key: str, blob: bytes):
        pass

    @abstractmethod
    def clear(self):
        """Drop every cached vector."""
        pass

    def get_vector(self, model_id: str, text: str) -> Optional[np.ndarray]:
        """
        Look up a cached query embedding.

        Args:
            model_id: Embedding model the vector was produced by
            text: Embedded text

        Returns:
            float32 vector, or None on a miss
        """
        key = self.key(model_id, text)
        blob = self._load(key)
        if blob is None:
            self.misses += 1
            logger.debug(f"Embedding cache MISS: {key}")
            return None
        self.hits += 1
        logger.debug(f"Embedding cache HIT: {key}")
        return np.frombuffer(blob, dtype=_VECTOR_DTYPE).astype(np.float32)

    def put_vector(self, model_id: str, text: str, vec: np.ndarray):
        blob = np.asarray(vec, dtype=_VECTOR_DTYPE).ravel().tobytes()
        self._store(self.key(model_id, text), blob)

    def stats(self) -> dict:
        total = self.hits + self.misses
        hit_rate = (self.hits / total * 100) if total > 0 else 0
        return {
            "backend": self.backend_name,
            "hits": self.hits,
            "misses": self.misses,
            "hit_rate": f"{hit_rate:.1f}%",
        }

    def close(self):
        pass


class DiskEmbeddingCache(EmbeddingCache):
    """Persistent vector cache on top of diskcache."""

    backend_name = "diskcache"

    def __init__(self, cache_dir: str, ttl_s: int = 86400):
        """
        Open (or create) the cache directory.

        Args:
            cache_dir: Directory for cache storage
            ttl_s: Expiry for stored vectors, in seconds
        """
        super().__init__()
        self.cache_dir = Path(cache_dir)
        self.cache_dir.mkdir(parents=True, exist_ok=True)
        self.store = diskcache.Cache(str(self.cache_dir))
        self.ttl_s = ttl_s
        logger.info(f"Embedding cache at {cache_dir} (ttl={ttl_s}s)")

    def _load(self, key: str) -> Optional[bytes]:
        return self.store.get(key)

    def _store(self, key: str, blob: bytes):
        self.store.set(key, blob, expire=self.ttl_s)

    def clear(self):
        self.store.clear()
        self.hits = 0
        self.misses = 0
        logger.info("Embedding cache cleared")

    def stats(self) -> dict:
        stats = super().stats()
        stats["entries"] = len(self.store)
        stats["size_mb"] = self.store.volume() / (1024 * 1024)
        return stats

    def close(self):
        self.store.close()


class NoOpEmbeddingCache(EmbeddingCache):
    """Cache that never hits."""

    backend_name = "noop"

    def _load(self, key: str) -> Optional[bytes]:
        return None

    def _store(self, key: str, blob: bytes):
        pass

    def clear(self):
        pass


def get_cache(settings) -> EmbeddingCache:
    """
    Create the embedding cache for a backend.

    Args:
        settings: Configuration settings

    Returns:
        NoOpEmbeddingCache when BUST_CACHE is set, else DiskEmbeddingCache
    """
    if settings.BUST_CACHE:
        logger.info("BUST_CACHE=True, embedding cache bypassed")
        return NoOpEmbeddingCache()
    return DiskEmbeddingCache(settings.CACHE_DIR, settings.CACHE_TTL_S)
