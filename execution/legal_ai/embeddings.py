"""
Query embeddings through the EMBEDDINGS workflow.

The embedding model runs inside the hosted workflow; this service adds a
bounded in-memory LRU cache so repeated searches (pagination, retries) do
not round-trip again.
"""

import hashlib
import logging
import threading
from collections import OrderedDict
from dataclasses import dataclass
from typing import Optional

from .workflows import WorkflowClient, WorkflowError

logger = logging.getLogger(__name__)


@dataclass
class EmbeddingConfig:
    """Configuration for the embedding service."""
    dimensions: int = 1536
    use_cache: bool = True
    cache_size: int = 512


class EmbeddingError(Exception):
    """Raised when a query cannot be embedded."""


class WorkflowEmbeddingService:
    """Embeds search queries via the hosted workflow."""

    def __init__(self, client: Optional[WorkflowClient] = None, config: Optional[EmbeddingConfig] = None):
        self.client = client or WorkflowClient()
        self.config = config or EmbeddingConfig()
        self._cache: OrderedDict[str, list[float]] = OrderedDict()
        self._lock = threading.Lock()

    def embed_query(self, query: str) -> list[float]:
        """
        Embed a search query.

        Raises:
            EmbeddingError: If the workflow fails or returns a vector of the wrong size
        """
        cache_key = self._get_cache_key(query)
        cached = self._get_cached(cache_key)
        if cached is not None:
            return cached

        try:
            embedding = self.client.embed(query)
        except WorkflowError as e:
            raise EmbeddingError(f"Query embedding failed: {e}") from e

        if self.config.dimensions and len(embedding) != self.config.dimensions:
            raise EmbeddingError(
                f"Embedding has {len(embedding)} dimensions, expected {self.config.dimensions}"
            )

        self._set_cached(cache_key, embedding)
        return embedding

    def _get_cache_key(self, text: str) -> str:
        return hashlib.sha256(f"query:{text}".encode()).hexdigest()[:32]

    def _get_cached(self, key: str) -> Optional[list[float]]:
        if not self.config.use_cache:
            return None
        with self._lock:
            embedding = self._cache.get(key)
            if embedding is not None:
                self._cache.move_to_end(key)
            return embedding

    def _set_cached(self, key: str, embedding: list[float]) -> None:
        if not self.config.use_cache or self.config.cache_size <= 0:
            return
        with self._lock:
            self._cache[key] = embedding
            self._cache.move_to_end(key)
            while len(self._cache) > self.config.cache_size:
                self._cache.popitem(last=False)

    @property
    def dimensions(self) -> int:
        """Return embedding dimensions."""
        return self.config.dimensions
