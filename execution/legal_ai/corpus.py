"""
Corpus Search Adapters

Two vector-indexed partitions with the same chunk shape:

- public: shared legal corpus (court decisions, legislation, doctrine),
  read-only for every tenant
- private: a firm's own case documents; every query is scoped to one tenant
  by the storage query itself

Chunks are written by the ingestion workflow; the adapters only read.
"""

import logging
from enum import Enum
from dataclasses import dataclass, field
from typing import Optional

import numpy as np

logger = logging.getLogger(__name__)


class CorpusScope(str, Enum):
    PUBLIC = "public"
    PRIVATE = "private"


@dataclass
class CorpusChunk:
    """A chunk of a public or private document."""
    doc_id: str
    text: str
    embedding: list[float] = field(default_factory=list, repr=False)
    chunk_id: Optional[str] = None
    title: Optional[str] = None
    # Citation metadata, public corpus only
    court: Optional[str] = None
    url: Optional[str] = None
    doc_type: Optional[str] = None
    # Private corpus only
    tenant_id: Optional[str] = None
    case_id: Optional[str] = None


def cosine_similarity(a, b) -> float:
    """Cosine similarity between two vectors, 0.0 for zero-length or mismatched input."""
    a_arr = np.asarray(a, dtype=float)
    b_arr = np.asarray(b, dtype=float)
    if a_arr.shape != b_arr.shape or a_arr.size == 0:
        return 0.0
    norm_a = np.linalg.norm(a_arr)
    norm_b = np.linalg.norm(b_arr)
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return float(np.dot(a_arr, b_arr) / (norm_a * norm_b))


def rank_by_similarity(results, limit: int) -> list[tuple[CorpusChunk, float]]:
    """Stable descending sort by similarity, truncated to limit."""
    ordered = sorted(results, key=lambda item: item[1], reverse=True)
    return ordered[:max(0, limit)]


class PublicCorpusAdapter:
    """Similarity search over the shared public corpus."""

    scope = CorpusScope.PUBLIC

    def __init__(self, store):
        self.store = store

    def search(
        self,
        query_embedding: list[float],
        tenant_id: Optional[str] = None,
        limit: int = 10,
    ) -> list[tuple[CorpusChunk, float]]:
        """
        Search the public partition. tenant_id is accepted and ignored.

        Returns:
            (chunk, similarity) pairs, highest similarity first, at most limit
        """
        if limit <= 0:
            return []
        results = self.store.search_public_chunks(query_embedding, limit)
        return rank_by_similarity(results, limit)


class PrivateCorpusAdapter:
    """Similarity search over one tenant's private documents."""

    scope = CorpusScope.PRIVATE

    def __init__(self, store):
        self.store = store

    def search(
        self,
        query_embedding: list[float],
        tenant_id: Optional[str] = None,
        limit: int = 10,
    ) -> list[tuple[CorpusChunk, float]]:
        """
        Search the private partition of a single tenant.

        Raises:
            ValueError: If tenant_id is missing
        """
        if not tenant_id:
            raise ValueError("tenant_id is required for private corpus search")
        if limit <= 0:
            return []

        results = self.store.search_private_chunks(query_embedding, tenant_id, limit)

        owned = []
        for chunk, similarity in results:
            if chunk.tenant_id is not None and str(chunk.tenant_id) != str(tenant_id):
                logger.error(
                    f"Private search for tenant {tenant_id} returned chunk {chunk.chunk_id} "
                    f"owned by another tenant; dropping it"
                )
                continue
            owned.append((chunk, similarity))
        return rank_by_similarity(owned, limit)
