"""
Hybrid Retriever for multi-tenant legal search

Merges the shared public corpus with the calling firm's private corpus:

1. Embed the query through the embedding workflow
2. Search both partitions in parallel (bounded by a timeout)
3. Merge, sort by similarity (public first on ties), keep the best chunk
   per document, truncate
4. Normalize into RetrievedSource records

Retrieval degrades instead of failing: an embedding failure yields no
sources, and a partition that errors or times out contributes nothing while
the other partition's results are still returned.
"""

import logging
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass
from typing import Optional

from .billing import TenantNotResolvedError
from .corpus import CorpusScope, PrivateCorpusAdapter, PublicCorpusAdapter
from .normalizer import RetrievedSource, clamp_similarity, normalize_source

logger = logging.getLogger(__name__)

# Public before private when similarities are equal
_SCOPE_ORDER = {CorpusScope.PUBLIC: 0, CorpusScope.PRIVATE: 1}


@dataclass
class RetrievalConfig:
    """Configuration for hybrid retrieval."""
    default_limit: int = 10
    max_limit: int = 50

    # Applies to the whole search phase (both partitions together)
    timeout_seconds: float = 10.0


def _best_chunk_per_document(tagged: list) -> list:
    """Keep the first (highest ranked) chunk of each (scope, doc_id) pair."""
    seen = set()
    kept = []
    for chunk, sim, scope in tagged:
        key = (scope, chunk.doc_id or chunk.chunk_id)
        if key in seen:
            continue
        seen.add(key)
        kept.append((chunk, sim, scope))
    return kept


class HybridRetriever:
    """
    Public + private retrieval for one firm.

    Usage:
        retriever = HybridRetriever(embedding_service, PublicCorpusAdapter(store), PrivateCorpusAdapter(store))
        sources = retriever.retrieve(tenant_id, "kira sözleşmesinin feshi", limit=5)
    """

    def __init__(
        self,
        embedding_service,
        public_adapter: PublicCorpusAdapter,
        private_adapter: PrivateCorpusAdapter,
        config: Optional[RetrievalConfig] = None,
    ):
        self.embeddings = embedding_service
        self.public_adapter = public_adapter
        self.private_adapter = private_adapter
        self.config = config or RetrievalConfig()

    def _clamp_limit(self, limit: Optional[int]) -> int:
        if limit is None:
            limit = self.config.default_limit
        return max(1, min(int(limit), self.config.max_limit))

    def _embed(self, query_text: str) -> Optional[list[float]]:
        try:
            embedding = self.embeddings.embed_query(query_text)
        except Exception as e:
            logger.warning(f"Query embedding failed, returning no sources: {e}")
            return None
        if not embedding:
            logger.warning("Query embedding was empty, returning no sources")
            return None
        return embedding

    def _search_both(self, embedding: list[float], tenant_id: str, limit: int) -> dict:
        """Run both partition searches concurrently. Failed or late partitions yield []."""
        adapters = {
            CorpusScope.PUBLIC: self.public_adapter,
            CorpusScope.PRIVATE: self.private_adapter,
        }
        results = {scope: [] for scope in adapters}

        executor = ThreadPoolExecutor(max_workers=len(adapters))
        try:
            future_map = {
                executor.submit(adapter.search, embedding, tenant_id, limit): scope
                for scope, adapter in adapters.items()
            }
            done, not_done = wait(future_map, timeout=self.config.timeout_seconds)

            for future in not_done:
                logger.warning(
                    f"{future_map[future].value} corpus search timed out after "
                    f"{self.config.timeout_seconds}s"
                )
            for future in done:
                scope = future_map[future]
                try:
                    results[scope] = list(future.result())
                except Exception as e:
                    logger.warning(f"{scope.value} corpus search failed: {e}")
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

        return results

    @staticmethod
    def merge_results(public: list, private: list, limit: int) -> list[RetrievedSource]:
        """
        Merge per-partition hits into one ranked list.

        Sort is stable and descending on the normalized similarity, with
        public hits ahead of private hits of equal similarity. A document
        contributes only its best chunk per scope.
        """
        tagged = [(chunk, sim, CorpusScope.PUBLIC) for chunk, sim in public]
        tagged += [(chunk, sim, CorpusScope.PRIVATE) for chunk, sim in private]
        tagged.sort(key=lambda item: (-clamp_similarity(item[1]), _SCOPE_ORDER[item[2]]))
        tagged = _best_chunk_per_document(tagged)
        return [normalize_source(chunk, sim, scope) for chunk, sim, scope in tagged[:max(0, limit)]]

    def search_partitions(
        self,
        tenant_id: Optional[str],
        query_text: str,
        limit: Optional[int] = None,
    ) -> dict[CorpusScope, list[RetrievedSource]]:
        """
        Like retrieve(), but returns each partition's normalized hits separately.

        Raises:
            TenantNotResolvedError: If tenant_id is empty
        """
        if not tenant_id:
            raise TenantNotResolvedError("Retrieval requires a firm context")
        limit = self._clamp_limit(limit)
        empty = {CorpusScope.PUBLIC: [], CorpusScope.PRIVATE: []}

        if not query_text or not query_text.strip():
            return empty
        embedding = self._embed(query_text)
        if embedding is None:
            return empty

        raw = self._search_both(embedding, str(tenant_id), limit)
        partitions = {}
        for scope, hits in raw.items():
            tagged = [(chunk, sim, scope) for chunk, sim in hits]
            tagged.sort(key=lambda item: -clamp_similarity(item[1]))
            partitions[scope] = [
                normalize_source(chunk, sim, scope)
                for chunk, sim, _ in _best_chunk_per_document(tagged)[:limit]
            ]
        return partitions

    def retrieve(
        self,
        tenant_id: Optional[str],
        query_text: str,
        limit: Optional[int] = None,
    ) -> list[RetrievedSource]:
        """
        Retrieve up to limit sources from the public corpus and the firm's private corpus.

        Args:
            tenant_id: Calling firm; private results are restricted to it
            query_text: Natural-language query
            limit: Maximum number of sources (clamped to 1..max_limit)

        Returns:
            Sources sorted by similarity descending; [] on empty query or embedding failure

        Raises:
            TenantNotResolvedError: If tenant_id is empty
        """
        if not tenant_id:
            raise TenantNotResolvedError("Retrieval requires a firm context")
        limit = self._clamp_limit(limit)

        if not query_text or not query_text.strip():
            return []

        embedding = self._embed(query_text)
        if embedding is None:
            return []

        raw = self._search_both(embedding, str(tenant_id), limit)
        sources = self.merge_results(raw[CorpusScope.PUBLIC], raw[CorpusScope.PRIVATE], limit)
        logger.info(
            f"Retrieved {len(sources)} sources for tenant {tenant_id} "
            f"(public={len(raw[CorpusScope.PUBLIC])}, private={len(raw[CorpusScope.PRIVATE])})"
        )
        return sources
