"""
Tests for execution/legal_ai/retriever.py

Covers: merge order (similarity desc, public before private on ties),
truncation, tenant isolation end-to-end, partial adapter failure,
timeouts, embedding failure, limit clamping and search_partitions.
"""

from unittest.mock import MagicMock

import pytest

from tests.conftest import TENANT_A, TENANT_B, StubAdapter, make_chunk


def _retriever(public, private, embeddings=None, **config):
    from execution.legal_ai.retriever import HybridRetriever, RetrievalConfig
    if embeddings is None:
        embeddings = MagicMock()
        embeddings.embed_query.return_value = [0.1] * 8
    return HybridRetriever(embeddings, public, private, RetrievalConfig(**config))


class TestMergeOrder:

    def test_public_first_on_equal_similarity(self):
        from execution.legal_ai.corpus import CorpusScope
        retriever = _retriever(
            StubAdapter([(make_chunk("pub"), 0.80)]),
            StubAdapter([(make_chunk("priv", tenant_id=TENANT_A), 0.80)]),
        )
        sources = retriever.retrieve(TENANT_A, "tahliye davası", limit=5)
        assert [s.scope for s in sources] == [CorpusScope.PUBLIC, CorpusScope.PRIVATE]

    def test_higher_private_sorts_first(self):
        from execution.legal_ai.corpus import CorpusScope
        retriever = _retriever(
            StubAdapter([(make_chunk("pub"), 0.70)]),
            StubAdapter([(make_chunk("priv", tenant_id=TENANT_A), 0.90)]),
        )
        sources = retriever.retrieve(TENANT_A, "tahliye davası", limit=5)
        assert [s.scope for s in sources] == [CorpusScope.PRIVATE, CorpusScope.PUBLIC]
        assert [s.similarity for s in sources] == [0.9, 0.7]

    def test_truncated_to_limit(self):
        public = StubAdapter([(make_chunk(f"pub-{i}"), 0.9 - i * 0.1) for i in range(5)])
        private = StubAdapter([(make_chunk(f"priv-{i}", tenant_id=TENANT_A), 0.85 - i * 0.1) for i in range(5)])
        sources = _retriever(public, private).retrieve(TENANT_A, "kira", limit=3)
        assert [s.id for s in sources] == ["pub-0", "priv-0", "pub-1"]

    def test_each_adapter_asked_for_limit(self):
        public, private = StubAdapter(), StubAdapter()
        _retriever(public, private).retrieve(TENANT_A, "kira", limit=4)
        assert public.calls == [(TENANT_A, 4)]
        assert private.calls == [(TENANT_A, 4)]

    def test_merge_results_directly(self):
        from execution.legal_ai.retriever import HybridRetriever
        merged = HybridRetriever.merge_results(
            [(make_chunk("p1"), 0.5)],
            [(make_chunk("q1", tenant_id=TENANT_A), 0.6)],
            limit=1,
        )
        assert [s.id for s in merged] == ["q1"]


    def test_document_keeps_best_chunk(self):
        from execution.legal_ai.corpus import CorpusChunk
        from execution.legal_ai.retriever import HybridRetriever
        weaker = CorpusChunk(chunk_id="k1-3", doc_id="k1", text="ikinci parça")
        stronger = CorpusChunk(chunk_id="k1-0", doc_id="k1", text="ilk parça")
        merged = HybridRetriever.merge_results(
            [(weaker, 0.55), (make_chunk("k2"), 0.6), (stronger, 0.8)], [], limit=5,
        )
        assert [s.id for s in merged] == ["k1", "k2"]
        assert merged[0].similarity == 0.8
        assert merged[0].snippet == "ilk parça"

    def test_same_document_in_both_scopes_kept(self):
        from execution.legal_ai.corpus import CorpusScope
        from execution.legal_ai.retriever import HybridRetriever
        merged = HybridRetriever.merge_results(
            [(make_chunk("shared"), 0.7)],
            [(make_chunk("shared", tenant_id=TENANT_A), 0.6)],
            limit=5,
        )
        assert [(s.id, s.scope) for s in merged] == [("shared", CorpusScope.PUBLIC), ("shared", CorpusScope.PRIVATE)]

    def test_duplicates_do_not_use_up_limit(self):
        public = StubAdapter([(make_chunk("a"), 0.9), (make_chunk("a"), 0.85), (make_chunk("b"), 0.8)])
        sources = _retriever(public, StubAdapter()).retrieve(TENANT_A, "kira", limit=2)
        assert [s.id for s in sources] == ["a", "b"]

class TestDegradation:

    def test_public_failure_returns_private_only(self):
        from execution.legal_ai.corpus import CorpusScope
        retriever = _retriever(
            StubAdapter(error=RuntimeError("index unavailable")),
            StubAdapter([(make_chunk("priv", tenant_id=TENANT_A), 0.6)]),
        )
        sources = retriever.retrieve(TENANT_A, "icra takibi", limit=5)
        assert [s.scope for s in sources] == [CorpusScope.PRIVATE]

    def test_private_failure_returns_public_only(self):
        retriever = _retriever(
            StubAdapter([(make_chunk("pub"), 0.6)]),
            StubAdapter(error=RuntimeError("timeout")),
        )
        assert [s.id for s in retriever.retrieve(TENANT_A, "icra takibi")] == ["pub"]

    def test_both_fail_returns_empty(self):
        retriever = _retriever(StubAdapter(error=RuntimeError("a")), StubAdapter(error=RuntimeError("b")))
        assert retriever.retrieve(TENANT_A, "icra takibi") == []

    def test_slow_partition_times_out(self):
        retriever = _retriever(
            StubAdapter([(make_chunk("pub"), 0.9)], delay=1.0),
            StubAdapter([(make_chunk("priv", tenant_id=TENANT_A), 0.4)]),
            timeout_seconds=0.1,
        )
        assert [s.id for s in retriever.retrieve(TENANT_A, "icra takibi")] == ["priv"]

    def test_embedding_failure_returns_empty(self):
        embeddings = MagicMock()
        embeddings.embed_query.side_effect = RuntimeError("workflow down")
        public = StubAdapter([(make_chunk("pub"), 0.9)])
        retriever = _retriever(public, StubAdapter(), embeddings=embeddings)
        assert retriever.retrieve(TENANT_A, "icra takibi") == []
        assert public.calls == []

    def test_empty_embedding_returns_empty(self):
        embeddings = MagicMock()
        embeddings.embed_query.return_value = []
        assert _retriever(StubAdapter(), StubAdapter(), embeddings=embeddings).retrieve(TENANT_A, "x") == []


class TestInputs:

    @pytest.mark.parametrize("query", ["", "   "])
    def test_blank_query(self, query):
        embeddings = MagicMock()
        retriever = _retriever(StubAdapter(), StubAdapter(), embeddings=embeddings)
        assert retriever.retrieve(TENANT_A, query) == []
        embeddings.embed_query.assert_not_called()

    @pytest.mark.parametrize("tenant_id", [None, ""])
    def test_missing_tenant(self, tenant_id):
        from execution.legal_ai.billing import TenantNotResolvedError
        with pytest.raises(TenantNotResolvedError):
            _retriever(StubAdapter(), StubAdapter()).retrieve(tenant_id, "kira")

    @pytest.mark.parametrize("limit,expected", [(0, 1), (-5, 1), (500, 50), (None, 10)])
    def test_limit_clamped(self, limit, expected):
        public = StubAdapter()
        _retriever(public, StubAdapter()).retrieve(TENANT_A, "kira", limit=limit)
        assert public.calls == [(TENANT_A, expected)]


class TestTenantIsolation:

    def test_other_tenant_private_chunks_never_returned(self, memory_store, mock_embedding_service):
        from execution.legal_ai.corpus import PrivateCorpusAdapter, PublicCorpusAdapter
        from execution.legal_ai.retriever import HybridRetriever

        query = "kira tespit davası"
        query_vec = mock_embedding_service.embed_query(query)
        memory_store.add_private_chunk(make_chunk("a-secret", tenant_id=TENANT_A, embedding=query_vec))
        memory_store.add_private_chunk(make_chunk("b-note", tenant_id=TENANT_B, embedding=[1.0] * 8))
        memory_store.add_public_chunk(make_chunk("public-1", embedding=[0.5] * 8))

        retriever = HybridRetriever(
            mock_embedding_service, PublicCorpusAdapter(memory_store), PrivateCorpusAdapter(memory_store)
        )
        for q in [query, "başka bir sorgu", "x"]:
            ids = {s.id for s in retriever.retrieve(TENANT_B, q, limit=50)}
            assert "a-secret" not in ids
            assert "b-note" in ids


class TestSearchPartitions:

    def test_returns_both_lists(self):
        from execution.legal_ai.corpus import CorpusScope
        retriever = _retriever(
            StubAdapter([(make_chunk("pub"), 0.3)]),
            StubAdapter([(make_chunk("priv", tenant_id=TENANT_A), 0.9)]),
        )
        partitions = retriever.search_partitions(TENANT_A, "nafaka", limit=5)
        assert [s.id for s in partitions[CorpusScope.PUBLIC]] == ["pub"]
        assert [s.id for s in partitions[CorpusScope.PRIVATE]] == ["priv"]

    def test_partition_deduplicated_by_document(self):
        from execution.legal_ai.corpus import CorpusScope
        retriever = _retriever(
            StubAdapter([(make_chunk("pub"), 0.4), (make_chunk("pub"), 0.6)]),
            StubAdapter(),
        )
        public = retriever.search_partitions(TENANT_A, "nafaka", limit=5)[CorpusScope.PUBLIC]
        assert [(s.id, s.similarity) for s in public] == [("pub", 0.6)]

    def test_blank_query(self):
        from execution.legal_ai.corpus import CorpusScope
        partitions = _retriever(StubAdapter(), StubAdapter()).search_partitions(TENANT_A, " ")
        assert partitions == {CorpusScope.PUBLIC: [], CorpusScope.PRIVATE: []}
