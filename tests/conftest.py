"""
Shared fixtures and test utilities for Legal AI tests.

Provides an in-memory store, a throwaway encryption key, deterministic
embeddings and sample corpus chunks so that all tests run without a
database, API keys, or network access.
"""

import sys
import hashlib
from pathlib import Path
from unittest.mock import MagicMock

import pytest
from dotenv import load_dotenv

# ---------------------------------------------------------------------------
# Path setup - ensure the execution package is importable
# ---------------------------------------------------------------------------
PROJECT_ROOT = Path(__file__).resolve().parent.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

load_dotenv(PROJECT_ROOT / ".env")

TENANT_A = "00000000-0000-0000-0000-00000000000a"
TENANT_B = "00000000-0000-0000-0000-00000000000b"
USER_A = "10000000-0000-0000-0000-00000000000a"
USER_B = "10000000-0000-0000-0000-00000000000b"

OPENAI_KEY = "sk-test-0123456789abcdefghijklmnop"

EMBEDDING_DIMS = 8


# ---------------------------------------------------------------------------
# Storage, crypto, ledger, gate
# ---------------------------------------------------------------------------

@pytest.fixture
def memory_store():
    from execution.legal_ai.memory_store import InMemoryStore
    return InMemoryStore()


@pytest.fixture
def cipher():
    import nacl.utils
    from nacl.secret import SecretBox
    from execution.legal_ai.crypto import SecretCipher
    return SecretCipher(nacl.utils.random(SecretBox.KEY_SIZE))


@pytest.fixture
def vault(memory_store, cipher):
    from execution.legal_ai.credentials import CredentialVault
    return CredentialVault(memory_store, cipher=cipher)


@pytest.fixture
def sleeps():
    """Records backoff delays instead of sleeping."""
    return []


@pytest.fixture
def ledger(memory_store, sleeps):
    from execution.legal_ai.ledger import UsageLedger
    return UsageLedger(memory_store, sleep=sleeps.append)


@pytest.fixture
def gate(memory_store, vault, ledger):
    from execution.legal_ai.gate import BillingGate
    return BillingGate(memory_store, vault, ledger)


@pytest.fixture
def free_tenant(memory_store):
    """TENANT_A on the default FREE plan with 20 unused trial credits."""
    from execution.legal_ai.billing import TenantBillingState
    memory_store.create_billing(TenantBillingState(tenant_id=TENANT_A))
    memory_store.add_tenant_member(TENANT_A, USER_A)
    return TENANT_A


def make_billing(tenant_id=TENANT_A, **kwargs):
    from execution.legal_ai.billing import TenantBillingState
    return TenantBillingState(tenant_id=tenant_id, **kwargs)


# ---------------------------------------------------------------------------
# Mock embedding service
# ---------------------------------------------------------------------------

class MockEmbeddingService:
    """Deterministic mock embedding service -- never calls external APIs."""

    def __init__(self, dimensions=EMBEDDING_DIMS):
        self._dimensions = dimensions
        self._call_count = 0

    def embed_query(self, query):
        self._call_count += 1
        return self._deterministic_embedding(query)

    def _deterministic_embedding(self, text):
        h = hashlib.sha256(text.encode()).hexdigest()
        seed = int(h[:8], 16)
        return [((seed + i) % 1000) / 1000.0 + 0.001 for i in range(self._dimensions)]

    @property
    def dimensions(self):
        return self._dimensions


@pytest.fixture
def mock_embedding_service():
    return MockEmbeddingService()


# ---------------------------------------------------------------------------
# Corpus helpers
# ---------------------------------------------------------------------------

def unit_vector(index, dims=EMBEDDING_DIMS):
    vec = [0.0] * dims
    vec[index] = 1.0
    return vec


def make_chunk(doc_id, text="Yargıtay kararı metni", tenant_id=None, embedding=None, **kwargs):
    from execution.legal_ai.corpus import CorpusChunk
    return CorpusChunk(
        doc_id=doc_id,
        chunk_id=f"{doc_id}-0",
        text=text,
        tenant_id=tenant_id,
        embedding=embedding if embedding is not None else unit_vector(0),
        **kwargs,
    )


class StubAdapter:
    """Corpus adapter returning fixed hits, or raising."""

    def __init__(self, results=None, error=None, delay=0.0):
        self.results = results or []
        self.error = error
        self.delay = delay
        self.calls = []

    def search(self, query_embedding, tenant_id=None, limit=10):
        import time
        self.calls.append((tenant_id, limit))
        if self.delay:
            time.sleep(self.delay)
        if self.error:
            raise self.error
        return self.results[:limit]


@pytest.fixture
def mock_workflows():
    """WorkflowClient stand-in; generate returns a canned answer."""
    workflows = MagicMock()
    workflows.generate.return_value = {"answer": "Taslak metin", "usage": {"input_tokens": 120, "output_tokens": 80}}
    workflows.config_status.return_value = {"EMBEDDINGS": True}
    return workflows


# ---------------------------------------------------------------------------
# Singleton resets between tests
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True)
def reset_store_singleton():
    """Reset the global store between tests."""
    import execution.legal_ai.store as store_mod
    store_mod._store = None
    yield
    store_mod._store = None
