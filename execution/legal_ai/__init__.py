"""
Legal AI - usage gating and hybrid multi-tenant retrieval

This module provides:
- A billing gate deciding, per AI call, between trial credits, the firm's
  own provider key (BYOK) and an expired subscription
- An append-only usage ledger with atomic trial-credit consumption
- Encrypted per-firm provider credentials
- Hybrid semantic search over a shared public legal corpus and each firm's
  private documents, strictly isolated per firm

AI computation itself runs in hosted n8n workflows (see workflows.py).
"""

__version__ = "0.3.0"

from .billing import AIFeature, Plan, TenantBillingState, TenantNotResolvedError, CreditsExhaustedError
from .gate import BillingGate, Allowed, Denied, DenialReason
from .ledger import UsageLedger, UsageLedgerEntry, LedgerWriteError
from .credentials import CredentialVault, CredentialUnavailable
from .corpus import PublicCorpusAdapter, PrivateCorpusAdapter, CorpusChunk, CorpusScope
from .retriever import HybridRetriever, RetrievalConfig
from .normalizer import RetrievedSource, normalize_source

__all__ = [
    "AIFeature",
    "Plan",
    "TenantBillingState",
    "TenantNotResolvedError",
    "CreditsExhaustedError",
    "BillingGate",
    "Allowed",
    "Denied",
    "DenialReason",
    "UsageLedger",
    "UsageLedgerEntry",
    "LedgerWriteError",
    "CredentialVault",
    "CredentialUnavailable",
    "PublicCorpusAdapter",
    "PrivateCorpusAdapter",
    "CorpusChunk",
    "CorpusScope",
    "HybridRetriever",
    "RetrievalConfig",
    "RetrievedSource",
    "normalize_source",
]
