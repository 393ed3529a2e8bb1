"""
In-process store with the same interface as PostgresStore.

Used for local development (STORE_BACKEND=memory) and tests. Each tenant has
its own lock so check-and-increment of trial credits plus the ledger append
happen as one step, mirroring the conditional UPDATE in PostgreSQL.
"""

import copy
import logging
import threading
from collections import defaultdict
from datetime import datetime
from typing import Optional

from .billing import Plan, TenantBillingState, TenantNotResolvedError, utcnow
from .corpus import CorpusChunk, cosine_similarity
from .credentials import CredentialRecord
from .ledger import UsageLedgerEntry

logger = logging.getLogger(__name__)


class InMemoryStore:
    """Thread-safe dictionary-backed store."""

    def __init__(self):
        self._billing: dict[str, TenantBillingState] = {}
        self._credentials: dict[str, CredentialRecord] = {}
        self._ledger: list[UsageLedgerEntry] = []
        self._ledger_ids: set[str] = set()
        self._members: dict[str, str] = {}
        self._public_chunks: list[CorpusChunk] = []
        self._private_chunks: dict[str, list[CorpusChunk]] = defaultdict(list)

        self._registry_lock = threading.Lock()
        self._tenant_locks: dict[str, threading.Lock] = {}

    def _lock_for(self, tenant_id: str) -> threading.Lock:
        with self._registry_lock:
            lock = self._tenant_locks.get(tenant_id)
            if lock is None:
                lock = threading.Lock()
                self._tenant_locks[tenant_id] = lock
            return lock

    def ping(self) -> bool:
        return True

    def close(self) -> None:
        pass

    # Tenants & billing

    def get_tenant_for_user(self, user_id: str) -> Optional[str]:
        return self._members.get(str(user_id))

    def add_tenant_member(self, tenant_id: str, user_id: str) -> None:
        self._members[str(user_id)] = str(tenant_id)

    def get_billing(self, tenant_id: str) -> Optional[TenantBillingState]:
        with self._lock_for(tenant_id):
            state = self._billing.get(tenant_id)
            return copy.copy(state) if state else None

    def create_billing(self, state: TenantBillingState) -> TenantBillingState:
        with self._lock_for(state.tenant_id):
            if state.tenant_id not in self._billing:
                self._billing[state.tenant_id] = copy.copy(state)
            return copy.copy(self._billing[state.tenant_id])

    def update_plan(
        self,
        tenant_id: str,
        plan: Plan,
        max_users: int,
        subscription_valid_until: Optional[datetime],
    ) -> bool:
        with self._lock_for(tenant_id):
            state = self._billing.get(tenant_id)
            if state is None:
                return False
            self._billing[tenant_id] = TenantBillingState(
                tenant_id=tenant_id,
                plan=Plan(plan),
                trial_credits_total=state.trial_credits_total,
                trial_credits_used=state.trial_credits_used,
                subscription_valid_until=subscription_valid_until,
                has_byok=state.has_byok,
                max_users=max_users,
                is_active=True,
                created_at=state.created_at,
            )
            return True

    def set_subscription_active(self, tenant_id: str, is_active: bool) -> bool:
        with self._lock_for(tenant_id):
            state = self._billing.get(tenant_id)
            if state is None:
                return False
            state.is_active = is_active
            state.updated_at = utcnow()
            return True

    # Usage ledger

    def append_ledger(self, entry: UsageLedgerEntry) -> UsageLedgerEntry:
        with self._lock_for(entry.tenant_id):
            if entry.id not in self._ledger_ids:
                self._ledger.append(entry)
                self._ledger_ids.add(entry.id)
            return entry

    def consume_trial_credit(self, entry: UsageLedgerEntry) -> Optional[UsageLedgerEntry]:
        with self._lock_for(entry.tenant_id):
            if entry.id in self._ledger_ids:
                return entry
            state = self._billing.get(entry.tenant_id)
            if state is None or state.trial_credits_used >= state.trial_credits_total:
                return None
            state.trial_credits_used += 1
            state.updated_at = utcnow()
            self._ledger.append(entry)
            self._ledger_ids.add(entry.id)
            return entry

    def list_ledger(
        self,
        tenant_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> list[UsageLedgerEntry]:
        with self._lock_for(tenant_id):
            entries = [e for e in self._ledger if e.tenant_id == tenant_id]
        if start is not None:
            entries = [e for e in entries if e.created_at >= start]
        if end is not None:
            entries = [e for e in entries if e.created_at <= end]
        return sorted(entries, key=lambda e: e.created_at)

    # Credentials

    def get_credential(self, tenant_id: str) -> Optional[CredentialRecord]:
        record = self._credentials.get(tenant_id)
        return copy.copy(record) if record else None

    def upsert_credential(self, record: CredentialRecord) -> None:
        with self._lock_for(record.tenant_id):
            state = self._billing.get(record.tenant_id)
            if state is None:
                raise TenantNotResolvedError(
                    f"No billing record for tenant {record.tenant_id}", tenant_id=record.tenant_id
                )
            existing = self._credentials.get(record.tenant_id)
            if existing is not None:
                record = copy.copy(record)
                record.created_at = existing.created_at
            self._credentials[record.tenant_id] = record
            state.has_byok = True
            state.updated_at = utcnow()

    def delete_credential(self, tenant_id: str) -> bool:
        with self._lock_for(tenant_id):
            removed = self._credentials.pop(tenant_id, None) is not None
            state = self._billing.get(tenant_id)
            if state is not None:
                state.has_byok = False
                state.updated_at = utcnow()
            return removed

    # Corpus

    def add_public_chunk(self, chunk: CorpusChunk) -> None:
        if chunk.tenant_id is not None:
            raise ValueError("Public chunks must not carry a tenant_id")
        self._public_chunks.append(chunk)

    def add_private_chunk(self, chunk: CorpusChunk) -> None:
        if not chunk.tenant_id:
            raise ValueError("Private chunks require a tenant_id")
        self._private_chunks[str(chunk.tenant_id)].append(chunk)

    def _search(self, chunks: list[CorpusChunk], query_embedding: list[float], limit: int):
        scored = [(chunk, cosine_similarity(query_embedding, chunk.embedding)) for chunk in chunks]
        scored.sort(key=lambda item: item[1], reverse=True)
        return scored[:max(0, limit)]

    def search_public_chunks(self, query_embedding: list[float], limit: int) -> list[tuple[CorpusChunk, float]]:
        return self._search(list(self._public_chunks), query_embedding, limit)

    def search_private_chunks(
        self,
        query_embedding: list[float],
        tenant_id: str,
        limit: int,
    ) -> list[tuple[CorpusChunk, float]]:
        if not tenant_id:
            raise ValueError("tenant_id is required for private corpus search")
        return self._search(list(self._private_chunks.get(str(tenant_id), [])), query_embedding, limit)
