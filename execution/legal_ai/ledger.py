"""
AI Usage Ledger

Append-only record of every AI call that passed the billing gate and
completed. Entries are immutable: one per call, credits_used is 0 for BYOK
calls and 1 for trial calls (the unit is calls, not tokens).

Writes are retried with exponential backoff. A write that still fails is
logged at ERROR with enough context to reconcile by hand, then raised as
LedgerWriteError.
"""

import time
import uuid
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Optional

from .billing import AIFeature, utcnow

logger = logging.getLogger(__name__)

# Token counts land in INTEGER columns
_MAX_TOKEN_COUNT = 2**31 - 1


def _token_count(value) -> Optional[int]:
    """Coerce a provider-reported token count to a non-negative int, or None."""
    if isinstance(value, bool):
        return None
    if isinstance(value, str):
        value = value.strip()
        if not value.isdigit():
            return None
        value = int(value)
    elif isinstance(value, float):
        if not value.is_integer():
            return None
        value = int(value)
    elif not isinstance(value, int):
        return None
    if value < 0 or value > _MAX_TOKEN_COUNT:
        return None
    return value


@dataclass(frozen=True)
class UsageLedgerEntry:
    """One metered AI call."""
    tenant_id: str
    user_id: Optional[str]
    feature: AIFeature
    credits_used: int
    used_trial: bool
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = field(default_factory=utcnow)
    input_tokens: Optional[int] = None
    output_tokens: Optional[int] = None

    @classmethod
    def for_call(
        cls,
        tenant_id: str,
        user_id: Optional[str],
        feature,
        using_byok: bool,
        input_tokens: Optional[int] = None,
        output_tokens: Optional[int] = None,
    ) -> "UsageLedgerEntry":
        """Build the entry for a finished call: BYOK costs nothing, trial costs one credit."""
        return cls(
            tenant_id=tenant_id,
            user_id=user_id,
            feature=AIFeature(feature),
            credits_used=0 if using_byok else 1,
            used_trial=not using_byok,
            input_tokens=_token_count(input_tokens),
            output_tokens=_token_count(output_tokens),
        )

    @classmethod
    def from_row(cls, row: dict) -> "UsageLedgerEntry":
        return cls(
            id=str(row["id"]),
            tenant_id=str(row["tenant_id"]),
            user_id=str(row["user_id"]) if row.get("user_id") else None,
            feature=AIFeature(row["feature"]),
            credits_used=int(row["credits_used"]),
            used_trial=bool(row["used_trial"]),
            created_at=row["created_at"],
            input_tokens=row.get("input_tokens"),
            output_tokens=row.get("output_tokens"),
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "user_id": self.user_id,
            "feature": self.feature.value,
            "credits_used": self.credits_used,
            "used_trial": self.used_trial,
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "created_at": self.created_at.isoformat(),
        }


@dataclass
class UsageStats:
    """Aggregated ledger view for a tenant."""
    total_calls: int = 0
    total_credits_used: int = 0
    trial_credits_used: int = 0
    by_feature: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "total_calls": self.total_calls,
            "total_credits_used": self.total_credits_used,
            "trial_credits_used": self.trial_credits_used,
            "by_feature": dict(self.by_feature),
        }


@dataclass
class LedgerConfig:
    """Retry policy for ledger writes."""
    max_attempts: int = 3
    base_delay_seconds: float = 0.2
    max_delay_seconds: float = 2.0


class LedgerWriteError(Exception):
    """Raised when a ledger write could not be made durable after retries."""

    def __init__(self, message: str, entry: UsageLedgerEntry, attempts: int):
        super().__init__(message)
        self.entry = entry
        self.attempts = attempts


class UsageLedger:
    """
    Writes and reads the usage ledger through a store.

    Usage:
        ledger = UsageLedger(store)

        # BYOK call: append only
        ledger.record(UsageLedgerEntry.for_call(tenant_id, user_id, "STRATEGY", using_byok=True))

        # Trial call: decrement + append as one unit, None if no credit left
        ledger.record_trial_consumption(entry)
    """

    def __init__(self, store, config: Optional[LedgerConfig] = None, sleep: Callable[[float], None] = time.sleep):
        self.store = store
        self.config = config or LedgerConfig()
        self._sleep = sleep

    def record(self, entry: UsageLedgerEntry) -> UsageLedgerEntry:
        """Append an entry that carries no balance change."""
        if entry.used_trial:
            raise ValueError("Trial entries must go through record_trial_consumption()")
        return self._with_retry(lambda: self.store.append_ledger(entry), entry, "append")

    def record_trial_consumption(self, entry: UsageLedgerEntry) -> Optional[UsageLedgerEntry]:
        """
        Consume one trial credit and append the entry atomically.

        Returns:
            The stored entry, or None when the tenant had no credit left
            (nothing is written in that case).
        """
        if not entry.used_trial:
            raise ValueError("BYOK entries must go through record()")
        return self._with_retry(lambda: self.store.consume_trial_credit(entry), entry, "consume")

    def entries(
        self,
        tenant_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> list[UsageLedgerEntry]:
        return self.store.list_ledger(tenant_id, start=start, end=end)

    def stats(
        self,
        tenant_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> UsageStats:
        """Aggregate calls and credits for a tenant, optionally within a time window."""
        stats = UsageStats()
        for entry in self.entries(tenant_id, start=start, end=end):
            stats.total_calls += 1
            stats.total_credits_used += entry.credits_used
            if entry.used_trial:
                stats.trial_credits_used += entry.credits_used
            key = entry.feature.value
            stats.by_feature[key] = stats.by_feature.get(key, 0) + 1
        return stats

    def _backoff(self, attempt: int) -> float:
        delay = self.config.base_delay_seconds * (2 ** attempt)
        return min(delay, self.config.max_delay_seconds)

    def _with_retry(self, operation, entry: UsageLedgerEntry, label: str):
        attempts = max(1, self.config.max_attempts)
        last_error = None
        for attempt in range(attempts):
            try:
                return operation()
            except Exception as e:
                last_error = e
                if attempt < attempts - 1:
                    delay = self._backoff(attempt)
                    logger.warning(
                        f"Ledger {label} failed for tenant {entry.tenant_id} "
                        f"(attempt {attempt + 1}/{attempts}), retrying in {delay:.2f}s: {e}"
                    )
                    self._sleep(delay)

        logger.error(
            f"Ledger {label} failed permanently: entry={entry.id} tenant={entry.tenant_id} "
            f"user={entry.user_id} feature={entry.feature.value} credits={entry.credits_used} "
            f"error={last_error}"
        )
        raise LedgerWriteError(
            f"Could not record usage for tenant {entry.tenant_id} after {attempts} attempts",
            entry=entry,
            attempts=attempts,
        ) from last_error
