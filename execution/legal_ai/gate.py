"""
Billing Gate

Decides, per AI call, whether the firm may proceed and whether the call runs
on the firm's own provider key (BYOK) or on a trial credit:

    1. no billing record           -> Denied(NO_TENANT)
    2. paid plan, not active       -> Denied(SUBSCRIPTION_EXPIRED)
    3. has_byok                    -> Allowed(using_byok=True, credential)
                                      or Denied(BYOK_MISCONFIGURED)
    4. no trial credit left        -> Denied(CREDITS_EXHAUSTED)
    5. otherwise                   -> Allowed(using_byok=False)

evaluate() never writes. consume() records the finished call and, for trial
calls, decrements the balance atomically with the ledger append.
"""

import logging
from enum import Enum
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Union

from .billing import (
    BillingStatus,
    CreditsExhaustedError,
    TenantBillingState,
    TenantNotResolvedError,
    as_utc,
    get_plan_config,
)
from .credentials import CredentialUnavailable, CredentialVault, ResolvedCredential
from .ledger import UsageLedger, UsageLedgerEntry, UsageStats

logger = logging.getLogger(__name__)


class DenialReason(str, Enum):
    NO_TENANT = "NO_TENANT"
    SUBSCRIPTION_EXPIRED = "SUBSCRIPTION_EXPIRED"
    BYOK_MISCONFIGURED = "BYOK_MISCONFIGURED"
    CREDITS_EXHAUSTED = "CREDITS_EXHAUSTED"


DENIAL_MESSAGES = {
    DenialReason.NO_TENANT: "No billing record exists for this firm.",
    DenialReason.SUBSCRIPTION_EXPIRED: "Your subscription has expired. Renew it to keep using AI features.",
    DenialReason.BYOK_MISCONFIGURED: (
        "Your AI provider key could not be loaded. Re-enter it under Settings > AI."
    ),
    DenialReason.CREDITS_EXHAUSTED: (
        "You have used all free AI credits. Add your own API key under Settings > AI to continue."
    ),
}


@dataclass(frozen=True)
class Allowed:
    using_byok: bool
    credential: Optional[ResolvedCredential] = field(default=None, repr=False)
    allowed = True


@dataclass(frozen=True)
class Denied:
    reason: DenialReason
    allowed = False

    @property
    def message(self) -> str:
        return DENIAL_MESSAGES[self.reason]


GateDecision = Union[Allowed, Denied]


class BillingGate:
    """
    Gate and meter for AI calls.

    Usage:
        gate = BillingGate(store, vault, ledger)

        decision = gate.evaluate(tenant_id, user_id)
        if not decision.allowed:
            return error(decision.reason)

        ... run the AI call ...

        gate.consume(tenant_id, user_id, AIFeature.STRATEGY, decision.using_byok)
    """

    def __init__(self, store, vault: Optional[CredentialVault] = None, ledger: Optional[UsageLedger] = None):
        self.store = store
        self.vault = vault or CredentialVault(store)
        self.ledger = ledger or UsageLedger(store)

    @staticmethod
    def _require_tenant(tenant_id: Optional[str], user_id: Optional[str] = None) -> str:
        if not tenant_id:
            raise TenantNotResolvedError("Request has no firm context", user_id=user_id)
        return str(tenant_id)

    def _decide_without_credential(self, state: TenantBillingState, now: Optional[datetime] = None):
        """Steps 2 and 4, plus whether step 3 applies. Returns a Denied, "byok" or None."""
        if not state.is_subscription_active(now):
            return Denied(DenialReason.SUBSCRIPTION_EXPIRED)
        if state.has_byok:
            return "byok"
        if state.remaining_credits <= 0:
            return Denied(DenialReason.CREDITS_EXHAUSTED)
        return None

    def evaluate(self, tenant_id: Optional[str], user_id: Optional[str] = None) -> GateDecision:
        """
        Decide whether an AI call may proceed. Performs no writes.

        Raises:
            TenantNotResolvedError: If tenant_id is empty
        """
        tenant_id = self._require_tenant(tenant_id, user_id)

        state = self.store.get_billing(tenant_id)
        if state is None:
            logger.info(f"AI call denied for tenant {tenant_id}: no billing record")
            return Denied(DenialReason.NO_TENANT)

        outcome = self._decide_without_credential(state)
        if isinstance(outcome, Denied):
            logger.info(f"AI call denied for tenant {tenant_id}: {outcome.reason.value}")
            return outcome

        if outcome == "byok":
            try:
                credential = self.vault.get(tenant_id)
            except CredentialUnavailable as e:
                logger.warning(f"BYOK credential unavailable for tenant {tenant_id}: {e}")
                return Denied(DenialReason.BYOK_MISCONFIGURED)
            if credential is None:
                logger.warning(f"Tenant {tenant_id} is flagged BYOK but has no credential record")
                return Denied(DenialReason.BYOK_MISCONFIGURED)
            return Allowed(using_byok=True, credential=credential)

        return Allowed(using_byok=False)

    def consume(
        self,
        tenant_id: Optional[str],
        user_id: Optional[str],
        feature,
        using_byok: bool,
        input_tokens: Optional[int] = None,
        output_tokens: Optional[int] = None,
    ) -> UsageLedgerEntry:
        """
        Record a finished AI call.

        using_byok is the value returned by evaluate() for this call.

        Raises:
            TenantNotResolvedError: Empty tenant_id or no billing record
            CreditsExhaustedError: Trial call, but no credit remains (nothing written)
            LedgerWriteError: The write failed after retries
        """
        tenant_id = self._require_tenant(tenant_id, user_id)
        entry = UsageLedgerEntry.for_call(
            tenant_id,
            user_id,
            feature,
            using_byok,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
        )

        if using_byok:
            stored = self.ledger.record(entry)
            logger.info(f"Recorded BYOK call for tenant {tenant_id} ({entry.feature.value})")
            return stored

        stored = self.ledger.record_trial_consumption(entry)
        if stored is None:
            state = self.store.get_billing(tenant_id)
            if state is None:
                raise TenantNotResolvedError(
                    f"No billing record for tenant {tenant_id}", tenant_id=tenant_id, user_id=user_id
                )
            raise CreditsExhaustedError(
                f"No trial credits remaining for tenant {tenant_id}",
                tenant_id=tenant_id,
                used=state.trial_credits_used,
                total=state.trial_credits_total,
            )

        logger.info(f"Consumed trial credit for tenant {tenant_id} ({entry.feature.value})")
        return stored

    # =========================================================================
    # Billing administration
    # =========================================================================

    def ensure_billing(self, tenant_id: str) -> TenantBillingState:
        """Return the firm's billing record, creating the default FREE record if missing."""
        tenant_id = self._require_tenant(tenant_id)
        state = self.store.get_billing(tenant_id)
        if state is not None:
            return state
        logger.info(f"Creating default billing record for tenant {tenant_id}")
        return self.store.create_billing(TenantBillingState(tenant_id=tenant_id))

    def get_billing_status(self, tenant_id: str, now: Optional[datetime] = None) -> BillingStatus:
        """
        Summary of the firm's plan and AI availability. Does not decrypt credentials.

        Raises:
            TenantNotResolvedError: Empty tenant_id or no billing record
        """
        tenant_id = self._require_tenant(tenant_id)
        state = self.store.get_billing(tenant_id)
        if state is None:
            raise TenantNotResolvedError(f"No billing record for tenant {tenant_id}", tenant_id=tenant_id)

        outcome = self._decide_without_credential(state, now)
        reason = outcome.reason.value if isinstance(outcome, Denied) else None

        return BillingStatus(
            plan=state.plan,
            is_active=state.is_subscription_active(now),
            subscription_valid_until=state.subscription_valid_until,
            trial_credits_total=state.trial_credits_total,
            trial_credits_remaining=state.remaining_credits,
            has_byok=state.has_byok,
            max_users=state.max_users,
            can_use_ai=reason is None,
            reason=reason,
        )

    def set_plan(self, tenant_id: str, plan, valid_until: Optional[datetime] = None) -> TenantBillingState:
        """
        Apply a renewal or plan change from the payment provider.

        Raises:
            ValueError: Paid plan without a validity date
            TenantNotResolvedError: No billing record
        """
        tenant_id = self._require_tenant(tenant_id)
        config = get_plan_config(plan)
        if config.requires_subscription and valid_until is None:
            raise ValueError(f"Plan {config.name.value} requires subscription_valid_until")

        if not self.store.update_plan(tenant_id, config.name, config.max_users, valid_until):
            raise TenantNotResolvedError(f"No billing record for tenant {tenant_id}", tenant_id=tenant_id)

        logger.info(f"Tenant {tenant_id} moved to plan {config.name.value} (valid until {valid_until})")
        return self.store.get_billing(tenant_id)

    def deactivate_subscription(self, tenant_id: str) -> None:
        """Mark the subscription inactive (e.g. failed payment)."""
        tenant_id = self._require_tenant(tenant_id)
        if not self.store.set_subscription_active(tenant_id, False):
            raise TenantNotResolvedError(f"No billing record for tenant {tenant_id}", tenant_id=tenant_id)
        logger.info(f"Subscription deactivated for tenant {tenant_id}")

    def usage_stats(
        self,
        tenant_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> UsageStats:
        tenant_id = self._require_tenant(tenant_id)
        return self.ledger.stats(tenant_id, start=as_utc(start), end=as_utc(end))
