"""
Tenant Billing State for AI features

Holds the per-firm billing record (plan, trial credits, subscription window,
BYOK flag), the plan table, and the AI feature tags metered in the usage
ledger. Decisions over this state live in gate.py.
"""

import logging
from enum import Enum
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

logger = logging.getLogger(__name__)

DEFAULT_TRIAL_CREDITS = 20


class Plan(str, Enum):
    """Subscription plans."""
    FREE = "FREE"
    SOLO = "SOLO"
    TEAM = "TEAM"
    ENTERPRISE = "ENTERPRISE"


class AIFeature(str, Enum):
    """AI capabilities metered per call."""
    CASE_ASSISTANT = "CASE_ASSISTANT"
    STRATEGY = "STRATEGY"
    PLEADING_GENERATE = "PLEADING_GENERATE"
    PLEADING_REVIEW = "PLEADING_REVIEW"
    DRAFT_GENERATOR = "DRAFT_GENERATOR"
    DRAFT_REVIEWER = "DRAFT_REVIEWER"
    COLLECTION_ASSISTANT = "COLLECTION_ASSISTANT"
    CONTRACT_ANALYZE = "CONTRACT_ANALYZE"
    TRAINING = "TRAINING"
    EMBEDDINGS = "EMBEDDINGS"


@dataclass(frozen=True)
class PlanConfig:
    """Static plan definition."""
    name: Plan
    display_name: str
    max_users: int
    price_monthly: Optional[int]  # None = free or custom pricing
    requires_subscription: bool


PLAN_CONFIGS = {
    Plan.FREE: PlanConfig(
        name=Plan.FREE,
        display_name="Free Trial",
        max_users=1,
        price_monthly=None,
        requires_subscription=False,
    ),
    Plan.SOLO: PlanConfig(
        name=Plan.SOLO,
        display_name="Solo Practitioner",
        max_users=1,
        price_monthly=2000,
        requires_subscription=True,
    ),
    Plan.TEAM: PlanConfig(
        name=Plan.TEAM,
        display_name="Team (up to 5 users)",
        max_users=5,
        price_monthly=5000,
        requires_subscription=True,
    ),
    Plan.ENTERPRISE: PlanConfig(
        name=Plan.ENTERPRISE,
        display_name="Enterprise",
        max_users=999,
        price_monthly=None,
        requires_subscription=True,
    ),
}


class TenantNotResolvedError(Exception):
    """Raised when a call arrives without a resolvable tenant (firm)."""

    def __init__(self, message: str, tenant_id: Optional[str] = None, user_id: Optional[str] = None):
        super().__init__(message)
        self.tenant_id = tenant_id
        self.user_id = user_id


class CreditsExhaustedError(Exception):
    """Raised when a trial credit cannot be consumed because none remain."""

    def __init__(self, message: str, tenant_id: str, used: int = 0, total: int = 0):
        super().__init__(message)
        self.tenant_id = tenant_id
        self.used = used
        self.total = total


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def get_plan_config(plan) -> PlanConfig:
    return PLAN_CONFIGS[Plan(plan)]


@dataclass
class TenantBillingState:
    """Billing record for one firm. Never deleted."""
    tenant_id: str
    plan: Plan = Plan.FREE
    trial_credits_total: int = DEFAULT_TRIAL_CREDITS
    trial_credits_used: int = 0
    subscription_valid_until: Optional[datetime] = None
    has_byok: bool = False
    max_users: int = 1
    is_active: bool = True
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def __post_init__(self):
        self.plan = Plan(self.plan)
        self.subscription_valid_until = as_utc(self.subscription_valid_until)
        if self.trial_credits_used < 0 or self.trial_credits_used > self.trial_credits_total:
            raise ValueError(
                f"trial_credits_used ({self.trial_credits_used}) must be within "
                f"0..{self.trial_credits_total}"
            )

    @property
    def remaining_credits(self) -> int:
        return max(0, self.trial_credits_total - self.trial_credits_used)

    @property
    def requires_subscription(self) -> bool:
        return get_plan_config(self.plan).requires_subscription

    def is_subscription_active(self, now: Optional[datetime] = None) -> bool:
        """
        Whether the subscription window is open.

        FREE never expires (it is limited by trial credits only). Paid plans
        need is_active and a validity date that is not in the past.
        """
        if not self.requires_subscription:
            return True
        if not self.is_active or self.subscription_valid_until is None:
            return False
        return self.subscription_valid_until >= (as_utc(now) or utcnow())

    @classmethod
    def from_row(cls, row: dict) -> "TenantBillingState":
        """Build from a database row (dict-like)."""
        return cls(
            tenant_id=str(row["tenant_id"]),
            plan=Plan(row["plan"]),
            trial_credits_total=int(row["trial_credits_total"]),
            trial_credits_used=int(row["trial_credits_used"]),
            subscription_valid_until=row.get("subscription_valid_until"),
            has_byok=bool(row["has_byok"]),
            max_users=int(row.get("max_users") or 1),
            is_active=bool(row.get("is_active", True)),
            created_at=as_utc(row.get("created_at")) or utcnow(),
            updated_at=as_utc(row.get("updated_at")) or utcnow(),
        )


@dataclass
class BillingStatus:
    """Summary shown to the firm (dashboard widget, settings page)."""
    plan: Plan
    is_active: bool
    subscription_valid_until: Optional[datetime]
    trial_credits_total: int
    trial_credits_remaining: int
    has_byok: bool
    max_users: int
    can_use_ai: bool
    reason: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "plan": self.plan.value,
            "is_active": self.is_active,
            "subscription_valid_until": (
                self.subscription_valid_until.isoformat() if self.subscription_valid_until else None
            ),
            "trial_credits_total": self.trial_credits_total,
            "trial_credits_remaining": self.trial_credits_remaining,
            "has_byok": self.has_byok,
            "max_users": self.max_users,
            "can_use_ai": self.can_use_ai,
            "reason": self.reason,
        }
