"""
AI feature orchestration

One entry point for every AI-backed feature:

    gate.evaluate -> retrieve sources -> generation workflow -> gate.consume

A denied call never reaches the workflow. A failed workflow call raises
WorkflowError and is not charged. Once a result exists it is returned to
the caller even if recording it in the ledger failed; such results are
flagged accounting_pending.
"""

import logging
from dataclasses import dataclass, field
from typing import Optional

from .billing import AIFeature, CreditsExhaustedError
from .gate import BillingGate, Denied
from .ledger import LedgerWriteError, UsageLedgerEntry
from .normalizer import RetrievedSource
from .retriever import HybridRetriever
from .workflows import WorkflowClient

logger = logging.getLogger(__name__)


@dataclass
class FeatureResult:
    """Outcome of one gated AI call."""
    feature: AIFeature
    output: Optional[dict] = None
    sources: list[RetrievedSource] = field(default_factory=list)
    using_byok: bool = False
    denial: Optional[Denied] = None
    ledger_entry: Optional[UsageLedgerEntry] = None
    accounting_pending: bool = False

    @property
    def allowed(self) -> bool:
        return self.denial is None

    def to_dict(self) -> dict:
        return {
            "feature": self.feature.value,
            "output": self.output,
            "sources": [s.to_dict() for s in self.sources],
            "using_byok": self.using_byok,
            "accounting_pending": self.accounting_pending,
        }


class AIAssistant:
    """Runs AI features behind the billing gate."""

    def __init__(self, gate: BillingGate, retriever: HybridRetriever, workflows: WorkflowClient):
        self.gate = gate
        self.retriever = retriever
        self.workflows = workflows

    def run_feature(
        self,
        tenant_id: str,
        user_id: Optional[str],
        feature,
        prompt: str,
        context: Optional[dict] = None,
        use_retrieval: bool = True,
        limit: Optional[int] = None,
    ) -> FeatureResult:
        """
        Run one AI feature for a firm.

        Returns:
            FeatureResult; check .allowed / .denial before reading .output

        Raises:
            TenantNotResolvedError: If tenant_id is empty
            WorkflowError: If the generation workflow fails (nothing is charged)
        """
        feature = AIFeature(feature)

        decision = self.gate.evaluate(tenant_id, user_id)
        if not decision.allowed:
            return FeatureResult(feature=feature, denial=decision)

        sources = []
        if use_retrieval:
            sources = self.retriever.retrieve(tenant_id, prompt, limit)

        output = self.workflows.generate(
            feature,
            prompt,
            sources,
            credential=decision.credential if decision.using_byok else None,
            context={**(context or {}), "firmId": str(tenant_id), "userId": user_id},
        )

        result = FeatureResult(
            feature=feature,
            output=output,
            sources=sources,
            using_byok=decision.using_byok,
        )

        usage = output.get("usage") if isinstance(output, dict) else None
        usage = usage if isinstance(usage, dict) else {}

        try:
            result.ledger_entry = self.gate.consume(
                tenant_id,
                user_id,
                feature,
                decision.using_byok,
                input_tokens=usage.get("input_tokens"),
                output_tokens=usage.get("output_tokens"),
            )
        except CreditsExhaustedError as e:
            # Another call took the last credit between evaluate and consume
            logger.warning(
                f"Trial credits ran out before {feature.value} for tenant {tenant_id} "
                f"could be recorded ({e.used}/{e.total})"
            )
        except LedgerWriteError as e:
            logger.error(f"Usage for tenant {tenant_id} not recorded, entry {e.entry.id} needs reconciliation")
            result.accounting_pending = True

        return result
