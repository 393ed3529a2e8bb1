"""
Workflow client for the hosted n8n webhooks

Every AI capability (embedding a query, generating a pleading, reviewing a
draft, ...) is an externally hosted workflow reached by an HTTP POST with a
JSON body. Webhook URLs come from N8N_<TYPE>_WEBHOOK_URL environment
variables.

Payloads can carry a tenant's provider key (llmConfig.api_key) and client
documents, so request and response bodies are never logged.
"""

import os
import logging
from enum import Enum
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from .billing import AIFeature

logger = logging.getLogger(__name__)


class WorkflowType(str, Enum):
    CASE_ASSISTANT = "CASE_ASSISTANT"
    STRATEGY = "STRATEGY"
    PLEADING_GENERATOR = "PLEADING_GENERATOR"
    PLEADING_REVIEW = "PLEADING_REVIEW"
    DRAFT_GENERATOR = "DRAFT_GENERATOR"
    DRAFT_REVIEWER = "DRAFT_REVIEWER"
    COLLECTION_ASSISTANT = "COLLECTION_ASSISTANT"
    CONTRACT_ANALYZE = "CONTRACT_ANALYZE"
    TRAINING = "TRAINING"
    EMBEDDINGS = "EMBEDDINGS"

    @property
    def env_var(self) -> str:
        return f"N8N_{self.value}_WEBHOOK_URL"


FEATURE_WORKFLOWS = {
    AIFeature.CASE_ASSISTANT: WorkflowType.CASE_ASSISTANT,
    AIFeature.STRATEGY: WorkflowType.STRATEGY,
    AIFeature.PLEADING_GENERATE: WorkflowType.PLEADING_GENERATOR,
    AIFeature.PLEADING_REVIEW: WorkflowType.PLEADING_REVIEW,
    AIFeature.DRAFT_GENERATOR: WorkflowType.DRAFT_GENERATOR,
    AIFeature.DRAFT_REVIEWER: WorkflowType.DRAFT_REVIEWER,
    AIFeature.COLLECTION_ASSISTANT: WorkflowType.COLLECTION_ASSISTANT,
    AIFeature.CONTRACT_ANALYZE: WorkflowType.CONTRACT_ANALYZE,
    AIFeature.TRAINING: WorkflowType.TRAINING,
    AIFeature.EMBEDDINGS: WorkflowType.EMBEDDINGS,
}


def workflow_for_feature(feature) -> WorkflowType:
    return FEATURE_WORKFLOWS[AIFeature(feature)]


@dataclass
class WorkflowConfig:
    """Webhook endpoints and HTTP behaviour."""
    urls: dict = field(default_factory=dict)  # WorkflowType -> URL; unset types read the environment
    timeout_seconds: float = 60.0
    max_retries: int = 2
    backoff_factor: float = 0.5
    source: str = "legal-ai"

    def url_for(self, workflow_type: WorkflowType) -> Optional[str]:
        workflow_type = WorkflowType(workflow_type)
        url = self.urls.get(workflow_type) or os.getenv(workflow_type.env_var)
        return url.strip() if url and url.strip() else None


class WorkflowError(Exception):
    """Raised when a workflow call fails or returns an unusable response."""

    def __init__(self, message: str, workflow_type: Optional[WorkflowType] = None, status_code: Optional[int] = None):
        super().__init__(message)
        self.workflow_type = workflow_type
        self.status_code = status_code


def _make_session(config: WorkflowConfig) -> requests.Session:
    """Session with retry backoff on transient server errors."""
    s = requests.Session()
    s.headers.update({"Content-Type": "application/json"})
    retries = Retry(
        total=config.max_retries,
        backoff_factor=config.backoff_factor,
        status_forcelist=[500, 502, 503, 504],
        allowed_methods=frozenset({"POST"}),
        raise_on_status=False,
    )
    adapter = HTTPAdapter(max_retries=retries)
    s.mount("https://", adapter)
    s.mount("http://", adapter)
    return s


class WorkflowClient:
    """
    Calls the hosted workflows.

    Usage:
        client = WorkflowClient()
        embedding = client.embed("kira tespit davası zamanaşımı")
        result = client.generate(AIFeature.STRATEGY, prompt, sources, credential=decision.credential)
    """

    def __init__(self, config: Optional[WorkflowConfig] = None, session: Optional[requests.Session] = None):
        self.config = config or WorkflowConfig()
        self.session = session or _make_session(self.config)

    def is_configured(self, workflow_type) -> bool:
        return self.config.url_for(workflow_type) is not None

    def config_status(self) -> dict:
        """Which workflows have a webhook URL. URLs themselves are not exposed."""
        return {wt.value: self.is_configured(wt) for wt in WorkflowType}

    def call(self, workflow_type, payload: dict) -> dict:
        """
        POST payload to a workflow and return the decoded JSON response.

        Raises:
            WorkflowError: Missing URL, transport error, non-2xx status, or non-JSON body
        """
        workflow_type = WorkflowType(workflow_type)
        url = self.config.url_for(workflow_type)
        if not url:
            raise WorkflowError(
                f"Webhook URL not configured for {workflow_type.value} ({workflow_type.env_var})",
                workflow_type=workflow_type,
            )

        body = {
            **payload,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "source": self.config.source,
        }

        try:
            resp = self.session.post(url, json=body, timeout=self.config.timeout_seconds)
        except requests.RequestException as e:
            logger.warning(f"Workflow {workflow_type.value} request failed: {type(e).__name__}")
            raise WorkflowError(
                f"Workflow {workflow_type.value} request failed: {type(e).__name__}",
                workflow_type=workflow_type,
            ) from e

        if not resp.ok:
            logger.warning(f"Workflow {workflow_type.value} returned HTTP {resp.status_code}")
            raise WorkflowError(
                f"Workflow {workflow_type.value} returned HTTP {resp.status_code}",
                workflow_type=workflow_type,
                status_code=resp.status_code,
            )

        try:
            data = resp.json()
        except ValueError as e:
            raise WorkflowError(
                f"Workflow {workflow_type.value} returned a non-JSON response",
                workflow_type=workflow_type,
                status_code=resp.status_code,
            ) from e

        logger.debug(f"Workflow {workflow_type.value} completed (HTTP {resp.status_code})")
        return data

    def embed(self, text: str) -> list[float]:
        """
        Embed a search query through the EMBEDDINGS workflow.

        Raises:
            WorkflowError: If the call fails or the response has no embedding
        """
        data = self.call(WorkflowType.EMBEDDINGS, {"text": text, "docId": None, "scope": "query"})

        chunks = data.get("chunks") if isinstance(data, dict) else None
        embedding = None
        if chunks and isinstance(chunks[0], dict):
            embedding = chunks[0].get("embedding")
        if not embedding or not isinstance(embedding, list):
            raise WorkflowError(
                "Embedding workflow returned no embedding",
                workflow_type=WorkflowType.EMBEDDINGS,
            )
        return [float(x) for x in embedding]

    def generate(
        self,
        feature,
        prompt: str,
        sources: list,
        credential=None,
        context: Optional[dict] = None,
    ) -> dict:
        """
        Run a generation workflow with retrieved sources.

        llmConfig is only sent when the call runs on the firm's own key;
        otherwise the workflow uses the platform key.
        """
        payload = dict(context or {})
        payload["prompt"] = prompt
        payload["sources"] = [s.to_dict() if hasattr(s, "to_dict") else s for s in sources]
        if credential is not None:
            payload["llmConfig"] = credential.to_llm_config()

        return self.call(workflow_for_feature(feature), payload)
