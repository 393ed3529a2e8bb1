"""
FastAPI Backend for Legal AI

Gated AI features, hybrid legal search, billing status and BYOK settings
for the law-practice application. Every route resolves the caller's firm
server-side from the session user.

Run with: uvicorn execution.legal_ai.api:app --host 0.0.0.0 --port 8000
"""

import os
import time
import logging
from typing import Optional
from datetime import datetime

from fastapi import FastAPI, HTTPException, Depends, Header, Request
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from dotenv import load_dotenv

from . import __version__
from .api_models import (
    HealthResponse, ErrorResponse,
    BillingStatusResponse, UsageStatsResponse,
    AISettingsUpdate, AISettingsResponse, ProviderInfo,
    SearchRequest, SearchResponse, SourceInfo,
    FeatureRequest, FeatureResponse,
)
from .auth import extract_bearer_token, verify_session_jwt
from .billing import AIFeature, TenantNotResolvedError
from .corpus import CorpusScope, PrivateCorpusAdapter, PublicCorpusAdapter
from .credentials import CredentialUnavailable, CredentialVault, InvalidCredentialError
from .gate import BillingGate, DenialReason
from .ledger import UsageLedger
from .providers import PROVIDER_CAPABILITIES
from .workflows import WorkflowError

# Load environment variables
load_dotenv()
logger = logging.getLogger(__name__)

DENIAL_STATUS_CODES = {
    DenialReason.NO_TENANT: 404,
    DenialReason.SUBSCRIPTION_EXPIRED: 402,
    DenialReason.CREDITS_EXHAUSTED: 402,
    DenialReason.BYOK_MISCONFIGURED: 409,
}

app = FastAPI(
    title="Legal AI API",
    description="AI usage gating and hybrid multi-tenant legal retrieval",
    version=__version__,
)

# Configure CORS: use CORS_ORIGINS env var (comma-separated) or default to localhost
_cors_origins = os.getenv("CORS_ORIGINS", "http://localhost:3000").split(",")
app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in _cors_origins],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# =============================================================================
# Rate Limiting
# =============================================================================

class RateLimiter:
    """In-memory sliding-window rate limiter keyed by user."""

    def __init__(self, max_requests: int = 60, window_seconds: int = 60):
        self._max_requests = max_requests
        self._window = window_seconds
        self._requests: dict[str, list[float]] = {}

    def is_allowed(self, key: str) -> bool:
        """Record a request for key unless it is over the limit."""
        now = time.time()
        window_start = now - self._window

        recent = [t for t in self._requests.get(key, ()) if t > window_start]
        if len(recent) >= self._max_requests:
            self._requests[key] = recent
            return False

        recent.append(now)
        self._requests[key] = recent
        self._evict_idle(window_start)
        return True

    def _evict_idle(self, window_start: float) -> None:
        # Drop keys whose newest request has left the window
        idle = [k for k, stamps in self._requests.items() if not stamps or stamps[-1] <= window_start]
        for k in idle:
            del self._requests[k]

    def tracked_keys(self) -> int:
        return len(self._requests)

    def reset(self) -> None:
        self._requests.clear()


_rate_limiter = RateLimiter(
    max_requests=int(os.getenv("RATE_LIMIT_RPM", "60")),
    window_seconds=60,
)


# =============================================================================
# Service Container
# =============================================================================

class ServiceContainer:
    """
    Lazily builds the store, workflow client, embedding service and cipher.

    Gate, vault and retriever are cheap wrappers and are built per request
    from whatever is currently in the container.
    """

    def __init__(self):
        self._store = None
        self._workflows = None
        self._embeddings = None
        self._cipher = None

    def get_store(self):
        if self._store is None:
            from .retriever import RetrievalConfig
            from .store import StoreConfig, create_store
            timeout_ms = int(RetrievalConfig().timeout_seconds * 1000)
            store = create_store(config=StoreConfig(search_timeout_ms=timeout_ms))
            if hasattr(store, "initialize_schema"):
                store.initialize_schema()
                try:
                    store.enable_rls()
                except Exception as e:
                    logger.warning(f"RLS setup skipped: {e}")
            self._store = store
        return self._store

    def get_workflows(self):
        if self._workflows is None:
            from .workflows import WorkflowClient
            self._workflows = WorkflowClient()
        return self._workflows

    def get_embeddings(self):
        if self._embeddings is None:
            from .embeddings import WorkflowEmbeddingService
            self._embeddings = WorkflowEmbeddingService(self.get_workflows())
        return self._embeddings

    def get_vault(self) -> CredentialVault:
        return CredentialVault(self.get_store(), cipher=self._cipher)

    def get_gate(self) -> BillingGate:
        store = self.get_store()
        return BillingGate(store, self.get_vault(), UsageLedger(store))

    def get_retriever(self):
        from .retriever import HybridRetriever
        store = self.get_store()
        return HybridRetriever(
            self.get_embeddings(),
            PublicCorpusAdapter(store),
            PrivateCorpusAdapter(store),
        )

    def get_assistant(self):
        from .assistant import AIAssistant
        return AIAssistant(self.get_gate(), self.get_retriever(), self.get_workflows())


_container = ServiceContainer()


# =============================================================================
# Authentication & tenant resolution
# =============================================================================

async def get_current_user(authorization: Optional[str] = Header(None)) -> dict:
    """Validate the session JWT and return the user."""
    token = extract_bearer_token(authorization)
    if not token:
        raise HTTPException(status_code=401, detail="Missing bearer token")
    user = verify_session_jwt(token)
    if not user:
        raise HTTPException(status_code=401, detail="Invalid or expired session")
    return user


async def check_rate_limit(user: dict = Depends(get_current_user)):
    """FastAPI dependency that enforces rate limiting per user."""
    if not _rate_limiter.is_allowed(user["user_id"]):
        raise HTTPException(status_code=429, detail="Rate limit exceeded. Try again later.")


def get_tenant_context(user: dict = Depends(get_current_user)) -> dict:
    """Resolve the user's firm from the membership table."""
    tenant_id = _container.get_store().get_tenant_for_user(user["user_id"])
    if not tenant_id:
        raise TenantNotResolvedError("User is not a member of any firm", user_id=user["user_id"])
    return {"tenant_id": tenant_id, "user_id": user["user_id"]}


@app.exception_handler(TenantNotResolvedError)
async def tenant_not_resolved_handler(request: Request, exc: TenantNotResolvedError):
    return JSONResponse(
        status_code=404,
        content=ErrorResponse(error=DenialReason.NO_TENANT.value, message=str(exc)).model_dump(),
    )


@app.exception_handler(WorkflowError)
async def workflow_error_handler(request: Request, exc: WorkflowError):
    return JSONResponse(
        status_code=502,
        content=ErrorResponse(
            error="WORKFLOW_FAILED", message="The AI service is temporarily unavailable."
        ).model_dump(),
    )


def _denial_response(denial) -> JSONResponse:
    return JSONResponse(
        status_code=DENIAL_STATUS_CODES[denial.reason],
        content=ErrorResponse(error=denial.reason.value, message=denial.message).model_dump(),
    )


# =============================================================================
# Endpoints
# =============================================================================

@app.get("/api/v1/health", response_model=HealthResponse)
async def health_check():
    """Health check endpoint."""
    store_status = "unknown"
    try:
        store_status = "connected" if _container.get_store().ping() else "disconnected"
    except Exception as e:
        logger.warning(f"Health check: store disconnected: {e}")
        store_status = "disconnected"

    return HealthResponse(
        status="ok",
        store=store_status,
        workflows=_container.get_workflows().config_status(),
    )


@app.get("/api/v1/billing/status", response_model=BillingStatusResponse)
def billing_status(ctx: dict = Depends(get_tenant_context)):
    status = _container.get_gate().get_billing_status(ctx["tenant_id"])
    return BillingStatusResponse(**status.to_dict())


@app.get("/api/v1/billing/usage", response_model=UsageStatsResponse)
def billing_usage(
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    ctx: dict = Depends(get_tenant_context),
):
    stats = _container.get_gate().usage_stats(ctx["tenant_id"], start=start, end=end)
    return UsageStatsResponse(**stats.to_dict())


@app.get("/api/v1/settings/ai", response_model=AISettingsResponse)
def get_ai_settings(ctx: dict = Depends(get_tenant_context)):
    described = _container.get_vault().describe(ctx["tenant_id"])
    if described is None:
        return AISettingsResponse(configured=False)
    return AISettingsResponse(configured=True, **described)


@app.post("/api/v1/settings/ai", response_model=AISettingsResponse)
def save_ai_settings(body: AISettingsUpdate, ctx: dict = Depends(get_tenant_context)):
    vault = _container.get_vault()
    try:
        vault.upsert(ctx["tenant_id"], body.provider, body.model, body.api_key)
    except InvalidCredentialError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except CredentialUnavailable:
        logger.error(f"Could not store AI credential for tenant {ctx['tenant_id']}")
        raise HTTPException(status_code=503, detail="Credential storage is unavailable")

    return AISettingsResponse(configured=True, **vault.describe(ctx["tenant_id"]))


@app.delete("/api/v1/settings/ai")
def delete_ai_settings(ctx: dict = Depends(get_tenant_context)):
    _container.get_vault().delete(ctx["tenant_id"])
    return {"status": "deleted"}


@app.get("/api/v1/settings/ai/providers", response_model=list[ProviderInfo])
async def list_providers():
    return [
        ProviderInfo(
            id=provider.value,
            display_name=caps.display_name,
            docs_url=caps.docs_url,
            models=list(caps.models),
            requires_key=caps.requires_key,
        )
        for provider, caps in PROVIDER_CAPABILITIES.items()
    ]


@app.post("/api/v1/rag/search", response_model=SearchResponse, dependencies=[Depends(check_rate_limit)])
def rag_search(body: SearchRequest, ctx: dict = Depends(get_tenant_context)):
    """Search the public corpus and the firm's private corpus."""
    partitions = _container.get_retriever().search_partitions(ctx["tenant_id"], body.query, body.limit)
    return SearchResponse(
        public=[SourceInfo(**s.to_dict()) for s in partitions[CorpusScope.PUBLIC]],
        private=[SourceInfo(**s.to_dict()) for s in partitions[CorpusScope.PRIVATE]],
    )


@app.post(
    "/api/v1/ai/{feature}",
    response_model=FeatureResponse,
    responses={status: {"model": ErrorResponse} for status in (402, 404, 409, 502)},
    dependencies=[Depends(check_rate_limit)],
)
def run_ai_feature(feature: str, body: FeatureRequest, ctx: dict = Depends(get_tenant_context)):
    """Run a gated AI feature: gate, retrieve, generate, record usage."""
    try:
        ai_feature = AIFeature(feature.upper().replace("-", "_"))
    except ValueError:
        raise HTTPException(status_code=404, detail=f"Unknown AI feature: {feature}")
    if ai_feature == AIFeature.EMBEDDINGS:
        raise HTTPException(status_code=400, detail="Embeddings are not a user-facing feature")

    result = _container.get_assistant().run_feature(
        ctx["tenant_id"],
        ctx["user_id"],
        ai_feature,
        body.prompt,
        context=body.context,
        use_retrieval=body.use_retrieval,
        limit=body.limit,
    )
    if not result.allowed:
        return _denial_response(result.denial)

    return FeatureResponse(**result.to_dict())

