"""
Pydantic models for the Legal AI FastAPI backend.
"""

from typing import Any, Optional
from datetime import datetime
from pydantic import BaseModel, Field


class HealthResponse(BaseModel):
    """Response body for health check."""
    status: str
    store: str
    workflows: dict[str, bool]


class ErrorResponse(BaseModel):
    """Body returned when an AI call is denied or fails."""
    error: str
    message: str


class BillingStatusResponse(BaseModel):
    plan: str
    is_active: bool
    subscription_valid_until: Optional[datetime] = None
    trial_credits_total: int
    trial_credits_remaining: int
    has_byok: bool
    max_users: int
    can_use_ai: bool
    reason: Optional[str] = None


class UsageStatsResponse(BaseModel):
    """Ledger aggregate for the firm."""
    total_calls: int
    total_credits_used: int
    trial_credits_used: int
    by_feature: dict[str, int] = {}


class AISettingsUpdate(BaseModel):
    """Request body for saving the firm's provider key."""
    provider: str = Field(..., min_length=1)
    model: str = Field(..., min_length=1, max_length=200)
    api_key: Optional[str] = Field(default=None, max_length=500)


class AISettingsResponse(BaseModel):
    """Current BYOK settings. The key is only ever returned masked."""
    configured: bool
    provider: Optional[str] = None
    model: Optional[str] = None
    masked_key: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class ProviderInfo(BaseModel):
    id: str
    display_name: str
    docs_url: str
    models: list[str]
    requires_key: bool


class SourceInfo(BaseModel):
    """One retrieved source."""
    id: str
    title: Optional[str] = None
    docType: Optional[str] = None
    court: Optional[str] = None
    url: Optional[str] = None
    similarity: float
    scope: str
    snippet: str


class SearchRequest(BaseModel):
    """Request body for corpus search."""
    query: str = Field(..., min_length=1, max_length=2000)
    limit: int = Field(default=10, ge=1, le=50)


class SearchResponse(BaseModel):
    public: list[SourceInfo]
    private: list[SourceInfo]


class FeatureRequest(BaseModel):
    """Request body for a gated AI feature."""
    prompt: str = Field(..., min_length=1, max_length=20000)
    context: dict[str, Any] = {}
    use_retrieval: bool = True
    limit: int = Field(default=10, ge=1, le=50)


class FeatureResponse(BaseModel):
    feature: str
    output: Optional[Any] = None
    sources: list[SourceInfo] = []
    using_byok: bool
    accounting_pending: bool = False
