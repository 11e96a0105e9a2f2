from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

PlatformStatus = Literal["confirmed", "probable", "unlikely", "unverified"]
HealthStatus = Literal["healthy", "possibly_inactive", "rate_limited", "unknown"]
CatalogSizeStatus = Literal["confirmed", "estimated", "unknown", "rate_limited"]
Category = Literal["print_on_demand", "dropshipping", "branded_ecommerce", "marketplace"]
Phase = Literal["verification", "health_check", "classification"]


class PhaseBookkeepingOut(BaseModel):
    last_attempt: datetime | None = None
    next_retry_at: datetime | None = None
    retry_count: int = 0


class CandidateSummaryOut(BaseModel):
    id: str
    url: str
    display_name: str | None = None
    platform_status: PlatformStatus
    platform_confidence: float
    health_status: HealthStatus
    is_access_restricted: bool
    catalog_size: int | None = None
    catalog_size_status: CatalogSizeStatus
    theme_name: str | None = None
    country: str | None = None
    primary_category: Category | None = None
    category_confidence: float | None = None
    behavioral_tags: list[str] = Field(default_factory=list)
    is_active: bool
    discovered_at: datetime


class CandidateOut(CandidateSummaryOut):
    dedup_key: str
    discovery_source: str
    discovery_metadata: dict[str, Any] = Field(default_factory=dict)
    platform_signals: dict[str, Any] = Field(default_factory=dict)
    platform_signals_last_observed: dict[str, Any] = Field(default_factory=dict)
    catalog_size_estimate: int | None = None
    health_signals: dict[str, Any] = Field(default_factory=dict)
    category_scores: dict[str, float] = Field(default_factory=dict)
    category_signals: dict[str, list[str]] = Field(default_factory=dict)
    tags_locked: bool = False
    tags_locked_by: str | None = None
    tags_locked_at: datetime | None = None
    phases: dict[Phase, PhaseBookkeepingOut] = Field(default_factory=dict)
    created_at: datetime | None = None
    updated_at: datetime | None = None


class TagLockRequest(BaseModel):
    category: Category | None = None
    operator_id: str = Field(min_length=1)


class TagUnlockRequest(BaseModel):
    operator_id: str = Field(min_length=1)
