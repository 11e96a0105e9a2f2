from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import Any, Literal

PlatformStatus = Literal["confirmed", "probable", "unlikely", "unverified"]
HealthStatus = Literal["healthy", "possibly_inactive", "rate_limited", "unknown"]
CatalogSizeStatus = Literal["confirmed", "estimated", "unknown", "rate_limited"]
Category = Literal["print_on_demand", "dropshipping", "branded_ecommerce", "marketplace"]
Phase = Literal["verification", "health_check", "classification"]

PLATFORM_STATUSES = ("confirmed", "probable", "unlikely", "unverified")
HEALTH_STATUSES = ("healthy", "possibly_inactive", "rate_limited", "unknown")
CATALOG_SIZE_STATUSES = ("confirmed", "estimated", "unknown", "rate_limited")
CATEGORIES: tuple[Category, ...] = ("print_on_demand", "dropshipping", "branded_ecommerce", "marketplace")
PHASES: tuple[Phase, ...] = ("verification", "health_check", "classification")
VISIBLE_PLATFORM_STATUSES = {"confirmed", "probable"}
GATED_PHASES = {"health_check", "classification"}
UNKNOWN = "unknown"


@dataclass(slots=True)
class CandidateRecord:
    id: str
    url: str
    dedup_key: str
    discovery_source: str
    discovered_at: datetime
    display_name: str | None = None
    discovery_metadata: dict[str, Any] = field(default_factory=dict)

    platform_status: PlatformStatus = "unverified"
    platform_confidence: float = 0.0
    platform_signals: dict[str, Any] = field(default_factory=dict)
    platform_signals_last_observed: dict[str, Any] = field(default_factory=dict)

    health_status: HealthStatus = "unknown"
    is_access_restricted: bool = False
    catalog_size: int | None = None
    catalog_size_status: CatalogSizeStatus = "unknown"
    catalog_size_estimate: int | None = None
    health_signals: dict[str, Any] = field(default_factory=dict)
    theme_name: str | None = None
    country: str | None = None

    primary_category: Category | None = None
    category_confidence: float | None = None
    category_scores: dict[str, float] = field(default_factory=dict)
    category_signals: dict[str, list[str]] = field(default_factory=dict)
    behavioral_tags: list[str] = field(default_factory=list)

    tags_locked: bool = False
    tags_locked_by: str | None = None
    tags_locked_at: datetime | None = None

    last_verification_attempt: datetime | None = None
    verification_next_retry_at: datetime | None = None
    verification_retry_count: int = 0
    last_health_check_attempt: datetime | None = None
    health_check_next_retry_at: datetime | None = None
    health_check_retry_count: int = 0
    last_classification_attempt: datetime | None = None
    classification_next_retry_at: datetime | None = None
    classification_retry_count: int = 0

    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def is_active(self) -> bool:
        return derive_is_active(self.platform_status, self.health_status)

    def retry_count(self, phase: Phase) -> int:
        return int(getattr(self, f"{phase}_retry_count"))

    def next_retry_at(self, phase: Phase) -> datetime | None:
        return getattr(self, f"{phase}_next_retry_at")

    def last_attempt(self, phase: Phase) -> datetime | None:
        return getattr(self, f"last_{phase}_attempt")

    def is_due(self, phase: Phase, now: datetime) -> bool:
        due_at = self.next_retry_at(phase)
        if due_at is None:
            return self.last_attempt(phase) is None
        return due_at <= now

    def is_eligible(self, phase: Phase, now: datetime, max_attempts: int) -> bool:
        if self.retry_count(phase) >= max_attempts:
            return False
        if phase in GATED_PHASES and self.platform_status not in VISIBLE_PLATFORM_STATUSES:
            return False
        return self.is_due(phase, now)

    def due_at(self, phase: Phase) -> datetime:
        return self.next_retry_at(phase) or self.discovered_at

    def with_phase_success(self, phase: Phase, *, now: datetime, recheck_after: timedelta) -> CandidateRecord:
        return replace(
            self,
            **{
                f"last_{phase}_attempt": now,
                f"{phase}_retry_count": 0,
                f"{phase}_next_retry_at": now + recheck_after,
            },
        )

    def with_phase_failure(self, phase: Phase, *, now: datetime, policy: RetryPolicy) -> CandidateRecord:
        current = self.retry_count(phase)
        return replace(
            self,
            **{
                f"last_{phase}_attempt": now,
                f"{phase}_retry_count": current + 1,
                f"{phase}_next_retry_at": now + timedelta(seconds=policy.delay_seconds(current)),
            },
        )

    def to_dict(self) -> dict[str, Any]:
        payload = {name: getattr(self, name) for name in self.__dataclass_fields__}
        payload["is_active"] = self.is_active
        return payload


@dataclass(slots=True, frozen=True)
class RetryPolicy:
    base_seconds: int
    max_seconds: int
    max_attempts: int

    def delay_seconds(self, retry_count: int) -> int:
        if self.base_seconds <= 0:
            return 0
        delay = self.base_seconds * (2 ** max(0, retry_count))
        return min(delay, self.max_seconds)


def derive_is_active(platform_status: str, health_status: str) -> bool:
    return platform_status in VISIBLE_PLATFORM_STATUSES and health_status != "possibly_inactive"


def platform_status_for(confidence: float | None) -> PlatformStatus:
    if confidence is None:
        return "unverified"
    if confidence >= 0.6:
        return "confirmed"
    if confidence >= 0.4:
        return "probable"
    return "unlikely"
