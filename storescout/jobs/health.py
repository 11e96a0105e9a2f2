from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from typing import Any

import httpx

from storescout.core.config import Settings
from storescout.jobs.probes import ProbeFailure, ProbeResponse, ProbeSession
from storescout.jobs.profile import StoreProfile, extract_store_profile
from storescout.services.records import (
    UNKNOWN,
    VISIBLE_PLATFORM_STATUSES,
    CandidateRecord,
    CatalogSizeStatus,
    HealthStatus,
    RetryPolicy,
)

logger = logging.getLogger(__name__)

ACCESS_RESTRICTION_MARKERS = (
    "password is required",
    "enter store password",
    "enter using password",
    "this store is password protected",
    "storefront password",
)
INACTIVITY_MARKERS = (
    "this store does not exist",
    "sorry, this store is currently unavailable",
    "this store is currently unavailable",
    "reactivate your store",
    "open a new shopify store",
)
PASSWORD_PATH_PREFIX = "/password"


@dataclass(slots=True)
class StorefrontObservation:
    reachable: bool
    access_restricted: bool | None = None
    inactivity_marker: str | None = None
    failure: str | None = None
    profile: StoreProfile | None = None


@dataclass(slots=True)
class CatalogObservation:
    status: CatalogSizeStatus
    size: int | None = None
    lower_bound: int | None = None
    pages: int = 0
    failure: str | None = None


def inspect_storefront(response: ProbeResponse) -> StorefrontObservation:
    html = response.text.lower()
    restricted = response.final_path.startswith(PASSWORD_PATH_PREFIX) or any(
        marker in html for marker in ACCESS_RESTRICTION_MARKERS
    )
    marker = next((item for item in INACTIVITY_MARKERS if item in html), None)
    if response.status_code >= 400 and not (restricted or marker):
        return StorefrontObservation(reachable=True, failure="http_status")
    return StorefrontObservation(reachable=True, access_restricted=restricted, inactivity_marker=marker)


class HealthCheckEngine:
    phase = "health_check"

    def __init__(self, client: httpx.AsyncClient, settings: Settings) -> None:
        self.client = client
        self.settings = settings
        self.retry_policy = RetryPolicy(
            base_seconds=settings.health_check_retry_base_seconds,
            max_seconds=settings.health_check_retry_max_seconds,
            max_attempts=settings.health_check_max_attempts,
        )

    async def run(self, record: CandidateRecord, *, now: datetime | None = None) -> CandidateRecord:
        return await self.check_health(record, now=now)

    async def check_health(self, record: CandidateRecord, *, now: datetime | None = None) -> CandidateRecord:
        if record.platform_status not in VISIBLE_PLATFORM_STATUSES:
            logger.debug("health check skipped record=%s platform_status=%s", record.id, record.platform_status)
            return record

        current = now or datetime.now(timezone.utc)
        session = ProbeSession.from_settings(self.client, record.url, self.settings)
        try:
            storefront = await self._probe_storefront(session)
            catalog = await self._probe_catalog(session)
        finally:
            await session.close()

        health_status = self._resolve_health_status(record, storefront, catalog)
        is_access_restricted = (
            storefront.access_restricted if storefront.access_restricted is not None else record.is_access_restricted
        )
        catalog_size = catalog.size if catalog.status == "confirmed" else None
        catalog_size_estimate = self._resolve_estimate(record, catalog)
        # A page without a name, theme or country keeps the values already stored.
        profile = storefront.profile or StoreProfile()

        updated = replace(
            record,
            health_status=health_status,
            is_access_restricted=is_access_restricted,
            catalog_size=catalog_size,
            catalog_size_status=catalog.status,
            catalog_size_estimate=catalog_size_estimate,
            health_signals=self._explain(storefront, catalog),
            display_name=profile.name or record.display_name,
            theme_name=profile.theme_name or record.theme_name,
            country=profile.country or record.country,
        )
        logger.info(
            "health check record=%s status=%s restricted=%s catalog=%s size=%s",
            record.id,
            health_status,
            is_access_restricted,
            catalog.status,
            catalog_size,
        )

        if storefront.failure or catalog.failure:
            return updated.with_phase_failure("health_check", now=current, policy=self.retry_policy)
        return updated.with_phase_success(
            "health_check",
            now=current,
            recheck_after=timedelta(hours=self.settings.health_check_recheck_hours),
        )

    async def _probe_storefront(self, session: ProbeSession) -> StorefrontObservation:
        try:
            response = await session.fetch("/")
        except ProbeFailure as exc:
            return StorefrontObservation(reachable=False, failure=exc.kind)
        observation = inspect_storefront(response)
        if observation.failure is None and not (observation.access_restricted or observation.inactivity_marker):
            observation.profile = extract_store_profile(session.host, response.text)
        return observation

    async def _probe_catalog(self, session: ProbeSession) -> CatalogObservation:
        page_size = max(1, self.settings.catalog_page_size)
        max_pages = max(1, self.settings.catalog_max_pages)
        counted = 0
        for page in range(1, max_pages + 1):
            try:
                response = await session.fetch(
                    "/products.json",
                    params={"limit": page_size, "page": page},
                    relay=False,
                )
                payload = response.json() if response.status_code == 200 else None
            except ProbeFailure as exc:
                if counted:
                    return CatalogObservation(status="estimated", lower_bound=counted, pages=page - 1, failure=exc.kind)
                status: CatalogSizeStatus = "rate_limited" if exc.kind == "rate_limited" else "unknown"
                return CatalogObservation(status=status, pages=page - 1, failure=exc.kind)

            products = payload.get("products") if isinstance(payload, dict) else None
            if not isinstance(products, list):
                if counted:
                    return CatalogObservation(status="estimated", lower_bound=counted, pages=page - 1)
                return CatalogObservation(status="unknown", pages=page - 1)

            counted += len(products)
            if len(products) < page_size:
                return CatalogObservation(status="confirmed", size=counted, pages=page)

        return CatalogObservation(status="estimated", lower_bound=counted, pages=max_pages)

    @staticmethod
    def _resolve_health_status(
        record: CandidateRecord,
        storefront: StorefrontObservation,
        catalog: CatalogObservation,
    ) -> HealthStatus:
        if storefront.inactivity_marker:
            return "possibly_inactive"
        if storefront.failure is None:
            return "rate_limited" if catalog.status == "rate_limited" else "healthy"
        if storefront.failure == "rate_limited":
            return "rate_limited"
        if record.health_status == "possibly_inactive":
            # Positive inactivity evidence is not cleared by a failed probe.
            return "possibly_inactive"
        return "unknown"

    @staticmethod
    def _resolve_estimate(record: CandidateRecord, catalog: CatalogObservation) -> int | None:
        if catalog.status == "confirmed":
            return catalog.size
        if catalog.lower_bound:
            return catalog.lower_bound
        if record.catalog_size is not None:
            return record.catalog_size
        return record.catalog_size_estimate

    @staticmethod
    def _explain(storefront: StorefrontObservation, catalog: CatalogObservation) -> dict[str, Any]:
        return {
            "storefront": storefront.failure or "reachable",
            "access_restricted": storefront.access_restricted if storefront.access_restricted is not None else UNKNOWN,
            "inactivity_marker": storefront.inactivity_marker if storefront.access_restricted is not None else UNKNOWN,
            "catalog": catalog.status,
            "catalog_pages": catalog.pages,
            "catalog_failure": catalog.failure,
        }
