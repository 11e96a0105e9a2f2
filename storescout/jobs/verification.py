from __future__ import annotations

import logging
from dataclasses import replace
from datetime import datetime, timedelta, timezone

import httpx

from storescout.core.config import Settings
from storescout.core.urls import is_platform_subdomain
from storescout.jobs.probes import ProbeFailure, ProbeSession
from storescout.jobs.scoring import (
    Observation,
    Signal,
    carry_forward,
    explain_outcomes,
    independent_signal_observed,
    observe_signals,
    observed_values,
    weighted_confidence,
)
from storescout.services.records import CandidateRecord, RetryPolicy, platform_status_for

logger = logging.getLogger(__name__)

CDN_MARKERS = ("cdn.shopify.com", "shopify.theme", "shopify.checkout")
CART_KEYS = ("items", "token", "total_price")
PARTIAL_CART_SCORE = 0.75


async def observe_cart_endpoint(session: ProbeSession) -> Observation:
    response = await session.fetch("/cart.js", relay=False)
    if response.status_code != 200:
        return False
    content_type = response.content_type
    looks_json = "application/json" in content_type
    if response.headers_available and not (looks_json or "javascript" in content_type):
        return False
    try:
        payload = response.json()
    except ProbeFailure:
        # JSON content type without a parseable cart still hints at the platform endpoint.
        return PARTIAL_CART_SCORE if looks_json else False
    return isinstance(payload, dict) and any(key in payload for key in CART_KEYS)


async def observe_shop_id_header(session: ProbeSession) -> Observation:
    response = await session.fetch("/")
    if not response.headers_available:
        return None
    return bool(response.headers.get("x-shopid"))


async def observe_catalog_endpoint(session: ProbeSession) -> Observation:
    response = await session.fetch("/products.json", relay=False)
    if response.status_code != 200:
        return False
    try:
        payload = response.json()
    except ProbeFailure:
        return False
    return isinstance(payload, dict) and isinstance(payload.get("products"), list)


async def observe_cdn_asset_reference(session: ProbeSession) -> Observation:
    response = await session.fetch("/")
    html = response.text.lower()
    return any(marker in html for marker in CDN_MARKERS)


async def observe_platform_subdomain(session: ProbeSession) -> Observation:
    # A custom domain says nothing either way.
    return True if is_platform_subdomain(session.host) else None


PLATFORM_SIGNALS: tuple[Signal[ProbeSession], ...] = (
    Signal("cart_endpoint", 0.4, observe_cart_endpoint),
    Signal("shop_id_header", 0.3, observe_shop_id_header),
    Signal("catalog_endpoint", 0.2, observe_catalog_endpoint),
    Signal("cdn_asset_reference", 0.15, observe_cdn_asset_reference),
    Signal("platform_subdomain", 0.1, observe_platform_subdomain, corroborating=True),
)


class VerificationEngine:
    phase = "verification"

    def __init__(
        self,
        client: httpx.AsyncClient,
        settings: Settings,
        *,
        signals: tuple[Signal[ProbeSession], ...] = PLATFORM_SIGNALS,
    ) -> None:
        self.client = client
        self.settings = settings
        self.signals = signals
        self.retry_policy = RetryPolicy(
            base_seconds=settings.verification_retry_base_seconds,
            max_seconds=settings.verification_retry_max_seconds,
            max_attempts=settings.verification_max_attempts,
        )

    async def run(self, record: CandidateRecord, *, now: datetime | None = None) -> CandidateRecord:
        return await self.verify(record, now=now)

    async def verify(self, record: CandidateRecord, *, now: datetime | None = None) -> CandidateRecord:
        current = now or datetime.now(timezone.utc)
        session = ProbeSession.from_settings(self.client, record.url, self.settings)
        try:
            outcomes = await observe_signals(self.signals, session)
        finally:
            await session.close()

        fresh = independent_signal_observed(outcomes)
        # The explained map reports this run; the last-observed map feeds the next one.
        signals = explain_outcomes(outcomes)
        last_observed = {**record.platform_signals_last_observed, **observed_values(outcomes)}
        carried = carry_forward(outcomes, record.platform_signals_last_observed)
        if carried:
            logger.debug("verification carried forward record=%s signals=%s", record.id, carried)
        if not fresh:
            # Nothing observable: keep prior status and confidence, back off.
            logger.info(
                "verification observed no signals record=%s failures=%s",
                record.id,
                {name: row.failure for name, row in outcomes.items() if row.failure},
            )
            updated = replace(record, platform_signals=signals, platform_signals_last_observed=last_observed)
            return updated.with_phase_failure("verification", now=current, policy=self.retry_policy)

        computed = weighted_confidence(outcomes)
        confidence = self._bounded_confidence(record, computed)
        status = platform_status_for(confidence)
        logger.info(
            "verification record=%s confidence=%.3f computed=%.3f status=%s",
            record.id,
            confidence,
            computed if computed is not None else -1.0,
            status,
        )
        updated = replace(
            record,
            platform_confidence=confidence,
            platform_status=status,
            platform_signals=signals,
            platform_signals_last_observed=last_observed,
        )
        recheck_hours = (
            self.settings.verification_confirmed_recheck_hours
            if status == "confirmed"
            else self.settings.verification_recheck_hours
        )
        return updated.with_phase_success("verification", now=current, recheck_after=timedelta(hours=recheck_hours))

    def _bounded_confidence(self, record: CandidateRecord, computed: float | None) -> float:
        if computed is None:
            return record.platform_confidence
        if record.platform_status == "unverified" or computed >= record.platform_confidence:
            return computed
        floor = record.platform_confidence - max(0.0, self.settings.verification_max_confidence_drop)
        return round(max(computed, floor), 4)
