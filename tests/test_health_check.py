from __future__ import annotations

import asyncio
from datetime import timedelta

import httpx

from storescout.core.config import Settings
from storescout.jobs.health import HealthCheckEngine
from storescout.services.records import CandidateRecord

from conftest import NOW, build_mock_client, build_record


def products(count: int) -> list[dict]:
    return [{"id": index} for index in range(count)]


def check(settings: Settings, routes: dict, record: CandidateRecord, *, now=NOW, **client_kwargs) -> CandidateRecord:
    async def run() -> CandidateRecord:
        async with build_mock_client(routes, **client_kwargs) as client:
            return await HealthCheckEngine(client, settings).check_health(record, now=now)

    return asyncio.run(run())


def confirmed_record(**overrides) -> CandidateRecord:
    values = {"platform_status": "confirmed", "platform_confidence": 0.9}
    values.update(overrides)
    return build_record(**values)


def test_health_check_confirms_small_catalog(settings: Settings) -> None:
    routes = {
        "/": lambda request: httpx.Response(200, html="<html><h1>Welcome</h1></html>"),
        "/products.json?limit=250&page=1": lambda request: httpx.Response(200, json={"products": products(3)}),
    }

    result = check(settings, routes, confirmed_record())

    assert result.health_status == "healthy"
    assert result.catalog_size == 3
    assert result.catalog_size_status == "confirmed"
    assert result.is_access_restricted is False
    assert result.health_check_retry_count == 0
    assert result.health_check_next_retry_at == NOW + timedelta(hours=settings.health_check_recheck_hours)


def test_health_check_reports_lower_bound_when_pages_run_out() -> None:
    settings = Settings(otel_enabled=False, catalog_page_size=2, catalog_max_pages=2)
    routes = {
        "/": lambda request: httpx.Response(200, html="<html></html>"),
        "/products.json?limit=2&page=1": lambda request: httpx.Response(200, json={"products": products(2)}),
        "/products.json?limit=2&page=2": lambda request: httpx.Response(200, json={"products": products(2)}),
    }

    result = check(settings, routes, confirmed_record())

    assert result.catalog_size_status == "estimated"
    assert result.catalog_size is None
    assert result.catalog_size_estimate == 4


def test_health_check_repeated_timeouts_stay_unknown(settings: Settings) -> None:
    record = confirmed_record()
    timeout = httpx.ConnectTimeout("timed out")

    for attempt in range(3):
        record = check(settings, {}, record, now=NOW + timedelta(days=attempt), default=timeout)

    assert record.health_status == "unknown"
    assert record.catalog_size is None
    assert record.catalog_size_status == "unknown"
    assert record.is_access_restricted is False
    assert record.is_active is True
    assert record.health_check_retry_count == 3
    assert record.health_check_next_retry_at == NOW + timedelta(days=2, seconds=4 * settings.health_check_retry_base_seconds)


def test_health_check_rate_limited_catalog(settings: Settings) -> None:
    routes = {
        "/": lambda request: httpx.Response(200, html="<html></html>"),
        "/products.json": lambda request: httpx.Response(429, text="slow down"),
    }

    result = check(settings, routes, confirmed_record())

    assert result.health_status == "rate_limited"
    assert result.catalog_size_status == "rate_limited"
    assert result.catalog_size is None
    assert result.health_check_retry_count == 1


def test_health_check_flags_inactivity_only_on_explicit_marker(settings: Settings) -> None:
    routes = {
        "/": lambda request: httpx.Response(404, html="<p>Sorry, this store is currently unavailable.</p>"),
    }

    inactive = check(settings, routes, confirmed_record())
    assert inactive.health_status == "possibly_inactive"
    assert inactive.is_active is False
    assert inactive.catalog_size is None

    ambiguous = check(settings, {}, inactive, default=httpx.ReadTimeout("timed out"))
    assert ambiguous.health_status == "possibly_inactive"
    assert ambiguous.health_check_retry_count == 1


def test_health_check_plain_404_is_not_inactivity(settings: Settings) -> None:
    routes = {"/": lambda request: httpx.Response(404, html="<p>Page not found</p>")}

    result = check(settings, routes, confirmed_record())

    assert result.health_status == "unknown"
    assert result.health_signals["storefront"] == "http_status"
    assert result.health_check_retry_count == 1


def test_health_check_detects_password_redirect_and_keeps_it_on_ambiguity(settings: Settings) -> None:
    routes = {
        "/": lambda request: httpx.Response(302, headers={"location": "/password"}),
        "/password": lambda request: httpx.Response(200, html="<form>Enter store password</form>"),
    }

    restricted = check(settings, routes, confirmed_record())
    assert restricted.is_access_restricted is True

    ambiguous = check(settings, {}, restricted, default=httpx.ConnectTimeout("timed out"))
    assert ambiguous.is_access_restricted is True


def test_health_check_never_sets_restriction_on_failed_probe(settings: Settings) -> None:
    result = check(settings, {}, confirmed_record(), default=httpx.ConnectError("connection refused"))

    assert result.is_access_restricted is False
    assert result.health_signals["access_restricted"] == "unknown"


def test_health_check_carries_last_confirmed_size_as_estimate(settings: Settings) -> None:
    record = confirmed_record(catalog_size=120, catalog_size_status="confirmed", catalog_size_estimate=120)
    routes = {
        "/": lambda request: httpx.Response(200, html="<html></html>"),
        "/products.json": lambda request: httpx.Response(503, text="unavailable"),
    }

    result = check(settings, routes, record)

    assert result.catalog_size is None
    assert result.catalog_size_status == "unknown"
    assert result.catalog_size_estimate == 120
    assert result.health_check_retry_count == 1


def test_health_check_ignores_unverified_records(settings: Settings) -> None:
    record = build_record(platform_status="unlikely", platform_confidence=0.1)

    result = check(settings, {}, record, default=httpx.ConnectTimeout("timed out"))

    assert result is record


def test_health_check_records_store_profile_from_homepage(settings: Settings) -> None:
    html = (
        "<html><head><title> Harbour &amp; Pine </title>"
        '<script>Shopify.country = "ca";'
        'Shopify.theme = {"name":"Dawn - copy","id":1,"schema_name":"Dawn","role":"main"};</script>'
        "</head><body><h1>Spring drop</h1></body></html>"
    )
    routes = {
        "/": lambda request: httpx.Response(200, html=html),
        "/products.json?limit=250&page=1": lambda request: httpx.Response(200, json={"products": products(1)}),
    }

    result = check(settings, routes, confirmed_record(display_name="shop.example"))

    assert result.display_name == "Harbour & Pine"
    assert result.theme_name == "Dawn"
    assert result.country == "CA"


def test_health_check_keeps_stored_profile_when_page_has_none(settings: Settings) -> None:
    routes = {
        "/": lambda request: httpx.Response(200, html="<html><body><p>Hello</p></body></html>"),
        "/products.json?limit=250&page=1": lambda request: httpx.Response(200, json={"products": products(1)}),
    }
    record = confirmed_record(display_name="Harbour & Pine", theme_name="Dawn", country="CA")

    result = check(settings, routes, record)

    assert result.display_name == "Harbour & Pine"
    assert result.theme_name == "Dawn"
    assert result.country == "CA"


def test_health_check_ignores_profile_on_password_page(settings: Settings) -> None:
    routes = {
        "/": lambda request: httpx.Response(
            200, html="<html><head><title>Opening soon</title></head><body>Enter store password</body></html>"
        ),
    }

    result = check(settings, routes, confirmed_record(display_name="Harbour & Pine"))

    assert result.is_access_restricted is True
    assert result.display_name == "Harbour & Pine"
