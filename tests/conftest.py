from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timezone
from typing import Any

import httpx
import pytest

from storescout.core.config import Settings
from storescout.core.urls import canonical_hash
from storescout.services.records import CandidateRecord

NOW = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)

Route = Callable[[httpx.Request], httpx.Response] | Exception


def build_mock_client(routes: dict[str, Route], *, default: Route | None = None) -> httpx.AsyncClient:
    """Serve storefront paths from a route table; keys may include the query string."""

    def handler(request: httpx.Request) -> httpx.Response:
        raw_path = request.url.raw_path.decode("ascii")
        route = routes.get(raw_path, routes.get(request.url.path, default))
        if route is None:
            return httpx.Response(404, text="not found", request=request)
        if isinstance(route, Exception):
            raise route
        return route(request)

    return httpx.AsyncClient(transport=httpx.MockTransport(handler), follow_redirects=True)


def build_record(**overrides: Any) -> CandidateRecord:
    url = overrides.pop("url", "https://shop.example")
    values: dict[str, Any] = {
        "id": "00000000-0000-0000-0000-000000000001",
        "url": url,
        "dedup_key": canonical_hash(url),
        "discovery_source": "test_feed",
        "discovered_at": NOW,
    }
    values.update(overrides)
    return CandidateRecord(**values)


@pytest.fixture
def settings() -> Settings:
    return Settings(storage_backend="memory", otel_enabled=False, database_url=None)


@pytest.fixture
def mock_client() -> Callable[..., httpx.AsyncClient]:
    return build_mock_client


@pytest.fixture
def make_record() -> Callable[..., CandidateRecord]:
    return build_record
