from __future__ import annotations

import asyncio
import json
import ssl
from dataclasses import dataclass, field
from typing import Any, Literal
from urllib.parse import urlencode, urlsplit

import httpx

from storescout.core.config import Settings

ProbeFailureKind = Literal[
    "timeout",
    "dns",
    "tls",
    "network",
    "redirect_loop",
    "http_status",
    "rate_limited",
    "invalid_payload",
]

_DNS_HINTS = ("name or service not known", "nodename nor servname", "getaddrinfo", "no address associated")
_TLS_HINTS = ("ssl", "certificate", "tls")


class ProbeFailure(Exception):
    """A probe could not produce evidence either way."""

    def __init__(self, kind: ProbeFailureKind, detail: str = "", *, status_code: int | None = None) -> None:
        super().__init__(f"{kind}: {detail}" if detail else kind)
        self.kind = kind
        self.detail = detail
        self.status_code = status_code


class ConfigurationError(Exception):
    """A probe needs external credentials that are not configured."""


@dataclass(slots=True)
class ProbeResponse:
    url: str
    final_url: str
    status_code: int
    text: str
    headers: dict[str, str] = field(default_factory=dict)
    headers_available: bool = True

    @property
    def content_type(self) -> str:
        return self.headers.get("content-type", "").lower()

    @property
    def final_path(self) -> str:
        return urlsplit(self.final_url).path or "/"

    def json(self) -> Any:
        try:
            return json.loads(self.text)
        except (json.JSONDecodeError, TypeError) as exc:
            raise ProbeFailure("invalid_payload", f"{self.url} did not return JSON") from exc


class ProbeSession:
    """Fetches storefront resources for one record, memoizing each URL.

    Concurrent signal probes asking for the same resource share one request.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        base_url: str,
        *,
        user_agent: str,
        fetch_mode: str = "direct",
        scraping_api_url: str | None = None,
        scraping_api_key: str | None = None,
    ) -> None:
        self.client = client
        parts = urlsplit(base_url)
        self.base_url = f"{parts.scheme or 'https'}://{parts.netloc}"
        self.user_agent = user_agent
        self.fetch_mode = fetch_mode
        self.scraping_api_url = scraping_api_url
        self.scraping_api_key = scraping_api_key
        self._inflight: dict[str, asyncio.Task[ProbeResponse]] = {}

    @classmethod
    def from_settings(cls, client: httpx.AsyncClient, base_url: str, settings: Settings) -> ProbeSession:
        return cls(
            client,
            base_url,
            user_agent=settings.probe_user_agent,
            fetch_mode=settings.fetch_mode,
            scraping_api_url=settings.scraping_api_url,
            scraping_api_key=settings.scraping_api_key,
        )

    @property
    def host(self) -> str:
        return (urlsplit(self.base_url).hostname or "").lower()

    def resolve(self, path: str = "/", params: dict[str, Any] | None = None) -> str:
        target = f"{self.base_url}/{path.lstrip('/')}"
        if params:
            target = f"{target}?{urlencode(params)}"
        return target

    async def fetch(self, path: str = "/", *, params: dict[str, Any] | None = None, relay: bool = True) -> ProbeResponse:
        target = self.resolve(path, params)
        use_relay = relay and self.fetch_mode == "scraping_api"
        key = f"{'relay' if use_relay else 'direct'}:{target}"
        task = self._inflight.get(key)
        if task is None:
            coro = self._fetch_via_relay(target) if use_relay else self._fetch_direct(target)
            task = asyncio.ensure_future(coro)
            self._inflight[key] = task
        return await asyncio.shield(task)

    async def close(self) -> None:
        for task in self._inflight.values():
            if not task.done():
                task.cancel()
        self._inflight.clear()

    async def _fetch_direct(self, target: str) -> ProbeResponse:
        response = await self._get(target, headers={"User-Agent": self.user_agent})
        return _to_probe_response(target, response, headers_available=True)

    async def _fetch_via_relay(self, target: str) -> ProbeResponse:
        if not self.scraping_api_key or not self.scraping_api_url:
            raise ConfigurationError("SS_SCRAPING_API_KEY is required when SS_FETCH_MODE=scraping_api")
        response = await self._get(
            self.scraping_api_url,
            params={"api_key": self.scraping_api_key, "url": target, "render": "false"},
        )
        # The relay returns the page body only; target response headers are not observable.
        return _to_probe_response(target, response, headers_available=False)

    async def _get(
        self,
        url: str,
        *,
        headers: dict[str, str] | None = None,
        params: dict[str, Any] | None = None,
    ) -> httpx.Response:
        try:
            return await self.client.get(url, headers=headers, params=params)
        except httpx.TimeoutException as exc:
            raise ProbeFailure("timeout", url) from exc
        except httpx.TooManyRedirects as exc:
            raise ProbeFailure("redirect_loop", url) from exc
        except httpx.ConnectError as exc:
            raise ProbeFailure(_classify_connect_error(exc), url) from exc
        except httpx.HTTPError as exc:
            raise ProbeFailure("network", f"{url}: {exc}") from exc
        except ssl.SSLError as exc:
            raise ProbeFailure("tls", url) from exc


def build_probe_client(settings: Settings) -> httpx.AsyncClient:
    return httpx.AsyncClient(
        timeout=settings.probe_timeout_seconds,
        follow_redirects=True,
        max_redirects=settings.probe_max_redirects,
    )


def _to_probe_response(target: str, response: httpx.Response, *, headers_available: bool) -> ProbeResponse:
    status_code = int(response.status_code)
    if status_code == 429:
        raise ProbeFailure("rate_limited", target, status_code=status_code)
    if status_code >= 500:
        raise ProbeFailure("http_status", f"{target} returned {status_code}", status_code=status_code)
    return ProbeResponse(
        url=target,
        final_url=str(response.url) if headers_available else target,
        status_code=status_code,
        text=response.text,
        headers={key.lower(): value for key, value in response.headers.items()} if headers_available else {},
        headers_available=headers_available,
    )


def _classify_connect_error(exc: httpx.ConnectError) -> ProbeFailureKind:
    message = str(exc).lower()
    if any(hint in message for hint in _DNS_HINTS):
        return "dns"
    if any(hint in message for hint in _TLS_HINTS):
        return "tls"
    return "network"
