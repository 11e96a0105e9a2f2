from __future__ import annotations

import hashlib
import ipaddress
import json
import re
from typing import Any, TypedDict
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

TRACKING_KEYS = {
    "utm",
    "ref",
    "fbclid",
    "gclid",
    "msclkid",
    "ttclid",
    "igshid",
    "mc_cid",
    "mc_eid",
    "_ga",
}
SUPPORTED_SCHEMES = {"http", "https"}
DEFAULT_PORTS = {"80", "443"}
PLATFORM_SUBDOMAIN_SUFFIX = ".myshopify.com"

_SCHEME_RE = re.compile(r"^[a-zA-Z][a-zA-Z\d+.-]*://")
_HOST_LABEL_RE = re.compile(r"^(?!-)[a-z0-9_-]{1,63}(?<!-)$")


class InvalidURL(ValueError):
    """Raised when a candidate URL is syntactically unusable."""


class URLNormalizationOverride(TypedDict):
    strip_query_params: set[str]
    strip_query_prefixes: set[str]
    keep_www: bool


def canonical_hash(normalized_url: str) -> str:
    return hashlib.sha256(normalized_url.encode("utf-8")).hexdigest()


def parse_normalization_overrides(raw: str | None) -> dict[str, URLNormalizationOverride]:
    if not raw:
        return {}
    try:
        decoded = json.loads(raw)
    except json.JSONDecodeError:
        return {}
    if not isinstance(decoded, dict):
        return {}

    parsed: dict[str, URLNormalizationOverride] = {}
    for raw_domain, raw_rules in decoded.items():
        if not isinstance(raw_domain, str):
            continue
        domain = raw_domain.strip().lower().lstrip(".")
        if not domain or not isinstance(raw_rules, dict):
            continue

        parsed[domain] = {
            "strip_query_params": _coerce_lower_str_set(raw_rules.get("strip_query_params")),
            "strip_query_prefixes": _coerce_lower_str_set(raw_rules.get("strip_query_prefixes")),
            "keep_www": bool(raw_rules.get("keep_www", False)),
        }
    return parsed


def normalize_url(raw_url: str, *, overrides: dict[str, URLNormalizationOverride] | None = None) -> str:
    """Canonical storefront URL used as the single dedupe identity.

    Only syntactically unusable input raises ``InvalidURL``; odd but well-formed
    URLs are normalized as-is.
    """
    if not isinstance(raw_url, str):
        raise InvalidURL("url must be a string")
    value = raw_url.strip()
    if not value:
        raise InvalidURL("url is empty")
    if not _SCHEME_RE.match(value):
        value = f"https://{value.lstrip('/')}"

    try:
        parsed = urlsplit(value)
        port = parsed.port
    except ValueError as exc:
        raise InvalidURL(f"unparseable url: {raw_url!r}") from exc

    if parsed.scheme.lower() not in SUPPORTED_SCHEMES:
        raise InvalidURL(f"unsupported scheme: {parsed.scheme!r}")

    host = _normalize_host(parsed.hostname)
    override = _match_override(host, overrides or {})
    if host.startswith("www.") and not (override and override["keep_www"]):
        host = host[4:]

    netloc = f"[{host}]" if ":" in host else host
    if port is not None and str(port) not in DEFAULT_PORTS:
        netloc = f"{netloc}:{port}"

    path = parsed.path
    while path.endswith("/"):
        path = path[:-1]

    filtered_query_pairs = [
        (key, item)
        for key, item in parse_qsl(parsed.query, keep_blank_values=True)
        if not _should_strip_query_param(key, override)
    ]
    filtered_query_pairs.sort(key=lambda pair: pair[0])
    query = urlencode(filtered_query_pairs, doseq=True)
    return urlunsplit(("https", netloc, path, query, ""))


def storefront_host(normalized_url: str) -> str:
    return (urlsplit(normalized_url).hostname or "").lower()


def is_platform_subdomain(host: str) -> bool:
    return host.endswith(PLATFORM_SUBDOMAIN_SUFFIX) and host != PLATFORM_SUBDOMAIN_SUFFIX.lstrip(".")


def display_name_for(normalized_url: str) -> str:
    host = storefront_host(normalized_url)
    if is_platform_subdomain(host):
        return host[: -len(PLATFORM_SUBDOMAIN_SUFFIX)]
    return host


def _normalize_host(hostname: str | None) -> str:
    if not hostname:
        raise InvalidURL("url has no host")
    host = hostname.strip().rstrip(".").lower()
    if ":" in host:
        try:
            return str(ipaddress.IPv6Address(host))
        except ValueError as exc:
            raise InvalidURL(f"invalid host: {hostname!r}") from exc
    try:
        host = host.encode("idna").decode("ascii")
    except UnicodeError as exc:
        raise InvalidURL(f"invalid host: {hostname!r}") from exc
    labels = host.split(".")
    if not host or not all(_HOST_LABEL_RE.match(label) for label in labels):
        raise InvalidURL(f"invalid host: {hostname!r}")
    return host


def _coerce_lower_str_set(value: Any) -> set[str]:
    if not isinstance(value, list):
        return set()
    return {item.strip().lower() for item in value if isinstance(item, str) and item.strip()}


def _is_tracking_param(key: str) -> bool:
    return key.startswith("utm_") or key in TRACKING_KEYS


def _match_override(host: str, overrides: dict[str, URLNormalizationOverride]) -> URLNormalizationOverride | None:
    if not host or not overrides:
        return None
    labels = host.split(".")
    for index in range(len(labels)):
        candidate = ".".join(labels[index:])
        if candidate in overrides:
            return overrides[candidate]
    return None


def _should_strip_query_param(key: str, override: URLNormalizationOverride | None) -> bool:
    lowered = key.lower()
    if _is_tracking_param(lowered):
        return True
    if not override:
        return False
    if lowered in override["strip_query_params"]:
        return True
    return any(lowered.startswith(prefix) for prefix in override["strip_query_prefixes"])
