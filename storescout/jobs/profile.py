"""Store name, theme and country read from a storefront homepage."""

from __future__ import annotations

import re
from dataclasses import dataclass

from bs4 import BeautifulSoup

MAX_NAME_LENGTH = 500
MAX_THEME_LENGTH = 50
MAX_HEADING_LENGTH = 200

HERO_HEADING_SELECTORS = (
    "h1.hero__title",
    "h1.hero-title",
    ".hero h1",
    ".hero-section h1",
    "main h1",
    ".main-content h1",
    "h1.banner__heading",
    "h1.section-header__title",
)

THEME_BLOCK = re.compile(r"Shopify\.theme\s*=\s*\{(.*?)\}", re.DOTALL)
THEME_SCHEMA_NAME = re.compile(r"[\"']?schema_name[\"']?\s*:\s*[\"']([^\"']+)[\"']")
THEME_NAME = re.compile(r"[\"']?name[\"']?\s*:\s*[\"']([^\"']+)[\"']")

COUNTRY_PATTERNS = (
    re.compile(r"Shopify\.country\s*=\s*[\"']([A-Za-z]{2})[\"']"),
    re.compile(r"[\"']country_code[\"']\s*:\s*[\"']([A-Za-z]{2})[\"']"),
    re.compile(r"(?:countryCode|shopCountry)\s*:\s*[\"']([A-Za-z]{2})[\"']"),
    re.compile(r"data-country(?:-code)?=[\"']([A-Za-z]{2})[\"']"),
)
# Country-code TLDs that are sold as generic names.
GENERIC_CCTLDS = frozenset({"ai", "cc", "co", "fm", "gg", "io", "ly", "me", "so", "to", "tv", "ws"})
CCTLD_ALIASES = {"uk": "GB"}


@dataclass(slots=True, frozen=True)
class StoreProfile:
    name: str | None = None
    theme_name: str | None = None
    country: str | None = None


def extract_store_profile(host: str, html: str) -> StoreProfile:
    soup = BeautifulSoup(html, "html.parser")
    return StoreProfile(
        name=store_name(soup),
        theme_name=theme_name(html),
        country=country_code(html, host),
    )


def store_name(soup: BeautifulSoup) -> str | None:
    """Title, then ``og:title``, then a hero heading, then any ``h1``."""
    if soup.title is not None:
        name = _clean(soup.title.get_text(" "))
        if name:
            return name[:MAX_NAME_LENGTH]

    og_title = soup.find("meta", attrs={"property": "og:title"})
    if og_title is not None:
        name = _clean(str(og_title.get("content") or ""))
        if name:
            return name[:MAX_NAME_LENGTH]

    for selector in HERO_HEADING_SELECTORS:
        heading = soup.select_one(selector)
        if heading is None:
            continue
        name = _clean(heading.get_text(" "))
        if name and len(name) < MAX_HEADING_LENGTH:
            return name

    heading = soup.find("h1")
    if heading is not None:
        name = _clean(heading.get_text(" "))
        if name:
            return name[:MAX_NAME_LENGTH]
    return None


def theme_name(html: str) -> str | None:
    block = THEME_BLOCK.search(html)
    if block is None:
        return None
    match = THEME_SCHEMA_NAME.search(block.group(1)) or THEME_NAME.search(block.group(1))
    if match is None:
        return None
    return _clean(match.group(1))[:MAX_THEME_LENGTH] or None


def country_code(html: str, host: str) -> str | None:
    for pattern in COUNTRY_PATTERNS:
        match = pattern.search(html)
        if match:
            return match.group(1).upper()
    tld = host.rsplit(".", 1)[-1].lower()
    if len(tld) == 2 and tld.isalpha() and tld not in GENERIC_CCTLDS:
        return CCTLD_ALIASES.get(tld, tld.upper())
    return None


def _clean(text: str) -> str:
    return " ".join(text.split())
