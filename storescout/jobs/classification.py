"""Business-model classification of verified storefronts.

Each category has an independent detector that inspects the storefront page
and returns a capped score with the evidence it matched. Scores are stored as
they are; a category is only assigned when its score clears the confidence
floor and the record's tags are not locked by an operator.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone

import httpx
from bs4 import BeautifulSoup

from storescout.core.config import Settings
from storescout.core.urls import is_platform_subdomain
from storescout.jobs.probes import ProbeFailure, ProbeSession
from storescout.services.records import (
    CATEGORIES,
    VISIBLE_PLATFORM_STATUSES,
    CandidateRecord,
    Category,
    RetryPolicy,
)

logger = logging.getLogger(__name__)

RUNNING_PAID_ADS = "running_paid_ads"

POD_APPS = (
    "printify",
    "printful",
    "gelato",
    "spod",
    "customcat",
    "jetprint",
    "inkedjoy",
    "printy6",
    "gooten",
    "teespring",
    "apliiq",
    "printaura",
    "contrado",
    "print-on-demand",
)
POD_KEYWORDS = (
    "made to order",
    "printed just for you",
    "custom printed",
    "made when you order",
    "printed on demand",
    "this product is made on demand",
    "made on demand",
    "print on demand",
    "printed when ordered",
)
POD_MOCKUP_HINTS = ("mockup", "flat-lay", "print preview")
POD_PRODUCTION_HINTS = ("production time", "custom printing takes", "printing time")
SIZE_LABEL = re.compile(r"^(?:xxs|xs|s|m|l|xl|xxl|xxxl|[2-5]xl)$")
OPTION_SELECTOR = "select option, [data-option-value], [data-option]"

DROPSHIP_APPS = (
    "oberlo",
    "dsers",
    "spocket",
    "zendrop",
    "cj dropshipping",
    "cjdropshipping",
    "ali reviews",
    "alireviews",
    "aliexpress",
    "ryviu",
)
DROPSHIP_SHIPPING_CLUES = (
    "ships from overseas",
    "delivery: 7-15 business days",
    "ships from china",
    "ships from asia",
    "shipping from supplier",
    "tracking number will be provided",
    "ships from warehouse",
    "processing time",
)
DROPSHIP_GENERIC = ("hot sale", "limited stock", "wholesale price", "best seller", "premium quality")
DROPSHIP_POLICY = (
    "supplier delays",
    "we are not responsible for customs",
    "multiple warehouse locations",
    "import duties",
    "third-party supplier",
)
HOME_CURRENCIES = {"USD", "EUR", "GBP"}
CURRENCY_PATTERN = re.compile(r"[\"']?currency[\"']?\s*[:=]\s*[\"']?([A-Za-z]{3})\b")

BRAND_INDICATORS = (
    "our story",
    "our mission",
    "about us",
    "founded in",
    "established in",
    "designed in",
    "made in",
    "lifetime warranty",
    "quality guarantee",
    "brand story",
)
ADDRESS_PATTERN = re.compile(
    r"\d+[^,\n]*\b(?:street|st|avenue|ave|road|rd|boulevard|blvd|drive|dr|lane|ln|way)\b",
    re.IGNORECASE,
)

MARKETPLACE_INDICATORS = (
    "multiple sellers",
    "sell on our platform",
    "become a seller",
    "become a vendor",
    "seller dashboard",
    "vendor dashboard",
    "marketplace",
)

AD_PIXELS = {
    "meta": ("connect.facebook.net", "fbevents.js", "facebook.com/tr", "fbq('init'", 'fbq("init"'),
    "tiktok": ("analytics.tiktok.com", "ttq.load(", "ttq.page("),
    "google_ads": ("googleadservices.com", "googleads.g.doubleclick.net", "gtag('config', 'aw-", 'gtag("config", "aw-'),
    "snapchat": ("sc-static.net/scevent", "snaptr("),
    "pinterest": ("s.pinimg.com/ct/core.js", "pintrk("),
}


@dataclass(slots=True)
class StorefrontPage:
    host: str
    html: str
    soup: BeautifulSoup

    @classmethod
    def parse(cls, host: str, html: str) -> StorefrontPage:
        return cls(host=host, html=html.lower(), soup=BeautifulSoup(html, "html.parser"))

    def script_sources(self) -> list[str]:
        return [str(tag.get("src", "")).lower() for tag in self.soup.find_all("script") if tag.get("src")]

    def footer_text(self) -> str:
        footer = self.soup.find("footer")
        return footer.get_text(" ", strip=True) if footer else ""

    def count(self, selector: str) -> int:
        return len(self.soup.select(selector))

    def size_labels(self) -> set[str]:
        labels = (tag.get_text(" ", strip=True).lower() for tag in self.soup.select(OPTION_SELECTOR))
        return {label for label in labels if SIZE_LABEL.match(label)}


@dataclass(slots=True)
class DetectorResult:
    score: float = 0.0
    evidence: list[str] = field(default_factory=list)

    def add(self, weight: float, item: str) -> None:
        self.score += weight
        self.evidence.append(item)

    def add_capped(self, phrases: tuple[str, ...], text: str, *, weight: float, limit: int, prefix: str) -> None:
        hits = 0
        for phrase in phrases:
            if phrase in text:
                self.add(weight, f"{prefix}:{phrase}")
                hits += 1
                if hits >= limit:
                    break

    def clamped(self) -> float:
        return round(max(0.0, min(1.0, self.score)), 4)


Detector = Callable[[StorefrontPage, CandidateRecord], DetectorResult]


def detect_print_on_demand(page: StorefrontPage, record: CandidateRecord) -> DetectorResult:
    result = DetectorResult()
    sources = " ".join(page.script_sources())
    app = next((name for name in POD_APPS if name in page.html or name in sources), None)
    if app:
        result.add(0.8, f"app:{app}")
    result.add_capped(POD_KEYWORDS, page.html, weight=0.2, limit=2, prefix="keyword")

    variants = page.count("[data-variant-id], .product-variant, [data-option]")
    if variants > 10:
        result.add(0.15, f"variants:{variants}")
    if len(page.size_labels()) >= 4:
        result.add(0.1, "size-based-variants")
    result.add_capped(POD_MOCKUP_HINTS, page.html, weight=0.1, limit=1, prefix="image")
    result.add_capped(POD_PRODUCTION_HINTS, page.html, weight=0.15, limit=1, prefix="shipping")
    if is_platform_subdomain(page.host):
        result.add(0.05, "platform-subdomain")
    return result


def detect_dropshipping(page: StorefrontPage, record: CandidateRecord) -> DetectorResult:
    result = DetectorResult()
    sources = " ".join(page.script_sources())
    app = next((name for name in DROPSHIP_APPS if name in page.html or name in sources), None)
    if app:
        result.add(0.6, f"app:{app}")

    currency_match = CURRENCY_PATTERN.search(page.html)
    if currency_match:
        currency = currency_match.group(1).upper()
        if currency not in HOME_CURRENCIES:
            result.add(0.1, f"currency:{currency}")

    result.add_capped(DROPSHIP_SHIPPING_CLUES, page.html, weight=0.2, limit=2, prefix="shipping")
    result.add_capped(DROPSHIP_GENERIC, page.html, weight=0.1, limit=2, prefix="generic")
    result.add_capped(DROPSHIP_POLICY, page.html, weight=0.15, limit=2, prefix="policy")

    products = page.count(".product-item, .product-card, [data-product-id]")
    if products > 50:
        result.add(0.15, f"products-on-page:{products}")
    catalog = record.catalog_size if record.catalog_size is not None else record.catalog_size_estimate
    if catalog is not None and catalog >= 1000:
        result.add(0.1, f"large-catalog:{catalog}")
    if is_platform_subdomain(page.host):
        result.add(0.05, "platform-subdomain")
    return result


def detect_branded_ecommerce(page: StorefrontPage, record: CandidateRecord) -> DetectorResult:
    result = DetectorResult()
    if ADDRESS_PATTERN.search(page.footer_text()):
        result.add(0.2, "footer-address")

    hits = 0
    for phrase in BRAND_INDICATORS:
        if phrase in page.html:
            result.add(0.15, f"indicator:{phrase}")
            hits += 1
            if hits >= 4:
                break

    if record.catalog_size is not None and 0 < record.catalog_size <= 50:
        result.add(0.05, f"focused-catalog:{record.catalog_size}")
    if not is_platform_subdomain(page.host):
        result.add(0.05, "custom-domain")
    return result


def detect_marketplace(page: StorefrontPage, record: CandidateRecord) -> DetectorResult:
    result = DetectorResult()
    result.add_capped(MARKETPLACE_INDICATORS, page.html, weight=0.3, limit=2, prefix="indicator")
    sellers = page.count("[data-seller-id], [data-vendor-id], .seller-card")
    if sellers > 3:
        result.add(0.2, f"seller-cards:{sellers}")
    return result


CATEGORY_DETECTORS: dict[Category, Detector] = {
    "print_on_demand": detect_print_on_demand,
    "dropshipping": detect_dropshipping,
    "branded_ecommerce": detect_branded_ecommerce,
    "marketplace": detect_marketplace,
}


def detect_ad_pixels(page: StorefrontPage) -> list[str]:
    sources = " ".join(page.script_sources())
    return [
        network
        for network, markers in AD_PIXELS.items()
        if any(marker in page.html or marker in sources for marker in markers)
    ]


def metadata_behavioral_tags(record: CandidateRecord) -> set[str]:
    tags: set[str] = set()
    for bag in record.discovery_metadata.values():
        if not isinstance(bag, dict):
            continue
        supplied = bag.get("behavioral_tags")
        if isinstance(supplied, list):
            tags.update(str(item).strip() for item in supplied if str(item).strip())
    return tags


def select_primary(scores: dict[str, float], floor: float) -> tuple[Category | None, float | None]:
    if not scores:
        return None, None
    # Ties resolve in taxonomy order.
    best = max(CATEGORIES, key=lambda name: scores.get(name, 0.0))
    top = scores.get(best, 0.0)
    if top >= floor:
        return best, top
    return None, top


class ClassificationEngine:
    phase = "classification"

    def __init__(
        self,
        client: httpx.AsyncClient,
        settings: Settings,
        *,
        detectors: dict[Category, Detector] | None = None,
    ) -> None:
        self.client = client
        self.settings = settings
        self.detectors = detectors or CATEGORY_DETECTORS
        self.retry_policy = RetryPolicy(
            base_seconds=settings.classification_retry_base_seconds,
            max_seconds=settings.classification_retry_max_seconds,
            max_attempts=settings.classification_max_attempts,
        )

    async def run(self, record: CandidateRecord, *, now: datetime | None = None) -> CandidateRecord:
        return await self.classify(record, now=now)

    async def classify(self, record: CandidateRecord, *, now: datetime | None = None) -> CandidateRecord:
        if record.platform_status not in VISIBLE_PLATFORM_STATUSES:
            logger.debug("classification skipped record=%s platform_status=%s", record.id, record.platform_status)
            return record

        current = now or datetime.now(timezone.utc)
        session = ProbeSession.from_settings(self.client, record.url, self.settings)
        try:
            response = await session.fetch("/")
            if response.status_code >= 400:
                raise ProbeFailure("http_status", f"{response.url} returned {response.status_code}")
        except ProbeFailure as exc:
            logger.info("classification fetch failed record=%s kind=%s", record.id, exc.kind)
            return record.with_phase_failure("classification", now=current, policy=self.retry_policy)
        finally:
            await session.close()

        page = StorefrontPage.parse(session.host, response.text)
        scores: dict[str, float] = {}
        evidence: dict[str, list[str]] = {}
        for category, detector in self.detectors.items():
            result = detector(page, record)
            scores[category] = result.clamped()
            evidence[category] = result.evidence

        ad_networks = detect_ad_pixels(page)
        tags = metadata_behavioral_tags(record)
        if ad_networks:
            tags.add(RUNNING_PAID_ADS)
            evidence["ads"] = ad_networks

        updated = replace(
            record,
            category_scores=scores,
            category_signals=evidence,
            behavioral_tags=sorted(tags),
        )
        floor = self.settings.classification_confidence_floor
        if record.tags_locked:
            logger.info("classification scores refreshed for locked record=%s", record.id)
        else:
            primary, confidence = select_primary(scores, floor)
            updated = replace(updated, primary_category=primary, category_confidence=confidence)
            logger.info(
                "classification record=%s primary=%s confidence=%s",
                record.id,
                primary,
                confidence,
            )

        recheck_hours = (
            self.settings.classification_classified_recheck_hours
            if updated.primary_category is not None
            else self.settings.classification_recheck_hours
        )
        return updated.with_phase_success(
            "classification", now=current, recheck_after=timedelta(hours=recheck_hours)
        )
