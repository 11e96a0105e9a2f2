from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from storescout.core.config import Settings
from storescout.core.urls import (
    InvalidURL,
    URLNormalizationOverride,
    canonical_hash,
    display_name_for,
    normalize_url,
    parse_normalization_overrides,
)

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class SubmissionResult:
    created: bool
    record_id: str
    url: str
    dedup_key: str
    enqueued: bool


@dataclass(slots=True)
class BatchSubmissionResult:
    created: int = 0
    duplicates: int = 0
    invalid: int = 0
    record_ids: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)


class DiscoveryService:
    """Accepts candidate URLs from any feed and records them exactly once."""

    def __init__(
        self,
        repository: Any,
        *,
        overrides: dict[str, URLNormalizationOverride] | None = None,
    ) -> None:
        self.repository = repository
        self.overrides = overrides or {}

    @classmethod
    def from_settings(cls, repository: Any, settings: Settings) -> DiscoveryService:
        return cls(repository, overrides=parse_normalization_overrides(settings.url_normalization_overrides_json))

    async def submit(
        self,
        raw_url: str,
        source: str,
        metadata: dict[str, Any] | None = None,
        *,
        now: datetime | None = None,
    ) -> SubmissionResult:
        # InvalidURL propagates before anything is stored.
        url = normalize_url(raw_url, overrides=self.overrides)
        dedup_key = canonical_hash(url)
        source_tag = (source or "").strip() or "unknown"
        result = await self.repository.upsert_discovered(
            url=url,
            dedup_key=dedup_key,
            source=source_tag,
            metadata=dict(metadata or {}),
            display_name=display_name_for(url),
            now=now or datetime.now(timezone.utc),
        )
        logger.info(
            "discovery submitted url=%s source=%s created=%s enqueued=%s",
            url,
            source_tag,
            result.created,
            result.enqueued,
        )
        return SubmissionResult(
            created=result.created,
            record_id=result.record.id,
            url=url,
            dedup_key=dedup_key,
            enqueued=result.enqueued,
        )

    async def submit_many(
        self,
        items: Iterable[tuple[str, str, dict[str, Any] | None]],
        *,
        now: datetime | None = None,
    ) -> BatchSubmissionResult:
        summary = BatchSubmissionResult()
        for raw_url, source, metadata in items:
            try:
                result = await self.submit(raw_url, source, metadata, now=now)
            except InvalidURL as exc:
                summary.invalid += 1
                summary.errors.append(f"{raw_url}: {exc}")
                continue
            if result.created:
                summary.created += 1
            else:
                summary.duplicates += 1
            summary.record_ids.append(result.record_id)
        return summary
