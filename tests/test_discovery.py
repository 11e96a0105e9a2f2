from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from storescout.core.config import Settings
from storescout.core.urls import InvalidURL
from storescout.services.discovery import DiscoveryService
from storescout.services.store import InMemoryCandidateStore

from conftest import NOW


def test_variants_from_two_feeds_collapse_into_one_record(settings: Settings) -> None:
    async def run():
        store = InMemoryCandidateStore()
        service = DiscoveryService.from_settings(store, settings)
        first = await service.submit("https://Example.MyShop.com/?utm=1", "ad_library", {"ad_id": "a-1"}, now=NOW)
        second = await service.submit(
            "https://example.myshop.com",
            "directory_crawl",
            {"listing": "fashion"},
            now=NOW + timedelta(minutes=5),
        )
        return store, first, second

    store, first, second = asyncio.run(run())

    assert first.created is True
    assert second.created is False
    assert first.record_id == second.record_id
    assert first.url == second.url == "https://example.myshop.com"
    assert len(store.records) == 1
    record = store.records[first.record_id]
    assert record.discovery_source == "ad_library"
    assert record.discovery_metadata == {
        "ad_library": {"ad_id": "a-1"},
        "directory_crawl": {"listing": "fashion"},
    }
    assert record.platform_status == "unverified"
    assert record.verification_next_retry_at == NOW


def test_rediscovery_does_not_touch_verified_state() -> None:
    async def run():
        store = InMemoryCandidateStore()
        service = DiscoveryService(store)
        created = await service.submit("https://brand.example", "feed_a", now=NOW)
        stored = store.records[created.record_id]
        verified = stored.with_phase_success("verification", now=NOW, recheck_after=timedelta(days=7))
        verified.platform_status = "confirmed"
        verified.platform_confidence = 0.92
        await store.save_phase_result("verification", verified)

        again = await service.submit("https://brand.example/", "feed_a", {"rank": 2}, now=NOW + timedelta(hours=1))
        return store, again

    store, again = asyncio.run(run())

    record = store.records[again.record_id]
    assert again.created is False
    assert again.enqueued is False
    assert record.platform_status == "confirmed"
    assert record.platform_confidence == 0.92
    assert record.verification_next_retry_at == NOW + timedelta(days=7)
    assert record.discovery_metadata == {"feed_a": {"rank": 2}}


def test_concurrent_submissions_create_a_single_record() -> None:
    async def run():
        store = InMemoryCandidateStore()
        service = DiscoveryService(store)
        results = await asyncio.gather(
            *(service.submit("https://www.shop.example/", f"feed_{index}", now=NOW) for index in range(10))
        )
        return store, results

    store, results = asyncio.run(run())

    assert sum(1 for result in results if result.created) == 1
    assert len({result.record_id for result in results}) == 1
    assert len(store.records) == 1
    assert len(next(iter(store.records.values())).discovery_metadata) == 10


def test_invalid_url_is_rejected_before_storage() -> None:
    store = InMemoryCandidateStore()
    service = DiscoveryService(store)

    with pytest.raises(InvalidURL):
        asyncio.run(service.submit("https://", "feed_a", now=NOW))

    assert store.records == {}


def test_blank_source_is_recorded_as_unknown() -> None:
    store = InMemoryCandidateStore()
    service = DiscoveryService(store)

    result = asyncio.run(service.submit("https://shop.example", "  ", now=NOW))

    assert store.records[result.record_id].discovery_metadata == {"unknown": {}}


def test_submit_many_counts_each_outcome() -> None:
    store = InMemoryCandidateStore()
    service = DiscoveryService(store)
    items = [
        ("https://one.example", "feed", None),
        ("https://ONE.example/?fbclid=x", "feed", {"seen": 2}),
        ("ftp://two.example", "feed", None),
        ("https://two.example", "feed", None),
    ]

    summary = asyncio.run(service.submit_many(items, now=NOW))

    assert summary.created == 2
    assert summary.duplicates == 1
    assert summary.invalid == 1
    assert summary.errors[0].startswith("ftp://two.example")
    assert len(summary.record_ids) == 3
