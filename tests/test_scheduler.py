from __future__ import annotations

import asyncio
from datetime import datetime, timedelta

import httpx

from storescout.core.config import Settings
from storescout.jobs.probes import ConfigurationError
from storescout.jobs.scheduler import PhaseConfig, PhaseRunner, PipelineScheduler
from storescout.services.discovery import DiscoveryService
from storescout.services.records import CandidateRecord, RetryPolicy
from storescout.services.repository import RepositoryUnavailableError
from storescout.services.store import InMemoryCandidateStore

from conftest import NOW, build_mock_client

POLICY = RetryPolicy(base_seconds=3600, max_seconds=86400, max_attempts=3)


class FakeEngine:
    def __init__(self, phase: str = "verification", behaviour=None) -> None:
        self.phase = phase
        self.retry_policy = POLICY
        self.behaviour = behaviour or {}
        self.calls: list[str] = []

    async def run(self, record: CandidateRecord, *, now: datetime) -> CandidateRecord:
        self.calls.append(record.url)
        action = self.behaviour.get(record.url, "succeed")
        if action == "raise":
            raise RuntimeError("probe exploded")
        if action == "misconfigured":
            raise ConfigurationError("relay key missing")
        if action == "hang":
            await asyncio.sleep(30)
        if action == "fail":
            return record.with_phase_failure(self.phase, now=now, policy=self.retry_policy)
        updated = record.with_phase_success(self.phase, now=now, recheck_after=timedelta(hours=24))
        if self.phase == "verification":
            updated.platform_status = "confirmed"
            updated.platform_confidence = 0.9
        return updated


class Clock:
    def __init__(self, start: datetime = NOW) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now


def config(**overrides) -> PhaseConfig:
    values = {
        "interval_seconds": 1.0,
        "concurrency": 3,
        "batch_size": 50,
        "sweep_budget_seconds": 5.0,
        "max_attempts": 3,
    }
    values.update(overrides)
    return PhaseConfig(**values)


async def seed(store: InMemoryCandidateStore, *urls: str) -> dict[str, str]:
    service = DiscoveryService(store)
    ids = {}
    for url in urls:
        result = await service.submit(url, "seed_feed", now=NOW - timedelta(minutes=1))
        ids[result.url] = result.record_id
    return ids


def test_failure_of_one_record_does_not_stop_the_sweep() -> None:
    async def run():
        store = InMemoryCandidateStore()
        ids = await seed(store, "https://a.example", "https://b.example", "https://c.example")
        engine = FakeEngine(behaviour={"https://b.example": "raise"})
        report = await PhaseRunner(engine, store, config(), clock=Clock()).sweep()
        return store, ids, report

    store, ids, report = asyncio.run(run())

    assert report.selected == 3
    assert report.succeeded == 2
    assert report.failed == 1
    failed = store.records[ids["https://b.example"]]
    assert failed.verification_retry_count == 1
    assert failed.last_verification_attempt == NOW
    assert failed.verification_next_retry_at == NOW + timedelta(hours=1)
    assert failed.platform_status == "unverified"
    assert store.records[ids["https://a.example"]].platform_status == "confirmed"


def test_sweep_budget_leaves_slow_records_untouched() -> None:
    async def run():
        store = InMemoryCandidateStore()
        ids = await seed(store, "https://fast.example", "https://slow.example")
        engine = FakeEngine(behaviour={"https://slow.example": "hang"})
        report = await PhaseRunner(engine, store, config(sweep_budget_seconds=0.2), clock=Clock()).sweep()
        return store, ids, report

    store, ids, report = asyncio.run(run())

    assert report.selected == 2
    assert report.succeeded == 1
    assert report.abandoned == 1
    slow = store.records[ids["https://slow.example"]]
    assert slow.last_verification_attempt is None
    assert slow.verification_retry_count == 0
    assert slow.verification_next_retry_at == NOW - timedelta(minutes=1)


def test_storage_outage_aborts_the_sweep() -> None:
    class UnavailableStore(InMemoryCandidateStore):
        async def list_due(self, phase, *, now, limit, max_attempts):
            raise RepositoryUnavailableError("database unavailable")

    engine = FakeEngine()
    report = asyncio.run(PhaseRunner(engine, UnavailableStore(), config(), clock=Clock()).sweep())

    assert report.aborted is True
    assert report.selected == 0
    assert engine.calls == []


def test_configuration_error_skips_without_touching_bookkeeping() -> None:
    async def run():
        store = InMemoryCandidateStore()
        ids = await seed(store, "https://shop.example")
        engine = FakeEngine(behaviour={"https://shop.example": "misconfigured"})
        report = await PhaseRunner(engine, store, config(), clock=Clock()).sweep()
        return store, ids, report

    store, ids, report = asyncio.run(run())

    assert report.skipped == 1
    record = store.records[ids["https://shop.example"]]
    assert record.verification_retry_count == 0
    assert record.last_verification_attempt is None


def test_attempt_cap_stops_selection_until_reset() -> None:
    async def run():
        store = InMemoryCandidateStore()
        ids = await seed(store, "https://flaky.example")
        clock = Clock()
        engine = FakeEngine(behaviour={"https://flaky.example": "fail"})
        runner = PhaseRunner(engine, store, config(max_attempts=2), clock=clock)

        reports = []
        for _ in range(3):
            reports.append(await runner.sweep())
            clock.now += timedelta(days=2)

        record_id = ids["https://flaky.example"]
        await store.reset_retries(record_id, "verification", now=clock.now)
        reports.append(await runner.sweep())
        return store.records[record_id], reports

    record, reports = asyncio.run(run())

    assert [report.selected for report in reports] == [1, 1, 0, 1]
    assert [report.failed for report in reports] == [1, 1, 0, 1]
    assert record.verification_retry_count == 1


def test_retry_delay_doubles_until_the_cap() -> None:
    record = CandidateRecord(
        id="r1",
        url="https://shop.example",
        dedup_key="k",
        discovery_source="feed",
        discovered_at=NOW,
    )
    delays = []
    now = NOW
    for _ in range(7):
        record = record.with_phase_failure("health_check", now=now, policy=POLICY)
        delays.append((record.health_check_next_retry_at - now).total_seconds())
        now = record.health_check_next_retry_at

    assert delays == [3600, 7200, 14400, 28800, 57600, 86400, 86400]
    assert record.health_check_retry_count == 7


def test_gated_phases_ignore_unverified_records() -> None:
    async def run():
        store = InMemoryCandidateStore()
        await seed(store, "https://shop.example")
        reports = []
        for phase in ("health_check", "classification"):
            engine = FakeEngine(phase=phase)
            reports.append(await PhaseRunner(engine, store, config(), clock=Clock()).sweep())
        return reports

    reports = asyncio.run(run())

    assert [report.selected for report in reports] == [0, 0]


def test_scheduler_runs_each_phase_over_fresh_discoveries(settings: Settings) -> None:
    html = (
        '<html><head><script src="https://cdn.shopify.com/s/files/theme.js"></script>'
        '<script src="https://cdn.printify.com/app.js"></script></head>'
        "<body><p>Made to order just for you.</p><p>Printed on demand.</p></body></html>"
    )
    routes = {
        "/cart.js": lambda request: httpx.Response(200, json={"token": "abc", "items": [], "total_price": 0}),
        "/": lambda request: httpx.Response(200, html=html, headers={"x-shopid": "4242"}),
        "/products.json": lambda request: httpx.Response(200, json={"products": [{"id": 1}, {"id": 2}]}),
    }

    async def run():
        store = InMemoryCandidateStore()
        ids = await seed(store, "https://tees.example")
        async with build_mock_client(routes) as client:
            scheduler = PipelineScheduler.from_settings(settings, store, client, clock=Clock())
            reports = await scheduler.run_once()
        return store.records[ids["https://tees.example"]], reports

    record, reports = asyncio.run(run())

    assert [report.phase for report in reports] == ["verification", "health_check", "classification"]
    assert [report.succeeded for report in reports] == [1, 1, 1]
    assert record.platform_status == "confirmed"
    assert record.health_status == "healthy"
    assert record.catalog_size == 2
    assert record.catalog_size_status == "confirmed"
    assert record.primary_category == "print_on_demand"
    assert record.is_active is True


def test_run_forever_stops_when_signalled() -> None:
    async def run():
        store = InMemoryCandidateStore()
        await seed(store, "https://shop.example")
        engine = FakeEngine()
        scheduler = PipelineScheduler([PhaseRunner(engine, store, config(interval_seconds=0.1), clock=Clock())])
        stop = asyncio.Event()
        task = asyncio.create_task(scheduler.run_forever(stop))
        await asyncio.sleep(0.25)
        stop.set()
        await asyncio.wait_for(task, timeout=2)
        return engine

    engine = asyncio.run(run())

    assert engine.calls == ["https://shop.example"]
