from __future__ import annotations

import asyncio
import logging
import random
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

import httpx
from opentelemetry import trace

from storescout.core.config import Settings
from storescout.jobs.classification import ClassificationEngine
from storescout.jobs.health import HealthCheckEngine
from storescout.jobs.probes import ConfigurationError
from storescout.jobs.verification import VerificationEngine
from storescout.services.records import CandidateRecord, Phase
from storescout.services.repository import RepositoryError, RepositoryUnavailableError

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(slots=True, frozen=True)
class PhaseConfig:
    interval_seconds: float
    concurrency: int
    batch_size: int
    sweep_budget_seconds: float
    max_attempts: int

    @classmethod
    def from_settings(cls, settings: Settings, phase: Phase) -> PhaseConfig:
        return cls(
            interval_seconds=float(getattr(settings, f"{phase}_interval_seconds")),
            concurrency=max(1, int(getattr(settings, f"{phase}_concurrency"))),
            batch_size=max(1, int(getattr(settings, f"{phase}_batch_size"))),
            sweep_budget_seconds=float(getattr(settings, f"{phase}_sweep_budget_seconds")),
            max_attempts=max(1, int(getattr(settings, f"{phase}_max_attempts"))),
        )


@dataclass(slots=True)
class SweepReport:
    phase: Phase
    selected: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    abandoned: int = 0
    aborted: bool = False
    duration_seconds: float = 0.0
    outcomes: dict[str, str] = field(default_factory=dict)


class PhaseRunner:
    """Runs one phase's sweeps: select due records, probe them in a bounded pool."""

    def __init__(self, engine: Any, repository: Any, config: PhaseConfig, *, clock: Clock = utc_now) -> None:
        self.engine = engine
        self.repository = repository
        self.config = config
        self.clock = clock

    @property
    def phase(self) -> Phase:
        return self.engine.phase

    async def sweep(self) -> SweepReport:
        report = SweepReport(phase=self.phase)
        started = time.monotonic()
        with tracer.start_as_current_span(f"sweep.{self.phase}") as span:
            try:
                records = await self.repository.list_due(
                    self.phase,
                    now=self.clock(),
                    limit=self.config.batch_size,
                    max_attempts=self.config.max_attempts,
                )
            except RepositoryUnavailableError as exc:
                report.aborted = True
                report.duration_seconds = time.monotonic() - started
                span.set_attribute("sweep.aborted", True)
                logger.warning("%s sweep aborted: %s", self.phase, exc)
                return report

            report.selected = len(records)
            span.set_attribute("sweep.selected", report.selected)
            if records:
                await self._process_all(records, report)

            report.succeeded = sum(1 for value in report.outcomes.values() if value == "succeeded")
            report.failed = sum(1 for value in report.outcomes.values() if value == "failed")
            report.skipped = sum(1 for value in report.outcomes.values() if value == "skipped")
            report.abandoned = report.selected - len(report.outcomes)
            report.duration_seconds = time.monotonic() - started
            span.set_attribute("sweep.succeeded", report.succeeded)
            span.set_attribute("sweep.failed", report.failed)
            span.set_attribute("sweep.abandoned", report.abandoned)

        logger.info(
            "%s sweep selected=%s succeeded=%s failed=%s skipped=%s abandoned=%s in %.2fs",
            self.phase,
            report.selected,
            report.succeeded,
            report.failed,
            report.skipped,
            report.abandoned,
            report.duration_seconds,
        )
        return report

    async def _process_all(self, records: list[CandidateRecord], report: SweepReport) -> None:
        semaphore = asyncio.Semaphore(self.config.concurrency)
        work = asyncio.gather(*(self._process(record, semaphore, report.outcomes) for record in records))
        budget = self.config.sweep_budget_seconds if self.config.sweep_budget_seconds > 0 else None
        try:
            await asyncio.wait_for(work, timeout=budget)
        except asyncio.TimeoutError:
            logger.warning(
                "%s sweep budget of %.1fs exhausted; %s records left for the next sweep",
                self.phase,
                self.config.sweep_budget_seconds,
                len(records) - len(report.outcomes),
            )

    async def _process(
        self,
        record: CandidateRecord,
        semaphore: asyncio.Semaphore,
        outcomes: dict[str, str],
    ) -> None:
        async with semaphore:
            with tracer.start_as_current_span(f"{self.phase}.record") as span:
                span.set_attribute("candidate.id", record.id)
                outcomes[record.id] = await self._run_one(record)
                span.set_attribute("candidate.outcome", outcomes[record.id])

    async def _run_one(self, record: CandidateRecord) -> str:
        now = self.clock()
        try:
            updated = await self.engine.run(record, now=now)
        except ConfigurationError as exc:
            logger.error("%s skipped record=%s: %s", self.phase, record.id, exc)
            return "skipped"
        except Exception:
            logger.exception("%s failed for record=%s", self.phase, record.id)
            failed = record.with_phase_failure(self.phase, now=now, policy=self.engine.retry_policy)
            try:
                await self.repository.save_phase_attempt(self.phase, failed)
            except RepositoryError:
                logger.exception("%s could not record failure for record=%s", self.phase, record.id)
            return "failed"

        if updated is record:
            return "skipped"

        try:
            await self.repository.save_phase_result(self.phase, updated)
        except RepositoryError:
            logger.exception("%s could not save record=%s", self.phase, record.id)
            return "failed"

        if updated.retry_count(self.phase) > record.retry_count(self.phase):
            return "failed"
        return "succeeded"


class PipelineScheduler:
    """Single scheduling authority: one periodic loop per phase."""

    def __init__(self, runners: list[PhaseRunner], *, max_backoff_seconds: float = 900.0) -> None:
        self.runners = runners
        self.max_backoff_seconds = max_backoff_seconds

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        repository: Any,
        client: httpx.AsyncClient,
        *,
        clock: Clock = utc_now,
    ) -> PipelineScheduler:
        engines = (
            VerificationEngine(client, settings),
            HealthCheckEngine(client, settings),
            ClassificationEngine(client, settings),
        )
        runners = [
            PhaseRunner(engine, repository, PhaseConfig.from_settings(settings, engine.phase), clock=clock)
            for engine in engines
        ]
        return cls(runners, max_backoff_seconds=settings.scheduler_max_backoff_seconds)

    async def run_once(self) -> list[SweepReport]:
        reports = []
        for runner in self.runners:
            reports.append(await runner.sweep())
        return reports

    async def run_forever(self, stop: asyncio.Event | None = None) -> None:
        stop_event = stop or asyncio.Event()
        await asyncio.gather(*(self._loop(runner, stop_event) for runner in self.runners))

    async def _loop(self, runner: PhaseRunner, stop: asyncio.Event) -> None:
        interval = max(0.1, runner.config.interval_seconds)
        backoff = interval
        while not stop.is_set():
            try:
                report = await runner.sweep()
            except Exception as exc:  # pragma: no cover - worker loop robustness
                report = None
                logger.exception("%s sweep failed: %s", runner.phase, exc)

            if report is None or report.aborted:
                jitter = random.uniform(0.0, 0.5)
                sleep_for = min(backoff * (2.0 + jitter), self.max_backoff_seconds)
                logger.warning("%s sweep backing off %.1fs", runner.phase, sleep_for)
                backoff = sleep_for
            else:
                sleep_for = interval
                backoff = interval

            try:
                await asyncio.wait_for(stop.wait(), timeout=sleep_for)
            except asyncio.TimeoutError:
                continue
