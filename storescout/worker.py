from __future__ import annotations

import argparse
import asyncio
import logging
import signal

from storescout.core.config import get_settings
from storescout.core.telemetry import configure_logging, setup_worker_telemetry, shutdown_worker_telemetry
from storescout.jobs.probes import build_probe_client
from storescout.jobs.scheduler import PipelineScheduler
from storescout.services.repository import get_repository

logger = logging.getLogger(__name__)


async def run_scheduler(*, once: bool = False, init_schema: bool = False) -> None:
    settings = get_settings()
    configure_logging()
    telemetry_runtime = setup_worker_telemetry(settings)
    repository = get_repository()
    client = build_probe_client(settings)
    scheduler = PipelineScheduler.from_settings(settings, repository, client)

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(signum, stop.set)
        except NotImplementedError:  # pragma: no cover - platforms without signal support
            pass

    try:
        if init_schema:
            await repository.ensure_schema()
        if once:
            for report in await scheduler.run_once():
                logger.info("one-shot %s sweep: %s", report.phase, report)
        else:
            logger.info("scheduler started phases=%s", [runner.phase for runner in scheduler.runners])
            await scheduler.run_forever(stop)
    finally:
        await client.aclose()
        await repository.close()
        shutdown_worker_telemetry(telemetry_runtime)


def main() -> None:
    parser = argparse.ArgumentParser(description="Run the storefront pipeline scheduler.")
    parser.add_argument("--once", action="store_true", help="Run one sweep per phase and exit")
    parser.add_argument("--init-schema", action="store_true", help="Create the candidates table before starting")
    args = parser.parse_args()
    asyncio.run(run_scheduler(once=args.once, init_schema=args.init_schema))


if __name__ == "__main__":
    main()
