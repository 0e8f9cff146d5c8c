from __future__ import annotations

import asyncio
import logging
import signal

from auction_scraper.browser.stealth import StealthBrowserLauncher
from auction_scraper.core.config import Settings, get_settings
from auction_scraper.core.telemetry import configure_logging, setup_telemetry, shutdown_telemetry
from auction_scraper.jobs.processor import ScrapeJobProcessor
from auction_scraper.jobs.sweeper import run_sweeper
from auction_scraper.services.pgmq import PgmqQueue, SubscribeOptions
from auction_scraper.services.repository import PostgresRepository

logger = logging.getLogger(__name__)


class ScrapeWorker:
    """Owns every long-lived handle of the worker process: pool, queue poller, sweeper."""

    def __init__(
        self,
        settings: Settings,
        *,
        repository: PostgresRepository | None = None,
        queue: PgmqQueue | None = None,
        processor: ScrapeJobProcessor | None = None,
    ) -> None:
        self.settings = settings
        self.repository = repository or PostgresRepository(
            database_url=settings.database_url,
            min_pool_size=settings.database_pool_min_size,
            max_pool_size=settings.database_pool_max_size,
        )
        self.queue = queue or PgmqQueue(self.repository.get_pool)
        self.processor = processor or ScrapeJobProcessor(
            self.repository,
            StealthBrowserLauncher.from_settings(settings),
            settings,
        )
        self._sweeper_stop = asyncio.Event()
        self._sweeper_task: asyncio.Task[None] | None = None

    async def start(self) -> None:
        capabilities = await self.repository.probe_capabilities()
        logger.info("schema capabilities: %s", capabilities)

        self._sweeper_stop.clear()
        self._sweeper_task = asyncio.create_task(
            run_sweeper(
                self.repository,
                interval_seconds=self.settings.stuck_job_sweep_interval_seconds,
                stale_after_seconds=self.settings.stuck_job_stale_after_seconds,
                stop_event=self._sweeper_stop,
            ),
            name="stuck-job-sweeper",
        )
        await self.queue.subscribe(
            self.settings.scrape_queue_name,
            self.processor.handle_message,
            SubscribeOptions(
                poll_interval_seconds=self.settings.queue_poll_interval_seconds,
                batch_size=self.settings.queue_batch_size,
                visibility_timeout_seconds=self.settings.queue_visibility_timeout_seconds,
            ),
        )
        logger.info("worker started queue=%s", self.settings.scrape_queue_name)

    async def stop(self) -> None:
        self._sweeper_stop.set()
        if self._sweeper_task is not None:
            await self._sweeper_task
            self._sweeper_task = None
        await self.queue.shutdown(grace_seconds=self.settings.queue_shutdown_grace_seconds)
        await self.repository.close()
        logger.info("worker stopped")


async def run_worker() -> None:
    settings = get_settings()
    configure_logging()
    telemetry_runtime = setup_telemetry(settings, component="worker")
    worker = ScrapeWorker(settings)

    stop_requested = asyncio.Event()
    loop = asyncio.get_running_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(signum, stop_requested.set)
        except NotImplementedError:  # pragma: no cover - windows event loop
            pass

    try:
        await worker.start()
        await stop_requested.wait()
        logger.info("shutdown requested")
    finally:
        await worker.stop()
        shutdown_telemetry(telemetry_runtime)


def main() -> None:
    asyncio.run(run_worker())


if __name__ == "__main__":
    main()
