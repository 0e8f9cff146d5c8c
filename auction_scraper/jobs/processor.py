"""Queue handler that drives one scrape job from PENDING to COMPLETED or FAILED."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Protocol

from opentelemetry import trace
from playwright.async_api import Error as PlaywrightError
from pydantic import ValidationError

from auction_scraper.browser.stealth import BrowserSession, HumanPacing
from auction_scraper.core.config import Settings
from auction_scraper.core.crypto import DecryptionError, read_stored_credentials
from auction_scraper.jobs.errors import (
    CredentialsUnavailable,
    DecryptionFailure,
    ExtractionTimeout,
    PersistenceFailure,
    RecordCountMismatch,
    ScrapeJobError,
)
from auction_scraper.jobs.extraction import ExtractionOptions, ExtractionResult, run_extraction
from auction_scraper.jobs.normalize import normalize_listing
from auction_scraper.jobs.persist import persist_listings
from auction_scraper.schemas.credentials import Credentials
from auction_scraper.schemas.jobs import CredsStatus, JobStatus, ScrapeJobPayload
from auction_scraper.schemas.listings import NormalizedListing
from auction_scraper.services.pgmq import MessageOutcome, QueueMessage
from auction_scraper.services.repository import UserCredentialsRecord

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

UNEXPECTED_ERROR_MESSAGE = "Scrape failed due to an unexpected error"
BROWSER_ERROR_MESSAGE = "Scrape failed while interacting with the target site"


class JobRepository(Protocol):
    async def get_job_status(self, job_id: str) -> JobStatus | None: ...

    async def mark_job_processing(self, job_id: str) -> bool: ...

    async def complete_job(self, job_id: str, *, note: str | None = None) -> None: ...

    async def fail_job(self, job_id: str, error: str) -> None: ...

    async def set_total_records(self, job_id: str, total_records: int) -> None: ...

    async def get_user_credentials(self, user_id: str) -> UserCredentialsRecord | None: ...

    async def set_creds_status(self, user_id: str, status: CredsStatus) -> None: ...

    async def upsert_listing(self, listing: NormalizedListing) -> None: ...


class BrowserLauncher(Protocol):
    async def acquire(self) -> BrowserSession: ...


Extractor = Callable[..., Awaitable[ExtractionResult]]
CredentialsReader = Callable[..., Credentials]


class ScrapeJobProcessor:
    def __init__(
        self,
        repository: JobRepository,
        launcher: BrowserLauncher,
        settings: Settings,
        *,
        extract: Extractor = run_extraction,
        read_credentials: CredentialsReader = read_stored_credentials,
        pacing_factory: Callable[[], HumanPacing] = HumanPacing,
    ) -> None:
        self.repository = repository
        self.launcher = launcher
        self.settings = settings
        self._extract = extract
        self._read_credentials = read_credentials
        self._pacing_factory = pacing_factory

    async def handle_message(self, message: QueueMessage) -> MessageOutcome:
        try:
            payload = ScrapeJobPayload.model_validate(message.message)
        except ValidationError as exc:
            # Redelivering a malformed payload can never succeed.
            logger.error("dropping malformed scrape message msg_id=%s: %s", message.msg_id, exc)
            return MessageOutcome.ACK

        with tracer.start_as_current_span("scrape.process_job") as span:
            span.set_attribute("job.id", payload.job_id)
            span.set_attribute("queue.msg_id", message.msg_id)
            span.set_attribute("queue.read_ct", message.read_ct)

            status = await self.repository.get_job_status(payload.job_id)
            if status is None:
                logger.warning("job=%s not found, skipping msg_id=%s", payload.job_id, message.msg_id)
                return MessageOutcome.ACK
            if status is not JobStatus.PENDING:
                logger.info("job=%s already %s, skipping", payload.job_id, status.value)
                span.set_attribute("job.skipped", True)
                return MessageOutcome.ACK

            try:
                await self.process_job(payload)
            except Exception as exc:
                error = self._user_facing_error(exc)
                logger.exception("job=%s failed: %s", payload.job_id, error)
                span.record_exception(exc)
                try:
                    await self.repository.fail_job(payload.job_id, error)
                except Exception:
                    logger.exception("job=%s could not be marked FAILED; leaving message for redelivery", payload.job_id)
                    return MessageOutcome.RETRY
            return MessageOutcome.ACK

    async def process_job(self, payload: ScrapeJobPayload) -> None:
        if not await self.repository.mark_job_processing(payload.job_id):
            logger.info("job=%s was claimed by another attempt, skipping", payload.job_id)
            return
        logger.info("job=%s processing url=%s", payload.job_id, payload.url)
        deadline = asyncio.get_running_loop().time() + self.settings.job_timeout_seconds

        credentials = await self._load_credentials(payload.user_id)
        result = await self._extract_with_deadline(payload, credentials, deadline)
        await self._reconcile_record_count(payload.job_id, result)

        normalized = [
            normalize_listing(
                raw,
                payload.job_id,
                default_currency=self.settings.default_currency,
                default_land_area_unit=self.settings.default_land_area_unit,
            )
            for raw in result.listings
        ]
        summary = await persist_listings(self.repository, normalized, job_id=payload.job_id)

        note = summary.failure_note()
        if summary.all_failed:
            raise PersistenceFailure(note or "No listings could be saved")

        await self.repository.complete_job(payload.job_id, note=note)
        logger.info("job=%s completed with %s listing(s)", payload.job_id, summary.inserted)

    async def _load_credentials(self, user_id: str) -> Credentials:
        record = await self.repository.get_user_credentials(user_id)
        if record is None:
            raise CredentialsUnavailable(f"User {user_id} not found")
        if not record.creds:
            raise CredentialsUnavailable(f"User {user_id} has no credentials configured")

        try:
            credentials = self._read_credentials(
                record.creds,
                encrypted=record.creds_encrypted,
                raw_key=self.settings.credentials_encryption_key,
            )
        except DecryptionError as exc:
            raise DecryptionFailure(f"Failed to decrypt credentials for user {user_id}") from exc

        if not credentials.is_complete:
            raise CredentialsUnavailable(f"User {user_id} has no credentials configured")
        return credentials

    async def _extract_with_deadline(
        self,
        payload: ScrapeJobPayload,
        credentials: Credentials,
        deadline: float,
    ) -> ExtractionResult:
        loop = asyncio.get_running_loop()
        timeout_error = f"Job timed out after {self.settings.job_timeout_seconds:g} seconds"
        try:
            session = await asyncio.wait_for(self.launcher.acquire(), timeout=max(deadline - loop.time(), 0))
        except asyncio.TimeoutError as exc:
            logger.warning("job=%s reached its deadline while launching the browser", payload.job_id)
            raise ExtractionTimeout(timeout_error) from exc
        watchdog = asyncio.create_task(self._expire_session(session, payload.job_id, deadline - loop.time()))

        async def on_creds_status(status: CredsStatus) -> None:
            await self.repository.set_creds_status(payload.user_id, status)

        async def on_total_records(total_records: int) -> None:
            await self.repository.set_total_records(payload.job_id, total_records)

        try:
            result = await self._extract(
                session.page,
                payload.url,
                credentials,
                job_id=payload.job_id,
                pacing=self._pacing_factory(),
                options=ExtractionOptions.from_settings(self.settings),
                on_creds_status=on_creds_status,
                on_total_records=on_total_records,
            )
        except Exception as exc:
            if session.expired:
                raise ExtractionTimeout(timeout_error) from exc
            raise
        finally:
            if session.expired:
                # Let the watchdog finish tearing the browser down.
                await asyncio.gather(watchdog, return_exceptions=True)
            else:
                watchdog.cancel()
            await session.close()

        if session.expired:
            raise ExtractionTimeout(timeout_error)
        return result

    async def _expire_session(self, session: BrowserSession, job_id: str, remaining_seconds: float) -> None:
        await asyncio.sleep(max(remaining_seconds, 0))
        logger.warning("job=%s exceeded %ss; closing browser", job_id, self.settings.job_timeout_seconds)
        session.expired = True
        await session.close()

    async def _reconcile_record_count(self, job_id: str, result: ExtractionResult) -> None:
        actual = len(result.listings)
        if result.total_records <= 0 or actual == result.total_records:
            return

        logger.warning("job=%s record count mismatch: expected %s, scraped %s", job_id, result.total_records, actual)
        if self.settings.fail_on_record_count_mismatch:
            raise RecordCountMismatch(result.total_records, actual)
        await self.repository.set_total_records(job_id, actual)

    @staticmethod
    def _user_facing_error(exc: BaseException) -> str:
        if isinstance(exc, ScrapeJobError):
            return str(exc)
        if isinstance(exc, PlaywrightError):
            return BROWSER_ERROR_MESSAGE
        return UNEXPECTED_ERROR_MESSAGE
