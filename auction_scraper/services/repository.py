from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from datetime import date, datetime, time, timezone
from functools import lru_cache
from typing import Any
from uuid import uuid4

import asyncpg  # type: ignore[import-untyped]
from asyncpg import exceptions as pg_exc

from auction_scraper.core.config import get_settings
from auction_scraper.schemas.jobs import CredsStatus, JobStatus, ScrapeJobRecord
from auction_scraper.schemas.listings import NormalizedListing

logger = logging.getLogger(__name__)


class RepositoryError(Exception):
    """Base repository error."""


class RepositoryUnavailableError(RepositoryError):
    """Raised when the database is unavailable or not configured."""


class RepositoryNotFoundError(RepositoryError):
    """Raised when the requested entity does not exist."""


class RepositoryConflictError(RepositoryError):
    """Raised when a write violates a constraint or state transition rule."""


@dataclass(frozen=True, slots=True)
class SchemaCapabilities:
    """Optional columns that older databases may not have yet."""

    creds_status: bool
    creds_encrypted: bool
    total_records: bool


@dataclass(slots=True)
class UserCredentialsRecord:
    user_id: str
    creds: Any
    creds_encrypted: bool


OPTIONAL_COLUMNS = {
    ("users", "creds_status"): "creds_status",
    ("users", "creds_encrypted"): "creds_encrypted",
    ("scrape_jobs", "total_records"): "total_records",
}


class PostgresRepository:
    def __init__(self, database_url: str | None, min_pool_size: int, max_pool_size: int) -> None:
        self.database_url = database_url
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self._pool: asyncpg.Pool | None = None
        self._capabilities: SchemaCapabilities | None = None

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    async def get_pool(self) -> asyncpg.Pool:
        if not self.database_url:
            raise RepositoryUnavailableError("SCRAPER_DATABASE_URL is required")

        if self._pool is not None:
            return self._pool

        try:
            self._pool = await asyncpg.create_pool(
                dsn=self.database_url,
                min_size=self.min_pool_size,
                max_size=self.max_pool_size,
                command_timeout=15,
            )
            return self._pool
        except Exception as exc:  # pragma: no cover - depends on environment
            raise RepositoryUnavailableError("database unavailable") from exc

    async def ping(self) -> None:
        pool = await self.get_pool()
        try:
            await pool.fetchval("select 1")
        except (OSError, asyncio.TimeoutError, asyncpg.PostgresError) as exc:
            raise RepositoryUnavailableError("database unavailable") from exc

    async def probe_capabilities(self) -> SchemaCapabilities:
        """Detect optional columns once; the result is cached for the process lifetime."""
        if self._capabilities is not None:
            return self._capabilities

        pool = await self.get_pool()
        rows = await pool.fetch(
            """
            select table_name, column_name
            from information_schema.columns
            where table_schema = current_schema()
              and table_name in ('users', 'scrape_jobs')
              and column_name in ('creds_status', 'creds_encrypted', 'total_records')
            """
        )
        present: set[str] = set()
        for row in rows:
            column = OPTIONAL_COLUMNS.get((row["table_name"], row["column_name"]))
            if column:
                present.add(column)
        self._capabilities = SchemaCapabilities(
            creds_status="creds_status" in present,
            creds_encrypted="creds_encrypted" in present,
            total_records="total_records" in present,
        )
        missing = sorted(set(OPTIONAL_COLUMNS.values()) - present)
        if missing:
            logger.warning("schema is missing optional columns, related writes are disabled: %s", missing)
        return self._capabilities

    async def get_job_status(self, job_id: str) -> JobStatus | None:
        pool = await self.get_pool()
        value = await pool.fetchval("select status from scrape_jobs where id = $1", job_id)
        if value is None:
            return None
        return JobStatus(value)

    async def get_job(self, job_id: str) -> ScrapeJobRecord:
        capabilities = await self.probe_capabilities()
        total_records_column = "total_records" if capabilities.total_records else "null::int as total_records"
        pool = await self.get_pool()
        row = await pool.fetchrow(
            f"""
            select id, url, user_id, status, started_at, completed_at, error, {total_records_column}
            from scrape_jobs
            where id = $1
            """,
            job_id,
        )
        if row is None:
            raise RepositoryNotFoundError("job not found")
        return ScrapeJobRecord(**dict(row))

    async def create_job(self, *, user_id: str, url: str) -> str:
        job_id = uuid4().hex
        pool = await self.get_pool()
        try:
            await pool.execute(
                """
                insert into scrape_jobs (id, url, user_id, status, created_at, updated_at)
                values ($1, $2, $3, 'PENDING', now(), now())
                """,
                job_id,
                url,
                user_id,
            )
        except (pg_exc.ForeignKeyViolationError, asyncpg.DataError) as exc:
            raise RepositoryConflictError(str(exc)) from exc
        return job_id

    async def mark_job_processing(self, job_id: str) -> bool:
        """Move a PENDING job to PROCESSING. Returns False when another attempt got there first."""
        pool = await self.get_pool()
        row = await pool.fetchrow(
            """
            update scrape_jobs
            set status = 'PROCESSING', started_at = now(), updated_at = now()
            where id = $1 and status = 'PENDING'
            returning id
            """,
            job_id,
        )
        return row is not None

    async def complete_job(self, job_id: str, *, note: str | None = None) -> None:
        pool = await self.get_pool()
        await pool.execute(
            """
            update scrape_jobs
            set status = 'COMPLETED', error = $2, completed_at = now(), updated_at = now()
            where id = $1 and status = 'PROCESSING'
            """,
            job_id,
            note,
        )

    async def fail_job(self, job_id: str, error: str) -> None:
        pool = await self.get_pool()
        await pool.execute(
            """
            update scrape_jobs
            set status = 'FAILED', error = $2, completed_at = now(), updated_at = now()
            where id = $1 and status in ('PENDING', 'PROCESSING')
            """,
            job_id,
            error,
        )

    async def set_total_records(self, job_id: str, total_records: int) -> None:
        capabilities = await self.probe_capabilities()
        if not capabilities.total_records:
            logger.debug("skipping total_records write for job=%s; column missing", job_id)
            return
        pool = await self.get_pool()
        await pool.execute(
            "update scrape_jobs set total_records = $2, updated_at = now() where id = $1",
            job_id,
            total_records,
        )

    async def fail_stuck_jobs(self, *, started_before: datetime, error: str) -> list[str]:
        pool = await self.get_pool()
        rows = await pool.fetch(
            """
            update scrape_jobs
            set status = 'FAILED', error = $2, completed_at = now(), updated_at = now()
            where status = 'PROCESSING' and started_at < $1
            returning id
            """,
            started_before,
            error,
        )
        return [row["id"] for row in rows]

    async def get_user_credentials(self, user_id: str) -> UserCredentialsRecord | None:
        capabilities = await self.probe_capabilities()
        encrypted_column = "creds_encrypted" if capabilities.creds_encrypted else "false as creds_encrypted"
        pool = await self.get_pool()
        row = await pool.fetchrow(
            f"select id, creds, {encrypted_column} from users where id = $1",
            user_id,
        )
        if row is None:
            return None
        return UserCredentialsRecord(
            user_id=row["id"],
            creds=self._coerce_json(row["creds"]),
            creds_encrypted=bool(row["creds_encrypted"]),
        )

    async def set_creds_status(self, user_id: str, status: CredsStatus) -> None:
        capabilities = await self.probe_capabilities()
        if not capabilities.creds_status:
            logger.debug("skipping creds_status write for user=%s; column missing", user_id)
            return
        pool = await self.get_pool()
        await pool.execute(
            """
            update users
            set creds_status = $2, creds_status_updated_at = now(), updated_at = now()
            where id = $1
            """,
            user_id,
            status.value,
        )

    async def upsert_listing(self, listing: NormalizedListing) -> None:
        pool = await self.get_pool()
        try:
            await pool.execute(
                """
                insert into listings (
                  id,
                  address,
                  home_type,
                  currency,
                  price,
                  market_value,
                  auction_date,
                  tenure,
                  land_area,
                  land_area_unit,
                  registered_investor,
                  entry_created,
                  status,
                  scrape_job_id,
                  created_at,
                  updated_at
                )
                values ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14, now(), now())
                on conflict (scrape_job_id, address) do update
                set
                  home_type = excluded.home_type,
                  currency = excluded.currency,
                  price = excluded.price,
                  market_value = excluded.market_value,
                  auction_date = excluded.auction_date,
                  tenure = excluded.tenure,
                  land_area = excluded.land_area,
                  land_area_unit = excluded.land_area_unit,
                  registered_investor = excluded.registered_investor,
                  entry_created = excluded.entry_created,
                  status = excluded.status,
                  updated_at = now()
                """,
                uuid4().hex,
                listing.address,
                listing.home_type,
                listing.currency,
                listing.price,
                listing.market_value,
                self._as_timestamp(listing.auction_date),
                listing.tenure.value,
                listing.land_area,
                listing.land_area_unit,
                listing.registered_investor,
                self._as_timestamp(listing.entry_created),
                listing.status.value,
                listing.scrape_job_id,
            )
        except (pg_exc.IntegrityConstraintViolationError, pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryConflictError(str(exc)) from exc
        except (OSError, asyncio.TimeoutError) as exc:
            raise RepositoryUnavailableError("database unavailable") from exc
        except asyncpg.PostgresError as exc:
            raise RepositoryError(str(exc)) from exc

    @staticmethod
    def _as_timestamp(value: date) -> datetime:
        return datetime.combine(value, time.min, tzinfo=timezone.utc)

    @staticmethod
    def _coerce_json(value: Any) -> Any:
        if isinstance(value, str):
            try:
                return json.loads(value)
            except json.JSONDecodeError:
                return None
        return value


@lru_cache
def get_repository() -> PostgresRepository:
    settings = get_settings()
    return PostgresRepository(
        database_url=settings.database_url,
        min_pool_size=settings.database_pool_min_size,
        max_pool_size=settings.database_pool_max_size,
    )
