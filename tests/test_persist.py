from __future__ import annotations

import asyncio
from datetime import date
from decimal import Decimal
from typing import Any

import asyncpg

from auction_scraper.jobs.persist import persist_listings
from auction_scraper.schemas.listings import ListingStatus, NormalizedListing, Tenure
from auction_scraper.services.repository import PostgresRepository


class UpsertPool:
    """Keeps rows keyed the way the listings unique constraint does."""

    def __init__(self, errors: dict[str, Exception] | None = None) -> None:
        self.errors = errors or {}
        self.rows: dict[tuple[str, str], dict[str, Any]] = {}
        self.attempted: list[str] = []
        self.queries: list[str] = []

    async def execute(self, query: str, *args: Any) -> str:
        self.queries.append(query)
        address, job_id = args[1], args[13]
        self.attempted.append(address)
        if address in self.errors:
            raise self.errors[address]
        key = (job_id, address)
        existed = key in self.rows
        self.rows[key] = {"price": args[4], "status": args[12]}
        return "UPDATE 1" if existed else "INSERT 0 1"


def _repository(pool: UpsertPool) -> PostgresRepository:
    repository = PostgresRepository("postgresql://scraper@localhost/auctions", 1, 1)
    repository._pool = pool
    return repository


def _listing(address: str, job_id: str = "job-1", price: str = "100000") -> NormalizedListing:
    return NormalizedListing(
        address=address,
        home_type="Terrace",
        currency="RM",
        price=Decimal(price),
        market_value=Decimal("0"),
        auction_date=date(2024, 6, 20),
        tenure=Tenure.FREEHOLD,
        land_area=Decimal("1200"),
        land_area_unit="sqft",
        registered_investor=0,
        entry_created=date(2024, 5, 1),
        status=ListingStatus.ACTIVE,
        scrape_job_id=job_id,
    )


def test_database_error_on_one_row_does_not_stop_the_batch() -> None:
    pool = UpsertPool({"B": asyncpg.exceptions.DeadlockDetectedError("deadlock detected")})
    listings = [_listing("A"), _listing("B"), _listing("C")]

    summary = asyncio.run(persist_listings(_repository(pool), listings, job_id="job-1"))

    assert pool.attempted == ["A", "B", "C"]
    assert summary.inserted == 2
    assert summary.failure_note() == "1 of 3 listing inserts failed"
    assert set(pool.rows) == {("job-1", "A"), ("job-1", "C")}


def test_timeouts_and_connection_errors_count_as_row_failures() -> None:
    pool = UpsertPool({"A": asyncio.TimeoutError(), "C": ConnectionResetError("connection reset")})
    listings = [_listing("A"), _listing("B"), _listing("C")]

    summary = asyncio.run(persist_listings(_repository(pool), listings, job_id="job-1"))

    assert pool.attempted == ["A", "B", "C"]
    assert summary.failed == 2
    assert summary.failure_note() == "2 of 3 listing inserts failed"


def test_reprocessing_same_listings_converges_to_same_rows() -> None:
    pool = UpsertPool()
    repository = _repository(pool)
    first_run = [_listing("A"), _listing("B"), _listing("A", price="120000")]

    asyncio.run(persist_listings(repository, first_run, job_id="job-1"))
    rows_after_first = dict(pool.rows)
    asyncio.run(persist_listings(repository, first_run, job_id="job-1"))

    assert pool.rows == rows_after_first
    assert set(pool.rows) == {("job-1", "A"), ("job-1", "B")}
    assert pool.rows[("job-1", "A")]["price"] == Decimal("120000")
    assert all("on conflict (scrape_job_id, address) do update" in query for query in pool.queries)


def test_same_address_under_another_job_is_a_separate_row() -> None:
    pool = UpsertPool()
    repository = _repository(pool)

    asyncio.run(persist_listings(repository, [_listing("A", job_id="job-1")], job_id="job-1"))
    asyncio.run(persist_listings(repository, [_listing("A", job_id="job-2")], job_id="job-2"))

    assert set(pool.rows) == {("job-1", "A"), ("job-2", "A")}
