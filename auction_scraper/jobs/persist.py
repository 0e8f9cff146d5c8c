from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Protocol

from auction_scraper.schemas.listings import NormalizedListing
from auction_scraper.services.repository import RepositoryError

logger = logging.getLogger(__name__)


class ListingWriter(Protocol):
    async def upsert_listing(self, listing: NormalizedListing) -> None: ...


@dataclass(slots=True)
class UpsertSummary:
    attempted: int
    inserted: int
    failed: int

    @property
    def all_failed(self) -> bool:
        return self.attempted > 0 and self.failed == self.attempted

    def failure_note(self) -> str | None:
        if self.all_failed:
            return f"All {self.attempted} listing inserts failed"
        if self.failed:
            return f"{self.failed} of {self.attempted} listing inserts failed"
        return None


async def persist_listings(writer: ListingWriter, listings: list[NormalizedListing], *, job_id: str) -> UpsertSummary:
    """Upsert listings one by one in extraction order; a bad record never aborts the batch."""
    inserted = 0
    failed = 0
    for listing in listings:
        try:
            await writer.upsert_listing(listing)
        except RepositoryError as exc:
            failed += 1
            logger.error("job=%s failed to upsert listing address=%r: %s", job_id, listing.address, exc)
            continue
        inserted += 1

    summary = UpsertSummary(attempted=len(listings), inserted=inserted, failed=failed)
    logger.info("job=%s upserted %s, failed %s of %s listings", job_id, inserted, failed, summary.attempted)
    return summary
