from __future__ import annotations

import json
import logging
import re
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Protocol

from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from auction_scraper.browser.listing_page import LISTING_CARD_SELECTOR
from auction_scraper.browser.stealth import HumanPacing
from auction_scraper.core.config import Settings
from auction_scraper.jobs.errors import AuthenticationFailure, ExtractionTimeout
from auction_scraper.schemas.credentials import Credentials
from auction_scraper.schemas.jobs import CredsStatus
from auction_scraper.schemas.listings import RawListing

logger = logging.getLogger(__name__)

USERNAME_SELECTOR = "#txtUsername"
PASSWORD_SELECTOR = "#txtPassword"
LOGIN_SUBMIT_SELECTOR = '#login-form button[type="submit"]'
FOOTER_SELECTOR = ".widget-footer"
FIRST_ADDRESS_SELECTOR = f"{LISTING_CARD_SELECTOR} td.three_row"
NEXT_PAGE_SELECTOR = '.pagination a:has-text("Next")'
TOTAL_RECORDS_RE = re.compile(r"(\d+)\s*record", re.IGNORECASE)

# The footer is in the page template but stays empty until the AJAX list renders,
# which can lag behind the first cards. "0 records" covers an empty result list.
RESULTS_RENDERED_SCRIPT = f"""
(() => {{
  const footer = document.querySelector({json.dumps(FOOTER_SELECTOR)});
  return Boolean(footer && /\\d+\\s*record/i.test(footer.textContent || ''));
}})()
"""

CredsStatusCallback = Callable[[CredsStatus], Awaitable[None]]
TotalRecordsCallback = Callable[[int], Awaitable[None]]


class ExtractionPage(Protocol):
    @property
    def url(self) -> str: ...

    async def goto(self, url: str) -> None: ...

    async def wait_for_url(self, url: str | Callable[[str], bool], timeout_ms: int) -> None: ...

    async def wait_for_function(self, expression: str, timeout_ms: int) -> None: ...

    async def text_content(self, selector: str) -> str | None: ...

    async def has_element(self, selector: str) -> bool: ...

    async def click(self, selector: str) -> None: ...

    async def press_key(self, key: str) -> None: ...

    async def extract_cards(self) -> list[RawListing]: ...

    async def cookie_value(self, name: str) -> str | None: ...


@dataclass(slots=True)
class ExtractionOptions:
    login_url_marker: str = "login.html"
    session_cookie_name: str = "token"
    wait_timeout_ms: int = 15000
    max_pages: int = 500

    @classmethod
    def from_settings(cls, settings: Settings) -> "ExtractionOptions":
        return cls(
            login_url_marker=settings.login_url_marker,
            session_cookie_name=settings.session_cookie_name,
            wait_timeout_ms=settings.page_wait_timeout_ms,
            max_pages=settings.max_pages,
        )


@dataclass(slots=True)
class ExtractionResult:
    listings: list[RawListing]
    total_records: int
    pages: int


def parse_total_records(text: str | None) -> int:
    match = TOTAL_RECORDS_RE.search(text or "")
    return int(match.group(1)) if match else 0


def content_changed_script(baseline: str) -> str:
    """Predicate that turns true once the first card's address differs from ``baseline``."""
    return f"""
(() => {{
  const el = document.querySelector({json.dumps(FIRST_ADDRESS_SELECTOR)});
  return Boolean(el) && (el.textContent || '').trim() !== {json.dumps(baseline)};
}})()
"""


async def authenticate_if_required(
    page: ExtractionPage,
    credentials: Credentials,
    *,
    pacing: HumanPacing,
    options: ExtractionOptions,
    on_creds_status: CredsStatusCallback,
) -> bool:
    """Log in when the site bounced us to its login page. Returns True if a login happened."""
    if options.login_url_marker not in page.url:
        return False

    await pacing.type(page, USERNAME_SELECTOR, credentials.username)
    await pacing.delay(300, 700)
    await pacing.type(page, PASSWORD_SELECTOR, credentials.password)
    await pacing.delay(500, 1000)
    await pacing.click(page, LOGIN_SUBMIT_SELECTOR)

    # Login posts via AJAX, stores the token cookie, then redirects away from the login page.
    try:
        await page.wait_for_url(lambda url: options.login_url_marker not in url, options.wait_timeout_ms)
    except PlaywrightTimeoutError as exc:
        await on_creds_status(CredsStatus.FAILED)
        raise AuthenticationFailure("Login failed - credentials rejected or login timed out") from exc

    # A redirect alone does not prove the session exists.
    if not await page.cookie_value(options.session_cookie_name):
        await on_creds_status(CredsStatus.FAILED)
        raise AuthenticationFailure("Login failed - no auth token cookie found after redirect")

    await on_creds_status(CredsStatus.WORKING)
    return True


async def read_total_records(page: ExtractionPage, *, timeout_ms: int) -> int:
    try:
        await page.wait_for_function(RESULTS_RENDERED_SCRIPT, timeout_ms)
    except PlaywrightTimeoutError as exc:
        raise ExtractionTimeout("Timed out waiting for listings to render") from exc
    return parse_total_records(await page.text_content(FOOTER_SELECTOR))


async def collect_listings(
    page: ExtractionPage,
    *,
    total_records: int,
    pacing: HumanPacing,
    options: ExtractionOptions,
    job_id: str,
) -> tuple[list[RawListing], int]:
    listings: list[RawListing] = []
    page_number = 1

    while True:
        page_listings = await page.extract_cards()
        listings.extend(page_listings)
        logger.info("job=%s extracted %s listings from page %s", job_id, len(page_listings), page_number)

        if total_records > 0 and len(listings) >= total_records:
            break
        if not await page.has_element(NEXT_PAGE_SELECTOR):
            break
        if page_number >= options.max_pages:
            logger.warning("job=%s stopped at max_pages=%s with a next page still present", job_id, options.max_pages)
            break

        baseline = await page.text_content(FIRST_ADDRESS_SELECTOR) or ""
        page_number += 1
        await pacing.delay(1000, 3000)
        await page.click(NEXT_PAGE_SELECTOR)

        try:
            await page.wait_for_function(content_changed_script(baseline), options.wait_timeout_ms)
        except PlaywrightTimeoutError as exc:
            raise ExtractionTimeout(f"Timed out waiting for page {page_number} to load") from exc

    return listings, page_number


async def run_extraction(
    page: ExtractionPage,
    url: str,
    credentials: Credentials,
    *,
    job_id: str,
    pacing: HumanPacing,
    options: ExtractionOptions,
    on_creds_status: CredsStatusCallback,
    on_total_records: TotalRecordsCallback,
) -> ExtractionResult:
    logger.info("job=%s navigating to %s", job_id, url)
    await page.goto(url)
    await pacing.delay(500, 1500)

    if await authenticate_if_required(
        page,
        credentials,
        pacing=pacing,
        options=options,
        on_creds_status=on_creds_status,
    ):
        logger.info("job=%s login successful", job_id)
    else:
        logger.info("job=%s already authenticated", job_id)

    total_records = await read_total_records(page, timeout_ms=options.wait_timeout_ms)
    logger.info("job=%s total records reported by site: %s", job_id, total_records)
    await on_total_records(total_records)

    listings, pages = await collect_listings(
        page,
        total_records=total_records,
        pacing=pacing,
        options=options,
        job_id=job_id,
    )
    logger.info("job=%s extracted %s listings across %s page(s)", job_id, len(listings), pages)
    return ExtractionResult(listings=listings, total_records=total_records, pages=pages)
