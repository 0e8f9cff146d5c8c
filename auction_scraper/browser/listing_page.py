from __future__ import annotations

from collections.abc import Callable
from typing import Any

from playwright.async_api import BrowserContext, Page

from auction_scraper.schemas.listings import RawListing

LISTING_CARD_SELECTOR = "article .col-xs-12.col-sm-6.col-md-4"

# Evaluated against every listing card; returns the raw text fields verbatim.
EXTRACT_CARDS_SCRIPT = r"""
(cards) => cards.map((card) => {
  const labelTexts = Array.from(card.querySelectorAll('label')).map((l) => (l.textContent || '').trim());
  const labelValue = (prefix) => {
    const found = labelTexts.find((t) => t.includes(prefix));
    return found ? found.replace(prefix + ':', '').trim() : '';
  };
  const text = (selector) => {
    const el = card.querySelector(selector);
    return el ? (el.textContent || '').trim() : '';
  };
  const marketValueMatch = card.innerHTML.match(/\(Market Value:\s*(RM\s*[\d,]+\.?\d*)\)/i);

  return {
    status: text('.lblStatus'),
    address: text('td.three_row'),
    homeType: text('td.grey-font'),
    priceText: text('.market-price'),
    marketValueText: marketValueMatch ? marketValueMatch[1].trim() : '',
    auctionDate: labelValue('Auction Date'),
    tenure: labelValue('Tenure'),
    landArea: labelValue('Land Area'),
    registeredInvestor: text('.lblTotalRegisteredCustomer') || '0',
    createdDate: labelValue('Created Date'),
  };
})
"""


class ListingPage:
    """The browser automation surface the extraction engine is allowed to touch."""

    def __init__(self, page: Page, context: BrowserContext) -> None:
        self._page = page
        self._context = context

    @property
    def url(self) -> str:
        return self._page.url

    async def goto(self, url: str) -> None:
        await self._page.goto(url, wait_until="networkidle")

    async def wait_for_url(self, url: str | Callable[[str], bool], timeout_ms: int) -> None:
        await self._page.wait_for_url(url, timeout=timeout_ms)

    async def wait_for_function(self, expression: str, timeout_ms: int) -> None:
        await self._page.wait_for_function(expression, timeout=timeout_ms)

    async def text_content(self, selector: str) -> str | None:
        element = await self._page.query_selector(selector)
        if element is None:
            return None
        return ((await element.text_content()) or "").strip()

    async def has_element(self, selector: str) -> bool:
        return await self._page.query_selector(selector) is not None

    async def click(self, selector: str) -> None:
        await self._page.click(selector)

    async def press_key(self, key: str) -> None:
        await self._page.keyboard.type(key, delay=0)

    async def extract_cards(self) -> list[RawListing]:
        rows: list[dict[str, Any]] = await self._page.eval_on_selector_all(LISTING_CARD_SELECTOR, EXTRACT_CARDS_SCRIPT)
        return [RawListing.model_validate(row) for row in rows]

    async def cookie_value(self, name: str) -> str | None:
        for cookie in await self._context.cookies():
            if cookie.get("name") == name:
                return cookie.get("value") or None
        return None
