"""Disposable Chromium sessions with automation fingerprints suppressed."""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Protocol

from playwright.async_api import Browser, BrowserContext, Error as PlaywrightError, Playwright, async_playwright

from auction_scraper.browser.listing_page import ListingPage
from auction_scraper.core.config import Settings

logger = logging.getLogger(__name__)

STEALTH_ARGS = [
    "--disable-blink-features=AutomationControlled",
    "--disable-features=IsolateOrigins,site-per-process",
    "--disable-site-isolation-trials",
    "--no-first-run",
    "--no-default-browser-check",
    "--use-gl=angle",
    "--use-angle=swiftshader",
    "--disable-dev-shm-usage",
    "--lang=en-US",
]

VIEWPORT_PRESETS = [
    {"width": 1920, "height": 1080},
    {"width": 1536, "height": 864},
    {"width": 1440, "height": 900},
    {"width": 1366, "height": 768},
    {"width": 1280, "height": 720},
]

USER_AGENTS = [
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/119.0.0.0 Safari/537.36",
]

# Runs in every document before page scripts.
STEALTH_INIT_SCRIPT = """
(() => {
  Object.defineProperty(navigator, 'webdriver', { get: () => undefined });

  if (!window.chrome) window.chrome = {};
  if (!window.chrome.runtime) {
    window.chrome.runtime = { connect: function () {}, sendMessage: function () {} };
  }

  Object.defineProperty(navigator, 'plugins', {
    get: () => {
      var plugins = [
        { name: 'Chrome PDF Plugin', filename: 'internal-pdf-viewer', description: 'Portable Document Format' },
        { name: 'Chrome PDF Viewer', filename: 'mhjfbmdgcfjbbpaeojofohoefgiehjai', description: '' },
        { name: 'Native Client', filename: 'internal-nacl-plugin', description: '' },
      ];
      var arr = Object.create(PluginArray.prototype);
      plugins.forEach(function (p, i) { arr[i] = p; });
      Object.defineProperty(arr, 'length', { get: function () { return plugins.length; } });
      arr.item = function (i) { return plugins[i] || null; };
      arr.namedItem = function (name) { return plugins.find(function (p) { return p.name === name; }) || null; };
      arr.refresh = function () {};
      return arr;
    },
  });

  Object.defineProperty(navigator, 'languages', { get: () => ['en-US', 'en'] });

  var originalQuery = navigator.permissions.query.bind(navigator.permissions);
  navigator.permissions.query = function (desc) {
    if (desc && desc.name === 'notifications') {
      return Promise.resolve({
        state: 'prompt',
        onchange: null,
        addEventListener: function () {},
        removeEventListener: function () {},
        dispatchEvent: function () { return true; },
      });
    }
    return originalQuery(desc);
  };

  Object.keys(window).forEach(function (key) {
    if (key.startsWith('cdc_') || key.startsWith('__selenium') || key.startsWith('__webdriver')) {
      delete window[key];
    }
  });
})();
"""


@dataclass(frozen=True, slots=True)
class Fingerprint:
    viewport: dict[str, int]
    user_agent: str


class PacedPage(Protocol):
    async def click(self, selector: str) -> None: ...

    async def press_key(self, key: str) -> None: ...


class HumanPacing:
    """Timing primitives that keep interaction cadence human-looking.

    Every primitive sleeps *before* it acts, so callers can rely on
    "a delay always precedes the click/keystroke".
    """

    def __init__(
        self,
        *,
        rng: random.Random | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._rng = rng or random.Random()
        self._sleep = sleep

    async def delay(self, min_ms: int, max_ms: int) -> None:
        await self._sleep(self._rng.randint(min_ms, max_ms) / 1000.0)

    async def type(self, page: PacedPage, selector: str, text: str) -> None:
        await self.delay(100, 300)
        await page.click(selector)
        await self.delay(50, 150)
        for char in text:
            await page.press_key(char)
            await self.delay(50, 150)

    async def click(self, page: PacedPage, selector: str) -> None:
        await self.delay(200, 800)
        await page.click(selector)


class BrowserSession:
    """One browser, one context, one page. Owned by a single job."""

    def __init__(self, playwright: Playwright, browser: Browser, context: BrowserContext, page: ListingPage) -> None:
        self.playwright = playwright
        self.browser = browser
        self.context = context
        self.page = page
        self.expired = False
        self._closed = False

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            await self.browser.close()
        except PlaywrightError as exc:
            logger.debug("browser close raised: %s", exc)
        finally:
            await self.playwright.stop()


class StealthBrowserLauncher:
    def __init__(
        self,
        *,
        headless: bool = True,
        locale: str = "en-US",
        timezone_id: str = "Asia/Kuala_Lumpur",
        rng: random.Random | None = None,
    ) -> None:
        self.headless = headless
        self.locale = locale
        self.timezone_id = timezone_id
        self._rng = rng or random.Random()

    @classmethod
    def from_settings(cls, settings: Settings) -> "StealthBrowserLauncher":
        return cls(
            headless=settings.browser_headless,
            locale=settings.browser_locale,
            timezone_id=settings.browser_timezone_id,
        )

    def pick_fingerprint(self) -> Fingerprint:
        return Fingerprint(
            viewport=dict(self._rng.choice(VIEWPORT_PRESETS)),
            user_agent=self._rng.choice(USER_AGENTS),
        )

    def context_options(self, fingerprint: Fingerprint) -> dict[str, Any]:
        return {
            "viewport": fingerprint.viewport,
            "user_agent": fingerprint.user_agent,
            "locale": self.locale,
            "timezone_id": self.timezone_id,
        }

    async def acquire(self) -> BrowserSession:
        fingerprint = self.pick_fingerprint()
        playwright = await async_playwright().start()
        try:
            browser = await playwright.chromium.launch(headless=self.headless, args=STEALTH_ARGS)
            context = await browser.new_context(**self.context_options(fingerprint))
            await context.add_init_script(script=STEALTH_INIT_SCRIPT)
            page = await context.new_page()
        except BaseException:
            await playwright.stop()
            raise

        logger.info(
            "stealth browser launched headless=%s viewport=%sx%s",
            self.headless,
            fingerprint.viewport["width"],
            fingerprint.viewport["height"],
        )
        return BrowserSession(playwright, browser, context, ListingPage(page, context))
