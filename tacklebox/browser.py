from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import TYPE_CHECKING, Dict, List, Optional

# Playwright is imported lazily
if TYPE_CHECKING:
    from playwright.async_api import Browser, BrowserContext, Page, Playwright  # type: ignore

from tacklebox.config import DEFAULT_PAGE_TIMEOUT_S
from tacklebox.errors import BlockedError, TaskItemError
from tacklebox.scraping import BLOCK_STATUSES, looks_like_block

logger = logging.getLogger(__name__)

_AGENT_PROFILES: List[Dict[str, str]] = [
    {
        "user_agent": "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36",
        "locale": "en-US",
        "timezone_id": "America/New_York",
    },
    {
        "user_agent": "Mozilla/5.0 (X11; Ubuntu; Linux x86_64; rv:125.0) Gecko/20100101 Firefox/125.0",
        "locale": "de-DE",
        "timezone_id": "Europe/Berlin",
    },
    {
        "user_agent": "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/123.0.0.0 Safari/537.36",
        "locale": "en-GB",
        "timezone_id": "Europe/London",
    },
]

_VIEWPORTS = [
    {"width": 1366, "height": 768},
    {"width": 1440, "height": 900},
    {"width": 1536, "height": 864},
    {"width": 1920, "height": 1080},
]

_BLOCKED_RESOURCE_TYPES = ("image", "font", "stylesheet", "media")
_BLOCKED_URL_PATTERNS = (
    "google-analytics",
    "doubleclick.net",
    "googletagmanager.com",
    "facebook.net",
    "tiktok.com/tracker",
)


@dataclass
class PageSnapshot:
    url: str
    status: Optional[int]
    html: str


class StealthBrowser:
    """
    Headless Chromium with a randomised agent profile and resource blocking.

    One browser and context per job; every fetch() opens and closes its own page,
    so concurrent fetches are safe.
    """

    def __init__(
        self,
        *,
        headless: bool = True,
        timeout_s: float = DEFAULT_PAGE_TIMEOUT_S,
        max_retries: int = 1,
    ) -> None:
        self.headless = headless
        self.timeout_ms = int(timeout_s * 1000)
        self.max_retries = int(max_retries)
        self.profile = random.choice(_AGENT_PROFILES)

        self._pw: Optional["Playwright"] = None
        self._browser: Optional["Browser"] = None
        self._context: Optional["BrowserContext"] = None
        self._lock = asyncio.Lock()

    async def __aenter__(self) -> "StealthBrowser":
        await self.launch()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def launch(self) -> None:
        async with self._lock:
            if self._context is not None:
                return

            try:
                from playwright.async_api import async_playwright  # type: ignore
            except ImportError as e:
                raise RuntimeError(
                    "Playwright is not installed or not available. Install 'playwright' and run 'playwright install chromium'."
                ) from e

            self._pw = await async_playwright().start()
            self._browser = await self._pw.chromium.launch(
                headless=self.headless,
                args=["--no-sandbox", "--disable-dev-shm-usage"],
            )
            self._context = await self._browser.new_context(
                user_agent=self.profile["user_agent"],
                locale=self.profile["locale"],
                timezone_id=self.profile["timezone_id"],
                viewport=random.choice(_VIEWPORTS),
                java_script_enabled=True,
            )

    async def close(self) -> None:
        async with self._lock:
            for closer in (self._context, self._browser):
                if closer is None:
                    continue
                try:
                    await closer.close()
                except Exception:
                    logger.debug("Ignoring error while closing browser", exc_info=True)
            if self._pw:
                try:
                    await self._pw.stop()
                except Exception:
                    logger.debug("Ignoring error while stopping playwright", exc_info=True)
            self._context = None
            self._browser = None
            self._pw = None

    async def _new_page(self) -> "Page":
        if self._context is None:
            raise RuntimeError("Browser has not been launched. Did you call launch()?")
        page = await self._context.new_page()

        async def route_handler(route, request):
            if request.resource_type in _BLOCKED_RESOURCE_TYPES:
                return await route.abort()
            if any(p in request.url for p in _BLOCKED_URL_PATTERNS):
                return await route.abort()
            return await route.continue_()

        await page.route("**/*", route_handler)
        return page

    async def _simulate_user(self, page: "Page") -> None:
        for x, y in ((100, 100), (200, 300), (50, 175)):
            await page.mouse.move(x, y)

    async def fetch(self, url: str) -> PageSnapshot:
        """
        Load `url` and return its rendered HTML.

        Raises BlockedError for 401/403/429 responses that carry a block page, and
        TaskItemError once retries are exhausted.
        """
        last_error = "unknown error"
        for attempt in range(self.max_retries + 1):
            page: Optional["Page"] = None
            try:
                page = await self._new_page()
                resp = await page.goto(url, wait_until="domcontentloaded", timeout=self.timeout_ms)
                status = resp.status if resp is not None else None
                html = await page.content()
                if status in BLOCK_STATUSES and looks_like_block(html):
                    raise BlockedError(url, status)
                await self._simulate_user(page)
                return PageSnapshot(url=page.url or url, status=status, html=html)
            except BlockedError:
                raise
            except Exception as e:
                last_error = f"{type(e).__name__}: {e}"
                if attempt < self.max_retries:
                    await asyncio.sleep(1.0)
                    continue
            finally:
                if page is not None:
                    try:
                        await page.close()
                    except Exception:
                        logger.debug("Ignoring error while closing page", exc_info=True)
        raise TaskItemError(url, f"Page load failed ({last_error})")
