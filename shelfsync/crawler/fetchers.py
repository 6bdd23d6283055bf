"""
Page fetchers for the crawl orchestrator.

Two interchangeable backends produce a FetchedPage from a URL:

- HttpPageFetcher: plain aiohttp requests with rotating user agents. Cheap,
  enough for server-rendered listing pages.
- BrowserPageFetcher: Playwright with stealth settings, for pages that only
  render their product grid in JavaScript. Best effort: the DOM is read after
  domcontentloaded plus a short scroll, not after the network goes idle.

Both raise TransientFetchError for timeouts, connection failures, 5xx and 429
and PermanentFetchError for other 4xx, so the orchestrator can decide whether
to retry without knowing which backend is in use.
"""

import asyncio
import random
from typing import Optional

import aiohttp
from playwright.async_api import Browser, BrowserContext, Page, async_playwright
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError
from playwright_stealth import Stealth
from rich.console import Console

from shelfsync.config.settings import CrawlConfig, config
from shelfsync.errors import PermanentFetchError, TransientFetchError
from shelfsync.extractors.page_extractor import FetchedPage

console = Console()


def classify_status(url: str, status: int) -> None:
    """Raise the fetch error matching an HTTP status; 2xx/3xx pass."""
    if status >= 500 or status == 429:
        raise TransientFetchError(f"HTTP {status} for {url}", status=status)
    if status >= 400:
        raise PermanentFetchError(f"HTTP {status} for {url}", status=status)


class HttpPageFetcher:
    """Fetches pages with aiohttp."""

    def __init__(self, crawl_config: Optional[CrawlConfig] = None):
        self.config = crawl_config or config.crawl
        self.session: Optional[aiohttp.ClientSession] = None

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def start(self) -> None:
        if self.session is None:
            timeout = aiohttp.ClientTimeout(total=self.config.timeout_ms / 1000)
            self.session = aiohttp.ClientSession(timeout=timeout)

    async def close(self) -> None:
        if self.session is not None:
            await self.session.close()
            self.session = None

    def _headers(self) -> dict:
        return {
            "User-Agent": random.choice(self.config.user_agents),
            "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
            "Accept-Language": "en-GB,en;q=0.9",
        }

    async def fetch(self, url: str) -> FetchedPage:
        await self.start()
        try:
            async with self.session.get(url, headers=self._headers()) as response:
                classify_status(url, response.status)
                html = await response.text(errors="replace")
                return FetchedPage(
                    url=url,
                    html=html,
                    final_url=str(response.url),
                    status=response.status,
                )
        except asyncio.TimeoutError as e:
            raise TransientFetchError(f"Timed out fetching {url}") from e
        except aiohttp.ClientError as e:
            raise TransientFetchError(f"Network error fetching {url}: {e}") from e


class BrowserPageFetcher:
    """Fetches pages with a stealth Playwright browser."""

    def __init__(self, crawl_config: Optional[CrawlConfig] = None):
        self.config = crawl_config or config.crawl
        self.browser: Optional[Browser] = None
        self.context: Optional[BrowserContext] = None
        self.playwright = None
        self.stealth = Stealth()

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def start(self) -> None:
        """Start the browser with stealth settings."""
        if self.browser is not None:
            return

        console.print(f"[bold blue]Starting {self.config.browser_type} browser...[/bold blue]")
        self.playwright = await async_playwright().start()

        browser_launchers = {
            "firefox": self.playwright.firefox,
            "chromium": self.playwright.chromium,
            "webkit": self.playwright.webkit,
        }
        launcher = browser_launchers.get(self.config.browser_type, self.playwright.chromium)
        self.browser = await launcher.launch(headless=self.config.headless)

        self.context = await self.browser.new_context(
            viewport={
                "width": self.config.viewport_width,
                "height": self.config.viewport_height,
            },
            user_agent=random.choice(self.config.user_agents),
            locale="en-GB",
            timezone_id="Europe/London",
        )
        console.print("[bold green]Browser started successfully[/bold green]")

    async def close(self) -> None:
        """Close the browser."""
        if self.context:
            await self.context.close()
        if self.browser:
            await self.browser.close()
        if self.playwright:
            await self.playwright.stop()
        self.context = self.browser = self.playwright = None

    async def _create_stealth_page(self) -> Page:
        page = await self.context.new_page()
        await self.stealth.apply_stealth_async(page)
        return page

    async def _scroll_page(self, page: Page, scroll_count: int = 3) -> None:
        """Scroll page to trigger lazy loading."""
        for _ in range(scroll_count):
            await page.evaluate("window.scrollBy(0, window.innerHeight)")
            await asyncio.sleep(0.5)

    async def fetch(self, url: str) -> FetchedPage:
        await self.start()
        page = await self._create_stealth_page()
        try:
            response = await page.goto(
                url, wait_until="domcontentloaded", timeout=self.config.timeout_ms
            )
            if response is not None:
                classify_status(url, response.status)
            await self._scroll_page(page)
            html = await page.content()
            return FetchedPage(
                url=url,
                html=html,
                final_url=page.url,
                status=response.status if response is not None else 200,
            )
        except PlaywrightTimeoutError as e:
            raise TransientFetchError(f"Timed out loading {url}") from e
        except PlaywrightError as e:
            raise TransientFetchError(f"Browser error loading {url}: {e}") from e
        finally:
            await page.close()


def create_fetcher(crawl_config: Optional[CrawlConfig] = None):
    """Fetcher selected by CrawlConfig.fetcher ("http" or "browser")."""
    crawl_config = crawl_config or config.crawl
    if crawl_config.fetcher == "browser":
        return BrowserPageFetcher(crawl_config)
    if crawl_config.fetcher == "http":
        return HttpPageFetcher(crawl_config)
    raise ValueError(f"Unknown fetcher: {crawl_config.fetcher}")
