"""
Shared fixtures: in-memory page fetcher, recorded sleeps and HTML builders.
"""

import asyncio
from datetime import datetime, timezone

import pytest

from shelfsync.config.settings import (
    CrawlConfig,
    ImageProxyConfig,
    PipelineConfig,
    StalenessConfig,
    StorageConfig,
)
from shelfsync.errors import PermanentFetchError
from shelfsync.extractors.page_extractor import FetchedPage
from shelfsync.tracking.catalog_store import CatalogStore

SITE = "https://shop.example.com"
BASE = f"{SITE}/en-gb"


class FakeFetcher:
    """
    Serves pages from a dict of url -> outcome.

    An outcome is HTML, an exception to raise, or a list of those consumed one
    per call (the last one repeats). Unknown URLs answer 404.
    """

    def __init__(self, pages: dict, delay: float = 0.0):
        self.pages = {url: list(v) if isinstance(v, list) else v for url, v in pages.items()}
        self.delay = delay
        self.calls = []
        self.in_flight = 0
        self.max_in_flight = 0

    def count(self, url: str) -> int:
        return self.calls.count(url)

    async def fetch(self, url: str) -> FetchedPage:
        self.calls.append(url)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(self.delay)
            outcome = self.pages.get(url)
            if isinstance(outcome, list):
                outcome = outcome.pop(0) if len(outcome) > 1 else outcome[0]
            if outcome is None:
                raise PermanentFetchError(f"HTTP 404 for {url}", status=404)
            if isinstance(outcome, Exception):
                raise outcome
            return FetchedPage(url=url, html=outcome)
        finally:
            self.in_flight -= 1


class SleepRecorder:
    """Stands in for asyncio.sleep and remembers requested delays."""

    def __init__(self):
        self.delays = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def product_card(slug: str, title: str, author: str = "Jane Doe", price: str = "£4.99", image: str = None, extra: str = "") -> str:
    image = image or f"/images/{slug}.jpg"
    return f"""
    <div data-testid="product-card">
      <a href="/en-gb/books/{slug}"><h3 class="product-title">{title}</h3></a>
      <p class="author">by {author}</p>
      <span class="price">{price}</span>
      <img src="{image}" alt="{title}">
      {extra}
    </div>
    """


def listing_page(cards: list[str], next_href: str = None) -> str:
    pager = ""
    if next_href:
        pager = f'<nav class="pagination"><a rel="next" href="{next_href}">Next</a></nav>'
    return f"<html><body><main>{''.join(cards)}</main>{pager}</body></html>"


def navigation_page(links: dict) -> str:
    anchors = "".join(f'<a href="{href}">{title}</a>' for title, href in links.items())
    return f"<html><body><header><nav>{anchors}</nav></header><main></main></body></html>"


def category_page(tiles: dict) -> str:
    body = "".join(
        f'<div class="category-tile"><a href="{href}"><span class="tile-title">{title}</span></a></div>'
        for title, href in tiles.items()
    )
    return f"<html><body><section>{body}</section></body></html>"


@pytest.fixture
def sleeps():
    return SleepRecorder()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def crawl_config():
    return CrawlConfig(base_url=BASE, page_delay_seconds=0)


@pytest.fixture
def store(tmp_path):
    return CatalogStore(tmp_path / "catalog.db")


@pytest.fixture
def pipeline_config(tmp_path):
    return PipelineConfig(
        crawl=CrawlConfig(base_url=BASE, page_delay_seconds=0),
        images=ImageProxyConfig(proxy_host="http://localhost:3001"),
        staleness=StalenessConfig(ttl_seconds=86400),
        storage=StorageConfig(base_dir=tmp_path),
    )


@pytest.fixture
def now():
    return datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)
