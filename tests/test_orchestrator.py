"""
Tests for the crawl orchestrator: concurrency, budget, dedup and retries.
"""

import pytest

from conftest import BASE, FakeFetcher, listing_page, product_card
from shelfsync.config.settings import CrawlConfig
from shelfsync.crawler.orchestrator import CrawlOrchestrator
from shelfsync.errors import PermanentFetchError, TransientFetchError
from shelfsync.transformers.record_transformer import RecordKind

LISTING = f"{BASE}/collections/fiction"


def page_url(n: int) -> str:
    return LISTING if n == 1 else f"{LISTING}?page={n}"


def chain(count: int) -> dict:
    """Listing pages 1..count, each linking to the next."""
    pages = {}
    for n in range(1, count + 1):
        next_href = f"?page={n + 1}" if n < count else None
        pages[page_url(n)] = listing_page([product_card(f"book-{n}", f"Book {n}")], next_href)
    return pages


def make_orchestrator(fetcher, sleeps, **overrides) -> CrawlOrchestrator:
    settings = {"base_url": BASE, "page_delay_seconds": 0}
    settings.update(overrides)
    return CrawlOrchestrator(fetcher, crawl_config=CrawlConfig(**settings), sleep=sleeps)


class TestConcurrency:
    """Test the worker pool bound."""

    @pytest.mark.asyncio
    async def test_never_more_than_two_in_flight(self, sleeps):
        seeds = [f"{BASE}/collections/c{i}" for i in range(6)]
        pages = {url: listing_page([product_card(f"b{i}", f"B{i}")]) for i, url in enumerate(seeds)}
        fetcher = FakeFetcher(pages, delay=0.01)

        records = await make_orchestrator(fetcher, sleeps).run(seeds, RecordKind.PRODUCT)

        assert len(records) == 6
        assert fetcher.max_in_flight == 2

    @pytest.mark.asyncio
    async def test_configured_concurrency(self, sleeps):
        seeds = [f"{BASE}/collections/c{i}" for i in range(4)]
        pages = {url: listing_page([product_card(f"b{i}", f"B{i}")]) for i, url in enumerate(seeds)}
        fetcher = FakeFetcher(pages, delay=0.01)

        await make_orchestrator(fetcher, sleeps, max_concurrency=1).run(seeds, RecordKind.PRODUCT)

        assert fetcher.max_in_flight == 1


class TestBudgetAndPagination:
    """Test page budget and pagination following."""

    @pytest.mark.asyncio
    async def test_follows_pagination(self, sleeps):
        fetcher = FakeFetcher(chain(4))
        records = await make_orchestrator(fetcher, sleeps).run(LISTING, RecordKind.PRODUCT)

        assert len(records) == 4
        assert len(fetcher.calls) == 4

    @pytest.mark.asyncio
    async def test_budget_stops_crawl(self, sleeps):
        fetcher = FakeFetcher(chain(6))
        session = await make_orchestrator(fetcher, sleeps).run_session(
            LISTING, RecordKind.PRODUCT, budget=3
        )

        assert len(fetcher.calls) == 3
        assert session.pages_visited == 3
        assert session.budget_exhausted is True
        assert len(session.results) == 3

    @pytest.mark.asyncio
    async def test_pagination_disabled(self, sleeps):
        fetcher = FakeFetcher(chain(3))
        records = await make_orchestrator(fetcher, sleeps).run(
            LISTING, RecordKind.PRODUCT, follow_pagination=False
        )

        assert len(records) == 1
        assert fetcher.calls == [LISTING]

    @pytest.mark.asyncio
    async def test_progress_events(self, sleeps):
        events = []
        fetcher = FakeFetcher(chain(2))
        orchestrator = CrawlOrchestrator(
            fetcher,
            crawl_config=CrawlConfig(base_url=BASE, page_delay_seconds=0),
            on_progress=events.append,
            sleep=sleeps,
        )
        await orchestrator.run(LISTING, RecordKind.PRODUCT)

        assert [e.event for e in events] == ["page_done", "page_done"]
        assert events[-1].pages_visited == 2
        assert events[-1].records_found == 2


class TestDedup:
    """Test that each page and record is handled once."""

    @pytest.mark.asyncio
    async def test_equivalent_urls_fetched_once(self, sleeps):
        url = f"{BASE}/collections/crime"
        fetcher = FakeFetcher({url: listing_page([product_card("dune", "Dune")])})
        seeds = [
            url,
            "HTTPS://SHOP.EXAMPLE.COM:443/en-gb/collections/crime/",
            f"{url}#top",
        ]

        await make_orchestrator(fetcher, sleeps).run(seeds, RecordKind.PRODUCT)

        assert fetcher.calls == [url]

    @pytest.mark.asyncio
    async def test_pages_linking_back_are_not_refetched(self, sleeps):
        first = listing_page([product_card("a", "A")], next_href="?page=2")
        second = listing_page([product_card("b", "B")], next_href="/en-gb/collections/fiction")
        fetcher = FakeFetcher({page_url(1): first, page_url(2): second})

        await make_orchestrator(fetcher, sleeps).run(LISTING, RecordKind.PRODUCT)

        assert fetcher.count(page_url(1)) == 1
        assert fetcher.count(page_url(2)) == 1

    @pytest.mark.asyncio
    async def test_records_deduplicated_across_pages(self, sleeps):
        shared = product_card("dune", "Dune")
        first = listing_page([shared, product_card("emma", "Emma")], next_href="?page=2")
        second = listing_page([shared, product_card("ulysses", "Ulysses")])
        fetcher = FakeFetcher({page_url(1): first, page_url(2): second})

        records = await make_orchestrator(fetcher, sleeps).run(LISTING, RecordKind.PRODUCT)

        assert sorted(r.title for r in records) == ["Dune", "Emma", "Ulysses"]


class TestRetries:
    """Test retry with exponential backoff."""

    @pytest.mark.asyncio
    async def test_transient_failure_exhausts_attempts(self, sleeps):
        fetcher = FakeFetcher({LISTING: TransientFetchError("HTTP 503", status=503)})
        session = await make_orchestrator(fetcher, sleeps).run_session(LISTING, RecordKind.PRODUCT)

        assert fetcher.count(LISTING) == 3
        assert sleeps.delays == [1.0, 2.0]
        assert session.failed_urls == [LISTING]
        assert session.attempts[LISTING] == 3
        assert session.results == []

    @pytest.mark.asyncio
    async def test_transient_then_success(self, sleeps):
        html = listing_page([product_card("dune", "Dune")])
        fetcher = FakeFetcher({LISTING: [TransientFetchError("timeout"), html]})

        records = await make_orchestrator(fetcher, sleeps).run(LISTING, RecordKind.PRODUCT)

        assert len(records) == 1
        assert fetcher.count(LISTING) == 2
        assert sleeps.delays == [1.0]

    @pytest.mark.asyncio
    async def test_permanent_failure_not_retried(self, sleeps):
        fetcher = FakeFetcher({LISTING: PermanentFetchError("HTTP 404", status=404)})
        session = await make_orchestrator(fetcher, sleeps).run_session(LISTING, RecordKind.PRODUCT)

        assert fetcher.count(LISTING) == 1
        assert sleeps.delays == []
        assert session.failed_urls == [LISTING]

    @pytest.mark.asyncio
    async def test_partial_results_kept(self, sleeps):
        good = f"{BASE}/collections/good"
        bad = f"{BASE}/collections/bad"
        fetcher = FakeFetcher(
            {
                good: listing_page([product_card("dune", "Dune")]),
                bad: TransientFetchError("HTTP 502", status=502),
            }
        )
        session = await make_orchestrator(fetcher, sleeps).run_session([good, bad], RecordKind.PRODUCT)

        assert [r.title for r in session.results] == ["Dune"]
        assert session.failed_urls == [bad]

    @pytest.mark.asyncio
    async def test_unreachable_root_returns_empty(self, sleeps):
        fetcher = FakeFetcher({})
        records = await make_orchestrator(fetcher, sleeps).run(LISTING, RecordKind.PRODUCT)
        assert records == []

    @pytest.mark.asyncio
    async def test_unexpected_error_marks_page_failed(self, sleeps):
        fetcher = FakeFetcher({LISTING: RuntimeError("browser crashed")})
        session = await make_orchestrator(fetcher, sleeps).run_session(LISTING, RecordKind.PRODUCT)
        assert session.failed_urls == [LISTING]


class TestMalformedUrls:
    """Test that URLs which cannot be normalized are skipped, not fatal."""

    @pytest.mark.asyncio
    async def test_bad_port_seed_returns_empty(self, sleeps):
        bad_seed = "http://shop.example.com:99999/x"
        fetcher = FakeFetcher({})

        session = await make_orchestrator(fetcher, sleeps).run_session([bad_seed], RecordKind.PRODUCT)

        assert session.results == []
        assert session.failed_urls == [bad_seed]
        assert fetcher.calls == []

    @pytest.mark.asyncio
    async def test_bad_seed_does_not_stop_good_ones(self, sleeps):
        fetcher = FakeFetcher(chain(1))

        records = await make_orchestrator(fetcher, sleeps).run(
            ["http://shop.example.com:99999/x", LISTING], RecordKind.PRODUCT
        )

        assert [r.title for r in records] == ["Book 1"]

    @pytest.mark.asyncio
    async def test_bad_pagination_link_skipped(self, sleeps):
        bad_link = "https://shop.example.com:99999/en-gb/p2"
        pager = f'<div class="pager"><a href="{bad_link}">2</a><a href="/en-gb/p3">3</a></div>'
        pages = {
            LISTING: listing_page([product_card("dune", "Dune")]).replace("</body>", pager + "</body>"),
            f"{BASE}/p3": listing_page([product_card("emma", "Emma")]),
        }
        fetcher = FakeFetcher(pages)

        session = await make_orchestrator(fetcher, sleeps).run_session(LISTING, RecordKind.PRODUCT)

        assert fetcher.calls == [LISTING, f"{BASE}/p3"]
        assert session.failed_urls == [bad_link]
        assert {r.title for r in session.results} == {"Dune", "Emma"}
