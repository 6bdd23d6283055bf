"""
Crawl orchestrator: bounded, deduplicated, retrying traversal of listing pages.

A session starts from one or more seed URLs, fetches pages through a fixed pool
of workers (never more than ``max_concurrency`` fetches in flight), extracts
records from each page and follows pagination links until the page budget is
spent or nothing is left to visit. Pages that keep failing are recorded and
skipped; a session always returns whatever it managed to collect.
"""

import asyncio
import random
from dataclasses import dataclass, field
from typing import Callable, Iterable, Optional, Union

from rich.console import Console

from shelfsync.config.settings import CrawlConfig, config
from shelfsync.crawler.urls import normalize_url
from shelfsync.errors import PermanentFetchError, TransientFetchError
from shelfsync.extractors.page_extractor import FetchedPage, PageExtractor
from shelfsync.transformers.record_transformer import RecordKind

console = Console()


@dataclass
class CrawlProgress:
    """Progress event passed to the on_progress callback."""

    event: str  # "page_done", "page_failed" or "budget_exhausted"
    url: Optional[str]
    pages_visited: int
    records_found: int
    error: Optional[str] = None


@dataclass
class CrawlSession:
    """State of one crawl. Lives only as long as the crawl."""

    target_root: str
    kind: RecordKind
    budget: int
    seen: set = field(default_factory=set)
    pages_scheduled: int = 0
    pages_visited: int = 0
    records: dict = field(default_factory=dict)  # identity -> record, completion order
    failed_urls: list = field(default_factory=list)
    attempts: dict = field(default_factory=dict)  # url -> attempts made
    budget_exhausted: bool = False

    @property
    def results(self) -> list:
        return list(self.records.values())


class CrawlOrchestrator:
    """Runs crawl sessions against a page fetcher."""

    def __init__(
        self,
        fetcher,
        extractor: Optional[PageExtractor] = None,
        crawl_config: Optional[CrawlConfig] = None,
        on_progress: Optional[Callable[[CrawlProgress], None]] = None,
        sleep: Callable = asyncio.sleep,
    ):
        self.fetcher = fetcher
        self.extractor = extractor or PageExtractor()
        self.config = crawl_config or config.crawl
        self.on_progress = on_progress
        self.sleep = sleep

    async def run(
        self,
        seed_urls: Union[str, Iterable[str]],
        kind: RecordKind,
        budget: Optional[int] = None,
        follow_pagination: Optional[bool] = None,
    ) -> list:
        """Deduplicated records found from the seeds, in completion order."""
        session = await self.run_session(seed_urls, kind, budget, follow_pagination)
        return session.results

    async def run_session(
        self,
        seed_urls: Union[str, Iterable[str]],
        kind: RecordKind,
        budget: Optional[int] = None,
        follow_pagination: Optional[bool] = None,
    ) -> CrawlSession:
        """Crawl and return the full session, counters included."""
        if isinstance(seed_urls, str):
            seed_urls = [seed_urls]
        seed_urls = list(seed_urls)

        budget = self.config.max_pages if budget is None else budget
        if follow_pagination is None:
            follow_pagination = self.config.follow_pagination and kind != RecordKind.PRODUCT_DETAIL

        session = CrawlSession(
            target_root=seed_urls[0] if seed_urls else "",
            kind=kind,
            budget=budget,
        )

        queue: asyncio.Queue = asyncio.Queue()
        for url in seed_urls:
            self._schedule(session, queue, url)

        if queue.empty():
            return session

        console.print(
            f"[cyan]Crawling {kind.value} from {session.target_root} "
            f"(budget {budget}, concurrency {self.config.max_concurrency})[/cyan]"
        )

        workers = [
            asyncio.create_task(self._worker(session, queue, follow_pagination))
            for _ in range(max(1, self.config.max_concurrency))
        ]
        try:
            await queue.join()
        finally:
            for worker in workers:
                worker.cancel()
            await asyncio.gather(*workers, return_exceptions=True)

        style = "green" if not session.failed_urls else "yellow"
        console.print(
            f"[{style}]Crawl finished: {session.pages_visited} pages, "
            f"{len(session.records)} {kind.value} records, "
            f"{len(session.failed_urls)} failed[/{style}]"
        )
        return session

    def _schedule(self, session: CrawlSession, queue: asyncio.Queue, url: str) -> bool:
        """Enqueue a URL unless it is malformed, was seen already or the budget is spent."""
        try:
            key = normalize_url(url)
        except ValueError as e:
            session.failed_urls.append(url)
            console.print(f"[yellow]Skipping malformed URL {url}: {e}[/yellow]")
            self._emit(session, "page_failed", url, str(e))
            return False

        if key in session.seen:
            return False

        if session.pages_scheduled >= session.budget:
            if not session.budget_exhausted:
                session.budget_exhausted = True
                console.print(f"[yellow]Page budget of {session.budget} reached[/yellow]")
                self._emit(session, "budget_exhausted", url)
            return False

        session.seen.add(key)
        session.pages_scheduled += 1
        queue.put_nowait(url)
        return True

    async def _worker(
        self, session: CrawlSession, queue: asyncio.Queue, follow_pagination: bool
    ) -> None:
        while True:
            url = await queue.get()
            try:
                await self._visit(session, queue, url, follow_pagination)
            except Exception as e:
                session.failed_urls.append(url)
                console.print(f"[red]Error crawling {url}: {e}[/red]")
                self._emit(session, "page_failed", url, str(e))
            finally:
                queue.task_done()

    async def _visit(
        self,
        session: CrawlSession,
        queue: asyncio.Queue,
        url: str,
        follow_pagination: bool,
    ) -> None:
        page = await self._fetch_with_retry(session, url)
        if page is None:
            session.failed_urls.append(url)
            self._emit(session, "page_failed", url)
            return

        result = self.extractor.parse(page, session.kind)
        session.pages_visited += 1

        new_records = 0
        for record in result.records:
            if record.identity not in session.records:
                session.records[record.identity] = record
                new_records += 1

        console.print(
            f"[dim]  Page {session.pages_visited}: {len(result.records)} records "
            f"({new_records} new) from {url}[/dim]"
        )

        if follow_pagination:
            for next_url in result.next_urls:
                self._schedule(session, queue, next_url)

        self._emit(session, "page_done", url)
        await self._random_delay()

    async def _fetch_with_retry(self, session: CrawlSession, url: str) -> Optional[FetchedPage]:
        """
        Fetch a page, retrying transient failures with exponential backoff.

        Returns None once attempts are exhausted or the failure is permanent.
        """
        max_attempts = max(1, self.config.max_attempts)
        for attempt in range(1, max_attempts + 1):
            session.attempts[url] = attempt
            try:
                return await self.fetcher.fetch(url)
            except PermanentFetchError as e:
                console.print(f"[red]  {e} (not retrying)[/red]")
                return None
            except TransientFetchError as e:
                if attempt >= max_attempts:
                    console.print(f"[red]  {e} (giving up after {attempt} attempts)[/red]")
                    return None
                delay = self.config.backoff_base_seconds * 2 ** (attempt - 1)
                console.print(
                    f"[yellow]  {e}; retry {attempt}/{max_attempts - 1} in {delay:.1f}s[/yellow]"
                )
                await self.sleep(delay)
        return None

    async def _random_delay(self) -> None:
        """Jittered pause between pages to mimic a human visitor."""
        if self.config.page_delay_seconds <= 0:
            return
        await self.sleep(self.config.page_delay_seconds * random.uniform(0.5, 1.5))

    def _emit(self, session: CrawlSession, event: str, url: Optional[str], error: Optional[str] = None):
        if self.on_progress is None:
            return
        self.on_progress(
            CrawlProgress(
                event=event,
                url=url,
                pages_visited=session.pages_visited,
                records_found=len(session.records),
                error=error,
            )
        )
