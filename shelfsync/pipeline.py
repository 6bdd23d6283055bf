"""
Catalog pipeline wiring crawling, extraction and storage together.

Every entity set (navigation, a heading's categories, a category's
subcategories or products, one product's detail) is acquired the same way:
crawl its source page, normalize the records, rewrite image URLs through the
image proxy, upsert into the local store and record a scrape job. Reads go
through the staleness controller so callers get cached data immediately.
"""

import asyncio
from datetime import datetime
from typing import Callable, Optional

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from shelfsync.config.settings import PipelineConfig, config
from shelfsync.crawler.fetchers import create_fetcher
from shelfsync.crawler.orchestrator import CrawlOrchestrator, CrawlProgress
from shelfsync.extractors.page_extractor import PageExtractor
from shelfsync.images.url_util import proxy_image_fields
from shelfsync.staleness.controller import StalenessController
from shelfsync.tracking.catalog_store import (
    JOB_COMPLETED,
    JOB_FAILED,
    CatalogStore,
    parse_entity_key,
)
from shelfsync.transformers.record_transformer import (
    CategoryNode,
    NavigationHeading,
    ProductRecord,
    RecordKind,
)

console = Console()


class CatalogPipeline:
    """
    Keeps the local catalog in sync with the remote shop.

    Orchestrates:
    - Acquire: crawl an entity set's source pages and extract records
    - Store: upsert records into the sqlite catalog (and optionally Supabase)
    - Serve: stale-while-revalidate reads for navigation, categories and products
    """

    def __init__(
        self,
        pipeline_config: Optional[PipelineConfig] = None,
        store: Optional[CatalogStore] = None,
        fetcher=None,
        extractor: Optional[PageExtractor] = None,
        supabase_loader=None,
        on_progress: Optional[Callable[[CrawlProgress], None]] = None,
        sleep: Callable = asyncio.sleep,
    ):
        self.config = pipeline_config or config
        self.store = store or CatalogStore(self.config.storage.db_path)
        self.fetcher = fetcher
        self._owns_fetcher = fetcher is None
        self.extractor = extractor or PageExtractor(self.config.extraction)
        self.supabase_loader = supabase_loader
        self.on_progress = on_progress
        self.sleep = sleep

        self.staleness = StalenessController(
            read_cached=self.store.load_entity_set,
            acquire=self.acquire,
            ttl_seconds=self.config.staleness.ttl_seconds,
        )

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def start(self) -> None:
        if self.fetcher is None:
            self.fetcher = create_fetcher(self.config.crawl)
            await self.fetcher.start()

    async def close(self) -> None:
        """Wait for background refreshes, then release the fetcher."""
        await self.staleness.drain()
        if self.fetcher is not None and self._owns_fetcher:
            await self.fetcher.close()
            self.fetcher = None

    @property
    def orchestrator(self) -> CrawlOrchestrator:
        if self.fetcher is None:
            raise RuntimeError("Pipeline not started; use 'async with CatalogPipeline()'")
        return CrawlOrchestrator(
            self.fetcher,
            extractor=self.extractor,
            crawl_config=self.config.crawl,
            on_progress=self.on_progress,
            sleep=self.sleep,
        )

    # Reads (stale-while-revalidate)

    async def get_navigation(self) -> list[NavigationHeading]:
        return await self.staleness.get_or_refresh("navigation")

    async def get_categories(self, navigation_slug: str) -> list[CategoryNode]:
        return await self.staleness.get_or_refresh(f"categories:{navigation_slug}")

    async def get_subcategories(self, category_slug: str) -> list[CategoryNode]:
        return await self.staleness.get_or_refresh(f"subcategories:{category_slug}")

    async def get_products(self, category_slug: str) -> list[ProductRecord]:
        return await self.staleness.get_or_refresh(f"products:{category_slug}")

    async def get_product(self, source_id: str) -> Optional[ProductRecord]:
        records = await self.staleness.get_or_refresh(f"product:{source_id}")
        return records[0] if records else None

    async def read(self, key: str) -> list:
        """Stale-while-revalidate read of any entity-set key."""
        parse_entity_key(key)
        return await self.staleness.get_or_refresh(key)

    # Acquisition

    async def acquire(self, key: str) -> list:
        """Crawl, store and return the records of one entity set."""
        kind, argument = parse_entity_key(key)
        if kind == "navigation":
            return await self.refresh_navigation()
        if kind == "categories":
            return await self.refresh_categories(argument)
        if kind == "subcategories":
            return await self.refresh_subcategories(argument)
        if kind == "products":
            return await self.refresh_products(argument)
        return await self.refresh_product_detail(argument)

    async def refresh_navigation(self) -> list[NavigationHeading]:
        url = self.config.crawl.base_url
        console.print(f"\n[bold blue]Refreshing navigation from {url}[/bold blue]")

        def persist(records: list[NavigationHeading]) -> tuple[int, int]:
            result = self.store.upsert_navigation(records)
            self._mirror(records)
            return result

        await self._run_job(
            url,
            "navigation",
            RecordKind.NAVIGATION,
            persist,
            budget=1,
            follow_pagination=False,
        )
        return self.store.get_navigation()

    async def refresh_categories(self, navigation_slug: str) -> list[CategoryNode]:
        heading = self.store.get_navigation_heading(navigation_slug)
        if heading is None and not self.store.get_navigation():
            await self.refresh_navigation()
            heading = self.store.get_navigation_heading(navigation_slug)
        if heading is None:
            console.print(f"[yellow]Navigation not found: {navigation_slug}[/yellow]")
            return []

        console.print(f"\n[bold blue]Refreshing categories for {heading.title}[/bold blue]")

        def persist(records: list[CategoryNode]) -> tuple[int, int]:
            categories = [
                record.model_copy(
                    update={"navigation_slug": navigation_slug, "parent_slug": None, "depth": 0}
                )
                for record in records
                if record.source_url != heading.source_url
            ]
            result = self.store.upsert_categories(categories)
            self.store.set_category_count(navigation_slug, len(self.store.get_categories(navigation_slug)))
            self._mirror(categories)
            return result

        await self._run_job(
            heading.source_url,
            f"categories:{navigation_slug}",
            RecordKind.CATEGORY,
            persist,
            budget=1,
            follow_pagination=False,
        )
        return self.store.get_categories(navigation_slug)

    async def refresh_subcategories(self, category_slug: str) -> list[CategoryNode]:
        parent = self.store.get_category(category_slug)
        if parent is None:
            console.print(f"[yellow]Category not found: {category_slug}[/yellow]")
            return []

        console.print(f"\n[bold blue]Refreshing subcategories of {parent.title}[/bold blue]")

        def persist(records: list[CategoryNode]) -> tuple[int, int]:
            subcategories = [
                record.model_copy(
                    update={
                        "navigation_slug": parent.navigation_slug,
                        "parent_slug": parent.slug,
                        "depth": parent.depth + 1,
                    }
                )
                for record in records
                if record.slug != parent.slug and record.source_url != parent.source_url
            ]
            result = self.store.upsert_categories(subcategories)
            self._mirror(subcategories)
            return result

        await self._run_job(
            parent.source_url,
            f"subcategories:{category_slug}",
            RecordKind.CATEGORY,
            persist,
            budget=1,
            follow_pagination=False,
        )
        return self.store.get_subcategories(category_slug)

    async def refresh_products(self, category_slug: str) -> list[ProductRecord]:
        category = self.store.get_category(category_slug)
        if category is None:
            console.print(f"[yellow]Category not found: {category_slug}[/yellow]")
            return []

        console.print(f"\n[bold blue]Refreshing products in {category.title}[/bold blue]")

        def persist(records: list[ProductRecord]) -> tuple[int, int]:
            products = [
                self._with_proxied_image(record, category_slug=category_slug) for record in records
            ]
            result = self.store.upsert_products(products, category_slug=category_slug)
            scope, _slug = category.identity
            self.store.set_product_count(scope, category_slug, len(self.store.get_products(category_slug)))
            self._mirror(products)
            return result

        await self._run_job(
            category.source_url,
            f"products:{category_slug}",
            RecordKind.PRODUCT,
            persist,
        )
        return self.store.get_products(category_slug)

    async def refresh_product_detail(self, source_id: str) -> list[ProductRecord]:
        url = self.store.get_source_url(f"product:{source_id}")
        if url is None:
            console.print(f"[yellow]Product not found: {source_id}[/yellow]")
            return []

        console.print(f"\n[bold blue]Refreshing product detail for {source_id}[/bold blue]")

        def persist(records: list[ProductRecord]) -> tuple[int, int]:
            # One detail page describes exactly the product it was requested for
            products = [
                self._with_proxied_image(record.model_copy(update={"source_id": source_id, "source_url": url}))
                for record in records[:1]
            ]
            result = self.store.upsert_products(products, detail=True)
            self._mirror(products)
            return result

        await self._run_job(
            url,
            f"product:{source_id}",
            RecordKind.PRODUCT_DETAIL,
            persist,
            budget=1,
            follow_pagination=False,
        )
        return self.store.load_entity_set(f"product:{source_id}")

    async def _run_job(
        self,
        target_url: str,
        target_type: str,
        kind: RecordKind,
        persist: Callable[[list], tuple[int, int]],
        budget: Optional[int] = None,
        follow_pagination: Optional[bool] = None,
    ) -> list:
        """Crawl one target, persist what was found and record the scrape job."""
        job_id = self.store.start_job(target_url, target_type)
        try:
            session = await self.orchestrator.run_session(
                target_url, kind, budget=budget, follow_pagination=follow_pagination
            )
            records = session.results
            inserted, updated = persist(records) if records else (0, 0)
        except Exception as e:
            self.store.finish_job(job_id, JOB_FAILED, error_log=str(e))
            raise

        status = JOB_COMPLETED if records or not session.failed_urls else JOB_FAILED
        self.store.finish_job(
            job_id,
            status,
            items_found=len(records),
            items_inserted=inserted,
            items_updated=updated,
            error_log="\n".join(session.failed_urls) or None,
        )

        if not records:
            console.print(f"[yellow]No {kind.value} records found at {target_url}[/yellow]")
        else:
            console.print(
                f"[green]✓ {target_type}: {len(records)} found, "
                f"{inserted} new, {updated} updated[/green]"
            )
        return records

    def _with_proxied_image(
        self, product: ProductRecord, category_slug: Optional[str] = None
    ) -> ProductRecord:
        update = proxy_image_fields(
            {"image_url": product.image_url},
            proxy_host=self.config.images.proxy_host,
            endpoint_path=self.config.images.endpoint_path,
        )
        if category_slug:
            update["category_slug"] = category_slug
        return product.model_copy(update=update) if update else product

    def _mirror(self, records: list) -> None:
        """Copy records to Supabase when a loader is configured; failures only warn."""
        if self.supabase_loader is None or not records:
            return
        try:
            self.supabase_loader.save_records(records)
        except Exception as e:
            console.print(f"[red]Supabase mirror failed: {e}[/red]")

    # Full sync

    async def sync(
        self,
        max_headings: Optional[int] = None,
        max_categories: Optional[int] = None,
    ) -> dict:
        """
        Refresh navigation, then each heading's categories and their products.

        Returns:
            Summary dict with sync results
        """
        start_time = datetime.now()
        if max_categories is None:
            max_categories = self.config.categories_per_heading or None

        self._print_header()
        counts = {"navigation": 0, "categories": 0, "products": 0}

        try:
            headings = await self.refresh_navigation()
            if not headings:
                console.print("[bold red]No navigation found. Aborting sync.[/bold red]")
                return {"success": False, "error": "No navigation found"}
            counts["navigation"] = len(headings)

            for heading in headings[:max_headings]:
                categories = await self.refresh_categories(heading.slug)
                counts["categories"] += len(categories)

                for category in categories[:max_categories]:
                    products = await self.refresh_products(category.slug)
                    counts["products"] += len(products)

        except Exception as e:
            console.print(f"[bold red]Sync failed: {e}[/bold red]")
            return {"success": False, "error": str(e), **counts}

        elapsed = (datetime.now() - start_time).total_seconds()
        self._print_summary(elapsed, counts)
        return {"success": True, "elapsed_seconds": elapsed, **counts}

    def _print_header(self):
        header = Panel(
            "[bold white]CATALOG SYNC[/bold white]\n"
            f"[dim]Source: {self.config.crawl.base_url}[/dim]\n"
            f"[dim]Page budget: {self.config.crawl.max_pages}, "
            f"concurrency: {self.config.crawl.max_concurrency}[/dim]\n"
            f"[dim]Database: {self.store.db_path}[/dim]",
            title="shelfsync",
            border_style="blue",
        )
        console.print(header)

    def _print_summary(self, elapsed: float, counts: dict):
        table = Table(title="Sync Results", show_header=True)
        table.add_column("Metric", style="cyan")
        table.add_column("Value", style="green")

        table.add_row("Navigation Headings", str(counts["navigation"]))
        table.add_row("Categories", str(counts["categories"]))
        table.add_row("Products", str(counts["products"]))
        table.add_row("Time Elapsed", f"{elapsed:.1f} seconds")
        table.add_row("Database", str(self.store.db_path))

        console.print("\n")
        console.print(table)
