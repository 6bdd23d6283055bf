#!/usr/bin/env python3
"""
shelfsync - Main Entry Point

Keeps a local copy of the World of Books catalog (navigation, categories,
products) in sync with the live site, and fetches catalog images through the
caching image proxy.

Usage:
    python main.py                          # Full sync (navigation -> categories -> products)
    python main.py --products fiction       # Refresh one category's products
    python main.py --show navigation        # Cached read, refreshed in background if stale
"""
import argparse
import asyncio
import sys
from pathlib import Path

from rich.console import Console
from rich.table import Table

from shelfsync.config.settings import PipelineConfig
from shelfsync.errors import ShelfSyncError
from shelfsync.images.proxy_cache import ImageProxyCache
from shelfsync.loaders.file_loader import FileLoader
from shelfsync.pipeline import CatalogPipeline
from shelfsync.tracking.catalog_store import CatalogStore
from shelfsync.transformers.record_transformer import (
    CategoryNode,
    NavigationHeading,
    ProductRecord,
)

console = Console()


class CustomHelpFormatter(argparse.RawDescriptionHelpFormatter):
    """Custom formatter that preserves formatting and adds width."""

    def __init__(self, prog):
        super().__init__(prog, max_help_position=40, width=100)


def parse_args(argv=None):
    """Parse command line arguments."""

    epilog = """
━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
EXAMPLES
━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
  Crawling:
    python main.py                              Full sync
    python main.py --max-headings 1 --max-categories 2
                                                Small sync for testing
    python main.py --navigation                 Refresh navigation headings
    python main.py --categories books           Refresh categories under "books"
    python main.py --products fiction           Refresh products in "fiction"
    python main.py --product-detail wob_123     Refresh one product's detail page
    python main.py --fetcher browser --headless false
                                                Watch the browser crawl

  Cached reads:
    python main.py --show navigation
    python main.py --show products:fiction

  Images:
    python main.py --fetch-image URL -o cover.jpg
    python main.py --check-images               Fetch every stored product image, report each

  Database:
    python main.py --stats                      Catalog statistics
    python main.py --jobs                       Recent scrape jobs
    python main.py --export ./out               JSON snapshot of the catalog
    python main.py --clear-catalog              ⚠️  DELETE the local catalog

━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
NOTES
━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
  • Keys for --show: navigation, categories:<nav>, subcategories:<category>,
    products:<category>, product:<source-id>
  • CACHE_TTL_SECONDS, IMAGE_PROXY_HOST and SHELFSYNC_DATA_DIR can be set in .env
  • --supabase requires SUPABASE_URL and SUPABASE_KEY
"""

    parser = argparse.ArgumentParser(
        prog="python main.py",
        description="""
━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
                              SHELFSYNC CATALOG MIRROR
━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
Mirrors a second-hand book shop's catalog into a local database:
  • Navigation headings and their categories/subcategories
  • Products (title, author, price, availability, images)
  • Product detail pages (description, specs)
""",
        epilog=epilog,
        formatter_class=CustomHelpFormatter,
    )

    crawl_group = parser.add_argument_group("Crawl Options", "What to acquire and how")
    crawl_group.add_argument("--sync", action="store_true", help="Full sync (default action)")
    crawl_group.add_argument("--navigation", action="store_true", help="Refresh navigation headings")
    crawl_group.add_argument("--categories", metavar="NAV", help="Refresh categories of a navigation heading")
    crawl_group.add_argument("--subcategories", metavar="CAT", help="Refresh subcategories of a category")
    crawl_group.add_argument("--products", metavar="CAT", help="Refresh products of a category")
    crawl_group.add_argument("--product-detail", metavar="ID", help="Refresh a product's detail page")
    crawl_group.add_argument("--max-headings", type=int, default=None, metavar="NUM", help="Headings crawled during --sync")
    crawl_group.add_argument("--max-categories", type=int, default=None, metavar="NUM", help="Categories per heading during --sync")
    crawl_group.add_argument("--max-pages", type=int, default=None, metavar="NUM", help="Page budget per crawl (default: 50)")
    crawl_group.add_argument("--concurrency", type=int, default=None, metavar="NUM", help="Simultaneous page fetches (default: 2)")
    crawl_group.add_argument("--fetcher", choices=["http", "browser"], default=None, help="Page fetcher (default: http)")
    crawl_group.add_argument(
        "--headless",
        type=str,
        default="true",
        choices=["true", "false"],
        metavar="BOOL",
        help="Run browser invisibly (default: true). Set 'false' to watch.",
    )

    read_group = parser.add_argument_group("Cached Reads", "Stale-while-revalidate reads")
    read_group.add_argument("--show", metavar="KEY", help="Print an entity set, refreshing it if stale")

    image_group = parser.add_argument_group("Image Proxy", "Fetch images through the cache")
    image_group.add_argument("--fetch-image", metavar="URL", help="Download one image (validated, sniffed)")
    image_group.add_argument("--output", "-o", metavar="PATH", help="Where to write --fetch-image bytes")
    image_group.add_argument(
        "--check-images", action="store_true", help="Fetch stored product images and report each outcome"
    )

    db_group = parser.add_argument_group("Database Management", "Inspect and manage the local catalog")
    db_group.add_argument("--stats", action="store_true", help="Show catalog statistics and exit")
    db_group.add_argument("--jobs", action="store_true", help="Show recent scrape jobs and exit")
    db_group.add_argument("--export", metavar="DIR", nargs="?", const="", help="Export catalog as JSON")
    db_group.add_argument("--clear-catalog", action="store_true", help="⚠️  DELETE all local catalog data")
    db_group.add_argument("--supabase", action="store_true", help="Mirror upserted records to Supabase")
    db_group.add_argument("--data-dir", metavar="DIR", help="Data directory (default: ./data)")

    return parser.parse_args(argv)


def create_config(args) -> PipelineConfig:
    """Create pipeline configuration from arguments."""
    pipeline_config = PipelineConfig()

    if args.max_pages is not None:
        pipeline_config.crawl.max_pages = args.max_pages
    if args.concurrency is not None:
        pipeline_config.crawl.max_concurrency = args.concurrency
    if args.fetcher:
        pipeline_config.crawl.fetcher = args.fetcher
    pipeline_config.crawl.headless = args.headless.lower() == "true"

    if args.data_dir:
        pipeline_config.storage.base_dir = Path(args.data_dir)
    pipeline_config.storage.ensure_dirs()

    return pipeline_config


def create_supabase_loader(args):
    if not args.supabase:
        return None
    from shelfsync.loaders.supabase_loader import SupabaseLoader

    loader = SupabaseLoader()
    console.print("[green]✓ Supabase loader initialized[/green]")
    return loader


def print_records(key: str, records: list) -> None:
    """Print an entity set as a table."""
    table = Table(title=f"{key} ({len(records)})", show_header=True)

    if records and isinstance(records[0], ProductRecord):
        table.add_column("ID", style="dim")
        table.add_column("Title", style="cyan")
        table.add_column("Author")
        table.add_column("Price", style="green")
        table.add_column("Available")
        for product in records:
            amount = product.price.amount
            table.add_row(
                product.source_id,
                product.title,
                product.author,
                f"{amount} {product.price.currency}" if amount is not None else "N/A",
                "yes" if product.is_available else "no",
            )
    else:
        table.add_column("Slug", style="dim")
        table.add_column("Title", style="cyan")
        table.add_column("Count", style="green")
        table.add_column("Source URL")
        for record in records:
            if isinstance(record, NavigationHeading):
                count = record.category_count
            elif isinstance(record, CategoryNode):
                count = record.product_count
            else:
                count = ""
            table.add_row(record.slug, record.title, str(count), record.source_url)

    console.print(table)


def print_jobs(store: CatalogStore) -> None:
    jobs = store.recent_jobs(limit=20)
    if not jobs:
        console.print("[dim]No scrape jobs recorded yet.[/dim]")
        return

    table = Table(title="Recent Scrape Jobs", show_header=True)
    table.add_column("ID", style="dim")
    table.add_column("Target", style="cyan")
    table.add_column("Status")
    table.add_column("Found / New / Updated", style="green")
    table.add_column("Started")
    for job in jobs:
        style = {"completed": "green", "failed": "red"}.get(job["status"], "yellow")
        table.add_row(
            str(job["id"]),
            job["target_type"],
            f"[{style}]{job['status']}[/{style}]",
            f"{job['items_found']} / {job['items_inserted']} / {job['items_updated']}",
            job["started_at"] or "",
        )
    console.print(table)


async def run_crawl(args, pipeline_config: PipelineConfig) -> int:
    async with CatalogPipeline(
        pipeline_config, supabase_loader=create_supabase_loader(args)
    ) as pipeline:
        if args.show:
            records = await pipeline.read(args.show)
            print_records(args.show, records)
            return 0

        if args.navigation:
            records = await pipeline.refresh_navigation()
            print_records("navigation", records)
        elif args.categories:
            records = await pipeline.refresh_categories(args.categories)
            print_records(f"categories:{args.categories}", records)
        elif args.subcategories:
            records = await pipeline.refresh_subcategories(args.subcategories)
            print_records(f"subcategories:{args.subcategories}", records)
        elif args.products:
            records = await pipeline.refresh_products(args.products)
            print_records(f"products:{args.products}", records)
        elif args.product_detail:
            records = await pipeline.refresh_product_detail(args.product_detail)
            print_records(f"product:{args.product_detail}", records)
        else:
            result = await pipeline.sync(
                max_headings=args.max_headings, max_categories=args.max_categories
            )
            if not result["success"]:
                console.print(f"\n[bold red]Sync failed: {result.get('error')}[/bold red]")
                return 1
            console.print("\n[bold green]✓ Sync completed successfully![/bold green]")
            return 0

        return 0 if records else 1


async def fetch_image(args, pipeline_config: PipelineConfig) -> int:
    async with ImageProxyCache(pipeline_config.images) as proxy:
        result = await proxy.fetch_image(args.fetch_image)

    console.print(f"[green]✓ {result.mime_type}, {result.size} bytes[/green]")
    if args.output:
        Path(args.output).write_bytes(result.data)
        console.print(f"[green]Saved to {args.output}[/green]")
    return 0


async def check_images(proxy: ImageProxyCache, urls: list[str]) -> list[tuple[str, bool, str]]:
    """Fetch each image through the proxy checks; one (url, ok, detail) row per URL."""
    outcomes = []
    for url in urls:
        try:
            result = await proxy.fetch_image(url)
            outcomes.append((url, True, f"{result.mime_type}, {result.size} bytes"))
        except ShelfSyncError as e:
            outcomes.append((url, False, str(e)))
    return outcomes


async def run_image_check(store: CatalogStore, pipeline_config: PipelineConfig) -> int:
    urls = list(dict.fromkeys(product.image_url for product in store.all_products() if product.image_url))
    if not urls:
        console.print("[yellow]No product images stored yet. Run a sync first.[/yellow]")
        return 0

    console.print(f"[cyan]Checking {len(urls)} image(s) through the proxy...[/cyan]")
    async with ImageProxyCache(pipeline_config.images) as proxy:
        outcomes = await check_images(proxy, urls)

    table = Table(title="Image Check", show_header=True)
    table.add_column("Image", style="cyan", max_width=60)
    table.add_column("Result")
    table.add_column("Detail", style="dim")
    for url, ok, detail in outcomes:
        table.add_row(url, "[green]ok[/green]" if ok else "[red]failed[/red]", detail)
    console.print(table)

    failed = sum(1 for _, ok, _ in outcomes if not ok)
    console.print(f"[green]{len(outcomes) - failed} reachable[/green], [red]{failed} failed[/red]")
    return 0 if failed == 0 else 1


def main(argv=None):
    """Main entry point."""
    args = parse_args(argv)
    pipeline_config = create_config(args)
    store = CatalogStore(pipeline_config.storage.db_path)

    if args.jobs:
        print_jobs(store)
        return 0

    if args.clear_catalog:
        console.print("\n[bold red]⚠️  WARNING: This will DELETE the local catalog![/bold red]")
        console.print("[yellow]This action cannot be undone.[/yellow]\n")
        confirm = input("Type 'DELETE ALL' to confirm: ")
        if confirm == "DELETE ALL":
            deleted = store.clear()
            console.print(f"[green]✓ Cleared {deleted} rows from {store.db_path}[/green]")
        else:
            console.print("[yellow]Clear cancelled[/yellow]")
        return 0

    try:
        if args.stats:
            store.print_stats()
            if args.supabase:
                for table, count in create_supabase_loader(args).get_stats().items():
                    console.print(f"[cyan]Supabase {table}:[/cyan] {count}")
            return 0

        if args.export is not None:
            output_dir = Path(args.export) if args.export else None
            asyncio.run(FileLoader(pipeline_config.storage).export_catalog(store, output_dir))
            return 0

        if args.fetch_image:
            return asyncio.run(fetch_image(args, pipeline_config))

        if args.check_images:
            return asyncio.run(run_image_check(store, pipeline_config))

        return asyncio.run(run_crawl(args, pipeline_config))

    except KeyboardInterrupt:
        console.print("\n[yellow]Cancelled by user[/yellow]")
        return 130
    except (ShelfSyncError, ValueError) as e:
        console.print(f"\n[bold red]Error: {e}[/bold red]")
        return 1
    except Exception as e:
        console.print(f"\n[bold red]Unexpected error: {e}[/bold red]")
        return 1


if __name__ == "__main__":
    sys.exit(main())
