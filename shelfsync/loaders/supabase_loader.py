"""
Supabase loader for mirroring the catalog to PostgreSQL.

Optional: the local sqlite store is the source of truth, Supabase only
receives copies of upserted records.
"""

import os
from typing import Optional

from dotenv import load_dotenv
from rich.console import Console
from supabase import Client, create_client

from shelfsync.config.settings import PROJECT_ROOT
from shelfsync.transformers.record_transformer import (
    CategoryNode,
    NavigationHeading,
    ProductRecord,
)

load_dotenv(PROJECT_ROOT / ".env")

console = Console()


class SupabaseLoader:
    """
    Upserts catalog records into Supabase tables.

    Expected tables: navigation (slug unique), categories (scope + slug unique),
    products (source_url unique).
    """

    def __init__(
        self,
        supabase_url: Optional[str] = None,
        supabase_key: Optional[str] = None,
        client: Optional[Client] = None,
    ):
        """
        Initialize the Supabase loader.

        Args:
            supabase_url: Supabase project URL (or set SUPABASE_URL env var)
            supabase_key: Supabase service key (or set SUPABASE_KEY env var)
            client: Pre-built client, mainly for tests
        """
        if client is not None:
            self.client = client
            return

        self.supabase_url = supabase_url or os.getenv("SUPABASE_URL")
        self.supabase_key = supabase_key or os.getenv("SUPABASE_KEY")
        if not self.supabase_url or not self.supabase_key:
            raise ValueError("SUPABASE_URL and SUPABASE_KEY must be set to mirror to Supabase")

        self.client: Client = create_client(self.supabase_url, self.supabase_key)

    def _upsert(self, table: str, rows: list[dict], on_conflict: str) -> int:
        if not rows:
            return 0
        result = self.client.table(table).upsert(rows, on_conflict=on_conflict).execute()
        count = len(result.data) if result.data else len(rows)
        console.print(f"[dim]✓ Mirrored {count} rows to {table}[/dim]")
        return count

    def save_navigation(self, headings: list[NavigationHeading]) -> int:
        return self._upsert(
            "navigation", [h.model_dump(mode="json") for h in headings], on_conflict="slug"
        )

    def save_categories(self, categories: list[CategoryNode]) -> int:
        rows = []
        for category in categories:
            row = category.model_dump(mode="json")
            row["scope"] = category.identity[0]
            rows.append(row)
        return self._upsert("categories", rows, on_conflict="scope,slug")

    def save_products(self, products: list[ProductRecord]) -> int:
        rows = []
        for product in products:
            row = product.model_dump(mode="json", exclude={"price"})
            amount = product.price.amount
            row["price"] = float(amount) if amount is not None else None
            row["currency"] = product.price.currency
            rows.append(row)
        return self._upsert("products", rows, on_conflict="source_url")

    def save_records(self, records: list) -> int:
        """Mirror a mixed batch, routing each record to its table."""
        navigation = [r for r in records if isinstance(r, NavigationHeading)]
        categories = [r for r in records if isinstance(r, CategoryNode)]
        products = [r for r in records if isinstance(r, ProductRecord)]
        return (
            self.save_navigation(navigation)
            + self.save_categories(categories)
            + self.save_products(products)
        )

    def get_stats(self) -> dict:
        """
        Get mirror statistics.

        Returns:
            Dict with row counts per table
        """
        stats = {}
        for table, column in (("navigation", "slug"), ("categories", "slug"), ("products", "source_url")):
            result = self.client.table(table).select(column, count="exact").execute()
            stats[table] = result.count or 0
        return stats
