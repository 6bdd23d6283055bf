"""
SQLite catalog store: the local copy of the remote catalog.

Holds navigation headings, categories (with subcategories linked to their
parent), products and scrape job bookkeeping. Every write is an upsert on the
record's identity, so re-acquiring a record updates it in place.
"""

import json
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from decimal import Decimal
from pathlib import Path
from typing import Optional

from rich.console import Console
from rich.table import Table

from shelfsync.config.settings import config
from shelfsync.transformers.record_transformer import (
    CategoryNode,
    NavigationHeading,
    PriceInfo,
    ProductRecord,
    utcnow,
)

console = Console()

ENTITY_KINDS = ("navigation", "categories", "subcategories", "products", "product")

JOB_PENDING = "pending"
JOB_IN_PROGRESS = "in_progress"
JOB_COMPLETED = "completed"
JOB_FAILED = "failed"


def parse_entity_key(key: str) -> tuple[str, Optional[str]]:
    """
    Split an entity-set key into (kind, argument).

    "navigation" -> ("navigation", None)
    "products:fiction" -> ("products", "fiction")
    """
    kind, _, argument = key.partition(":")
    if kind not in ENTITY_KINDS:
        raise ValueError(f"Unknown entity set: {key}")
    if kind == "navigation":
        if argument:
            raise ValueError(f"Navigation key takes no argument: {key}")
        return kind, None
    if not argument:
        raise ValueError(f"Entity set key needs an argument: {key}")
    return kind, argument


def _iso(value: datetime) -> str:
    return value.isoformat()


class CatalogStore:
    """
    Catalog records in a SQLite database.

    Args:
        db_path: Path to the SQLite database file. Defaults to StorageConfig.db_path
    """

    def __init__(self, db_path: Optional[Path] = None):
        if db_path is None:
            db_path = config.storage.db_path

        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    @contextmanager
    def _get_connection(self):
        """Context manager for database connections."""
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
        finally:
            conn.close()

    def _init_db(self) -> None:
        """Initialize the database schema."""
        with self._get_connection() as conn:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS navigation (
                    slug TEXT PRIMARY KEY,
                    title TEXT NOT NULL,
                    source_url TEXT NOT NULL,
                    category_count INTEGER NOT NULL DEFAULT 0,
                    last_scraped_at TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS categories (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    scope TEXT NOT NULL,
                    slug TEXT NOT NULL,
                    title TEXT NOT NULL,
                    source_url TEXT NOT NULL,
                    navigation_slug TEXT,
                    parent_slug TEXT,
                    depth INTEGER NOT NULL DEFAULT 0,
                    product_count INTEGER NOT NULL DEFAULT 0,
                    last_scraped_at TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    UNIQUE (scope, slug)
                );
                CREATE INDEX IF NOT EXISTS idx_categories_navigation ON categories(navigation_slug);
                CREATE INDEX IF NOT EXISTS idx_categories_parent ON categories(parent_slug);

                CREATE TABLE IF NOT EXISTS products (
                    source_url TEXT PRIMARY KEY,
                    source_id TEXT NOT NULL,
                    title TEXT NOT NULL,
                    author TEXT NOT NULL,
                    price_amount TEXT,
                    currency TEXT NOT NULL,
                    image_url TEXT,
                    proxied_image_url TEXT,
                    is_available INTEGER NOT NULL DEFAULT 1,
                    description TEXT,
                    specs TEXT NOT NULL DEFAULT '{}',
                    last_scraped_at TEXT NOT NULL,
                    detail_scraped_at TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );
                CREATE INDEX IF NOT EXISTS idx_products_source_id ON products(source_id);

                CREATE TABLE IF NOT EXISTS product_categories (
                    source_url TEXT NOT NULL,
                    category_slug TEXT NOT NULL,
                    PRIMARY KEY (source_url, category_slug)
                );

                CREATE TABLE IF NOT EXISTS scrape_jobs (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    target_url TEXT NOT NULL,
                    target_type TEXT NOT NULL,
                    status TEXT NOT NULL,
                    started_at TEXT,
                    finished_at TEXT,
                    items_found INTEGER NOT NULL DEFAULT 0,
                    items_inserted INTEGER NOT NULL DEFAULT 0,
                    items_updated INTEGER NOT NULL DEFAULT 0,
                    error_log TEXT
                );
                """
            )
            conn.commit()

    # Upserts

    def upsert_navigation(self, headings: list[NavigationHeading]) -> tuple[int, int]:
        """Insert or update navigation headings by slug. Returns (inserted, updated)."""
        inserted = updated = 0
        now = _iso(utcnow())

        with self._get_connection() as conn:
            cursor = conn.cursor()
            for heading in headings:
                cursor.execute("SELECT 1 FROM navigation WHERE slug = ?", (heading.slug,))
                exists = cursor.fetchone() is not None

                cursor.execute(
                    """
                    INSERT INTO navigation (slug, title, source_url, category_count,
                                            last_scraped_at, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(slug) DO UPDATE SET
                        title = excluded.title,
                        source_url = excluded.source_url,
                        last_scraped_at = excluded.last_scraped_at,
                        updated_at = excluded.updated_at
                """,
                    (
                        heading.slug,
                        heading.title,
                        heading.source_url,
                        heading.category_count,
                        _iso(heading.last_scraped_at),
                        now,
                        now,
                    ),
                )
                if exists:
                    updated += 1
                else:
                    inserted += 1
            conn.commit()

        return inserted, updated

    def upsert_categories(self, categories: list[CategoryNode]) -> tuple[int, int]:
        """Insert or update categories by (parent scope, slug). Returns (inserted, updated)."""
        inserted = updated = 0
        now = _iso(utcnow())

        with self._get_connection() as conn:
            cursor = conn.cursor()
            for category in categories:
                scope = category.identity[0]
                cursor.execute(
                    "SELECT 1 FROM categories WHERE scope = ? AND slug = ?",
                    (scope, category.slug),
                )
                exists = cursor.fetchone() is not None

                cursor.execute(
                    """
                    INSERT INTO categories (scope, slug, title, source_url, navigation_slug,
                                            parent_slug, depth, product_count,
                                            last_scraped_at, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(scope, slug) DO UPDATE SET
                        title = excluded.title,
                        source_url = excluded.source_url,
                        navigation_slug = COALESCE(excluded.navigation_slug, categories.navigation_slug),
                        depth = excluded.depth,
                        product_count = MAX(excluded.product_count, categories.product_count),
                        last_scraped_at = excluded.last_scraped_at,
                        updated_at = excluded.updated_at
                """,
                    (
                        scope,
                        category.slug,
                        category.title,
                        category.source_url,
                        category.navigation_slug,
                        category.parent_slug,
                        category.depth,
                        category.product_count,
                        _iso(category.last_scraped_at),
                        now,
                        now,
                    ),
                )
                if exists:
                    updated += 1
                else:
                    inserted += 1
            conn.commit()

        return inserted, updated

    def upsert_products(
        self,
        products: list[ProductRecord],
        category_slug: Optional[str] = None,
        detail: bool = False,
    ) -> tuple[int, int]:
        """
        Insert or update products by source URL. Returns (inserted, updated).

        Listing data never erases a description or specs acquired from a detail page.
        """
        inserted = updated = 0
        now = _iso(utcnow())

        with self._get_connection() as conn:
            cursor = conn.cursor()
            for product in products:
                cursor.execute("SELECT 1 FROM products WHERE source_url = ?", (product.source_url,))
                exists = cursor.fetchone() is not None

                amount = product.price.amount
                cursor.execute(
                    """
                    INSERT INTO products (source_url, source_id, title, author, price_amount,
                                          currency, image_url, proxied_image_url, is_available,
                                          description, specs, last_scraped_at, detail_scraped_at,
                                          created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(source_url) DO UPDATE SET
                        source_id = excluded.source_id,
                        title = excluded.title,
                        author = excluded.author,
                        price_amount = COALESCE(excluded.price_amount, products.price_amount),
                        currency = CASE WHEN excluded.price_amount IS NULL
                                        THEN products.currency ELSE excluded.currency END,
                        image_url = COALESCE(excluded.image_url, products.image_url),
                        proxied_image_url = COALESCE(excluded.proxied_image_url, products.proxied_image_url),
                        is_available = excluded.is_available,
                        description = COALESCE(excluded.description, products.description),
                        specs = CASE WHEN excluded.specs = '{}' THEN products.specs ELSE excluded.specs END,
                        last_scraped_at = excluded.last_scraped_at,
                        detail_scraped_at = COALESCE(excluded.detail_scraped_at, products.detail_scraped_at),
                        updated_at = excluded.updated_at
                """,
                    (
                        product.source_url,
                        product.source_id,
                        product.title,
                        product.author,
                        str(amount) if amount is not None else None,
                        product.price.currency,
                        product.image_url,
                        product.proxied_image_url,
                        int(product.is_available),
                        product.description,
                        json.dumps(product.specs, sort_keys=True),
                        _iso(product.last_scraped_at),
                        now if detail else None,
                        now,
                        now,
                    ),
                )

                slug = category_slug or product.category_slug
                if slug:
                    cursor.execute(
                        """
                        INSERT OR IGNORE INTO product_categories (source_url, category_slug)
                        VALUES (?, ?)
                    """,
                        (product.source_url, slug),
                    )

                if exists:
                    updated += 1
                else:
                    inserted += 1
            conn.commit()

        return inserted, updated

    def set_category_count(self, navigation_slug: str, count: int) -> None:
        with self._get_connection() as conn:
            conn.execute(
                "UPDATE navigation SET category_count = ? WHERE slug = ?",
                (count, navigation_slug),
            )
            conn.commit()

    def set_product_count(self, scope: str, category_slug: str, count: int) -> None:
        """Raise one category's product count to at least the number of products stored for it."""
        with self._get_connection() as conn:
            conn.execute(
                "UPDATE categories SET product_count = MAX(product_count, ?) WHERE scope = ? AND slug = ?",
                (count, scope, category_slug),
            )
            conn.commit()

    # Reads

    def get_navigation(self) -> list[NavigationHeading]:
        with self._get_connection() as conn:
            rows = conn.execute("SELECT * FROM navigation ORDER BY rowid").fetchall()
        return [self._navigation_from_row(row) for row in rows]

    def get_navigation_heading(self, slug: str) -> Optional[NavigationHeading]:
        with self._get_connection() as conn:
            row = conn.execute("SELECT * FROM navigation WHERE slug = ?", (slug,)).fetchone()
        return self._navigation_from_row(row) if row else None

    def get_categories(self, navigation_slug: str) -> list[CategoryNode]:
        """Top-level categories under a navigation heading."""
        with self._get_connection() as conn:
            rows = conn.execute(
                """
                SELECT * FROM categories
                WHERE navigation_slug = ? AND parent_slug IS NULL
                ORDER BY id
            """,
                (navigation_slug,),
            ).fetchall()
        return [self._category_from_row(row) for row in rows]

    def get_subcategories(self, parent_slug: str) -> list[CategoryNode]:
        with self._get_connection() as conn:
            rows = conn.execute(
                "SELECT * FROM categories WHERE parent_slug = ? ORDER BY id",
                (parent_slug,),
            ).fetchall()
        return [self._category_from_row(row) for row in rows]

    def get_category(self, slug: str) -> Optional[CategoryNode]:
        """A category by slug; the shallowest one wins when slugs repeat across scopes."""
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM categories WHERE slug = ? ORDER BY depth, id LIMIT 1",
                (slug,),
            ).fetchone()
        return self._category_from_row(row) if row else None

    def get_products(self, category_slug: str) -> list[ProductRecord]:
        with self._get_connection() as conn:
            rows = conn.execute(
                """
                SELECT p.*, pc.category_slug AS category_slug FROM products p
                JOIN product_categories pc ON pc.source_url = p.source_url
                WHERE pc.category_slug = ?
                ORDER BY p.rowid
            """,
                (category_slug,),
            ).fetchall()
        return [self._product_from_row(row) for row in rows]

    def all_categories(self) -> list[CategoryNode]:
        with self._get_connection() as conn:
            rows = conn.execute("SELECT * FROM categories ORDER BY depth, id").fetchall()
        return [self._category_from_row(row) for row in rows]

    def all_products(self) -> list[ProductRecord]:
        with self._get_connection() as conn:
            rows = conn.execute("SELECT * FROM products ORDER BY rowid").fetchall()
        return [self._product_from_row(row) for row in rows]

    def get_product(self, source_id: str, detail_only: bool = False) -> Optional[ProductRecord]:
        query = "SELECT * FROM products WHERE source_id = ?"
        if detail_only:
            query += " AND detail_scraped_at IS NOT NULL"
        with self._get_connection() as conn:
            row = conn.execute(query + " LIMIT 1", (source_id,)).fetchone()
        return self._product_from_row(row) if row else None

    def load_entity_set(self, key: str) -> list:
        """Cached records for an entity-set key (empty list when nothing is stored)."""
        kind, argument = parse_entity_key(key)
        if kind == "navigation":
            return self.get_navigation()
        if kind == "categories":
            return self.get_categories(argument)
        if kind == "subcategories":
            return self.get_subcategories(argument)
        if kind == "products":
            return self.get_products(argument)

        # A product only counts as cached once its detail page was acquired
        product = self.get_product(argument, detail_only=True)
        return [product] if product else []

    def get_source_url(self, key: str) -> Optional[str]:
        """Remote page that an entity-set key is acquired from."""
        kind, argument = parse_entity_key(key)
        if kind == "navigation":
            return None
        if kind == "categories":
            heading = self.get_navigation_heading(argument)
            return heading.source_url if heading else None
        if kind in ("subcategories", "products"):
            category = self.get_category(argument)
            return category.source_url if category else None

        product = self.get_product(argument)
        return product.source_url if product else None

    # Row conversion

    @staticmethod
    def _navigation_from_row(row: sqlite3.Row) -> NavigationHeading:
        return NavigationHeading(
            title=row["title"],
            slug=row["slug"],
            source_url=row["source_url"],
            category_count=row["category_count"],
            last_scraped_at=datetime.fromisoformat(row["last_scraped_at"]),
        )

    @staticmethod
    def _category_from_row(row: sqlite3.Row) -> CategoryNode:
        return CategoryNode(
            title=row["title"],
            slug=row["slug"],
            source_url=row["source_url"],
            navigation_slug=row["navigation_slug"],
            parent_slug=row["parent_slug"],
            depth=row["depth"],
            product_count=row["product_count"],
            last_scraped_at=datetime.fromisoformat(row["last_scraped_at"]),
        )

    @staticmethod
    def _product_from_row(row: sqlite3.Row) -> ProductRecord:
        amount = row["price_amount"]
        keys = row.keys()
        return ProductRecord(
            source_id=row["source_id"],
            source_url=row["source_url"],
            title=row["title"],
            author=row["author"],
            price=PriceInfo(
                amount=Decimal(amount) if amount is not None else None,
                currency=row["currency"],
            ),
            image_url=row["image_url"],
            proxied_image_url=row["proxied_image_url"],
            is_available=bool(row["is_available"]),
            description=row["description"],
            specs=json.loads(row["specs"] or "{}"),
            category_slug=row["category_slug"] if "category_slug" in keys else None,
            last_scraped_at=datetime.fromisoformat(row["last_scraped_at"]),
        )

    # Scrape jobs

    def start_job(self, target_url: str, target_type: str) -> int:
        """Record a scrape job as in progress and return its id."""
        with self._get_connection() as conn:
            cursor = conn.execute(
                """
                INSERT INTO scrape_jobs (target_url, target_type, status, started_at)
                VALUES (?, ?, ?, ?)
            """,
                (target_url, target_type, JOB_IN_PROGRESS, _iso(utcnow())),
            )
            conn.commit()
            return cursor.lastrowid

    def finish_job(
        self,
        job_id: int,
        status: str = JOB_COMPLETED,
        items_found: int = 0,
        items_inserted: int = 0,
        items_updated: int = 0,
        error_log: Optional[str] = None,
    ) -> None:
        with self._get_connection() as conn:
            conn.execute(
                """
                UPDATE scrape_jobs SET
                    status = ?, finished_at = ?, items_found = ?,
                    items_inserted = ?, items_updated = ?, error_log = ?
                WHERE id = ?
            """,
                (
                    status,
                    _iso(utcnow()),
                    items_found,
                    items_inserted,
                    items_updated,
                    error_log,
                    job_id,
                ),
            )
            conn.commit()

    def recent_jobs(self, limit: int = 10) -> list[dict]:
        with self._get_connection() as conn:
            rows = conn.execute(
                "SELECT * FROM scrape_jobs ORDER BY id DESC LIMIT ?", (limit,)
            ).fetchall()
        return [dict(row) for row in rows]

    # Admin

    def get_stats(self) -> dict:
        """
        Get catalog statistics.

        Returns:
            Dictionary with record counts, job counts and scrape times
        """
        with self._get_connection() as conn:
            cursor = conn.cursor()

            cursor.execute("SELECT COUNT(*) AS total FROM navigation")
            navigation = cursor.fetchone()["total"]

            cursor.execute(
                """
                SELECT
                    SUM(CASE WHEN parent_slug IS NULL THEN 1 ELSE 0 END) AS top_level,
                    SUM(CASE WHEN parent_slug IS NOT NULL THEN 1 ELSE 0 END) AS sub
                FROM categories
            """
            )
            row = cursor.fetchone()
            categories = row["top_level"] or 0
            subcategories = row["sub"] or 0

            cursor.execute(
                """
                SELECT COUNT(*) AS total,
                       SUM(is_available) AS available,
                       SUM(CASE WHEN detail_scraped_at IS NOT NULL THEN 1 ELSE 0 END) AS detailed,
                       MIN(last_scraped_at) AS first,
                       MAX(last_scraped_at) AS last
                FROM products
            """
            )
            row = cursor.fetchone()

            cursor.execute("SELECT status, COUNT(*) AS count FROM scrape_jobs GROUP BY status")
            jobs = {job["status"]: job["count"] for job in cursor.fetchall()}

            return {
                "navigation": navigation,
                "categories": categories,
                "subcategories": subcategories,
                "total_products": row["total"],
                "available_products": row["available"] or 0,
                "detailed_products": row["detailed"] or 0,
                "first_scraped": row["first"],
                "last_scraped": row["last"],
                "jobs": jobs,
            }

    def print_stats(self) -> None:
        """Print catalog statistics to console."""
        stats = self.get_stats()

        if stats["navigation"] == 0 and stats["total_products"] == 0:
            console.print("[dim]Catalog is empty.[/dim]")
            return

        table = Table(title="Catalog Database Stats", show_header=False)
        table.add_column("Metric", style="cyan")
        table.add_column("Value", style="green")

        table.add_row("Navigation headings", str(stats["navigation"]))
        table.add_row("Categories", str(stats["categories"]))
        table.add_row("Subcategories", str(stats["subcategories"]))
        table.add_row("Products", str(stats["total_products"]))
        table.add_row("  available", str(stats["available_products"]))
        table.add_row("  with detail", str(stats["detailed_products"]))
        for status, count in sorted(stats["jobs"].items()):
            table.add_row(f"Jobs {status}", str(count))
        if stats["first_scraped"]:
            table.add_row("First scraped", stats["first_scraped"])
        if stats["last_scraped"]:
            table.add_row("Last scraped", stats["last_scraped"])

        console.print(table)

    def clear(self) -> int:
        """
        Delete every catalog record and job.

        Returns:
            Number of rows deleted
        """
        deleted = 0
        with self._get_connection() as conn:
            cursor = conn.cursor()
            for table in ("product_categories", "products", "categories", "navigation", "scrape_jobs"):
                cursor.execute(f"DELETE FROM {table}")
                deleted += cursor.rowcount
            conn.commit()
        return deleted
