"""
Tests for the JSON export and Supabase mirror loaders.
"""

import json
from decimal import Decimal

import pytest

from conftest import BASE
from shelfsync.config.settings import StorageConfig
from shelfsync.loaders.file_loader import FileLoader
from shelfsync.loaders.supabase_loader import SupabaseLoader
from shelfsync.transformers.record_transformer import (
    CategoryNode,
    NavigationHeading,
    PriceInfo,
    ProductRecord,
)


def sample_products() -> list[ProductRecord]:
    return [
        ProductRecord(
            source_id="wob_dune",
            source_url=f"{BASE}/books/dune",
            title="Dune",
            price=PriceInfo(amount=Decimal("6.99"), currency="GBP"),
        ),
        ProductRecord(
            source_id="wob_emma",
            source_url=f"{BASE}/books/emma",
            title="Emma",
            price=PriceInfo(amount=Decimal("2.50"), currency="GBP"),
            is_available=False,
        ),
        ProductRecord(
            source_id="wob_rare",
            source_url=f"{BASE}/books/rare",
            title="Rare",
            price=PriceInfo(amount=None, currency="USD"),
        ),
    ]


class FakeQuery:
    def __init__(self, table, calls):
        self.table = table
        self.calls = calls
        self.rows = []

    def upsert(self, rows, on_conflict=None):
        self.calls.append((self.table, rows, on_conflict))
        self.rows = rows
        return self

    def execute(self):
        return type("Result", (), {"data": self.rows, "count": len(self.rows)})()


class FakeSupabase:
    def __init__(self):
        self.calls = []

    def table(self, name):
        return FakeQuery(name, self.calls)


class TestFileLoader:
    """Test catalog export to JSON files."""

    @pytest.mark.asyncio
    async def test_export_catalog(self, tmp_path, store):
        store.upsert_navigation(
            [NavigationHeading(title="Books", slug="books", source_url=f"{BASE}/collections/books")]
        )
        store.upsert_products(sample_products(), category_slug="fiction")

        loader = FileLoader(StorageConfig(base_dir=tmp_path))
        output_dir = await loader.export_catalog(store, tmp_path / "snapshot")

        assert sorted(p.name for p in output_dir.iterdir()) == [
            "categories.json",
            "navigation.json",
            "products.json",
            "summary.json",
        ]
        products = json.loads((output_dir / "products.json").read_text())
        assert [p["title"] for p in products] == ["Dune", "Emma", "Rare"]
        navigation = json.loads((output_dir / "navigation.json").read_text())
        assert navigation[0]["slug"] == "books"

    @pytest.mark.asyncio
    async def test_default_directory_is_timestamped(self, tmp_path, store):
        loader = FileLoader(StorageConfig(base_dir=tmp_path))
        output_dir = await loader.export_catalog(store)
        assert output_dir.parent == tmp_path / "exports"

    def test_summary(self, tmp_path):
        summary = FileLoader(StorageConfig(base_dir=tmp_path)).generate_summary(sample_products())

        assert summary["total_products"] == 3
        assert summary["available"] == 2
        assert summary["currencies"] == {"GBP": 2, "USD": 1}
        assert summary["price_range"] == {"min": 2.5, "max": 6.99}


class TestSupabaseLoader:
    """Test routing records to Supabase tables."""

    def test_requires_credentials(self, monkeypatch):
        monkeypatch.delenv("SUPABASE_URL", raising=False)
        monkeypatch.delenv("SUPABASE_KEY", raising=False)
        with pytest.raises(ValueError):
            SupabaseLoader()

    def test_save_records_routes_by_type(self):
        client = FakeSupabase()
        loader = SupabaseLoader(client=client)
        records = [
            NavigationHeading(title="Books", slug="books", source_url=f"{BASE}/collections/books"),
            CategoryNode(
                title="Fiction",
                slug="fiction",
                source_url=f"{BASE}/collections/fiction",
                navigation_slug="books",
            ),
            *sample_products(),
        ]

        assert loader.save_records(records) == 5

        tables = {table: (rows, conflict) for table, rows, conflict in client.calls}
        assert tables["navigation"][1] == "slug"
        assert tables["categories"][1] == "scope,slug"
        assert tables["categories"][0][0]["scope"] == "books"
        products, conflict = tables["products"]
        assert conflict == "source_url"
        assert products[0]["price"] == 6.99
        assert products[2]["price"] is None
        assert products[2]["currency"] == "USD"
        assert "last_scraped_at" in products[0]

    def test_empty_batches_skip_requests(self):
        client = FakeSupabase()
        assert SupabaseLoader(client=client).save_records([]) == 0
        assert client.calls == []
