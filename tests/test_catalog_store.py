"""
Tests for the SQLite catalog store.
"""

from datetime import timedelta
from decimal import Decimal

import pytest

from conftest import BASE
from shelfsync.tracking.catalog_store import JOB_COMPLETED, JOB_IN_PROGRESS, parse_entity_key
from shelfsync.transformers.record_transformer import (
    CategoryNode,
    NavigationHeading,
    PriceInfo,
    ProductRecord,
)


def heading(slug: str, **kwargs) -> NavigationHeading:
    return NavigationHeading(
        title=slug.title(), slug=slug, source_url=f"{BASE}/collections/{slug}", **kwargs
    )


def category(slug: str, navigation_slug: str = "books", parent_slug: str = None, **kwargs) -> CategoryNode:
    return CategoryNode(
        title=slug.title(),
        slug=slug,
        source_url=f"{BASE}/collections/{slug}",
        navigation_slug=navigation_slug,
        parent_slug=parent_slug,
        depth=1 if parent_slug else 0,
        **kwargs,
    )


def product(slug: str, **kwargs) -> ProductRecord:
    fields = {
        "source_id": f"wob_{slug}",
        "source_url": f"{BASE}/books/{slug}",
        "title": slug.title(),
        "price": PriceInfo(amount=Decimal("4.99"), currency="GBP"),
        "image_url": f"https://images.example.com/{slug}.jpg",
    }
    fields.update(kwargs)
    return ProductRecord(**fields)


class TestParseEntityKey:
    def test_keys(self):
        assert parse_entity_key("navigation") == ("navigation", None)
        assert parse_entity_key("categories:books") == ("categories", "books")
        assert parse_entity_key("product:wob_dune") == ("product", "wob_dune")

    @pytest.mark.parametrize("key", ["bogus", "navigation:books", "products", "categories:"])
    def test_invalid(self, key):
        with pytest.raises(ValueError):
            parse_entity_key(key)


class TestUpserts:
    """Test identity-based upserts."""

    def test_navigation_upsert_counts(self, store):
        assert store.upsert_navigation([heading("books"), heading("music")]) == (2, 0)
        assert store.upsert_navigation([heading("books"), heading("music")]) == (0, 2)
        assert [h.slug for h in store.get_navigation()] == ["books", "music"]

    def test_navigation_update_in_place(self, store):
        store.upsert_navigation([heading("books")])
        store.upsert_navigation([NavigationHeading(title="Books & More", slug="books", source_url=f"{BASE}/b")])

        headings = store.get_navigation()
        assert len(headings) == 1
        assert headings[0].title == "Books & More"

    def test_same_slug_under_two_parents(self, store):
        store.upsert_categories([category("fiction"), category("rare-books")])
        store.upsert_categories(
            [
                category("classics", parent_slug="fiction"),
                category("classics", parent_slug="rare-books"),
            ]
        )

        assert [c.slug for c in store.get_subcategories("fiction")] == ["classics"]
        assert [c.slug for c in store.get_subcategories("rare-books")] == ["classics"]
        assert [c.slug for c in store.get_categories("books")] == ["fiction", "rare-books"]

    def test_category_count_never_decreases(self, store):
        store.upsert_categories([category("fiction", product_count=120)])
        store.upsert_categories([category("fiction", product_count=0)])
        assert store.get_category("fiction").product_count == 120

    def test_products_linked_to_categories(self, store):
        store.upsert_products([product("dune"), product("emma")], category_slug="fiction")
        store.upsert_products([product("dune")], category_slug="classics")

        assert [p.title for p in store.get_products("fiction")] == ["Dune", "Emma"]
        assert [p.title for p in store.get_products("classics")] == ["Dune"]
        assert len(store.all_products()) == 2

    def test_listing_keeps_detail_data(self, store):
        detailed = product("dune", description="Spice.", specs={"ISBN": "9780441013593"})
        store.upsert_products([detailed], detail=True)
        store.upsert_products([product("dune", price=PriceInfo(amount=None, currency="GBP"))], category_slug="sf")

        stored = store.get_product("wob_dune")
        assert stored.description == "Spice."
        assert stored.specs == {"ISBN": "9780441013593"}
        assert stored.price.amount == Decimal("4.99")

    def test_unparsed_price_keeps_currency_with_amount(self, store):
        store.upsert_products([product("dune", price=PriceInfo(amount=Decimal("8.00"), currency="USD"))])
        store.upsert_products([product("dune", price=PriceInfo(amount=None, currency="GBP"))])

        stored = store.get_product("wob_dune")
        assert stored.price.amount == Decimal("8.00")
        assert stored.price.currency == "USD"

    def test_product_count_set_within_scope(self, store):
        store.upsert_categories([category("fiction"), category("rare-books")])
        store.upsert_categories(
            [
                category("classics", parent_slug="fiction"),
                category("classics", parent_slug="rare-books"),
            ]
        )

        store.set_product_count("rare-books", "classics", 7)

        counts = {c.parent_slug: c.product_count for c in store.get_subcategories("fiction")}
        counts.update({c.parent_slug: c.product_count for c in store.get_subcategories("rare-books")})
        assert counts == {"fiction": 0, "rare-books": 7}

    def test_price_round_trip(self, store):
        store.upsert_products([product("dune", price=PriceInfo(amount=Decimal("1299.50"), currency="USD"))])
        stored = store.get_product("wob_dune")
        assert stored.price.amount == Decimal("1299.50")
        assert stored.price.currency == "USD"


class TestEntitySets:
    """Test key-based reads used for staleness checks."""

    def test_navigation_set(self, store):
        assert store.load_entity_set("navigation") == []
        store.upsert_navigation([heading("books")])
        assert [h.slug for h in store.load_entity_set("navigation")] == ["books"]

    def test_product_needs_detail(self, store):
        store.upsert_products([product("dune")], category_slug="fiction")
        assert store.load_entity_set("product:wob_dune") == []

        store.upsert_products([product("dune", description="Spice.")], detail=True)
        assert [p.source_id for p in store.load_entity_set("product:wob_dune")] == ["wob_dune"]

    def test_source_urls(self, store):
        store.upsert_navigation([heading("books")])
        store.upsert_categories([category("fiction")])
        store.upsert_products([product("dune")])

        assert store.get_source_url("navigation") is None
        assert store.get_source_url("categories:books") == f"{BASE}/collections/books"
        assert store.get_source_url("products:fiction") == f"{BASE}/collections/fiction"
        assert store.get_source_url("product:wob_dune") == f"{BASE}/books/dune"
        assert store.get_source_url("categories:unknown") is None

    def test_timestamps_preserved(self, store, now):
        store.upsert_navigation([heading("books", last_scraped_at=now - timedelta(hours=25))])
        assert store.get_navigation()[0].last_scraped_at == now - timedelta(hours=25)


class TestJobsAndAdmin:
    """Test job bookkeeping, stats and clearing."""

    def test_job_lifecycle(self, store):
        job_id = store.start_job(f"{BASE}/collections/fiction", "products")
        assert store.recent_jobs()[0]["status"] == JOB_IN_PROGRESS

        store.finish_job(job_id, JOB_COMPLETED, items_found=3, items_inserted=2, items_updated=1)

        job = store.recent_jobs()[0]
        assert job["status"] == JOB_COMPLETED
        assert job["items_found"] == 3
        assert job["finished_at"] is not None

    def test_stats(self, store):
        store.upsert_navigation([heading("books")])
        store.upsert_categories([category("fiction"), category("classics", parent_slug="fiction")])
        store.upsert_products([product("dune"), product("emma", is_available=False)])
        store.upsert_products([product("dune", description="Spice.")], detail=True)

        stats = store.get_stats()
        assert stats["navigation"] == 1
        assert stats["categories"] == 1
        assert stats["subcategories"] == 1
        assert stats["total_products"] == 2
        assert stats["available_products"] == 1
        assert stats["detailed_products"] == 1

    def test_clear(self, store):
        store.upsert_navigation([heading("books")])
        store.upsert_products([product("dune")], category_slug="fiction")
        store.start_job(BASE, "navigation")

        assert store.clear() == 4
        assert store.get_stats()["total_products"] == 0
        assert store.recent_jobs() == []
