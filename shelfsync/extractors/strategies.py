"""
Selector strategies for each record kind.

Every kind has an ordered tuple of strategies, most specific first. The
extractor takes the first strategy whose container selector matches at least
``min_matches`` elements and never mixes in results from later strategies.
Fields inside a container resolve through their own ordered rules.

The remote markup shifts regularly; when it does, add a strategy at the front
of the tuple instead of editing extraction code.
"""

from dataclasses import dataclass, field
from typing import Optional

from bs4 import BeautifulSoup, Tag

from shelfsync.transformers.record_transformer import RecordKind


@dataclass(frozen=True)
class FieldRule:
    """
    One way of reading a field out of a container.

    selector=None reads the container itself, attribute=None reads its text,
    and pattern (a regex) keeps group 1 of the first match.
    """

    selector: Optional[str] = None
    attribute: Optional[str] = None
    pattern: Optional[str] = None


@dataclass(frozen=True)
class SelectorStrategy:
    """Container selector plus ordered field rules for one page variant."""

    name: str
    container: str
    fields: dict = field(default_factory=dict)
    min_matches: Optional[int] = None  # None = ExtractionConfig.min_matches
    first_only: bool = False


_LINK_TEXT = (FieldRule(None),)
_LINK_HREF = (FieldRule(None, "href"),)

_PRODUCT_FIELDS = {
    "title": (
        FieldRule("[class*='title']"),
        FieldRule("h2"),
        FieldRule("h3"),
        FieldRule("a[href*='/books/']"),
        FieldRule("img[alt]", "alt"),
    ),
    "link": (
        FieldRule("a[href*='/books/']", "href"),
        FieldRule("a[href*='/product']", "href"),
        FieldRule("a[href]", "href"),
    ),
    "author": (
        FieldRule("[class*='author']"),
        FieldRule("[itemprop='author']"),
        FieldRule(None, pattern=r"\bby\s+([^,\n|£$€¥₹]+)"),
    ),
    "price": (
        FieldRule("[class*='price']"),
        FieldRule("[itemprop='price']", "content"),
        FieldRule(None, pattern=r"([£$€¥₹]\s?\d[\d,]*(?:\.\d+)?)"),
    ),
    "image": (
        FieldRule("img[data-src]", "data-src"),
        FieldRule("img[src]", "src"),
        FieldRule("img[srcset]", "srcset"),
        FieldRule("picture source[srcset]", "srcset"),
    ),
}

_DETAIL_FIELDS = {
    "title": (
        FieldRule("h1"),
        FieldRule("[itemprop='name']"),
        FieldRule("[class*='title']"),
    ),
    "author": (
        FieldRule("[class*='author']"),
        FieldRule("[itemprop='author']"),
        FieldRule(None, pattern=r"\bby\s+([^,\n|£$€¥₹]+)"),
    ),
    "price": (
        FieldRule("[class*='price']"),
        FieldRule("[itemprop='price']", "content"),
    ),
    "image": (
        FieldRule("img[alt*='cover' i]", "src"),
        FieldRule("img[src*='cover']", "src"),
        FieldRule("[itemprop='image']", "src"),
        FieldRule("picture img", "src"),
        FieldRule("img[data-src]", "data-src"),
    ),
    "description": (
        FieldRule("[itemprop='description']"),
        FieldRule("[class*='description']"),
        FieldRule("[class*='summary']"),
        FieldRule("[class*='synopsis']"),
    ),
    "rating": (
        FieldRule("[class*='rating']"),
        FieldRule("[class*='stars']"),
    ),
}

STRATEGIES: dict = {
    RecordKind.NAVIGATION: (
        SelectorStrategy(
            name="header-nav",
            container="header nav a[href]",
            fields={"title": _LINK_TEXT, "link": _LINK_HREF},
            min_matches=3,
        ),
        SelectorStrategy(
            name="menu-links",
            container="[class*='menu'] a[href], [class*='navigation'] a[href]",
            fields={"title": _LINK_TEXT, "link": _LINK_HREF},
            min_matches=3,
        ),
        SelectorStrategy(
            name="any-nav",
            container="nav a[href]",
            fields={"title": _LINK_TEXT, "link": _LINK_HREF},
        ),
    ),
    RecordKind.CATEGORY: (
        SelectorStrategy(
            name="category-tiles",
            container="[class*='category-tile'], [class*='category-card'], [data-testid*='category']",
            fields={
                "title": (FieldRule("[class*='title']"), FieldRule("h2"), FieldRule("h3"), FieldRule("a")),
                "link": (FieldRule("a[href]", "href"), FieldRule(None, "href")),
                "count": (FieldRule("[class*='count']"),),
            },
        ),
        SelectorStrategy(
            name="category-links",
            container="[class*='category'] a[href], [class*='genre'] a[href]",
            fields={
                "title": _LINK_TEXT,
                "link": _LINK_HREF,
                "count": (FieldRule("[class*='count']"),),
            },
        ),
        SelectorStrategy(
            name="facet-links",
            container="[class*='facet'] a[href], [class*='filter'] li a[href]",
            fields={"title": _LINK_TEXT, "link": _LINK_HREF},
        ),
    ),
    RecordKind.PRODUCT: (
        SelectorStrategy(
            name="testid-product",
            container="div[data-testid*='product']",
            fields=_PRODUCT_FIELDS,
        ),
        SelectorStrategy(
            name="product-article",
            container="article.product, li.product, div.book-item",
            fields=_PRODUCT_FIELDS,
        ),
        SelectorStrategy(
            name="product-card",
            container="[class*='product-card'], [class*='book-item'], li[class*='product']",
            fields=_PRODUCT_FIELDS,
        ),
        SelectorStrategy(
            name="generic-article",
            container="article",
            fields=_PRODUCT_FIELDS,
            min_matches=2,
        ),
    ),
    RecordKind.PRODUCT_DETAIL: (
        SelectorStrategy(
            name="product-detail",
            container="[class*='product-detail'], [class*='productDetail'], [itemtype*='Product']",
            fields=_DETAIL_FIELDS,
            first_only=True,
        ),
        SelectorStrategy(name="main", container="main", fields=_DETAIL_FIELDS, first_only=True),
        SelectorStrategy(name="body", container="body", fields=_DETAIL_FIELDS, first_only=True),
    ),
}

# Links that point at the next listing page
PAGINATION_SELECTORS = (
    "a[rel~='next']",
    "link[rel~='next']",
    "[class*='pagination'] a[aria-label*='next' i]",
    "[class*='pagination'] a[class*='next']",
    "a[aria-label*='next page' i]",
)

PAGINATION_CONTAINERS = "[class*='pagination'], nav[aria-label*='pagination' i], [class*='pager']"
PAGINATION_LINK_TEXT = ("next", "next page", "›", "»", ">")

# Specs on detail pages: label -> value pairs
SPEC_LABEL_SELECTORS = "dt, [class*='spec'] [class*='label'], [class*='details'] th"
MAX_SPEC_LABEL_LENGTH = 50
MAX_SPECS = 20


def select_candidates(soup: BeautifulSoup, strategy: SelectorStrategy) -> list[Tag]:
    """Containers a strategy matches on a parsed page."""
    matches = soup.select(strategy.container)
    if strategy.first_only:
        return matches[:1]
    return matches
