"""
Record transformer for cleaning and normalizing extracted page fields.

The extractor hands over raw string fields per matched element; this module
turns them into validated catalog records (navigation headings, categories,
products) with slugs, stable ids, parsed prices and absolute URLs.
"""

import re
import time
import unicodedata
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Optional, Union
from urllib.parse import urlsplit

from pydantic import BaseModel, Field, field_validator
from rich.console import Console

from shelfsync.config.settings import ExtractionConfig, config

console = Console()

CURRENCY_SYMBOLS = {
    "$": "USD",
    "£": "GBP",
    "€": "EUR",
    "¥": "JPY",
    "₹": "INR",
}

# ISO codes recognized when written next to the amount ("GBP 4.99", "4.99 EUR")
CURRENCY_CODES = {"GBP", "USD", "EUR", "JPY", "INR", "AUD", "CAD", "NZD", "CHF"}

OUT_OF_STOCK_MARKERS = ("out of stock", "sold out", "currently unavailable")

_NUMERIC_RUN = re.compile(r"\d[\d,]*(?:\.\d+)?")
_WHITESPACE = re.compile(r"\s+")
_SEGMENT_ID = re.compile(r"[A-Za-z0-9][A-Za-z0-9._\-]*")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def clean_text(value: Optional[str]) -> Optional[str]:
    """Collapse whitespace; empty strings become None."""
    if value is None:
        return None
    value = _WHITESPACE.sub(" ", value).strip()
    return value or None


def slugify(text: str) -> str:
    """Convert a title to a URL-safe slug ("Crime & Thriller" -> "crime-thriller")."""
    normalized = unicodedata.normalize("NFKD", text)
    slug = normalized.encode("ascii", "ignore").decode("ascii").lower()
    slug = re.sub(r"[^a-z0-9]+", "-", slug)
    return slug.strip("-")


class RecordKind(str, Enum):
    """What an extraction pass is looking for on a page."""

    NAVIGATION = "navigation"
    CATEGORY = "category"
    PRODUCT = "product"
    PRODUCT_DETAIL = "product_detail"


class PriceInfo(BaseModel):
    """Validated price info."""

    amount: Optional[Decimal] = Field(default=None, ge=0)
    currency: str = "GBP"


def _adjacent_currency(text: str, start: int, end: int) -> Optional[str]:
    before = text[:start].rstrip()
    after = text[end:].lstrip()

    if before and before[-1] in CURRENCY_SYMBOLS:
        return CURRENCY_SYMBOLS[before[-1]]
    if after and after[0] in CURRENCY_SYMBOLS:
        return CURRENCY_SYMBOLS[after[0]]

    code_before = before[-3:].upper()
    if code_before in CURRENCY_CODES and not before[-4:-3].isalpha():
        return code_before
    code_after = after[:3].upper()
    if code_after in CURRENCY_CODES and not after[3:4].isalpha():
        return code_after
    return None


def parse_price(text: Optional[str], default_currency: str = "GBP") -> PriceInfo:
    """
    Parse a display price.

    Only the first numeric run counts, so "£12.99 (was £15.00)" is 12.99 GBP.
    Grouping commas are stripped before parsing as a Decimal.
    """
    if not text:
        return PriceInfo(currency=default_currency)

    match = _NUMERIC_RUN.search(text)
    if not match:
        return PriceInfo(currency=default_currency)

    try:
        amount = Decimal(match.group(0).replace(",", ""))
    except InvalidOperation:
        amount = None

    currency = _adjacent_currency(text, match.start(), match.end()) or default_currency
    return PriceInfo(amount=amount, currency=currency)


def derive_source_id(url: Optional[str], prefix: str = "wob", index: int = 0) -> str:
    """
    Stable product id from the last path segment of its URL.

    Falls back to a timestamp-based id when the URL has no usable segment.
    """
    if url:
        segments = [s for s in urlsplit(url).path.split("/") if s]
        if segments and _SEGMENT_ID.fullmatch(segments[-1]):
            return f"{prefix}_{segments[-1]}"
    return f"{prefix}_{int(time.time() * 1000)}_{index}"


class NavigationHeading(BaseModel):
    """Top-level navigation heading of the remote site."""

    title: str
    slug: str
    source_url: str
    category_count: int = 0
    last_scraped_at: datetime = Field(default_factory=utcnow)

    @field_validator("title")
    @classmethod
    def clean_title(cls, v: str) -> str:
        return clean_text(v) or ""

    @property
    def identity(self) -> str:
        return self.slug


class CategoryNode(BaseModel):
    """Category or subcategory; parent_slug links a subcategory to its parent."""

    title: str
    slug: str
    source_url: str
    navigation_slug: Optional[str] = None
    parent_slug: Optional[str] = None
    depth: int = 0
    product_count: int = 0
    last_scraped_at: datetime = Field(default_factory=utcnow)

    @field_validator("title")
    @classmethod
    def clean_title(cls, v: str) -> str:
        return clean_text(v) or ""

    @property
    def identity(self) -> tuple:
        return (self.parent_slug or self.navigation_slug or "", self.slug)


class ProductRecord(BaseModel):
    """Validated product record. source_url is the dedup identity."""

    source_id: str
    source_url: str
    title: str
    author: str = "Unknown"
    price: PriceInfo = Field(default_factory=PriceInfo)
    image_url: Optional[str] = None
    proxied_image_url: Optional[str] = None
    is_available: bool = True
    description: Optional[str] = None
    specs: dict[str, str] = Field(default_factory=dict)
    category_slug: Optional[str] = None
    last_scraped_at: datetime = Field(default_factory=utcnow)

    @field_validator("title", "author")
    @classmethod
    def clean_name(cls, v: str) -> str:
        return clean_text(v) or ""

    @field_validator("description")
    @classmethod
    def clean_description(cls, v: Optional[str]) -> Optional[str]:
        return clean_text(v)

    @property
    def identity(self) -> str:
        return self.source_url or self.source_id


CatalogRecord = Union[NavigationHeading, CategoryNode, ProductRecord]


@dataclass
class RawRecord:
    """Raw string fields pulled from one matched element of a page."""

    kind: RecordKind
    page_url: str
    fields: dict = field(default_factory=dict)
    specs: dict = field(default_factory=dict)
    text: str = ""  # full text of the element, used for availability markers
    index: int = 0


class RecordTransformer:
    """Transforms raw extracted fields into clean, validated catalog records."""

    def __init__(self, extraction_config: Optional[ExtractionConfig] = None):
        self.config = extraction_config or config.extraction

    def max_length(self, kind: RecordKind, field_name: str) -> int:
        """Upper bound for a text field; longer values are layout noise."""
        if field_name == "title":
            if kind == RecordKind.NAVIGATION:
                return self.config.max_navigation_title_length
            return self.config.max_title_length
        if field_name == "author":
            return self.config.max_author_length
        if field_name == "description":
            return self.config.max_description_length
        return 2048

    def bounded(self, value: Optional[str], max_length: int) -> Optional[str]:
        """Return the cleaned value only if it falls inside the length window."""
        value = clean_text(value)
        if value is None:
            return None
        if len(value) < self.config.min_text_length or len(value) > max_length:
            return None
        return value

    def transform(self, raw: RawRecord) -> Optional[CatalogRecord]:
        """Transform one raw record; returns None if it is not usable."""
        try:
            if raw.kind == RecordKind.NAVIGATION:
                return self._navigation(raw)
            if raw.kind == RecordKind.CATEGORY:
                return self._category(raw)
            return self._product(raw)
        except Exception as e:
            console.print(f"[dim]Skipping malformed {raw.kind.value} element #{raw.index}: {e}[/dim]")
            return None

    def _titled_link(self, raw: RawRecord) -> tuple[Optional[str], Optional[str]]:
        title = self.bounded(raw.fields.get("title"), self.max_length(raw.kind, "title"))
        link = raw.fields.get("link")
        return title, link

    def _navigation(self, raw: RawRecord) -> Optional[NavigationHeading]:
        title, link = self._titled_link(raw)
        if not title or not link:
            return None
        slug = slugify(title)
        if not slug:
            return None
        return NavigationHeading(title=title, slug=slug, source_url=link)

    def _category(self, raw: RawRecord) -> Optional[CategoryNode]:
        title, link = self._titled_link(raw)
        if not title or not link:
            return None
        slug = slugify(title)
        if not slug:
            return None

        product_count = 0
        count_text = raw.fields.get("count")
        if count_text:
            match = re.search(r"\d[\d,]*", count_text)
            if match:
                product_count = int(match.group(0).replace(",", ""))

        return CategoryNode(title=title, slug=slug, source_url=link, product_count=product_count)

    def _product(self, raw: RawRecord) -> Optional[ProductRecord]:
        title, link = self._titled_link(raw)
        if raw.kind == RecordKind.PRODUCT_DETAIL and not link:
            link = raw.page_url
        if not title or not link:
            return None

        author = self.bounded(raw.fields.get("author"), self.max_length(raw.kind, "author"))
        if author:
            author = re.sub(r"^(by|author:?)\s+", "", author, flags=re.IGNORECASE)

        text = (raw.text or "").lower()
        is_available = not any(marker in text for marker in OUT_OF_STOCK_MARKERS)

        description = None
        if raw.kind == RecordKind.PRODUCT_DETAIL:
            description = self.bounded(
                raw.fields.get("description"), self.max_length(raw.kind, "description")
            )

        return ProductRecord(
            source_id=derive_source_id(link, self.config.source_id_prefix, raw.index),
            source_url=link,
            title=title,
            author=author or self.config.default_author,
            price=parse_price(raw.fields.get("price"), self.config.default_currency),
            image_url=raw.fields.get("image") or None,
            is_available=is_available,
            description=description,
            specs=dict(raw.specs),
        )
