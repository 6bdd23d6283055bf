"""
Page extractor: turns one fetched page into normalized catalog records.

Works on the page HTML (whatever fetched it, plain HTTP or a browser) so the
whole extraction step is a pure function that can be tested against fixtures.
"""

import re
from dataclasses import dataclass, field
from typing import Optional
from urllib.parse import urldefrag, urljoin, urlsplit

from bs4 import BeautifulSoup, Tag
from rich.console import Console

from shelfsync.config.settings import ExtractionConfig, config
from shelfsync.errors import PermanentExtractionError
from shelfsync.extractors.strategies import (
    MAX_SPEC_LABEL_LENGTH,
    MAX_SPECS,
    PAGINATION_CONTAINERS,
    PAGINATION_LINK_TEXT,
    PAGINATION_SELECTORS,
    SPEC_LABEL_SELECTORS,
    STRATEGIES,
    FieldRule,
    SelectorStrategy,
    select_candidates,
)
from shelfsync.transformers.record_transformer import (
    CatalogRecord,
    RawRecord,
    RecordKind,
    RecordTransformer,
    clean_text,
)

console = Console()

URL_FIELDS = ("link", "image")
_SKIPPED_SCHEMES = ("javascript:", "mailto:", "tel:", "data:", "#")
_MAX_NODES_PER_RULE = 10


@dataclass
class FetchedPage:
    """HTML of one fetched page. final_url differs from url after redirects."""

    url: str
    html: str
    final_url: Optional[str] = None
    status: int = 200

    def __post_init__(self):
        if not self.final_url:
            self.final_url = self.url


@dataclass
class PageResult:
    """Records found on a page plus the listing pages it links to."""

    records: list = field(default_factory=list)
    next_urls: list = field(default_factory=list)
    strategy: Optional[str] = None


def resolve_url(href: Optional[str], base_url: str) -> Optional[str]:
    """Absolute http(s) URL for an href, resolved against the page it came from."""
    if not href:
        return None
    href = href.strip()
    if not href or href.lower().startswith(_SKIPPED_SCHEMES):
        return None
    absolute, _fragment = urldefrag(urljoin(base_url, href))
    if urlsplit(absolute).scheme not in ("http", "https"):
        return None
    return absolute


def _site(url: str) -> str:
    host = (urlsplit(url).hostname or "").lower()
    return host[4:] if host.startswith("www.") else host


def same_site(url: str, other: str) -> bool:
    return _site(url) == _site(other)


class PageExtractor:
    """Extracts records from pages using ordered, swappable selector strategies."""

    def __init__(
        self,
        extraction_config: Optional[ExtractionConfig] = None,
        strategies: Optional[dict] = None,
        transformer: Optional[RecordTransformer] = None,
    ):
        self.config = extraction_config or config.extraction
        self.strategies = strategies or STRATEGIES
        self.transformer = transformer or RecordTransformer(self.config)

    def extract(self, page: FetchedPage, kind: RecordKind) -> list[CatalogRecord]:
        """Normalized records on a page; empty when no structure is recognized."""
        return self.parse(page, kind).records

    def parse(self, page: FetchedPage, kind: RecordKind) -> PageResult:
        """
        Extract records and pagination links from one page.

        Never raises: a page that cannot be parsed yields an empty result so the
        crawl can continue with other pages.
        """
        try:
            soup = BeautifulSoup(page.html or "", "lxml")
            strategy, containers = self.choose_strategy(soup, kind)
            records = self._extract_records(containers, strategy, page, kind)

            next_urls = []
            if kind in (RecordKind.PRODUCT, RecordKind.CATEGORY):
                next_urls = self.find_next_pages(soup, page.final_url)

            return PageResult(records=records, next_urls=next_urls, strategy=strategy.name)
        except PermanentExtractionError as e:
            console.print(f"[yellow]{e} on {page.url}[/yellow]")
            return PageResult()
        except Exception as e:
            console.print(f"[red]Failed to parse {page.url}: {e}[/red]")
            return PageResult()

    def choose_strategy(
        self, soup: BeautifulSoup, kind: RecordKind
    ) -> tuple[SelectorStrategy, list[Tag]]:
        """
        First strategy whose match count meets its threshold; later ones are ignored.

        Raises PermanentExtractionError when no strategy matches.
        """
        for strategy in self.strategies[kind]:
            containers = select_candidates(soup, strategy)
            threshold = strategy.min_matches or self.config.min_matches
            if len(containers) >= threshold:
                console.print(
                    f"[dim]  {kind.value}: {len(containers)} matches via '{strategy.name}'[/dim]"
                )
                return strategy, containers
        raise PermanentExtractionError(f"No {kind.value} structure found")

    def _extract_records(
        self,
        containers: list[Tag],
        strategy: SelectorStrategy,
        page: FetchedPage,
        kind: RecordKind,
    ) -> list[CatalogRecord]:
        records = []
        seen = set()

        for index, container in enumerate(containers):
            try:
                raw = self._raw_record(container, strategy, page, kind, index)
                record = self.transformer.transform(raw)
            except Exception as e:
                console.print(f"[dim]  Skipped element #{index}: {e}[/dim]")
                continue

            if record is None or record.identity in seen:
                continue
            seen.add(record.identity)
            records.append(record)

        return records

    def _raw_record(
        self,
        container: Tag,
        strategy: SelectorStrategy,
        page: FetchedPage,
        kind: RecordKind,
        index: int,
    ) -> RawRecord:
        fields = {}
        for name, rules in strategy.fields.items():
            fields[name] = self.resolve_field(
                container,
                rules,
                base_url=page.final_url,
                is_url=name in URL_FIELDS,
                max_length=self.transformer.max_length(kind, name),
            )

        # Structure links must stay on the site; product images may live on a CDN
        if kind in (RecordKind.NAVIGATION, RecordKind.CATEGORY):
            link = fields.get("link")
            if link and not same_site(link, page.final_url):
                fields["link"] = None

        specs = {}
        if kind == RecordKind.PRODUCT_DETAIL:
            specs = self.extract_specs(container)
            rating_text = fields.pop("rating", None)
            if rating_text:
                specs.update(_rating_specs(rating_text))

        return RawRecord(
            kind=kind,
            page_url=page.url,
            fields=fields,
            specs=specs,
            text=container.get_text(" ", strip=True),
            index=index,
        )

    def resolve_field(
        self,
        container: Tag,
        rules: tuple,
        base_url: str,
        is_url: bool = False,
        max_length: int = 255,
    ) -> Optional[str]:
        """First non-empty, length-bounded value produced by the ordered rules."""
        for rule in rules:
            for node in self._nodes(container, rule):
                value = _read(node, rule)
                if rule.pattern and value:
                    match = re.search(rule.pattern, value, re.IGNORECASE)
                    value = match.group(1) if match else None

                if is_url:
                    value = resolve_url(value, base_url)
                else:
                    value = self.transformer.bounded(value, max_length)

                if value:
                    return value
        return None

    @staticmethod
    def _nodes(container: Tag, rule: FieldRule) -> list[Tag]:
        if rule.selector is None:
            return [container]
        return container.select(rule.selector, limit=_MAX_NODES_PER_RULE)

    def extract_specs(self, container: Tag) -> dict[str, str]:
        """Label/value pairs from definition lists and two-cell table rows."""
        specs = {}

        pairs = []
        for label_node in container.select(SPEC_LABEL_SELECTORS):
            value_node = label_node.find_next_sibling()
            if value_node is not None:
                pairs.append((label_node, value_node))
        for row in container.select("tr"):
            cells = row.find_all(["th", "td"], recursive=False)
            if len(cells) == 2:
                pairs.append((cells[0], cells[1]))

        for label_node, value_node in pairs:
            if len(specs) >= MAX_SPECS:
                break
            label = clean_text(label_node.get_text(" ", strip=True))
            value = clean_text(value_node.get_text(" ", strip=True))
            if not label or not value or len(label) >= MAX_SPEC_LABEL_LENGTH:
                continue
            label = label.rstrip(":").strip()
            key = label[:1].upper() + label[1:]
            specs.setdefault(key, value[:500])

        return specs

    def find_next_pages(self, soup: BeautifulSoup, page_url: str) -> list[str]:
        """Same-site pagination links ("next", rel=next, numbered pages)."""
        hrefs = []
        for selector in PAGINATION_SELECTORS:
            hrefs.extend(node.get("href") for node in soup.select(selector))

        for pager in soup.select(PAGINATION_CONTAINERS):
            for anchor in pager.select("a[href]"):
                text = anchor.get_text(" ", strip=True).lower()
                label = (anchor.get("aria-label") or "").lower()
                if text in PAGINATION_LINK_TEXT or text.isdigit() or label.startswith("next"):
                    hrefs.append(anchor.get("href"))

        current = urldefrag(page_url)[0]
        next_urls = []
        for href in hrefs:
            url = resolve_url(href, page_url)
            if not url or url == current or url in next_urls:
                continue
            if not same_site(url, page_url):
                continue
            next_urls.append(url)
        return next_urls


def _read(node: Tag, rule: FieldRule) -> Optional[str]:
    if rule.attribute is None:
        return node.get_text(" ", strip=True)

    value = node.get(rule.attribute)
    if isinstance(value, list):
        value = " ".join(value)
    if value and "srcset" in rule.attribute:
        # "a.jpg 1x, b.jpg 2x" -> "a.jpg"
        value = value.split(",")[0].strip().split(" ")[0]
    return value


def _rating_specs(text: str) -> dict[str, str]:
    specs = {}
    rating = re.search(r"\d+(?:\.\d+)?", text)
    if rating:
        specs["Rating"] = rating.group(0)
    reviews = re.search(r"(\d[\d,]*)\s*reviews?", text, re.IGNORECASE)
    if reviews:
        specs["Reviews"] = reviews.group(1).replace(",", "")
    return specs
