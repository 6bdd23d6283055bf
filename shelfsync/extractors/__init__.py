"""Structured extraction from fetched pages."""

from .page_extractor import FetchedPage, PageExtractor, PageResult
from .strategies import STRATEGIES, FieldRule, SelectorStrategy

__all__ = [
    "FetchedPage",
    "PageExtractor",
    "PageResult",
    "STRATEGIES",
    "FieldRule",
    "SelectorStrategy",
]
