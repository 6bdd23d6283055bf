"""Stale-while-revalidate reads over the local catalog."""

from .controller import StalenessController

__all__ = ["StalenessController"]
