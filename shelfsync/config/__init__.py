"""Configuration for shelfsync."""

from .settings import (
    CrawlConfig,
    ExtractionConfig,
    ImageProxyConfig,
    PipelineConfig,
    StalenessConfig,
    StorageConfig,
    config,
)

__all__ = [
    "CrawlConfig",
    "ExtractionConfig",
    "ImageProxyConfig",
    "PipelineConfig",
    "StalenessConfig",
    "StorageConfig",
    "config",
]
