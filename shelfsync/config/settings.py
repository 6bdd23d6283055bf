"""
Configuration settings for the shelfsync catalog mirror.

Values can be overridden through environment variables (or a .env file in the
project root) so deployments can tune TTLs and proxy hosts without code changes.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import load_dotenv

PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent

load_dotenv(PROJECT_ROOT / ".env")


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    return int(value)


USER_AGENTS = [
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
    "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64; rv:121.0) Gecko/20100101 Firefox/121.0",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/605.1.15 (KHTML, like Gecko) Version/17.1 Safari/605.1.15",
]


@dataclass
class CrawlConfig:
    """Configuration for page fetching and crawl orchestration."""

    # Site root; navigation is discovered from here
    base_url: str = field(
        default_factory=lambda: os.getenv(
            "SHELFSYNC_BASE_URL", "https://www.worldofbooks.com/en-gb"
        )
    )

    # Session limits (keep these small, the origin rate-limits aggressively)
    max_concurrency: int = 2
    max_pages: int = 50
    follow_pagination: bool = True

    # Retry policy for transient fetch failures
    max_attempts: int = 3
    backoff_base_seconds: float = 1.0

    # Rate limiting (be respectful)
    page_delay_seconds: float = 1.0

    # Fetcher settings
    fetcher: str = "http"  # "http" (aiohttp) or "browser" (Playwright)
    timeout_ms: int = 30000
    headless: bool = True
    browser_type: str = "chromium"
    viewport_width: int = 1920
    viewport_height: int = 1080

    user_agents: list = field(default_factory=lambda: list(USER_AGENTS))


@dataclass
class ExtractionConfig:
    """Configuration for structured extraction from fetched pages."""

    min_matches: int = 1
    min_text_length: int = 1
    max_title_length: int = 255
    max_author_length: int = 255
    max_navigation_title_length: int = 100
    max_description_length: int = 2000
    default_currency: str = "GBP"
    default_author: str = "Unknown"
    source_id_prefix: str = "wob"


@dataclass
class ImageProxyConfig:
    """Configuration for the image download-and-cache proxy."""

    # Public host and path of the endpoint that serves proxied images
    proxy_host: str = field(
        default_factory=lambda: os.getenv("IMAGE_PROXY_HOST", "http://localhost:3001")
    )
    endpoint_path: str = "/api/image"

    cache_ttl_seconds: int = field(
        default_factory=lambda: _env_int("IMAGE_CACHE_TTL_SECONDS", 86400)
    )
    max_entries: int = 1000

    request_timeout_seconds: float = 30.0
    max_attempts: int = 3
    retry_delay_seconds: float = 1.0  # doubles per attempt: 1s, 2s, 4s
    max_redirects: int = 5
    min_image_bytes: int = 100

    # Recursive proxy-call guard
    max_unwrap_depth: int = 5

    # Resolve hostnames and reject private addresses (one DNS lookup per miss)
    resolve_dns: bool = False

    # Browser cache lifetime advertised to clients of the serving edge
    client_cache_max_age: int = 2592000

    user_agents: list = field(default_factory=lambda: list(USER_AGENTS))


@dataclass
class StalenessConfig:
    """Configuration for stale-while-revalidate catalog reads."""

    # One TTL for navigation, category and product entity sets
    ttl_seconds: int = field(default_factory=lambda: _env_int("CACHE_TTL_SECONDS", 86400))


@dataclass
class StorageConfig:
    """Configuration for data storage."""

    base_dir: Path = field(
        default_factory=lambda: Path(
            os.getenv("SHELFSYNC_DATA_DIR", str(PROJECT_ROOT / "data"))
        )
    )

    @property
    def export_dir(self) -> Path:
        """Directory for JSON snapshots of the catalog."""
        return self.base_dir / "exports"

    @property
    def db_path(self) -> Path:
        """SQLite catalog database path."""
        return self.base_dir / "catalog.db"

    def ensure_dirs(self) -> None:
        """Create necessary directories if they don't exist."""
        self.base_dir.mkdir(parents=True, exist_ok=True)


@dataclass
class PipelineConfig:
    """Main configuration combining all settings."""

    crawl: CrawlConfig = field(default_factory=CrawlConfig)
    extraction: ExtractionConfig = field(default_factory=ExtractionConfig)
    images: ImageProxyConfig = field(default_factory=ImageProxyConfig)
    staleness: StalenessConfig = field(default_factory=StalenessConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)

    # Categories crawled per navigation heading during a full sync (0 = all)
    categories_per_heading: int = 0


# Default configuration instance
config = PipelineConfig()
