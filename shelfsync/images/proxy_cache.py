"""
Image download-and-cache proxy.

Downloads hotlink-protected images on behalf of clients, validates the bytes,
and keeps them in a bounded in-memory cache for a day so the origin sees one
request per image per TTL window.

Every URL is checked before any network call: only http(s), no loopback,
private, link-local or reserved addresses, and no proxy URLs pointing back at
this proxy. Redirects are followed by hand so each hop gets the same check.
"""

import asyncio
import base64
import hashlib
import ipaddress
import random
import socket
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable, Iterable, Optional
from urllib.parse import urljoin, urlsplit

import httpx
from rich.console import Console

from shelfsync.config.settings import ImageProxyConfig, config
from shelfsync.errors import (
    ImageDownloadError,
    PermanentFetchError,
    TransientFetchError,
    UnsupportedContentType,
    ValidationError,
)
from shelfsync.images.sniffing import sniff_image_type
from shelfsync.images.url_util import unwrap_proxied_url

console = Console()

BLOCKED_HOSTNAMES = {"localhost", "localhost.localdomain", "ip6-localhost", "ip6-loopback"}
REDIRECT_STATUSES = {301, 302, 303, 307, 308}


@dataclass
class ImageResult:
    """Validated image bytes and their sniffed MIME type."""

    data: bytes
    mime_type: str
    size: int


@dataclass
class CachedImage:
    """Cache entry. Entries past their TTL count as absent."""

    key: str
    data: bytes
    mime_type: str
    size: int
    inserted_at: float
    ttl_seconds: float

    def is_expired(self, now: float) -> bool:
        return now - self.inserted_at >= self.ttl_seconds

    def to_result(self) -> ImageResult:
        return ImageResult(data=self.data, mime_type=self.mime_type, size=self.size)


def _is_blocked_ip(ip) -> bool:
    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
        ip = ip.ipv4_mapped
    return (
        ip.is_private
        or ip.is_loopback
        or ip.is_link_local
        or ip.is_unspecified
        or ip.is_reserved
        or ip.is_multicast
    )


def validate_image_url(url: Optional[str]) -> str:
    """
    Check that a URL is safe to request and return it stripped.

    Only literal hosts are checked here; see ImageProxyConfig.resolve_dns for
    checking where a hostname actually points.
    """
    if not url or not url.strip():
        raise ValidationError("Image URL is required")
    url = url.strip()

    try:
        parts = urlsplit(url)
        host = parts.hostname
    except ValueError as e:
        raise ValidationError(f"Invalid URL format: {url}") from e

    if parts.scheme.lower() not in ("http", "https"):
        raise ValidationError("Only HTTP and HTTPS URLs are allowed")
    if not host:
        raise ValidationError(f"Invalid URL format: {url}")

    host = host.lower().rstrip(".")
    if host in BLOCKED_HOSTNAMES or host.endswith(".localhost"):
        raise ValidationError("Local/internal URLs are not allowed")

    # Integer hosts ("2130706433") are IPv4 addresses to most resolvers
    if host.isdigit():
        raise ValidationError("Local/internal URLs are not allowed")

    try:
        ip = ipaddress.ip_address(host)
    except ValueError:
        ip = None
    if ip is not None and _is_blocked_ip(ip):
        raise ValidationError("Local/internal URLs are not allowed")

    return url


async def check_resolved_host(url: str) -> None:
    """Reject hostnames that resolve to internal addresses."""
    host = urlsplit(url).hostname
    loop = asyncio.get_running_loop()
    try:
        infos = await loop.getaddrinfo(host, None, type=socket.SOCK_STREAM)
    except socket.gaierror as e:
        raise ValidationError(f"Cannot resolve host {host}") from e

    for info in infos:
        address = info[4][0].split("%")[0]
        if _is_blocked_ip(ipaddress.ip_address(address)):
            raise ValidationError("Local/internal URLs are not allowed")


class ImageProxyCache:
    """Fetches images through validation, retry, sniffing and a TTL cache."""

    def __init__(
        self,
        image_config: Optional[ImageProxyConfig] = None,
        client: Optional[httpx.AsyncClient] = None,
        sleep: Callable = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = image_config or config.images
        self._client = client
        self._owns_client = client is None
        self.sleep = sleep
        self.clock = clock

        self._cache: OrderedDict[str, CachedImage] = OrderedDict()
        self._downloads: dict[str, asyncio.Task] = {}
        self.hits = 0
        self.misses = 0

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.config.request_timeout_seconds),
                follow_redirects=False,
            )
        return self._client

    @staticmethod
    def cache_key(url: str) -> str:
        return "img_" + hashlib.md5(url.encode("utf-8")).hexdigest()

    async def fetch_image(self, url: str) -> ImageResult:
        """
        Return image bytes for a URL, from cache when fresh.

        Raises:
            ValidationError: unsafe or malformed URL (no network call is made)
            ImageDownloadError: every download attempt failed
            UnsupportedContentType: the bytes are not an accepted image format
        """
        target = unwrap_proxied_url(
            (url or "").strip(),
            endpoint_path=self.config.endpoint_path,
            max_depth=self.config.max_unwrap_depth,
        )
        target = validate_image_url(target)
        if self.config.resolve_dns:
            await check_resolved_host(target)

        key = self.cache_key(target)
        cached = self._get_cached(key)
        if cached is not None:
            self.hits += 1
            console.print(f"[dim]Cache hit: {target[:60]} ({cached.size} bytes)[/dim]")
            return cached.to_result()

        download = self._downloads.get(key)
        if download is not None:
            self.hits += 1
            console.print(f"[dim]Joining in-flight download: {target[:60]}[/dim]")
        else:
            self.misses += 1
            download = asyncio.create_task(self._download_and_store(key, target))
            self._downloads[key] = download
            download.add_done_callback(lambda finished, key=key: self._forget_download(key, finished))
        return await asyncio.shield(download)

    def _forget_download(self, key: str, task: asyncio.Task) -> None:
        if self._downloads.get(key) is task:
            del self._downloads[key]
        if not task.cancelled():
            # Waiters re-raise the failure themselves
            task.exception()

    async def _download_and_store(self, key: str, target: str) -> ImageResult:
        data = await self._download_with_retry(target)

        mime_type = sniff_image_type(data)
        if mime_type is None:
            raise UnsupportedContentType(f"Unrecognized image bytes from {target}")

        self._store(key, data, mime_type)
        console.print(f"[green]Cached image: {target[:60]} ({len(data)} bytes)[/green]")
        return ImageResult(data=data, mime_type=mime_type, size=len(data))

    def _get_cached(self, key: str) -> Optional[CachedImage]:
        entry = self._cache.get(key)
        if entry is None:
            return None
        if entry.is_expired(self.clock()):
            del self._cache[key]
            return None
        return entry

    def _store(self, key: str, data: bytes, mime_type: str) -> None:
        self._cache[key] = CachedImage(
            key=key,
            data=data,
            mime_type=mime_type,
            size=len(data),
            inserted_at=self.clock(),
            ttl_seconds=self.config.cache_ttl_seconds,
        )
        self._cache.move_to_end(key)
        while len(self._cache) > self.config.max_entries:
            self._cache.popitem(last=False)

    def _headers(self, url: str) -> dict:
        parts = urlsplit(url)
        return {
            "User-Agent": random.choice(self.config.user_agents),
            "Accept": "image/avif,image/webp,image/apng,image/*,*/*;q=0.8",
            "Accept-Language": "en-GB,en;q=0.9",
            "Referer": f"{parts.scheme}://{parts.netloc}/",
        }

    async def _download_with_retry(self, url: str) -> bytes:
        max_attempts = max(1, self.config.max_attempts)
        reason = ""

        for attempt in range(1, max_attempts + 1):
            console.print(f"[dim]Downloading image (attempt {attempt}/{max_attempts}): {url[:80]}[/dim]")
            try:
                data = await self._download(url)
                if len(data) < self.config.min_image_bytes:
                    raise TransientFetchError(
                        f"Image too small ({len(data)} bytes), possibly a placeholder"
                    )
                return data
            except (TransientFetchError, PermanentFetchError, httpx.HTTPError) as e:
                reason = str(e) or e.__class__.__name__

            if attempt < max_attempts:
                delay = self.config.retry_delay_seconds * 2 ** (attempt - 1)
                console.print(f"[yellow]Attempt {attempt} failed: {reason}, retrying in {delay:.0f}s[/yellow]")
                await self.sleep(delay)

        console.print(f"[red]Failed to download image after {max_attempts} attempts: {reason}[/red]")
        raise ImageDownloadError(url, max_attempts, reason)

    async def _download(self, url: str) -> bytes:
        """Single download attempt, following redirects one validated hop at a time."""
        current = url
        for _ in range(self.config.max_redirects + 1):
            response = await self.client.get(current, headers=self._headers(url))

            if response.status_code in REDIRECT_STATUSES:
                location = response.headers.get("location")
                if not location:
                    raise PermanentFetchError(f"Redirect without location from {current}")
                current = validate_image_url(urljoin(current, location))
                if self.config.resolve_dns:
                    await check_resolved_host(current)
                continue

            if response.status_code >= 400:
                raise TransientFetchError(
                    f"HTTP {response.status_code} for {current}", status=response.status_code
                )
            return response.content

        raise PermanentFetchError(f"More than {self.config.max_redirects} redirects for {url}")

    def get_stats(self) -> dict:
        """Cache counters for monitoring."""
        now = self.clock()
        live = [entry for entry in self._cache.values() if not entry.is_expired(now)]
        return {
            "cached_images": len(live),
            "cache_hits": self.hits,
            "cache_misses": self.misses,
            "cache_ksize": sum(len(entry.key) for entry in live),
            "cache_vsize": sum(entry.size for entry in live),
        }

    def clear_cache(self) -> int:
        """Drop every cached image; returns how many were removed."""
        count = len(self._cache)
        self._cache.clear()
        console.print(f"[yellow]Image cache cleared ({count} images removed)[/yellow]")
        return count

    async def warm_cache(self, urls: Iterable[str]) -> dict:
        """Fetch a batch of images into the cache, tallying failures instead of raising."""
        success = 0
        failed = 0
        for url in urls:
            try:
                await self.fetch_image(url)
                success += 1
            except Exception as e:
                failed += 1
                console.print(f"[yellow]Failed to warm {url[:60]}: {e}[/yellow]")

        console.print(f"[cyan]Cache warm complete: {success} success, {failed} failed[/cyan]")
        return {"success": success, "failed": failed}

    def response_headers(self, result: ImageResult, url: str) -> dict:
        """Headers a serving edge should send along with an image."""
        etag = base64.b64encode(url.encode("utf-8")).decode("ascii")[:16]
        return {
            "Content-Type": result.mime_type,
            "Content-Length": str(result.size),
            "Cache-Control": f"public, max-age={self.config.client_cache_max_age}",
            "ETag": f'"{etag}"',
            "Access-Control-Allow-Origin": "*",
            "X-Content-Type-Options": "nosniff",
        }
