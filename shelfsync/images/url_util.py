"""
Helpers for rewriting external image URLs to go through the image proxy.

Stored product records carry both the external URL and the proxied one, so a
client never hotlinks the origin directly.
"""

from typing import Optional
from urllib.parse import parse_qs, quote, urlsplit

from shelfsync.config.settings import config
from shelfsync.errors import ValidationError


def _endpoint(endpoint_path: Optional[str]) -> str:
    return (endpoint_path or config.images.endpoint_path).rstrip("/")


def is_proxied_url(url: Optional[str], endpoint_path: Optional[str] = None) -> bool:
    """True when the URL already points at the proxy endpoint with a url parameter."""
    if not url:
        return False
    parts = urlsplit(url)
    return parts.path.rstrip("/").endswith(_endpoint(endpoint_path)) and "url" in parse_qs(
        parts.query
    )


def proxy_image_url(
    image_url: Optional[str],
    proxy_host: Optional[str] = None,
    endpoint_path: Optional[str] = None,
) -> str:
    """
    Proxied form of an external image URL.

    Empty input gives an empty string; an already-proxied URL is returned as is.
    """
    if not image_url:
        return ""
    if is_proxied_url(image_url, endpoint_path):
        return image_url

    host = (proxy_host or config.images.proxy_host).rstrip("/")
    return f"{host}{_endpoint(endpoint_path)}?url={quote(image_url, safe='')}"


def extract_original_url(proxied_url: Optional[str]) -> str:
    """The url parameter of a proxied URL, or "" when there is none."""
    if not proxied_url:
        return ""
    values = parse_qs(urlsplit(proxied_url).query).get("url")
    return values[0] if values else ""


def unwrap_proxied_url(
    url: str,
    endpoint_path: Optional[str] = None,
    max_depth: Optional[int] = None,
) -> str:
    """
    Peel proxy URLs wrapped inside proxy URLs down to the real target.

    Raises ValidationError when nesting goes deeper than max_depth.
    """
    max_depth = config.images.max_unwrap_depth if max_depth is None else max_depth
    depth = 0
    while is_proxied_url(url, endpoint_path):
        if depth >= max_depth:
            raise ValidationError(f"Proxy URL nested more than {max_depth} levels deep")
        inner = extract_original_url(url)
        if not inner:
            raise ValidationError("Proxy URL has an empty url parameter")
        url = inner
        depth += 1
    return url


def proxy_image_fields(
    record: dict,
    image_fields: tuple = ("image_url",),
    proxy_host: Optional[str] = None,
    endpoint_path: Optional[str] = None,
) -> dict:
    """
    Proxied counterparts of a record's image fields.

    Returns a "proxied_<field>" entry for every named field holding a
    non-empty string; other fields are skipped.
    """
    proxied = {}
    for name in image_fields:
        value = record.get(name)
        if isinstance(value, str) and value:
            proxied[f"proxied_{name}"] = proxy_image_url(value, proxy_host, endpoint_path)
    return proxied
