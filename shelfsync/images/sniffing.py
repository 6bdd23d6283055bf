"""
Image type detection from leading bytes.

The transport content type and file extension are ignored: origins mislabel
images often enough that only the bytes are trusted.
"""

import re
from typing import Optional

ACCEPTED_MIME_TYPES = (
    "image/jpeg",
    "image/png",
    "image/gif",
    "image/webp",
    "image/svg+xml",
    "image/x-icon",
    "image/avif",
)

_SVG_HEAD_BYTES = 512

# Root element must be <svg>; only an XML declaration, a DOCTYPE, comments
# and whitespace may precede it. HTML pages with inline SVG do not match.
_SVG_ROOT = re.compile(
    r"(?:\s|<\?xml[^>]*\?>|<!DOCTYPE[^>\[]*(?:\[[^\]]*\])?\s*>|<!--.*?-->)*<svg[\s>/]",
    re.IGNORECASE | re.DOTALL,
)


def sniff_image_type(data: bytes) -> Optional[str]:
    """MIME type for recognized image bytes, None otherwise."""
    if not data:
        return None

    if data[:3] == b"\xff\xd8\xff":
        return "image/jpeg"
    if data[:8] == b"\x89PNG\r\n\x1a\n":
        return "image/png"
    if data[:6] in (b"GIF87a", b"GIF89a"):
        return "image/gif"
    if data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return "image/webp"
    if data[:4] == b"\x00\x00\x01\x00":
        return "image/x-icon"
    if data[4:8] == b"ftyp" and data[8:12] in (b"avif", b"avis"):
        return "image/avif"

    head = data[:_SVG_HEAD_BYTES].decode("utf-8", errors="ignore").lstrip("\ufeff")
    if _SVG_ROOT.match(head):
        return "image/svg+xml"

    return None
