"""URL resolution, canonicalization and asset classification."""

from __future__ import annotations

import posixpath
import re
from typing import Dict, Optional
from urllib.parse import urldefrag, urljoin, urlparse, urlunparse

from .models import AssetCategory

_REJECTED_PREFIXES = ("#", "javascript:", "mailto:", "tel:", "data:")

EXTENSION_CATEGORIES: Dict[str, AssetCategory] = {}
for _category, _extensions in (
    (AssetCategory.IMAGE, (".jpg", ".jpeg", ".png", ".gif", ".svg", ".webp", ".ico", ".bmp", ".avif")),
    (AssetCategory.VIDEO, (".mp4", ".webm", ".ogg", ".avi", ".mov")),
    (AssetCategory.FONT, (".woff", ".woff2", ".ttf", ".otf", ".eot")),
    (AssetCategory.STYLESHEET, (".css",)),
    (AssetCategory.SCRIPT, (".js", ".mjs")),
    (AssetCategory.AUDIO, (".mp3", ".wav", ".m4a", ".aac", ".flac")),
    (AssetCategory.DOCUMENT, (".pdf", ".doc", ".docx", ".xls", ".xlsx", ".ppt", ".pptx", ".zip")),
):
    for _ext in _extensions:
        EXTENSION_CATEGORIES.setdefault(_ext, _category)

DOCUMENT_EXTENSIONS = tuple(
    ext for ext, cat in EXTENSION_CATEGORIES.items() if cat is AssetCategory.DOCUMENT
)
FONT_MARKERS = (".woff", ".ttf", ".otf", ".eot")

_IMAGE_PATH_MARKERS = ("/image", "/img", "/photo", "/picture")
_IMAGE_EXT_QUERY = re.compile(r"\.(jpe?g|png|gif|webp|svg|ico|bmp|avif)\?", re.IGNORECASE)


def resolve(raw: str, base: str) -> Optional[str]:
    """Resolve ``raw`` against ``base`` into an absolute, fragment-free URL.

    Returns None for fragment-only, ``javascript:``, ``mailto:``, ``tel:``
    and ``data:`` references, and for anything that does not end up as an
    http(s) URL.
    """
    if not raw:
        return None
    candidate = raw.strip()
    if not candidate or candidate.lower().startswith(_REJECTED_PREFIXES):
        return None
    try:
        absolute = urljoin(base, candidate)
        parsed = urlparse(absolute)
    except ValueError:
        return None
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        return None
    if not parsed.path:
        # an empty path and "/" name the same resource
        absolute = urlunparse(parsed._replace(path="/"))
    return urldefrag(absolute)[0]


def origin(url: str) -> str:
    parsed = urlparse(url)
    return f"{parsed.scheme}://{parsed.netloc}"


def same_host(url: str, other: str) -> bool:
    return urlparse(url).netloc.lower() == urlparse(other).netloc.lower()


def path_extension(url: str) -> str:
    """Lowercased extension of the URL path, ignoring query and fragment."""
    path = urlparse(url).path
    return posixpath.splitext(path)[1].lower()


def looks_like_image_endpoint(url: str) -> bool:
    """Heuristic match for extension-less image URLs (resizers, CDNs)."""
    lowered = url.lower()
    if any(marker in lowered for marker in _IMAGE_PATH_MARKERS):
        return True
    if "cdn" in lowered and ("?" in lowered or "=" in lowered):
        return True
    return bool(_IMAGE_EXT_QUERY.search(lowered))


def classify(url: str) -> AssetCategory:
    """Classify a URL by extension first, then by image-endpoint heuristics."""
    category = EXTENSION_CATEGORIES.get(path_extension(url))
    if category is not None:
        return category
    if looks_like_image_endpoint(url):
        return AssetCategory.IMAGE
    return AssetCategory.OTHER


def is_valid_asset_url(url: str) -> bool:
    """Pre-download gate: known asset extension or an image-endpoint pattern."""
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        return False
    if path_extension(url) in EXTENSION_CATEGORIES:
        return True
    return looks_like_image_endpoint(url)
