"""Asset reference extraction from rendered markup and stylesheets."""

from __future__ import annotations

import logging
import re
from typing import Dict, Iterable, List, Optional, Sequence

import requests
from bs4 import BeautifulSoup
from bs4.element import Tag

from .config import CrawlConfig
from .generation import SiteAdvisor
from .models import AssetCategory, AssetReference
from .urls import DOCUMENT_EXTENSIONS, FONT_MARKERS, path_extension, resolve
from .utils import fetch_text

logger = logging.getLogger("mlx_harvest.extractor")

LAZY_IMAGE_ATTRIBUTES = (
    "src",
    "data-src",
    "data-lazy-src",
    "data-original",
    "data-lazy",
    "data-image",
    "data-bg",
)
SRCSET_ATTRIBUTES = ("srcset", "data-srcset")
VIDEO_HOSTS = ("youtube.com", "youtube-nocookie.com", "youtu.be", "vimeo.com", "wistia")

CSS_URL_PATTERN = re.compile(r"url\(\s*['\"]?([^'\")\s]+)['\"]?\s*\)", re.IGNORECASE)
FONT_FACE_PATTERN = re.compile(r"@font-face\s*{[^}]*}", re.IGNORECASE)

_SUGGESTION_CATEGORIES = {
    "videos": AssetCategory.VIDEO,
    "fonts": AssetCategory.FONT,
    "audio": AssetCategory.AUDIO,
}


def css_urls(text: str) -> List[str]:
    return [m for m in CSS_URL_PATTERN.findall(text or "") if not m.startswith("data:")]


def parse_srcset(value: str) -> List[str]:
    """URL component of every candidate in a srcset list."""
    urls = []
    for candidate in value.split(","):
        parts = candidate.strip().split()
        if parts and not parts[0].startswith("data:"):
            urls.append(parts[0])
    return urls


def font_urls_from_css(css: str, stylesheet_url: str) -> List[str]:
    """Absolute font URLs declared in the @font-face blocks of a stylesheet."""
    found = []
    for block in FONT_FACE_PATTERN.findall(css or ""):
        for raw in css_urls(block):
            if not any(marker in raw.lower() for marker in FONT_MARKERS):
                continue
            url = resolve(raw, stylesheet_url)
            if url:
                found.append(url)
    return found


def _in_media_element(tag: Tag) -> bool:
    return tag.name == "source" and tag.parent is not None and tag.parent.name in ("video", "audio")


def scan_markup(markup: str) -> List[AssetReference]:
    """Every asset reference visible in static markup, in document order."""
    soup = BeautifulSoup(markup, "html.parser")
    refs: List[AssetReference] = []

    def add(raw: Optional[str], category: AssetCategory) -> None:
        if raw and raw.strip() and not raw.strip().startswith("data:"):
            refs.append(AssetReference(raw.strip(), category))

    for tag in soup.find_all(["img", "source"]):
        if _in_media_element(tag):
            continue
        for attr in LAZY_IMAGE_ATTRIBUTES:
            add(tag.get(attr), AssetCategory.IMAGE)
        for attr in SRCSET_ATTRIBUTES:
            if tag.get(attr):
                for url in parse_srcset(tag[attr]):
                    add(url, AssetCategory.IMAGE)

    for tag in soup.find_all(attrs={"data-bg": True}):
        if tag.name not in ("img", "source"):
            add(tag["data-bg"], AssetCategory.IMAGE)

    for tag in soup.find_all(style=re.compile("background", re.IGNORECASE)):
        for url in css_urls(tag["style"]):
            add(url, AssetCategory.IMAGE)

    for tag in soup.find_all("video"):
        add(tag.get("src"), AssetCategory.VIDEO)
        for source in tag.find_all("source"):
            add(source.get("src"), AssetCategory.VIDEO)
    for tag in soup.find_all(["iframe", "embed"], src=True):
        if any(host in tag["src"].lower() for host in VIDEO_HOSTS):
            add(tag["src"], AssetCategory.VIDEO)

    for tag in soup.find_all("audio"):
        add(tag.get("src"), AssetCategory.AUDIO)
        for source in tag.find_all("source"):
            add(source.get("src"), AssetCategory.AUDIO)

    for tag in soup.find_all("link", href=True):
        rel = [value.lower() for value in (tag.get("rel") or [])]
        if "stylesheet" in rel:
            add(tag["href"], AssetCategory.STYLESHEET)
        if "fonts.googleapis.com" in tag["href"]:
            add(tag["href"], AssetCategory.FONT)

    for tag in soup.find_all("script", src=True):
        add(tag["src"], AssetCategory.SCRIPT)

    for tag in soup.find_all("a", href=True):
        if path_extension(tag["href"]) in DOCUMENT_EXTENSIONS:
            add(tag["href"], AssetCategory.DOCUMENT)

    return refs


def dedupe_references(refs: Iterable[AssetReference]) -> List[AssetReference]:
    unique: Dict[str, AssetReference] = {}
    for ref in refs:
        unique.setdefault(ref.raw, ref)
    return list(unique.values())


class AssetExtractor:
    """Collects asset references for one rendered page."""

    def __init__(
        self,
        session: requests.Session,
        config: CrawlConfig,
        advisor: Optional[SiteAdvisor] = None,
    ) -> None:
        self.session = session
        self.config = config
        self.advisor = advisor

    async def stylesheet_fonts(
        self, stylesheets: Sequence[AssetReference], page_url: str
    ) -> List[AssetReference]:
        fonts: List[AssetReference] = []
        for ref in stylesheets[: self.config.max_stylesheets]:
            stylesheet_url = resolve(ref.raw, page_url)
            if not stylesheet_url:
                continue
            css = await fetch_text(
                self.session,
                stylesheet_url,
                timeout=self.config.stylesheet_timeout,
                headers={"User-Agent": self.config.user_agent, "Referer": page_url},
            )
            if css is None:
                continue
            for url in font_urls_from_css(css, stylesheet_url):
                fonts.append(AssetReference(url, AssetCategory.FONT, page_url))
        return fonts

    async def suggested_assets(self, markup: str, page_url: str) -> List[AssetReference]:
        if self.advisor is None or not self.advisor.enabled:
            return []
        suggestions = await self.advisor.suggest_assets(markup)
        return [
            AssetReference(raw, _SUGGESTION_CATEGORIES[key], page_url)
            for key, items in suggestions.items()
            if key in _SUGGESTION_CATEGORIES
            for raw in items
        ]

    async def extract(
        self,
        markup: str,
        page_url: str,
        computed_backgrounds: Iterable[str] = (),
    ) -> List[AssetReference]:
        """Return deduplicated references, each bound to ``page_url``."""
        refs = [
            AssetReference(ref.raw, ref.category, page_url) for ref in scan_markup(markup)
        ]
        stylesheets = [ref for ref in refs if ref.category is AssetCategory.STYLESHEET]
        refs.extend(await self.stylesheet_fonts(stylesheets, page_url))
        refs.extend(
            AssetReference(url, AssetCategory.IMAGE, page_url)
            for url in computed_backgrounds
            if url and not url.startswith("data:")
        )
        refs.extend(await self.suggested_assets(markup, page_url))
        unique = dedupe_references(refs)
        logger.debug(
            "Extracted %d asset reference(s) from %s",
            len(unique),
            page_url,
            extra={"category": "Assets"},
        )
        return unique
