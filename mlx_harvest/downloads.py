"""Asset downloading with retries, pacing and a browser fallback."""

from __future__ import annotations

import asyncio
import logging
import posixpath
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, List, Optional, Protocol, Sequence, Set
from urllib.parse import parse_qs, unquote, urlparse

import requests
from filetype import guess

from .config import CrawlConfig
from .errors import AssetFetchError, AssetNotFound
from .models import AssetCategory, AssetReference, DownloadedAsset
from .urls import classify, is_valid_asset_url, resolve
from .utils import sanitize_filename, short_hash

logger = logging.getLogger("mlx_harvest.downloads")

GENERIC_NAMES = {"image", "img", "photo", "picture", "file", "download", "index"}

_EXPECTED_MIME_PREFIXES = {
    AssetCategory.IMAGE: ("image/",),
    AssetCategory.VIDEO: ("video/",),
    AssetCategory.AUDIO: ("audio/", "video/"),
    AssetCategory.FONT: ("font/", "application/font"),
}

ProgressHook = Callable[[int, int], None]


class AssetFallback(Protocol):
    async def fetch_asset(self, url: str) -> Optional[bytes]:
        ...


def derive_filename(url: str, category: AssetCategory) -> str:
    """File name for an asset URL, synthesized from a hash when degenerate."""
    parsed = urlparse(url)
    name = posixpath.basename(unquote(parsed.path))

    if "/_next/image" in parsed.path:
        inner = parse_qs(parsed.query).get("url")
        if inner and inner[0]:
            name = posixpath.basename(urlparse(unquote(inner[0])).path)

    # a stem made only of replaced characters (e.g. non-ASCII) is degenerate
    stem = sanitize_filename(posixpath.splitext(name)[0]).strip("_")
    name = sanitize_filename(name)
    extension = posixpath.splitext(name)[1]
    if len(name) < 3 or name.lower() in GENERIC_NAMES or not stem:
        return f"{category.bucket}_{short_hash(url)}{category.default_extension}"
    if not extension:
        name += category.default_extension
    return name


class FilenameAllocator:
    """Hands out filenames that are unique across one job."""

    def __init__(self) -> None:
        self._used: Set[str] = set()

    def allocate(self, url: str, category: AssetCategory) -> str:
        name = derive_filename(url, category)
        if name.lower() in self._used:
            stem, extension = posixpath.splitext(name)
            name = f"{stem}-{short_hash(url, 8)}{extension}"
            counter = 2
            base_stem = posixpath.splitext(name)[0]
            while name.lower() in self._used:
                name = f"{base_stem}-{counter}{extension}"
                counter += 1
        self._used.add(name.lower())
        return name


@dataclass
class PlannedDownload:
    url: str
    category: AssetCategory
    filename: str
    destination: Path


def content_matches(category: AssetCategory, data: bytes) -> bool:
    """Whether the leading bytes look like the category we expect."""
    prefixes = _EXPECTED_MIME_PREFIXES.get(category)
    if not prefixes:
        return True
    kind = guess(data)
    if kind is None:
        # SVG and some fonts carry no magic number
        head = data.lstrip()[:16].lower()
        if head.startswith((b"<!doctype", b"<html")):
            return False
        return category in (AssetCategory.IMAGE, AssetCategory.FONT)
    return kind.mime.startswith(prefixes)


class DownloadManager:
    """Downloads the assets of one job into ``asset_root/<bucket>/``."""

    def __init__(
        self,
        session: requests.Session,
        config: CrawlConfig,
        asset_root: Path,
        referer: str,
        fallback: Optional[AssetFallback] = None,
        on_progress: Optional[ProgressHook] = None,
    ) -> None:
        self.session = session
        self.config = config
        self.asset_root = asset_root
        self.referer = referer
        self.fallback = fallback
        self.on_progress = on_progress
        self._filenames = FilenameAllocator()

    @property
    def headers(self) -> Dict[str, str]:
        return {
            "User-Agent": self.config.user_agent,
            "Accept": "image/webp,image/apng,image/*,*/*;q=0.8",
            "Accept-Language": "en-US,en;q=0.9",
            "Referer": self.referer,
        }

    async def fetch_bytes(self, url: str) -> bytes:
        """GET ``url`` with bounded retries.

        Raises AssetNotFound on a 404 (never retried) and AssetFetchError once
        every attempt has failed.
        """
        attempts = self.config.download_attempts
        last_error = "unknown error"
        for attempt in range(1, attempts + 1):
            try:
                resp = await asyncio.to_thread(
                    self.session.get,
                    url,
                    headers=self.headers,
                    timeout=self.config.download_timeout,
                )
            except requests.RequestException as exc:
                last_error = str(exc)
            else:
                if resp.status_code == 404:
                    raise AssetNotFound(f"404 Not Found: {url}")
                if not 200 <= resp.status_code < 300:
                    last_error = f"HTTP {resp.status_code}"
                elif not resp.content:
                    last_error = "empty response"
                    logger.warning("Empty response for %s, retrying...", url, extra={"category": "Download"})
                else:
                    return resp.content
            if attempt < attempts:
                await asyncio.sleep(self.config.download_backoff * attempt)
        raise AssetFetchError(f"{last_error} (after {attempts} attempts)")

    def _write(self, destination: Path, data: bytes) -> None:
        destination.parent.mkdir(parents=True, exist_ok=True)
        destination.write_bytes(data)

    async def download(self, url: str, destination: Path) -> bool:
        """Fetch one URL to ``destination``; True when bytes were written."""
        try:
            data = await self.fetch_bytes(url)
            self._write(destination, data)
        except (AssetNotFound, AssetFetchError, OSError) as exc:
            logger.debug("Download of %s failed: %s", url, exc)
            return False
        return True

    def plan(self, references: Sequence[AssetReference], base_url: str) -> List[PlannedDownload]:
        """Resolve, validate and deduplicate references into download jobs."""
        planned: List[PlannedDownload] = []
        seen: Set[str] = set()
        for ref in references:
            url = resolve(ref.raw, ref.base_url or base_url)
            if not url or url in seen:
                continue
            if not is_valid_asset_url(url):
                logger.debug("Skipping non-asset URL %s", url)
                continue
            seen.add(url)
            category = classify(url)
            filename = self._filenames.allocate(url, category)
            planned.append(
                PlannedDownload(
                    url=url,
                    category=category,
                    filename=filename,
                    destination=self.asset_root / category.bucket / filename,
                )
            )
        return planned

    async def _acquire(self, item: PlannedDownload) -> Optional[bytes]:
        error = ""
        data: Optional[bytes] = None
        try:
            data = await self.fetch_bytes(item.url)
        except (AssetNotFound, AssetFetchError) as exc:
            error = str(exc)

        if data is None and item.category is AssetCategory.IMAGE and self.fallback is not None:
            logger.info("Retrying image with browser: %s", item.filename, extra={"category": "Download"})
            data = await self.fallback.fetch_asset(item.url)
            if not data:
                error = f"{error}; browser fallback failed"
                data = None

        if data is not None and self.config.verify_content and not content_matches(item.category, data):
            error = f"content does not look like {item.category.value}"
            data = None

        if data is None:
            logger.warning(
                "Failed to download %s: %s",
                item.category.value,
                item.url,
                extra={"category": "Assets", "details": {"reason": error}},
            )
        return data

    async def _process(self, item: PlannedDownload) -> Optional[DownloadedAsset]:
        logger.debug("Found %s: %s", item.category.value, item.url, extra={"category": "Assets"})
        data = await self._acquire(item)
        if data is None:
            return None
        try:
            self._write(item.destination, data)
        except OSError as exc:
            logger.warning("Failed to write %s: %s", item.destination, exc, extra={"category": "Assets"})
            return None
        logger.info(
            "Downloaded %s: %s", item.category.value, item.filename, extra={"category": "Assets"}
        )
        return DownloadedAsset(
            url=item.url,
            category=item.category,
            filename=item.filename,
            size=len(data),
            path=str(Path(item.category.bucket) / item.filename),
        )

    async def download_all(
        self, references: Sequence[AssetReference], base_url: str
    ) -> List[DownloadedAsset]:
        """Download every valid, distinct reference; failures are left out."""
        planned = self.plan(references, base_url)
        total = len(planned)
        logger.info("Starting download of %d assets", total, extra={"category": "Assets"})
        results: List[Optional[DownloadedAsset]] = [None] * total
        semaphore = asyncio.Semaphore(self.config.download_concurrency)
        done = 0

        async def worker(index: int, item: PlannedDownload) -> None:
            nonlocal done
            async with semaphore:
                try:
                    results[index] = await self._process(item)
                finally:
                    done += 1
                    if self.on_progress is not None:
                        self.on_progress(done, total)
                    await asyncio.sleep(self.config.download_delay)

        if self.config.download_concurrency == 1:
            for index, item in enumerate(planned):
                await worker(index, item)
        else:
            await asyncio.gather(*(worker(i, item) for i, item in enumerate(planned)))
        return [asset for asset in results if asset is not None]
