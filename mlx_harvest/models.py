"""Data models used throughout the harvest pipeline."""

from __future__ import annotations

import datetime as dt
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from .errors import JobStateError


class AssetCategory(str, Enum):
    """Fixed set of asset categories a URL can be classified into."""

    IMAGE = "image"
    VIDEO = "video"
    FONT = "font"
    STYLESHEET = "stylesheet"
    SCRIPT = "script"
    AUDIO = "audio"
    DOCUMENT = "document"
    OTHER = "other"

    @property
    def bucket(self) -> str:
        """Directory / manifest key used for assets of this category."""
        return _BUCKETS[self]

    @property
    def default_extension(self) -> str:
        return _DEFAULT_EXTENSIONS[self]


_BUCKETS = {
    AssetCategory.IMAGE: "images",
    AssetCategory.VIDEO: "videos",
    AssetCategory.FONT: "fonts",
    AssetCategory.STYLESHEET: "css",
    AssetCategory.SCRIPT: "js",
    AssetCategory.AUDIO: "audio",
    AssetCategory.DOCUMENT: "documents",
    AssetCategory.OTHER: "other",
}

_DEFAULT_EXTENSIONS = {
    AssetCategory.IMAGE: ".jpg",
    AssetCategory.VIDEO: ".mp4",
    AssetCategory.FONT: ".woff2",
    AssetCategory.STYLESHEET: ".css",
    AssetCategory.SCRIPT: ".js",
    AssetCategory.AUDIO: ".mp3",
    AssetCategory.DOCUMENT: ".pdf",
    AssetCategory.OTHER: ".bin",
}


class JobStatus(str, Enum):
    """Lifecycle states of a harvest job, in pipeline order."""

    QUEUED = "queued"
    ANALYZING = "analyzing"
    DISCOVERING = "discovering"
    SCRAPING = "scraping"
    DOWNLOADING = "downloading"
    CONVERTING = "converting"
    BUILDING = "building"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


_STATUS_ORDER = [
    JobStatus.QUEUED,
    JobStatus.ANALYZING,
    JobStatus.DISCOVERING,
    JobStatus.SCRAPING,
    JobStatus.DOWNLOADING,
    JobStatus.CONVERTING,
    JobStatus.BUILDING,
    JobStatus.COMPLETED,
]


@dataclass
class Job:
    """One crawl run and its externally visible state."""

    seed_url: str
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    status: JobStatus = JobStatus.QUEUED
    progress: int = 0
    assets: Dict[str, List[str]] = field(default_factory=dict)
    metadata: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None

    def advance(self, status: JobStatus, progress: int) -> None:
        """Move the job forward; progress never decreases."""
        if self.status.is_terminal:
            raise JobStateError(
                f"Job {self.id} is already {self.status.value}; cannot move to {status.value}"
            )
        if status is JobStatus.FAILED:
            self.status = status
            return
        if _STATUS_ORDER.index(status) < _STATUS_ORDER.index(self.status):
            raise JobStateError(
                f"Job {self.id} cannot move back from {self.status.value} to {status.value}"
            )
        self.status = status
        self.progress = max(self.progress, min(100, int(progress)))

    def fail(self, message: str) -> None:
        self.advance(JobStatus.FAILED, self.progress)
        self.error = message


@dataclass(frozen=True)
class PageSnapshot:
    """Result of rendering a single page in the browser."""

    final_url: str
    markup: str
    title: str
    computed_backgrounds: Tuple[str, ...] = ()


@dataclass(frozen=True)
class AssetReference:
    """Raw asset reference found on a page, before resolution."""

    raw: str
    category: AssetCategory
    base_url: Optional[str] = None


@dataclass(frozen=True)
class PageRecord:
    """A successfully fetched page and the asset references found on it."""

    url: str
    markup: str
    title: str
    references: Tuple[AssetReference, ...] = ()


@dataclass
class DownloadedAsset:
    """Asset written to disk by the download manager."""

    url: str
    category: AssetCategory
    filename: str
    size: int
    path: str
    success: bool = True


@dataclass
class JobResult:
    """Everything the downstream packaging stage consumes for one job."""

    job: Job
    pages: List[PageRecord] = field(default_factory=list)
    assets: List[DownloadedAsset] = field(default_factory=list)

    def assets_by_bucket(self) -> Dict[str, List[DownloadedAsset]]:
        grouped: Dict[str, List[DownloadedAsset]] = {}
        for asset in self.assets:
            grouped.setdefault(asset.category.bucket, []).append(asset)
        return grouped

    def to_manifest(self) -> Dict[str, Any]:
        return {
            "job": {
                "id": self.job.id,
                "seed_url": self.job.seed_url,
                "status": self.job.status.value,
                "progress": self.job.progress,
                "metadata": self.job.metadata,
                "error": self.job.error,
            },
            "pages": [
                {
                    "url": page.url,
                    "title": page.title,
                    "references": len(page.references),
                }
                for page in self.pages
            ],
            "assets": {
                bucket: [
                    {
                        "url": asset.url,
                        "filename": asset.filename,
                        "size": asset.size,
                        "path": asset.path,
                    }
                    for asset in items
                ]
                for bucket, items in self.assets_by_bucket().items()
            },
        }


def utc_timestamp() -> str:
    """ISO-8601 UTC timestamp without microseconds."""
    return (
        dt.datetime.now(dt.timezone.utc)
        .replace(microsecond=0)
        .isoformat()
        .replace("+00:00", "Z")
    )
