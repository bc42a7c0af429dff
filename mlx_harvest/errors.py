"""Exception types raised by the harvest pipeline."""

from __future__ import annotations


class HarvestError(Exception):
    """Base class for errors that end or affect a harvest job."""


class PolicyViolation(HarvestError):
    """The origin's robots policy does not allow crawling the seed URL."""


class PageFetchError(HarvestError):
    """A page could not be rendered after all attempts."""

    def __init__(self, url: str, message: str):
        super().__init__(f"Failed to scrape {url}: {message}")
        self.url = url


class SeedPageError(HarvestError):
    """The seed page never loaded, so the job has nothing to work with."""


class AssetNotFound(HarvestError):
    """The asset URL answered 404."""


class AssetFetchError(HarvestError):
    """An asset download failed after all attempts."""


class JobCancelled(HarvestError):
    """The job was cancelled by its owner."""


class JobStateError(HarvestError):
    """An illegal job status transition was requested."""
