"""Shared fakes standing in for the network and the browser."""

from pathlib import Path
from typing import Dict, List, Optional, Union

import pytest
import requests

from mlx_harvest.config import CrawlConfig
from mlx_harvest.errors import PageFetchError
from mlx_harvest.models import PageSnapshot


class FakeResponse:
    def __init__(self, status_code: int = 200, content: Union[bytes, str] = b"", headers=None):
        if isinstance(content, str):
            content = content.encode("utf-8")
        self.status_code = status_code
        self.content = content
        self.headers = headers or {}

    @property
    def text(self) -> str:
        return self.content.decode("utf-8")

    @property
    def ok(self) -> bool:
        return self.status_code < 400

    def raise_for_status(self) -> None:
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} Error", response=self)


Route = Union[FakeResponse, Exception, List[Union[FakeResponse, Exception]]]


class FakeSession:
    """Minimal ``requests.Session`` replacement keyed by exact URL.

    A route may be a list, in which case successive calls consume it and the
    last entry repeats. Unknown URLs answer 404.
    """

    def __init__(self, routes: Optional[Dict[str, Route]] = None):
        self.routes: Dict[str, Route] = dict(routes or {})
        self.calls: List[str] = []
        self.closed = False

    def get(self, url, **kwargs):
        self.calls.append(url)
        route = self.routes.get(url, FakeResponse(404))
        if isinstance(route, list):
            route = route.pop(0) if len(route) > 1 else route[0]
        if isinstance(route, Exception):
            raise route
        return route

    def count(self, url: str) -> int:
        return self.calls.count(url)

    def close(self) -> None:
        self.closed = True


class FakeBrowser:
    """Stands in for BrowserSession: canned snapshots per URL."""

    def __init__(self, pages: Optional[Dict[str, PageSnapshot]] = None, assets=None):
        self.pages = dict(pages or {})
        self.assets: Dict[str, bytes] = dict(assets or {})
        self.fetched: List[str] = []
        self.asset_requests: List[str] = []
        self.entered = False
        self.exited = False

    async def __aenter__(self):
        self.entered = True
        return self

    async def __aexit__(self, *exc_info):
        self.exited = True

    async def fetch_page(self, url: str) -> PageSnapshot:
        self.fetched.append(url)
        snapshot = self.pages.get(url)
        if snapshot is None:
            raise PageFetchError(url, "net::ERR_NAME_NOT_RESOLVED (after 3 attempts)")
        return snapshot

    async def fetch_asset(self, url: str) -> Optional[bytes]:
        self.asset_requests.append(url)
        return self.assets.get(url)


JPEG_BYTES = b"\xff\xd8\xff\xe0" + b"\x00" * 64
PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00" * 64


@pytest.fixture
def config(tmp_path: Path) -> CrawlConfig:
    return CrawlConfig(
        output_root=tmp_path,
        page_backoff=0,
        download_backoff=0,
        download_delay=0,
        use_suggestions=False,
    )


@pytest.fixture
def session() -> FakeSession:
    return FakeSession()
