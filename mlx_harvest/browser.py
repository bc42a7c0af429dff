"""Playwright browser session shared by the pages of one job."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, List, Optional

from playwright.async_api import (
    Browser,
    Page,
    Playwright,
    TimeoutError as PlaywrightTimeoutError,
    async_playwright,
)

from .config import CrawlConfig
from .errors import PageFetchError
from .models import PageSnapshot

logger = logging.getLogger("mlx_harvest.browser")

SCROLL_FOR_LAZY_LOAD_JS = """
async ([step, interval]) => {
    await new Promise((resolve) => {
        let total = 0;
        const timer = setInterval(() => {
            window.scrollBy(0, step);
            total += step;
            if (total >= document.body.scrollHeight) {
                clearInterval(timer);
                resolve();
            }
        }, interval);
    });
}
"""

COMPUTED_BACKGROUNDS_JS = """
() => {
    const urls = [];
    const pattern = /url\\(['"]?([^'")\\s]+)['"]?\\)/g;
    document.querySelectorAll('*').forEach((el) => {
        const bg = window.getComputedStyle(el).backgroundImage;
        if (!bg || bg === 'none') return;
        for (const match of bg.matchAll(pattern)) {
            urls.push(match[1]);
        }
    });
    return urls;
}
"""


class BrowserSession:
    """One Chromium instance per job; every page gets its own context.

    Use as an async context manager so the browser is closed on every exit
    path of the job.
    """

    def __init__(self, config: CrawlConfig) -> None:
        self.config = config
        self._playwright: Optional[Playwright] = None
        self._browser: Optional[Browser] = None

    async def __aenter__(self) -> "BrowserSession":
        await self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def start(self) -> None:
        if self._browser is not None:
            return
        logger.info("Launching browser (headless=%s)", self.config.headless, extra={"category": "Setup"})
        self._playwright = await async_playwright().start()
        try:
            self._browser = await self._playwright.chromium.launch(
                headless=self.config.headless,
                args=["--no-sandbox", "--disable-setuid-sandbox", "--disable-dev-shm-usage"],
            )
        except Exception:
            await self._playwright.stop()
            self._playwright = None
            raise

    async def close(self) -> None:
        if self._browser is not None:
            try:
                await self._browser.close()
            except Exception as exc:  # noqa: BLE001 - already shutting down
                logger.warning("Error closing browser: %s", exc)
            self._browser = None
        if self._playwright is not None:
            await self._playwright.stop()
            self._playwright = None

    @asynccontextmanager
    async def open_page(self) -> AsyncIterator[Page]:
        """Yield a page in a fresh browser context, closing it on exit."""
        if self._browser is None:
            raise RuntimeError("Browser session has not been started")
        context = await self._browser.new_context(
            viewport={
                "width": self.config.viewport_width,
                "height": self.config.viewport_height,
            },
            user_agent=self.config.user_agent,
            ignore_https_errors=True,
        )
        try:
            page = await context.new_page()
            yield page
        finally:
            try:
                await context.close()
            except Exception as exc:  # noqa: BLE001 - context may already be gone
                logger.warning("Error closing browser context: %s", exc)

    async def _render(self, url: str) -> PageSnapshot:
        async with self.open_page() as page:
            page.set_default_navigation_timeout(self.config.navigation_timeout * 1000)
            await page.goto(url, wait_until="networkidle")
            # infinite-scroll pages never reach the bottom
            await asyncio.wait_for(
                page.evaluate(
                    SCROLL_FOR_LAZY_LOAD_JS,
                    [self.config.scroll_step, self.config.scroll_interval_ms],
                ),
                timeout=self.config.navigation_timeout,
            )
            markup = await page.content()
            title = await page.title()
            backgrounds: List[str] = await page.evaluate(COMPUTED_BACKGROUNDS_JS)
            return PageSnapshot(
                final_url=page.url,
                markup=markup,
                title=title,
                computed_backgrounds=tuple(backgrounds or ()),
            )

    async def fetch_page(self, url: str) -> PageSnapshot:
        """Render ``url`` with retries; raises PageFetchError when exhausted."""
        attempts = self.config.page_attempts
        last_error = "unknown error"
        for attempt in range(1, attempts + 1):
            suffix = f" (attempt {attempt})" if attempt > 1 else ""
            logger.info("Scraping page: %s%s", url, suffix, extra={"category": "Scraping"})
            try:
                return await self._render(url)
            except PlaywrightTimeoutError as exc:
                last_error = f"timeout: {exc}"
            except asyncio.TimeoutError:
                last_error = f"timeout: page did not settle within {self.config.navigation_timeout}s"
            except Exception as exc:  # noqa: BLE001 - any navigation failure is retried
                last_error = str(exc)
            if attempt < attempts:
                logger.warning(
                    "Attempt %d failed for %s, retrying...",
                    attempt,
                    url,
                    extra={"category": "Scraping", "details": {"error": last_error}},
                )
                await asyncio.sleep(self.config.page_backoff * attempt)
        raise PageFetchError(url, f"{last_error} (after {attempts} attempts)")

    async def fetch_asset(self, url: str) -> Optional[bytes]:
        """Navigate straight to an asset and return the response body."""
        try:
            async with self.open_page() as page:
                response = await page.goto(
                    url,
                    wait_until="networkidle",
                    timeout=self.config.fallback_timeout * 1000,
                )
                if response is None or not response.ok:
                    return None
                return await response.body()
        except Exception as exc:  # noqa: BLE001 - fallback is best effort
            logger.warning("Browser download failed for %s: %s", url, exc, extra={"category": "Download"})
            return None
