"""Page discovery: sitemap, on-page links and model suggestions."""

from __future__ import annotations

import logging
from typing import Iterable, List, Optional, Tuple

import requests
from bs4 import BeautifulSoup

from .config import CrawlConfig
from .generation import SiteAdvisor
from .urls import origin, resolve, same_host
from .utils import fetch_text

logger = logging.getLogger("mlx_harvest.discovery")


def parse_sitemap(xml: str) -> Tuple[List[str], List[str]]:
    """Return ``(page_locs, child_sitemap_locs)`` from a sitemap document."""
    soup = BeautifulSoup(xml, "html.parser")
    pages = [loc.get_text(strip=True) for loc in soup.select("url > loc")]
    children = [loc.get_text(strip=True) for loc in soup.select("sitemap > loc")]
    return [p for p in pages if p], [c for c in children if c]


def extract_links(html: str, page_url: str) -> List[str]:
    """Same-host, fragment-free absolute URLs of every anchor on the page."""
    soup = BeautifulSoup(html, "html.parser")
    links: List[str] = []
    seen = set()
    for anchor in soup.find_all("a", href=True):
        url = resolve(anchor["href"], page_url)
        if not url or not same_host(url, page_url) or url in seen:
            continue
        seen.add(url)
        links.append(url)
    return links


def merge_frontier(seed_url: str, sources: Iterable[Iterable[str]], budget: int) -> List[str]:
    """Seed first, then every source in order, deduplicated and capped."""
    frontier: List[str] = []
    seen = set()
    for url in (seed_url, *(u for source in sources for u in source)):
        canonical = resolve(url, seed_url)
        if not canonical or canonical in seen:
            continue
        seen.add(canonical)
        frontier.append(canonical)
        if len(frontier) >= budget:
            break
    return frontier


class PageDiscovery:
    """Builds the bounded list of pages one job will fetch."""

    def __init__(
        self,
        session: requests.Session,
        config: CrawlConfig,
        advisor: Optional[SiteAdvisor] = None,
    ) -> None:
        self.session = session
        self.config = config
        self.advisor = advisor

    async def _read_sitemap(self, url: str) -> Optional[str]:
        return await fetch_text(
            self.session,
            url,
            timeout=self.config.sitemap_timeout,
            headers={"User-Agent": self.config.user_agent},
        )

    async def sitemap_pages(self, seed_url: str) -> List[str]:
        site = origin(seed_url)
        sitemap_url = f"{site}/sitemap.xml"
        logger.info("Checking for sitemap at %s", sitemap_url, extra={"category": "Sitemap"})
        body = await self._read_sitemap(sitemap_url)
        if body is None:
            logger.warning("No sitemap found or failed to parse", extra={"category": "Sitemap"})
            return []

        pages, children = parse_sitemap(body)
        for child_url in children[: self.config.max_child_sitemaps]:
            if len(pages) >= self.config.crawl_budget:
                break
            child_body = await self._read_sitemap(child_url)
            if child_body:
                pages.extend(parse_sitemap(child_body)[0])

        pages = [page for page in pages if page.startswith(site)]
        logger.info("Found %d pages in sitemap", len(pages), extra={"category": "Sitemap"})
        return pages

    async def suggested_pages(self, seed_url: str, seed_markup: str) -> List[str]:
        if self.advisor is None or not self.advisor.enabled:
            return []
        logger.info("Asking the model for more pages...", extra={"category": "AI"})
        suggested = []
        for raw in await self.advisor.suggest_pages(seed_url, seed_markup):
            url = resolve(raw, seed_url)
            if url and same_host(url, seed_url):
                suggested.append(url)
        return suggested

    async def discover(self, seed_url: str, seed_markup: str) -> List[str]:
        """Return at most ``crawl_budget`` pages, the seed always first."""
        sitemap = await self.sitemap_pages(seed_url)
        links = extract_links(seed_markup, seed_url)
        suggested = await self.suggested_pages(seed_url, seed_markup)
        frontier = merge_frontier(
            seed_url, (sitemap, links, suggested), self.config.crawl_budget
        )
        for url in frontier[1:]:
            logger.debug("Found page: %s", url, extra={"category": "Page Discovery"})
        logger.info(
            "Found %d pages to scrape", len(frontier), extra={"category": "Discovery"}
        )
        return frontier
