"""High-level orchestration of one harvest job, from robots.txt to manifest."""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Union

import requests

from .browser import BrowserSession
from .config import CrawlConfig
from .discovery import PageDiscovery
from .downloads import DownloadManager
from .errors import JobCancelled, PageFetchError, PolicyViolation, SeedPageError
from .extractor import AssetExtractor
from .generation import SiteAdvisor, TextGenerator
from .models import AssetReference, Job, JobResult, JobStatus, PageRecord, utc_timestamp
from .policy import RobotsGate
from .progress import ProgressReporter, bind_job
from .urls import resolve

logger = logging.getLogger("mlx_harvest")

Converter = Callable[[JobResult], Union[None, Awaitable[None]]]
SessionFactory = Callable[[CrawlConfig], BrowserSession]

# Progress checkpoints per stage.
ANALYZING_PROGRESS = 5
DISCOVERING_PROGRESS = 10
SCRAPING_PROGRESS = 20
DOWNLOADING_PROGRESS = 60
CONVERTING_PROGRESS = 90
BUILDING_PROGRESS = 95


@dataclass
class JobContext:
    """Mutable state owned by exactly one running job."""

    job: Job
    job_dir: Path
    http: requests.Session
    cancelled: asyncio.Event = field(default_factory=asyncio.Event)
    visited: Set[str] = field(default_factory=set)
    pages: List[PageRecord] = field(default_factory=list)
    browser: Optional[BrowserSession] = None

    def check_cancelled(self) -> None:
        if self.cancelled.is_set():
            raise JobCancelled("Job cancelled")


class Harvester:
    """Runs harvest jobs; safe to share between concurrent jobs."""

    def __init__(
        self,
        config: CrawlConfig,
        reporter: Optional[ProgressReporter] = None,
        generator: Optional[TextGenerator] = None,
        session_factory: SessionFactory = BrowserSession,
        http_factory: Callable[[], requests.Session] = requests.Session,
        converters: Optional[List[Converter]] = None,
    ) -> None:
        self.config = config
        self.reporter = reporter or ProgressReporter()
        self.advisor = SiteAdvisor(
            generator if config.use_suggestions else None,
            discovery_sample_chars=config.discovery_sample_chars,
            asset_sample_chars=config.asset_sample_chars,
        )
        self.session_factory = session_factory
        self.http_factory = http_factory
        self.converters = list(converters or [])
        self._running: Dict[str, JobContext] = {}

    def submit(self, url: str) -> Job:
        """Create a queued job for ``url`` and publish its first state."""
        seed = resolve(url, url)
        if seed is None:
            raise ValueError(f"Invalid URL: {url}")
        job = Job(seed_url=seed)
        self.reporter.report(job.id, job.status, job.progress)
        return job

    def cancel(self, job_id: str) -> bool:
        ctx = self._running.get(job_id)
        if ctx is None:
            return False
        ctx.cancelled.set()
        return True

    async def harvest(self, url: str) -> JobResult:
        return await self.run(self.submit(url))

    def _update(self, ctx: JobContext, status: JobStatus, progress: int, **metadata: Any) -> None:
        ctx.job.advance(status, progress)
        self.reporter.report(ctx.job.id, ctx.job.status, ctx.job.progress, metadata or None)

    async def run(self, job: Job) -> JobResult:
        """Execute ``job`` to a terminal state and return whatever it produced."""
        ctx = JobContext(
            job=job,
            job_dir=self.config.output_root / job.id,
            http=self.http_factory(),
        )
        result = JobResult(job=job)
        self._running[job.id] = ctx
        with bind_job(job.id), self.reporter.capture_logs():
            try:
                await self._execute(ctx, result)
            except asyncio.CancelledError:
                self._fail(ctx, "Job cancelled")
                raise
            except Exception as exc:  # pylint: disable=broad-except
                logger.exception("Scraping failed", extra={"category": "Error"})
                self._fail(ctx, str(exc))
            finally:
                result.pages = list(ctx.pages)
                self._running.pop(job.id, None)
                ctx.http.close()
        return result

    def _fail(self, ctx: JobContext, message: str) -> None:
        if ctx.job.status.is_terminal:
            return
        ctx.job.fail(message)
        self.reporter.report(ctx.job.id, ctx.job.status, ctx.job.progress, {"error": message})

    async def _execute(self, ctx: JobContext, result: JobResult) -> None:
        job = ctx.job
        logger.info("Checking robots.txt...", extra={"category": "Setup"})
        gate = RobotsGate(ctx.http, self.config)
        if not await gate.is_allowed(job.seed_url):
            raise PolicyViolation("Scraping not allowed by robots.txt")
        logger.info("Robots.txt check passed", extra={"category": "Setup"})
        ctx.check_cancelled()

        async with self.session_factory(self.config) as browser:
            ctx.browser = browser
            try:
                await self._crawl(ctx, result)
            finally:
                ctx.browser = None

        result.pages = list(ctx.pages)
        self._save_pages(ctx)
        self._summarize(ctx, result)
        self._update(ctx, JobStatus.CONVERTING, CONVERTING_PROGRESS, **self._counts(ctx, result))
        for converter in self.converters:
            ctx.check_cancelled()
            outcome = converter(result)
            if inspect.isawaitable(outcome):
                await outcome

        self._update(ctx, JobStatus.BUILDING, BUILDING_PROGRESS)
        self._write_manifest(ctx, result)
        self._update(ctx, JobStatus.COMPLETED, 100, **self._counts(ctx, result))
        logger.info(
            "Scraping complete: %d assets downloaded from %d pages",
            len(result.assets),
            len(ctx.pages),
            extra={"category": "Complete"},
        )

    async def _crawl(self, ctx: JobContext, result: JobResult) -> None:
        job = ctx.job
        extractor = AssetExtractor(ctx.http, self.config, self.advisor)

        self._update(ctx, JobStatus.ANALYZING, ANALYZING_PROGRESS)
        if self.advisor.enabled:
            logger.info("Starting pre-scrape analysis...", extra={"category": "AI"})
            analysis = await self.advisor.analyze_site(job.seed_url)
            if analysis:
                job.metadata["analysis"] = analysis
        ctx.check_cancelled()

        self._update(ctx, JobStatus.DISCOVERING, DISCOVERING_PROGRESS)
        logger.info("Discovering pages...", extra={"category": "Discovery"})
        try:
            seed = await self._scrape_page(ctx, extractor, job.seed_url)
        except PageFetchError as exc:
            raise SeedPageError(f"Failed to scrape main page: {exc}") from exc
        job.metadata["title"] = seed.title

        discovery = PageDiscovery(ctx.http, self.config, self.advisor)
        frontier = await discovery.discover(job.seed_url, seed.markup)
        job.metadata["pages_discovered"] = len(frontier)

        self._update(ctx, JobStatus.SCRAPING, SCRAPING_PROGRESS)
        for index, page_url in enumerate(frontier[1:], start=1):
            ctx.check_cancelled()
            if page_url not in ctx.visited:
                try:
                    await self._scrape_page(ctx, extractor, page_url)
                except PageFetchError as exc:
                    logger.error(str(exc), extra={"category": "Scraping"})
            progress = SCRAPING_PROGRESS + (index * 40) // len(frontier)
            self._update(ctx, JobStatus.SCRAPING, progress)

        ctx.check_cancelled()
        self._update(ctx, JobStatus.DOWNLOADING, DOWNLOADING_PROGRESS)
        logger.info("Downloading assets...", extra={"category": "Assets"})
        references: List[AssetReference] = [
            ref for page in ctx.pages for ref in page.references
        ]
        job.metadata["assets_found"] = len(references)

        def on_progress(done: int, total: int) -> None:
            progress = DOWNLOADING_PROGRESS + (done * 30) // max(total, 1)
            self._update(
                ctx,
                JobStatus.DOWNLOADING,
                progress,
                pages_processed=len(ctx.pages),
                assets_attempted=done,
                assets_total=total,
            )

        manager = DownloadManager(
            ctx.http,
            self.config,
            asset_root=ctx.job_dir / "scraped",
            referer=job.seed_url,
            fallback=ctx.browser,
            on_progress=on_progress,
        )
        result.assets = await manager.download_all(references, job.seed_url)

    async def _scrape_page(
        self, ctx: JobContext, extractor: AssetExtractor, url: str
    ) -> PageRecord:
        ctx.visited.add(url)
        snapshot = await ctx.browser.fetch_page(url)
        final_url = resolve(snapshot.final_url, url) or url
        ctx.visited.add(final_url)
        references = await extractor.extract(
            snapshot.markup, final_url, snapshot.computed_backgrounds
        )
        record = PageRecord(
            url=final_url,
            markup=snapshot.markup,
            title=snapshot.title,
            references=tuple(references),
        )
        ctx.pages.append(record)
        logger.info(
            "Scraped %s",
            final_url,
            extra={
                "category": "Scraping",
                "details": {"title": snapshot.title, "assets_found": len(references)},
            },
        )
        return record

    def _save_pages(self, ctx: JobContext) -> None:
        html_dir = ctx.job_dir / "scraped" / "html"
        html_dir.mkdir(parents=True, exist_ok=True)
        for index, page in enumerate(ctx.pages):
            filename = "index.html" if index == 0 else f"page-{index}.html"
            (html_dir / filename).write_text(page.markup, encoding="utf-8")

    def _summarize(self, ctx: JobContext, result: JobResult) -> None:
        job = ctx.job
        job.assets = {
            bucket: [asset.filename for asset in assets]
            for bucket, assets in result.assets_by_bucket().items()
        }
        job.metadata.update(
            total_pages=len(ctx.pages),
            total_assets=len(result.assets),
            asset_counts={bucket: len(names) for bucket, names in job.assets.items()},
            scraped_at=utc_timestamp(),
        )

    @staticmethod
    def _counts(ctx: JobContext, result: JobResult) -> Dict[str, Any]:
        return {
            "total_pages": len(ctx.pages),
            "total_assets": len(result.assets),
            "title": ctx.job.metadata.get("title", ""),
        }

    def _write_manifest(self, ctx: JobContext, result: JobResult) -> None:
        manifest = result.to_manifest()
        for index, page in enumerate(manifest["pages"]):
            page["html"] = "index.html" if index == 0 else f"page-{index}.html"
        path = ctx.job_dir / "manifest.json"
        path.write_text(json.dumps(manifest, indent=2), encoding="utf-8")
        logger.info("Saved manifest to %s", path, extra={"category": "Complete"})
