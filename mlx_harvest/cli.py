"""Command-line entry point for mlx-harvest."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
import time
from pathlib import Path
from typing import Optional, Sequence

from .config import DEFAULT_MODEL_ID, CrawlConfig
from .crawler import Harvester
from .generation import MLXTextGenerator
from .models import JobStatus
from .progress import ProgressEvent, ProgressReporter

logger = logging.getLogger("mlx_harvest.cli")


def _add_harvest_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("url", help="Seed URL to crawl")
    parser.add_argument(
        "--output",
        default="output",
        type=Path,
        help="Directory where scraped pages, assets and the manifest are written",
    )
    parser.add_argument(
        "--budget",
        type=int,
        default=10,
        help="Maximum number of pages to fetch, including the seed",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=60.0,
        help="Navigation timeout in seconds",
    )
    parser.add_argument(
        "--delay",
        type=float,
        default=0.1,
        help="Seconds to wait after each asset download",
    )
    parser.add_argument(
        "--concurrency",
        type=int,
        default=1,
        help="Maximum number of simultaneous asset downloads",
    )
    parser.add_argument(
        "--retries",
        type=int,
        default=3,
        help="Attempts per asset download and per page navigation",
    )
    parser.add_argument(
        "--verify-content",
        action="store_true",
        help="Reject downloads whose bytes do not match their asset category",
    )
    parser.add_argument(
        "--no-suggestions",
        action="store_true",
        help="Do not ask the MLX model for extra pages and assets",
    )
    parser.add_argument(
        "--model",
        default=DEFAULT_MODEL_ID,
        help="MLX model identifier used for suggestions",
    )
    parser.add_argument(
        "--max-tokens",
        type=int,
        default=1024,
        help="Maximum number of tokens generated per suggestion",
    )
    parser.add_argument(
        "--headful",
        action="store_true",
        help="Show the browser window while crawling",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description=(
            "Crawl a site with Playwright and download every referenced asset "
            "(images, fonts, video, audio, documents, stylesheets, scripts)."
        ),
    )
    _add_harvest_arguments(parser)
    return parser.parse_args(argv)


def build_config(args: argparse.Namespace) -> CrawlConfig:
    return CrawlConfig(
        output_root=Path(args.output).resolve(),
        crawl_budget=args.budget,
        navigation_timeout=args.timeout,
        page_attempts=args.retries,
        download_attempts=args.retries,
        download_delay=args.delay,
        download_concurrency=args.concurrency,
        verify_content=args.verify_content,
        use_suggestions=not args.no_suggestions,
        model_id=args.model,
        max_tokens=args.max_tokens,
        headless=not args.headful,
    )


def _log_progress(event: ProgressEvent) -> None:
    logger.debug("[%s] %s %d%%", event.job_id[:8], event.status.value, event.progress)


def main(argv: Optional[Sequence[str]] = None) -> None:
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        force=True,
    )

    config = build_config(args)
    generator = (
        MLXTextGenerator(config.model_id, config.max_tokens)
        if config.use_suggestions
        else None
    )
    reporter = ProgressReporter()
    reporter.subscribe(_log_progress)
    harvester = Harvester(config, reporter=reporter, generator=generator)

    overall_start = time.perf_counter()
    result = asyncio.run(harvester.harvest(args.url))
    total_elapsed = time.perf_counter() - overall_start

    job = result.job
    if job.status is not JobStatus.COMPLETED:
        logger.error("Job %s failed after %.2fs: %s", job.id, total_elapsed, job.error)
        sys.exit(1)

    logger.info(
        "Finished in %.2fs (%d pages, %d assets) -> %s",
        total_elapsed,
        len(result.pages),
        len(result.assets),
        config.output_root / job.id,
    )
    for bucket, assets in sorted(result.assets_by_bucket().items()):
        logger.info("  %-10s %d", bucket, len(assets))


if __name__ == "__main__":
    main()
