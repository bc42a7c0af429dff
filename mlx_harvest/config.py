"""Configuration objects and constants for the harvester."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

DEFAULT_MODEL_ID = "mlx-community/Qwen2.5-3B-Instruct-4bit"
DEFAULT_CRAWLER_NAME = "MLXHarvestBot"
DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)


@dataclass
class CrawlConfig:
    """Top-level settings that control crawling, downloading and advice."""

    output_root: Path
    crawl_budget: int = 10

    # Page fetching
    navigation_timeout: float = 60.0
    page_attempts: int = 3
    page_backoff: float = 2.0
    scroll_step: int = 100
    scroll_interval_ms: int = 100
    headless: bool = True
    viewport_width: int = 1920
    viewport_height: int = 1080

    # Policy / discovery / extraction
    crawler_name: str = DEFAULT_CRAWLER_NAME
    user_agent: str = DEFAULT_USER_AGENT
    robots_timeout: float = 5.0
    sitemap_timeout: float = 10.0
    stylesheet_timeout: float = 10.0
    max_stylesheets: int = 10
    max_child_sitemaps: int = 5

    # Downloading
    download_timeout: float = 30.0
    download_attempts: int = 3
    download_backoff: float = 1.0
    download_delay: float = 0.1
    download_concurrency: int = 1
    fallback_timeout: float = 30.0
    verify_content: bool = False

    # Text generation advisor
    use_suggestions: bool = True
    model_id: str = DEFAULT_MODEL_ID
    max_tokens: int = 1024
    discovery_sample_chars: int = 3000
    asset_sample_chars: int = 4000

    def __post_init__(self) -> None:
        if self.crawl_budget < 1:
            raise ValueError("crawl_budget must be at least 1")
        if self.download_concurrency < 1:
            raise ValueError("download_concurrency must be at least 1")
        if self.page_attempts < 1 or self.download_attempts < 1:
            raise ValueError("attempt counts must be at least 1")
