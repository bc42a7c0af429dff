"""MCP server exposing the harvest pipeline as a tool."""

from __future__ import annotations

import json
import logging
from pathlib import Path

from mcp.server.fastmcp import FastMCP

from .config import CrawlConfig
from .crawler import Harvester

logger = logging.getLogger("mlx_harvest.mcp")
logger.setLevel(logging.ERROR)

mcp = FastMCP(name="mlx-harvest")


@mcp.tool()
async def harvest(
    url: str,
    output: str = "output",
    budget: int = 10,
) -> str:
    """Crawl a site and download its assets; returns the job manifest as JSON."""

    config = CrawlConfig(
        output_root=Path(output).expanduser().resolve(),
        crawl_budget=budget,
        use_suggestions=False,
    )
    result = await Harvester(config).harvest(url)
    if result.job.error:
        raise RuntimeError(f"Failed to harvest {url}: {result.job.error}")
    return json.dumps(result.to_manifest(), indent=2)


def main() -> None:
    """Entry point for running the MCP server."""
    logging.basicConfig(level=logging.ERROR)
    mcp.run()


if __name__ == "__main__":
    main()
