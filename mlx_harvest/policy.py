"""robots.txt gate consulted before any page is fetched."""

from __future__ import annotations

import logging
from typing import Dict, Optional
from urllib.robotparser import RobotFileParser

import requests

from .config import CrawlConfig
from .urls import origin
from .utils import fetch_text

logger = logging.getLogger("mlx_harvest.policy")


def parse_robots(robots_url: str, body: str) -> RobotFileParser:
    parser = RobotFileParser(robots_url)
    parser.parse(body.splitlines())
    return parser


class RobotsGate:
    """Answers whether the crawler identity may fetch a URL.

    Policies are cached per origin for the lifetime of the gate, which is one
    job. A missing or unreachable robots.txt allows everything.
    """

    def __init__(self, session: requests.Session, config: CrawlConfig) -> None:
        self.session = session
        self.config = config
        self._policies: Dict[str, Optional[RobotFileParser]] = {}

    async def _policy_for(self, url: str) -> Optional[RobotFileParser]:
        key = origin(url)
        if key not in self._policies:
            robots_url = f"{key}/robots.txt"
            body = await fetch_text(
                self.session,
                robots_url,
                timeout=self.config.robots_timeout,
                headers={"User-Agent": self.config.user_agent},
            )
            if body is None:
                logger.debug("No usable robots.txt at %s; allowing", robots_url)
                self._policies[key] = None
            else:
                self._policies[key] = parse_robots(robots_url, body)
        return self._policies[key]

    async def is_allowed(self, url: str) -> bool:
        policy = await self._policy_for(url)
        if policy is None:
            return True
        return policy.can_fetch(self.config.crawler_name, url)
