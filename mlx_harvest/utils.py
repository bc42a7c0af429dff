"""Utility helpers for string normalization, hashing and plain HTTP reads."""

from __future__ import annotations

import asyncio
import hashlib
import logging
import re
from typing import Optional

import requests

logger = logging.getLogger("mlx_harvest")

UNSAFE_FILENAME_PATTERN = re.compile(r"[^A-Za-z0-9._-]+")


def sanitize_filename(name: str, max_length: int = 100) -> str:
    """Replace characters that are unsafe in file names and cap the length."""
    cleaned = UNSAFE_FILENAME_PATTERN.sub("_", name).strip("._")
    return cleaned[:max_length]


def short_hash(value: str, length: int = 12) -> str:
    return hashlib.sha1(value.encode("utf-8")).hexdigest()[:length]


async def fetch_text(
    session: requests.Session,
    url: str,
    timeout: float,
    headers: Optional[dict] = None,
) -> Optional[str]:
    """GET a text resource off the event loop; None on any failure or non-2xx."""
    try:
        resp = await asyncio.to_thread(
            session.get, url, timeout=timeout, headers=headers
        )
        resp.raise_for_status()
    except requests.RequestException as exc:
        logger.debug("Could not fetch %s: %s", url, exc)
        return None
    return resp.text
