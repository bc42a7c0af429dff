"""Advisory text generation backed by an MLX language model.

Everything in this module is best effort: the crawl produces a valid result
when no generator is configured, when the model fails, or when it answers with
something that is not JSON.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import re
import time
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol

logger = logging.getLogger("mlx_harvest.generation")

_FENCED_BLOCK = re.compile(r"```(?:json)?\s*\n?([\s\S]*?)\n?```")


def extract_json(text: Optional[str]) -> Optional[Any]:
    """Pull a JSON value out of free-form model output.

    Tries, in order: the whole text, the first fenced code block, and the
    substring between the first ``{`` and the last ``}``.
    """
    if not text:
        return None
    try:
        return json.loads(text)
    except ValueError:
        pass

    match = _FENCED_BLOCK.search(text)
    if match:
        try:
            return json.loads(match.group(1).strip())
        except ValueError:
            pass

    start = text.find("{")
    end = text.rfind("}")
    if start != -1 and end > start:
        try:
            return json.loads(text[start : end + 1])
        except ValueError:
            pass
    return None


class TextGenerator(Protocol):
    """Anything that turns a prompt into text."""

    def complete(self, prompt: str) -> str:
        ...


class MLXTextGenerator:
    """Thin wrapper around an MLX chat model used for crawl suggestions."""

    def __init__(self, model_id: str, max_tokens: int) -> None:
        self.model_id = model_id
        self.max_tokens = max_tokens
        self._model: Any = None
        self._tokenizer: Any = None

    def load_target(self) -> str:
        """Local checkout named by ``MODEL_DIR`` when present, else the model id.

        ``mlx_lm.load`` resolves a hub id through the Hugging Face cache itself.
        """
        override = os.getenv("MODEL_DIR")
        if override:
            override_path = Path(override).expanduser()
            if override_path.exists():
                logger.debug("MODEL_DIR override detected at %s", override_path)
                return str(override_path)
            logger.warning(
                "MODEL_DIR is set to %s but the path does not exist; falling back to %s",
                override_path,
                self.model_id,
            )
        return self.model_id

    def _ensure_model(self) -> None:
        if self._model is None or self._tokenizer is None:
            from mlx_lm import load as load_model

            load_target = self.load_target()
            logger.info("Loading model %s", load_target)
            start = time.perf_counter()
            self._model, self._tokenizer = load_model(load_target)
            logger.debug(
                "Loaded model from %s in %.2fs",
                load_target,
                time.perf_counter() - start,
            )

    def complete(self, prompt: str) -> str:
        from mlx_lm import generate as generate_text

        self._ensure_model()
        messages = [{"role": "user", "content": prompt}]
        tokens = self._tokenizer.apply_chat_template(
            messages, tokenize=True, add_generation_prompt=True
        )
        logger.debug("Prompt token length: %d", len(tokens))
        text = generate_text(
            self._model,
            self._tokenizer,
            prompt=tokens,
            max_tokens=self.max_tokens,
            verbose=False,
        )
        return text.strip()


ANALYSIS_PROMPT = """Analyze the website at {url} for structure, animations, and data flows.
Describe the key sections (header, footer, navigation, content blocks), detected
animations, interactive elements and responsive design considerations.

Format your response as JSON with these keys: sections, animations, interactions, responsive."""

DISCOVERY_PROMPT = """Analyze this website to discover all pages and navigation structure:

URL: {url}

HTML Sample:
```html
{sample}
```

Identify internal links, navigation menus, pagination patterns and dynamic routes.

Return JSON: {{"pages": ["url1", "url2"], "sitemap": "url", "patterns": [], "strategy": "description"}}"""

ASSET_PROMPT = """Analyze this HTML to find ALL assets including hidden/lazy-loaded ones:

```html
{sample}
```

Find videos (video tags, embedded players, background videos), fonts (Google Fonts,
custom fonts, @font-face) and audio files.

Return JSON: {{"videos": [], "fonts": [], "audio": []}}"""


def _string_list(value: Any) -> List[str]:
    if not isinstance(value, list):
        return []
    return [item.strip() for item in value if isinstance(item, str) and item.strip()]


class SiteAdvisor:
    """Asks an optional text generator for crawl hints and never raises."""

    def __init__(
        self,
        generator: Optional[TextGenerator],
        discovery_sample_chars: int = 3000,
        asset_sample_chars: int = 4000,
    ) -> None:
        self.generator = generator
        self.discovery_sample_chars = discovery_sample_chars
        self.asset_sample_chars = asset_sample_chars

    @property
    def enabled(self) -> bool:
        return self.generator is not None

    async def _complete(self, prompt: str, purpose: str) -> Optional[str]:
        if self.generator is None:
            return None
        try:
            return await asyncio.to_thread(self.generator.complete, prompt)
        except Exception as exc:  # noqa: BLE001 - advisory only
            logger.warning(
                "Text generation for %s failed: %s", purpose, exc, extra={"category": "AI"}
            )
            return None

    async def analyze_site(self, url: str) -> Optional[str]:
        return await self._complete(ANALYSIS_PROMPT.format(url=url), "site analysis")

    async def suggest_pages(self, url: str, html: str) -> List[str]:
        prompt = DISCOVERY_PROMPT.format(url=url, sample=html[: self.discovery_sample_chars])
        parsed = extract_json(await self._complete(prompt, "page discovery"))
        if not isinstance(parsed, dict) or "pages" not in parsed:
            if self.enabled:
                logger.warning(
                    "Page suggestions did not contain a pages array",
                    extra={"category": "AI"},
                )
            return []
        pages = _string_list(parsed["pages"])
        logger.info("Model suggested %d page(s)", len(pages), extra={"category": "AI"})
        return pages

    async def suggest_assets(self, html: str) -> Dict[str, List[str]]:
        prompt = ASSET_PROMPT.format(sample=html[: self.asset_sample_chars])
        parsed = extract_json(await self._complete(prompt, "asset discovery"))
        if not isinstance(parsed, dict):
            return {}
        suggestions = {
            key: _string_list(parsed.get(key)) for key in ("videos", "fonts", "audio")
        }
        total = sum(len(items) for items in suggestions.values())
        if total:
            logger.info("Model suggested %d extra asset(s)", total, extra={"category": "AI"})
        return suggestions
