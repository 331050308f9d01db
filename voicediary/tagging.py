"""Topical labels for diary entries."""

from __future__ import annotations

import logging
from typing import List, Optional, Sequence, Tuple

from .correction import strip_thinking
from .models import TAG_VOCABULARY
from .ollama import BackendError, BackendSettings, OllamaClient

MAX_TAGS = 2
DEFAULT_TAG = "personal"

# Scan order matters: the first matches win when more than two apply.
KEYWORDS: Sequence[Tuple[str, Tuple[str, ...]]] = (
    ("work", ("work", "job", "meeting", "project")),
    ("ideas", ("idea", "think", "concept")),
    ("goals", ("goal", "plan", "achieve")),
    ("reflection", ("reflect", "learn", "insight")),
)

PROMPT_TEMPLATE = """Analyze this diary entry and select 1-2 most relevant tags from: {vocabulary}.

Rules:
- Only use tags from the list above
- Choose 1-2 tags maximum
- Respond with ONLY tag names separated by comma
- No explanations

Text: {text}"""


def parse_tags(response: str) -> List[str]:
    tags: List[str] = []
    for token in response.split(","):
        tag = token.strip().lower()
        if tag in TAG_VOCABULARY and tag not in tags:
            tags.append(tag)
    return tags[:MAX_TAGS]


def fallback_tags(text: str) -> List[str]:
    """Keyword based tagging used when the backend is unavailable."""

    lowered = text.lower()
    tags = [tag for tag, words in KEYWORDS if any(word in lowered for word in words)]
    return tags[:MAX_TAGS] or [DEFAULT_TAG]


class TaggingClient:
    def __init__(self, client: Optional[OllamaClient] = None) -> None:
        self.client = client or OllamaClient()

    async def tags_for(self, text: str, settings: Optional[BackendSettings] = None) -> List[str]:
        """Return up to two labels for ``text``.

        With ``settings`` of ``None`` only the keyword fallback is used.
        """

        if not text.strip():
            return [DEFAULT_TAG]
        if settings is None:
            return fallback_tags(text)

        prompt = PROMPT_TEMPLATE.format(vocabulary=", ".join(TAG_VOCABULARY), text=text[:500])
        options = {"temperature": 0.1, "top_p": 0.8, "max_tokens": 20}
        try:
            response = await self.client.generate(prompt, settings, options)
        except BackendError as exc:
            logging.warning("Auto-tagging failed, using keyword fallback: %s", exc)
            return fallback_tags(text)
        except Exception:  # noqa: BLE001 - tagging is best effort
            logging.exception("Unexpected error during auto-tagging")
            return fallback_tags(text)

        tags = parse_tags(strip_thinking(response))
        if not tags:
            logging.info("Backend suggested no usable tags in %r", response[:80])
            return fallback_tags(text)
        return tags
