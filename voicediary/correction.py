"""Grammar correction of raw speech-recognition output."""

from __future__ import annotations

import logging
import re
from typing import Callable, Dict, Optional, Sequence, Tuple

from .ollama import BackendError, BackendSettings, OllamaClient

MAX_INPUT_CHARS = 500
MIN_OUTPUT_TOKENS = 50
MAX_OUTPUT_TOKENS = 300
TEMPERATURE = 0.1
MIN_RESULT_CHARS = 3
MAX_GROWTH = 3

PROMPT_TEMPLATE = (
    "Correct any grammar and spelling errors in this text. "
    "Return ONLY the corrected text with no explanations:\n\n"
    '"{text}"'
)

_THINKING_RE = re.compile(r"<think>.*?</think>", re.IGNORECASE | re.DOTALL)
_PREAMBLE_RE = re.compile(
    r"^\s*(?:here[’']?s the corrected text:|here is the corrected text:|corrected text:|"
    r"here is the corrected version:|here[’']?s the corrected version:|"
    r"the corrected text is:|fixed text:)",
    re.IGNORECASE,
)
_QUOTE_PAIRS = {'"': '"', "“": "”"}
_COMMENTARY_WORDS = ("grammar", "corrected", "error")
_BULLET_MARKERS = ("*", "-", "•")
MIN_LINE_CHARS = 6


def build_request(text: str) -> Tuple[str, Dict[str, float]]:
    """Return the prompt and generation options for correcting ``text``."""

    prompt = PROMPT_TEMPLATE.format(text=text[:MAX_INPUT_CHARS])
    max_tokens = max(MIN_OUTPUT_TOKENS, min(len(text) + 50, MAX_OUTPUT_TOKENS))
    return prompt, {"temperature": TEMPERATURE, "max_tokens": max_tokens}


def strip_thinking(text: str) -> str:
    return _THINKING_RE.sub("", text).strip()


def strip_preamble(text: str) -> str:
    return _PREAMBLE_RE.sub("", text, count=1).strip()


def strip_wrapping_quotes(text: str) -> str:
    """Remove one pair of quotes that wraps the whole text.

    Only applies when the quote characters do not also appear inside, so a
    second pass never eats quotes that belong to the content.
    """

    if len(text) < 2:
        return text
    closing = _QUOTE_PAIRS.get(text[0])
    if closing is None or text[-1] != closing:
        return text
    inner = text[1:-1]
    if text[0] in inner or closing in inner:
        return text
    return inner.strip()


def pick_plain_line(text: str) -> str:
    """From a multi-line answer, keep the first line that is not commentary."""

    lines = [line.strip() for line in text.splitlines() if line.strip()]
    if len(lines) <= 1:
        return text
    for line in lines:
        lowered = line.lower()
        if any(word in lowered for word in _COMMENTARY_WORDS):
            continue
        if line.startswith(_BULLET_MARKERS):
            continue
        if len(line) < MIN_LINE_CHARS:
            continue
        return line
    return text


def passes_validation(result: str, original: str) -> bool:
    if not result or len(result) < MIN_RESULT_CHARS:
        return False
    return len(result) <= len(original) * MAX_GROWTH


CLEANUP_STEPS: Sequence[Callable[[str], str]] = (
    strip_thinking,
    strip_preamble,
    strip_wrapping_quotes,
    pick_plain_line,
)


def clean_response(response: str, original: str) -> Optional[str]:
    """Run the cleanup chain; ``None`` means the answer should not be trusted."""

    result = response.strip()
    for step in CLEANUP_STEPS:
        result = step(result)
    if not passes_validation(result, original):
        return None
    return result


class CorrectionClient:
    """Fix grammar and spelling with the backend, falling back to the input."""

    def __init__(self, client: Optional[OllamaClient] = None) -> None:
        self.client = client or OllamaClient()

    async def correct(self, raw_text: str, settings: BackendSettings) -> str:
        if not raw_text.strip():
            return raw_text

        prompt, options = build_request(raw_text)
        logging.debug("Correcting: %r", raw_text[:50])
        try:
            response = await self.client.generate(prompt, settings, options)
        except BackendError as exc:
            logging.warning("AI correction failed, keeping original text: %s", exc)
            return raw_text
        except Exception:  # noqa: BLE001 - correction must never block a recording
            logging.exception("Unexpected error during AI correction")
            return raw_text

        cleaned = clean_response(response, raw_text)
        if cleaned is None:
            logging.info("AI correction looks wrong, using original")
            return raw_text
        logging.debug("Corrected: %r", cleaned[:50])
        return cleaned
