"""Append corrected recording segments to an entry's transcript."""

from __future__ import annotations

import logging
from collections import OrderedDict
from typing import Optional

from .correction import CorrectionClient
from .models import DiaryEntry
from .ollama import BackendSettings

PLACEHOLDER_TEXT = "Audio recorded. Click edit to add text."
MAX_REMEMBERED_SEGMENTS = 1024


def merge_transcript(existing: str, segment: str) -> str:
    """Return ``existing`` with ``segment`` appended, separated by one space."""

    existing = existing or ""
    if not segment or not segment.strip():
        return existing if existing.strip() else PLACEHOLDER_TEXT
    if existing.strip():
        return f"{existing} {segment}".strip()
    return segment.strip()


class TranscriptMerger:
    """Correct a finished segment and fold it into the entry it belongs to.

    Each segment is applied at most once: callers pass the id of the
    stop-recording event and repeated ids are ignored, so a retried callback
    cannot duplicate text. Only the most recent ``max_remembered`` ids are kept.
    """

    def __init__(
        self,
        corrector: Optional[CorrectionClient] = None,
        max_remembered: int = MAX_REMEMBERED_SEGMENTS,
    ) -> None:
        self.corrector = corrector or CorrectionClient()
        self.max_remembered = max_remembered
        self._applied: OrderedDict[str, None] = OrderedDict()

    def already_applied(self, segment_id: str) -> bool:
        return segment_id in self._applied

    def release(self, segment_id: str) -> None:
        """Forget ``segment_id`` so the same segment can be applied again."""

        self._applied.pop(segment_id, None)

    def _claim(self, segment_id: str) -> None:
        self._applied[segment_id] = None
        while len(self._applied) > self.max_remembered:
            self._applied.popitem(last=False)

    async def apply(
        self,
        entry: DiaryEntry,
        raw_segment: str,
        settings: Optional[BackendSettings] = None,
        segment_id: Optional[str] = None,
    ) -> DiaryEntry:
        """Merge ``raw_segment`` into ``entry`` in place and return it.

        ``settings`` of ``None`` skips the correction step. Whatever happens
        to the correction, the spoken text ends up in the transcript.
        """

        if segment_id is not None:
            if segment_id in self._applied:
                logging.warning("Segment %s was already merged into %s; ignoring", segment_id, entry.id)
                return entry
            # Claimed before awaiting so a concurrent duplicate is rejected too.
            self._claim(segment_id)

        segment = raw_segment or ""
        if segment.strip() and settings is not None:
            try:
                segment = await self.corrector.correct(segment, settings)
            except Exception:  # noqa: BLE001 - fall back to the raw words
                logging.exception("AI correction failed, using raw transcription")
                segment = raw_segment

        entry.transcript = merge_transcript(entry.transcript, segment)
        entry.is_transcribing = False
        return entry
