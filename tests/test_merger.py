from datetime import datetime, timezone

import pytest

from voicediary.correction import CorrectionClient
from voicediary.merger import PLACEHOLDER_TEXT, TranscriptMerger, merge_transcript
from voicediary.models import DiaryEntry
from voicediary.ollama import BackendSettings, BackendUnavailableError

SETTINGS = BackendSettings(model="gemma3:4b")


class FakeOllama:
    def __init__(self, response=None, error=None):
        self.response = response
        self.error = error
        self.calls = 0

    async def generate(self, prompt, settings, options=None):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.response


class ExplodingCorrector:
    async def correct(self, raw_text, settings):
        raise RuntimeError("boom")


def _entry(transcript=""):
    return DiaryEntry(
        id="entry_1",
        created_at=datetime(2024, 5, 1, tzinfo=timezone.utc),
        transcript=transcript,
        is_transcribing=True,
    )


def test_merge_appends_with_single_space():
    assert merge_transcript("Hello", "World.") == "Hello World."
    assert merge_transcript("", "  World.  ") == "World."
    assert merge_transcript("   ", "World.") == "World."


def test_merge_with_empty_segment():
    assert merge_transcript("Keep this.", "") == "Keep this."
    assert merge_transcript("Keep this.", "   ") == "Keep this."
    assert merge_transcript("", "") == PLACEHOLDER_TEXT


@pytest.mark.asyncio
async def test_failed_correction_appends_raw_segment():
    merger = TranscriptMerger(CorrectionClient(FakeOllama(error=BackendUnavailableError("down"))))
    entry = await merger.apply(_entry("Hello"), "world", SETTINGS)

    assert entry.transcript == "Hello world"
    assert entry.is_transcribing is False


@pytest.mark.asyncio
async def test_successful_correction_appends_corrected_segment():
    merger = TranscriptMerger(CorrectionClient(FakeOllama(response="World.")))
    entry = await merger.apply(_entry("Hello"), "world", SETTINGS)

    assert entry.transcript == "Hello World."


@pytest.mark.asyncio
async def test_unexpected_corrector_error_keeps_raw_words():
    merger = TranscriptMerger(ExplodingCorrector())
    entry = await merger.apply(_entry(), "spoken words", SETTINGS)

    assert entry.transcript == "spoken words"


@pytest.mark.asyncio
async def test_segment_is_merged_at_most_once():
    fake = FakeOllama(response="World.")
    merger = TranscriptMerger(CorrectionClient(fake))
    entry = _entry("Hello")

    await merger.apply(entry, "world", SETTINGS, segment_id="stop-1")
    await merger.apply(entry, "world", SETTINGS, segment_id="stop-1")

    assert entry.transcript == "Hello World."
    assert fake.calls == 1
    assert merger.already_applied("stop-1")


@pytest.mark.asyncio
async def test_correction_can_be_skipped():
    fake = FakeOllama(response="never used")
    merger = TranscriptMerger(CorrectionClient(fake))
    entry = await merger.apply(_entry("Hello"), "world", None)

    assert entry.transcript == "Hello world"
    assert fake.calls == 0


@pytest.mark.asyncio
async def test_empty_segment_sets_placeholder():
    merger = TranscriptMerger(CorrectionClient(FakeOllama(response="unused")))
    entry = await merger.apply(_entry(), "", SETTINGS)

    assert entry.transcript == PLACEHOLDER_TEXT


@pytest.mark.asyncio
async def test_only_recent_segment_ids_are_remembered():
    merger = TranscriptMerger(CorrectionClient(FakeOllama(response="unused")), max_remembered=2)
    entry = _entry()

    for segment_id in ("stop-1", "stop-2", "stop-3"):
        await merger.apply(entry, "words", None, segment_id=segment_id)

    assert not merger.already_applied("stop-1")
    assert merger.already_applied("stop-2")
    assert merger.already_applied("stop-3")

    merger.release("stop-3")
    assert not merger.already_applied("stop-3")
