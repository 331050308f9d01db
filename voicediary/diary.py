"""The diary: an in-memory entry collection wired to storage and the AI backend."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import replace
from typing import List, Optional

from .budget import StorageError, StorageInfo
from .correction import CorrectionClient
from .merger import TranscriptMerger
from .models import AudioClip, Config, DiaryEntry
from .ollama import BackendSettings, BackendStatus, OllamaClient
from .storage import EntryStore
from .tagging import TaggingClient


class EntryNotFoundError(StorageError):
    """Raised when an entry id is not part of the collection."""


class DiaryService:
    """Run the record → correct → merge → persist → tag flow for one collection.

    Storage work runs in a worker thread so backend requests for other
    entries keep going while a save is in flight. Saves themselves are
    serialised: the whole collection is written each time and the last
    completed write wins.
    """

    def __init__(
        self,
        store: Optional[EntryStore] = None,
        config: Optional[Config] = None,
        client: Optional[OllamaClient] = None,
    ) -> None:
        self.store = store or EntryStore()
        self.config = config or Config()
        self.client = client or OllamaClient()
        self.merger = TranscriptMerger(CorrectionClient(self.client))
        self.tagger = TaggingClient(self.client)
        self.entries: List[DiaryEntry] = []
        self._save_lock = asyncio.Lock()

    @property
    def correction_settings(self) -> Optional[BackendSettings]:
        if not self.config.correct_grammar:
            return None
        return BackendSettings.for_correction(self.config)

    @property
    def tagging_settings(self) -> BackendSettings:
        return BackendSettings.for_tagging(self.config)

    async def load(self) -> List[DiaryEntry]:
        self.entries = await asyncio.to_thread(self.store.load)
        return self.entries

    async def save(self) -> int:
        snapshot = [replace(entry, tags=list(entry.tags)) for entry in self.entries]
        async with self._save_lock:
            return await asyncio.to_thread(self.store.save, snapshot)

    def get(self, entry_id: str) -> DiaryEntry:
        for entry in self.entries:
            if entry.id == entry_id:
                return entry
        raise EntryNotFoundError(f"Entry with id {entry_id} not found")

    async def create_entry(self) -> DiaryEntry:
        existing = {entry.id for entry in self.entries}
        entry = DiaryEntry.new()
        while entry.id in existing:
            entry = DiaryEntry.new()
        self.entries.insert(0, entry)
        try:
            await self.save()
        except StorageError:
            self.entries.remove(entry)
            raise
        return entry

    def start_recording(self, entry_id: str) -> DiaryEntry:
        entry = self.get(entry_id)
        entry.is_recording = True
        return entry

    async def complete_recording(
        self,
        entry_id: str,
        raw_segment: str,
        audio: Optional[AudioClip] = None,
        segment_id: Optional[str] = None,
    ) -> DiaryEntry:
        """Handle the end of one recording session for ``entry_id``.

        ``segment_id`` identifies the stop-recording event; a segment that
        was already merged is ignored. Only storage errors reach the caller;
        when the save fails the entry is restored and the segment can be
        submitted again.
        """

        entry = self.get(entry_id)
        if segment_id is not None and self.merger.already_applied(segment_id):
            logging.info("Segment %s already processed for %s", segment_id, entry_id)
            return entry

        previous = (entry.transcript, entry.audio, list(entry.tags))
        entry.is_recording = False
        if audio is not None:
            entry.audio = audio
        entry.is_transcribing = True
        try:
            await self.merger.apply(entry, raw_segment, self.correction_settings, segment_id)
        finally:
            entry.is_transcribing = False

        if self.config.auto_tag and raw_segment and raw_segment.strip():
            entry.tags = await self.tagger.tags_for(entry.transcript, self.tagging_settings)

        try:
            await self.save()
        except StorageError:
            entry.transcript, entry.audio, entry.tags = previous
            if segment_id is not None:
                self.merger.release(segment_id)
            raise
        return entry

    async def update_transcript(self, entry_id: str, text: str) -> DiaryEntry:
        entry = self.get(entry_id)
        entry.transcript = text.strip()
        await self.save()
        return entry

    async def retag(self, entry_id: str) -> DiaryEntry:
        entry = self.get(entry_id)
        entry.tags = await self.tagger.tags_for(entry.transcript, self.tagging_settings)
        await self.save()
        return entry

    async def delete_entry(self, entry_id: str) -> None:
        entry = self.get(entry_id)
        self.entries.remove(entry)
        await self.save()

    async def remove_audio(self, entry_id: str) -> DiaryEntry:
        self.get(entry_id)
        async with self._save_lock:
            self.entries = await asyncio.to_thread(self.store.remove_audio, entry_id, list(self.entries))
        return self.get(entry_id)

    def search(self, query: str) -> List[DiaryEntry]:
        needle = query.strip().lower()
        if not needle:
            return list(self.entries)
        return [entry for entry in self.entries if needle in entry.transcript.lower()]

    async def export(self) -> str:
        return await asyncio.to_thread(self.store.export_all, list(self.entries))

    async def info(self) -> StorageInfo:
        return await asyncio.to_thread(self.store.info)

    async def backend_status(self) -> BackendStatus:
        return await self.client.status(BackendSettings.for_correction(self.config))

    async def available_models(self) -> List[str]:
        return await self.client.list_models(BackendSettings.for_correction(self.config))
