"""SQLite backed persistence for diary entries.

The whole entry collection is stored as one JSON document in a key-value
slot, next to a second slot holding the format version. Both slots are
written in the same transaction.
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
import sqlite3
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence

from .budget import QuotaExceededError, StorageBudget, StorageError, StorageInfo
from .models import DEFAULT_AUDIO_TYPE, TAG_VOCABULARY, AudioClip, DiaryEntry

APP_DIR = Path.home() / ".voicediary"
DB_PATH = APP_DIR / "diary.db"

STORAGE_KEY = "voiceDiaryEntries"
VERSION_KEY = "voiceDiaryVersion"
STORAGE_VERSION = "1.1"

__all__ = [
    "AudioDecodeError",
    "EntryStore",
    "QuotaExceededError",
    "SlotStore",
    "StorageError",
    "StorageHealth",
    "StorageWriteError",
]


class StorageWriteError(StorageError):
    """Raised when the storage backend rejects a write."""


class AudioDecodeError(ValueError):
    """Raised when a stored audio payload cannot be turned back into bytes."""


@dataclass(slots=True)
class StorageHealth:
    is_valid: bool
    errors: List[str] = field(default_factory=list)


class SlotStore:
    """A tiny key-value store on top of SQLite."""

    def __init__(self, db_path: Optional[Path] = None) -> None:
        self.db_path = db_path or DB_PATH
        self._ensure_initialised()

    def _ensure_initialised(self) -> None:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        with sqlite3.connect(self.db_path) as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS slots (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL
                )
                """
            )

    def get(self, key: str) -> Optional[str]:
        with sqlite3.connect(self.db_path) as conn:
            row = conn.execute("SELECT value FROM slots WHERE key = ?", (key,)).fetchone()
        return None if row is None else row[0]

    def put(self, values: Mapping[str, str]) -> None:
        """Write every key in ``values`` or none of them."""

        with sqlite3.connect(self.db_path) as conn:
            conn.executemany(
                "INSERT INTO slots(key, value) VALUES(?, ?) "
                "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
                list(values.items()),
            )

    def delete(self, *keys: str) -> None:
        with sqlite3.connect(self.db_path) as conn:
            conn.executemany("DELETE FROM slots WHERE key = ?", [(key,) for key in keys])


class EntryStore:
    """Persist the diary entry collection within a fixed capacity budget."""

    def __init__(
        self,
        slots: Optional[SlotStore] = None,
        budget: Optional[StorageBudget] = None,
    ) -> None:
        self.slots = slots or SlotStore()
        self.budget = budget or StorageBudget()

    def save(self, entries: Sequence[DiaryEntry]) -> int:
        """Replace the stored collection with ``entries``.

        Returns the number of bytes written. Raises :class:`QuotaExceededError`
        without touching the stored data when the collection is over budget,
        and :class:`StorageWriteError` when the database rejects the write.
        """

        payload = {
            "version": STORAGE_VERSION,
            "entries": [_serialize_entry(entry) for entry in entries],
            "timestamp": format_timestamp(datetime.now(timezone.utc)),
        }
        serialized = json.dumps(payload, separators=(",", ":"))
        try:
            size = self.budget.ensure_fits(serialized)
        except QuotaExceededError as exc:
            logging.error("Refusing to save %d entries: %s", len(entries), exc)
            raise

        try:
            self.slots.put({STORAGE_KEY: serialized, VERSION_KEY: STORAGE_VERSION})
        except sqlite3.Error as exc:
            logging.error("Error saving entries: %s", exc)
            raise StorageWriteError(f"Failed to save entries to storage: {exc}") from exc
        return size

    def load(self) -> List[DiaryEntry]:
        """Return the stored entries, newest first. Never raises."""

        try:
            raw = self.slots.get(STORAGE_KEY)
        except sqlite3.Error as exc:
            logging.error("Error loading entries: %s", exc)
            return []
        if not raw:
            return []

        try:
            parsed = json.loads(raw)
        except (ValueError, RecursionError) as exc:
            logging.error("Stored entries are corrupted (%s); starting fresh", exc)
            self._discard_stored_entries()
            return []

        if isinstance(parsed, list):
            stored = parsed
        elif isinstance(parsed, dict) and isinstance(parsed.get("entries"), list):
            stored = parsed["entries"]
        else:
            logging.warning("Invalid storage format, starting fresh")
            self._discard_stored_entries()
            return []

        entries: List[DiaryEntry] = []
        seen: set[str] = set()
        for item in stored:
            if not isinstance(item, dict) or not item.get("id") or not item.get("date"):
                logging.warning("Skipping invalid entry: %r", item)
                continue
            try:
                entry = _deserialize_entry(item)
            except Exception as exc:  # noqa: BLE001 - one bad entry must not sink the diary
                logging.warning("Skipping corrupted entry %r: %s", item.get("id"), exc)
                continue
            if entry.id in seen:
                logging.warning("Skipping duplicate entry %s", entry.id)
                continue
            seen.add(entry.id)
            entries.append(entry)

        entries.sort(key=lambda entry: entry.created_at, reverse=True)
        return entries

    def export_all(self, entries: Sequence[DiaryEntry]) -> str:
        """Return a self-contained, pretty-printed JSON snapshot of ``entries``."""

        return json.dumps(
            {
                "version": STORAGE_VERSION,
                "exportDate": format_timestamp(datetime.now(timezone.utc)),
                "entries": [_serialize_entry(entry) for entry in entries],
            },
            indent=2,
        )

    def remove_audio(self, entry_id: str, entries: Sequence[DiaryEntry]) -> List[DiaryEntry]:
        updated = [replace(entry, audio=None) if entry.id == entry_id else entry for entry in entries]
        self.save(updated)
        return updated

    def info(self) -> StorageInfo:
        try:
            raw = self.slots.get(STORAGE_KEY)
        except sqlite3.Error as exc:
            logging.error("Error getting storage info: %s", exc)
            raw = None
        return self.budget.describe(raw)

    def stored_version(self) -> Optional[str]:
        try:
            return self.slots.get(VERSION_KEY)
        except sqlite3.Error as exc:
            logging.error("Error reading storage version: %s", exc)
            return None

    def clear(self) -> None:
        try:
            self.slots.delete(STORAGE_KEY, VERSION_KEY)
        except sqlite3.Error as exc:
            logging.error("Error clearing entries: %s", exc)

    def validate(self) -> StorageHealth:
        try:
            raw = self.slots.get(STORAGE_KEY)
        except sqlite3.Error as exc:
            return StorageHealth(False, [f"Storage validation failed: {exc}"])
        if not raw:
            return StorageHealth(True)

        errors: List[str] = []
        try:
            parsed = json.loads(raw)
        except (ValueError, RecursionError) as exc:
            errors.append(f"Storage validation failed: {exc}")
        else:
            if parsed is None:
                errors.append("Storage data is null")
            elif not isinstance(parsed, list) and not (
                isinstance(parsed, dict) and isinstance(parsed.get("entries"), list)
            ):
                errors.append("Invalid storage structure")

        if self.budget.describe(raw).nearly_full:
            errors.append("Storage is nearly full")
        return StorageHealth(not errors, errors)

    def _discard_stored_entries(self) -> None:
        try:
            self.slots.delete(STORAGE_KEY)
        except sqlite3.Error as exc:
            logging.warning("Could not clear corrupted storage data: %s", exc)
        else:
            logging.warning("Cleared corrupted storage data")


def encode_audio(clip: AudioClip) -> str:
    """Encode ``clip`` as a ``data:`` URL."""

    if not isinstance(clip.data, (bytes, bytearray, memoryview)):
        raise TypeError(f"audio data must be bytes, not {type(clip.data).__name__}")
    encoded = base64.b64encode(bytes(clip.data)).decode("ascii")
    return f"data:{clip.mime_type or DEFAULT_AUDIO_TYPE};base64,{encoded}"


def decode_audio(value: Any, mime_type: Optional[str] = None, size: Any = None) -> AudioClip:
    """Turn a stored audio payload back into an :class:`AudioClip`.

    Accepts a ``data:<type>;base64,`` URL or bare base64. An explicit
    ``mime_type`` wins over the type embedded in the URL.
    """

    if not isinstance(value, str):
        raise AudioDecodeError(f"expected text, got {type(value).__name__}")

    body = value
    embedded_type = None
    if value.startswith("data:"):
        header, sep, body = value.partition(",")
        if not sep or not header.endswith(";base64"):
            raise AudioDecodeError("unsupported data URL encoding")
        embedded_type = header[len("data:") : -len(";base64")] or None

    try:
        data = base64.b64decode(body, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise AudioDecodeError(f"invalid base64 payload: {exc}") from exc

    if not isinstance(size, int) or isinstance(size, bool) or size < 0:
        size = None
    return AudioClip(
        data=data,
        mime_type=mime_type or embedded_type or DEFAULT_AUDIO_TYPE,
        size=size,
    )


def format_timestamp(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    value = value.astimezone(timezone.utc)
    return value.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_timestamp(value: Any) -> datetime:
    if not isinstance(value, str):
        raise ValueError(f"timestamp must be a string, not {type(value).__name__}")
    text = value.strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _serialize_entry(entry: DiaryEntry) -> Dict[str, Any]:
    audio_data = None
    audio_size = 0
    audio_type = ""
    if entry.audio is not None:
        try:
            audio_data = encode_audio(entry.audio)
        except (TypeError, ValueError) as exc:
            logging.warning("Failed to serialize audio for entry %s: %s", entry.id, exc)
        else:
            audio_size = entry.audio.size
            audio_type = entry.audio.mime_type

    return {
        "id": entry.id,
        "date": format_timestamp(entry.created_at),
        "audioBlob": audio_data,
        "transcription": entry.transcript,
        "audioSize": audio_size,
        "audioType": audio_type,
        "tags": list(entry.tags),
    }


def _deserialize_entry(item: Dict[str, Any]) -> DiaryEntry:
    entry_id = item["id"]
    if not isinstance(entry_id, str):
        raise ValueError(f"entry id must be a string, not {type(entry_id).__name__}")

    audio = None
    if item.get("audioBlob"):
        try:
            audio = decode_audio(item["audioBlob"], item.get("audioType") or None, item.get("audioSize"))
        except AudioDecodeError as exc:
            logging.warning("Failed to restore audio for entry %s: %s", entry_id, exc)

    transcript = item.get("transcription")
    raw_tags = item.get("tags") or []
    if not isinstance(raw_tags, list):
        raw_tags = []
    tags: List[str] = []
    for tag in raw_tags:
        if tag in TAG_VOCABULARY and tag not in tags:
            tags.append(tag)
        else:
            logging.debug("Dropping unknown tag %r on entry %s", tag, entry_id)

    return DiaryEntry(
        id=entry_id,
        created_at=parse_timestamp(item["date"]),
        audio=audio,
        transcript=transcript if isinstance(transcript, str) else "",
        tags=tags,
    )
