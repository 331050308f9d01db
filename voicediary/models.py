"""Dataclasses describing persistent objects for voicediary."""

from __future__ import annotations

import secrets
import string
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional

DEFAULT_AUDIO_TYPE = "audio/webm"

TAG_VOCABULARY = ("work", "personal", "ideas", "goals", "reflection")

_ID_ALPHABET = string.ascii_lowercase + string.digits


def new_entry_id() -> str:
    """Return an identifier like ``entry_1718000000000_k3j9x0abq``."""

    suffix = "".join(secrets.choice(_ID_ALPHABET) for _ in range(9))
    return f"entry_{int(time.time() * 1000)}_{suffix}"


@dataclass(slots=True)
class AudioClip:
    """Binary recording owned by a single entry."""

    data: bytes
    mime_type: str = DEFAULT_AUDIO_TYPE
    size: Optional[int] = None

    def __post_init__(self) -> None:
        if self.size is None:
            self.size = len(self.data)


@dataclass(slots=True)
class DiaryEntry:
    """Represents one diary record."""

    id: str
    created_at: datetime
    audio: Optional[AudioClip] = None
    transcript: str = ""
    tags: List[str] = field(default_factory=list)
    # Process-local state, never persisted.
    is_recording: bool = False
    is_transcribing: bool = False

    @classmethod
    def new(cls) -> "DiaryEntry":
        return cls(id=new_entry_id(), created_at=datetime.now(timezone.utc))


@dataclass(slots=True)
class Config:
    """User configuration stored on disk."""

    ollama_url: Optional[str] = None
    correction_model: str = "gemma3:4b"
    tagging_model: str = "qwen3:4b-thinking"
    request_timeout: float = 10.0
    prefer_loopback: bool = False
    correct_grammar: bool = True
    auto_tag: bool = True
