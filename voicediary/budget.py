"""Capacity accounting for the diary storage slot."""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Optional

MAX_STORAGE_BYTES = int(4.5 * 1024 * 1024)  # leaves headroom for other data
NEARLY_FULL_PERCENT = 90.0


class StorageError(RuntimeError):
    """Raised when something goes wrong while accessing the storage."""


class QuotaExceededError(StorageError):
    """Raised when a save would exceed the storage capacity."""

    def __init__(self, required: int, capacity: int) -> None:
        super().__init__(
            f"Storage quota exceeded ({required} of {capacity} bytes). "
            "Consider deleting old entries or audio files."
        )
        self.required = required
        self.capacity = capacity


@dataclass(slots=True)
class StorageInfo:
    used_bytes: int
    capacity_bytes: int
    percent_used: float
    entry_count: int

    @property
    def available_bytes(self) -> int:
        return max(self.capacity_bytes - self.used_bytes, 0)

    @property
    def nearly_full(self) -> bool:
        return self.percent_used > NEARLY_FULL_PERCENT


class StorageBudget:
    """Enforce the fixed capacity ceiling of the storage slot."""

    def __init__(self, capacity_bytes: int = MAX_STORAGE_BYTES) -> None:
        if capacity_bytes <= 0:
            raise ValueError("capacity_bytes must be positive")
        self.capacity_bytes = capacity_bytes

    @staticmethod
    def measure(serialized: str) -> int:
        return len(serialized.encode("utf-8"))

    def fits(self, serialized: str) -> bool:
        return self.measure(serialized) <= self.capacity_bytes

    def ensure_fits(self, serialized: str) -> int:
        """Return the byte size of ``serialized`` or raise if it is over budget."""

        size = self.measure(serialized)
        if size > self.capacity_bytes:
            raise QuotaExceededError(size, self.capacity_bytes)
        return size

    def describe(self, raw: Optional[str]) -> StorageInfo:
        raw = raw or ""
        used = self.measure(raw)
        return StorageInfo(
            used_bytes=used,
            capacity_bytes=self.capacity_bytes,
            percent_used=used / self.capacity_bytes * 100,
            entry_count=_count_entries(raw),
        )


def _count_entries(raw: str) -> int:
    if not raw:
        return 0
    try:
        parsed = json.loads(raw)
    except (ValueError, RecursionError):
        return 0
    if isinstance(parsed, list):
        return len(parsed)
    if isinstance(parsed, dict) and isinstance(parsed.get("entries"), list):
        return len(parsed["entries"])
    return 0
