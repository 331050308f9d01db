"""Top-level package for voicediary."""

from . import config, correction, merger, storage, tagging

__all__ = ["config", "correction", "merger", "storage", "tagging"]
