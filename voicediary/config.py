"""Persisted configuration management."""

from __future__ import annotations

import json
import os
from dataclasses import asdict, fields
from pathlib import Path
from typing import Any, Optional

from .models import Config

CONFIG_PATH = (Path.home() / ".voicediary" / "config.json").expanduser()
OLLAMA_URL_ENV = "VOICEDIARY_OLLAMA_URL"


class ConfigError(RuntimeError):
    """Raised when configuration cannot be loaded or saved."""


def _known_keys() -> set[str]:
    return {f.name for f in fields(Config)}


def load_config() -> Config:
    if not CONFIG_PATH.exists():
        return Config()
    try:
        payload = json.loads(CONFIG_PATH.read_text())
    except json.JSONDecodeError as exc:
        raise ConfigError(f"Failed to parse configuration file: {exc}") from exc
    if not isinstance(payload, dict):
        raise ConfigError("Configuration file must contain a JSON object")
    unknown = set(payload) - _known_keys()
    if unknown:
        raise ConfigError(f"Unknown configuration key(s): {', '.join(sorted(unknown))}")
    return Config(**payload)


def backend_url(config: Config) -> Optional[str]:
    """Return the user-configured backend address, if any.

    The saved setting wins over the ``VOICEDIARY_OLLAMA_URL`` environment
    variable. The value is never written back to the configuration file.
    """

    return config.ollama_url or os.getenv(OLLAMA_URL_ENV) or None


def save_config(config: Config) -> None:
    CONFIG_PATH.parent.mkdir(parents=True, exist_ok=True)
    data = {k: v for k, v in asdict(config).items() if v is not None}
    CONFIG_PATH.write_text(json.dumps(data, indent=2))


def update_config(**kwargs: Any) -> Config:
    config = load_config()
    for key, value in kwargs.items():
        if key in _known_keys():
            setattr(config, key, value)
        else:
            raise ConfigError(f"Unknown configuration key: {key}")
    save_config(config)
    return config
