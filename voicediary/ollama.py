"""HTTP client for a local Ollama text-generation backend."""

from __future__ import annotations

import ipaddress
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from enum import Enum
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Sequence, TypeVar

import httpx

from .config import backend_url
from .models import Config

DEFAULT_BASE_URL = "http://localhost:11434"
LOOPBACK_URLS = (DEFAULT_BASE_URL, "http://127.0.0.1:11434", "http://[::1]:11434")
DEFAULT_TIMEOUT = 10.0

T = TypeVar("T")


class BackendError(RuntimeError):
    """Raised when the text-generation backend cannot serve a request."""


class BackendUnavailableError(BackendError):
    """Raised when no candidate address produced a usable response."""


class BackendStatus(str, Enum):
    OFFLINE = "offline"
    NO_MODEL = "no_model"
    READY = "ready"


@dataclass(frozen=True, slots=True)
class BackendSettings:
    """Everything a single backend request needs to know.

    Passed into every call so that the client itself holds no notion of a
    "current" address or model.
    """

    model: str
    base_url: Optional[str] = None
    timeout: float = DEFAULT_TIMEOUT
    prefer_loopback: bool = False

    @classmethod
    def for_correction(cls, config: Config) -> "BackendSettings":
        return cls(
            model=config.correction_model,
            base_url=backend_url(config),
            timeout=config.request_timeout,
            prefer_loopback=config.prefer_loopback,
        )

    @classmethod
    def for_tagging(cls, config: Config) -> "BackendSettings":
        return cls(
            model=config.tagging_model,
            base_url=backend_url(config),
            timeout=config.request_timeout,
            prefer_loopback=config.prefer_loopback,
        )


def is_loopback(url: str) -> bool:
    try:
        host = httpx.URL(url).host
    except httpx.InvalidURL:
        return False
    if host == "localhost":
        return True
    try:
        return ipaddress.ip_address(host).is_loopback
    except ValueError:
        return False


def candidate_urls(settings: BackendSettings) -> List[str]:
    """Return the base addresses to try, in order.

    A saved override comes first, followed by the loopback addresses. With
    ``prefer_loopback`` a remote override is only tried after every local
    address failed, which keeps transcripts on the machine whenever a local
    daemon is running.
    """

    override = settings.base_url.strip().rstrip("/") if settings.base_url else None
    ordered: List[str] = []
    if override and not (settings.prefer_loopback and not is_loopback(override)):
        ordered.append(override)
    ordered.extend(LOOPBACK_URLS)
    if override and settings.prefer_loopback and not is_loopback(override):
        ordered.append(override)

    unique: List[str] = []
    for url in ordered:
        if url not in unique:
            unique.append(url)
    return unique


def resolve_model(available: Sequence[str], preferred: Optional[str]) -> Optional[str]:
    """Keep ``preferred`` when it is installed, otherwise pick the first model."""

    if preferred and any(preferred in name for name in available):
        return preferred
    if available:
        return available[0]
    return preferred


class OllamaClient:
    """Issue requests against the first reachable backend address."""

    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None) -> None:
        self._transport = transport

    @asynccontextmanager
    async def _http(self, settings: BackendSettings) -> AsyncIterator[httpx.AsyncClient]:
        async with httpx.AsyncClient(transport=self._transport, timeout=settings.timeout) as client:
            yield client

    async def _call(
        self,
        method: str,
        path: str,
        settings: BackendSettings,
        parse: Callable[[httpx.Response], T],
        **kwargs: Any,
    ) -> T:
        failures: List[str] = []
        async with self._http(settings) as client:
            for base in candidate_urls(settings):
                url = f"{base}{path}"
                try:
                    response = await client.request(method, url, **kwargs)
                    response.raise_for_status()
                    return parse(response)
                except httpx.TimeoutException:
                    failures.append(f"{url}: timed out after {settings.timeout}s")
                except httpx.HTTPStatusError as exc:
                    failures.append(f"{url}: HTTP {exc.response.status_code}")
                except httpx.HTTPError as exc:
                    failures.append(f"{url}: {exc!r}")
                except ValueError as exc:
                    failures.append(f"{url}: malformed response ({exc})")
                logging.debug("Backend attempt failed: %s", failures[-1])
        raise BackendUnavailableError("No backend address responded: " + "; ".join(failures))

    async def reachable(self, base_url: str, timeout: float = DEFAULT_TIMEOUT) -> bool:
        """Probe a single address, ignoring every other candidate."""

        async with httpx.AsyncClient(transport=self._transport, timeout=timeout) as client:
            try:
                response = await client.get(f"{base_url.rstrip('/')}/api/tags")
            except httpx.HTTPError as exc:
                logging.debug("Probe of %s failed: %r", base_url, exc)
                return False
        return response.is_success

    async def is_available(self, settings: BackendSettings) -> bool:
        try:
            return await self._call("GET", "/api/tags", settings, lambda response: True)
        except BackendUnavailableError:
            return False

    async def list_models(self, settings: BackendSettings) -> List[str]:
        try:
            return await self._call("GET", "/api/tags", settings, _model_names)
        except BackendUnavailableError as exc:
            logging.debug("Could not list models: %s", exc)
            return []

    async def has_model(self, settings: BackendSettings) -> bool:
        models = await self.list_models(settings)
        return any(settings.model in name for name in models)

    async def status(self, settings: BackendSettings) -> BackendStatus:
        try:
            models = await self._call("GET", "/api/tags", settings, _model_names)
        except BackendUnavailableError:
            return BackendStatus.OFFLINE
        if any(settings.model in name for name in models):
            return BackendStatus.READY
        return BackendStatus.NO_MODEL

    async def generate(
        self,
        prompt: str,
        settings: BackendSettings,
        options: Optional[Dict[str, Any]] = None,
    ) -> str:
        """Return the backend's completion for ``prompt``.

        Raises :class:`BackendUnavailableError` when every candidate address
        failed, timed out or answered with something other than a completion.
        """

        body = {
            "model": settings.model,
            "prompt": prompt,
            "stream": False,
            "options": dict(options or {}),
        }
        return await self._call("POST", "/api/generate", settings, _generated_text, json=body)


def _model_names(response: httpx.Response) -> List[str]:
    payload = response.json()
    if not isinstance(payload, dict):
        raise ValueError("expected a JSON object")
    models = payload.get("models") or []
    if not isinstance(models, list):
        raise ValueError("'models' is not a list")
    return [m["name"] for m in models if isinstance(m, dict) and isinstance(m.get("name"), str)]


def _generated_text(response: httpx.Response) -> str:
    payload = response.json()
    if not isinstance(payload, dict) or not isinstance(payload.get("response"), str):
        raise ValueError("missing 'response' text")
    return payload["response"]
