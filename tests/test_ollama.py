import json

import httpx
import pytest

from voicediary.ollama import (
    LOOPBACK_URLS,
    BackendSettings,
    BackendStatus,
    BackendUnavailableError,
    OllamaClient,
    candidate_urls,
    is_loopback,
    resolve_model,
)

SETTINGS = BackendSettings(model="gemma3:4b", timeout=1.0)


def _client(handler):
    return OllamaClient(transport=httpx.MockTransport(handler))


def test_candidates_default_to_loopback_addresses():
    assert candidate_urls(SETTINGS) == list(LOOPBACK_URLS)


def test_configured_address_is_tried_first():
    settings = BackendSettings(model="m", base_url="http://gpu-box:11434/")
    assert candidate_urls(settings) == ["http://gpu-box:11434", *LOOPBACK_URLS]


def test_configured_loopback_address_is_not_repeated():
    settings = BackendSettings(model="m", base_url="http://127.0.0.1:11434")
    urls = candidate_urls(settings)
    assert urls[0] == "http://127.0.0.1:11434"
    assert len(urls) == len(set(urls)) == 3


def test_prefer_loopback_moves_remote_address_last():
    settings = BackendSettings(model="m", base_url="http://gpu-box:11434", prefer_loopback=True)
    assert candidate_urls(settings) == [*LOOPBACK_URLS, "http://gpu-box:11434"]


def test_is_loopback():
    assert is_loopback("http://localhost:11434")
    assert is_loopback("http://[::1]:11434")
    assert is_loopback("http://127.0.0.2:11434")
    assert not is_loopback("http://10.0.0.5:11434")


def test_resolve_model():
    assert resolve_model(["llama3:8b", "gemma3:4b"], "gemma3:4b") == "gemma3:4b"
    assert resolve_model(["llama3:8b"], "gemma3:4b") == "llama3:8b"
    assert resolve_model([], "gemma3:4b") == "gemma3:4b"


@pytest.mark.asyncio
async def test_generate_falls_back_to_next_address():
    seen = []

    def handler(request):
        seen.append(request.url.host)
        if request.url.host == "localhost":
            return httpx.Response(500, json={"error": "boom"})
        body = json.loads(request.content)
        assert body["model"] == "gemma3:4b"
        assert body["stream"] is False
        assert body["options"] == {"temperature": 0.1}
        return httpx.Response(200, json={"response": "Fixed.", "done": True})

    text = await _client(handler).generate("fix this", SETTINGS, {"temperature": 0.1})

    assert text == "Fixed."
    assert seen == ["localhost", "127.0.0.1"]


@pytest.mark.asyncio
async def test_generate_treats_malformed_json_as_failure():
    def handler(request):
        if request.url.host == "::1":
            return httpx.Response(200, json={"response": "ok", "done": True})
        return httpx.Response(200, content=b"<html>not json</html>")

    assert await _client(handler).generate("p", SETTINGS) == "ok"


@pytest.mark.asyncio
async def test_generate_raises_when_every_address_fails():
    def handler(request):
        if request.url.host == "localhost":
            raise httpx.ReadTimeout("slow", request=request)
        raise httpx.ConnectError("refused", request=request)

    with pytest.raises(BackendUnavailableError):
        await _client(handler).generate("p", SETTINGS)


@pytest.mark.asyncio
async def test_model_listing_and_status():
    def handler(request):
        assert request.url.path == "/api/tags"
        return httpx.Response(200, json={"models": [{"name": "gemma3:4b"}, {"name": "llama3:8b"}]})

    client = _client(handler)
    assert await client.list_models(SETTINGS) == ["gemma3:4b", "llama3:8b"]
    assert await client.has_model(SETTINGS)
    assert await client.status(SETTINGS) is BackendStatus.READY
    assert await client.status(BackendSettings(model="mistral")) is BackendStatus.NO_MODEL


@pytest.mark.asyncio
async def test_offline_backend():
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    client = _client(handler)
    assert await client.is_available(SETTINGS) is False
    assert await client.list_models(SETTINGS) == []
    assert await client.status(SETTINGS) is BackendStatus.OFFLINE
    assert await client.reachable("http://localhost:11434") is False
