"""Tests for the HTTP API."""

import sqlite3

import httpx
import pytest
from fastapi.testclient import TestClient

from voicediary.api import app, get_service
from voicediary.budget import StorageBudget
from voicediary.diary import DiaryService
from voicediary.models import Config
from voicediary.ollama import OllamaClient
from voicediary.storage import EntryStore, SlotStore


@pytest.fixture
def client(tmp_path):
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    service = DiaryService(
        store=EntryStore(slots=SlotStore(db_path=tmp_path / "diary.db"), budget=StorageBudget(64 * 1024)),
        config=Config(request_timeout=1.0),
        client=OllamaClient(transport=httpx.MockTransport(handler)),
    )

    async def override() -> DiaryService:
        return service

    app.dependency_overrides[get_service] = override
    yield TestClient(app)
    app.dependency_overrides.clear()


def test_health(client: TestClient) -> None:
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok", "entries": 0}


def test_create_and_record_segment(client: TestClient) -> None:
    created = client.post("/entries")
    assert created.status_code == 201
    entry_id = created.json()["id"]

    response = client.post(
        f"/entries/{entry_id}/segments",
        data={"text": "project meeting notes", "segment_id": "stop-1"},
        files={"file": ("clip.webm", b"opus-bytes", "audio/webm")},
    )
    assert response.status_code == 200
    payload = response.json()
    assert payload["transcript"] == "project meeting notes"
    assert payload["tags"] == ["work"]
    assert payload["has_audio"] is True
    assert payload["audio_size"] == len(b"opus-bytes")

    audio = client.get(f"/entries/{entry_id}/audio")
    assert audio.content == b"opus-bytes"
    assert audio.headers["content-type"].startswith("audio/webm")


def test_edit_list_and_search(client: TestClient) -> None:
    entry_id = client.post("/entries").json()["id"]
    client.put(f"/entries/{entry_id}/transcript", json={"transcript": "Quiet evening at home"})

    assert len(client.get("/entries").json()) == 1
    assert client.get("/entries", params={"q": "evening"}).json()[0]["id"] == entry_id
    assert client.get("/entries", params={"q": "office"}).json() == []


def test_unknown_entry_is_404(client: TestClient) -> None:
    assert client.get("/entries/missing").status_code == 404
    assert client.delete("/entries/missing").status_code == 404
    assert client.post("/entries/missing/segments", data={"text": "x"}).status_code == 404


def test_quota_exceeded_is_507(client: TestClient) -> None:
    entry_id = client.post("/entries").json()["id"]
    response = client.post(
        f"/entries/{entry_id}/segments",
        data={"text": "too big"},
        files={"file": ("clip.webm", b"x" * (80 * 1024), "audio/webm")},
    )
    assert response.status_code == 507


def test_remove_audio_delete_and_export(client: TestClient) -> None:
    entry_id = client.post("/entries").json()["id"]
    client.post(
        f"/entries/{entry_id}/segments",
        data={"text": "hello"},
        files={"file": ("clip.webm", b"abc", "audio/webm")},
    )

    response = client.delete(f"/entries/{entry_id}/audio")
    assert response.status_code == 200
    assert response.json()["has_audio"] is False

    export = client.get("/export").json()
    assert export["entries"][0]["id"] == entry_id
    assert export["entries"][0]["audioBlob"] is None

    storage = client.get("/storage").json()
    assert storage["entry_count"] == 1
    assert storage["version"] == "1.1"

    assert client.delete(f"/entries/{entry_id}").status_code == 204
    assert client.get("/entries").json() == []


def test_backend_reports_offline(client: TestClient) -> None:
    payload = client.get("/backend").json()
    assert payload["status"] == "offline"
    assert payload["models"] == []
    assert payload["candidates"][0] == "http://localhost:11434"


def test_write_failure_is_500(client: TestClient, monkeypatch) -> None:
    def broken_put(self, values):
        raise sqlite3.OperationalError("database is locked")

    monkeypatch.setattr(SlotStore, "put", broken_put)

    response = client.post("/entries")
    assert response.status_code == 500
    assert "database is locked" in response.json()["detail"]
    assert client.get("/entries").json() == []
