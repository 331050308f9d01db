"""FastAPI application exposing the voicediary collection."""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import List, Optional

from fastapi import (
    Depends,
    FastAPI,
    File,
    Form,
    HTTPException,
    Response,
    UploadFile,
    status,
)
from pydantic import BaseModel, Field

from ..budget import QuotaExceededError, StorageError
from ..config import load_config
from ..diary import DiaryService, EntryNotFoundError
from ..models import DEFAULT_AUDIO_TYPE, AudioClip, DiaryEntry
from ..ollama import candidate_urls

app = FastAPI(
    title="voicediary API",
    description="Voice journal storage with local AI transcript correction.",
    version="0.1.0",
)

_service_lock = asyncio.Lock()
_service: Optional[DiaryService] = None


class HealthResponse(BaseModel):
    status: str = "ok"
    entries: int


class BackendResponse(BaseModel):
    status: str
    model: str
    models: List[str] = Field(default_factory=list)
    candidates: List[str] = Field(default_factory=list)


class EntryPayload(BaseModel):
    id: str
    created_at: datetime
    transcript: str
    tags: List[str] = Field(default_factory=list)
    has_audio: bool
    audio_size: Optional[int] = None
    audio_type: Optional[str] = None
    is_recording: bool = False
    is_transcribing: bool = False


class TranscriptUpdate(BaseModel):
    transcript: str


class StorageResponse(BaseModel):
    used_bytes: int
    capacity_bytes: int
    available_bytes: int
    percent_used: float
    entry_count: int
    version: Optional[str] = None
    errors: List[str] = Field(default_factory=list)


async def get_service() -> DiaryService:
    global _service
    if _service is not None:
        return _service
    async with _service_lock:
        if _service is None:
            service = DiaryService(config=load_config())
            await service.load()
            _service = service
    return _service


def _entry_to_payload(entry: DiaryEntry) -> EntryPayload:
    return EntryPayload(
        id=entry.id,
        created_at=entry.created_at,
        transcript=entry.transcript,
        tags=list(entry.tags),
        has_audio=entry.audio is not None,
        audio_size=entry.audio.size if entry.audio else None,
        audio_type=entry.audio.mime_type if entry.audio else None,
        is_recording=entry.is_recording,
        is_transcribing=entry.is_transcribing,
    )


def _lookup(service: DiaryService, entry_id: str) -> DiaryEntry:
    try:
        return service.get(entry_id)
    except EntryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc


def _storage_failure(exc: StorageError) -> HTTPException:
    if isinstance(exc, EntryNotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    if isinstance(exc, QuotaExceededError):
        return HTTPException(status_code=status.HTTP_507_INSUFFICIENT_STORAGE, detail=str(exc))
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc))


@app.get("/health", response_model=HealthResponse)
async def healthcheck(service: DiaryService = Depends(get_service)) -> HealthResponse:
    return HealthResponse(entries=len(service.entries))


@app.get("/backend", response_model=BackendResponse)
async def backend(service: DiaryService = Depends(get_service)) -> BackendResponse:
    backend_status = await service.backend_status()
    models = await service.available_models()
    settings = service.correction_settings or service.tagging_settings
    return BackendResponse(
        status=backend_status.value,
        model=service.config.correction_model,
        models=models,
        candidates=candidate_urls(settings),
    )


@app.get("/entries", response_model=list[EntryPayload])
async def list_entries(q: str = "", service: DiaryService = Depends(get_service)) -> list[EntryPayload]:
    return [_entry_to_payload(entry) for entry in service.search(q)]


@app.post("/entries", response_model=EntryPayload, status_code=status.HTTP_201_CREATED)
async def create_entry(service: DiaryService = Depends(get_service)) -> EntryPayload:
    try:
        entry = await service.create_entry()
    except StorageError as exc:
        raise _storage_failure(exc) from exc
    return _entry_to_payload(entry)


@app.get("/entries/{entry_id}", response_model=EntryPayload)
async def get_entry(entry_id: str, service: DiaryService = Depends(get_service)) -> EntryPayload:
    return _entry_to_payload(_lookup(service, entry_id))


@app.get("/entries/{entry_id}/audio")
async def get_audio(entry_id: str, service: DiaryService = Depends(get_service)) -> Response:
    entry = _lookup(service, entry_id)
    if entry.audio is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Entry has no audio")
    return Response(content=entry.audio.data, media_type=entry.audio.mime_type)


@app.put("/entries/{entry_id}/transcript", response_model=EntryPayload)
async def update_transcript(
    entry_id: str,
    payload: TranscriptUpdate,
    service: DiaryService = Depends(get_service),
) -> EntryPayload:
    _lookup(service, entry_id)
    try:
        entry = await service.update_transcript(entry_id, payload.transcript)
    except StorageError as exc:
        raise _storage_failure(exc) from exc
    return _entry_to_payload(entry)


@app.post("/entries/{entry_id}/segments", response_model=EntryPayload)
async def add_segment(
    entry_id: str,
    text: str = Form(""),
    segment_id: Optional[str] = Form(None),
    file: Optional[UploadFile] = File(None),
    service: DiaryService = Depends(get_service),
) -> EntryPayload:
    _lookup(service, entry_id)
    audio = None
    if file is not None:
        data = await file.read()
        audio = AudioClip(data=data, mime_type=file.content_type or DEFAULT_AUDIO_TYPE)
    try:
        entry = await service.complete_recording(entry_id, text, audio=audio, segment_id=segment_id)
    except StorageError as exc:
        raise _storage_failure(exc) from exc
    return _entry_to_payload(entry)


@app.post("/entries/{entry_id}/tags", response_model=EntryPayload)
async def retag_entry(entry_id: str, service: DiaryService = Depends(get_service)) -> EntryPayload:
    _lookup(service, entry_id)
    try:
        entry = await service.retag(entry_id)
    except StorageError as exc:
        raise _storage_failure(exc) from exc
    return _entry_to_payload(entry)


@app.delete("/entries/{entry_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_entry(entry_id: str, service: DiaryService = Depends(get_service)) -> None:
    _lookup(service, entry_id)
    try:
        await service.delete_entry(entry_id)
    except StorageError as exc:
        raise _storage_failure(exc) from exc


@app.delete("/entries/{entry_id}/audio", response_model=EntryPayload)
async def remove_audio(entry_id: str, service: DiaryService = Depends(get_service)) -> EntryPayload:
    _lookup(service, entry_id)
    try:
        entry = await service.remove_audio(entry_id)
    except StorageError as exc:
        raise _storage_failure(exc) from exc
    return _entry_to_payload(entry)


@app.get("/export")
async def export_entries(service: DiaryService = Depends(get_service)) -> Response:
    document = await service.export()
    return Response(
        content=document,
        media_type="application/json",
        headers={"Content-Disposition": 'attachment; filename="voice-diary-export.json"'},
    )


@app.get("/storage", response_model=StorageResponse)
async def storage_info(service: DiaryService = Depends(get_service)) -> StorageResponse:
    info = await service.info()
    health = await asyncio.to_thread(service.store.validate)
    return StorageResponse(
        used_bytes=info.used_bytes,
        capacity_bytes=info.capacity_bytes,
        available_bytes=info.available_bytes,
        percent_used=round(info.percent_used, 2),
        entry_count=info.entry_count,
        version=await asyncio.to_thread(service.store.stored_version),
        errors=health.errors,
    )
