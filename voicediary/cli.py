"""Command line interface for the voicediary application."""

from __future__ import annotations

import asyncio
import json
import logging
import mimetypes
from dataclasses import asdict
from pathlib import Path
from typing import Awaitable, Dict, NoReturn, Optional, TypeVar

import typer

from . import config as config_mod
from .budget import StorageError
from .config import ConfigError
from .diary import DiaryService
from .models import DEFAULT_AUDIO_TYPE, AudioClip, DiaryEntry
from .ollama import BackendStatus

app = typer.Typer(add_completion=False, help="Voice journal with local AI transcript correction.")

T = TypeVar("T")


def _run(coro: Awaitable[T]) -> T:
    return asyncio.run(coro)  # type: ignore[arg-type]


def _load_service() -> DiaryService:
    try:
        cfg = config_mod.load_config()
    except ConfigError as exc:
        typer.secho(str(exc), fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1) from exc
    service = DiaryService(config=cfg)
    _run(service.load())
    return service


def _fail(exc: Exception) -> NoReturn:
    typer.secho(str(exc), fg=typer.colors.RED, err=True)
    raise typer.Exit(code=1) from exc


def _print_table(entries: list[DiaryEntry]) -> None:
    header = f"{'ID':<30}  {'Created':<16}  {'Tags':<20}  Transcript"
    typer.echo(header)
    typer.echo("-" * len(header))
    for entry in entries:
        created = entry.created_at.astimezone().strftime("%Y-%m-%d %H:%M")
        tags = ", ".join(entry.tags) or "-"
        preview = entry.transcript.replace("\n", " ")
        if len(preview) > 50:
            preview = preview[:47] + "..."
        typer.echo(f"{entry.id:<30}  {created:<16}  {tags:<20}  {preview or 'No transcription available'}")


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    verbose: bool = typer.Option(False, "--verbose", help="Log pipeline details to stderr."),
    version: bool = typer.Option(False, "--version", "-v", help="Show version and exit"),
) -> None:
    if version:
        typer.echo("voicediary v0.1.0")
        raise typer.Exit()

    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    if verbose:
        logging.getLogger("httpx").setLevel(logging.INFO)

    if ctx.invoked_subcommand is None:
        typer.echo(ctx.get_help())
        raise typer.Exit()


@app.command()
def new() -> None:
    """Create an empty entry."""

    service = _load_service()
    try:
        entry = _run(service.create_entry())
    except StorageError as exc:
        _fail(exc)
    typer.secho(f"Created entry {entry.id}.", fg=typer.colors.BLUE)


@app.command()
def add(
    text: str = typer.Argument(..., help="Raw speech-recognition text of the recording."),
    entry_id: Optional[str] = typer.Option(None, "--entry", help="Append to an existing entry."),
    audio: Optional[Path] = typer.Option(None, "--audio", exists=True, readable=True, help="Recording to attach."),
    segment_id: Optional[str] = typer.Option(None, "--segment-id", help="Identifier of the recording session."),
) -> None:
    """Add a recorded segment: correct it, append it and store the result."""

    service = _load_service()
    clip = None
    if audio is not None:
        mime_type = mimetypes.guess_type(audio.name)[0] or DEFAULT_AUDIO_TYPE
        clip = AudioClip(data=audio.read_bytes(), mime_type=mime_type)

    created = entry_id is None
    try:
        if created:
            entry_id = _run(service.create_entry()).id
        entry = _run(service.complete_recording(entry_id, text, audio=clip, segment_id=segment_id))
    except StorageError as exc:
        if created and entry_id is not None:
            # Do not leave an empty entry behind for a recording that was not stored.
            try:
                _run(service.delete_entry(entry_id))
            except StorageError as cleanup_exc:
                logging.warning("Could not remove empty entry %s: %s", entry_id, cleanup_exc)
        _fail(exc)

    typer.echo(entry.transcript)
    if entry.tags:
        typer.secho("\nTags: " + ", ".join(entry.tags), fg=typer.colors.GREEN)
    typer.secho(f"\nSaved entry {entry.id}.", fg=typer.colors.BLUE)


@app.command("list")
def list_command(
    query: Optional[str] = typer.Option(None, "--query", "-q", help="Only show entries containing this text."),
) -> None:
    """List stored entries, newest first."""

    service = _load_service()
    rows = service.search(query or "")
    if not rows:
        typer.echo("No entries found. Use `voicediary add` to create one.")
        return
    _print_table(rows)


@app.command()
def search(query: str = typer.Argument(..., help="Text to look for in transcripts.")) -> None:
    """Search transcripts."""

    service = _load_service()
    rows = service.search(query)
    if not rows:
        typer.echo(f"No entries match {query!r}.")
        return
    _print_table(rows)


@app.command()
def show(entry_id: str = typer.Argument(..., help="Identifier of the entry to display.")) -> None:
    """Show a stored entry."""

    service = _load_service()
    try:
        entry = service.get(entry_id)
    except StorageError as exc:
        _fail(exc)

    typer.secho(f"Entry: {entry.id}", fg=typer.colors.BLUE)
    typer.echo(f"Created: {entry.created_at.astimezone():%Y-%m-%d %H:%M}")
    if entry.audio is not None:
        typer.echo(f"Audio: {entry.audio.size} bytes ({entry.audio.mime_type})")
    if entry.tags:
        typer.secho("Tags: " + ", ".join(entry.tags), fg=typer.colors.GREEN)
    typer.echo("\nTranscript:\n" + (entry.transcript or "Your transcription will appear here"))


@app.command()
def edit(
    entry_id: str = typer.Argument(..., help="Identifier of the entry."),
    text: str = typer.Argument(..., help="Replacement transcript."),
) -> None:
    """Replace an entry's transcript."""

    if not text.strip():
        typer.secho("Transcript cannot be empty.", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)
    service = _load_service()
    try:
        _run(service.update_transcript(entry_id, text))
    except StorageError as exc:
        _fail(exc)
    typer.secho("Transcript updated.", fg=typer.colors.BLUE)


@app.command()
def tag(entry_id: str = typer.Argument(..., help="Identifier of the entry.")) -> None:
    """Regenerate the tags of an entry."""

    service = _load_service()
    try:
        entry = _run(service.retag(entry_id))
    except StorageError as exc:
        _fail(exc)
    typer.secho("Tags: " + ", ".join(entry.tags), fg=typer.colors.GREEN)


@app.command()
def delete(entry_id: str = typer.Argument(..., help="Identifier of the entry to delete.")) -> None:
    """Delete an entry."""

    service = _load_service()
    try:
        _run(service.delete_entry(entry_id))
    except StorageError as exc:
        _fail(exc)
    typer.secho(f"Entry {entry_id} deleted.", fg=typer.colors.BLUE)


@app.command("remove-audio")
def remove_audio(entry_id: str = typer.Argument(..., help="Identifier of the entry.")) -> None:
    """Drop the recording of an entry to free space, keeping its text."""

    service = _load_service()
    try:
        _run(service.remove_audio(entry_id))
    except StorageError as exc:
        _fail(exc)
    typer.secho(f"Audio removed from entry {entry_id}.", fg=typer.colors.BLUE)


@app.command()
def export(
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="Write the export to this file."),
) -> None:
    """Export every entry, including audio, as JSON."""

    service = _load_service()
    document = _run(service.export())
    if output is None:
        typer.echo(document)
        return
    output.write_text(document)
    typer.secho(f"Exported {len(service.entries)} entries to {output}.", fg=typer.colors.BLUE)


@app.command()
def info() -> None:
    """Show storage usage."""

    service = _load_service()
    usage = _run(service.info())
    typer.echo(f"Entries: {usage.entry_count}")
    typer.echo(
        f"Used: {usage.used_bytes / 1024:.1f} KiB of {usage.capacity_bytes / 1024:.1f} KiB "
        f"({usage.percent_used:.1f}%)"
    )
    health = service.store.validate()
    for problem in health.errors:
        typer.secho(f"Warning: {problem}", fg=typer.colors.YELLOW)


@app.command()
def models() -> None:
    """List models installed on the AI backend."""

    service = _load_service()
    names = _run(service.available_models())
    if not names:
        typer.echo("No models found. Is Ollama running? Start it with `ollama serve`.")
        return
    for name in names:
        marker = "*" if service.config.correction_model in name else " "
        typer.echo(f"{marker} {name}")


@app.command()
def status() -> None:
    """Check whether the AI backend and correction model are ready."""

    service = _load_service()
    state = _run(service.backend_status())
    messages = {
        BackendStatus.READY: ("AI correction ready.", typer.colors.GREEN),
        BackendStatus.NO_MODEL: (
            f"Backend is running but {service.config.correction_model} is not installed.",
            typer.colors.YELLOW,
        ),
        BackendStatus.OFFLINE: ("AI backend offline; raw transcripts will be kept.", typer.colors.RED),
    }
    text, colour = messages[state]
    typer.secho(text, fg=colour)
    if state is not BackendStatus.READY:
        raise typer.Exit(code=1)


@app.command()
def config(
    ollama_url: Optional[str] = typer.Option(None, help="Base URL of the Ollama backend."),
    correction_model: Optional[str] = typer.Option(None, help="Model used for grammar correction."),
    tagging_model: Optional[str] = typer.Option(None, help="Model used for auto-tagging."),
    request_timeout: Optional[float] = typer.Option(None, help="Per-address timeout (seconds) for AI requests."),
    prefer_loopback: Optional[bool] = typer.Option(
        None,
        "--prefer-loopback/--prefer-configured",
        help="Try local addresses before a remote --ollama-url.",
    ),
    correct_grammar: Optional[bool] = typer.Option(
        None, "--correct/--no-correct", help="Toggle AI grammar correction."
    ),
    auto_tag: Optional[bool] = typer.Option(None, "--auto-tag/--no-auto-tag", help="Toggle automatic tagging."),
    show: bool = typer.Option(False, "--show", help="Display the active configuration."),
) -> None:
    """Update or inspect configuration settings."""

    updates: Dict[str, object] = {
        key: value
        for key, value in {
            "ollama_url": ollama_url,
            "correction_model": correction_model,
            "tagging_model": tagging_model,
            "request_timeout": request_timeout,
            "prefer_loopback": prefer_loopback,
            "correct_grammar": correct_grammar,
            "auto_tag": auto_tag,
        }.items()
        if value is not None
    }

    if show or not updates:
        try:
            cfg = config_mod.load_config()
        except ConfigError as exc:
            _fail(exc)
        typer.echo(json.dumps(asdict(cfg), indent=2, default=str))
        return

    try:
        config_mod.update_config(**updates)
    except ConfigError as exc:
        _fail(exc)
    typer.secho("Configuration updated.", fg=typer.colors.BLUE)


@app.command()
def setup() -> None:
    """Check the local AI backend and walk through configuration."""

    from .onboarding import run_onboarding

    try:
        run_onboarding()
    except ConfigError as exc:
        _fail(exc)


if __name__ == "__main__":  # pragma: no cover
    app()
