from __future__ import annotations

import asyncio
from typing import List, Tuple

from rich.console import Console
from rich.panel import Panel
from rich.prompt import Confirm, Prompt
from rich.table import Table
from rich.text import Text

from .config import CONFIG_PATH, load_config, save_config
from .models import Config
from .ollama import BackendSettings, OllamaClient, candidate_urls, resolve_model


async def _probe(client: OllamaClient, config: Config) -> Tuple[List[Tuple[str, bool]], List[str]]:
    settings = BackendSettings.for_correction(config)
    urls = candidate_urls(settings)
    results = await asyncio.gather(*(client.reachable(url, config.request_timeout) for url in urls))
    models = await client.list_models(settings)
    return list(zip(urls, results)), models


def _ask_model(label: str, models: List[str], current: str) -> str:
    default = resolve_model(models, current) or current
    if models:
        return Prompt.ask(label, choices=models + ([default] if default not in models else []), default=default)
    return Prompt.ask(label, default=default)


def run_onboarding() -> Config:
    console = Console()
    client = OllamaClient()

    console.clear()

    welcome_text = Text()
    welcome_text.append("🎙️  Welcome to voicediary!\n\n", style="bold cyan")
    welcome_text.append("Grammar correction and tagging run on a local Ollama server\n", style="dim")

    console.print(Panel(welcome_text, border_style="cyan", expand=False))
    console.print()

    config = load_config()

    console.print("[bold]AI Backend[/bold]")
    console.print()
    with console.status("Looking for Ollama..."):
        reachability, models = asyncio.run(_probe(client, config))

    addresses = Table(show_header=True, box=None, padding=(0, 2))
    addresses.add_column("Address", style="cyan")
    addresses.add_column("Status")
    for url, ok in reachability:
        addresses.add_row(url, "[green]running[/green]" if ok else "[red]unreachable[/red]")
    console.print(addresses)
    console.print()

    if not any(ok for _, ok in reachability):
        console.print("[yellow]Ollama is not running.[/yellow]")
        console.print("  Install it from [cyan]https://ollama.ai/download[/cyan] and start it with [cyan]ollama serve[/cyan].")
        console.print("  Recordings are still saved; transcripts are kept uncorrected until it is available.")
        console.print()
        custom = Prompt.ask("Ollama URL (leave empty for localhost)", default=config.ollama_url or "")
        config.ollama_url = custom.strip() or None
        if config.ollama_url:
            config.prefer_loopback = Confirm.ask(
                "Prefer a local Ollama over this address when both are running?",
                default=config.prefer_loopback,
            )
    console.print()

    console.print("[bold]Models[/bold]")
    console.print()
    if models:
        console.print("Installed models: " + ", ".join(models))
    config.correction_model = _ask_model("Correction model", models, config.correction_model)
    config.tagging_model = _ask_model("Tagging model", models, config.tagging_model)
    config.auto_tag = Confirm.ask("Tag entries automatically?", default=config.auto_tag)

    missing = [name for name in {config.correction_model, config.tagging_model} if not any(name in m for m in models)]

    console.print()
    console.print("[bold green]✓ Setup Complete![/bold green]")
    console.print()

    summary = Table(show_header=False, box=None, padding=(0, 2))
    summary.add_column(style="cyan")
    summary.add_column()

    summary.add_row("Backend:", config.ollama_url or "local")
    summary.add_row("Correction model:", config.correction_model)
    summary.add_row("Tagging model:", config.tagging_model)
    summary.add_row("Auto-tag:", "yes" if config.auto_tag else "no")

    console.print(Panel(summary, title="Your Configuration", border_style="green"))
    console.print()

    for name in sorted(missing):
        console.print(f"[yellow]Model {name} is not installed.[/yellow] Pull it with [cyan]ollama pull {name}[/cyan]")
    if missing:
        console.print()

    if Confirm.ask("Save this configuration?", default=True):
        save_config(config)
        console.print("[green]Configuration saved to[/green]", CONFIG_PATH)
        console.print()
        console.print("[bold]To add a recording, run:[/bold]")
        console.print('  [cyan]voicediary add "what you said" --audio note.webm[/cyan]')
        console.print()
        return config
    else:
        console.print("[yellow]Configuration not saved. Run 'voicediary setup' to try again.[/yellow]")
        return config
