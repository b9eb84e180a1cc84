"""Concierge CLI: chat-driven invoice retrieval and audio transcription.

Usage:
    concierge serve                                  # Run the Slack bot (foreground)
    concierge invoice                                # Latest invoice, credentials from env
    concierge invoice -u alice --no-download         # Prompt for password, no PDF
    concierge transcribe meeting.mp3                 # Print the transcript
    concierge transcribe talk.m4a -f srt -o talk.srt # Subtitles with timestamps
    concierge config                                 # Show configuration
    concierge config invoice.invoice_link_policy=abort
"""

import asyncio
import json
import logging
import sys
from pathlib import Path

import click
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from concierge.config import SECRET_FIELDS, ConciergeConfig, ensure_concierge_home
from concierge.errors import ConciergeError
from concierge.formats import FORMATS, render, write_output
from concierge.invoice import Credentials

console = Console()


def _run_async(coro):
    """Run async function from sync context."""
    return asyncio.run(coro)


def _fail(error: ConciergeError):
    console.print(f"[bold red]{error.user_message}[/]")
    console.print(f"[dim]{error}[/]")
    sys.exit(1)


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Debug logging")
def cli(verbose):
    """Concierge: invoice retrieval and transcription over chat."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    )


@cli.command()
def serve():
    """Run the Slack bot in the foreground (Socket Mode)."""
    console.print("[bold blue]Concierge daemon[/] starting in foreground...\n")
    from concierge.daemon import ConciergeDaemon

    try:
        d = ConciergeDaemon()
        _run_async(d.start())
    except RuntimeError as e:
        console.print(f"[red]{e}[/]")
        sys.exit(1)


@cli.command()
@click.option("--username", "-u", envvar="CONCIERGE_PORTAL_USERNAME", required=True, help="Portal username")
@click.option(
    "--password", "-p", envvar="CONCIERGE_PORTAL_PASSWORD",
    prompt=True, hide_input=True, help="Portal password",
)
@click.option("--url", default=None, help="Portal login URL (default from config)")
@click.option("--download/--no-download", default=None, help="Download the invoice PDF")
@click.option("--dest", type=click.Path(file_okay=False, path_type=Path), default=None, help="PDF directory")
def invoice(username, password, url, download, dest):
    """Fetch the latest invoice from the portal."""
    from concierge.daemon import build_services

    ensure_concierge_home()
    cfg = ConciergeConfig.load()
    if download is None:
        download = cfg.invoice.download_file
    services = build_services(cfg)
    credentials = Credentials(username=username, password=password)

    async def _go():
        try:
            return await services.pipeline.run(credentials, url=url, download=download, destination_dir=dest)
        finally:
            await services.close()

    console.print(f"\n[bold blue]Concierge[/] fetching invoice for [bold]{credentials.masked_username}[/]\n")
    try:
        outcome = _run_async(_go())
    except ConciergeError as e:
        _fail(e)

    table = Table(title="Latest invoice", show_header=False)
    table.add_column("Field", style="cyan")
    table.add_column("Value")
    table.add_row("Invoice ID", outcome.record.factura_id)
    table.add_row("Expiration date", outcome.record.expiration_date)
    table.add_row("Amount", outcome.record.amount)
    if outcome.artifact:
        table.add_row("PDF", str(outcome.artifact))
    table.add_row("Duration", f"{outcome.duration_ms / 1000:.1f}s")
    console.print(table)
    if outcome.degraded:
        console.print("[yellow]Invoice section link was not found; results came from the landing page.[/]")


@cli.command()
@click.argument("file", type=click.Path(dir_okay=False, path_type=Path))
@click.option("--format", "-f", "fmt", type=click.Choice(FORMATS), default="text", help="Output format")
@click.option("--language", "-l", default=None, help="Language code, or 'auto'")
@click.option("--timestamps", is_flag=True, help="Request segment timestamps")
@click.option("--no-clean", is_flag=True, help="Skip transcript cleaning")
@click.option("--no-analysis", is_flag=True, help="Skip content analysis")
@click.option("--output", "-o", type=click.Path(path_type=Path), default=None, help="Output file or directory")
def transcribe(file, fmt, language, timestamps, no_clean, no_analysis, output):
    """Transcribe an audio file."""
    from concierge.daemon import build_services
    from concierge.transcription import TranscriptionOptions

    ensure_concierge_home()
    cfg = ConciergeConfig.load()
    services = build_services(cfg)
    options = TranscriptionOptions(
        language=language or cfg.transcription.default_language,
        include_timestamps=timestamps or fmt in ("srt", "vtt"),
        clean=cfg.transcription.clean_transcription and not no_clean,
        analyze=cfg.transcription.include_analysis and not no_analysis,
        output_format=fmt,
    )

    try:
        result = _run_async(services.transcription.transcribe(file, options))
    except ConciergeError as e:
        _fail(e)

    console.print(f"[green]Transcription completed using {result.service}[/]")
    if result.analysis is not None:
        a = result.analysis
        console.print(Panel(
            f"Type: {a.content_type}\nLanguage: {a.detected_language}\n"
            f"Speakers: {a.speaker_count}\nTopics: {', '.join(a.key_topics)}\n\n{a.summary}",
            title="Analysis",
            border_style="blue",
        ))

    if output is None and fmt == "text":
        console.print(render(result, "text"))
        return

    path = write_output(result, fmt, output or Path(cfg.transcription.output_dir))
    console.print(f"[green]Output saved to: {path}[/]")


@cli.command()
@click.argument("key_value", nargs=-1)
def config(key_value):
    """View or set Concierge configuration.

    Secrets (API keys, Slack tokens) come from the environment only.

    Examples:
        concierge config                                  # show all
        concierge config sessions.ttl_seconds=300
        concierge config transcription.backends=groq-whisper,openai-whisper
    """
    cfg = ConciergeConfig.load()
    if not key_value:
        data = cfg.to_dict(include_secrets=True)
        for section in data.values():
            for key in SECRET_FIELDS & section.keys():
                section[key] = "(set)" if section[key] else "(not set)"
        console.print_json(json.dumps(data))
        return

    kv = " ".join(key_value)
    if "=" not in kv:
        console.print("[yellow]Usage: concierge config key=value[/]")
        return

    key, value = kv.split("=", 1)
    key = key.strip()
    value = value.strip()
    try:
        cfg.set_value(key, value)
    except KeyError as e:
        console.print(f"[red]{e.args[0]}[/]")
        return
    except ValueError:
        console.print(f"[red]Invalid value for {key}: {value}[/]")
        return

    cfg.save()
    console.print(f"[green]Set {key} = {value}[/]")


def main():
    """Entry point."""
    cli()


if __name__ == "__main__":
    main()
