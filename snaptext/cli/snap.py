#!/usr/bin/env python3
"""
Main CLI for snaptext - screenshot OCR to clipboard.

Usage:
    snap capture --mode full          - Capture the screen and copy its text
    snap capture --mode region --region 0,0,800,600
    snap bulk-ocr a.png b.png --out results.txt
    snap watch                        - Watch the screenshot folder
    snap history --search "invoice"   - Browse clipboard history
    snap backends                     - List OCR backends
    snap config set-key openai sk-... - Store an API key
"""

import asyncio
import sys
from datetime import timedelta
from pathlib import Path
from typing import List, Optional

import click
from loguru import logger
from rich.console import Console
from rich.progress import BarColumn, MofNCompleteColumn, Progress, SpinnerColumn, TextColumn
from rich.table import Table

from ..daemon.backends import BACKEND_CLASSES
from ..daemon.bulk import BulkProgress, CommitPolicy, ItemStatus, export_results
from ..daemon.collaborators import NotificationKind, Notifier
from ..daemon.config import BackendConfigStore, Config
from ..daemon.errors import (
    CaptureError,
    ConfigurationError,
    MissingCredential,
    NoTextFound,
    NotAvailable,
    SnapTextError,
    StorageError,
)
from ..daemon.history import HistoryGateway, JsonlHistoryStore
from ..daemon.main import SnapTextDaemon, setup_logging
from ..daemon.models import CaptureRequest, Rect

console = Console()
err_console = Console(stderr=True)

EXIT_OK = 0
EXIT_PARTIAL = 1
EXIT_CONFIG = 2
EXIT_CAPTURE = 3


def exit_code_for(error: Optional[Exception]) -> int:
    """Map a pipeline error to the process exit code."""
    if error is None or isinstance(error, NoTextFound):
        return EXIT_OK
    if isinstance(error, (ConfigurationError, MissingCredential, NotAvailable)):
        return EXIT_CONFIG
    if isinstance(error, CaptureError):
        return EXIT_CAPTURE
    return EXIT_PARTIAL


class ConsoleNotifier(Notifier):
    """Prints notifications to stderr so stdout only carries recognized text."""

    STYLES = {
        NotificationKind.PROGRESS: "dim",
        NotificationKind.SUCCESS: "green",
        NotificationKind.ERROR: "red",
    }

    def notify(self, title: str, body: str, kind: NotificationKind) -> None:
        style = self.STYLES[kind]
        message = f"[{style}]{title}[/{style}]"
        if body:
            message += f": {body}"
        err_console.print(message)


def _load_config(ctx: click.Context) -> Config:
    try:
        config = Config.load(ctx.obj.get("config_path"))
    except (FileNotFoundError, ConfigurationError) as e:
        err_console.print(f"[red]Configuration error:[/red] {e}")
        ctx.exit(EXIT_CONFIG)
    setup_logging(ctx.obj.get("log_level", "WARNING"), config.logging.to_file)
    return config


@click.group()
@click.option("--config", "-c", "config_path", type=click.Path(path_type=Path), help="Config file path")
@click.option("--log-level", default="WARNING", type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"]))
@click.pass_context
def cli(ctx, config_path: Optional[Path], log_level: str):
    """snaptext - turn screenshots into clipboard text."""
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path
    ctx.obj["log_level"] = log_level


@cli.command()
@click.option("--mode", "-m", type=click.Choice(["full", "region", "window"]), default="full")
@click.option("--region", "region_spec", help="Region as LEFT,TOP,WIDTH,HEIGHT (with --mode region)")
@click.option("--backend", "-b", help="OCR backend id (default from config)")
@click.option("--no-history", is_flag=True, help="Do not save the text to history")
@click.pass_context
def capture(ctx, mode: str, region_spec: Optional[str], backend: Optional[str], no_history: bool):
    """Capture the screen and copy the recognized text."""
    if mode == "region":
        if not region_spec:
            raise click.UsageError("--mode region requires --region LEFT,TOP,WIDTH,HEIGHT")
        try:
            request = CaptureRequest.region(Rect.parse(region_spec))
        except ValueError as e:
            raise click.BadParameter(str(e), param_hint="--region")
    elif mode == "window":
        request = CaptureRequest.active_window()
    else:
        request = CaptureRequest.full()

    config = _load_config(ctx)
    ctx.exit(asyncio.run(run_capture(config, request, backend, not no_history)))


async def run_capture(
    config: Config,
    request: CaptureRequest,
    backend: Optional[str],
    record_history: bool,
) -> int:
    """Run one manual capture and return the exit code."""
    daemon = SnapTextDaemon(config, notifier=ConsoleNotifier())
    try:
        await daemon.start()
        result = await daemon.orchestrator.capture(request, backend=backend, record_history=record_history)
    except StorageError as e:
        err_console.print(f"[red]History unavailable:[/red] {e.user_message}")
        return EXIT_PARTIAL
    finally:
        await daemon.stop()

    if result.outcome is not None:
        click.echo(result.outcome.text)
        if result.insert_result is not None and not result.insert_result.inserted:
            err_console.print(f"[dim]History: {result.insert_result.status.value.replace('_', ' ')}[/dim]")
    return exit_code_for(result.error)


@cli.command(name="bulk-ocr")
@click.argument("files", nargs=-1, required=True, type=click.Path(path_type=Path))
@click.option("--backend", "-b", help="OCR backend id (default from config)")
@click.option("--concurrency", "-n", type=click.IntRange(min=1), help="Parallel recognitions")
@click.option("--out", "-o", "out_path", type=click.Path(path_type=Path), help="Write results to a text file")
@click.option("--no-history", is_flag=True, help="Do not save results to history")
@click.pass_context
def bulk_ocr(ctx, files, backend: Optional[str], concurrency: Optional[int], out_path: Optional[Path], no_history: bool):
    """Recognize text in many image files."""
    config = _load_config(ctx)
    ctx.exit(asyncio.run(run_bulk(config, list(files), backend, concurrency, out_path, not no_history)))


async def run_bulk(
    config: Config,
    files: List[Path],
    backend: Optional[str],
    concurrency: Optional[int],
    out_path: Optional[Path],
    record_history: bool,
) -> int:
    """Run a bulk batch and return the exit code."""
    daemon = SnapTextDaemon(config, notifier=ConsoleNotifier())
    try:
        # Fail fast on an unknown backend or a missing key, before any file is read
        try:
            daemon.dispatcher.resolve(backend).check_prerequisites()
        except SnapTextError as e:
            err_console.print(f"[red]{e.user_message}[/red]")
            return exit_code_for(e)

        await daemon.start()
        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            MofNCompleteColumn(),
            transient=True,
            console=err_console,
        ) as progress:
            task = progress.add_task(description="Recognizing...", total=len(files))

            def on_progress(update: BulkProgress) -> None:
                progress.update(task, completed=update.completed)

            report = await daemon.bulk_processor.run(
                files,
                backend=backend,
                concurrency=concurrency,
                progress=on_progress,
                commit=None if record_history else CommitPolicy.NONE,
            )
    except StorageError as e:
        err_console.print(f"[red]History unavailable:[/red] {e.user_message}")
        return EXIT_PARTIAL
    finally:
        await daemon.stop()

    if out_path is not None:
        await export_results(report, out_path)
        err_console.print(f"Results written to [cyan]{out_path}[/cyan]")
    else:
        for item in report.items:
            if item.ok:
                click.echo(f"=== Image {item.index + 1}: {item.path.name} ===")
                click.echo(item.outcome.text)
                click.echo()

    for item in report.items:
        if item.status is ItemStatus.FAILED:
            message = item.error.user_message if isinstance(item.error, SnapTextError) else str(item.error)
            err_console.print(f"[red]✗[/red] {item.path.name}: {message}")

    style = "yellow" if report.has_failures else "green"
    err_console.print(f"[{style}]{report.summary()}[/{style}]")
    return EXIT_PARTIAL if report.has_failures else EXIT_OK


@cli.command()
@click.option("--directory", "-d", type=click.Path(path_type=Path), help="Directory to watch")
@click.pass_context
def watch(ctx, directory: Optional[Path]):
    """Watch the screenshot folder and OCR new screenshots."""
    config = _load_config(ctx)
    try:
        code = asyncio.run(run_watch(config, directory))
    except KeyboardInterrupt:
        err_console.print("\n[yellow]Watcher stopped by user[/yellow]")
        code = EXIT_OK
    ctx.exit(code)


async def run_watch(config: Config, directory: Optional[Path]) -> int:
    daemon = SnapTextDaemon(config, notifier=ConsoleNotifier())
    try:
        await daemon.start()
        watcher = await daemon.start_watching(directory)
        err_console.print(f"[cyan]Watching {watcher.directory}[/cyan] (Ctrl+C to stop)")
        await asyncio.Event().wait()
    except ConfigurationError as e:
        err_console.print(f"[red]Configuration error:[/red] {e}")
        return EXIT_CONFIG
    except StorageError as e:
        err_console.print(f"[red]History unavailable:[/red] {e.user_message}")
        return EXIT_PARTIAL
    finally:
        await daemon.stop()
    return EXIT_OK


@cli.command()
@click.option("--limit", "-l", default=20, help="Max records")
@click.option("--search", "-s", "query", help="Only records containing this text")
@click.option("--stats", is_flag=True, help="Show history statistics")
@click.pass_context
def history(ctx, limit: int, query: Optional[str], stats: bool):
    """Show recent clipboard history."""
    config = _load_config(ctx)
    ctx.exit(asyncio.run(show_history(config, limit, query, stats)))


async def show_history(config: Config, limit: int, query: Optional[str], stats: bool) -> int:
    store = JsonlHistoryStore(config.history.path)
    window = config.history.duplicate_window_s
    gateway = HistoryGateway(
        store,
        cap=config.history.cap,
        duplicate_window=timedelta(seconds=window) if window is not None else None,
    )
    try:
        await store.initialize()
        records = await (gateway.search(query, limit) if query else gateway.recent(limit))
        summary = await gateway.statistics() if stats else None
    except StorageError as e:
        err_console.print(f"[red]History unavailable:[/red] {e.user_message}")
        return EXIT_PARTIAL
    finally:
        await store.close()

    if not records:
        console.print("[yellow]No history records[/yellow]")
    else:
        table = Table(title=f"History ({len(records)})")
        table.add_column("ID", style="dim")
        table.add_column("Created", style="cyan")
        table.add_column("Backend", style="magenta")
        table.add_column("Conf", justify="right")
        table.add_column("Text", no_wrap=False)
        for r in records:
            text = " ".join(r.text.split())
            table.add_row(
                r.id[-8:],
                r.created_at.strftime("%Y-%m-%d %H:%M"),
                r.backend_used or "-",
                f"{r.confidence:.2f}" if r.confidence is not None else "-",
                (("📌 " if r.pinned else "") + text)[:100],
            )
        console.print(table)

    if summary is not None:
        console.print(f"\nTotal records: {summary['total']}")
        console.print(f"Average confidence: {summary['average_confidence']:.2f}")
        console.print(f"Pinned: {summary['pinned']}")
        for backend_id, count in sorted(summary["backend_usage"].items()):
            console.print(f"  {backend_id}: {count}")
    return EXIT_OK


@cli.command()
@click.pass_context
def backends(ctx):
    """List OCR backends and whether they are usable."""
    config = _load_config(ctx)
    store = BackendConfigStore(config, persist=False)
    snapshot = store.get_all()

    table = Table(title="OCR Backends")
    table.add_column("ID", style="cyan")
    table.add_column("Name")
    table.add_column("Type", style="magenta")
    table.add_column("Model")
    table.add_column("Enabled", justify="center")

    for backend_id, backend_cls in BACKEND_CLASSES.items():
        backend_config = snapshot.get(backend_id)
        enabled = bool(backend_config and backend_config.enabled)
        name = backend_cls.display_name
        if backend_id == config.ocr.default_backend:
            name += " (default)"
        table.add_row(
            backend_id,
            name,
            "remote" if backend_cls.is_remote else "local",
            (backend_config.model if backend_config else None) or "-",
            "[green]✓[/green]" if enabled else "[red]✗[/red]",
        )
    console.print(table)


@cli.group(name="config")
def config_group():
    """Manage snaptext configuration."""
    pass


@config_group.command(name="set-key")
@click.argument("backend_id")
@click.argument("api_key")
@click.pass_context
def set_key(ctx, backend_id: str, api_key: str):
    """Store the API key for a remote backend."""
    config = _load_config(ctx)
    backend_cls = BACKEND_CLASSES.get(backend_id)
    if backend_cls is None:
        err_console.print(f"[red]Unknown backend '{backend_id}'.[/red] Choose from: {', '.join(BACKEND_CLASSES)}")
        ctx.exit(EXIT_CONFIG)
    if not backend_cls.requires_credential:
        err_console.print(f"[yellow]{backend_cls.display_name} does not use an API key[/yellow]")
        ctx.exit(EXIT_CONFIG)

    try:
        BackendConfigStore(config).update(backend_id, api_key=api_key.strip() or None)
    except (OSError, ValueError) as e:
        err_console.print(f"[red]Could not save configuration:[/red] {e}")
        ctx.exit(EXIT_CONFIG)
    console.print(f"[green]✓[/green] API key saved for {backend_cls.display_name}")


@config_group.command(name="set-default")
@click.argument("backend_id")
@click.pass_context
def set_default(ctx, backend_id: str):
    """Choose the backend used when --backend is not given."""
    config = _load_config(ctx)
    if backend_id not in BACKEND_CLASSES:
        err_console.print(f"[red]Unknown backend '{backend_id}'.[/red] Choose from: {', '.join(BACKEND_CLASSES)}")
        ctx.exit(EXIT_CONFIG)
    config.ocr.default_backend = backend_id
    try:
        config.save()
    except OSError as e:
        err_console.print(f"[red]Could not save configuration:[/red] {e}")
        ctx.exit(EXIT_CONFIG)
    console.print(f"[green]✓[/green] Default backend set to {backend_id}")


def main():
    """Entry point for the CLI."""
    try:
        cli(obj={})
    except Exception as e:
        logger.exception("snap crashed")
        err_console.print(f"[red]Error:[/red] {e}")
        sys.exit(EXIT_PARTIAL)


if __name__ == "__main__":
    main()
