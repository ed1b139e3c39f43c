"""CLI commands for running and monitoring the generation processor."""

from __future__ import annotations

import asyncio
import importlib
import json
from pathlib import Path
from typing import Any, Dict, Optional

import typer
from rich.panel import Panel
from rich.table import Table

from ..errors import ConfigurationError
from ..generation.config import DEFAULT_CONFIG_PATH, ConfigurationManager
from ..generation.events import EventType, ProcessorEvent
from ..generation.models import ProcessorStats, QueueStatus
from ..generation.processor import GenerationQueueProcessor
from ..generation.store import SQLiteQueueStore
from ..generation.telemetry import TelemetryRecorder, load_summary
from ..services.base import GenerationServices
from ._common import console, format_duration, open_store, workspace_path

processor_app = typer.Typer(help="Generation processor commands")


def load_services(target: str) -> GenerationServices:
    """Resolve ``module:attribute`` to a :class:`GenerationServices` bundle.

    The attribute may be a bundle or a zero-argument factory returning one.
    """
    module_name, _, attr = target.partition(":")
    if not module_name or not attr:
        raise typer.BadParameter("Expected 'module:attribute'", param_hint="--services")
    try:
        module = importlib.import_module(module_name)
    except ImportError as exc:
        raise typer.BadParameter(f"Cannot import {module_name}: {exc}", param_hint="--services") from exc
    try:
        obj = getattr(module, attr)
    except AttributeError as exc:
        raise typer.BadParameter(f"{module_name} has no attribute {attr}", param_hint="--services") from exc

    if not isinstance(obj, GenerationServices) and callable(obj):
        obj = obj()
    if not isinstance(obj, GenerationServices):
        raise typer.BadParameter(
            f"{target} did not resolve to GenerationServices", param_hint="--services"
        )
    return obj


def _print_event(event: ProcessorEvent) -> None:
    if event.type == EventType.PROGRESS_UPDATE:
        payload = event.payload
        console.print(
            f"[dim]{event.job_id[:8]}[/dim] {payload['stage']:<17} {payload['progress']:>3}% "
            f"eta {format_duration(payload.get('estimated_time_remaining'))}"
        )
    elif event.type == EventType.JOB_COMPLETED:
        console.print(f"[green]✓ {event.job_id[:8]} completed[/green] cost {event.payload['result']['cost']}")
    elif event.type == EventType.JOB_FAILED:
        console.print(f"[red]✗ {event.job_id[:8]} {event.payload['error']}[/red]")
    elif event.type == EventType.JOB_RETRY_SCHEDULED:
        console.print(
            f"[yellow]↻ {event.job_id[:8]} retry {event.payload['retry_count']} "
            f"in {event.payload['delay_seconds']:.1f}s: {event.payload['error']}[/yellow]"
        )
    elif event.type == EventType.BUDGET_EXCEEDED:
        console.print(
            f"[red]Daily cost limit reached ({event.payload['spend_today']} / "
            f"{event.payload['daily_limit']}), admissions paused[/red]"
        )
    elif event.type == EventType.ERROR:
        console.print(f"[red]Processor error: {event.payload.get('error')}[/red]")
    else:
        console.print(f"[cyan]{event.type.value}[/cyan]")


def _render_stats(stats: ProcessorStats, counts: Dict[QueueStatus, int]) -> Panel:
    lines = [
        "[bold cyan]Processor[/bold cyan]",
        f"  Status:         {stats.status.value}",
        f"  Active jobs:    {stats.active_jobs:>5}",
        f"  Processed:      {stats.total_processed_today:>5} today "
        f"({stats.successful_today} ok, {stats.failed_today} failed)",
        f"  Success rate:   {stats.success_rate * 100:>5.1f}%",
        f"  Avg time:       {format_duration(stats.average_processing_time)}",
        f"  Cost today:     {stats.total_cost_today}",
        f"  Spend today:    {stats.total_spend_today}",
        f"  Retries:        {stats.retries_scheduled:>5}",
        "",
        "[bold cyan]Queue[/bold cyan]",
    ]
    for status, count in counts.items():
        lines.append(f"  {status.value + ':':<17} {count:>5}")
    return Panel("\n".join(lines), title="[bold]Generation Processor[/bold]", border_style="blue")


async def _run_processor(
    store: SQLiteQueueStore,
    services: GenerationServices,
    manager: ConfigurationManager,
    telemetry: Optional[TelemetryRecorder],
    *,
    drain: bool,
    quiet: bool,
) -> ProcessorStats:
    config = manager.load()
    processor = GenerationQueueProcessor(store, services, config, telemetry=telemetry)
    subscription = None if quiet else processor.subscribe(_print_event)
    try:
        await processor.serve(drain=drain)
    finally:
        if subscription is not None:
            subscription.close()
    return processor.get_stats()


@processor_app.command("run")
def run_command(
    services_target: str = typer.Option(
        ..., "--services", "-s", help="Provider bundle as 'module:attribute'"
    ),
    workspace: Optional[Path] = typer.Option(None, "--workspace", "-w", help="Workspace directory"),
    config_path: Path = typer.Option(DEFAULT_CONFIG_PATH, "--config", help="Path to configuration file"),
    drain: bool = typer.Option(False, "--drain", help="Exit once the queue is empty"),
    recover: bool = typer.Option(
        True, "--recover/--no-recover", help="Reset items left in flight by a previous run"
    ),
    telemetry_enabled: bool = typer.Option(True, "--telemetry/--no-telemetry", help="Write telemetry files"),
    quiet: bool = typer.Option(False, "--quiet", "-q", help="Do not print processor events"),
) -> None:
    """Run the generation processor until interrupted (or drained)."""
    workspace_dir = workspace_path(workspace)
    services = load_services(services_target)
    manager = ConfigurationManager(config_path=config_path)

    store = open_store(workspace_dir)
    try:
        if recover:
            reset = store.reset_in_flight()
            if reset:
                console.print(f"[yellow]Reset {reset} interrupted item(s) to pending[/yellow]")
        telemetry = TelemetryRecorder(workspace_dir / "telemetry") if telemetry_enabled else None
        stats = asyncio.run(
            _run_processor(store, services, manager, telemetry, drain=drain, quiet=quiet)
        )
        counts = store.count_by_status()
    except ConfigurationError as exc:
        console.print(f"[red]❌ {exc.message}[/red]")
        raise typer.Exit(1)
    except KeyboardInterrupt:
        console.print("\n[yellow]Processor interrupted[/yellow]")
        return
    finally:
        store.close()

    console.print(_render_stats(stats, counts))


@processor_app.command("stats")
def stats_command(
    workspace: Optional[Path] = typer.Option(None, "--workspace", "-w", help="Workspace directory"),
    format_output: str = typer.Option("table", "--format", help="Output format: table or json"),
) -> None:
    """Show queue counts and recorded job telemetry."""
    workspace_dir = workspace_path(workspace)
    store = open_store(workspace_dir)
    try:
        counts = store.count_by_status()
    finally:
        store.close()
    summary = load_summary(workspace_dir / "telemetry")

    if format_output == "json":
        report: Dict[str, Any] = {
            "queue": {status.value: count for status, count in counts.items()},
            "telemetry": summary,
        }
        typer.echo(json.dumps(report, indent=2))
        return

    table = Table(title="Generation Queue")
    table.add_column("Status", style="yellow")
    table.add_column("Items", justify="right")
    for status, count in counts.items():
        table.add_row(status.value, str(count))
    console.print(table)

    if summary is None:
        console.print("[dim]No telemetry recorded yet[/dim]")
        return
    overall = summary["overall"]
    console.print(
        Panel(
            "\n".join(
                [
                    f"Jobs:          {overall['jobs']}",
                    f"Success rate:  {overall['success_rate'] * 100:.1f}%",
                    f"Avg duration:  {format_duration(overall['avg_duration'])}",
                    f"Cost:          {overall['cost']}",
                    f"Retries:       {summary.get('retry_metrics', {}).get('total_retries', 0)}",
                ]
            ),
            title="[bold]Telemetry[/bold]",
            border_style="blue",
        )
    )
