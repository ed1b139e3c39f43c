"""CLI commands for inspecting and feeding the generation queue."""

from __future__ import annotations

import json
from dataclasses import asdict
from pathlib import Path
from typing import Any, Dict, Optional

import typer
import yaml
from rich.table import Table

from ..errors import PersistenceError
from ..generation.models import NewQueueItem, QueueItem, QueueStatus
from ._common import console, format_duration, format_timestamp, open_store, workspace_path

queue_app = typer.Typer(help="Generation queue commands")


def _item_payload(item: QueueItem) -> Dict[str, Any]:
    payload = asdict(item)
    payload["status"] = item.status.value
    payload["cost"] = str(item.cost) if item.cost is not None else None
    for key in ("started_at", "completed_at", "created_at", "updated_at"):
        value = payload[key]
        payload[key] = value.isoformat() if value else None
    return payload


@queue_app.command("add")
def queue_add(
    source_id: str = typer.Argument(..., help="Source to build the episode from"),
    title: str = typer.Option(..., "--title", "-t", help="Episode title"),
    episode_id: Optional[str] = typer.Option(None, "--episode-id", help="Episode identifier"),
    source_name: Optional[str] = typer.Option(None, "--source-name", help="Display name of the source"),
    workspace: Optional[Path] = typer.Option(None, "--workspace", "-w", help="Workspace directory"),
) -> None:
    """Append a pending item to the generation queue."""
    store = open_store(workspace_path(workspace))
    try:
        item = store.enqueue(
            NewQueueItem(
                source_id=source_id,
                episode_title=title,
                episode_id=episode_id,
                source_name=source_name,
            )
        )
    except PersistenceError as exc:
        console.print(f"[red]Failed to enqueue: {exc.message}[/red]")
        raise typer.Exit(1)
    finally:
        store.close()
    console.print(f"[green]Queued {item.id}[/green] at position {item.position}")


@queue_app.command("list")
def queue_list(
    status: Optional[str] = typer.Option(None, "--status", help="Filter by status"),
    limit: int = typer.Option(20, "--limit", help="Limit results (default: 20)"),
    workspace: Optional[Path] = typer.Option(None, "--workspace", "-w", help="Workspace directory"),
    format_output: str = typer.Option("table", "--format", help="Output format: table, json, or yaml"),
) -> None:
    """List queue items in FIFO order."""
    status_filter = None
    if status:
        try:
            status_filter = QueueStatus(status.lower())
        except ValueError:
            console.print(f"[red]Invalid status: {status}[/red]")
            console.print(f"Valid: {', '.join(s.value for s in QueueStatus)}")
            raise typer.Exit(1)

    store = open_store(workspace_path(workspace))
    try:
        items = store.snapshot(status=status_filter, limit=limit)
    finally:
        store.close()

    if format_output == "json":
        typer.echo(json.dumps([_item_payload(i) for i in items], indent=2))
        return
    if format_output == "yaml":
        typer.echo(yaml.safe_dump([_item_payload(i) for i in items], default_flow_style=False))
        return

    if not items:
        console.print("[yellow]No queue items found[/yellow]")
        return

    table = Table(title=f"Generation Queue ({len(items)} shown)")
    table.add_column("Pos", justify="right")
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Episode", style="blue")
    table.add_column("Status", style="yellow")
    table.add_column("Progress", justify="right")
    table.add_column("ETA", justify="right")
    table.add_column("Cost", justify="right", style="green")
    table.add_column("Created", style="magenta")

    for item in items:
        table.add_row(
            str(item.position),
            item.id[:8],
            item.episode_title[:40],
            item.status.value,
            f"{item.progress}%",
            format_duration(item.estimated_time_remaining) if item.status.is_in_flight else "-",
            str(item.cost) if item.cost is not None else "-",
            format_timestamp(item.created_at),
        )
    console.print(table)


@queue_app.command("show")
def queue_show(
    item_id: str = typer.Argument(..., help="Queue item ID"),
    workspace: Optional[Path] = typer.Option(None, "--workspace", "-w", help="Workspace directory"),
    format_output: str = typer.Option("table", "--format", help="Output format: table or json"),
) -> None:
    """Display one queue item."""
    store = open_store(workspace_path(workspace))
    try:
        item = store.get(item_id)
    finally:
        store.close()
    if item is None:
        console.print(f"[red]Queue item {item_id} not found[/red]")
        raise typer.Exit(1)

    payload = _item_payload(item)
    if format_output == "json":
        typer.echo(json.dumps(payload, indent=2))
        return

    table = Table(title=f"Queue item {item.id}", show_header=False)
    table.add_column("Field", style="cyan")
    table.add_column("Value")
    for key, value in payload.items():
        table.add_row(key, "-" if value is None else str(value))
    console.print(table)
