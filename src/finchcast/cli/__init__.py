"""Command line entry points for finchcast."""

import logging

import typer
from typer import Typer

from .config import config_app
from .processor import processor_app
from .queue import queue_app


cli = Typer(help="Finchcast episode generation tools")
cli.add_typer(queue_app, name="queue")
cli.add_typer(processor_app, name="processor")
cli.add_typer(config_app, name="config")


@cli.callback()
def main(
    log_level: str = typer.Option("WARNING", "--log-level", help="Logging level (DEBUG, INFO, WARNING, ERROR)"),
) -> None:
    """Finchcast episode generation tools."""
    level = logging.getLevelName(log_level.upper())
    if not isinstance(level, int):
        raise typer.BadParameter(f"Unknown log level: {log_level}", param_hint="--log-level")
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


__all__ = ["cli", "queue_app", "processor_app", "config_app"]
