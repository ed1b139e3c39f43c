"""CLI commands for processor configuration management."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Optional

import typer
import yaml

from ..errors import ConfigurationError
from ..generation.config import DEFAULT_CONFIG_PATH, ConfigurationManager, ProcessorConfig

config_app = typer.Typer(help="Manage processor configuration", name="config")


@config_app.command("validate")
def validate_config(
    config_path: Path = typer.Option(DEFAULT_CONFIG_PATH, "--config", help="Path to configuration file"),
    verbose: bool = typer.Option(False, "--verbose", help="Show detailed validation output"),
) -> None:
    """Validate a processor configuration file without loading it."""
    manager = ConfigurationManager(config_path=config_path)
    errors = manager.validate()

    if errors:
        typer.echo(f"❌ Configuration validation failed: {config_path}")
        typer.echo("\nErrors:")
        for error in errors:
            typer.echo(f"  - {error}")
        raise typer.Exit(code=1)

    typer.echo(f"✅ Configuration is valid: {config_path}")
    if verbose:
        config = manager.load(apply_env=False)
        typer.echo("\nConfiguration details:")
        typer.echo(f"  Concurrency: {config.max_concurrent_jobs} jobs, polling every {config.polling_interval_ms} ms")
        typer.echo(
            f"  Retry: {config.max_retries} attempts, {config.retry.strategy.value}, "
            f"{config.retry.base_delay_seconds}s base delay"
        )
        typer.echo(
            f"  Cost: {config.cost_limits.daily_limit}/day, {config.cost_limits.per_job_limit}/job "
            f"({'enforced' if config.cost_limits.enforce_per_job_limit else 'advisory'})"
        )


@config_app.command("show")
def show_config(
    config_path: Path = typer.Option(DEFAULT_CONFIG_PATH, "--config", help="Path to configuration file"),
    section: Optional[str] = typer.Option(
        None, "--section", help="Show specific section (cost_limits, retry, tts)"
    ),
    format: str = typer.Option("yaml", "--format", help="Output format (yaml or json)"),
) -> None:
    """Display the effective configuration, including environment overrides."""
    try:
        config = ConfigurationManager(config_path=config_path).load()
    except ConfigurationError as exc:
        typer.echo(f"❌ Failed to load configuration: {exc.message}")
        raise typer.Exit(code=1)

    data = config.model_dump(mode="json")
    if section:
        if section not in data:
            typer.echo(f"❌ Unknown section: {section}")
            typer.echo(f"Available sections: {', '.join(data.keys())}")
            raise typer.Exit(code=1)
        data = {section: data[section]}

    if format == "json":
        typer.echo(json.dumps(data, indent=2))
    else:
        typer.echo(yaml.safe_dump(data, default_flow_style=False, sort_keys=False))


@config_app.command("init")
def init_config(
    config_path: Path = typer.Option(DEFAULT_CONFIG_PATH, "--config", help="Path to configuration file"),
    force: bool = typer.Option(False, "--force", help="Overwrite an existing file"),
) -> None:
    """Write a configuration file populated with defaults."""
    if config_path.exists() and not force:
        typer.echo(f"❌ Configuration already exists: {config_path} (use --force to overwrite)")
        raise typer.Exit(code=1)
    ConfigurationManager(config_path=config_path).save(ProcessorConfig())
    typer.echo(f"✅ Wrote default configuration: {config_path}")
