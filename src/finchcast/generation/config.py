"""Generation processor configuration with validation and YAML persistence.

Configuration is expressed as Pydantic models so the processor, the CLI and
tests share one validated surface. Files are YAML; environment variables
prefixed with ``FINCHCAST_`` override the most common knobs.
"""

from __future__ import annotations

import os
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from ..errors import ConfigurationError
from .retry import RetryPolicy


DEFAULT_CONFIG_PATH = Path.home() / ".finchcast" / "config" / "processor.yaml"


class CostLimits(BaseModel):
    """Spend ceilings in USD.

    Attributes:
        daily_limit: Auto-pause new admissions once today's spend reaches this
        per_job_limit: Ceiling for the cost of a single attempt
        enforce_per_job_limit: Abort jobs exceeding ``per_job_limit`` instead
            of only logging a warning
    """

    model_config = ConfigDict(validate_assignment=True, extra="forbid")

    daily_limit: Decimal = Field(
        default=Decimal("50.00"),
        ge=0,
        description="Daily spend ceiling",
    )
    per_job_limit: Decimal = Field(
        default=Decimal("5.00"),
        ge=0,
        description="Per-job spend ceiling",
    )
    enforce_per_job_limit: bool = Field(
        default=False,
        description="Abort a job whose attempt cost exceeds per_job_limit",
    )


class TTSOptions(BaseModel):
    """Options forwarded to the speech synthesis provider."""

    model_config = ConfigDict(extra="forbid")

    voice: str = "alloy"
    model: str = "tts-1"
    speed: float = Field(default=1.0, gt=0.0, le=4.0)
    response_format: str = "mp3"


class ProcessorConfig(BaseModel):
    """Main generation processor configuration.

    Attributes:
        max_concurrent_jobs: Concurrency ceiling for in-flight jobs
        polling_interval_ms: Scheduler tick interval
        max_retries: Attempts before a job is marked failed; 0 fails on the
            first error
        auto_start: Start polling as soon as the processor is constructed
        cost_limits: Daily and per-job spend ceilings
        retry: Backoff policy for failed attempts
        stage_timeout_seconds: Optional per-stage deadline (None disables)
        persist_timeout_seconds: Deadline for a single checkpoint write
        tts: Speech synthesis options
    """

    model_config = ConfigDict(validate_assignment=True, extra="forbid")

    version: int = Field(default=1, description="Configuration schema version")
    max_concurrent_jobs: int = Field(default=3, ge=1, le=10)
    polling_interval_ms: int = Field(default=5000, ge=10, le=60_000)
    max_retries: int = Field(default=3, ge=0, le=10)
    auto_start: bool = True
    cost_limits: CostLimits = Field(default_factory=CostLimits)
    retry: RetryPolicy = Field(default_factory=RetryPolicy)
    stage_timeout_seconds: Optional[float] = Field(default=None, gt=0)
    persist_timeout_seconds: float = Field(default=10.0, gt=0)
    tts: TTSOptions = Field(default_factory=TTSOptions)

    @model_validator(mode="after")
    def _check_limits(self) -> "ProcessorConfig":
        limits = self.cost_limits
        if limits.daily_limit and limits.per_job_limit > limits.daily_limit:
            raise ValueError("cost_limits.per_job_limit must not exceed cost_limits.daily_limit")
        return self

    @property
    def polling_interval_seconds(self) -> float:
        return self.polling_interval_ms / 1000.0


class ConfigurationManager:
    """Load, save and validate processor configuration files.

    Attributes:
        config_path: Path to the YAML configuration file
    """

    def __init__(self, config_path: Optional[Path] = None) -> None:
        self._config_path = config_path or DEFAULT_CONFIG_PATH
        self._config: Optional[ProcessorConfig] = None

    @property
    def config_path(self) -> Path:
        return self._config_path

    def load(self, *, apply_env: bool = True) -> ProcessorConfig:
        """Load and validate configuration.

        Missing files yield defaults. Environment overrides are applied on
        top of the file contents.

        Raises:
            ConfigurationError: If the file or an override is invalid
        """
        data: Dict[str, Any] = {}
        if self._config_path.exists():
            with open(self._config_path, encoding="utf-8") as f:
                loaded = yaml.safe_load(f)
            if loaded is not None and not isinstance(loaded, dict):
                raise ConfigurationError(
                    f"Configuration root must be a mapping: {self._config_path}"
                )
            data = loaded or {}

        if apply_env:
            data = _apply_env_overrides(data)

        try:
            self._config = ProcessorConfig(**data)
        except ValidationError as exc:
            raise ConfigurationError(
                f"Invalid configuration: {'; '.join(_format_errors(exc))}"
            ) from exc
        return self._config

    def save(self, config: ProcessorConfig) -> None:
        self._config_path.parent.mkdir(parents=True, exist_ok=True)
        data = config.model_dump(mode="json")
        with open(self._config_path, "w", encoding="utf-8") as f:
            yaml.safe_dump(data, f, default_flow_style=False, sort_keys=False)
        self._config = config

    def validate(self, config_path: Optional[Path] = None) -> List[str]:
        """Validate a configuration file without keeping it.

        Returns:
            List of validation errors (empty if valid)
        """
        path = config_path or self._config_path
        if not path.exists():
            return [f"Configuration file not found: {path}"]

        try:
            with open(path, encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
            ProcessorConfig(**data)
        except ValidationError as exc:
            return _format_errors(exc)
        except (yaml.YAMLError, TypeError) as exc:
            return [f"Failed to load configuration: {exc}"]
        return []


_ENV_OVERRIDES = (
    ("FINCHCAST_MAX_CONCURRENT_JOBS", ("max_concurrent_jobs",)),
    ("FINCHCAST_POLLING_INTERVAL_MS", ("polling_interval_ms",)),
    ("FINCHCAST_MAX_RETRIES", ("max_retries",)),
    ("FINCHCAST_AUTO_START", ("auto_start",)),
    ("FINCHCAST_DAILY_COST_LIMIT", ("cost_limits", "daily_limit")),
    ("FINCHCAST_PER_JOB_COST_LIMIT", ("cost_limits", "per_job_limit")),
    ("FINCHCAST_RETRY_BASE_DELAY_SECONDS", ("retry", "base_delay_seconds")),
)


def _apply_env_overrides(data: Dict[str, Any]) -> Dict[str, Any]:
    merged = dict(data)
    for env_name, path in _ENV_OVERRIDES:
        value = os.getenv(env_name)
        if value is None or not value.strip():
            continue
        target = merged
        for key in path[:-1]:
            nested = dict(target.get(key) or {})
            target[key] = nested
            target = nested
        target[path[-1]] = value.strip()
    return merged


def _format_errors(exc: ValidationError) -> List[str]:
    return [
        f"{'.'.join(str(loc) for loc in err['loc'])}: {err['msg']}"
        for err in exc.errors()
    ]


__all__ = [
    "CostLimits",
    "TTSOptions",
    "ProcessorConfig",
    "ConfigurationManager",
    "DEFAULT_CONFIG_PATH",
]
