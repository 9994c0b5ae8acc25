"""
core/config.py
--------------
Loads, validates, and exposes the bridge config from a YAML file.

Usage:
    from cpbridge.core.config import load_config, AppConfig
    cfg = load_config()            # loads config/default.yaml
    cfg = load_config("my.yaml")   # loads a custom file

The resulting :class:`AppConfig` is passed explicitly to the session and
row processor; nothing here is cached at module level.
"""

from __future__ import annotations

import logging
import sys
from pathlib import Path
from typing import Any, Literal, Optional

import yaml
from pydantic import BaseModel, Field, field_validator

from cpbridge.core.exceptions import ConfigurationError

logger = logging.getLogger(__name__)

_PROJECT_ROOT = Path(__file__).resolve().parents[2]
_DEFAULT_CONFIG = _PROJECT_ROOT / "config" / "default.yaml"

_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


def _check_level(v: str) -> str:
    level = v.upper()
    if level not in _LOG_LEVELS:
        raise ValueError(f"unknown log level '{v}'")
    return level


# ---------------------------------------------------------------------------
# Pydantic sub-models
# ---------------------------------------------------------------------------

class WorkerConfig(BaseModel):
    module_path: str = ""  # worker entry script
    python_executable: str = Field(default_factory=lambda: sys.executable or "python")
    host: str = "127.0.0.1"
    address_flag: str = "--knime-bridge-address"
    extra_args: list[str] = []
    connect_timeout_s: float = Field(30.0, gt=0)
    response_timeout_s: Optional[float] = Field(None, gt=0)  # None = wait forever
    poll_interval_s: float = Field(0.5, gt=0)
    shutdown_timeout_s: float = Field(5.0, ge=0)
    stdout_level: str = "DEBUG"
    stderr_level: str = "WARNING"

    @field_validator("stdout_level", "stderr_level")
    @classmethod
    def known_level(cls, v: str) -> str:
        return _check_level(v)


class PipelineConfig(BaseModel):
    file: str = ""


class ChannelBindingConfig(BaseModel):
    channel: str = Field(min_length=1)
    column: str = Field(min_length=1)


class ProcessingConfig(BaseModel):
    channels: list[ChannelBindingConfig] = []

    @field_validator("channels")
    @classmethod
    def unique_channels(cls, v: list[ChannelBindingConfig]) -> list[ChannelBindingConfig]:
        names = [b.channel for b in v]
        if len(names) != len(set(names)):
            raise ValueError("each channel may be bound only once")
        return v


class OutputConfig(BaseModel):
    group_by_table: bool = True
    column_prefix: str = Field("Measurements", min_length=1)
    on_row_error: Literal["fail", "skip"] = "fail"


class LoggingConfig(BaseModel):
    log_level: str = "INFO"

    @field_validator("log_level")
    @classmethod
    def known_level(cls, v: str) -> str:
        return _check_level(v)


# ---------------------------------------------------------------------------
# Root config model
# ---------------------------------------------------------------------------

class AppConfig(BaseModel):
    worker: WorkerConfig = WorkerConfig()
    pipeline: PipelineConfig = PipelineConfig()
    processing: ProcessingConfig = ProcessingConfig()
    output: OutputConfig = OutputConfig()
    logging: LoggingConfig = LoggingConfig()

    def module_path(self) -> Optional[Path]:
        """Worker module path, relative paths taken from the working directory (None if unset)."""
        if not self.worker.module_path:
            return None
        return Path(self.worker.module_path).expanduser().resolve()

    def pipeline_path(self) -> Optional[Path]:
        """Pipeline file path, relative paths taken from the working directory (None if unset)."""
        if not self.pipeline.file:
            return None
        return Path(self.pipeline.file).expanduser().resolve()


# ---------------------------------------------------------------------------
# Loader
# ---------------------------------------------------------------------------

def load_config(path: str | Path | None = None) -> AppConfig:
    """Load and validate AppConfig from a YAML file.

    Args:
        path: Explicit path to a YAML file. Defaults to ``config/default.yaml``.

    Returns:
        Validated :class:`AppConfig` instance.

    Raises:
        ConfigurationError: If the file is missing or contains invalid values.
    """
    if path is None and not _DEFAULT_CONFIG.exists():
        logger.info("No configuration file at %s; using built-in defaults", _DEFAULT_CONFIG)
        return AppConfig()

    config_path = Path(path) if path else _DEFAULT_CONFIG

    if not config_path.exists():
        raise ConfigurationError(f"Configuration file not found: {config_path}")

    try:
        raw: dict[str, Any] = yaml.safe_load(config_path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"YAML parse error in {config_path}: {exc}") from exc

    try:
        cfg = AppConfig.model_validate(raw)
    except Exception as exc:
        raise ConfigurationError(f"Invalid configuration values: {exc}") from exc

    logger.info("Configuration loaded from %s", config_path)
    return cfg
