"""Configuration for ingestion sessions."""

import logging
import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import pydantic
import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator

from result_stream.decoder import DEFAULT_CHUNK_SIZE
from result_stream.errors import ConfigurationError
from result_stream.models.node import Status
from result_stream.status import DEFAULT_SEVERITY, check_severity_order

log = logging.getLogger(__name__)

ENV_PREFIX = "RESULT_STREAM_"
_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}


class EngineConfig(BaseModel):
    """Configuration for the stream engine."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    lenient: bool = Field(
        default=False,
        description="Skip malformed lines in newline-delimited streams",
    )
    chunk_size: int = Field(
        default=DEFAULT_CHUNK_SIZE, gt=0, description="Read size for byte sources"
    )
    severity_order: tuple[Status, ...] = Field(
        default=DEFAULT_SEVERITY,
        description="Statuses from most to least severe",
    )
    check_leaf_timestamps: bool = Field(
        default=True,
        description="Report leaves that declare a result without a timestamp",
    )

    @field_validator("severity_order")
    @classmethod
    def _check_severity_order(cls, value: tuple[Status, ...]) -> tuple[Status, ...]:
        return check_severity_order(value)


def _parse_env_bool(name: str, value: str) -> bool:
    lowered = value.strip().lower()
    if lowered in _TRUE:
        return True
    if lowered in _FALSE:
        return False
    raise ConfigurationError(
        f"Environment variable {name} must be a boolean, got: '{value}'"
    )


def _load_from_env(environ: Mapping[str, str]) -> dict[str, Any]:
    """Read overrides from ``RESULT_STREAM_*`` environment variables.

    Supported variables:
    - RESULT_STREAM_LENIENT: skip malformed lines (boolean)
    - RESULT_STREAM_CHUNK_SIZE: read size in bytes
    - RESULT_STREAM_CHECK_LEAF_TIMESTAMPS: report leaves without timestamp (boolean)
    - RESULT_STREAM_SEVERITY_ORDER: comma-separated statuses, most severe first
    """
    overrides: dict[str, Any] = {}

    if (value := environ.get(f"{ENV_PREFIX}LENIENT")) is not None:
        overrides["lenient"] = _parse_env_bool(f"{ENV_PREFIX}LENIENT", value)

    if (value := environ.get(f"{ENV_PREFIX}CHUNK_SIZE")) is not None:
        try:
            overrides["chunk_size"] = int(value)
        except ValueError:
            raise ConfigurationError(
                f"Environment variable {ENV_PREFIX}CHUNK_SIZE must be an integer, "
                f"got: '{value}'"
            ) from None

    name = f"{ENV_PREFIX}CHECK_LEAF_TIMESTAMPS"
    if (value := environ.get(name)) is not None:
        overrides["check_leaf_timestamps"] = _parse_env_bool(name, value)

    if (value := environ.get(f"{ENV_PREFIX}SEVERITY_ORDER")) is not None:
        overrides["severity_order"] = [
            status.strip().upper() for status in value.split(",") if status.strip()
        ]

    return overrides


def load_config(
    config_file: Path | str | None = None,
    environ: Mapping[str, str] | None = None,
) -> EngineConfig:
    """Load configuration from a YAML file and environment variables.

    Environment variables take precedence over the file, which takes
    precedence over defaults.

    Args:
        config_file: Path to a YAML configuration file (optional)
        environ: Environment mapping, defaults to ``os.environ``

    Returns:
        Validated engine configuration

    Raises:
        FileNotFoundError: If ``config_file`` does not exist
        ConfigurationError: If the file or an override is invalid

    """
    data: dict[str, Any] = {}

    if config_file is not None:
        path = Path(config_file)
        log.info("Loading configuration from %s", path)
        try:
            loaded = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
        except yaml.YAMLError as exc:
            raise ConfigurationError(f"Invalid YAML in config file '{path}': {exc}") from exc
        if not isinstance(loaded, dict):
            raise ConfigurationError(f"Config file '{path}' must contain a mapping")
        data.update(loaded)

    overrides = _load_from_env(os.environ if environ is None else environ)
    if overrides:
        log.debug("Applied environment overrides: %s", sorted(overrides))
    data.update(overrides)

    try:
        return EngineConfig.model_validate(data)
    except pydantic.ValidationError as exc:
        raise ConfigurationError(f"Invalid configuration: {exc}") from exc
