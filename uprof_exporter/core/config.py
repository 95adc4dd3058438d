"""
Exporter Settings
=================

Settings are resolved once at startup and never change afterwards.

Precedence (lowest to highest):
    1. defaults below
    2. a YAML file, only when one is named (``--config`` / UPROF_EXPORTER_CONFIG)
    3. ``UPROF_EXPORTER_<FIELD>`` environment variables
    4. explicit overrides (CLI options)
"""

from __future__ import annotations

import os
import shlex
from pathlib import Path
from typing import Annotated, Any, Dict, List, Literal, Mapping, Optional

import yaml
from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from uprof_exporter.core.measurements import MeasurementSpec, get_profile
from uprof_exporter.core.parser import DEFAULT_HEADER_MARKER, DEFAULT_SECTION_MARKER

ENV_PREFIX = "UPROF_EXPORTER_"
CONFIG_PATH_ENV = ENV_PREFIX + "CONFIG"

DEFAULT_TOOL_PATH = "/opt/AMDuProf_Linux_x64_5.1.701/bin/AMDuProfPcm"
DEFAULT_OUTPUT_PATH = "/var/uprof/uprof_metrics.csv"

# AMDuProfPcm -m sets producing each catalogue's columns
PROFILE_CATEGORIES = {
    "full": "ipc,fp,tlb,l1,l2,l3,memory",
    "compact": "memory,l1,l2,l3",
}


class Settings(BaseModel):
    """Exporter runtime settings."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    tool_path: str = DEFAULT_TOOL_PATH
    output_path: str = DEFAULT_OUTPUT_PATH
    tool_categories: Optional[str] = None
    tool_duration: Annotated[int, Field(ge=1, description="Seconds AMDuProfPcm samples for")] = 1
    tool_extra_args: List[str] = Field(default_factory=lambda: ["-a", "-r", "--msr"])
    tool_timeout: Annotated[
        float, Field(gt=0, description="Seconds before a running tool is killed")
    ] = 60.0
    interval: Annotated[float, Field(gt=0, description="Seconds between cycle starts")] = 10.0
    port: Annotated[int, Field(ge=1, le=65535)] = 9100
    bind: str = "0.0.0.0"
    profile: Literal["full", "compact"] = "full"
    with_nodename: Optional[bool] = None
    header_marker: str = DEFAULT_HEADER_MARKER
    section_marker: str = DEFAULT_SECTION_MARKER
    log_level: Literal["TRACE", "DEBUG", "INFO", "SUCCESS", "WARNING", "ERROR", "CRITICAL"] = "INFO"

    @field_validator("log_level", mode="before")
    @classmethod
    def _upper_log_level(cls, value: Any) -> Any:
        return value.upper() if isinstance(value, str) else value

    @property
    def spec(self) -> MeasurementSpec:
        return get_profile(self.profile)

    @property
    def label_nodes(self) -> bool:
        """Whether gauges carry the ``nodename`` label (defaults per profile)."""
        if self.with_nodename is None:
            return self.profile == "full"
        return self.with_nodename

    @property
    def categories(self) -> str:
        """AMDuProfPcm ``-m`` argument (defaults per profile)."""
        return self.tool_categories or PROFILE_CATEGORIES[self.profile]


def _validation_message(e: ValidationError) -> str:
    return "; ".join(
        f"{'.'.join(map(str, err['loc']))}: {err['msg']}" for err in e.errors()
    )


def _read_yaml(path: Path) -> Dict[str, Any]:
    with open(path, "r") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Configuration file {path} must contain a mapping")
    return data


def _read_env(environ: Mapping[str, str]) -> Dict[str, Any]:
    values: Dict[str, Any] = {}
    for field in Settings.model_fields:
        raw = environ.get(ENV_PREFIX + field.upper())
        if raw is None or raw == "":
            continue
        values[field] = shlex.split(raw) if field == "tool_extra_args" else raw
    return values


def load_settings(
    config_path: Optional[str] = None,
    overrides: Optional[Mapping[str, Any]] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> Settings:
    """Build validated settings from file, environment and overrides.

    Raises
    ------
    ValueError
        If the file cannot be read or any value is invalid.
    """
    environ = os.environ if environ is None else environ
    config_path = config_path or environ.get(CONFIG_PATH_ENV) or None

    values: Dict[str, Any] = {}
    if config_path:
        path = Path(config_path)
        try:
            values.update(_read_yaml(path))
        except (OSError, yaml.YAMLError) as e:
            raise ValueError(f"Failed to load configuration from {path}: {e}") from e
        logger.info("Configuration loaded from {}", path)

    values.update(_read_env(environ))
    values.update({k: v for k, v in (overrides or {}).items() if v is not None})

    try:
        return Settings(**values)
    except ValidationError as e:
        raise ValueError(f"Configuration validation failed: {_validation_message(e)}") from e
