"""Configuration — loaded from environment / .env file, optionally a YAML file.

The settings object is frozen: it is built once at startup and handed to the
registry, aggregator, reporter and backup manager explicitly.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Annotated, Any

import yaml
from pydantic import (
    AliasChoices,
    BaseModel,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)
from pydantic_settings import BaseSettings, NoDecode

from stackhealth.errors import ConfigError

logger = logging.getLogger(__name__)

DEFAULT_COORDINATOR_HOST = "slzb-mrw10u.local"

_DURATION_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*(ms|s|m|h)?\s*$", re.IGNORECASE)
_DURATION_UNITS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}
_PREFIXED_FIELDS = ("compose_file", "project_dir")


def parse_duration(value: Any) -> float:
    """Parse ``10``, ``10s``, ``500ms``, ``2m`` or ``1h`` into seconds."""
    if isinstance(value, bool):
        raise ValueError(f"Invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        return float(value)
    match = _DURATION_RE.match(str(value))
    if not match:
        raise ValueError(f"Invalid duration: {value!r}")
    number, unit = match.groups()
    return float(number) * _DURATION_UNITS[(unit or "s").lower()]


class Settings(BaseSettings):
    """Central configuration loaded from environment / .env file."""

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
        "frozen": True,
    }

    # Ports / hosts probed by the default registry
    ui_port: int = Field(8080, validation_alias=AliasChoices("ui_port", "z2m_ui_port"))
    matter_port: int = 5580
    mqtt_port: int = 1883
    coordinator_host: str = ""
    z2m_serial_port: str = ""  # tcp://host:port of a network coordinator

    # Compose services (container names match service names)
    broker_service: str = "mosquitto"
    bridge_service: str = "zigbee2mqtt"
    companion_service: str = "matter-server"

    # Log scan
    log_tail_lines: int = 50
    error_patterns: Annotated[tuple[str, ...], NoDecode] = ("error", "failed")

    # Timing (seconds; strings such as "10s" / "500ms" accepted)
    watch_interval: float = 10.0
    probe_timeout: float = 5.0
    cycle_slack: float = 2.0

    # Concurrency
    max_workers: int = 8
    max_per_target: int = 4

    # Resource usage
    cpu_warn_percent: float = 90.0

    # Compose project (env: STACKHEALTH_COMPOSE_FILE, STACKHEALTH_PROJECT_DIR)
    compose_file: str = Field("docker-compose.yml", validation_alias="stackhealth_compose_file")
    project_dir: str = Field(".", validation_alias="stackhealth_project_dir")

    # Backup
    backup_dir: str = "./backups"
    backup_keep_days: int = 7
    data_dir: str = "./zigbee2mqtt/data"
    config_dir: str = "./zigbee2mqtt/config"
    mosquitto_config_dir: str = "./mosquitto/config"
    mosquitto_data_dir: str = "./mosquitto/data"

    # Logging
    log_level: str = "WARNING"

    @model_validator(mode="before")
    @classmethod
    def _prefixed_keys(cls, data: Any) -> Any:
        if isinstance(data, dict):
            for name in _PREFIXED_FIELDS:
                if name in data:
                    data[f"stackhealth_{name}"] = data.pop(name)
        return data

    @field_validator("watch_interval", "probe_timeout", "cycle_slack", mode="before")
    @classmethod
    def _parse_durations(cls, value: Any) -> float:
        return parse_duration(value)

    @field_validator("watch_interval", "probe_timeout")
    @classmethod
    def _positive(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("must be greater than zero")
        return value

    @field_validator("error_patterns", mode="before")
    @classmethod
    def _split_patterns(cls, value: Any) -> Any:
        if isinstance(value, str):
            return tuple(p.strip() for p in value.split(",") if p.strip())
        return value

    @field_validator("max_workers", "max_per_target", "log_tail_lines")
    @classmethod
    def _at_least_one(cls, value: int) -> int:
        if value < 1:
            raise ValueError("must be at least 1")
        return value

    @field_validator("log_level")
    @classmethod
    def _known_level(cls, value: str) -> str:
        level = value.upper()
        if level not in logging.getLevelNamesMapping():
            raise ValueError(f"unknown log level {value!r}")
        return level

    @property
    def effective_coordinator_host(self) -> str:
        """Explicit host, else the host part of a ``tcp://`` serial port."""
        if self.coordinator_host:
            return self.coordinator_host
        match = re.search(r"//([^:/]+)", self.z2m_serial_port)
        if match:
            return match.group(1)
        return DEFAULT_COORDINATOR_HOST


# ── YAML config file ─────────────────────────────────────────────────────────


class ProbeSpec(BaseModel):
    """A probe declared in the YAML config file."""

    model_config = {"extra": "forbid"}

    name: str
    kind: str
    target: str
    timeout: float | None = None
    critical: bool = False
    section: str | None = None
    on_failure: str = "error"
    options: dict[str, Any] = {}

    @field_validator("timeout", mode="before")
    @classmethod
    def _parse_timeout(cls, value: Any) -> float | None:
        if value is None:
            return None
        return parse_duration(value)


@dataclass
class AppConfig:
    """Settings plus the probe declarations found in the config file."""

    settings: Settings
    probes: list[ProbeSpec] = field(default_factory=list)
    include_defaults: bool = True


_FILE_ONLY_KEYS = {"probes", "include_defaults"}


def load_config(path: str | Path | None = None, **overrides: Any) -> AppConfig:
    """Build the application config from env / .env and an optional YAML file.

    Keys in the YAML file override the environment; ``overrides`` win over both.
    Raises ConfigError for a missing, unparsable or invalid file.
    """
    raw: dict[str, Any] = {}
    if path is not None:
        config_path = Path(path)
        if not config_path.is_file():
            raise ConfigError(f"Config file not found: {config_path}")
        try:
            loaded = yaml.safe_load(config_path.read_text(encoding="utf-8"))
        except yaml.YAMLError as e:
            raise ConfigError(f"Failed to parse {config_path}: {e}") from e
        if loaded is None:
            loaded = {}
        if not isinstance(loaded, dict):
            raise ConfigError(f"{config_path}: top level must be a mapping")
        raw = loaded
        logger.debug("Loaded config file %s (%d keys)", config_path, len(raw))

    known = set(Settings.model_fields) | {"z2m_ui_port"} | _FILE_ONLY_KEYS
    unknown = sorted(set(raw) - known)
    if unknown:
        raise ConfigError(f"Unknown config option(s): {', '.join(unknown)}")

    values = {k: v for k, v in raw.items() if k not in _FILE_ONLY_KEYS}
    values.update(overrides)

    try:
        settings = Settings(**values)
        probes = [ProbeSpec(**p) for p in raw.get("probes") or []]
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration: {e}") from e
    except TypeError as e:
        raise ConfigError(f"Invalid probe declaration: {e}") from e

    include_defaults = raw.get("include_defaults", True)
    if not isinstance(include_defaults, bool):
        raise ConfigError("include_defaults must be true or false")

    return AppConfig(settings=settings, probes=probes, include_defaults=include_defaults)
