"""Error taxonomy and domain exceptions."""

from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    TIMEOUT = "timeout"
    UNREACHABLE = "unreachable"
    UNHEALTHY = "unhealthy"
    ORCHESTRATOR_UNAVAILABLE = "orchestrator_unavailable"
    CONFIG_ERROR = "config_error"


class StackHealthError(Exception):
    """Base class for errors raised by stackhealth."""


class ConfigError(StackHealthError):
    """Raised when configuration is malformed or missing."""


class DuplicateNameError(ConfigError):
    """Raised when a probe name is registered twice."""

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Probe '{name}' is already registered")


class OrchestratorUnavailableError(StackHealthError):
    """Raised when the container orchestrator itself cannot be queried."""


class ProbeFailure(StackHealthError):
    """Raised by a check that reached its target but did not like the answer."""

    def __init__(self, message: str, kind: ErrorKind = ErrorKind.UNHEALTHY) -> None:
        self.kind = kind
        super().__init__(message)


class BackupError(StackHealthError):
    """Raised when a backup, restore or verify operation fails."""
