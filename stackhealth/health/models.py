"""Probe, result and report models."""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from stackhealth.errors import ErrorKind


class Status(str, Enum):
    OK = "ok"
    WARN = "warn"
    ERROR = "error"


class ProbeKind(str, Enum):
    PROCESS_STATE = "process_state"
    PORT_REACHABLE = "port_reachable"
    HTTP_REACHABLE = "http_reachable"
    APP_LEVEL_PING = "app_level_ping"
    LOG_SCAN = "log_scan"
    CONTAINER_PING = "container_ping"
    RESOURCE_USAGE = "resource_usage"


class Section(str, Enum):
    PROCESS_STATUS = "process_status"
    SERVICE_HEALTH = "service_health"
    CONNECTIVITY = "connectivity"
    RESOURCE_USAGE = "resource_usage"
    LOG_SCAN = "log_scan"


SECTION_TITLES = {
    Section.PROCESS_STATUS: "Container Status",
    Section.SERVICE_HEALTH: "Service Health",
    Section.CONNECTIVITY: "Network Connectivity",
    Section.RESOURCE_USAGE: "Resource Usage",
    Section.LOG_SCAN: "Recent Errors in Logs",
}

DEFAULT_SECTIONS = {
    ProbeKind.PROCESS_STATE: Section.PROCESS_STATUS,
    ProbeKind.PORT_REACHABLE: Section.CONNECTIVITY,
    ProbeKind.HTTP_REACHABLE: Section.SERVICE_HEALTH,
    ProbeKind.APP_LEVEL_PING: Section.SERVICE_HEALTH,
    ProbeKind.LOG_SCAN: Section.LOG_SCAN,
    ProbeKind.CONTAINER_PING: Section.CONNECTIVITY,
    ProbeKind.RESOURCE_USAGE: Section.RESOURCE_USAGE,
}

# Kinds that talk to the orchestrator CLI
ORCHESTRATOR_KINDS = frozenset({
    ProbeKind.PROCESS_STATE,
    ProbeKind.APP_LEVEL_PING,
    ProbeKind.LOG_SCAN,
    ProbeKind.CONTAINER_PING,
    ProbeKind.RESOURCE_USAGE,
})


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Probe:
    """Definition of a single health check."""

    name: str
    kind: ProbeKind
    target: str  # service name | host:port | URL | container
    timeout: float = 5.0
    critical: bool = False
    section: Section | None = None
    on_failure: Status = Status.ERROR
    options: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.section is None:
            object.__setattr__(self, "section", DEFAULT_SECTIONS[self.kind])

    @property
    def uses_orchestrator(self) -> bool:
        return self.kind in ORCHESTRATOR_KINDS

    @property
    def target_key(self) -> str:
        """Key used to cap concurrent calls against one external target."""
        if self.uses_orchestrator:
            return "orchestrator"
        return f"{self.kind.value}:{self.target}"


@dataclass(frozen=True)
class ProbeResult:
    """Outcome of one probe in one cycle."""

    probe_name: str
    status: Status
    detail: str
    latency_ms: float = 0.0
    observed_at: datetime = field(default_factory=utcnow)
    error_kind: ErrorKind | None = None
    section: Section = Section.SERVICE_HEALTH
    critical: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "probe_name": self.probe_name,
            "status": self.status.value,
            "detail": self.detail,
            "latency_ms": self.latency_ms,
            "observed_at": self.observed_at.isoformat(),
            "error_kind": self.error_kind.value if self.error_kind else None,
            "section": self.section.value,
            "critical": self.critical,
        }


def overall_status(results: Iterable[ProbeResult]) -> Status:
    """Critical error → error; any error or warn → warn; else ok."""
    degraded = False
    for r in results:
        if r.status == Status.ERROR and r.critical:
            return Status.ERROR
        if r.status != Status.OK:
            degraded = True
    return Status.WARN if degraded else Status.OK


@dataclass(frozen=True)
class CycleReport:
    """All probe results of one aggregation cycle."""

    results: tuple[ProbeResult, ...]
    overall_status: Status
    started_at: datetime
    finished_at: datetime
    error_kind: ErrorKind | None = None  # set when the whole cycle was aborted
    cancelled: bool = False

    @classmethod
    def aborted(
        cls,
        name: str,
        kind: ErrorKind,
        detail: str,
        started_at: datetime | None = None,
    ) -> CycleReport:
        """A report whose sole result is the error that aborted the cycle."""
        started = started_at or utcnow()
        result = ProbeResult(
            probe_name=name,
            status=Status.ERROR,
            detail=detail,
            error_kind=kind,
            section=Section.PROCESS_STATUS,
            critical=True,
        )
        return cls(
            results=(result,),
            overall_status=Status.ERROR,
            started_at=started,
            finished_at=utcnow(),
            error_kind=kind,
        )

    @property
    def duration_ms(self) -> float:
        return round((self.finished_at - self.started_at).total_seconds() * 1000, 1)

    def to_dict(self) -> dict[str, Any]:
        return {
            "overall_status": self.overall_status.value,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat(),
            "error_kind": self.error_kind.value if self.error_kind else None,
            "cancelled": self.cancelled,
            "results": [r.to_dict() for r in self.results],
        }
