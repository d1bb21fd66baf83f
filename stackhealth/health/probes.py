"""Probe runners — one check function per probe kind.

Supports: container state, TCP port, HTTP reachability, in-container
application ping, container-to-host ping, resource snapshot and log scan.
Every runner either returns an Outcome or raises; execute_probe turns
exceptions into classified results. Only OrchestratorUnavailableError escapes,
since it invalidates the whole cycle.
"""

from __future__ import annotations

import logging
import re
import shlex
import time
from collections.abc import Callable, Iterable
from typing import NamedTuple
from urllib.parse import urlsplit

from stackhealth.collaborators import Collaborators
from stackhealth.errors import (
    ConfigError,
    ErrorKind,
    OrchestratorUnavailableError,
    ProbeFailure,
)
from stackhealth.health.classifier import classify
from stackhealth.health.models import Probe, ProbeKind, ProbeResult, Status

logger = logging.getLogger(__name__)

MAX_LOG_MATCHES = 3
DEFAULT_TAIL_LINES = 50
DEFAULT_ERROR_PATTERNS = ("error", "failed")
BROKER_UPTIME_COMMAND = (
    "mosquitto_sub", "-h", "localhost", "-t", "$SYS/broker/uptime", "-W", "1", "-C", "1",
)


class Outcome(NamedTuple):
    status: Status
    detail: str
    error_kind: ErrorKind | None = None


# ── Check runners ────────────────────────────────────────────────────────────


def check_process_state(probe: Probe, collab: Collaborators) -> Outcome:
    """Orchestrator reports the service as ``running``."""
    state = collab.orchestrator.get_state(probe.target, timeout=probe.timeout)
    if state == "running":
        return Outcome(Status.OK, f"{probe.target} is running")
    raise ProbeFailure(f"{probe.target} is not running (state: {state or 'unknown'})")


def check_port(probe: Probe, collab: Collaborators) -> Outcome:
    """TCP connect completes before the timeout."""
    host, port = split_host_port(probe.target)
    collab.network.connect(host, port, probe.timeout)
    return Outcome(Status.OK, f"Port {port} on {host} is open")


def check_http(probe: Probe, collab: Collaborators) -> Outcome:
    """Request completes; non-2xx is a warning unless ``strict_status`` is set."""
    code = collab.http.get(probe.target, probe.timeout)
    if 200 <= code < 300:
        return Outcome(Status.OK, f"{probe.target} is accessible ({code})")
    message = f"{probe.target} answered {code}"
    if probe.options.get("strict_status"):
        raise ProbeFailure(message)
    return Outcome(Status.WARN, message, ErrorKind.UNHEALTHY)


def check_app_ping(probe: Probe, collab: Collaborators) -> Outcome:
    """Application-level round trip inside the container (default: broker uptime)."""
    argv = command_argv(probe.options.get("command") or BROKER_UPTIME_COMMAND)
    result = collab.orchestrator.exec(probe.target, argv, timeout=probe.timeout)
    if result.ok:
        return Outcome(Status.OK, f"{probe.target} is responding")
    reason = _first_line(result.stderr or result.stdout)
    kind = classify(reason) if reason else ErrorKind.UNHEALTHY
    raise ProbeFailure(
        f"{probe.target} is not responding (exit {result.exit_code})"
        + (f": {reason}" if reason else ""),
        kind,
    )


def check_container_ping(probe: Probe, collab: Collaborators) -> Outcome:
    """ICMP ping from inside ``probe.target`` to ``options.host``."""
    host = probe.options["host"]
    result = collab.orchestrator.exec(probe.target, ["ping", "-c", "1", host], timeout=probe.timeout)
    if result.ok:
        return Outcome(Status.OK, f"{probe.target} -> {host} connection")
    reason = _first_line(result.stderr) or _last_line(result.stdout)
    raise ProbeFailure(
        f"{probe.target} -> {host} connection failed" + (f": {reason}" if reason else ""),
        ErrorKind.UNREACHABLE,
    )


def check_resources(probe: Probe, collab: Collaborators) -> Outcome:
    """CPU / memory snapshot; warn when a container runs hot."""
    threshold = float(probe.options.get("cpu_warn_percent", 90.0))
    stats = collab.orchestrator.stats(timeout=probe.timeout)
    if not stats:
        return Outcome(Status.WARN, "No running containers reported", ErrorKind.UNHEALTHY)
    summary = "; ".join(f"{s.name} cpu {s.cpu_percent:.1f}% mem {s.mem_usage}" for s in stats)
    hot = [s.name for s in stats if s.cpu_percent > threshold]
    if hot:
        return Outcome(
            Status.WARN,
            f"CPU above {threshold:g}% on {', '.join(hot)} | {summary}",
            ErrorKind.UNHEALTHY,
        )
    return Outcome(Status.OK, summary)


def check_logs(probe: Probe, collab: Collaborators) -> Outcome:
    """No recent log line matches an error pattern; matches only warn."""
    tail_lines = int(probe.options.get("tail_lines", DEFAULT_TAIL_LINES))
    pattern = compile_patterns(probe.options.get("patterns") or DEFAULT_ERROR_PATTERNS)
    lines = collab.orchestrator.tail(probe.target, tail_lines, timeout=probe.timeout)
    matches = [line.strip() for line in lines if pattern.search(line)]
    if not matches:
        return Outcome(Status.OK, f"No recent errors in {probe.target} logs")
    shown = "".join(f"\n  {line}" for line in matches[:MAX_LOG_MATCHES])
    return Outcome(
        Status.WARN,
        f"{len(matches)} recent error line(s) in {probe.target} logs:{shown}",
        ErrorKind.UNHEALTHY,
    )


# Dispatcher
CHECK_RUNNERS: dict[ProbeKind, Callable[[Probe, Collaborators], Outcome]] = {
    ProbeKind.PROCESS_STATE: check_process_state,
    ProbeKind.PORT_REACHABLE: check_port,
    ProbeKind.HTTP_REACHABLE: check_http,
    ProbeKind.APP_LEVEL_PING: check_app_ping,
    ProbeKind.CONTAINER_PING: check_container_ping,
    ProbeKind.RESOURCE_USAGE: check_resources,
    ProbeKind.LOG_SCAN: check_logs,
}


def execute_probe(probe: Probe, collab: Collaborators) -> ProbeResult:
    """Run one probe and return its result. Per-probe failures never raise."""
    runner = CHECK_RUNNERS[probe.kind]
    t0 = time.perf_counter()
    try:
        outcome = runner(probe, collab)
    except OrchestratorUnavailableError:
        raise
    except Exception as e:
        kind = classify(e)
        outcome = Outcome(probe.on_failure, failure_detail(kind, e, probe.timeout), kind)
        logger.debug("Probe %s failed (%s): %s", probe.name, kind.value, e)
    latency = (time.perf_counter() - t0) * 1000

    return ProbeResult(
        probe_name=probe.name,
        status=outcome.status,
        detail=outcome.detail,
        latency_ms=round(latency, 1),
        error_kind=outcome.error_kind,
        section=probe.section,
        critical=probe.critical,
    )


def timeout_result(probe: Probe, latency_ms: float, detail: str | None = None) -> ProbeResult:
    """Result for a probe that did not finish before its deadline."""
    return ProbeResult(
        probe_name=probe.name,
        status=probe.on_failure,
        detail=detail or f"timeout after {probe.timeout:g}s",
        latency_ms=round(latency_ms, 1),
        error_kind=ErrorKind.TIMEOUT,
        section=probe.section,
        critical=probe.critical,
    )


def failure_detail(kind: ErrorKind, error: BaseException, timeout: float) -> str:
    if kind == ErrorKind.TIMEOUT:
        return f"timeout after {timeout:g}s"
    message = str(error).strip() or type(error).__name__
    if isinstance(error, ProbeFailure):
        return message
    if kind == ErrorKind.UNREACHABLE:
        return f"unreachable: {message}"
    return f"{type(error).__name__}: {message}"


# ── Validation helpers ───────────────────────────────────────────────────────


def split_host_port(target: str) -> tuple[str, int]:
    host, sep, port = target.rpartition(":")
    if not sep or not host or not port.isdigit():
        raise ConfigError(f"Expected host:port, got {target!r}")
    return host.strip("[]"), int(port)


def compile_patterns(patterns: str | Iterable[str]) -> re.Pattern[str]:
    """Case-insensitive alternation of the given regular expressions."""
    if isinstance(patterns, str):
        patterns = [patterns]
    items = [str(p) for p in patterns if str(p)]
    if not items:
        raise ConfigError("At least one error pattern is required")
    try:
        return re.compile("|".join(f"(?:{p})" for p in items), re.IGNORECASE)
    except re.error as e:
        raise ConfigError(f"Invalid error pattern: {e}") from e


def command_argv(command: object) -> list[str]:
    """Argument vector from a shell-style string or a list of strings."""
    if isinstance(command, str):
        try:
            argv = shlex.split(command)
        except ValueError as e:
            raise ConfigError(f"Invalid command {command!r}: {e}") from e
    elif isinstance(command, (list, tuple)) and all(isinstance(a, str) for a in command):
        argv = list(command)
    else:
        raise ConfigError(f"Command must be a string or a list of strings, got {command!r}")
    if not argv:
        raise ConfigError("Command must not be empty")
    return argv


def validate_probe(probe: Probe) -> None:
    """Raise ConfigError when a probe's target or options cannot work."""
    if not probe.name:
        raise ConfigError("Probe name must not be empty")
    if probe.timeout <= 0:
        raise ConfigError(f"Probe '{probe.name}': timeout must be greater than zero")
    if not probe.target:
        raise ConfigError(f"Probe '{probe.name}': target must not be empty")
    if probe.kind == ProbeKind.PORT_REACHABLE:
        split_host_port(probe.target)
    elif probe.kind == ProbeKind.HTTP_REACHABLE:
        parts = urlsplit(probe.target)
        if parts.scheme not in ("http", "https") or not parts.netloc:
            raise ConfigError(f"Probe '{probe.name}': invalid URL {probe.target!r}")
    elif probe.kind == ProbeKind.CONTAINER_PING:
        host = probe.options.get("host")
        if not isinstance(host, str) or not host.strip():
            raise ConfigError(f"Probe '{probe.name}': option 'host' must be a non-empty string")
    elif probe.kind == ProbeKind.APP_LEVEL_PING and "command" in probe.options:
        try:
            command_argv(probe.options["command"])
        except ConfigError as e:
            raise ConfigError(f"Probe '{probe.name}': {e}") from e
    elif probe.kind == ProbeKind.RESOURCE_USAGE and "cpu_warn_percent" in probe.options:
        threshold = probe.options["cpu_warn_percent"]
        if not isinstance(threshold, (int, float)) or isinstance(threshold, bool) or threshold < 0:
            raise ConfigError(f"Probe '{probe.name}': cpu_warn_percent must be a non-negative number")
    elif probe.kind == ProbeKind.LOG_SCAN:
        compile_patterns(probe.options.get("patterns") or DEFAULT_ERROR_PATTERNS)
        tail = probe.options.get("tail_lines", DEFAULT_TAIL_LINES)
        if not isinstance(tail, int) or isinstance(tail, bool) or tail < 1:
            raise ConfigError(f"Probe '{probe.name}': tail_lines must be a positive integer")


def _first_line(text: str) -> str:
    lines = [ln.strip() for ln in (text or "").splitlines() if ln.strip()]
    return lines[0] if lines else ""


def _last_line(text: str) -> str:
    lines = [ln.strip() for ln in (text or "").splitlines() if ln.strip()]
    return lines[-1] if lines else ""
