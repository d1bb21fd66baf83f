"""Docker Compose / docker CLI adapter.

Raw CLI text is parsed here, once; callers get typed values back.
Raises OrchestratorUnavailableError when docker itself cannot be used.
"""

from __future__ import annotations

import logging
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path

from stackhealth.errors import OrchestratorUnavailableError, ProbeFailure

logger = logging.getLogger(__name__)

_DAEMON_DOWN_HINTS = (
    "cannot connect to the docker daemon",
    "is the docker daemon running",
    "error during connect",
)

STATS_FORMAT = "{{.Name}}\t{{.CPUPerc}}\t{{.MemUsage}}"


@dataclass(frozen=True)
class CmdResult:
    exit_code: int
    stdout: str
    stderr: str
    duration_ms: int

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


@dataclass(frozen=True)
class ContainerStats:
    name: str
    cpu_percent: float
    mem_usage: str


class ComposeOrchestrator:
    """Queries the compose project through the docker CLI."""

    def __init__(
        self,
        compose_file: str = "docker-compose.yml",
        project_dir: str | Path = ".",
        docker_bin: str = "docker",
        timeout: float = 10.0,
    ) -> None:
        self.compose_file = compose_file
        self.project_dir = Path(project_dir)
        self.docker_bin = docker_bin
        self.timeout = timeout

    # ── Low level ────────────────────────────────────────────────────────

    def _run(
        self,
        args: list[str],
        timeout: float | None = None,
        merge_stderr: bool = False,
    ) -> CmdResult:
        """Run a docker command (no shell). Timeouts propagate to the caller."""
        cmd = [self.docker_bin, *args]
        logger.debug("Running: %s", " ".join(cmd))
        t0 = time.perf_counter()
        try:
            result = subprocess.run(
                cmd,
                cwd=str(self.project_dir),
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT if merge_stderr else subprocess.PIPE,
                text=True,
                timeout=timeout or self.timeout,
                encoding="utf-8",
                errors="replace",
            )
        except FileNotFoundError as e:
            raise OrchestratorUnavailableError(
                f"'{self.docker_bin}' executable not found"
            ) from e
        except PermissionError as e:
            raise OrchestratorUnavailableError(
                f"Permission denied running '{self.docker_bin}'"
            ) from e

        duration_ms = int((time.perf_counter() - t0) * 1000)
        stderr = result.stderr or ""
        if result.returncode != 0:
            lowered = (stderr or result.stdout or "").lower()
            if any(hint in lowered for hint in _DAEMON_DOWN_HINTS):
                raise OrchestratorUnavailableError(
                    (stderr or result.stdout).strip().splitlines()[0]
                )
        return CmdResult(
            exit_code=result.returncode,
            stdout=result.stdout or "",
            stderr=stderr,
            duration_ms=duration_ms,
        )

    def _compose(self, args: list[str], timeout: float | None = None) -> CmdResult:
        return self._run(["compose", "-f", self.compose_file, *args], timeout=timeout)

    # ── Queries ──────────────────────────────────────────────────────────

    def is_available(self, timeout: float | None = None) -> bool:
        """True when the compose project can be listed."""
        try:
            result = self._compose(["ps"], timeout=timeout)
        except OrchestratorUnavailableError as e:
            logger.warning("Orchestrator unavailable: %s", e)
            return False
        except subprocess.TimeoutExpired:
            logger.warning("Orchestrator did not answer within %ss", timeout or self.timeout)
            return False
        if not result.ok:
            logger.warning("docker compose ps failed: %s", result.stderr.strip())
        return result.ok

    def get_state(self, service: str, timeout: float | None = None) -> str:
        """Container state of a service (running, exited, ...) or ``unknown``."""
        result = self._compose(
            ["ps", "--all", service, "--format", "{{.State}}"], timeout=timeout,
        )
        if not result.ok:
            logger.debug("State query for %s failed: %s", service, result.stderr.strip())
            return "unknown"
        lines = [ln.strip() for ln in result.stdout.splitlines() if ln.strip()]
        return lines[0].lower() if lines else "unknown"

    def tail(self, service: str, n: int, timeout: float | None = None) -> list[str]:
        """Last ``n`` log lines of a container, stdout and stderr interleaved."""
        result = self._run(
            ["logs", "--tail", str(n), service], timeout=timeout, merge_stderr=True,
        )
        if not result.ok:
            raise ProbeFailure(f"cannot read logs of {service}: {result.stdout.strip()}")
        return result.stdout.splitlines()

    def exec(self, container: str, argv: list[str], timeout: float | None = None) -> CmdResult:
        """Run a command inside a running container."""
        return self._run(["exec", container, *argv], timeout=timeout)

    def stats(self, timeout: float | None = None) -> list[ContainerStats]:
        """One-shot CPU / memory snapshot of all running containers."""
        result = self._run(["stats", "--no-stream", "--format", STATS_FORMAT], timeout=timeout)
        if not result.ok:
            raise ProbeFailure(f"docker stats failed: {result.stderr.strip()}")
        return parse_stats(result.stdout)

    # ── Lifecycle (used by restore) ──────────────────────────────────────

    def down(self, timeout: float | None = 120.0) -> CmdResult:
        return self._compose(["down"], timeout=timeout)

    def up(self, timeout: float | None = 300.0) -> CmdResult:
        return self._compose(["up", "-d"], timeout=timeout)


def parse_stats(text: str) -> list[ContainerStats]:
    """Parse tab-separated ``docker stats`` output (see STATS_FORMAT)."""
    stats = []
    for line in text.splitlines():
        parts = line.strip().split("\t")
        if len(parts) != 3:
            continue
        name, cpu, mem = (p.strip() for p in parts)
        try:
            cpu_percent = float(cpu.rstrip("%"))
        except ValueError:
            cpu_percent = 0.0
        stats.append(ContainerStats(name=name, cpu_percent=cpu_percent, mem_usage=mem))
    return stats
