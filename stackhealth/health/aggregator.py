"""Aggregator — runs every registered probe once per cycle.

Probes run on a thread pool. Calls against one external target are capped
by a semaphore per target key. A probe that outlives its own timeout (plus a
small grace) or the cycle deadline gets a timeout result and its worker is
abandoned; the cycle itself never waits on it.

Abandoned workers are still joined by ``concurrent.futures`` at interpreter
exit. Each collaborator call bounds itself; HttpClient returns after the
response headers and never reads the body.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import FIRST_COMPLETED, CancelledError, Future, ThreadPoolExecutor, wait

from stackhealth.collaborators import Collaborators
from stackhealth.config import Settings
from stackhealth.errors import ErrorKind, OrchestratorUnavailableError
from stackhealth.health.classifier import classify
from stackhealth.health.models import (
    CycleReport,
    Probe,
    ProbeResult,
    overall_status,
    utcnow,
)
from stackhealth.health.probes import execute_probe, timeout_result
from stackhealth.health.registry import ProbeRegistry

logger = logging.getLogger(__name__)

ORCHESTRATOR_PROBE_NAME = "orchestrator"
DEFAULT_GRACE = 0.25
POLL_INTERVAL = 0.05


class CancelToken:
    """Thread-safe cancellation flag shared by the CLI and the watch loop."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: float) -> bool:
        """Sleep up to ``timeout`` seconds; True if cancelled meanwhile."""
        return self._event.wait(timeout)


class Aggregator:
    """Executes a registry's probes concurrently and builds a CycleReport."""

    def __init__(
        self,
        settings: Settings,
        collaborators: Collaborators,
        grace: float = DEFAULT_GRACE,
    ) -> None:
        self.settings = settings
        self.collab = collaborators
        self.grace = grace
        self._semaphores: dict[str, threading.BoundedSemaphore] = {}
        self._sem_lock = threading.Lock()

    def cycle_timeout(self, probes: list[Probe]) -> float:
        """Upper bound for one cycle: slowest probe timeout plus fixed slack."""
        return max((p.timeout for p in probes), default=0.0) + self.settings.cycle_slack

    def run_cycle(self, registry: ProbeRegistry, cancel: CancelToken | None = None) -> CycleReport:
        """Run all probes once. Per-probe failures never abort the cycle."""
        started_at = utcnow()
        probes = registry.all()
        if not probes:
            return CycleReport((), overall_status(()), started_at, utcnow())

        if any(p.uses_orchestrator for p in probes):
            if not self.collab.orchestrator.is_available(timeout=self.settings.probe_timeout):
                logger.error("Orchestrator unavailable, aborting cycle")
                return CycleReport.aborted(
                    ORCHESTRATOR_PROBE_NAME,
                    ErrorKind.ORCHESTRATOR_UNAVAILABLE,
                    "Docker Compose not available or project not started",
                    started_at,
                )

        t0 = time.monotonic()
        deadline = t0 + self.cycle_timeout(probes)
        starts: dict[str, float] = {}
        results: dict[str, ProbeResult] = {}
        aborted: OrchestratorUnavailableError | None = None

        executor = ThreadPoolExecutor(
            max_workers=min(self.settings.max_workers, len(probes)),
            thread_name_prefix="probe",
        )
        futures: dict[Future[ProbeResult], Probe] = {
            executor.submit(self._run_one, p, starts, deadline, cancel): p for p in probes
        }
        pending = set(futures)
        try:
            while pending and aborted is None:
                done, pending = wait(pending, timeout=POLL_INTERVAL, return_when=FIRST_COMPLETED)
                for fut in done:
                    probe = futures[fut]
                    try:
                        results[probe.name] = fut.result()
                    except OrchestratorUnavailableError as e:
                        aborted = e
                    except CancelledError:
                        results[probe.name] = _cancelled_result(probe)
                    except Exception as e:
                        logger.exception("Probe %s crashed", probe.name)
                        results[probe.name] = ProbeResult(
                            probe_name=probe.name, status=probe.on_failure,
                            detail=f"{type(e).__name__}: {e}", error_kind=classify(e),
                            section=probe.section, critical=probe.critical,
                        )
                if aborted is not None:
                    break
                self._expire(futures, pending, starts, results, t0, deadline, cancel)
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

        if aborted is not None:
            logger.error("Orchestrator became unavailable mid-cycle: %s", aborted)
            return CycleReport.aborted(
                ORCHESTRATOR_PROBE_NAME,
                ErrorKind.ORCHESTRATOR_UNAVAILABLE,
                str(aborted) or "Orchestrator unavailable",
                started_at,
            )

        ordered = tuple(results[p.name] for p in probes)
        report = CycleReport(
            results=ordered,
            overall_status=overall_status(ordered),
            started_at=started_at,
            finished_at=utcnow(),
            cancelled=bool(cancel and cancel.cancelled),
        )
        logger.info(
            "Cycle finished: %s (%d probes, %.0fms)",
            report.overall_status.value, len(ordered), report.duration_ms,
        )
        return report

    # ── Internals ────────────────────────────────────────────────────────

    def _semaphore(self, key: str) -> threading.BoundedSemaphore:
        with self._sem_lock:
            sem = self._semaphores.get(key)
            if sem is None:
                sem = threading.BoundedSemaphore(self.settings.max_per_target)
                self._semaphores[key] = sem
            return sem

    def _run_one(
        self,
        probe: Probe,
        starts: dict[str, float],
        deadline: float,
        cancel: CancelToken | None,
    ) -> ProbeResult:
        sem = self._semaphore(probe.target_key)
        if not sem.acquire(timeout=max(0.0, deadline - time.monotonic())):
            return timeout_result(probe, 0.0, "timeout waiting for a free slot on target")
        try:
            if cancel is not None and cancel.cancelled:
                return _cancelled_result(probe)
            starts[probe.name] = time.monotonic()
            return execute_probe(probe, self.collab)
        finally:
            sem.release()

    def _expire(
        self,
        futures: dict[Future[ProbeResult], Probe],
        pending: set[Future[ProbeResult]],
        starts: dict[str, float],
        results: dict[str, ProbeResult],
        t0: float,
        deadline: float,
        cancel: CancelToken | None,
    ) -> None:
        """Give timeout / cancelled results to probes past their deadline."""
        now = time.monotonic()
        cancelling = cancel is not None and cancel.cancelled
        for fut in list(pending):
            probe = futures[fut]
            started = starts.get(probe.name)
            if started is None:
                if cancelling:
                    # a worker still waiting for its slot sees the token itself
                    fut.cancel()
                    results[probe.name] = _cancelled_result(probe)
                    pending.discard(fut)
                elif now >= deadline:
                    fut.cancel()
                    results[probe.name] = timeout_result(
                        probe, (now - t0) * 1000, "timeout before the probe could start",
                    )
                    pending.discard(fut)
            elif now >= min(started + probe.timeout + self.grace, deadline):
                logger.warning("Probe %s exceeded its %gs timeout", probe.name, probe.timeout)
                results[probe.name] = timeout_result(probe, (now - started) * 1000)
                pending.discard(fut)


def _cancelled_result(probe: Probe) -> ProbeResult:
    return ProbeResult(
        probe_name=probe.name,
        status=probe.on_failure,
        detail="cancelled before the probe started",
        section=probe.section,
        critical=probe.critical,
    )
