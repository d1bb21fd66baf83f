"""Render cycle reports and drive the repeating watch mode."""

from __future__ import annotations

import json
import logging
from collections.abc import Iterator
from enum import Enum

from rich.markup import escape

from stackhealth.config import Settings
from stackhealth.errors import ConfigError, ErrorKind
from stackhealth.health.aggregator import Aggregator, CancelToken
from stackhealth.health.models import SECTION_TITLES, CycleReport, Section, Status
from stackhealth.health.registry import ProbeRegistry

logger = logging.getLogger(__name__)


class OutputFormat(str, Enum):
    HUMAN = "human"
    STRUCTURED = "structured"


ICONS = {Status.OK: "✓", Status.WARN: "⚠", Status.ERROR: "✗"}
STYLES = {Status.OK: "green", Status.WARN: "yellow", Status.ERROR: "red"}

EXIT_CODES = {Status.OK: 0, Status.WARN: 1, Status.ERROR: 2}
EXIT_ORCHESTRATOR_UNAVAILABLE = 3


def exit_code(report: CycleReport) -> int:
    """0 ok, 1 warn, 2 error, 3 when the orchestrator could not be reached."""
    if report.error_kind == ErrorKind.ORCHESTRATOR_UNAVAILABLE:
        return EXIT_ORCHESTRATOR_UNAVAILABLE
    return EXIT_CODES[report.overall_status]


def render_structured(report: CycleReport) -> str:
    """JSON with every report field; stable key order."""
    return json.dumps(report.to_dict(), indent=2, sort_keys=True, ensure_ascii=False)


def render_human(report: CycleReport, color: bool = False) -> str:
    """Section-grouped ✓/⚠/✗ lines followed by the overall status.

    With ``color`` the text carries rich markup and must be printed through a
    rich Console; details are escaped so log lines cannot inject markup.
    """
    lines: list[str] = []
    for section in Section:
        section_results = [r for r in report.results if r.section == section]
        if not section_results:
            continue
        if lines:
            lines.append("")
        header = f"=== {SECTION_TITLES[section]} ==="
        lines.append(f"[bold blue]{header}[/bold blue]" if color else header)
        for r in section_results:
            icon = ICONS[r.status]
            name, detail = r.probe_name, r.detail
            if color:
                style = STYLES[r.status]
                icon = f"[{style}]{icon}[/{style}]"
                name, detail = escape(name), escape(detail)
            lines.append(f"{icon} {name}: {detail}")

    lines.append("")
    summary = _summary(report)
    if color:
        style = STYLES[report.overall_status]
        summary = f"[bold {style}]{escape(summary)}[/bold {style}]"
    lines.append(summary)
    return "\n".join(lines)


def _summary(report: CycleReport) -> str:
    counts = {s: 0 for s in Status}
    for r in report.results:
        counts[r.status] += 1
    text = (
        f"Overall: {report.overall_status.value.upper()} "
        f"({counts[Status.OK]} ok, {counts[Status.WARN]} warn, {counts[Status.ERROR]} error)"
    )
    if report.error_kind is not None:
        text += f" (cycle aborted: {report.error_kind.value})"
    if report.cancelled:
        text += " (cancelled)"
    return text


class Reporter:
    """Renders reports; owns the watch loop over an Aggregator."""

    def __init__(self, settings: Settings, aggregator: Aggregator | None = None) -> None:
        self.settings = settings
        self.aggregator = aggregator

    def render(
        self,
        report: CycleReport,
        fmt: OutputFormat | str = OutputFormat.HUMAN,
        color: bool = False,
    ) -> str:
        try:
            fmt = OutputFormat(fmt)
        except ValueError as e:
            raise ConfigError(f"Unknown output format: {fmt!r}") from e
        if fmt == OutputFormat.STRUCTURED:
            return render_structured(report)
        return render_human(report, color=color)

    def watch(
        self,
        registry: ProbeRegistry,
        interval: float | None = None,
        cancel: CancelToken | None = None,
    ) -> Iterator[CycleReport]:
        """Yield one CycleReport per interval until ``cancel`` is set.

        A cycle interrupted by cancellation is discarded, not yielded.
        """
        if self.aggregator is None:
            raise ConfigError("watch() needs an Aggregator")
        interval = self.settings.watch_interval if interval is None else interval
        if interval <= 0:
            raise ConfigError("Watch interval must be greater than zero")
        cancel = cancel or CancelToken()

        previous: dict[str, Status] = {}
        while not cancel.cancelled:
            report = self.aggregator.run_cycle(registry, cancel)
            if cancel.cancelled:
                logger.info("Watch cancelled; discarding in-flight cycle")
                return
            _log_transitions(previous, report)
            yield report
            if cancel.wait(interval):
                return


def _log_transitions(previous: dict[str, Status], report: CycleReport) -> None:
    """Log probes whose status changed since the previous cycle."""
    for r in report.results:
        before = previous.get(r.probe_name)
        if before is not None and before != r.status:
            level = logging.INFO if r.status == Status.OK else logging.WARNING
            logger.log(
                level, "Probe %s changed %s -> %s: %s",
                r.probe_name, before.value, r.status.value, r.detail,
            )
        previous[r.probe_name] = r.status
