"""Entry point for the `stackhealth` console script."""

from __future__ import annotations

import argparse
import logging
import signal
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any

from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.prompt import Confirm
from rich.table import Table

from stackhealth import __version__
from stackhealth.backup import BackupManager, human_size
from stackhealth.collaborators import Collaborators
from stackhealth.config import AppConfig, load_config, parse_duration
from stackhealth.errors import BackupError, ConfigError, ErrorKind
from stackhealth.health import (
    Aggregator,
    CancelToken,
    CycleReport,
    OutputFormat,
    Reporter,
    exit_code,
    registry_from_config,
)
from stackhealth.health.reporter import render_human, render_structured

console = Console()
LOG_FORMAT = "%(asctime)s [%(name)s] %(levelname)s: %(message)s"

EXIT_CONFIG_ERROR = 2


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.WARNING),
        format=LOG_FORMAT,
        stream=sys.stderr,
        force=True,
    )


@contextmanager
def cancel_on_signals(cancel: CancelToken) -> Iterator[CancelToken]:
    """Route SIGINT / SIGTERM to ``cancel`` for the duration of the block."""
    def _handler(signum: int, _frame: Any) -> None:
        logging.getLogger(__name__).info("Received signal %d, stopping", signum)
        cancel.cancel()

    previous = {sig: signal.signal(sig, _handler) for sig in (signal.SIGINT, signal.SIGTERM)}
    try:
        yield cancel
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)


def print_report(report: CycleReport, fmt: OutputFormat) -> None:
    if fmt == OutputFormat.STRUCTURED:
        console.print(
            render_structured(report), markup=False, highlight=False, emoji=False, soft_wrap=True,
        )
    else:
        console.print(render_human(report, color=True), highlight=False, emoji=False, soft_wrap=True)


def _load(args: argparse.Namespace, **overrides: Any) -> AppConfig:
    config = load_config(args.config, **overrides)
    configure_logging("DEBUG" if getattr(args, "verbose", False) else config.settings.log_level)
    return config


# ── healthcheck ──────────────────────────────────────────────────────────────


def run_healthcheck(args: argparse.Namespace) -> int:
    """Run one cycle (or watch) and return the process exit code."""
    fmt = OutputFormat(args.format)
    try:
        overrides: dict[str, Any] = {}
        if args.interval is not None:
            try:
                overrides["watch_interval"] = parse_duration(args.interval)
            except ValueError as e:
                raise ConfigError(str(e)) from e
        config = _load(args, **overrides)
        registry = registry_from_config(config)
    except ConfigError as e:
        configure_logging("DEBUG" if args.verbose else "WARNING")
        logging.getLogger(__name__).error("Configuration error: %s", e)
        report = CycleReport.aborted("config", ErrorKind.CONFIG_ERROR, str(e))
        print_report(report, fmt)
        return exit_code(report)

    settings = config.settings
    aggregator = Aggregator(settings, Collaborators.from_settings(settings))
    reporter = Reporter(settings, aggregator)
    cancel = CancelToken()

    with cancel_on_signals(cancel):
        if not args.watch:
            report = aggregator.run_cycle(registry, cancel)
            print_report(report, fmt)
            return exit_code(report)

        code = 0
        for report in reporter.watch(registry, cancel=cancel):
            if fmt == OutputFormat.HUMAN:
                console.clear()
                console.print(Panel("Stack Health Monitor (Press Ctrl+C to exit)", style="bold blue"))
                console.print(f"Last update: {datetime.now():%Y-%m-%d %H:%M:%S}\n")
            print_report(report, fmt)
            if fmt == OutputFormat.HUMAN:
                console.print(f"\n[dim]Refreshing in {settings.watch_interval:g} seconds...[/dim]")
            code = exit_code(report)
        return code


# ── backup ───────────────────────────────────────────────────────────────────


def _ok(message: str) -> None:
    console.print(f"[green]✓[/green] {escape(message)}")


def _warn(message: str) -> None:
    console.print(f"[yellow]⚠[/yellow] {escape(message)}")


def _fail(message: str) -> None:
    console.print(f"[red]✗[/red] {escape(message)}")


def run_backup(args: argparse.Namespace) -> int:
    try:
        config = _load(args)
    except ConfigError as e:
        _fail(f"Configuration error: {e}")
        return EXIT_CONFIG_ERROR

    manager = BackupManager(config.settings)
    try:
        if args.action == "create":
            with console.status("[bold green]Creating backup..."):
                path = manager.create()
            _ok(f"Backup completed: {path} ({human_size(path.stat().st_size)})")
        elif args.action == "list":
            _print_backups(manager)
        elif args.action == "verify":
            count = manager.inspect(args.file)
            _ok(f"Verified: {args.file} ({human_size(Path(args.file).stat().st_size)}, {count} files)")
        elif args.action == "cleanup":
            deleted = manager.cleanup(args.days)
            _ok(f"Cleanup completed ({deleted} deleted)")
        elif args.action == "restore":
            confirm = None
            if not args.yes:
                _warn(f"Restoring from {args.file}. Current config will be overwritten!")
                confirm = lambda: Confirm.ask("Continue?", default=False)  # noqa: E731
            pre_restore = manager.restore(args.file, confirm=confirm)
            if pre_restore is not None:
                _ok(f"Pre-restore backup saved to {pre_restore}")
            _ok("Restore completed")
    except BackupError as e:
        _fail(str(e))
        return 1
    return 0


def _print_backups(manager: BackupManager) -> None:
    backups = manager.list_backups()
    if not backups:
        _warn("No backups found")
        return
    table = Table(title="Available Backups")
    table.add_column("File")
    table.add_column("Size", justify="right")
    table.add_column("Modified")
    for b in backups:
        table.add_row(b.name, b.size_human, f"{b.modified:%Y-%m-%d %H:%M:%S}")
    console.print(table)
    console.print(f"Usage: {human_size(manager.total_size())} in {manager.backup_dir}")


# ── Parser ───────────────────────────────────────────────────────────────────


def build_parser() -> argparse.ArgumentParser:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--config", help="YAML config file (overrides environment / .env)")
    common.add_argument("--verbose", "-v", action="store_true", help="Debug logging")

    parser = argparse.ArgumentParser(
        prog="stackhealth",
        description="Health checks and backups for the MQTT broker / bridge / companion stack",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    sub = parser.add_subparsers(dest="command")

    hc = sub.add_parser("healthcheck", parents=[common], help="Check the health of the stack")
    hc.add_argument("--watch", action="store_true", help="Repeat until interrupted")
    hc.add_argument("--interval", help="Watch interval, e.g. 10s, 1m (default from config)")
    hc.add_argument(
        "--format", choices=[f.value for f in OutputFormat], default=OutputFormat.HUMAN.value,
    )

    bk = sub.add_parser("backup", help="Create, list, verify and restore backups")
    actions = bk.add_subparsers(dest="action", required=True)
    actions.add_parser("create", parents=[common], help="Create a full backup")
    actions.add_parser("list", parents=[common], help="List available backups")
    verify = actions.add_parser("verify", parents=[common], help="Verify backup integrity")
    verify.add_argument("file")
    cleanup = actions.add_parser("cleanup", parents=[common], help="Remove backups older than N days")
    cleanup.add_argument("days", nargs="?", type=int, default=None)
    restore = actions.add_parser("restore", parents=[common], help="Restore from a backup file")
    restore.add_argument("file")
    restore.add_argument("--yes", "-y", action="store_true", help="Do not ask for confirmation")

    return parser


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command == "healthcheck":
        sys.exit(run_healthcheck(args))
    elif args.command == "backup":
        sys.exit(run_backup(args))
    else:
        parser.print_help()
        sys.exit(1)


if __name__ == "__main__":
    main()
