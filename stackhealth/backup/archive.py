"""Backup archives of the stack's configuration and data directories.

Archives are gzipped tarballs named ``z2m_backup_<YYYYmmdd_HHMMSS>.tar.gz``
with paths relative to the compose project directory, so a restore extracts
them back in place. Coordinator firmware images under ``<data>/ota`` are
left out.
"""

from __future__ import annotations

import fnmatch
import logging
import subprocess
import tarfile
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path, PurePosixPath

from stackhealth.collaborators import ComposeOrchestrator
from stackhealth.config import Settings
from stackhealth.errors import BackupError, OrchestratorUnavailableError

logger = logging.getLogger(__name__)

BACKUP_PREFIX = "z2m_backup_"
PRE_RESTORE_PREFIX = "pre_restore_backup_"
ARCHIVE_SUFFIX = ".tar.gz"


@dataclass(frozen=True)
class BackupInfo:
    path: Path
    size_bytes: int
    modified: datetime

    @property
    def name(self) -> str:
        return self.path.name

    @property
    def size_human(self) -> str:
        return human_size(self.size_bytes)


def human_size(size: float) -> str:
    for unit in ("B", "K", "M", "G"):
        if size < 1024 or unit == "G":
            return f"{size:.0f}{unit}" if unit == "B" else f"{size:.1f}{unit}"
        size /= 1024
    return f"{size:.1f}G"


class BackupManager:
    """Create, list, verify, clean up and restore stack backups."""

    def __init__(
        self,
        settings: Settings,
        orchestrator: ComposeOrchestrator | None = None,
    ) -> None:
        self.settings = settings
        self.project_dir = Path(settings.project_dir)
        self.backup_dir = self.project_dir / settings.backup_dir
        self.orchestrator = orchestrator or ComposeOrchestrator(
            compose_file=settings.compose_file, project_dir=settings.project_dir,
        )

    # ── Sources ──────────────────────────────────────────────────────────

    def _entry(self, path: str | Path) -> tuple[Path, str]:
        """(file system path, archive member name) for a configured path."""
        p = Path(path)
        if p.is_absolute():
            try:
                return p, p.relative_to(self.project_dir.resolve()).as_posix()
            except ValueError:
                return p, p.as_posix().lstrip("/")
        return self.project_dir / p, PurePosixPath(p.as_posix()).as_posix()

    def sources(self) -> list[tuple[Path, str]]:
        """(path, member name) pairs included in a full backup."""
        s = self.settings
        entries = [
            self._entry(s.config_dir),
            self._entry(s.data_dir),
            self._entry(s.mosquitto_config_dir),
            self._entry(s.mosquitto_data_dir),
            self._entry(s.compose_file),
        ]
        entries.extend(
            (p, p.name) for p in sorted(self.project_dir.glob(".env*")) if p.is_file()
        )
        return entries

    def _exclude_pattern(self) -> str:
        return f"{self._entry(self.settings.data_dir)[1]}/ota/*.bin"

    # ── Operations ───────────────────────────────────────────────────────

    def create(
        self,
        prefix: str = BACKUP_PREFIX,
        sources: list[tuple[Path, str]] | None = None,
    ) -> Path:
        """Write a new archive and return its path. Raises BackupError."""
        self.backup_dir.mkdir(parents=True, exist_ok=True)
        path = self._new_archive_path(prefix)
        wanted = sources if sources is not None else self.sources()

        present = []
        for source, name in wanted:
            if source.exists():
                present.append((source, name))
            else:
                logger.warning("Skipping missing path: %s", source)
        if not present:
            raise BackupError("Nothing to back up: none of the configured paths exist")

        exclude = self._exclude_pattern()

        def _filter(info: tarfile.TarInfo) -> tarfile.TarInfo | None:
            if fnmatch.fnmatch(info.name, exclude):
                logger.debug("Excluding %s", info.name)
                return None
            return info

        logger.info("Starting backup: %s", path)
        try:
            with tarfile.open(path, "w:gz") as tar:
                for source, name in present:
                    tar.add(source, arcname=name, filter=_filter)
        except (OSError, tarfile.TarError) as e:
            path.unlink(missing_ok=True)
            raise BackupError(f"Backup failed: {e}") from e

        logger.info("Backup completed (%s)", human_size(path.stat().st_size))
        return path

    def list_backups(self) -> list[BackupInfo]:
        """Existing backups, oldest first."""
        if not self.backup_dir.is_dir():
            return []
        infos = []
        for p in sorted(self.backup_dir.glob(f"{BACKUP_PREFIX}*{ARCHIVE_SUFFIX}")):
            st = p.stat()
            infos.append(BackupInfo(
                path=p, size_bytes=st.st_size, modified=datetime.fromtimestamp(st.st_mtime),
            ))
        return infos

    def total_size(self) -> int:
        """Bytes used by everything in the backup directory."""
        if not self.backup_dir.is_dir():
            return 0
        return sum(p.stat().st_size for p in self.backup_dir.rglob("*") if p.is_file())

    def inspect(self, path: str | Path) -> int:
        """Number of members in a readable archive. Raises BackupError."""
        p = Path(path)
        if not p.is_file():
            raise BackupError(f"Valid backup file required: {p}")
        try:
            with tarfile.open(p, "r:gz") as tar:
                return len(tar.getmembers())
        except (OSError, EOFError, tarfile.TarError) as e:
            raise BackupError(f"Backup corrupted: {p.name} ({e})") from e

    def verify(self, path: str | Path) -> bool:
        """True when the archive can be fully listed."""
        try:
            count = self.inspect(path)
        except BackupError as e:
            logger.warning("%s", e)
            return False
        logger.info("Verified %s: %d entries", Path(path).name, count)
        return True

    def cleanup(self, days: int | None = None) -> int:
        """Delete backups older than ``days`` (default from settings)."""
        keep_days = self.settings.backup_keep_days if days is None else days
        if keep_days < 0:
            raise BackupError("days must not be negative")
        if not self.backup_dir.is_dir():
            return 0

        cutoff = time.time() - keep_days * 86400
        deleted = 0
        for p in sorted(self.backup_dir.glob(f"{BACKUP_PREFIX}*{ARCHIVE_SUFFIX}")):
            if p.stat().st_mtime < cutoff:
                p.unlink()
                deleted += 1
                logger.info("Deleted: %s", p.name)
        logger.info("Cleanup completed: %d backup(s) older than %d days removed", deleted, keep_days)
        return deleted

    def restore(
        self,
        path: str | Path,
        confirm: Callable[[], bool] | None = None,
    ) -> Path | None:
        """Replace config / data with the archive contents and restart the stack.

        Stops the services, saves the current bridge config and data as a
        pre-restore archive (returned, None if that failed), extracts and
        starts the services again.
        """
        archive = Path(path)
        self.inspect(archive)
        if confirm is not None and not confirm():
            raise BackupError("Restore cancelled")

        logger.info("Stopping services")
        try:
            self.orchestrator.down()
        except (OrchestratorUnavailableError, subprocess.TimeoutExpired) as e:
            logger.warning("Could not stop services: %s", e)

        pre_restore: Path | None = None
        try:
            pre_restore = self.create(
                prefix=PRE_RESTORE_PREFIX,
                sources=[self._entry(self.settings.config_dir), self._entry(self.settings.data_dir)],
            )
        except BackupError as e:
            logger.warning("Pre-restore backup skipped: %s", e)

        logger.info("Extracting %s", archive.name)
        try:
            with tarfile.open(archive, "r:gz") as tar:
                tar.extractall(self.project_dir, filter="data")
        except (OSError, EOFError, tarfile.TarError) as e:
            raise BackupError(f"Restore failed: {e}") from e

        try:
            result = self.orchestrator.up()
        except (OrchestratorUnavailableError, subprocess.TimeoutExpired) as e:
            raise BackupError(f"Restore completed but services did not start: {e}") from e
        if not result.ok:
            raise BackupError(
                f"Restore completed but services did not start: {result.stderr.strip()}"
            )
        logger.info("Restore completed")
        return pre_restore

    def _new_archive_path(self, prefix: str) -> Path:
        stamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        path = self.backup_dir / f"{prefix}{stamp}{ARCHIVE_SUFFIX}"
        n = 1
        while path.exists():
            path = self.backup_dir / f"{prefix}{stamp}_{n}{ARCHIVE_SUFFIX}"
            n += 1
        return path
