"""Backup subsystem — tar.gz archives of the stack's config and data."""

from .archive import BackupInfo, BackupManager, human_size
