"""Backup and restore of the platform's data stores, volumes and resources."""

from .archive import ArchiveManager
from .manager import BackupManager
from .remote import S3ObjectStore
from .restore import RestoreManager, RestoreRequest

__all__ = ["ArchiveManager", "BackupManager", "RestoreManager", "RestoreRequest", "S3ObjectStore"]
