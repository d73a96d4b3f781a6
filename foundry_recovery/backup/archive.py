"""Manifest, archive sealing and archive storage (local and remote)."""

import os
import shutil
import tarfile
import time
from pathlib import Path
from typing import List, Optional

from .._utils import logger
from ..exceptions import ArchiveFailedError
from ..models import Archive, BackupRun, Manifest, RemoteLocation
from .remote import S3ObjectStore
from .utils import (
    ARCHIVE_SUFFIX,
    MANIFEST_FILE,
    checksum_path_for,
    compute_directory_checksum,
    create_archive,
    extract_archive,
    load_manifest,
    save_manifest,
)

PARTIAL_SUFFIX = ".partial"


class ArchiveManager:
    """Own the backup directory: workspaces, sealed archives and their sidecars.

    Sealed archives are write-once. Nothing here rewrites an existing
    ``.tar.gz``; retention only deletes.
    """

    def __init__(self, backup_dir: Path, remote: Optional[S3ObjectStore] = None):
        """Initialize archive manager.

        Args:
            backup_dir: Directory holding workspaces and archives
            remote: Optional object store for uploads and downloads
        """
        self.backup_dir = Path(backup_dir)
        self.remote = remote

    def new_workspace(self, backup_name: str) -> Path:
        """Create a fresh workspace directory, never reusing an existing name.

        ``<name>``, then ``<name>-1``, ``<name>-2``... until no workspace, sealed
        archive or checksum sidecar of that name exists.
        """
        candidate = backup_name
        suffix = 0
        while self._name_taken(candidate):
            suffix += 1
            candidate = f"{backup_name}-{suffix}"

        workspace = self.backup_dir / candidate
        try:
            workspace.mkdir(parents=True)
        except OSError as e:
            raise ArchiveFailedError(f"Cannot create workspace {workspace}: {e}")
        logger.info(f"Workspace: {workspace}")
        return workspace

    def _archive_path(self, name: str) -> Path:
        return self.backup_dir / f"{name}{ARCHIVE_SUFFIX}"

    def _name_taken(self, name: str) -> bool:
        archive_path = self._archive_path(name)
        return any(p.exists() for p in (self.backup_dir / name, archive_path, checksum_path_for(archive_path)))

    # Manifest

    def build_manifest(self, run: BackupRun, foundry_version: Optional[str] = None) -> Manifest:
        return Manifest(
            timestamp=run.timestamp,
            backup_name=run.workspace.name if run.workspace else run.backup_name,
            namespace=run.namespace,
            components=run.component_flags(),
            foundry_version=foundry_version or "unknown",
        )

    async def write_manifest(self, manifest: Manifest, workspace: Path) -> Path:
        manifest_path = workspace / MANIFEST_FILE
        try:
            await save_manifest(manifest.model_dump(mode="json"), manifest_path)
        except OSError as e:
            raise ArchiveFailedError(f"Failed to write {MANIFEST_FILE}: {e}")
        logger.info(f"Manifest: {manifest.backup_name}, components {manifest.components}")
        return manifest_path

    async def read_manifest(self, directory: Path) -> Manifest:
        manifest_path = directory / MANIFEST_FILE
        if not manifest_path.exists():
            raise ArchiveFailedError(f"No {MANIFEST_FILE} in {directory}")
        try:
            return Manifest(**await load_manifest(manifest_path))
        except ValueError as e:
            raise ArchiveFailedError(f"Invalid manifest in {directory}: {e}")

    # Sealing

    async def seal(self, workspace: Path) -> Archive:
        """Compress the workspace into ``<name>.tar.gz`` and remove the workspace.

        The archive is written as ``.partial`` and renamed once complete, so a
        crash never leaves a truncated file under the final name. The checksum
        sidecar is written before the rename: a sealed archive always has one,
        and a failed seal leaves only the workspace.

        Raises:
            ArchiveFailedError: Compression failed and the workspace is kept, or
                the archive is sealed but the workspace could not be removed
        """
        archive_path = self._archive_path(workspace.name)
        partial_path = archive_path.with_name(archive_path.name + PARTIAL_SUFFIX)
        sidecar_path = checksum_path_for(archive_path)
        sidecar_written = False

        try:
            checksum = compute_directory_checksum(workspace)
            size = await create_archive(workspace, partial_path)
            with open(sidecar_path, "w") as f:
                sidecar_written = True
                f.write(checksum)
            os.replace(partial_path, archive_path)
        except (tarfile.TarError, OSError) as e:
            partial_path.unlink(missing_ok=True)
            if sidecar_written:
                sidecar_path.unlink(missing_ok=True)
            logger.error(f"Sealing {workspace.name} failed, workspace kept at {workspace}")
            raise ArchiveFailedError(f"Failed to create archive {archive_path.name}: {e}")

        try:
            shutil.rmtree(workspace)
        except OSError as e:
            logger.error(f"Sealed {archive_path.name} but could not remove workspace {workspace}: {e}")
            raise ArchiveFailedError(f"Archive {archive_path.name} sealed, workspace {workspace} not removed: {e}")
        logger.info(f"Sealed {archive_path.name} ({size:,} bytes), checksum {checksum}")
        return Archive(path=archive_path, size_bytes=size, checksum=checksum)

    # Unpacking

    async def unpack(self, source: Path, dest: Path) -> Path:
        """Make an archive's content available on disk.

        Args:
            source: Sealed ``.tar.gz`` or an already-unpacked directory
            dest: Extraction directory for archives

        Returns:
            Directory holding ``manifest.json``
        """
        if source.is_dir():
            if not (source / MANIFEST_FILE).exists():
                raise ArchiveFailedError(f"{source} is not an unpacked backup (no {MANIFEST_FILE})")
            return source
        if not source.exists():
            raise ArchiveFailedError(f"Archive not found: {source}")

        try:
            await extract_archive(source, dest)
        except (tarfile.TarError, OSError) as e:
            raise ArchiveFailedError(f"Failed to extract {source.name}: {e}")

        if (dest / MANIFEST_FILE).exists():
            return dest
        for child in sorted(dest.iterdir()):
            if child.is_dir() and (child / MANIFEST_FILE).exists():
                return child
        raise ArchiveFailedError(f"{source.name} contains no {MANIFEST_FILE}")

    def verify(self, directory: Path, checksum_file: Path) -> Optional[bool]:
        """Compare unpacked content against a checksum sidecar.

        Returns:
            True/False for match/mismatch, None when there is no sidecar
        """
        if not checksum_file.exists():
            logger.info(f"No checksum file {checksum_file.name}, skipping verification")
            return None

        expected = checksum_file.read_text().strip()
        actual = compute_directory_checksum(directory)
        if actual == expected:
            logger.info(f"Payload checksum verified: {expected}")
            return True
        logger.warning(f"Checksum mismatch! Expected: {expected}, Got: {actual}")
        return False

    # Remote transfer

    async def upload(self, archive: Archive) -> Optional[str]:
        """Upload an archive and its checksum sidecar.

        Returns:
            Remote URI, or None when remote storage is not configured
        """
        if self.remote is None or not self.remote.config.enabled:
            logger.info("Remote storage not configured, skipping upload")
            return None

        uri = await self.remote.upload_file(archive.path, self.remote.location_for(archive.name))
        sidecar = checksum_path_for(archive.path)
        if sidecar.exists():
            await self.remote.upload_file(sidecar, self.remote.location_for(sidecar.name))
        return uri

    async def download(self, location: RemoteLocation, dest_dir: Path) -> Path:
        """Fetch an archive (and its sidecar when present) into ``dest_dir``.

        Raises:
            ArchiveFailedError: Remote storage missing or transfer failed
        """
        if self.remote is None:
            raise ArchiveFailedError("Remote storage is not configured")

        archive_path = await self.remote.download_file(location, dest_dir / location.key)
        sidecar = checksum_path_for(archive_path)
        sidecar_location = location.model_copy(update={"key": sidecar.name})
        try:
            await self.remote.download_file(sidecar_location, sidecar)
        except ArchiveFailedError:
            logger.debug(f"No checksum sidecar at {sidecar_location.uri}")
        return archive_path

    # Listing and retention

    def list_archives(self) -> List[Archive]:
        """Sealed local archives, newest first."""
        if not self.backup_dir.exists():
            return []
        archives = []
        for path in self.backup_dir.glob(f"*{ARCHIVE_SUFFIX}"):
            sidecar = checksum_path_for(path)
            checksum = sidecar.read_text().strip() if sidecar.exists() else None
            archives.append(Archive(path=path, size_bytes=path.stat().st_size, checksum=checksum))
        archives.sort(key=lambda a: a.path.stat().st_mtime, reverse=True)
        return archives

    def apply_retention(self, max_age_days: int) -> List[Path]:
        """Delete local archives (and their sidecars) older than ``max_age_days``.

        Returns:
            Deleted archive paths; empty when ``max_age_days`` is 0
        """
        if max_age_days <= 0:
            return []

        cutoff = time.time() - max_age_days * 86400
        deleted = []
        for archive in self.list_archives():
            if archive.path.stat().st_mtime >= cutoff:
                continue
            archive.path.unlink()
            checksum_path_for(archive.path).unlink(missing_ok=True)
            logger.info(f"Retention: deleted {archive.name}")
            deleted.append(archive.path)
        return deleted
