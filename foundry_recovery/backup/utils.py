"""Utility functions for backup/restore operations."""

import hashlib
import json
import tarfile
from pathlib import Path
from typing import Any, Dict

from .._utils import logger

ARCHIVE_SUFFIX = ".tar.gz"
CHECKSUM_SUFFIX = ".checksum"
MANIFEST_FILE = "manifest.json"


async def create_archive(source_dir: Path, output_path: Path) -> int:
    """Create tar.gz archive from directory.

    The archive holds a single top-level directory named after ``source_dir``.

    Args:
        source_dir: Directory to archive
        output_path: Output archive path

    Returns:
        Size of created archive in bytes
    """
    logger.info(f"Creating archive: {output_path}")

    with tarfile.open(output_path, "w:gz") as tar:
        tar.add(source_dir, arcname=source_dir.name)

    archive_size = output_path.stat().st_size
    logger.info(f"Archive created: {archive_size:,} bytes")

    return archive_size


async def extract_archive(archive_path: Path, output_dir: Path) -> None:
    """Extract tar.gz archive to directory.

    Args:
        archive_path: Path to .tar.gz archive
        output_dir: Directory to extract to
    """
    logger.info(f"Extracting archive: {archive_path} to {output_dir}")

    output_dir.mkdir(parents=True, exist_ok=True)

    with tarfile.open(archive_path, "r:gz") as tar:
        # Rejects absolute paths, links escaping output_dir and device files
        tar.extractall(output_dir, filter="data")

    logger.info("Archive extracted successfully")


def compute_directory_checksum(directory: Path) -> str:
    """Compute SHA-256 checksum of directory contents.

    Files are hashed in sorted order together with their relative paths, so
    the same tree always yields the same checksum wherever it is unpacked.

    Args:
        directory: Directory to compute checksum for

    Returns:
        SHA-256 checksum as hex string with 'sha256:' prefix
    """
    sha256 = hashlib.sha256()

    for file_path in sorted(directory.rglob("*")):
        if file_path.is_file():
            relative_path = file_path.relative_to(directory)
            sha256.update(relative_path.as_posix().encode("utf-8"))

            with open(file_path, "rb") as f:
                for chunk in iter(lambda: f.read(8192), b""):
                    sha256.update(chunk)

    return f"sha256:{sha256.hexdigest()}"


def checksum_path_for(archive_path: Path) -> Path:
    """``<dir>/<name>.tar.gz`` -> ``<dir>/<name>.checksum``."""
    name = archive_path.name
    if name.endswith(ARCHIVE_SUFFIX):
        name = name[: -len(ARCHIVE_SUFFIX)]
    return archive_path.with_name(name + CHECKSUM_SUFFIX)


async def save_manifest(manifest: Dict[str, Any], output_path: Path) -> None:
    """Save manifest JSON to file.

    Args:
        manifest: Manifest dictionary
        output_path: Output file path
    """
    with open(output_path, "w") as f:
        json.dump(manifest, f, indent=2, default=str)

    logger.debug(f"Manifest saved: {output_path}")


async def load_manifest(manifest_path: Path) -> Dict[str, Any]:
    """Load manifest JSON from file.

    Args:
        manifest_path: Manifest file path

    Returns:
        Manifest dictionary
    """
    with open(manifest_path, "r") as f:
        manifest = json.load(f)

    logger.debug(f"Manifest loaded: {manifest_path}")
    return manifest
