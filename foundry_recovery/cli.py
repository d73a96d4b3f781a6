"""Command line entry point: ``foundry-recovery <verb> [flags]``.

Exit codes: 0 on success, partial success or declined confirmation; 1 when a
run aborts; 2 on usage errors.
"""

import argparse
import asyncio
import logging
import sys
from dataclasses import replace
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence

from dotenv import load_dotenv

from . import __version__
from ._utils import human_size, logger
from .backup.archive import ArchiveManager
from .backup.manager import BackupManager
from .backup.remote import S3ObjectStore
from .backup.restore import RestoreManager, RestoreRequest, require_confirmation, stdin_prompt
from .cluster import ClusterAdapter
from .config import RecoveryConfig
from .exceptions import ArchiveFailedError, ConfirmationDeclined, RecoveryError
from .lock import namespace_lock
from .models import ComponentKind, RemoteLocation
from .release import HelmRelease

COMPONENT_FLAGS = {
    ComponentKind.POSTGRESQL: "no_postgresql",
    ComponentKind.NEO4J: "no_neo4j",
    ComponentKind.REDIS: "no_redis",
    ComponentKind.VOLUMES: "no_volumes",
    ComponentKind.K8S_RESOURCES: "no_k8s_resources",
}


def _add_target_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--namespace", "-n", help="Target namespace (default: FOUNDRY_NAMESPACE or foundry)")


def _add_storage_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--backup-dir", help="Local workspace/archive directory (default: ./backups)")
    parser.add_argument("--bucket", help="S3 bucket for archives (default: FOUNDRY_BACKUP_BUCKET)")
    parser.add_argument("--prefix", help="Key prefix inside the bucket (default: backups)")


def _add_component_args(parser: argparse.ArgumentParser, resources: bool) -> None:
    parser.add_argument("--no-postgresql", action="store_true", help="Exclude the PostgreSQL store")
    parser.add_argument("--no-neo4j", action="store_true", help="Exclude the Neo4j store")
    parser.add_argument("--no-redis", action="store_true", help="Exclude the Redis store")
    parser.add_argument("--no-volumes", action="store_true", help="Exclude persistent volumes")
    if resources:
        parser.add_argument("--no-k8s-resources", action="store_true", help="Skip cluster resource export")


def _add_release_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--release", help="Helm release name (default: foundry)")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="foundry-recovery",
        description="Backup and restore the Foundry platform's data stores on Kubernetes",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--env-file", help="Environment file to load before reading configuration")
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")
    subparsers = parser.add_subparsers(dest="command", required=True)

    backup = subparsers.add_parser("backup", help="Capture all stores and volumes into an archive")
    _add_target_args(backup)
    _add_storage_args(backup)
    backup.add_argument("--retention-days", type=int, help="Delete local archives older than this (0 keeps all)")
    _add_component_args(backup, resources=True)

    restore = subparsers.add_parser("restore", help="Replace the namespace's data with a backup")
    source = restore.add_mutually_exclusive_group(required=True)
    source.add_argument("--archive", help="Local .tar.gz archive or unpacked backup directory")
    source.add_argument("--from-s3", metavar="KEY", help="Archive key in the bucket, or a full s3:// URI")
    _add_target_args(restore)
    _add_storage_args(restore)
    _add_component_args(restore, resources=False)
    restore.add_argument("--force", action="store_true", help="Skip the confirmation prompt")

    for verb, help_text in (("install", "Install the platform release"), ("deploy", "Upgrade or install the release")):
        release = subparsers.add_parser(verb, help=help_text)
        release.add_argument("--chart", help="Chart reference (default: FOUNDRY_CHART)")
        release.add_argument("--values", "-f", action="append", default=[], help="Values file (repeatable)")
        _add_release_args(release)
        _add_target_args(release)

    uninstall = subparsers.add_parser("uninstall", help="Remove the platform release")
    _add_release_args(uninstall)
    _add_target_args(uninstall)
    _add_storage_args(uninstall)
    uninstall.add_argument("--backup-first", action="store_true", help="Take a full backup before uninstalling")
    uninstall.add_argument("--delete-data", action="store_true", help="Also delete persistent volume claims")
    uninstall.add_argument("--force", action="store_true", help="Skip the confirmation prompt")

    listing = subparsers.add_parser("list", help="List local and remote archives")
    _add_target_args(listing)
    _add_storage_args(listing)

    return parser


def apply_overrides(config: RecoveryConfig, args: argparse.Namespace) -> RecoveryConfig:
    """Layer command line flags over the environment configuration."""
    namespace = getattr(args, "namespace", None)
    if namespace:
        config = replace(config, cluster=replace(config.cluster, namespace=namespace))

    backup_dir = getattr(args, "backup_dir", None)
    if backup_dir:
        config = replace(config, workspace_dir=backup_dir)

    retention_days = getattr(args, "retention_days", None)
    if retention_days is not None:
        config = replace(config, retention_days=retention_days)

    remote = {}
    if getattr(args, "bucket", None):
        remote["bucket"] = args.bucket
    if getattr(args, "prefix", None) is not None:
        remote["prefix"] = args.prefix
    if remote:
        config = replace(config, remote=replace(config.remote, **remote))

    release = {}
    if getattr(args, "release", None):
        release["release_name"] = args.release
    if getattr(args, "chart", None):
        release["chart"] = args.chart
    if getattr(args, "values", None):
        release["values_files"] = tuple(args.values)
    if release:
        config = replace(config, release=replace(config.release, **release))

    return config


def enabled_components(args: argparse.Namespace) -> Dict[ComponentKind, bool]:
    return {kind: not getattr(args, flag, False) for kind, flag in COMPONENT_FLAGS.items()}


def _archive_manager(config: RecoveryConfig) -> ArchiveManager:
    remote = S3ObjectStore(config.remote) if config.remote.enabled else None
    return ArchiveManager(Path(config.workspace_dir), remote=remote)


def _print_warnings(warnings: List[str]) -> None:
    for warning in warnings:
        print(f"warning: {warning}", file=sys.stderr)


async def cmd_backup(config: RecoveryConfig, args: argparse.Namespace, confirm: Callable) -> int:
    cluster = ClusterAdapter(config.cluster)
    release = HelmRelease(config.release, config.cluster)
    manager = BackupManager(config, cluster, _archive_manager(config), release=release)

    with namespace_lock(Path(config.workspace_dir), config.namespace):
        run = await manager.create_backup(enabled_components(args))

    print(f"Archive: {run.archive.path} ({human_size(run.archive.size_bytes)})")
    if run.remote_uri:
        print(f"Remote: {run.remote_uri}")
    _print_warnings(run.warnings)
    return 0


def _restore_source(config: RecoveryConfig, args: argparse.Namespace):
    if args.from_s3:
        if args.from_s3.startswith("s3://"):
            try:
                return RemoteLocation.from_uri(args.from_s3)
            except ValueError as e:
                raise ArchiveFailedError(str(e))
        return S3ObjectStore(config.remote).location_for(args.from_s3)

    source = Path(args.archive)
    in_backup_dir = Path(config.workspace_dir) / args.archive
    if not source.exists() and in_backup_dir.exists():
        return in_backup_dir
    return source


async def cmd_restore(config: RecoveryConfig, args: argparse.Namespace, confirm: Callable) -> int:
    source = _restore_source(config, args)
    if isinstance(source, RemoteLocation) and not config.remote.enabled:
        config = replace(config, remote=replace(config.remote, bucket=source.bucket))

    cluster = ClusterAdapter(config.cluster)
    manager = RestoreManager(config, cluster, _archive_manager(config), confirm=confirm)
    request = RestoreRequest(
        source=source,
        namespace=config.namespace,
        enabled=enabled_components(args),
        force=args.force,
    )

    with namespace_lock(Path(config.workspace_dir), config.namespace):
        run = await manager.restore(request)

    restored = [r.name for r in run.results if r.success]
    print(f"Restored: {', '.join(restored) or 'nothing'}")
    _print_warnings(run.warnings)
    return 0


async def cmd_install(config: RecoveryConfig, args: argparse.Namespace, confirm: Callable) -> int:
    release = HelmRelease(config.release, config.cluster)
    with namespace_lock(Path(config.workspace_dir), config.namespace):
        await release.install(args.chart, args.values)
    return 0


async def cmd_deploy(config: RecoveryConfig, args: argparse.Namespace, confirm: Callable) -> int:
    release = HelmRelease(config.release, config.cluster)
    with namespace_lock(Path(config.workspace_dir), config.namespace):
        await release.deploy(args.chart, args.values)
    return 0


async def cmd_uninstall(config: RecoveryConfig, args: argparse.Namespace, confirm: Callable) -> int:
    namespace = config.namespace
    if args.force:
        logger.warning(f"Confirmation skipped (--force), uninstalling from {namespace}")
    else:
        detail = " and DELETES all persistent volume claims" if args.delete_data else ""
        require_confirmation(
            f"uninstall {namespace}",
            f"WARNING: this removes release '{config.release.release_name}' from namespace '{namespace}'{detail}.",
            confirm,
        )

    cluster = ClusterAdapter(config.cluster)
    release = HelmRelease(config.release, config.cluster)
    with namespace_lock(Path(config.workspace_dir), namespace):
        if args.backup_first:
            manager = BackupManager(config, cluster, _archive_manager(config), release=release)
            run = await manager.create_backup()
            print(f"Archive: {run.archive.path}")
            _print_warnings(run.warnings)

        await release.uninstall()

        if args.delete_data:
            await cluster.connect()
            deleted = await cluster.delete_claims()
            print(f"Deleted {len(deleted)} persistent volume claim(s)")
    return 0


async def cmd_list(config: RecoveryConfig, args: argparse.Namespace, confirm: Callable) -> int:
    manager = _archive_manager(config)
    archives = manager.list_archives()
    print(f"Local archives in {manager.backup_dir}:")
    if not archives:
        print("  (none)")
    for archive in archives:
        print(f"  {archive.name}  {human_size(archive.size_bytes)}  {archive.checksum or ''}".rstrip())

    if manager.remote is not None:
        keys = await manager.remote.list_keys()
        print(f"Remote archives in s3://{config.remote.bucket}/{config.remote.prefix}:")
        if not keys:
            print("  (none)")
        for key in keys:
            print(f"  {key}")
    return 0


COMMANDS = {
    "backup": cmd_backup,
    "restore": cmd_restore,
    "install": cmd_install,
    "deploy": cmd_deploy,
    "uninstall": cmd_uninstall,
    "list": cmd_list,
}


async def run(argv: Optional[Sequence[str]] = None, confirm: Optional[Callable[[str], str]] = None) -> int:
    """Parse arguments, run one verb and return the process exit code."""
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(levelname)s:%(name)s:%(message)s",
    )

    if args.env_file:
        if not Path(args.env_file).exists():
            parser.error(f"env file not found: {args.env_file}")
        load_dotenv(args.env_file, override=True)

    try:
        config = apply_overrides(RecoveryConfig.from_env(), args)
    except ValueError as e:
        parser.error(f"invalid configuration: {e}")

    handler = COMMANDS[args.command]
    try:
        return await handler(config, args, confirm or stdin_prompt)
    except ConfirmationDeclined as e:
        print(f"Cancelled: {e}", file=sys.stderr)
        return 0
    except RecoveryError as e:
        if e.structural:
            logger.error(f"Aborted: {e}")
        else:
            logger.error(f"Failed: {e}")
        return 1


def main(argv: Optional[Sequence[str]] = None) -> None:
    """Main entry point."""
    sys.exit(asyncio.run(run(argv)))


if __name__ == "__main__":
    main()
