"""Backup orchestration across data stores, volumes and cluster resources."""

from typing import Dict, Optional

from kubernetes.client.rest import ApiException

from .._utils import backup_name_for, generate_timestamp, human_size, logger
from ..cluster import ClusterAdapter
from ..config import RecoveryConfig
from ..exceptions import RecoveryError
from ..models import STORE_ORDER, BackupRun, BackupState, ComponentKind, ComponentResult
from ..release import HelmRelease
from .archive import ArchiveManager
from .exporters import (
    Neo4jExporter,
    PostgresExporter,
    RedisExporter,
    ResourceExporter,
    StoreExporter,
    VolumeExporter,
)

EXCLUDED = "excluded by operator"


class BackupManager:
    """Drive one backup run through its states.

    Component failures are recorded and the run moves on. Only initializing,
    sealing and uploading abort the run, raising a structural RecoveryError
    with the run left in ``FAILED``.
    """

    def __init__(
        self,
        config: RecoveryConfig,
        cluster: ClusterAdapter,
        archive_manager: ArchiveManager,
        release: Optional[HelmRelease] = None,
    ):
        """Initialize backup manager.

        Args:
            config: Complete recovery configuration
            cluster: Cluster adapter bound to the target namespace
            archive_manager: Owner of workspaces and archives
            release: Optional helm release used for version and values
        """
        self.config = config
        self.cluster = cluster
        self.archive_manager = archive_manager
        self.release = release

        stores = [
            PostgresExporter(cluster, config.postgres),
            Neo4jExporter(cluster, config.neo4j),
            RedisExporter(cluster, config.redis),
        ]
        self.store_exporters: Dict[ComponentKind, StoreExporter] = {e.component: e for e in stores}
        self.volume_exporter = VolumeExporter(cluster, config.volumes)
        self.resource_exporter = ResourceExporter(cluster, config.resources, release)

        self.run: Optional[BackupRun] = None

    def _enter(self, run: BackupRun, state: BackupState) -> None:
        logger.info(f"Backup {run.backup_name}: {run.state.value} -> {state.value}")
        run.state = state

    async def create_backup(self, enabled: Optional[Dict[ComponentKind, bool]] = None) -> BackupRun:
        """Capture every enabled component and seal the result into an archive.

        Args:
            enabled: Per-component switches; missing keys count as enabled

        Returns:
            The finished BackupRun (``DONE``)

        Raises:
            RecoveryError: A structural failure; ``self.run`` holds the failed run
        """
        enabled = enabled or {}
        timestamp = generate_timestamp()
        run = BackupRun(
            timestamp=timestamp,
            backup_name=backup_name_for(timestamp),
            namespace=self.cluster.namespace,
        )
        self.run = run
        logger.info(f"Starting backup: {run.backup_name} (namespace {run.namespace})")

        try:
            await self._initialize(run)

            self._enter(run, BackupState.CAPTURING_STORES)
            for kind in STORE_ORDER:
                if not enabled.get(kind, True):
                    run.record(ComponentResult.skipped(kind, EXCLUDED))
                    continue
                run.record(await self._capture_store(self.store_exporters[kind], run))

            if enabled.get(ComponentKind.K8S_RESOURCES, True):
                run.record(await self._capture_resources(run))
            else:
                run.record(ComponentResult.skipped(ComponentKind.K8S_RESOURCES, EXCLUDED))

            self._enter(run, BackupState.CAPTURING_VOLUMES)
            if enabled.get(ComponentKind.VOLUMES, True):
                await self._capture_volumes(run)
            else:
                run.record(ComponentResult.skipped(ComponentKind.VOLUMES, EXCLUDED))

            self._enter(run, BackupState.MANIFESTING)
            manifest = self.archive_manager.build_manifest(run, run.foundry_version)
            await self.archive_manager.write_manifest(manifest, run.workspace)

            self._enter(run, BackupState.SEALING)
            run.archive = await self.archive_manager.seal(run.workspace)

            self._enter(run, BackupState.UPLOADING)
            run.remote_uri = await self.archive_manager.upload(run.archive)

            self._enter(run, BackupState.RETENTION_SWEEP)
            deleted = self.archive_manager.apply_retention(self.config.retention_days)
            if deleted:
                logger.info(f"Retention removed {len(deleted)} archive(s) older than {self.config.retention_days} days")
        except RecoveryError as e:
            logger.error(f"Backup {run.backup_name} failed in {run.state.value}: {e}")
            run.state = BackupState.FAILED
            raise

        self._enter(run, BackupState.DONE)
        self._log_summary(run)
        return run

    async def _initialize(self, run: BackupRun) -> None:
        await self.cluster.connect()
        if self.release is not None:
            run.foundry_version = await self.release.get_version()
        run.workspace = self.archive_manager.new_workspace(run.backup_name)

    async def _capture_store(self, exporter: StoreExporter, run: BackupRun) -> ComponentResult:
        try:
            return await exporter.capture(run.workspace)
        except (RecoveryError, ApiException) as e:
            logger.error(f"{exporter.component.value} capture aborted: {e}")
            return ComponentResult.failed(exporter.component, str(e), warning="no artifact captured")

    async def _capture_resources(self, run: BackupRun) -> ComponentResult:
        try:
            return await self.resource_exporter.export(run.workspace)
        except (RecoveryError, ApiException) as e:
            logger.warning(f"Resource export aborted: {e}")
            return ComponentResult.failed(ComponentKind.K8S_RESOURCES, str(e), warning="cluster resources not exported")

    async def _capture_volumes(self, run: BackupRun) -> None:
        try:
            results = await self.volume_exporter.export(run.workspace)
        except (RecoveryError, ApiException) as e:
            logger.warning(f"Volume discovery failed: {e}")
            run.record(ComponentResult.failed(ComponentKind.VOLUMES, str(e), warning="volumes not captured"))
            return
        for result in results:
            run.record(result)

    def _log_summary(self, run: BackupRun) -> None:
        captured = [r.name for r in run.results if r.success]
        logger.info(
            f"Backup complete: {run.archive.name} ({human_size(run.archive.size_bytes)}), "
            f"captured: {', '.join(captured) or 'nothing'}"
        )
        if run.remote_uri:
            logger.info(f"Uploaded to {run.remote_uri}")
        for warning in run.warnings:
            logger.warning(f"Backup warning: {warning}")
