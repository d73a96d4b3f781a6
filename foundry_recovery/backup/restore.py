"""Restore orchestration: confirmation, extraction, scale down, reload, scale up."""

import sys
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, Optional, Union

from kubernetes.client.rest import ApiException

from .._utils import logger
from ..cluster import ClusterAdapter, api_error_detail
from ..config import RecoveryConfig
from ..exceptions import ClusterApiError, ConfirmationDeclined, OperationTimeoutError, RecoveryError
from ..models import (
    STORE_ORDER,
    ComponentKind,
    ComponentResult,
    Manifest,
    RemoteLocation,
    RestoreRun,
    RestoreState,
)
from .archive import ArchiveManager
from .exporters import Neo4jExporter, PostgresExporter, RedisExporter, StoreExporter, VolumeExporter
from .utils import checksum_path_for

EXCLUDED = "excluded by operator"


def stdin_prompt(prompt: str) -> str:
    sys.stderr.write(prompt)
    sys.stderr.flush()
    return input()


def require_confirmation(
    expected: str,
    warning: str,
    confirm: Callable[[str], str] = stdin_prompt,
) -> None:
    """Ask the operator to type ``expected`` verbatim.

    Raises:
        ConfirmationDeclined: Anything other than the exact phrase, or no input
    """
    try:
        answer = confirm(f"{warning}\nType '{expected}' to continue: ")
    except EOFError:
        answer = ""
    if answer != expected:
        logger.warning(f"Confirmation declined (expected '{expected}')")
        raise ConfirmationDeclined(expected)
    logger.info("Confirmation accepted")


@dataclass
class RestoreRequest:
    """What to restore and where.

    ``source`` is a local ``.tar.gz``, an already-unpacked backup directory,
    or a RemoteLocation.
    """
    source: Union[Path, RemoteLocation]
    namespace: str
    enabled: Dict[ComponentKind, bool] = field(default_factory=dict)
    force: bool = False


class RestoreManager:
    """Drive one restore run through its states.

    Nothing touches the cluster before the operator confirms. The extraction
    directory is always removed; the archive itself is never modified.
    """

    def __init__(
        self,
        config: RecoveryConfig,
        cluster: ClusterAdapter,
        archive_manager: ArchiveManager,
        confirm: Callable[[str], str] = stdin_prompt,
    ):
        """Initialize restore manager.

        Args:
            config: Complete recovery configuration
            cluster: Cluster adapter bound to the target namespace
            archive_manager: Used to fetch, unpack and verify archives
            confirm: Prompt function returning the operator's answer
        """
        self.config = config
        self.cluster = cluster
        self.archive_manager = archive_manager
        self.confirm = confirm

        stores = [
            PostgresExporter(cluster, config.postgres),
            Neo4jExporter(cluster, config.neo4j),
            RedisExporter(cluster, config.redis),
        ]
        self.store_exporters: Dict[ComponentKind, StoreExporter] = {e.component: e for e in stores}
        self.volume_exporter = VolumeExporter(cluster, config.volumes)

        self.run: Optional[RestoreRun] = None

    def _enter(self, run: RestoreRun, state: RestoreState) -> None:
        logger.info(f"Restore into {run.namespace}: {run.state.value} -> {state.value}")
        run.state = state

    async def restore(self, request: RestoreRequest) -> RestoreRun:
        """Replace the namespace's data with the content of a backup.

        Returns:
            The finished RestoreRun (``DONE``)

        Raises:
            ConfirmationDeclined: Operator did not confirm; run is ``CANCELLED``
            RecoveryError: Fetching or extracting failed; run is ``FAILED``
        """
        run = RestoreRun(
            source=request.source,
            namespace=request.namespace,
            enabled=request.enabled,
            force=request.force,
        )
        self.run = run

        try:
            self._await_confirmation(run)
        except ConfirmationDeclined:
            run.state = RestoreState.CANCELLED
            raise

        self.archive_manager.backup_dir.mkdir(parents=True, exist_ok=True)
        with tempfile.TemporaryDirectory(prefix="restore_", dir=self.archive_manager.backup_dir) as tmp:
            try:
                content_dir = await self._fetch_and_extract(run, Path(tmp))
            except RecoveryError as e:
                logger.error(f"Restore failed in {run.state.value}: {e}")
                run.state = RestoreState.FAILED
                raise

            await self._scale_down(run)
            await self._restore_stores(run, content_dir)
            await self._restore_volumes(run, content_dir)
            await self._scale_up(run)

        self._enter(run, RestoreState.DONE)
        self._log_summary(run)
        return run

    def _await_confirmation(self, run: RestoreRun) -> None:
        if run.force:
            logger.warning(f"Confirmation skipped (--force), restoring into {run.namespace}")
            run.confirmed = True
            return
        require_confirmation(
            f"restore {run.namespace}",
            f"WARNING: this replaces all data in namespace '{run.namespace}' with the backup content.",
            self.confirm,
        )
        run.confirmed = True

    async def _fetch_and_extract(self, run: RestoreRun, tmp: Path) -> Path:
        self._enter(run, RestoreState.FETCHING)
        await self.cluster.connect()
        source = run.source
        if isinstance(source, RemoteLocation):
            source = await self.archive_manager.download(source, tmp / "download")

        self._enter(run, RestoreState.EXTRACTING)
        content_dir = await self.archive_manager.unpack(Path(source), tmp / "extract")
        if Path(source).is_file():
            if self.archive_manager.verify(content_dir, checksum_path_for(Path(source))) is False:
                run.notes.append("archive checksum mismatch")

        run.manifest = await self.archive_manager.read_manifest(content_dir)
        self._log_manifest(run, run.manifest)
        return content_dir

    def _log_manifest(self, run: RestoreRun, manifest: Manifest) -> None:
        present = [name for name, captured in manifest.components.items() if captured]
        logger.info(
            f"Backup {manifest.backup_name}: taken {manifest.timestamp} from namespace "
            f"{manifest.namespace}, version {manifest.foundry_version}, "
            f"components: {', '.join(present) or 'none'}"
        )
        if manifest.namespace != run.namespace:
            note = f"backup was taken from namespace {manifest.namespace}, restoring into {run.namespace}"
            logger.warning(note)
            run.notes.append(note)

    async def _scale_down(self, run: RestoreRun) -> None:
        self._enter(run, RestoreState.SCALING_DOWN)
        targets = self.config.restore.scale_targets
        for target in targets:
            try:
                await self.cluster.scale_deployments(target.selector, 0)
            except (ApiException, ClusterApiError) as e:
                note = f"scale down of {target.selector} failed: {api_error_detail(e)}"
                logger.error(note)
                run.notes.append(note)

        for target in targets:
            try:
                await self.cluster.wait_for_scale_down(target.selector)
            except OperationTimeoutError as e:
                # Proceed: stores are replaced even if some pods linger
                logger.warning(f"{e}, proceeding with restore")
                run.notes.append(str(e))
            except (ApiException, ClusterApiError) as e:
                note = f"waiting for scale down of {target.selector} failed: {api_error_detail(e)}"
                logger.error(note)
                run.notes.append(note)

    async def _restore_stores(self, run: RestoreRun, content_dir: Path) -> None:
        self._enter(run, RestoreState.RESTORING_STORES)
        for kind in STORE_ORDER:
            exporter = self.store_exporters[kind]
            artifact = content_dir / exporter.artifact_name
            if not run.is_enabled(kind):
                run.record(ComponentResult.skipped(kind, EXCLUDED))
            elif not artifact.exists():
                logger.warning(f"{kind.value}: no {artifact.name} in backup, skipping")
                run.record(ComponentResult.skipped(kind, f"{artifact.name} not present in backup"))
            else:
                run.record(await self._load_store(exporter, artifact))

    async def _load_store(self, exporter: StoreExporter, artifact: Path) -> ComponentResult:
        try:
            return await exporter.load(artifact)
        except (RecoveryError, ApiException) as e:
            logger.error(f"{exporter.component.value} restore aborted: {e}")
            return ComponentResult.failed(exporter.component, str(e))

    async def _restore_volumes(self, run: RestoreRun, content_dir: Path) -> None:
        self._enter(run, RestoreState.RESTORING_VOLUMES)
        if not run.is_enabled(ComponentKind.VOLUMES):
            run.record(ComponentResult.skipped(ComponentKind.VOLUMES, EXCLUDED))
            return
        try:
            results = await self.volume_exporter.restore(content_dir)
        except (RecoveryError, ApiException) as e:
            logger.error(f"Volume restore aborted: {e}")
            run.record(ComponentResult.failed(ComponentKind.VOLUMES, str(e)))
            return
        for result in results:
            run.record(result)

    async def _scale_up(self, run: RestoreRun) -> None:
        self._enter(run, RestoreState.SCALING_UP)
        scaled = []
        for target in self.config.restore.scale_targets:
            try:
                scaled += await self.cluster.scale_deployments(target.selector, target.replicas)
            except (ApiException, ClusterApiError) as e:
                note = f"scale up of {target.selector} failed: {api_error_detail(e)}"
                logger.error(note)
                run.notes.append(note)

        for name in scaled:
            try:
                rolled_out = await self.cluster.wait_for_rollout(name)
            except (ApiException, ClusterApiError) as e:
                rolled_out = False
                logger.error(f"Reading rollout status of {name} failed: {api_error_detail(e)}")
            if not rolled_out:
                note = f"rollout of {name} did not complete in time"
                logger.warning(note)
                run.notes.append(note)

    def _log_summary(self, run: RestoreRun) -> None:
        restored = [r.name for r in run.results if r.success]
        logger.info(f"Restore complete, restored: {', '.join(restored) or 'nothing'}")
        for warning in run.warnings:
            logger.warning(f"Restore warning: {warning}")
