"""Persistent volume backup/restore by copying mounted directory trees."""

from pathlib import Path
from typing import List

from ..._utils import logger, matches_any
from ...cluster import ClusterAdapter
from ...config import VolumeConfig
from ...exceptions import OperationTimeoutError
from ...models import ComponentKind, ComponentResult, ComponentStatus

VOLUMES_DIR = "volumes"


def _tree_size(path: Path) -> int:
    return sum(f.stat().st_size for f in path.rglob("*") if f.is_file())


class VolumeExporter:
    """Copy every claim's mount path to/from ``volumes/<claim>/``.

    Volumes are best-effort: a claim whose owning pod or mount path cannot be
    resolved, or whose copy fails, is reported and the run moves on.
    """

    component = ComponentKind.VOLUMES

    def __init__(self, cluster: ClusterAdapter, config: VolumeConfig):
        self.cluster = cluster
        self.config = config

    def _result_name(self, claim: str) -> str:
        return f"volume/{claim}"

    async def export(self, output_dir: Path) -> List[ComponentResult]:
        """Capture all claims in the namespace.

        Args:
            output_dir: Backup workspace; claims land in ``volumes/<claim>``

        Returns:
            One ComponentResult per claim considered
        """
        volumes_dir = output_dir / VOLUMES_DIR
        results = []

        claims = await self.cluster.list_claims()
        if not claims:
            logger.info("No persistent volume claims in namespace")
            return results

        for claim in claims:
            if matches_any(claim, self.config.skip_patterns):
                logger.debug(f"Skipping claim {claim}: covered by a store dump")
                continue
            results.append(await self._export_claim(claim, volumes_dir))

        captured = sum(1 for r in results if r.success)
        logger.info(f"Volume export complete: {captured}/{len(results)} claims captured")
        return results

    async def _export_claim(self, claim: str, volumes_dir: Path) -> ComponentResult:
        name = self._result_name(claim)
        mount = await self.cluster.find_claim_mount(claim)
        if mount is None:
            warning = f"no running pod mounts claim {claim}"
            logger.warning(warning)
            return ComponentResult.skipped(self.component, warning, name=name)

        target = volumes_dir / claim
        target.parent.mkdir(parents=True, exist_ok=True)
        logger.info(f"Copying {claim} from {mount.pod.name}:{mount.mount_path}")
        try:
            result = await self.cluster.copy_from_pod(mount.pod, mount.mount_path, target)
        except OperationTimeoutError as e:
            logger.error(f"Copy of {claim} timed out: {e}")
            return ComponentResult.failed(self.component, str(e), name=name, warning="volume copy timed out")

        if not result.ok:
            warning = f"copy of {claim} failed: {result.describe()}"
            logger.warning(warning)
            return ComponentResult.failed(self.component, result.describe(), name=name, warning=warning)

        if not target.exists():
            warning = f"copy of {claim} produced no output"
            logger.warning(warning)
            return ComponentResult.failed(self.component, "empty output", name=name, warning=warning)

        return ComponentResult(
            component=self.component,
            name=name,
            status=ComponentStatus.CAPTURED,
            artifact_path=target,
            size_bytes=_tree_size(target),
        )

    async def restore(self, input_dir: Path) -> List[ComponentResult]:
        """Copy each ``volumes/<claim>`` directory back into its mount path.

        Args:
            input_dir: Extracted archive root
        """
        volumes_dir = input_dir / VOLUMES_DIR
        results = []
        if not volumes_dir.is_dir():
            logger.warning("Archive contains no volumes")
            return [ComponentResult.skipped(self.component, "no volumes in archive")]

        for claim_dir in sorted(p for p in volumes_dir.iterdir() if p.is_dir()):
            results.append(await self._restore_claim(claim_dir))
        return results

    async def _restore_claim(self, claim_dir: Path) -> ComponentResult:
        claim = claim_dir.name
        name = self._result_name(claim)
        mount = await self.cluster.find_claim_mount(claim)
        if mount is None:
            warning = f"no running pod mounts claim {claim}, not restored"
            logger.warning(warning)
            return ComponentResult.skipped(self.component, warning, name=name)

        logger.info(f"Restoring {claim} into {mount.pod.name}:{mount.mount_path}")
        try:
            # Trailing "/." copies the directory's contents rather than the directory
            result = await self.cluster.copy_to_pod(Path(f"{claim_dir}/."), mount.pod, mount.mount_path)
        except OperationTimeoutError as e:
            logger.error(f"Restore of {claim} timed out: {e}")
            return ComponentResult.failed(self.component, str(e), name=name)

        if not result.ok:
            warning = f"restore of {claim} failed: {result.describe()}"
            logger.warning(warning)
            return ComponentResult.failed(self.component, result.describe(), name=name, warning=warning)

        return ComponentResult(
            component=self.component,
            name=name,
            status=ComponentStatus.RESTORED,
            artifact_path=claim_dir,
            size_bytes=_tree_size(claim_dir),
        )
