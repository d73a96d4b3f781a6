"""Export of cluster resource definitions and release values for reference."""

from pathlib import Path
from typing import Optional

from ..._utils import logger
from ...cluster import ClusterAdapter
from ...config import ResourceExportConfig
from ...models import ComponentKind, ComponentResult, ComponentStatus
from ...release import HelmRelease

RESOURCES_DIR = "k8s-resources"
HELM_VALUES_FILE = "helm-values.yaml"


class ResourceExporter:
    """Write namespace resource definitions to ``k8s-resources/``.

    The files are for operators rebuilding an environment by hand and are never
    applied back automatically.
    """

    component = ComponentKind.K8S_RESOURCES

    def __init__(
        self,
        cluster: ClusterAdapter,
        config: ResourceExportConfig,
        release: Optional[HelmRelease] = None,
    ):
        self.cluster = cluster
        self.config = config
        self.release = release

    async def export(self, output_dir: Path) -> ComponentResult:
        resources_dir = output_dir / RESOURCES_DIR
        try:
            written = await self.cluster.export_resources(
                self.config.kinds, resources_dir, include_secrets=self.config.include_secrets
            )
        except OSError as e:
            logger.warning(f"Resource export failed: {e}")
            return ComponentResult.failed(self.component, str(e), warning="cluster resources not exported")

        if self.release is not None:
            if await self.release.get_values(resources_dir / HELM_VALUES_FILE):
                written.append(resources_dir / HELM_VALUES_FILE)

        if not written:
            return ComponentResult.failed(
                self.component, "no resource kinds could be exported", warning="cluster resources not exported"
            )

        size = sum(p.stat().st_size for p in written)
        logger.info(f"Exported {len(written)} resource file(s) to {resources_dir}")
        return ComponentResult(
            component=self.component,
            name=self.component.value,
            status=ComponentStatus.CAPTURED,
            artifact_path=resources_dir,
            size_bytes=size,
        )
