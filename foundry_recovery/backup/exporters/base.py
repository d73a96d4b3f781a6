"""Common capture/load flow for data store exporters."""

from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable, Callable, List, Optional

from ..._utils import logger
from ...cluster import ClusterAdapter, PodRef
from ...exceptions import (
    CaptureFailedError,
    OperationTimeoutError,
    RecoveryError,
    ResourceNotFoundError,
    RestoreFailedError,
)
from ...models import ComponentKind, ComponentResult, ComponentStatus, StrategyAttempt


@dataclass
class CaptureStrategy:
    """One way of producing an artifact. Tried in order until one succeeds.

    ``run`` writes the artifact to the given path and raises CaptureFailedError
    (or OperationTimeoutError) when the strategy is unavailable or fails. It may
    return a warning for an artifact that was captured but is suspect.
    """
    name: str
    run: Callable[[PodRef, Path], Awaitable[Optional[str]]]


class StoreExporter:
    """Base class for exporters backed by a single store pod."""

    component: ComponentKind
    artifact_name: str

    def __init__(self, cluster: ClusterAdapter, selector: str):
        self.cluster = cluster
        self.selector = selector

    def strategies(self) -> List[CaptureStrategy]:
        raise NotImplementedError

    async def load_artifact(self, pod: PodRef, artifact_path: Path) -> Optional[str]:
        """Replace the store's content with the artifact.

        Returns a warning when the load completed with recoverable errors.
        Raises RestoreFailedError.
        """
        raise NotImplementedError

    async def _resolve(self) -> Optional[PodRef]:
        try:
            return await self.cluster.resolve_pod(self.selector)
        except ResourceNotFoundError as e:
            logger.warning(f"{self.component.value}: {e}")
            return None

    async def capture(self, workspace: Path) -> ComponentResult:
        """Capture the store into ``workspace/<artifact_name>``.

        Returns:
            ComponentResult; a missing pod yields ``skipped``, exhausted
            strategies or empty output yield ``failed``
        """
        name = self.component.value
        pod = await self._resolve()
        if pod is None:
            return ComponentResult.skipped(self.component, f"no pod matches {self.selector}, not deployed?")

        artifact = workspace / self.artifact_name
        attempts: List[StrategyAttempt] = []
        strategies = self.strategies()

        for index, strategy in enumerate(strategies):
            logger.info(f"Capturing {name} from {pod.name} using {strategy.name}")
            try:
                note = await strategy.run(pod, artifact)
            except OperationTimeoutError as e:
                logger.error(f"{name} {strategy.name} timed out: {e}")
                attempts.append(StrategyAttempt(name=strategy.name, ok=False, error=str(e), timed_out=True))
                artifact.unlink(missing_ok=True)
                continue
            except RecoveryError as e:
                logger.warning(f"{name} {strategy.name} failed: {e}")
                attempts.append(StrategyAttempt(name=strategy.name, ok=False, error=str(e)))
                artifact.unlink(missing_ok=True)
                continue

            if not artifact.exists() or artifact.stat().st_size == 0:
                logger.warning(f"{name} {strategy.name} produced no output")
                attempts.append(StrategyAttempt(name=strategy.name, ok=False, error="empty output"))
                artifact.unlink(missing_ok=True)
                continue

            attempts.append(StrategyAttempt(name=strategy.name, ok=True))
            warnings = [note] if note else []
            if index > 0:
                warnings.insert(0, f"fallback method used: {strategy.name}")
            warning = "; ".join(warnings) or None
            if warning:
                logger.warning(f"{name}: {warning}")

            size = artifact.stat().st_size
            logger.info(f"Captured {name}: {artifact.name} ({size:,} bytes)")
            return ComponentResult(
                component=self.component,
                name=name,
                status=ComponentStatus.CAPTURED,
                artifact_path=artifact,
                size_bytes=size,
                warning=warning,
                attempts=attempts,
            )

        errors = "; ".join(f"{a.name}: {a.error}" for a in attempts)
        return ComponentResult.failed(
            self.component,
            f"all capture strategies failed ({errors})",
            warning="no artifact captured",
            attempts=attempts,
        )

    async def load(self, artifact_path: Path) -> ComponentResult:
        """Load an artifact back into the live store.

        Returns:
            ComponentResult with ``restored`` or ``failed`` status
        """
        pod = await self._resolve()
        if pod is None:
            return ComponentResult.failed(self.component, f"no pod matches {self.selector}")

        logger.info(f"Restoring {self.component.value} into {pod.name} from {artifact_path.name}")
        try:
            warning = await self.load_artifact(pod, artifact_path)
        except OperationTimeoutError as e:
            logger.error(f"{self.component.value} restore timed out: {e}")
            return ComponentResult.failed(self.component, str(e))
        except RecoveryError as e:
            logger.error(str(e))
            return ComponentResult.failed(self.component, str(e))

        logger.info(f"Restored {self.component.value}")
        return ComponentResult(
            component=self.component,
            name=self.component.value,
            status=ComponentStatus.RESTORED,
            artifact_path=artifact_path,
            size_bytes=artifact_path.stat().st_size,
            warning=warning,
        )

    def _capture_error(self, detail: str) -> CaptureFailedError:
        return CaptureFailedError(self.component.value, detail)

    def _restore_error(self, detail: str) -> RestoreFailedError:
        return RestoreFailedError(self.component.value, detail)
