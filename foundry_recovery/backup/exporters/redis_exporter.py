"""Redis backup/restore exporter working on the RDB snapshot file."""

import asyncio
from pathlib import Path
from typing import List, Optional

from tenacity import AsyncRetrying, RetryError, retry_if_result, stop_after_delay, wait_fixed

from ..._process import CommandResult
from ..._utils import logger
from ...cluster import ClusterAdapter, PodRef
from ...config import RedisConfig
from ...exceptions import ClusterApiError, ResourceNotFoundError
from ...models import ComponentKind
from .base import CaptureStrategy, StoreExporter

# Replies meaning a background save is running: started now, queued behind an
# AOF rewrite, or already running from an earlier request
BGSAVE_ACCEPTED = ("Background saving started", "Background saving scheduled", "already in progress")


def parse_run_id(info: str) -> Optional[str]:
    """Extract ``run_id`` from an ``INFO server`` reply."""
    for line in info.splitlines():
        key, _, value = line.strip().partition(":")
        if key == "run_id" and value:
            return value
    return None


class RedisExporter(StoreExporter):
    """Export and restore the cache through its on-disk RDB snapshot.

    Capture triggers BGSAVE, waits a fixed settle interval and copies the
    snapshot out. Under heavy write load the copy can race the save and pick
    up the previous snapshot; LASTSAVE is compared before and after the wait
    and a snapshot that did not advance is kept with a warning.
    """

    component = ComponentKind.REDIS
    artifact_name = "redis-dump.rdb"

    def __init__(self, cluster: ClusterAdapter, config: RedisConfig):
        super().__init__(cluster, config.selector)
        self.config = config

    def strategies(self) -> List[CaptureStrategy]:
        return [CaptureStrategy("bgsave", self._bgsave_snapshot)]

    def _redis_cli(self, *args: str) -> List[str]:
        command = ["redis-cli"]
        if self.config.password:
            command += ["--no-auth-warning", "-a", self.config.password]
        return command + list(args)

    @staticmethod
    def _reply(result: CommandResult) -> str:
        return result.stdout.strip()

    async def _last_save(self, pod: PodRef) -> int:
        result = await self.cluster.exec_in_pod(pod, self._redis_cli("LASTSAVE"))
        reply = self._reply(result)
        if not result.ok or not reply.isdigit():
            raise self._capture_error(f"LASTSAVE {result.describe()}")
        return int(reply)

    async def _bgsave_snapshot(self, pod: PodRef, artifact: Path) -> Optional[str]:
        before = await self._last_save(pod)

        result = await self.cluster.exec_in_pod(pod, self._redis_cli("BGSAVE"))
        reply = self._reply(result)
        # redis-cli exits 0 on error replies such as NOAUTH or WRONGPASS
        if not result.ok or not any(accepted in reply for accepted in BGSAVE_ACCEPTED):
            raise self._capture_error(f"BGSAVE {result.describe()}")

        logger.debug(f"Waiting {self.config.settle_seconds:g}s for BGSAVE to settle")
        await asyncio.sleep(self.config.settle_seconds)

        warning = None
        after = await self._last_save(pod)
        if after <= before:
            warning = f"BGSAVE not finished after {self.config.settle_seconds:g}s, snapshot may be stale"
            logger.warning(f"redis: {warning}")

        copied = await self.cluster.copy_from_pod(pod, self.config.snapshot_path, artifact)
        if not copied.ok:
            raise self._capture_error(f"snapshot copy {copied.describe()}")
        return warning

    async def _run_id(self, pod: PodRef) -> Optional[str]:
        result = await self.cluster.exec_in_pod(pod, self._redis_cli("INFO", "server"))
        return parse_run_id(result.stdout) if result.ok else None

    async def load_artifact(self, pod: PodRef, artifact_path: Path) -> Optional[str]:
        """Replace the snapshot and restart Redis without saving.

        The snapshot is copied first: once the server is down the container is
        gone until the scheduler restarts it. SHUTDOWN NOSAVE keeps the running
        dataset from being written over the new file, and the restarted process
        loads the replaced snapshot on boot.

        The exit status of SHUTDOWN says little (the server drops the
        connection on success) so the restart is confirmed by waiting for a
        server with a new ``run_id``.
        """
        previous = await self._run_id(pod)
        if previous is None:
            raise self._restore_error("server did not answer INFO before shutdown")

        copied = await self.cluster.copy_to_pod(artifact_path, pod, self.config.snapshot_path)
        if not copied.ok:
            raise self._restore_error(f"snapshot copy {copied.describe()}")

        logger.warning(f"Shutting down Redis in {pod.name} without saving")
        shutdown = await self.cluster.exec_in_pod(pod, self._redis_cli("SHUTDOWN", "NOSAVE"))
        if not shutdown.ok:
            logger.debug(f"SHUTDOWN NOSAVE returned {shutdown.describe()}")

        current = await self._wait_for_restart(previous)
        if current == previous:
            raise self._restore_error(
                f"server still running after SHUTDOWN NOSAVE ({shutdown.describe()}), "
                "its next save will overwrite the restored snapshot"
            )
        logger.info(f"Redis restarted with the restored snapshot (run_id {current[:8]})")
        return None

    async def _wait_for_restart(self, previous: str) -> str:
        """Poll until the server answers again; return the run_id it reports.

        The old run_id is returned as soon as the previous process answers.
        """
        async def restarted() -> Optional[str]:
            try:
                pod = await self.cluster.resolve_pod(self.selector)
            except (ResourceNotFoundError, ClusterApiError):
                return None
            return await self._run_id(pod)

        retrying = AsyncRetrying(
            stop=stop_after_delay(self.config.restart_timeout),
            wait=wait_fixed(self.config.restart_poll_interval),
            retry=retry_if_result(lambda run_id: run_id is None),
        )
        try:
            return await retrying(restarted)
        except RetryError:
            raise self._restore_error(
                f"server did not come back within {self.config.restart_timeout:g}s after SHUTDOWN NOSAVE"
            )
