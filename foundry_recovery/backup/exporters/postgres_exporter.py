"""PostgreSQL backup/restore exporter using pg_dump and psql inside the pod."""

from pathlib import Path
from typing import List, Optional

from ..._utils import logger
from ...cluster import ClusterAdapter, PodRef
from ...config import PostgresConfig
from ...models import ComponentKind
from .base import CaptureStrategy, StoreExporter

RESET_SCHEMA_SQL = "DROP SCHEMA IF EXISTS public CASCADE; CREATE SCHEMA public;"


class PostgresExporter(StoreExporter):
    """Export and restore the relational store as a plain-text SQL dump.

    The dump carries schema and data but no ownership or privilege statements,
    so it can be replayed into a target whose roles differ from the source.
    """

    component = ComponentKind.POSTGRESQL
    artifact_name = "postgresql.sql"

    def __init__(self, cluster: ClusterAdapter, config: PostgresConfig):
        super().__init__(cluster, config.selector)
        self.config = config

    def strategies(self) -> List[CaptureStrategy]:
        return [CaptureStrategy("pg_dump", self._pg_dump)]

    async def _pg_dump(self, pod: PodRef, artifact: Path) -> None:
        result = await self.cluster.exec_in_pod(
            pod,
            [
                "pg_dump",
                "-U", self.config.user,
                "-d", self.config.database,
                "--no-owner",
                "--no-privileges",
            ],
            stdout_path=artifact,
        )
        if not result.ok:
            raise self._capture_error(f"pg_dump {result.describe()}")

    def _psql(self, *extra: str) -> List[str]:
        return ["psql", "-U", self.config.user, "-d", self.config.database, *extra]

    async def load_artifact(self, pod: PodRef, artifact_path: Path) -> Optional[str]:
        """Drop and recreate the public schema, then replay the dump.

        The schema reset must succeed before the replay starts: loading into a
        schema that still holds conflicting objects would merge state. The
        replay itself keeps going past failing statements; those are returned
        as a warning so the run report shows a partially loaded database.
        """
        logger.warning(f"Dropping schema public in database {self.config.database}")
        reset = await self.cluster.exec_in_pod(
            pod, self._psql("-v", "ON_ERROR_STOP=1", "-c", RESET_SCHEMA_SQL)
        )
        if not reset.ok:
            raise self._restore_error(f"schema reset {reset.describe()}")

        replay = await self.cluster.exec_in_pod(
            pod, self._psql("-q"), stdin_path=artifact_path
        )
        if not replay.ok:
            raise self._restore_error(f"psql replay {replay.describe()}")
        errors = [line.strip() for line in replay.stderr.splitlines() if "ERROR" in line]
        if errors:
            warning = f"psql reported {len(errors)} error(s) during replay, last: {errors[-1]}"
            logger.warning(warning)
            return warning
        return None
