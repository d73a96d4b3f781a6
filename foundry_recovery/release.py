"""Helm release operations for the platform chart."""

import json
from pathlib import Path
from typing import List, Optional, Sequence

from ._process import CommandResult, run_command
from ._utils import logger
from .config import ClusterConfig, ReleaseConfig
from .exceptions import RecoveryError


class ReleaseError(RecoveryError):
    """A helm command failed. Fatal for install/deploy/uninstall."""

    structural = True


class HelmRelease:
    """Thin wrapper over the ``helm`` CLI bound to one release and namespace."""

    def __init__(self, config: ReleaseConfig, cluster_config: ClusterConfig):
        self.config = config
        self.cluster_config = cluster_config
        self.name = config.release_name
        self.namespace = cluster_config.namespace

    def _helm(self, *args: str) -> List[str]:
        command = [self.config.helm_bin, *args, "--namespace", self.namespace]
        if self.cluster_config.kubeconfig:
            command += ["--kubeconfig", self.cluster_config.kubeconfig]
        if self.cluster_config.context:
            command += ["--kube-context", self.cluster_config.context]
        return command

    async def _run(self, *args: str, timeout: Optional[float] = None) -> CommandResult:
        return await run_command(self._helm(*args), timeout=timeout or self.cluster_config.command_timeout)

    async def get_version(self) -> Optional[str]:
        """Deployed platform version: the release's app version, else its chart version.

        Returns:
            Version string, or None when helm or the release is unavailable
        """
        try:
            result = await self._run("list", "--filter", f"^{self.name}$", "--output", "json")
        except RecoveryError as e:
            logger.warning(f"Could not query helm release {self.name}: {e}")
            return None
        if not result.ok:
            logger.warning(f"helm list failed: {result.describe()}")
            return None

        try:
            releases = json.loads(result.stdout or "[]")
        except ValueError:
            logger.warning("helm list returned unparseable output")
            return None

        for release in releases:
            if release.get("name") != self.name:
                continue
            if release.get("app_version"):
                return release["app_version"]
            # chart is reported as "<chart>-<version>"
            chart = release.get("chart", "")
            _, _, version = chart.rpartition("-")
            return version or None
        return None

    async def get_values(self, output_path: Path) -> bool:
        """Write the release's user-supplied values to ``output_path``.

        Returns:
            True when the values were written
        """
        try:
            result = await self._run("get", "values", self.name, "--output", "yaml")
        except RecoveryError as e:
            logger.warning(f"Could not read values of release {self.name}: {e}")
            return False
        if not result.ok:
            logger.warning(f"helm get values failed: {result.describe()}")
            return False

        output_path.parent.mkdir(parents=True, exist_ok=True)
        with open(output_path, "w") as f:
            f.write(result.stdout)
        return True

    def _chart_args(self, chart: Optional[str], values_files: Sequence[str]) -> List[str]:
        chart = chart or self.config.chart
        if not chart:
            raise ReleaseError("No chart given (use --chart or FOUNDRY_CHART)")
        args = [self.name, chart]
        for values in values_files or self.config.values_files:
            args += ["--values", values]
        return args

    async def install(self, chart: Optional[str] = None, values_files: Sequence[str] = ()) -> None:
        """Install the release into its namespace (created when missing)."""
        args = ["install", *self._chart_args(chart, values_files), "--create-namespace", "--wait"]
        logger.info(f"Installing release {self.name} into {self.namespace}")
        result = await self._run(*args, timeout=self.cluster_config.rollout_timeout)
        if not result.ok:
            raise ReleaseError(f"helm install failed: {result.describe()}")
        logger.info(f"Release {self.name} installed")

    async def deploy(self, chart: Optional[str] = None, values_files: Sequence[str] = ()) -> None:
        """Upgrade the release in place, installing it if it does not exist yet."""
        args = ["upgrade", "--install", *self._chart_args(chart, values_files), "--wait"]
        logger.info(f"Deploying release {self.name} to {self.namespace}")
        result = await self._run(*args, timeout=self.cluster_config.rollout_timeout)
        if not result.ok:
            raise ReleaseError(f"helm upgrade failed: {result.describe()}")
        logger.info(f"Release {self.name} deployed")

    async def uninstall(self) -> None:
        logger.warning(f"Uninstalling release {self.name} from {self.namespace}")
        result = await self._run("uninstall", self.name, "--wait", timeout=self.cluster_config.rollout_timeout)
        if not result.ok:
            raise ReleaseError(f"helm uninstall failed: {result.describe()}")
        logger.info(f"Release {self.name} uninstalled")
