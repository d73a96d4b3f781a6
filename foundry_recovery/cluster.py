"""Cluster control adapter: discovery, exec, file copy, scaling and waits.

Typed Kubernetes API calls are used for everything the API offers. ``kubectl``
is only shelled out to for ``exec`` and ``cp``, which need a streaming
connection the Python client does not provide in a file-friendly way.
"""

import asyncio
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence

import yaml
from kubernetes import client, config as k8s_config
from kubernetes.client.rest import ApiException
from kubernetes.config.config_exception import ConfigException
from tenacity import AsyncRetrying, RetryError, retry_if_result, stop_after_delay, wait_fixed
from urllib3.exceptions import HTTPError

from ._process import CommandResult, require_tools, run_command
from ._utils import logger
from .config import ClusterConfig
from .exceptions import (
    ClusterApiError,
    ClusterUnreachableError,
    OperationTimeoutError,
    ResourceNotFoundError,
)


def api_error_detail(error: Exception) -> str:
    """Short description of an API failure for run notes."""
    if isinstance(error, ApiException):
        return f"{error.status} {error.reason}"
    return str(error)


@dataclass(frozen=True)
class PodRef:
    name: str
    namespace: str
    container: Optional[str] = None


@dataclass(frozen=True)
class VolumeMountRef:
    claim: str
    pod: PodRef
    mount_path: str


class ClusterAdapter:
    """Kubernetes operations scoped to a single namespace."""

    def __init__(
        self,
        config: ClusterConfig,
        core_api: Optional[Any] = None,
        apps_api: Optional[Any] = None,
        networking_api: Optional[Any] = None,
    ):
        """Initialize adapter.

        Args:
            config: Cluster configuration (namespace, kubectl, timeouts)
            core_api: Optional pre-built CoreV1Api (tests inject mocks here)
            apps_api: Optional pre-built AppsV1Api
            networking_api: Optional pre-built NetworkingV1Api
        """
        self.config = config
        self.namespace = config.namespace
        self.core_api = core_api
        self.apps_api = apps_api
        self.networking_api = networking_api

    async def connect(self) -> None:
        """Check kubectl, load kube config and verify the namespace is reachable.

        Raises:
            ToolingMissingError: kubectl is not on PATH
            ClusterUnreachableError: No usable kube config or namespace missing
        """
        require_tools(self.config.kubectl_bin)
        if self.core_api is None:
            try:
                k8s_config.load_incluster_config()
            except ConfigException:
                try:
                    k8s_config.load_kube_config(
                        config_file=self.config.kubeconfig,
                        context=self.config.context,
                    )
                except (ConfigException, FileNotFoundError) as e:
                    raise ClusterUnreachableError(str(e))
            self.core_api = client.CoreV1Api()
            self.apps_api = client.AppsV1Api()
            self.networking_api = client.NetworkingV1Api()

        try:
            await self._call(self.core_api.read_namespace, self.namespace)
        except ApiException as e:
            if e.status == 404:
                raise ClusterUnreachableError(f"namespace {self.namespace} does not exist")
            raise ClusterUnreachableError(f"{e.status} {e.reason}")
        except (OSError, ClusterApiError) as e:
            raise ClusterUnreachableError(str(e))

        logger.info(f"Connected to cluster, namespace: {self.namespace}")

    async def _call(self, fn: Callable, *args, **kwargs) -> Any:
        """Run a blocking API client call in a worker thread.

        Raises:
            ApiException: The API server answered with an error status
            ClusterApiError: The request never got an answer (retries exhausted, connection reset)
        """
        kwargs.setdefault("_request_timeout", self.config.command_timeout)
        try:
            return await asyncio.to_thread(fn, *args, **kwargs)
        except HTTPError as e:
            request = getattr(fn, "__name__", "call")
            logger.error(f"Kubernetes API request {request} failed: {e}")
            raise ClusterApiError(request, str(e))

    # Discovery

    async def list_pods(self, selector: Optional[str] = None) -> List[Any]:
        kwargs = {"label_selector": selector} if selector else {}
        pods = await self._call(self.core_api.list_namespaced_pod, self.namespace, **kwargs)
        return list(pods.items)

    async def resolve_pod(self, selector: str) -> PodRef:
        """Return the first pod matching a label selector.

        Running, non-terminating pods are preferred; a single primary per
        store kind is assumed.

        Raises:
            ResourceNotFoundError: No pod matches the selector
        """
        pods = await self.list_pods(selector)
        live = [p for p in pods if p.metadata.deletion_timestamp is None]
        running = [p for p in live if p.status is not None and p.status.phase == "Running"]
        candidates = running or live
        if not candidates:
            raise ResourceNotFoundError("pod", selector, self.namespace)

        pod = candidates[0]
        containers = pod.spec.containers or []
        container = containers[0].name if containers else None
        return PodRef(name=pod.metadata.name, namespace=self.namespace, container=container)

    async def list_claims(self) -> List[str]:
        claims = await self._call(self.core_api.list_namespaced_persistent_volume_claim, self.namespace)
        return sorted(c.metadata.name for c in claims.items)

    async def find_claim_mount(self, claim: str) -> Optional[VolumeMountRef]:
        """Resolve the pod mounting a claim and the container path it is mounted at.

        Returns:
            VolumeMountRef, or None when no live pod mounts the claim
        """
        pods = await self.list_pods()
        for pod in pods:
            if pod.metadata.deletion_timestamp is not None:
                continue
            volume_name = None
            for volume in pod.spec.volumes or []:
                pvc = volume.persistent_volume_claim
                if pvc is not None and pvc.claim_name == claim:
                    volume_name = volume.name
                    break
            if volume_name is None:
                continue

            mount = self._find_mount(pod, volume_name, claim)
            if mount is None:
                logger.debug(f"Pod {pod.metadata.name} references {claim} but mounts it nowhere")
                continue
            container, mount_path = mount
            return VolumeMountRef(
                claim=claim,
                pod=PodRef(name=pod.metadata.name, namespace=self.namespace, container=container),
                mount_path=mount_path,
            )
        return None

    @staticmethod
    def _find_mount(pod: Any, volume_name: str, claim: str):
        fallback = None
        for container in pod.spec.containers or []:
            for mount in container.volume_mounts or []:
                if mount.name == volume_name:
                    return container.name, mount.mount_path
                if fallback is None and (mount.name in claim or claim in mount.name):
                    fallback = (container.name, mount.mount_path)
        return fallback

    # Exec and copy

    def _kubectl(self) -> List[str]:
        args = [self.config.kubectl_bin]
        if self.config.kubeconfig:
            args += ["--kubeconfig", self.config.kubeconfig]
        if self.config.context:
            args += ["--context", self.config.context]
        return args

    async def exec_in_pod(
        self,
        pod: PodRef,
        command: Sequence[str],
        stdin_path: Optional[Path] = None,
        stdout_path: Optional[Path] = None,
        timeout: Optional[float] = None,
    ) -> CommandResult:
        """Run a command in the pod's primary container.

        A non-zero exit code is returned to the caller, never raised.
        """
        args = self._kubectl() + ["exec"]
        if stdin_path is not None:
            args.append("-i")
        args += ["-n", pod.namespace, pod.name]
        if pod.container:
            args += ["-c", pod.container]
        args += ["--", *command]
        return await run_command(
            args,
            timeout=timeout or self.config.command_timeout,
            stdin_path=stdin_path,
            stdout_path=stdout_path,
        )

    async def copy_from_pod(self, pod: PodRef, remote_path: str, local_path: Path) -> CommandResult:
        args = self._kubectl() + ["cp", f"{pod.namespace}/{pod.name}:{remote_path}", str(local_path)]
        if pod.container:
            args += ["-c", pod.container]
        return await run_command(args, timeout=self.config.copy_timeout)

    async def copy_to_pod(self, local_path: Path, pod: PodRef, remote_path: str) -> CommandResult:
        args = self._kubectl() + ["cp", str(local_path), f"{pod.namespace}/{pod.name}:{remote_path}"]
        if pod.container:
            args += ["-c", pod.container]
        return await run_command(args, timeout=self.config.copy_timeout)

    # Scaling and waits

    async def scale_deployments(self, selector: str, replicas: int) -> List[str]:
        """Set the replica count of every deployment matching a selector.

        Returns:
            Names of the scaled deployments
        """
        deployments = await self._call(
            self.apps_api.list_namespaced_deployment, self.namespace, label_selector=selector
        )
        names = []
        for deployment in deployments.items:
            name = deployment.metadata.name
            await self._call(
                self.apps_api.patch_namespaced_deployment_scale,
                name,
                self.namespace,
                {"spec": {"replicas": replicas}},
            )
            logger.info(f"Scaled deployment {name} to {replicas}")
            names.append(name)
        return names

    async def _poll(self, check: Callable, timeout: float, operation: str) -> None:
        retrying = AsyncRetrying(
            stop=stop_after_delay(timeout),
            wait=wait_fixed(self.config.poll_interval),
            retry=retry_if_result(lambda done: not done),
        )
        try:
            await retrying(check)
        except RetryError:
            logger.error(f"{operation} timed out after {timeout:g}s")
            raise OperationTimeoutError(operation, timeout)

    async def wait_for_scale_down(self, selector: str, timeout: Optional[float] = None) -> None:
        """Block until no pod matches the selector.

        Raises:
            OperationTimeoutError: Pods still exist after ``timeout``
        """
        timeout = timeout or self.config.scale_down_timeout

        async def no_pods_left() -> bool:
            remaining = await self.list_pods(selector)
            if remaining:
                logger.debug(f"Waiting for {len(remaining)} pod(s) matching {selector} to terminate")
            return not remaining

        await self._poll(no_pods_left, timeout, f"scale down of {selector}")

    async def wait_for_rollout(self, name: str, timeout: Optional[float] = None) -> bool:
        """Wait until a deployment reports all desired replicas updated and available.

        Returns:
            True when the rollout completed, False on timeout
        """
        timeout = timeout or self.config.rollout_timeout

        async def rolled_out() -> bool:
            deployment = await self._call(self.apps_api.read_namespaced_deployment, name, self.namespace)
            return self._rollout_complete(deployment)

        try:
            await self._poll(rolled_out, timeout, f"rollout of {name}")
        except OperationTimeoutError:
            return False
        return True

    @staticmethod
    def _rollout_complete(deployment: Any) -> bool:
        desired = deployment.spec.replicas or 0
        status = deployment.status
        if (status.observed_generation or 0) < (deployment.metadata.generation or 0):
            return False
        return (
            (status.updated_replicas or 0) >= desired
            and (status.ready_replicas or 0) >= desired
            and (status.available_replicas or 0) >= desired
            and (status.replicas or 0) <= desired
        )

    # Resource export and deletion

    def _list_functions(self) -> Dict[str, Callable]:
        functions = {
            "services": self.core_api.list_namespaced_service,
            "configmaps": self.core_api.list_namespaced_config_map,
            "secrets": self.core_api.list_namespaced_secret,
            "persistentvolumeclaims": self.core_api.list_namespaced_persistent_volume_claim,
            "deployments": self.apps_api.list_namespaced_deployment,
            "statefulsets": self.apps_api.list_namespaced_stateful_set,
        }
        if self.networking_api is not None:
            functions["ingresses"] = self.networking_api.list_namespaced_ingress
        return functions

    async def export_resources(
        self,
        kinds: Sequence[str],
        output_dir: Path,
        include_secrets: bool = False,
    ) -> List[Path]:
        """Write each resource kind as a YAML List to ``output_dir/<kind>.yaml``.

        Unknown kinds and API errors for a single kind are logged and skipped.
        """
        output_dir.mkdir(parents=True, exist_ok=True)
        functions = self._list_functions()
        serializer = self.core_api.api_client
        written = []

        wanted = list(kinds) + (["secrets"] if include_secrets and "secrets" not in kinds else [])
        for kind in wanted:
            if kind == "secrets" and not include_secrets:
                continue
            list_fn = functions.get(kind)
            if list_fn is None:
                logger.warning(f"Unsupported resource kind for export: {kind}")
                continue
            try:
                resources = await self._call(list_fn, self.namespace)
            except ApiException as e:
                logger.warning(f"Failed to export {kind}: {e.status} {e.reason}")
                continue

            items = []
            for item in resources.items:
                data = serializer.sanitize_for_serialization(item)
                data.get("metadata", {}).pop("managedFields", None)
                items.append(data)

            output_file = output_dir / f"{kind}.yaml"
            with open(output_file, "w") as f:
                yaml.safe_dump({"apiVersion": "v1", "kind": "List", "items": items}, f, sort_keys=False)
            logger.debug(f"Exported {len(items)} {kind} to {output_file}")
            written.append(output_file)

        return written

    async def delete_claims(self, selector: Optional[str] = None) -> List[str]:
        kwargs = {"label_selector": selector} if selector else {}
        claims = await self._call(
            self.core_api.list_namespaced_persistent_volume_claim, self.namespace, **kwargs
        )
        deleted = []
        for claim in claims.items:
            name = claim.metadata.name
            await self._call(self.core_api.delete_namespaced_persistent_volume_claim, name, self.namespace)
            logger.info(f"Deleted persistent volume claim {name}")
            deleted.append(name)
        return deleted
