"""Tests for the cluster control adapter."""

import pytest
import tempfile
import yaml
from datetime import datetime, timezone
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

from kubernetes import client
from kubernetes.client.rest import ApiException
from urllib3.exceptions import MaxRetryError, ProtocolError

from foundry_recovery.cluster import ClusterAdapter, PodRef
from foundry_recovery.config import ClusterConfig
from foundry_recovery.exceptions import (
    ClusterApiError,
    ClusterUnreachableError,
    OperationTimeoutError,
    ResourceNotFoundError,
    ToolingMissingError,
)
from tests.utils import ok


def make_pod(name, phase="Running", deleting=False, volumes=None, mounts=None, container="main"):
    return client.V1Pod(
        metadata=client.V1ObjectMeta(
            name=name,
            deletion_timestamp=datetime.now(timezone.utc) if deleting else None,
        ),
        spec=client.V1PodSpec(
            containers=[client.V1Container(name=container, volume_mounts=mounts)],
            volumes=volumes,
        ),
        status=client.V1PodStatus(phase=phase),
    )


def claim_volume(volume_name, claim):
    return client.V1Volume(
        name=volume_name,
        persistent_volume_claim=client.V1PersistentVolumeClaimVolumeSource(claim_name=claim),
    )


def make_deployment(name, desired=2, updated=2, ready=2, available=2, total=2, generation=3, observed=3):
    return client.V1Deployment(
        metadata=client.V1ObjectMeta(name=name, generation=generation),
        spec=client.V1DeploymentSpec(
            replicas=desired,
            selector=client.V1LabelSelector(match_labels={"app": name}),
            template=client.V1PodTemplateSpec(),
        ),
        status=client.V1DeploymentStatus(
            replicas=total,
            updated_replicas=updated,
            ready_replicas=ready,
            available_replicas=available,
            observed_generation=observed,
        ),
    )


@pytest.fixture
def core_api():
    return MagicMock()


@pytest.fixture
def apps_api():
    return MagicMock()


@pytest.fixture
def adapter(core_api, apps_api):
    config = ClusterConfig(namespace="foundry", poll_interval=0.01, scale_down_timeout=0.05, rollout_timeout=0.05)
    return ClusterAdapter(config, core_api=core_api, apps_api=apps_api, networking_api=MagicMock())


class TestConnect:
    """Test cluster connection."""

    @pytest.mark.asyncio
    @patch("foundry_recovery.cluster.require_tools")
    async def test_connect_reads_namespace(self, mock_require, adapter, core_api):
        await adapter.connect()

        mock_require.assert_called_once_with("kubectl")
        assert core_api.read_namespace.call_args.args == ("foundry",)

    @pytest.mark.asyncio
    @patch("foundry_recovery.cluster.require_tools")
    async def test_missing_namespace(self, mock_require, adapter, core_api):
        core_api.read_namespace.side_effect = ApiException(status=404, reason="Not Found")

        with pytest.raises(ClusterUnreachableError, match="namespace foundry does not exist"):
            await adapter.connect()

    @pytest.mark.asyncio
    @patch("foundry_recovery.cluster.require_tools")
    async def test_api_error_is_structural(self, mock_require, adapter, core_api):
        core_api.read_namespace.side_effect = ApiException(status=403, reason="Forbidden")

        with pytest.raises(ClusterUnreachableError) as exc_info:
            await adapter.connect()
        assert exc_info.value.structural is True

    @pytest.mark.asyncio
    @patch("foundry_recovery.cluster.require_tools")
    async def test_unreachable_api_server(self, mock_require, adapter, core_api):
        core_api.read_namespace.side_effect = MaxRetryError(None, "/api/v1/namespaces/foundry")

        with pytest.raises(ClusterUnreachableError, match="Max retries exceeded") as exc_info:
            await adapter.connect()
        assert exc_info.value.structural is True

    @pytest.mark.asyncio
    async def test_missing_kubectl(self, adapter, core_api):
        adapter.config = ClusterConfig(kubectl_bin="definitely-not-kubectl-xyz")

        with pytest.raises(ToolingMissingError):
            await adapter.connect()
        core_api.read_namespace.assert_not_called()


class TestDiscovery:
    """Test pod and claim discovery."""

    @pytest.mark.asyncio
    async def test_resolve_pod_prefers_running(self, adapter, core_api):
        core_api.list_namespaced_pod.return_value = client.V1PodList(items=[
            make_pod("postgresql-0", deleting=True),
            make_pod("postgresql-1", phase="Pending"),
            make_pod("postgresql-2", container="postgresql"),
        ])

        pod = await adapter.resolve_pod("app.kubernetes.io/name=postgresql")

        assert pod == PodRef(name="postgresql-2", namespace="foundry", container="postgresql")
        kwargs = core_api.list_namespaced_pod.call_args.kwargs
        assert kwargs["label_selector"] == "app.kubernetes.io/name=postgresql"

    @pytest.mark.asyncio
    async def test_resolve_pod_falls_back_to_non_running(self, adapter, core_api):
        core_api.list_namespaced_pod.return_value = client.V1PodList(items=[make_pod("redis-0", phase="Pending")])

        pod = await adapter.resolve_pod("app.kubernetes.io/name=redis")
        assert pod.name == "redis-0"

    @pytest.mark.asyncio
    async def test_resolve_pod_not_found(self, adapter, core_api):
        core_api.list_namespaced_pod.return_value = client.V1PodList(items=[make_pod("neo4j-0", deleting=True)])

        with pytest.raises(ResourceNotFoundError) as exc_info:
            await adapter.resolve_pod("app.kubernetes.io/name=neo4j")
        assert exc_info.value.structural is False

    @pytest.mark.asyncio
    async def test_connection_reset_is_component_level(self, adapter, core_api):
        core_api.list_namespaced_pod.side_effect = ProtocolError(
            "Connection aborted.", ConnectionResetError(104, "Connection reset by peer")
        )

        with pytest.raises(ClusterApiError, match="Connection aborted") as exc_info:
            await adapter.resolve_pod("app.kubernetes.io/name=redis")
        assert exc_info.value.structural is False

    @pytest.mark.asyncio
    async def test_list_claims_sorted(self, adapter, core_api):
        core_api.list_namespaced_persistent_volume_claim.return_value = client.V1PersistentVolumeClaimList(items=[
            client.V1PersistentVolumeClaim(metadata=client.V1ObjectMeta(name="uploads")),
            client.V1PersistentVolumeClaim(metadata=client.V1ObjectMeta(name="data-neo4j-0")),
        ])

        assert await adapter.list_claims() == ["data-neo4j-0", "uploads"]

    @pytest.mark.asyncio
    async def test_find_claim_mount_by_volume_name(self, adapter, core_api):
        core_api.list_namespaced_pod.return_value = client.V1PodList(items=[
            make_pod("worker-1"),
            make_pod(
                "backend-7d9f",
                volumes=[claim_volume("files", "uploads")],
                mounts=[
                    client.V1VolumeMount(name="config", mount_path="/etc/foundry"),
                    client.V1VolumeMount(name="files", mount_path="/app/uploads"),
                ],
                container="backend",
            ),
        ])

        mount = await adapter.find_claim_mount("uploads")

        assert mount.claim == "uploads"
        assert mount.pod.name == "backend-7d9f"
        assert mount.pod.container == "backend"
        assert mount.mount_path == "/app/uploads"

    @pytest.mark.asyncio
    async def test_find_claim_mount_falls_back_to_related_name(self, adapter, core_api):
        core_api.list_namespaced_pod.return_value = client.V1PodList(items=[
            make_pod(
                "backend-7d9f",
                volumes=[claim_volume("vol-0", "uploads")],
                mounts=[client.V1VolumeMount(name="uploads", mount_path="/srv/uploads")],
            ),
        ])

        mount = await adapter.find_claim_mount("uploads")
        assert mount.mount_path == "/srv/uploads"

    @pytest.mark.asyncio
    async def test_find_claim_mount_none(self, adapter, core_api):
        core_api.list_namespaced_pod.return_value = client.V1PodList(items=[
            make_pod("backend-old", deleting=True, volumes=[claim_volume("files", "uploads")],
                     mounts=[client.V1VolumeMount(name="files", mount_path="/app/uploads")]),
        ])

        assert await adapter.find_claim_mount("uploads") is None


class TestExecAndCopy:
    """Test kubectl command construction."""

    @pytest.mark.asyncio
    async def test_exec_in_pod(self, adapter):
        pod = PodRef(name="postgresql-0", namespace="foundry", container="postgresql")
        with patch("foundry_recovery.cluster.run_command", new=AsyncMock(return_value=ok())) as mock_run:
            result = await adapter.exec_in_pod(pod, ["psql", "-c", "SELECT 1"], stdin_path=Path("/tmp/dump.sql"))

        assert result.ok
        args = mock_run.call_args.args[0]
        assert args == [
            "kubectl", "exec", "-i", "-n", "foundry", "postgresql-0", "-c", "postgresql",
            "--", "psql", "-c", "SELECT 1",
        ]
        assert mock_run.call_args.kwargs["timeout"] == 600.0
        assert mock_run.call_args.kwargs["stdin_path"] == Path("/tmp/dump.sql")

    @pytest.mark.asyncio
    async def test_exec_without_stdin_has_no_interactive_flag(self, adapter):
        adapter.config = ClusterConfig(kubeconfig="/etc/kube/config", context="dr")
        pod = PodRef(name="redis-0", namespace="foundry")
        with patch("foundry_recovery.cluster.run_command", new=AsyncMock(return_value=ok())) as mock_run:
            await adapter.exec_in_pod(pod, ["redis-cli", "PING"], timeout=10)

        args = mock_run.call_args.args[0]
        assert args[:5] == ["kubectl", "--kubeconfig", "/etc/kube/config", "--context", "dr"]
        assert "-i" not in args
        assert mock_run.call_args.kwargs["timeout"] == 10

    @pytest.mark.asyncio
    async def test_copy_uses_copy_timeout(self, adapter):
        pod = PodRef(name="redis-0", namespace="foundry", container="redis")
        with patch("foundry_recovery.cluster.run_command", new=AsyncMock(return_value=ok())) as mock_run:
            await adapter.copy_from_pod(pod, "/data/dump.rdb", Path("/backups/ws/redis-dump.rdb"))
            await adapter.copy_to_pod(Path("/restore/redis-dump.rdb"), pod, "/data/dump.rdb")

        from_args, to_args = (c.args[0] for c in mock_run.call_args_list)
        assert from_args == ["kubectl", "cp", "foundry/redis-0:/data/dump.rdb", "/backups/ws/redis-dump.rdb", "-c", "redis"]
        assert to_args == ["kubectl", "cp", "/restore/redis-dump.rdb", "foundry/redis-0:/data/dump.rdb", "-c", "redis"]
        assert all(c.kwargs["timeout"] == 1800.0 for c in mock_run.call_args_list)


class TestScaling:
    """Test scaling and waits."""

    @pytest.mark.asyncio
    async def test_scale_deployments(self, adapter, apps_api):
        apps_api.list_namespaced_deployment.return_value = client.V1DeploymentList(
            items=[make_deployment("foundry-backend"), make_deployment("foundry-backend-canary")]
        )

        names = await adapter.scale_deployments("app.kubernetes.io/component=backend", 0)

        assert names == ["foundry-backend", "foundry-backend-canary"]
        first = apps_api.patch_namespaced_deployment_scale.call_args_list[0]
        assert first.args == ("foundry-backend", "foundry", {"spec": {"replicas": 0}})

    @pytest.mark.asyncio
    async def test_wait_for_scale_down_completes(self, adapter, core_api):
        core_api.list_namespaced_pod.side_effect = [
            client.V1PodList(items=[make_pod("backend-1")]),
            client.V1PodList(items=[]),
        ]

        await adapter.wait_for_scale_down("app.kubernetes.io/component=backend", timeout=5)
        assert core_api.list_namespaced_pod.call_count == 2

    @pytest.mark.asyncio
    async def test_wait_for_scale_down_timeout(self, adapter, core_api):
        core_api.list_namespaced_pod.return_value = client.V1PodList(items=[make_pod("backend-1")])

        with pytest.raises(OperationTimeoutError, match="scale down of app=backend timed out"):
            await adapter.wait_for_scale_down("app=backend")

    @pytest.mark.asyncio
    async def test_wait_for_rollout(self, adapter, apps_api):
        apps_api.read_namespaced_deployment.side_effect = [
            make_deployment("foundry-backend", ready=1, available=1),
            make_deployment("foundry-backend"),
        ]

        assert await adapter.wait_for_rollout("foundry-backend", timeout=5) is True

    @pytest.mark.asyncio
    async def test_wait_for_rollout_timeout_returns_false(self, adapter, apps_api):
        apps_api.read_namespaced_deployment.return_value = make_deployment("foundry-backend", observed=2)

        assert await adapter.wait_for_rollout("foundry-backend") is False

    def test_rollout_complete_requires_old_replicas_gone(self):
        assert ClusterAdapter._rollout_complete(make_deployment("d", total=3)) is False
        assert ClusterAdapter._rollout_complete(make_deployment("d")) is True


class TestResourceExport:
    """Test resource export and deletion."""

    @pytest.mark.asyncio
    async def test_export_resources(self, adapter, core_api, apps_api):
        core_api.api_client.sanitize_for_serialization.side_effect = lambda obj: {
            "metadata": {"name": obj.metadata.name, "managedFields": [{"manager": "kubectl"}]},
        }
        core_api.list_namespaced_service.return_value = client.V1ServiceList(
            items=[client.V1Service(metadata=client.V1ObjectMeta(name="foundry-backend"))]
        )
        apps_api.list_namespaced_deployment.return_value = client.V1DeploymentList(items=[make_deployment("foundry-backend")])

        with tempfile.TemporaryDirectory() as tmpdir:
            output_dir = Path(tmpdir) / "k8s-resources"
            written = await adapter.export_resources(["services", "deployments", "widgets"], output_dir)

            assert [p.name for p in written] == ["services.yaml", "deployments.yaml"]
            data = yaml.safe_load((output_dir / "services.yaml").read_text())
            assert data["kind"] == "List"
            assert data["items"] == [{"metadata": {"name": "foundry-backend"}}]

        core_api.list_namespaced_secret.assert_not_called()

    @pytest.mark.asyncio
    async def test_export_skips_failing_kind(self, adapter, core_api):
        core_api.api_client.sanitize_for_serialization.side_effect = lambda obj: {"metadata": {}}
        core_api.list_namespaced_config_map.side_effect = ApiException(status=403, reason="Forbidden")
        core_api.list_namespaced_secret.return_value = client.V1SecretList(items=[])

        with tempfile.TemporaryDirectory() as tmpdir:
            written = await adapter.export_resources(["configmaps"], Path(tmpdir), include_secrets=True)

        assert [p.name for p in written] == ["secrets.yaml"]

    @pytest.mark.asyncio
    async def test_delete_claims(self, adapter, core_api):
        core_api.list_namespaced_persistent_volume_claim.return_value = client.V1PersistentVolumeClaimList(items=[
            client.V1PersistentVolumeClaim(metadata=client.V1ObjectMeta(name="uploads")),
        ])

        assert await adapter.delete_claims() == ["uploads"]
        assert core_api.delete_namespaced_persistent_volume_claim.call_args.args == ("uploads", "foundry")
