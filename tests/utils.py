"""Test utilities for foundry-recovery tests."""

import itertools
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from foundry_recovery._process import CommandResult
from foundry_recovery.backup.utils import save_manifest
from foundry_recovery.cluster import PodRef, VolumeMountRef
from foundry_recovery.exceptions import OperationTimeoutError, ResourceNotFoundError

APOC_OUTPUT = 'cypherStatements\n"CREATE (:Person {name: \\"Ada\\"});\nCREATE (:Person {name: \\"Bob\\"});"\n'
RDB_BYTES = b"REDIS0011\xfa\tredis-ver\x057.2.4\xff"

# Each LASTSAVE or INFO call sees a newer save and a freshly started server
_save_clock = itertools.count(1704074400)
_server_starts = itertools.count(1)


def ok(command: Sequence[str] = (), stdout: str = "", stderr: str = "") -> CommandResult:
    return CommandResult(args=list(command), exit_code=0, stdout=stdout, stderr=stderr)


def failed(command: Sequence[str] = (), stderr: str = "error", exit_code: int = 1) -> CommandResult:
    return CommandResult(args=list(command), exit_code=exit_code, stderr=stderr)


def redis_info(run_id: str) -> str:
    return f"# Server\r\nredis_version:7.2.4\r\nrun_id:{run_id}\r\ntcp_port:6379\r\n"


def default_exec(pod: PodRef, command: List[str], stdin_path: Optional[Path], stdout_path: Optional[Path]) -> CommandResult:
    """Behave like healthy store pods."""
    tool = command[0]
    if tool == "pg_dump":
        stdout_path.write_text("CREATE TABLE documents (id integer);\nCOPY documents (id) FROM stdin;\n1\n\\.\n")
        return ok(command)
    if tool == "cypher-shell":
        if any("apoc.export" in part for part in command):
            return ok(command, stdout=APOC_OUTPUT)
        return ok(command)
    if tool == "redis-cli":
        if "BGSAVE" in command:
            return ok(command, stdout="Background saving started")
        if "LASTSAVE" in command:
            return ok(command, stdout=f"{next(_save_clock)}\n")
        if "INFO" in command:
            return ok(command, stdout=redis_info(f"{next(_server_starts):040x}"))
        return ok(command)
    return ok(command)


class FakeCluster:
    """In-memory stand-in for ClusterAdapter. Records every call in ``calls``."""

    def __init__(
        self,
        namespace: str = "foundry",
        pods: Optional[Dict[str, str]] = None,
        claims: Optional[Dict[str, Optional[Tuple[str, str]]]] = None,
        deployments: Optional[Dict[str, List[str]]] = None,
    ):
        self.namespace = namespace
        self.pods = pods if pods is not None else {
            "app.kubernetes.io/name=postgresql": "postgresql-0",
            "app.kubernetes.io/name=neo4j": "neo4j-0",
            "app.kubernetes.io/name=redis": "redis-master-0",
        }
        # claim -> (pod, mount path), None when no pod mounts it
        self.claims = claims if claims is not None else {
            "data-postgresql-0": ("postgresql-0", "/bitnami/postgresql"),
            "uploads": ("backend-7d9f", "/app/uploads"),
        }
        self.deployments = deployments if deployments is not None else {
            "app.kubernetes.io/component=backend": ["foundry-backend"],
            "app.kubernetes.io/component=frontend": ["foundry-frontend"],
            "app.kubernetes.io/component=worker": ["foundry-worker"],
        }
        self.exec_handler: Callable = default_exec
        self.failing_copies = set()
        self.scale_down_times_out = False
        self.rollout_completes = True
        self.calls: List[tuple] = []

    def calls_named(self, name: str) -> List[tuple]:
        return [c for c in self.calls if c[0] == name]

    def exec_commands(self) -> List[List[str]]:
        return [c[2] for c in self.calls_named("exec")]

    async def connect(self) -> None:
        self.calls.append(("connect",))

    async def resolve_pod(self, selector: str) -> PodRef:
        self.calls.append(("resolve_pod", selector))
        if selector not in self.pods:
            raise ResourceNotFoundError("pod", selector, self.namespace)
        return PodRef(name=self.pods[selector], namespace=self.namespace, container=None)

    async def exec_in_pod(self, pod, command, stdin_path=None, stdout_path=None, timeout=None) -> CommandResult:
        self.calls.append(("exec", pod.name, list(command), stdin_path))
        return self.exec_handler(pod, list(command), stdin_path, stdout_path)

    async def copy_from_pod(self, pod, remote_path, local_path) -> CommandResult:
        self.calls.append(("copy_from", pod.name, remote_path, local_path))
        if remote_path in self.failing_copies:
            return failed(["kubectl", "cp"], stderr=f"error: {remote_path}: No such file or directory")
        if remote_path.endswith(".rdb"):
            local_path.write_bytes(RDB_BYTES)
        else:
            local_path.mkdir(parents=True, exist_ok=True)
            (local_path / "report.pdf").write_bytes(b"%PDF-1.7 " + remote_path.encode())
        return ok(["kubectl", "cp"])

    async def copy_to_pod(self, local_path, pod, remote_path) -> CommandResult:
        self.calls.append(("copy_to", pod.name, str(local_path), remote_path))
        if remote_path in self.failing_copies:
            return failed(["kubectl", "cp"], stderr="error: permission denied")
        return ok(["kubectl", "cp"])

    async def list_claims(self) -> List[str]:
        self.calls.append(("list_claims",))
        return sorted(self.claims)

    async def find_claim_mount(self, claim: str) -> Optional[VolumeMountRef]:
        mount = self.claims.get(claim)
        if mount is None:
            return None
        pod, path = mount
        return VolumeMountRef(claim=claim, pod=PodRef(name=pod, namespace=self.namespace), mount_path=path)

    async def scale_deployments(self, selector: str, replicas: int) -> List[str]:
        self.calls.append(("scale", selector, replicas))
        return list(self.deployments.get(selector, []))

    async def wait_for_scale_down(self, selector: str, timeout: Optional[float] = None) -> None:
        self.calls.append(("wait_scale_down", selector))
        if self.scale_down_times_out:
            raise OperationTimeoutError(f"scale down of {selector}", 300)

    async def wait_for_rollout(self, name: str, timeout: Optional[float] = None) -> bool:
        self.calls.append(("wait_rollout", name))
        return self.rollout_completes

    async def export_resources(self, kinds, output_dir: Path, include_secrets: bool = False) -> List[Path]:
        self.calls.append(("export_resources", tuple(kinds)))
        output_dir.mkdir(parents=True, exist_ok=True)
        written = []
        for kind in kinds:
            path = output_dir / f"{kind}.yaml"
            path.write_text(f"apiVersion: v1\nkind: List\nitems: []  # {kind}\n")
            written.append(path)
        return written

    async def delete_claims(self, selector: Optional[str] = None) -> List[str]:
        self.calls.append(("delete_claims", selector))
        return sorted(self.claims)


async def make_backup_dir(
    directory: Path,
    namespace: str = "foundry",
    components: Optional[Dict[str, bool]] = None,
    claims: Sequence[str] = ("uploads",),
) -> Path:
    """Lay out an unpacked backup the way a backup run leaves its workspace."""
    components = components or {
        "postgresql": True,
        "neo4j": True,
        "redis": True,
        "volumes": bool(claims),
        "k8s_resources": False,
    }
    directory.mkdir(parents=True, exist_ok=True)
    if components.get("postgresql"):
        (directory / "postgresql.sql").write_text("CREATE TABLE documents (id integer);\n")
    if components.get("neo4j"):
        (directory / "neo4j-dump.cypher").write_text('CREATE (:Person {name: "Ada"});\n')
    if components.get("redis"):
        (directory / "redis-dump.rdb").write_bytes(RDB_BYTES)
    for claim in claims:
        claim_dir = directory / "volumes" / claim
        claim_dir.mkdir(parents=True)
        (claim_dir / "report.pdf").write_bytes(b"%PDF-1.7")

    await save_manifest(
        {
            "timestamp": "20240101_020000",
            "backup_name": directory.name,
            "namespace": namespace,
            "components": components,
            "foundry_version": "2.3.1",
        },
        directory / "manifest.json",
    )
    return directory
