"""Configuration management for foundry-recovery."""

import os
from dataclasses import dataclass, field
from typing import Optional, Tuple


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).lower() in ("1", "true", "yes")


def _env_tuple(name: str, default: Tuple[str, ...]) -> Tuple[str, ...]:
    raw = os.getenv(name)
    if raw is None:
        return default
    return tuple(item.strip() for item in raw.split(",") if item.strip())


@dataclass(frozen=True)
class ClusterConfig:
    """Kubernetes access and blocking-call timeouts (seconds)."""
    namespace: str = "foundry"
    kubeconfig: Optional[str] = None
    context: Optional[str] = None
    kubectl_bin: str = "kubectl"
    command_timeout: float = 600.0
    copy_timeout: float = 1800.0
    scale_down_timeout: float = 300.0
    rollout_timeout: float = 600.0
    poll_interval: float = 5.0

    @classmethod
    def from_env(cls) -> 'ClusterConfig':
        """Create config from environment variables."""
        return cls(
            namespace=os.getenv("FOUNDRY_NAMESPACE", "foundry"),
            kubeconfig=os.getenv("KUBECONFIG", None),
            context=os.getenv("KUBE_CONTEXT", None),
            kubectl_bin=os.getenv("KUBECTL_BIN", "kubectl"),
            command_timeout=float(os.getenv("FOUNDRY_COMMAND_TIMEOUT", "600")),
            copy_timeout=float(os.getenv("FOUNDRY_COPY_TIMEOUT", "1800")),
            scale_down_timeout=float(os.getenv("FOUNDRY_SCALE_DOWN_TIMEOUT", "300")),
            rollout_timeout=float(os.getenv("FOUNDRY_ROLLOUT_TIMEOUT", "600")),
            poll_interval=float(os.getenv("FOUNDRY_POLL_INTERVAL", "5")),
        )

    def __post_init__(self):
        """Validate configuration."""
        if not self.namespace:
            raise ValueError("namespace must not be empty")
        for name in ("command_timeout", "copy_timeout", "scale_down_timeout", "rollout_timeout", "poll_interval"):
            value = getattr(self, name)
            if value <= 0:
                raise ValueError(f"{name} must be positive, got {value}")


@dataclass(frozen=True)
class PostgresConfig:
    """Relational store location and credentials."""
    selector: str = "app.kubernetes.io/name=postgresql"
    user: str = "postgres"
    database: str = "foundry"

    @classmethod
    def from_env(cls) -> 'PostgresConfig':
        """Create config from environment variables."""
        return cls(
            selector=os.getenv("POSTGRES_SELECTOR", "app.kubernetes.io/name=postgresql"),
            user=os.getenv("POSTGRES_USER", "postgres"),
            database=os.getenv("POSTGRES_DB", "foundry"),
        )


@dataclass(frozen=True)
class Neo4jConfig:
    """Graph store location, credentials and fallback export cap."""
    selector: str = "app.kubernetes.io/name=neo4j"
    username: str = "neo4j"
    password: Optional[str] = None  # None: cypher-shell reads NEO4J_PASSWORD inside the pod
    node_cap: int = 1_000_000

    @classmethod
    def from_env(cls) -> 'Neo4jConfig':
        """Create config from environment variables."""
        return cls(
            selector=os.getenv("NEO4J_SELECTOR", "app.kubernetes.io/name=neo4j"),
            username=os.getenv("NEO4J_USERNAME", "neo4j"),
            password=os.getenv("NEO4J_PASSWORD", None),
            node_cap=int(os.getenv("NEO4J_EXPORT_NODE_CAP", "1000000")),
        )

    def __post_init__(self):
        """Validate configuration."""
        if self.node_cap <= 0:
            raise ValueError(f"node_cap must be positive, got {self.node_cap}")


@dataclass(frozen=True)
class RedisConfig:
    """Cache store location and snapshot handling."""
    selector: str = "app.kubernetes.io/name=redis"
    password: Optional[str] = None
    data_dir: str = "/data"
    snapshot_name: str = "dump.rdb"
    settle_seconds: float = 5.0
    # Wait for the restarted server after SHUTDOWN NOSAVE
    restart_timeout: float = 120.0
    restart_poll_interval: float = 2.0

    @classmethod
    def from_env(cls) -> 'RedisConfig':
        """Create config from environment variables."""
        return cls(
            selector=os.getenv("REDIS_SELECTOR", "app.kubernetes.io/name=redis"),
            password=os.getenv("REDIS_PASSWORD", None),
            data_dir=os.getenv("REDIS_DATA_DIR", "/data"),
            snapshot_name=os.getenv("REDIS_SNAPSHOT_NAME", "dump.rdb"),
            settle_seconds=float(os.getenv("REDIS_BGSAVE_SETTLE_SECONDS", "5")),
            restart_timeout=float(os.getenv("REDIS_RESTART_TIMEOUT", "120")),
        )

    def __post_init__(self):
        """Validate configuration."""
        if self.settle_seconds < 0:
            raise ValueError(f"settle_seconds must not be negative, got {self.settle_seconds}")
        if self.restart_timeout <= 0:
            raise ValueError(f"restart_timeout must be positive, got {self.restart_timeout}")

    @property
    def snapshot_path(self) -> str:
        return f"{self.data_dir.rstrip('/')}/{self.snapshot_name}"


@dataclass(frozen=True)
class VolumeConfig:
    """Persistent volume claims copied as raw directory trees."""
    # Claims whose content is already captured by a logical store dump
    skip_patterns: Tuple[str, ...] = ("*postgresql*", "*neo4j*", "*redis*")

    @classmethod
    def from_env(cls) -> 'VolumeConfig':
        """Create config from environment variables."""
        return cls(
            skip_patterns=_env_tuple("FOUNDRY_VOLUME_SKIP_PATTERNS", cls.skip_patterns),
        )


@dataclass(frozen=True)
class ResourceExportConfig:
    """Cluster resource kinds exported to k8s-resources/."""
    kinds: Tuple[str, ...] = (
        "deployments",
        "statefulsets",
        "services",
        "configmaps",
        "persistentvolumeclaims",
        "ingresses",
    )
    include_secrets: bool = False

    @classmethod
    def from_env(cls) -> 'ResourceExportConfig':
        """Create config from environment variables."""
        return cls(
            kinds=_env_tuple("FOUNDRY_EXPORT_KINDS", cls.kinds),
            include_secrets=_env_bool("FOUNDRY_EXPORT_SECRETS"),
        )


@dataclass(frozen=True)
class ReleaseConfig:
    """Helm release of the platform."""
    release_name: str = "foundry"
    helm_bin: str = "helm"
    chart: Optional[str] = None
    values_files: Tuple[str, ...] = ()

    @classmethod
    def from_env(cls) -> 'ReleaseConfig':
        """Create config from environment variables."""
        return cls(
            release_name=os.getenv("FOUNDRY_RELEASE", "foundry"),
            helm_bin=os.getenv("HELM_BIN", "helm"),
            chart=os.getenv("FOUNDRY_CHART", None),
            values_files=_env_tuple("FOUNDRY_VALUES_FILES", ()),
        )


@dataclass(frozen=True)
class RemoteConfig:
    """S3-compatible archive storage. Disabled when no bucket is set."""
    bucket: Optional[str] = None
    prefix: str = "backups"
    region: Optional[str] = None
    endpoint_url: Optional[str] = None

    @classmethod
    def from_env(cls) -> 'RemoteConfig':
        """Create config from environment variables."""
        return cls(
            bucket=os.getenv("FOUNDRY_BACKUP_BUCKET", None),
            prefix=os.getenv("FOUNDRY_BACKUP_PREFIX", "backups"),
            region=os.getenv("AWS_REGION", None),
            endpoint_url=os.getenv("S3_ENDPOINT_URL", None),
        )

    @property
    def enabled(self) -> bool:
        return bool(self.bucket)


@dataclass(frozen=True)
class ScaleTarget:
    """Deployments matched by ``selector`` are scaled back to ``replicas`` after a restore."""
    selector: str
    replicas: int

    def __post_init__(self):
        """Validate configuration."""
        if not self.selector:
            raise ValueError("scale target selector must not be empty")
        if self.replicas < 0:
            raise ValueError(f"replicas must not be negative, got {self.replicas}")

    @classmethod
    def parse(cls, spec: str) -> 'ScaleTarget':
        """Parse ``selector@replicas``."""
        selector, sep, replicas = spec.rpartition("@")
        if not sep:
            raise ValueError(f"Invalid scale target '{spec}', expected selector@replicas")
        return cls(selector=selector.strip(), replicas=int(replicas))


DEFAULT_SCALE_TARGETS: Tuple[ScaleTarget, ...] = (
    ScaleTarget("app.kubernetes.io/component=backend", 2),
    ScaleTarget("app.kubernetes.io/component=frontend", 2),
    ScaleTarget("app.kubernetes.io/component=worker", 1),
)


@dataclass(frozen=True)
class RestoreConfig:
    """Workloads stopped during a restore and their fixed post-restore replica counts."""
    scale_targets: Tuple[ScaleTarget, ...] = DEFAULT_SCALE_TARGETS

    @classmethod
    def from_env(cls) -> 'RestoreConfig':
        """Create config from environment variables."""
        raw = os.getenv("FOUNDRY_SCALE_TARGETS")
        if not raw:
            return cls()
        return cls(
            scale_targets=tuple(ScaleTarget.parse(item) for item in raw.split(";") if item.strip())
        )


@dataclass(frozen=True)
class RecoveryConfig:
    """Main foundry-recovery configuration."""
    cluster: ClusterConfig = field(default_factory=ClusterConfig)
    postgres: PostgresConfig = field(default_factory=PostgresConfig)
    neo4j: Neo4jConfig = field(default_factory=Neo4jConfig)
    redis: RedisConfig = field(default_factory=RedisConfig)
    volumes: VolumeConfig = field(default_factory=VolumeConfig)
    resources: ResourceExportConfig = field(default_factory=ResourceExportConfig)
    release: ReleaseConfig = field(default_factory=ReleaseConfig)
    remote: RemoteConfig = field(default_factory=RemoteConfig)
    restore: RestoreConfig = field(default_factory=RestoreConfig)
    workspace_dir: str = "./backups"
    retention_days: int = 30

    @classmethod
    def from_env(cls) -> 'RecoveryConfig':
        """Create complete config from environment variables."""
        return cls(
            cluster=ClusterConfig.from_env(),
            postgres=PostgresConfig.from_env(),
            neo4j=Neo4jConfig.from_env(),
            redis=RedisConfig.from_env(),
            volumes=VolumeConfig.from_env(),
            resources=ResourceExportConfig.from_env(),
            release=ReleaseConfig.from_env(),
            remote=RemoteConfig.from_env(),
            restore=RestoreConfig.from_env(),
            workspace_dir=os.getenv("FOUNDRY_BACKUP_DIR", "./backups"),
            retention_days=int(os.getenv("FOUNDRY_BACKUP_RETENTION_DAYS", "30")),
        )

    def __post_init__(self):
        """Validate configuration."""
        if self.retention_days < 0:
            raise ValueError(f"retention_days must not be negative, got {self.retention_days}")

    @property
    def namespace(self) -> str:
        return self.cluster.namespace
