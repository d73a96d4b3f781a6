"""Data models for backup/restore runs."""

from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional, Union

from pydantic import BaseModel, Field


class ComponentKind(str, Enum):
    POSTGRESQL = "postgresql"
    NEO4J = "neo4j"
    REDIS = "redis"
    VOLUMES = "volumes"
    K8S_RESOURCES = "k8s_resources"


# Fixed capture/restore priority of the data stores
STORE_ORDER = (ComponentKind.POSTGRESQL, ComponentKind.NEO4J, ComponentKind.REDIS)


class ComponentStatus(str, Enum):
    CAPTURED = "captured"
    RESTORED = "restored"
    SKIPPED = "skipped"
    FAILED = "failed"


class StrategyAttempt(BaseModel):
    """One attempt of an ordered capture strategy."""

    name: str
    ok: bool
    error: Optional[str] = None
    timed_out: bool = False


class ComponentResult(BaseModel):
    """Outcome of capturing or restoring one store or volume."""

    component: ComponentKind
    name: str = Field(..., description="Store name or volume/<claim>")
    status: ComponentStatus
    artifact_path: Optional[Path] = None
    size_bytes: int = 0
    warning: Optional[str] = None
    error: Optional[str] = None
    attempts: List[StrategyAttempt] = Field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.status in (ComponentStatus.CAPTURED, ComponentStatus.RESTORED)

    @classmethod
    def skipped(cls, component: ComponentKind, warning: str, name: Optional[str] = None) -> "ComponentResult":
        return cls(component=component, name=name or component.value, status=ComponentStatus.SKIPPED, warning=warning)

    @classmethod
    def failed(cls, component: ComponentKind, error: str, name: Optional[str] = None, **kwargs) -> "ComponentResult":
        return cls(component=component, name=name or component.value, status=ComponentStatus.FAILED, error=error, **kwargs)


class BackupState(str, Enum):
    INITIALIZING = "initializing"
    CAPTURING_STORES = "capturing_stores"
    CAPTURING_VOLUMES = "capturing_volumes"
    MANIFESTING = "manifesting"
    SEALING = "sealing"
    UPLOADING = "uploading"
    RETENTION_SWEEP = "retention_sweep"
    DONE = "done"
    FAILED = "failed"


class RestoreState(str, Enum):
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    FETCHING = "fetching"
    EXTRACTING = "extracting"
    SCALING_DOWN = "scaling_down"
    RESTORING_STORES = "restoring_stores"
    RESTORING_VOLUMES = "restoring_volumes"
    SCALING_UP = "scaling_up"
    DONE = "done"
    CANCELLED = "cancelled"
    FAILED = "failed"


class RemoteLocation(BaseModel):
    """Where an archive lives in object storage."""

    bucket: str
    prefix: str = ""
    key: str

    @property
    def object_key(self) -> str:
        prefix = self.prefix.strip("/")
        return f"{prefix}/{self.key}" if prefix else self.key

    @property
    def uri(self) -> str:
        return f"s3://{self.bucket}/{self.object_key}"

    @classmethod
    def from_uri(cls, uri: str) -> "RemoteLocation":
        """Parse ``s3://bucket/prefix/key``."""
        if not uri.startswith("s3://"):
            raise ValueError(f"Not an s3:// URI: {uri}")
        bucket, _, path = uri[len("s3://"):].partition("/")
        prefix, _, key = path.rpartition("/")
        if not bucket or not key:
            raise ValueError(f"Incomplete s3:// URI: {uri}")
        return cls(bucket=bucket, prefix=prefix, key=key)


class Manifest(BaseModel):
    """Serialized summary of a backup run, stored as manifest.json."""

    timestamp: str = Field(..., description="Run-local timestamp identifier")
    backup_name: str
    namespace: str
    components: Dict[str, bool]
    foundry_version: str = "unknown"

    def has(self, component: ComponentKind) -> bool:
        return self.components.get(component.value, False)


class Archive(BaseModel):
    """A sealed backup archive on local disk."""

    path: Path
    size_bytes: int
    checksum: Optional[str] = None

    @property
    def name(self) -> str:
        return self.path.name


class BackupRun(BaseModel):
    """One backup attempt and its per-component outcomes."""

    timestamp: str
    backup_name: str
    namespace: str
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    state: BackupState = BackupState.INITIALIZING
    results: List[ComponentResult] = Field(default_factory=list)
    workspace: Optional[Path] = None
    archive: Optional[Archive] = None
    remote_uri: Optional[str] = None
    foundry_version: Optional[str] = None
    notes: List[str] = Field(default_factory=list, description="Run-level warnings not tied to a component")

    def record(self, result: ComponentResult) -> ComponentResult:
        self.results.append(result)
        return result

    def results_for(self, component: ComponentKind) -> List[ComponentResult]:
        return [r for r in self.results if r.component == component]

    def component_flags(self) -> Dict[str, bool]:
        """Presence of a captured artifact per component category."""
        return {
            kind.value: any(r.success for r in self.results_for(kind))
            for kind in ComponentKind
        }

    @property
    def warnings(self) -> List[str]:
        component_warnings = [f"{r.name}: {r.warning or r.error}" for r in self.results if r.warning or r.error]
        return component_warnings + self.notes


class RestoreRun(BaseModel):
    """One restore attempt. Mirrors BackupRun for the reverse direction."""

    source: Union[RemoteLocation, Path]
    namespace: str
    enabled: Dict[ComponentKind, bool] = Field(default_factory=dict)
    force: bool = False
    confirmed: bool = False
    state: RestoreState = RestoreState.AWAITING_CONFIRMATION
    manifest: Optional[Manifest] = None
    results: List[ComponentResult] = Field(default_factory=list)
    started_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    notes: List[str] = Field(default_factory=list, description="Run-level warnings not tied to a component")

    def record(self, result: ComponentResult) -> ComponentResult:
        self.results.append(result)
        return result

    def is_enabled(self, component: ComponentKind) -> bool:
        return self.enabled.get(component, True)

    def results_for(self, component: ComponentKind) -> List[ComponentResult]:
        return [r for r in self.results if r.component == component]

    @property
    def warnings(self) -> List[str]:
        component_warnings = [f"{r.name}: {r.warning or r.error}" for r in self.results if r.warning or r.error]
        return component_warnings + self.notes
