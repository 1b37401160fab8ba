"""
Pydantic models for the ManagedDatabase and DormantDatabase custom resources.

Field names are snake_case in Python and camelCase on the wire, matching the
Kubernetes JSON representation of the objects.
"""
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

API_GROUP = "kubedb.com"
API_VERSION = "v1alpha1"

DATABASE_KIND = "ManagedDatabase"
DATABASE_PLURAL = "manageddatabases"
DORMANT_KIND = "DormantDatabase"
DORMANT_PLURAL = "dormantdatabases"
SNAPSHOT_KIND = "Snapshot"
SNAPSHOT_PLURAL = "snapshots"

LABEL_DATABASE_KIND = "kubedb.com/kind"
LABEL_DATABASE_NAME = "kubedb.com/name"

# Set on a ManagedDatabase that is deleted only to hand control to its dormant twin.
ANNOTATION_IGNORE = "kubedb.com/ignore"
# JSON copy of the init spec a paused database was bootstrapped with.
ANNOTATION_INIT_SPEC = "kubedb.com/init-spec"

DEFAULT_SECRET_SUFFIX = "-admin-auth"


class DatabasePhase(str, Enum):
    """Lifecycle phases shared by ManagedDatabase and DormantDatabase."""

    # ManagedDatabase
    CREATING = "Creating"
    INITIALIZING = "Initializing"
    RUNNING = "Running"
    # DormantDatabase
    PAUSING = "Pausing"
    PAUSED = "Paused"
    RESUMING = "Resuming"
    WIPING_OUT = "WipingOut"
    WIPED_OUT = "WipedOut"


class K8sModel(BaseModel):
    """Base for all wire models: camelCase aliases, unknown fields preserved."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="allow",
    )

    def dump(self) -> Dict[str, Any]:
        """Serialize to the Kubernetes JSON shape."""
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")


class ObjectMeta(K8sModel):
    name: str
    namespace: str = "default"
    labels: Dict[str, str] = Field(default_factory=dict)
    annotations: Dict[str, str] = Field(default_factory=dict)
    resource_version: Optional[str] = None
    uid: Optional[str] = None
    generation: Optional[int] = None
    creation_timestamp: Optional[str] = None
    deletion_timestamp: Optional[str] = None

    def fresh_copy(self) -> "ObjectMeta":
        """Identity-only copy suitable for creating a new object."""
        return ObjectMeta(
            name=self.name,
            namespace=self.namespace,
            labels=dict(self.labels),
            annotations=dict(self.annotations),
        )


class SnapshotSourceSpec(K8sModel):
    name: str
    namespace: Optional[str] = None


class InitSpec(K8sModel):
    """One-shot bootstrap source for a new database."""

    snapshot_source: Optional[SnapshotSourceSpec] = None


class SecretReference(K8sModel):
    secret_name: str


class BackupScheduleSpec(K8sModel):
    """Periodic snapshot configuration."""

    cron_expression: str
    storage_secret_name: Optional[str] = None
    bucket_name: Optional[str] = None


class PrometheusSpec(K8sModel):
    namespace: Optional[str] = None
    labels: Dict[str, str] = Field(default_factory=dict)
    interval: Optional[str] = None


class MonitorSpec(K8sModel):
    agent: str
    prometheus: Optional[PrometheusSpec] = None


class DatabaseSpec(K8sModel):
    """Desired state of a ManagedDatabase."""

    version: str
    replicas: int = 1
    storage: Optional[Dict[str, Any]] = None
    node_selector: Optional[Dict[str, str]] = None
    database_secret: Optional[SecretReference] = None
    init: Optional[InitSpec] = None
    backup_schedule: Optional[BackupScheduleSpec] = None
    monitor: Optional[MonitorSpec] = None
    do_not_pause: bool = False

    @property
    def snapshot_source(self) -> Optional[SnapshotSourceSpec]:
        """Snapshot to initialize from, if the spec asks for one."""
        if self.init is None:
            return None
        return self.init.snapshot_source


class DatabaseStatus(K8sModel):
    phase: Optional[DatabasePhase] = None
    creation_time: Optional[datetime] = None
    reason: Optional[str] = None


class _Resource(K8sModel):
    api_version: str = f"{API_GROUP}/{API_VERSION}"
    metadata: ObjectMeta

    @property
    def name(self) -> str:
        return self.metadata.name

    @property
    def namespace(self) -> str:
        return self.metadata.namespace

    @property
    def key(self) -> str:
        return object_key(self.metadata.namespace, self.metadata.name)

    def object_reference(self) -> Dict[str, Any]:
        """Reference used as the involved object of Kubernetes events."""
        ref = {
            "apiVersion": self.api_version,
            "kind": getattr(self, "kind"),
            "name": self.metadata.name,
            "namespace": self.metadata.namespace,
        }
        if self.metadata.uid:
            ref["uid"] = self.metadata.uid
        if self.metadata.resource_version:
            ref["resourceVersion"] = self.metadata.resource_version
        return ref


class ManagedDatabase(_Resource):
    """The primary resource describing a desired database workload."""

    kind: str = DATABASE_KIND
    spec: DatabaseSpec
    status: DatabaseStatus = Field(default_factory=DatabaseStatus)

    @property
    def phase(self) -> Optional[DatabasePhase]:
        return self.status.phase

    @property
    def offshoot_name(self) -> str:
        """Name shared by the database's Service, StatefulSet and RBAC objects."""
        return self.metadata.name

    def selector_labels(self) -> Dict[str, str]:
        return database_selector(self.metadata.name)


class Origin(K8sModel):
    """Frozen copy of a ManagedDatabase taken at pause time."""

    metadata: ObjectMeta
    spec: DatabaseSpec


class DormantDatabaseSpec(K8sModel):
    origin: Origin
    resume: bool = False
    wipe_out: bool = False


class DormantDatabaseStatus(K8sModel):
    phase: Optional[DatabasePhase] = None
    creation_time: Optional[datetime] = None
    paused_time: Optional[datetime] = None
    wiped_out_time: Optional[datetime] = None
    reason: Optional[str] = None


class DormantDatabase(_Resource):
    """Tombstone preserving a paused database for resume or wipe-out."""

    kind: str = DORMANT_KIND
    spec: DormantDatabaseSpec
    status: DormantDatabaseStatus = Field(default_factory=DormantDatabaseStatus)

    @property
    def phase(self) -> Optional[DatabasePhase]:
        return self.status.phase

    @property
    def offshoot_name(self) -> str:
        return self.metadata.name

    @property
    def database_kind(self) -> Optional[str]:
        return self.metadata.labels.get(LABEL_DATABASE_KIND)


class SnapshotSpec(K8sModel):
    database_name: Optional[str] = None
    storage_secret_name: Optional[str] = None
    bucket_name: Optional[str] = None


class SnapshotStatus(K8sModel):
    phase: Optional[str] = None


class Snapshot(_Resource):
    kind: str = SNAPSHOT_KIND
    spec: SnapshotSpec = Field(default_factory=SnapshotSpec)
    status: SnapshotStatus = Field(default_factory=SnapshotStatus)


def object_key(namespace: str, name: str) -> str:
    """Work-queue key shared by every kind with the same name and namespace."""
    return f"{namespace}/{name}"


def default_secret_name(database_name: str) -> str:
    return f"{database_name}{DEFAULT_SECRET_SUFFIX}"


def database_selector(database_name: str) -> Dict[str, str]:
    """Labels owned by exactly one database: scope for all destructive cleanup."""
    return {
        LABEL_DATABASE_NAME: database_name,
        LABEL_DATABASE_KIND: DATABASE_KIND,
    }


def label_selector(labels: Dict[str, str]) -> str:
    """Render a label map as a Kubernetes equality selector string."""
    return ",".join(f"{key}={value}" for key, value in sorted(labels.items()))
