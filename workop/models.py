from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Dict, List, Literal, Protocol, Tuple, runtime_checkable

from pydantic import BaseModel, ConfigDict, Field, field_validator

# ----------------------------------------------------------------------
# Resource Kind.
# ----------------------------------------------------------------------


class ResourceKind(BaseModel):
    """Static group/version registration of the managed resource kind."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    group: str
    version: str
    kind: str
    plural: str

    @property
    def apiVersion(self) -> str:
        return f"{self.group}/{self.version}"


# ----------------------------------------------------------------------
# Workload Object Model.
# ----------------------------------------------------------------------


class ResourceIdentity(BaseModel):
    """Namespace and name of a Workload. Immutable and hashable."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    namespace: str
    name: str

    @field_validator("namespace", "name")
    @classmethod
    def valid_name(cls, v: str) -> str:
        if len(v) != len(v.strip()):
            raise ValueError("must not have leading or trailing whitespace")

        if len(v) == 0:
            raise ValueError("must be nonempty")
        return v

    @property
    def key(self) -> str:
        return f"{self.namespace}/{self.name}"

    def __str__(self) -> str:
        return self.key


class WorkloadSpec(BaseModel):
    """Desired state as declared by API writers.

    The values are not constrained here. The reconciler validates
    them and reports invalid specs via the status.
    """

    model_config = ConfigDict(extra="forbid")

    replicas: int = 0
    image: str = ""


class Condition(BaseModel):
    model_config = ConfigDict(extra="forbid")

    type: str
    status: Literal["True", "False", "Unknown"] = "Unknown"
    reason: str = ""
    message: str = ""
    lastTransitionTime: datetime = Field(default_factory=lambda: datetime.now(UTC))


class WorkloadStatus(BaseModel):
    """Observed state. Only ever written by the reconciler."""

    model_config = ConfigDict(extra="forbid")

    availableReplicas: int = Field(default=0, ge=0)

    # Image the reconciler last handed to the workload driver.
    image: str = ""

    # Spec generation this status describes.
    observedGeneration: int = 0

    conditions: List[Condition] = []

    def get_condition(self, ctype: str) -> Condition | None:
        for cond in self.conditions:
            if cond.type == ctype:
                return cond
        return None


class ResourceMeta(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str
    namespace: str
    uid: str = ""
    resourceVersion: int = 0
    generation: int = 1
    creationTimestamp: datetime | None = None


class Workload(BaseModel):
    """The composite resource: identity, metadata, spec and status."""

    model_config = ConfigDict(extra="forbid")

    apiVersion: str = ""
    kind: str = ""
    metadata: ResourceMeta
    spec: WorkloadSpec = WorkloadSpec()
    status: WorkloadStatus = WorkloadStatus()

    def identity(self) -> ResourceIdentity:
        return ResourceIdentity(
            namespace=self.metadata.namespace, name=self.metadata.name
        )

    def duplicate(self) -> "Workload":
        return self.model_copy(deep=True)


class WorkloadList(BaseModel):
    model_config = ConfigDict(extra="forbid")

    # Store version at the time of the LIST operation.
    resourceVersion: int = 0
    items: List[Workload] = []


@runtime_checkable
class RuntimeObject(Protocol):
    """Capabilities the queue, store and reconciler scaffolding rely on."""

    def identity(self) -> ResourceIdentity: ...  # codecov-skip

    def duplicate(self) -> "RuntimeObject": ...  # codecov-skip


def duplicate(obj: Workload | None) -> Workload | None:
    """Return an independent deep copy of `obj` or `None` if there is none."""
    if obj is None:
        return None
    return obj.duplicate()


def duplicate_list(objs: WorkloadList | None) -> WorkloadList | None:
    """Return a fresh list with independent copies of all `objs.items`."""
    if objs is None:
        return None
    items = [obj.duplicate() for obj in objs.items]
    return WorkloadList(resourceVersion=objs.resourceVersion, items=items)


def same_generation(a: Workload, b: Workload) -> bool:
    """Return `True` if both snapshots carry the same resource version.

    Helper for API clients that hold on to snapshots, eg to decide whether a
    cached copy is stale. The reconciler itself always fetches a fresh copy.
    """
    return a.metadata.resourceVersion == b.metadata.resourceVersion


# ----------------------------------------------------------------------
# Store Events.
# ----------------------------------------------------------------------


class WatchEvent(BaseModel):
    model_config = ConfigDict(extra="forbid")

    type: Literal["ADDED", "MODIFIED", "DELETED"]
    object: Workload


# ----------------------------------------------------------------------
# Reconciler.
# ----------------------------------------------------------------------


class ActionKind(str, Enum):
    UPDATE_IMAGE = "UpdateImage"
    SCALE_UP = "ScaleUp"
    SCALE_DOWN = "ScaleDown"


class Action(BaseModel):
    """A single corrective step computed by the Diff stage."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    kind: ActionKind
    image: str
    replicas: int


class Outcome(str, Enum):
    CONVERGED = "Converged"
    PROGRESSING = "Progressing"
    PARKED = "Parked"
    REMOVED = "Removed"
    CONFLICT = "Conflict"


class ReconcileResult(BaseModel):
    model_config = ConfigDict(extra="forbid")

    outcome: Outcome
    actions: Tuple[Action, ...] = ()

    # Poll again after this many seconds (zero means no poll is necessary).
    requeue_after: float = 0

    # Resource version after the status write, if there was one.
    version: int = -1


# ----------------------------------------------------------------------
# API Interface Models.
# ----------------------------------------------------------------------


class WorkloadCreate(BaseModel):
    """POST /apis/{group}/{version}/namespaces/{namespace}/workloads/{name}"""

    model_config = ConfigDict(extra="forbid")

    spec: WorkloadSpec


class WorkloadPatch(BaseModel):
    """PATCH /apis/{group}/{version}/namespaces/{namespace}/workloads/{name}"""

    model_config = ConfigDict(extra="forbid")

    spec: WorkloadSpec

    # Reject the update unless the stored version matches (optional).
    resourceVersion: int | None = None


# ----------------------------------------------------------------------
# Operator Internal Models.
# ----------------------------------------------------------------------


class ServerConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    kubeconfig: Path
    kubecontext: str

    loglevel: str
    host: str
    port: int

    # Number of concurrent reconciliation workers.
    workers: int = Field(default=4, ge=1)

    # Seconds between two full relists of the store.
    resync_seconds: float = Field(default=300, gt=0)

    # Seconds before a Workload that is still rolling out is inspected again.
    poll_seconds: float = Field(default=5, gt=0)

    # Tolerated number of available replicas above the desired count.
    max_surge: int = Field(default=1, ge=0)

    # Which workload driver to use: an in-memory simulation or a K8s cluster.
    driver: Literal["simulated", "kubernetes"] = "simulated"


# ----------------------------------------------------------------------
# Kubernetes
# ----------------------------------------------------------------------


class K8sMetadata(BaseModel):
    name: str = ""
    namespace: str = ""
    labels: Dict[str, str] = {}
    annotations: Dict[str, str] = {}


class K8sContainer(BaseModel):
    name: str = ""
    image: str = ""


class K8sPodSpec(BaseModel):
    containers: List[K8sContainer] = []


class K8sPodTemplate(BaseModel):
    metadata: K8sMetadata = K8sMetadata()
    spec: K8sPodSpec = K8sPodSpec()


class K8sDeploymentSpec(BaseModel):
    replicas: int = 0
    template: K8sPodTemplate = K8sPodTemplate()


class K8sDeploymentStatus(BaseModel):
    replicas: int = 0
    readyReplicas: int = 0
    availableReplicas: int = 0


class K8sDeployment(BaseModel):
    apiVersion: str = ""
    kind: str = ""
    metadata: K8sMetadata = K8sMetadata()
    spec: K8sDeploymentSpec = K8sDeploymentSpec()
    status: K8sDeploymentStatus = K8sDeploymentStatus()
