from __future__ import annotations

import copy
import hashlib
import json
import math
import time
import uuid
from dataclasses import dataclass, field, asdict
from typing import Any, ClassVar, Dict, Iterable, List, Optional, Set, Union

# Pod phases. ImagePullError only ever appears as a reason.
PENDING = "Pending"
RUNNING = "Running"
SUCCEEDED = "Succeeded"
FAILED = "Failed"
CRASH_LOOP = "CrashLoopBackOff"
OOM_KILLED = "OOMKilled"
IMAGE_PULL_ERROR = "ImagePullError"

FAILURE_MODES = (IMAGE_PULL_ERROR, CRASH_LOOP, OOM_KILLED)

NO_SCHEDULE = "NoSchedule"
PREFER_NO_SCHEDULE = "PreferNoSchedule"
NO_EXECUTE = "NoExecute"
TAINT_EFFECTS = (NO_SCHEDULE, PREFER_NO_SCHEDULE, NO_EXECUTE)

REVISION_ANNOTATION = "deployment.kubernetes.io/revision"
RESTARTED_AT_ANNOTATION = "kubectl.kubernetes.io/restartedAt"
TEMPLATE_HASH_LABEL = "pod-template-hash"

IntOrPercent = Union[int, str]


def generate_uid() -> str:
    return uuid.uuid4().hex[:8]


def short_suffix() -> str:
    return uuid.uuid4().hex[:5]


def labels_match(selector: Optional[Dict[str, str]], labels: Optional[Dict[str, str]]) -> bool:
    """Return True when every selector key is present in labels with the same value.

    Extra labels are ignored and an empty selector matches everything.
    """
    labels = labels or {}
    for key, value in (selector or {}).items():
        if labels.get(key) != value:
            return False
    return True


def resolve_int_or_percent(value: Optional[IntOrPercent], total: int, round_up: bool) -> int:
    if value is None:
        return 0
    if isinstance(value, str):
        text = value.strip()
        if text.endswith("%"):
            fraction = float(text[:-1]) * total / 100.0
            return int(math.ceil(fraction) if round_up else math.floor(fraction))
        return int(text)
    return int(value)


# ---- metadata ---------------------------------------------------------------


@dataclass
class OwnerReference:
    kind: str
    name: str
    uid: str


@dataclass
class ObjectMeta:
    name: str
    namespace: str = "default"
    uid: str = field(default_factory=generate_uid)
    labels: Dict[str, str] = field(default_factory=dict)
    annotations: Dict[str, str] = field(default_factory=dict)
    owner_reference: Optional[OwnerReference] = None
    creation_tick: int = 0
    deletion_timestamp: Optional[int] = None  # tick at which termination began


@dataclass
class Condition:
    type: str
    status: str
    reason: str = ""
    message: str = ""
    last_transition_tick: int = 0


def get_condition(conditions: List[Condition], cond_type: str) -> Optional[Condition]:
    for cond in conditions:
        if cond.type == cond_type:
            return cond
    return None


def set_condition(
    conditions: List[Condition],
    cond_type: str,
    status: str,
    tick: int,
    reason: str = "",
    message: str = "",
) -> bool:
    """Upsert a condition. Returns True when its status flipped."""
    cond = get_condition(conditions, cond_type)
    if cond is None:
        conditions.append(Condition(cond_type, status, reason, message, tick))
        return True
    changed = cond.status != status
    if changed:
        cond.last_transition_tick = tick
    cond.status = status
    cond.reason = reason
    cond.message = message
    return changed


# ---- nodes ------------------------------------------------------------------


@dataclass
class Taint:
    key: str
    value: str = ""
    effect: str = NO_SCHEDULE


@dataclass
class Toleration:
    key: str = ""
    operator: str = "Equal"  # Equal | Exists
    value: str = ""
    effect: str = ""  # empty tolerates every effect

    def tolerates(self, taint: Taint) -> bool:
        if self.effect and self.effect != taint.effect:
            return False
        if self.operator == "Exists":
            return not self.key or self.key == taint.key
        return self.key == taint.key and self.value == taint.value


def tolerates(tolerations: Iterable[Toleration], taint: Taint) -> bool:
    return any(t.tolerates(taint) for t in tolerations)


@dataclass
class NodeSpec:
    capacity_pods: int = 4
    taints: List[Taint] = field(default_factory=list)
    unschedulable: bool = False


@dataclass
class NodeStatus:
    conditions: List[Condition] = field(default_factory=lambda: [Condition("Ready", "True", "KubeletReady")])
    allocated_pods: int = 0
    draining: bool = False
    blocked_evictions: List[str] = field(default_factory=list)


@dataclass
class Node:
    kind: ClassVar[str] = "Node"
    metadata: ObjectMeta
    spec: NodeSpec = field(default_factory=NodeSpec)
    status: NodeStatus = field(default_factory=NodeStatus)

    @property
    def name(self) -> str:
        return self.metadata.name

    @property
    def ready(self) -> bool:
        cond = get_condition(self.status.conditions, "Ready")
        return cond is not None and cond.status == "True"

    def set_ready(self, ready: bool, tick: int, reason: str = "") -> bool:
        status = "True" if ready else "False"
        return set_condition(self.status.conditions, "Ready", status, tick, reason)


# ---- pods -------------------------------------------------------------------


@dataclass
class Probe:
    initial_delay_ticks: int = 0
    period_ticks: int = 1
    failure_threshold: int = 3


@dataclass
class Volume:
    name: str
    claim_name: Optional[str] = None
    config_map: Optional[str] = None
    secret: Optional[str] = None


@dataclass
class EnvFromSource:
    kind: str  # ConfigMap | Secret
    name: str


@dataclass
class InitContainer:
    name: str
    image: str = "busybox"
    duration_ticks: int = 1


@dataclass
class PodSpec:
    image: str
    container_name: Optional[str] = None
    node_name: Optional[str] = None
    readiness_probe: Optional[Probe] = None
    liveness_probe: Optional[Probe] = None
    startup_probe: Optional[Probe] = None
    volumes: List[Volume] = field(default_factory=list)
    tolerations: List[Toleration] = field(default_factory=list)
    env_from: List[EnvFromSource] = field(default_factory=list)
    init_containers: List[InitContainer] = field(default_factory=list)
    failure_mode: Optional[str] = None
    restart_policy: str = "Always"
    completion_ticks: Optional[int] = None


@dataclass
class PodStatus:
    phase: str = PENDING
    reason: Optional[str] = None
    message: Optional[str] = None
    ready: Optional[bool] = None
    restart_count: int = 0
    tick_created: int = 0
    scheduled_tick: Optional[int] = None
    start_tick: Optional[int] = None
    crash_tick: Optional[int] = None
    init_ticks: int = 0
    cpu_usage: Optional[float] = None  # percent, None until reported
    logs: List[str] = field(default_factory=list)


@dataclass
class PodTemplate:
    labels: Dict[str, str] = field(default_factory=dict)
    annotations: Dict[str, str] = field(default_factory=dict)
    spec: PodSpec = field(default_factory=lambda: PodSpec(image="nginx"))


@dataclass
class Pod:
    kind: ClassVar[str] = "Pod"
    metadata: ObjectMeta
    spec: PodSpec
    status: PodStatus = field(default_factory=PodStatus)

    @property
    def name(self) -> str:
        return self.metadata.name

    @property
    def terminating(self) -> bool:
        return self.metadata.deletion_timestamp is not None

    @property
    def has_readiness_gate(self) -> bool:
        return self.spec.readiness_probe is not None or self.spec.startup_probe is not None

    def append_log(self, line: str, limit: int = 50) -> None:
        self.status.logs.append(line)
        if len(self.status.logs) > limit:
            del self.status.logs[: len(self.status.logs) - limit]


def pod_is_ready(pod: Pod) -> bool:
    """Running, not terminating and readiness-satisfied.

    Pods with a readiness or startup probe need an explicit ready flag; other
    pods count as ready unless the kubelet marked them otherwise.
    """
    if pod.terminating or pod.status.phase != RUNNING:
        return False
    if pod.has_readiness_gate:
        return pod.status.ready is True
    return pod.status.ready is not False


def pod_is_active(pod: Pod) -> bool:
    """Live pod that still counts toward its owner's replicas."""
    return not pod.terminating and pod.status.phase not in (SUCCEEDED, FAILED)


def template_hash(template: PodTemplate) -> str:
    payload = json.dumps(asdict(template), sort_keys=True, default=str)
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()[:10]


# ---- workloads --------------------------------------------------------------


@dataclass
class ReplicaSetSpec:
    replicas: int
    selector: Dict[str, str]
    template: PodTemplate


@dataclass
class ReplicaSetStatus:
    replicas: int = 0
    ready_replicas: int = 0


@dataclass
class ReplicaSet:
    kind: ClassVar[str] = "ReplicaSet"
    metadata: ObjectMeta
    spec: ReplicaSetSpec
    status: ReplicaSetStatus = field(default_factory=ReplicaSetStatus)

    @property
    def name(self) -> str:
        return self.metadata.name

    @property
    def revision(self) -> int:
        return int(self.metadata.annotations.get(REVISION_ANNOTATION, "0") or 0)


@dataclass
class DeploymentStrategy:
    type: str = "RollingUpdate"  # RollingUpdate | Recreate
    max_surge: IntOrPercent = "25%"
    max_unavailable: IntOrPercent = "25%"


@dataclass
class DeploymentSpec:
    replicas: int
    selector: Dict[str, str]
    template: PodTemplate
    strategy: DeploymentStrategy = field(default_factory=DeploymentStrategy)
    revision_history_limit: int = 1
    progress_deadline_ticks: int = 10


@dataclass
class DeploymentStatus:
    replicas: int = 0
    updated_replicas: int = 0
    ready_replicas: int = 0
    available_replicas: int = 0
    unavailable_replicas: int = 0
    revision: int = 0
    rollout_start_tick: Optional[int] = None
    conditions: List[Condition] = field(default_factory=list)


@dataclass
class Deployment:
    kind: ClassVar[str] = "Deployment"
    metadata: ObjectMeta
    spec: DeploymentSpec
    status: DeploymentStatus = field(default_factory=DeploymentStatus)

    @property
    def name(self) -> str:
        return self.metadata.name


@dataclass
class DaemonSetSpec:
    selector: Dict[str, str]
    template: PodTemplate


@dataclass
class DaemonSetStatus:
    desired_number_scheduled: int = 0
    current_number_scheduled: int = 0
    number_ready: int = 0


@dataclass
class DaemonSet:
    kind: ClassVar[str] = "DaemonSet"
    metadata: ObjectMeta
    spec: DaemonSetSpec
    status: DaemonSetStatus = field(default_factory=DaemonSetStatus)

    @property
    def name(self) -> str:
        return self.metadata.name


@dataclass
class StatefulSetSpec:
    replicas: int
    selector: Dict[str, str]
    template: PodTemplate
    service_name: str = ""
    storage_class_name: Optional[str] = None  # per-ordinal claim template


@dataclass
class StatefulSetStatus:
    replicas: int = 0
    ready_replicas: int = 0


@dataclass
class StatefulSet:
    kind: ClassVar[str] = "StatefulSet"
    metadata: ObjectMeta
    spec: StatefulSetSpec
    status: StatefulSetStatus = field(default_factory=StatefulSetStatus)

    @property
    def name(self) -> str:
        return self.metadata.name


@dataclass
class JobSpec:
    template: PodTemplate
    completions: int = 1
    parallelism: int = 1
    backoff_limit: int = 6
    completion_ticks: Optional[int] = None


@dataclass
class JobStatus:
    phase: str = "Running"  # Running | Complete | Failed
    active: int = 0
    succeeded: int = 0
    failed: int = 0
    start_tick: Optional[int] = None
    completion_tick: Optional[int] = None
    succeeded_pods: List[str] = field(default_factory=list)
    failed_pods: List[str] = field(default_factory=list)


@dataclass
class Job:
    kind: ClassVar[str] = "Job"
    metadata: ObjectMeta
    spec: JobSpec
    status: JobStatus = field(default_factory=JobStatus)

    @property
    def name(self) -> str:
        return self.metadata.name

    @property
    def finished(self) -> bool:
        return self.status.phase in ("Complete", "Failed")


@dataclass
class CronJobSpec:
    schedule: str
    job_template: JobSpec
    suspend: bool = False
    successful_jobs_history_limit: int = 3


@dataclass
class CronJobStatus:
    last_schedule_tick: Optional[int] = None
    active: List[str] = field(default_factory=list)


@dataclass
class CronJob:
    kind: ClassVar[str] = "CronJob"
    metadata: ObjectMeta
    spec: CronJobSpec
    status: CronJobStatus = field(default_factory=CronJobStatus)

    @property
    def name(self) -> str:
        return self.metadata.name


# ---- networking, config -----------------------------------------------------


@dataclass
class ServiceSpec:
    selector: Dict[str, str] = field(default_factory=dict)
    port: int = 80
    target_port: Optional[int] = None
    type: str = "ClusterIP"


@dataclass
class ServiceStatus:
    endpoints: List[str] = field(default_factory=list)


@dataclass
class Service:
    kind: ClassVar[str] = "Service"
    metadata: ObjectMeta
    spec: ServiceSpec = field(default_factory=ServiceSpec)
    status: ServiceStatus = field(default_factory=ServiceStatus)

    @property
    def name(self) -> str:
        return self.metadata.name


@dataclass
class Namespace:
    kind: ClassVar[str] = "Namespace"
    metadata: ObjectMeta
    phase: str = "Active"

    @property
    def name(self) -> str:
        return self.metadata.name


@dataclass
class ConfigMap:
    kind: ClassVar[str] = "ConfigMap"
    metadata: ObjectMeta
    data: Dict[str, str] = field(default_factory=dict)

    @property
    def name(self) -> str:
        return self.metadata.name


@dataclass
class Secret:
    kind: ClassVar[str] = "Secret"
    metadata: ObjectMeta
    data: Dict[str, str] = field(default_factory=dict)
    type: str = "Opaque"

    @property
    def name(self) -> str:
        return self.metadata.name


# ---- policy, storage, autoscaling -------------------------------------------


@dataclass
class PodDisruptionBudgetSpec:
    selector: Dict[str, str]
    max_unavailable: Optional[IntOrPercent] = None
    min_available: Optional[IntOrPercent] = None


@dataclass
class PodDisruptionBudgetStatus:
    current_healthy: int = 0
    desired_healthy: int = 0
    expected_pods: int = 0
    disruptions_allowed: int = 0


@dataclass
class PodDisruptionBudget:
    kind: ClassVar[str] = "PodDisruptionBudget"
    metadata: ObjectMeta
    spec: PodDisruptionBudgetSpec
    status: PodDisruptionBudgetStatus = field(default_factory=PodDisruptionBudgetStatus)

    @property
    def name(self) -> str:
        return self.metadata.name


@dataclass
class StorageClass:
    kind: ClassVar[str] = "StorageClass"
    metadata: ObjectMeta
    provisioner: str = "kubesim.io/hostpath"
    reclaim_policy: str = "Delete"

    @property
    def name(self) -> str:
        return self.metadata.name


@dataclass
class PersistentVolumeSpec:
    capacity: str = "1Gi"
    storage_class_name: Optional[str] = None
    reclaim_policy: str = "Retain"
    claim_ref: Optional[str] = None  # "<namespace>/<claim>"


@dataclass
class PersistentVolumeStatus:
    phase: str = "Available"  # Available | Bound | Released


@dataclass
class PersistentVolume:
    kind: ClassVar[str] = "PersistentVolume"
    metadata: ObjectMeta
    spec: PersistentVolumeSpec = field(default_factory=PersistentVolumeSpec)
    status: PersistentVolumeStatus = field(default_factory=PersistentVolumeStatus)

    @property
    def name(self) -> str:
        return self.metadata.name


@dataclass
class PersistentVolumeClaimSpec:
    storage_class_name: Optional[str] = None
    request: str = "1Gi"
    volume_name: Optional[str] = None


@dataclass
class PersistentVolumeClaimStatus:
    phase: str = "Pending"  # Pending | Bound
    message: Optional[str] = None


@dataclass
class PersistentVolumeClaim:
    kind: ClassVar[str] = "PersistentVolumeClaim"
    metadata: ObjectMeta
    spec: PersistentVolumeClaimSpec = field(default_factory=PersistentVolumeClaimSpec)
    status: PersistentVolumeClaimStatus = field(default_factory=PersistentVolumeClaimStatus)

    @property
    def name(self) -> str:
        return self.metadata.name


@dataclass
class HorizontalPodAutoscalerSpec:
    target_name: str
    max_replicas: int
    min_replicas: int = 1
    target_cpu_percent: int = 80
    target_kind: str = "Deployment"


@dataclass
class HorizontalPodAutoscalerStatus:
    current_replicas: int = 0
    desired_replicas: int = 0
    current_cpu_percent: Optional[int] = None
    last_scale_tick: Optional[int] = None


@dataclass
class HorizontalPodAutoscaler:
    kind: ClassVar[str] = "HorizontalPodAutoscaler"
    metadata: ObjectMeta
    spec: HorizontalPodAutoscalerSpec
    status: HorizontalPodAutoscalerStatus = field(default_factory=HorizontalPodAutoscalerStatus)

    @property
    def name(self) -> str:
        return self.metadata.name


# ---- events -----------------------------------------------------------------


@dataclass(frozen=True)
class SimEvent:
    tick: int
    type: str  # Normal | Warning
    reason: str
    object_kind: str
    object_name: str
    message: str
    timestamp: float = field(default_factory=time.time)


# kind -> ClusterState attribute
KIND_FIELDS: Dict[str, str] = {
    "Node": "nodes",
    "Pod": "pods",
    "ReplicaSet": "replica_sets",
    "Deployment": "deployments",
    "Service": "services",
    "Namespace": "namespaces",
    "ConfigMap": "config_maps",
    "Secret": "secrets",
    "DaemonSet": "daemon_sets",
    "StatefulSet": "stateful_sets",
    "Job": "jobs",
    "CronJob": "cron_jobs",
    "PodDisruptionBudget": "pdbs",
    "StorageClass": "storage_classes",
    "PersistentVolume": "persistent_volumes",
    "PersistentVolumeClaim": "persistent_volume_claims",
    "HorizontalPodAutoscaler": "hpas",
}

CLUSTER_SCOPED = {"Node", "Namespace", "StorageClass", "PersistentVolume"}


@dataclass
class ClusterState:
    nodes: List[Node] = field(default_factory=list)
    pods: List[Pod] = field(default_factory=list)
    replica_sets: List[ReplicaSet] = field(default_factory=list)
    deployments: List[Deployment] = field(default_factory=list)
    services: List[Service] = field(default_factory=list)
    namespaces: List[Namespace] = field(default_factory=lambda: [Namespace(ObjectMeta(name="default", namespace=""))])
    config_maps: List[ConfigMap] = field(default_factory=list)
    secrets: List[Secret] = field(default_factory=list)
    daemon_sets: List[DaemonSet] = field(default_factory=list)
    stateful_sets: List[StatefulSet] = field(default_factory=list)
    jobs: List[Job] = field(default_factory=list)
    cron_jobs: List[CronJob] = field(default_factory=list)
    pdbs: List[PodDisruptionBudget] = field(default_factory=list)
    storage_classes: List[StorageClass] = field(default_factory=list)
    persistent_volumes: List[PersistentVolume] = field(default_factory=list)
    persistent_volume_claims: List[PersistentVolumeClaim] = field(default_factory=list)
    hpas: List[HorizontalPodAutoscaler] = field(default_factory=list)
    events: List[SimEvent] = field(default_factory=list)
    tick: int = 0
    commands_used: Set[str] = field(default_factory=set)
    max_events: int = 512

    # ---- lookup ----

    def objects(self, kind: str) -> List[Any]:
        try:
            return getattr(self, KIND_FIELDS[kind])
        except KeyError:
            raise KeyError(f"unknown kind {kind}") from None

    def find(self, kind: str, name: str, namespace: Optional[str] = "default") -> Optional[Any]:
        for obj in self.objects(kind):
            if obj.metadata.name != name:
                continue
            if kind in CLUSTER_SCOPED or namespace is None or obj.metadata.namespace == namespace:
                return obj
        return None

    def get_node(self, name: Optional[str]) -> Optional[Node]:
        if not name:
            return None
        return self.find("Node", name)

    def pods_on_node(self, node_name: str) -> List[Pod]:
        return [p for p in self.pods if p.spec.node_name == node_name]

    def owned_pods(self, owner: Any) -> List[Pod]:
        uid = owner.metadata.uid
        return [
            p for p in self.pods
            if p.metadata.owner_reference is not None and p.metadata.owner_reference.uid == uid
        ]

    def pods_matching(self, selector: Dict[str, str], namespace: str = "default") -> List[Pod]:
        return [
            p for p in self.pods
            if p.metadata.namespace == namespace and labels_match(selector, p.metadata.labels)
        ]

    # ---- mutation ----

    def add(self, obj: Any) -> Any:
        obj.metadata.creation_tick = self.tick
        if obj.kind in CLUSTER_SCOPED:
            obj.metadata.namespace = ""
        if isinstance(obj, Pod):
            obj.status.tick_created = self.tick
        self.objects(obj.kind).append(obj)
        return obj

    def remove(self, obj: Any) -> None:
        items = self.objects(obj.kind)
        for i, existing in enumerate(items):
            if existing is obj:
                del items[i]
                return

    def mark_terminating(self, obj: Any) -> None:
        if obj.metadata.deletion_timestamp is None:
            obj.metadata.deletion_timestamp = self.tick

    def record_event(
        self,
        kind: str,
        name: str,
        reason: str,
        message: str,
        type: str = "Normal",
    ) -> SimEvent:
        event = SimEvent(self.tick, type, reason, kind, name, message)
        self.events.append(event)
        overflow = len(self.events) - self.max_events
        if overflow > 0:
            del self.events[:overflow]
        return event

    def events_for(self, kind: Optional[str] = None, name: Optional[str] = None) -> List[SimEvent]:
        return [
            e for e in self.events
            if (kind is None or e.object_kind == kind) and (name is None or e.object_name == name)
        ]

    def record_command(self, *keys: str) -> None:
        self.commands_used.update(k for k in keys if k)

    # ---- snapshot ----

    def recount_allocations(self) -> None:
        counts: Dict[str, int] = {}
        for pod in self.pods:
            if pod.spec.node_name and pod_is_active(pod):
                counts[pod.spec.node_name] = counts.get(pod.spec.node_name, 0) + 1
        for node in self.nodes:
            node.status.allocated_pods = counts.get(node.name, 0)

    def snapshot(self, include_events: bool = True) -> Dict[str, Any]:
        out: Dict[str, Any] = {"tick": self.tick, "commands_used": sorted(self.commands_used)}
        for kind, attr in KIND_FIELDS.items():
            out[attr] = [asdict(obj) for obj in getattr(self, attr)]
        if include_events:
            out["events"] = [asdict(e) for e in self.events]
        return out

    def clone(self) -> "ClusterState":
        return copy.deepcopy(self)
