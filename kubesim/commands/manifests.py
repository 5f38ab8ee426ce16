"""YAML manifests (as accepted by ``apply -f -``) to simulated objects."""

from __future__ import annotations

from typing import Any, Callable, Dict, List, Optional

import yaml

from kubesim.controllers.cronjob import schedule_interval
from kubesim.controllers.storage import parse_quantity
from kubesim.errors import ManifestError
from kubesim.export import COMPLETION_TICKS_ANNOTATION
from kubesim.state import (
    CLUSTER_SCOPED,
    TAINT_EFFECTS,
    ConfigMap,
    CronJob,
    CronJobSpec,
    DaemonSet,
    DaemonSetSpec,
    Deployment,
    DeploymentSpec,
    DeploymentStrategy,
    EnvFromSource,
    HorizontalPodAutoscaler,
    HorizontalPodAutoscalerSpec,
    InitContainer,
    Job,
    JobSpec,
    Namespace,
    Node,
    NodeSpec,
    ObjectMeta,
    PersistentVolume,
    PersistentVolumeClaim,
    PersistentVolumeClaimSpec,
    PersistentVolumeSpec,
    Pod,
    PodDisruptionBudget,
    PodDisruptionBudgetSpec,
    PodSpec,
    PodTemplate,
    Probe,
    ReplicaSet,
    ReplicaSetSpec,
    Secret,
    Service,
    ServiceSpec,
    StatefulSet,
    StatefulSetSpec,
    StorageClass,
    Taint,
    Toleration,
    Volume,
)


def load_documents(text: str) -> List[Dict[str, Any]]:
    """Parse a (possibly multi-document) YAML body, flattening ``kind: List``."""
    try:
        raw = [d for d in yaml.safe_load_all(text or "") if d is not None]
    except yaml.YAMLError as exc:
        raise ManifestError(f"error parsing manifest: {exc}") from None
    docs: List[Dict[str, Any]] = []
    for doc in raw:
        if not isinstance(doc, dict):
            raise ManifestError("manifest documents must be mappings")
        if doc.get("kind") == "List":
            docs.extend(i for i in doc.get("items") or [] if isinstance(i, dict))
        else:
            docs.append(doc)
    if not docs:
        raise ManifestError("no objects passed to apply")
    return docs


def _int(value: Any, field_name: str, minimum: int = 0) -> int:
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise ManifestError(f"{field_name}: expected an integer, got {value!r}") from None
    if number < minimum:
        raise ManifestError(f"{field_name}: must be greater than or equal to {minimum}")
    return number


def _str_map(value: Any, field_name: str) -> Dict[str, str]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ManifestError(f"{field_name}: expected a map")
    return {str(k): "" if v is None else str(v) for k, v in value.items()}


def _metadata(doc: Dict[str, Any], kind: str) -> ObjectMeta:
    meta = doc.get("metadata") or {}
    name = meta.get("name")
    if not name:
        raise ManifestError(f"{kind}: metadata.name is required")
    namespace = "" if kind in CLUSTER_SCOPED else str(meta.get("namespace") or "default")
    return ObjectMeta(
        name=str(name),
        namespace=namespace,
        labels=_str_map(meta.get("labels"), "metadata.labels"),
        annotations=_str_map(meta.get("annotations"), "metadata.annotations"),
    )


def _selector(spec: Dict[str, Any], fallback: Optional[Dict[str, str]] = None) -> Dict[str, str]:
    selector = spec.get("selector")
    if selector is None:
        return dict(fallback or {})
    if isinstance(selector, dict) and "matchLabels" in selector:
        return _str_map(selector["matchLabels"], "selector.matchLabels")
    return _str_map(selector, "selector")


def _probe(raw: Optional[Dict[str, Any]]) -> Optional[Probe]:
    if not raw:
        return None
    return Probe(
        initial_delay_ticks=_int(raw.get("initialDelaySeconds", 0), "initialDelaySeconds"),
        period_ticks=_int(raw.get("periodSeconds", 1), "periodSeconds", minimum=1),
        failure_threshold=_int(raw.get("failureThreshold", 3), "failureThreshold", minimum=1),
    )


def _tolerations(raw: Any) -> List[Toleration]:
    out = []
    for t in raw or []:
        operator = t.get("operator", "Equal")
        if operator not in ("Equal", "Exists"):
            raise ManifestError(f'toleration operator "{operator}" is not supported')
        out.append(Toleration(
            key=str(t.get("key") or ""),
            operator=operator,
            value=str(t.get("value") or ""),
            effect=str(t.get("effect") or ""),
        ))
    return out


def _volumes(raw: Any) -> List[Volume]:
    out = []
    for v in raw or []:
        out.append(Volume(
            name=str(v.get("name", "")),
            claim_name=(v.get("persistentVolumeClaim") or {}).get("claimName"),
            config_map=(v.get("configMap") or {}).get("name"),
            secret=(v.get("secret") or {}).get("secretName"),
        ))
    return out


def _env_from(raw: Any) -> List[EnvFromSource]:
    out = []
    for src in raw or []:
        if src.get("configMapRef"):
            out.append(EnvFromSource("ConfigMap", src["configMapRef"].get("name", "")))
        elif src.get("secretRef"):
            out.append(EnvFromSource("Secret", src["secretRef"].get("name", "")))
    return out


def pod_spec_from(raw: Dict[str, Any], annotations: Optional[Dict[str, str]] = None) -> PodSpec:
    containers = raw.get("containers") or []
    if not containers or not containers[0].get("image"):
        raise ManifestError("spec.containers[0].image is required")
    main = containers[0]
    completion = (annotations or {}).get(COMPLETION_TICKS_ANNOTATION)
    return PodSpec(
        image=str(main["image"]),
        container_name=main.get("name"),
        node_name=raw.get("nodeName"),
        readiness_probe=_probe(main.get("readinessProbe")),
        liveness_probe=_probe(main.get("livenessProbe")),
        startup_probe=_probe(main.get("startupProbe")),
        volumes=_volumes(raw.get("volumes")),
        tolerations=_tolerations(raw.get("tolerations")),
        env_from=_env_from(main.get("envFrom")),
        init_containers=[
            InitContainer(name=str(c.get("name", f"init-{i}")), image=str(c.get("image", "busybox")))
            for i, c in enumerate(raw.get("initContainers") or [])
        ],
        restart_policy=raw.get("restartPolicy", "Always"),
        completion_ticks=_int(completion, COMPLETION_TICKS_ANNOTATION, minimum=1) if completion else None,
    )


def _template(spec: Dict[str, Any], kind: str) -> PodTemplate:
    raw = spec.get("template")
    if not raw:
        raise ManifestError(f"{kind}: spec.template is required")
    meta = raw.get("metadata") or {}
    annotations = _str_map(meta.get("annotations"), "template.metadata.annotations")
    pod_spec = pod_spec_from(raw.get("spec") or {}, annotations)
    annotations.pop(COMPLETION_TICKS_ANNOTATION, None)
    return PodTemplate(
        labels=_str_map(meta.get("labels"), "template.metadata.labels"),
        annotations=annotations,
        spec=pod_spec,
    )


def _workload_template(spec: Dict[str, Any], kind: str) -> tuple:
    template = _template(spec, kind)
    selector = _selector(spec, template.labels)
    if not selector:
        raise ManifestError(f"{kind}: spec.selector must not be empty")
    for key, value in selector.items():
        if template.labels.get(key) != value:
            raise ManifestError(f"{kind}: selector does not match template labels")
    return selector, template


# ---- per kind -----------------------------------------------------------------


def _pod(doc, meta, spec) -> Pod:
    return Pod(metadata=meta, spec=pod_spec_from(spec, meta.annotations))


def _deployment(doc, meta, spec) -> Deployment:
    selector, template = _workload_template(spec, "Deployment")
    raw_strategy = spec.get("strategy") or {}
    rolling = raw_strategy.get("rollingUpdate") or {}
    strategy = DeploymentStrategy(
        type=raw_strategy.get("type", "RollingUpdate"),
        max_surge=rolling.get("maxSurge", "25%"),
        max_unavailable=rolling.get("maxUnavailable", "25%"),
    )
    if strategy.type not in ("RollingUpdate", "Recreate"):
        raise ManifestError(f'Deployment: unsupported strategy "{strategy.type}"')
    return Deployment(metadata=meta, spec=DeploymentSpec(
        replicas=_int(spec.get("replicas", 1), "spec.replicas"),
        selector=selector,
        template=template,
        strategy=strategy,
        revision_history_limit=_int(spec.get("revisionHistoryLimit", 1), "spec.revisionHistoryLimit"),
        progress_deadline_ticks=_int(spec.get("progressDeadlineSeconds", 10), "spec.progressDeadlineSeconds", 1),
    ))


def _replicaset(doc, meta, spec) -> ReplicaSet:
    selector, template = _workload_template(spec, "ReplicaSet")
    return ReplicaSet(metadata=meta, spec=ReplicaSetSpec(
        replicas=_int(spec.get("replicas", 1), "spec.replicas"), selector=selector, template=template,
    ))


def _daemonset(doc, meta, spec) -> DaemonSet:
    selector, template = _workload_template(spec, "DaemonSet")
    return DaemonSet(metadata=meta, spec=DaemonSetSpec(selector=selector, template=template))


def _statefulset(doc, meta, spec) -> StatefulSet:
    selector, template = _workload_template(spec, "StatefulSet")
    claims = spec.get("volumeClaimTemplates") or []
    storage_class = None
    if claims:
        storage_class = (claims[0].get("spec") or {}).get("storageClassName") or "standard"
    return StatefulSet(metadata=meta, spec=StatefulSetSpec(
        replicas=_int(spec.get("replicas", 1), "spec.replicas"),
        selector=selector,
        template=template,
        service_name=str(spec.get("serviceName") or ""),
        storage_class_name=storage_class,
    ))


def job_spec_from(spec: Dict[str, Any]) -> JobSpec:
    template = _template(spec, "Job")
    template.spec.restart_policy = "Never"
    return JobSpec(
        template=template,
        completions=_int(spec.get("completions", 1), "spec.completions", minimum=1),
        parallelism=_int(spec.get("parallelism", 1), "spec.parallelism", minimum=1),
        backoff_limit=_int(spec.get("backoffLimit", 6), "spec.backoffLimit"),
        completion_ticks=template.spec.completion_ticks,
    )


def _job(doc, meta, spec) -> Job:
    return Job(metadata=meta, spec=job_spec_from(spec))


def _cronjob(doc, meta, spec) -> CronJob:
    schedule = str(spec.get("schedule") or "")
    if schedule_interval(schedule) is None:
        raise ManifestError(f'CronJob: invalid schedule "{schedule}"')
    job_template = (spec.get("jobTemplate") or {}).get("spec")
    if not job_template:
        raise ManifestError("CronJob: spec.jobTemplate.spec is required")
    return CronJob(metadata=meta, spec=CronJobSpec(
        schedule=schedule,
        job_template=job_spec_from(job_template),
        suspend=bool(spec.get("suspend", False)),
        successful_jobs_history_limit=_int(spec.get("successfulJobsHistoryLimit", 3), "successfulJobsHistoryLimit"),
    ))


def _service(doc, meta, spec) -> Service:
    ports = spec.get("ports") or [{}]
    port = ports[0]
    target = port.get("targetPort")
    return Service(metadata=meta, spec=ServiceSpec(
        selector=_str_map(spec.get("selector"), "spec.selector"),
        port=_int(port.get("port", 80), "spec.ports[0].port", minimum=1),
        target_port=_int(target, "spec.ports[0].targetPort", minimum=1) if target is not None else None,
        type=spec.get("type", "ClusterIP"),
    ))


def _node(doc, meta, spec) -> Node:
    capacity = ((doc.get("status") or {}).get("capacity") or {}).get("pods", 4)
    taints = []
    for t in spec.get("taints") or []:
        effect = t.get("effect", "NoSchedule")
        if effect not in TAINT_EFFECTS:
            raise ManifestError(f'Node: unsupported taint effect "{effect}"')
        taints.append(Taint(key=str(t.get("key", "")), value=str(t.get("value") or ""), effect=effect))
    return Node(metadata=meta, spec=NodeSpec(
        capacity_pods=_int(capacity, "status.capacity.pods"),
        taints=taints,
        unschedulable=bool(spec.get("unschedulable", False)),
    ))


def _namespace(doc, meta, spec) -> Namespace:
    return Namespace(metadata=meta)


def _configmap(doc, meta, spec) -> ConfigMap:
    return ConfigMap(metadata=meta, data=_str_map(doc.get("data"), "data"))


def _secret(doc, meta, spec) -> Secret:
    data = _str_map(doc.get("stringData"), "stringData")
    data.update(_str_map(doc.get("data"), "data"))
    return Secret(metadata=meta, data=data, type=str(doc.get("type") or "Opaque"))


def _pdb(doc, meta, spec) -> PodDisruptionBudget:
    max_unavailable = spec.get("maxUnavailable")
    min_available = spec.get("minAvailable")
    if (max_unavailable is None) == (min_available is None):
        raise ManifestError("PodDisruptionBudget: exactly one of minAvailable or maxUnavailable is required")
    return PodDisruptionBudget(metadata=meta, spec=PodDisruptionBudgetSpec(
        selector=_selector(spec),
        max_unavailable=max_unavailable,
        min_available=min_available,
    ))


def _storageclass(doc, meta, spec) -> StorageClass:
    policy = doc.get("reclaimPolicy", "Delete")
    if policy not in ("Delete", "Retain"):
        raise ManifestError(f'StorageClass: unsupported reclaimPolicy "{policy}"')
    return StorageClass(metadata=meta, provisioner=str(doc.get("provisioner") or "kubesim.io/hostpath"),
                        reclaim_policy=policy)


def _quantity(value: Any, field_name: str) -> str:
    text = str(value)
    try:
        parse_quantity(text)
    except ValueError:
        raise ManifestError(f'{field_name}: invalid quantity "{text}"') from None
    return text


def _pv(doc, meta, spec) -> PersistentVolume:
    claim = spec.get("claimRef") or {}
    claim_ref = f"{claim.get('namespace', 'default')}/{claim['name']}" if claim.get("name") else None
    return PersistentVolume(metadata=meta, spec=PersistentVolumeSpec(
        capacity=_quantity((spec.get("capacity") or {}).get("storage", "1Gi"), "spec.capacity.storage"),
        storage_class_name=spec.get("storageClassName"),
        reclaim_policy=spec.get("persistentVolumeReclaimPolicy", "Retain"),
        claim_ref=claim_ref,
    ))


def _pvc(doc, meta, spec) -> PersistentVolumeClaim:
    requests = (spec.get("resources") or {}).get("requests") or {}
    return PersistentVolumeClaim(metadata=meta, spec=PersistentVolumeClaimSpec(
        storage_class_name=spec.get("storageClassName"),
        request=_quantity(requests.get("storage", "1Gi"), "spec.resources.requests.storage"),
        volume_name=spec.get("volumeName"),
    ))


def _hpa(doc, meta, spec) -> HorizontalPodAutoscaler:
    target = spec.get("scaleTargetRef") or {}
    if not target.get("name"):
        raise ManifestError("HorizontalPodAutoscaler: spec.scaleTargetRef.name is required")
    min_replicas = _int(spec.get("minReplicas", 1), "spec.minReplicas", minimum=1)
    max_replicas = _int(spec.get("maxReplicas", 0), "spec.maxReplicas", minimum=1)
    if max_replicas < min_replicas:
        raise ManifestError("HorizontalPodAutoscaler: maxReplicas must not be less than minReplicas")
    return HorizontalPodAutoscaler(metadata=meta, spec=HorizontalPodAutoscalerSpec(
        target_name=str(target["name"]),
        target_kind=target.get("kind", "Deployment"),
        min_replicas=min_replicas,
        max_replicas=max_replicas,
        target_cpu_percent=_int(spec.get("targetCPUUtilizationPercentage", 80), "targetCPUUtilizationPercentage", 1),
    ))


BUILDERS: Dict[str, Callable[[Dict[str, Any], ObjectMeta, Dict[str, Any]], Any]] = {
    "Pod": _pod,
    "Deployment": _deployment,
    "ReplicaSet": _replicaset,
    "DaemonSet": _daemonset,
    "StatefulSet": _statefulset,
    "Job": _job,
    "CronJob": _cronjob,
    "Service": _service,
    "Node": _node,
    "Namespace": _namespace,
    "ConfigMap": _configmap,
    "Secret": _secret,
    "PodDisruptionBudget": _pdb,
    "StorageClass": _storageclass,
    "PersistentVolume": _pv,
    "PersistentVolumeClaim": _pvc,
    "HorizontalPodAutoscaler": _hpa,
}


def object_from_manifest(doc: Dict[str, Any]) -> Any:
    kind = doc.get("kind")
    builder = BUILDERS.get(kind)
    if builder is None:
        raise ManifestError(f'no matches for kind "{kind}"')
    meta = _metadata(doc, kind)
    spec = doc.get("spec") or {}
    if not isinstance(spec, dict):
        raise ManifestError(f"{kind}: spec must be a mapping")
    try:
        return builder(doc, meta, spec)
    except (AttributeError, TypeError, KeyError) as exc:
        raise ManifestError(f"{kind} {meta.name}: malformed manifest ({exc})") from None


def load_objects(text: str) -> List[Any]:
    return [object_from_manifest(doc) for doc in load_documents(text)]
