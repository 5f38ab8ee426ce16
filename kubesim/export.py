"""Render simulated objects as Kubernetes API objects (``-o yaml``, ``--dry-run``)."""

from __future__ import annotations

from typing import Any, Callable, Dict, List, Optional

import yaml
from kubernetes.client import (
    ApiClient,
    V1ConfigMap,
    V1ConfigMapEnvSource,
    V1ConfigMapVolumeSource,
    V1Container,
    V1ContainerStatus,
    V1CronJob,
    V1CronJobSpec,
    V1CronJobStatus,
    V1CrossVersionObjectReference,
    V1DaemonSet,
    V1DaemonSetSpec,
    V1DaemonSetStatus,
    V1Deployment,
    V1DeploymentCondition,
    V1DeploymentSpec,
    V1DeploymentStatus,
    V1DeploymentStrategy,
    V1EnvFromSource,
    V1HorizontalPodAutoscaler,
    V1HorizontalPodAutoscalerSpec,
    V1HorizontalPodAutoscalerStatus,
    V1Job,
    V1JobCondition,
    V1JobSpec,
    V1JobStatus,
    V1JobTemplateSpec,
    V1LabelSelector,
    V1Namespace,
    V1NamespaceStatus,
    V1Node,
    V1NodeCondition,
    V1NodeSpec,
    V1NodeStatus,
    V1ObjectMeta,
    V1ObjectReference,
    V1OwnerReference,
    V1PersistentVolume,
    V1PersistentVolumeClaim,
    V1PersistentVolumeClaimSpec,
    V1PersistentVolumeClaimStatus,
    V1PersistentVolumeClaimVolumeSource,
    V1PersistentVolumeSpec,
    V1PersistentVolumeStatus,
    V1Pod,
    V1PodCondition,
    V1PodDisruptionBudget,
    V1PodDisruptionBudgetSpec,
    V1PodDisruptionBudgetStatus,
    V1PodSpec,
    V1PodStatus,
    V1PodTemplateSpec,
    V1Probe,
    V1ReplicaSet,
    V1ReplicaSetSpec,
    V1ReplicaSetStatus,
    V1RollingUpdateDeployment,
    V1Secret,
    V1SecretEnvSource,
    V1SecretVolumeSource,
    V1Service,
    V1ServicePort,
    V1ServiceSpec,
    V1StatefulSet,
    V1StatefulSetSpec,
    V1StatefulSetStatus,
    V1StorageClass,
    V1Taint,
    V1Toleration,
    V1Volume,
    V1VolumeResourceRequirements,
)

from kubesim.state import (
    RUNNING,
    SUCCEEDED,
    ClusterState,
    CronJob,
    DaemonSet,
    Deployment,
    Job,
    JobSpec,
    Node,
    ObjectMeta,
    PersistentVolume,
    PersistentVolumeClaim,
    Pod,
    PodDisruptionBudget,
    PodSpec,
    PodTemplate,
    Probe,
    ReplicaSet,
    Service,
    StatefulSet,
    StorageClass,
    pod_is_ready,
)

COMPLETION_TICKS_ANNOTATION = "kubesim.io/completion-ticks"

API_VERSIONS = {
    "Pod": "v1",
    "Node": "v1",
    "Service": "v1",
    "Namespace": "v1",
    "ConfigMap": "v1",
    "Secret": "v1",
    "PersistentVolume": "v1",
    "PersistentVolumeClaim": "v1",
    "Deployment": "apps/v1",
    "ReplicaSet": "apps/v1",
    "DaemonSet": "apps/v1",
    "StatefulSet": "apps/v1",
    "Job": "batch/v1",
    "CronJob": "batch/v1",
    "PodDisruptionBudget": "policy/v1",
    "StorageClass": "storage.k8s.io/v1",
    "HorizontalPodAutoscaler": "autoscaling/v1",
}

_api_client: Optional[ApiClient] = None


def _client() -> ApiClient:
    global _api_client
    if _api_client is None:
        _api_client = ApiClient()
    return _api_client


def _meta(meta: ObjectMeta, cluster_scoped: bool = False) -> V1ObjectMeta:
    owner = None
    if meta.owner_reference is not None:
        ref = meta.owner_reference
        owner = [V1OwnerReference(
            api_version=API_VERSIONS.get(ref.kind, "v1"), kind=ref.kind, name=ref.name, uid=ref.uid, controller=True,
        )]
    return V1ObjectMeta(
        name=meta.name,
        namespace=None if cluster_scoped else meta.namespace,
        uid=meta.uid,
        labels=dict(meta.labels) or None,
        annotations=dict(meta.annotations) or None,
        owner_references=owner,
        deletion_timestamp=None,
    )


def _probe(probe: Optional[Probe]) -> Optional[V1Probe]:
    if probe is None:
        return None
    return V1Probe(
        initial_delay_seconds=probe.initial_delay_ticks,
        period_seconds=probe.period_ticks,
        failure_threshold=probe.failure_threshold,
    )


def _pod_spec(spec: PodSpec, fallback_name: str) -> V1PodSpec:
    container = V1Container(
        name=spec.container_name or fallback_name,
        image=spec.image,
        readiness_probe=_probe(spec.readiness_probe),
        liveness_probe=_probe(spec.liveness_probe),
        startup_probe=_probe(spec.startup_probe),
        env_from=[
            V1EnvFromSource(config_map_ref=V1ConfigMapEnvSource(name=src.name))
            if src.kind == "ConfigMap" else V1EnvFromSource(secret_ref=V1SecretEnvSource(name=src.name))
            for src in spec.env_from
        ] or None,
    )
    volumes = []
    for vol in spec.volumes:
        volumes.append(V1Volume(
            name=vol.name,
            persistent_volume_claim=V1PersistentVolumeClaimVolumeSource(claim_name=vol.claim_name) if vol.claim_name else None,
            config_map=V1ConfigMapVolumeSource(name=vol.config_map) if vol.config_map else None,
            secret=V1SecretVolumeSource(secret_name=vol.secret) if vol.secret else None,
        ))
    return V1PodSpec(
        containers=[container],
        init_containers=[V1Container(name=ic.name, image=ic.image) for ic in spec.init_containers] or None,
        node_name=spec.node_name,
        restart_policy=spec.restart_policy,
        tolerations=[
            V1Toleration(key=t.key or None, operator=t.operator, value=t.value or None, effect=t.effect or None)
            for t in spec.tolerations
        ] or None,
        volumes=volumes or None,
    )


def _template(template: PodTemplate, fallback_name: str) -> V1PodTemplateSpec:
    annotations = dict(template.annotations)
    if template.spec.completion_ticks is not None:
        annotations[COMPLETION_TICKS_ANNOTATION] = str(template.spec.completion_ticks)
    return V1PodTemplateSpec(
        metadata=V1ObjectMeta(labels=dict(template.labels) or None, annotations=annotations or None),
        spec=_pod_spec(template.spec, fallback_name),
    )


def _selector(selector: Dict[str, str]) -> V1LabelSelector:
    return V1LabelSelector(match_labels=dict(selector))


# ---- per kind -----------------------------------------------------------------


def pod_to_v1(pod: Pod) -> V1Pod:
    status = pod.status
    ready = pod_is_ready(pod)
    return V1Pod(
        api_version="v1",
        kind="Pod",
        metadata=_meta(pod.metadata),
        spec=_pod_spec(pod.spec, pod.name),
        status=V1PodStatus(
            phase=status.phase,
            reason=status.reason,
            message=status.message,
            conditions=[
                V1PodCondition(type="PodScheduled", status="True" if pod.spec.node_name else "False"),
                V1PodCondition(type="Ready", status="True" if ready else "False"),
            ],
            container_statuses=[V1ContainerStatus(
                name=pod.spec.container_name or pod.name,
                image=pod.spec.image,
                image_id="",
                ready=ready,
                restart_count=status.restart_count,
                started=status.phase in (RUNNING, SUCCEEDED),
            )],
        ),
    )


def node_to_v1(node: Node) -> V1Node:
    capacity = {"pods": str(node.spec.capacity_pods)}
    return V1Node(
        api_version="v1",
        kind="Node",
        metadata=_meta(node.metadata, cluster_scoped=True),
        spec=V1NodeSpec(
            taints=[V1Taint(key=t.key, value=t.value or None, effect=t.effect) for t in node.spec.taints] or None,
            unschedulable=node.spec.unschedulable or None,
        ),
        status=V1NodeStatus(
            capacity=capacity,
            allocatable=dict(capacity),
            conditions=[V1NodeCondition(type=c.type, status=c.status, reason=c.reason or None)
                        for c in node.status.conditions],
        ),
    )


def deployment_to_v1(dep: Deployment) -> V1Deployment:
    strategy = dep.spec.strategy
    rolling = None
    if strategy.type == "RollingUpdate":
        rolling = V1RollingUpdateDeployment(max_surge=strategy.max_surge, max_unavailable=strategy.max_unavailable)
    status = dep.status
    return V1Deployment(
        api_version="apps/v1",
        kind="Deployment",
        metadata=_meta(dep.metadata),
        spec=V1DeploymentSpec(
            replicas=dep.spec.replicas,
            selector=_selector(dep.spec.selector),
            template=_template(dep.spec.template, dep.name),
            strategy=V1DeploymentStrategy(type=strategy.type, rolling_update=rolling),
            revision_history_limit=dep.spec.revision_history_limit,
            progress_deadline_seconds=dep.spec.progress_deadline_ticks,
        ),
        status=V1DeploymentStatus(
            replicas=status.replicas,
            updated_replicas=status.updated_replicas,
            ready_replicas=status.ready_replicas,
            available_replicas=status.available_replicas,
            unavailable_replicas=status.unavailable_replicas or None,
            conditions=[
                V1DeploymentCondition(type=c.type, status=c.status, reason=c.reason or None, message=c.message or None)
                for c in status.conditions
            ] or None,
        ),
    )


def replicaset_to_v1(rs: ReplicaSet) -> V1ReplicaSet:
    return V1ReplicaSet(
        api_version="apps/v1",
        kind="ReplicaSet",
        metadata=_meta(rs.metadata),
        spec=V1ReplicaSetSpec(
            replicas=rs.spec.replicas,
            selector=_selector(rs.spec.selector),
            template=_template(rs.spec.template, rs.name),
        ),
        status=V1ReplicaSetStatus(replicas=rs.status.replicas, ready_replicas=rs.status.ready_replicas),
    )


def service_to_v1(svc: Service) -> V1Service:
    return V1Service(
        api_version="v1",
        kind="Service",
        metadata=_meta(svc.metadata),
        spec=V1ServiceSpec(
            selector=dict(svc.spec.selector) or None,
            type=svc.spec.type,
            ports=[V1ServicePort(port=svc.spec.port, target_port=svc.spec.target_port or svc.spec.port)],
        ),
    )


def daemonset_to_v1(ds: DaemonSet) -> V1DaemonSet:
    return V1DaemonSet(
        api_version="apps/v1",
        kind="DaemonSet",
        metadata=_meta(ds.metadata),
        spec=V1DaemonSetSpec(selector=_selector(ds.spec.selector), template=_template(ds.spec.template, ds.name)),
        status=V1DaemonSetStatus(
            current_number_scheduled=ds.status.current_number_scheduled,
            desired_number_scheduled=ds.status.desired_number_scheduled,
            number_misscheduled=0,
            number_ready=ds.status.number_ready,
        ),
    )


def statefulset_to_v1(sts: StatefulSet) -> V1StatefulSet:
    claims = None
    if sts.spec.storage_class_name:
        claims = [V1PersistentVolumeClaim(
            metadata=V1ObjectMeta(name="data"),
            spec=V1PersistentVolumeClaimSpec(
                storage_class_name=sts.spec.storage_class_name,
                access_modes=["ReadWriteOnce"],
                resources=V1VolumeResourceRequirements(requests={"storage": "1Gi"}),
            ),
        )]
    return V1StatefulSet(
        api_version="apps/v1",
        kind="StatefulSet",
        metadata=_meta(sts.metadata),
        spec=V1StatefulSetSpec(
            replicas=sts.spec.replicas,
            selector=_selector(sts.spec.selector),
            service_name=sts.spec.service_name or sts.name,
            template=_template(sts.spec.template, sts.name),
            volume_claim_templates=claims,
        ),
        status=V1StatefulSetStatus(replicas=sts.status.replicas, ready_replicas=sts.status.ready_replicas),
    )


def _job_spec(spec: JobSpec, name: str) -> V1JobSpec:
    template = _template(spec.template, name)
    template.spec.restart_policy = "Never"
    if spec.completion_ticks is not None:
        annotations = dict(template.metadata.annotations or {})
        annotations[COMPLETION_TICKS_ANNOTATION] = str(spec.completion_ticks)
        template.metadata.annotations = annotations
    return V1JobSpec(
        template=template,
        completions=spec.completions,
        parallelism=spec.parallelism,
        backoff_limit=spec.backoff_limit,
    )


def job_to_v1(job: Job) -> V1Job:
    conditions = None
    if job.finished:
        conditions = [V1JobCondition(type=job.status.phase, status="True")]
    return V1Job(
        api_version="batch/v1",
        kind="Job",
        metadata=_meta(job.metadata),
        spec=_job_spec(job.spec, job.name),
        status=V1JobStatus(
            active=job.status.active or None,
            succeeded=job.status.succeeded or None,
            failed=job.status.failed or None,
            conditions=conditions,
        ),
    )


def cronjob_to_v1(cj: CronJob) -> V1CronJob:
    return V1CronJob(
        api_version="batch/v1",
        kind="CronJob",
        metadata=_meta(cj.metadata),
        spec=V1CronJobSpec(
            schedule=cj.spec.schedule,
            suspend=cj.spec.suspend,
            successful_jobs_history_limit=cj.spec.successful_jobs_history_limit,
            job_template=V1JobTemplateSpec(spec=_job_spec(cj.spec.job_template, cj.name)),
        ),
        status=V1CronJobStatus(
            active=[V1ObjectReference(kind="Job", name=n, namespace=cj.metadata.namespace) for n in cj.status.active] or None,
        ),
    )


def pdb_to_v1(pdb: PodDisruptionBudget) -> V1PodDisruptionBudget:
    return V1PodDisruptionBudget(
        api_version="policy/v1",
        kind="PodDisruptionBudget",
        metadata=_meta(pdb.metadata),
        spec=V1PodDisruptionBudgetSpec(
            selector=_selector(pdb.spec.selector),
            max_unavailable=pdb.spec.max_unavailable,
            min_available=pdb.spec.min_available,
        ),
        status=V1PodDisruptionBudgetStatus(
            current_healthy=pdb.status.current_healthy,
            desired_healthy=pdb.status.desired_healthy,
            disruptions_allowed=pdb.status.disruptions_allowed,
            expected_pods=pdb.status.expected_pods,
        ),
    )


def storageclass_to_v1(sc: StorageClass) -> V1StorageClass:
    return V1StorageClass(
        api_version="storage.k8s.io/v1",
        kind="StorageClass",
        metadata=_meta(sc.metadata, cluster_scoped=True),
        provisioner=sc.provisioner,
        reclaim_policy=sc.reclaim_policy,
    )


def pv_to_v1(pv: PersistentVolume) -> V1PersistentVolume:
    claim_ref = None
    if pv.spec.claim_ref:
        namespace, _, name = pv.spec.claim_ref.partition("/")
        claim_ref = V1ObjectReference(kind="PersistentVolumeClaim", namespace=namespace, name=name)
    return V1PersistentVolume(
        api_version="v1",
        kind="PersistentVolume",
        metadata=_meta(pv.metadata, cluster_scoped=True),
        spec=V1PersistentVolumeSpec(
            capacity={"storage": pv.spec.capacity},
            access_modes=["ReadWriteOnce"],
            storage_class_name=pv.spec.storage_class_name,
            persistent_volume_reclaim_policy=pv.spec.reclaim_policy,
            claim_ref=claim_ref,
        ),
        status=V1PersistentVolumeStatus(phase=pv.status.phase),
    )


def pvc_to_v1(pvc: PersistentVolumeClaim) -> V1PersistentVolumeClaim:
    return V1PersistentVolumeClaim(
        api_version="v1",
        kind="PersistentVolumeClaim",
        metadata=_meta(pvc.metadata),
        spec=V1PersistentVolumeClaimSpec(
            access_modes=["ReadWriteOnce"],
            storage_class_name=pvc.spec.storage_class_name,
            volume_name=pvc.spec.volume_name,
            resources=V1VolumeResourceRequirements(requests={"storage": pvc.spec.request}),
        ),
        status=V1PersistentVolumeClaimStatus(phase=pvc.status.phase),
    )


def hpa_to_v1(hpa) -> V1HorizontalPodAutoscaler:
    return V1HorizontalPodAutoscaler(
        api_version="autoscaling/v1",
        kind="HorizontalPodAutoscaler",
        metadata=_meta(hpa.metadata),
        spec=V1HorizontalPodAutoscalerSpec(
            scale_target_ref=V1CrossVersionObjectReference(
                api_version=API_VERSIONS.get(hpa.spec.target_kind, "apps/v1"),
                kind=hpa.spec.target_kind,
                name=hpa.spec.target_name,
            ),
            min_replicas=hpa.spec.min_replicas,
            max_replicas=hpa.spec.max_replicas,
            target_cpu_utilization_percentage=hpa.spec.target_cpu_percent,
        ),
        status=V1HorizontalPodAutoscalerStatus(
            current_replicas=hpa.status.current_replicas,
            desired_replicas=hpa.status.desired_replicas,
            current_cpu_utilization_percentage=hpa.status.current_cpu_percent,
        ),
    )


def _namespace_to_v1(ns) -> V1Namespace:
    return V1Namespace(api_version="v1", kind="Namespace", metadata=_meta(ns.metadata, cluster_scoped=True),
                       status=V1NamespaceStatus(phase=ns.phase))


def _configmap_to_v1(cm) -> V1ConfigMap:
    return V1ConfigMap(api_version="v1", kind="ConfigMap", metadata=_meta(cm.metadata), data=dict(cm.data) or None)


def _secret_to_v1(secret) -> V1Secret:
    return V1Secret(api_version="v1", kind="Secret", metadata=_meta(secret.metadata), type=secret.type,
                    string_data=dict(secret.data) or None)


CONVERTERS: Dict[str, Callable[[Any], Any]] = {
    "Pod": pod_to_v1,
    "Node": node_to_v1,
    "Deployment": deployment_to_v1,
    "ReplicaSet": replicaset_to_v1,
    "Service": service_to_v1,
    "Namespace": _namespace_to_v1,
    "ConfigMap": _configmap_to_v1,
    "Secret": _secret_to_v1,
    "DaemonSet": daemonset_to_v1,
    "StatefulSet": statefulset_to_v1,
    "Job": job_to_v1,
    "CronJob": cronjob_to_v1,
    "PodDisruptionBudget": pdb_to_v1,
    "StorageClass": storageclass_to_v1,
    "PersistentVolume": pv_to_v1,
    "PersistentVolumeClaim": pvc_to_v1,
    "HorizontalPodAutoscaler": hpa_to_v1,
}


def to_v1(obj: Any) -> Any:
    return CONVERTERS[obj.kind](obj)


def to_manifest(obj: Any, include_status: bool = True) -> Dict[str, Any]:
    """Plain camelCase dict of the object, as the API server would return it."""
    manifest = _client().sanitize_for_serialization(to_v1(obj))
    if not include_status:
        manifest.pop("status", None)
        manifest.get("metadata", {}).pop("uid", None)
    return manifest


def to_yaml(objs: List[Any], include_status: bool = True) -> str:
    docs = [to_manifest(o, include_status=include_status) for o in objs]
    if len(docs) == 1:
        return yaml.safe_dump(docs[0], sort_keys=False)
    return yaml.safe_dump({"apiVersion": "v1", "kind": "List", "items": docs}, sort_keys=False)


def export_state(state: ClusterState) -> List[Dict[str, Any]]:
    """Every object in the cluster as a manifest dict."""
    out: List[Dict[str, Any]] = []
    for kind in CONVERTERS:
        for obj in state.objects(kind):
            out.append(to_manifest(obj))
    return out
