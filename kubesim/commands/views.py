"""Read-only renderings for ``get`` and ``describe``."""

from __future__ import annotations

from typing import Any, Callable, Dict, List, Sequence, Tuple

import yaml

from kubesim.export import to_manifest
from kubesim.state import (
    CLUSTER_SCOPED,
    IMAGE_PULL_ERROR,
    PENDING,
    ClusterState,
    Pod,
    SimEvent,
    pod_is_ready,
)

Row = List[str]


def age(state: ClusterState, obj: Any) -> str:
    return f"{max(0, state.tick - obj.metadata.creation_tick)}t"


def pod_status_text(pod: Pod) -> str:
    if pod.terminating:
        return "Terminating"
    reason = pod.status.reason or ""
    if pod.status.phase == PENDING and (
        reason in (IMAGE_PULL_ERROR, "CreateContainerConfigError") or reason.startswith("Init:")
    ):
        return reason
    return pod.status.phase


def _labels_text(labels: Dict[str, str]) -> str:
    return ",".join(f"{k}={v}" for k, v in sorted(labels.items())) or "<none>"


def format_table(headers: Sequence[str], rows: List[Row]) -> str:
    widths = [len(h) for h in headers]
    for row in rows:
        for i, cell in enumerate(row):
            widths[i] = max(widths[i], len(cell))
    lines = []
    for row in [list(headers)] + rows:
        lines.append("   ".join(cell.ljust(widths[i]) for i, cell in enumerate(row)).rstrip())
    return "\n".join(lines)


# ---- get tables ---------------------------------------------------------------


def _pod_row(state, pod, wide):
    row = [
        pod.name,
        f"{1 if pod_is_ready(pod) else 0}/1",
        pod_status_text(pod),
        str(pod.status.restart_count),
        age(state, pod),
    ]
    if wide:
        row.append(pod.spec.node_name or "<none>")
    return row


def _node_row(state, node, wide):
    status = "Ready" if node.ready else "NotReady"
    if node.spec.unschedulable:
        status += ",SchedulingDisabled"
    row = [node.name, status, f"{node.status.allocated_pods}/{node.spec.capacity_pods}", age(state, node)]
    if wide:
        row.append(",".join(f"{t.key}={t.value}:{t.effect}" if t.value else f"{t.key}:{t.effect}"
                            for t in node.spec.taints) or "<none>")
    return row


def _deployment_row(state, dep, wide):
    s = dep.status
    return [dep.name, f"{s.ready_replicas}/{dep.spec.replicas}", str(s.updated_replicas),
            str(s.available_replicas), age(state, dep)]


def _replicaset_row(state, rs, wide):
    return [rs.name, str(rs.spec.replicas), str(rs.status.replicas), str(rs.status.ready_replicas), age(state, rs)]


def _service_row(state, svc, wide):
    port = f"{svc.spec.port}/TCP"
    row = [svc.name, svc.spec.type, port, _labels_text(svc.spec.selector), age(state, svc)]
    if wide:
        row.append(",".join(svc.status.endpoints) or "<none>")
    return row


TABLES: Dict[str, Tuple[Sequence[str], Sequence[str], Callable[[ClusterState, Any, bool], Row]]] = {
    "Pod": (("NAME", "READY", "STATUS", "RESTARTS", "AGE"), ("NODE",), _pod_row),
    "Node": (("NAME", "STATUS", "PODS", "AGE"), ("TAINTS",), _node_row),
    "Deployment": (("NAME", "READY", "UP-TO-DATE", "AVAILABLE", "AGE"), (), _deployment_row),
    "ReplicaSet": (("NAME", "DESIRED", "CURRENT", "READY", "AGE"), (), _replicaset_row),
    "Service": (("NAME", "TYPE", "PORT(S)", "SELECTOR", "AGE"), ("ENDPOINTS",), _service_row),
    "DaemonSet": (
        ("NAME", "DESIRED", "CURRENT", "READY", "AGE"), (),
        lambda st, ds, w: [ds.name, str(ds.status.desired_number_scheduled), str(ds.status.current_number_scheduled),
                           str(ds.status.number_ready), age(st, ds)],
    ),
    "StatefulSet": (
        ("NAME", "READY", "AGE"), (),
        lambda st, sts, w: [sts.name, f"{sts.status.ready_replicas}/{sts.spec.replicas}", age(st, sts)],
    ),
    "Job": (
        ("NAME", "STATUS", "COMPLETIONS", "AGE"), (),
        lambda st, job, w: [job.name, job.status.phase, f"{job.status.succeeded}/{job.spec.completions}", age(st, job)],
    ),
    "CronJob": (
        ("NAME", "SCHEDULE", "SUSPEND", "ACTIVE", "LAST SCHEDULE"), (),
        lambda st, cj, w: [cj.name, cj.spec.schedule, str(cj.spec.suspend), str(len(cj.status.active)),
                           "<none>" if cj.status.last_schedule_tick is None
                           else f"{st.tick - cj.status.last_schedule_tick}t"],
    ),
    "PodDisruptionBudget": (
        ("NAME", "MIN AVAILABLE", "MAX UNAVAILABLE", "ALLOWED DISRUPTIONS", "AGE"), (),
        lambda st, pdb, w: [pdb.name,
                            "N/A" if pdb.spec.min_available is None else str(pdb.spec.min_available),
                            "N/A" if pdb.spec.max_unavailable is None else str(pdb.spec.max_unavailable),
                            str(pdb.status.disruptions_allowed), age(st, pdb)],
    ),
    "StorageClass": (
        ("NAME", "PROVISIONER", "RECLAIMPOLICY", "AGE"), (),
        lambda st, sc, w: [sc.name, sc.provisioner, sc.reclaim_policy, age(st, sc)],
    ),
    "PersistentVolume": (
        ("NAME", "CAPACITY", "RECLAIM POLICY", "STATUS", "CLAIM", "STORAGECLASS"), (),
        lambda st, pv, w: [pv.name, pv.spec.capacity, pv.spec.reclaim_policy, pv.status.phase,
                           pv.spec.claim_ref or "", pv.spec.storage_class_name or ""],
    ),
    "PersistentVolumeClaim": (
        ("NAME", "STATUS", "VOLUME", "CAPACITY", "STORAGECLASS", "AGE"), (),
        lambda st, pvc, w: [pvc.name, pvc.status.phase, pvc.spec.volume_name or "",
                            pvc.spec.request if pvc.status.phase == "Bound" else "",
                            pvc.spec.storage_class_name or "", age(st, pvc)],
    ),
    "HorizontalPodAutoscaler": (
        ("NAME", "REFERENCE", "TARGETS", "MINPODS", "MAXPODS", "REPLICAS"), (),
        lambda st, hpa, w: [hpa.name, f"{hpa.spec.target_kind}/{hpa.spec.target_name}",
                            f"{'<unknown>' if hpa.status.current_cpu_percent is None else str(hpa.status.current_cpu_percent) + '%'}"
                            f"/{hpa.spec.target_cpu_percent}%",
                            str(hpa.spec.min_replicas), str(hpa.spec.max_replicas), str(hpa.status.current_replicas)],
    ),
    "Namespace": (("NAME", "STATUS", "AGE"), (), lambda st, ns, w: [ns.name, ns.phase, age(st, ns)]),
    "ConfigMap": (("NAME", "DATA", "AGE"), (), lambda st, cm, w: [cm.name, str(len(cm.data)), age(st, cm)]),
    "Secret": (
        ("NAME", "TYPE", "DATA", "AGE"), (),
        lambda st, s, w: [s.name, s.type, str(len(s.data)), age(st, s)],
    ),
}


def render_table(state: ClusterState, kind: str, objs: List[Any], wide: bool = False,
                 all_namespaces: bool = False, show_labels: bool = False) -> str:
    headers, wide_headers, row_fn = TABLES[kind]
    headers = list(headers) + (list(wide_headers) if wide else [])
    rows = [row_fn(state, obj, wide) for obj in objs]
    if all_namespaces and kind not in CLUSTER_SCOPED:
        headers.insert(0, "NAMESPACE")
        rows = [[obj.metadata.namespace] + row for obj, row in zip(objs, rows)]
    if show_labels:
        headers.append("LABELS")
        rows = [row + [_labels_text(obj.metadata.labels)] for obj, row in zip(objs, rows)]
    return format_table(headers, rows)


def render_events(state: ClusterState, events: List[SimEvent]) -> str:
    rows = [
        [f"{state.tick - e.tick}t", e.type, e.reason, f"{e.object_kind.lower()}/{e.object_name}", e.message]
        for e in events
    ]
    return format_table(("LAST SEEN", "TYPE", "REASON", "OBJECT", "MESSAGE"), rows)


# ---- describe -----------------------------------------------------------------


def _pod_details(state: ClusterState, pod: Pod) -> List[str]:
    s = pod.status
    lines = [
        f"Node:           {pod.spec.node_name or '<none>'}",
        f"Status:         {pod_status_text(pod)}",
    ]
    if s.reason:
        lines.append(f"Reason:         {s.reason}")
    if s.message:
        lines.append(f"Message:        {s.message}")
    owner = pod.metadata.owner_reference
    lines.append(f"Controlled By:  {owner.kind}/{owner.name}" if owner else "Controlled By:  <none>")
    lines += [
        "Containers:",
        f"  {pod.spec.container_name or pod.name}:",
        f"    Image:          {pod.spec.image}",
        f"    Ready:          {pod_is_ready(pod)}",
        f"    Restart Count:  {s.restart_count}",
    ]
    for label, probe in (("Liveness", pod.spec.liveness_probe), ("Readiness", pod.spec.readiness_probe),
                         ("Startup", pod.spec.startup_probe)):
        if probe is not None:
            lines.append(f"    {label}:      delay={probe.initial_delay_ticks}t period={probe.period_ticks}t "
                         f"#failure={probe.failure_threshold}")
    if pod.spec.tolerations:
        lines.append("Tolerations:")
        for t in pod.spec.tolerations:
            rendered = t.key or "<all>"
            if t.operator == "Equal":
                rendered += f"={t.value}"
            lines.append(f"  {rendered}:{t.effect or '<any>'} op={t.operator}")
    return lines


def _node_details(state: ClusterState, node) -> List[str]:
    lines = [
        f"Unschedulable:  {node.spec.unschedulable}",
        "Taints:         " + (", ".join(f"{t.key}={t.value}:{t.effect}" for t in node.spec.taints) or "<none>"),
        "Conditions:",
    ]
    for cond in node.status.conditions:
        lines.append(f"  {cond.type}  {cond.status}  {cond.reason}")
    lines.append(f"Capacity:       pods={node.spec.capacity_pods}")
    lines.append(f"Allocated:      pods={node.status.allocated_pods}")
    if node.status.blocked_evictions:
        lines.append("Blocked Evictions: " + ", ".join(node.status.blocked_evictions))
    lines.append("Non-terminated Pods:")
    for pod in state.pods_on_node(node.name):
        if not pod.terminating:
            lines.append(f"  {pod.metadata.namespace}/{pod.name}  {pod_status_text(pod)}")
    return lines


def _deployment_details(state: ClusterState, dep) -> List[str]:
    s = dep.status
    strategy = dep.spec.strategy
    lines = [
        f"Selector:       {_labels_text(dep.spec.selector)}",
        f"Replicas:       {dep.spec.replicas} desired | {s.updated_replicas} updated | {s.replicas} total | "
        f"{s.available_replicas} available | {s.unavailable_replicas} unavailable",
        f"StrategyType:   {strategy.type}",
    ]
    if strategy.type == "RollingUpdate":
        lines.append(f"RollingUpdateStrategy:  {strategy.max_unavailable} max unavailable, {strategy.max_surge} max surge")
    lines.append(f"Image:          {dep.spec.template.spec.image}")
    lines.append("Conditions:")
    for cond in s.conditions:
        lines.append(f"  {cond.type}  {cond.status}  {cond.reason}")
    return lines


def _service_details(state: ClusterState, svc) -> List[str]:
    return [
        f"Selector:       {_labels_text(svc.spec.selector)}",
        f"Type:           {svc.spec.type}",
        f"Port:           {svc.spec.port}/TCP",
        f"TargetPort:     {svc.spec.target_port or svc.spec.port}/TCP",
        f"Endpoints:      {', '.join(svc.status.endpoints) or '<none>'}",
    ]


def _job_details(state: ClusterState, job) -> List[str]:
    s = job.status
    return [
        f"Parallelism:    {job.spec.parallelism}",
        f"Completions:    {job.spec.completions}",
        f"Backoff Limit:  {job.spec.backoff_limit}",
        f"Pods Statuses:  {s.active} Active / {s.succeeded} Succeeded / {s.failed} Failed",
        f"Status:         {s.phase}",
    ]


def _pdb_details(state: ClusterState, pdb) -> List[str]:
    s = pdb.status
    lines = [f"Selector:       {_labels_text(pdb.spec.selector)}"]
    if pdb.spec.min_available is not None:
        lines.append(f"Min available:  {pdb.spec.min_available}")
    if pdb.spec.max_unavailable is not None:
        lines.append(f"Max unavailable:  {pdb.spec.max_unavailable}")
    lines += [
        "Status:",
        f"  Allowed disruptions:  {s.disruptions_allowed}",
        f"  Current:              {s.current_healthy}",
        f"  Desired:              {s.desired_healthy}",
        f"  Total:                {s.expected_pods}",
    ]
    return lines


def _pvc_details(state: ClusterState, pvc) -> List[str]:
    lines = [
        f"StorageClass:   {pvc.spec.storage_class_name or '<none>'}",
        f"Status:         {pvc.status.phase}",
        f"Volume:         {pvc.spec.volume_name or ''}",
        f"Capacity:       {pvc.spec.request}",
    ]
    if pvc.status.message:
        lines.append(f"Message:        {pvc.status.message}")
    users = [p.name for p in state.pods if any(v.claim_name == pvc.name for v in p.spec.volumes)]
    lines.append(f"Used By:        {', '.join(users) or '<none>'}")
    return lines


DETAILS: Dict[str, Callable[[ClusterState, Any], List[str]]] = {
    "Pod": _pod_details,
    "Node": _node_details,
    "Deployment": _deployment_details,
    "Service": _service_details,
    "Job": _job_details,
    "PodDisruptionBudget": _pdb_details,
    "PersistentVolumeClaim": _pvc_details,
}


def describe(state: ClusterState, obj: Any) -> str:
    meta = obj.metadata
    lines = [f"Name:           {meta.name}"]
    if obj.kind not in CLUSTER_SCOPED:
        lines.append(f"Namespace:      {meta.namespace}")
    lines.append(f"Labels:         {_labels_text(meta.labels)}")
    if meta.annotations:
        lines.append(f"Annotations:    {_labels_text(meta.annotations)}")
    detail = DETAILS.get(obj.kind)
    if detail is not None:
        lines += detail(state, obj)
    else:
        spec = to_manifest(obj).get("spec")
        if spec:
            lines.append("Spec:")
            lines += ["  " + line for line in yaml.safe_dump(spec, sort_keys=False).splitlines()]
    events = state.events_for(obj.kind, meta.name)
    lines.append("Events:")
    if not events:
        lines.append("  <none>")
    else:
        lines += ["  " + line for line in render_events(state, events).splitlines()]
    return "\n".join(lines)
