"""Drain-driven eviction gated by PodDisruptionBudgets."""

from __future__ import annotations

import logging
from typing import List, Set

from kubesim.controllers.base import Controller, ReconcileContext
from kubesim.controllers.endpoints import sync_service
from kubesim.state import (
    SUCCEEDED,
    FAILED,
    ClusterState,
    Pod,
    PodDisruptionBudget,
    labels_match,
    pod_is_active,
    pod_is_ready,
    resolve_int_or_percent,
)

logger = logging.getLogger(__name__)


def budget_pods(state: ClusterState, pdb: PodDisruptionBudget) -> List[Pod]:
    return [
        p for p in state.pods_matching(pdb.spec.selector, pdb.metadata.namespace)
        if p.status.phase not in (SUCCEEDED, FAILED) or p.terminating
    ]


def expected_pods(state: ClusterState, pods: List[Pod]) -> int:
    """Replicas the matching pods' controllers want; unowned pods count once each."""
    total = 0
    seen: Set[str] = set()
    for pod in pods:
        ref = pod.metadata.owner_reference
        if ref is None:
            if not pod.terminating:
                total += 1
            continue
        if ref.uid in seen:
            continue
        seen.add(ref.uid)
        owner = state.find(ref.kind, ref.name, pod.metadata.namespace)
        if owner is None:
            total += sum(1 for p in pods if p.metadata.owner_reference is not None
                         and p.metadata.owner_reference.uid == ref.uid and not p.terminating)
        elif ref.kind == "DaemonSet":
            total += owner.status.desired_number_scheduled
        elif ref.kind == "Job":
            total += owner.spec.parallelism
        else:
            total += owner.spec.replicas
    return total


def disruptions_allowed(state: ClusterState, pdb: PodDisruptionBudget) -> int:
    pods = budget_pods(state, pdb)
    expected = expected_pods(state, pods)
    healthy = sum(1 for p in pods if pod_is_ready(p))
    if pdb.spec.max_unavailable is not None:
        max_unavailable = resolve_int_or_percent(pdb.spec.max_unavailable, expected, round_up=True)
        desired = expected - max_unavailable
    elif pdb.spec.min_available is not None:
        desired = resolve_int_or_percent(pdb.spec.min_available, expected, round_up=True)
    else:
        desired = 0
    status = pdb.status
    status.expected_pods = expected
    status.current_healthy = healthy
    status.desired_healthy = max(0, desired)
    status.disruptions_allowed = max(0, healthy - max(0, desired))
    return status.disruptions_allowed


def is_daemon_pod(pod: Pod) -> bool:
    ref = pod.metadata.owner_reference
    return ref is not None and ref.kind == "DaemonSet"


class EvictionController(Controller):
    """Evicts pods from draining nodes one at a time while every matching budget allows it."""

    name = "eviction"

    def reconcile(self, state: ClusterState, ctx: ReconcileContext) -> None:
        evicted: Set[str] = set()
        for node in state.nodes:
            if not node.status.draining:
                continue
            candidates = [
                p for p in state.pods_on_node(node.name)
                if pod_is_active(p) and not is_daemon_pod(p)
            ]
            if not candidates:
                node.status.draining = False
                node.status.blocked_evictions = []
                state.record_event("Node", node.name, "NodeDrained", f"Node {node.name} drained")
                logger.info(f"node {node.name} drained")
                continue

            blocked: List[str] = []
            for pod in sorted(candidates, key=lambda p: (p.metadata.creation_tick, p.name)):
                budgets = [
                    pdb for pdb in state.pdbs
                    if pdb.metadata.namespace == pod.metadata.namespace
                    and labels_match(pdb.spec.selector, pod.metadata.labels)
                ]
                if all(disruptions_allowed(state, pdb) >= 1 for pdb in budgets):
                    state.mark_terminating(pod)
                    pod.status.ready = False
                    evicted.add(pod.name)
                    state.record_event("Pod", pod.name, "Evicted", f"Evicted while draining node {node.name}")
                    logger.debug(f"evicted {pod.name} from {node.name}")
                else:
                    blocked.append(pod.name)

            blocked.sort()
            if blocked != node.status.blocked_evictions:
                node.status.blocked_evictions = blocked
                if blocked:
                    state.record_event(
                        "Node", node.name, "EvictionBlocked",
                        f"Cannot evict pod(s) {', '.join(blocked)}: would violate a PodDisruptionBudget; will retry",
                        "Warning",
                    )

        for pdb in state.pdbs:
            disruptions_allowed(state, pdb)

        if evicted:
            for svc in state.services:
                if evicted.intersection(svc.status.endpoints):
                    sync_service(state, svc)
