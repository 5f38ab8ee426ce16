from __future__ import annotations

import logging
from collections import Counter
from typing import Dict, List, Optional, Tuple

from kubesim.controllers.base import Controller, ReconcileContext
from kubesim.state import (
    NO_EXECUTE,
    NO_SCHEDULE,
    PENDING,
    PREFER_NO_SCHEDULE,
    ClusterState,
    Node,
    Pod,
    tolerates,
)

logger = logging.getLogger(__name__)


def filter_node(node: Node, pod: Pod) -> Optional[str]:
    """Return why the node cannot host the pod, or None when it can."""
    if not node.ready:
        return "node(s) were not ready"
    if node.spec.unschedulable:
        return "node(s) were unschedulable"
    if node.status.allocated_pods >= node.spec.capacity_pods:
        return "node(s) had too many pods"
    for taint in node.spec.taints:
        if taint.effect in (NO_SCHEDULE, NO_EXECUTE) and not tolerates(pod.spec.tolerations, taint):
            return f"node(s) had untolerated taint {{{taint.key}: {taint.value}}}" if taint.value \
                else f"node(s) had untolerated taint {{{taint.key}}}"
    return None


def score_node(node: Node, pod: Pod) -> Tuple[int, int]:
    """Higher is better: fewer untolerated PreferNoSchedule taints, then more free slots."""
    soft = sum(
        1 for t in node.spec.taints
        if t.effect == PREFER_NO_SCHEDULE and not tolerates(pod.spec.tolerations, t)
    )
    return (-soft, node.spec.capacity_pods - node.status.allocated_pods)


def unbound_claims(state: ClusterState, pod: Pod) -> List[str]:
    missing = []
    for vol in pod.spec.volumes:
        if not vol.claim_name:
            continue
        pvc = state.find("PersistentVolumeClaim", vol.claim_name, pod.metadata.namespace)
        if pvc is None or pvc.status.phase != "Bound":
            missing.append(vol.claim_name)
    return missing


class Scheduler(Controller):
    """Binds pending pods to nodes.

    Nodes are filtered on readiness, schedulability, pod capacity and
    NoSchedule/NoExecute taints. Among the survivors the best score wins;
    equal scores go to the node listed first in ``state.nodes``.
    """

    name = "scheduler"

    def reconcile(self, state: ClusterState, ctx: ReconcileContext) -> None:
        state.recount_allocations()
        for pod in state.pods:
            if pod.spec.node_name or pod.terminating or pod.spec.failure_mode:
                continue
            if pod.status.phase != PENDING:
                continue
            self.schedule_one(state, pod)

    def schedule_one(self, state: ClusterState, pod: Pod) -> Optional[Node]:
        claims = unbound_claims(state, pod)
        if claims:
            self._unschedulable(state, pod, f'pod has unbound immediate PersistentVolumeClaims ("{claims[0]}")')
            return None

        best: Optional[Node] = None
        best_score: Optional[Tuple[int, int]] = None
        reasons: Dict[str, int] = Counter()
        for node in state.nodes:
            reason = filter_node(node, pod)
            if reason is not None:
                reasons[reason] += 1
                continue
            score = score_node(node, pod)
            if best_score is None or score > best_score:
                best, best_score = node, score

        if best is None:
            detail = ", ".join(f"{count} {reason}" for reason, count in sorted(reasons.items()))
            message = f"0/{len(state.nodes)} nodes are available"
            if detail:
                message += f": {detail}"
            self._unschedulable(state, pod, message + ".")
            return None

        pod.spec.node_name = best.name
        pod.status.scheduled_tick = state.tick
        pod.status.reason = None
        pod.status.message = None
        best.status.allocated_pods += 1
        state.record_event("Pod", pod.name, "Scheduled",
                           f"Successfully assigned {pod.metadata.namespace}/{pod.name} to {best.name}")
        logger.debug(f"scheduled {pod.name} -> {best.name}")
        return best

    @staticmethod
    def _unschedulable(state: ClusterState, pod: Pod, message: str) -> None:
        if pod.status.reason == "Unschedulable" and pod.status.message == message:
            return
        pod.status.reason = "Unschedulable"
        pod.status.message = message
        state.record_event("Pod", pod.name, "FailedScheduling", message, "Warning")
        logger.debug(f"cannot schedule {pod.name}: {message}")
