from __future__ import annotations

import logging
from typing import List

from kubesim.controllers.base import Controller, ReconcileContext, build_pod, owner_ref
from kubesim.state import (
    PENDING,
    ClusterState,
    Pod,
    ReplicaSet,
    labels_match,
    pod_is_active,
    pod_is_ready,
    short_suffix,
)

logger = logging.getLogger(__name__)


def deletion_rank(pod: Pod) -> tuple:
    """Sort key: pods that are cheapest to lose come first, newest before oldest."""
    if not pod.spec.node_name:
        stage = 0
    elif pod.status.phase == PENDING:
        stage = 1
    elif not pod_is_ready(pod):
        stage = 2
    else:
        stage = 3
    return (stage, -pod.metadata.creation_tick)


class ReplicaSetController(Controller):
    name = "replicaset"

    def reconcile(self, state: ClusterState, ctx: ReconcileContext) -> None:
        for rs in list(state.replica_sets):
            if rs.metadata.deletion_timestamp is not None:
                continue
            self.sync(state, rs, ctx)

    def sync(self, state: ClusterState, rs: ReplicaSet, ctx: ReconcileContext) -> None:
        self._release_and_adopt(state, rs)

        owned = state.owned_pods(rs)
        for pod in owned:
            if not pod.terminating and not pod_is_active(pod):
                # finished or failed replicas are replaced, not kept
                state.mark_terminating(pod)
        active: List[Pod] = [p for p in owned if pod_is_active(p)]

        diff = len(active) - rs.spec.replicas
        if diff < 0:
            for _ in range(-diff):
                pod = build_pod(
                    state, rs.spec.template, f"{rs.name}-{short_suffix()}",
                    owner=rs, namespace=rs.metadata.namespace, failure_rules=ctx.failure_rules,
                )
                active.append(pod)
                state.record_event("ReplicaSet", rs.name, "SuccessfulCreate", f"Created pod: {pod.name}")
            logger.debug(f"replicaset {rs.name} created {-diff} pod(s)")
        elif diff > 0:
            victims = sorted(active, key=deletion_rank)[:diff]
            for pod in victims:
                state.mark_terminating(pod)
                active.remove(pod)
                state.record_event("ReplicaSet", rs.name, "SuccessfulDelete", f"Deleted pod: {pod.name}")
            logger.debug(f"replicaset {rs.name} deleted {diff} pod(s)")

        rs.status.replicas = len(active)
        rs.status.ready_replicas = sum(1 for p in active if pod_is_ready(p))

    @staticmethod
    def _release_and_adopt(state: ClusterState, rs: ReplicaSet) -> None:
        uid = rs.metadata.uid
        for pod in state.pods:
            if pod.metadata.namespace != rs.metadata.namespace or pod.terminating:
                continue
            ref = pod.metadata.owner_reference
            matches = labels_match(rs.spec.selector, pod.metadata.labels)
            if ref is not None and ref.uid == uid and not matches:
                pod.metadata.owner_reference = None
                state.record_event("Pod", pod.name, "Released",
                                   f"Pod no longer matches the selector of replica set {rs.name}")
            elif ref is None and matches and pod_is_active(pod):
                pod.metadata.owner_reference = owner_ref(rs)
                state.record_event("Pod", pod.name, "Adopted", f"Pod adopted by replica set {rs.name}")
