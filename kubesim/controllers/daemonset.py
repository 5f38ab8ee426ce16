from __future__ import annotations

import logging
from typing import Dict

from kubesim.controllers.base import Controller, ReconcileContext, build_pod
from kubesim.state import (
    NO_EXECUTE,
    NO_SCHEDULE,
    ClusterState,
    DaemonSet,
    Node,
    Pod,
    pod_is_active,
    pod_is_ready,
    short_suffix,
    tolerates,
)

logger = logging.getLogger(__name__)

TARGET_NODE_ANNOTATION = "kubesim.io/daemon-node"


def node_eligible(ds: DaemonSet, node: Node) -> bool:
    if not node.ready:
        return False
    for taint in node.spec.taints:
        if taint.effect in (NO_SCHEDULE, NO_EXECUTE) and not tolerates(ds.spec.template.spec.tolerations, taint):
            return False
    return True


class DaemonSetController(Controller):
    """One pod per eligible node, bound directly without the scheduler."""

    name = "daemonset"

    def reconcile(self, state: ClusterState, ctx: ReconcileContext) -> None:
        for ds in state.daemon_sets:
            if ds.metadata.deletion_timestamp is not None:
                continue
            self.sync(state, ds, ctx)

    def sync(self, state: ClusterState, ds: DaemonSet, ctx: ReconcileContext) -> None:
        owned = state.owned_pods(ds)
        for pod in owned:
            if not pod.terminating and not pod_is_active(pod):
                state.mark_terminating(pod)
        by_node: Dict[str, Pod] = {}
        for pod in owned:
            target = pod.spec.node_name or pod.metadata.annotations.get(TARGET_NODE_ANNOTATION)
            if pod_is_active(pod) and target:
                by_node[target] = pod

        eligible = [n for n in state.nodes if node_eligible(ds, n)]
        eligible_names = {n.name for n in eligible}

        for node_name, pod in list(by_node.items()):
            if node_name not in eligible_names:
                state.mark_terminating(pod)
                del by_node[node_name]
                state.record_event("DaemonSet", ds.name, "SuccessfulDelete", f"Deleted pod: {pod.name}")

        for node in eligible:
            if node.name in by_node:
                continue
            pod = build_pod(state, ds.spec.template, f"{ds.name}-{short_suffix()}", owner=ds,
                            namespace=ds.metadata.namespace, failure_rules=ctx.failure_rules)
            pod.metadata.annotations[TARGET_NODE_ANNOTATION] = node.name
            if not pod.spec.failure_mode:
                pod.spec.node_name = node.name
                pod.status.scheduled_tick = state.tick
            by_node[node.name] = pod
            state.record_event("DaemonSet", ds.name, "SuccessfulCreate", f"Created pod: {pod.name} on node {node.name}")
            logger.debug(f"daemonset {ds.name} placed {pod.name} on {node.name}")

        ds.status.desired_number_scheduled = len(eligible)
        ds.status.current_number_scheduled = len(by_node)
        ds.status.number_ready = sum(1 for p in by_node.values() if pod_is_ready(p))
