from __future__ import annotations

import logging

from kubesim.controllers.base import Controller, ReconcileContext
from kubesim.state import FAILED, NO_EXECUTE, ClusterState, Node, Pod, tolerates

logger = logging.getLogger(__name__)


class NodeLifecycleController(Controller):
    """Fails pods stranded on NotReady nodes and enforces NoExecute taints."""

    name = "node-lifecycle"

    def reconcile(self, state: ClusterState, ctx: ReconcileContext) -> None:
        for node in state.nodes:
            for pod in state.pods_on_node(node.name):
                if pod.terminating:
                    continue
                if not node.ready:
                    self._evict(state, node, pod, "NodeNotReady", f"Node {node.name} is not ready")
                    continue
                for taint in node.spec.taints:
                    if taint.effect == NO_EXECUTE and not tolerates(pod.spec.tolerations, taint):
                        self._evict(
                            state, node, pod, "TaintManagerEviction",
                            f"Taint {taint.key}={taint.value}:{taint.effect} is not tolerated",
                        )
                        break

        # Pods bound to nodes that were deleted.
        names = {n.name for n in state.nodes}
        for pod in state.pods:
            if pod.spec.node_name and pod.spec.node_name not in names and not pod.terminating:
                pod.status.phase = FAILED
                pod.status.reason = "NodeLost"
                pod.status.ready = False
                state.mark_terminating(pod)

    @staticmethod
    def _evict(state: ClusterState, node: Node, pod: Pod, reason: str, message: str) -> None:
        pod.status.phase = FAILED
        pod.status.reason = reason
        pod.status.message = message
        pod.status.ready = False
        state.mark_terminating(pod)
        pod.append_log(f"[kubelet] {message}, pod evicted")
        state.record_event("Pod", pod.name, reason, f"Marking pod for deletion: {message}", "Warning")
        logger.debug(f"evicted {pod.name} from {node.name}: {reason}")
