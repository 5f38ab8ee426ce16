from __future__ import annotations

import copy
import logging
from typing import Dict

from kubesim.controllers.base import Controller, ReconcileContext, build_pod
from kubesim.state import (
    ClusterState,
    ObjectMeta,
    PersistentVolumeClaim,
    PersistentVolumeClaimSpec,
    Pod,
    PodTemplate,
    StatefulSet,
    Volume,
    pod_is_active,
    pod_is_ready,
)

logger = logging.getLogger(__name__)


def ordinal_of(sts: StatefulSet, pod: Pod) -> int:
    prefix = f"{sts.name}-"
    suffix = pod.name[len(prefix):] if pod.name.startswith(prefix) else ""
    return int(suffix) if suffix.isdigit() else -1


class StatefulSetController(Controller):
    """Ordered, one-at-a-time pod management with stable names."""

    name = "statefulset"

    def reconcile(self, state: ClusterState, ctx: ReconcileContext) -> None:
        for sts in state.stateful_sets:
            if sts.metadata.deletion_timestamp is not None:
                continue
            self.sync(state, sts, ctx)

    def sync(self, state: ClusterState, sts: StatefulSet, ctx: ReconcileContext) -> None:
        owned = state.owned_pods(sts)
        for pod in owned:
            if not pod.terminating and not pod_is_active(pod):
                state.mark_terminating(pod)
        by_ordinal: Dict[int, Pod] = {ordinal_of(sts, p): p for p in owned if pod_is_active(p)}
        names_in_use = {p.name for p in state.pods}

        excess = sorted((o for o in by_ordinal if o >= sts.spec.replicas), reverse=True)
        if excess:
            pod = by_ordinal.pop(excess[0])
            state.mark_terminating(pod)
            state.record_event("StatefulSet", sts.name, "SuccessfulDelete", f"delete Pod {pod.name} in StatefulSet {sts.name} successful")
        else:
            for ordinal in range(sts.spec.replicas):
                if ordinal in by_ordinal:
                    if not pod_is_ready(by_ordinal[ordinal]):
                        break
                    continue
                name = f"{sts.name}-{ordinal}"
                if name in names_in_use:
                    # previous incarnation still terminating
                    break
                template = self._template_for(state, sts, ordinal)
                pod = build_pod(state, template, name, owner=sts, namespace=sts.metadata.namespace,
                                failure_rules=ctx.failure_rules)
                by_ordinal[ordinal] = pod
                state.record_event("StatefulSet", sts.name, "SuccessfulCreate", f"create Pod {name} in StatefulSet {sts.name} successful")
                logger.debug(f"statefulset {sts.name} created {name}")
                break

        sts.status.replicas = len(by_ordinal)
        sts.status.ready_replicas = sum(1 for p in by_ordinal.values() if pod_is_ready(p))

    @staticmethod
    def _template_for(state: ClusterState, sts: StatefulSet, ordinal: int) -> PodTemplate:
        template = copy.deepcopy(sts.spec.template)
        template.labels["statefulset.kubernetes.io/pod-name"] = f"{sts.name}-{ordinal}"
        if sts.spec.storage_class_name:
            claim = f"data-{sts.name}-{ordinal}"
            if state.find("PersistentVolumeClaim", claim, sts.metadata.namespace) is None:
                state.add(PersistentVolumeClaim(
                    metadata=ObjectMeta(name=claim, namespace=sts.metadata.namespace,
                                        labels=dict(sts.spec.selector)),
                    spec=PersistentVolumeClaimSpec(storage_class_name=sts.spec.storage_class_name),
                ))
            template.spec.volumes.append(Volume(name="data", claim_name=claim))
        return template
