from __future__ import annotations

import copy
import logging
from typing import List, Optional

from kubesim.controllers.base import Controller, ReconcileContext, owner_ref
from kubesim.state import (
    REVISION_ANNOTATION,
    TEMPLATE_HASH_LABEL,
    ClusterState,
    Deployment,
    ObjectMeta,
    ReplicaSet,
    ReplicaSetSpec,
    get_condition,
    pod_is_active,
    pod_is_ready,
    resolve_int_or_percent,
    set_condition,
    template_hash,
)

logger = logging.getLogger(__name__)


def owned_replica_sets(state: ClusterState, dep: Deployment) -> List[ReplicaSet]:
    uid = dep.metadata.uid
    return [
        rs for rs in state.replica_sets
        if rs.metadata.owner_reference is not None and rs.metadata.owner_reference.uid == uid
    ]


def ready_count(state: ClusterState, rs: ReplicaSet) -> int:
    return sum(1 for p in state.owned_pods(rs) if pod_is_ready(p))


def active_count(state: ClusterState, rs: ReplicaSet) -> int:
    return sum(1 for p in state.owned_pods(rs) if pod_is_active(p))


def rollout_budget(dep: Deployment) -> tuple:
    """Return (max_surge, max_unavailable) resolved against spec.replicas."""
    desired = dep.spec.replicas
    surge = resolve_int_or_percent(dep.spec.strategy.max_surge, desired, round_up=True)
    unavailable = resolve_int_or_percent(dep.spec.strategy.max_unavailable, desired, round_up=False)
    if surge == 0 and unavailable == 0:
        unavailable = 1
    return surge, unavailable


class DeploymentController(Controller):
    name = "deployment"

    def reconcile(self, state: ClusterState, ctx: ReconcileContext) -> None:
        for dep in state.deployments:
            if dep.metadata.deletion_timestamp is not None:
                continue
            self.sync(state, dep)

    def sync(self, state: ClusterState, dep: Deployment) -> None:
        all_rs = [rs for rs in owned_replica_sets(state, dep) if rs.metadata.deletion_timestamp is None]
        new_rs = self._find_or_create_new_rs(state, dep, all_rs)
        old_rs = sorted((rs for rs in all_rs if rs is not new_rs), key=lambda r: r.revision)

        if dep.spec.strategy.type == "Recreate":
            self._rollout_recreate(state, dep, new_rs, old_rs)
        else:
            self._rollout_rolling(state, dep, new_rs, old_rs)

        self._cleanup_history(state, dep, old_rs)
        self._update_status(state, dep, new_rs, old_rs)

    # ---- replica set bookkeeping ----

    def _find_or_create_new_rs(self, state: ClusterState, dep: Deployment, all_rs: List[ReplicaSet]) -> ReplicaSet:
        pod_hash = template_hash(dep.spec.template)
        max_revision = max((rs.revision for rs in all_rs), default=0)
        for rs in all_rs:
            if rs.metadata.labels.get(TEMPLATE_HASH_LABEL) == pod_hash:
                if rs.revision < max_revision:
                    # rollback onto an older template
                    rs.metadata.annotations[REVISION_ANNOTATION] = str(max_revision + 1)
                    dep.status.rollout_start_tick = state.tick
                return rs

        template = copy.deepcopy(dep.spec.template)
        template.labels[TEMPLATE_HASH_LABEL] = pod_hash
        selector = dict(dep.spec.selector)
        selector[TEMPLATE_HASH_LABEL] = pod_hash
        has_old = any(active_count(state, rs) > 0 or rs.spec.replicas > 0 for rs in all_rs)
        replicas = 0 if has_old else dep.spec.replicas
        rs = ReplicaSet(
            metadata=ObjectMeta(
                name=f"{dep.name}-{pod_hash}",
                namespace=dep.metadata.namespace,
                labels=dict(template.labels),
                annotations={REVISION_ANNOTATION: str(max_revision + 1)},
                owner_reference=owner_ref(dep),
            ),
            spec=ReplicaSetSpec(replicas=replicas, selector=selector, template=template),
        )
        state.add(rs)
        if has_old:
            dep.status.rollout_start_tick = state.tick
        state.record_event(
            "Deployment", dep.name, "ScalingReplicaSet", f"Scaled up replica set {rs.name} to {replicas}",
        )
        logger.debug(f"deployment {dep.name} created replica set {rs.name}")
        return rs

    def _scale(self, state: ClusterState, dep: Deployment, rs: ReplicaSet, replicas: int) -> None:
        replicas = max(0, replicas)
        if rs.spec.replicas == replicas:
            return
        direction = "up" if replicas > rs.spec.replicas else "down"
        state.record_event(
            "Deployment", dep.name, "ScalingReplicaSet",
            f"Scaled {direction} replica set {rs.name} from {rs.spec.replicas} to {replicas}",
        )
        rs.spec.replicas = replicas

    # ---- strategies ----

    def _rollout_recreate(self, state: ClusterState, dep: Deployment, new_rs: ReplicaSet, old_rs: List[ReplicaSet]) -> None:
        for rs in old_rs:
            self._scale(state, dep, rs, 0)
        if any(active_count(state, rs) > 0 for rs in old_rs):
            return
        self._scale(state, dep, new_rs, dep.spec.replicas)

    def _rollout_rolling(self, state: ClusterState, dep: Deployment, new_rs: ReplicaSet, old_rs: List[ReplicaSet]) -> None:
        desired = dep.spec.replicas
        if not any(rs.spec.replicas > 0 for rs in old_rs):
            self._scale(state, dep, new_rs, desired)
            return

        surge, max_unavailable = rollout_budget(dep)

        # scale up the new replica set within the surge allowance
        total = new_rs.spec.replicas + sum(rs.spec.replicas for rs in old_rs)
        room = desired + surge - total
        if new_rs.spec.replicas < desired and room > 0:
            self._scale(state, dep, new_rs, min(desired, new_rs.spec.replicas + room))
        elif new_rs.spec.replicas > desired:
            self._scale(state, dep, new_rs, desired)

        # scale down old replica sets, unhealthy replicas first
        min_available = desired - max_unavailable
        total = new_rs.spec.replicas + sum(rs.spec.replicas for rs in old_rs)
        new_unavailable = new_rs.spec.replicas - min(ready_count(state, new_rs), new_rs.spec.replicas)
        cleanup = total - min_available - new_unavailable
        for rs in old_rs:
            if cleanup <= 0:
                break
            unhealthy = rs.spec.replicas - min(ready_count(state, rs), rs.spec.replicas)
            take = min(unhealthy, cleanup)
            if take > 0:
                self._scale(state, dep, rs, rs.spec.replicas - take)
                cleanup -= take

        ready_total = sum(min(ready_count(state, rs), rs.spec.replicas) for rs in [new_rs] + old_rs)
        budget = ready_total - min_available
        for rs in old_rs:
            if budget <= 0:
                break
            take = min(rs.spec.replicas, budget)
            if take > 0:
                self._scale(state, dep, rs, rs.spec.replicas - take)
                budget -= take

    def _cleanup_history(self, state: ClusterState, dep: Deployment, old_rs: List[ReplicaSet]) -> None:
        idle = [rs for rs in old_rs if rs.spec.replicas == 0 and not state.owned_pods(rs)]
        excess = len(idle) - max(0, dep.spec.revision_history_limit)
        for rs in idle[:max(0, excess)]:
            state.remove(rs)
            logger.debug(f"deployment {dep.name} pruned replica set {rs.name}")

    # ---- status ----

    def _update_status(self, state: ClusterState, dep: Deployment, new_rs: ReplicaSet, old_rs: List[ReplicaSet]) -> None:
        status = dep.status
        desired = dep.spec.replicas
        pods = [p for rs in [new_rs] + old_rs for p in state.owned_pods(rs) if pod_is_active(p)]
        new_pods = [p for p in state.owned_pods(new_rs) if pod_is_active(p)]
        status.replicas = len(pods)
        status.updated_replicas = len(new_pods)
        status.ready_replicas = sum(1 for p in pods if pod_is_ready(p))
        status.available_replicas = status.ready_replicas
        status.unavailable_replicas = max(0, desired - status.available_replicas)
        status.revision = new_rs.revision

        _, max_unavailable = rollout_budget(dep)
        if status.available_replicas >= desired - max_unavailable:
            set_condition(status.conditions, "Available", "True", state.tick, "MinimumReplicasAvailable",
                          "Deployment has minimum availability.")
        else:
            set_condition(status.conditions, "Available", "False", state.tick, "MinimumReplicasUnavailable",
                          "Deployment does not have minimum availability.")

        new_ready = sum(1 for p in new_pods if pod_is_ready(p))
        complete = (
            status.updated_replicas == desired
            and status.replicas == desired
            and new_ready == desired
        )
        started = status.rollout_start_tick
        if complete:
            set_condition(status.conditions, "Progressing", "True", state.tick, "NewReplicaSetAvailable",
                          f'ReplicaSet "{new_rs.name}" has successfully progressed.')
            if started is not None:
                status.rollout_start_tick = None
                state.record_event("Deployment", dep.name, "RolloutComplete",
                                   f"Deployment {dep.name} successfully rolled out revision {new_rs.revision}")
            return

        if started is not None and state.tick - started > dep.spec.progress_deadline_ticks:
            cond = get_condition(status.conditions, "Progressing")
            if cond is None or cond.reason != "ProgressDeadlineExceeded":
                set_condition(status.conditions, "Progressing", "False", state.tick, "ProgressDeadlineExceeded",
                              f'ReplicaSet "{new_rs.name}" has timed out progressing.')
                state.record_event("Deployment", dep.name, "RolloutStalled",
                                   f"Deployment {dep.name} exceeded its progress deadline", "Warning")
            return

        set_condition(status.conditions, "Progressing", "True", state.tick, "ReplicaSetUpdated",
                      f'ReplicaSet "{new_rs.name}" is progressing.')
