"""Garbage collection: cascading deletes and removal of terminated pods."""

from __future__ import annotations

import logging
from typing import Any, Dict, List

from kubesim.controllers.base import Controller, ReconcileContext
from kubesim.state import KIND_FIELDS, ClusterState

logger = logging.getLogger(__name__)

# Owner kinds in cascade order; each one's dependents are looked up by owner uid.
OWNER_KINDS = ("CronJob", "Deployment", "ReplicaSet", "StatefulSet", "DaemonSet", "Job")


class GarbageCollector(Controller):
    name = "garbage-collector"

    def reconcile(self, state: ClusterState, ctx: ReconcileContext) -> None:
        # Pods marked during an earlier tick are gone now.
        for pod in list(state.pods):
            ts = pod.metadata.deletion_timestamp
            if ts is not None and ts < state.tick:
                state.remove(pod)
                logger.debug(f"removed terminated pod {pod.name}")

        live_uids = self._live_uids(state)
        dependents = self._dependents(state)

        for kind in OWNER_KINDS:
            for owner in state.objects(kind):
                if owner.metadata.deletion_timestamp is None:
                    continue
                for child in dependents.get(owner.metadata.uid, []):
                    state.mark_terminating(child)

        # Orphans whose owner no longer exists follow it.
        for pod in state.pods:
            ref = pod.metadata.owner_reference
            if ref is not None and ref.uid not in live_uids:
                state.mark_terminating(pod)

        # Innermost owners first so a whole chain can drain over consecutive ticks.
        for kind in reversed(OWNER_KINDS):
            dependents = self._dependents(state)
            for owner in list(state.objects(kind)):
                if owner.metadata.deletion_timestamp is None:
                    continue
                if not dependents.get(owner.metadata.uid):
                    state.remove(owner)
                    state.record_event(kind, owner.metadata.name, "Deleted", f"{kind} {owner.metadata.name} deleted")
                    logger.debug(f"removed {kind} {owner.metadata.name}")

    @staticmethod
    def _live_uids(state: ClusterState) -> set:
        uids = set()
        for kind in OWNER_KINDS:
            uids.update(o.metadata.uid for o in state.objects(kind))
        return uids

    @staticmethod
    def _dependents(state: ClusterState) -> Dict[str, List[Any]]:
        out: Dict[str, List[Any]] = {}
        for kind in ("Pod", "ReplicaSet", "Job"):
            for obj in getattr(state, KIND_FIELDS[kind]):
                ref = obj.metadata.owner_reference
                if ref is not None:
                    out.setdefault(ref.uid, []).append(obj)
        return out
