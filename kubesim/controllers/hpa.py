from __future__ import annotations

import logging
import math

from kubesim.controllers.base import Controller, ReconcileContext
from kubesim.state import RUNNING, ClusterState, HorizontalPodAutoscaler

logger = logging.getLogger(__name__)

SCALE_COOLDOWN_TICKS = 3


class HorizontalPodAutoscalerController(Controller):
    """Scales Deployments on the average CPU of their running pods.

    Pods that never reported usage are left out of the average. With no
    reporting pod at all the replica count is only clamped to the bounds.
    """

    name = "hpa"

    def reconcile(self, state: ClusterState, ctx: ReconcileContext) -> None:
        for hpa in state.hpas:
            target = state.find(hpa.spec.target_kind, hpa.spec.target_name, hpa.metadata.namespace)
            if target is None:
                self._missing_target(state, hpa)
                continue
            if target.metadata.deletion_timestamp is not None:
                continue
            pods = [
                p for p in state.pods_matching(target.spec.selector, target.metadata.namespace)
                if p.status.phase == RUNNING and not p.terminating
            ]
            reporting = [p.status.cpu_usage for p in pods if p.status.cpu_usage is not None]
            current = target.spec.replicas
            hpa.status.current_replicas = current

            desired = current
            if reporting:
                avg = sum(reporting) / len(reporting)
                hpa.status.current_cpu_percent = int(round(avg))
                if hpa.spec.target_cpu_percent > 0 and current > 0:
                    desired = int(math.ceil(current * avg / hpa.spec.target_cpu_percent))
            else:
                hpa.status.current_cpu_percent = None
            desired = max(hpa.spec.min_replicas, min(hpa.spec.max_replicas, desired))
            hpa.status.desired_replicas = desired
            if desired == current:
                continue

            last = hpa.status.last_scale_tick
            if last is not None and state.tick - last < SCALE_COOLDOWN_TICKS:
                continue
            target.spec.replicas = desired
            hpa.status.last_scale_tick = state.tick
            hpa.status.current_replicas = desired
            if reporting:
                reason = (f"cpu resource utilization (percentage of request) "
                          f"{'above' if desired > current else 'below'} target")
            else:
                reason = f"current replicas {'below' if desired > current else 'above'} the allowed range"
            state.record_event("HorizontalPodAutoscaler", hpa.name, "SuccessfulRescale",
                               f"New size: {desired}; reason: {reason}")
            logger.info(f"hpa {hpa.name} scaled {target.kind} {target.name} {current} -> {desired}")

    @staticmethod
    def _missing_target(state: ClusterState, hpa: HorizontalPodAutoscaler) -> None:
        previous = state.events_for("HorizontalPodAutoscaler", hpa.name)
        if previous and previous[-1].reason == "FailedGetScale":
            return
        state.record_event(
            "HorizontalPodAutoscaler", hpa.name, "FailedGetScale",
            f'Unable to find target {hpa.spec.target_kind} "{hpa.spec.target_name}"', "Warning",
        )
        logger.debug(f"hpa {hpa.name}: target {hpa.spec.target_name} not found")
