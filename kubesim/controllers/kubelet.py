"""Per-node pod lifecycle: container start, init containers, probes and crash loops."""

from __future__ import annotations

import logging
from typing import Optional

from kubesim.controllers.base import Controller, ReconcileContext
from kubesim.state import (
    CRASH_LOOP,
    FAILED,
    IMAGE_PULL_ERROR,
    OOM_KILLED,
    PENDING,
    RUNNING,
    SUCCEEDED,
    ClusterState,
    Pod,
)

logger = logging.getLogger(__name__)

MAX_BACKOFF_TICKS = 4


def backoff_ticks(pod: Pod) -> int:
    return min(max(1, pod.status.restart_count), MAX_BACKOFF_TICKS)


def startup_complete(pod: Pod, age: int) -> bool:
    probe = pod.spec.startup_probe
    if probe is None:
        return True
    return age >= probe.initial_delay_ticks + probe.failure_threshold * probe.period_ticks


def readiness_passes(pod: Pod, age: int) -> bool:
    if not startup_complete(pod, age):
        return False
    probe = pod.spec.readiness_probe
    return probe is None or age >= probe.initial_delay_ticks


def liveness_grace(pod: Pod) -> Optional[int]:
    """Ticks a not-ready pod survives before liveness kills it; None when not enforced."""
    probe = pod.spec.liveness_probe
    if probe is None or pod.spec.startup_probe is not None:
        return None
    return probe.initial_delay_ticks + probe.failure_threshold * probe.period_ticks


def missing_config(state: ClusterState, pod: Pod) -> Optional[str]:
    ns = pod.metadata.namespace
    refs = [(src.kind, src.name) for src in pod.spec.env_from]
    for vol in pod.spec.volumes:
        if vol.config_map:
            refs.append(("ConfigMap", vol.config_map))
        if vol.secret:
            refs.append(("Secret", vol.secret))
    for kind, name in refs:
        if state.find(kind, name, ns) is None:
            return f'{kind.lower()} "{name}" not found'
    return None


class Kubelet(Controller):
    name = "kubelet"

    def reconcile(self, state: ClusterState, ctx: ReconcileContext) -> None:
        for pod in state.pods:
            if pod.terminating:
                continue
            if pod.spec.failure_mode:
                self._run_injected_failure(state, pod)
                continue
            node = state.get_node(pod.spec.node_name)
            if node is None or not node.ready:
                continue
            phase = pod.status.phase
            if phase == PENDING:
                self._start(state, pod)
            elif phase == RUNNING:
                self._probe(state, pod)
            elif phase in (CRASH_LOOP, OOM_KILLED):
                self._restart_after_backoff(state, pod)

    # ---- pending -> running ----

    def _start(self, state: ClusterState, pod: Pod) -> None:
        status = pod.status
        if status.scheduled_tick is not None and status.scheduled_tick >= state.tick:
            return

        missing = missing_config(state, pod)
        if missing:
            if status.reason != "CreateContainerConfigError":
                status.reason = "CreateContainerConfigError"
                status.message = missing
                pod.append_log(f"[error] {missing}")
                state.record_event("Pod", pod.name, "Failed", f"Error: CreateContainerConfigError: {missing}", "Warning")
            return
        if status.reason == "CreateContainerConfigError":
            status.reason = None
            status.message = None
            pod.append_log("[info] Dependencies resolved, starting container")

        inits = pod.spec.init_containers
        if inits:
            total_needed = sum(max(1, ic.duration_ticks) for ic in inits)
            if status.init_ticks < total_needed:
                before = self._inits_done(pod)
                status.init_ticks += 1
                done = self._inits_done(pod)
                for ic in inits[before:done]:
                    pod.append_log(f"[init:{ic.name}] Completed successfully")
                    state.record_event("Pod", pod.name, "Completed", f'Init container "{ic.name}" completed')
                if done < len(inits):
                    status.reason = f"Init:{done}/{len(inits)}"
                    return
                status.reason = None

        status.phase = RUNNING
        status.start_tick = state.tick
        status.reason = None
        status.message = None
        status.ready = readiness_passes(pod, 0)
        pod.append_log(f"[startup] Container started with image {pod.spec.image}")
        state.record_event("Pod", pod.name, "Started", f'Started container with image "{pod.spec.image}"')

    @staticmethod
    def _inits_done(pod: Pod) -> int:
        elapsed = pod.status.init_ticks
        done = 0
        for ic in pod.spec.init_containers:
            elapsed -= max(1, ic.duration_ticks)
            if elapsed < 0:
                break
            done += 1
        return done

    # ---- running ----

    def _probe(self, state: ClusterState, pod: Pod) -> None:
        status = pod.status
        age = state.tick - (status.start_tick if status.start_tick is not None else state.tick)

        if pod.spec.completion_ticks is not None and age >= pod.spec.completion_ticks:
            status.phase = SUCCEEDED
            status.reason = "Completed"
            status.ready = False
            pod.append_log("[info] Task completed successfully, exit code 0")
            state.record_event("Pod", pod.name, "Completed", "Pod completed successfully")
            return

        ready = readiness_passes(pod, age)
        if ready != status.ready:
            status.ready = ready
            if ready and pod.has_readiness_gate:
                pod.append_log(f"[probe] Readiness probe succeeded after {age} tick(s)")

        grace = liveness_grace(pod)
        if grace is not None and not ready and age > grace:
            status.phase = CRASH_LOOP
            status.reason = CRASH_LOOP
            status.message = "Liveness probe failed: container did not become ready in time"
            status.restart_count += 1
            status.crash_tick = state.tick
            status.ready = False
            pod.append_log("[liveness-probe] Liveness probe failed, restarting container")
            state.record_event(
                "Pod", pod.name, "Unhealthy",
                f"Liveness probe failed, container restarted (restart count: {status.restart_count})", "Warning",
            )
            logger.debug(f"liveness killed {pod.name}")

    def _restart_after_backoff(self, state: ClusterState, pod: Pod) -> None:
        status = pod.status
        crashed = status.crash_tick if status.crash_tick is not None else state.tick
        if state.tick - crashed < backoff_ticks(pod):
            return
        status.phase = RUNNING
        status.reason = None
        status.message = None
        status.start_tick = state.tick
        status.ready = readiness_passes(pod, 0)
        pod.append_log(f"[startup] Container restarted with image {pod.spec.image}")

    # ---- injected failures ----

    def _run_injected_failure(self, state: ClusterState, pod: Pod) -> None:
        """Fault-injected pods never recover on their own; crash loops keep backing off."""
        status = pod.status
        if pod.spec.failure_mode == IMAGE_PULL_ERROR or status.phase in (FAILED, SUCCEEDED):
            return
        if status.phase not in (CRASH_LOOP, OOM_KILLED):
            return
        if status.crash_tick is None:
            status.crash_tick = state.tick
            return
        if state.tick - status.crash_tick < backoff_ticks(pod):
            return
        status.restart_count += 1
        status.crash_tick = state.tick
        if status.phase == OOM_KILLED:
            pod.append_log("[fatal] Container killed: OOMKilled, memory limit exceeded")
        else:
            pod.append_log("[fatal] Process exited with code 1")
        state.record_event(
            "Pod", pod.name, "BackOff",
            f"Back-off restarting failed container (restart count: {status.restart_count})", "Warning",
        )
