from __future__ import annotations

import copy
import logging

from kubesim.controllers.base import Controller, ReconcileContext, build_pod
from kubesim.state import (
    FAILED,
    OOM_KILLED,
    SUCCEEDED,
    ClusterState,
    Job,
    short_suffix,
)

logger = logging.getLogger(__name__)

FAILED_PHASES = (FAILED, OOM_KILLED)


class JobController(Controller):
    """Runs pods to completion, honoring parallelism and the backoff limit."""

    name = "job"

    def reconcile(self, state: ClusterState, ctx: ReconcileContext) -> None:
        for job in state.jobs:
            if job.metadata.deletion_timestamp is not None:
                continue
            self.sync(state, job, ctx)

    def sync(self, state: ClusterState, job: Job, ctx: ReconcileContext) -> None:
        status = job.status
        if status.start_tick is None:
            status.start_tick = state.tick

        owned = state.owned_pods(job)
        # Counted by uid so a pod is only ever tallied once.
        for pod in owned:
            uid = pod.metadata.uid
            if pod.status.phase == SUCCEEDED and uid not in status.succeeded_pods:
                status.succeeded_pods.append(uid)
            elif pod.status.phase in FAILED_PHASES and uid not in status.failed_pods:
                status.failed_pods.append(uid)
                state.record_event("Job", job.name, "PodFailed", f"Pod {pod.name} failed ({pod.status.reason or 'Error'})", "Warning")
        status.succeeded = len(status.succeeded_pods)
        status.failed = len(status.failed_pods)

        active = [
            p for p in owned
            if not p.terminating and p.status.phase not in FAILED_PHASES + (SUCCEEDED,)
        ]
        if job.finished:
            status.active = 0
            return

        if status.failed >= max(1, job.spec.backoff_limit):
            self._finish(state, job, active, "Failed")
            state.record_event("Job", job.name, "BackoffLimitExceeded",
                               "Job has reached the specified backoff limit", "Warning")
            return
        if status.succeeded >= job.spec.completions:
            self._finish(state, job, active, "Complete")
            state.record_event("Job", job.name, "Completed", "Job completed")
            return

        wanted = min(job.spec.parallelism, job.spec.completions - status.succeeded)
        for _ in range(wanted - len(active)):
            template = copy.deepcopy(job.spec.template)
            template.labels.setdefault("job-name", job.name)
            template.spec.restart_policy = "Never"
            if template.spec.completion_ticks is None:
                template.spec.completion_ticks = job.spec.completion_ticks or ctx.job_completion_ticks
            pod = build_pod(state, template, f"{job.name}-{short_suffix()}", owner=job,
                            namespace=job.metadata.namespace, failure_rules=ctx.failure_rules)
            active.append(pod)
            state.record_event("Job", job.name, "SuccessfulCreate", f"Created pod: {pod.name}")
            logger.debug(f"job {job.name} created {pod.name}")
        status.active = len(active)

    @staticmethod
    def _finish(state: ClusterState, job: Job, active: list, phase: str) -> None:
        for pod in active:
            state.mark_terminating(pod)
        job.status.phase = phase
        job.status.active = 0
        job.status.completion_tick = state.tick
        logger.info(f"job {job.name} {phase.lower()} after {job.status.succeeded} success(es), {job.status.failed} failure(s)")
