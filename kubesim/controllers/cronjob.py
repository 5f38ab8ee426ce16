from __future__ import annotations

import copy
import logging
import re
from typing import Optional

from kubesim.controllers.base import Controller, ReconcileContext, owner_ref
from kubesim.state import ClusterState, CronJob, Job, ObjectMeta

logger = logging.getLogger(__name__)

_EVERY_RE = re.compile(r"^(?:every-(\d+)-ticks?|@every\s+(\d+))$")


def schedule_interval(schedule: str) -> Optional[int]:
    """Interval in ticks for a schedule string, or None when it is not understood.

    Accepted forms: ``every-N-ticks``, ``@every N``, ``*/N`` (optionally
    followed by further cron fields), ``*`` and a bare ``N``. Simulated time
    has no wall clock, so only the first cron field is meaningful.
    """
    text = (schedule or "").strip()
    m = _EVERY_RE.match(text)
    if m:
        value = int(m.group(1) or m.group(2))
        return value if value > 0 else None
    first = text.split()[0] if text else ""
    if first == "*":
        return 1
    if first.startswith("*/") and first[2:].isdigit():
        value = int(first[2:])
        return value if value > 0 else None
    if first.isdigit() and int(first) > 0:
        return int(first)
    return None


class CronJobController(Controller):
    name = "cronjob"

    def reconcile(self, state: ClusterState, ctx: ReconcileContext) -> None:
        for cj in state.cron_jobs:
            if cj.metadata.deletion_timestamp is not None:
                continue
            self.sync(state, cj)

    def sync(self, state: ClusterState, cj: CronJob) -> None:
        owned = [
            j for j in state.jobs
            if j.metadata.owner_reference is not None and j.metadata.owner_reference.uid == cj.metadata.uid
        ]
        interval = schedule_interval(cj.spec.schedule)
        due = (
            interval is not None
            and not cj.spec.suspend
            and state.tick % interval == 0
            and cj.status.last_schedule_tick != state.tick
        )
        if due:
            job = Job(
                metadata=ObjectMeta(
                    name=f"{cj.name}-{state.tick}",
                    namespace=cj.metadata.namespace,
                    labels={"cronjob": cj.name},
                    owner_reference=owner_ref(cj),
                ),
                spec=copy.deepcopy(cj.spec.job_template),
            )
            state.add(job)
            owned.append(job)
            cj.status.last_schedule_tick = state.tick
            state.record_event("CronJob", cj.name, "SuccessfulCreate", f"Created job {job.name}")
            logger.debug(f"cronjob {cj.name} created {job.name}")

        finished = sorted((j for j in owned if j.finished and j.metadata.deletion_timestamp is None),
                          key=lambda j: j.metadata.creation_tick)
        excess = len(finished) - cj.spec.successful_jobs_history_limit
        for job in finished[:max(0, excess)]:
            state.mark_terminating(job)
        cj.status.active = [j.name for j in owned if not j.finished and j.metadata.deletion_timestamp is None]
