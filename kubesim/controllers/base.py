from __future__ import annotations

import copy
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from kubesim.state import (
    CRASH_LOOP,
    FAILED,
    IMAGE_PULL_ERROR,
    OOM_KILLED,
    PENDING,
    ClusterState,
    ObjectMeta,
    OwnerReference,
    Pod,
    PodStatus,
    PodTemplate,
)

logger = logging.getLogger(__name__)


@dataclass
class ReconcileContext:
    """Per-tick inputs shared by every controller."""
    failure_rules: Dict[str, str] = field(default_factory=dict)
    job_completion_ticks: int = 2


class Controller(ABC):
    name = "controller"

    @abstractmethod
    def reconcile(self, state: ClusterState, ctx: ReconcileContext) -> None:
        raise NotImplementedError


def owner_ref(owner: Any) -> OwnerReference:
    return OwnerReference(kind=owner.kind, name=owner.metadata.name, uid=owner.metadata.uid)


def apply_failure_rule(pod: Pod, failure_rules: Optional[Dict[str, str]]) -> Optional[str]:
    """Preset the failure a rule assigns to the pod's image, if any."""
    mode = (failure_rules or {}).get(pod.spec.image)
    if not mode:
        return None
    pod.spec.failure_mode = mode
    status = pod.status
    if mode == IMAGE_PULL_ERROR:
        status.phase = PENDING
        status.reason = IMAGE_PULL_ERROR
        status.message = f'Failed to pull image "{pod.spec.image}": image not found'
    elif pod.spec.restart_policy == "Never":
        status.phase = FAILED
        status.reason = mode
        status.message = "Container exited with a non-zero exit code"
    elif mode == OOM_KILLED:
        status.phase = OOM_KILLED
        status.reason = OOM_KILLED
        status.message = "Container exceeded memory limit"
        status.restart_count = 1
    else:
        status.phase = CRASH_LOOP
        status.reason = CRASH_LOOP
        status.message = "Back-off restarting failed container"
        status.restart_count = 1
    status.ready = False
    return mode


def build_pod(
    state: ClusterState,
    template: PodTemplate,
    name: str,
    owner: Any = None,
    namespace: str = "default",
    failure_rules: Optional[Dict[str, str]] = None,
) -> Pod:
    """Instantiate a pod from a template, add it to state and apply any failure rule."""
    pod = Pod(
        metadata=ObjectMeta(
            name=name,
            namespace=namespace,
            labels=dict(template.labels),
            annotations=dict(template.annotations),
            owner_reference=owner_ref(owner) if owner is not None else None,
        ),
        spec=copy.deepcopy(template.spec),
        status=PodStatus(),
    )
    state.add(pod)
    mode = apply_failure_rule(pod, failure_rules)
    if mode is not None:
        pod.append_log(f"[error] {pod.status.message}")
        state.record_event("Pod", name, "Failed", f"Error: {mode} - image \"{pod.spec.image}\"", "Warning")
        logger.debug(f"pod {name} created with injected failure {mode}")
    return pod
