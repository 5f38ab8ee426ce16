"""Reconciliation controllers, run once per tick in a fixed order."""

from typing import List

from kubesim.controllers.base import Controller, ReconcileContext, build_pod
from kubesim.controllers.cronjob import CronJobController
from kubesim.controllers.daemonset import DaemonSetController
from kubesim.controllers.deployment import DeploymentController
from kubesim.controllers.endpoints import EndpointsController
from kubesim.controllers.eviction import EvictionController
from kubesim.controllers.garbage import GarbageCollector
from kubesim.controllers.hpa import HorizontalPodAutoscalerController
from kubesim.controllers.job import JobController
from kubesim.controllers.kubelet import Kubelet
from kubesim.controllers.nodelifecycle import NodeLifecycleController
from kubesim.controllers.replicaset import ReplicaSetController
from kubesim.controllers.scheduler import Scheduler
from kubesim.controllers.statefulset import StatefulSetController
from kubesim.controllers.storage import StorageController


def default_controllers() -> List[Controller]:
    return [
        GarbageCollector(),
        NodeLifecycleController(),
        HorizontalPodAutoscalerController(),
        DeploymentController(),
        ReplicaSetController(),
        StatefulSetController(),
        DaemonSetController(),
        JobController(),
        CronJobController(),
        Scheduler(),
        Kubelet(),
        EndpointsController(),
        StorageController(),
        EvictionController(),
    ]


__all__ = [
    "Controller",
    "ReconcileContext",
    "build_pod",
    "default_controllers",
]
