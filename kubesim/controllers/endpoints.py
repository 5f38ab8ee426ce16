from __future__ import annotations

import logging
from typing import List

from kubesim.controllers.base import Controller, ReconcileContext
from kubesim.state import ClusterState, Service, labels_match, pod_is_ready

logger = logging.getLogger(__name__)


def compute_endpoints(state: ClusterState, svc: Service) -> List[str]:
    """Names of ready, non-terminating pods whose labels satisfy the whole selector.

    A service without a selector manages no endpoints.
    """
    if not svc.spec.selector:
        return []
    return sorted(
        p.name for p in state.pods
        if p.metadata.namespace == svc.metadata.namespace
        and labels_match(svc.spec.selector, p.metadata.labels)
        and pod_is_ready(p)
    )


def sync_service(state: ClusterState, svc: Service) -> bool:
    endpoints = compute_endpoints(state, svc)
    if endpoints == svc.status.endpoints:
        return False
    logger.debug(f"service {svc.name} endpoints {svc.status.endpoints} -> {endpoints}")
    svc.status.endpoints = endpoints
    return True


class EndpointsController(Controller):
    name = "endpoints"

    def reconcile(self, state: ClusterState, ctx: ReconcileContext) -> None:
        for svc in state.services:
            sync_service(state, svc)
