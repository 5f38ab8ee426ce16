from __future__ import annotations

import logging
import re
from typing import Optional

from kubesim.controllers.base import Controller, ReconcileContext
from kubesim.state import (
    ClusterState,
    ObjectMeta,
    PersistentVolume,
    PersistentVolumeClaim,
    PersistentVolumeSpec,
    StorageClass,
)

logger = logging.getLogger(__name__)

DEFAULT_CLASS_ANNOTATION = "storageclass.kubernetes.io/is-default-class"

_UNITS = {"": 1, "Ki": 1024, "Mi": 1024 ** 2, "Gi": 1024 ** 3, "Ti": 1024 ** 4,
          "K": 1000, "M": 1000 ** 2, "G": 1000 ** 3, "T": 1000 ** 4}
_QUANTITY_RE = re.compile(r"^(\d+(?:\.\d+)?)([KMGT]i?)?$")


def parse_quantity(value: str) -> int:
    m = _QUANTITY_RE.match((value or "").strip())
    if not m:
        raise ValueError(f"invalid quantity {value!r}")
    return int(float(m.group(1)) * _UNITS[m.group(2) or ""])


def claim_class(state: ClusterState, pvc: PersistentVolumeClaim) -> Optional[str]:
    if pvc.spec.storage_class_name:
        return pvc.spec.storage_class_name
    for sc in state.storage_classes:
        if sc.metadata.annotations.get(DEFAULT_CLASS_ANNOTATION) == "true":
            return sc.name
    return None


class StorageController(Controller):
    """Binds claims to volumes, provisions dynamically and reclaims released volumes."""

    name = "storage"

    def reconcile(self, state: ClusterState, ctx: ReconcileContext) -> None:
        for pvc in state.persistent_volume_claims:
            if pvc.status.phase != "Bound" and pvc.metadata.deletion_timestamp is None:
                self._bind(state, pvc)
        self._reclaim(state)

    def _bind(self, state: ClusterState, pvc: PersistentVolumeClaim) -> None:
        class_name = claim_class(state, pvc)
        wanted = parse_quantity(pvc.spec.request)
        for pv in state.persistent_volumes:
            if pv.status.phase != "Available" or pv.spec.claim_ref:
                continue
            if pv.spec.storage_class_name != class_name:
                continue
            if parse_quantity(pv.spec.capacity) < wanted:
                continue
            self._bind_pair(state, pvc, pv)
            return

        sc: Optional[StorageClass] = state.find("StorageClass", class_name) if class_name else None
        if sc is not None:
            pv = PersistentVolume(
                metadata=ObjectMeta(name=f"pvc-{pvc.metadata.uid}", annotations={"pv.kubernetes.io/provisioned-by": sc.provisioner}),
                spec=PersistentVolumeSpec(
                    capacity=pvc.spec.request,
                    storage_class_name=sc.name,
                    reclaim_policy=sc.reclaim_policy,
                ),
            )
            state.add(pv)
            state.record_event("PersistentVolumeClaim", pvc.name, "ProvisioningSucceeded",
                               f"Successfully provisioned volume {pv.name} using {sc.provisioner}")
            self._bind_pair(state, pvc, pv)
            return

        if class_name:
            message = f'storageclass.storage.k8s.io "{class_name}" not found'
            reason = "ProvisioningFailed"
        else:
            message = "no persistent volumes available for this claim and no storage class is set"
            reason = "FailedBinding"
        if pvc.status.message != message:
            pvc.status.message = message
            state.record_event("PersistentVolumeClaim", pvc.name, reason, message, "Warning")

    @staticmethod
    def _bind_pair(state: ClusterState, pvc: PersistentVolumeClaim, pv: PersistentVolume) -> None:
        pv.spec.claim_ref = f"{pvc.metadata.namespace}/{pvc.name}"
        pv.status.phase = "Bound"
        pvc.spec.volume_name = pv.name
        if not pvc.spec.storage_class_name:
            pvc.spec.storage_class_name = pv.spec.storage_class_name
        pvc.status.phase = "Bound"
        pvc.status.message = None
        logger.debug(f"bound claim {pvc.name} to volume {pv.name}")

    @staticmethod
    def _reclaim(state: ClusterState) -> None:
        claims = {f"{c.metadata.namespace}/{c.name}" for c in state.persistent_volume_claims}
        for pv in list(state.persistent_volumes):
            if pv.status.phase == "Bound" and pv.spec.claim_ref not in claims:
                pv.status.phase = "Released"
                state.record_event("PersistentVolume", pv.name, "VolumeReleased",
                                   f"Claim {pv.spec.claim_ref} was deleted")
            if pv.status.phase == "Released" and pv.spec.reclaim_policy == "Delete":
                state.remove(pv)
                state.record_event("PersistentVolume", pv.name, "VolumeDeleted",
                                   "Volume deleted by reclaim policy Delete")
                logger.debug(f"deleted released volume {pv.name}")
