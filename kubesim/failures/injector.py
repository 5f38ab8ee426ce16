"""Scripted fault injection applied after the controllers run."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional

from kubesim.lesson import TickHook
from kubesim.state import (
	CRASH_LOOP,
	FAILED,
	OOM_KILLED,
	RUNNING,
	ClusterState,
	Pod,
	labels_match,
)

logger = logging.getLogger(__name__)


class FaultType(Enum):
	"""Kinds of scripted faults."""
	NODE_DOWN = "node_down"
	NODE_UP = "node_up"
	POD_FAIL = "pod_fail"
	POD_OOM = "pod_oom"
	POD_CRASH = "pod_crash"
	CPU_LOAD = "cpu_load"


@dataclass
class FaultEvent:
	"""A fault to inject at a given tick.

	Pod faults pick the first running, non-terminating pod whose name equals
	or starts with ``target`` and whose labels match ``selector``.
	"""
	tick: int
	fault_type: FaultType
	target: Optional[str] = None
	selector: Dict[str, str] = field(default_factory=dict)
	cpu_percent: float = 0.0  # CPU_LOAD only
	all_matching: bool = False


class FaultPlan(TickHook):
	"""
	Applies scheduled faults once their tick is reached.

	Usable as an extra simulation hook or called from a lesson's
	``after_tick``. Each event fires once.
	"""

	def __init__(self, events: Optional[List[FaultEvent]] = None) -> None:
		self.events: List[FaultEvent] = sorted(events or [], key=lambda e: e.tick)
		self.fired: List[FaultEvent] = []

	def schedule(self, event: FaultEvent) -> None:
		self.events.append(event)
		self.events.sort(key=lambda e: e.tick)

	def apply(self, tick: int, state: ClusterState) -> ClusterState:
		due = [e for e in self.events if e.tick <= tick]
		for event in due:
			self.events.remove(event)
			if inject(state, event):
				self.fired.append(event)
			else:
				logger.warning(f"fault {event.fault_type.value} at tick {event.tick} found no target")
		return state


def _pick_pods(state: ClusterState, event: FaultEvent) -> List[Pod]:
	matches = [
		p for p in state.pods
		if p.status.phase == RUNNING
		and not p.terminating
		and (event.target is None or p.name == event.target or p.name.startswith(event.target))
		and labels_match(event.selector, p.metadata.labels)
	]
	if event.all_matching:
		return matches
	return matches[:1]


def inject(state: ClusterState, event: FaultEvent) -> bool:
	"""Apply one fault to the state. Returns False when nothing matched."""
	kind = event.fault_type
	if kind in (FaultType.NODE_DOWN, FaultType.NODE_UP):
		node = state.get_node(event.target)
		if node is None:
			return False
		up = kind == FaultType.NODE_UP
		if node.set_ready(up, state.tick, "KubeletReady" if up else "NodeStatusUnknown"):
			state.record_event(
				"Node", node.name, "NodeReady" if up else "NodeNotReady",
				f"Node {node.name} status is now: {'NodeReady' if up else 'NodeNotReady'}",
				"Normal" if up else "Warning",
			)
		logger.info(f"injected {kind.value} on {node.name}")
		return True

	pods = _pick_pods(state, event)
	for pod in pods:
		status = pod.status
		if kind == FaultType.CPU_LOAD:
			status.cpu_usage = event.cpu_percent
			continue
		status.ready = False
		if kind == FaultType.POD_FAIL:
			status.phase = FAILED
			status.reason = "Error"
			status.message = "Container exited with code 1"
			pod.append_log("[fatal] Process exited with code 1")
			state.record_event("Pod", pod.name, "Failed", "Container exited with code 1", "Warning")
		elif kind == FaultType.POD_OOM:
			status.restart_count += 1
			if pod.spec.restart_policy == "Never":
				status.phase = FAILED
			else:
				status.phase = OOM_KILLED
				status.crash_tick = state.tick
			status.reason = OOM_KILLED
			status.message = "Container exceeded memory limit"
			pod.append_log("[fatal] Container killed: OOMKilled, memory limit exceeded")
			state.record_event("Pod", pod.name, "OOMKilled", "OOMKilled - container exceeded memory limit", "Warning")
		elif kind == FaultType.POD_CRASH:
			status.restart_count += 1
			status.phase = CRASH_LOOP
			status.reason = CRASH_LOOP
			status.message = "Back-off restarting failed container"
			status.crash_tick = state.tick
			pod.append_log("[fatal] Process exited with code 1")
			state.record_event("Pod", pod.name, "BackOff", "Back-off restarting failed container", "Warning")
		logger.info(f"injected {kind.value} into pod {pod.name}")
	return bool(pods)
