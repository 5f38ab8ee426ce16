from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Callable, Dict, Optional, Union

from kubesim.state import ClusterState


class TickHook(ABC):
	"""Runs after the built-in controllers on every tick."""

	@abstractmethod
	def apply(self, tick: int, state: ClusterState) -> Optional[ClusterState]:
		raise NotImplementedError


class Lesson(ABC):
	"""Drives a simulation: seeds the cluster, scripts faults and judges the result.

	``pod_failure_rules`` maps a container image to the failure every pod
	created with that image starts in (ImagePullError, CrashLoopBackOff or
	OOMKilled).
	"""

	name: str = "lesson"
	pod_failure_rules: Dict[str, str] = {}

	@abstractmethod
	def initial_state(self) -> ClusterState:
		raise NotImplementedError

	def after_tick(self, tick: int, state: ClusterState) -> Optional[ClusterState]:
		return state

	@abstractmethod
	def goal_check(self, state: ClusterState) -> bool:
		raise NotImplementedError


class ScriptedLesson(Lesson):
	"""Lesson assembled from plain callables."""

	def __init__(
		self,
		initial_state: Union[ClusterState, Callable[[], ClusterState]],
		goal_check: Optional[Callable[[ClusterState], bool]] = None,
		after_tick: Optional[Callable[[int, ClusterState], Optional[ClusterState]]] = None,
		pod_failure_rules: Optional[Dict[str, str]] = None,
		name: str = "scripted",
	) -> None:
		self.name = name
		self._initial = initial_state
		self._goal = goal_check
		self._after_tick = after_tick
		self.pod_failure_rules = dict(pod_failure_rules or {})

	def initial_state(self) -> ClusterState:
		if callable(self._initial):
			return self._initial()
		# hand out a copy so a reset starts from the same snapshot
		return self._initial.clone()

	def after_tick(self, tick: int, state: ClusterState) -> Optional[ClusterState]:
		if self._after_tick is None:
			return state
		return self._after_tick(tick, state)

	def goal_check(self, state: ClusterState) -> bool:
		if self._goal is None:
			return False
		return bool(self._goal(state))
