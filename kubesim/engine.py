"""Tick driver: advances simulated time one reconciliation pass at a time."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from kubesim.commands.interpreter import CommandInterpreter, CommandResult
from kubesim.config import Settings
from kubesim.controllers import Controller, ReconcileContext, default_controllers
from kubesim.lesson import Lesson, TickHook
from kubesim.state import ClusterState, Node, NodeSpec, ObjectMeta, SimEvent

logger = logging.getLogger(__name__)


def seed_nodes(state: ClusterState, count: int, capacity: int) -> ClusterState:
    """Add Ready worker nodes ``node-1`` .. ``node-<count>`` that are not there yet."""
    existing = {node.name for node in state.nodes}
    for i in range(1, count + 1):
        name = f"node-{i}"
        if name in existing:
            continue
        state.add(Node(
            metadata=ObjectMeta(name=name, labels={"kubernetes.io/hostname": name}),
            spec=NodeSpec(capacity_pods=capacity),
        ))
    return state


@dataclass
class TickReport:
    tick: int
    events: List[SimEvent] = field(default_factory=list)
    goal_met: Optional[bool] = None

    @property
    def changed(self) -> bool:
        return bool(self.events)


class Simulation:
    """Owns one cluster state and reconciles it on demand.

    Each tick runs every controller once in a fixed order, then the lesson's
    ``after_tick`` and any extra hooks, which therefore observe the fully
    reconciled state.
    """

    def __init__(
        self,
        lesson: Optional[Lesson] = None,
        state: Optional[ClusterState] = None,
        hooks: Optional[List[TickHook]] = None,
        settings: Optional[Settings] = None,
        controllers: Optional[List[Controller]] = None,
    ) -> None:
        self.settings = settings or Settings.from_env()
        self.lesson = lesson
        self.hooks: List[TickHook] = list(hooks or [])
        self.controllers = controllers if controllers is not None else default_controllers()
        self.interpreter = CommandInterpreter(
            state if state is not None else self._initial_state(),
            failure_rules=self.failure_rules,
            job_completion_ticks=self.settings.job_completion_ticks,
        )
        self.state.max_events = self.settings.max_events

    # ---- state ----

    @property
    def state(self) -> ClusterState:
        return self.interpreter.state

    @state.setter
    def state(self, value: ClusterState) -> None:
        self.interpreter.state = value

    @property
    def failure_rules(self) -> Dict[str, str]:
        if self.lesson is None:
            return {}
        return dict(self.lesson.pod_failure_rules or {})

    def _initial_state(self) -> ClusterState:
        if self.lesson is not None:
            return self.lesson.initial_state()
        return ClusterState()

    def reset(self) -> ClusterState:
        self.state = self._initial_state()
        self.state.max_events = self.settings.max_events
        logger.info(f"simulation reset{' for lesson ' + self.lesson.name if self.lesson else ''}")
        return self.state

    def add_hook(self, hook: TickHook) -> None:
        self.hooks.append(hook)

    # ---- ticking ----

    def context(self) -> ReconcileContext:
        return ReconcileContext(
            failure_rules=self.failure_rules,
            job_completion_ticks=self.settings.job_completion_ticks,
        )

    def tick(self) -> TickReport:
        state = self.state
        state.tick += 1
        ctx = self.context()

        for controller in self.controllers:
            controller.reconcile(state, ctx)
        state.recount_allocations()

        if self.lesson is not None:
            state = self._adopt(self.lesson.after_tick(state.tick, state), state)
        for hook in self.hooks:
            state = self._adopt(hook.apply(state.tick, state), state)

        events = [e for e in state.events if e.tick == state.tick]
        report = TickReport(tick=state.tick, events=events, goal_met=self.goal_met())
        if report.changed:
            logger.info(f"[tick {state.tick}] {len(events)} event(s)")
        else:
            logger.debug(f"[tick {state.tick}] no changes, cluster is at desired state")
        return report

    def run(self, ticks: int) -> List[TickReport]:
        return [self.tick() for _ in range(max(0, ticks))]

    def _adopt(self, result: Optional[ClusterState], current: ClusterState) -> ClusterState:
        if result is None or result is current:
            return current
        result.max_events = self.settings.max_events
        self.state = result
        return result

    # ---- commands and goals ----

    def execute(self, command: str, manifest: Optional[str] = None) -> CommandResult:
        return self.interpreter.execute(command, manifest=manifest)

    def goal_met(self) -> Optional[bool]:
        if self.lesson is None:
            return None
        return bool(self.lesson.goal_check(self.state))
