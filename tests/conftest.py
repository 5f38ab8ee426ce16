import sys
from pathlib import Path

sys.path.append(str(Path(__file__).resolve().parents[1]))

import pytest

from kubesim.config import Settings
from kubesim.engine import Simulation, seed_nodes
from kubesim.lesson import ScriptedLesson
from kubesim.state import ClusterState


def make_sim(nodes=3, capacity=4, failure_rules=None, goal=None, hooks=None):
    lesson = ScriptedLesson(
        initial_state=lambda: seed_nodes(ClusterState(), nodes, capacity),
        goal_check=goal,
        pod_failure_rules=failure_rules,
        name="test",
    )
    return Simulation(lesson=lesson, settings=Settings(), hooks=hooks)


def run_ok(sim, *commands, manifest=None):
    outputs = []
    for line in commands:
        result = sim.execute(line, manifest=manifest)
        assert result.ok, f"{line!r} failed: {result.output}"
        outputs.append(result.output)
    return outputs[-1] if len(outputs) == 1 else outputs


@pytest.fixture
def sim():
    return make_sim()
