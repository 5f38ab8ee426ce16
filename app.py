from __future__ import annotations

import logging
from typing import Optional

from kubesim.api import create_app
from kubesim.config import Settings
from kubesim.engine import Simulation, seed_nodes
from kubesim.lesson import ScriptedLesson
from kubesim.state import ClusterState

logger = logging.getLogger(__name__)


def seed_state(state: ClusterState, settings: Optional[Settings] = None) -> ClusterState:
    """Seed the state with worker nodes. Safe to call multiple times."""
    settings = settings or Settings.from_env()
    seed_nodes(state, settings.seed_nodes, settings.node_capacity)
    for node in state.nodes:
        node.metadata.labels.setdefault("topology.kubernetes.io/zone", "zone-a")
    return state


def build_app(settings: Optional[Settings] = None):
	"""Build the Flask app around a sandbox simulation with seeded nodes."""
	settings = settings or Settings.from_env()
	logging.basicConfig(level=getattr(logging, settings.log_level, logging.INFO))

	lesson = ScriptedLesson(
		initial_state=lambda: seed_state(ClusterState(), settings),
		name="sandbox",
	)
	simulation = Simulation(lesson=lesson, settings=settings)
	logger.info(f"Sandbox cluster ready with {len(simulation.state.nodes)} node(s)")
	return create_app(simulation)


# Build app at module level (for gunicorn)
app = build_app()


if __name__ == "__main__":
	_settings = Settings.from_env()
	app.run(host=_settings.host, port=_settings.port)
