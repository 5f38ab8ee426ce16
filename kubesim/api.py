from __future__ import annotations

import logging
import threading
from dataclasses import asdict
from typing import Any, Dict

from flask import Flask, jsonify, request

from kubesim.engine import Simulation
from kubesim.export import export_state

logger = logging.getLogger(__name__)

MAX_TICKS_PER_REQUEST = 1000


def create_app(simulation: Simulation) -> Flask:
	app = Flask(__name__)
	# Store the simulation in app config so it's accessible in all endpoints
	app.config['simulation'] = simulation
	# One tick or command at a time
	lock = threading.RLock()
	app.config['simulation_lock'] = lock

	@app.post("/command")
	def command() -> Any:
		sim: Simulation = app.config['simulation']
		body: Dict[str, Any] = request.get_json(force=True, silent=True) or {}
		line = body.get("command")
		if not line or not isinstance(line, str):
			return jsonify({"error": "missing 'command' field"}), 400
		manifest = body.get("manifest")
		with lock:
			result = sim.execute(line, manifest=manifest)
			tick = sim.state.tick
		if not result.ok:
			status = 404 if result.reason == "NotFound" else 400
			return jsonify({"error": result.output, "reason": result.reason, "tick": tick}), status
		return jsonify({"ok": True, "output": result.output, "tick": tick})

	@app.post("/tick")
	def tick() -> Any:
		sim: Simulation = app.config['simulation']
		body: Dict[str, Any] = request.get_json(force=True, silent=True) or {}
		try:
			count = int(body.get("count", 1))
		except (TypeError, ValueError):
			return jsonify({"error": "'count' must be an integer"}), 400
		if count < 1 or count > MAX_TICKS_PER_REQUEST:
			return jsonify({"error": f"'count' must be between 1 and {MAX_TICKS_PER_REQUEST}"}), 400
		with lock:
			reports = sim.run(count)
		last = reports[-1]
		return jsonify({
			"tick": last.tick,
			"events": [asdict(e) for r in reports for e in r.events],
			"goal_met": last.goal_met,
		})

	@app.get("/snapshot")
	def snapshot() -> Any:
		sim: Simulation = app.config['simulation']
		if request.args.get("format") == "manifests":
			with lock:
				return jsonify({"tick": sim.state.tick, "items": export_state(sim.state)})
		include_events = request.args.get("events", "0").lower() in ("1", "true", "yes")
		with lock:
			return jsonify(sim.state.snapshot(include_events=include_events))

	@app.get("/events")
	def events() -> Any:
		sim: Simulation = app.config['simulation']
		kind = request.args.get("kind") or None
		name = request.args.get("name") or None
		with lock:
			found = sim.state.events_for(kind, name)
			return jsonify({"tick": sim.state.tick, "events": [asdict(e) for e in found]})

	@app.get("/goal")
	def goal() -> Any:
		sim: Simulation = app.config['simulation']
		with lock:
			met = sim.goal_met()
			tick = sim.state.tick
		if met is None:
			return jsonify({"error": "no lesson loaded", "tick": tick}), 404
		return jsonify({"goal_met": met, "tick": tick})

	@app.post("/reset")
	def reset() -> Any:
		sim: Simulation = app.config['simulation']
		with lock:
			state = sim.reset()
		logger.info("simulation reset over HTTP")
		return jsonify({"tick": state.tick, "nodes": [n.name for n in state.nodes]})

	return app
