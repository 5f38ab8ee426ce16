"""Replay a command session against a running simulator API.

Each line of the session file is one kubectl-style command; ``tick N`` lines
advance the simulation and ``# ...`` lines are comments. A command followed
by ``<<<`` reads a manifest body until a line ``>>>``.
"""

from __future__ import annotations

import json
from typing import Any, Dict, Iterator, List, Optional, Tuple

import requests


def parse_session(path: str) -> List[Tuple[str, Optional[str]]]:
	with open(path, "r", encoding="utf-8") as f:
		lines: Iterator[str] = iter(f.read().splitlines())
	steps: List[Tuple[str, Optional[str]]] = []
	for line in lines:
		text = line.strip()
		if not text or text.startswith("#"):
			continue
		manifest = None
		if text.endswith("<<<"):
			text = text[:-3].strip()
			body = []
			for inner in lines:
				if inner.strip() == ">>>":
					break
				body.append(inner)
			manifest = "\n".join(body) + "\n"
		steps.append((text, manifest))
	return steps


def send(sim_url: str, command: str, manifest: Optional[str] = None) -> Dict[str, Any]:
	words = command.split()
	if words[0] in ("tick", "reconcile"):
		count = int(words[1]) if len(words) > 1 else 1
		resp = requests.post(f"{sim_url}/tick", json={"count": count}, timeout=30)
		resp.raise_for_status()
		return resp.json()
	resp = requests.post(f"{sim_url}/command", json={"command": command, "manifest": manifest}, timeout=30)
	if resp.status_code not in (200, 400, 404):
		resp.raise_for_status()
	return resp.json()


def main():
	import argparse

	parser = argparse.ArgumentParser()
	parser.add_argument("--session", required=True)
	parser.add_argument("--sim-url", default="http://localhost:8080")
	parser.add_argument("--reset", action="store_true", help="reset the simulation first")
	parser.add_argument("--check-goal", action="store_true")
	args = parser.parse_args()

	if args.reset:
		requests.post(f"{args.sim_url}/reset", timeout=30).raise_for_status()
	failures = 0
	for command, manifest in parse_session(args.session):
		out = send(args.sim_url, command, manifest)
		if "error" in out:
			failures += 1
		print(json.dumps({"command": command, "result": out}))
	if args.check_goal:
		resp = requests.get(f"{args.sim_url}/goal", timeout=30)
		print(json.dumps(resp.json()))
	raise SystemExit(1 if failures else 0)


if __name__ == "__main__":
	main()
