"""Interactive shell: ``python -m kubesim``."""

from __future__ import annotations

import argparse
import logging
import sys
from typing import Iterable, Optional

from kubesim.config import Settings
from kubesim.engine import Simulation, seed_nodes
from kubesim.lesson import ScriptedLesson
from kubesim.state import ClusterState

PROMPT = "kubesim> "
HELP = """\
kubectl-style commands are applied to the cluster, e.g.
  create deployment web --image=nginx --replicas=3
  get pods -o wide
Shell commands:
  tick [N] | reconcile [N]   advance simulated time
  apply -f -                 read a manifest until a line with a single '.'
  reset                      start over from the seeded cluster
  help, exit"""


def _read_manifest(lines: Iterable[str]) -> str:
	body = []
	for line in lines:
		if line.rstrip("\n") == ".":
			break
		body.append(line)
	return "".join(body)


def run_line(sim: Simulation, line: str, stream=None) -> Optional[str]:
	"""Handle one shell line; returns the text to print, or None to exit."""
	text = line.strip()
	if not text or text.startswith("#"):
		return ""
	words = text.split()
	head = words[0].lower()
	if head in ("exit", "quit"):
		return None
	if head == "help":
		return HELP
	if head == "reset":
		sim.reset()
		return f"cluster reset ({len(sim.state.nodes)} nodes)"
	if head in ("tick", "reconcile"):
		try:
			count = int(words[1]) if len(words) > 1 else 1
		except ValueError:
			return f"error: invalid tick count {words[1]!r}"
		reports = sim.run(count)
		out = []
		for report in reports:
			for e in report.events:
				out.append(f"[tick {e.tick}] {e.type} {e.reason} {e.object_kind}/{e.object_name}: {e.message}")
		if reports and reports[-1].goal_met:
			out.append("goal met")
		out.append(f"tick {sim.state.tick}")
		return "\n".join(out)

	manifest = None
	if ("-f" in words or "--filename" in words) and words[-1] == "-" and stream is not None:
		manifest = _read_manifest(stream)
	result = sim.execute(text, manifest=manifest)
	return result.output


def main(argv=None) -> int:
	parser = argparse.ArgumentParser(prog="kubesim", description="Simulated Kubernetes control plane")
	parser.add_argument("--nodes", type=int, default=None, help="number of seeded nodes")
	parser.add_argument("--capacity", type=int, default=None, help="pods per seeded node")
	parser.add_argument("--script", default=None, help="file of commands to replay, one per line")
	parser.add_argument("--log-level", default=None)
	args = parser.parse_args(argv)

	settings = Settings.from_env()
	if args.nodes is not None:
		settings.seed_nodes = args.nodes
	if args.capacity is not None:
		settings.node_capacity = args.capacity
	logging.basicConfig(level=getattr(logging, (args.log_level or settings.log_level).upper(), logging.WARNING))

	lesson = ScriptedLesson(
		initial_state=lambda: seed_nodes(ClusterState(), settings.seed_nodes, settings.node_capacity),
		name="shell",
	)
	sim = Simulation(lesson=lesson, settings=settings)

	if args.script:
		with open(args.script, "r", encoding="utf-8") as fh:
			lines = iter(fh.readlines())
		for line in lines:
			if line.strip() and not line.strip().startswith("#"):
				print(PROMPT + line.strip())
			out = run_line(sim, line, stream=lines)
			if out is None:
				break
			if out:
				print(out)
		return 0

	interactive = sys.stdin.isatty()
	while True:
		if interactive:
			try:
				line = input(PROMPT)
			except EOFError:
				break
		else:
			line = sys.stdin.readline()
			if not line:
				break
		out = run_line(sim, line, stream=sys.stdin)
		if out is None:
			break
		if out:
			print(out)
	return 0


if __name__ == "__main__":
	sys.exit(main())
