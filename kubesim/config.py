"""Runtime settings read from KUBESIM_* environment variables."""

from __future__ import annotations

import os
from dataclasses import dataclass


def _get_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    try:
        return int(value)
    except ValueError as exc:
        raise ValueError(f"Invalid integer for {name}: {value}") from exc


@dataclass
class Settings:
    max_events: int = 512
    seed_nodes: int = 3
    node_capacity: int = 4
    job_completion_ticks: int = 2
    log_level: str = "INFO"
    host: str = "0.0.0.0"
    port: int = 8080

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            max_events=max(32, _get_int("KUBESIM_MAX_EVENTS", 512)),
            seed_nodes=_get_int("KUBESIM_SEED_NODES", 3),
            node_capacity=_get_int("KUBESIM_NODE_CAPACITY", 4),
            job_completion_ticks=max(1, _get_int("KUBESIM_JOB_COMPLETION_TICKS", 2)),
            log_level=os.getenv("KUBESIM_LOG_LEVEL", "INFO").upper(),
            host=os.getenv("KUBESIM_HOST", "0.0.0.0"),
            port=_get_int("KUBESIM_PORT", 8080),
        )
