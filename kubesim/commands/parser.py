"""Tokenizer for kubectl-shaped command lines."""

from __future__ import annotations

import shlex
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from kubesim.errors import CommandError

# lowercase kind, plural or short name -> kind
RESOURCE_ALIASES: Dict[str, str] = {}
RESOURCE_PLURALS: Dict[str, str] = {
    "Pod": "pods",
    "Node": "nodes",
    "Deployment": "deployments",
    "ReplicaSet": "replicasets",
    "Service": "services",
    "Namespace": "namespaces",
    "ConfigMap": "configmaps",
    "Secret": "secrets",
    "DaemonSet": "daemonsets",
    "StatefulSet": "statefulsets",
    "Job": "jobs",
    "CronJob": "cronjobs",
    "PodDisruptionBudget": "poddisruptionbudgets",
    "StorageClass": "storageclasses",
    "PersistentVolume": "persistentvolumes",
    "PersistentVolumeClaim": "persistentvolumeclaims",
    "HorizontalPodAutoscaler": "horizontalpodautoscalers",
    "Event": "events",
}
_SHORT_NAMES = {
    "Pod": ["po"],
    "Node": ["no"],
    "Deployment": ["deploy"],
    "ReplicaSet": ["rs"],
    "Service": ["svc"],
    "Namespace": ["ns"],
    "ConfigMap": ["cm"],
    "DaemonSet": ["ds"],
    "StatefulSet": ["sts"],
    "CronJob": ["cj"],
    "PodDisruptionBudget": ["pdb"],
    "StorageClass": ["sc"],
    "PersistentVolume": ["pv"],
    "PersistentVolumeClaim": ["pvc"],
    "HorizontalPodAutoscaler": ["hpa"],
    "Event": ["ev"],
}
for _kind, _plural in RESOURCE_PLURALS.items():
    RESOURCE_ALIASES[_kind.lower()] = _kind
    RESOURCE_ALIASES[_plural] = _kind
    for _short in _SHORT_NAMES.get(_kind, []):
        RESOURCE_ALIASES[_short] = _kind

# flags that never take a value
BOOLEAN_FLAGS = {
    "overwrite", "all", "all-namespaces", "A", "ignore-daemonsets", "delete-emptydir-data",
    "force", "watch", "w", "suspend", "show-labels", "wide", "default",
}
SHORT_FLAGS = {"n": "namespace", "o": "output", "l": "selector", "f": "filename", "p": "patch", "c": "container"}


def resolve_kind(token: str) -> Optional[str]:
    return RESOURCE_ALIASES.get(token.lower().split(".", 1)[0])


@dataclass
class ParsedCommand:
    verb: str
    args: List[str] = field(default_factory=list)
    flags: Dict[str, List[str]] = field(default_factory=dict)
    raw: str = ""

    def flag(self, name: str, default: Optional[str] = None) -> Optional[str]:
        values = self.flags.get(name)
        return values[-1] if values else default

    def flag_list(self, name: str) -> List[str]:
        return list(self.flags.get(name, []))

    def has(self, name: str) -> bool:
        return name in self.flags

    def int_flag(self, name: str, default: Optional[int] = None) -> Optional[int]:
        value = self.flag(name)
        if value is None:
            return default
        try:
            return int(value)
        except ValueError:
            raise CommandError(f'invalid argument "{value}" for "--{name}" flag: must be an integer') from None

    @property
    def namespace(self) -> str:
        return self.flag("namespace", "default") or "default"


def parse_command(line: str) -> ParsedCommand:
    """Split a command line into verb, positional args and flags.

    A leading ``kubectl`` is dropped, ``set-image`` style verbs are accepted
    as aliases of their two-word form, and ``--key value`` is read as
    ``--key=value`` unless the flag is boolean.
    """
    try:
        tokens = shlex.split(line.strip())
    except ValueError as exc:
        raise CommandError(f"cannot parse command: {exc}") from None
    if tokens and tokens[0] in ("kubectl", "k"):
        tokens = tokens[1:]
    if not tokens:
        raise CommandError("empty command")

    verb = tokens[0].lower()
    rest = tokens[1:]
    if "-" in verb and verb.split("-", 1)[0] in ("set", "rollout", "get", "create"):
        head, tail = verb.split("-", 1)
        verb, rest = head, [tail] + rest

    parsed = ParsedCommand(verb=verb, raw=line)
    i = 0
    while i < len(rest):
        token = rest[i]
        if token == "--":
            parsed.args.extend(rest[i + 1:])
            break
        if token.startswith("--"):
            name, sep, value = token[2:].partition("=")
            if not sep:
                if name in BOOLEAN_FLAGS or i + 1 >= len(rest) or (rest[i + 1].startswith("-") and rest[i + 1] != "-"):
                    value = "true"
                else:
                    i += 1
                    value = rest[i]
            parsed.flags.setdefault(name, []).append(value)
        elif token.startswith("-") and len(token) > 1 and token != "-":
            name = token[1:]
            value = ""
            if "=" in name:
                name, value = name.split("=", 1)
            elif name in BOOLEAN_FLAGS:
                value = "true"
            elif len(name) > 1 and name[0] in SHORT_FLAGS:
                name, value = name[0], name[1:]
            elif i + 1 < len(rest):
                i += 1
                value = rest[i]
            else:
                raise CommandError(f"flag needs an argument: -{name}")
            if name == "A":
                name = "all-namespaces"
            parsed.flags.setdefault(SHORT_FLAGS.get(name, name), []).append(value)
        else:
            parsed.args.append(token)
        i += 1
    return parsed


def split_resource(args: List[str]) -> tuple:
    """Return (kind, name, remaining args) for ``type name`` or ``type/name`` forms."""
    if not args:
        raise CommandError("you must specify the type of resource")
    first = args[0]
    if "/" in first:
        type_part, name = first.split("/", 1)
        remaining = args[1:]
    else:
        type_part = first
        name = args[1] if len(args) > 1 else None
        remaining = args[2:]
    kind = resolve_kind(type_part)
    if kind is None:
        raise CommandError(f'the server doesn\'t have a resource type "{type_part}"')
    return kind, name, remaining


def parse_key_values(items: List[str], sep: str = ",") -> Dict[str, str]:
    """``a=1,b=2`` (or a list of ``k=v`` items) into a dict."""
    out: Dict[str, str] = {}
    for item in items:
        for part in item.split(sep):
            part = part.strip()
            if not part:
                continue
            key, eq, value = part.partition("=")
            if not eq or not key:
                raise CommandError(f'invalid key=value pair "{part}"')
            out[key.strip()] = value.strip()
    return out
