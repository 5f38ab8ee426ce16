"""Applies kubectl-shaped commands to a ClusterState."""

from __future__ import annotations

import copy
import json
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from kubesim.commands.manifests import load_objects, object_from_manifest
from kubesim.commands.parser import (
    RESOURCE_PLURALS,
    ParsedCommand,
    parse_command,
    parse_key_values,
    resolve_kind,
    split_resource,
)
from kubesim.commands.views import describe, render_events, render_table
from kubesim.controllers.base import apply_failure_rule
from kubesim.controllers.cronjob import schedule_interval
from kubesim.controllers.deployment import owned_replica_sets
from kubesim.controllers.eviction import is_daemon_pod
from kubesim.controllers.storage import DEFAULT_CLASS_ANNOTATION, parse_quantity
from kubesim.errors import AlreadyExistsError, CommandError, NotFoundError
from kubesim.export import API_VERSIONS, to_manifest, to_yaml
from kubesim.state import (
    CLUSTER_SCOPED,
    RESTARTED_AT_ANNOTATION,
    TAINT_EFFECTS,
    TEMPLATE_HASH_LABEL,
    ClusterState,
    ConfigMap,
    CronJob,
    CronJobSpec,
    DaemonSet,
    DaemonSetSpec,
    Deployment,
    DeploymentSpec,
    HorizontalPodAutoscaler,
    HorizontalPodAutoscalerSpec,
    Job,
    JobSpec,
    Namespace,
    ObjectMeta,
    PersistentVolumeClaim,
    PersistentVolumeClaimSpec,
    Pod,
    PodDisruptionBudget,
    PodDisruptionBudgetSpec,
    PodSpec,
    PodTemplate,
    Secret,
    Service,
    ServiceSpec,
    StorageClass,
    Taint,
    get_condition,
    labels_match,
    pod_is_active,
    template_hash,
)

logger = logging.getLogger(__name__)

OWNER_KINDS = {"Deployment", "ReplicaSet", "StatefulSet", "DaemonSet", "Job", "CronJob"}
SCALABLE_KINDS = ("Deployment", "ReplicaSet", "StatefulSet")
TEMPLATED_KINDS = ("Deployment", "ReplicaSet", "StatefulSet", "DaemonSet")
PROTECTED_NAMESPACES = ("default", "kube-system")
GET_ALL_KINDS = ("Pod", "Service", "Deployment", "ReplicaSet", "StatefulSet", "DaemonSet", "Job", "CronJob")


@dataclass
class CommandResult:
    ok: bool
    output: str = ""
    reason: Optional[str] = None  # NotFound, AlreadyExists, BadRequest on failure


def resource_ref(kind: str, name: str) -> str:
    """``deployment.apps/web`` style reference used in command output."""
    api_version = API_VERSIONS.get(kind, "v1")
    group = api_version.split("/", 1)[0] if "/" in api_version else ""
    return f"{kind.lower()}{'.' + group if group else ''}/{name}"


def resource_name(kind: str) -> str:
    api_version = API_VERSIONS.get(kind, "v1")
    group = api_version.split("/", 1)[0] if "/" in api_version else ""
    return f"{RESOURCE_PLURALS[kind]}{'.' + group if group else ''}"


def merge_patch(target: Any, patch: Any) -> Any:
    """JSON merge patch: mappings merge recursively, ``null`` deletes a key."""
    if not isinstance(patch, dict):
        return patch
    result = dict(target) if isinstance(target, dict) else {}
    for key, value in patch.items():
        if value is None:
            result.pop(key, None)
        else:
            result[key] = merge_patch(result.get(key), value)
    return result


def parse_taint(text: str) -> tuple:
    """``key=value:Effect`` (``-`` suffix removes) into (key, value, effect, remove)."""
    remove = text.endswith("-")
    if remove:
        text = text[:-1]
    if ":" in text:
        key_value, effect = text.rsplit(":", 1)
    else:
        key_value, effect = text, ""
    key, _, value = key_value.partition("=")
    if not key:
        raise CommandError(f'invalid taint spec "{text}"')
    if effect and effect not in TAINT_EFFECTS:
        raise CommandError(f'invalid taint effect "{effect}", must be one of {", ".join(TAINT_EFFECTS)}')
    if not effect and not remove:
        raise CommandError(f'taint "{text}" needs an effect')
    return key, value, effect, remove


class CommandInterpreter:
    """
    Parses and applies one command at a time.

    Handlers raise CommandError subclasses before touching state, so a
    rejected command leaves the cluster as it was apart from the Warning
    event describing the failure.
    """

    def __init__(
        self,
        state: ClusterState,
        failure_rules: Optional[Dict[str, str]] = None,
        job_completion_ticks: int = 2,
    ) -> None:
        self.state = state
        self.failure_rules = dict(failure_rules or {})
        self.job_completion_ticks = job_completion_ticks
        self._used: List[str] = []
        self._handlers: Dict[str, Callable[[ParsedCommand, Optional[str]], str]] = {
            "get": self._get,
            "describe": self._describe,
            "create": self._create,
            "run": self._run,
            "expose": self._expose,
            "delete": self._delete,
            "scale": self._scale,
            "set": self._set,
            "rollout": self._rollout,
            "patch": self._patch,
            "label": self._label,
            "annotate": self._annotate,
            "taint": self._taint,
            "cordon": self._cordon,
            "uncordon": self._uncordon,
            "drain": self._drain,
            "autoscale": self._autoscale,
            "apply": self._apply,
            "logs": self._logs,
        }

    def execute(self, line: str, manifest: Optional[str] = None) -> CommandResult:
        self._used = []
        verb = ""
        try:
            cmd = parse_command(line)
            verb = cmd.verb
            handler = self._handlers.get(verb)
            if handler is None:
                raise CommandError(f'unknown command "{verb}" for "kubectl"')
            output = handler(cmd, manifest)
        except CommandError as err:
            logger.info(f"rejected command {line!r}: {err}")
            self.state.record_event("Command", verb or "kubectl", err.reason, str(err), "Warning")
            if err.reason == "BadRequest":
                return CommandResult(False, f"error: {err}", err.reason)
            return CommandResult(False, f"Error from server ({err.reason}): {err}", err.reason)
        self.state.record_command(verb, *self._used)
        return CommandResult(True, output)

    # ---- helpers ----

    def _note(self, key: str) -> None:
        self._used.append(key)

    def _lookup(self, kind: str, name: Optional[str], namespace: str) -> Any:
        if kind == "Event":
            raise CommandError("events are read-only, use get events")
        if not name:
            raise CommandError(f"resource name may not be empty for {RESOURCE_PLURALS[kind]}")
        obj = self.state.find(kind, name, namespace)
        if obj is None:
            raise NotFoundError(resource_name(kind), name)
        return obj

    def _require_namespace(self, kind: str, namespace: str) -> None:
        if kind in CLUSTER_SCOPED:
            return
        if self.state.find("Namespace", namespace) is None:
            raise NotFoundError("namespaces", namespace)

    def _select(self, kind: str, cmd: ParsedCommand) -> List[Any]:
        if kind == "Event":
            raise CommandError("events are read-only, use get events")
        selector = parse_key_values(cmd.flag_list("selector"))
        all_namespaces = cmd.has("all-namespaces")
        return [
            obj for obj in self.state.objects(kind)
            if (kind in CLUSTER_SCOPED or all_namespaces or obj.metadata.namespace == cmd.namespace)
            and labels_match(selector, obj.metadata.labels)
        ]

    def _targets(self, cmd: ParsedCommand, args: List[str]) -> tuple:
        """(kind, objects, remaining args) for commands taking names, -l or --all."""
        kind, name, rest = split_resource(args)
        names: List[str] = []
        if name is not None and "/" not in args[0]:
            # ``label pods web-1 web-2 tier=x``: leading positional names
            names = [a for a in [name] + rest if "=" not in a and not a.endswith("-") and ":" not in a]
            rest = [a for a in [name] + rest if a not in names]
        elif name is not None:
            names = [name]
        if names:
            objs = [self._lookup(kind, n, cmd.namespace) for n in names]
        elif cmd.has("selector") or cmd.has("all"):
            objs = self._select(kind, cmd)
        else:
            raise CommandError("resource(s) were provided, but no name was specified")
        return kind, objs, rest

    def _admit(self, obj: Any) -> Any:
        """Add a newly created object, applying the image failure rules to pods."""
        self.state.add(obj)
        if isinstance(obj, Pod):
            mode = apply_failure_rule(obj, self.failure_rules)
            if mode is not None:
                obj.append_log(f"[error] {obj.status.message}")
                self.state.record_event("Pod", obj.name, "Failed", f'Error: {mode} - image "{obj.spec.image}"', "Warning")
        logger.debug(f"created {obj.kind} {obj.metadata.name}")
        return obj

    def _ensure_absent(self, kind: str, name: str, namespace: str) -> None:
        if self.state.find(kind, name, namespace) is not None:
            raise AlreadyExistsError(resource_name(kind), name)

    # ---- read verbs ----

    def _get(self, cmd: ParsedCommand, manifest: Optional[str]) -> str:
        if not cmd.args:
            raise CommandError("you must specify the type of resource to get")
        output = cmd.flag("output", "") or ""
        if cmd.args[0] == "all":
            self._note("get-all")
            sections = []
            for kind in GET_ALL_KINDS:
                objs = self._select(kind, cmd)
                if objs:
                    sections.append(render_table(self.state, kind, objs, wide=output == "wide",
                                                 all_namespaces=cmd.has("all-namespaces")))
            return "\n\n".join(sections) or f"No resources found in {cmd.namespace} namespace."

        kind, name, _ = split_resource(cmd.args)
        self._note(f"get-{RESOURCE_PLURALS[kind]}")
        if kind == "Event":
            events = self.state.events
            if name:
                events = [e for e in events if e.object_name == name]
            if not events:
                return "No events found."
            return render_events(self.state, events)

        objs = [self._lookup(kind, name, cmd.namespace)] if name else self._select(kind, cmd)
        if output == "yaml":
            return to_yaml(objs) if objs else ""
        if output == "json":
            docs = [to_manifest(o) for o in objs]
            payload = docs[0] if name else {"apiVersion": "v1", "kind": "List", "items": docs}
            return json.dumps(payload, indent=2)
        if output == "name":
            return "\n".join(resource_ref(kind, o.metadata.name) for o in objs)
        if output not in ("", "wide"):
            raise CommandError(f'unable to match a printer suitable for the output format "{output}"')
        if not objs:
            if kind in CLUSTER_SCOPED:
                return "No resources found"
            return f"No resources found in {cmd.namespace} namespace."
        return render_table(self.state, kind, objs, wide=output == "wide",
                            all_namespaces=cmd.has("all-namespaces"), show_labels=cmd.has("show-labels"))

    def _describe(self, cmd: ParsedCommand, manifest: Optional[str]) -> str:
        kind, name, _ = split_resource(cmd.args)
        if kind == "Event":
            raise CommandError("describe is not supported for events, use get events")
        self._note(f"describe-{RESOURCE_PLURALS[kind]}")
        objs = [self._lookup(kind, name, cmd.namespace)] if name else self._select(kind, cmd)
        if not objs:
            return f"No resources found in {cmd.namespace} namespace."
        return "\n\n".join(describe(self.state, o) for o in objs)

    def _logs(self, cmd: ParsedCommand, manifest: Optional[str]) -> str:
        if not cmd.args:
            raise CommandError("expected POD or TYPE/NAME")
        target = cmd.args[0]
        if "/" in target and resolve_kind(target.split("/", 1)[0]) != "Pod":
            kind, name, _ = split_resource([target])
            owner = self._lookup(kind, name, cmd.namespace)
            pods = self._pods_of(owner)
            if not pods:
                raise CommandError(f"no pods found for {resource_ref(kind, name)}")
            pod = pods[0]
        else:
            pod = self._lookup("Pod", target.split("/", 1)[-1], cmd.namespace)
        self._note("logs")
        status = pod.status
        if not status.logs and status.start_tick is None:
            container = pod.spec.container_name or pod.name
            detail = "trying and failing to pull image" if status.reason == "ImagePullError" else "ContainerCreating"
            raise CommandError(f'container "{container}" in pod "{pod.name}" is waiting to start: {detail}')
        lines = list(status.logs)
        tail = cmd.int_flag("tail", -1)
        if tail is not None and tail >= 0:
            lines = lines[len(lines) - tail:] if tail else []
        return "\n".join(lines)

    def _pods_of(self, owner: Any) -> List[Pod]:
        if owner.kind == "Deployment":
            return [p for rs in owned_replica_sets(self.state, owner) for p in self.state.owned_pods(rs)
                    if pod_is_active(p)]
        if owner.kind == "Service":
            return [p for p in self.state.pods_matching(owner.spec.selector, owner.metadata.namespace)
                    if owner.spec.selector and pod_is_active(p)]
        return [p for p in self.state.owned_pods(owner) if pod_is_active(p)]

    # ---- create ----

    def _create(self, cmd: ParsedCommand, manifest: Optional[str]) -> str:
        if cmd.has("filename"):
            return self._apply_manifest(cmd, manifest, create_only=True)
        if not cmd.args:
            raise CommandError("must specify one of -f or a resource type")
        kind = resolve_kind(cmd.args[0])
        args = cmd.args[1:]
        builders = {
            "Deployment": self._new_deployment,
            "Pod": self._new_pod,
            "Service": self._new_service,
            "Namespace": self._new_namespace,
            "ConfigMap": self._new_configmap,
            "Secret": self._new_secret,
            "Job": self._new_job,
            "CronJob": self._new_cronjob,
            "PodDisruptionBudget": self._new_pdb,
            "PersistentVolumeClaim": self._new_pvc,
            "StorageClass": self._new_storageclass,
            "DaemonSet": self._new_daemonset,
        }
        if kind not in builders:
            raise CommandError(f'unknown resource type "{cmd.args[0]}" for create')
        obj = builders[kind](cmd, args)
        return self._finish_create(cmd, obj, f"create-{kind.lower()}")

    def _finish_create(self, cmd: ParsedCommand, obj: Any, key: str) -> str:
        kind = obj.kind
        namespace = obj.metadata.namespace
        self._require_namespace(kind, namespace)
        self._ensure_absent(kind, obj.metadata.name, namespace)
        dry_run = cmd.flag("dry-run", "none")
        if dry_run not in ("none", "false"):
            if dry_run not in ("client", "server", "true"):
                raise CommandError(f'invalid dry-run value "{dry_run}"')
            self._note(key)
            if cmd.flag("output") == "yaml":
                return to_yaml([obj], include_status=False)
            return f"{resource_ref(kind, obj.metadata.name)} created (dry run)"
        self._admit(obj)
        self._note(key)
        return f"{resource_ref(kind, obj.metadata.name)} created"

    @staticmethod
    def _name_arg(args: List[str], what: str) -> str:
        if not args:
            raise CommandError(f"NAME is required for {what}")
        return args[0]

    def _meta(self, cmd: ParsedCommand, name: str, labels: Optional[Dict[str, str]] = None) -> ObjectMeta:
        return ObjectMeta(name=name, namespace=cmd.namespace, labels=dict(labels or {}))

    def _image(self, cmd: ParsedCommand) -> str:
        image = cmd.flag("image")
        if not image:
            raise CommandError("required flag(s) \"image\" not set")
        return image

    def _template(self, cmd: ParsedCommand, name: str, labels: Dict[str, str]) -> PodTemplate:
        return PodTemplate(labels=dict(labels), spec=PodSpec(image=self._image(cmd), container_name=name))

    def _new_deployment(self, cmd: ParsedCommand, args: List[str]) -> Deployment:
        name = self._name_arg(args, "deployment")
        labels = {"app": name}
        replicas = cmd.int_flag("replicas", 1)
        if replicas < 0:
            raise CommandError("--replicas must be non-negative")
        return Deployment(metadata=self._meta(cmd, name, labels), spec=DeploymentSpec(
            replicas=replicas, selector=dict(labels), template=self._template(cmd, name, labels),
        ))

    def _new_daemonset(self, cmd: ParsedCommand, args: List[str]) -> DaemonSet:
        name = self._name_arg(args, "daemonset")
        labels = {"app": name}
        return DaemonSet(metadata=self._meta(cmd, name, labels), spec=DaemonSetSpec(
            selector=dict(labels), template=self._template(cmd, name, labels),
        ))

    def _new_pod(self, cmd: ParsedCommand, args: List[str]) -> Pod:
        name = self._name_arg(args, "pod")
        labels = parse_key_values(cmd.flag_list("labels")) or {"run": name}
        restart = cmd.flag("restart", "Always")
        if restart not in ("Always", "OnFailure", "Never"):
            raise CommandError(f'invalid restart policy "{restart}"')
        return Pod(metadata=self._meta(cmd, name, labels),
                   spec=PodSpec(image=self._image(cmd), container_name=name, restart_policy=restart))

    def _new_service(self, cmd: ParsedCommand, args: List[str]) -> Service:
        svc_type = "ClusterIP"
        types = {"clusterip": "ClusterIP", "nodeport": "NodePort", "loadbalancer": "LoadBalancer"}
        if args and args[0].lower() in types:
            svc_type = types[args[0].lower()]
            args = args[1:]
        name = self._name_arg(args, "service")
        port = cmd.int_flag("port")
        target_port = cmd.int_flag("target-port")
        if cmd.has("tcp"):
            port_text, _, target_text = cmd.flag("tcp").partition(":")
            try:
                port = int(port_text)
                target_port = int(target_text) if target_text else None
            except ValueError:
                raise CommandError(f'invalid --tcp value "{cmd.flag("tcp")}"') from None
        selector = parse_key_values(cmd.flag_list("selector")) if cmd.has("selector") else {"app": name}
        return Service(metadata=self._meta(cmd, name, {"app": name}), spec=ServiceSpec(
            selector=selector, port=port or 80, target_port=target_port, type=svc_type,
        ))

    def _new_namespace(self, cmd: ParsedCommand, args: List[str]) -> Namespace:
        return Namespace(metadata=ObjectMeta(name=self._name_arg(args, "namespace"), namespace=""))

    def _new_configmap(self, cmd: ParsedCommand, args: List[str]) -> ConfigMap:
        name = self._name_arg(args, "configmap")
        return ConfigMap(metadata=self._meta(cmd, name), data=parse_key_values(cmd.flag_list("from-literal"), sep="\0"))

    def _new_secret(self, cmd: ParsedCommand, args: List[str]) -> Secret:
        secret_type = "Opaque"
        if args and args[0] in ("generic", "tls", "docker-registry"):
            secret_type = {"generic": "Opaque", "tls": "kubernetes.io/tls",
                           "docker-registry": "kubernetes.io/dockerconfigjson"}[args[0]]
            args = args[1:]
        name = self._name_arg(args, "secret")
        return Secret(metadata=self._meta(cmd, name), type=secret_type,
                      data=parse_key_values(cmd.flag_list("from-literal"), sep="\0"))

    def _job_spec(self, cmd: ParsedCommand, name: str) -> JobSpec:
        template = self._template(cmd, name, {})
        template.spec.restart_policy = "Never"
        completions = cmd.int_flag("completions", 1)
        parallelism = cmd.int_flag("parallelism", 1)
        backoff = cmd.int_flag("backoff-limit", 6)
        ticks = cmd.int_flag("completion-ticks")
        if completions < 1 or parallelism < 1 or backoff < 0 or (ticks is not None and ticks < 1):
            raise CommandError("--completions, --parallelism and --completion-ticks must be positive")
        return JobSpec(template=template, completions=completions, parallelism=parallelism,
                       backoff_limit=backoff, completion_ticks=ticks)

    def _new_job(self, cmd: ParsedCommand, args: List[str]) -> Job:
        name = self._name_arg(args, "job")
        source = cmd.flag("from")
        if source:
            kind, cj_name, _ = split_resource([source])
            if kind != "CronJob":
                raise CommandError("--from must refer to a cronjob")
            cj = self._lookup("CronJob", cj_name, cmd.namespace)
            return Job(metadata=self._meta(cmd, name), spec=copy.deepcopy(cj.spec.job_template))
        return Job(metadata=self._meta(cmd, name), spec=self._job_spec(cmd, name))

    def _new_cronjob(self, cmd: ParsedCommand, args: List[str]) -> CronJob:
        name = self._name_arg(args, "cronjob")
        schedule = cmd.flag("schedule", "")
        if schedule_interval(schedule) is None:
            raise CommandError(f'invalid schedule "{schedule}"')
        return CronJob(metadata=self._meta(cmd, name), spec=CronJobSpec(
            schedule=schedule, job_template=self._job_spec(cmd, name),
        ))

    def _new_pdb(self, cmd: ParsedCommand, args: List[str]) -> PodDisruptionBudget:
        name = self._name_arg(args, "poddisruptionbudget")
        selector = parse_key_values(cmd.flag_list("selector"))
        if not selector:
            raise CommandError("a selector must be specified")
        min_available = cmd.flag("min-available")
        max_unavailable = cmd.flag("max-unavailable")
        if (min_available is None) == (max_unavailable is None):
            raise CommandError("one of min-available or max-unavailable must be specified")
        return PodDisruptionBudget(metadata=self._meta(cmd, name), spec=PodDisruptionBudgetSpec(
            selector=selector,
            min_available=self._int_or_percent(min_available),
            max_unavailable=self._int_or_percent(max_unavailable),
        ))

    @staticmethod
    def _int_or_percent(value: Optional[str]) -> Any:
        if value is None:
            return None
        if value.endswith("%") and value[:-1].isdigit():
            return value
        if value.isdigit():
            return int(value)
        raise CommandError(f'invalid value "{value}", expected an integer or a percentage')

    def _new_pvc(self, cmd: ParsedCommand, args: List[str]) -> PersistentVolumeClaim:
        name = self._name_arg(args, "persistentvolumeclaim")
        size = cmd.flag("size", "1Gi")
        try:
            parse_quantity(size)
        except ValueError:
            raise CommandError(f'invalid storage size "{size}"') from None
        return PersistentVolumeClaim(metadata=self._meta(cmd, name), spec=PersistentVolumeClaimSpec(
            storage_class_name=cmd.flag("storage-class"), request=size,
        ))

    def _new_storageclass(self, cmd: ParsedCommand, args: List[str]) -> StorageClass:
        name = self._name_arg(args, "storageclass")
        policy = cmd.flag("reclaim-policy", "Delete")
        if policy not in ("Delete", "Retain"):
            raise CommandError(f'invalid reclaim policy "{policy}"')
        meta = ObjectMeta(name=name, namespace="")
        if cmd.has("default"):
            meta.annotations[DEFAULT_CLASS_ANNOTATION] = "true"
        return StorageClass(metadata=meta, provisioner=cmd.flag("provisioner", "kubesim.io/hostpath"),
                            reclaim_policy=policy)

    def _run(self, cmd: ParsedCommand, manifest: Optional[str]) -> str:
        pod = self._new_pod(cmd, cmd.args)
        return self._finish_create(cmd, pod, "create-pod")

    def _expose(self, cmd: ParsedCommand, manifest: Optional[str]) -> str:
        kind, name, _ = split_resource(cmd.args)
        target = self._lookup(kind, name, cmd.namespace)
        if kind == "Pod":
            selector = dict(target.metadata.labels)
        elif kind in TEMPLATED_KINDS:
            selector = {k: v for k, v in target.spec.selector.items() if k != TEMPLATE_HASH_LABEL}
        elif kind == "Service":
            selector = dict(target.spec.selector)
        else:
            raise CommandError(f"cannot expose a {kind}")
        port = cmd.int_flag("port")
        if port is None:
            raise CommandError("couldn't find port via --port flag or introspection")
        svc = Service(
            metadata=ObjectMeta(name=cmd.flag("name", name), namespace=cmd.namespace, labels=dict(target.metadata.labels)),
            spec=ServiceSpec(selector=selector, port=port, target_port=cmd.int_flag("target-port"),
                             type=cmd.flag("type", "ClusterIP")),
        )
        self._note("expose")
        return self._finish_create(cmd, svc, "create-service").replace(" created", " exposed")

    # ---- delete ----

    def _delete(self, cmd: ParsedCommand, manifest: Optional[str]) -> str:
        if cmd.has("filename"):
            objs = []
            for parsed in load_objects(self._manifest_text(cmd, manifest)):
                objs.append(self._lookup(parsed.kind, parsed.metadata.name, parsed.metadata.namespace or cmd.namespace))
        else:
            kind, objs, _ = self._targets(cmd, cmd.args)
            if not objs:
                return f"No resources found in {cmd.namespace} namespace."
        force = cmd.has("force") and cmd.flag("grace-period") == "0"
        lines = []
        for obj in objs:
            if obj.kind == "Namespace" and obj.name in PROTECTED_NAMESPACES:
                raise CommandError(f'namespace "{obj.name}" may not be deleted')
        for obj in objs:
            self._delete_object(obj, force)
            self._note(f"delete-{obj.kind.lower()}")
            lines.append(f'{obj.kind.lower()} "{obj.metadata.name}" deleted')
        return "\n".join(lines)

    def _delete_object(self, obj: Any, force: bool = False) -> None:
        state = self.state
        kind = obj.kind
        if kind == "Pod":
            if force:
                state.remove(obj)
                return
            state.mark_terminating(obj)
            obj.status.ready = False
            state.record_event("Pod", obj.name, "Killing", f"Stopping container {obj.spec.container_name or obj.name}")
        elif kind in OWNER_KINDS:
            state.mark_terminating(obj)
        elif kind == "Namespace":
            for ns_kind in RESOURCE_PLURALS:
                if ns_kind in CLUSTER_SCOPED or ns_kind == "Event":
                    continue
                for child in list(state.objects(ns_kind)):
                    if child.metadata.namespace == obj.name:
                        self._delete_object(child)
            state.remove(obj)
        else:
            state.remove(obj)
        logger.debug(f"deleted {kind} {obj.metadata.name}")

    # ---- workload mutation ----

    def _scale(self, cmd: ParsedCommand, manifest: Optional[str]) -> str:
        kind, name, _ = split_resource(cmd.args)
        if kind not in SCALABLE_KINDS:
            raise CommandError(f"cannot scale a {kind}")
        replicas = cmd.int_flag("replicas")
        if replicas is None or replicas < 0:
            raise CommandError("--replicas=COUNT is required, and COUNT must be greater than or equal to 0")
        obj = self._lookup(kind, name, cmd.namespace)
        current = cmd.int_flag("current-replicas")
        if current is not None and current != obj.spec.replicas:
            raise CommandError(f"Expected replicas to be {current}, was {obj.spec.replicas}")
        obj.spec.replicas = replicas
        self._note("scale")
        return f"{resource_ref(kind, name)} scaled"

    def _set(self, cmd: ParsedCommand, manifest: Optional[str]) -> str:
        if not cmd.args or cmd.args[0] != "image":
            raise CommandError('only "set image" is supported')
        kind, objs, assignments = self._targets(cmd, cmd.args[1:])
        if not assignments:
            raise CommandError("at least one image update is required")
        updates = {}
        for item in assignments:
            container, eq, image = item.partition("=")
            if not eq:
                container, image = "*", item
            updates[container] = image
        lines = []
        for obj in objs:
            spec = self._pod_spec_of(obj)
            container = spec.container_name or obj.metadata.name
            image = updates.get(container, updates.get("*"))
            if image is None:
                raise CommandError(f'unable to find container named "{next(iter(updates))}"')
            if image != spec.image:
                spec.image = image
            lines.append(f"{resource_ref(kind, obj.metadata.name)} image updated")
        self._note("set-image")
        return "\n".join(lines)

    @staticmethod
    def _pod_spec_of(obj: Any) -> PodSpec:
        if obj.kind == "Pod":
            return obj.spec
        if obj.kind in TEMPLATED_KINDS:
            return obj.spec.template.spec
        if obj.kind == "Job":
            return obj.spec.template.spec
        if obj.kind == "CronJob":
            return obj.spec.job_template.template.spec
        raise CommandError(f"{obj.kind} has no pod template")

    def _rollout(self, cmd: ParsedCommand, manifest: Optional[str]) -> str:
        if not cmd.args:
            raise CommandError("rollout requires a subcommand: status, restart, undo or history")
        sub = cmd.args[0]
        kind, name, _ = split_resource(cmd.args[1:])
        handlers = {
            "status": self._rollout_status,
            "restart": self._rollout_restart,
            "undo": self._rollout_undo,
            "history": self._rollout_history,
        }
        if sub not in handlers:
            raise CommandError(f'unknown rollout subcommand "{sub}"')
        if sub != "restart" and kind != "Deployment":
            raise CommandError(f"rollout {sub} is only supported for deployments")
        if kind not in TEMPLATED_KINDS or kind == "ReplicaSet":
            raise CommandError(f"{RESOURCE_PLURALS[kind]} are not rollable")
        obj = self._lookup(kind, name, cmd.namespace)
        output = handlers[sub](cmd, obj)
        self._note(f"rollout-{sub}")
        return output

    def _rollout_status(self, cmd: ParsedCommand, dep: Deployment) -> str:
        s = dep.status
        desired = dep.spec.replicas
        progressing = get_condition(s.conditions, "Progressing")
        if progressing is not None and progressing.reason == "ProgressDeadlineExceeded":
            raise CommandError(f'deployment "{dep.name}" exceeded its progress deadline')
        current_hash = template_hash(dep.spec.template)
        if not any(rs.metadata.labels.get(TEMPLATE_HASH_LABEL) == current_hash
                   for rs in owned_replica_sets(self.state, dep)):
            return "Waiting for deployment spec update to be observed..."
        prefix = f'Waiting for deployment "{dep.name}" rollout to finish: '
        if s.updated_replicas < desired:
            return prefix + f"{s.updated_replicas} out of {desired} new replicas have been updated..."
        if s.replicas > s.updated_replicas:
            return prefix + f"{s.replicas - s.updated_replicas} old replicas are pending termination..."
        if s.available_replicas < desired:
            return prefix + f"{s.available_replicas} of {desired} updated replicas are available..."
        return f'deployment "{dep.name}" successfully rolled out'

    def _rollout_restart(self, cmd: ParsedCommand, obj: Any) -> str:
        annotations = obj.spec.template.annotations
        stamp = f"tick-{self.state.tick}"
        if annotations.get(RESTARTED_AT_ANNOTATION, "").startswith(stamp):
            count = annotations[RESTARTED_AT_ANNOTATION].count(".") + 1
            stamp = f"{stamp}.{count}"
        annotations[RESTARTED_AT_ANNOTATION] = stamp
        return f"{resource_ref(obj.kind, obj.metadata.name)} restarted"

    def _rollout_undo(self, cmd: ParsedCommand, dep: Deployment) -> str:
        history = sorted(owned_replica_sets(self.state, dep), key=lambda rs: rs.revision)
        wanted = cmd.int_flag("to-revision", 0)
        if wanted:
            matches = [rs for rs in history if rs.revision == wanted]
            if not matches:
                raise CommandError(f"unable to find specified revision {wanted} in history")
            target = matches[0]
        else:
            if len(history) < 2:
                raise CommandError(f'no rollout history found for deployment "{dep.name}"')
            target = history[-2]
        template = copy.deepcopy(target.spec.template)
        template.labels.pop(TEMPLATE_HASH_LABEL, None)
        ref = resource_ref("Deployment", dep.name)
        if template_hash(template) == template_hash(dep.spec.template):
            return f"{ref} skipped rollback (current template already matches revision {target.revision})"
        dep.spec.template = template
        return f"{ref} rolled back"

    def _rollout_history(self, cmd: ParsedCommand, dep: Deployment) -> str:
        history = sorted(owned_replica_sets(self.state, dep), key=lambda rs: rs.revision)
        rows = [f"deployment.apps/{dep.name}", "REVISION  IMAGE"]
        rows += [f"{rs.revision:<8}  {rs.spec.template.spec.image}" for rs in history]
        return "\n".join(rows)

    def _autoscale(self, cmd: ParsedCommand, manifest: Optional[str]) -> str:
        kind, name, _ = split_resource(cmd.args)
        if kind not in SCALABLE_KINDS:
            raise CommandError(f"cannot autoscale a {kind}")
        self._lookup(kind, name, cmd.namespace)
        max_replicas = cmd.int_flag("max")
        min_replicas = cmd.int_flag("min", 1)
        if max_replicas is None or max_replicas < 1:
            raise CommandError("--max=MAXPODS is required and must be at least 1")
        if min_replicas < 1 or min_replicas > max_replicas:
            raise CommandError("--min must be between 1 and --max")
        hpa = HorizontalPodAutoscaler(
            metadata=ObjectMeta(name=cmd.flag("name", name), namespace=cmd.namespace),
            spec=HorizontalPodAutoscalerSpec(
                target_name=name, target_kind=kind, min_replicas=min_replicas, max_replicas=max_replicas,
                target_cpu_percent=cmd.int_flag("cpu-percent", 80),
            ),
        )
        self._finish_create(cmd, hpa, "autoscale")
        return f"{resource_ref(kind, name)} autoscaled"

    # ---- metadata and patches ----

    def _label(self, cmd: ParsedCommand, manifest: Optional[str]) -> str:
        return self._set_metadata(cmd, "labels", "labeled")

    def _annotate(self, cmd: ParsedCommand, manifest: Optional[str]) -> str:
        return self._set_metadata(cmd, "annotations", "annotated")

    def _set_metadata(self, cmd: ParsedCommand, attr: str, verb_done: str) -> str:
        kind, objs, changes = self._targets(cmd, cmd.args)
        if not changes:
            raise CommandError(f"at least one {attr[:-1]} update is required")
        removals = [c[:-1] for c in changes if c.endswith("-") and "=" not in c]
        additions = parse_key_values([c for c in changes if "=" in c])
        overwrite = cmd.has("overwrite")
        for obj in objs:
            current = getattr(obj.metadata, attr)
            for key, value in additions.items():
                if key in current and current[key] != value and not overwrite:
                    raise CommandError(f"'{key}' already has a value ({current[key]}), and --overwrite is false")
        lines = []
        for obj in objs:
            current = getattr(obj.metadata, attr)
            for key in removals:
                current.pop(key, None)
            current.update(additions)
            lines.append(f"{resource_ref(kind, obj.metadata.name)} {verb_done}")
        self._note(cmd.verb)
        return "\n".join(lines)

    def _taint(self, cmd: ParsedCommand, manifest: Optional[str]) -> str:
        kind, nodes, specs = self._targets(cmd, cmd.args)
        if kind != "Node":
            raise CommandError("taints can only be applied to nodes")
        if not specs:
            raise CommandError("at least one taint update is required")
        parsed = [parse_taint(s) for s in specs]
        overwrite = cmd.has("overwrite")
        for node in nodes:
            for key, value, effect, remove in parsed:
                existing = [t for t in node.spec.taints if t.key == key and (not effect or t.effect == effect)]
                if remove and not existing:
                    raise CommandError(f"taint {key!r} not found")
                if not remove and existing and existing[0].value != value and not overwrite:
                    raise CommandError(f"node {node.name} already has {key} taint(s) with same effect(s) "
                                       f"and --overwrite is false")
        lines = []
        for node in nodes:
            for key, value, effect, remove in parsed:
                node.spec.taints = [t for t in node.spec.taints
                                    if not (t.key == key and (not effect or t.effect == effect))]
                if not remove:
                    node.spec.taints.append(Taint(key=key, value=value, effect=effect))
            lines.append(f"node/{node.name} {'untainted' if all(p[3] for p in parsed) else 'tainted'}")
        self._note("taint")
        return "\n".join(lines)

    def _patch(self, cmd: ParsedCommand, manifest: Optional[str]) -> str:
        kind, name, _ = split_resource(cmd.args)
        obj = self._lookup(kind, name, cmd.namespace)
        patch_type = cmd.flag("type", "strategic")
        if patch_type not in ("strategic", "merge"):
            raise CommandError(f'patch type "{patch_type}" is not supported')
        ref = resource_ref(kind, name)
        if cmd.has("patch"):
            try:
                patch = json.loads(cmd.flag("patch"))
            except ValueError as exc:
                raise CommandError(f"unable to parse patch: {exc}") from None
            if not isinstance(patch, dict):
                raise CommandError("patch must be a JSON object")
            merged = merge_patch(to_manifest(obj), patch)
            merged.setdefault("metadata", {})["name"] = obj.metadata.name
            changed = self._update_from(obj, object_from_manifest(merged))
        else:
            changed = self._patch_fields(cmd, obj)
        self._note("patch")
        return f"{ref} {'patched' if changed else 'patched (no change)'}"

    def _patch_fields(self, cmd: ParsedCommand, obj: Any) -> bool:
        before = repr(obj)
        known = False
        if cmd.has("selector"):
            known = True
            selector = parse_key_values(cmd.flag_list("selector"))
            if obj.kind in ("Service", "PodDisruptionBudget"):
                obj.spec.selector = selector
            else:
                raise CommandError(f"--selector cannot be patched on a {obj.kind}")
        if cmd.has("port"):
            known = True
            if obj.kind != "Service":
                raise CommandError(f"--port cannot be patched on a {obj.kind}")
            obj.spec.port = cmd.int_flag("port")
        if cmd.has("replicas"):
            known = True
            if obj.kind not in SCALABLE_KINDS:
                raise CommandError(f"--replicas cannot be patched on a {obj.kind}")
            replicas = cmd.int_flag("replicas")
            if replicas < 0:
                raise CommandError("--replicas must be non-negative")
            obj.spec.replicas = replicas
        if cmd.has("image"):
            known = True
            self._pod_spec_of(obj).image = cmd.flag("image")
        if not known:
            raise CommandError("must specify -p/--patch or a field flag (--selector, --port, --replicas, --image)")
        return repr(obj) != before

    # ---- apply ----

    def _apply(self, cmd: ParsedCommand, manifest: Optional[str]) -> str:
        if not cmd.has("filename"):
            raise CommandError("must specify -f")
        return self._apply_manifest(cmd, manifest, create_only=False)

    def _manifest_text(self, cmd: ParsedCommand, manifest: Optional[str]) -> str:
        filename = cmd.flag("filename")
        if filename in (None, "-", "true"):
            if not manifest:
                raise CommandError("no manifest supplied on standard input")
            return manifest
        try:
            with open(filename, "r", encoding="utf-8") as fh:
                return fh.read()
        except OSError as exc:
            raise CommandError(f'the path "{filename}" could not be read: {exc.strerror}') from None

    def _apply_manifest(self, cmd: ParsedCommand, manifest: Optional[str], create_only: bool) -> str:
        objs = load_objects(self._manifest_text(cmd, manifest))
        for obj in objs:
            if obj.kind not in CLUSTER_SCOPED and cmd.has("namespace"):
                obj.metadata.namespace = cmd.namespace
            exists = self.state.find(obj.kind, obj.metadata.name, obj.metadata.namespace) is not None
            if create_only and exists:
                raise AlreadyExistsError(resource_name(obj.kind), obj.metadata.name)
            if not exists and obj.kind != "Namespace" and not any(
                o.kind == "Namespace" and o.metadata.name == obj.metadata.namespace for o in objs
            ):
                self._require_namespace(obj.kind, obj.metadata.namespace)
        lines = []
        for obj in objs:
            ref = resource_ref(obj.kind, obj.metadata.name)
            existing = self.state.find(obj.kind, obj.metadata.name, obj.metadata.namespace)
            if existing is None:
                self._admit(obj)
                lines.append(f"{ref} created")
            elif self._update_from(existing, obj):
                lines.append(f"{ref} configured")
            else:
                lines.append(f"{ref} unchanged")
            if create_only:
                self._note(f"create-{obj.kind.lower()}")
        self._note("apply" if not create_only else "create")
        return "\n".join(lines)

    def _update_from(self, existing: Any, new: Any) -> bool:
        """Copy the desired fields of ``new`` onto ``existing``; True when anything changed."""
        before = repr(existing)
        existing.metadata.labels = dict(new.metadata.labels)
        existing.metadata.annotations = dict(new.metadata.annotations)
        kind = existing.kind
        if kind in ("Pod", "Namespace"):
            pass
        elif kind in ("ConfigMap", "Secret"):
            existing.data = new.data
            if kind == "Secret":
                existing.type = new.type
        elif kind == "StorageClass":
            existing.provisioner = new.provisioner
            existing.reclaim_policy = new.reclaim_policy
        elif kind == "PersistentVolumeClaim":
            existing.spec.request = new.spec.request
            if existing.status.phase != "Bound":
                existing.spec.storage_class_name = new.spec.storage_class_name
        elif kind == "PersistentVolume":
            existing.spec.capacity = new.spec.capacity
            existing.spec.reclaim_policy = new.spec.reclaim_policy
            existing.spec.storage_class_name = new.spec.storage_class_name
        else:
            self._carry_unexported(existing, new)
            existing.spec = new.spec
        return repr(existing) != before

    @staticmethod
    def _carry_unexported(existing: Any, new: Any) -> None:
        """Keep pod template details that do not survive a round trip through a manifest."""
        pairs = []
        if existing.kind in TEMPLATED_KINDS or existing.kind == "Job":
            pairs.append((existing.spec.template.spec, new.spec.template.spec))
        elif existing.kind == "CronJob":
            pairs.append((existing.spec.job_template.template.spec, new.spec.job_template.template.spec))
        for old, fresh in pairs:
            if old.container_name is None and fresh.container_name == existing.metadata.name:
                fresh.container_name = None
            durations = {c.name: c.duration_ticks for c in old.init_containers}
            for c in fresh.init_containers:
                c.duration_ticks = durations.get(c.name, c.duration_ticks)
            fresh.failure_mode = old.failure_mode

    # ---- node maintenance ----

    def _node_arg(self, cmd: ParsedCommand) -> Any:
        args = list(cmd.args)
        if args and resolve_kind(args[0]) == "Node" and len(args) > 1:
            args = args[1:]
        if not args:
            raise CommandError("NODE is required")
        return self._lookup("Node", args[0].split("/", 1)[-1], cmd.namespace)

    def _cordon(self, cmd: ParsedCommand, manifest: Optional[str]) -> str:
        node = self._node_arg(cmd)
        self._note("cordon")
        if node.spec.unschedulable and not node.ready:
            return f"node/{node.name} already cordoned"
        node.spec.unschedulable = True
        node.set_ready(False, self.state.tick, "NodeCordoned")
        self.state.record_event("Node", node.name, "NodeNotSchedulable", f"Node {node.name} status is now: NodeNotSchedulable")
        return f"node/{node.name} cordoned"

    def _uncordon(self, cmd: ParsedCommand, manifest: Optional[str]) -> str:
        node = self._node_arg(cmd)
        self._note("uncordon")
        if not node.spec.unschedulable and node.ready and not node.status.draining:
            return f"node/{node.name} already uncordoned"
        node.spec.unschedulable = False
        node.status.draining = False
        node.status.blocked_evictions = []
        node.set_ready(True, self.state.tick, "KubeletReady")
        self.state.record_event("Node", node.name, "NodeSchedulable", f"Node {node.name} status is now: NodeSchedulable")
        return f"node/{node.name} uncordoned"

    def _drain(self, cmd: ParsedCommand, manifest: Optional[str]) -> str:
        node = self._node_arg(cmd)
        pods = [p for p in self.state.pods_on_node(node.name) if pod_is_active(p)]
        daemon = [p.name for p in pods if is_daemon_pod(p)]
        if daemon and not cmd.has("ignore-daemonsets"):
            raise CommandError(f"cannot delete DaemonSet-managed Pods (use --ignore-daemonsets to ignore): "
                               f"{', '.join(sorted(daemon))}")
        node.spec.unschedulable = True
        node.status.draining = True
        self.state.record_event("Node", node.name, "NodeNotSchedulable", f"Node {node.name} status is now: NodeNotSchedulable")
        self._note("drain")
        lines = [f"node/{node.name} cordoned"]
        lines += [f"evicting pod {p.metadata.namespace}/{p.name}" for p in pods if not is_daemon_pod(p)]
        return "\n".join(lines)
