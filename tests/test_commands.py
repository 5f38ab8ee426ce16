import json
import sys
from pathlib import Path

sys.path.append(str(Path(__file__).resolve().parents[1]))

import pytest
import yaml

from conftest import run_ok
from kubesim.commands import parse_command
from kubesim.commands.interpreter import merge_patch, parse_taint
from kubesim.commands.parser import parse_key_values, resolve_kind, split_resource
from kubesim.errors import CommandError
from kubesim.state import template_hash


# ---- parsing ----


def test_parse_command_flags_and_aliases():
    cmd = parse_command("kubectl get po -n dev -o wide -l app=web --show-labels")
    assert cmd.verb == "get"
    assert cmd.args == ["po"]
    assert cmd.namespace == "dev"
    assert cmd.flag("output") == "wide"
    assert cmd.flag_list("selector") == ["app=web"]
    assert cmd.has("show-labels")

    cmd = parse_command("set-image deployment/web web=nginx:2")
    assert cmd.verb == "set"
    assert cmd.args == ["image", "deployment/web", "web=nginx:2"]

    cmd = parse_command("drain node-1 --ignore-daemonsets --grace-period 0")
    assert cmd.has("ignore-daemonsets")
    assert cmd.flag("grace-period") == "0"

    cmd = parse_command("get pods -A")
    assert cmd.has("all-namespaces")


def test_parse_command_rejects_bad_input():
    with pytest.raises(CommandError):
        parse_command("   ")
    with pytest.raises(CommandError):
        parse_command("get pods --selector 'app=web")
    with pytest.raises(CommandError):
        parse_command("scale deploy web --replicas=three").int_flag("replicas")


def test_resource_resolution():
    assert resolve_kind("deploy") == "Deployment"
    assert resolve_kind("deployments.apps") == "Deployment"
    assert resolve_kind("PVC") == "PersistentVolumeClaim"
    assert resolve_kind("widgets") is None
    assert split_resource(["svc/web", "extra"]) == ("Service", "web", ["extra"])
    assert split_resource(["pods"]) == ("Pod", None, [])
    with pytest.raises(CommandError):
        split_resource(["widgets", "x"])


def test_key_value_and_taint_parsing():
    assert parse_key_values(["app=web,tier=frontend", "env=prod"]) == {
        "app": "web", "tier": "frontend", "env": "prod"}
    with pytest.raises(CommandError):
        parse_key_values(["novalue"])
    assert parse_taint("dedicated=gpu:NoSchedule") == ("dedicated", "gpu", "NoSchedule", False)
    assert parse_taint("dedicated:NoSchedule-") == ("dedicated", "", "NoSchedule", True)
    with pytest.raises(CommandError):
        parse_taint("dedicated=gpu:Sometimes")


def test_merge_patch_semantics():
    target = {"spec": {"replicas": 1, "paused": True}, "metadata": {"name": "web"}}
    merged = merge_patch(target, {"spec": {"replicas": 3, "paused": None}})
    assert merged == {"spec": {"replicas": 3}, "metadata": {"name": "web"}}
    assert target["spec"]["replicas"] == 1, "merge_patch does not mutate its input"


# ---- interpreter ----


def test_create_and_get(sim):
    assert run_ok(sim, "create deployment web --image=nginx --replicas=2") == "deployment.apps/web created"
    sim.run(3)
    table = run_ok(sim, "get pods -o wide")
    lines = table.splitlines()
    assert lines[0].split() == ["NAME", "READY", "STATUS", "RESTARTS", "AGE", "NODE"]
    assert len(lines) == 3
    assert all("Running" in line and "1/1" in line for line in lines[1:])

    assert "2/2" in run_ok(sim, "get deploy web")
    assert run_ok(sim, "get pods -n kube-system") == "No resources found in kube-system namespace."
    assert run_ok(sim, "get deployments -o name") == "deployment.apps/web"
    assert "Ready,SchedulingDisabled" not in run_ok(sim, "get nodes")


def test_errors_are_reported_and_recorded(sim):
    result = sim.execute("get deployment nope")
    assert not result.ok
    assert result.reason == "NotFound"
    assert result.output == 'Error from server (NotFound): deployments.apps "nope" not found'

    run_ok(sim, "create deployment web --image=nginx")
    dup = sim.execute("create deployment web --image=nginx")
    assert dup.reason == "AlreadyExists"
    assert dup.output == 'Error from server (AlreadyExists): deployments.apps "web" already exists'

    bad = sim.execute("frobnicate pods")
    assert bad.reason == "BadRequest"
    assert bad.output.startswith("error: ")

    missing_ns = sim.execute("create deployment api --image=nginx -n nowhere")
    assert missing_ns.output == 'Error from server (NotFound): namespaces "nowhere" not found'

    warnings = [e for e in sim.state.events if e.type == "Warning" and e.object_kind == "Command"]
    assert [e.object_name for e in warnings] == ["get", "create", "frobnicate", "create"]
    assert [e.reason for e in warnings] == ["NotFound", "AlreadyExists", "BadRequest", "NotFound"]


def test_failed_command_leaves_state_untouched(sim):
    run_ok(sim, "create deployment web --image=nginx --replicas=2")
    before = sim.state.snapshot(include_events=False)
    result = sim.execute("scale deployment web --replicas=-1")
    assert not result.ok
    assert sim.state.snapshot(include_events=False) == before


def test_commands_used_tracks_verbs_and_resources(sim):
    run_ok(
        sim,
        "create deployment web --image=nginx",
        "get pods",
        "get events",
        "describe deployment web",
        "scale deployment web --replicas=3",
        "set image deployment/web web=nginx:2",
        "rollout restart deployment/web",
    )
    sim.execute("delete pod nothing-here")
    used = sim.state.commands_used
    for key in ("create", "create-deployment", "get", "get-pods", "get-events", "describe",
                "describe-deployments", "scale", "set", "set-image", "rollout", "rollout-restart"):
        assert key in used, key
    assert "delete" not in used, "failed commands are not counted"


def test_dry_run_prints_manifest_without_creating(sim):
    out = run_ok(sim, "create deployment web --image=nginx:1.25 --replicas=2 --dry-run=client -o yaml")
    doc = yaml.safe_load(out)
    assert doc["kind"] == "Deployment"
    assert doc["apiVersion"] == "apps/v1"
    assert doc["spec"]["replicas"] == 2
    assert doc["spec"]["template"]["spec"]["containers"][0]["image"] == "nginx:1.25"
    assert "status" not in doc
    assert sim.state.deployments == []

    assert run_ok(sim, "run tmp --image=busybox --dry-run=client") == "pod/tmp created (dry run)"
    assert sim.state.pods == []


def test_apply_creates_then_reports_unchanged_and_configured(sim):
    manifest = """
apiVersion: apps/v1
kind: Deployment
metadata:
  name: web
spec:
  replicas: 2
  selector:
    matchLabels:
      app: web
  template:
    metadata:
      labels:
        app: web
    spec:
      containers:
      - name: web
        image: nginx:1.25
---
apiVersion: v1
kind: Service
metadata:
  name: web
spec:
  selector:
    app: web
  ports:
  - port: 80
    targetPort: 8080
"""
    out = run_ok(sim, "apply -f -", manifest=manifest)
    assert out.splitlines() == ["deployment.apps/web created", "service/web created"]
    sim.run(2)
    out = run_ok(sim, "apply -f -", manifest=manifest)
    assert out.splitlines() == ["deployment.apps/web unchanged", "service/web unchanged"]

    out = run_ok(sim, "apply -f -", manifest=manifest.replace("replicas: 2", "replicas: 4"))
    assert out.splitlines()[0] == "deployment.apps/web configured"
    assert sim.state.find("Deployment", "web").spec.replicas == 4

    created = sim.execute("create -f -", manifest=manifest)
    assert created.reason == "AlreadyExists"


def test_apply_rejects_invalid_manifest(sim):
    result = sim.execute("apply -f -", manifest="kind: Gadget\nmetadata:\n  name: x\n")
    assert not result.ok
    assert 'no matches for kind "Gadget"' in result.output
    result = sim.execute("apply -f -", manifest="- just\n- a list\n")
    assert not result.ok
    assert sim.execute("apply").reason == "BadRequest"


def test_patch_replicas_keeps_pod_template(sim):
    run_ok(sim, "create deployment web --image=nginx --replicas=2")
    sim.run(2)
    dep = sim.state.find("Deployment", "web")
    before = template_hash(dep.spec.template)
    out = run_ok(sim, """patch deployment web -p '{"spec":{"replicas":4}}'""")
    assert out == "deployment.apps/web patched"
    assert dep.spec.replicas == 4
    assert template_hash(dep.spec.template) == before, "a replica patch must not start a rollout"
    sim.run(3)
    assert len(sim.state.replica_sets) == 1

    run_ok(sim, "create service cache --port=6379")
    assert run_ok(sim, "patch service cache --selector=app=redis") == "service/cache patched"
    assert sim.state.find("Service", "cache").spec.selector == {"app": "redis"}
    assert not sim.execute("patch deployment web -p 'not json'").ok


def test_label_annotate_and_overwrite(sim):
    run_ok(sim, "run web --image=nginx --labels=app=web")
    run_ok(sim, "label pod web tier=frontend")
    result = sim.execute("label pod web tier=backend")
    assert not result.ok
    assert "--overwrite" in result.output
    run_ok(sim, "label pod web tier=backend --overwrite")
    assert sim.state.find("Pod", "web").metadata.labels["tier"] == "backend"
    run_ok(sim, "label pod web tier-")
    assert "tier" not in sim.state.find("Pod", "web").metadata.labels
    assert run_ok(sim, "annotate pod web owner=team-a") == "pod/web annotated"


def test_taint_and_untaint(sim):
    assert run_ok(sim, "taint nodes node-1 dedicated=gpu:NoSchedule") == "node/node-1 tainted"
    node = sim.state.find("Node", "node-1")
    assert [(t.key, t.value, t.effect) for t in node.spec.taints] == [("dedicated", "gpu", "NoSchedule")]
    assert run_ok(sim, "taint node node-1 dedicated:NoSchedule-") == "node/node-1 untainted"
    assert node.spec.taints == []
    assert not sim.execute("taint node node-1 dedicated:NoSchedule-").ok
    assert not sim.execute("taint pod web a=b:NoSchedule").ok


def test_scale_and_delete(sim):
    run_ok(sim, "create deployment web --image=nginx --replicas=2")
    assert run_ok(sim, "scale deployment/web --replicas=5") == "deployment.apps/web scaled"
    assert sim.state.find("Deployment", "web").spec.replicas == 5
    assert not sim.execute("scale deployment web --replicas=1 --current-replicas=2").ok
    assert not sim.execute("scale service web --replicas=2").ok

    assert run_ok(sim, "delete deployment web") == 'deployment "web" deleted'
    assert sim.state.find("Deployment", "web").metadata.deletion_timestamp == 0
    assert not sim.execute("delete namespace default").ok


def test_namespaces_scope_objects(sim):
    run_ok(sim, "create namespace dev", "create deployment api --image=nginx -n dev")
    assert "api" in run_ok(sim, "get deployments -n dev")
    assert run_ok(sim, "get deployments") == "No resources found in default namespace."
    assert "dev" in run_ok(sim, "get deployments -A")
    run_ok(sim, "delete namespace dev")
    assert sim.state.find("Namespace", "dev") is None
    assert sim.state.find("Deployment", "api", "dev").metadata.deletion_timestamp is not None


def test_describe_and_logs(sim):
    run_ok(sim, "create deployment web --image=nginx --replicas=1")
    result = sim.execute("logs deployment/web")
    assert not result.ok
    sim.run(2)
    pod = sim.state.pods[0]
    text = run_ok(sim, f"describe pod {pod.name}")
    assert f"Name:           {pod.name}" in text
    assert "Controlled By:  ReplicaSet/" in text
    assert "Scheduled" in text
    assert "[startup] Container started with image nginx" in run_ok(sim, "logs deployment/web")
    assert "Events:" in run_ok(sim, "describe node node-1")


def test_get_yaml_and_json_output(sim):
    run_ok(sim, "create deployment web --image=nginx --replicas=1")
    sim.run(2)
    pod_name = sim.state.pods[0].name
    doc = yaml.safe_load(run_ok(sim, f"get pod {pod_name} -o yaml"))
    assert doc["kind"] == "Pod"
    assert doc["status"]["phase"] == "Running"
    listing = json.loads(run_ok(sim, "get pods -o json"))
    assert listing["kind"] == "List"
    assert [item["metadata"]["name"] for item in listing["items"]] == [pod_name]
    assert not sim.execute("get pods -o table").ok
    assert not sim.execute("describe events").ok


def test_rollout_history_and_undo_errors(sim):
    run_ok(sim, "create deployment web --image=nginx:1")
    assert run_ok(sim, "rollout status deployment/web") == "Waiting for deployment spec update to be observed..."
    sim.run(2)
    assert not sim.execute("rollout undo deployment/web").ok
    run_ok(sim, "set image deployment/web web=nginx:2")
    sim.run(10)
    history = run_ok(sim, "rollout history deployment/web").splitlines()
    assert history[0] == "deployment.apps/web"
    assert [line.split() for line in history[2:]] == [["1", "nginx:1"], ["2", "nginx:2"]]
    assert not sim.execute("rollout undo deployment/web --to-revision=9").ok
    assert not sim.execute("rollout status daemonset/agent").ok


def test_rollout_restart_replaces_pods(sim):
    run_ok(sim, "create deployment web --image=nginx --replicas=2")
    sim.run(2)
    old = {p.name for p in sim.state.pods}
    run_ok(sim, "rollout restart deployment/web")
    sim.run(12)
    current = {p.name for p in sim.state.pods if p.metadata.deletion_timestamp is None}
    assert len(current) == 2
    assert not (old & current)


def test_cordon_uncordon_messages(sim):
    assert run_ok(sim, "cordon node-2") == "node/node-2 cordoned"
    assert run_ok(sim, "cordon node-2") == "node/node-2 already cordoned"
    assert "SchedulingDisabled" in run_ok(sim, "get nodes")
    assert run_ok(sim, "uncordon node-2") == "node/node-2 uncordoned"
    assert run_ok(sim, "uncordon node/node-2") == "node/node-2 already uncordoned"
    assert not sim.execute("cordon node-9").ok


def test_expose_and_autoscale(sim):
    run_ok(sim, "create deployment web --image=nginx --replicas=2")
    assert run_ok(sim, "expose deployment web --port=80 --target-port=8080") == "service/web exposed"
    svc = sim.state.find("Service", "web")
    assert svc.spec.selector == {"app": "web"}
    assert svc.spec.target_port == 8080
    assert not sim.execute("expose deployment web").ok

    assert run_ok(sim, "autoscale deployment web --min=2 --max=6 --cpu-percent=70") == \
        "deployment.apps/web autoscaled"
    hpa = sim.state.find("HorizontalPodAutoscaler", "web")
    assert (hpa.spec.min_replicas, hpa.spec.max_replicas, hpa.spec.target_cpu_percent) == (2, 6, 70)
    assert not sim.execute("autoscale deployment web --min=3 --max=2").ok
