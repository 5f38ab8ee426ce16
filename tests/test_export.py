import json
import sys
from pathlib import Path

sys.path.append(str(Path(__file__).resolve().parents[1]))

import pytest
import yaml

from conftest import make_sim, run_ok
from kubesim.commands.manifests import load_objects
from kubesim.commands.parser import RESOURCE_PLURALS
from kubesim.errors import ManifestError
from kubesim.export import COMPLETION_TICKS_ANNOTATION, CONVERTERS, export_state, to_manifest, to_yaml

DEPLOYMENT = """
apiVersion: apps/v1
kind: Deployment
metadata:
  name: api
  labels:
    team: core
spec:
  replicas: 2
  selector:
    matchLabels:
      app: api
  template:
    metadata:
      labels:
        app: api
    spec:
      containers:
      - name: api
        image: api:1.0
        readinessProbe:
          initialDelaySeconds: 3
          periodSeconds: 2
"""


def test_pod_manifest_uses_api_field_names(sim):
    run_ok(sim, "run web --image=nginx --labels=app=web")
    sim.run(2)
    manifest = to_manifest(sim.state.find("Pod", "web"))

    assert manifest["apiVersion"] == "v1"
    assert manifest["kind"] == "Pod"
    assert manifest["metadata"]["labels"] == {"app": "web"}
    assert manifest["spec"]["nodeName"] == "node-1"
    assert manifest["spec"]["restartPolicy"] == "Always"
    assert manifest["spec"]["containers"][0]["image"] == "nginx"
    assert manifest["status"]["phase"] == "Running"
    statuses = manifest["status"]["containerStatuses"]
    assert statuses[0]["ready"] is True
    assert statuses[0]["restartCount"] == 0
    ready = [c for c in manifest["status"]["conditions"] if c["type"] == "Ready"]
    assert ready == [{"type": "Ready", "status": "True"}]


def test_manifest_without_status_drops_server_fields(sim):
    run_ok(sim, "apply -f -", manifest=DEPLOYMENT)
    manifest = to_manifest(sim.state.find("Deployment", "api"), include_status=False)
    assert "status" not in manifest
    assert "uid" not in manifest["metadata"]
    container = manifest["spec"]["template"]["spec"]["containers"][0]
    assert container["readinessProbe"]["initialDelaySeconds"] == 3
    assert container["readinessProbe"]["periodSeconds"] == 2
    assert manifest["spec"]["selector"] == {"matchLabels": {"app": "api"}}
    assert manifest["spec"]["strategy"]["rollingUpdate"] == {"maxSurge": "25%", "maxUnavailable": "25%"}


def test_exported_deployment_loads_back_equivalent(sim):
    run_ok(sim, "apply -f -", manifest=DEPLOYMENT)
    original = sim.state.find("Deployment", "api")
    text = to_yaml([original], include_status=False)
    (loaded,) = load_objects(text)
    assert loaded.spec.template == original.spec.template
    assert loaded.spec.selector == original.spec.selector
    assert loaded.metadata.labels == {"team": "core"}


def test_to_yaml_wraps_several_objects_in_a_list(sim):
    run_ok(sim, "create deployment web --image=nginx", "create service clusterip web --tcp=80:8080")
    objs = [sim.state.find("Deployment", "web"), sim.state.find("Service", "web")]
    doc = yaml.safe_load(to_yaml(objs))
    assert doc["kind"] == "List"
    assert [item["kind"] for item in doc["items"]] == ["Deployment", "Service"]

    single = yaml.safe_load(to_yaml(objs[:1]))
    assert single["kind"] == "Deployment"


def test_job_completion_ticks_survive_a_round_trip():
    manifest = f"""
apiVersion: batch/v1
kind: Job
metadata:
  name: crunch
spec:
  completions: 2
  template:
    metadata:
      annotations:
        {COMPLETION_TICKS_ANNOTATION}: "5"
    spec:
      containers:
      - name: crunch
        image: busybox
"""
    (job,) = load_objects(manifest)
    assert job.spec.completion_ticks == 5
    assert job.spec.template.spec.restart_policy == "Never"
    assert COMPLETION_TICKS_ANNOTATION not in job.spec.template.annotations

    exported = to_manifest(job, include_status=False)
    annotations = exported["spec"]["template"]["metadata"]["annotations"]
    assert annotations == {COMPLETION_TICKS_ANNOTATION: "5"}
    (again,) = load_objects(yaml.safe_dump(exported))
    assert again.spec.completion_ticks == 5
    assert again.spec.completions == 2


def test_export_state_lists_every_object(sim):
    run_ok(sim, "create deployment web --image=nginx")
    sim.tick()
    kinds = [m["kind"] for m in export_state(sim.state)]
    assert kinds.count("Node") == 3
    assert "Deployment" in kinds
    assert "ReplicaSet" in kinds
    assert "Pod" in kinds
    assert "Namespace" in kinds


@pytest.mark.parametrize(
    "manifest, message",
    [
        ("kind: Widget\nmetadata: {name: w}\n", 'no matches for kind "Widget"'),
        ("kind: Pod\nmetadata: {}\nspec: {containers: [{image: nginx}]}\n", "metadata.name is required"),
        ("kind: Pod\nmetadata: {name: p}\nspec: {containers: []}\n", "spec.containers[0].image is required"),
        ("kind: CronJob\nmetadata: {name: c}\nspec: {schedule: 'sometimes'}\n", "invalid schedule"),
        (
            "kind: PersistentVolumeClaim\nmetadata: {name: data}\n"
            "spec: {resources: {requests: {storage: lots}}}\n",
            "invalid quantity",
        ),
        (
            "kind: PodDisruptionBudget\nmetadata: {name: pdb}\n"
            "spec: {minAvailable: 1, maxUnavailable: 1, selector: {matchLabels: {app: web}}}\n",
            "exactly one of minAvailable or maxUnavailable",
        ),
        (
            "kind: HorizontalPodAutoscaler\nmetadata: {name: h}\n"
            "spec: {scaleTargetRef: {name: web}, minReplicas: 4, maxReplicas: 2}\n",
            "maxReplicas must not be less than minReplicas",
        ),
        (
            "kind: Deployment\nmetadata: {name: d}\nspec:\n  selector: {matchLabels: {app: other}}\n"
            "  template:\n    metadata: {labels: {app: web}}\n    spec: {containers: [{image: nginx}]}\n",
            "selector does not match template labels",
        ),
        ("- just\n- a list\n", "manifest documents must be mappings"),
        ("", "no objects passed to apply"),
    ],
)
def test_invalid_manifests_are_rejected(manifest, message):
    with pytest.raises(ManifestError) as exc:
        load_objects(manifest)
    assert message in str(exc.value)


STATEFULSET = """
apiVersion: apps/v1
kind: StatefulSet
metadata:
  name: db
spec:
  replicas: 1
  serviceName: db
  selector:
    matchLabels:
      app: db
  template:
    metadata:
      labels:
        app: db
    spec:
      containers:
      - name: db
        image: postgres
  volumeClaimTemplates:
  - metadata:
      name: data
    spec:
      storageClassName: fast
"""


@pytest.fixture(scope="module")
def populated():
    sim = make_sim()
    run_ok(
        sim,
        "create storageclass fast --default",
        "create pvc data --size=2Gi",
        "create deployment web --image=nginx --replicas=2",
        "create service clusterip web --tcp=80:8080",
        "create configmap settings --from-literal=mode=fast",
        "create secret generic creds --from-literal=user=admin",
        "create job crunch --image=busybox",
        "create cronjob report --image=busybox --schedule=*/3",
        "create pdb web-pdb --selector=app=web --max-unavailable=1",
        "create daemonset agent --image=fluentd",
        "autoscale deployment web --min=1 --max=3",
    )
    run_ok(sim, "apply -f -", manifest=STATEFULSET)
    sim.run(6)
    return sim


@pytest.mark.parametrize("kind", sorted(CONVERTERS))
def test_every_kind_renders_as_yaml_and_description(populated, kind):
    assert populated.state.objects(kind), f"no {kind} in the populated cluster"
    plural = RESOURCE_PLURALS[kind]

    doc = yaml.safe_load(run_ok(populated, f"get {plural} -A -o yaml"))
    items = doc["items"] if doc["kind"] == "List" else [doc]
    assert {item["kind"] for item in items} == {kind}
    assert all(item["metadata"]["name"] for item in items)

    json.loads(run_ok(populated, f"get {plural} -A -o json"))
    assert run_ok(populated, f"get {plural} -A")
    assert "Events:" in run_ok(populated, f"describe {plural} -A")


def test_claim_manifests_carry_the_requested_size(populated):
    pvc = yaml.safe_load(run_ok(populated, "get pvc data -o yaml"))
    assert pvc["spec"]["resources"] == {"requests": {"storage": "2Gi"}}
    assert pvc["status"]["phase"] == "Bound"

    dry = yaml.safe_load(run_ok(populated, "create pvc scratch --size=5Gi --dry-run=client -o yaml"))
    assert dry["kind"] == "PersistentVolumeClaim"
    assert dry["spec"]["resources"]["requests"]["storage"] == "5Gi"
    assert populated.state.find("PersistentVolumeClaim", "scratch") is None

    sts = yaml.safe_load(run_ok(populated, "get statefulset db -o yaml"))
    claim = sts["spec"]["volumeClaimTemplates"][0]
    assert claim["spec"]["storageClassName"] == "fast"
    assert claim["spec"]["resources"]["requests"]["storage"] == "1Gi"
