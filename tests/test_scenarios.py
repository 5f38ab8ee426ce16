"""End-to-end lessons: commands plus ticks, checked against the reconciled state."""

import sys
from pathlib import Path

sys.path.append(str(Path(__file__).resolve().parents[1]))

from conftest import make_sim, run_ok
from kubesim.failures import FaultEvent, FaultPlan, FaultType
from kubesim.state import FAILED, PENDING, RUNNING, pod_is_active, pod_is_ready


def web_pods(sim, **labels):
    selector = labels or {"app": "web"}
    return [p for p in sim.state.pods_matching(selector) if pod_is_active(p)]


def test_cordoned_node_loses_its_pods_and_stays_empty(sim):
    run_ok(sim, "create deployment web --image=nginx --replicas=6")
    sim.run(2)
    assert len(sim.state.pods_on_node("node-3")) == 2
    stranded = {p.name for p in sim.state.pods_on_node("node-3")}

    run_ok(sim, "cordon node-3")
    node = sim.state.find("Node", "node-3")
    assert node.spec.unschedulable and not node.ready

    sim.tick()
    for name in stranded:
        pod = sim.state.find("Pod", name)
        assert pod.status.phase == FAILED
        assert pod.terminating
    replacements = [p for p in web_pods(sim) if p.name not in stranded and p.status.phase == PENDING]
    assert len(replacements) == 2
    assert {p.spec.node_name for p in replacements} <= {"node-1", "node-2"}

    sim.tick()
    assert sum(1 for p in web_pods(sim) if p.status.phase == RUNNING) == 6

    run_ok(sim, "uncordon node-3")
    sim.tick()
    assert sim.state.find("Node", "node-3").ready
    assert sum(1 for p in web_pods(sim) if p.status.phase == RUNNING) == 6
    assert sim.state.pods_on_node("node-3") == [], "running pods are not rebalanced"


def test_service_selects_pods_matching_all_labels(sim):
    run_ok(
        sim,
        "run web-a --image=nginx --labels=app=web",
        "run web-b --image=nginx --labels=app=web,tier=frontend",
        "create service web --selector=app=web,tier=frontend --port=80",
    )
    sim.run(2)
    assert sim.state.find("Service", "web").status.endpoints == ["web-b"]

    run_ok(sim, "label pod web-a tier=frontend")
    sim.tick()
    assert sim.state.find("Service", "web").status.endpoints == ["web-a", "web-b"]


def test_service_without_selector_has_no_endpoints(sim):
    manifest = """
apiVersion: v1
kind: Service
metadata:
  name: headless
spec:
  ports:
  - port: 80
"""
    run_ok(sim, "run web-a --image=nginx --labels=app=web")
    run_ok(sim, "apply -f -", manifest=manifest)
    sim.run(2)
    assert sim.state.find("Service", "headless").spec.selector == {}
    assert sim.state.find("Service", "headless").status.endpoints == []


def test_job_completes_despite_an_injected_failure():
    plan = FaultPlan([FaultEvent(tick=3, fault_type=FaultType.POD_FAIL, target="batch")])
    sim = make_sim(hooks=[plan])
    run_ok(sim, "create job batch --image=busybox --completions=3")
    sim.run(30)

    job = sim.state.find("Job", "batch")
    assert job.status.phase == "Complete"
    assert job.status.succeeded == 3
    assert job.status.failed == 1
    assert len(plan.fired) == 1
    created = [e for e in sim.state.events_for("Job", "batch") if e.reason == "SuccessfulCreate"]
    assert len(created) == 4
    assert any(e.reason == "PodFailed" for e in sim.state.events_for("Job", "batch"))


def test_job_fails_after_backoff_limit():
    sim = make_sim(failure_rules={"crash:1": "CrashLoopBackOff"})
    run_ok(sim, "create job flaky --image=crash:1 --backoff-limit=2")
    sim.run(6)
    job = sim.state.find("Job", "flaky")
    assert job.status.phase == "Failed"
    assert job.status.failed == 2
    assert any(e.reason == "BackoffLimitExceeded" for e in sim.state.events_for("Job", "flaky"))


def test_drain_respects_disruption_budget(sim):
    run_ok(
        sim,
        "create deployment web --image=nginx --replicas=6",
        "create pdb web-pdb --selector=app=web --max-unavailable=1",
    )
    sim.run(2)
    assert len(sim.state.pods_on_node("node-1")) == 2

    run_ok(sim, "drain node-1")
    for _ in range(8):
        sim.tick()
        ready = sum(1 for p in sim.state.pods_matching({"app": "web"}) if pod_is_ready(p))
        assert 6 - ready <= 1, f"tick {sim.state.tick}: {6 - ready} pods unavailable"

    node = sim.state.find("Node", "node-1")
    assert not node.status.draining
    assert node.spec.unschedulable
    assert [p for p in sim.state.pods_on_node("node-1") if pod_is_active(p)] == []
    assert any(e.reason == "EvictionBlocked" for e in sim.state.events_for("Node", "node-1"))
    assert any(e.reason == "NodeDrained" for e in sim.state.events_for("Node", "node-1"))
    assert sum(1 for p in sim.state.pods_matching({"app": "web"}) if pod_is_ready(p)) == 6


def test_converged_cluster_is_a_fixed_point(sim):
    run_ok(
        sim,
        "create deployment web --image=nginx --replicas=3",
        "expose deployment web --port=80",
    )
    sim.run(4)
    before = sim.state.snapshot(include_events=False)
    report = sim.tick()
    after = sim.state.snapshot(include_events=False)
    before.pop("tick")
    after.pop("tick")
    assert before == after
    assert not report.changed


def test_rolling_update_keeps_capacity_and_can_roll_back(sim):
    run_ok(sim, "create deployment web --image=nginx:1.0 --replicas=3")
    sim.run(2)

    run_ok(sim, "set image deployment/web web=nginx:1.1")
    for _ in range(20):
        sim.tick()
        ready = [p for p in sim.state.pods_matching({"app": "web"}) if pod_is_ready(p)]
        assert len(ready) >= 3, f"tick {sim.state.tick}: only {len(ready)} ready"

    pods = web_pods(sim)
    assert len(pods) == 3
    assert {p.spec.image for p in pods} == {"nginx:1.1"}
    dep = sim.state.find("Deployment", "web")
    assert dep.status.updated_replicas == 3
    assert any(e.reason == "RolloutComplete" for e in sim.state.events_for("Deployment", "web"))
    assert run_ok(sim, "rollout status deployment/web") == 'deployment "web" successfully rolled out'
    assert len(sim.state.replica_sets) == 2

    run_ok(sim, "rollout undo deployment/web")
    sim.run(20)
    pods = web_pods(sim)
    assert {p.spec.image for p in pods} == {"nginx:1.0"}
    assert len(sim.state.replica_sets) == 2, "rollback reuses the old replica set"
    assert dep.status.revision == 3


def test_recreate_strategy_stops_old_pods_first(sim):
    manifest = """
apiVersion: apps/v1
kind: Deployment
metadata:
  name: web
spec:
  replicas: 2
  strategy:
    type: Recreate
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
        image: nginx:1.0
"""
    run_ok(sim, "apply -f -", manifest=manifest)
    sim.run(2)
    run_ok(sim, "set image deployment/web web=nginx:2.0")
    for _ in range(8):
        sim.tick()
        images = {p.spec.image for p in web_pods(sim)}
        assert len(images) <= 1, "old and new pods never run side by side"
    assert {p.spec.image for p in web_pods(sim)} == {"nginx:2.0"}


def test_readiness_probe_delays_endpoints(sim):
    manifest = """
apiVersion: v1
kind: Pod
metadata:
  name: slow
  labels:
    app: slow
spec:
  containers:
  - name: slow
    image: nginx
    readinessProbe:
      initialDelaySeconds: 3
---
apiVersion: v1
kind: Service
metadata:
  name: slow
spec:
  selector:
    app: slow
  ports:
  - port: 80
"""
    run_ok(sim, "apply -f -", manifest=manifest)
    sim.run(4)
    assert sim.state.find("Service", "slow").status.endpoints == []
    assert sim.state.find("Pod", "slow").status.phase == RUNNING
    sim.tick()
    assert sim.state.find("Service", "slow").status.endpoints == ["slow"]


def test_liveness_probe_restarts_pod_that_never_becomes_ready(sim):
    manifest = """
apiVersion: v1
kind: Pod
metadata:
  name: stuck
spec:
  containers:
  - name: stuck
    image: nginx
    readinessProbe:
      initialDelaySeconds: 10
    livenessProbe:
      initialDelaySeconds: 1
      periodSeconds: 1
      failureThreshold: 1
"""
    run_ok(sim, "apply -f -", manifest=manifest)
    sim.run(5)
    pod = sim.state.find("Pod", "stuck")
    assert pod.status.phase == "CrashLoopBackOff"
    assert pod.status.restart_count == 1
    assert any(e.reason == "Unhealthy" for e in sim.state.events_for("Pod", "stuck"))
    sim.tick()
    assert pod.status.phase == RUNNING


def test_image_failure_rules():
    sim = make_sim(failure_rules={"nginx:bad": "ImagePullError", "crash:1": "CrashLoopBackOff"})
    run_ok(sim, "create deployment web --image=nginx:bad --replicas=2", "run crashy --image=crash:1")
    sim.run(4)
    for pod in web_pods(sim):
        assert pod.status.phase == PENDING
        assert pod.status.reason == "ImagePullError"
    assert "ImagePullError" in run_ok(sim, "get pods")
    crashy = sim.state.find("Pod", "crashy")
    assert crashy.status.phase == "CrashLoopBackOff"
    assert crashy.status.restart_count >= 2
    assert crashy.spec.node_name is None

    run_ok(sim, "set image deployment/web web=nginx:1.25")
    sim.run(20)
    pods = web_pods(sim)
    assert len(pods) == 2
    assert all(p.status.phase == RUNNING and p.spec.image == "nginx:1.25" for p in pods)


def test_missing_configmap_blocks_start_until_created(sim):
    manifest = """
apiVersion: v1
kind: Pod
metadata:
  name: app
spec:
  containers:
  - name: app
    image: nginx
    envFrom:
    - configMapRef:
        name: app-config
"""
    run_ok(sim, "apply -f -", manifest=manifest)
    sim.run(3)
    pod = sim.state.find("Pod", "app")
    assert pod.status.phase == PENDING
    assert pod.status.reason == "CreateContainerConfigError"
    run_ok(sim, "create configmap app-config --from-literal=mode=prod")
    sim.tick()
    assert pod.status.phase == RUNNING


def test_dynamic_provisioning_and_reclaim(sim):
    run_ok(
        sim,
        "create storageclass fast --provisioner=example.com/ssd",
        "create pvc data --storage-class=fast --size=2Gi",
    )
    sim.tick()
    pvc = sim.state.find("PersistentVolumeClaim", "data")
    assert pvc.status.phase == "Bound"
    pv = sim.state.find("PersistentVolume", pvc.spec.volume_name)
    assert pv.status.phase == "Bound"
    assert pv.spec.claim_ref == "default/data"
    assert pv.spec.capacity == "2Gi"

    run_ok(sim, "delete pvc data")
    sim.tick()
    assert sim.state.persistent_volumes == []
    assert any(e.reason == "VolumeDeleted" for e in sim.state.events)


def test_static_volume_binding_and_pending_claim(sim):
    manifest = """
apiVersion: v1
kind: PersistentVolume
metadata:
  name: disk-1
spec:
  storageClassName: manual
  capacity:
    storage: 5Gi
---
apiVersion: v1
kind: PersistentVolumeClaim
metadata:
  name: small
spec:
  storageClassName: manual
  resources:
    requests:
      storage: 1Gi
---
apiVersion: v1
kind: PersistentVolumeClaim
metadata:
  name: orphan
spec:
  resources:
    requests:
      storage: 1Gi
---
apiVersion: v1
kind: Pod
metadata:
  name: consumer
spec:
  containers:
  - name: consumer
    image: nginx
  volumes:
  - name: data
    persistentVolumeClaim:
      claimName: orphan
"""
    run_ok(sim, "apply -f -", manifest=manifest)
    sim.run(3)
    assert sim.state.find("PersistentVolumeClaim", "small").spec.volume_name == "disk-1"
    orphan = sim.state.find("PersistentVolumeClaim", "orphan")
    assert orphan.status.phase == "Pending"
    assert [e.reason for e in sim.state.events_for("PersistentVolumeClaim", "orphan")] == ["FailedBinding"]
    consumer = sim.state.find("Pod", "consumer")
    assert consumer.spec.node_name is None
    assert "unbound immediate PersistentVolumeClaims" in consumer.status.message


def test_statefulset_starts_pods_in_order(sim):
    manifest = """
apiVersion: apps/v1
kind: StatefulSet
metadata:
  name: db
spec:
  replicas: 3
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
"""
    run_ok(sim, "apply -f -", manifest=manifest)
    sim.tick()
    assert [p.name for p in sim.state.pods] == ["db-0"]
    sim.run(2)
    assert sorted(p.name for p in sim.state.pods) == ["db-0", "db-1"]
    sim.run(10)
    assert sorted(p.name for p in sim.state.pods) == ["db-0", "db-1", "db-2"]
    assert sim.state.find("StatefulSet", "db").status.ready_replicas == 3


def test_daemonset_places_one_pod_per_eligible_node(sim):
    run_ok(sim, "taint node node-3 dedicated=infra:NoSchedule", "create daemonset agent --image=fluentd")
    sim.run(2)
    placed = sorted(p.spec.node_name for p in sim.state.pods_matching({"app": "agent"}))
    assert placed == ["node-1", "node-2"]
    assert all(p.status.phase == RUNNING for p in sim.state.pods)

    result = sim.execute("drain node-1")
    assert not result.ok
    assert "--ignore-daemonsets" in result.output
    assert not sim.state.find("Node", "node-1").spec.unschedulable
    run_ok(sim, "drain node-1 --ignore-daemonsets")
    sim.run(2)
    assert sim.state.find("Node", "node-1").spec.unschedulable
    assert len(sim.state.pods_on_node("node-1")) == 1, "daemon pods stay on drained nodes"


def test_cronjob_creates_jobs_on_schedule(sim):
    run_ok(sim, "create cronjob report --image=busybox --schedule=*/3")
    sim.run(8)
    jobs = sorted(j.name for j in sim.state.jobs)
    assert jobs == ["report-3", "report-6"]
    assert sim.state.find("Job", "report-3").status.phase == "Complete"


def test_hpa_scales_on_cpu_load():
    plan = FaultPlan([FaultEvent(tick=2, fault_type=FaultType.CPU_LOAD, selector={"app": "web"},
                                 cpu_percent=100.0, all_matching=True)])
    sim = make_sim(hooks=[plan])
    run_ok(sim, "create deployment web --image=nginx --replicas=2",
           "autoscale deployment web --min=1 --max=5 --cpu-percent=50")
    sim.run(3)
    dep = sim.state.find("Deployment", "web")
    assert dep.spec.replicas == 4
    hpa = sim.state.find("HorizontalPodAutoscaler", "web")
    assert hpa.status.current_cpu_percent == 100
    assert any(e.reason == "SuccessfulRescale" for e in sim.state.events_for("HorizontalPodAutoscaler", "web"))


def test_deleting_a_deployment_cascades(sim):
    run_ok(sim, "create deployment web --image=nginx --replicas=2")
    sim.run(2)
    run_ok(sim, "delete deployment web")
    sim.run(3)
    assert sim.state.deployments == []
    assert sim.state.replica_sets == []
    assert sim.state.pods == []


def test_node_down_fault_reschedules_pods():
    plan = FaultPlan([
        FaultEvent(tick=3, fault_type=FaultType.NODE_DOWN, target="node-1"),
        FaultEvent(tick=6, fault_type=FaultType.NODE_UP, target="node-1"),
    ])
    sim = make_sim(hooks=[plan])
    run_ok(sim, "create deployment web --image=nginx --replicas=3")
    sim.run(5)
    assert not sim.state.find("Node", "node-1").ready
    running = [p for p in web_pods(sim) if p.status.phase == RUNNING]
    assert len(running) == 3
    assert all(p.spec.node_name != "node-1" for p in running)
    sim.tick()
    assert sim.state.find("Node", "node-1").ready


def test_goal_check_reported_per_tick():
    sim = make_sim(goal=lambda state: sum(1 for p in state.pods if pod_is_ready(p)) == 2)
    run_ok(sim, "create deployment web --image=nginx --replicas=2")
    first = sim.tick()
    assert first.goal_met is False
    second = sim.tick()
    assert second.goal_met is True


def test_hpa_leaves_deployments_without_cpu_reports_alone(sim):
    run_ok(sim, "create deployment web --image=nginx --replicas=5",
           "autoscale deployment web --min=2 --max=10 --cpu-percent=50")
    sim.run(3)
    assert sim.state.find("Deployment", "web").spec.replicas == 5
    hpa = sim.state.find("HorizontalPodAutoscaler", "web")
    assert hpa.status.current_cpu_percent is None
    assert hpa.status.desired_replicas == 5
    assert sim.state.events_for("HorizontalPodAutoscaler", "web") == []
    assert "<unknown>/50%" in run_ok(sim, "get hpa")


def test_hpa_without_cpu_reports_still_clamps_to_bounds(sim):
    run_ok(sim, "create deployment web --image=nginx --replicas=1",
           "autoscale deployment web --min=2 --max=4")
    sim.tick()
    assert sim.state.find("Deployment", "web").spec.replicas == 2
    reasons = [e.reason for e in sim.state.events_for("HorizontalPodAutoscaler", "web")]
    assert reasons == ["SuccessfulRescale"]


def test_hpa_reports_a_missing_target_once(sim):
    manifest = """
apiVersion: autoscaling/v1
kind: HorizontalPodAutoscaler
metadata:
  name: ghost
spec:
  scaleTargetRef:
    kind: Deployment
    name: ghost
  minReplicas: 1
  maxReplicas: 3
"""
    run_ok(sim, "apply -f -", manifest=manifest)
    sim.run(3)
    events = sim.state.events_for("HorizontalPodAutoscaler", "ghost")
    assert [(e.type, e.reason) for e in events] == [("Warning", "FailedGetScale")]
    assert events[0].message == 'Unable to find target Deployment "ghost"'


def test_relabelled_pod_is_released_then_adopted_again(sim):
    run_ok(sim, "create deployment web --image=nginx --replicas=2")
    sim.run(2)
    stray = web_pods(sim)[0]

    run_ok(sim, f"label pod {stray.name} app=other --overwrite")
    sim.run(2)
    assert sim.state.find("Pod", stray.name) is stray
    assert not stray.terminating, "released pods are not deleted"
    assert stray.metadata.owner_reference is None
    assert stray.status.phase == RUNNING
    assert len(web_pods(sim)) == 2, "the replica set replaces the released pod"
    assert [e.reason for e in sim.state.events_for("Pod", stray.name)].count("Released") == 1

    run_ok(sim, f"label pod {stray.name} app=web --overwrite")
    sim.tick()
    assert stray.metadata.owner_reference is not None
    assert "Adopted" in [e.reason for e in sim.state.events_for("Pod", stray.name)]
    assert len(web_pods(sim)) == 2, "the surplus replica is scaled away after adoption"


def test_no_execute_taint_evicts_untolerating_pods(sim):
    tolerant = """
apiVersion: v1
kind: Pod
metadata:
  name: tolerant
spec:
  nodeName: node-1
  tolerations:
  - key: dedicated
    operator: Exists
    effect: NoExecute
  containers:
  - name: tolerant
    image: nginx
"""
    run_ok(sim, "create deployment web --image=nginx --replicas=3")
    sim.run(2)
    victim = sim.state.pods_on_node("node-1")[0]
    run_ok(sim, "apply -f -", manifest=tolerant)

    run_ok(sim, "taint node node-1 dedicated=gpu:NoExecute")
    sim.tick()
    assert victim.terminating
    assert victim.status.phase == FAILED
    assert victim.status.reason == "TaintManagerEviction"
    warnings = [e for e in sim.state.events_for("Pod", victim.name) if e.type == "Warning"]
    assert [e.reason for e in warnings] == ["TaintManagerEviction"]
    assert not sim.state.find("Pod", "tolerant").terminating

    sim.run(3)
    assert [p.name for p in sim.state.pods_on_node("node-1")] == ["tolerant"]
    pods = web_pods(sim)
    assert len(pods) == 3
    assert all(p.status.phase == RUNNING for p in pods)


def test_oom_failure_rule_restarts_with_backoff():
    sim = make_sim(failure_rules={"hog:1": "OOMKilled"})
    run_ok(sim, "run hungry --image=hog:1", "run once --image=hog:1 --restart=Never")
    sim.run(4)

    hungry = sim.state.find("Pod", "hungry")
    assert hungry.status.phase == "OOMKilled"
    assert hungry.status.reason == "OOMKilled"
    assert hungry.status.restart_count >= 2
    assert "OOMKilled" in run_ok(sim, "get pods")
    assert "OOMKilled" in run_ok(sim, "logs hungry")
    assert "BackOff" in [e.reason for e in sim.state.events_for("Pod", "hungry")]

    once = sim.state.find("Pod", "once")
    assert once.status.phase == FAILED
    assert once.status.reason == "OOMKilled"
