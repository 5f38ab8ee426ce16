import copy
import sys
from pathlib import Path

sys.path.append(str(Path(__file__).resolve().parents[1]))

from kubesim.state import (
    NO_EXECUTE,
    NO_SCHEDULE,
    ClusterState,
    Node,
    NodeSpec,
    ObjectMeta,
    Pod,
    PodSpec,
    PodTemplate,
    Taint,
    Toleration,
    labels_match,
    pod_is_ready,
    resolve_int_or_percent,
    template_hash,
    tolerates,
)


def test_labels_match_requires_every_selector_key():
    labels = {"app": "web", "tier": "frontend"}
    assert labels_match({}, labels), "empty selector matches everything"
    assert labels_match({"app": "web"}, labels)
    assert labels_match({"app": "web", "tier": "frontend"}, labels)
    assert not labels_match({"app": "web", "tier": "backend"}, labels)
    assert not labels_match({"release": "1"}, labels)
    assert not labels_match({"app": "web"}, None)


def test_tolerations():
    taint = Taint(key="dedicated", value="gpu", effect=NO_SCHEDULE)
    assert tolerates([Toleration(key="dedicated", value="gpu")], taint)
    assert not tolerates([Toleration(key="dedicated", value="cpu")], taint)
    assert tolerates([Toleration(key="dedicated", operator="Exists")], taint)
    assert tolerates([Toleration(operator="Exists")], taint), "empty key with Exists tolerates every taint"
    assert not tolerates([Toleration(key="dedicated", value="gpu", effect=NO_EXECUTE)], taint)
    assert not tolerates([], taint)


def test_resolve_int_or_percent_rounding():
    assert resolve_int_or_percent("25%", 3, round_up=True) == 1
    assert resolve_int_or_percent("25%", 3, round_up=False) == 0
    assert resolve_int_or_percent("50%", 4, round_up=False) == 2
    assert resolve_int_or_percent(2, 10, round_up=True) == 2
    assert resolve_int_or_percent(None, 10, round_up=True) == 0


def test_template_hash_tracks_pod_template_content():
    template = PodTemplate(labels={"app": "web"}, spec=PodSpec(image="nginx:1.0"))
    same = copy.deepcopy(template)
    assert template_hash(template) == template_hash(same)
    same.spec.image = "nginx:1.1"
    assert template_hash(template) != template_hash(same)


def test_add_find_and_cluster_scope():
    state = ClusterState()
    state.tick = 4
    node = state.add(Node(metadata=ObjectMeta(name="node-1", namespace="ignored"), spec=NodeSpec()))
    pod = state.add(Pod(metadata=ObjectMeta(name="web", namespace="dev"), spec=PodSpec(image="nginx")))

    assert node.metadata.namespace == ""
    assert state.find("Node", "node-1", "anything") is node
    assert state.find("Pod", "web") is None, "pods are namespaced"
    assert state.find("Pod", "web", "dev") is pod
    assert pod.metadata.creation_tick == 4
    assert pod.status.tick_created == 4
    assert [ns.name for ns in state.namespaces] == ["default"]

    state.remove(pod)
    assert state.find("Pod", "web", "dev") is None


def test_events_are_capped():
    state = ClusterState(max_events=5)
    for i in range(8):
        state.record_event("Pod", f"p{i}", "Created", "created")
    assert len(state.events) == 5
    assert state.events[0].object_name == "p3"
    assert [e.object_name for e in state.events_for("Pod", "p7")] == ["p7"]


def test_pod_readiness_gate():
    pod = Pod(metadata=ObjectMeta(name="p"), spec=PodSpec(image="nginx"))
    assert not pod_is_ready(pod), "pending pods are never ready"
    pod.status.phase = "Running"
    assert pod_is_ready(pod)
    pod.metadata.deletion_timestamp = 1
    assert not pod_is_ready(pod)


def test_clone_is_independent():
    state = ClusterState()
    state.add(Pod(metadata=ObjectMeta(name="p"), spec=PodSpec(image="nginx")))
    copied = state.clone()
    copied.pods[0].spec.image = "busybox"
    assert state.pods[0].spec.image == "nginx"
    snap = state.snapshot(include_events=False)
    assert "events" not in snap
    assert snap["pods"][0]["metadata"]["name"] == "p"
