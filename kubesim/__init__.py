"""Discrete-tick simulation of a simplified Kubernetes control plane."""

from kubesim.engine import Simulation, TickReport, seed_nodes
from kubesim.lesson import Lesson, ScriptedLesson, TickHook
from kubesim.state import ClusterState, labels_match

__all__ = [
    'ClusterState',
    'Lesson',
    'ScriptedLesson',
    'Simulation',
    'TickHook',
    'TickReport',
    'labels_match',
    'seed_nodes',
]
