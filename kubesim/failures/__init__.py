"""Fault injection for scripted lessons."""

from kubesim.failures.injector import FaultEvent, FaultPlan, FaultType, inject

__all__ = ['FaultEvent', 'FaultPlan', 'FaultType', 'inject']
