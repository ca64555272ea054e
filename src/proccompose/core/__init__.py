"""proccompose core components."""

from proccompose.core.graph import DependencyGraph, GraphBuilder
from proccompose.core.health import HealthChecker, HealthCheckResult, ProbeError
from proccompose.core.process import LaunchError, ProcessRunner
from proccompose.core.registry import ProcessRegistry, UnknownProcessError
from proccompose.core.restart import RestartDecision, RestartPolicyManager
from proccompose.core.scheduler import InvalidTransition, Scheduler
from proccompose.core.supervisor import Supervisor

__all__ = [
    "DependencyGraph",
    "GraphBuilder",
    "HealthChecker",
    "HealthCheckResult",
    "InvalidTransition",
    "LaunchError",
    "ProbeError",
    "ProcessRegistry",
    "ProcessRunner",
    "RestartDecision",
    "RestartPolicyManager",
    "Scheduler",
    "Supervisor",
    "UnknownProcessError",
]
