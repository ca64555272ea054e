"""proccompose - declarative multi-process orchestrator."""

__version__ = "0.1.0"

from proccompose.config import ConfigError, CycleError, UnknownDependencyError, load_config, load_specs
from proccompose.core.registry import UnknownProcessError
from proccompose.core.supervisor import Supervisor
from proccompose.models import (
    Condition,
    OrchestratorConfig,
    Phase,
    ProcessSpec,
    ProcessStatus,
    ReadinessProbe,
    Reason,
    RestartPolicy,
)

__all__ = [
    "__version__",
    "Condition",
    "ConfigError",
    "CycleError",
    "OrchestratorConfig",
    "Phase",
    "ProcessSpec",
    "ProcessStatus",
    "ReadinessProbe",
    "Reason",
    "RestartPolicy",
    "Supervisor",
    "UnknownDependencyError",
    "UnknownProcessError",
    "load_config",
    "load_specs",
]
