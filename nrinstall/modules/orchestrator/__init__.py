"""Installation orchestration: phases, transitions and the orchestrator"""

from .state_machine import (
    InstallPhase,
    InstallationAttempt,
    StateTransition,
    INSTALL_TRANSITIONS,
)
from .installation_orchestrator import (
    InstallationOrchestrator,
    OrchestratorConfig,
)

__all__ = [
    "InstallPhase",
    "InstallationAttempt",
    "StateTransition",
    "INSTALL_TRANSITIONS",
    "InstallationOrchestrator",
    "OrchestratorConfig",
]
