"""
Installation State Machine

Per-attempt phases and the transitions allowed between them:

    GENERATING_SCRIPT ─┬─> DONE (dry run)
                       ├─> FAILED (generation / gate failure)
                       └─> PROVISIONING ─┬─> FAILED (nothing has run yet)
                                         └─> EXECUTING ─┬─> VERIFYING ─┬─> COMPLETED
                                                        │              └─> ROLLING_BACK
                                                        ├─> COMPLETED (verification disabled)
                                                        ├─> ROLLING_BACK ──> FAILED
                                                        └─> FAILED (rollback disabled)

An InstallationAttempt lives for one orchestration call and is discarded.
Every transition is recorded and logged.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Set

from nrinstall.core.exceptions import IntegrationError
from nrinstall.core.logging_config import logger as default_logger


class InstallPhase(str, Enum):
    """Installation attempt phases"""
    GENERATING_SCRIPT = "generating_script"
    PROVISIONING = "provisioning"
    EXECUTING = "executing"
    VERIFYING = "verifying"
    ROLLING_BACK = "rolling_back"
    COMPLETED = "completed"
    FAILED = "failed"
    DONE = "done"


TERMINAL_PHASES: Set[InstallPhase] = {InstallPhase.COMPLETED, InstallPhase.FAILED, InstallPhase.DONE}

INSTALL_TRANSITIONS: Dict[InstallPhase, Set[InstallPhase]] = {
    InstallPhase.GENERATING_SCRIPT: {InstallPhase.DONE, InstallPhase.PROVISIONING, InstallPhase.FAILED},
    InstallPhase.PROVISIONING: {InstallPhase.EXECUTING, InstallPhase.FAILED},
    InstallPhase.EXECUTING: {
        InstallPhase.VERIFYING, InstallPhase.COMPLETED, InstallPhase.ROLLING_BACK, InstallPhase.FAILED
    },
    InstallPhase.VERIFYING: {InstallPhase.COMPLETED, InstallPhase.ROLLING_BACK, InstallPhase.FAILED},
    InstallPhase.ROLLING_BACK: {InstallPhase.FAILED},
    InstallPhase.COMPLETED: set(),
    InstallPhase.FAILED: set(),
    InstallPhase.DONE: set(),
}


@dataclass
class StateTransition:
    """Record of a phase transition"""
    from_phase: str
    to_phase: str
    timestamp: datetime = field(default_factory=datetime.utcnow)
    reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "from": self.from_phase,
            "to": self.to_phase,
            "timestamp": self.timestamp.isoformat(),
            "reason": self.reason,
        }


@dataclass
class InstallationAttempt:
    """Transient orchestration state for one install/uninstall call"""
    attempt_id: str
    integration: str
    operation: str = "install"
    parameters: Dict[str, Any] = field(default_factory=dict)
    image: Optional[str] = None
    environment_id: Optional[str] = None
    install_script: Optional[str] = None
    verify_script: Optional[str] = None
    rollback_script: Optional[str] = None
    phase: InstallPhase = InstallPhase.GENERATING_SCRIPT
    started_at: datetime = field(default_factory=datetime.utcnow)
    transitions: List[StateTransition] = field(default_factory=list)

    @property
    def is_terminal(self) -> bool:
        return self.phase in TERMINAL_PHASES

    def can_transition(self, to_phase: InstallPhase) -> bool:
        return to_phase in INSTALL_TRANSITIONS.get(self.phase, set())

    def transition(self, to_phase: InstallPhase, reason: Optional[str] = None, logger=None):
        """
        Move to ``to_phase``.

        Raises:
            IntegrationError: the transition is not allowed from the current phase
        """
        if not self.can_transition(to_phase):
            allowed = sorted(phase.value for phase in INSTALL_TRANSITIONS.get(self.phase, set()))
            raise IntegrationError(
                f"Invalid transition: {self.phase.value} -> {to_phase.value}. Allowed: {allowed}",
                details={"attempt_id": self.attempt_id}
            )

        record = StateTransition(from_phase=self.phase.value, to_phase=to_phase.value, reason=reason)
        self.transitions.append(record)
        previous, self.phase = self.phase, to_phase

        (logger or default_logger).log_phase_transition(
            self.attempt_id, previous.value, to_phase.value, reason=reason
        )

    def history(self) -> List[str]:
        """Phases visited, in order, starting with the initial one"""
        if not self.transitions:
            return [self.phase.value]
        return [self.transitions[0].from_phase] + [t.to_phase for t in self.transitions]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "attempt_id": self.attempt_id,
            "integration": self.integration,
            "operation": self.operation,
            "phase": self.phase.value,
            "environment_id": self.environment_id,
            "started_at": self.started_at.isoformat(),
            "transitions": [t.to_dict() for t in self.transitions],
        }
