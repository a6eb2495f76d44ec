"""
Installer Exceptions
====================

One error type carries a kind tag, a message, an optional wrapped cause and
free-form details. The orchestrator decides phase transitions from ``kind``;
the named subclasses exist so call sites can raise and catch by name.

Usage:
    from nrinstall.core.exceptions import ContainerError, ErrorKind

    try:
        environment_id = await pool.acquire(image)
    except InstallerError as e:
        if e.kind is ErrorKind.RESOURCE_EXHAUSTION:
            ...
"""

from enum import Enum
from typing import Any, Dict, Optional


class ErrorKind(str, Enum):
    """Error taxonomy"""
    RESOURCE_EXHAUSTION = "resource_exhaustion"
    CONTAINER = "container"
    EXECUTION = "execution"
    EXECUTION_TIMEOUT = "execution_timeout"
    SCRIPT_GENERATION = "script_generation"
    VALIDATION = "validation"
    INTEGRATION = "integration"


class InstallerError(Exception):
    """Base exception for all installer errors"""

    kind: ErrorKind = ErrorKind.INTEGRATION

    def __init__(
        self,
        message: str,
        kind: Optional[ErrorKind] = None,
        cause: Optional[BaseException] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        if kind is not None:
            self.kind = kind
        self.cause = cause
        self.details = details or {}
        super().__init__(self.message)
        if cause is not None:
            self.__cause__ = cause

    @property
    def code(self) -> str:
        return self.kind.value.upper()

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "code": self.code,
            "kind": self.kind.value,
            "message": self.message,
            "details": self.details,
        }
        if self.cause is not None:
            data["cause"] = f"{type(self.cause).__name__}: {self.cause}"
        return data


# ============================================
# Pool / runtime errors
# ============================================

class ResourceExhaustionError(InstallerError):
    """Pool cannot satisfy an acquire request (all environments busy)"""
    kind = ErrorKind.RESOURCE_EXHAUSTION


class ContainerError(InstallerError):
    """Lifecycle or file transfer failure against the container runtime"""
    kind = ErrorKind.CONTAINER


# ============================================
# Execution errors
# ============================================

class ExecutionError(InstallerError):
    """Command run failed (exec create, stream error, non-zero exit)"""
    kind = ErrorKind.EXECUTION


class ExecutionTimeoutError(ExecutionError):
    """Command exceeded its time bound"""
    kind = ErrorKind.EXECUTION_TIMEOUT

    def __init__(self, timeout: float, command: Optional[str] = None, **kwargs):
        self.timeout = timeout
        details = kwargs.pop("details", None) or {}
        details["timeout"] = timeout
        super().__init__(
            f"Command execution timed out after {timeout} seconds",
            details=details,
            **kwargs
        )
        self.command = command


# ============================================
# Script errors
# ============================================

class ScriptGenerationError(InstallerError):
    """No template resolved or rendering failed"""
    kind = ErrorKind.SCRIPT_GENERATION


class ValidationError(InstallerError):
    """Security gate rejected a script, or the scan itself failed"""
    kind = ErrorKind.VALIDATION


# ============================================
# Orchestration errors
# ============================================

class IntegrationError(InstallerError):
    """Orchestration-level error, optionally wrapping one of the above"""
    kind = ErrorKind.INTEGRATION

    @classmethod
    def wrap(
        cls,
        error: BaseException,
        attempt_id: Optional[str] = None,
        phase: Optional[str] = None
    ) -> "IntegrationError":
        """Wrap any error with attempt context, keeping the original kind"""
        kind = error.kind if isinstance(error, InstallerError) else ErrorKind.INTEGRATION
        message = error.message if isinstance(error, InstallerError) else str(error)
        details = {}
        if attempt_id:
            details["attempt_id"] = attempt_id
        if phase:
            details["phase"] = phase
        return cls(message, kind=kind, cause=error, details=details)
