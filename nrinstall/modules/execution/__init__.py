"""
Execution Module - pooled container environments and script execution

Key Components:
- ContainerRuntime / DockerRuntime: capability set over the container runtime
- ContainerPool: bounded, health-checked environments per image
- ScriptSecurityGate: pattern scan + shellcheck before anything runs
- ScriptExecutor: run commands and scripts in leased environments
"""

from .runtime import (
    ContainerRuntime,
    DockerRuntime,
    get_docker_client,
)

from .container_pool import (
    ContainerPool,
    PoolConfig,
    PooledEnvironment,
    HealthStatus,
)

from .script_validator import (
    ScriptSecurityGate,
    ScriptIssue,
    ScriptValidationReport,
    IssueSeverity,
)

from .script_executor import (
    ScriptExecutor,
    ExecutorConfig,
    ExecutionResult,
    VerificationCheck,
    VerificationResult,
    CheckOutcome,
)

__all__ = [
    # Runtime
    "ContainerRuntime",
    "DockerRuntime",
    "get_docker_client",

    # Pool
    "ContainerPool",
    "PoolConfig",
    "PooledEnvironment",
    "HealthStatus",

    # Security gate
    "ScriptSecurityGate",
    "ScriptIssue",
    "ScriptValidationReport",
    "IssueSeverity",

    # Executor
    "ScriptExecutor",
    "ExecutorConfig",
    "ExecutionResult",
    "VerificationCheck",
    "VerificationResult",
    "CheckOutcome",
]
