"""
Installation Orchestrator

Sequences one installation attempt through its phases:

    GENERATING_SCRIPT  render install (+ verify, rollback) scripts, gate the
                       install script; dry run stops here with DONE
    PROVISIONING       lease an environment for the base image
    EXECUTING          run the install script (bounded retries, default 0)
    VERIFYING          verify script + configured checks, each with retries
    ROLLING_BACK       best-effort rollback script; its failure never
                       replaces the original cause
    COMPLETED / FAILED

Pool, executor and generation errors are caught here and turned into phase
transitions; callers always get an InstallationResponse. The environment is
leased once and held across EXECUTING, VERIFYING and ROLLING_BACK; the lease
releases it exactly once.

Failure responses carry the phase-appropriate logs:
    install failed       [install output, rollback output]
    verification failed  [install output, verification output, rollback output]
"""

import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from nrinstall.config.integration_defaults import IntegrationDefaults
from nrinstall.core.config import settings
from nrinstall.core.exceptions import (
    ContainerError,
    ErrorKind,
    ExecutionError,
    InstallerError,
    IntegrationError,
    ValidationError,
)
from nrinstall.core.logging_config import logger as default_logger, set_attempt_id, set_integration
from nrinstall.core.security import (
    escape_shell_arg,
    generate_secure_id,
    mask_parameters,
    mask_sensitive_data,
    validate_integration_name,
)
from nrinstall.modules.execution.container_pool import ContainerPool
from nrinstall.modules.execution.script_executor import (
    ExecutionResult,
    ScriptExecutor,
    VerificationCheck,
)
from nrinstall.modules.execution.script_validator import ScriptSecurityGate
from nrinstall.modules.generation.template_engine import TemplateScriptGenerator
from nrinstall.modules.orchestrator.state_machine import InstallationAttempt, InstallPhase
from nrinstall.schemas.installation import (
    InstallationRequest,
    InstallationResponse,
    VerificationCheckSpec,
)
from nrinstall.services.retry import with_retry


@dataclass
class OrchestratorConfig:
    """Orchestration policy (loaded from settings)"""
    base_image: str = field(default_factory=lambda: settings.CONTAINER_DEFAULT_IMAGE)
    license_key: str = field(default_factory=lambda: settings.LICENSE_KEY)
    execution_timeout: float = field(default_factory=lambda: settings.EXECUTION_TIMEOUT_SECONDS)
    verify_timeout: float = field(default_factory=lambda: settings.VERIFY_TIMEOUT)
    install_retries: int = field(default_factory=lambda: settings.INSTALL_RETRIES)
    retry_base_delay: float = field(default_factory=lambda: settings.RETRY_BASE_DELAY)
    retry_max_delay: float = field(default_factory=lambda: settings.RETRY_MAX_DELAY)
    verify_enabled: bool = field(default_factory=lambda: settings.VERIFY_ENABLED)
    rollback_on_error: bool = field(default_factory=lambda: settings.ROLLBACK_ON_ERROR)
    collect_diagnostics: bool = field(default_factory=lambda: settings.COLLECT_DIAGNOSTICS)
    max_integration_name_length: int = field(default_factory=lambda: settings.MAX_INTEGRATION_NAME_LENGTH)


class InstallationOrchestrator:
    """
    Install / uninstall integrations in pooled environments.

    Usage:
        orchestrator = InstallationOrchestrator(pool, executor, generator, gate=gate)
        response = await orchestrator.install_integration(
            InstallationRequest(integration="redis", parameters={"redis_port": 6379})
        )
    """

    def __init__(
        self,
        pool: ContainerPool,
        executor: ScriptExecutor,
        generator: TemplateScriptGenerator,
        gate: Optional[ScriptSecurityGate] = None,
        defaults: Optional[IntegrationDefaults] = None,
        config: Optional[OrchestratorConfig] = None,
        logger=None
    ):
        self.pool = pool
        self.executor = executor
        self.generator = generator
        self.gate = gate
        self.defaults = defaults
        self.config = config or OrchestratorConfig()
        self.logger = logger or default_logger

    # =========================================================================
    # Caller contract
    # =========================================================================

    async def generate_script(
        self,
        integration: str,
        parameters: Optional[Dict[str, Any]] = None,
        operation: str = "install"
    ) -> str:
        """
        Render a script without running anything.

        Raises:
            ValidationError: invalid integration name
            ScriptGenerationError: no template / render failure
        """
        self._validate_integration(integration)
        params = self._build_parameters(integration, parameters or {}, None)
        return await self.generator.generate_script(integration, params, operation=operation)

    async def install_integration(self, request: InstallationRequest) -> InstallationResponse:
        """Install with verification and rollback; never raises"""
        return await self._orchestrate(request, "install")

    async def uninstall_integration(self, request: InstallationRequest) -> InstallationResponse:
        """Run the uninstall script; no verification, no rollback; never raises"""
        return await self._orchestrate(request, "uninstall")

    # =========================================================================
    # Orchestration
    # =========================================================================

    async def _orchestrate(self, request: InstallationRequest, operation: str) -> InstallationResponse:
        attempt = InstallationAttempt(
            attempt_id=generate_secure_id("att-"),
            integration=request.integration,
            operation=operation,
            image=request.base_image or self.config.base_image,
        )
        set_attempt_id(attempt.attempt_id)
        set_integration(request.integration)
        started = time.monotonic()

        try:
            response = await self._run_attempt(attempt, request)
        except Exception as e:
            # Anything unexpected still yields a structured failure
            error = IntegrationError.wrap(e, attempt_id=attempt.attempt_id, phase=attempt.phase.value)
            self.logger.log_error_with_context(error, context=f"{operation} {request.integration}")
            if attempt.can_transition(InstallPhase.FAILED):
                attempt.transition(InstallPhase.FAILED, reason="unexpected error", logger=self.logger)
            response = self._response(
                attempt, False, f"{self._label(operation)} failed: {error.message}", [], error=error
            )

        self.logger.log_performance(
            f"{operation}_integration",
            (time.monotonic() - started) * 1000,
            threshold_ms=self.config.execution_timeout * 1000,
            attempt_id=attempt.attempt_id,
        )
        return response

    async def _run_attempt(self, attempt: InstallationAttempt, request: InstallationRequest) -> InstallationResponse:
        operation = attempt.operation
        verify = self._verify_enabled(request, operation)
        rollback = self._rollback_enabled(request, operation)

        # GENERATING_SCRIPT
        try:
            checks = self._prepare(attempt, request, verify, rollback)
            await self._generate_scripts(attempt, verify and not request.dry_run, rollback and not request.dry_run)
        except InstallerError as e:
            return self._fail(attempt, e, f"{self._label(operation)} failed", [])

        if request.dry_run:
            attempt.transition(InstallPhase.DONE, reason="dry run", logger=self.logger)
            return self._response(
                attempt, True,
                f"{self._label(operation)} script generated successfully (dry run)",
                [mask_sensitive_data(attempt.install_script)],
            )

        # PROVISIONING
        attempt.transition(InstallPhase.PROVISIONING, logger=self.logger)
        try:
            async with self.pool.lease(attempt.image) as environment_id:
                attempt.environment_id = environment_id
                return await self._run_in_environment(attempt, request, checks, verify, rollback)
        except InstallerError as e:
            if attempt.phase != InstallPhase.PROVISIONING:
                raise
            return self._fail(attempt, e, f"{self._label(operation)} failed", [])

    def _prepare(
        self,
        attempt: InstallationAttempt,
        request: InstallationRequest,
        verify: bool,
        rollback: bool
    ) -> List[VerificationCheck]:
        self._validate_integration(request.integration)
        attempt.parameters = self._build_parameters(request.integration, request.parameters, request.license_key)
        self.logger.info(
            f"[Orchestrator] {self._label(attempt.operation)} {request.integration} "
            f"(dry_run={request.dry_run}, verify={verify}, rollback={rollback})",
            extra={"parameters": str(mask_parameters(attempt.parameters))}
        )
        if not verify:
            return []
        declared = list(request.verification_checks)
        if self.defaults is not None:
            declared = self.defaults.get_verification_checks(request.integration) + declared
        return [self._to_check(item) for item in declared]

    async def _generate_scripts(self, attempt: InstallationAttempt, verify: bool, rollback: bool):
        """Render every script up front so a missing template fails before provisioning"""
        integration, params = attempt.integration, attempt.parameters
        attempt.install_script = await self.generator.generate_script(integration, params, operation=attempt.operation)

        if self.gate is not None:
            report = await self.gate.validate(attempt.install_script)
            if not report.valid:
                raise ValidationError(
                    f"Script rejected by security gate: {report.summary()}",
                    details={"issues": [issue.to_dict() for issue in report.issues]}
                )

        if verify:
            attempt.verify_script = await self.generator.generate_script(integration, params, operation="verify")
        if rollback:
            attempt.rollback_script = await self.generator.generate_script(integration, params, operation="rollback")

    async def _run_in_environment(
        self,
        attempt: InstallationAttempt,
        request: InstallationRequest,
        checks: List[VerificationCheck],
        verify: bool,
        rollback: bool
    ) -> InstallationResponse:
        environment_id = attempt.environment_id
        label = self._label(attempt.operation)
        timeout = request.timeout or self.config.execution_timeout

        # EXECUTING
        attempt.transition(InstallPhase.EXECUTING, logger=self.logger)
        last_result: Optional[ExecutionResult] = None

        async def _execute() -> ExecutionResult:
            nonlocal last_result
            last_result = None
            result = await self.executor.execute_script(
                environment_id,
                attempt.install_script,
                name=attempt.operation,
                env=request.env or None,
                timeout=timeout,
                release=False,
                validate=False,
            )
            last_result = result
            if not result.success:
                raise ExecutionError(
                    f"{label} script exited with code {result.exit_code}",
                    details={"exit_code": result.exit_code}
                )
            return result

        try:
            install_result = await with_retry(
                _execute,
                retries=self.config.install_retries,
                retry_delay=self.config.retry_base_delay,
                max_delay=self.config.retry_max_delay,
                retry_on=(ExecutionError, ContainerError),
                description=f"{attempt.operation} of {attempt.integration}",
            )
        except InstallerError as e:
            output = last_result.output if last_result is not None else mask_sensitive_data(e.message)
            return await self._handle_failure(attempt, e, f"{label} failed", [output], rollback)

        install_output = install_result.output

        if not verify:
            attempt.transition(InstallPhase.COMPLETED, logger=self.logger)
            return self._response(attempt, True, self._success_message(attempt), [install_output])

        # VERIFYING
        attempt.transition(InstallPhase.VERIFYING, logger=self.logger)
        try:
            remote = await self.executor.stage_script(environment_id, attempt.verify_script, name="verify")
        except InstallerError as e:
            return await self._handle_failure(
                attempt, e, "Verification failed", [install_output, mask_sensitive_data(e.message)], rollback
            )

        quoted = escape_shell_arg(remote)
        script_check = VerificationCheck(
            command=f"chmod +x {quoted} && {quoted}",
            description=f"{attempt.integration} verification script",
            timeout=min(timeout, self.config.verify_timeout),
        )
        verification = await self.executor.verify(environment_id, [script_check] + checks, release=False)

        if not verification.success:
            failed = [o.check.description or o.check.command for o in verification.outcomes if not o.passed]
            error = IntegrationError(
                f"{len(failed)} check(s) failed: {', '.join(failed)}",
                kind=ErrorKind.EXECUTION,
                details={"attempt_id": attempt.attempt_id, "phase": attempt.phase.value},
            )
            return await self._handle_failure(
                attempt, error, "Verification failed", [install_output, verification.output], rollback,
                verification=verification.to_dict(),
            )

        attempt.transition(InstallPhase.COMPLETED, logger=self.logger)
        return self._response(
            attempt, True, self._success_message(attempt), [install_output],
            verification=verification.to_dict(),
        )

    async def _handle_failure(
        self,
        attempt: InstallationAttempt,
        error: InstallerError,
        prefix: str,
        logs: List[str],
        rollback: bool,
        verification: Optional[Dict[str, Any]] = None
    ) -> InstallationResponse:
        """Diagnostics, optional rollback, then FAILED; the original cause is what gets reported"""
        environment_id = attempt.environment_id
        self.logger.warning(f"[Orchestrator] {prefix} in phase {attempt.phase.value}: {error.message}")

        diagnostics = None
        if self.config.collect_diagnostics:
            diagnostics = await self.executor.collect_diagnostics(environment_id)

        if rollback and attempt.rollback_script:
            attempt.transition(InstallPhase.ROLLING_BACK, reason=error.message, logger=self.logger)
            rollback_result = await self.executor.rollback(environment_id, attempt.rollback_script, release=False)
            logs.append(rollback_result.output)
            if not rollback_result.success:
                self.logger.error(
                    f"[Orchestrator] Rollback of {attempt.integration} did not complete "
                    f"(exit code {rollback_result.exit_code})"
                )

        attempt.transition(InstallPhase.FAILED, reason=error.message, logger=self.logger)
        return self._response(
            attempt, False, f"{prefix}: {error.message}", logs,
            error=error, diagnostics=diagnostics, verification=verification,
        )

    def _fail(self, attempt: InstallationAttempt, error: InstallerError, prefix: str, logs: List[str]) -> InstallationResponse:
        """FAILED without rollback (nothing has run yet)"""
        self.logger.warning(f"[Orchestrator] {prefix} in phase {attempt.phase.value}: {error.message}")
        attempt.transition(InstallPhase.FAILED, reason=error.message, logger=self.logger)
        return self._response(attempt, False, f"{prefix}: {error.message}", logs, error=error)

    # =========================================================================
    # Helpers
    # =========================================================================

    def _validate_integration(self, integration: str):
        if not validate_integration_name(integration, self.config.max_integration_name_length):
            raise ValidationError(f"Invalid integration name: {integration!r}")

    def _build_parameters(
        self,
        integration: str,
        parameters: Dict[str, Any],
        license_key: Optional[str]
    ) -> Dict[str, Any]:
        if self.defaults is not None:
            params = self.defaults.merge_parameters(integration, parameters)
        else:
            params = dict(parameters)
        license_key = license_key or self.config.license_key
        if license_key:
            params.setdefault("license_key", license_key)
        params.setdefault("integration", integration)
        return params

    @staticmethod
    def _to_check(item: VerificationCheckSpec) -> VerificationCheck:
        check = VerificationCheck(
            command=item.command,
            expected_exit_code=item.expected_exit_code,
            description=item.description,
        )
        if item.retry_count is not None:
            check.retry_count = item.retry_count
        if item.retry_delay is not None:
            check.retry_delay = item.retry_delay
        if item.timeout is not None:
            check.timeout = item.timeout
        return check

    def _verify_enabled(self, request: InstallationRequest, operation: str) -> bool:
        if operation != "install":
            return False
        return self.config.verify_enabled if request.verify is None else request.verify

    def _rollback_enabled(self, request: InstallationRequest, operation: str) -> bool:
        if operation != "install":
            return False
        return self.config.rollback_on_error if request.rollback_on_error is None else request.rollback_on_error

    @staticmethod
    def _label(operation: str) -> str:
        return "Uninstallation" if operation == "uninstall" else "Installation"

    @staticmethod
    def _success_message(attempt: InstallationAttempt) -> str:
        verb = "uninstalled" if attempt.operation == "uninstall" else "installed"
        return f"Successfully {verb} {attempt.integration} integration"

    def _response(
        self,
        attempt: InstallationAttempt,
        success: bool,
        message: str,
        logs: List[str],
        error: Optional[InstallerError] = None,
        diagnostics: Optional[str] = None,
        verification: Optional[Dict[str, Any]] = None
    ) -> InstallationResponse:
        return InstallationResponse(
            success=success,
            message=mask_sensitive_data(message),
            logs=logs,
            attempt_id=attempt.attempt_id,
            phase=attempt.phase.value,
            phases=attempt.history(),
            error_kind=error.kind.value if error is not None else None,
            diagnostics=diagnostics,
            verification=verification,
        )
