"""
Script Executor - runs commands and scripts inside leased environments

Protocol per leased environment:
- run(): exec a command under /bin/sh -c, stream combined output, fetch the
  exit code; bounded by a timeout (default 300s)
- copy_in() / copy_out(): single-file tar archive transfer
- execute_script(): security gate, copy the script in, chmod +x and run it
- verify(): sequential verification checks, each with its own retries
- rollback(): best-effort, never raises

Release contract: with ``release=True`` (the default) the environment goes
back to the pool exactly once on every exit path, including timeout and
stream error. Callers that hold a lease across several steps pass
``release=False`` and release through the lease.

Output is masked before it leaves the executor. Scripts sent to the
environment are never masked.
"""

import asyncio
import io
import posixpath
import tarfile
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import aiofiles

from nrinstall.core.config import settings
from nrinstall.core.exceptions import (
    ContainerError,
    ExecutionError,
    ExecutionTimeoutError,
    InstallerError,
    ValidationError,
)
from nrinstall.core.logging_config import logger as default_logger
from nrinstall.core.security import escape_shell_arg, generate_secure_id, mask_sensitive_data
from nrinstall.modules.execution.container_pool import ContainerPool
from nrinstall.modules.execution.script_validator import ScriptSecurityGate
from nrinstall.services.retry import with_retry


DIAGNOSTICS_SCRIPT = """\
echo "=== System Information ==="
uname -a
echo "=== Distribution ==="
cat /etc/*-release 2>/dev/null || echo "Unknown distribution"
echo "=== Memory ==="
free -h 2>/dev/null || cat /proc/meminfo 2>/dev/null | head -n 5
echo "=== Disk ==="
df -h 2>/dev/null
echo "=== Installed Packages ==="
if command -v dpkg > /dev/null; then
  dpkg -l 2>/dev/null | grep -i newrelic || echo "No New Relic packages installed"
elif command -v rpm > /dev/null; then
  rpm -qa 2>/dev/null | grep -i newrelic || echo "No New Relic packages installed"
else
  echo "Package manager not found"
fi
echo "=== Services ==="
if command -v systemctl > /dev/null; then
  systemctl status newrelic-infra --no-pager 2>&1 || echo "Service not running"
elif command -v service > /dev/null; then
  service newrelic-infra status 2>&1 || echo "Service not running"
else
  echo "Service manager not found"
fi
echo "=== Logs ==="
if [ -d /var/log/newrelic-infra ]; then
  tail -n 50 /var/log/newrelic-infra/*.log 2>/dev/null || echo "No log files found"
else
  echo "No log files found"
fi
"""


@dataclass
class ExecutionResult:
    """Outcome of one command run; output is already masked"""
    exit_code: int
    output: str
    duration: float

    @property
    def success(self) -> bool:
        return self.exit_code == 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "exit_code": self.exit_code,
            "output": self.output,
            "duration": round(self.duration, 3),
            "success": self.success,
        }


@dataclass
class VerificationCheck:
    """Post-install command expected to exit with ``expected_exit_code``"""
    command: str
    expected_exit_code: int = 0
    description: str = ""
    retry_count: int = field(default_factory=lambda: settings.VERIFY_RETRY_COUNT)
    retry_delay: float = field(default_factory=lambda: settings.VERIFY_RETRY_DELAY)
    timeout: float = field(default_factory=lambda: settings.VERIFY_TIMEOUT)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "VerificationCheck":
        known = {"command", "expected_exit_code", "description", "retry_count", "retry_delay", "timeout"}
        return cls(**{key: value for key, value in data.items() if key in known})


@dataclass
class CheckOutcome:
    check: VerificationCheck
    passed: bool
    attempts: int
    result: Optional[ExecutionResult] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "description": self.check.description or self.check.command,
            "passed": self.passed,
            "attempts": self.attempts,
            "exit_code": self.result.exit_code if self.result else None,
            "error": self.error,
        }


@dataclass
class VerificationResult:
    """One outcome per check; succeeds only if every check passed"""
    outcomes: List[CheckOutcome] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return all(outcome.passed for outcome in self.outcomes)

    @property
    def output(self) -> str:
        lines = []
        for outcome in self.outcomes:
            status = "PASS" if outcome.passed else "FAIL"
            label = outcome.check.description or outcome.check.command
            lines.append(f"[{status}] {label} (attempts: {outcome.attempts})")
            if outcome.result and outcome.result.output.strip():
                lines.append(outcome.result.output.rstrip())
            if outcome.error and not outcome.passed:
                lines.append(outcome.error)
        return "\n".join(lines)

    def to_dict(self) -> Dict[str, Any]:
        return {"success": self.success, "checks": [outcome.to_dict() for outcome in self.outcomes]}


@dataclass
class ExecutorConfig:
    """Execution settings (loaded from settings)"""
    timeout: float = field(default_factory=lambda: settings.EXECUTION_TIMEOUT_SECONDS)
    script_dir: Path = field(default_factory=lambda: settings.script_dir)
    remote_dir: str = field(default_factory=lambda: settings.EXECUTION_REMOTE_DIR)
    diagnostics_timeout: float = 60


def _pack_file(name: str, data: bytes, mode: int = 0o755) -> bytes:
    """Single-file tar archive"""
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w") as tar:
        info = tarfile.TarInfo(name=name)
        info.size = len(data)
        info.mode = mode
        info.mtime = int(time.time())
        tar.addfile(info, io.BytesIO(data))
    return buffer.getvalue()


def _unpack_file(archive: bytes) -> bytes:
    """Contents of the first regular file in a tar archive"""
    with tarfile.open(fileobj=io.BytesIO(archive), mode="r") as tar:
        for member in tar.getmembers():
            if member.isfile():
                extracted = tar.extractfile(member)
                if extracted is not None:
                    return extracted.read()
    raise ContainerError("Archive contains no regular file")


class ScriptExecutor:
    """
    Runs commands and scripts in environments leased from a ContainerPool.

    Usage:
        executor = ScriptExecutor(pool)
        environment_id = await pool.acquire("ubuntu:22.04")
        result = await executor.execute_script(environment_id, script)
        # environment already released
    """

    def __init__(
        self,
        pool: ContainerPool,
        gate: Optional[ScriptSecurityGate] = None,
        config: Optional[ExecutorConfig] = None,
        logger=None
    ):
        self.pool = pool
        self.runtime = pool.runtime
        self.gate = gate
        self.config = config or ExecutorConfig()
        self.logger = logger or default_logger

    # =========================================================================
    # Commands
    # =========================================================================

    async def run(
        self,
        environment_id: str,
        command: str,
        env: Optional[Dict[str, str]] = None,
        timeout: Optional[float] = None,
        release: bool = True
    ) -> ExecutionResult:
        """
        Run ``command`` under a non-interactive shell.

        Raises:
            ExecutionTimeoutError: the command exceeded ``timeout``
            ExecutionError: exec creation or the output stream failed
        """
        timeout = timeout or self.config.timeout
        started = time.monotonic()

        try:
            try:
                exit_code, raw = await asyncio.wait_for(
                    self.runtime.exec_run(environment_id, ["/bin/sh", "-c", command], env=env),
                    timeout=timeout
                )
            except asyncio.TimeoutError as e:
                # The stray process may still be running; never reuse this environment
                self.pool.mark_unhealthy(environment_id)
                self.logger.warning(f"[Executor] Command in {environment_id[:12]} timed out after {timeout}s")
                raise ExecutionTimeoutError(timeout, command=mask_sensitive_data(command), cause=e)
            except InstallerError as e:
                raise ExecutionError(f"Command execution failed: {e.message}", cause=e)
            except Exception as e:
                raise ExecutionError(f"Command execution failed: {e}", cause=e)
        finally:
            if release:
                self.pool.release(environment_id)

        result = ExecutionResult(
            exit_code=exit_code,
            output=mask_sensitive_data(raw.decode("utf-8", errors="replace")),
            duration=time.monotonic() - started,
        )
        self.logger.log_execution(environment_id, result.exit_code, result.duration)
        return result

    # =========================================================================
    # File transfer
    # =========================================================================

    async def copy_in(self, environment_id: str, local_path: Union[str, Path], remote_path: str):
        """
        Copy one local file into the environment as ``remote_path`` (mode 0755).

        Raises:
            ContainerError: local file missing/unreadable, or the transfer failed
        """
        local = Path(local_path)
        if not local.is_file():
            raise ContainerError(f"Local file not found: {local}")

        try:
            async with aiofiles.open(local, "rb") as f:
                data = await f.read()
        except OSError as e:
            raise ContainerError(f"Cannot read local file {local}: {e}", cause=e)

        remote_dir, name = posixpath.split(remote_path)
        remote_dir = remote_dir or "/"
        if not name:
            raise ContainerError(f"Remote path must name a file: {remote_path}")

        try:
            exit_code, output = await self.runtime.exec_run(environment_id, ["mkdir", "-p", remote_dir])
            if exit_code != 0:
                raise ContainerError(
                    f"Cannot create {remote_dir} in {environment_id[:12]}: "
                    f"{output.decode('utf-8', errors='replace').strip()}"
                )
            await self.runtime.put_archive(environment_id, remote_dir, _pack_file(name, data))
        except InstallerError:
            raise
        except Exception as e:
            raise ContainerError(f"Copy into {environment_id[:12]}:{remote_path} failed: {e}", cause=e)

    async def copy_out(self, environment_id: str, remote_path: str, local_path: Union[str, Path]) -> Path:
        """
        Copy one file out of the environment to exactly ``local_path``.

        Raises:
            ContainerError: transfer failed or the archive held no file
        """
        try:
            archive = await self.runtime.get_archive(environment_id, remote_path)
        except InstallerError:
            raise
        except Exception as e:
            raise ContainerError(f"Copy from {environment_id[:12]}:{remote_path} failed: {e}", cause=e)

        data = _unpack_file(archive)
        local = Path(local_path)
        try:
            local.parent.mkdir(parents=True, exist_ok=True)
            async with aiofiles.open(local, "wb") as f:
                await f.write(data)
        except OSError as e:
            raise ContainerError(f"Cannot write local file {local}: {e}", cause=e)
        return local

    # =========================================================================
    # Scripts
    # =========================================================================

    async def stage_script(
        self,
        environment_id: str,
        script: str,
        name: str = "install",
        validate: bool = True
    ) -> str:
        """
        Screen a script and copy it into the environment.

        Returns:
            Remote path of the executable script

        Raises:
            ValidationError: the security gate rejected the script
            ContainerError: staging or transfer failed
        """
        if validate and self.gate is not None:
            report = await self.gate.validate(script)
            if not report.valid:
                raise ValidationError(
                    f"Script rejected by security gate: {report.summary()}",
                    details={"issues": [issue.to_dict() for issue in report.issues]}
                )

        script_id = generate_secure_id(f"{name}-")
        local = self.config.script_dir / f"{script_id}.sh"
        remote = posixpath.join(self.config.remote_dir, f"{script_id}.sh")

        try:
            local.parent.mkdir(parents=True, exist_ok=True)
            async with aiofiles.open(local, "w", encoding="utf-8") as f:
                await f.write(script)
        except OSError as e:
            raise ContainerError(f"Cannot write script file {local}: {e}", cause=e)

        try:
            await self.copy_in(environment_id, local, remote)
        finally:
            try:
                local.unlink()
            except OSError:
                pass

        return remote

    async def execute_script(
        self,
        environment_id: str,
        script: str,
        name: str = "install",
        env: Optional[Dict[str, str]] = None,
        timeout: Optional[float] = None,
        release: bool = True,
        validate: bool = True
    ) -> ExecutionResult:
        """Stage and run a script; a non-zero exit is a result, not an error"""
        try:
            remote = await self.stage_script(environment_id, script, name=name, validate=validate)
        except BaseException:
            if release:
                self.pool.release(environment_id)
            raise

        quoted = escape_shell_arg(remote)
        self.logger.info(f"[Executor] Running {name} script in {environment_id[:12]}")
        return await self.run(
            environment_id,
            f"chmod +x {quoted} && {quoted}",
            env=env,
            timeout=timeout,
            release=release,
        )

    # =========================================================================
    # Verification / rollback / diagnostics
    # =========================================================================

    async def verify(
        self,
        environment_id: str,
        checks: List[VerificationCheck],
        release: bool = True
    ) -> VerificationResult:
        """Run checks in sequence; each retries up to its retry_count"""
        result = VerificationResult()
        try:
            for check in checks:
                result.outcomes.append(await self._run_check(environment_id, check))
        finally:
            if release:
                self.pool.release(environment_id)
        return result

    async def _run_check(self, environment_id: str, check: VerificationCheck) -> CheckOutcome:
        attempts = 0
        last_result: Optional[ExecutionResult] = None

        async def _attempt() -> ExecutionResult:
            nonlocal attempts, last_result
            attempts += 1
            last_result = None
            execution = await self.run(environment_id, check.command, timeout=check.timeout, release=False)
            last_result = execution
            if execution.exit_code != check.expected_exit_code:
                raise ExecutionError(
                    f"Check '{check.description or check.command}' exited {execution.exit_code}, "
                    f"expected {check.expected_exit_code}"
                )
            return execution

        try:
            execution = await with_retry(
                _attempt,
                retries=check.retry_count,
                retry_delay=check.retry_delay,
                retry_on=(ExecutionError,),
                description=f"verification check '{check.description or check.command}'",
            )
        except ExecutionError as e:
            return CheckOutcome(check=check, passed=False, attempts=attempts, result=last_result, error=e.message)

        return CheckOutcome(check=check, passed=True, attempts=attempts, result=execution)

    async def rollback(
        self,
        environment_id: str,
        script: str,
        release: bool = True,
        timeout: Optional[float] = None
    ) -> ExecutionResult:
        """Best-effort rollback; failures are logged and returned, never raised"""
        try:
            result = await self.execute_script(
                environment_id, script, name="rollback", timeout=timeout, release=release
            )
        except InstallerError as e:
            self.logger.error(f"[Executor] Rollback in {environment_id[:12]} failed: {e.message}")
            return ExecutionResult(exit_code=-1, output=f"Rollback failed: {mask_sensitive_data(e.message)}", duration=0.0)
        except Exception as e:
            self.logger.error(f"[Executor] Rollback in {environment_id[:12]} failed: {e}", exc_info=True)
            return ExecutionResult(exit_code=-1, output=f"Rollback failed: {mask_sensitive_data(str(e))}", duration=0.0)

        if not result.success:
            self.logger.warning(f"[Executor] Rollback in {environment_id[:12]} exited {result.exit_code}")
        return result

    async def collect_diagnostics(self, environment_id: str, release: bool = False) -> str:
        """System diagnostics from the environment, best-effort"""
        try:
            result = await self.run(
                environment_id,
                DIAGNOSTICS_SCRIPT,
                timeout=self.config.diagnostics_timeout,
                release=release,
            )
            return result.output
        except InstallerError as e:
            self.logger.warning(f"[Executor] Diagnostics collection failed: {e.message}")
            return f"Failed to collect diagnostics: {mask_sensitive_data(e.message)}"
