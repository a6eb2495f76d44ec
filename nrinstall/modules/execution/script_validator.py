"""
Script Security Gate - screening for rendered scripts

CRITICAL: every script is checked here before it reaches an environment.

Two independent checks:
1. Pattern scan - fixed (regex, severity, message) table. Destructive
   filesystem operations, block device writes, fork bombs and download-to-
   shell pipes are critical/high; probable embedded credentials are medium.
2. shellcheck - optional. Runs over a temporary copy of the script; findings
   are translated into the same severity-tagged issue list.

A script is invalid if any critical issue or any shellcheck ``error`` is
found. ``valid=True`` does not mean zero issues.
"""

import asyncio
import json
import os
import re
import shutil
import tempfile
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

import aiofiles

from nrinstall.core.config import settings
from nrinstall.core.exceptions import ValidationError
from nrinstall.core.logging_config import logger as default_logger


class IssueSeverity(str, Enum):
    """Severity of a script issue"""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


@dataclass
class ScriptIssue:
    severity: IssueSeverity
    message: str
    line: Optional[int] = None
    source: str = "pattern"  # pattern | shellcheck
    code: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "severity": self.severity.value,
            "message": self.message,
            "line": self.line,
            "source": self.source,
            "code": self.code,
        }


@dataclass
class ScriptValidationReport:
    """Result of screening one script"""
    valid: bool
    issues: List[ScriptIssue] = field(default_factory=list)
    linter_ran: bool = False

    def by_severity(self, severity: IssueSeverity) -> List[ScriptIssue]:
        return [issue for issue in self.issues if issue.severity == severity]

    def summary(self) -> str:
        blocking = [
            issue for issue in self.issues
            if issue.severity in (IssueSeverity.CRITICAL, IssueSeverity.HIGH)
        ]
        return "; ".join(
            f"{issue.message} (line {issue.line})" if issue.line else issue.message
            for issue in blocking
        ) or "no blocking issues"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "valid": self.valid,
            "linter_ran": self.linter_ran,
            "issues": [issue.to_dict() for issue in self.issues],
        }


# (regex, severity, message) - matched line by line
DANGEROUS_PATTERNS: List[Tuple[str, IssueSeverity, str]] = [
    (r"\brm\s+(?:-{1,2}[\w-]+\s+)+(['\"]?)(/|/\*|~|~/)\1(\s|$|;|&|\|)", IssueSeverity.CRITICAL,
     "Recursive delete of the root or home directory"),
    (r"\bmkfs(\.[a-z0-9]+)?\b", IssueSeverity.CRITICAL, "Filesystem creation (mkfs)"),
    (r"\bdd\s+.*\bof=/dev/(sd|hd|nvme|xvd|vd)[a-z0-9]*", IssueSeverity.CRITICAL,
     "dd write to a block device"),
    (r">\s*/dev/(sd|hd|nvme|xvd|vd)[a-z0-9]*", IssueSeverity.CRITICAL,
     "Redirect into a block device"),
    (r":\(\)\s*\{\s*:\s*\|\s*:\s*&\s*\}\s*;\s*:", IssueSeverity.CRITICAL, "Fork bomb"),
    (r"\b(curl|wget)\b[^|#]*\|\s*(sudo\s+)?(ba|z|da)?sh\b", IssueSeverity.HIGH,
     "Download piped directly into a shell"),
    (r"\bchmod\s+(-R\s+)?0?777\s+/(\s|$)", IssueSeverity.HIGH, "World-writable root directory"),
    (r"\bpassword\s*=\s*['\"]?[^\s'\"$]", IssueSeverity.MEDIUM, "Literal password assignment"),
    (r"(?<![A-Za-z0-9/_.{$-])[A-Za-z0-9]{32,}(?![A-Za-z0-9/_.}-])", IssueSeverity.MEDIUM,
     "Long opaque token, possibly an embedded credential"),
]

SHELLCHECK_LEVELS = {
    "error": IssueSeverity.HIGH,
    "warning": IssueSeverity.MEDIUM,
    "info": IssueSeverity.LOW,
    "style": IssueSeverity.LOW,
}


class ScriptSecurityGate:
    """
    Screens rendered scripts before execution.

    Usage:
        gate = ScriptSecurityGate()
        report = await gate.validate(script)
        if not report.valid:
            ...
    """

    def __init__(
        self,
        shellcheck_enabled: Optional[bool] = None,
        shellcheck_path: Optional[str] = None,
        shellcheck_timeout: Optional[int] = None,
        logger=None
    ):
        self.shellcheck_enabled = (
            settings.SHELLCHECK_ENABLED if shellcheck_enabled is None else shellcheck_enabled
        )
        self.shellcheck_path = shellcheck_path or settings.SHELLCHECK_PATH
        self.shellcheck_timeout = shellcheck_timeout or settings.SHELLCHECK_TIMEOUT
        self.logger = logger or default_logger
        self._patterns = [
            (re.compile(pattern), severity, message)
            for pattern, severity, message in DANGEROUS_PATTERNS
        ]

    def scan_patterns(self, script: str) -> List[ScriptIssue]:
        """Pattern scan, one issue per (line, pattern) match"""
        issues = []
        for line_number, line in enumerate(script.splitlines(), start=1):
            stripped = line.strip()
            if not stripped or stripped.startswith("#"):
                continue
            for pattern, severity, message in self._patterns:
                if pattern.search(line):
                    issues.append(ScriptIssue(severity=severity, message=message, line=line_number))
        return issues

    def _shellcheck_binary(self) -> Optional[str]:
        if not self.shellcheck_enabled:
            return None
        return shutil.which(self.shellcheck_path)

    async def run_shellcheck(self, script: str) -> Optional[List[ScriptIssue]]:
        """
        Lint the script with shellcheck.

        Returns:
            Issues, or None when shellcheck is disabled or not installed

        Raises:
            ValidationError: shellcheck ran but its output could not be used
        """
        binary = self._shellcheck_binary()
        if binary is None:
            self.logger.info("[SecurityGate] shellcheck not available, skipping lint pass")
            return None

        fd, path = tempfile.mkstemp(prefix="nrinstall-lint-", suffix=".sh")
        os.close(fd)
        try:
            async with aiofiles.open(path, "w", encoding="utf-8") as f:
                await f.write(script)

            process = await asyncio.create_subprocess_exec(
                binary, "-f", "json", "-s", "bash", path,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
            try:
                stdout, stderr = await asyncio.wait_for(
                    process.communicate(), timeout=self.shellcheck_timeout
                )
            except asyncio.TimeoutError as e:
                process.kill()
                await process.wait()
                raise ValidationError(
                    f"shellcheck timed out after {self.shellcheck_timeout} seconds", cause=e
                )
        except OSError as e:
            raise ValidationError(f"shellcheck could not be run: {e}", cause=e)
        finally:
            try:
                os.unlink(path)
            except OSError:
                pass

        # Exit 0: clean, 1: findings; anything else is a shellcheck failure
        if process.returncode not in (0, 1):
            raise ValidationError(
                f"shellcheck failed with exit code {process.returncode}: "
                f"{stderr.decode('utf-8', errors='replace').strip()}"
            )

        try:
            findings = json.loads(stdout.decode("utf-8") or "[]")
        except ValueError as e:
            raise ValidationError(f"Unreadable shellcheck output: {e}", cause=e)

        issues = []
        for finding in findings:
            level = finding.get("level", "info")
            issues.append(ScriptIssue(
                severity=SHELLCHECK_LEVELS.get(level, IssueSeverity.LOW),
                message=finding.get("message", ""),
                line=finding.get("line"),
                source="shellcheck",
                code=f"SC{finding['code']}" if finding.get("code") else level,
            ))
        return issues

    async def validate(self, script: str) -> ScriptValidationReport:
        """
        Run both checks.

        Raises:
            ValidationError: the scan itself failed (not a rejection)
        """
        issues = self.scan_patterns(script)
        valid = not any(issue.severity == IssueSeverity.CRITICAL for issue in issues)

        lint_issues = await self.run_shellcheck(script)
        if lint_issues is not None:
            issues.extend(lint_issues)
            # shellcheck "error" level maps to HIGH and also blocks
            if any(issue.severity == IssueSeverity.HIGH for issue in lint_issues):
                valid = False

        report = ScriptValidationReport(valid=valid, issues=issues, linter_ran=lint_issues is not None)
        if not valid:
            self.logger.warning(f"[SecurityGate] Script rejected: {report.summary()}")
        elif issues:
            self.logger.info(f"[SecurityGate] Script accepted with {len(issues)} issue(s)")
        return report
