"""
Security helpers shared by the installer.

- Secret masking for anything that ends up in logs or caller-visible output
- Integration name / path segment validation (template lookup must stay
  inside the templates root)
- Shell argument escaping for values interpolated into command lines
"""

import re
import secrets
import shlex
import time
from typing import Any, Dict, Optional


# Key names whose values are treated as secrets
SENSITIVE_KEY_PATTERN = (
    r"[A-Za-z0-9_.-]*?"
    r"(?:license[_-]?key|api[_-]?key|access[_-]?key|secret|token|passw(?:or)?d|passphrase|pass)"
    r"[A-Za-z0-9_]*"
)

SENSITIVE_PATTERNS = [
    # KEY=value, KEY: value, export KEY="value"
    re.compile(
        r"(?P<key>(?:\bexport\s+)?" + SENSITIVE_KEY_PATTERN + r")"
        r"(?P<sep>['\"]?\s*[:=]\s*)"
        r"(?P<quote>['\"]?)"
        r"(?P<value>[^\s'\",;]+)",
        re.IGNORECASE,
    ),
    # --password value, --license-key=value
    re.compile(
        r"(?P<key>--(?:license-key|api-key|access-key|secret|token|password|pass))"
        r"(?P<sep>[= ]\s*)"
        r"(?P<quote>['\"]?)"
        r"(?P<value>[^\s'\",;]+)",
        re.IGNORECASE,
    ),
]

_SENSITIVE_KEY_RE = re.compile(r"^" + SENSITIVE_KEY_PATTERN + r"$", re.IGNORECASE)

INTEGRATION_NAME_PATTERN = re.compile(r"^[A-Za-z0-9_-]+$")
PATH_SEGMENT_PATTERN = re.compile(r"^[A-Za-z0-9_][A-Za-z0-9._-]*$")


def mask_value(value: str) -> str:
    """Keep the first and last character, mask the rest with asterisks"""
    if len(value) <= 2:
        return "*" * len(value)
    return f"{value[0]}{'*' * (len(value) - 2)}{value[-1]}"


def mask_sensitive_data(text: Optional[str]) -> Optional[str]:
    """
    Mask secret values in free text.

    Only the value half of a recognised ``key=value`` pair is replaced, so
    ``license_key=ABCD1234WXYZ`` becomes ``license_key=A**********Z``.
    Masking an already masked string is a no-op.
    """
    if not text:
        return text

    def _replace(match: re.Match) -> str:
        return (
            f"{match.group('key')}{match.group('sep')}"
            f"{match.group('quote')}{mask_value(match.group('value'))}"
        )

    masked = text
    for pattern in SENSITIVE_PATTERNS:
        masked = pattern.sub(_replace, masked)
    return masked


def is_sensitive_key(key: str) -> bool:
    """True if a parameter name looks like it holds a secret"""
    return bool(_SENSITIVE_KEY_RE.match(key))


def mask_parameters(parameters: Dict[str, Any]) -> Dict[str, Any]:
    """Copy of a parameter dict that is safe to log"""
    masked = {}
    for key, value in parameters.items():
        if is_sensitive_key(key) and isinstance(value, str):
            masked[key] = mask_value(value)
        elif isinstance(value, dict):
            masked[key] = mask_parameters(value)
        else:
            masked[key] = value
    return masked


def validate_integration_name(name: str, max_length: int = 64) -> bool:
    """Allow only alphanumeric characters, hyphens and underscores"""
    if not name or len(name) > max_length:
        return False
    return bool(INTEGRATION_NAME_PATTERN.match(name))


def validate_path_segment(segment: str) -> bool:
    """A single path component such as an OS name or version ("22.04")"""
    if not segment or segment in (".", ".."):
        return False
    return bool(PATH_SEGMENT_PATTERN.match(segment))


def escape_shell_arg(value: Any) -> str:
    """Quote a value for safe interpolation into a shell command line"""
    return shlex.quote(str(value))


def generate_secure_id(prefix: str = "") -> str:
    """Unique, unguessable identifier (used for attempt ids and temp files)"""
    token = f"{int(time.time() * 1000):x}{secrets.token_hex(6)}"
    return f"{prefix}{token}" if prefix else token
