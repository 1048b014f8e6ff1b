"""Validation guard for everything that crosses the session boundary.

Commands are screened before a PTY is allocated, environment maps are
scrubbed before they reach the child process, paths are confined to a base
directory and replay documents are parsed with a JSON loader that drops
prototype-pollution keys.

The balanced and permissive levels are heuristics over whole command
strings. They express a trust policy for the person writing the test and
are not a sandbox.
"""

from __future__ import annotations

import enum
import json
import logging
import re
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping, Sequence

logger = logging.getLogger(__name__)

MAX_COMMAND_LENGTH = 1000
MAX_ARG_LENGTH = 500
MAX_ENV_VALUE_LENGTH = 10_000
MAX_PTY_INSTANCES = 10
REDACTED = "***REDACTED***"


class SecurityLevel(str, enum.Enum):
    STRICT = "strict"
    BALANCED = "balanced"
    PERMISSIVE = "permissive"


@dataclass(slots=True)
class CommandValidation:
    valid: bool
    sanitized: str | None = None
    error: str | None = None


@dataclass(slots=True)
class PathValidation:
    valid: bool
    normalized: Path | None = None
    error: str | None = None


# Remote code execution and destruction idioms, rejected at every level.
ALWAYS_BLOCKED: tuple[re.Pattern[str], ...] = (
    re.compile(r"rm\s+-rf\s+[/~]"),
    re.compile(r":\(\)\s*\{.*\}\s*;?\s*:"),
    re.compile(r"curl.*\|\s*(ba|z)?sh"),
    re.compile(r"wget.*\|\s*(ba|z)?sh"),
    re.compile(r"eval\s*\("),
    re.compile(r"exec\s*\("),
    re.compile(r"system\s*\("),
)

STRICT_BLOCKED: tuple[re.Pattern[str], ...] = (
    re.compile(r"[;&|`$<>]"),
    re.compile(r"\.\./"),
    re.compile(r"\$\("),
    re.compile(r"\|\|"),
    re.compile(r"&&"),
)

BALANCED_ALLOWED: tuple[re.Pattern[str], ...] = (
    re.compile(r"^[\w\-./]+\s+--interactive"),
    re.compile(r"^[\w\-./]+\s+-i\b"),
    re.compile(r"^echo\s+[\w\s\-.=\"']+$"),
    re.compile(r"^cat\s+[\w\-./]+$"),
    re.compile(r"^ls(\s+[\w\-./]+)*\s*$"),
    re.compile(r"^(pwd|whoami|date)$"),
    re.compile(r"^npm\s+(install|test|run|start|build)(\s+[\w\-]+)?$"),
    re.compile(r"^git\s+(status|log|diff|add|commit)(\s+[\w\-./]+)*\s*$"),
    re.compile(r"^node\s+[\w\-./]+$"),
    re.compile(r"^python3?\s+[\w\-./]+$"),
    re.compile(r"^[\w\-./]+(\s+[\w\-.=:/]+)*\s*$"),
)

BALANCED_BLOCKED: tuple[re.Pattern[str], ...] = (
    re.compile(r";.*\brm\b"),
    re.compile(r"\|\s*rm\b"),
    re.compile(r"&&.*\brm\b"),
)

PERMISSIVE_BLOCKED: tuple[re.Pattern[str], ...] = (
    re.compile(r":\(\)\s*\{.*\}\s*;?\s*:"),
    re.compile(r"rm\s+-rf\s+/(?![A-Za-z])"),
    re.compile(r"chmod\s+777\s+/etc"),
    re.compile(r"/etc/passwd"),
    re.compile(r"/etc/shadow"),
)

_ARG_METACHARS = re.compile(r"[;&|`$<>\\]")
_ARG_TRAVERSAL = re.compile(r"\.\./")

# Dynamic-linker and runtime injection hooks never reach the child.
BLOCKED_ENV_VARS: frozenset[str] = frozenset(
    {
        "LD_PRELOAD",
        "LD_LIBRARY_PATH",
        "LD_AUDIT",
        "DYLD_INSERT_LIBRARIES",
        "DYLD_LIBRARY_PATH",
        "NODE_OPTIONS",
        "NODE_EXTRA_CA_CERTS",
    }
)

SENSITIVE_ENV_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"^(PASSWORD|TOKEN|KEY|SECRET|API|PRIVATE|CREDENTIAL)", re.IGNORECASE),
    re.compile(r"_KEY$", re.IGNORECASE),
    re.compile(r"_TOKEN$", re.IGNORECASE),
    re.compile(r"_SECRET$", re.IGNORECASE),
    re.compile(r"_PASSWORD$", re.IGNORECASE),
)

POLLUTING_KEYS: frozenset[str] = frozenset({"__proto__", "constructor", "prototype"})

_PATH_RE = re.compile(r"/[^\s]+")
_IP_RE = re.compile(r"\d{1,3}\.\d{1,3}\.\d{1,3}\.\d{1,3}")
_PORT_RE = re.compile(r":\d{2,5}\b")


def validate_command(
    command: str,
    level: SecurityLevel | str = SecurityLevel.BALANCED,
) -> CommandValidation:
    """Screen a full command line at the requested strictness level."""

    level = SecurityLevel(level)
    if not command or not command.strip():
        return CommandValidation(valid=False, error="Command must be a non-empty string")

    for pattern in ALWAYS_BLOCKED:
        if pattern.search(command):
            return CommandValidation(valid=False, error=f"Blocked dangerous pattern: {pattern.pattern}")

    if level is SecurityLevel.STRICT:
        return _validate_strict(command)
    if level is SecurityLevel.BALANCED:
        return _validate_balanced(command)
    return _validate_permissive(command)


def _validate_strict(command: str) -> CommandValidation:
    if len(command) > MAX_COMMAND_LENGTH:
        return CommandValidation(valid=False, error="Command exceeds maximum length")
    for pattern in STRICT_BLOCKED:
        if pattern.search(command):
            return CommandValidation(valid=False, error=f"Dangerous pattern detected: {pattern.pattern}")
    return CommandValidation(valid=True, sanitized=command.strip())


def _validate_balanced(command: str) -> CommandValidation:
    for pattern in BALANCED_ALLOWED:
        if pattern.search(command):
            return CommandValidation(valid=True, sanitized=command.strip())
    for pattern in BALANCED_BLOCKED:
        if pattern.search(command):
            return CommandValidation(valid=False, error=f"Potentially dangerous pattern: {pattern.pattern}")
    return CommandValidation(valid=True, sanitized=command.strip())


def _validate_permissive(command: str) -> CommandValidation:
    for pattern in PERMISSIVE_BLOCKED:
        if pattern.search(command):
            return CommandValidation(valid=False, error=f"Critical security violation: {pattern.pattern}")
    return CommandValidation(valid=True, sanitized=command.strip())


def sanitize_args(args: Sequence[str]) -> list[str]:
    """Strip shell metacharacters and traversal segments from each argument."""

    cleaned: list[str] = []
    for arg in args:
        value = _ARG_METACHARS.sub("", str(arg))
        while _ARG_TRAVERSAL.search(value):
            value = _ARG_TRAVERSAL.sub("", value)
        cleaned.append(value[:MAX_ARG_LENGTH])
    return cleaned


def validate_path(path: str | Path, base: str | Path) -> PathValidation:
    """Confine ``path`` to ``base`` and return its absolute form."""

    raw = str(path)
    if "\x00" in raw or "\x00" in str(base):
        return PathValidation(valid=False, error="Null byte detected in path")

    try:
        root = Path(base).resolve()
        resolved = (root / raw).resolve()
    except (OSError, RuntimeError) as exc:
        return PathValidation(valid=False, error=f"Invalid path: {redact_message(str(exc))}")

    if resolved != root and not resolved.is_relative_to(root):
        return PathValidation(valid=False, error="Path traversal detected")
    return PathValidation(valid=True, normalized=resolved)


def sanitize_env(env: Mapping[str, Any]) -> dict[str, str]:
    """Drop linker-injection variables and mask credential-like values."""

    sanitized: dict[str, str] = {}
    for key, value in env.items():
        if key in BLOCKED_ENV_VARS:
            logger.debug("Dropping blocked environment variable %s", key)
            continue
        if any(pattern.search(key) for pattern in SENSITIVE_ENV_PATTERNS):
            sanitized[key] = REDACTED
            continue
        sanitized[key] = str(value)[:MAX_ENV_VALUE_LENGTH]
    return sanitized


def redact_message(message: str, limit: int = 200) -> str:
    """Remove file paths, IP addresses and ports from an error message."""

    text = _PATH_RE.sub("<path>", message)
    text = _IP_RE.sub("<ip>", text)
    text = _PORT_RE.sub(":<port>", text)
    return text[:limit]


def _drop_polluting_keys(pairs: list[tuple[str, Any]]) -> dict[str, Any]:
    return {key: value for key, value in pairs if key not in POLLUTING_KEYS}


def safe_json_loads(text: str | bytes) -> Any:
    """Parse JSON, discarding prototype-pollution keys at every depth.

    Raises ``ValueError`` (``json.JSONDecodeError``) on malformed input.
    """

    return json.loads(text, object_pairs_hook=_drop_polluting_keys)


class PtyLimiter:
    """Lock-protected counter bounding concurrently allocated PTYs.

    Share one instance between sessions that must respect a common ceiling.
    """

    def __init__(self, max_instances: int = MAX_PTY_INSTANCES) -> None:
        if max_instances <= 0:
            msg = "max_instances must be positive"
            raise ValueError(msg)
        self._max = max_instances
        self._active = 0
        self._lock = threading.Lock()

    @property
    def max_instances(self) -> int:
        return self._max

    @property
    def active(self) -> int:
        with self._lock:
            return self._active

    def acquire(self) -> bool:
        with self._lock:
            if self._active >= self._max:
                return False
            self._active += 1
            return True

    def release(self) -> None:
        with self._lock:
            if self._active > 0:
                self._active -= 1
