from __future__ import annotations


class BattleError(Exception):
    """Base exception for all ptybattle errors."""


class SessionError(BattleError):
    """Operation requires a live PTY but the session has none."""


class SpawnFailed(BattleError):
    """The terminal backend could not allocate a PTY or start the process."""


class BackendUnavailable(SpawnFailed):
    """No PTY backend can run on this host."""


class PatternNotFound(BattleError):
    """An expectation timed out before the pattern appeared."""

    def __init__(self, pattern: str, timeout: float, tail: str = "") -> None:
        self.pattern = pattern
        self.timeout = timeout
        self.tail = tail
        msg = f"Expected pattern not found after {timeout:g}s: {pattern}"
        if tail:
            msg = f"{msg}. Buffer tail: {tail!r}"
        super().__init__(msg)


class ValidationRejected(BattleError):
    """A command, path or environment entry was declined by the guard."""

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(reason)


class InvalidReplay(BattleError):
    """A replay document is malformed, oversized or structurally wrong."""


class ResourceLimitExceeded(BattleError):
    """A hard resource ceiling was hit."""


class ConfigError(BattleError):
    """Configuration file or environment override is invalid."""
