"""Drive terminal applications inside real pseudo-terminals and replay what happened."""

from .backends import (
    AsyncioBackend,
    PtyExitStatus,
    PtyHandle,
    PtyOptions,
    PtySize,
    TerminalBackend,
    ThreadedBackend,
    create_backend,
)
from .buffer import BufferStats, OutputBuffer, strip_ansi
from .config import SessionOptions, load_options
from .errors import (
    BackendUnavailable,
    BattleError,
    ConfigError,
    InvalidReplay,
    PatternNotFound,
    ResourceLimitExceeded,
    SessionError,
    SpawnFailed,
    ValidationRejected,
)
from .expect import ExpectEngine, OutputCondition
from .keys import KEY_SEQUENCES, key_sequence
from .lifecycle import LifecycleManager, LifecycleState, ListenerTracker
from .replay import (
    EventRecorder,
    EventType,
    PlaybackEngine,
    PlaybackState,
    ReplayDocument,
    ReplayEvent,
    TerminalPlayer,
    load_replay,
)
from .screenshot import CursorPosition, HtmlRenderer, TerminalScreen, write_screenshot
from .security import (
    PtyLimiter,
    SecurityLevel,
    sanitize_args,
    sanitize_env,
    validate_command,
    validate_path,
)
from .session import Session, TestResult

__version__ = "0.1.0"

__all__ = [
    "AsyncioBackend",
    "BackendUnavailable",
    "BattleError",
    "BufferStats",
    "ConfigError",
    "CursorPosition",
    "EventRecorder",
    "EventType",
    "ExpectEngine",
    "HtmlRenderer",
    "InvalidReplay",
    "KEY_SEQUENCES",
    "LifecycleManager",
    "LifecycleState",
    "ListenerTracker",
    "OutputBuffer",
    "OutputCondition",
    "PatternNotFound",
    "PlaybackEngine",
    "PlaybackState",
    "PtyExitStatus",
    "PtyHandle",
    "PtyLimiter",
    "PtyOptions",
    "PtySize",
    "ReplayDocument",
    "ReplayEvent",
    "ResourceLimitExceeded",
    "SecurityLevel",
    "Session",
    "SessionError",
    "SessionOptions",
    "SpawnFailed",
    "TerminalBackend",
    "TerminalPlayer",
    "TerminalScreen",
    "TestResult",
    "ThreadedBackend",
    "ValidationRejected",
    "create_backend",
    "key_sequence",
    "load_options",
    "load_replay",
    "sanitize_args",
    "sanitize_env",
    "strip_ansi",
    "validate_command",
    "validate_path",
    "write_screenshot",
]
