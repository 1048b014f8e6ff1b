"""Recording, persistence and playback of session event streams."""

from .export import export_replay, render_html, write_export
from .playback import PlaybackEngine, PlaybackState, describe_event, format_time
from .player import TerminalPlayer
from .recorder import (
    EventRecorder,
    EventType,
    ReplayDocument,
    ReplayEvent,
    ReplayMetadata,
    load_replay,
    parse_replay,
)

__all__ = [
    "EventRecorder",
    "EventType",
    "PlaybackEngine",
    "PlaybackState",
    "ReplayDocument",
    "ReplayEvent",
    "ReplayMetadata",
    "TerminalPlayer",
    "describe_event",
    "export_replay",
    "format_time",
    "load_replay",
    "parse_replay",
    "render_html",
    "write_export",
]
