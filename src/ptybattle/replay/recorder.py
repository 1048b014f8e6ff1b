from __future__ import annotations

import enum
import json
import logging
import threading
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Iterable

import jsonschema

from ..errors import InvalidReplay, ResourceLimitExceeded
from ..security import redact_message, safe_json_loads
from .schema import validate_replay

logger = logging.getLogger(__name__)

REPLAY_VERSION = "1.0.0"
MAX_EVENTS = 100_000
MAX_REPLAY_BYTES = 64 * 1024 * 1024  # 64 MiB


class EventType(str, enum.Enum):
    SPAWN = "spawn"
    OUTPUT = "output"
    INPUT = "input"
    RESIZE = "resize"
    KEY = "key"
    SCREENSHOT = "screenshot"
    EXPECT = "expect"
    EXIT = "exit"


@dataclass(frozen=True, slots=True)
class ReplayEvent:
    type: str
    timestamp: int
    data: Any = None

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "timestamp": self.timestamp, "data": self.data}

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> ReplayEvent:
        return cls(type=payload["type"], timestamp=int(payload["timestamp"]), data=payload.get("data"))


@dataclass(slots=True)
class ReplayMetadata:
    cols: int = 80
    rows: int = 24
    command: str = ""
    args: list[str] = field(default_factory=list)
    env: dict[str, str] = field(default_factory=dict)


@dataclass(slots=True)
class ReplayDocument:
    version: str
    timestamp: str
    duration: int
    events: list[ReplayEvent]
    metadata: ReplayMetadata

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "timestamp": self.timestamp,
            "duration": self.duration,
            "events": [event.to_dict() for event in self.events],
            "metadata": asdict(self.metadata),
        }

    def to_json(self, indent: int | None = 2) -> str:
        return json.dumps(self.to_dict(), indent=indent, ensure_ascii=False)


def parse_replay(text: str | bytes, *, max_events: int = MAX_EVENTS) -> ReplayDocument:
    """Decode and validate a replay document.

    Every check runs before any object is built, so a rejected document
    never yields partial state.
    """

    try:
        payload = safe_json_loads(text)
    except RecursionError as exc:
        msg = "Invalid replay file: document is nested too deeply"
        raise InvalidReplay(msg) from exc
    except ValueError as exc:
        msg = f"Invalid replay file: {redact_message(str(exc))}"
        raise InvalidReplay(msg) from exc

    if not isinstance(payload, dict):
        msg = "Invalid replay data structure"
        raise InvalidReplay(msg)

    raw_events = payload.get("events")
    if isinstance(raw_events, list) and len(raw_events) > max_events:
        msg = f"Replay holds {len(raw_events)} events, limit is {max_events}"
        raise InvalidReplay(msg)

    try:
        validate_replay(payload)
    except jsonschema.ValidationError as exc:
        msg = f"Invalid replay file: {redact_message(exc.message)}"
        raise InvalidReplay(msg) from exc
    except RecursionError as exc:
        msg = "Invalid replay file: document is nested too deeply"
        raise InvalidReplay(msg) from exc

    events = [ReplayEvent.from_dict(raw) for raw in payload["events"]]
    for previous, current in zip(events, events[1:]):
        if current.timestamp < previous.timestamp:
            msg = "Invalid replay file: event timestamps are not in order"
            raise InvalidReplay(msg)

    meta = payload["metadata"]
    metadata = ReplayMetadata(
        cols=int(meta["cols"]),
        rows=int(meta["rows"]),
        command=meta["command"],
        args=list(meta["args"]),
        env=dict(meta["env"]),
    )
    return ReplayDocument(
        version=payload["version"],
        timestamp=payload["timestamp"],
        duration=int(payload["duration"]),
        events=events,
        metadata=metadata,
    )


def load_replay(
    path: Path | str,
    *,
    max_events: int = MAX_EVENTS,
    max_bytes: int = MAX_REPLAY_BYTES,
) -> ReplayDocument:
    path = Path(path)
    try:
        size = path.stat().st_size
        if size > max_bytes:
            msg = f"Replay file is {size} bytes, limit is {max_bytes}"
            raise InvalidReplay(msg)
        raw = path.read_bytes()
    except OSError as exc:
        msg = f"Cannot read replay file: {redact_message(str(exc))}"
        raise InvalidReplay(msg) from exc
    return parse_replay(raw, max_events=max_events)


class EventRecorder:
    """Append-only, timestamped log of everything a session does.

    Timestamps are integer milliseconds since the recorder was created and
    never decrease. Once ``max_events`` is reached further events are
    dropped and counted; a warning is logged the first time.
    """

    def __init__(
        self,
        *,
        cols: int = 80,
        rows: int = 24,
        clock: Callable[[], float] = time.monotonic,
        max_events: int = MAX_EVENTS,
    ) -> None:
        self._clock = clock
        self._start = clock()
        self._created = datetime.now(timezone.utc)
        self._events: list[ReplayEvent] = []
        self._metadata = ReplayMetadata(cols=cols, rows=rows)
        self._command_set = False
        self._max_events = max_events
        self._dropped = 0
        self._duration: int | None = None
        self._lock = threading.Lock()

    @classmethod
    def from_document(cls, document: ReplayDocument, *, max_events: int = MAX_EVENTS) -> EventRecorder:
        recorder = cls(cols=document.metadata.cols, rows=document.metadata.rows, max_events=max_events)
        recorder._adopt(document)
        return recorder

    @property
    def events(self) -> tuple[ReplayEvent, ...]:
        with self._lock:
            return tuple(self._events)

    @property
    def metadata(self) -> ReplayMetadata:
        return self._metadata

    @property
    def dropped(self) -> int:
        return self._dropped

    @property
    def duration(self) -> int:
        if self._duration is not None:
            return self._duration
        return self._current_duration()

    def elapsed_ms(self) -> int:
        return max(0, int((self._clock() - self._start) * 1000))

    def record(self, event_type: EventType | str, data: Any = None) -> ReplayEvent | None:
        kind = EventType(event_type).value
        with self._lock:
            if len(self._events) >= self._max_events:
                if self._dropped == 0:
                    logger.warning("Replay event limit %d reached, dropping further events", self._max_events)
                self._dropped += 1
                return None
            timestamp = self.elapsed_ms()
            if self._events and timestamp < self._events[-1].timestamp:
                timestamp = self._events[-1].timestamp
            event = ReplayEvent(type=kind, timestamp=timestamp, data=data)
            self._events.append(event)
            return event

    def set_command(self, command: str, args: Iterable[str], env: dict[str, str] | None = None) -> None:
        """Record the first spawned command in the metadata; later calls are ignored."""
        if self._command_set:
            return
        self._metadata.command = command
        self._metadata.args = list(args)
        self._metadata.env = dict(env or {})
        self._command_set = True

    def _current_duration(self) -> int:
        last = self._events[-1].timestamp if self._events else 0
        return max(self.elapsed_ms(), last)

    def document(self) -> ReplayDocument:
        with self._lock:
            events = list(self._events)
        duration = self._duration if self._duration is not None else self._current_duration()
        metadata = ReplayMetadata(
            cols=self._metadata.cols,
            rows=self._metadata.rows,
            command=self._metadata.command,
            args=list(self._metadata.args),
            env=dict(self._metadata.env),
        )
        return ReplayDocument(
            version=REPLAY_VERSION,
            timestamp=self._created.isoformat().replace("+00:00", "Z"),
            duration=duration,
            events=events,
            metadata=metadata,
        )

    def save(self, path: Path | str) -> Path:
        path = Path(path)
        self._duration = self._current_duration()
        document = self.document()
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(document.to_json(), encoding="utf-8")
        logger.info("Replay saved: %s (%d events)", path.name, len(document.events))
        return path

    def load(self, path: Path | str) -> ReplayDocument:
        document = load_replay(path, max_events=self._max_events)
        self._adopt(document)
        return document

    def _adopt(self, document: ReplayDocument) -> None:
        if len(document.events) > self._max_events:
            msg = f"Replay holds {len(document.events)} events, limit is {self._max_events}"
            raise ResourceLimitExceeded(msg)
        with self._lock:
            self._events = list(document.events)
            self._metadata = ReplayMetadata(
                cols=document.metadata.cols,
                rows=document.metadata.rows,
                command=document.metadata.command,
                args=list(document.metadata.args),
                env=dict(document.metadata.env),
            )
            self._command_set = bool(document.metadata.command)
            self._duration = document.duration
            self._dropped = 0
            try:
                self._created = datetime.fromisoformat(document.timestamp.replace("Z", "+00:00"))
            except ValueError:
                logger.debug("Keeping recorder creation time, replay timestamp is not ISO-8601")
