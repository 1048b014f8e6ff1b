from __future__ import annotations

import asyncio
import bisect
import json
import logging
import time
from dataclasses import dataclass, replace
from typing import Any, Callable, Sequence

from .recorder import ReplayEvent

logger = logging.getLogger(__name__)

MAX_SPEED = 50.0
TICK_INTERVAL = 0.016


@dataclass(slots=True)
class PlaybackState:
    playing: bool = False
    paused: bool = False
    speed: float = 1.0
    cursor: int = 0
    current_time: float = 0.0
    finished: bool = False


EventCallback = Callable[[ReplayEvent, PlaybackState], None]
StateCallback = Callable[[PlaybackState], None]
ProgressCallback = Callable[[float, PlaybackState], None]


class PlaybackEngine:
    """Virtual-time replay of a recorded event stream.

    Each tick advances virtual time by the wall-clock delta times the speed
    and dispatches every event whose timestamp has been reached, in recorded
    order. ``advance`` performs one such step with an explicit delta and is
    what the asyncio tick loop calls.

    Seeking rebuilds state from scratch: ``on_reset`` fires, then every event
    up to the target is dispatched again from index 0.
    """

    def __init__(
        self,
        events: Sequence[ReplayEvent],
        duration: int,
        *,
        speed: float = 1.0,
        on_event: EventCallback | None = None,
        on_state_change: StateCallback | None = None,
        on_progress: ProgressCallback | None = None,
        on_reset: Callable[[], None] | None = None,
        clock: Callable[[], float] = time.monotonic,
        tick_interval: float = TICK_INTERVAL,
    ) -> None:
        self._events = list(events)
        self._timestamps = [event.timestamp for event in self._events]
        last = self._timestamps[-1] if self._timestamps else 0
        self._duration = max(int(duration), last)
        self._state = PlaybackState(speed=_clamp_speed(speed))
        self._on_event = on_event
        self._on_state_change = on_state_change
        self._on_progress = on_progress
        self._on_reset = on_reset
        self._clock = clock
        self._tick_interval = tick_interval
        self._last_tick = clock()
        self._task: asyncio.Task[None] | None = None
        self._done = asyncio.Event()

    @property
    def duration(self) -> int:
        return self._duration

    @property
    def total_events(self) -> int:
        return len(self._events)

    @property
    def speed(self) -> float:
        return self._state.speed

    @property
    def playing(self) -> bool:
        return self._state.playing

    @property
    def current_time(self) -> float:
        return self._state.current_time

    def get_state(self) -> PlaybackState:
        return replace(self._state)

    def get_progress(self) -> float:
        if self._duration <= 0:
            return 100.0 if self._state.finished else 0.0
        return self._state.current_time / self._duration * 100

    # -- transport --------------------------------------------------------

    def play(self) -> None:
        if self._state.playing:
            return
        self._state.playing = True
        self._state.paused = False
        self._last_tick = self._clock()
        self._done.clear()
        self._notify_state()
        self._check_complete()
        if self._state.playing:
            self._ensure_task()

    def pause(self) -> None:
        if not self._state.playing:
            return
        self._state.playing = False
        self._state.paused = True
        self._notify_state()

    def toggle(self) -> None:
        if self._state.playing:
            self.pause()
        else:
            self.play()

    def stop(self) -> None:
        self.pause()
        self._state.cursor = 0
        self._state.current_time = 0.0
        self._state.paused = False
        self._state.finished = False
        self._reset()
        self._notify_state()
        self._notify_progress()

    def restart(self) -> None:
        self.stop()
        self.play()

    def set_speed(self, speed: float) -> None:
        self._state.speed = _clamp_speed(speed)
        self._notify_state()

    # -- seeking ----------------------------------------------------------

    def seek(self, time_ms: float) -> None:
        target = min(max(float(time_ms), 0.0), float(self._duration))
        cursor = bisect.bisect_right(self._timestamps, target)
        self._reset()
        self._state.cursor = cursor
        self._state.current_time = target
        self._state.finished = False
        for event in self._events[:cursor]:
            self._dispatch(event)
        self._notify_state()
        self._notify_progress()

    def seek_to_percent(self, percent: float) -> None:
        self.seek(percent / 100 * self._duration)

    def skip_forward(self, ms: float = 1000) -> None:
        self.seek(self._state.current_time + ms)

    def skip_backward(self, ms: float = 1000) -> None:
        self.seek(self._state.current_time - ms)

    def jump_to_start(self) -> None:
        self.seek(0)

    def jump_to_end(self) -> None:
        self.seek(self._duration)

    # -- time -------------------------------------------------------------

    def advance(self, elapsed_ms: float) -> None:
        """Move playback forward by ``elapsed_ms`` of wall-clock time."""

        if not self._state.playing:
            return
        if self._state.speed > 0 and elapsed_ms > 0:
            self._state.current_time += elapsed_ms * self._state.speed
            while self._state.cursor < len(self._events):
                event = self._events[self._state.cursor]
                if event.timestamp > self._state.current_time:
                    break
                self._state.cursor += 1
                self._dispatch(event)
            self._notify_progress()
        self._check_complete()

    def tick(self) -> None:
        now = self._clock()
        elapsed_ms = (now - self._last_tick) * 1000
        self._last_tick = now
        self.advance(elapsed_ms)

    async def wait_done(self) -> None:
        await self._done.wait()

    def close(self) -> None:
        self.stop()
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None

    def _ensure_task(self) -> None:
        if self._task is not None and not self._task.done():
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No loop: the owner drives playback through advance().
            return
        self._task = loop.create_task(self._run())

    async def _run(self) -> None:
        while self._state.playing:
            await asyncio.sleep(self._tick_interval)
            self.tick()

    def _check_complete(self) -> None:
        state = self._state
        if state.current_time >= self._duration:
            while state.cursor < len(self._events):
                event = self._events[state.cursor]
                state.cursor += 1
                self._dispatch(event)
        if state.current_time >= self._duration or state.cursor >= len(self._events):
            state.playing = False
            state.paused = False
            state.finished = True
            state.current_time = float(self._duration)
            self._done.set()
            self._notify_state()
            self._notify_progress()

    # -- notifications ----------------------------------------------------

    def _reset(self) -> None:
        if self._on_reset is not None:
            self._guard("reset", self._on_reset)

    def _dispatch(self, event: ReplayEvent) -> None:
        if self._on_event is not None:
            self._guard("event", self._on_event, event, self.get_state())

    def _notify_state(self) -> None:
        if self._on_state_change is not None:
            self._guard("state", self._on_state_change, self.get_state())

    def _notify_progress(self) -> None:
        if self._on_progress is not None:
            self._guard("progress", self._on_progress, self.get_progress(), self.get_state())

    @staticmethod
    def _guard(kind: str, callback: Callable[..., None], *args: Any) -> None:
        try:
            callback(*args)
        except Exception:
            logger.exception("Playback %s callback failed", kind)


def _clamp_speed(speed: float) -> float:
    return max(0.0, min(MAX_SPEED, float(speed)))


def format_time(ms: float) -> str:
    total_seconds = int(ms // 1000)
    minutes, seconds = divmod(total_seconds, 60)
    return f"{minutes}:{seconds:02d}"


def describe_event(event: ReplayEvent) -> str:
    data = event.data
    if event.type == "spawn":
        return f"SPAWN {data['command']} {' '.join(data.get('args') or [])}".rstrip()
    if event.type == "output":
        return f"OUTPUT ({len(data.encode('utf-8'))} bytes)"
    if event.type == "input":
        return f"INPUT {json.dumps(data)}"
    if event.type == "key":
        return f"KEY {data}"
    if event.type == "resize":
        return f"RESIZE {data['cols']}x{data['rows']}"
    if event.type == "screenshot":
        return f"SCREENSHOT {data['name']}"
    if event.type == "expect":
        pattern = data.get("pattern") if isinstance(data, dict) else data
        return f"EXPECT {pattern}"
    if event.type == "exit":
        return f"EXIT code {data}"
    return event.type.upper()
