"""PTY lifecycle state machine and listener bookkeeping."""

from __future__ import annotations

import asyncio
import enum
import logging
import signal
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from .backends import PtyHandle, TerminalBackend

logger = logging.getLogger(__name__)

DEFAULT_GRACE_TIMEOUT = 5.0
FORCE_KILL_TIMEOUT = 1.0


class LifecycleState(str, enum.Enum):
    IDLE = "idle"
    SPAWNING = "spawning"
    RUNNING = "running"
    KILLING = "killing"
    KILLED = "killed"
    EXITED = "exited"
    ERROR = "error"


@dataclass(frozen=True, slots=True)
class ListenerRecord:
    target: Any
    event: str
    callback: Callable[..., None]


class ListenerTracker:
    """Registry of ``(target, event, callback)`` triples for deterministic detach."""

    def __init__(self) -> None:
        self._records: list[ListenerRecord] = []

    def track(self, target: Any, event: str, callback: Callable[..., None]) -> None:
        target.add_listener(event, callback)
        self._records.append(ListenerRecord(target=target, event=event, callback=callback))

    def untrack(self, target: Any, event: str, callback: Callable[..., None]) -> None:
        kept: list[ListenerRecord] = []
        for record in self._records:
            if record.target is target and record.event == event and record.callback is callback:
                self._detach(record)
            else:
                kept.append(record)
        self._records = kept

    def remove_all(self, target: Any) -> None:
        if target is None:
            return
        kept: list[ListenerRecord] = []
        for record in self._records:
            if record.target is target:
                self._detach(record)
            else:
                kept.append(record)
        self._records = kept

    def clear(self) -> None:
        for record in self._records:
            self._detach(record)
        self._records.clear()

    def stats(self) -> dict[str, int]:
        targets = {id(record.target) for record in self._records}
        return {"targets": len(targets), "total_listeners": len(self._records)}

    def __len__(self) -> int:
        return len(self._records)

    @staticmethod
    def _detach(record: ListenerRecord) -> None:
        try:
            record.target.remove_listener(record.event, record.callback)
        except Exception:
            logger.debug("Ignoring listener detach failure for %s", record.event, exc_info=True)


class LifecycleManager:
    """Owns at most one live PTY handle and serialises spawn/kill transitions.

    ``spawn`` always waits for the previous handle to be gone before a new
    one is allocated, so two live handles never coexist. ``kill`` sends the
    requested signal, waits ``grace_timeout`` seconds for the exit
    notification and escalates to ``SIGKILL`` when it does not arrive.
    Concurrent ``kill`` calls share the same in-flight termination.
    """

    def __init__(
        self,
        backend: TerminalBackend,
        *,
        grace_timeout: float = DEFAULT_GRACE_TIMEOUT,
        force_timeout: float = FORCE_KILL_TIMEOUT,
    ) -> None:
        self._backend = backend
        self._grace_timeout = grace_timeout
        self._force_timeout = force_timeout
        self._state = LifecycleState.IDLE
        self._handle: PtyHandle | None = None
        self._exited: asyncio.Event | None = None
        self._kill_task: asyncio.Task[None] | None = None
        self._spawn_lock = asyncio.Lock()
        self.listeners = ListenerTracker()

    @property
    def state(self) -> LifecycleState:
        return self._state

    @property
    def handle(self) -> PtyHandle | None:
        return self._handle

    @property
    def backend(self) -> TerminalBackend:
        return self._backend

    @property
    def running(self) -> bool:
        return self._state is LifecycleState.RUNNING and self._handle is not None and self._handle.alive

    async def spawn(
        self,
        factory: Callable[[], Awaitable[PtyHandle]],
        *,
        on_data: Callable[[bytes], None] | None = None,
        on_exit: Callable[[int], None] | None = None,
    ) -> PtyHandle:
        async with self._spawn_lock:
            await self.kill()
            self._release_handle()

            self._state = LifecycleState.SPAWNING
            try:
                handle = await factory()
            except BaseException:
                self._state = LifecycleState.ERROR
                raise

            exited = asyncio.Event()

            def _on_exit(code: int) -> None:
                exited.set()
                if self._handle is handle and self._state is LifecycleState.RUNNING:
                    self._state = LifecycleState.EXITED

            self._handle = handle
            self._exited = exited
            self._state = LifecycleState.RUNNING
            self.listeners.track(handle, "exit", _on_exit)
            if on_data is not None:
                self.listeners.track(handle, "data", on_data)
            if on_exit is not None:
                self.listeners.track(handle, "exit", on_exit)
            return handle

    async def kill(self, sig: int = signal.SIGTERM) -> None:
        if self._kill_task is not None:
            await asyncio.shield(self._kill_task)
            return
        if self._state is not LifecycleState.RUNNING or self._handle is None:
            return

        task = asyncio.get_running_loop().create_task(self._terminate(self._handle, sig))
        self._kill_task = task
        task.add_done_callback(self._clear_kill_task)
        await asyncio.shield(task)

    def _clear_kill_task(self, task: asyncio.Task[None]) -> None:
        if self._kill_task is task:
            self._kill_task = None

    async def _terminate(self, handle: PtyHandle, sig: int) -> None:
        self._state = LifecycleState.KILLING
        exited = self._exited or asyncio.Event()
        try:
            self._backend.kill(handle, sig)
            try:
                await asyncio.wait_for(exited.wait(), self._grace_timeout)
            except asyncio.TimeoutError:
                logger.warning(
                    "PTY %d did not exit within %.1fs, sending SIGKILL", handle.pid, self._grace_timeout
                )
                self._backend.kill(handle, signal.SIGKILL)
                try:
                    await asyncio.wait_for(exited.wait(), self._force_timeout)
                except asyncio.TimeoutError:
                    logger.warning("PTY %d did not report exit after SIGKILL", handle.pid)
        finally:
            self.listeners.remove_all(handle)
            handle.close()
            self._state = LifecycleState.KILLED

    def listen(self, event: str, callback: Callable[..., None]) -> None:
        if self._handle is None:
            msg = "No PTY handle to listen on"
            raise RuntimeError(msg)
        self.listeners.track(self._handle, event, callback)

    def unlisten(self, event: str, callback: Callable[..., None]) -> None:
        if self._handle is not None:
            self.listeners.untrack(self._handle, event, callback)

    def _release_handle(self) -> None:
        if self._handle is None:
            return
        self.listeners.remove_all(self._handle)
        self._handle.close()
        self._handle = None
        self._exited = None

    async def cleanup(self) -> None:
        await self.kill()
        self._release_handle()
        self.listeners.clear()
