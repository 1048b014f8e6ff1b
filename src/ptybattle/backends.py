"""Terminal backends: uniform PTY allocation over two read strategies.

``AsyncioBackend`` streams output through ``loop.add_reader`` on the PTY
master. ``ThreadedBackend`` polls the descriptor from a background thread and
hands chunks to the event loop. Both deliver ``data`` and ``exit`` callbacks
on the loop thread, so listeners never need their own locking.
"""

from __future__ import annotations

import asyncio
import fcntl
import logging
import os
import pty
import select
import selectors
import signal
import struct
import subprocess
import sys
import termios
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Mapping, MutableMapping, Protocol, Sequence

from .errors import BackendUnavailable, ResourceLimitExceeded, SpawnFailed
from .security import PtyLimiter, redact_message

logger = logging.getLogger(__name__)

TERMINAL_ENV: dict[str, str] = {
    "TERM": "xterm-256color",
    "FORCE_COLOR": "1",
    "COLORTERM": "truecolor",
}

EVENTS = ("data", "exit")

DataListener = Callable[[bytes], None]
ExitListener = Callable[[int], None]


@dataclass(slots=True)
class PtySize:
    """Terminal size descriptor."""

    rows: int = 24
    cols: int = 80


@dataclass(slots=True)
class PtyExitStatus:
    """Exit information for a PTY-backed subprocess."""

    returncode: int | None
    signal: int | None

    @property
    def succeeded(self) -> bool:
        return self.returncode == 0 and self.signal is None

    @property
    def code(self) -> int:
        """Shell-style exit code: ``128 + signal`` for signalled exits."""
        if self.signal is not None:
            return 128 + self.signal
        return self.returncode if self.returncode is not None else -1

    @classmethod
    def from_returncode(cls, returncode: int | None) -> "PtyExitStatus":
        if returncode is None:
            return cls(returncode=None, signal=None)
        if returncode < 0:
            return cls(returncode=None, signal=abs(returncode))
        return cls(returncode=returncode, signal=None)


@dataclass(slots=True)
class PtyOptions:
    size: PtySize = field(default_factory=PtySize)
    cwd: Path | None = None
    env: Mapping[str, str] | None = None


class PtyHandle:
    """Live PTY endpoint: one child process and its master descriptor."""

    def __init__(
        self,
        process: subprocess.Popen[bytes],
        master_fd: int,
        size: PtySize,
        loop: asyncio.AbstractEventLoop,
    ) -> None:
        self._process = process
        self._master_fd = master_fd
        self._size = size
        self._loop = loop
        self._listeners: dict[str, list[Callable[..., None]]] = {event: [] for event in EVENTS}
        self._exit_status: PtyExitStatus | None = None
        self._teardown: list[Callable[[], None]] = []
        self._closed = False

    @property
    def pid(self) -> int:
        return self._process.pid

    @property
    def process(self) -> subprocess.Popen[bytes]:
        return self._process

    @property
    def master_fd(self) -> int:
        return self._master_fd

    @property
    def loop(self) -> asyncio.AbstractEventLoop:
        return self._loop

    @property
    def cols(self) -> int:
        return self._size.cols

    @property
    def rows(self) -> int:
        return self._size.rows

    @property
    def alive(self) -> bool:
        return self._exit_status is None and not self._closed

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def exit_status(self) -> PtyExitStatus | None:
        return self._exit_status

    def add_listener(self, event: str, callback: Callable[..., None]) -> None:
        if event not in self._listeners:
            msg = f"Unknown PTY event: {event}"
            raise ValueError(msg)
        self._listeners[event].append(callback)
        if event == "exit" and self._exit_status is not None:
            self._loop.call_soon(callback, self._exit_status.code)

    def remove_listener(self, event: str, callback: Callable[..., None]) -> None:
        try:
            self._listeners[event].remove(callback)
        except (KeyError, ValueError):
            return

    def listener_count(self, event: str | None = None) -> int:
        if event is not None:
            return len(self._listeners.get(event, ()))
        return sum(len(callbacks) for callbacks in self._listeners.values())

    def set_size(self, size: PtySize) -> None:
        self._size = size

    def on_teardown(self, callback: Callable[[], None]) -> None:
        self._teardown.append(callback)

    def emit(self, event: str, *args: object) -> None:
        for callback in list(self._listeners[event]):
            try:
                callback(*args)
            except Exception:
                logger.exception("Error in PTY %s listener (pid=%d)", event, self.pid)

    def mark_exited(self, status: PtyExitStatus) -> None:
        if self._exit_status is not None:
            return
        self._exit_status = status
        self.close()
        logger.info("PTY process %d exited (code=%d)", self.pid, status.code)
        self.emit("exit", status.code)

    def close(self) -> None:
        """Detach the reader, release the descriptor and the limiter slot."""
        if self._closed:
            return
        self._closed = True
        for callback in self._teardown:
            try:
                callback()
            except Exception:
                logger.exception("PTY teardown step failed (pid=%d)", self.pid)
        self._teardown.clear()
        try:
            os.close(self._master_fd)
        except OSError:
            pass


class TerminalBackend(Protocol):
    name: str

    async def allocate(
        self, command: str, args: Sequence[str], options: PtyOptions
    ) -> PtyHandle: ...

    def write(self, handle: PtyHandle, data: bytes) -> None: ...

    def resize(self, handle: PtyHandle, cols: int, rows: int) -> None: ...

    def kill(self, handle: PtyHandle, sig: int = signal.SIGTERM) -> None: ...


class AsyncioBackend:
    """Event-driven backend: the loop wakes us when the master is readable."""

    name = "asyncio"

    def __init__(self, limiter: PtyLimiter | None = None, *, read_chunk_size: int = 4096) -> None:
        self._limiter = limiter or PtyLimiter()
        self._chunk_size = read_chunk_size
        self._reapers: set[asyncio.Task[None]] = set()

    async def allocate(
        self, command: str, args: Sequence[str], options: PtyOptions
    ) -> PtyHandle:
        loop = asyncio.get_running_loop()
        master_fd, process = _start_process(command, args, options, self._limiter)
        handle = PtyHandle(process, master_fd, PtySize(options.size.rows, options.size.cols), loop)
        handle.on_teardown(self._limiter.release)
        loop.add_reader(master_fd, self._on_readable, handle)
        handle.on_teardown(lambda: loop.remove_reader(master_fd))
        logger.info("PTY session started: pid=%d backend=%s cmd=%s", process.pid, self.name, command)
        return handle

    def _on_readable(self, handle: PtyHandle) -> None:
        try:
            data = os.read(handle.master_fd, self._chunk_size)
        except BlockingIOError:
            return
        except OSError:
            # EIO once every slave descriptor is closed.
            data = b""

        if data:
            handle.emit("data", data)
            return

        handle.loop.remove_reader(handle.master_fd)
        task = handle.loop.create_task(self._reap(handle))
        self._reapers.add(task)
        task.add_done_callback(self._reapers.discard)

    async def _reap(self, handle: PtyHandle) -> None:
        loop = asyncio.get_running_loop()
        returncode = await loop.run_in_executor(None, handle.process.wait)
        handle.mark_exited(PtyExitStatus.from_returncode(returncode))

    def write(self, handle: PtyHandle, data: bytes) -> None:
        _write(handle, data)

    def resize(self, handle: PtyHandle, cols: int, rows: int) -> None:
        _resize(handle, cols, rows)

    def kill(self, handle: PtyHandle, sig: int = signal.SIGTERM) -> None:
        _kill(handle, sig)


class OutputPump(threading.Thread):
    """Background thread that polls the PTY master and forwards output to the loop."""

    def __init__(self, handle: PtyHandle, read_chunk_size: int, poll_interval: float) -> None:
        super().__init__(daemon=True, name=f"pty-pump-{handle.pid}")
        self._handle = handle
        self._chunk_size = read_chunk_size
        self._poll_interval = poll_interval
        self._stop_event = threading.Event()

    def run(self) -> None:
        selector = selectors.DefaultSelector()
        selector.register(self._handle.master_fd, selectors.EVENT_READ)
        try:
            self._pump(selector)
        finally:
            selector.close()

        if self._stop_event.is_set():
            return
        returncode = self._handle.process.wait()
        self._deliver(self._handle.mark_exited, PtyExitStatus.from_returncode(returncode))

    def _pump(self, selector: selectors.BaseSelector) -> None:
        while not self._stop_event.is_set():
            try:
                events = selector.select(self._poll_interval)
            except (OSError, ValueError):
                return
            if not events:
                if self._handle.process.poll() is not None and not self._drain():
                    return
                continue
            if self._stop_event.is_set():
                return
            try:
                chunk = os.read(self._handle.master_fd, self._chunk_size)
            except BlockingIOError:
                continue
            except OSError:
                return
            if not chunk:
                return
            if not self._deliver(self._handle.emit, "data", chunk):
                return

    def _drain(self) -> bool:
        if self._stop_event.is_set():
            return False
        try:
            chunk = os.read(self._handle.master_fd, self._chunk_size)
        except OSError:
            return False
        if not chunk:
            return False
        return self._deliver(self._handle.emit, "data", chunk)

    def _deliver(self, callback: Callable[..., None], *args: object) -> bool:
        try:
            self._handle.loop.call_soon_threadsafe(callback, *args)
        except RuntimeError:
            # Event loop already closed.
            return False
        return True

    def stop(self) -> None:
        """Stop polling and wait for the thread so the descriptor can be closed safely."""
        self._stop_event.set()
        if self.is_alive() and threading.current_thread() is not self:
            self.join(timeout=self._poll_interval * 2)


class ThreadedBackend:
    """Polling backend: a daemon thread selects on the master descriptor."""

    name = "thread"

    def __init__(
        self,
        limiter: PtyLimiter | None = None,
        *,
        read_chunk_size: int = 4096,
        poll_interval: float = 0.05,
    ) -> None:
        self._limiter = limiter or PtyLimiter()
        self._chunk_size = read_chunk_size
        self._poll_interval = poll_interval

    async def allocate(
        self, command: str, args: Sequence[str], options: PtyOptions
    ) -> PtyHandle:
        loop = asyncio.get_running_loop()
        master_fd, process = _start_process(command, args, options, self._limiter)
        handle = PtyHandle(process, master_fd, PtySize(options.size.rows, options.size.cols), loop)
        pump = OutputPump(handle, self._chunk_size, self._poll_interval)
        handle.on_teardown(pump.stop)
        handle.on_teardown(self._limiter.release)
        pump.start()
        logger.info("PTY session started: pid=%d backend=%s cmd=%s", process.pid, self.name, command)
        return handle

    def write(self, handle: PtyHandle, data: bytes) -> None:
        _write(handle, data)

    def resize(self, handle: PtyHandle, cols: int, rows: int) -> None:
        _resize(handle, cols, rows)

    def kill(self, handle: PtyHandle, sig: int = signal.SIGTERM) -> None:
        _kill(handle, sig)


def create_backend(name: str = "auto", *, limiter: PtyLimiter | None = None) -> TerminalBackend:
    """Pick a backend for the host event loop.

    ``auto`` prefers the event-driven backend and falls back to the polling
    thread on loops that cannot watch file descriptors.
    """

    if sys.platform == "win32":
        raise BackendUnavailable("PTY backends require a POSIX host")
    if name == "asyncio":
        return AsyncioBackend(limiter)
    if name == "thread":
        return ThreadedBackend(limiter)
    if name != "auto":
        raise BackendUnavailable(f"Unknown terminal backend: {name}")
    if _loop_supports_readers():
        return AsyncioBackend(limiter)
    return ThreadedBackend(limiter)


def _loop_supports_readers() -> bool:
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        return True
    proactor = getattr(asyncio, "ProactorEventLoop", None)
    return proactor is None or not isinstance(loop, proactor)


def _start_process(
    command: str,
    args: Sequence[str],
    options: PtyOptions,
    limiter: PtyLimiter,
) -> tuple[int, subprocess.Popen[bytes]]:
    if not command:
        msg = "Command must not be empty"
        raise SpawnFailed(msg)
    if not limiter.acquire():
        msg = f"PTY instance limit exceeded (max {limiter.max_instances})"
        raise ResourceLimitExceeded(msg)
    try:
        return _launch([command, *args], options)
    except (OSError, subprocess.SubprocessError) as exc:
        limiter.release()
        msg = f"Failed to create PTY: {redact_message(str(exc))}"
        raise SpawnFailed(msg) from exc


def _launch(argv: list[str], options: PtyOptions) -> tuple[int, subprocess.Popen[bytes]]:
    master_fd, slave_fd = pty.openpty()
    try:
        _apply_winsize(master_fd, options.size)
        process = subprocess.Popen(
            argv,
            stdin=slave_fd,
            stdout=slave_fd,
            stderr=slave_fd,
            env=_prepare_env(options.env),
            cwd=str(options.cwd) if options.cwd is not None else None,
            start_new_session=True,
            close_fds=True,
        )
    except BaseException:
        os.close(master_fd)
        raise
    finally:
        # Close the slave in parent process to avoid descriptor leaks.
        os.close(slave_fd)

    os.set_blocking(master_fd, False)
    return master_fd, process


def _write(handle: PtyHandle, data: bytes) -> None:
    if not data or not handle.alive:
        return
    view = memoryview(data)
    while view:
        try:
            written = os.write(handle.master_fd, view)
        except BlockingIOError:
            select.select([], [handle.master_fd], [], 0.1)
            continue
        except OSError as exc:
            logger.debug("Write to exited PTY %d ignored: %s", handle.pid, exc)
            return
        view = view[written:]


def _resize(handle: PtyHandle, cols: int, rows: int) -> None:
    if not handle.alive:
        return
    size = PtySize(rows=rows, cols=cols)
    try:
        _apply_winsize(handle.master_fd, size)
    except OSError as exc:
        logger.debug("Resize of exited PTY %d ignored: %s", handle.pid, exc)
        return
    handle.set_size(size)
    try:
        os.killpg(handle.pid, signal.SIGWINCH)
    except (ProcessLookupError, PermissionError):
        pass


def _kill(handle: PtyHandle, sig: int) -> None:
    if handle.exit_status is not None:
        return
    try:
        os.killpg(handle.pid, sig)
    except ProcessLookupError:
        logger.debug("Process group already gone: %d", handle.pid)
        return
    except PermissionError:
        handle.process.send_signal(sig)
    logger.info("Sent signal %d to PTY process group %d", sig, handle.pid)


def _apply_winsize(fd: int, size: PtySize) -> None:
    packed = struct.pack("HHHH", size.rows, size.cols, 0, 0)
    fcntl.ioctl(fd, termios.TIOCSWINSZ, packed)


def _prepare_env(env: Mapping[str, str] | None) -> MutableMapping[str, str]:
    merged: MutableMapping[str, str] = dict(os.environ) if env is None else dict(env)
    merged.update(TERMINAL_ENV)
    return merged
