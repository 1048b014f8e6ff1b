"""The ``Session`` facade: one PTY-driven test run.

A session owns the lifecycle manager (and through it at most one live PTY),
the bounded output buffer, the event recorder and a virtual screen. Every
externally visible action is recorded so the run can be replayed later.
"""

from __future__ import annotations

import asyncio
import codecs
import inspect
import logging
import os
import re
import signal
import sys
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Awaitable, Callable, Sequence

from .backends import PtyHandle, PtyOptions, PtySize, TerminalBackend, create_backend
from .buffer import OutputBuffer
from .config import SessionOptions
from .errors import BattleError, PatternNotFound, SessionError, SpawnFailed, ValidationRejected
from .expect import ExpectEngine, OutputCondition
from .keys import describe_sequence, key_sequence
from .lifecycle import LifecycleManager, LifecycleState
from .replay.recorder import EventRecorder, EventType
from .screenshot import CursorPosition, TerminalScreen, write_screenshot
from .security import PtyLimiter, redact_message, sanitize_args, sanitize_env, validate_command

logger = logging.getLogger(__name__)

RESIZE_SCREENSHOT_DELAY = 0.1

_LOG_LEVELS = {
    "debug": logging.DEBUG,
    "output": logging.DEBUG,
    "input": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}

InteractionHandler = Callable[[str, str], "str | None | Awaitable[str | None]"]


@dataclass(slots=True)
class TestResult:
    __test__ = False

    success: bool
    duration: float
    output: str
    screenshots: list[Path] = field(default_factory=list)
    logs: list[str] = field(default_factory=list)
    error: str | None = None
    replay_path: Path | None = None


class Session:
    """Drive a command inside a pseudo-terminal and assert on what it prints.

    Use it as an async context manager, or call :meth:`cleanup` yourself::

        async with Session(cols=100) as session:
            await session.spawn("sh", ["-c", "echo ready"])
            await session.expect("ready")
    """

    def __init__(
        self,
        options: SessionOptions | None = None,
        *,
        backend: TerminalBackend | None = None,
        limiter: PtyLimiter | None = None,
        clock: Callable[[], float] = time.monotonic,
        **overrides: Any,
    ) -> None:
        self.options = (options or SessionOptions()).merged(**overrides)
        self.id = uuid.uuid4().hex[:12]
        self.buffer = OutputBuffer(self.options.buffer_max_entries, self.options.buffer_max_bytes)
        self.recorder = EventRecorder(
            cols=self.options.cols,
            rows=self.options.rows,
            clock=clock,
            max_events=self.options.max_events,
        )
        self.expect_engine = ExpectEngine(self.buffer)
        self.screen = TerminalScreen(self.options.cols, self.options.rows)
        self.screenshots: list[Path] = []
        self.logs: list[str] = []
        self.exit_code: int | None = None

        self._backend = backend
        self._limiter = limiter
        self._lifecycle: LifecycleManager | None = None
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._watchdog: asyncio.TimerHandle | None = None
        self._pending: set[asyncio.Task[Any]] = set()
        self._logger = logger.getChild(self.id)
        self._file_handler: logging.FileHandler | None = None
        if self.options.log_to_file:
            self._attach_file_handler()

    async def __aenter__(self) -> Session:
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:  # type: ignore[override]
        await self.cleanup()

    # -- properties -----------------------------------------------------

    @property
    def state(self) -> LifecycleState:
        return self._lifecycle.state if self._lifecycle is not None else LifecycleState.IDLE

    @property
    def handle(self) -> PtyHandle | None:
        return self._lifecycle.handle if self._lifecycle is not None else None

    @property
    def pid(self) -> int | None:
        handle = self.handle
        return handle.pid if handle is not None else None

    @property
    def running(self) -> bool:
        return self._lifecycle is not None and self._lifecycle.running

    @property
    def output(self) -> str:
        return self.buffer.to_string()

    @property
    def clean_output(self) -> str:
        return self.buffer.clean_text()

    # -- logging --------------------------------------------------------

    def log(self, level: str, message: str) -> None:
        stamp = datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")
        self.logs.append(f"[{stamp}] [{level.upper()}] {message}")
        self._logger.log(_LOG_LEVELS.get(level.lower(), logging.INFO), message)

    def _attach_file_handler(self) -> None:
        log_dir = Path(self.options.log_dir)
        log_dir.mkdir(parents=True, exist_ok=True)
        handler = logging.FileHandler(log_dir / f"battle-{self.id}.log", encoding="utf-8")
        handler.setFormatter(logging.Formatter("[%(asctime)s] [%(levelname)s] %(message)s"))
        self._logger.addHandler(handler)
        self._logger.setLevel(logging.DEBUG)
        self._file_handler = handler

    def _detach_file_handler(self) -> None:
        if self._file_handler is None:
            return
        self._logger.removeHandler(self._file_handler)
        self._file_handler.close()
        self._file_handler = None

    # -- process control ------------------------------------------------

    def _manager(self) -> LifecycleManager:
        if self._lifecycle is None:
            backend = self._backend or create_backend(self.options.backend, limiter=self._limiter)
            self._lifecycle = LifecycleManager(backend, grace_timeout=self.options.grace_timeout)
        return self._lifecycle

    def _require_handle(self) -> tuple[LifecycleManager, PtyHandle]:
        manager = self._lifecycle
        if manager is None or manager.handle is None:
            msg = "No PTY process running"
            raise SessionError(msg)
        return manager, manager.handle

    async def spawn(self, command: str, args: Sequence[str] = ()) -> PtyHandle:
        """Start ``command`` in a fresh PTY, replacing any previous process."""

        args = [str(arg) for arg in args]
        command_line = " ".join([command, *args])
        verdict = validate_command(command_line, self.options.security_level)
        if not verdict.valid:
            reason = redact_message(verdict.error or "Command rejected")
            self.log("error", f"Command rejected: {reason}")
            raise ValidationRejected(reason)
        if self.options.sanitize_args:
            args = sanitize_args(args)

        if self._lifecycle is not None:
            # The previous process must report its exit before state is reset.
            await self._lifecycle.kill()

        self.log("info", f"Spawning: {command_line}")
        self.buffer.clear()
        self.screen.reset()
        self._decoder.reset()
        self.exit_code = None

        user_env = sanitize_env(self.options.env or {})
        self.recorder.record(EventType.SPAWN, {"command": command, "args": list(args)})
        self.recorder.set_command(command, args, user_env)

        pty_options = PtyOptions(
            size=PtySize(rows=self.options.rows, cols=self.options.cols),
            cwd=self.options.cwd,
            env=sanitize_env({**os.environ, **(self.options.env or {})}),
        )
        manager = self._manager()
        try:
            handle = await manager.spawn(
                lambda: manager.backend.allocate(command, args, pty_options),
                on_data=self._on_data,
                on_exit=self._on_exit,
            )
        except SpawnFailed as exc:
            self.log("error", redact_message(str(exc)))
            raise
        self._arm_watchdog()
        return handle

    def _on_data(self, chunk: bytes) -> None:
        self.buffer.append(chunk)
        self.screen.feed(chunk)
        text = self._decoder.decode(chunk)
        if not text:
            return
        self.recorder.record(EventType.OUTPUT, text)
        if self.options.verbose:
            sys.stdout.write(text)
            sys.stdout.flush()
        self.log("output", text)

    def _on_exit(self, code: int) -> None:
        self.exit_code = code
        self._disarm_watchdog()
        self.log("info", f"Process exited with code: {code}")
        self.recorder.record(EventType.EXIT, code)

    def _arm_watchdog(self) -> None:
        self._disarm_watchdog()
        timeout = self.options.timeout
        if timeout and timeout > 0:
            self._watchdog = asyncio.get_running_loop().call_later(timeout, self._on_watchdog)

    def _disarm_watchdog(self) -> None:
        if self._watchdog is not None:
            self._watchdog.cancel()
            self._watchdog = None

    def _on_watchdog(self) -> None:
        self._watchdog = None
        if self._lifecycle is None or not self._lifecycle.running:
            return
        self.log("warn", f"Session timeout after {self.options.timeout:g}s, stopping process")
        self._track(asyncio.get_running_loop().create_task(self._lifecycle.kill()))

    def _track(self, task: asyncio.Task[Any]) -> None:
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def kill(self, sig: int = signal.SIGTERM) -> None:
        if self._lifecycle is not None:
            await self._lifecycle.kill(sig)

    # -- input ----------------------------------------------------------

    def write(self, text: str) -> None:
        manager, handle = self._require_handle()
        self.recorder.record(EventType.INPUT, text)
        self.log("input", text)
        manager.backend.write(handle, text.encode("utf-8"))

    def send_key(self, key: str) -> None:
        sequence = key_sequence(key)
        self._require_handle()
        self.recorder.record(EventType.KEY, key)
        self.log("info", f"Sending key: {key} ({describe_sequence(sequence)})")
        self.write(sequence.decode("utf-8", errors="replace"))

    def resize(self, cols: int, rows: int) -> None:
        manager, handle = self._require_handle()
        if cols <= 0 or rows <= 0:
            msg = "Terminal size must be positive"
            raise ValueError(msg)
        self.log("info", f"Resizing terminal to {cols}x{rows}")
        manager.backend.resize(handle, cols, rows)
        self.options.cols = cols
        self.options.rows = rows
        self.screen.resize(cols, rows)
        self.recorder.record(EventType.RESIZE, {"cols": cols, "rows": rows})
        if self.options.screenshot_on_resize:
            self._track(asyncio.get_running_loop().create_task(self._delayed_screenshot(f"resize-{cols}x{rows}")))

    async def _delayed_screenshot(self, name: str) -> None:
        await asyncio.sleep(RESIZE_SCREENSHOT_DELAY)
        self._capture(name)

    async def wait(self, seconds: float) -> None:
        await asyncio.sleep(seconds)

    # -- assertions -----------------------------------------------------

    async def expect(self, pattern: str | re.Pattern[str] | OutputCondition, timeout: float = 2.0) -> bool:
        """Wait until ``pattern`` shows up in the ANSI-stripped output.

        Raises :class:`PatternNotFound` after ``timeout`` seconds, once an
        ``expect-failure`` screenshot has been written.
        """

        condition = OutputCondition.coerce(pattern)
        description = condition.describe()
        if await self.expect_engine.wait_for(condition, timeout):
            self.recorder.record(EventType.EXPECT, {"pattern": description, "matched": True})
            self.log("info", f"Pattern matched: {description}")
            return True

        self.recorder.record(EventType.EXPECT, {"pattern": description, "matched": False})
        self.log("error", f"Expected pattern not found after {timeout:g}s: {description}")
        self._capture(f"expect-failure-{self.recorder.elapsed_ms()}")
        raise PatternNotFound(description, timeout, self.buffer.clean_text()[-200:])

    async def expect_visual_change(self, timeout: float = 1.0) -> bool:
        if await self.expect_engine.wait_for_change(timeout):
            self.log("info", "Visual change detected")
            return True
        self.log("warn", f"No visual change detected within {timeout:g}s")
        return False

    async def send_key_and_detect_response(self, key: str, timeout: float = 0.5) -> bool:
        responded = await self.expect_engine.detect_response(
            lambda: self.send_key(key), timeout, interval=0.005
        )
        if responded:
            self.log("info", f"Key response detected for: {key}")
        else:
            self.log("warn", f"No response detected for key: {key}")
        return responded

    def cursor(self) -> CursorPosition:
        """Cursor position of the emulated screen, zero-based."""
        return self.screen.cursor

    # -- artifacts ------------------------------------------------------

    def screenshot(self, name: str | None = None) -> Path:
        name = name or f"screenshot-{int(time.time() * 1000)}"
        if name.endswith(".txt"):
            name = name[: -len(".txt")]
        files = write_screenshot(
            self.options.screenshot_dir,
            name,
            self.buffer.to_string(),
            cols=self.options.cols,
            rows=self.options.rows,
        )
        self.screenshots.append(files.raw)
        self.recorder.record(EventType.SCREENSHOT, {"name": name})
        self.log("info", f"Screenshot saved: {files.raw.name}")
        return files.raw

    def _capture(self, name: str) -> Path | None:
        try:
            return self.screenshot(name)
        except (OSError, BattleError) as exc:
            self.log("warn", f"Failed to capture screenshot {name}: {redact_message(str(exc))}")
            return None

    def save_replay(self, path: Path | str | None = None) -> Path:
        if path is None:
            path = Path(self.options.log_dir) / f"replay-{int(time.time() * 1000)}.json"
        saved = self.recorder.save(path)
        self.log("info", f"Replay saved: {saved.name}")
        return saved

    # -- scripted interaction ---------------------------------------------

    async def interact(self, handler: InteractionHandler, timeout: float | None = None) -> None:
        """Feed each output chunk to ``handler`` until it returns ``None``.

        A string result is written to the PTY. ``handler`` receives the new
        chunk and the whole buffered output, and may be a coroutine function.
        """

        manager, _ = self._require_handle()
        loop = asyncio.get_running_loop()
        done: asyncio.Future[None] = loop.create_future()
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

        def respond(response: str | None) -> None:
            if done.done():
                return
            if response is None:
                done.set_result(None)
            elif response:
                self.write(response)

        async def respond_later(pending: Awaitable[str | None]) -> None:
            try:
                respond(await pending)
            except Exception as exc:
                if not done.done():
                    done.set_exception(exc)

        def on_data(chunk: bytes) -> None:
            if done.done():
                return
            try:
                response = handler(decoder.decode(chunk), self.output)
                if inspect.isawaitable(response):
                    self._track(loop.create_task(respond_later(response)))
                else:
                    respond(response)
            except Exception as exc:
                done.set_exception(exc)

        limit = timeout if timeout is not None else self.options.timeout
        manager.listen("data", on_data)
        try:
            await asyncio.wait_for(done, limit)
        except asyncio.TimeoutError as exc:
            self.log("error", "Interaction timeout")
            msg = f"Interaction timed out after {limit:g}s"
            raise TimeoutError(msg) from exc
        finally:
            manager.unlisten("data", on_data)

    async def run(self, test_fn: Callable[[Session], Awaitable[None]]) -> TestResult:
        """Run ``test_fn`` against this session and always persist the replay."""

        started = time.monotonic()
        success = False
        error: str | None = None
        try:
            self.log("info", "Starting test")
            await test_fn(self)
            success = True
            self.log("info", "Test completed successfully")
        except Exception as exc:
            error = str(exc) or type(exc).__name__
            self.log("error", f"Test failed: {redact_message(error)}")
            self._capture("test-failure")
        finally:
            output = self.output
            await self.cleanup()

        replay_path: Path | None = None
        try:
            replay_path = self.save_replay()
        except OSError as exc:
            self.log("error", f"Failed to save replay: {redact_message(str(exc))}")

        return TestResult(
            success=success,
            duration=time.monotonic() - started,
            output=output,
            screenshots=list(self.screenshots),
            logs=list(self.logs),
            error=error,
            replay_path=replay_path,
        )

    async def cleanup(self) -> None:
        """Stop the process, detach every listener and clear the buffer."""

        self._disarm_watchdog()
        if self.handle is not None:
            self.log("info", "Cleaning up PTY process")
        pending = [task for task in self._pending if not task.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        if self._lifecycle is not None:
            await self._lifecycle.cleanup()
        self.buffer.clear()
        self._detach_file_handler()
