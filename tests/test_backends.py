from __future__ import annotations

import asyncio
import threading

import pytest

from ptybattle.backends import (
    AsyncioBackend,
    PtyExitStatus,
    PtyHandle,
    PtyOptions,
    PtySize,
    ThreadedBackend,
    create_backend,
)
from ptybattle.errors import BackendUnavailable, ResourceLimitExceeded, SpawnFailed
from ptybattle.expect import poll_until
from ptybattle.security import PtyLimiter

BACKENDS = ["asyncio", "thread"]


async def _run_to_exit(
    backend_name: str,
    command: str,
    args: list[str],
    options: PtyOptions | None = None,
) -> tuple[PtyHandle, bytes, int]:
    backend = create_backend(backend_name)
    chunks: list[bytes] = []
    done: asyncio.Future[int] = asyncio.get_running_loop().create_future()

    def on_exit(code: int) -> None:
        if not done.done():
            done.set_result(code)

    handle = await backend.allocate(command, args, options or PtyOptions())
    handle.add_listener("data", chunks.append)
    handle.add_listener("exit", on_exit)
    code = await asyncio.wait_for(done, timeout=5)
    return handle, b"".join(chunks), code


@pytest.mark.asyncio
@pytest.mark.parametrize("backend_name", BACKENDS)
async def test_output_streams_through_the_pty(backend_name: str) -> None:
    handle, output, code = await _run_to_exit(backend_name, "/bin/sh", ["-c", "printf 'Hello Battle\\n'"])

    assert b"Hello Battle" in output
    assert code == 0
    assert not handle.alive


@pytest.mark.asyncio
@pytest.mark.parametrize("backend_name", BACKENDS)
async def test_exit_code_is_reported(backend_name: str) -> None:
    _, _, code = await _run_to_exit(backend_name, "/bin/sh", ["-c", "exit 3"])
    assert code == 3


@pytest.mark.asyncio
@pytest.mark.parametrize("backend_name", BACKENDS)
async def test_child_sees_a_tty_of_the_requested_size(backend_name: str) -> None:
    options = PtyOptions(size=PtySize(rows=30, cols=100))
    _, output, _ = await _run_to_exit(backend_name, "/bin/sh", ["-c", "test -t 0 && echo tty; stty size"], options)

    assert b"tty" in output
    assert b"30 100" in output


@pytest.mark.asyncio
@pytest.mark.parametrize("backend_name", BACKENDS)
async def test_child_environment_advertises_a_color_terminal(backend_name: str) -> None:
    options = PtyOptions(env={"PATH": "/usr/bin:/bin"})
    _, output, _ = await _run_to_exit(backend_name, "/bin/sh", ["-c", 'echo "term=$TERM"'], options)

    assert b"term=xterm-256color" in output


@pytest.mark.asyncio
@pytest.mark.parametrize("backend_name", BACKENDS)
async def test_write_reaches_the_child_and_kill_signals_it(backend_name: str) -> None:
    backend = create_backend(backend_name)
    received = bytearray()
    done: asyncio.Future[int] = asyncio.get_running_loop().create_future()

    handle = await backend.allocate("cat", [], PtyOptions())
    handle.add_listener("data", received.extend)
    handle.add_listener("exit", lambda code: done.done() or done.set_result(code))

    backend.write(handle, b"ping\n")
    for _ in range(100):
        if received.count(b"ping") >= 2:
            break
        await asyncio.sleep(0.02)
    # Echoed by the line discipline and again by cat.
    assert received.count(b"ping") >= 2

    backend.kill(handle)
    code = await asyncio.wait_for(done, timeout=5)
    assert code == 128 + 15


@pytest.mark.asyncio
@pytest.mark.parametrize("backend_name", BACKENDS)
async def test_write_and_resize_after_exit_are_ignored(backend_name: str) -> None:
    handle, _, _ = await _run_to_exit(backend_name, "true", [])
    backend = create_backend(backend_name)

    backend.write(handle, b"late input")
    backend.resize(handle, 120, 40)
    backend.kill(handle)

    assert handle.cols == 80
    assert handle.closed


@pytest.mark.asyncio
async def test_limiter_slot_is_released_on_exit() -> None:
    limiter = PtyLimiter(max_instances=1)
    backend = AsyncioBackend(limiter)
    done: asyncio.Future[int] = asyncio.get_running_loop().create_future()

    handle = await backend.allocate("sleep", ["5"], PtyOptions())
    handle.add_listener("exit", lambda code: done.done() or done.set_result(code))
    assert limiter.active == 1

    with pytest.raises(ResourceLimitExceeded):
        await backend.allocate("true", [], PtyOptions())

    backend.kill(handle)
    await asyncio.wait_for(done, timeout=5)
    assert limiter.active == 0


@pytest.mark.asyncio
async def test_threaded_pump_stops_before_the_descriptor_is_closed() -> None:
    backend = ThreadedBackend(poll_interval=0.05)
    handle = await backend.allocate("sleep", ["5"], PtyOptions())
    pump_name = f"pty-pump-{handle.pid}"
    assert any(thread.name == pump_name for thread in threading.enumerate())

    backend.kill(handle)
    handle.close()

    assert await poll_until(
        lambda: not any(thread.name == pump_name and thread.is_alive() for thread in threading.enumerate()), 1, 0.01
    )

    fresh = await backend.allocate("echo", ["fresh output"], PtyOptions())
    chunks: list[bytes] = []
    done: asyncio.Future[int] = asyncio.get_running_loop().create_future()
    fresh.add_listener("data", chunks.append)
    fresh.add_listener("exit", lambda code: done.done() or done.set_result(code))
    await asyncio.wait_for(done, timeout=5)
    assert b"fresh output" in b"".join(chunks)


@pytest.mark.asyncio
async def test_missing_program_fails_to_spawn() -> None:
    limiter = PtyLimiter(max_instances=2)
    backend = ThreadedBackend(limiter)

    with pytest.raises(SpawnFailed, match="Failed to create PTY"):
        await backend.allocate("/nonexistent/program-that-is-not-there", [], PtyOptions())
    assert limiter.active == 0


@pytest.mark.asyncio
async def test_auto_backend_prefers_event_driven_reads() -> None:
    assert isinstance(create_backend("auto"), AsyncioBackend)
    assert isinstance(create_backend("thread"), ThreadedBackend)


def test_unknown_backend_is_unavailable() -> None:
    with pytest.raises(BackendUnavailable):
        create_backend("winpty")


def test_exit_status_codes() -> None:
    assert PtyExitStatus.from_returncode(0).succeeded
    assert PtyExitStatus.from_returncode(2).code == 2
    killed = PtyExitStatus.from_returncode(-9)
    assert killed.signal == 9
    assert killed.code == 137
    assert not killed.succeeded
