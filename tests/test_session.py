from __future__ import annotations

import re
from pathlib import Path

import pytest

from ptybattle.backends import create_backend
from ptybattle.errors import PatternNotFound, SessionError, ValidationRejected
from ptybattle.expect import poll_until
from ptybattle.lifecycle import LifecycleState
from ptybattle.replay.recorder import load_replay
from ptybattle.screenshot import CursorPosition
from ptybattle.security import REDACTED
from ptybattle.session import Session


def _session(artifact_dir: Path, **overrides) -> Session:
    return Session(
        screenshot_dir=artifact_dir / "screenshots",
        log_dir=artifact_dir / "logs",
        timeout=10,
        **overrides,
    )


@pytest.mark.asyncio
async def test_expect_matches_then_fails_with_screenshot(artifact_dir: Path) -> None:
    async with _session(artifact_dir) as session:
        await session.spawn("echo", ["Hello Battle"])

        assert await session.expect("Hello Battle")

        with pytest.raises(PatternNotFound) as excinfo:
            await session.expect("Goodbye", 0.2)

    assert excinfo.value.pattern == "Goodbye"
    assert "0.2s" in str(excinfo.value)
    failures = list((artifact_dir / "screenshots").glob("expect-failure-*.txt"))
    assert len(failures) == 1
    assert "Hello Battle" in failures[0].read_text(encoding="utf-8")

    expectations = [event.data for event in session.recorder.events if event.type == "expect"]
    assert expectations == [
        {"pattern": "Hello Battle", "matched": True},
        {"pattern": "Goodbye", "matched": False},
    ]


@pytest.mark.asyncio
async def test_expect_accepts_regular_expressions(artifact_dir: Path) -> None:
    async with _session(artifact_dir) as session:
        await session.spawn("printf", ["\\033[32mbuild 42 ok\\033[0m"])
        assert await session.expect(re.compile(r"build \d+ ok"))


@pytest.mark.asyncio
async def test_run_saves_replay_on_success(artifact_dir: Path) -> None:
    session = _session(artifact_dir)

    async def scenario(battle: Session) -> None:
        await battle.spawn("echo", ["Hello Battle"])
        await battle.expect("Hello Battle")
        assert await poll_until(lambda: battle.exit_code is not None, 5, 0.02)

    result = await session.run(scenario)

    assert result.success
    assert result.error is None
    assert "Hello Battle" in result.output
    assert result.replay_path is not None
    assert result.replay_path.parent == artifact_dir / "logs"

    document = load_replay(result.replay_path)
    types = [event.type for event in document.events]
    assert types[0] == "spawn"
    assert "output" in types
    assert "expect" in types
    assert "exit" in types
    assert document.metadata.command == "echo"
    assert document.metadata.args == ["Hello Battle"]
    assert document.duration >= document.events[-1].timestamp


@pytest.mark.asyncio
async def test_run_reports_failures_and_still_saves_replay(artifact_dir: Path) -> None:
    session = _session(artifact_dir)

    async def scenario(battle: Session) -> None:
        await battle.spawn("echo", ["Hello Battle"])
        await battle.expect("never printed", 0.1)

    result = await session.run(scenario)

    assert not result.success
    assert result.error is not None
    assert "never printed" in result.error
    assert result.replay_path is not None and result.replay_path.exists()
    names = {path.name for path in result.screenshots}
    assert "test-failure.txt" in names
    assert any(name.startswith("expect-failure-") for name in names)
    assert not session.running


@pytest.mark.asyncio
async def test_rejected_command_never_allocates_a_pty(artifact_dir: Path) -> None:
    session = _session(artifact_dir, security_level="strict")

    with pytest.raises(ValidationRejected):
        await session.spawn("rm", ["-rf", "/"])

    assert session.handle is None
    assert session.recorder.events == ()
    await session.cleanup()


@pytest.mark.asyncio
async def test_input_requires_a_running_process(artifact_dir: Path) -> None:
    session = _session(artifact_dir)
    with pytest.raises(SessionError):
        session.write("hello")
    with pytest.raises(SessionError):
        session.send_key("enter")


@pytest.mark.asyncio
async def test_write_and_keys_are_recorded(artifact_dir: Path) -> None:
    async with _session(artifact_dir) as session:
        await session.spawn("cat")
        session.write("ping\n")
        assert await session.expect("ping")

        assert await session.send_key_and_detect_response("x")
        session.send_key("enter")
        assert await session.expect_visual_change(1.0)

    recorded = [(event.type, event.data) for event in session.recorder.events if event.type in ("input", "key")]
    assert recorded[0] == ("input", "ping\n")
    assert ("key", "x") in recorded
    key_index = recorded.index(("key", "enter"))
    assert recorded[key_index + 1] == ("input", "\r")


@pytest.mark.asyncio
async def test_resize_updates_child_and_takes_screenshot(artifact_dir: Path) -> None:
    async with _session(artifact_dir) as session:
        await session.spawn("/bin/sh", ["-c", "sleep 0.3; stty size"])
        session.resize(100, 30)

        assert await session.expect("30 100", 3)
        shot = artifact_dir / "screenshots" / "resize-100x30.txt"
        assert await poll_until(shot.exists, 2, 0.02)

    resizes = [event.data for event in session.recorder.events if event.type == "resize"]
    assert resizes == [{"cols": 100, "rows": 30}]
    assert session.screen.cols == 100


@pytest.mark.asyncio
async def test_resize_rejects_non_positive_sizes(artifact_dir: Path) -> None:
    async with _session(artifact_dir) as session:
        await session.spawn("cat")
        with pytest.raises(ValueError):
            session.resize(0, 10)


@pytest.mark.asyncio
async def test_watchdog_stops_long_running_processes(artifact_dir: Path) -> None:
    session = Session(
        screenshot_dir=artifact_dir / "screenshots",
        log_dir=artifact_dir / "logs",
        timeout=0.3,
    )
    await session.spawn("sleep", ["30"])

    assert await poll_until(lambda: session.state is LifecycleState.KILLED, 8, 0.05)
    assert any("Session timeout" in line for line in session.logs)
    await session.cleanup()


@pytest.mark.asyncio
async def test_child_environment_is_sanitized(artifact_dir: Path) -> None:
    async with _session(artifact_dir, env={"FOO": "bar", "API_KEY": "sk-live"}) as session:
        await session.spawn("/bin/sh", ["-c", 'echo "value=$FOO key=$API_KEY"'])
        assert await session.expect(f"value=bar key={REDACTED}")

    assert session.recorder.metadata.env == {"FOO": "bar", "API_KEY": REDACTED}


@pytest.mark.asyncio
async def test_interact_answers_prompts(artifact_dir: Path) -> None:
    answered: list[str] = []

    def handler(chunk: str, output: str) -> str | None:
        if "hi bob" in output:
            return None
        if "name?" in output and not answered:
            answered.append("bob")
            return "bob\n"
        return ""

    async with _session(artifact_dir) as session:
        await session.spawn("/bin/sh", ["-c", 'printf "name? "; read n; echo "hi $n"'])
        await session.interact(handler, timeout=5)

    assert answered == ["bob"]
    assert "hi bob" in session.recorder.document().to_json()


@pytest.mark.asyncio
async def test_interact_times_out(artifact_dir: Path) -> None:
    async with _session(artifact_dir) as session:
        await session.spawn("cat")
        with pytest.raises(TimeoutError):
            await session.interact(lambda chunk, output: "", timeout=0.2)


@pytest.mark.asyncio
async def test_cursor_tracks_the_emulated_screen(artifact_dir: Path) -> None:
    async with _session(artifact_dir) as session:
        await session.spawn("printf", ["abc"])
        await session.expect("abc")
        assert session.cursor() == CursorPosition(row=0, col=3)


@pytest.mark.asyncio
async def test_cleanup_clears_buffer_and_stops_process(artifact_dir: Path) -> None:
    session = _session(artifact_dir)
    handle = await session.spawn("cat")
    session.write("data\n")
    await session.expect("data")

    await session.cleanup()

    assert not handle.alive
    assert session.output == ""
    assert not session.running


@pytest.mark.asyncio
async def test_logs_are_timestamped_and_mirrored_to_file(artifact_dir: Path) -> None:
    session = _session(artifact_dir, log_to_file=True)
    await session.spawn("echo", ["logged"])
    await session.expect("logged")
    await session.cleanup()

    assert re.match(r"^\[\d{4}-\d{2}-\d{2}T[\d:.]+Z\] \[INFO\] Spawning: echo logged$", session.logs[0])
    log_file = artifact_dir / "logs" / f"battle-{session.id}.log"
    assert "Spawning: echo logged" in log_file.read_text(encoding="utf-8")


@pytest.mark.asyncio
async def test_screenshot_names_are_confined(artifact_dir: Path) -> None:
    async with _session(artifact_dir) as session:
        await session.spawn("echo", ["shot"])
        await session.expect("shot")

        path = session.screenshot("manual.txt")
        assert path.name == "manual.txt"
        assert (path.parent / "manual-clean.txt").exists()
        assert (path.parent / "manual.html").exists()

        with pytest.raises(ValidationRejected):
            session.screenshot("../escape")


@pytest.mark.asyncio
async def test_wait_lets_output_accumulate(artifact_dir: Path) -> None:
    async with _session(artifact_dir) as session:
        await session.spawn("/bin/sh", ["-c", "sleep 0.1; echo late"])
        await session.wait(0.6)
        assert "late" in session.clean_output


@pytest.mark.asyncio
@pytest.mark.parametrize("backend_name", ["asyncio", "thread"])
async def test_respawn_reports_previous_exit_before_new_spawn(artifact_dir: Path, backend_name: str) -> None:
    async with _session(artifact_dir, backend=create_backend(backend_name)) as session:
        first = await session.spawn("sleep", ["30"])
        second = await session.spawn("sleep", ["30"])

        assert not first.alive
        assert second.alive
        assert session.running
        assert session.exit_code is None

    types = [event.type for event in session.recorder.events if event.type in ("spawn", "exit")]
    assert types[:3] == ["spawn", "exit", "spawn"]
