from __future__ import annotations

import asyncio
import io

import pytest
from rich.console import Console

from ptybattle.replay.player import TerminalPlayer, progress_bar, screen_text
from ptybattle.replay.recorder import ReplayDocument, ReplayEvent, ReplayMetadata
from ptybattle.screenshot import render_screen


def _document() -> ReplayDocument:
    return ReplayDocument(
        version="1.0.0",
        timestamp="2024-01-01T00:00:00Z",
        duration=3000,
        events=[
            ReplayEvent("output", 0, "\x1b[32mready\x1b[0m\r\n"),
            ReplayEvent("key", 500, "enter"),
            ReplayEvent("resize", 1000, {"cols": 40, "rows": 10}),
            ReplayEvent("output", 2000, "done\r\n"),
        ],
        metadata=ReplayMetadata(cols=60, rows=12, command="app"),
    )


def _player(**kwargs) -> tuple[TerminalPlayer, io.StringIO]:
    sink = io.StringIO()
    console = Console(file=sink, width=100, color_system=None)
    return TerminalPlayer(_document(), console=console, **kwargs), sink


def test_transport_keys() -> None:
    player, _ = _player(manual=True)
    engine = player.engine

    player.handle_key(" ")
    assert engine.playing
    player.handle_key(" ")
    assert engine.get_state().paused

    player.handle_key("e")
    assert engine.current_time == 3000
    assert player.screen.cols == 40

    player.handle_key("s")
    state = engine.get_state()
    assert state.cursor == 0
    assert not state.playing

    player.handle_key("\x1b[C")
    assert engine.current_time == 1000
    assert player.last_key == "enter"
    player.handle_key("\x1b[D")
    assert engine.current_time == 0

    player.handle_key("r")
    assert engine.playing


def test_speed_keys() -> None:
    player, _ = _player(manual=True)
    engine = player.engine

    player.handle_key("+")
    assert engine.speed == 2
    player.handle_key("-")
    player.handle_key("-")
    assert engine.speed == 0.5
    player.handle_key("4")
    assert engine.speed == 4
    player.handle_key("0")
    assert engine.speed == 0
    player.handle_key("+")
    assert engine.speed == pytest.approx(0.1)


def test_quit_keys() -> None:
    player, _ = _player(manual=True)
    assert player.handle_key("x")
    assert not player.handle_key("q")
    assert player.quit_requested


def test_seek_rebuilds_the_screen() -> None:
    player, _ = _player(manual=True)

    player.engine.seek(2500)
    assert "done" in player.screen.snapshot().display_text

    player.engine.seek(100)
    text = player.screen.snapshot().display_text
    assert "ready" in text
    assert "done" not in text
    assert player.screen.cols == 60


def test_render_shows_status_and_screen() -> None:
    player, sink = _player(manual=True)
    player.engine.seek(600)

    player.console.print(player.render())
    output = sink.getvalue()

    assert "Battle Replay Player" in output
    assert "0:00/0:03" in output
    assert "[2/4]" in output
    assert "KEY enter" in output
    assert "ready" in output


@pytest.mark.asyncio
async def test_play_runs_to_completion() -> None:
    player, sink = _player(speed=50)

    await asyncio.wait_for(player.play(), timeout=5)

    assert player.engine.get_state().finished
    assert "Goodbye" in sink.getvalue()


def test_progress_bar_bounds() -> None:
    assert progress_bar(0, 10) == "░" * 10
    assert progress_bar(50, 10) == "█" * 5 + "░" * 5
    assert progress_bar(250, 10) == "█" * 10


def test_screen_text_carries_colours() -> None:
    text = screen_text(render_screen("\x1b[31mred\x1b[0m", cols=5, rows=1))

    assert text.plain == "red  "
    assert str(text.get_style_at_offset(Console(), 0).color.name) == "red"
