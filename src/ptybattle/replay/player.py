"""Interactive terminal player for replay documents."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import sys
import termios
import tty
from typing import Iterator

from rich.console import Console, Group, RenderableType
from rich.live import Live
from rich.panel import Panel
from rich.style import Style
from rich.text import Text

from ..screenshot import CellStyle, ScreenState, TerminalScreen
from .playback import PlaybackEngine, PlaybackState, describe_event, format_time
from .recorder import ReplayDocument, ReplayEvent

logger = logging.getLogger(__name__)

REFRESH_INTERVAL = 0.05
PROGRESS_WIDTH = 40
MIN_SPEED = 0.1

_COLOR_ALIASES = {"brown": "yellow", "brightbrown": "bright_yellow"}

CONTROLS = (
    ("SPACE", "Play/Pause"),
    ("S", "Stop"),
    ("R", "Restart"),
    ("E", "End"),
    ("+/-", "Speed Up/Down"),
    ("0/1/2/4", "Speed Presets"),
    ("←→", "Skip 1s"),
    ("Q/ESC", "Quit"),
)


def progress_bar(percent: float, width: int = PROGRESS_WIDTH) -> str:
    filled = min(max(round(percent / 100 * width), 0), width)
    return "█" * filled + "░" * (width - filled)


class TerminalPlayer:
    """Plays a replay document on the console with keyboard transport controls.

    Output events are fed into a virtual screen sized from the document
    metadata, so the rendered frame matches what the recorded program drew.
    """

    def __init__(
        self,
        document: ReplayDocument,
        *,
        speed: float = 1.0,
        manual: bool = False,
        console: Console | None = None,
    ) -> None:
        self.document = document
        self.manual = manual
        self.console = console or Console()
        self.screen = TerminalScreen(document.metadata.cols, document.metadata.rows)
        self.last_event = ""
        self.last_key = ""
        self._quit = False
        self.engine = PlaybackEngine(
            document.events,
            document.duration,
            speed=speed,
            on_event=self._on_event,
            on_reset=self._on_reset,
        )

    @property
    def quit_requested(self) -> bool:
        return self._quit

    def _on_reset(self) -> None:
        meta = self.document.metadata
        self.screen.resize(meta.cols, meta.rows)
        self.screen.reset()
        self.last_event = ""
        self.last_key = ""

    def _on_event(self, event: ReplayEvent, state: PlaybackState) -> None:
        self.last_event = describe_event(event)
        if event.type == "output":
            self.screen.feed(event.data)
        elif event.type == "resize":
            self.screen.resize(event.data["cols"], event.data["rows"])
        elif event.type == "key":
            self.last_key = str(event.data)

    def handle_key(self, key: str) -> bool:
        """Apply one keypress. Returns ``False`` once the user asked to quit."""

        engine = self.engine
        if key in ("q", "Q", "\x1b"):
            self._quit = True
            return False
        if key == " ":
            engine.toggle()
        elif key in ("s", "S"):
            engine.stop()
        elif key in ("r", "R"):
            engine.restart()
        elif key in ("e", "E"):
            engine.jump_to_end()
        elif key in ("+", "="):
            engine.set_speed(engine.speed * 2 if engine.speed else MIN_SPEED)
        elif key == "-":
            engine.set_speed(max(MIN_SPEED, engine.speed / 2))
        elif key == "0":
            engine.set_speed(0)
            engine.pause()
        elif key in ("1", "2", "4"):
            engine.set_speed(float(key))
        elif key == "\x1b[C":
            engine.skip_forward(1000)
        elif key == "\x1b[D":
            engine.skip_backward(1000)
        return True

    def render(self) -> RenderableType:
        doc = self.document
        state = self.engine.get_state()

        header = Text()
        header.append("Battle Replay Player\n", style="bold blue")
        header.append(f"File: {doc.version} | {doc.timestamp}\n", style="grey50")
        header.append(
            f"Duration: {format_time(self.engine.duration)} | Events: {self.engine.total_events}",
            style="grey50",
        )

        controls = Text()
        for key, label in CONTROLS:
            controls.append(f" {key}", style="bold white")
            controls.append(f" {label} ", style="grey50")

        if state.playing:
            icon = "▶"
        elif state.paused:
            icon = "⏸"
        else:
            icon = "⏹"
        status = Text()
        status.append(f"{icon} {progress_bar(self.engine.get_progress())} ")
        status.append(format_time(state.current_time), style="yellow")
        status.append("/")
        status.append(format_time(self.engine.duration), style="yellow")
        status.append(f" {state.speed:g}× [{state.cursor}/{self.engine.total_events}]")

        event_line = Text("Event: ")
        event_line.append(self.last_event, style="cyan")
        if self.last_key:
            event_line.append("  Key: ")
            event_line.append(self.last_key, style="green")

        screen = Panel(screen_text(self.screen.snapshot()), expand=False, border_style="grey35")
        return Group(header, controls, status, event_line, screen)

    async def play(self) -> None:
        """Run the player until playback completes or the user quits.

        In manual mode playback does not start on its own and the player only
        returns on quit.
        """

        loop = asyncio.get_running_loop()
        self.console.clear()
        with self._keyboard(loop):
            if not self.manual:
                self.engine.play()
            with Live(self.render(), console=self.console, auto_refresh=False) as live:
                while not self._quit:
                    live.update(self.render(), refresh=True)
                    if not self.manual and self._completed():
                        break
                    await asyncio.sleep(REFRESH_INTERVAL)
        self.engine.close()
        self.console.print("Battle Replay Player - Goodbye!", style="green")

    def _completed(self) -> bool:
        state = self.engine.get_state()
        return not state.playing and state.cursor >= self.engine.total_events

    @contextlib.contextmanager
    def _keyboard(self, loop: asyncio.AbstractEventLoop) -> Iterator[None]:
        stream = sys.stdin
        if stream is None or not stream.isatty():
            yield
            return
        fd = stream.fileno()
        saved = termios.tcgetattr(fd)
        tty.setcbreak(fd)
        loop.add_reader(fd, self._on_stdin, fd)
        try:
            yield
        finally:
            loop.remove_reader(fd)
            termios.tcsetattr(fd, termios.TCSADRAIN, saved)

    def _on_stdin(self, fd: int) -> None:
        try:
            chunk = os.read(fd, 32)
        except OSError:
            return
        self.handle_key(chunk.decode("utf-8", errors="ignore"))


def screen_text(state: ScreenState) -> Text:
    """Convert an emulated screen into styled rich text."""

    text = Text(no_wrap=True)
    last_row = len(state.cells) - 1
    for row_idx, row in enumerate(state.cells):
        for cell in row:
            text.append(cell.char, style=_cell_style(cell))
        if row_idx != last_row:
            text.append("\n")
    return text


def _cell_style(cell: CellStyle) -> Style:
    return Style(
        color=_rich_color(cell.fg),
        bgcolor=_rich_color(cell.bg),
        bold=cell.bold or None,
        italic=cell.italics or None,
        underline=cell.underscore or None,
        reverse=cell.reverse or None,
    )


def _rich_color(name: str | None) -> str | None:
    if not name or name == "default":
        return None
    if len(name) == 6 and all(ch in "0123456789abcdefABCDEF" for ch in name):
        return f"#{name.lower()}"
    name = _COLOR_ALIASES.get(name, name)
    if name.startswith("bright") and not name.startswith("bright_"):
        name = f"bright_{name[len('bright'):]}"
    return name
