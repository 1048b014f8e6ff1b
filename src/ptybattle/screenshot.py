"""Screen emulation and screenshot artifacts.

A screenshot is three sibling files named after the capture: the raw output
(``<name>.txt``), the ANSI-stripped text (``<name>-clean.txt``) and an HTML
page (``<name>.html``) rendered from a pyte screen with inline colour spans.
"""

from __future__ import annotations

import html
import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from itertools import groupby
from pathlib import Path
from typing import Sequence

import pyte
from pyte.screens import Char

from .buffer import strip_ansi
from .errors import ValidationRejected
from .security import validate_path

logger = logging.getLogger(__name__)

_HEX_COLOR_RE = re.compile(r"^[0-9a-fA-F]{6}$")

_DEFAULT_PALETTE = {
    "default": "#d0d0d0",
    "default_bg": "#1e1e1e",
    "black": "#000000",
    "red": "#cd3131",
    "green": "#0dbc79",
    "brown": "#e5e510",
    "yellow": "#e5e510",
    "blue": "#2472c8",
    "magenta": "#bc3fbc",
    "cyan": "#11a8cd",
    "white": "#e5e5e5",
    "brightblack": "#666666",
    "brightred": "#f14c4c",
    "brightgreen": "#23d18b",
    "brightbrown": "#f5f543",
    "brightyellow": "#f5f543",
    "brightblue": "#3b8eea",
    "brightmagenta": "#d670d6",
    "brightcyan": "#29b8db",
    "brightwhite": "#ffffff",
}


@dataclass(frozen=True, slots=True)
class CellStyle:
    char: str
    fg: str | None
    bg: str | None
    bold: bool
    italics: bool
    underscore: bool
    reverse: bool


@dataclass(slots=True)
class ScreenState:
    cursor_row: int
    cursor_col: int
    cells: tuple[tuple[CellStyle, ...], ...]

    @property
    def text_lines(self) -> tuple[str, ...]:
        return tuple("".join(cell.char for cell in row) for row in self.cells)

    @property
    def display_text(self) -> str:
        return "\n".join(line.rstrip() for line in self.text_lines).rstrip("\n")


@dataclass(frozen=True, slots=True)
class CursorPosition:
    row: int
    col: int


class TerminalScreen:
    """Virtual terminal fed with raw PTY bytes."""

    def __init__(self, cols: int = 80, rows: int = 24) -> None:
        self._screen = pyte.Screen(cols, rows)
        self._stream = pyte.ByteStream(self._screen)

    @property
    def cols(self) -> int:
        return self._screen.columns

    @property
    def rows(self) -> int:
        return self._screen.lines

    def feed(self, data: bytes | str) -> None:
        if not data:
            return
        if isinstance(data, str):
            data = data.encode("utf-8")
        self._stream.feed(data)

    def resize(self, cols: int, rows: int) -> None:
        self._screen.resize(lines=rows, columns=cols)

    def reset(self) -> None:
        self._screen.reset()

    @property
    def cursor(self) -> CursorPosition:
        return CursorPosition(row=self._screen.cursor.y, col=self._screen.cursor.x)

    def snapshot(self) -> ScreenState:
        screen = self._screen
        rows: list[tuple[CellStyle, ...]] = []
        empty = Char(" ")
        for row_idx in range(screen.lines):
            row_buffer = screen.buffer.get(row_idx, {})
            cells: list[CellStyle] = []
            for col_idx in range(screen.columns):
                char = row_buffer.get(col_idx, empty)
                cells.append(
                    CellStyle(
                        char=char.data if char.data else " ",
                        fg=char.fg,
                        bg=char.bg,
                        bold=bool(char.bold),
                        italics=bool(char.italics),
                        underscore=bool(char.underscore),
                        reverse=bool(char.reverse),
                    )
                )
            rows.append(tuple(cells))
        return ScreenState(
            cursor_row=screen.cursor.y,
            cursor_col=screen.cursor.x,
            cells=tuple(rows),
        )


def render_screen(output: bytes | str, cols: int = 80, rows: int = 24) -> ScreenState:
    screen = TerminalScreen(cols, rows)
    screen.feed(output)
    return screen.snapshot()


class HtmlRenderer:
    """Render screen states to standalone HTML pages."""

    def __init__(self, palette: dict[str, str] | None = None) -> None:
        palette = palette or {}
        self._palette = {**_DEFAULT_PALETTE, **palette}

    def render(self, state: ScreenState, path: Path, *, title: str | None = None) -> None:
        html_text = self.render_to_string(state, title=title)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(html_text, encoding="utf-8")

    def render_to_string(self, state: ScreenState, *, title: str | None = None) -> str:
        title = title or "Terminal Screenshot"
        body = "\n".join(self._render_line(idx, row, state) for idx, row in enumerate(state.cells))
        captured = datetime.now(timezone.utc).isoformat()
        return (
            "<!DOCTYPE html>\n"
            "<html lang=\"en\">\n<head>\n<meta charset=\"utf-8\">\n"
            f"<title>{html.escape(title)}</title>\n"
            "<style>\n"
            f"body {{ background: {self._palette['default_bg']}; color: {self._palette['default']}; "
            "font-family: 'Cascadia Code', 'Fira Code', 'Consolas', 'Menlo', monospace; padding: 20px; }\n"
            ".terminal { background: #000000; border-radius: 5px; padding: 10px; "
            "box-shadow: 0 0 10px rgba(0,0,0,0.5); }\n"
            "pre { line-height: 1.2; font-size: 14px; margin: 0; white-space: pre; }\n"
            ".cursor { outline: 1px solid #ffb454; }\n"
            ".meta { color: #808080; font-size: 12px; margin-bottom: 10px; }\n"
            "</style>\n</head>\n<body>\n"
            f"<div class=\"meta\">{html.escape(title)} | {len(state.cells)} rows | {captured}</div>\n"
            "<div class=\"terminal\"><pre>\n"
            f"{body}\n"
            "</pre></div>\n</body>\n</html>\n"
        )

    def _render_line(self, row_idx: int, row: Sequence[CellStyle], state: ScreenState) -> str:
        fragments: list[str] = []
        col_idx = 0
        cursor_col = state.cursor_col if row_idx == state.cursor_row else -1
        for _, run in groupby(row, key=self._style_key):
            cells = list(run)
            start = col_idx
            col_idx += len(cells)
            if start <= cursor_col < col_idx:
                split = cursor_col - start
                fragments.append(self._render_run(cells[:split]))
                fragments.append(self._render_run(cells[split : split + 1], cursor=True))
                fragments.append(self._render_run(cells[split + 1 :]))
            else:
                fragments.append(self._render_run(cells))
        return "".join(fragments)

    @staticmethod
    def _style_key(cell: CellStyle) -> tuple[object, ...]:
        return (cell.fg, cell.bg, cell.bold, cell.italics, cell.underscore, cell.reverse)

    def _render_run(self, cells: Sequence[CellStyle], *, cursor: bool = False) -> str:
        if not cells:
            return ""
        first = cells[0]
        text = html.escape("".join(cell.char for cell in cells))
        fg = self._resolve_color(first.fg, "default")
        bg = self._resolve_color(first.bg, "default_bg")
        if first.reverse:
            fg, bg = bg, fg
        styles = [f"color: {fg};", f"background: {bg};"]
        if first.bold:
            styles.append("font-weight: bold;")
        if first.italics:
            styles.append("font-style: italic;")
        if first.underscore:
            styles.append("text-decoration: underline;")
        class_attr = " class=\"cursor\"" if cursor else ""
        return f"<span{class_attr} style=\"{''.join(styles)}\">{text}</span>"

    def _resolve_color(self, name: str | None, fallback: str) -> str:
        if not name or name == "default":
            return self._palette[fallback]
        if _HEX_COLOR_RE.match(name):
            return f"#{name.lower()}"
        return self._palette.get(name, self._palette[fallback])


@dataclass(frozen=True, slots=True)
class ScreenshotFiles:
    name: str
    raw: Path
    clean: Path
    html: Path


def write_screenshot(
    directory: Path | str,
    name: str,
    output: str,
    *,
    cols: int = 80,
    rows: int = 24,
    renderer: HtmlRenderer | None = None,
) -> ScreenshotFiles:
    """Write the three screenshot artifacts for ``name`` under ``directory``."""

    directory = Path(directory)
    checked = validate_path(f"{name}.txt", directory)
    if not checked.valid or checked.normalized is None:
        raise ValidationRejected(f"Invalid screenshot name: {checked.error}")

    raw_path = checked.normalized
    stem = raw_path.with_suffix("")
    clean_path = stem.with_name(f"{stem.name}-clean.txt")
    html_path = stem.with_name(f"{stem.name}.html")

    raw_path.parent.mkdir(parents=True, exist_ok=True)
    raw_path.write_text(output, encoding="utf-8")
    clean_path.write_text(strip_ansi(output), encoding="utf-8")

    state = render_screen(output, cols, rows)
    (renderer or HtmlRenderer()).render(state, html_path, title=f"Screenshot: {name}")
    logger.debug("Screenshot %s written to %s", name, raw_path.parent.name)
    return ScreenshotFiles(name=name, raw=raw_path, clean=clean_path, html=html_path)
