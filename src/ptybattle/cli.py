"""CLI entry point for ptybattle."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import List, Optional

import typer
from rich.console import Console
from rich.markup import escape

from .config import SessionOptions, load_options
from .errors import BattleError, ConfigError, InvalidReplay, SessionError
from .expect import poll_until
from .replay.export import FORMATS, default_export_path, write_export
from .replay.player import TerminalPlayer
from .replay.recorder import ReplayDocument, load_replay
from .session import Session, TestResult

app = typer.Typer(
    name="ptybattle",
    help="Test terminal applications in a real PTY and replay the sessions.",
    no_args_is_help=True,
)
replay_app = typer.Typer(help="Play back or export recorded sessions.", no_args_is_help=True)
app.add_typer(replay_app, name="replay")

console = Console()


def setup_logging(verbose: bool = False) -> None:
    level = logging.DEBUG if verbose else logging.WARNING
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )


def _load_options(config_file: Optional[Path], **overrides: object) -> SessionOptions:
    try:
        options = load_options(config_file)
    except ConfigError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(2)
    try:
        return options.merged(**overrides)
    except ValueError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(2)


async def _run_command(
    options: SessionOptions,
    command: str,
    args: list[str],
    patterns: list[str],
    expect_timeout: float,
) -> TestResult:
    session = Session(options)

    async def scenario(battle: Session) -> None:
        await battle.spawn(command, args)
        for pattern in patterns:
            await battle.expect(pattern, expect_timeout)
        if patterns:
            return
        exited = await poll_until(lambda: battle.exit_code is not None, options.timeout, 0.05)
        if not exited:
            msg = f"Process did not exit within {options.timeout:g}s"
            raise SessionError(msg)
        if battle.exit_code != 0:
            msg = f"Process exited with code {battle.exit_code}"
            raise SessionError(msg)

    return await session.run(scenario)


@app.command(context_settings={"allow_interspersed_args": False})
def run(
    command: str = typer.Argument(help="Program to start inside the PTY."),
    args: Optional[List[str]] = typer.Argument(None, help="Arguments passed to the program."),
    expect: Optional[List[str]] = typer.Option(
        None,
        "--expect",
        "-e",
        help="Text that must appear in the output (repeatable). Without it the program must exit 0.",
    ),
    expect_timeout: float = typer.Option(2.0, "--expect-timeout", help="Seconds to wait for each pattern."),
    timeout: Optional[float] = typer.Option(None, "--timeout", "-t", help="Session timeout in seconds."),
    cols: Optional[int] = typer.Option(None, "--cols", help="Terminal width."),
    rows: Optional[int] = typer.Option(None, "--rows", help="Terminal height."),
    security_level: Optional[str] = typer.Option(
        None, "--security-level", "-s", help="strict, balanced or permissive."
    ),
    log_dir: Optional[Path] = typer.Option(None, "--log-dir", help="Where the replay file is written."),
    screenshot_dir: Optional[Path] = typer.Option(None, "--screenshot-dir", help="Where screenshots are written."),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging and echo PTY output."),
    config_file: Optional[Path] = typer.Option(None, "--config", "-c", help="JSON configuration file."),
) -> None:
    """Spawn a command and assert on its output."""
    setup_logging(verbose)
    options = _load_options(
        config_file,
        timeout=timeout,
        cols=cols,
        rows=rows,
        security_level=security_level,
        log_dir=log_dir,
        screenshot_dir=screenshot_dir,
        verbose=verbose or None,
    )

    result = asyncio.run(_run_command(options, command, list(args or []), list(expect or []), expect_timeout))

    if result.success:
        console.print(f"[green]PASS[/green] {escape(command)} ({result.duration:.2f}s)")
    else:
        console.print(f"[red]FAIL[/red] {escape(command)}: {escape(result.error or '')}")
        for shot in result.screenshots:
            console.print(f"  screenshot: {escape(str(shot))}")
    if result.replay_path is not None:
        console.print(f"  replay: {escape(str(result.replay_path))}")
    if not result.success:
        raise typer.Exit(1)


def _load_document(file: Path) -> ReplayDocument:
    try:
        return load_replay(file)
    except InvalidReplay as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(1)


@replay_app.command("play")
def replay_play(
    file: Path = typer.Argument(help="Replay document to play."),
    speed: float = typer.Option(1.0, "--speed", help="Playback speed multiplier (0-50)."),
    manual: bool = typer.Option(False, "--manual", help="Wait for SPACE instead of starting immediately."),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging."),
) -> None:
    """Play a replay document in the terminal."""
    setup_logging(verbose)
    document = _load_document(file)
    player = TerminalPlayer(document, speed=speed, manual=manual, console=console)
    asyncio.run(player.play())


@replay_app.command("export")
def replay_export(
    file: Path = typer.Argument(help="Replay document to export."),
    fmt: str = typer.Option("html", "--format", "-f", help="Export format: html or json."),
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="Destination file."),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging."),
) -> None:
    """Export a replay document as a static HTML player or as JSON."""
    setup_logging(verbose)
    if fmt not in FORMATS:
        typer.echo(f"Error: unsupported format {fmt!r}, expected one of {', '.join(FORMATS)}", err=True)
        raise typer.Exit(2)
    document = _load_document(file)
    destination = output or default_export_path(file, fmt)
    try:
        write_export(document, destination, fmt)
    except (OSError, BattleError) as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(1)
    typer.echo(f"Exported {file.name} to {destination}")


def main() -> None:
    app()


if __name__ == "__main__":
    main()
