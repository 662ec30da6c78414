# Copyright (C) 2025 Torsten Knodt and contributors
# GNU General Public License
# SPDX-License-Identifier: GPL-3.0-or-later

"""Command-line interface for gpt-chat-save."""

import glob
import logging
from collections.abc import Sequence
from pathlib import Path
from typing import List, Optional

import typer
from rich.console import Console
from rich.markup import escape
from rich.progress import BarColumn, MofNCompleteColumn, Progress, SpinnerColumn, TextColumn

from . import __version__
from .config import DEFAULT_EXPORT_FORMAT, DEFAULT_IMAGE_QUALITY, DEFAULT_THEME, ExportOptions
from .converter import RunState, export_file
from .scheduler import DEFAULT_BATCH_SIZE

LOGGER = logging.getLogger(__name__)

app = typer.Typer(
    name="gpt-chat-save",
    help="Export saved ChatGPT conversations (HTML/MHTML) to self-contained HTML documents.",
    no_args_is_help=True,
)

console = Console()


class _WarningCounter(logging.Handler):
    """Counts WARNING-and-above records so the summary can point at -vv."""

    def __init__(self) -> None:
        super().__init__(level=logging.WARNING)
        self.count = 0

    def emit(self, record: logging.LogRecord) -> None:
        self.count += 1


_warning_counter = _WarningCounter()

_LEVEL_NAMES = ("CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG")


def _parse_log_level(value: str) -> int:
    """Log level from a level name or a non-negative integer.

    Raises:
        ValueError: for unknown names and negative numbers
    """
    text = value.strip()
    if text.lstrip("-").isdigit():
        level = int(text)
        if level < 0:
            raise ValueError(f"Log level must be non-negative, got {level}")
        return level

    name = text.upper()
    if name not in _LEVEL_NAMES:
        raise ValueError(
            f"Invalid log level '{value}'. Use one of {', '.join(_LEVEL_NAMES)} "
            "or a non-negative integer."
        )
    return logging.getLevelName(name)


def _setup_logging(verbose: int, quiet: int, log_level: str | None) -> int:
    """Configure the root logger and return the effective level.

    ``-l`` sets the base level (WARNING otherwise); each ``-v`` lowers it and
    each ``-q`` raises it by one step of 10.
    """
    base = logging.WARNING if log_level is None else _parse_log_level(log_level)
    level = max(logging.NOTSET, base + (quiet - verbose) * 10)

    logging.basicConfig(level=level, format="%(levelname)s %(name)s: %(message)s", force=True)
    _warning_counter.count = 0
    logging.getLogger().addHandler(_warning_counter)
    LOGGER.debug("Logging at level %s", logging.getLevelName(level))
    return level


def expand_paths(inputs: Sequence[str]) -> list[Path]:
    """Resolve inputs to absolute paths, expanding globs and dropping repeats.

    A pattern without matches is kept literally so the missing file is reported.
    """
    paths: dict[Path, None] = {}
    for pattern in inputs:
        for match in sorted(glob.glob(pattern)) or [pattern]:
            path = Path(match).resolve()
            if path in paths:
                LOGGER.debug("Ignoring repeated input %s", path)
            paths.setdefault(path)
    return list(paths)


@app.command()
def run(
    files: List[str] = typer.Argument(..., help="Saved pages (.html, .htm, .mhtml, .mht). Shell globs allowed."),
    outdir: Optional[Path] = typer.Option(
        None, "-o", "--outdir", help="Output directory (default: next to each input)."
    ),
    theme: str = typer.Option(
        DEFAULT_THEME, "-t", "--theme", envvar="GPT_CHAT_SAVE_THEME", help="auto, light or dark."
    ),
    image_quality: str = typer.Option(
        DEFAULT_IMAGE_QUALITY,
        "-i",
        "--image-quality",
        envvar="GPT_CHAT_SAVE_IMAGE_QUALITY",
        help="high, medium, low or none (strip images).",
    ),
    export_format: str = typer.Option(
        DEFAULT_EXPORT_FORMAT, "-f", "--format", envvar="GPT_CHAT_SAVE_FORMAT", help="html or md."
    ),
    batch_size: int = typer.Option(
        DEFAULT_BATCH_SIZE, "--batch-size", envvar="GPT_CHAT_SAVE_BATCH_SIZE", help="Turns per batch."
    ),
    verbose: int = typer.Option(0, "-v", "--verbose", count=True, help="Increase verbosity."),
    quiet: int = typer.Option(0, "-q", "--quiet", count=True, help="Decrease verbosity."),
    log_level: Optional[str] = typer.Option(
        None, "-l", "--log-level", help="CRITICAL, ERROR, WARNING, INFO, DEBUG or an integer."
    ),
) -> None:
    """Convert saved ChatGPT pages to self-contained documents."""
    try:
        level = _setup_logging(verbose, quiet, log_level)
        options = ExportOptions(
            theme=theme,
            image_quality=image_quality,
            export_format=export_format,
            batch_size=batch_size,
        )
    except ValueError as exc:
        console.print(f"[red]Error: {escape(str(exc))}[/red]")
        raise typer.Exit(1) from exc

    paths = expand_paths(files)
    run_state = RunState()
    success_count = 0

    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        MofNCompleteColumn(),
        console=console,
    ) as progress:
        for path in paths:
            task = progress.add_task(f"Exporting {path.name}...", total=None)

            def on_progress(processed: int, total: int, task=task) -> None:
                progress.update(task, completed=processed, total=total)

            result, written = export_file(
                path, options, outdir, run_state=run_state, on_progress=on_progress
            )
            progress.remove_task(task)

            if not result.success:
                console.print(
                    f"[red]Error exporting {escape(path.name)}: {escape(result.error or '')}[/red]"
                )
                continue

            success_count += 1
            stats = result.image_stats
            console.print(
                f"[green]✓[/green] {path.name} → {written.name if written else '?'} "
                f"({result.message_count} messages, {stats.embedded}/{stats.total} images embedded"
                + (f", [yellow]{stats.failed} failed[/yellow]" if stats.failed else "")
                + ")"
            )

    console.print(f"\n[green]Exported {success_count}/{len(paths)} conversation(s)[/green]")

    if _warning_counter.count and level > logging.DEBUG:
        console.print(
            f"[yellow]{_warning_counter.count} warning(s) logged. "
            "Rerun with -vv or -l DEBUG for details.[/yellow]"
        )

    if success_count < len(paths):
        raise typer.Exit(1)


@app.command()
def version() -> None:
    """Show version information."""
    console.print(f"gpt-chat-save {__version__}")


def main() -> None:
    """Run the CLI entry point."""
    app()


if __name__ == "__main__":
    main()
