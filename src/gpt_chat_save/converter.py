# Copyright (C) 2025 Torsten Knodt and contributors
# GNU General Public License
# SPDX-License-Identifier: GPL-3.0-or-later

"""Conversion entry point: saved page in, one self-contained document out.

Every failure is reported as a :class:`ConversionResult`; nothing raised
inside a run escapes :func:`convert`.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import tempfile
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

from .assembler import Artifact, DocumentAssembler
from .config import ExportOptions
from .images import ImageStats, process_all_images
from .sanitizer import (
    Highlighter,
    Sanitizer,
    SanitizerUnavailableError,
    clean_turn,
    ensure_sanitizer,
    finish_fragment,
    nh3_sanitize,
    pygments_highlight,
)
from .scheduler import BatchScheduler, ProgressFn, YieldFn
from .source import ConversationTurn, PageSource, load_page

LOGGER = logging.getLogger(__name__)

STREAMING_MESSAGE = "ChatGPT is still generating a response. Please wait for it to finish."
NO_CONVERSATION_MESSAGE = (
    "Could not find the conversation. Make sure you saved a ChatGPT chat page."
)
NO_MESSAGES_MESSAGE = "No messages found in this conversation."
BUSY_MESSAGE = "An export is already in progress."


@dataclass
class ConversionResult:
    success: bool
    error: str | None = None
    is_streaming: bool = False
    busy: bool = False
    message_count: int = 0
    artifact: Artifact | None = None
    image_stats: ImageStats = field(default_factory=ImageStats)
    inferred_roles: int = 0

    @classmethod
    def failure(cls, error: str, **kwargs: Any) -> ConversionResult:
        return cls(success=False, error=error, **kwargs)

    def to_dict(self) -> dict[str, Any]:
        """Status object in the shape the host UI expects."""
        if not self.success:
            status: dict[str, Any] = {"success": False, "error": self.error}
            if self.is_streaming:
                status["isStreaming"] = True
            return status
        return {"success": True, "messageCount": self.message_count}


class RunState:
    """Single-slot run token; at most one conversion may hold it at a time."""

    def __init__(self) -> None:
        self._active: str | None = None

    @property
    def busy(self) -> bool:
        return self._active is not None

    def try_acquire(self, label: str) -> bool:
        if self._active is not None:
            LOGGER.warning("Ignoring export of %s: %s is still running", label, self._active)
            return False
        self._active = label
        return True

    def release(self) -> None:
        self._active = None


async def convert(
    source: PageSource,
    options: ExportOptions | None = None,
    *,
    run_state: RunState | None = None,
    sanitize: Sanitizer | None = nh3_sanitize,
    highlight: Highlighter | None = pygments_highlight,
    on_progress: ProgressFn | None = None,
    yield_fn: YieldFn | None = None,
    exported_at: datetime | None = None,
) -> ConversionResult:
    """Convert the conversation in ``source`` into a document artifact."""
    run_state = run_state if run_state is not None else RunState()
    label = source.name or "page"
    if not run_state.try_acquire(label):
        return ConversionResult.failure(BUSY_MESSAGE, busy=True)

    try:
        return await _convert(
            source,
            options or ExportOptions(),
            sanitize=sanitize,
            highlight=highlight,
            on_progress=on_progress,
            yield_fn=yield_fn,
            exported_at=exported_at,
        )
    except SanitizerUnavailableError as exc:
        return ConversionResult.failure(str(exc))
    except Exception as exc:  # run boundary: report, never propagate
        LOGGER.exception("Conversion of %s failed", label)
        return ConversionResult.failure(str(exc) or exc.__class__.__name__)
    finally:
        run_state.release()


async def _convert(
    source: PageSource,
    options: ExportOptions,
    *,
    sanitize: Sanitizer | None,
    highlight: Highlighter | None,
    on_progress: ProgressFn | None,
    yield_fn: YieldFn | None,
    exported_at: datetime | None,
) -> ConversionResult:
    if source.is_streaming():
        LOGGER.warning("Page is still streaming a response; refusing to export")
        return ConversionResult.failure(STREAMING_MESSAGE, is_streaming=True)

    container = source.conversation_container()
    if container is None:
        return ConversionResult.failure(NO_CONVERSATION_MESSAGE)

    turns = source.turns(container)
    if not turns:
        return ConversionResult.failure(NO_MESSAGES_MESSAGE)

    sanitize = ensure_sanitizer(sanitize)
    if highlight is None:
        LOGGER.warning("No syntax highlighter configured, code blocks will be unstyled")

    resolved = options.resolve(source.detect_theme())
    LOGGER.info(
        "Converting %d turn(s) from %s (theme=%s, images=%s, format=%s)",
        len(turns), source.name or "page", resolved.theme,
        resolved.preset.name if resolved.preset else "none", resolved.export_format,
    )

    assembler = DocumentAssembler(
        source.title, resolved.theme, resolved.export_format, exported_at=exported_at
    )
    stats = ImageStats()

    async def process_turn(turn: ConversationTurn) -> None:
        nonlocal stats
        fragment = clean_turn(
            turn.raw_content, sanitize, drop_image_containers=not resolved.images_enabled
        )
        stats += await process_all_images(fragment, resolved.preset, source.loader)
        assembler.append(finish_fragment(fragment, highlight), turn.role)
        LOGGER.debug("Turn %d (%s) appended", turn.order, turn.role)

    scheduler = BatchScheduler(resolved.batch_size, yield_fn=yield_fn, on_progress=on_progress)
    await scheduler.run(turns, process_turn)

    created = source.creation_time()
    if created is None:
        LOGGER.warning("Could not get conversation creation date, using export date")
    artifact = assembler.finalize(created.date() if created else None)

    inferred = sum(1 for t in turns if t.role_inferred)
    if stats.failed:
        LOGGER.warning("%d image(s) could not be embedded; links to the originals were kept", stats.failed)
    return ConversionResult(
        success=True,
        message_count=len(turns),
        artifact=artifact,
        image_stats=stats,
        inferred_roles=inferred,
    )


# --------------------------------------------------------------------------- #
# File-level helpers                                                           #
# --------------------------------------------------------------------------- #


def save_artifact(artifact: Artifact, outdir: Path) -> Path:
    """Write ``artifact`` into ``outdir`` atomically (temp file + rename)."""
    outdir.mkdir(parents=True, exist_ok=True)
    target = outdir / artifact.filename
    fd, tmp_path = tempfile.mkstemp(suffix=".tmp", prefix=f".{artifact.filename}.", dir=outdir)
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(artifact.data)
        os.replace(tmp_path, target)
    except BaseException:
        with contextlib.suppress(OSError):
            os.unlink(tmp_path)
        raise
    LOGGER.info("Wrote %s (%d bytes)", target, len(artifact.data))
    return target


def export_file(
    path: Path,
    options: ExportOptions | None = None,
    outdir: Path | None = None,
    *,
    run_state: RunState | None = None,
    on_progress: ProgressFn | None = None,
) -> tuple[ConversionResult, Path | None]:
    """Load a saved page, convert it and write the result next to it (or into ``outdir``)."""
    try:
        source = load_page(path)
    except (OSError, ValueError) as exc:
        LOGGER.error("Cannot load %s: %s", path, exc)
        return ConversionResult.failure(str(exc)), None

    result = asyncio.run(
        convert(source, options, run_state=run_state, on_progress=on_progress)
    )
    if not result.success or result.artifact is None:
        return result, None

    target_dir = outdir or path.parent
    try:
        written = save_artifact(result.artifact, target_dir)
    except OSError as exc:
        LOGGER.error("Cannot write %s to %s: %s", result.artifact.filename, target_dir, exc)
        reason = exc.strerror or str(exc)
        return (
            ConversionResult.failure(
                f"Cannot write {result.artifact.filename}: {reason}",
                message_count=result.message_count,
                image_stats=result.image_stats,
                inferred_roles=result.inferred_roles,
            ),
            None,
        )
    return result, written
