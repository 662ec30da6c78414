# Copyright (C) 2025 Torsten Knodt and contributors
# GNU General Public License
# SPDX-License-Identifier: GPL-3.0-or-later

"""Image acquisition from saved page resources, downscaling and data: URI embedding."""

from __future__ import annotations

import asyncio
import base64
import enum
import io
import logging
import mimetypes
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import unquote, urlsplit

from bs4 import BeautifulSoup, Tag
from PIL import Image, UnidentifiedImageError

from .assembler import escape_html
from .scaling import QualityPreset, get_preset, should_skip, target_dimensions

LOGGER = logging.getLogger(__name__)

# Sources that may be rendered as a clickable fallback link.
_LINKABLE_SCHEMES = ("http", "https", "file")


class ResourceLoadError(Exception):
    """A page resource could not be read from the saved page."""


class ImageState(enum.Enum):
    SKIPPED = "skipped"
    EMBEDDED = "embedded"
    FAILED = "failed"


@dataclass(frozen=True)
class LoadedResource:
    mime: str
    data: bytes


@dataclass(frozen=True)
class ImageRef:
    """One ``<img>`` source together with its natural size once loaded."""

    original_source: str
    natural_width: int = 0
    natural_height: int = 0


@dataclass(frozen=True)
class ImageOutcome:
    """Terminal state of one image.

    ``original_source`` doubles as the fallback link for failures; for
    embedded images it is kept for diagnostics only. ``ref`` carries the
    natural size once the image has been decoded.
    """

    state: ImageState
    original_source: str
    data_uri: str | None = None
    error: str | None = None
    ref: ImageRef | None = field(default=None, compare=False)

    @classmethod
    def embedded(
        cls, data_uri: str, original_source: str, ref: ImageRef | None = None
    ) -> ImageOutcome:
        return cls(ImageState.EMBEDDED, original_source, data_uri=data_uri, ref=ref)

    @classmethod
    def skipped(cls, original_source: str, ref: ImageRef | None = None) -> ImageOutcome:
        return cls(ImageState.SKIPPED, original_source, ref=ref)

    @classmethod
    def failed(
        cls, error: str, original_source: str, ref: ImageRef | None = None
    ) -> ImageOutcome:
        return cls(ImageState.FAILED, original_source, error=error, ref=ref)

    @property
    def fallback_url(self) -> str | None:
        return self.original_source if self.state is ImageState.FAILED else None


@dataclass
class ImageStats:
    embedded: int = 0
    skipped: int = 0
    failed: int = 0
    placeholders: int = 0

    def record(self, outcome: ImageOutcome) -> None:
        if outcome.state is ImageState.EMBEDDED:
            self.embedded += 1
        elif outcome.state is ImageState.SKIPPED:
            self.skipped += 1
        else:
            self.failed += 1

    def __iadd__(self, other: ImageStats) -> ImageStats:
        self.embedded += other.embedded
        self.skipped += other.skipped
        self.failed += other.failed
        self.placeholders += other.placeholders
        return self

    @property
    def total(self) -> int:
        return self.embedded + self.skipped + self.failed + self.placeholders


def _to_data_uri(mime: str, data: bytes) -> str:
    """Convert binary data to data URI format."""
    return "data:" + mime + ";base64," + base64.b64encode(data).decode("ascii")


# --------------------------------------------------------------------------- #
# Resource acquisition                                                         #
# --------------------------------------------------------------------------- #


class ResourceLoader:
    """Resolve image sources against resources already present in the saved page.

    ``resources`` maps ``cid:``/``Content-Location`` keys to ``(mime, bytes)``
    as produced by the MHTML parser. ``base_dir`` is the directory of a saved
    ``.html`` file; relative sources are read from below it. Nothing is ever
    fetched over the network.
    """

    def __init__(
        self,
        resources: dict[str, tuple[str, bytes]] | None = None,
        base_dir: Path | None = None,
    ) -> None:
        self.resources = resources or {}
        self.base_dir = base_dir.resolve() if base_dir is not None else None

    async def load(self, source: str) -> LoadedResource:
        """Return the bytes behind ``source`` or raise ResourceLoadError."""
        if source in self.resources:
            mime, data = self.resources[source]
            LOGGER.debug("Resolved %s from page resources (%d bytes)", source, len(data))
            return LoadedResource(mime, data)

        scheme = urlsplit(source).scheme.lower()
        if scheme == "cid":
            raise ResourceLoadError(f"unresolved cid: reference {source}")
        if scheme in ("http", "https"):
            raise ResourceLoadError("resource is not available offline")
        if scheme not in ("", "file"):
            raise ResourceLoadError(f"unsupported source scheme '{scheme}'")

        path = self._local_path(source, scheme)
        try:
            data = await asyncio.to_thread(path.read_bytes)
        except OSError as exc:
            raise ResourceLoadError(f"cannot read {path.name}: {exc.strerror or exc}") from exc
        LOGGER.debug("Read local resource %s (%d bytes)", path, len(data))
        mime = mimetypes.guess_type(path.name)[0] or "application/octet-stream"
        return LoadedResource(mime, data)

    def _local_path(self, source: str, scheme: str) -> Path:
        if self.base_dir is None:
            raise ResourceLoadError("no saved-page directory to resolve local files against")
        raw = urlsplit(source).path if scheme == "file" else source.split("?", 1)[0].split("#", 1)[0]
        candidate = (self.base_dir / unquote(raw)).resolve()
        if not candidate.is_relative_to(self.base_dir):
            raise ResourceLoadError("local resource lies outside the saved page directory")
        return candidate


# --------------------------------------------------------------------------- #
# Rasterize & encode                                                           #
# --------------------------------------------------------------------------- #


def _natural_size(data: bytes) -> tuple[int, int]:
    with Image.open(io.BytesIO(data)) as img:
        return img.size


def _rasterize_to_jpeg(data: bytes, width: int, height: int, quality: int) -> bytes:
    """Draw the image onto an opaque canvas of ``width x height`` and encode as JPEG."""
    with Image.open(io.BytesIO(data)) as img:
        img.load()
        if img.mode in ("RGBA", "LA") or (img.mode == "P" and "transparency" in img.info):
            rgba = img.convert("RGBA")
            canvas = Image.new("RGB", rgba.size, (255, 255, 255))
            canvas.paste(rgba, mask=rgba.getchannel("A"))
        else:
            canvas = img.convert("RGB")

    if canvas.size != (width, height):
        canvas = canvas.resize((width, height), Image.Resampling.LANCZOS)

    buf = io.BytesIO()
    canvas.save(buf, format="JPEG", quality=quality, optimize=True)
    return buf.getvalue()


async def process_image(
    source: str, preset: str | QualityPreset, loader: ResourceLoader
) -> ImageOutcome:
    """Drive one image through ``pending -> skipped | embedded | failed``.

    One load attempt, one encode attempt; never raises.
    """
    config = get_preset(preset)
    if config is None:
        return ImageOutcome.failed("image embedding is disabled", source)

    if source.startswith("data:"):
        return ImageOutcome.skipped(source)

    try:
        resource = await loader.load(source)
    except ResourceLoadError as exc:
        return ImageOutcome.failed(str(exc), source)

    try:
        width, height = _natural_size(resource.data)
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError) as exc:
        LOGGER.debug("Cannot identify %s data for %s: %s", resource.mime, source, exc)
        if isinstance(exc, Image.DecompressionBombError):
            return ImageOutcome.failed("image is too large to decode", source)
        return ImageOutcome.failed("unsupported image data", source)

    ref = ImageRef(source, width, height)
    if should_skip(source, width, height):
        LOGGER.debug("Skipping small image %s (%dx%d)", source, width, height)
        return ImageOutcome.skipped(source, ref)

    dims = target_dimensions(width, height, config)
    if dims is None:
        return ImageOutcome.failed("image embedding is disabled", source, ref)

    try:
        encoded = _rasterize_to_jpeg(resource.data, dims.width, dims.height, config.jpeg_quality)
    except (Image.DecompressionBombError, OSError, ValueError, SyntaxError) as exc:
        return ImageOutcome.failed(f"could not re-encode image: {exc}", source, ref)

    LOGGER.debug(
        "Embedded %s (%s): %dx%d -> %dx%d, %d bytes",
        source, resource.mime, width, height, dims.width, dims.height, len(encoded),
    )
    return ImageOutcome.embedded(_to_data_uri("image/jpeg", encoded), source, ref)


# --------------------------------------------------------------------------- #
# Fragment rewriting                                                           #
# --------------------------------------------------------------------------- #


def _parse_markup(markup: str) -> list:
    return list(BeautifulSoup(markup, "html.parser").contents)


def _error_marker(outcome: ImageOutcome) -> str:
    reason = escape_html(outcome.error or "unknown error")
    source = outcome.original_source
    if source and urlsplit(source).scheme.lower() in _LINKABLE_SCHEMES:
        link = (
            f' <a href="{escape_html(source)}" target="_blank" '
            f'rel="noopener noreferrer">View original</a>'
        )
    else:
        link = f" {escape_html(source)}" if source else ""
    return f'<span class="image-error">Image could not be embedded ({reason}).{link}</span>'


def _placeholder(img: Tag) -> str:
    alt = str(img.get("alt") or "").strip()
    label = f"[Image: {escape_html(alt)}]" if alt else "[Image]"
    return f'<span class="image-placeholder">{label}</span>'


async def process_all_images(
    fragment: Tag, preset: str | QualityPreset | None, loader: ResourceLoader
) -> ImageStats:
    """Resolve every ``<img>`` inside ``fragment`` in document order."""
    stats = ImageStats()
    images = fragment.find_all("img")
    if not images:
        return stats

    config = get_preset(preset)
    LOGGER.debug(
        "Processing %d image(s) with preset %s", len(images), config.name if config else "none"
    )

    for img in images:
        if config is None:
            img.replace_with(*_parse_markup(_placeholder(img)))
            stats.placeholders += 1
            continue

        source = str(img.get("src") or "").strip()
        if not source:
            outcome = ImageOutcome.failed("image has no source", "")
        else:
            outcome = await process_image(source, config, loader)
        stats.record(outcome)

        if outcome.state is ImageState.EMBEDDED:
            img["src"] = outcome.data_uri
            classes = list(img.get("class") or [])
            if "exported-image" not in classes:
                img["class"] = [*classes, "exported-image"]
        elif outcome.state is ImageState.FAILED:
            LOGGER.warning("Image %s could not be embedded: %s", source[:120], outcome.error)
            img.replace_with(*_parse_markup(_error_marker(outcome)))

    LOGGER.info(
        "Images: %d embedded, %d skipped, %d failed, %d placeholder(s)",
        stats.embedded, stats.skipped, stats.failed, stats.placeholders,
    )
    return stats
