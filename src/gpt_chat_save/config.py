# Copyright (C) 2025 Torsten Knodt and contributors
# GNU General Public License
# SPDX-License-Identifier: GPL-3.0-or-later

"""Export options and their resolution to concrete values before a run."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from .assembler import MIME_TYPES
from .scaling import QualityPreset, get_preset, is_known_preset
from .scheduler import DEFAULT_BATCH_SIZE

LOGGER = logging.getLogger(__name__)

THEMES = ("auto", "light", "dark")
DEFAULT_THEME = "auto"
DEFAULT_IMAGE_QUALITY = "medium"
DEFAULT_EXPORT_FORMAT = "html"


@dataclass(frozen=True)
class ResolvedOptions:
    """Options with ``auto`` and preset names already resolved for one run."""

    theme: str
    preset: QualityPreset | None
    export_format: str
    batch_size: int

    @property
    def images_enabled(self) -> bool:
        return self.preset is not None


@dataclass(frozen=True)
class ExportOptions:
    theme: str = DEFAULT_THEME
    image_quality: str = DEFAULT_IMAGE_QUALITY
    export_format: str = DEFAULT_EXPORT_FORMAT
    batch_size: int = DEFAULT_BATCH_SIZE

    def __post_init__(self) -> None:
        if self.theme not in THEMES:
            raise ValueError(f"Invalid theme '{self.theme}'. Use one of: {', '.join(THEMES)}.")
        if not is_known_preset(self.image_quality):
            raise ValueError(f"Invalid image quality '{self.image_quality}'.")
        if self.export_format not in MIME_TYPES:
            raise ValueError(
                f"Invalid export format '{self.export_format}'. "
                f"Use one of: {', '.join(MIME_TYPES)}."
            )
        if self.batch_size < 1:
            raise ValueError("Batch size must be a positive integer.")

    def resolve(self, detected_theme: str) -> ResolvedOptions:
        """Pin ``auto`` to ``detected_theme`` and the quality name to its preset."""
        theme = detected_theme if self.theme == "auto" else self.theme
        LOGGER.debug("Resolved theme %s -> %s, image quality %s", self.theme, theme, self.image_quality)
        return ResolvedOptions(
            theme=theme,
            preset=get_preset(self.image_quality),
            export_format=self.export_format,
            batch_size=self.batch_size,
        )
