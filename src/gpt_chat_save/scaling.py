# Copyright (C) 2025 Torsten Knodt and contributors
# GNU General Public License
# SPDX-License-Identifier: GPL-3.0-or-later

"""Image quality presets and the pure scaling/skip rules applied to each image."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass

LOGGER = logging.getLogger(__name__)

# Anything smaller on either axis is treated as a UI icon, not conversation media.
MIN_IMAGE_SIZE = 50

NO_IMAGES = "none"


@dataclass(frozen=True)
class QualityPreset:
    """Named bundle of maximum dimensions and encode quality (0 < quality <= 1)."""

    name: str
    max_width: int
    max_height: int
    quality: float

    @property
    def jpeg_quality(self) -> int:
        """Quality on Pillow's 1-95 JPEG scale."""
        return max(1, min(95, int(math.floor(self.quality * 100 + 0.5))))


@dataclass(frozen=True)
class Dimensions:
    width: int
    height: int


IMAGE_PRESETS: dict[str, QualityPreset | None] = {
    "high": QualityPreset("high", 1200, 900, 0.90),
    "medium": QualityPreset("medium", 800, 600, 0.85),
    "low": QualityPreset("low", 500, 375, 0.75),
    NO_IMAGES: None,
}

# The settings surface stores "include" for the default embedding preset.
PRESET_ALIASES = {"include": "medium"}


def get_preset(preset: str | QualityPreset | None) -> QualityPreset | None:
    """Resolve a preset name (or pass through a preset) to a QualityPreset.

    Returns None for the "none" sentinel and for unrecognized names.
    """
    if preset is None or isinstance(preset, QualityPreset):
        return preset
    key = PRESET_ALIASES.get(preset, preset)
    resolved = IMAGE_PRESETS.get(key)
    if resolved is None and key not in IMAGE_PRESETS:
        LOGGER.debug("Unknown image quality preset '%s'", preset)
    return resolved


def is_known_preset(name: str) -> bool:
    return name in IMAGE_PRESETS or name in PRESET_ALIASES


def should_skip(source: str, width: int, height: int) -> bool:
    """Return True for images that need no processing.

    Already-embedded ``data:`` sources are kept as they are, and images below
    ``MIN_IMAGE_SIZE`` on either axis are treated as decorative icons.
    """
    if source.startswith("data:"):
        return True
    return width < MIN_IMAGE_SIZE or height < MIN_IMAGE_SIZE


def scale_factor(width: int, height: int, max_width: int, max_height: int) -> float:
    """Uniform scale factor that fits ``width x height`` into the bounds; never above 1."""
    return min(max_width / width, max_height / height, 1)


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def target_dimensions(
    width: int, height: int, preset: str | QualityPreset | None
) -> Dimensions | None:
    """Scaled output size for an image under ``preset``.

    Each axis is rounded independently, so the aspect ratio may drift by at
    most one pixel per axis. Returns None for "none" or an unknown preset.
    """
    config = get_preset(preset)
    if config is None:
        return None

    factor = scale_factor(width, height, config.max_width, config.max_height)
    return Dimensions(
        width=max(1, _round_half_up(width * factor)),
        height=max(1, _round_half_up(height * factor)),
    )
