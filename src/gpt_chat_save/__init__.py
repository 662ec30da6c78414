# Copyright (C) 2025 Torsten Knodt and contributors
# GNU General Public License
# SPDX-License-Identifier: GPL-3.0-or-later

"""Export saved ChatGPT conversations to self-contained HTML documents."""

from __future__ import annotations

__version__ = "6.0.0"

__all__ = ["__version__"]
