# Copyright (C) 2025 Torsten Knodt and contributors
# GNU General Public License
# SPDX-License-Identifier: GPL-3.0-or-later
"""Shared fixtures: generated images and saved ChatGPT pages."""

import io
from collections.abc import Callable, Sequence

import pytest
from PIL import Image


def make_png(width: int, height: int, mode: str = "RGB") -> bytes:
    color = (200, 30, 30, 128) if mode == "RGBA" else (200, 30, 30)
    buf = io.BytesIO()
    Image.new(mode, (width, height), color).save(buf, format="PNG")
    return buf.getvalue()


def chat_html(
    turns: Sequence[tuple[str | None, str]],
    *,
    title: str = "Test Chat",
    html_class: str = "",
    head_extra: str = "",
    body_extra: str = "",
) -> str:
    """Build a saved ChatGPT page; a role of None omits the role marker."""
    articles = []
    for role, body in turns:
        if role is None:
            articles.append(f"<article><div>{body}</div></article>")
        else:
            articles.append(
                f'<article><div data-message-author-role="{role}">{body}</div></article>'
            )
    return (
        f'<!DOCTYPE html><html class="{html_class}"><head><title>{title}</title>'
        f"{head_extra}</head><body><main>{''.join(articles)}</main>{body_extra}</body></html>"
    )


@pytest.fixture
def png() -> Callable[..., bytes]:
    """Factory for in-memory PNG images."""
    return make_png


@pytest.fixture
def page_html() -> Callable[..., str]:
    """Factory for saved-page markup."""
    return chat_html
