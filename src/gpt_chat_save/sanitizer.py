# Copyright (C) 2025 Torsten Knodt and contributors
# GNU General Public License
# SPDX-License-Identifier: GPL-3.0-or-later

"""Turn cleaning: UI pre-filter, allow-list sanitization, code block normalization.

The pre-filter must run on the raw clone *before* allow-list sanitization.
The sanitizer keeps the text of tags it drops, so UI chrome removed later
would leave orphaned labels ("Copy code", "Edit") in the conversation.
"""

from __future__ import annotations

import copy
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Protocol

import nh3
from bs4 import BeautifulSoup, Tag
from pygments import highlight as _pygments_highlight
from pygments.formatters import HtmlFormatter
from pygments.lexer import Lexer
from pygments.lexers import TextLexer, get_lexer_by_name, guess_lexer
from pygments.util import ClassNotFound

LOGGER = logging.getLogger(__name__)

ALLOWED_TAGS = frozenset(
    {
        "p", "code", "pre", "h1", "h2", "h3", "h4", "h5", "h6",
        "ul", "ol", "li", "strong", "em", "blockquote",
        "table", "thead", "tbody", "tr", "td", "th", "hr",
        "a", "br", "img",
    }
)
ALLOWED_ATTRS = frozenset({"class", "href", "target", "rel", "src", "alt"})

URL_SCHEMES = frozenset({"http", "https", "mailto", "data", "cid", "file"})

# UI-only structures removed from the clone before sanitization.
PREFILTER_SELECTORS = {
    "products widget": '[data-testid="products-widget"]',
    "closed popover": 'span[data-state="closed"]',
    "screen-reader text": '[class="sr-only"]',
    "interactive control": 'button:not([disabled]), input, select, textarea, [role="button"]',
}
IMAGE_CONTAINER_SELECTOR = 'div[id^="image-"]'

CODE_BLOCK_SELECTOR = 'pre code, code[class*="language-"]'

SANITIZER_MISSING_MESSAGE = "Sanitizer library not loaded. Try reloading the page."


class SanitizerUnavailableError(RuntimeError):
    """Raised when no sanitize capability is configured; sanitization is never skipped."""

    def __init__(self, message: str = SANITIZER_MISSING_MESSAGE) -> None:
        super().__init__(message)


@dataclass(frozen=True)
class SanitizePolicy:
    allowed_tags: frozenset[str] = field(default=ALLOWED_TAGS)
    allowed_attrs: frozenset[str] = field(default=ALLOWED_ATTRS)


DEFAULT_POLICY = SanitizePolicy()


class Sanitizer(Protocol):
    def __call__(self, markup: str, policy: SanitizePolicy) -> str: ...


Highlighter = Callable[[Tag], None]


# --------------------------------------------------------------------------- #
# Default capabilities                                                         #
# --------------------------------------------------------------------------- #


def _filter_attribute(element: str, attribute: str, value: str) -> str | None:
    """Only images may carry inline ``data:`` payloads, and only image types."""
    if value.lstrip().lower().startswith("data:"):
        if element == "img" and attribute == "src" and value.lstrip().lower().startswith("data:image/"):
            return value
        return None
    return value


def nh3_sanitize(markup: str, policy: SanitizePolicy) -> str:
    """Allow-list sanitization backed by nh3."""
    return nh3.clean(
        markup,
        tags=set(policy.allowed_tags),
        attributes={"*": set(policy.allowed_attrs)},
        attribute_filter=_filter_attribute,
        url_schemes=set(URL_SCHEMES),
        link_rel=None,
        strip_comments=True,
    )


_CODE_FORMATTER = HtmlFormatter(nowrap=True)


def _lexer_for(code: Tag, text: str) -> Lexer:
    language = None
    for cls in code.get("class") or []:
        if cls.startswith("language-"):
            language = cls[len("language-"):]
            break
    try:
        if language:
            return get_lexer_by_name(language, stripall=False)
        return guess_lexer(text)
    except ClassNotFound:
        return TextLexer(stripall=False)


def pygments_highlight(code: Tag) -> None:
    """Replace the text of a ``code`` element with Pygments token spans."""
    text = code.get_text()
    if not text.strip():
        return
    markup = _pygments_highlight(text, _lexer_for(code, text), _CODE_FORMATTER)
    if not text.endswith("\n"):
        markup = markup.rstrip("\n")
    code.clear()
    code.extend(list(BeautifulSoup(markup, "html.parser").contents))


# --------------------------------------------------------------------------- #
# Cleaning stages                                                              #
# --------------------------------------------------------------------------- #


def ensure_sanitizer(sanitize: Sanitizer | None) -> Sanitizer:
    if sanitize is None:
        LOGGER.error("No sanitizer configured; refusing to export unsanitized content")
        raise SanitizerUnavailableError()
    return sanitize


def prefilter(turn: Tag, drop_image_containers: bool = False) -> Tag:
    """Return a deep copy of ``turn`` with UI-only nodes removed; ``turn`` is untouched."""
    clone = copy.copy(turn)
    selectors = dict(PREFILTER_SELECTORS)
    if drop_image_containers:
        selectors["generated image container"] = IMAGE_CONTAINER_SELECTOR

    for label, selector in selectors.items():
        removed = 0
        for el in clone.select(selector):
            if el.decomposed:
                continue
            el.decompose()
            removed += 1
        if removed:
            LOGGER.debug("Pre-filter removed %d %s node(s)", removed, label)
    return clone


def strip_disallowed_attributes(fragment: Tag, allowed: frozenset[str] = ALLOWED_ATTRS) -> int:
    """Drop every attribute outside ``allowed`` from every element; returns the count."""
    stripped = 0
    for element in fragment.find_all(True):
        for name in [a for a in element.attrs if a not in allowed]:
            del element[name]
            stripped += 1
    return stripped


def sanitize_markup(
    markup: str, sanitize: Sanitizer | None, policy: SanitizePolicy = DEFAULT_POLICY
) -> BeautifulSoup:
    """Run the allow-list sanitizer and the explicit attribute pass over ``markup``."""
    cleaned = ensure_sanitizer(sanitize)(markup, policy)
    fragment = BeautifulSoup(cleaned, "html.parser")
    stripped = strip_disallowed_attributes(fragment, policy.allowed_attrs)
    if stripped:
        LOGGER.warning("Sanitizer let %d disallowed attribute(s) through; removed them", stripped)
    return fragment


def clean_turn(
    turn: Tag,
    sanitize: Sanitizer | None,
    drop_image_containers: bool = False,
    policy: SanitizePolicy = DEFAULT_POLICY,
) -> BeautifulSoup:
    """Pre-filter a copy of ``turn`` then sanitize its inner markup, in that order."""
    ensure_sanitizer(sanitize)
    clone = prefilter(turn, drop_image_containers=drop_image_containers)
    return sanitize_markup(clone.decode_contents(), sanitize, policy)


def highlight_code_blocks(fragment: Tag, highlight: Highlighter | None) -> int:
    """Mark code blocks with ``code-block`` and hand them to the highlighter, if any."""
    blocks = fragment.select(CODE_BLOCK_SELECTOR)
    for code in blocks:
        classes = list(code.get("class") or [])
        if "code-block" not in classes:
            code["class"] = [*classes, "code-block"]
        if highlight is not None:
            highlight(code)
    return len(blocks)


def normalize_pre_blocks(fragment: Tag) -> None:
    """Leave each ``pre`` holding exactly its first ``code`` element and nothing else."""
    for pre in fragment.find_all("pre"):
        code = pre.find("code")
        if code is None:
            continue
        code.extract()
        pre.clear()
        pre.append(code)


def finish_fragment(fragment: BeautifulSoup, highlight: Highlighter | None) -> str:
    highlight_code_blocks(fragment, highlight)
    normalize_pre_blocks(fragment)
    return fragment.decode()


def sanitize_html(markup: str, sanitize: Sanitizer | None = nh3_sanitize) -> str:
    """Sanitize a markup string end to end; already-clean markup comes back unchanged."""
    return sanitize_markup(markup, sanitize).decode()
