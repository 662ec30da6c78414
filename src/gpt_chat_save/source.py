# Copyright (C) 2025 Torsten Knodt and contributors
# GNU General Public License
# SPDX-License-Identifier: GPL-3.0-or-later

"""Saved ChatGPT pages (HTML or MHTML) as a read-only source of conversation turns."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from email import policy
from email.errors import MessageError
from email.message import Message
from email.parser import BytesParser
from pathlib import Path

from bs4 import BeautifulSoup, Tag

from .images import ResourceLoader

LOGGER = logging.getLogger(__name__)

# ChatGPT DOM selectors; update these when the ChatGPT UI changes.
SELECTORS = {
    "conversation_container": "main",
    "message_article": "article",
    "message_by_role": "[data-message-author-role]",
    "user_message": '[data-message-author-role="user"]',
    "assistant_message": '[data-message-author-role="assistant"]',
    "streaming_indicator": '[data-testid="stop-button"], .result-streaming',
}

HTML_SUFFIXES = (".html", ".htm")
MHTML_SUFFIXES = (".mhtml", ".mht")

_CREATE_TIME_RE = re.compile(r'\\?"create_time\\?"\s*:\s*([0-9]+(?:\.[0-9]+)?)')


@dataclass(frozen=True)
class ConversationTurn:
    """One message as found in the page; ``raw_content`` is never modified."""

    role: str
    raw_content: Tag = field(repr=False)
    order: int
    role_inferred: bool = False


def _attr_text(value: object) -> str:
    if isinstance(value, list):
        return " ".join(str(v) for v in value)
    return str(value or "")


def detect_role(element: Tag, index: int) -> tuple[str, bool]:
    """Return ``(role, inferred)`` for a turn element.

    The ``data-message-author-role`` marker wins. Without one the role falls
    back to index parity (even index = user), which assumes strict
    alternation; the second value reports that the fallback was used.
    """
    own = _attr_text(element.get("data-message-author-role")).strip().lower()
    if own == "user":
        return "user", False
    if own == "assistant":
        return "assistant", False
    if element.select_one(SELECTORS["user_message"]) is not None:
        return "user", False
    if element.select_one(SELECTORS["assistant_message"]) is not None:
        return "assistant", False

    role = "user" if index % 2 == 0 else "assistant"
    LOGGER.warning(
        "Could not detect role of message %d via data attributes, using index fallback (%s)",
        index, role,
    )
    return role, True


class PageSource:
    """Parsed saved page plus the loader for the resources it already contains."""

    def __init__(self, soup: BeautifulSoup, loader: ResourceLoader | None = None, name: str = "") -> None:
        self.soup = soup
        self.loader = loader or ResourceLoader()
        self.name = name

    @classmethod
    def from_html(
        cls,
        html: str | bytes,
        base_dir: Path | None = None,
        resources: dict[str, tuple[str, bytes]] | None = None,
        name: str = "",
    ) -> PageSource:
        soup = BeautifulSoup(html, "lxml")
        return cls(soup, ResourceLoader(resources=resources, base_dir=base_dir), name=name)

    @property
    def title(self) -> str:
        title_tag = self.soup.find("title")
        return title_tag.get_text(strip=True) if title_tag else ""

    def is_streaming(self) -> bool:
        return self.soup.select_one(SELECTORS["streaming_indicator"]) is not None

    def conversation_container(self) -> Tag | None:
        return self.soup.select_one(SELECTORS["conversation_container"])

    def turn_elements(self, container: Tag | None = None) -> list[Tag]:
        """Article elements hold text and image-only turns alike; role markers are the fallback."""
        container = container if container is not None else self.conversation_container()
        if container is None:
            return []
        articles = container.select(SELECTORS["message_article"])
        if articles:
            LOGGER.debug("Found %d article turn element(s)", len(articles))
            return articles

        by_role = container.select(SELECTORS["message_by_role"])
        LOGGER.debug("No articles; found %d element(s) with role markers", len(by_role))
        return by_role

    def turns(self, container: Tag | None = None) -> list[ConversationTurn]:
        out: list[ConversationTurn] = []
        for index, element in enumerate(self.turn_elements(container)):
            role, inferred = detect_role(element, index)
            out.append(ConversationTurn(role, element, index, inferred))
        return out

    def detect_theme(self, fallback: str = "light") -> str:
        """Theme from the ``<html>`` class or ``data-theme``; ``fallback`` otherwise."""
        root = self.soup.find("html")
        if root is None:
            return fallback
        html_class = _attr_text(root.get("class"))
        data_theme = _attr_text(root.get("data-theme"))
        if "dark" in html_class or data_theme == "dark":
            return "dark"
        if "light" in html_class or data_theme == "light":
            return "light"
        return fallback

    def creation_time(self) -> datetime | None:
        """Earliest valid ``create_time`` in the page's embedded conversation data, if any."""
        earliest: datetime | None = None
        for script in self.soup.find_all("script"):
            text = script.string or ""
            for match in _CREATE_TIME_RE.finditer(text):
                value = float(match.group(1))
                if value <= 0:
                    continue
                try:
                    created = datetime.fromtimestamp(value).astimezone()
                except (OverflowError, OSError, ValueError) as exc:
                    LOGGER.debug("Ignoring out-of-range create_time %s: %s", match.group(1), exc)
                    continue
                if earliest is None or created < earliest:
                    earliest = created
        if earliest is None:
            LOGGER.debug("No conversation create_time found in page data")
        return earliest


# --------------------------------------------------------------------------- #
# MHTML parsing                                                                #
# --------------------------------------------------------------------------- #


def _decode_html_part(part: Message, context: str) -> str:
    charset = part.get_content_charset() or "utf-8"
    payload = part.get_payload(decode=True) or b""
    try:
        return payload.decode(charset)
    except LookupError as exc:
        raise ValueError(f"Unknown charset '{charset}' in {context}") from exc
    except UnicodeDecodeError as exc:
        raise ValueError(f"Cannot decode {context} as {charset}: {exc.reason}") from exc


def _resource_keys(part: Message) -> list[str]:
    """``cid:`` and ``Content-Location`` keys under which page markup may reference a part."""
    keys = []
    content_id = str(part.get("Content-ID") or "").strip().strip("<>").strip()
    if content_id:
        keys.append(f"cid:{content_id}")
    location = str(part.get("Content-Location") or "").strip()
    if location:
        keys.append(location)
    return keys


def read_mhtml(path: Path) -> tuple[str, dict[str, tuple[str, bytes]]]:
    """Split an MHTML archive into the page markup and a resource map.

    The first ``text/html`` part is the page; every other leaf part becomes a
    ``(mime, bytes)`` resource. Nothing is written to disk.
    """
    try:
        with path.open("rb") as fh:
            archive = BytesParser(policy=policy.default).parse(fh)
    except (OSError, MessageError) as exc:
        raise ValueError(f"Cannot parse MHTML archive {path.name}: {exc}") from exc

    page: str | None = None
    resources: dict[str, tuple[str, bytes]] = {}
    for index, part in enumerate(archive.walk()):
        if part.is_multipart():
            continue
        mime = part.get_content_type().lower()
        if mime == "text/html" and page is None:
            page = _decode_html_part(part, f"{path.name} part {index}")
            continue

        keys = _resource_keys(part)
        if not keys:
            LOGGER.debug("Part %d (%s) has no Content-ID or Content-Location; dropped", index, mime)
        body = part.get_payload(decode=True) or b""
        for key in keys:
            resources[key] = (mime, body)

    if page is None:
        raise ValueError(f"No text/html parts found in {path}")
    LOGGER.info("Read MHTML archive %s with %d resource key(s)", path.name, len(resources))
    return page, resources


def load_page(path: Path) -> PageSource:
    """Open a saved ``.html``/``.htm`` page or ``.mhtml``/``.mht`` archive."""
    if not path.exists():
        raise FileNotFoundError(f"File not found: {path}")

    suffix = path.suffix.lower()
    if suffix in MHTML_SUFFIXES:
        page, resources = read_mhtml(path)
        return PageSource.from_html(page, resources=resources, name=path.name)
    if suffix in HTML_SUFFIXES:
        LOGGER.debug("Reading HTML page %s (%d bytes)", path, path.stat().st_size)
        return PageSource.from_html(path.read_bytes(), base_dir=path.parent, name=path.name)

    raise ValueError(f"Unsupported file format: {suffix}")
