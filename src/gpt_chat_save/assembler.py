# Copyright (C) 2025 Torsten Knodt and contributors
# GNU General Public License
# SPDX-License-Identifier: GPL-3.0-or-later

"""Assemble processed turn fragments into one downloadable document."""

from __future__ import annotations

import logging
import re
import unicodedata
from dataclasses import dataclass
from datetime import date, datetime, timezone

from bs4 import Tag
from markdownify import markdownify as _md
from pygments.formatters import HtmlFormatter

from . import __version__

LOGGER = logging.getLogger(__name__)

FALLBACK_FILENAME = "chatgpt-conversation"

# Room for the date prefix, extension and a temp-file suffix within the
# usual 255-byte filename limit.
MAX_STEM_BYTES = 200

MIME_TYPES = {
    "html": "text/html;charset=utf-8",
    "md": "text/markdown;charset=utf-8",
}

_UNSAFE_FILENAME_CHARS = re.compile(r'[\x00-\x1f\x7f<>:"/\\|?*]')
_HTML_ESCAPES = str.maketrans(
    {"&": "&amp;", "<": "&lt;", ">": "&gt;", '"': "&quot;", "'": "&#039;"}
)


def escape_html(text: str) -> str:
    """Escape HTML entities for safe insertion into markup."""
    return text.translate(_HTML_ESCAPES)


def sanitize_filename(title: str) -> str:
    """Generate a safe filename stem from a conversation title.

    Unicode letters, accents and emoji survive; only characters that are
    unsafe on Windows or Unix filesystems are replaced.
    """
    name = unicodedata.normalize("NFKC", title)
    name = _UNSAFE_FILENAME_CHARS.sub("-", name)
    name = re.sub(r"-+", "-", name)
    name = re.sub(r"^-|-$", "", name).strip()
    return name or FALLBACK_FILENAME


def format_date_compact(value: date) -> str:
    """Format a date as ``yyyymmdd``."""
    return f"{value.year:04d}{value.month:02d}{value.day:02d}"


def _truncate_utf8(text: str, max_bytes: int) -> str:
    encoded = text.encode("utf-8")
    if len(encoded) <= max_bytes:
        return text
    return encoded[:max_bytes].decode("utf-8", errors="ignore").rstrip(" -.")


def build_filename(title: str, file_date: date, ext: str) -> str:
    """``yyyymmdd-<safe title>.ext``; the title part is capped at MAX_STEM_BYTES of UTF-8."""
    stem = _truncate_utf8(sanitize_filename(title), MAX_STEM_BYTES) or FALLBACK_FILENAME
    return f"{format_date_compact(file_date)}-{stem}.{ext}"


@dataclass(frozen=True)
class ThemeColors:
    background: str
    primary: str
    user_bubble: str
    inline_code: str
    table_border: str
    blockquote_border: str
    code_block_border: str
    code_block_background: str


def theme_colors(theme: str) -> ThemeColors:
    """Colour values for a concrete theme; anything but "dark" is light."""
    dark = theme == "dark"
    return ThemeColors(
        background="#212121" if dark else "#FFF",
        primary="#FFF" if dark else "#000",
        user_bubble="#303030" if dark else "#f4f4f4",
        inline_code="#303030" if dark else "#ececec",
        table_border="rgba(255, 255, 255, 0.05)" if dark else "rgba(0, 0, 0, 0.15)",
        blockquote_border="rgba(255, 255, 255, 0.3)" if dark else "rgba(0, 0, 0, 0.2)",
        code_block_border="transparent" if dark else "#000",
        code_block_background="#111" if dark else "#2a2a2a",
    )


@dataclass(frozen=True)
class Artifact:
    """Finished export: bytes plus the metadata a save mechanism needs."""

    data: bytes
    mime_type: str
    filename: str


def _iso_timestamp(moment: datetime) -> str:
    return moment.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace(
        "+00:00", "Z"
    )


def _fence_language(pre: Tag) -> str | None:
    code = pre.find("code")
    classes = (code.get("class") or []) if code is not None else []
    for cls in classes:
        if cls.startswith("language-"):
            return cls[len("language-"):]
    return None


def _html_to_markdown(html: str) -> str:
    """Render a finished turn fragment as Markdown; fenced code keeps its language."""
    md = _md(
        html,
        heading_style="ATX",
        escape_asterisks=False,
        escape_underscores=False,
        bullets="*",
        code_language_callback=_fence_language,
    )
    return re.sub(r"\n{3,}", "\n\n", md).strip()


def _style_block(colors: ThemeColors) -> str:
    highlight_css = HtmlFormatter(style="monokai").get_style_defs(".code-block")
    return f"""  <style>
    :root {{
      --primary-color: {colors.primary};
      --user-color: {colors.user_bubble};
    }}

    * {{ box-sizing: border-box; }}

    body {{
      font-family: ui-sans-serif, -apple-system, system-ui, "Segoe UI", Helvetica, Arial, sans-serif;
      font-size: 16px;
      background-color: {colors.background};
      color: var(--primary-color);
      padding: 20px;
      margin: 0 auto;
      line-height: 1.6;
    }}

    .header {{
      text-align: center;
      margin: 0 auto 30px;
      border-bottom: 2px dashed var(--primary-color);
      padding-bottom: 15px;
      max-width: 1200px;
    }}

    .title {{ font-size: 24px; font-weight: bold; margin: 0; text-transform: uppercase; letter-spacing: 2px; }}
    .timestamp {{ font-size: 14px; margin-top: 10px; opacity: 0.8; }}
    .conversation {{ max-width: 900px; margin: 0 auto; padding: 20px; }}

    .message {{
      margin-bottom: 20px;
      padding: 10px 20px;
      border-radius: 18px;
      width: fit-content;
      max-width: 80%;
      clear: both;
      overflow: hidden;
    }}

    .user-message {{ float: right; background-color: var(--user-color); }}
    .assistant-message {{ float: left; }}
    .content {{ user-select: text; word-wrap: break-word; }}

    table {{ border-collapse: collapse; margin: 16px 0; width: 100%; display: block; overflow-x: auto; }}
    th, td {{ border: 1px solid {colors.table_border}; padding: 8px 12px; text-align: left; vertical-align: top; }}
    th {{ font-weight: 600; background: {colors.table_border}; }}
    blockquote {{ border-left: 4px solid {colors.blockquote_border}; margin: 8px 0; padding: 8px 24px; font-style: italic; }}
    hr {{ border: none; border-top: 1px solid {colors.table_border}; margin: 28px 0; }}
    li {{ margin: 8px 0; }}
    a {{ color: inherit; text-decoration: underline; }}

    code {{
      background: {colors.inline_code};
      color: var(--primary-color);
      padding: 2px 6px;
      border-radius: 4px;
      font-family: "SF Mono", Monaco, "Courier New", monospace;
      font-size: 0.9em;
    }}

    pre {{ margin: 16px 0; }}

    pre code,
    .code-block {{
      display: block;
      background: {colors.code_block_background} !important;
      color: #fff !important;
      padding: 16px !important;
      border-radius: 8px !important;
      border: 1px solid {colors.code_block_border} !important;
      overflow-x: auto !important;
      white-space: pre !important;
      font-size: 14px !important;
    }}

{highlight_css}

    .message img,
    .message .exported-image {{ max-width: 100%; height: auto; border-radius: 8px; margin: 12px 0; display: block; }}

    .image-error {{
      display: inline-block;
      padding: 12px 16px;
      background: rgba(255, 100, 100, 0.1);
      border: 1px dashed rgba(255, 100, 100, 0.3);
      border-radius: 8px;
      font-style: italic;
    }}

    .image-placeholder {{
      display: inline-block;
      padding: 8px 12px;
      background: rgba(128, 128, 128, 0.1);
      border-radius: 4px;
      font-style: italic;
      opacity: 0.7;
    }}

    @media print {{
      .message {{ break-inside: avoid; }}
    }}
  </style>
"""


def html_header(title: str, theme: str, exported_at: datetime) -> str:
    """Doctype, debug comment, escaped title and theme styles, up to the turn list."""
    escaped_title = escape_html(title)
    timestamp = _iso_timestamp(exported_at)
    return (
        "<!DOCTYPE html>\n"
        f"<!-- GPT Chat Save v{__version__} | Theme: {theme} | Exported: {timestamp} -->\n"
        '<html lang="en">\n<head>\n'
        '  <meta charset="UTF-8">\n'
        '  <meta name="viewport" content="width=device-width, initial-scale=1.0">\n'
        f"  <title>{escaped_title}</title>\n"
        f"{_style_block(theme_colors(theme))}"
        "</head>\n<body>\n"
        '  <div class="header">\n'
        f'    <h1 class="title">{escaped_title}</h1>\n'
        f'    <div class="timestamp">Exported: {timestamp}</div>\n'
        "  </div>\n"
        '  <div class="conversation">\n'
    )


class DocumentAssembler:
    """Owns the output buffer for one export and appends turns strictly in order.

    Parts are collected in a list and joined once in :meth:`finalize`, which
    keeps long conversations linear in the output size.
    """

    def __init__(
        self,
        title: str,
        theme: str,
        export_format: str = "html",
        exported_at: datetime | None = None,
    ) -> None:
        if export_format not in MIME_TYPES:
            raise ValueError(f"Unsupported export format '{export_format}'")
        self.title = title
        self.theme = theme
        self.export_format = export_format
        self.exported_at = exported_at or datetime.now(timezone.utc)
        self._finalized = False
        self._turns = 0
        if export_format == "html":
            self._parts: list[str] = [html_header(title, theme, self.exported_at)]
        else:
            self._parts = [f"# {title.strip() or 'Chat Session'}\n\n"]

    @property
    def turn_count(self) -> int:
        return self._turns

    def append(self, fragment: str, role: str) -> None:
        if self._finalized:
            raise RuntimeError("Document has already been finalized")
        self._turns += 1
        if self.export_format == "html":
            message_class = "user-message" if role == "user" else "assistant-message"
            self._parts.append(
                f'\n    <div class="message {message_class}">\n'
                f'      <div class="content">{fragment}</div>\n'
                "    </div>\n"
            )
            return

        role_label = "User" if role == "user" else "Assistant"
        md = _html_to_markdown(fragment)
        if not md:
            LOGGER.warning("Turn %d produced empty markdown content (role=%s)", self._turns, role)
        self._parts.append(f"## {role_label}\n\n{md}\n\n")

    def finalize(self, file_date: date | None = None) -> Artifact:
        """Close the document and return it; may be called once."""
        if self._finalized:
            raise RuntimeError("Document has already been finalized")
        self._finalized = True

        if self.export_format == "html":
            self._parts.append("\n  </div>\n</body>\n</html>")
        content = "".join(self._parts)
        if self.export_format == "md":
            content = content.rstrip() + "\n"
        self._parts = []

        filename = build_filename(
            self.title, file_date or self.exported_at.date(), self.export_format
        )
        LOGGER.info(
            "Assembled %s document with %d turn(s): %s (%d chars)",
            self.export_format, self._turns, filename, len(content),
        )
        return Artifact(content.encode("utf-8"), MIME_TYPES[self.export_format], filename)
