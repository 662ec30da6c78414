# Copyright (C) 2025 Torsten Knodt and contributors
# GNU General Public License
# SPDX-License-Identifier: GPL-3.0-or-later
"""Tests for reading saved pages and discovering conversation turns."""

import asyncio
import logging
from datetime import datetime, timezone
from email.mime.image import MIMEImage
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from pathlib import Path

import pytest

from gpt_chat_save.source import PageSource, detect_role, load_page


def test_turns_follow_role_markers(page_html) -> None:
    page = PageSource.from_html(
        page_html([("user", "<p>Q1</p>"), ("assistant", "<p>A1</p>"), ("assistant", "<p>A2</p>")])
    )
    turns = page.turns()
    assert [t.role for t in turns] == ["user", "assistant", "assistant"]
    assert [t.order for t in turns] == [0, 1, 2]
    assert not any(t.role_inferred for t in turns)
    assert turns[1].raw_content.get_text() == "A1"


def test_role_falls_back_to_parity(page_html, caplog) -> None:
    page = PageSource.from_html(page_html([(None, "a"), (None, "b"), ("user", "c")]))
    with caplog.at_level(logging.WARNING, logger="gpt_chat_save.source"):
        turns = page.turns()
    assert [(t.role, t.role_inferred) for t in turns] == [
        ("user", True),
        ("assistant", True),
        ("user", False),
    ]
    assert "index fallback" in caplog.text


def test_role_marker_on_element_itself() -> None:
    page = PageSource.from_html('<div data-message-author-role="Assistant">x</div>')
    assert detect_role(page.soup.find("div"), 0) == ("assistant", False)


def test_role_marker_fallback_without_articles() -> None:
    page = PageSource.from_html(
        "<html><body><main>"
        '<div data-message-author-role="user">hi</div>'
        '<div data-message-author-role="assistant">hello</div>'
        "</main></body></html>"
    )
    assert [t.role for t in page.turns()] == ["user", "assistant"]


def test_image_only_article_is_a_turn(page_html) -> None:
    html = page_html([("user", "<p>draw</p>")]).replace(
        "</main>", '<article><img src="a.png" alt="cat"></article></main>'
    )
    turns = PageSource.from_html(html).turns()
    assert len(turns) == 2
    assert turns[1].raw_content.find("img") is not None


def test_missing_container() -> None:
    page = PageSource.from_html("<html><body><div>nothing</div></body></html>")
    assert page.conversation_container() is None
    assert page.turns() == []


@pytest.mark.parametrize(
    "marker",
    ['<button data-testid="stop-button">Stop</button>', '<div class="markdown result-streaming"></div>'],
)
def test_streaming_detection(page_html, marker: str) -> None:
    assert PageSource.from_html(page_html([("user", "x")], body_extra=marker)).is_streaming()
    assert not PageSource.from_html(page_html([("user", "x")])).is_streaming()


def test_detect_theme(page_html) -> None:
    assert PageSource.from_html(page_html([], html_class="dark")).detect_theme() == "dark"
    assert PageSource.from_html(page_html([], html_class="light")).detect_theme() == "light"
    assert PageSource.from_html(page_html([])).detect_theme() == "light"
    assert PageSource.from_html(page_html([])).detect_theme(fallback="dark") == "dark"
    data_theme = '<html data-theme="dark"><body></body></html>'
    assert PageSource.from_html(data_theme).detect_theme() == "dark"


def test_title(page_html) -> None:
    assert PageSource.from_html(page_html([], title="  My Chat ")).title == "My Chat"
    assert PageSource.from_html("<html><body></body></html>").title == ""


def test_creation_time_uses_earliest_timestamp(page_html) -> None:
    script = (
        '<script>{"messages":[{"create_time":1736946000.25},'
        '{"create_time":1736942400},{"create_time":null}]}</script>'
    )
    page = PageSource.from_html(page_html([], head_extra=script))
    created = page.creation_time()
    assert created is not None
    assert created.astimezone(timezone.utc) == datetime(2025, 1, 15, 12, 0, tzinfo=timezone.utc)


def test_creation_time_absent(page_html) -> None:
    assert PageSource.from_html(page_html([])).creation_time() is None


def test_creation_time_ignores_out_of_range_values(page_html) -> None:
    mixed = '<script>{"create_time":99999999999999999,"x":{"create_time":1736942400}}</script>'
    created = PageSource.from_html(page_html([], head_extra=mixed)).creation_time()
    assert created is not None
    assert created.astimezone(timezone.utc) == datetime(2025, 1, 15, 12, 0, tzinfo=timezone.utc)

    only_bad = '<script>{"create_time":99999999999999999}</script>'
    assert PageSource.from_html(page_html([], head_extra=only_bad)).creation_time() is None


def test_load_html_page_resolves_local_images(tmp_path: Path, page_html, png) -> None:
    (tmp_path / "img.png").write_bytes(png(60, 60))
    path = tmp_path / "chat.html"
    path.write_text(page_html([("user", '<img src="img.png">')]), encoding="utf-8")

    page = load_page(path)
    assert page.name == "chat.html"
    assert len(page.turns()) == 1
    resource = asyncio.run(page.loader.load("img.png"))
    assert resource.data == png(60, 60)


def test_load_mhtml_archive(tmp_path: Path, page_html, png) -> None:
    archive = MIMEMultipart("related")
    archive.attach(
        MIMEText(page_html([("user", '<img src="cid:pic@chat">')], title="Archived"), "html", "utf-8")
    )
    image = MIMEImage(png(120, 90), "png")
    image["Content-ID"] = "<pic@chat>"
    image["Content-Location"] = "https://files.example/pic.png"
    archive.attach(image)
    path = tmp_path / "chat.mhtml"
    path.write_bytes(archive.as_bytes())

    page = load_page(path)
    assert page.title == "Archived"
    assert page.loader.resources["cid:pic@chat"] == ("image/png", png(120, 90))
    assert "https://files.example/pic.png" in page.loader.resources
    assert [t.role for t in page.turns()] == ["user"]


def test_load_page_errors(tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError):
        load_page(tmp_path / "missing.html")

    other = tmp_path / "notes.txt"
    other.write_text("x", encoding="utf-8")
    with pytest.raises(ValueError, match="Unsupported file format"):
        load_page(other)

    empty = tmp_path / "empty.mhtml"
    empty.write_bytes(MIMEMultipart("related").as_bytes())
    with pytest.raises(ValueError, match="No text/html parts"):
        load_page(empty)
