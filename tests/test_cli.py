# Copyright (C) 2025 Torsten Knodt and contributors
# GNU General Public License
# SPDX-License-Identifier: GPL-3.0-or-later
"""Tests for the CLI module."""

import logging
from pathlib import Path

import pytest
from typer.testing import CliRunner

from gpt_chat_save import __version__
from gpt_chat_save.cli import _parse_log_level, app, expand_paths

runner = CliRunner()


def test_version_command() -> None:
    result = runner.invoke(app, ["version"])
    assert result.exit_code == 0
    assert f"gpt-chat-save {__version__}" in result.stdout


def test_run_writes_document(tmp_path: Path, page_html) -> None:
    page = tmp_path / "chat.html"
    page.write_text(page_html([("user", "<p>Hello</p>"), ("assistant", "<p>Hi</p>")], title="CLI"))
    out = tmp_path / "out"

    result = runner.invoke(app, ["run", str(page), "-o", str(out), "-t", "dark"])
    assert result.exit_code == 0, result.stdout
    written = list(out.glob("*-CLI.html"))
    assert len(written) == 1
    assert "Theme: dark" in written[0].read_text(encoding="utf-8")
    assert "Exported 1/1" in result.stdout


def test_run_reads_options_from_environment(tmp_path: Path, page_html) -> None:
    page = tmp_path / "chat.html"
    page.write_text(page_html([("user", "<p>Hello</p>")], title="Env"))

    result = runner.invoke(app, ["run", str(page)], env={"GPT_CHAT_SAVE_FORMAT": "md"})
    assert result.exit_code == 0, result.stdout
    assert len(list(tmp_path.glob("*-Env.md"))) == 1


def test_invalid_option_exits_with_error(tmp_path: Path) -> None:
    result = runner.invoke(app, ["run", str(tmp_path / "chat.html"), "--theme", "purple"])
    assert result.exit_code == 1
    assert "Invalid theme" in result.stdout


def test_missing_file_fails_run(tmp_path: Path) -> None:
    result = runner.invoke(app, ["run", str(tmp_path / "nope.html")])
    assert result.exit_code == 1
    assert "Exported 0/1" in result.stdout


def test_partial_failure_still_writes_good_files(tmp_path: Path, page_html) -> None:
    good = tmp_path / "good.html"
    good.write_text(page_html([("user", "ok")], title="Good"))
    streaming = tmp_path / "busy.html"
    streaming.write_text(
        page_html([("user", "x")], body_extra='<div class="result-streaming"></div>')
    )

    result = runner.invoke(app, ["run", str(good), str(streaming)])
    assert result.exit_code == 1
    assert len(list(tmp_path.glob("*-Good.html"))) == 1
    assert "still generating" in result.stdout


def test_long_title_does_not_abort_batch(tmp_path: Path, page_html) -> None:
    long_page = tmp_path / "long.html"
    long_page.write_text(page_html([("user", "x")], title="word " * 60))
    short_page = tmp_path / "short.html"
    short_page.write_text(page_html([("user", "y")], title="Short"))
    out = tmp_path / "out"

    result = runner.invoke(app, ["run", str(long_page), str(short_page), "-o", str(out)])
    assert result.exit_code == 0, result.stdout
    assert len(list(out.glob("*-word word*.html"))) == 1
    assert len(list(out.glob("*-Short.html"))) == 1
    assert "Exported 2/2" in result.stdout


def test_unwritable_outdir_fails_each_file(tmp_path: Path, page_html) -> None:
    pages = []
    for name in ("one", "two"):
        page = tmp_path / f"{name}.html"
        page.write_text(page_html([("user", name)], title=name))
        pages.append(str(page))
    blocker = tmp_path / "out"
    blocker.write_text("")

    result = runner.invoke(app, ["run", *pages, "-o", str(blocker)])
    assert result.exit_code == 1
    assert result.stdout.count("Error exporting") == 2
    assert "Exported 0/2" in result.stdout


def test_expand_paths_globs_and_dedups(tmp_path: Path) -> None:
    for name in ("a.html", "b.html", "c.txt"):
        (tmp_path / name).write_text("x")
    paths = expand_paths([str(tmp_path / "*.html"), str(tmp_path / "a.html"), "missing.html"])
    assert sorted(p.name for p in paths) == ["a.html", "b.html", "missing.html"]


@pytest.mark.parametrize(
    "value,expected", [("debug", logging.DEBUG), ("WARNING", logging.WARNING), ("5", 5)]
)
def test_parse_log_level(value: str, expected: int) -> None:
    assert _parse_log_level(value) == expected


@pytest.mark.parametrize("value", ["loud", "-1"])
def test_parse_log_level_rejects(value: str) -> None:
    with pytest.raises(ValueError):
        _parse_log_level(value)
