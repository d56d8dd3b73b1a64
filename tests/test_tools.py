from __future__ import annotations

import os
from pathlib import Path

import pytest

from dmagent.tools import BuiltinTools
from dmagent.tools.builtin import find_empty_dirs, find_files, resolve_tool_path


def _touch(path: Path, content: str = "x", mtime: float | None = None) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")
    if mtime is not None:
        os.utime(path, (mtime, mtime))
    return path


def test_catalog_lists_tools_with_args() -> None:
    catalog = BuiltinTools().catalog()

    assert "- search: find files by name part and extension; tool_args: base, ext, name, sort, limit, offset" in catalog
    assert "- clean:" in catalog


def test_unknown_tool_fails() -> None:
    tools = BuiltinTools()

    assert tools.is_known_tool("Search")
    assert not tools.is_known_tool("format")
    result = tools.run_by_name(".", "format", {})
    assert result.code == 1
    assert result.output == "unknown tool: format"


def test_search_filters_by_extension_and_name(tmp_path: Path) -> None:
    _touch(tmp_path / "report-2024.pdf")
    _touch(tmp_path / "nested" / "report-2025.PDF")
    _touch(tmp_path / "notes.txt")

    items = find_files(tmp_path, name="report", ext="pdf")

    assert [Path(item.path).name for item in items] == ["report-2025.PDF", "report-2024.pdf"]


def test_search_pages_results(tmp_path: Path) -> None:
    for name in ("a.log", "b.log", "c.log"):
        _touch(tmp_path / name)
    tools = BuiltinTools()

    first = tools.run_by_name(str(tmp_path), "search", {"ext": "log", "limit": "2"})

    assert first.code == 0
    assert first.can_continue is True
    assert first.continue_params == {"ext": "log", "limit": "2", "offset": "2"}
    lines = first.output.splitlines()
    assert lines[0].startswith(" 1) ") and lines[0].endswith("a.log")
    assert lines[1].startswith(" 2) ") and lines[1].endswith("b.log")
    assert lines[2] == "... and 1 more"

    second = tools.run_by_name(str(tmp_path), "search", first.continue_params)

    assert second.can_continue is False
    assert second.output.splitlines()[0].startswith(" 3) ")
    assert second.output.rstrip().endswith("c.log")


def test_search_page_cache_is_reused(tmp_path: Path) -> None:
    now = {"value": 0.0}
    _touch(tmp_path / "a.log")
    tools = BuiltinTools(clock=lambda: now["value"])

    tools.run_by_name(str(tmp_path), "search", {"ext": "log"})
    _touch(tmp_path / "b.log")
    cached = tools.run_by_name(str(tmp_path), "search", {"ext": "log"})
    now["value"] = 20.0
    fresh = tools.run_by_name(str(tmp_path), "search", {"ext": "log"})

    assert "b.log" not in cached.output
    assert "b.log" in fresh.output


def test_search_without_matches_and_bad_base(tmp_path: Path) -> None:
    tools = BuiltinTools()

    assert tools.run_by_name(str(tmp_path), "search", {"ext": "zip"}).output == "No files found.\n"
    missing = tools.run_by_name(str(tmp_path), "search", {"base": "missing"})
    assert missing.code == 1
    assert missing.output.startswith("Error: base path is not a directory")


def test_recent_orders_newest_first(tmp_path: Path) -> None:
    _touch(tmp_path / "old.txt", mtime=1_000_000)
    _touch(tmp_path / "new.txt", mtime=2_000_000)

    result = BuiltinTools().run_by_name(str(tmp_path), "recent", {})

    lines = result.output.splitlines()
    assert lines[0].endswith("new.txt")
    assert lines[1].endswith("old.txt")


def test_rename_previews_then_applies(tmp_path: Path) -> None:
    _touch(tmp_path / "IMG_001.jpg")
    _touch(tmp_path / "IMG_002.jpg")
    tools = BuiltinTools()

    preview = tools.run_by_name(str(tmp_path), "rename", {"from": "IMG_", "to": "photo_"})

    assert "Preview only. Set tool_args.apply=true to rename." in preview.output
    assert (tmp_path / "IMG_001.jpg").exists()

    applied = tools.run_by_name(str(tmp_path), "rename", {"from": "IMG_", "to": "photo_", "apply": "true"})

    assert applied.output.rstrip().endswith("Done.")
    assert sorted(p.name for p in tmp_path.iterdir()) == ["photo_001.jpg", "photo_002.jpg"]


def test_rename_case_insensitive(tmp_path: Path) -> None:
    _touch(tmp_path / "Draft-notes.md")

    result = BuiltinTools().run_by_name(
        str(tmp_path), "rename", {"from": "draft", "to": "final", "case_sensitive": "false", "apply": "yes"}
    )

    assert result.code == 0
    assert (tmp_path / "final-notes.md").exists()


def test_rename_refuses_existing_target(tmp_path: Path) -> None:
    _touch(tmp_path / "a_old.txt")
    _touch(tmp_path / "a_new.txt")

    result = BuiltinTools().run_by_name(str(tmp_path), "rename", {"from": "old", "to": "new", "apply": "true"})

    assert result.code == 1
    assert result.output.startswith("Error: target already exists")
    assert (tmp_path / "a_old.txt").exists()


def test_rename_requires_from(tmp_path: Path) -> None:
    result = BuiltinTools().run_by_name(str(tmp_path), "rename", {"to": "x"})

    assert result.code == 1
    assert result.output == "Error: replace-from is required.\n"


def test_clean_removes_deepest_empty_folders(tmp_path: Path) -> None:
    (tmp_path / "a" / "b").mkdir(parents=True)
    _touch(tmp_path / "keep" / "file.txt")
    tools = BuiltinTools()

    assert find_empty_dirs(tmp_path) == [str(tmp_path / "a" / "b")]
    preview = tools.run_by_name(str(tmp_path), "clean", {})
    assert "Preview only. Set tool_args.apply=true to delete." in preview.output

    tools.run_by_name(str(tmp_path), "clean", {"apply": "true"})

    assert not (tmp_path / "a" / "b").exists()
    assert (tmp_path / "keep").exists()


def test_clean_with_nothing_to_do(tmp_path: Path) -> None:
    assert BuiltinTools().run_by_name(str(tmp_path), "clean", {}).output == "No empty folders found.\n"


@pytest.mark.parametrize(
    ("name", "args", "expected"),
    [
        ("search", {}, ("low", "read-only file listing")),
        ("rename", {"apply": "false"}, ("low", "preview only")),
        ("clean", {"apply": "true"}, ("high", "clean modifies files on disk")),
        ("Rename", {"apply": "1"}, ("high", "rename modifies files on disk")),
    ],
)
def test_tool_risk(name: str, args: dict[str, str], expected: tuple[str, str]) -> None:
    assert BuiltinTools().tool_risk(name, args) == expected


def test_resolve_tool_path_relative_to_base(tmp_path: Path) -> None:
    assert resolve_tool_path("sub", str(tmp_path)) == (tmp_path / "sub").resolve()
    assert resolve_tool_path("", str(tmp_path)) == tmp_path.resolve()
    assert resolve_tool_path("Downloads", str(tmp_path)) == Path.home() / "Downloads"
