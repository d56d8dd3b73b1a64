"""File-oriented tools the planner can run without external units."""

from __future__ import annotations

import json
import logging
import os
import re
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from dmagent.agent.models import RiskLevel
from dmagent.cache import Clock, TTLCache

from .base import RunResult, ToolProvider

LOGGER = logging.getLogger(__name__)

PAGING_CACHE_TTL = 15.0
PAGING_CACHE_MAX_ENTRIES = 8
DEFAULT_SEARCH_LIMIT = 50
DEFAULT_RECENT_LIMIT = 20
CONTINUE_PROMPT = "Show more results? [Y/n]: "
_TRUE_VALUES = {"1", "true", "yes", "y"}

TOOL_DESCRIPTIONS: dict[str, tuple[str, tuple[str, ...]]] = {
    "search": ("find files by name part and extension", ("base", "ext", "name", "sort", "limit", "offset")),
    "recent": ("list recently modified files", ("base", "limit", "offset")),
    "rename": ("preview or apply bulk file renames", ("base", "from", "to", "name", "case_sensitive", "apply")),
    "clean": ("preview or delete empty folders", ("base", "apply")),
}


@dataclass(frozen=True, slots=True)
class FileItem:
    path: str
    size: int
    modified: float


@dataclass(frozen=True, slots=True)
class RenamePlanItem:
    old_path: str
    new_path: str


def _is_true(value: str | None) -> bool:
    return (value or "").strip().lower() in _TRUE_VALUES


def _positive_int(value: str | None, default: int) -> int:
    try:
        parsed = int((value or "").strip())
    except ValueError:
        return default
    return parsed if parsed > 0 else default


def _non_negative_int(value: str | None) -> int:
    try:
        parsed = int((value or "").strip())
    except ValueError:
        return 0
    return max(parsed, 0)


def resolve_tool_path(raw: str | None, base_dir: str) -> Path:
    """Resolve a user-supplied path relative to ``base_dir``; ``~`` and well-known folders expand."""
    text = (raw or "").strip()
    if not text:
        return Path(base_dir or ".").resolve()
    home = Path.home()
    well_known = {"downloads": "Downloads", "desktop": "Desktop", "documents": "Documents"}
    lowered = text.replace("\\", "/").lower().removeprefix("~/")
    if lowered in well_known:
        return home / well_known[lowered]
    path = Path(os.path.expanduser(text))
    if not path.is_absolute():
        path = Path(base_dir or ".") / path
    return path.resolve()


def _format_size(size: int) -> str:
    value = float(size)
    for unit in ("B", "KB", "MB", "GB"):
        if value < 1024 or unit == "GB":
            return f"{value:.0f} {unit}" if unit == "B" else f"{value:.1f} {unit}"
        value /= 1024
    return f"{size} B"


def _format_item(index: int, item: FileItem) -> str:
    stamp = datetime.fromtimestamp(item.modified).strftime("%Y-%m-%d %H:%M")
    return f"{index:2d}) {stamp} | {_format_size(item.size)} | {item.path}"


def _walk_files(base: Path) -> list[FileItem]:
    items: list[FileItem] = []
    for root, _dirs, files in os.walk(base):
        for name in files:
            path = os.path.join(root, name)
            try:
                stat = os.stat(path)
            except OSError:
                continue
            items.append(FileItem(path=path, size=stat.st_size, modified=stat.st_mtime))
    return items


def find_files(base: Path, *, name: str = "", ext: str = "", sort_by: str = "name") -> list[FileItem]:
    name_part = name.strip().lower()
    extension = ext.strip().lower()
    if extension and not extension.startswith("."):
        extension = f".{extension}"
    results = [
        item
        for item in _walk_files(base)
        if (not name_part or name_part in os.path.basename(item.path).lower())
        and (not extension or item.path.lower().endswith(extension))
    ]
    if sort_by == "date":
        results.sort(key=lambda item: item.modified, reverse=True)
    elif sort_by == "size":
        results.sort(key=lambda item: item.size, reverse=True)
    else:
        results.sort(key=lambda item: item.path.lower())
    return results


def find_empty_dirs(base: Path) -> list[str]:
    empty: list[str] = []
    for root, dirs, files in os.walk(base):
        if Path(root) == base:
            continue
        if not dirs and not files:
            empty.append(root)
    return sorted(empty, key=len, reverse=True)


def build_rename_plan(
    base: Path, *, replace_from: str, replace_to: str, name: str = "", case_sensitive: bool = True
) -> list[RenamePlanItem]:
    name_part = name.strip().lower()
    pattern = None if case_sensitive else re.compile(re.escape(replace_from), re.IGNORECASE)
    plan: list[RenamePlanItem] = []
    seen: set[tuple[str, str]] = set()
    for root, _dirs, files in os.walk(base):
        for filename in sorted(files):
            if name_part and name_part not in filename.lower():
                continue
            if pattern is None:
                if replace_from not in filename:
                    continue
                renamed = filename.replace(replace_from, replace_to)
            else:
                if pattern.search(filename) is None:
                    continue
                renamed = pattern.sub(lambda _match: replace_to, filename)
            if renamed == filename:
                continue
            item = RenamePlanItem(old_path=os.path.join(root, filename), new_path=os.path.join(root, renamed))
            key = (item.old_path, item.new_path)
            if key not in seen:
                seen.add(key)
                plan.append(item)
    return plan


def apply_rename_plan(plan: list[RenamePlanItem]) -> None:
    targets: set[str] = set()
    for item in plan:
        if item.new_path in targets:
            msg = f"duplicate target path: {item.new_path}"
            raise ValueError(msg)
        targets.add(item.new_path)
        if os.path.exists(item.new_path):
            msg = f"target already exists: {item.new_path}"
            raise ValueError(msg)
    for item in plan:
        os.rename(item.old_path, item.new_path)


class BuiltinTools(ToolProvider):
    """search, recent, rename and clean."""

    def __init__(self, *, clock: Clock = time.monotonic) -> None:
        self._pages: TTLCache[tuple[FileItem, ...]] = TTLCache(
            PAGING_CACHE_TTL, max_entries=PAGING_CACHE_MAX_ENTRIES, clock=clock
        )
        self._handlers: dict[str, Callable[[str, Mapping[str, str]], RunResult]] = {
            "search": self._search,
            "recent": self._recent,
            "rename": self._rename,
            "clean": self._clean,
        }

    def catalog(self) -> str:
        return "\n".join(
            f"- {name}: {summary}; tool_args: {', '.join(keys)}"
            for name, (summary, keys) in TOOL_DESCRIPTIONS.items()
        )

    def is_known_tool(self, name: str) -> bool:
        return name.strip().lower() in self._handlers

    def tool_risk(self, name: str, tool_args: Mapping[str, str]) -> tuple[RiskLevel, str]:
        normalized = name.strip().lower()
        if normalized in {"clean", "rename"} and _is_true(tool_args.get("apply")):
            return "high", f"{normalized} modifies files on disk"
        if normalized in {"clean", "rename"}:
            return "low", "preview only"
        return "low", "read-only file listing"

    def run_by_name(self, base_dir: str, name: str, tool_args: Mapping[str, str]) -> RunResult:
        handler = self._handlers.get(name.strip().lower())
        if handler is None:
            return RunResult(code=1, output=f"unknown tool: {name}")
        LOGGER.info("tool_request", extra={"tool": name, "args": sorted(tool_args)})
        try:
            result = handler(base_dir, tool_args)
        except (OSError, ValueError) as exc:
            LOGGER.warning("tool_failed", extra={"tool": name, "error": str(exc)})
            return RunResult(code=1, output=f"Error: {exc}")
        LOGGER.info(
            "tool_result",
            extra={"tool": name, "code": result.code, "can_continue": result.can_continue},
        )
        return result

    def _load_page(self, key: str, loader: Callable[[], list[FileItem]]) -> tuple[FileItem, ...]:
        cached, hit = self._pages.get(key)
        if hit and cached is not None:
            return cached
        items = tuple(loader())
        self._pages.set(key, items)
        return items

    def _paginate(
        self,
        items: tuple[FileItem, ...],
        tool_args: Mapping[str, str],
        *,
        limit: int,
        empty_message: str,
    ) -> RunResult:
        if not items:
            return RunResult(code=0, output=empty_message)
        offset = _non_negative_int(tool_args.get("offset"))
        page = items[offset : offset + limit]
        lines = [_format_item(offset + index + 1, item) for index, item in enumerate(page)]
        remaining = len(items) - offset - len(page)
        if remaining <= 0:
            return RunResult(code=0, output="\n".join(lines) + "\n")
        lines.append(f"... and {remaining} more")
        continue_params = dict(tool_args)
        continue_params["offset"] = str(offset + limit)
        continue_params["limit"] = str(limit)
        return RunResult(
            code=0,
            output="\n".join(lines) + "\n",
            can_continue=True,
            continue_prompt=CONTINUE_PROMPT,
            continue_params=continue_params,
        )

    def _search(self, base_dir: str, tool_args: Mapping[str, str]) -> RunResult:
        base = resolve_tool_path(tool_args.get("base"), base_dir)
        if not base.is_dir():
            return RunResult(code=1, output=f"Error: base path is not a directory: {base}")
        name = tool_args.get("name", "")
        ext = tool_args.get("ext", "")
        sort_by = (tool_args.get("sort") or "name").strip().lower()
        key = json.dumps(["search", str(base), name, ext, sort_by])
        items = self._load_page(key, lambda: find_files(base, name=name, ext=ext, sort_by=sort_by))
        return self._paginate(
            items,
            tool_args,
            limit=_positive_int(tool_args.get("limit"), DEFAULT_SEARCH_LIMIT),
            empty_message="No files found.\n",
        )

    def _recent(self, base_dir: str, tool_args: Mapping[str, str]) -> RunResult:
        base = resolve_tool_path(tool_args.get("base"), base_dir)
        if not base.is_dir():
            return RunResult(code=1, output=f"Error: base path is not a directory: {base}")
        key = json.dumps(["recent", str(base)])
        items = self._load_page(key, lambda: find_files(base, sort_by="date"))
        return self._paginate(
            items,
            tool_args,
            limit=_positive_int(tool_args.get("limit"), DEFAULT_RECENT_LIMIT),
            empty_message="No recent files found.\n",
        )

    def _rename(self, base_dir: str, tool_args: Mapping[str, str]) -> RunResult:
        base = resolve_tool_path(tool_args.get("base"), base_dir)
        replace_from = tool_args.get("from", "")
        if not replace_from:
            return RunResult(code=1, output="Error: replace-from is required.\n")
        case_sensitive = "case_sensitive" not in tool_args or _is_true(tool_args.get("case_sensitive"))
        plan = build_rename_plan(
            base,
            replace_from=replace_from,
            replace_to=tool_args.get("to", ""),
            name=tool_args.get("name", ""),
            case_sensitive=case_sensitive,
        )
        if not plan:
            return RunResult(code=0, output="No files to rename.\n")
        lines = ["Preview:"] + [f"{item.old_path} -> {item.new_path}" for item in plan]
        if not _is_true(tool_args.get("apply")):
            lines.append("Preview only. Set tool_args.apply=true to rename.")
            return RunResult(code=0, output="\n".join(lines) + "\n")
        apply_rename_plan(plan)
        self._pages.clear()
        lines.append("Done.")
        return RunResult(code=0, output="\n".join(lines) + "\n")

    def _clean(self, base_dir: str, tool_args: Mapping[str, str]) -> RunResult:
        base = resolve_tool_path(tool_args.get("base"), base_dir)
        if not base.is_dir():
            return RunResult(code=1, output=f"Error: base path is not a directory: {base}")
        dirs = find_empty_dirs(base)
        if not dirs:
            return RunResult(code=0, output="No empty folders found.\n")
        lines = ["Empty folders:", *dirs]
        if not _is_true(tool_args.get("apply")):
            lines.append("Preview only. Set tool_args.apply=true to delete.")
            return RunResult(code=0, output="\n".join(lines) + "\n")
        for directory in dirs:
            try:
                os.rmdir(directory)
            except OSError as exc:
                LOGGER.debug("clean_remove_failed", extra={"path": directory, "error": str(exc)})
        self._pages.clear()
        lines.append("Done.")
        return RunResult(code=0, output="\n".join(lines) + "\n")
