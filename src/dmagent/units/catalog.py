"""Filesystem discovery and introspection of automation units.

Units live in ``<base_dir>/plugins``. Every supported script file is a unit
named after its stem; a ``.ps1`` file that declares functions is a toolkit and
each ``function Name`` inside it is a unit of its own.
"""

from __future__ import annotations

import abc
import logging
import os
import re
from collections.abc import Mapping
from pathlib import Path

from .cache import CatalogCache, Fingerprint, entries_cache_key, info_cache_key
from .errors import UnitNotFoundError
from .models import Entry, ParamDetail, UnitInfo

LOGGER = logging.getLogger(__name__)

UNITS_DIRNAME = "plugins"
CATALOG_TOKEN_BUDGET = 6000
SUPPORTED_EXTENSIONS = (".ps1", ".sh", ".cmd", ".bat", ".exe", ".out", "")

_FUNCTION_LINE = re.compile(r"^[ \t]*function[ \t]+([A-Za-z0-9_-]+)\b", re.IGNORECASE | re.MULTILINE)
_HELP_BLOCK = re.compile(r"<#(.*?)#>", re.DOTALL)
_HELP_KEYWORD = re.compile(r"^\s*\.([A-Za-z]+)\b\s*(.*)$")
_PARAM_OPEN = re.compile(r"\bparam\s*\(", re.IGNORECASE)
_SAFETY_HEADER = re.compile(r"^\s*#\s*safety\s*:\s*(.+?)\s*$", re.IGNORECASE)
_SH_SYNOPSIS = re.compile(r"^\s*#\s*synopsis\s*:\s*(.+?)\s*$", re.IGNORECASE)
_MANDATORY = re.compile(r"\bmandatory\b(\s*=\s*\$(true|false))?", re.IGNORECASE)
_VALIDATE_SET = re.compile(r"\[\s*validateset\s*\((.*?)\)\s*\]", re.IGNORECASE | re.DOTALL)
_SWITCH_TYPE = re.compile(r"\[\s*switch\s*\]", re.IGNORECASE)
_VARIABLE = re.compile(r"\$([A-Za-z_][A-Za-z0-9_]*)\s*(?:=\s*(.+))?$", re.DOTALL)
_ATTRIBUTE = re.compile(r"\[[^\[\]]*(?:\([^()]*\))?[^\[\]]*\]")
_SAFETY_SCAN_LINES = 30


class UnitCatalog(abc.ABC):
    """Source of unit listings and metadata."""

    @abc.abstractmethod
    def list_entries(self, base_dir: str, include_functions: bool = True) -> list[Entry]:
        """Return every unit discoverable under ``base_dir``."""

    @abc.abstractmethod
    def get_info(self, base_dir: str, name: str) -> UnitInfo:
        """Return metadata for ``name`` or raise :class:`UnitNotFoundError`."""

    def invalidate(self, base_dir: str | None = None) -> None:
        """Forget memoized listings after units were added or edited."""


def units_dir(base_dir: str | Path) -> Path:
    return Path(base_dir) / UNITS_DIRNAME


def _is_supported(path: Path) -> bool:
    return path.is_file() and not path.name.startswith(".") and path.suffix.lower() in SUPPORTED_EXTENSIONS


def preferred_extension_order() -> list[str]:
    if os.name == "nt":
        return [".ps1", ".cmd", ".bat", ".exe", ".sh", "", ".out"]
    return [".sh", "", ".out", ".ps1"]


def _extension_score(path: str) -> int:
    order = preferred_extension_order()
    suffix = Path(path).suffix.lower()
    return order.index(suffix) if suffix in order else len(order) + 1


def _read_text(path: Path) -> str:
    try:
        return path.read_text(encoding="utf-8-sig", errors="replace")
    except OSError:
        return ""


def read_function_names(text: str) -> list[str]:
    names: list[str] = []
    for match in _FUNCTION_LINE.finditer(text):
        name = match.group(1).strip()
        if name and name not in names:
            names.append(name)
    return names


class FileSystemCatalog(UnitCatalog):
    """Scans unit sources on disk, memoized through a :class:`CatalogCache`."""

    def __init__(self, cache: CatalogCache | None = None) -> None:
        self.cache = cache or CatalogCache()

    def list_entries(self, base_dir: str, include_functions: bool = True) -> list[Entry]:
        key = entries_cache_key(base_dir, include_functions)
        cached = self.cache.get_entries(key)
        if cached is not None:
            return cached

        LOGGER.debug("catalog_cache_miss", extra={"key": key})
        directory = units_dir(base_dir)
        files = sorted(p for p in directory.iterdir() if _is_supported(p)) if directory.is_dir() else []
        fingerprint = Fingerprint.capture(directory, files)

        best_scripts: dict[str, Entry] = {}
        functions: list[Entry] = []
        for path in files:
            if path.suffix.lower() == ".ps1":
                names = read_function_names(_read_text(path))
                if names:
                    if include_functions:
                        functions.extend(Entry(name=name, path=str(path)) for name in names)
                    continue
            candidate = Entry(name=path.stem if path.suffix else path.name, path=str(path))
            current = best_scripts.get(candidate.name)
            if current is None or _extension_score(candidate.path) < _extension_score(current.path):
                best_scripts[candidate.name] = candidate

        entries = list(best_scripts.values())
        seen = set(best_scripts)
        for entry in functions:
            if entry.name in seen:
                continue
            seen.add(entry.name)
            entries.append(entry)
        entries.sort(key=lambda entry: entry.name.lower())

        self.cache.set_entries(key, entries, fingerprint)
        return list(entries)

    def get_info(self, base_dir: str, name: str) -> UnitInfo:
        key = info_cache_key(base_dir, name)
        cached = self.cache.get_info(key)
        if cached is not None:
            return cached

        entry = next(
            (item for item in self.list_entries(base_dir, True) if item.name == name),
            None,
        )
        if entry is None:
            msg = f"unit not found: {name}"
            raise UnitNotFoundError(msg)

        path = Path(entry.path)
        info = parse_unit_info(name, path, _read_text(path))
        self.cache.set_info(key, info, Fingerprint.capture(units_dir(base_dir), [path]))
        return info

    def invalidate(self, base_dir: str | None = None) -> None:
        self.cache.invalidate(base_dir)


def parse_unit_info(name: str, path: Path, text: str) -> UnitInfo:
    safety = parse_safety_header(text)
    if path.suffix.lower() != ".ps1":
        return UnitInfo(
            name=name,
            path=str(path),
            synopsis=_shell_synopsis(text),
            sources=(str(path),),
            safety=safety,
        )

    is_function = name in read_function_names(text)
    scope_text = _function_scope(text, name) if is_function else text
    synopsis, examples = _parse_help(scope_text)
    details = tuple(parse_param_block(scope_text))
    return UnitInfo(
        name=name,
        path=str(path),
        synopsis=synopsis,
        parameters=tuple(detail.name for detail in details),
        param_details=details,
        examples=tuple(examples),
        sources=(str(path),),
        safety=safety,
        is_function=is_function,
    )


def parse_safety_header(text: str) -> str:
    """Return the ``# Safety:`` declaration from the top of a unit source."""
    for line in text.splitlines()[:_SAFETY_SCAN_LINES]:
        match = _SAFETY_HEADER.match(line)
        if match:
            return match.group(1)
    return ""


def _shell_synopsis(text: str) -> str:
    for line in text.splitlines()[:_SAFETY_SCAN_LINES]:
        match = _SH_SYNOPSIS.match(line)
        if match:
            return match.group(1)
    return ""


def _function_scope(text: str, name: str) -> str:
    """Return the help comment preceding ``function name`` plus the function body."""
    pattern = re.compile(
        rf"^[ \t]*function[ \t]+{re.escape(name)}\b", re.IGNORECASE | re.MULTILINE
    )
    match = pattern.search(text)
    if match is None:
        return ""
    preceding = text[: match.start()]
    help_prefix = ""
    help_match = None
    for candidate in _HELP_BLOCK.finditer(preceding):
        help_match = candidate
    if help_match is not None and not preceding[help_match.end() :].strip():
        help_prefix = help_match.group(0) + "\n"

    open_index = text.find("{", match.end())
    if open_index < 0:
        return help_prefix
    return help_prefix + _balanced_span(text, open_index, "{", "}")


def _balanced_span(text: str, open_index: int, opener: str, closer: str) -> str:
    depth = 0
    quote: str | None = None
    index = open_index
    while index < len(text):
        ch = text[index]
        if quote is not None:
            if ch == "`":
                index += 2
                continue
            if ch == quote:
                quote = None
        elif ch in ("'", '"'):
            quote = ch
        elif ch == "#" and text[index - 1 : index] != "<":
            newline = text.find("\n", index)
            index = len(text) if newline < 0 else newline
            continue
        elif ch == opener:
            depth += 1
        elif ch == closer:
            depth -= 1
            if depth == 0:
                return text[open_index : index + 1]
        index += 1
    return text[open_index:]


def _parse_help(text: str) -> tuple[str, list[str]]:
    match = _HELP_BLOCK.search(text)
    if match is None:
        return "", []
    synopsis_lines: list[str] = []
    examples: list[str] = []
    section = ""
    for raw_line in match.group(1).splitlines():
        keyword = _HELP_KEYWORD.match(raw_line)
        if keyword:
            section = keyword.group(1).upper()
            remainder = keyword.group(2).strip()
            if section == "EXAMPLE":
                examples.append(remainder)
            elif section == "SYNOPSIS" and remainder:
                synopsis_lines.append(remainder)
            continue
        line = raw_line.strip()
        if not line:
            continue
        if section == "SYNOPSIS":
            synopsis_lines.append(line)
        elif section == "EXAMPLE" and examples:
            examples[-1] = f"{examples[-1]}\n{line}".strip()
    return " ".join(synopsis_lines), [example for example in examples if example]


def _split_top_level(text: str) -> list[str]:
    parts: list[str] = []
    depth = 0
    quote: str | None = None
    current: list[str] = []
    for ch in text:
        if quote is not None:
            if ch == quote:
                quote = None
        elif ch in ("'", '"'):
            quote = ch
        elif ch in "([{":
            depth += 1
        elif ch in ")]}":
            depth -= 1
        elif ch == "," and depth == 0:
            parts.append("".join(current))
            current = []
            continue
        current.append(ch)
    if "".join(current).strip():
        parts.append("".join(current))
    return parts


def _strip_quotes(value: str) -> str:
    value = value.strip()
    if len(value) >= 2 and value[0] == value[-1] and value[0] in ("'", '"'):
        return value[1:-1]
    return value


def _strip_comments(text: str) -> str:
    text = _HELP_BLOCK.sub(" ", text)
    return "\n".join(line.split("#", 1)[0] if "#" in line else line for line in text.splitlines())


def parse_param_block(text: str) -> list[ParamDetail]:
    """Parse the first ``param(...)`` block of a PowerShell function or script."""
    match = _PARAM_OPEN.search(_HELP_BLOCK.sub(lambda m: " " * len(m.group(0)), text))
    if match is None:
        return []
    span = _balanced_span(text, match.end() - 1, "(", ")")
    body = _strip_comments(span[1:-1] if span.endswith(")") else span[1:])

    details: list[ParamDetail] = []
    for chunk in _split_top_level(body):
        declaration = chunk.strip()
        if not declaration:
            continue
        attributes = " ".join(_ATTRIBUTE.findall(declaration))
        remainder = _ATTRIBUTE.sub(" ", declaration).strip()
        variable = _VARIABLE.search(remainder)
        if variable is None:
            continue

        mandatory = False
        for parameter_attr in re.findall(r"\[\s*parameter\s*\((.*?)\)\s*\]", attributes, re.IGNORECASE):
            flag = _MANDATORY.search(parameter_attr)
            if flag is not None:
                mandatory = (flag.group(2) or "true").lower() == "true"

        validate_set: tuple[str, ...] = ()
        set_match = _VALIDATE_SET.search(attributes)
        if set_match is not None:
            validate_set = tuple(
                _strip_quotes(item) for item in _split_top_level(set_match.group(1)) if item.strip()
            )

        default = _strip_quotes(variable.group(2) or "")
        details.append(
            ParamDetail(
                name=variable.group(1),
                mandatory=mandatory,
                switch=_SWITCH_TYPE.search(attributes) is not None,
                validate_set=validate_set,
                default=default,
            )
        )
    return details


def missing_mandatory_params(info: UnitInfo, unit_args: Mapping[str, str]) -> list[str]:
    provided = {key.strip().lower() for key, value in unit_args.items() if value.strip()}
    return [
        detail.name
        for detail in info.param_details
        if detail.mandatory and detail.name.lower() not in provided
    ]


def toolkit_group_key(path: str) -> str:
    return Path(path.replace("\\", "/")).stem


def toolkit_label(group_key: str) -> str:
    name = group_key
    if len(name) >= 2 and name[0].isdigit() and name[1] == "_":
        name = name[2:]
    name = name.removesuffix("_Toolkit")
    return name.replace("_", " ")


def _scope_matches(unit_name: str, group_label: str, scope: str) -> bool:
    if unit_name.lower().startswith(f"{scope}_"):
        return True
    return scope in group_label.lower()


def _strip_group_words(synopsis: str, group_label: str) -> str:
    if not synopsis or not group_label:
        return synopsis
    result = synopsis
    for word in group_label.split():
        if len(word) < 3:
            continue
        result = re.sub(rf"(?i)\b{re.escape(word)}\b\s*", "", result)
    result = result.strip().removeprefix("- ").strip()
    return result or synopsis


def format_unit_catalog(catalog: UnitCatalog, base_dir: str, scope: str = "") -> str:
    """Render the grouped catalog text embedded in the planner system prompt."""
    try:
        entries = catalog.list_entries(base_dir, True)
    except OSError as exc:
        LOGGER.warning("catalog_list_failed", extra={"base_dir": base_dir, "error": str(exc)})
        return "(none)"
    if not entries:
        return "(none)"

    scope_lower = scope.strip().lower()
    groups: dict[str, list[str]] = {}
    for entry in entries:
        key = toolkit_group_key(entry.path)
        label = toolkit_label(key)
        if scope_lower and not _scope_matches(entry.name, label, scope_lower):
            continue
        try:
            info = catalog.get_info(base_dir, entry.name)
        except UnitNotFoundError:
            continue

        params = ", ".join(detail.catalog_label() for detail in info.param_details)
        synopsis = _strip_group_words(info.synopsis.strip(), label)
        line = f"- {entry.name}({params})" if params else f"- {entry.name}"
        if synopsis:
            line += f": {synopsis}"
        groups.setdefault(key, []).append(line)

    if not groups:
        return "(none)"

    lines: list[str] = []
    for key in sorted(groups):
        lines.append(f"\n[{toolkit_label(key)}]")
        lines.extend(groups[key])
    text = "\n".join(lines)

    tokens = len(text) // 4
    LOGGER.debug(
        "unit_catalog_built",
        extra={"tokens": tokens, "units": sum(len(v) for v in groups.values()), "scope": scope},
    )
    if tokens > CATALOG_TOKEN_BUDGET:
        LOGGER.warning(
            "unit_catalog_over_budget",
            extra={"tokens": tokens, "budget": CATALOG_TOKEN_BUDGET, "hint": "use --scope"},
        )
    return text
