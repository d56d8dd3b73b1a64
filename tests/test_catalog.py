from __future__ import annotations

import os
from pathlib import Path

import pytest

from dmagent.units import (
    FileSystemCatalog,
    UnitNotFoundError,
    format_unit_catalog,
    missing_mandatory_params,
)
from dmagent.units.catalog import parse_param_block, toolkit_label

DATABASE_TOOLKIT = """# Safety: read-only queries
<#
.SYNOPSIS
Search a database table for a value.
.EXAMPLE
Search-Table -Table user -Value mario
#>
function Search-Table {
    param(
        [Parameter(Mandatory=$true)]
        [string]$Table,
        [Parameter(Mandatory)]
        [string]$Value,
        [int]$Limit = 20,
        [ValidateSet('asc','desc')]
        [string]$Order = 'asc',
        [switch]$Raw
    )
    Write-Output "$Table $Value"
}

function Reset-Database {
    param([Parameter(Mandatory=$false)][string]$Name)
    Write-Output "reset"
}
"""

DISK_REPORT = """#!/bin/sh
# Synopsis: Show disk usage report
# Safety: read-only
df -h
"""


@pytest.fixture
def base_dir(tmp_path: Path) -> Path:
    plugins = tmp_path / "plugins"
    plugins.mkdir()
    (plugins / "1_Database_Toolkit.ps1").write_text(DATABASE_TOOLKIT, encoding="utf-8")
    (plugins / "disk_report.sh").write_text(DISK_REPORT, encoding="utf-8")
    return tmp_path


def test_lists_functions_and_scripts_sorted(base_dir: Path) -> None:
    entries = FileSystemCatalog().list_entries(str(base_dir))

    assert [entry.name for entry in entries] == ["disk_report", "Reset-Database", "Search-Table"]


def test_toolkit_file_itself_is_not_a_unit(base_dir: Path) -> None:
    entries = FileSystemCatalog().list_entries(str(base_dir), include_functions=False)

    assert [entry.name for entry in entries] == ["disk_report"]


def test_missing_plugins_dir_is_empty(tmp_path: Path) -> None:
    assert FileSystemCatalog().list_entries(str(tmp_path)) == []
    assert format_unit_catalog(FileSystemCatalog(), str(tmp_path)) == "(none)"


def test_function_info_reads_help_params_and_safety(base_dir: Path) -> None:
    info = FileSystemCatalog().get_info(str(base_dir), "Search-Table")

    assert info.is_function is True
    assert info.synopsis == "Search a database table for a value."
    assert info.examples == ("Search-Table -Table user -Value mario",)
    assert info.parameters == ("Table", "Value", "Limit", "Order", "Raw")
    assert info.safety == "read-only queries"
    labels = [detail.catalog_label() for detail in info.param_details]
    assert labels == ["Table*", "Value*", "Limit=20", "Order=asc|desc", "Raw?"]


def test_help_of_previous_function_is_not_inherited(base_dir: Path) -> None:
    info = FileSystemCatalog().get_info(str(base_dir), "Reset-Database")

    assert info.synopsis == ""
    assert [detail.mandatory for detail in info.param_details] == [False]


def test_script_info_reads_synopsis_comment(base_dir: Path) -> None:
    info = FileSystemCatalog().get_info(str(base_dir), "disk_report")

    assert info.is_function is False
    assert info.synopsis == "Show disk usage report"
    assert info.safety == "read-only"


def test_unknown_unit_raises(base_dir: Path) -> None:
    with pytest.raises(UnitNotFoundError, match="unit not found: Nope"):
        FileSystemCatalog().get_info(str(base_dir), "Nope")


def test_missing_mandatory_params_is_case_insensitive(base_dir: Path) -> None:
    info = FileSystemCatalog().get_info(str(base_dir), "Search-Table")

    assert missing_mandatory_params(info, {"table": "user", "Value": "  "}) == ["Value"]
    assert missing_mandatory_params(info, {"TABLE": "user", "value": "mario"}) == []


def test_format_catalog_groups_by_toolkit(base_dir: Path) -> None:
    text = format_unit_catalog(FileSystemCatalog(), str(base_dir))

    assert text == (
        "\n[Database]\n"
        "- Reset-Database(Name)\n"
        "- Search-Table(Table*, Value*, Limit=20, Order=asc|desc, Raw?): Search a table for a value.\n"
        "\n[disk report]\n"
        "- disk_report: Show usage"
    )


def test_format_catalog_scope_filters_groups(base_dir: Path) -> None:
    text = format_unit_catalog(FileSystemCatalog(), str(base_dir), scope="disk")

    assert "[disk report]" in text
    assert "Search-Table" not in text


def test_preferred_extension_wins_for_duplicate_scripts(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr("dmagent.units.catalog.os.name", "posix")
    plugins = tmp_path / "plugins"
    plugins.mkdir()
    (plugins / "report.ps1").write_text("Write-Output 'ps'\n", encoding="utf-8")
    (plugins / "report.sh").write_text("echo sh\n", encoding="utf-8")

    entries = FileSystemCatalog().list_entries(str(tmp_path))

    assert len(entries) == 1
    assert entries[0].path.endswith("report.sh")


def test_listing_is_cached_until_directory_changes(base_dir: Path) -> None:
    catalog = FileSystemCatalog()
    plugins = base_dir / "plugins"
    first = catalog.list_entries(str(base_dir))

    extra = plugins / "uptime.sh"
    extra.write_text("uptime\n", encoding="utf-8")
    stamp = plugins.stat().st_mtime_ns + 5_000_000_000
    os.utime(plugins, ns=(stamp, stamp))

    second = catalog.list_entries(str(base_dir))

    assert "uptime" not in [entry.name for entry in first]
    assert "uptime" in [entry.name for entry in second]


def test_param_block_strips_comments_and_help() -> None:
    text = """<#
.SYNOPSIS
Mentions param(Fake) in help.
#>
param(
    # the host to ping
    [Parameter(Mandatory)][string]$Host,
    [int]$Count = 4
)
"""

    details = parse_param_block(text)

    assert [(d.name, d.mandatory, d.default) for d in details] == [("Host", True, ""), ("Count", False, "4")]


def test_toolkit_label_strips_order_prefix_and_suffix() -> None:
    assert toolkit_label("2_Network_Tools_Toolkit") == "Network Tools"
    assert toolkit_label("misc") == "misc"
