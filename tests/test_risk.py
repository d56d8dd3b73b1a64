from __future__ import annotations

import pytest

from dmagent.agent.risk import assess_risk, safety_risk_level, should_confirm
from dmagent.llm.decision import Decision
from dmagent.tools import BuiltinTools
from dmagent.units import Entry, UnitCatalog, UnitInfo, UnitNotFoundError


class SafetyCatalog(UnitCatalog):
    def __init__(self, safety: dict[str, str]) -> None:
        self.safety = safety

    def list_entries(self, base_dir: str, include_functions: bool = True) -> list[Entry]:
        return [Entry(name=name, path=f"/plugins/{name}.ps1") for name in self.safety]

    def get_info(self, base_dir: str, name: str) -> UnitInfo:
        if name not in self.safety:
            raise UnitNotFoundError(name)
        return UnitInfo(name=name, path=f"/plugins/{name}.ps1", safety=self.safety[name])


@pytest.mark.parametrize(
    ("text", "expected"),
    [
        ("read-only", "low"),
        ("Safe to run anytime", "low"),
        ("Destructive: drops tables", "high"),
        ("read-only unless dangerous flags are set", "high"),
        ("writes temp files", "medium"),
        ("", "medium"),
    ],
)
def test_safety_risk_level(text: str, expected: str) -> None:
    assert safety_risk_level(text) == expected


def test_unit_risk_from_name_and_safety() -> None:
    catalog = SafetyCatalog({"Get-Disk": "read-only", "Sync-Files": "", "Drop-Table": "read-only"})

    def risk(unit: str):
        return assess_risk(Decision(action="run_unit", unit=unit), units=catalog, tools=None, base_dir="/w")

    assert risk("Get-Disk") == ("low", "read-only")
    assert risk("Sync-Files") == ("medium", "external unit execution")
    assert risk("Drop-Table") == ("high", "unit may perform destructive operations")
    assert risk("Unknown-Unit") == ("medium", "external unit execution")


def test_tool_and_other_action_risk() -> None:
    tools = BuiltinTools()

    assert assess_risk(Decision(action="run_tool", tool="clean", tool_args={"apply": "true"}), units=None, tools=tools, base_dir=".") == (
        "high",
        "clean modifies files on disk",
    )
    assert assess_risk(Decision(action="run_tool", tool="search"), units=None, tools=None, base_dir=".") == (
        "medium",
        "unknown tool",
    )
    assert assess_risk(Decision(action="propose_unit", description="x"), units=None, tools=None, base_dir=".") == (
        "high",
        "generates and writes new code",
    )
    assert assess_risk(Decision(action="answer"), units=None, tools=None, base_dir=".") == ("low", "response only")


@pytest.mark.parametrize(
    ("confirm_tools", "policy", "risk", "expected"),
    [
        (False, "off", "high", False),
        (True, "off", "low", True),
        (False, "strict", "low", True),
        (False, "normal", "medium", False),
        (False, "normal", "high", True),
        (True, "normal", "low", True),
    ],
)
def test_should_confirm(confirm_tools: bool, policy: str, risk: str, expected: bool) -> None:
    assert should_confirm(confirm_tools, policy, risk) is expected
