"""Risk classification of planner decisions and the confirmation policy."""

from __future__ import annotations

import logging

from dmagent.agent.models import RiskLevel
from dmagent.config import RiskPolicy
from dmagent.llm.decision import ACTION_PROPOSE_UNIT, ACTION_RUN_TOOL, ACTION_RUN_UNIT, Decision
from dmagent.tools import ToolProvider
from dmagent.units import UnitCatalog, UnitError

LOGGER = logging.getLogger(__name__)

_DESTRUCTIVE_NAME_PARTS = ("reset", "delete", "drop", "rm")
_LOW_SAFETY_WORDS = ("read-only", "readonly", "safe")
_HIGH_SAFETY_WORDS = ("destructive", "dangerous")


def safety_risk_level(safety: str) -> RiskLevel:
    """Map a unit's declared ``Safety:`` text to a risk level."""
    text = safety.strip().lower()
    if any(word in text for word in _HIGH_SAFETY_WORDS):
        return "high"
    if any(text.startswith(word) for word in _LOW_SAFETY_WORDS):
        return "low"
    return "medium"


def assess_risk(
    decision: Decision,
    *,
    units: UnitCatalog | None,
    tools: ToolProvider | None,
    base_dir: str,
) -> tuple[RiskLevel, str]:
    if decision.action == ACTION_RUN_TOOL:
        if tools is None:
            return "medium", "unknown tool"
        return tools.tool_risk(decision.tool, decision.tool_args)

    if decision.action == ACTION_PROPOSE_UNIT:
        return "high", "generates and writes new code"

    if decision.action == ACTION_RUN_UNIT:
        name = decision.unit.strip().lower()
        if any(part in name for part in _DESTRUCTIVE_NAME_PARTS):
            return "high", "unit may perform destructive operations"
        if units is not None:
            try:
                safety = units.get_info(base_dir, decision.unit).safety
            except (UnitError, OSError) as exc:
                LOGGER.debug("risk_unit_info_failed", extra={"unit": decision.unit, "error": str(exc)})
                safety = ""
            if safety:
                return safety_risk_level(safety), safety
        return "medium", "external unit execution"

    return "low", "response only"


def should_confirm(confirm_tools: bool, policy: RiskPolicy, risk: RiskLevel) -> bool:
    if policy == "off":
        return confirm_tools
    if policy == "strict":
        return True
    return confirm_tools or risk == "high"
