"""Built-in tool primitives."""

from __future__ import annotations

import abc
from collections.abc import Mapping
from dataclasses import dataclass, field

from dmagent.agent.models import RiskLevel


@dataclass(slots=True)
class RunResult:
    """Result of a built-in tool run.

    ``can_continue`` marks a paginated result; running the same tool again with
    ``continue_params`` yields the next page.
    """

    code: int
    output: str = ""
    can_continue: bool = False
    continue_prompt: str = ""
    continue_params: dict[str, str] = field(default_factory=dict)


class ToolProvider(abc.ABC):
    """Set of in-process tools the planner may call by name."""

    @abc.abstractmethod
    def catalog(self) -> str:
        """Catalog text listing each tool and its ``tool_args`` keys."""

    @abc.abstractmethod
    def is_known_tool(self, name: str) -> bool:
        """Return true when ``name`` resolves to a tool."""

    @abc.abstractmethod
    def tool_risk(self, name: str, tool_args: Mapping[str, str]) -> tuple[RiskLevel, str]:
        """Return the risk level and a short reason for running a tool."""

    @abc.abstractmethod
    def run_by_name(self, base_dir: str, name: str, tool_args: Mapping[str, str]) -> RunResult:
        """Run a tool and capture its output."""
