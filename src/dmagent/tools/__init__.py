"""Built-in tools exposed to the planner."""

from .base import RunResult, ToolProvider
from .builtin import BuiltinTools

__all__ = ["BuiltinTools", "RunResult", "ToolProvider"]
