"""Errors raised while discovering or running units."""

from __future__ import annotations


class UnitError(Exception):
    """Base class for unit failures; ``output`` holds whatever was captured."""

    def __init__(self, message: str, *, output: str = "") -> None:
        super().__init__(message)
        self.output = output


class UnitNotFoundError(UnitError):
    """No unit with the requested name exists under the base directory."""


class UnitExecutionError(UnitError):
    """The unit could not be launched or exited with a non-zero status."""

    def __init__(self, message: str, *, output: str = "", returncode: int | None = None) -> None:
        super().__init__(message, output=output)
        self.returncode = returncode


class UnitTimeoutError(UnitError):
    """The unit exceeded its time limit and was killed."""

    def __init__(self, message: str, *, output: str = "", timeout: float) -> None:
        super().__init__(message, output=output)
        self.timeout = timeout
