"""Immutable records describing discoverable automation units."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True, slots=True)
class Entry:
    """A unit name and the source file that defines it."""

    name: str
    path: str


@dataclass(frozen=True, slots=True)
class ParamDetail:
    name: str
    mandatory: bool = False
    switch: bool = False
    validate_set: tuple[str, ...] = ()
    default: str = ""

    def catalog_label(self) -> str:
        """Render with catalog notation: ``Name*``, ``Flag?``, ``P=a|b``, ``P=default``."""
        label = self.name
        if self.mandatory:
            label += "*"
        if self.switch:
            label += "?"
        if self.validate_set:
            label += "=" + "|".join(self.validate_set)
        elif self.default:
            label += "=" + self.default
        return label


@dataclass(frozen=True, slots=True)
class UnitInfo:
    """Introspected metadata for a single unit."""

    name: str
    path: str
    synopsis: str = ""
    parameters: tuple[str, ...] = ()
    param_details: tuple[ParamDetail, ...] = ()
    examples: tuple[str, ...] = ()
    sources: tuple[str, ...] = ()
    safety: str = ""
    is_function: bool = False
