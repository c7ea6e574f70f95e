"""Shared phase enumerations and the phase-derived interaction mode."""

from __future__ import annotations

from enum import Enum


class Phase(str, Enum):
    """Enumeration of the steps in a TDD cycle."""

    PICK = "pick"
    RED = "red"
    GREEN = "green"
    REFACTORING = "refactoring"


class InteractionMode(str, Enum):
    """How directive the oracle is allowed to be."""

    ADVISORY = "advisory"
    DIRECTIVE = "directive"


def mode_for_phase(phase: Phase) -> InteractionMode:
    """Only the RED phase lets the oracle emit code."""
    if phase is Phase.RED:
        return InteractionMode.DIRECTIVE
    return InteractionMode.ADVISORY


def parse_phase(value: Phase | str) -> Phase:
    """Resolve ``value`` into a concrete ``Phase`` member."""
    if isinstance(value, Phase):
        return value
    try:
        return Phase(str(value).strip().lower())
    except ValueError as error:
        valid = ", ".join(item.value for item in Phase)
        raise KeyError(f"Unknown phase '{value}'. Expected one of: {valid}") from error


__all__ = ["InteractionMode", "Phase", "mode_for_phase", "parse_phase"]
