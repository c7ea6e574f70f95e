"""Typed records tracked by the TDD Mentor session."""

from __future__ import annotations

from typing import Any, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, computed_field, field_validator
from pydantic.alias_generators import to_camel

from ..phases import InteractionMode, Phase, mode_for_phase


class RecordModel(BaseModel):
    """Base Pydantic model: immutable, camelCase on the wire."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
        extra="ignore",
    )


class Candidate(RecordModel):
    """Common envelope shared by every generated item."""

    id: str
    title: str
    description: str

    @field_validator("id", mode="before")
    @classmethod
    def _stringify_id(cls, value: Any) -> Any:
        # Models frequently number their items.
        if isinstance(value, int) and not isinstance(value, bool):
            return str(value)
        return value


class Story(Candidate):
    """User story proposed during the PICK phase."""


class TestProposal(Candidate):
    """Test proposed during the RED phase.

    ``target_file`` is a bare filename; the candidate pipeline strips any
    directory component the oracle supplies.
    """

    __test__ = False

    code: str
    target_file: Optional[str] = None


class RefactoringSuggestion(Candidate):
    """Conceptual refactoring idea; never carries code."""


class TestResult(RecordModel):
    """Outcome of the most recent test-suite run."""

    __test__ = False

    success: bool
    message: str = ""


class TranscriptEntry(RecordModel):
    """One question/answer exchange of the hint protocol."""

    question: str
    answer: str


class SessionState(RecordModel):
    """Complete, serialisable workflow state.

    Instances are never mutated; the state machine swaps in a fresh copy for
    every change. ``current_mode`` is derived from ``current_phase`` and any
    persisted value for it is ignored on load.
    """

    current_phase: Phase = Phase.PICK
    user_stories: Tuple[Story, ...] = ()
    selected_user_story: Optional[Story] = None
    test_proposals: Tuple[TestProposal, ...] = ()
    selected_test: Optional[TestProposal] = None
    modified_selected_test: Optional[TestProposal] = None
    refactoring_suggestions: Tuple[RefactoringSuggestion, ...] = ()
    test_results: Optional[TestResult] = None
    is_editing_test: bool = False
    next_phase: Optional[Phase] = None
    hint_level: int = Field(default=0, ge=0)
    transcript: Tuple[TranscriptEntry, ...] = ()

    @computed_field  # type: ignore[prop-decorator]
    @property
    def current_mode(self) -> InteractionMode:
        return mode_for_phase(self.current_phase)

    def evolve(self, **changes: Any) -> "SessionState":
        """Return a validated copy with ``changes`` applied."""
        data = self.model_dump(exclude={"current_mode"})
        data.update(changes)
        return SessionState.model_validate(data)

    def to_record(self) -> dict[str, Any]:
        """Render the JSON-compatible payload stored by the session store."""
        return self.model_dump(mode="json", by_alias=True)


__all__ = [
    "Candidate",
    "RecordModel",
    "RefactoringSuggestion",
    "SessionState",
    "Story",
    "TestProposal",
    "TestResult",
    "TranscriptEntry",
]
