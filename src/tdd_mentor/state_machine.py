"""Single owner of the session aggregate and its phase transitions."""

from __future__ import annotations

import logging
import sqlite3
import threading
from typing import Callable, Optional, Protocol, Sequence

from .memory.schema import (
    RefactoringSuggestion,
    SessionState,
    Story,
    TestProposal,
    TestResult,
    TranscriptEntry,
)
from .phases import InteractionMode, Phase, parse_phase

LOGGER = logging.getLogger(__name__)

StateObserver = Callable[[SessionState], None]


class SnapshotStore(Protocol):
    """Persistence contract consumed by the state machine."""

    def save(self, state: SessionState) -> None: ...

    def load(self) -> Optional[SessionState]: ...


class PhaseStateMachine:
    """Dumb setter plus mode deriver for the TDD session.

    Every mutator swaps in a new immutable ``SessionState``, persists it and
    notifies observers exactly once. Transition preconditions are not enforced
    here; callers consult :meth:`can_enter` before calling :meth:`set_phase`.
    """

    def __init__(self, store: SnapshotStore | None = None, *, restore: bool = True) -> None:
        self._store = store
        self._observers: list[StateObserver] = []
        self._lock = threading.RLock()
        restored: Optional[SessionState] = None
        if store is not None and restore:
            try:
                restored = store.load()
            except (OSError, sqlite3.Error) as error:
                LOGGER.warning("Unable to restore previous session: %s", error)
        self._state = restored or SessionState()

    # ------------------------------------------------------------- queries
    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def phase(self) -> Phase:
        return self._state.current_phase

    @property
    def mode(self) -> InteractionMode:
        return self._state.current_mode

    def can_enter(self, phase: Phase | str) -> bool:
        """Return ``True`` when the workflow preconditions for ``phase`` hold.

        Phase names are accepted case-insensitively; unknown names raise
        ``KeyError``.
        """
        phase = parse_phase(phase)
        state = self._state
        if phase is Phase.RED:
            return state.selected_user_story is not None
        if phase is Phase.GREEN:
            return state.selected_test is not None
        if phase is Phase.REFACTORING:
            return state.test_results is not None and state.test_results.success
        return True

    def subscribe(self, observer: StateObserver) -> Callable[[], None]:
        """Register ``observer`` and return a callable that unregisters it."""
        self._observers.append(observer)

        def _unsubscribe() -> None:
            if observer in self._observers:
                self._observers.remove(observer)

        return _unsubscribe

    # ------------------------------------------------------------ mutators
    def set_phase(self, phase: Phase) -> None:
        self._commit(current_phase=phase)

    def set_user_stories(self, stories: Sequence[Story]) -> None:
        self._commit(user_stories=tuple(stories))

    def set_test_proposals(self, proposals: Sequence[TestProposal]) -> None:
        self._commit(test_proposals=tuple(proposals))

    def set_refactoring_suggestions(self, suggestions: Sequence[RefactoringSuggestion]) -> None:
        self._commit(refactoring_suggestions=tuple(suggestions))

    def select_user_story(self, story_id: str) -> bool:
        """Select the story with ``story_id``; unknown ids are silently ignored."""
        with self._lock:
            story = next((item for item in self._state.user_stories if item.id == story_id), None)
            if story is None:
                return False
            self._commit(selected_user_story=story)
            return True

    def select_test_proposal(self, test_id: str) -> bool:
        """Select the proposal with ``test_id`` and restart hint escalation."""
        with self._lock:
            proposal = next((item for item in self._state.test_proposals if item.id == test_id), None)
            if proposal is None:
                return False
            self._commit(selected_test=proposal, hint_level=0)
            return True

    def set_test_results(self, success: bool, message: str) -> None:
        self._commit(test_results=TestResult(success=success, message=message))

    def set_test_editing_mode(self, is_editing: bool) -> None:
        self._commit(is_editing_test=is_editing)

    def set_next_phase(self, phase: Optional[Phase]) -> None:
        self._commit(next_phase=phase)

    def update_modified_selected_test(self, code: str, target_file: Optional[str] = None) -> None:
        """Record the user's edited copy of the selected test."""
        with self._lock:
            selected = self._state.selected_test
            if selected is None:
                return
            edited = selected.model_copy(
                update={"code": code, "target_file": target_file or selected.target_file}
            )
            self._commit(modified_selected_test=edited)

    def increase_hint_level(self) -> None:
        with self._lock:
            self._commit(hint_level=self._state.hint_level + 1)

    def append_to_transcript(self, question: str, answer: str) -> None:
        with self._lock:
            entry = TranscriptEntry(question=question, answer=answer)
            self._commit(transcript=(*self._state.transcript, entry))

    def clear_transcript(self) -> None:
        self._commit(transcript=())

    def reset(self) -> None:
        """Return the whole session to its defaults."""
        self._replace(SessionState())

    def reset_for_new_tests(self) -> None:
        """Restart the cycle at RED while keeping the PICK-phase work."""
        self._commit(
            current_phase=Phase.RED,
            test_proposals=(),
            selected_test=None,
            modified_selected_test=None,
            test_results=None,
            refactoring_suggestions=(),
            is_editing_test=False,
            next_phase=None,
            hint_level=0,
            transcript=(),
        )

    # ------------------------------------------------------------ internals
    def _commit(self, **changes: object) -> None:
        with self._lock:
            self._replace(self._state.evolve(**changes))

    def _replace(self, new_state: SessionState) -> None:
        with self._lock:
            self._state = new_state
            self._persist(new_state)
        self._notify(new_state)

    def _persist(self, state: SessionState) -> None:
        if self._store is None:
            return
        try:
            self._store.save(state)
        except (OSError, sqlite3.Error, TypeError, ValueError) as error:
            LOGGER.warning("Failed to persist session state: %s", error)

    def _notify(self, state: SessionState) -> None:
        for observer in list(self._observers):
            try:
                observer(state)
            except Exception:  # noqa: BLE001
                LOGGER.exception("State observer %r failed", observer)


__all__ = ["PhaseStateMachine", "SnapshotStore", "StateObserver"]
