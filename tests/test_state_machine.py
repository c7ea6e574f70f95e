from __future__ import annotations

import sqlite3
from typing import Optional

import pytest

from tdd_mentor.memory.schema import (
    RefactoringSuggestion,
    SessionState,
    Story,
    TestProposal,
    TestResult,
)
from tdd_mentor.memory.store import SessionStore
from tdd_mentor.phases import InteractionMode, Phase
from tdd_mentor.state_machine import PhaseStateMachine


def _stories() -> list[Story]:
    return [
        Story(id="s1", title="Register", description="As a user I want to register"),
        Story(id="s2", title="Login", description="As a user I want to log in"),
    ]


def _proposals() -> list[TestProposal]:
    return [
        TestProposal(id="t1", title="Registers", description="d", code="test_a()", target_file="test_a.py"),
        TestProposal(id="t2", title="Rejects", description="d", code="test_b()"),
    ]


class _FailingStore:
    def __init__(self) -> None:
        self.saves = 0

    def save(self, state: SessionState) -> None:
        self.saves += 1
        raise sqlite3.OperationalError("disk I/O error")

    def load(self) -> Optional[SessionState]:
        raise OSError("unreadable")


@pytest.fixture()
def machine() -> PhaseStateMachine:
    return PhaseStateMachine()


def test_initial_state_defaults(machine: PhaseStateMachine) -> None:
    state = machine.state
    assert state.current_phase is Phase.PICK
    assert state.current_mode is InteractionMode.ADVISORY
    assert state.user_stories == ()
    assert state.hint_level == 0
    assert state.transcript == ()


@pytest.mark.parametrize("phase", list(Phase))
def test_set_phase_derives_mode(machine: PhaseStateMachine, phase: Phase) -> None:
    machine.set_phase(phase)
    assert machine.phase is phase
    assert (machine.mode is InteractionMode.DIRECTIVE) == (phase is Phase.RED)


def test_select_unknown_story_is_silent_noop(machine: PhaseStateMachine) -> None:
    machine.set_user_stories(_stories())
    before = machine.state
    notifications: list[SessionState] = []
    machine.subscribe(notifications.append)

    assert machine.select_user_story("missing") is False
    assert machine.state is before
    assert notifications == []


def test_select_unknown_test_is_silent_noop(machine: PhaseStateMachine) -> None:
    machine.set_test_proposals(_proposals())
    before = machine.state
    notifications: list[SessionState] = []
    machine.subscribe(notifications.append)

    assert machine.select_test_proposal("missing") is False
    assert machine.state is before
    assert notifications == []


def test_select_test_resets_hint_level(machine: PhaseStateMachine) -> None:
    machine.set_test_proposals(_proposals())
    machine.increase_hint_level()
    machine.increase_hint_level()

    assert machine.select_test_proposal("t2") is True
    assert machine.state.selected_test is not None
    assert machine.state.selected_test.id == "t2"
    assert machine.state.hint_level == 0


def test_reset_is_idempotent(machine: PhaseStateMachine) -> None:
    machine.set_user_stories(_stories())
    machine.select_user_story("s1")
    machine.set_phase(Phase.GREEN)
    machine.append_to_transcript("why?", "think")

    machine.reset()
    once = machine.state
    machine.reset()

    assert machine.state == once
    assert once == SessionState()
    assert once.current_phase is Phase.PICK
    assert once.selected_user_story is None


def test_reset_for_new_tests_preserves_pick_work(machine: PhaseStateMachine) -> None:
    machine.set_user_stories(_stories())
    machine.select_user_story("s2")
    machine.set_test_proposals(_proposals())
    machine.select_test_proposal("t1")
    machine.update_modified_selected_test("edited()")
    machine.set_test_results(True, "ok")
    machine.set_refactoring_suggestions(
        [RefactoringSuggestion(id="r1", title="Extract", description="Extract a helper")]
    )
    machine.increase_hint_level()
    machine.append_to_transcript("q", "a")
    machine.set_phase(Phase.REFACTORING)
    stories_before = machine.state.user_stories
    selected_before = machine.state.selected_user_story

    machine.reset_for_new_tests()
    state = machine.state

    assert state.user_stories == stories_before
    assert state.selected_user_story == selected_before
    assert state.current_phase is Phase.RED
    assert state.test_proposals == ()
    assert state.selected_test is None
    assert state.modified_selected_test is None
    assert state.test_results is None
    assert state.refactoring_suggestions == ()
    assert state.hint_level == 0
    assert state.transcript == ()


def test_can_enter_preconditions(machine: PhaseStateMachine) -> None:
    assert machine.can_enter(Phase.PICK)
    assert not machine.can_enter(Phase.RED)
    assert not machine.can_enter(Phase.GREEN)
    assert not machine.can_enter(Phase.REFACTORING)

    machine.set_user_stories(_stories())
    machine.select_user_story("s1")
    assert machine.can_enter(Phase.RED)

    machine.set_test_proposals(_proposals())
    machine.select_test_proposal("t1")
    assert machine.can_enter(Phase.GREEN)

    machine.set_test_results(False, "1 failed")
    assert not machine.can_enter(Phase.REFACTORING)
    machine.set_test_results(True, "1 passed")
    assert machine.can_enter(Phase.REFACTORING)


def test_can_enter_accepts_phase_names(machine: PhaseStateMachine) -> None:
    assert machine.can_enter("pick")
    assert not machine.can_enter("red")
    assert not machine.can_enter(" Green ")
    assert not machine.can_enter("REFACTORING")

    machine.set_user_stories(_stories())
    machine.select_user_story("s1")
    assert machine.can_enter("Red")

    with pytest.raises(KeyError):
        machine.can_enter("blue")


def test_update_modified_selected_test(machine: PhaseStateMachine) -> None:
    machine.update_modified_selected_test("ignored()")
    assert machine.state.modified_selected_test is None

    machine.set_test_proposals(_proposals())
    machine.select_test_proposal("t1")
    machine.update_modified_selected_test("edited()")
    edited = machine.state.modified_selected_test
    assert edited is not None
    assert edited.code == "edited()"
    assert edited.target_file == "test_a.py"

    machine.update_modified_selected_test("again()", "test_other.py")
    edited = machine.state.modified_selected_test
    assert edited is not None
    assert edited.target_file == "test_other.py"
    assert machine.state.selected_test is not None
    assert machine.state.selected_test.code == "test_a()"


def test_every_mutation_notifies_once_with_snapshot(machine: PhaseStateMachine) -> None:
    seen: list[SessionState] = []
    unsubscribe = machine.subscribe(seen.append)

    machine.set_phase(Phase.RED)
    machine.set_test_editing_mode(True)
    machine.set_next_phase(Phase.RED)

    assert len(seen) == 3
    assert seen[0].current_phase is Phase.RED
    assert seen[-1] is machine.state
    assert seen[-1].is_editing_test is True
    assert seen[-1].next_phase is Phase.RED

    unsubscribe()
    machine.set_phase(Phase.PICK)
    assert len(seen) == 3


def test_failing_observer_does_not_block_others(machine: PhaseStateMachine) -> None:
    seen: list[Phase] = []

    def broken(_: SessionState) -> None:
        raise RuntimeError("observer bug")

    machine.subscribe(broken)
    machine.subscribe(lambda state: seen.append(state.current_phase))

    machine.set_phase(Phase.GREEN)
    assert seen == [Phase.GREEN]


def test_persistence_failure_does_not_raise() -> None:
    store = _FailingStore()
    machine = PhaseStateMachine(store)
    seen: list[SessionState] = []
    machine.subscribe(seen.append)

    machine.set_phase(Phase.RED)

    assert store.saves == 1
    assert machine.phase is Phase.RED
    assert len(seen) == 1


def test_transcript_append_and_clear(machine: PhaseStateMachine) -> None:
    machine.append_to_transcript("first?", "one")
    machine.append_to_transcript("second?", "two")
    assert [entry.question for entry in machine.state.transcript] == ["first?", "second?"]

    machine.clear_transcript()
    assert machine.state.transcript == ()


def test_state_restored_from_store(tmp_path) -> None:
    db_path = tmp_path / "session.sqlite"
    with SessionStore(db_path) as store:
        first = PhaseStateMachine(store)
        first.set_user_stories(_stories())
        first.select_user_story("s1")
        first.set_phase(Phase.RED)
        first.set_test_results(True, "done")

    with SessionStore(db_path) as store:
        restored = PhaseStateMachine(store)
        assert restored.phase is Phase.RED
        assert restored.mode is InteractionMode.DIRECTIVE
        assert restored.state.selected_user_story == _stories()[0]
        assert restored.state.test_results == TestResult(success=True, message="done")
