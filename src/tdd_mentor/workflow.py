"""Caller-side choreography of the TDD cycle.

The state machine only stores state and the pipeline only produces
candidates. This module wires them together: it checks transition
preconditions, triggers generation when a phase needs fresh content and
applies results only after each oracle call has completed, so a cancelled
call leaves the session at its last committed state.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Optional, Protocol, Sequence

from .candidates import CandidateGenerationPipeline, ContentType
from .hints import HintEscalationProtocol
from .memory.schema import RefactoringSuggestion, SessionState, Story, TestProposal
from .phases import Phase, parse_phase
from .state_machine import PhaseStateMachine
from .tools.vcs import GitError, exclude_paths, parse_status_paths

LOGGER = logging.getLogger(__name__)

DEFAULT_TARGET_FILE = "test_tdd_mentor.py"

Warn = Callable[[str], None]


class TestOutcome(Protocol):
    __test__ = False

    success: bool
    output: str


class TestRunner(Protocol):
    __test__ = False

    def run(self) -> TestOutcome: ...


class FileInserter(Protocol):
    def insert(self, code: str, target_file: Optional[str]) -> bool: ...


class VersionControl(Protocol):
    def modified_files(self) -> str: ...

    def commit(self, files: Sequence[str], message: str) -> Any: ...


class TddWorkflow:
    """Drive the PICK, RED, GREEN and REFACTORING phases for one workspace."""

    def __init__(
        self,
        machine: PhaseStateMachine,
        pipeline: CandidateGenerationPipeline,
        hints: HintEscalationProtocol,
        *,
        test_runner: TestRunner | None = None,
        inserter: FileInserter | None = None,
        vcs: VersionControl | None = None,
        default_target_file: str = DEFAULT_TARGET_FILE,
        excluded_paths: Sequence[str] = (),
        warn: Warn | None = None,
    ) -> None:
        self.machine = machine
        self.pipeline = pipeline
        self.hints = hints
        self.test_runner = test_runner
        self.inserter = inserter
        self.vcs = vcs
        self.default_target_file = default_target_file
        self.excluded_paths = tuple(excluded_paths)
        self._warn = warn

    @property
    def state(self) -> SessionState:
        return self.machine.state

    # ---------------------------------------------------------------- PICK
    async def ensure_user_stories(self) -> bool:
        """Generate stories when the session sits in PICK with none loaded."""
        state = self.machine.state
        if state.current_phase is not Phase.PICK or state.user_stories:
            return False
        await self.refresh_user_stories()
        return True

    async def refresh_user_stories(self) -> list[Story]:
        stories = await self.pipeline.generate(ContentType.USER_STORIES)
        typed = [item for item in stories if isinstance(item, Story)]
        self.machine.set_user_stories(typed)
        return typed

    async def pick_story(self, story_id: str) -> bool:
        """Select a story, restart the RED phase and propose tests for it."""
        if not self.machine.select_user_story(story_id):
            self._emit_warning(f"Unknown user story: {story_id}")
            return False
        self.machine.reset_for_new_tests()
        await self.refresh_test_proposals()
        return True

    # ----------------------------------------------------------------- RED
    async def refresh_test_proposals(self) -> list[TestProposal]:
        story = self.machine.state.selected_user_story
        if story is None:
            self._emit_warning("Select a user story before generating tests.")
            return []
        extra = {"userStory": story.model_dump(mode="json", by_alias=True)}
        proposals = await self.pipeline.generate(ContentType.TEST_PROPOSALS, extra)
        typed = [item for item in proposals if isinstance(item, TestProposal)]
        self.machine.set_test_proposals(typed)
        return typed

    def select_test(self, test_id: str) -> bool:
        if not self.machine.select_test_proposal(test_id):
            self._emit_warning(f"Unknown test proposal: {test_id}")
            return False
        self.machine.clear_transcript()
        self.machine.set_test_editing_mode(True)
        return True

    def edit_test(self, code: str, target_file: Optional[str] = None) -> bool:
        if self.machine.state.selected_test is None:
            self._emit_warning("Select a test proposal before editing it.")
            return False
        self.machine.update_modified_selected_test(code, target_file)
        return True

    def confirm_test(self) -> bool:
        """Insert the (possibly edited) selected test and move to GREEN."""
        state = self.machine.state
        test = state.modified_selected_test or state.selected_test
        if test is None:
            self._emit_warning("Select a test proposal before confirming it.")
            return False
        if self.inserter is None:
            self._emit_warning("No file inserter configured; the test was not written.")
            return False
        target = test.target_file or self.default_target_file
        if not self.inserter.insert(test.code, target):
            self._emit_warning(f"Could not insert the test into {target}.")
            return False
        self.machine.set_test_editing_mode(False)
        return self.enter_phase(Phase.GREEN)

    # --------------------------------------------------------------- GREEN
    async def ask(self, question: str) -> Optional[str]:
        """Ask for a hint one level more directive than the previous one."""
        state = self.machine.state
        context: dict[str, Any] = {}
        if state.selected_user_story is not None:
            context["userStory"] = state.selected_user_story
        test = state.modified_selected_test or state.selected_test
        if test is not None:
            context["selectedTest"] = test
        answer = await self.hints.ask(
            question,
            state.transcript,
            state.hint_level + 1,
            context,
        )
        if answer is None:
            self._emit_warning("No answer available right now; try again.")
            return None
        self.machine.append_to_transcript(question, answer)
        self.machine.increase_hint_level()
        return answer

    async def verify(self) -> bool:
        """Run the tests; on success enter REFACTORING with fresh suggestions."""
        if self.test_runner is None:
            self._emit_warning("No test runner configured.")
            return False
        result = self.test_runner.run()
        self.machine.set_test_results(bool(result.success), result.output)
        if not result.success:
            self._emit_warning("Tests are failing; keep working in GREEN.")
            return False
        if not self.enter_phase(Phase.REFACTORING):
            return False
        await self.refresh_refactoring_suggestions()
        return True

    # --------------------------------------------------------- REFACTORING
    async def refresh_refactoring_suggestions(self) -> list[RefactoringSuggestion]:
        state = self.machine.state
        extra: dict[str, Any] = {}
        if state.selected_user_story is not None:
            extra["userStory"] = state.selected_user_story
        suggestions = await self.pipeline.generate(ContentType.REFACTORING_SUGGESTIONS, extra)
        typed = [item for item in suggestions if isinstance(item, RefactoringSuggestion)]
        self.machine.set_refactoring_suggestions(typed)
        return typed

    def commit_changes(self, message: Optional[str] = None) -> Optional[str]:
        """Commit modified files outside ``excluded_paths``.

        Returns ``None`` when there is nothing to commit.
        """
        if self.vcs is None:
            return None
        try:
            files = exclude_paths(parse_status_paths(self.vcs.modified_files()), self.excluded_paths)
            if not files:
                LOGGER.info("No modified files; skipping commit")
                return None
            sha = self.vcs.commit(files, message or self._default_commit_message())
        except GitError as error:
            LOGGER.warning("Commit failed: %s", error)
            self._emit_warning(f"Commit failed: {error}")
            return None
        return str(sha) if sha else None

    async def complete_cycle(self, message: Optional[str] = None) -> Optional[str]:
        """Commit the cycle's work and route to the next phase."""
        sha = self.commit_changes(message)
        if self.machine.state.next_phase is Phase.RED:
            await self.new_tests()
        else:
            self.machine.reset()
            await self.refresh_user_stories()
        return sha

    async def new_tests(self) -> list[TestProposal]:
        """Start a fresh RED phase for the currently selected story."""
        self.machine.reset_for_new_tests()
        return await self.refresh_test_proposals()

    # ----------------------------------------------------------- transitions
    def enter_phase(self, phase: Phase | str) -> bool:
        phase = parse_phase(phase)
        if not self.machine.can_enter(phase):
            self._emit_warning(f"Cannot enter {phase.name}: {_precondition(phase)}")
            return False
        self.machine.set_phase(phase)
        return True

    def set_next_phase(self, phase: Optional[Phase]) -> None:
        self.machine.set_next_phase(phase)

    # ------------------------------------------------------------- helpers
    def _default_commit_message(self) -> str:
        story = self.machine.state.selected_user_story
        if story is None:
            return "Complete TDD cycle"
        return f"Complete TDD cycle: {story.title}"

    def _emit_warning(self, message: str) -> None:
        LOGGER.warning("%s", message)
        if self._warn is not None:
            self._warn(message)


def _precondition(phase: Phase) -> str:
    if phase is Phase.RED:
        return "select a user story first."
    if phase is Phase.GREEN:
        return "select a test proposal first."
    if phase is Phase.REFACTORING:
        return "the last test run must pass."
    return "precondition not met."


__all__ = [
    "DEFAULT_TARGET_FILE",
    "FileInserter",
    "TddWorkflow",
    "TestOutcome",
    "TestRunner",
    "VersionControl",
]
