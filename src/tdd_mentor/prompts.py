"""Prompt templates shared by the candidate pipeline and the hint protocol."""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Sequence

JSON_ITEMS_INSTRUCTION = (
    "Return only JSON. Emit a single JSON object of the form "
    '{"items": [...]} where every item has the fields {fields}. '
    "Do not include markdown fences, explanations, or trailing text."
)


@dataclass(frozen=True, slots=True)
class GenerationPrompts:
    """System, instruction and selection prompts for one content type."""

    system_prompt: str
    user_prompt: str
    selection_prompt: str
    item_fields: tuple[str, ...]

    def render_generation(self, count: int) -> str:
        instruction = JSON_ITEMS_INSTRUCTION.replace("{fields}", _field_list(self.item_fields))
        return f"{self.user_prompt.format(count=count)}\n\n{instruction}"

    def render_selection(self, candidates: Sequence[Any], keep: int) -> str:
        instruction = JSON_ITEMS_INSTRUCTION.replace("{fields}", _field_list(self.item_fields))
        batch = json.dumps({"items": list(candidates)}, indent=2, ensure_ascii=False)
        return (
            f"{self.selection_prompt.format(keep=keep)}\n\n"
            f"## Candidates\n{batch}\n\n"
            f"Return the chosen items unchanged. {instruction}"
        )


def _field_list(fields: Sequence[str]) -> str:
    return ", ".join(f'"{name}"' for name in fields)


USER_STORIES = GenerationPrompts(
    system_prompt=(
        "You are an expert in software requirements analysis. Your job is to study the "
        "project context and write realistic, implementable user stories."
    ),
    user_prompt=(
        "Analyse the project context and propose {count} user stories grounded in the "
        "implemented code and the commit history. Each story follows the form "
        '"As a [role] I want [capability] so that [benefit]" and has an id, a title '
        "and a short description."
    ),
    selection_prompt=(
        "From these user stories, choose the {keep} most relevant and useful for the "
        "project. Weigh feasibility, value to the user and dependencies on other features."
    ),
    item_fields=("id", "title", "description"),
)

TEST_PROPOSALS = GenerationPrompts(
    system_prompt=(
        "You are an expert in Test-Driven Development. Your job is to propose tests that "
        "drive the implementation of a user story. You may write test code."
    ),
    user_prompt=(
        "Propose {count} detailed tests for the selected user story. Each test has an id, "
        "a title, a description, the test code and a targetFile holding the bare file "
        "name (no directories) the test belongs in."
    ),
    selection_prompt=(
        "From these tests for the selected user story, choose the {keep} most relevant "
        "and useful. Weigh coverage, implementation complexity and edge cases."
    ),
    item_fields=("id", "title", "description", "code", "targetFile"),
)

REFACTORING_SUGGESTIONS = GenerationPrompts(
    system_prompt=(
        "You are an expert in refactoring and code smells. Your job is to review the "
        "existing code and suggest improvements to maintainability and performance. "
        "Describe each idea conceptually and never include code."
    ),
    user_prompt=(
        "Review the code and suggest {count} improvements. For each give an id, a title "
        "and a detailed description of the refactoring. Consider reducing complexity, "
        "removing code smells, improving readability and applying known patterns."
    ),
    selection_prompt=(
        "From these refactoring suggestions, choose the {keep} with the highest impact. "
        "Weigh the effect on existing code against the complexity of the change."
    ),
    item_fields=("id", "title", "description"),
)


# ------------------------------------------------------------------ hints
HINT_SYSTEM_PROMPT = (
    "You are a TDD mentor pairing with a developer who is making a failing test pass. "
    "You never write the implementation for them and never reveal a full solution."
)

HINT_LADDER: dict[int, str] = {
    1: (
        "Answer only with reflective questions that help the developer reason about the "
        "problem themselves. Do not give hints or concrete suggestions."
    ),
    2: (
        "Give targeted hints that point at the relevant area of the code or concept. "
        "Do not provide the solution."
    ),
    3: (
        "Give narrowly targeted hints about the specific step that is missing. You may "
        "name the construct to use, but never write the full solution."
    ),
}
DEFAULT_HINT_LEVEL = 1


def render_transcript(entries: Sequence[Any]) -> str:
    """Format previous question/answer pairs as a prompt section."""
    lines: list[str] = []
    for entry in entries:
        question = getattr(entry, "question", None)
        answer = getattr(entry, "answer", None)
        if isinstance(entry, dict):
            question = entry.get("question")
            answer = entry.get("answer")
        if not question:
            continue
        lines.append(f"Q: {str(question).strip()}")
        lines.append(f"A: {str(answer or '').strip()}")
    if not lines:
        return ""
    return "## Previous Exchanges\n" + "\n".join(lines)


__all__ = [
    "DEFAULT_HINT_LEVEL",
    "GenerationPrompts",
    "HINT_LADDER",
    "HINT_SYSTEM_PROMPT",
    "JSON_ITEMS_INSTRUCTION",
    "REFACTORING_SUGGESTIONS",
    "TEST_PROPOSALS",
    "USER_STORIES",
    "render_transcript",
]
