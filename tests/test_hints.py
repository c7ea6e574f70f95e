from __future__ import annotations

import pytest
from conftest import ScriptedOracle

from tdd_mentor.hints import HintEscalationProtocol, build_hint_prompt, resolve_hint_level
from tdd_mentor.memory.schema import TranscriptEntry
from tdd_mentor.models.llm_client import OracleRetryError
from tdd_mentor.prompts import HINT_LADDER, HINT_SYSTEM_PROMPT


@pytest.mark.parametrize("level", [None, 0, -1, 4, 99])
def test_off_ladder_levels_match_level_one(level) -> None:
    assert resolve_hint_level(level) == 1
    assert build_hint_prompt("Why does it fail?", level=level) == build_hint_prompt("Why does it fail?", level=1)


def test_ladder_levels_produce_distinct_prompts() -> None:
    prompts = {level: build_hint_prompt("q", level=level) for level in (1, 2, 3)}
    assert len(set(prompts.values())) == 3
    for level, prompt in prompts.items():
        assert HINT_LADDER[level] in prompt


def test_prompt_includes_transcript_and_context() -> None:
    transcript = [TranscriptEntry(question="Where do I start?", answer="What does the test expect?")]
    prompt = build_hint_prompt(
        "And now?",
        transcript,
        2,
        {"selectedTest": {"title": "adds numbers"}},
    )
    assert "## Previous Exchanges" in prompt
    assert "Q: Where do I start?" in prompt
    assert "A: What does the test expect?" in prompt
    assert '"adds numbers"' in prompt
    assert prompt.rstrip().endswith("And now?")


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("Think about the return value.", "Think about the return value."),
        ({"content": "Wrapped hint"}, "Wrapped hint"),
        ({"choices": [{"message": {"content": "Chat hint"}}]}, "Chat hint"),
        ({"something": "else"}, ""),
        (12345, ""),
    ],
)
async def test_ask_normalises_response_shapes(raw, expected) -> None:
    oracle = ScriptedOracle(responses=[raw])
    protocol = HintEscalationProtocol(oracle)

    assert await protocol.ask("How?", level=1) == expected
    options = oracle.calls[0][1]
    assert options.system_prompt == HINT_SYSTEM_PROMPT
    assert options.json_mode is False


@pytest.mark.asyncio
async def test_ask_returns_none_on_oracle_failure(tmp_path) -> None:
    oracle = ScriptedOracle(responses=[OracleRetryError("offline")])
    protocol = HintEscalationProtocol(oracle, logs_root=tmp_path)

    assert await protocol.ask("How?", level=2) is None
    logs = list((tmp_path / "exchanges").glob("exchange__hint__level-2__*.json"))
    assert len(logs) == 1
