"""Leveled hint escalation used while the developer works in GREEN."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Mapping, Optional, Sequence

from .memory.schema import TranscriptEntry
from .models.llm_client import GenerationOracle, OracleOptions, response_text
from .prompts import DEFAULT_HINT_LEVEL, HINT_LADDER, HINT_SYSTEM_PROMPT, render_transcript
from .tools.exchange_logs import json_safe, write_exchange_log

LOGGER = logging.getLogger(__name__)


def resolve_hint_level(level: Optional[int]) -> int:
    """Clamp ``level`` onto the ladder; anything off the ladder is level 1."""
    if isinstance(level, int) and level in HINT_LADDER:
        return level
    return DEFAULT_HINT_LEVEL


def build_hint_prompt(
    question: str,
    transcript: Sequence[TranscriptEntry] = (),
    level: Optional[int] = None,
    context: Mapping[str, Any] | None = None,
) -> str:
    """Render the single prompt sent to the oracle for ``question``."""
    resolved = resolve_hint_level(level)
    sections = [
        f"## Guidance Level {resolved}\n{HINT_LADDER[resolved]}",
    ]
    if context:
        rendered = json.dumps(json_safe(dict(context)), indent=2, ensure_ascii=False)
        sections.append(f"## Current Work\n{rendered}")
    history = render_transcript(transcript)
    if history:
        sections.append(history)
    sections.append(f"## Question\n{question.strip()}")
    return "\n\n".join(sections)


class HintEscalationProtocol:
    """Stateless question answering whose directiveness follows a level ladder.

    The caller owns the level counter and the transcript: it appends the
    exchange and increments the level only when :meth:`ask` returns a value.
    """

    def __init__(
        self,
        oracle: GenerationOracle,
        *,
        options: OracleOptions | None = None,
        logs_root: Path | None = None,
    ) -> None:
        self._oracle = oracle
        self._options = options or OracleOptions()
        self._logs_root = logs_root

    async def ask(
        self,
        question: str,
        transcript: Sequence[TranscriptEntry] = (),
        level: Optional[int] = None,
        context: Mapping[str, Any] | None = None,
    ) -> Optional[str]:
        """Return the oracle's answer, ``""`` for unknown shapes, ``None`` on failure."""
        prompt = build_hint_prompt(question, transcript, level, context)
        options = self._options.with_context({}, system_prompt=HINT_SYSTEM_PROMPT, json_mode=False)
        try:
            raw = await self._oracle.send(prompt, options)
        except Exception as error:  # noqa: BLE001
            LOGGER.warning("Hint request failed: %s", error)
            write_exchange_log(
                self._logs_root, "hint", label=f"level-{resolve_hint_level(level)}",
                prompt=prompt, options=options, error=error,
            )
            return None
        answer = response_text(raw)
        write_exchange_log(
            self._logs_root, "hint", label=f"level-{resolve_hint_level(level)}",
            prompt=prompt, options=options, raw=raw, result=answer,
        )
        return answer


__all__ = ["HintEscalationProtocol", "build_hint_prompt", "resolve_hint_level"]
