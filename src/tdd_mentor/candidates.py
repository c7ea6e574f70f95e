"""Two-stage candidate generation: broad batch first, oracle selection second."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Mapping, Protocol, Sequence

from pydantic.type_adapter import TypeAdapter

from . import prompts
from .memory.schema import Candidate, RefactoringSuggestion, Story, TestProposal
from .models.llm_client import (
    GenerationOracle,
    OracleOptions,
    OracleResponseFormatError,
    structured_payload,
)
from .tools.exchange_logs import json_safe, write_exchange_log
from .tools.test_inserter import bare_filename

LOGGER = logging.getLogger(__name__)

DEFAULT_BROAD_COUNT = 10
DEFAULT_SHORTLIST_SIZE = 3

Warn = Callable[[str], None]


class ContentType(str, Enum):
    """Kinds of content the pipeline can generate."""

    USER_STORIES = "user_stories"
    TEST_PROPOSALS = "test_proposals"
    REFACTORING_SUGGESTIONS = "refactoring_suggestions"


@dataclass(frozen=True, slots=True)
class ContentProfile:
    label: str
    prompts: prompts.GenerationPrompts
    item_model: type[Candidate]


CONTENT_PROFILES: dict[ContentType, ContentProfile] = {
    ContentType.USER_STORIES: ContentProfile("user stories", prompts.USER_STORIES, Story),
    ContentType.TEST_PROPOSALS: ContentProfile("test proposals", prompts.TEST_PROPOSALS, TestProposal),
    ContentType.REFACTORING_SUGGESTIONS: ContentProfile(
        "refactoring suggestions",
        prompts.REFACTORING_SUGGESTIONS,
        RefactoringSuggestion,
    ),
}


class ProjectContextProvider(Protocol):
    """Source of project facts used to enrich generation prompts."""

    def project_structure(self) -> Any: ...

    def commit_history(self, limit: int) -> Sequence[Any]: ...

    def implemented_code_diff(self) -> str: ...


class CandidateGenerationPipeline:
    """Produce a validated short-list of candidates for one content type.

    Failures never escape :meth:`generate`: a failed broad stage yields an empty
    list and a failed selection stage yields the head of the broad batch.
    """

    def __init__(
        self,
        oracle: GenerationOracle,
        *,
        context_provider: ProjectContextProvider | None = None,
        options: Mapping[ContentType, OracleOptions] | OracleOptions | None = None,
        broad_count: int = DEFAULT_BROAD_COUNT,
        shortlist_size: int = DEFAULT_SHORTLIST_SIZE,
        context_file_limit: int = 20,
        commit_limit: int = 10,
        warn: Warn | None = None,
        logs_root: Path | None = None,
    ) -> None:
        self._oracle = oracle
        self._context_provider = context_provider
        self._options = options
        self._broad_count = broad_count
        self._shortlist_size = shortlist_size
        self._context_file_limit = context_file_limit
        self._commit_limit = commit_limit
        self._warn = warn
        self._logs_root = logs_root

    async def generate(
        self,
        content_type: ContentType | str,
        extra_context: Mapping[str, Any] | None = None,
    ) -> list[Candidate]:
        """Run broad generation followed, when worthwhile, by selection."""
        kind = ContentType(content_type)
        profile = CONTENT_PROFILES[kind]
        context = self.build_context(kind, extra_context)
        options = self._options_for(kind).with_context(
            context,
            system_prompt=profile.prompts.system_prompt,
            json_mode=True,
        )

        batch = await self._broad_generation(kind, profile, options)
        if len(batch) <= self._shortlist_size:
            LOGGER.debug("Skipping selection for %s: %d candidate(s)", kind.value, len(batch))
            return batch
        return await self._selection(kind, profile, options, batch)

    # ------------------------------------------------------------ stages
    async def _broad_generation(
        self,
        kind: ContentType,
        profile: ContentProfile,
        options: OracleOptions,
    ) -> list[Candidate]:
        prompt = profile.prompts.render_generation(self._broad_count)
        raw: Any = None
        try:
            raw = await self._oracle.send(prompt, options)
            batch = self._validate_batch(profile, raw)
        except Exception as error:  # noqa: BLE001
            write_exchange_log(
                self._logs_root, "generation", label=kind.value,
                prompt=prompt, options=options, raw=raw, error=error,
            )
            LOGGER.warning("Generation of %s failed: %s", profile.label, error)
            self._emit_warning(f"Could not generate {profile.label}: {error}")
            return []
        write_exchange_log(
            self._logs_root, "generation", label=kind.value,
            prompt=prompt, options=options, raw=raw, result=batch,
        )
        return batch

    async def _selection(
        self,
        kind: ContentType,
        profile: ContentProfile,
        options: OracleOptions,
        batch: list[Candidate],
    ) -> list[Candidate]:
        fallback = batch[: self._shortlist_size]
        rendered = [item.model_dump(mode="json", by_alias=True) for item in batch]
        prompt = profile.prompts.render_selection(rendered, self._shortlist_size)
        raw: Any = None
        try:
            raw = await self._oracle.send(prompt, options)
            selected = self._validate_batch(profile, raw)
        except Exception as error:  # noqa: BLE001
            write_exchange_log(
                self._logs_root, "selection", label=kind.value,
                prompt=prompt, options=options, raw=raw, error=error,
            )
            LOGGER.warning("Selection of %s failed, keeping first %d: %s", profile.label, len(fallback), error)
            self._emit_warning(f"Could not shortlist {profile.label}; showing the first {len(fallback)}.")
            return fallback
        if not selected:
            LOGGER.warning("Selection of %s returned no items; keeping first %d", profile.label, len(fallback))
            return fallback
        shortlist = selected[: self._shortlist_size]
        write_exchange_log(
            self._logs_root, "selection", label=kind.value,
            prompt=prompt, options=options, raw=raw, result=shortlist,
        )
        return shortlist

    # ----------------------------------------------------------- helpers
    def _validate_batch(self, profile: ContentProfile, raw: Any) -> list[Candidate]:
        payload = structured_payload(raw)
        if not isinstance(payload, dict) or not isinstance(payload.get("items"), list):
            raise OracleResponseFormatError("Expected a JSON object with an 'items' list.")
        adapter = TypeAdapter(list[profile.item_model])
        items = adapter.validate_python(payload["items"])
        return self._post_process(items)

    @staticmethod
    def _post_process(items: Sequence[Candidate]) -> list[Candidate]:
        seen: set[str] = set()
        cleaned: list[Candidate] = []
        for item in items:
            if item.id in seen:
                LOGGER.debug("Dropping duplicate candidate id %s", item.id)
                continue
            seen.add(item.id)
            if isinstance(item, TestProposal):
                target = bare_filename(item.target_file)
                if target != item.target_file:
                    item = item.model_copy(update={"target_file": target})
            cleaned.append(item)
        return cleaned

    def build_context(
        self,
        kind: ContentType,
        extra_context: Mapping[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Assemble the context object sent with both oracle calls."""
        context: dict[str, Any] = {}
        provider = self._context_provider
        if provider is not None:
            try:
                structure = json_safe(provider.project_structure())
            except Exception as error:  # noqa: BLE001
                LOGGER.warning("Project structure unavailable: %s", error)
            else:
                if isinstance(structure, dict):
                    for key in ("testFiles", "sourceFiles"):
                        if isinstance(structure.get(key), list):
                            structure[key] = structure[key][: self._context_file_limit]
                context["projectStructure"] = structure
            try:
                context["recentCommits"] = json_safe(list(provider.commit_history(self._commit_limit)))
            except Exception as error:  # noqa: BLE001
                LOGGER.warning("Commit history unavailable: %s", error)
            if kind is ContentType.REFACTORING_SUGGESTIONS:
                try:
                    context["implementedCode"] = provider.implemented_code_diff()
                except Exception as error:  # noqa: BLE001
                    LOGGER.warning("Implemented code diff unavailable: %s", error)
        if extra_context:
            context.update(json_safe(dict(extra_context)))
        return context

    def _options_for(self, kind: ContentType) -> OracleOptions:
        if isinstance(self._options, OracleOptions):
            return self._options
        if self._options and kind in self._options:
            return self._options[kind]
        return OracleOptions()

    def _emit_warning(self, message: str) -> None:
        if self._warn is not None:
            self._warn(message)


__all__ = [
    "CONTENT_PROFILES",
    "CandidateGenerationPipeline",
    "ContentProfile",
    "ContentType",
    "DEFAULT_BROAD_COUNT",
    "DEFAULT_SHORTLIST_SIZE",
    "ProjectContextProvider",
    "bare_filename",
]
