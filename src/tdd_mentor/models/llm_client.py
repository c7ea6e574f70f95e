"""Oracle contract, typed request options and tolerant response decoding."""

from __future__ import annotations

import ast
import asyncio
import json
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.type_adapter import TypeAdapter

__all__ = [
    "ChatEnvelope",
    "GenerationOracle",
    "OracleClient",
    "OracleError",
    "OracleOptions",
    "OracleResponse",
    "OracleResponseFormatError",
    "OracleRetryError",
    "OracleTransportError",
    "PlainText",
    "UnrecognisedResponse",
    "WrappedContent",
    "decode_json_payload",
    "parse_oracle_response",
    "response_text",
    "structured_payload",
]


class OracleError(RuntimeError):
    """Base error raised for oracle failures."""


class OracleTransportError(OracleError):
    """Raised when the transport, authentication or a timeout fails the call."""


class OracleResponseFormatError(OracleError):
    """Raised when the oracle payload cannot be decoded into JSON."""


class OracleRetryError(OracleTransportError):
    """Raised after exhausting transport retries."""


@dataclass(slots=True)
class OracleOptions:
    """Recognised generation parameters for a single oracle call."""

    model: Optional[str] = None
    max_tokens: Optional[int] = None
    temperature: Optional[float] = None
    system_prompt: Optional[str] = None
    context: Dict[str, Any] = field(default_factory=dict)
    json_mode: bool = False

    def __post_init__(self) -> None:
        if self.max_tokens is not None:
            if self.max_tokens <= 0:
                raise ValueError("max_tokens must be a positive integer")
            self.max_tokens = int(self.max_tokens)
        if self.temperature is not None:
            self.temperature = min(max(float(self.temperature), 0.0), 1.0)

    def with_context(self, context: Dict[str, Any], **changes: Any) -> "OracleOptions":
        """Return a copy carrying ``context`` and any other field overrides."""
        values = {
            "model": self.model,
            "max_tokens": self.max_tokens,
            "temperature": self.temperature,
            "system_prompt": self.system_prompt,
            "context": dict(context),
            "json_mode": self.json_mode,
        }
        values.update(changes)
        return OracleOptions(**values)


class GenerationOracle(Protocol):
    """External text-generation service.

    ``send`` raises on transport or authentication failure and returns the raw
    response otherwise, whatever its shape.
    """

    async def send(self, prompt: str, options: OracleOptions) -> Any: ...


# --------------------------------------------------------------- responses
@dataclass(frozen=True, slots=True)
class PlainText:
    text: str


@dataclass(frozen=True, slots=True)
class WrappedContent:
    """``{"content": "..."}`` envelope."""

    text: str


@dataclass(frozen=True, slots=True)
class ChatEnvelope:
    """OpenAI-style ``choices[0].message.content`` envelope."""

    text: str


@dataclass(frozen=True, slots=True)
class UnrecognisedResponse:
    raw: Any
    text: str = ""


OracleResponse = Union[PlainText, WrappedContent, ChatEnvelope, UnrecognisedResponse]


class _Envelope(BaseModel):
    model_config = ConfigDict(extra="ignore")


class _WrappedModel(_Envelope):
    content: str


class _ChatMessage(_Envelope):
    content: str


class _ChatChoice(_Envelope):
    message: _ChatMessage


class _ChatModel(_Envelope):
    choices: List[_ChatChoice] = Field(min_length=1)


_WRAPPED_ADAPTER = TypeAdapter(_WrappedModel)
_CHAT_ADAPTER = TypeAdapter(_ChatModel)


def parse_oracle_response(raw: Any) -> OracleResponse:
    """Classify ``raw`` into one of the known response shapes."""
    if isinstance(raw, str):
        return PlainText(raw)
    if isinstance(raw, dict):
        try:
            wrapped = _WRAPPED_ADAPTER.validate_python(raw)
        except ValidationError:
            pass
        else:
            return WrappedContent(wrapped.content)
        try:
            chat = _CHAT_ADAPTER.validate_python(raw)
        except ValidationError:
            pass
        else:
            return ChatEnvelope(chat.choices[0].message.content)
    return UnrecognisedResponse(raw)


def response_text(raw: Any) -> str:
    """Return the free-text answer carried by ``raw`` or an empty string."""
    return parse_oracle_response(raw).text


def structured_payload(raw: Any) -> Any:
    """Return the JSON document carried by ``raw``.

    Already-decoded mappings that do not look like a text envelope are returned
    as-is; text envelopes are unwrapped and decoded.
    """
    if isinstance(raw, list):
        return raw
    parsed = parse_oracle_response(raw)
    if isinstance(parsed, UnrecognisedResponse):
        if isinstance(raw, dict):
            return raw
        raise OracleResponseFormatError(f"Unsupported oracle response type: {type(raw).__name__}")
    return decode_json_payload(parsed.text)


# ------------------------------------------------------------ oracle base
class OracleClient:
    """Base class for oracles reached through a blocking transport call.

    Transport failures are retried up to ``max_attempts`` times before an
    :class:`OracleRetryError` is raised.
    """

    def __init__(
        self,
        model: str,
        *,
        max_attempts: int = 2,
        retry_delay: float = 0.5,
        max_tokens: int = 2000,
        temperature: float = 0.7,
    ) -> None:
        self._model = model
        self._max_attempts = max(1, max_attempts)
        self._retry_delay = retry_delay
        self._max_tokens = max_tokens
        self._temperature = temperature

    @property
    def model(self) -> str:
        return self._model

    async def send(self, prompt: str, options: OracleOptions) -> Any:
        payload = self.build_payload(prompt, options)
        last_error: Optional[Exception] = None
        for attempt in range(1, self._max_attempts + 1):
            try:
                return await asyncio.to_thread(self._raw_invoke, payload)
            except OracleTransportError as error:
                last_error = error
                if attempt >= self._max_attempts:
                    break
                await asyncio.sleep(self._retry_delay)
        raise OracleRetryError(
            f"Oracle call failed after {self._max_attempts} attempt(s) for model "
            f"{options.model or self._model}"
        ) from last_error

    def build_payload(self, prompt: str, options: OracleOptions) -> Dict[str, Any]:
        """Render a Chat Completions request body."""
        messages: list[Dict[str, str]] = []
        if options.system_prompt:
            messages.append({"role": "system", "content": options.system_prompt})
        user_content = prompt
        if options.context:
            rendered = json.dumps(options.context, indent=2, ensure_ascii=False, default=str)
            user_content = f"{prompt}\n\n## Context\n{rendered}"
        messages.append({"role": "user", "content": user_content})

        payload: Dict[str, Any] = {
            "model": options.model or self._model,
            "messages": messages,
            "max_tokens": options.max_tokens or self._max_tokens,
            "temperature": (
                options.temperature if options.temperature is not None else self._temperature
            ),
        }
        if options.json_mode:
            payload["response_format"] = {"type": "json_object"}
        return payload

    def _raw_invoke(self, payload: Dict[str, Any]) -> Any:
        """Perform the transport call. Subclasses must implement."""
        raise NotImplementedError("Subclasses must implement _raw_invoke().")


# ----------------------------------------------------------- JSON decoding
def decode_json_payload(raw_response: str) -> Any:
    """Parse JSON emitted by a model, salvaging fenced or noisy payloads."""
    text = raw_response.strip()
    if not text:
        raise OracleResponseFormatError("Oracle returned an empty response.")

    text = _normalise_json_string(text)
    candidates = [text]
    repaired = _repair_json_payload(text)
    if repaired and repaired not in candidates:
        candidates.append(_normalise_json_string(repaired))

    for candidate in candidates:
        try:
            return json.loads(candidate)
        except json.JSONDecodeError:
            pythonic = _coerce_python_literal(candidate)
            if pythonic is not None:
                return pythonic

    raise OracleResponseFormatError(f"Oracle returned invalid JSON: {text[:200]}")


def _strip_code_fence(payload: str) -> str:
    """Remove Markdown-style code fences that wrap JSON payloads."""
    if not payload.startswith("```"):
        return payload
    header = re.match(r"```(?:json)?", payload[:10], re.IGNORECASE)
    if not header:
        return payload
    fence_end = payload.find("```", len(header.group(0)))
    if fence_end == -1:
        return payload
    content_start = payload.find("\n", len(header.group(0)))
    if content_start == -1:
        return payload
    return payload[content_start + 1 : fence_end].strip()


_TYPOGRAPHIC_QUOTES = str.maketrans(
    {
        0x201C: '"',
        0x201D: '"',
        0x2018: "'",
        0x2019: "'",
        0x00A0: " ",
        0xFEFF: "",
    }
)


def _normalise_json_string(payload: str) -> str:
    return payload.translate(_TYPOGRAPHIC_QUOTES)


def _strip_trailing_commas(payload: str) -> str:
    return re.sub(r",(\s*[}\]])", r"\1", payload)


def _repair_json_payload(raw: str) -> str | None:
    """Extract the first balanced JSON object or array from noisy output."""
    stripped = _strip_code_fence(raw.strip())
    if not stripped:
        return None
    try:
        json.loads(stripped)
    except json.JSONDecodeError:
        pass
    else:
        return stripped

    opening_idx = None
    expected: list[str] = []
    for index, char in enumerate(stripped):
        if char in "{[":
            if opening_idx is None:
                opening_idx = index
            expected.append("}" if char == "{" else "]")
        elif expected and char == expected[-1]:
            expected.pop()
            if not expected and opening_idx is not None:
                return _strip_trailing_commas(stripped[opening_idx : index + 1].strip())
    return None


def _coerce_python_literal(candidate: str) -> Any | None:
    """Fall back to Python literal parsing when JSON decoding fails."""
    try:
        literal = ast.literal_eval(candidate)
    except (SyntaxError, ValueError):
        return None
    return _normalise_literal(literal)


def _normalise_literal(value: Any) -> Any:
    if isinstance(value, dict):
        return {str(key): _normalise_literal(sub) for key, sub in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [_normalise_literal(item) for item in value]
    if isinstance(value, (str, int, float, bool)) or value is None:
        return value
    return str(value)

