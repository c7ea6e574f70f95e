"""Production oracle that speaks the OpenAI Chat Completions API."""

from __future__ import annotations

import json
import logging
import os
import urllib.error
import urllib.request
from typing import Any, Callable, Dict, Mapping, Optional

from .llm_client import OracleClient, OracleTransportError

__all__ = ["CHAT_COMPLETIONS_URL", "OpenAIChatOracle", "api_error_message", "timeout_from_env"]

LOGGER = logging.getLogger(__name__)

CHAT_COMPLETIONS_URL = "https://api.openai.com/v1/chat/completions"
TIMEOUT_ENV = "TDD_MENTOR_TIMEOUT"

Transport = Callable[[Dict[str, Any]], Any]


def timeout_from_env(default: float) -> float:
    """Return the positive ``TDD_MENTOR_TIMEOUT`` override, else ``default``."""
    raw = os.getenv(TIMEOUT_ENV, "").strip()
    if not raw:
        return default
    try:
        parsed = float(raw)
    except ValueError:
        LOGGER.warning("Ignoring non-numeric %s=%r", TIMEOUT_ENV, raw)
        return default
    return parsed if parsed > 0 else default


def api_error_message(body: Any) -> Optional[str]:
    """Extract ``error.message`` from a Chat Completions error object.

    The API reports failures as ``{"error": {"message", "type", "code"}}``;
    anything else yields ``None``.
    """
    if isinstance(body, (bytes, bytearray)):
        body = body.decode("utf-8", errors="replace")
    if isinstance(body, str):
        try:
            body = json.loads(body)
        except json.JSONDecodeError:
            return None
    if not isinstance(body, Mapping):
        return None
    error = body.get("error")
    if isinstance(error, str):
        return error
    if not isinstance(error, Mapping):
        return None
    message = str(error.get("message") or "unknown error")
    kind = error.get("code") or error.get("type")
    return f"{message} ({kind})" if kind else message


class OpenAIChatOracle(OracleClient):
    """Adapter around ``/v1/chat/completions``.

    The decoded completion envelope is returned as-is so callers can unwrap
    ``choices[0].message.content`` through the response union. Error objects
    delivered in a response body are raised as transport failures, which makes
    them retryable like HTTP errors.
    """

    def __init__(
        self,
        *,
        api_key: Optional[str] = None,
        base_url: str = CHAT_COMPLETIONS_URL,
        model: str = "gpt-4o-mini",
        organization: Optional[str] = None,
        transport: Optional[Transport] = None,
        timeout: float = 60.0,
        max_attempts: int = 2,
        retry_delay: float = 0.5,
        max_tokens: int = 2000,
        temperature: float = 0.7,
    ) -> None:
        super().__init__(
            model,
            max_attempts=max_attempts,
            retry_delay=retry_delay,
            max_tokens=max_tokens,
            temperature=temperature,
        )
        self._api_key = api_key or os.getenv("OPENAI_API_KEY")
        self._organization = organization or os.getenv("OPENAI_ORG_ID")
        self._base_url = base_url
        self._timeout = timeout_from_env(timeout)
        self._transport = transport or self._post_completion

        if transport is None and not self._api_key:
            raise ValueError("An API key is required when using the default transport.")

    @property
    def timeout(self) -> float:
        return self._timeout

    def _raw_invoke(self, payload: Dict[str, Any]) -> Any:
        try:
            raw_response = self._transport(payload)
        except OracleTransportError:
            raise
        except Exception as error:  # pragma: no cover - transport plug-ins vary
            raise OracleTransportError(f"Transport rejected the request: {error}") from error

        decoded = _decode_body(raw_response)
        message = api_error_message(decoded) if isinstance(decoded, Mapping) else None
        if message is not None:
            raise OracleTransportError(f"Chat Completions error: {message}")
        if isinstance(decoded, Mapping):
            self._log_completion(decoded)
        return decoded

    def _log_completion(self, envelope: Mapping[str, Any]) -> None:
        choices = envelope.get("choices")
        if not isinstance(choices, list) or not choices:
            LOGGER.debug("Completion without choices from %s", self._base_url)
            return
        first = choices[0] if isinstance(choices[0], Mapping) else {}
        if first.get("finish_reason") == "length":
            LOGGER.warning("Completion for %s was truncated at max_tokens", envelope.get("model") or self.model)
        usage = envelope.get("usage")
        if isinstance(usage, Mapping):
            LOGGER.debug(
                "Completion usage: prompt=%s completion=%s",
                usage.get("prompt_tokens"),
                usage.get("completion_tokens"),
            )

    def _headers(self) -> Dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self._api_key}",
        }
        if self._organization:
            headers["OpenAI-Organization"] = self._organization
        return headers

    def _post_completion(self, payload: Dict[str, Any]) -> bytes:
        request = urllib.request.Request(
            self._base_url,
            data=json.dumps(payload).encode("utf-8"),
            headers=self._headers(),
            method="POST",
        )
        try:
            with urllib.request.urlopen(request, timeout=self._timeout) as response:
                return response.read()
        except TimeoutError as error:  # pragma: no cover - network-dependent
            raise OracleTransportError(f"Chat Completions timed out after {self._timeout:g}s") from error
        except urllib.error.HTTPError as error:  # pragma: no cover - network-dependent
            detail = api_error_message(error.read()) or error.reason
            raise OracleTransportError(f"HTTP {error.code}: {detail}") from error
        except urllib.error.URLError as error:  # pragma: no cover - network-dependent
            raise OracleTransportError(f"Failed to reach {self._base_url}: {error.reason}") from error


def _decode_body(raw_response: Any) -> Any:
    if isinstance(raw_response, (bytes, bytearray)):
        raw_response = raw_response.decode("utf-8", errors="replace")
    if isinstance(raw_response, str):
        try:
            return json.loads(raw_response)
        except json.JSONDecodeError:
            return raw_response
    return raw_response
