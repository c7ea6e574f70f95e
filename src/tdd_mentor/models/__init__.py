"""Convenience exports for TDD Mentor oracle implementations."""

from .llm_client import (
    GenerationOracle,
    OracleClient,
    OracleError,
    OracleOptions,
    OracleResponseFormatError,
    OracleRetryError,
    OracleTransportError,
)
from .openai_chat import OpenAIChatOracle

__all__ = [
    "GenerationOracle",
    "OpenAIChatOracle",
    "OracleClient",
    "OracleError",
    "OracleOptions",
    "OracleResponseFormatError",
    "OracleRetryError",
    "OracleTransportError",
]
