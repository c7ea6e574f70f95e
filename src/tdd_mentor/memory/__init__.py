"""Session records and their persistence."""

from .schema import (
    RefactoringSuggestion,
    SessionState,
    Story,
    TestProposal,
    TestResult,
    TranscriptEntry,
)
from .store import SESSION_SCHEMA_VERSION, SessionStore

__all__ = [
    "RefactoringSuggestion",
    "SESSION_SCHEMA_VERSION",
    "SessionState",
    "SessionStore",
    "Story",
    "TestProposal",
    "TestResult",
    "TranscriptEntry",
]
