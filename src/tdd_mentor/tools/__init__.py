"""Workspace tooling used by the TDD workflow."""

from .exchange_logs import write_exchange_log
from .test_inserter import WorkspaceTestInserter, bare_filename
from .test_runner import CommandTestRunner, TestRunResult
from .vcs import CommitInfo, GitError, GitRepository

__all__ = [
    "CommandTestRunner",
    "CommitInfo",
    "GitError",
    "GitRepository",
    "TestRunResult",
    "WorkspaceTestInserter",
    "bare_filename",
    "write_exchange_log",
]
