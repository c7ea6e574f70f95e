"""Workspace analysis feeding the generation pipeline's prompt context."""

from __future__ import annotations

import logging
import os
from collections import Counter
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from .tools.vcs import CommitInfo, GitError, GitRepository

LOGGER = logging.getLogger(__name__)

LANGUAGE_BY_EXTENSION = {
    ".js": "javascript",
    ".ts": "typescript",
    ".py": "python",
    ".java": "java",
    ".cs": "csharp",
}
DEFAULT_LANGUAGE = "javascript"
UNKNOWN_LANGUAGE = "unknown"


@dataclass(slots=True)
class ProjectStructure:
    """Coarse description of the workspace: dominant language and file lists."""

    language: str = UNKNOWN_LANGUAGE
    has_tests: bool = False
    test_files: List[str] = field(default_factory=list)
    source_files: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "language": self.language,
            "hasTests": self.has_tests,
            "testFiles": list(self.test_files),
            "sourceFiles": list(self.source_files),
        }


def is_test_file(relative_path: str) -> bool:
    """Return ``True`` when ``relative_path`` looks like a test module."""
    path = "/" + relative_path.replace("\\", "/")
    name = path.rsplit("/", 1)[-1]
    if ".test." in name or ".spec." in name:
        return True
    if "/__tests__/" in path or "/test/" in path or "/tests/" in path:
        return True
    return name.startswith("test_") and name.endswith(".py")


def detect_language(paths: List[str]) -> str:
    """Map the most common file extension onto a language name."""
    counts = Counter(Path(path).suffix.lower() for path in paths)
    if not counts:
        return DEFAULT_LANGUAGE
    dominant, _ = counts.most_common(1)[0]
    return LANGUAGE_BY_EXTENSION.get(dominant, DEFAULT_LANGUAGE)


class WorkspaceContextProvider:
    """Collect project structure, history and the latest diff for prompts."""

    _ALWAYS_EXCLUDE_DIRS = {
        ".git",
        ".hg",
        ".svn",
        "node_modules",
        "__pycache__",
        ".mypy_cache",
        ".ruff_cache",
        ".pytest_cache",
        ".idea",
        ".vscode",
        ".tox",
    }
    _TOP_LEVEL_EXCLUDE_DIRS = {
        "data",
        "logs",
        "build",
        "dist",
        ".venv",
        "venv",
        "env",
    }
    _EXCLUDE_FILE_SUFFIXES = {".pyc", ".pyo", ".log", ".tmp", ".cache"}
    _EXCLUDE_FILES = {".DS_Store"}

    def __init__(self, repo_root: Path | str, *, git: Optional[GitRepository] = None) -> None:
        self._repo_root = Path(repo_root).resolve()
        self._git = git
        self._git_checked = git is not None

    @property
    def repo_root(self) -> Path:
        return self._repo_root

    @property
    def git(self) -> Optional[GitRepository]:
        if not self._git_checked:
            self._git_checked = True
            try:
                self._git = GitRepository.discover(self._repo_root)
            except GitError:
                LOGGER.info("No git repository found at %s", self._repo_root)
                self._git = None
        return self._git

    # ------------------------------------------------------------ structure
    def analyze(self) -> ProjectStructure:
        try:
            files = self._repo_file_list()
        except OSError as error:
            LOGGER.warning("Workspace analysis failed: %s", error)
            return ProjectStructure()
        test_files = [path for path in files if is_test_file(path)]
        tests = set(test_files)
        source_files = [path for path in files if path not in tests]
        return ProjectStructure(
            language=detect_language(files),
            has_tests=bool(test_files),
            test_files=test_files,
            source_files=source_files,
        )

    def project_structure(self) -> Dict[str, Any]:
        return self.analyze().to_dict()

    def _repo_file_list(self) -> List[str]:
        root = self._repo_root
        if not root.is_dir():
            raise OSError(f"Workspace root is not a directory: {root}")
        files: List[str] = []
        for current_root, dirs, filenames in os.walk(root):
            rel_dir = Path(current_root).relative_to(root)
            filtered_dirs = []
            for d in sorted(dirs):
                if d in self._ALWAYS_EXCLUDE_DIRS:
                    continue
                if rel_dir == Path(".") and d in self._TOP_LEVEL_EXCLUDE_DIRS:
                    continue
                if d.startswith("."):
                    continue
                filtered_dirs.append(d)
            dirs[:] = filtered_dirs
            for filename in sorted(filenames):
                if filename in self._EXCLUDE_FILES or filename.startswith("."):
                    continue
                if Path(filename).suffix in self._EXCLUDE_FILE_SUFFIXES:
                    continue
                relative_path = Path(filename) if rel_dir == Path(".") else rel_dir / filename
                files.append(relative_path.as_posix())
        return files

    # -------------------------------------------------------------- history
    def commit_history(self, limit: int = 10) -> List[CommitInfo]:
        repo = self.git
        if repo is None:
            return []
        try:
            return repo.recent_commits(limit)
        except GitError as error:
            LOGGER.warning("Unable to read commit history: %s", error)
            return []

    def implemented_code_diff(self) -> str:
        repo = self.git
        if repo is None:
            return ""
        try:
            return repo.latest_commit_diff()
        except GitError as error:
            LOGGER.warning("Unable to read latest commit diff: %s", error)
            return ""


__all__ = [
    "DEFAULT_LANGUAGE",
    "LANGUAGE_BY_EXTENSION",
    "ProjectStructure",
    "UNKNOWN_LANGUAGE",
    "WorkspaceContextProvider",
    "detect_language",
    "is_test_file",
]
