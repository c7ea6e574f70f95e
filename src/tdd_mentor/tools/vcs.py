"""Minimal git helpers.

Just enough structure to read recent history for prompt context, list pending
changes and commit them when a TDD cycle completes.
"""

from __future__ import annotations

import subprocess
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Sequence


class GitError(RuntimeError):
    """Raised when a git command fails or the repository cannot be used."""


@dataclass(slots=True)
class CommitInfo:
    """Summary of one commit used to enrich generation prompts."""

    hash: str
    author: str
    date: datetime
    message: str
    files_changed: List[str] = field(default_factory=list)


_LOG_SEPARATOR = "\x1f"


def parse_status_paths(porcelain: str) -> List[str]:
    """Extract paths from `git status --porcelain` output."""
    paths: List[str] = []
    for line in porcelain.splitlines():
        if len(line) < 4:
            continue
        status = line[:2]
        raw_path = line[3:]
        if status[0] in {"R", "C"} and " -> " in raw_path:
            raw_path = raw_path.split(" -> ", 1)[1]
        paths.append(raw_path.strip().strip('"'))
    return paths


def exclude_paths(paths: Sequence[str], excluded: Sequence[str]) -> List[str]:
    """Drop entries of ``paths`` that equal or sit under an ``excluded`` path.

    Both sides are repository-relative POSIX paths.
    """
    prefixes = [item.strip("/") for item in excluded if item and item.strip("/")]
    kept: List[str] = []
    for path in paths:
        normalised = path.rstrip("/")
        if any(normalised == prefix or normalised.startswith(prefix + "/") for prefix in prefixes):
            continue
        kept.append(path)
    return kept


class GitRepository:
    """Lightweight wrapper around ``git`` commands."""

    def __init__(self, root: Path | str) -> None:
        self.root = Path(root).resolve()
        if not (self.root / ".git").exists():
            raise GitError(f"Not a git repository: {self.root}")

    @classmethod
    def discover(cls, start: Path | str | None = None) -> "GitRepository":
        """Locate the nearest git repository starting from ``start``."""

        path = Path(start or Path.cwd()).resolve()
        for candidate in (path, *path.parents):
            if (candidate / ".git").exists():
                return cls(candidate)
        raise GitError(f"Unable to locate a git repository from {path}")

    # ------------------------------------------------------------------ git IO
    def _run_git(self, args: Sequence[str], *, check: bool = True) -> subprocess.CompletedProcess[str]:
        command = ["git", *args]
        process = subprocess.run(
            command,
            cwd=self.root,
            capture_output=True,
            text=False,
            check=False,
        )
        stdout = process.stdout.decode("utf-8", errors="replace") if process.stdout else ""
        stderr = process.stderr.decode("utf-8", errors="replace") if process.stderr else ""
        result = subprocess.CompletedProcess(process.args, process.returncode, stdout, stderr)
        if check and result.returncode != 0:
            message = result.stderr.strip() or result.stdout.strip() or "unknown git error"
            raise GitError(f"git {' '.join(args)} failed: {message}")
        return result

    def _has_head(self) -> bool:
        return self._run_git(["rev-parse", "--verify", "HEAD"], check=False).returncode == 0

    # ------------------------------------------------------------- history
    def recent_commits(self, limit: int = 10) -> List[CommitInfo]:
        """Return up to ``limit`` commits, newest first."""

        if limit <= 0 or not self._has_head():
            return []
        fmt = _LOG_SEPARATOR.join(["%H", "%an", "%at", "%s"])
        result = self._run_git(["log", f"-{limit}", f"--pretty=format:{fmt}"])
        commits: List[CommitInfo] = []
        for line in result.stdout.splitlines():
            parts = line.split(_LOG_SEPARATOR)
            if len(parts) != 4:
                continue
            commit_hash, author, timestamp, subject = parts
            try:
                date = datetime.fromtimestamp(int(timestamp), tz=timezone.utc)
            except ValueError:
                date = datetime.fromtimestamp(0, tz=timezone.utc)
            commits.append(
                CommitInfo(
                    hash=commit_hash,
                    author=author,
                    date=date,
                    message=subject,
                    files_changed=self.files_in_commit(commit_hash),
                )
            )
        return commits

    def files_in_commit(self, commit_hash: str) -> List[str]:
        result = self._run_git(["show", "--pretty=", "--name-only", commit_hash])
        return [line for line in result.stdout.splitlines() if line.strip()]

    def latest_commit_diff(self) -> str:
        """Return the added and removed lines of the latest commit."""

        if not self._has_head():
            return ""
        result = self._run_git(["show", "--pretty=", "--unified=0", "HEAD"])
        lines: List[str] = []
        for line in result.stdout.splitlines():
            if line.startswith(("+++", "---")):
                continue
            if line.startswith(("+", "-")):
                lines.append(line)
        return "\n".join(lines)

    # ------------------------------------------------------------- status
    def modified_files(self) -> str:
        """Return ``git status --porcelain`` output, listing untracked files one by one."""

        return self._run_git(["status", "--porcelain", "--untracked-files=all"]).stdout

    def commit(self, files: Sequence[str], message: str) -> str | None:
        """Stage ``files`` and commit them.

        Returns the new commit SHA, or ``None`` when there was nothing to
        commit.
        """

        if not files:
            return None
        self._run_git(["add", "--", *files])
        commit = self._run_git(["commit", "-m", message], check=False)
        if commit.returncode != 0:
            output = commit.stderr.strip() or commit.stdout.strip() or ""
            if "nothing to commit" in output.lower():
                return None
            raise GitError(f"git commit failed: {output}")
        rev = self._run_git(["rev-parse", "HEAD"])
        return rev.stdout.strip()


__all__ = ["CommitInfo", "GitError", "GitRepository", "exclude_paths", "parse_status_paths"]
