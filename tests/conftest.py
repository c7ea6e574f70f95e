from __future__ import annotations

import subprocess
import sys
import textwrap
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, List

import pytest

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"

if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))


@dataclass(slots=True)
class TinyRepo:
    """Fixture payload representing the synthetic workspace under test."""

    root: Path
    config_path: Path

    def git(self, *cmd: str) -> str:
        result = subprocess.run(
            ["git", *cmd],
            cwd=self.root,
            check=True,
            capture_output=True,
            text=True,
        )
        return result.stdout


@pytest.fixture()
def tiny_repo(tmp_path: Path) -> TinyRepo:
    """Create a tiny git repository with a passing test suite and offline config."""

    repo_root = tmp_path / "tiny-repo"
    repo_root.mkdir()
    repo = TinyRepo(root=repo_root, config_path=repo_root / "config.yaml")

    repo.git("init")
    repo.git("config", "user.email", "mentor@example.com")
    repo.git("config", "user.name", "TDD Mentor")

    src_dir = repo_root / "src" / "tiny_app"
    src_dir.mkdir(parents=True)
    (src_dir / "__init__.py").write_text("from .calculator import add\n", encoding="utf-8")
    (src_dir / "calculator.py").write_text(
        textwrap.dedent(
            """
            def add(left: int, right: int) -> int:
                return left + right
            """
        ).lstrip(),
        encoding="utf-8",
    )

    tests_dir = repo_root / "tests"
    tests_dir.mkdir()
    (tests_dir / "test_calculator.py").write_text(
        textwrap.dedent(
            """
            from tiny_app import add


            def test_add_returns_sum() -> None:
                assert add(2, 3) == 5
            """
        ).lstrip(),
        encoding="utf-8",
    )

    repo.config_path.write_text(
        textwrap.dedent(
            f"""
            project:
              name: tiny-tdd-repo
              repo_root: .
            models:
              default: gpt-4o-offline
            testing:
              command: "{sys.executable} -c pass"
              timeout: 60
            paths:
              data: data
              db_path: data/tdd_mentor.sqlite
              logs: data/logs
              config: config.yaml
            """
        ).lstrip(),
        encoding="utf-8",
    )
    (repo_root / ".gitignore").write_text("data/\n", encoding="utf-8")

    repo.git("add", ".")
    repo.git("commit", "-m", "Initial tiny repo state")
    return repo


@dataclass
class ScriptedOracle:
    """Oracle double that replays queued responses and records every call."""

    responses: List[Any] = field(default_factory=list)
    calls: List[tuple[str, Any]] = field(default_factory=list)

    async def send(self, prompt: str, options: Any) -> Any:
        self.calls.append((prompt, options))
        if not self.responses:
            raise AssertionError("ScriptedOracle ran out of responses")
        response = self.responses.pop(0)
        if isinstance(response, BaseException):
            raise response
        if callable(response):
            return response(prompt, options)
        return response


def make_items(prefix: str, count: int, **extra: Any) -> list[dict[str, Any]]:
    return [
        {
            "id": f"{prefix}-{index}",
            "title": f"{prefix.title()} {index}",
            "description": f"Description for {prefix} {index}",
            **extra,
        }
        for index in range(1, count + 1)
    ]


@pytest.fixture()
def scripted_oracle() -> Callable[..., ScriptedOracle]:
    def factory(*responses: Any) -> ScriptedOracle:
        return ScriptedOracle(responses=list(responses))

    return factory
