from __future__ import annotations

import json
import subprocess
import sys
from pathlib import Path

import pytest

from tdd_mentor.tools.exchange_logs import json_safe, slug, write_exchange_log
from tdd_mentor.tools.test_inserter import WorkspaceTestInserter, bare_filename
from tdd_mentor.tools.test_runner import CommandTestRunner
from tdd_mentor.tools.vcs import GitError, GitRepository, exclude_paths, parse_status_paths


# ---------------------------------------------------------------- inserter
def test_inserter_appends_to_existing_file(tmp_path: Path) -> None:
    existing = tmp_path / "suite" / "nested" / "test_math.py"
    existing.parent.mkdir(parents=True)
    existing.write_text("import math\n", encoding="utf-8")

    inserter = WorkspaceTestInserter(tmp_path)
    assert inserter.insert("def test_sqrt():\n    assert math.sqrt(4) == 2", "test_math.py") is True

    assert existing.read_text(encoding="utf-8") == (
        "import math\n\ndef test_sqrt():\n    assert math.sqrt(4) == 2\n"
    )
    assert not (tmp_path / "tests" / "test_math.py").exists()


def test_inserter_creates_file_under_tests(tmp_path: Path) -> None:
    inserter = WorkspaceTestInserter(tmp_path)

    assert inserter.insert("def test_new():\n    pass\n", "../../outside/test_new.py") is True

    created = tmp_path / "tests" / "test_new.py"
    assert created.read_text(encoding="utf-8") == "\ndef test_new():\n    pass\n"
    assert not (tmp_path.parent / "outside").exists()


def test_inserter_skips_vendored_directories(tmp_path: Path) -> None:
    vendored = tmp_path / "node_modules" / "pkg" / "widget.test.js"
    vendored.parent.mkdir(parents=True)
    vendored.write_text("// vendored\n", encoding="utf-8")

    WorkspaceTestInserter(tmp_path).insert("test('x', () => {});", "widget.test.js")

    assert vendored.read_text(encoding="utf-8") == "// vendored\n"
    assert (tmp_path / "tests" / "widget.test.js").exists()


def test_inserter_rejects_unusable_target(tmp_path: Path) -> None:
    assert WorkspaceTestInserter(tmp_path).insert("code", None) is False
    assert WorkspaceTestInserter(tmp_path).insert("code", "..") is False


def test_inserter_reports_write_failure(tmp_path: Path) -> None:
    (tmp_path / "tests").write_text("not a directory", encoding="utf-8")
    assert WorkspaceTestInserter(tmp_path).insert("code", "test_x.py") is False


@pytest.mark.parametrize(
    ("value", "expected"),
    [
        ("a/b/c.test.js", "c.test.js"),
        ("c:\\work\\test_x.py", "test_x.py"),
        ("test_plain.py", "test_plain.py"),
        ("", None),
        (None, None),
        ("dir/", "dir"),
    ],
)
def test_bare_filename(value, expected) -> None:
    assert bare_filename(value) == expected


# ------------------------------------------------------------------ runner
def test_runner_reports_success(tmp_path: Path) -> None:
    runner = CommandTestRunner([sys.executable, "-c", "print('3 passed')"], cwd=tmp_path)
    result = runner.run()
    assert result.success is True
    assert result.status == "passed"
    assert "3 passed" in result.output


def test_runner_reports_failure(tmp_path: Path) -> None:
    script = "import sys; print('1 failed'); sys.exit(1)"
    result = CommandTestRunner([sys.executable, "-c", script], cwd=tmp_path).run()
    assert result.success is False
    assert result.status == "failed"
    assert result.exit_code == 1
    assert "1 failed" in result.output


def test_runner_treats_no_tests_as_unsuccessful(tmp_path: Path) -> None:
    result = CommandTestRunner([sys.executable, "-c", "import sys; sys.exit(5)"], cwd=tmp_path).run()
    assert result.status == "no-tests"
    assert result.success is False


def test_runner_times_out(tmp_path: Path) -> None:
    script = "import time; time.sleep(5)"
    result = CommandTestRunner([sys.executable, "-c", script], cwd=tmp_path, timeout=0.2).run()
    assert result.status == "timeout"
    assert result.success is False
    assert "timed out" in result.output


def test_runner_missing_command(tmp_path: Path) -> None:
    result = CommandTestRunner("definitely-not-a-real-binary --flag", cwd=tmp_path).run()
    assert result.success is False
    assert result.status == "error"


def test_runner_puts_src_on_pythonpath(tmp_path: Path) -> None:
    (tmp_path / "src").mkdir()
    script = "import os; print(os.environ.get('PYTHONPATH', ''))"
    result = CommandTestRunner([sys.executable, "-c", script], cwd=tmp_path).run()
    assert str((tmp_path / "src").resolve()) in result.output


def test_runner_requires_command() -> None:
    with pytest.raises(ValueError):
        CommandTestRunner("")


# --------------------------------------------------------------------- vcs
def test_parse_status_paths_handles_renames_and_quotes() -> None:
    porcelain = ' M src/app.py\n?? tests/test_new.py\nR  old.py -> new.py\n A "with space.py"\n'
    assert parse_status_paths(porcelain) == ["src/app.py", "tests/test_new.py", "new.py", "with space.py"]


def test_exclude_paths_drops_owned_files_and_directories() -> None:
    changed = [
        "src/app.py",
        "data/tdd_mentor.sqlite",
        "data/logs/exchanges/exchange__hint.json",
        "database.py",
        "config.yaml",
        "config.yaml.bak",
        "logs/",
    ]
    kept = exclude_paths(changed, ["data", "config.yaml", "logs/", ""])
    assert kept == ["src/app.py", "database.py", "config.yaml.bak"]
    assert exclude_paths(changed, []) == changed


def test_modified_files_lists_untracked_files_individually(tiny_repo) -> None:
    nested = tiny_repo.root / "scratch" / "deep" / "notes.txt"
    nested.parent.mkdir(parents=True)
    nested.write_text("x\n", encoding="utf-8")

    repo = GitRepository(tiny_repo.root)
    assert parse_status_paths(repo.modified_files()) == ["scratch/deep/notes.txt"]


def test_git_repository_requires_git_dir(tmp_path: Path) -> None:
    with pytest.raises(GitError):
        GitRepository(tmp_path)


def test_git_history_diff_and_commit(tiny_repo) -> None:
    repo = GitRepository.discover(tiny_repo.root / "src")
    assert repo.root == tiny_repo.root.resolve()

    commits = repo.recent_commits(5)
    assert len(commits) == 1
    assert commits[0].message == "Initial tiny repo state"
    assert commits[0].author == "TDD Mentor"
    assert "config.yaml" in commits[0].files_changed

    assert parse_status_paths(repo.modified_files()) == []
    assert repo.commit([], "nothing") is None

    calculator = tiny_repo.root / "src" / "tiny_app" / "calculator.py"
    calculator.write_text(
        calculator.read_text(encoding="utf-8") + "\n\ndef sub(left: int, right: int) -> int:\n    return left - right\n",
        encoding="utf-8",
    )
    changed = parse_status_paths(repo.modified_files())
    assert changed == ["src/tiny_app/calculator.py"]

    sha = repo.commit(changed, "Add sub")
    assert sha and len(sha) == 40
    assert repo.recent_commits(1)[0].message == "Add sub"

    diff = repo.latest_commit_diff()
    assert "+def sub(left: int, right: int) -> int:" in diff
    assert "+++" not in diff and "---" not in diff


def test_recent_commits_on_empty_repository(tmp_path: Path) -> None:
    subprocess.run(["git", "init"], cwd=tmp_path, check=True, capture_output=True)
    repo = GitRepository(tmp_path)
    assert repo.recent_commits() == []
    assert repo.latest_commit_diff() == ""


# ---------------------------------------------------------- exchange logs
def test_exchange_log_written_with_json_safe_payload(tmp_path: Path) -> None:
    from tdd_mentor.memory.schema import Story
    from tdd_mentor.models.llm_client import OracleOptions

    path = write_exchange_log(
        tmp_path,
        "generation",
        label="user_stories",
        prompt="prompt text",
        options=OracleOptions(model="m", context={"path": tmp_path}),
        raw={"items": []},
        result=[Story(id="s1", title="t", description="d")],
    )
    assert path is not None
    entry = json.loads(path.read_text(encoding="utf-8"))
    assert entry["stage"] == "generation"
    assert entry["options"]["model"] == "m"
    assert entry["options"]["context"]["path"] == tmp_path.as_posix()
    assert entry["result"] == [{"id": "s1", "title": "t", "description": "d"}]


def test_exchange_log_disabled_without_root() -> None:
    assert write_exchange_log(None, "hint", label="x", prompt="p", options=None) is None


def test_json_safe_and_slug_helpers() -> None:
    assert json_safe({1: (b"raw", {"a"})}) == {"1": ["raw", ["a"]]}
    assert slug("User Stories / Batch #1") == "User-Stories-Batch-1"
    long = slug("x" * 200, max_length=20)
    assert len(long) <= 20
