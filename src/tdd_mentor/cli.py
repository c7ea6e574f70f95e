"""CLI commands for driving a TDD Mentor session."""

from __future__ import annotations

import asyncio
import copy
import json
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

import typer
import yaml

from . import prompts
from .candidates import CandidateGenerationPipeline, ContentType
from .context_builder import WorkspaceContextProvider
from .hints import HintEscalationProtocol
from .memory.schema import SessionState
from .memory.store import SessionStore
from .models import OpenAIChatOracle, OracleClient, OracleError, OracleOptions
from .phases import Phase, parse_phase
from .state_machine import PhaseStateMachine
from .tools.test_inserter import WorkspaceTestInserter
from .tools.test_runner import CommandTestRunner
from .tools.vcs import GitError, GitRepository
from .workflow import DEFAULT_TARGET_FILE, TddWorkflow

APP_HELP = "TDD Mentor: guided PICK, RED, GREEN and REFACTORING cycles."
DEFAULT_CONFIG_NAME = "config.yaml"
SQLITE_SIDE_FILES = ("-journal", "-wal", "-shm")

DEFAULT_CONFIG_TEMPLATE: Dict[str, Any] = {
    "project": {
        "name": "",
        "repo_root": ".",
    },
    "models": {
        "default": "gpt-4o-mini",
        "max_tokens": 2000,
        "temperature": 0.7,
        "timeout": 60,
    },
    "generation": {
        "broad_count": 10,
        "shortlist_size": 3,
        "context_files": 20,
        "commit_limit": 10,
    },
    "testing": {
        "command": "pytest -q",
        "timeout": 600,
        "default_target_file": DEFAULT_TARGET_FILE,
    },
    "paths": {
        "data": "data",
        "db_path": "data/tdd_mentor.sqlite",
        "logs": "data/logs",
        "config": DEFAULT_CONFIG_NAME,
    },
}

app = typer.Typer(help=APP_HELP)


def _copy_config_template() -> Dict[str, Any]:
    """Return a deep copy of the default configuration template."""
    return copy.deepcopy(DEFAULT_CONFIG_TEMPLATE)


def _write_config(config_path: Path, config_data: Dict[str, Any]) -> None:
    """Persist configuration data to disk with stable formatting."""
    config_path.parent.mkdir(parents=True, exist_ok=True)
    with config_path.open("w", encoding="utf-8") as handle:
        yaml.safe_dump(config_data, handle, sort_keys=False)


def load_config(config_path: Path) -> Dict[str, Any]:
    """Load YAML configuration from disk and return it as a dictionary."""
    if not config_path.exists():
        raise typer.BadParameter(f"Config file not found: {config_path}")

    try:
        with config_path.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
    except yaml.YAMLError as error:
        typer.echo(f"Failed to parse config: {error}")
        raise typer.Exit(code=1) from error

    if not isinstance(data, dict):
        typer.echo("Configuration must be a mapping at the top level.")
        raise typer.Exit(code=1)

    return data


def _section(config: Dict[str, Any], name: str) -> Dict[str, Any]:
    value = config.get(name)
    return value if isinstance(value, dict) else {}


def _positive_int(value: Any, default: int) -> int:
    if isinstance(value, int) and not isinstance(value, bool) and value > 0:
        return value
    return default


def _resolve_repo_root(config: Dict[str, Any], config_path: Path) -> Path:
    """Resolve the repository root from configuration."""
    repo_root_value = _section(config, "project").get("repo_root", ".")
    repo_root_path = Path(str(repo_root_value or "."))
    if not repo_root_path.is_absolute():
        repo_root_path = (config_path.parent / repo_root_path).resolve()
    return repo_root_path


def _resolve_logs_root(config: Dict[str, Any], repo_root: Path) -> Path:
    logs_value = _section(config, "paths").get("logs")
    candidate = Path(logs_value.strip()) if isinstance(logs_value, str) and logs_value.strip() else Path("data/logs")
    if not candidate.is_absolute():
        candidate = (repo_root / candidate).resolve()
    return candidate


# ----------------------------------------------------------------- oracles
class _OfflineOracle(OracleClient):
    """Local stub that synthesizes deterministic chat responses for demos/tests."""

    def __init__(self) -> None:
        super().__init__("offline", max_attempts=1)

    def _raw_invoke(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        messages = payload.get("messages") or []
        system = next((m.get("content", "") for m in messages if m.get("role") == "system"), "")
        user = next((m.get("content", "") for m in messages if m.get("role") == "user"), "")
        if system == prompts.HINT_SYSTEM_PROMPT:
            content = "What is the smallest change that would make the failing assertion pass?"
        else:
            kind = _offline_kind(system)
            items = _offline_items(kind)
            if "## Candidates" in user:
                items = items[:3]
            content = json.dumps({"items": items})
        return {"choices": [{"message": {"role": "assistant", "content": content}}]}


def _offline_kind(system_prompt: str) -> ContentType:
    if system_prompt == prompts.TEST_PROPOSALS.system_prompt:
        return ContentType.TEST_PROPOSALS
    if system_prompt == prompts.REFACTORING_SUGGESTIONS.system_prompt:
        return ContentType.REFACTORING_SUGGESTIONS
    return ContentType.USER_STORIES


def _offline_items(kind: ContentType) -> list[Dict[str, Any]]:
    if kind is ContentType.TEST_PROPOSALS:
        return [
            {
                "id": f"test-{index}",
                "title": f"Offline test {index}",
                "description": f"Placeholder test {index} for the selected story.",
                "code": f"def test_offline_{index}():\n    assert False, 'implement me'\n",
                "targetFile": f"tests/test_offline_{index}.py",
            }
            for index in range(1, 6)
        ]
    if kind is ContentType.REFACTORING_SUGGESTIONS:
        return [
            {
                "id": f"refactor-{index}",
                "title": f"Offline refactoring {index}",
                "description": "Look for duplicated logic introduced in the last cycle.",
            }
            for index in range(1, 6)
        ]
    return [
        {
            "id": f"story-{index}",
            "title": f"Offline story {index}",
            "description": f"As a user I want feature {index} so that the demo has content.",
        }
        for index in range(1, 6)
    ]


def _build_oracle(config: Dict[str, Any], *, use_remote: bool) -> OracleClient:
    """Select either the Chat Completions oracle or the offline stub."""
    models_cfg = _section(config, "models")
    model_name = str(models_cfg.get("default", "gpt-4o-mini"))
    model_name_key = model_name.lower()
    offline_model = model_name_key == "offline" or model_name_key.endswith("-offline")

    if use_remote and not offline_model:
        client_kwargs: Dict[str, Any] = {}
        timeout_value = models_cfg.get("timeout")
        if isinstance(timeout_value, (int, float)) and timeout_value > 0:
            client_kwargs["timeout"] = float(timeout_value)
        max_attempts_value = models_cfg.get("max_attempts")
        if isinstance(max_attempts_value, int) and max_attempts_value > 0:
            client_kwargs["max_attempts"] = max_attempts_value
        base_url_value = models_cfg.get("base_url")
        if isinstance(base_url_value, str) and base_url_value.strip():
            client_kwargs["base_url"] = base_url_value.strip()
        api_key_value = models_cfg.get("api_key")
        if isinstance(api_key_value, str) and api_key_value.strip():
            client_kwargs["api_key"] = api_key_value.strip()
        try:
            return OpenAIChatOracle(model=model_name, **client_kwargs)
        except ValueError as error:
            if "api key" in str(error).lower():
                typer.echo(
                    "No API key given. Set OPENAI_API_KEY or models.api_key, "
                    "or re-run with --no-use-remote to use the offline stub."
                )
            else:
                typer.echo(f"Failed to initialise oracle: {error}")
            raise typer.Exit(code=1)
        except OracleError as error:
            typer.echo(f"Failed to initialise oracle: {error}")
            raise typer.Exit(code=1)

    if use_remote and offline_model:
        typer.echo(f"Model '{model_name}' is offline-only; using offline stub oracle.")
    return _OfflineOracle()


def _options_from_config(config: Dict[str, Any]) -> OracleOptions:
    models_cfg = _section(config, "models")
    max_tokens = _positive_int(models_cfg.get("max_tokens"), 2000)
    temperature_value = models_cfg.get("temperature", 0.7)
    temperature = float(temperature_value) if isinstance(temperature_value, (int, float)) else 0.7
    model = models_cfg.get("default")
    return OracleOptions(
        model=str(model) if model else None,
        max_tokens=max_tokens,
        temperature=temperature,
    )


def _tool_owned_paths(
    config: Dict[str, Any],
    config_path: Path,
    repo_root: Path,
    store: SessionStore,
) -> List[str]:
    """Repository-relative paths the mentor writes itself and never commits."""
    owned: List[Path] = [config_path, _resolve_logs_root(config, repo_root), store.db_path]
    owned.extend(Path(f"{store.db_path}{suffix}") for suffix in SQLITE_SIDE_FILES)
    data_value = _section(config, "paths").get("data")
    if isinstance(data_value, str) and data_value.strip():
        data_path = Path(data_value.strip())
        owned.append(data_path if data_path.is_absolute() else repo_root / data_path)

    root = repo_root.resolve()
    relative: List[str] = []
    for path in owned:
        try:
            entry = path.resolve().relative_to(root).as_posix()
        except ValueError:
            continue
        if entry != "." and entry not in relative:
            relative.append(entry)
    return relative


def _build_workflow(
    config: Dict[str, Any],
    config_path: Path,
    store: SessionStore,
    *,
    use_remote: bool,
) -> TddWorkflow:
    """Wire every collaborator of the workflow from configuration."""
    repo_root = _resolve_repo_root(config, config_path)
    logs_root = _resolve_logs_root(config, repo_root)
    generation_cfg = _section(config, "generation")
    testing_cfg = _section(config, "testing")

    vcs: Optional[GitRepository] = None
    try:
        vcs = GitRepository(repo_root)
    except GitError:
        vcs = None

    oracle = _build_oracle(config, use_remote=use_remote)
    options = _options_from_config(config)
    pipeline = CandidateGenerationPipeline(
        oracle,
        context_provider=WorkspaceContextProvider(repo_root, git=vcs),
        options={kind: options for kind in ContentType},
        broad_count=_positive_int(generation_cfg.get("broad_count"), 10),
        shortlist_size=_positive_int(generation_cfg.get("shortlist_size"), 3),
        context_file_limit=_positive_int(generation_cfg.get("context_files"), 20),
        commit_limit=_positive_int(generation_cfg.get("commit_limit"), 10),
        warn=typer.echo,
        logs_root=logs_root,
    )
    hints = HintEscalationProtocol(oracle, options=options, logs_root=logs_root)

    timeout_value = testing_cfg.get("timeout", 600)
    runner = CommandTestRunner(
        str(testing_cfg.get("command") or "pytest -q"),
        cwd=repo_root,
        timeout=float(timeout_value) if isinstance(timeout_value, (int, float)) else 600.0,
    )
    return TddWorkflow(
        PhaseStateMachine(store),
        pipeline,
        hints,
        test_runner=runner,
        inserter=WorkspaceTestInserter(repo_root),
        vcs=vcs,
        default_target_file=str(testing_cfg.get("default_target_file") or DEFAULT_TARGET_FILE),
        excluded_paths=_tool_owned_paths(config, config_path, repo_root, store),
        warn=typer.echo,
    )


@contextmanager
def _open_workflow(config: str, *, use_remote: bool) -> Iterator[TddWorkflow]:
    config_path = Path(config)
    config_data = load_config(config_path)
    repo_root = _resolve_repo_root(config_data, config_path)
    with SessionStore.from_config(config_data, repo_root=repo_root) as store:
        yield _build_workflow(config_data, config_path, store, use_remote=use_remote)


# --------------------------------------------------------------- rendering
def _render_state(state: SessionState) -> None:
    typer.echo(f"Phase: {state.current_phase.name} ({state.current_mode.value})")
    if state.selected_user_story is not None:
        typer.echo(f"Story: {state.selected_user_story.title} [{state.selected_user_story.id}]")
    if state.current_phase is Phase.PICK:
        _render_items("User stories", state.user_stories)
    elif state.current_phase is Phase.RED:
        _render_items("Test proposals", state.test_proposals)
        test = state.modified_selected_test or state.selected_test
        if test is not None:
            editing = " (editing)" if state.is_editing_test else ""
            typer.echo(f"Selected test{editing}: {test.title} -> {test.target_file or '(default file)'}")
            typer.echo(test.code)
    elif state.current_phase is Phase.GREEN:
        test = state.modified_selected_test or state.selected_test
        if test is not None:
            typer.echo(f"Make this test pass: {test.title}")
        typer.echo(f"Hint level: {state.hint_level}")
    else:
        _render_items("Refactoring suggestions", state.refactoring_suggestions)
    if state.test_results is not None:
        outcome = "passed" if state.test_results.success else "failed"
        typer.echo(f"Last test run: {outcome}")
    if state.next_phase is not None:
        typer.echo(f"Next phase: {state.next_phase.name}")


def _render_items(heading: str, items: Any) -> None:
    if not items:
        typer.echo(f"{heading}: none")
        return
    typer.echo(f"{heading}:")
    for item in items:
        typer.echo(f"- [{item.id}] {item.title}")
        typer.echo(f"    {item.description}")


def _parse_phase_option(value: str) -> Phase:
    try:
        return parse_phase(value)
    except KeyError as error:
        names = ", ".join(phase.value for phase in Phase)
        raise typer.BadParameter(f"Unknown phase '{value}'. Expected one of: {names}.") from error


_CONFIG_OPTION = typer.Option(
    DEFAULT_CONFIG_NAME,
    "--config",
    "-c",
    help="Path to the TDD Mentor configuration file.",
)
_REMOTE_OPTION = typer.Option(
    True,
    "--use-remote/--no-use-remote",
    help="Call the Chat Completions API instead of the offline stub (requires API key).",
)


# ---------------------------------------------------------------- commands
@app.command()
def init(
    config: str = _CONFIG_OPTION,
    name: Optional[str] = typer.Option(None, "--name", "-n", help="Project name."),
    force: bool = typer.Option(False, "--force", help="Overwrite an existing configuration."),
) -> None:
    """Write a default configuration file."""
    config_path = Path(config)
    if config_path.exists() and not force:
        typer.echo(f"Configuration already exists at {config_path}; use --force to overwrite.")
        return
    config_data = _copy_config_template()
    config_data["project"]["name"] = name or config_path.resolve().parent.name
    config_data["paths"]["config"] = config_path.name
    _write_config(config_path, config_data)
    typer.echo(f"Created configuration at {config_path}.")


@app.command()
def start(config: str = _CONFIG_OPTION, use_remote: bool = _REMOTE_OPTION) -> None:
    """Reset the session and generate user stories."""
    with _open_workflow(config, use_remote=use_remote) as workflow:
        workflow.machine.reset()
        asyncio.run(workflow.ensure_user_stories())
        _render_state(workflow.state)


@app.command()
def status(config: str = _CONFIG_OPTION) -> None:
    """Show the current session."""
    config_path = Path(config)
    config_data = load_config(config_path)
    repo_root = _resolve_repo_root(config_data, config_path)
    with SessionStore.from_config(config_data, repo_root=repo_root) as store:
        state = PhaseStateMachine(store).state
    project = _section(config_data, "project")
    typer.echo(f"Project: {project.get('name') or 'unnamed'}")
    _render_state(state)


@app.command()
def stories(config: str = _CONFIG_OPTION, use_remote: bool = _REMOTE_OPTION) -> None:
    """Regenerate the user story list."""
    with _open_workflow(config, use_remote=use_remote) as workflow:
        asyncio.run(workflow.refresh_user_stories())
        _render_state(workflow.state)


@app.command()
def pick(
    story_id: str = typer.Argument(..., help="Identifier of the user story."),
    config: str = _CONFIG_OPTION,
    use_remote: bool = _REMOTE_OPTION,
) -> None:
    """Select a user story and enter RED with fresh test proposals."""
    with _open_workflow(config, use_remote=use_remote) as workflow:
        if not asyncio.run(workflow.pick_story(story_id)):
            raise typer.Exit(code=1)
        _render_state(workflow.state)


@app.command("select-test")
def select_test(
    test_id: str = typer.Argument(..., help="Identifier of the test proposal."),
    config: str = _CONFIG_OPTION,
) -> None:
    """Select a test proposal for editing."""
    with _open_workflow(config, use_remote=False) as workflow:
        if not workflow.select_test(test_id):
            raise typer.Exit(code=1)
        _render_state(workflow.state)


@app.command("edit-test")
def edit_test(
    code_file: Optional[Path] = typer.Option(None, "--code-file", help="File holding the edited test code."),
    code: Optional[str] = typer.Option(None, "--code", help="Edited test code."),
    target: Optional[str] = typer.Option(None, "--target", help="File name the test belongs in."),
    config: str = _CONFIG_OPTION,
) -> None:
    """Replace the selected test's code and/or target file before confirming."""
    with _open_workflow(config, use_remote=False) as workflow:
        selected = workflow.state.modified_selected_test or workflow.state.selected_test
        if code_file is not None:
            try:
                code = code_file.read_text(encoding="utf-8")
            except OSError as error:
                raise typer.BadParameter(
                    f"Cannot read {code_file}: {error}", param_hint="--code-file"
                ) from error
        if code is None:
            if selected is None:
                typer.echo("Select a test proposal before editing it.")
                raise typer.Exit(code=1)
            code = selected.code
        if not workflow.edit_test(code, target):
            raise typer.Exit(code=1)
        _render_state(workflow.state)


@app.command("confirm-test")
def confirm_test(config: str = _CONFIG_OPTION) -> None:
    """Write the selected test into the workspace and enter GREEN."""
    with _open_workflow(config, use_remote=False) as workflow:
        if not workflow.confirm_test():
            raise typer.Exit(code=1)
        _render_state(workflow.state)


@app.command()
def phase(
    name: str = typer.Argument(..., help="Phase to enter: pick, red, green or refactoring."),
    config: str = _CONFIG_OPTION,
) -> None:
    """Enter a phase when its precondition holds."""
    target = _parse_phase_option(name)
    with _open_workflow(config, use_remote=False) as workflow:
        if not workflow.enter_phase(target):
            raise typer.Exit(code=1)
        _render_state(workflow.state)


@app.command()
def ask(
    question: str = typer.Argument(..., help="Question for the mentor."),
    config: str = _CONFIG_OPTION,
    use_remote: bool = _REMOTE_OPTION,
) -> None:
    """Ask for a hint; each answered question makes the next hint more specific."""
    with _open_workflow(config, use_remote=use_remote) as workflow:
        answer = asyncio.run(workflow.ask(question))
        if answer is None:
            raise typer.Exit(code=1)
        typer.echo(answer)


@app.command()
def verify(config: str = _CONFIG_OPTION, use_remote: bool = _REMOTE_OPTION) -> None:
    """Run the test suite; on success enter REFACTORING."""
    with _open_workflow(config, use_remote=use_remote) as workflow:
        passed = asyncio.run(workflow.verify())
        results = workflow.state.test_results
        if results is not None and results.message:
            typer.echo(results.message)
        _render_state(workflow.state)
        if not passed:
            raise typer.Exit(code=1)


@app.command()
def complete(
    message: Optional[str] = typer.Option(None, "--message", "-m", help="Commit message."),
    config: str = _CONFIG_OPTION,
    use_remote: bool = _REMOTE_OPTION,
) -> None:
    """Commit the cycle's changes and start the next cycle."""
    with _open_workflow(config, use_remote=use_remote) as workflow:
        sha = asyncio.run(workflow.complete_cycle(message))
        if sha:
            typer.echo(f"Committed {sha[:7]}.")
        else:
            typer.echo("Nothing committed.")
        _render_state(workflow.state)


@app.command("new-tests")
def new_tests(config: str = _CONFIG_OPTION, use_remote: bool = _REMOTE_OPTION) -> None:
    """Restart RED for the selected story with fresh test proposals."""
    with _open_workflow(config, use_remote=use_remote) as workflow:
        asyncio.run(workflow.new_tests())
        _render_state(workflow.state)


@app.command("next-phase")
def next_phase(
    name: str = typer.Argument(..., help="Phase to route to after REFACTORING, or 'none'."),
    config: str = _CONFIG_OPTION,
) -> None:
    """Choose where ``complete`` leads: RED keeps the story, anything else restarts at PICK."""
    target = None if name.strip().lower() in {"", "none"} else _parse_phase_option(name)
    with _open_workflow(config, use_remote=False) as workflow:
        workflow.set_next_phase(target)
        _render_state(workflow.state)


if __name__ == "__main__":
    app()
