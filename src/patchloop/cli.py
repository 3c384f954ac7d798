"""CLI commands for running and inspecting integration loops."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Optional

import typer

from .changes import RunMode, RunReport
from .config import ConfigError, RunConfig, load_config, resolve_repo_root
from .deploy_logs import LogSnapshot, VercelLogClient, files_from_issues, gather_logs
from .errors import NoChunksApplied, NoPatchFound
from .models import LLMClientError, ResponsesClient
from .modes import select_mode
from .orchestrator import RetryOrchestrator, RunResult
from .pipeline import apply_patch_text
from .proposer import LLMProposer, collect_context
from .tools.gates import ValidationGate
from .tools.sanitize import sanitize as sanitize_patch
from .tools.vcs import GitError, GitRepository
from .tools.workspace import WorkingCopy

APP_HELP = "Apply generated changes to a repository, validate them and commit or roll back."
DEFAULT_CONFIG_NAME = "config.yaml"

LOGGER = logging.getLogger(__name__)

app = typer.Typer(help=APP_HELP)


@app.callback()
def main(
    log_level: str = typer.Option(
        "WARNING",
        "--log-level",
        "-l",
        help="Logging level for patchloop loggers (DEBUG, INFO, WARNING, ERROR).",
    ),
) -> None:
    """Configure logging before any command runs."""
    level = logging.getLevelName(log_level.strip().upper())
    if not isinstance(level, int):
        raise typer.BadParameter(f"Unknown log level: {log_level}")
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")


def _load_run_config(config: str) -> tuple[RunConfig, Path | None]:
    """Load ``config``; the default file name may be absent, explicit paths may not."""
    config_path = Path(config)
    if not config_path.exists() and config == DEFAULT_CONFIG_NAME:
        return RunConfig(), None
    try:
        return load_config(config_path), config_path
    except ConfigError as error:
        typer.echo(str(error))
        raise typer.Exit(code=1) from error


def _open_working_copy(run_config: RunConfig, config_path: Path | None) -> WorkingCopy:
    repo_root = resolve_repo_root(run_config, config_path)
    try:
        repo = GitRepository.discover(repo_root)
    except GitError as error:
        typer.echo(f"Failed to open repository at {repo_root}: {error}")
        raise typer.Exit(code=1)
    return WorkingCopy(repo, allowed_paths=run_config.run.allowed_paths)


def _require_clean(working_copy: WorkingCopy) -> None:
    """Refuse to run over uncommitted tracked edits; a reset would discard them."""
    dirty = working_copy.repo.working_tree_changes(include_untracked=False)
    if dirty:
        typer.echo("Working tree has uncommitted changes; commit or stash them first:")
        for path in dirty[:20]:
            typer.echo(f"- {path.as_posix()}")
        raise typer.Exit(code=1)


def _log_client(run_config: RunConfig) -> VercelLogClient | None:
    logs_cfg = run_config.logs
    if logs_cfg.provider != "vercel" or not logs_cfg.project_id:
        return None
    try:
        return VercelLogClient(
            project_id=logs_cfg.project_id,
            team_id=logs_cfg.team_id,
            token_env=logs_cfg.token_env,
            base_url=logs_cfg.base_url,
            timeout=logs_cfg.timeout,
            retries=logs_cfg.retries,
        )
    except ValueError as error:
        typer.echo(f"Warning: deployment logs unavailable: {error}")
        return None


def _build_client(run_config: RunConfig) -> ResponsesClient:
    models_cfg = run_config.models
    try:
        return ResponsesClient(
            model=models_cfg.default,
            api_key_env=models_cfg.api_key_env,
            base_url=models_cfg.base_url,
            timeout=models_cfg.timeout,
            max_attempts=models_cfg.max_attempts,
        )
    except ValueError as error:
        typer.echo(f"Failed to initialise model client: {error}")
        raise typer.Exit(code=1)
    except LLMClientError as error:
        typer.echo(f"Failed to initialise model client: {error}")
        raise typer.Exit(code=1)


def _truncate_lines(text: str, max_lines: int) -> str:
    lines = text.splitlines()
    if len(lines) <= max_lines:
        return text
    return "\n".join(lines[:max_lines] + [f"... ({len(lines) - max_lines} more line(s))"])


def _render_report(report: RunReport | None, max_lines: int) -> None:
    if report is None:
        typer.echo("No chunks were applied.")
        return
    typer.echo(_truncate_lines(report.format_summary(), max_lines))


def _render_result(result: RunResult, max_lines: int) -> None:
    typer.echo("Run summary:")
    typer.echo(f"- Mode: {result.mode.value}")
    typer.echo(f"- Proposals: {result.proposals}")
    for index, attempt in enumerate(result.attempts, start=1):
        status = "ok" if attempt.succeeded else (attempt.error or "failed")
        typer.echo(f"- Attempt ({attempt.representation.value}) {index}: {status}")
    _render_report(result.report, max_lines)
    if result.commit:
        typer.echo(f"- Commit: {result.commit[:7]}")
    if not result.ok and result.log.strip():
        typer.echo("Last failure log:")
        typer.echo(_truncate_lines(result.log, max_lines))
    typer.echo(f"Outcome: {'committed' if result.ok else 'aborted (working tree reset)'}")


def _commit_hook(run_config: RunConfig, working_copy: WorkingCopy):
    git_cfg = run_config.git

    def _commit(result: RunResult) -> Optional[str]:
        sha = working_copy.repo.commit_all(git_cfg.commit_message)
        if sha and git_cfg.push:
            branch = git_cfg.branch or working_copy.repo.current_branch()
            if branch:
                try:
                    working_copy.repo.push(git_cfg.remote, branch)
                except GitError as error:
                    LOGGER.warning("Push to %s %s failed: %s", git_cfg.remote, branch, error)
                    typer.echo(f"Warning: push failed: {error}")
        return sha

    return _commit


def _gather(run_config: RunConfig) -> LogSnapshot:
    return gather_logs(_log_client(run_config), max_chars=run_config.logs.max_chars)


@app.command()
def run(
    config: str = typer.Option(
        DEFAULT_CONFIG_NAME,
        "--config",
        "-c",
        help="Path to the run configuration file.",
    ),
    mode: Optional[RunMode] = typer.Option(
        None,
        "--mode",
        "-m",
        case_sensitive=False,
        help="Force the run mode instead of inferring it from deployment logs.",
    ),
    task: Optional[str] = typer.Option(
        None,
        "--task",
        "-t",
        help="Task description shown to the generator (overrides project.task).",
    ),
    json_output: bool = typer.Option(
        False,
        "--json",
        help="Print the run result as JSON instead of the text summary.",
    ),
) -> None:
    """Propose, apply, validate and commit a change, rolling back on failure."""

    run_config, config_path = _load_run_config(config)
    working_copy = _open_working_copy(run_config, config_path)
    _require_clean(working_copy)

    snapshot = _gather(run_config)
    selected = select_mode(mode or run_config.run.mode, snapshot.text, snapshot.state)
    focus = [*run_config.run.context_files, *files_from_issues(snapshot.issues)]
    context = collect_context(
        working_copy,
        task=task if task is not None else run_config.project.task,
        logs=snapshot.text,
        issues=[issue.describe() for issue in snapshot.issues],
        focus_paths=focus,
    )

    models_cfg = run_config.models
    proposer = LLMProposer(
        _build_client(run_config),
        model=models_cfg.default,
        temperature=models_cfg.temperature,
        max_output_tokens=models_cfg.max_output_tokens,
    )
    orchestrator = RetryOrchestrator(
        working_copy,
        proposer,
        ValidationGate(run_config.validation),
        context=context,
        commit=_commit_hook(run_config, working_copy),
    )

    try:
        result = orchestrator.run_attempt(selected)
    except GitError as error:
        typer.echo(f"Git failure during run: {error}")
        raise typer.Exit(code=1) from error

    if json_output:
        typer.echo(json.dumps(result.to_dict(), indent=2))
    else:
        _render_result(result, run_config.run.max_report_lines)
    if not result.ok:
        raise typer.Exit(code=1)


@app.command()
def apply(
    patch: Path = typer.Argument(..., exists=True, dir_okay=False, help="Patch file to apply."),
    config: str = typer.Option(
        DEFAULT_CONFIG_NAME,
        "--config",
        "-c",
        help="Path to the run configuration file.",
    ),
    validate: bool = typer.Option(
        False,
        "--validate/--no-validate",
        help="Run the build gate after applying and reset the tree if it fails.",
    ),
) -> None:
    """Sanitize and apply a patch file chunk by chunk, then print the report."""

    run_config, config_path = _load_run_config(config)
    working_copy = _open_working_copy(run_config, config_path)
    _require_clean(working_copy)
    working_copy.checkpoint("patchloop-apply")
    working_copy.refresh_snapshot()

    raw = patch.read_text(encoding="utf-8")
    try:
        report = apply_patch_text(raw, working_copy)
    except NoPatchFound as error:
        typer.echo(f"No patch found: {error}")
        raise typer.Exit(code=1) from error
    except NoChunksApplied as error:
        _render_report(error.report, run_config.run.max_report_lines)
        typer.echo(f"No chunks applied: {error}")
        working_copy.reset()
        raise typer.Exit(code=1) from error

    _render_report(report, run_config.run.max_report_lines)
    if not validate:
        return

    result = ValidationGate(run_config.validation).validate(working_copy, touched=report.touched_paths)
    if result.ok:
        typer.echo("Validation: passed")
        return
    typer.echo("Validation: failed; working tree reset")
    typer.echo(_truncate_lines(result.log, run_config.run.max_report_lines))
    working_copy.reset()
    raise typer.Exit(code=1)


@app.command()
def sanitize(
    patch: Path = typer.Argument(..., exists=True, dir_okay=False, help="Raw generator output to clean."),
) -> None:
    """Print the sanitized unified diff contained in a file."""

    try:
        cleaned = sanitize_patch(patch.read_text(encoding="utf-8"))
    except NoPatchFound as error:
        typer.echo(f"No patch found: {error}", err=True)
        raise typer.Exit(code=1) from error
    typer.echo(cleaned, nl=False)


@app.command()
def mode(
    config: str = typer.Option(
        DEFAULT_CONFIG_NAME,
        "--config",
        "-c",
        help="Path to the run configuration file.",
    ),
) -> None:
    """Print the run mode the latest deployment logs select."""

    run_config, _ = _load_run_config(config)
    snapshot = _gather(run_config)
    selected = select_mode(run_config.run.mode, snapshot.text, snapshot.state)
    typer.echo(selected.value)
    if snapshot.deployment_id:
        typer.echo(f"Deployment: {snapshot.deployment_id} [{snapshot.state or 'unknown'}]")
    for issue in snapshot.issues:
        typer.echo(f"- {issue.describe()}")


if __name__ == "__main__":
    app()
