from __future__ import annotations

from pathlib import Path
from typing import Iterable

import pytest

from patchloop.changes import (
    CandidateChange,
    FileEntry,
    FilesChange,
    PatchChange,
    Representation,
    RunMode,
    ValidationResult,
)
from patchloop.errors import ProposalError, TerminalFailure
from patchloop.tools.vcs import GitError
from patchloop.orchestrator import RetryOrchestrator, RunState
from patchloop.proposer import ProposalContext
from patchloop.tools.gates import ValidationGate

VALID_PATCH = (
    "diff --git a/app.ts b/app.ts\n--- a/app.ts\n+++ b/app.ts\n"
    "@@ -1 +1 @@\n-export const value = 1;\n+export const value = 2;\n"
)


class ScriptedProposer:
    """Return queued responses and record every request."""

    def __init__(self, responses: Iterable[CandidateChange | Exception]) -> None:
        self.responses = list(responses)
        self.calls: list[tuple[RunMode, Representation, ProposalContext]] = []

    def propose(self, context: ProposalContext, mode: RunMode, representation: Representation) -> CandidateChange:
        self.calls.append((mode, representation, context))
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


class ScriptedBuild:
    def __init__(self, results: Iterable[bool]) -> None:
        self.results = list(results)
        self.snapshots: list[str] = []

    def __call__(self, root: Path) -> ValidationResult:
        self.snapshots.append((root / "app.ts").read_text(encoding="utf-8"))
        ok = self.results.pop(0)
        return ValidationResult(ok=ok, log="build ok" if ok else "Type error: value is not assignable")


def _files(bodies: dict[str, str]) -> FilesChange:
    return FilesChange(entries=tuple(FileEntry(path=path, content=body) for path, body in bodies.items()))


def _orchestrator(fixture, proposer, build, **kwargs) -> RetryOrchestrator:
    return RetryOrchestrator(
        fixture.working_copy,
        proposer,
        ValidationGate(build_check=build),
        context=ProposalContext(task="bump value"),
        **kwargs,
    )


@pytest.fixture()
def app_repo(make_repo):
    return make_repo({"app.ts": "export const value = 1;\n"})


def test_patch_that_builds_is_committed_in_one_proposal(app_repo) -> None:
    proposer = ScriptedProposer([PatchChange(text=VALID_PATCH)])
    build = ScriptedBuild([True])

    result = _orchestrator(app_repo, proposer, build).run_attempt(RunMode.FIX)

    assert result.ok is True
    assert result.state is RunState.COMMIT
    assert result.proposals == 1
    assert result.report is not None and result.report.touched_paths == ("app.ts",)
    assert app_repo.read("app.ts") == "export const value = 2;\n"


def test_prose_escalates_to_files_within_two_proposals(app_repo) -> None:
    proposer = ScriptedProposer(
        [
            PatchChange(text="The value should be two, update it in app.ts."),
            _files({"app.ts": "export const value = 2;\n"}),
        ]
    )
    build = ScriptedBuild([True])

    result = _orchestrator(app_repo, proposer, build).run_attempt(RunMode.FEATURE)

    assert result.ok is True
    assert result.state is RunState.COMMIT
    assert len(proposer.calls) == 2
    assert [call[1] for call in proposer.calls] == [Representation.PATCH, Representation.FILES]
    assert result.attempts[0].error.startswith("NoPatchFound")
    assert build.snapshots == ["export const value = 2;\n"]


def test_validation_failure_gets_one_corrective_round_with_the_log(app_repo) -> None:
    proposer = ScriptedProposer(
        [
            PatchChange(text=VALID_PATCH),
            _files({"app.ts": "export const value: number = 2;\n"}),
        ]
    )
    build = ScriptedBuild([False, True])

    result = _orchestrator(app_repo, proposer, build).run_attempt(RunMode.FIX)

    assert result.ok is True
    assert len(proposer.calls) == 2
    _, representation, context = proposer.calls[1]
    assert representation is Representation.FILES
    assert "Type error" in context.previous_validation_log
    assert context.task == "bump value"
    assert build.snapshots == ["export const value = 2;\n", "export const value: number = 2;\n"]


def test_abort_after_two_validation_failures_leaves_no_trace(app_repo) -> None:
    before = app_repo.tree()
    proposer = ScriptedProposer(
        [
            PatchChange(text=VALID_PATCH),
            _files({"app.ts": "export const value = 3;\n", "lib/extra.ts": "export const extra = 1;\n"}),
        ]
    )
    build = ScriptedBuild([False, False])

    result = _orchestrator(app_repo, proposer, build).run_attempt(RunMode.FIX)

    assert result.ok is False
    assert result.state is RunState.ABORT
    assert result.proposals == 2
    assert "Type error" in result.log
    assert app_repo.tree() == before
    assert app_repo.repo.is_clean()


def test_stops_after_three_proposals(app_repo) -> None:
    before = app_repo.tree()
    proposer = ScriptedProposer(
        [
            PatchChange(text="no diff here"),
            _files({"app.ts": "export const value = 3;\n"}),
            _files({"app.ts": "export const value = 4;\n"}),
            _files({"app.ts": "never requested\n"}),
        ]
    )
    build = ScriptedBuild([False, False])

    result = _orchestrator(app_repo, proposer, build).run_attempt(RunMode.FIX)

    assert result.ok is False
    assert len(proposer.calls) == 3
    assert len(result.attempts) == 2
    assert app_repo.tree() == before


def test_files_round_that_cannot_apply_aborts(app_repo) -> None:
    proposer = ScriptedProposer(
        [
            PatchChange(text="still no diff"),
            ProposalError("Files payload failed validation"),
        ]
    )
    build = ScriptedBuild([])

    result = _orchestrator(app_repo, proposer, build).run_attempt(RunMode.UPGRADE)

    assert result.ok is False
    assert result.proposals == 2
    assert result.mode is RunMode.UPGRADE
    assert build.snapshots == []


def test_commit_hook_runs_only_on_success(app_repo) -> None:
    commits: list[str] = []

    def commit(result) -> str | None:
        sha = app_repo.repo.commit_all("apply generated change")
        commits.append(sha or "")
        return sha

    ok_run = _orchestrator(
        app_repo, ScriptedProposer([PatchChange(text=VALID_PATCH)]), ScriptedBuild([True]), commit=commit
    ).run_attempt(RunMode.FIX)

    assert ok_run.commit == commits[0]
    assert app_repo.repo.is_clean()

    failed_run = _orchestrator(
        app_repo,
        ScriptedProposer([PatchChange(text="nothing"), ProposalError("boom")]),
        ScriptedBuild([]),
        commit=commit,
    ).run_attempt(RunMode.FIX)

    assert failed_run.commit is None
    assert len(commits) == 1


def test_run_or_raise_reports_terminal_failure(app_repo) -> None:
    proposer = ScriptedProposer([PatchChange(text="nothing"), ProposalError("boom")])

    with pytest.raises(TerminalFailure) as excinfo:
        _orchestrator(app_repo, proposer, ScriptedBuild([])).run_or_raise(RunMode.FIX)

    assert excinfo.value.details["result"]["state"] == "ABORT"


def test_unexpected_error_resets_and_propagates(app_repo) -> None:
    before = app_repo.tree()

    def exploding_build(root: Path) -> ValidationResult:
        raise RuntimeError("build host disappeared")

    orchestrator = _orchestrator(app_repo, ScriptedProposer([PatchChange(text=VALID_PATCH)]), exploding_build)

    with pytest.raises(RuntimeError):
        orchestrator.run_attempt(RunMode.FIX)

    assert app_repo.tree() == before


def test_abort_restores_untracked_and_ignored_files(make_repo) -> None:
    fixture = make_repo({"app.ts": "export const value = 1;\n", ".gitignore": ".env.local\n"})
    (fixture.root / "notes.md").write_text("operator notes\n", encoding="utf-8")
    fixture.working_copy.refresh_snapshot()
    before = fixture.tree()
    proposer = ScriptedProposer(
        [
            PatchChange(text=VALID_PATCH),
            _files(
                {
                    "app.ts": "export const value = 3;\n",
                    "notes.md": "clobbered\n",
                    ".env.local": "SECRET=1\n",
                }
            ),
        ]
    )

    result = _orchestrator(fixture, proposer, ScriptedBuild([False, False])).run_attempt(RunMode.FIX)

    assert result.state is RunState.ABORT
    assert fixture.tree() == before
    assert not (fixture.root / ".env.local").exists()


def test_run_refuses_uncommitted_tracked_edits(app_repo) -> None:
    (app_repo.root / "app.ts").write_text("export const value = 42;\n", encoding="utf-8")
    proposer = ScriptedProposer([PatchChange(text=VALID_PATCH)])

    with pytest.raises(GitError, match="uncommitted changes"):
        _orchestrator(app_repo, proposer, ScriptedBuild([True])).run_attempt(RunMode.FIX)

    assert proposer.calls == []
    assert app_repo.read("app.ts") == "export const value = 42;\n"


def test_patch_with_no_applicable_chunks_escalates_to_files(app_repo) -> None:
    before = app_repo.tree()
    trees: list[dict[str, str]] = []

    class TreeRecordingProposer(ScriptedProposer):
        def propose(self, context, mode, representation):
            trees.append(app_repo.tree())
            return super().propose(context, mode, representation)

    missing_target = (
        "diff --git a/missing.ts b/missing.ts\n--- a/missing.ts\n+++ b/missing.ts\n"
        "@@ -1 +1 @@\n-export const gone = 1;\n+export const gone = 2;\n"
    )
    proposer = TreeRecordingProposer(
        [PatchChange(text=missing_target), _files({"app.ts": "export const value = 2;\n"})]
    )

    result = _orchestrator(app_repo, proposer, ScriptedBuild([True])).run_attempt(RunMode.FIX)

    assert result.ok is True
    assert [call[1] for call in proposer.calls] == [Representation.PATCH, Representation.FILES]
    first = result.attempts[0]
    assert first.error.startswith("NoChunksApplied")
    assert first.report is not None and first.report.applied_count == 0
    assert first.report.skipped[0].reason.startswith("target-missing")
    assert trees[1] == before
