from __future__ import annotations

import pytest

from patchloop.tools.chunker import split
from patchloop.tools.strategies import StrategyApplier
from patchloop.tools.vcs import GitError


@pytest.fixture()
def notes_repo(make_repo):
    fixture = make_repo({"app.ts": "export const value = 1;\n", ".gitignore": "*.log\n"})
    (fixture.root / "notes.md").write_text("first\nsecond\n", encoding="utf-8")
    fixture.working_copy.refresh_snapshot()
    return fixture


def test_reset_restores_deleted_untracked_file(notes_repo) -> None:
    working_copy = notes_repo.working_copy
    working_copy.checkpoint()

    assert working_copy.delete("notes.md") is True
    working_copy.reset()

    assert notes_repo.read("notes.md") == "first\nsecond\n"
    assert "notes.md" in working_copy.snapshot


def test_reset_removes_new_ignored_file_and_its_directory(notes_repo) -> None:
    working_copy = notes_repo.working_copy
    working_copy.checkpoint()

    working_copy.write_text("logs/build.log", "noise\n")
    working_copy.reset()

    assert not (notes_repo.root / "logs").exists()


def test_reset_restores_untracked_file_changed_by_git_apply(notes_repo) -> None:
    working_copy = notes_repo.working_copy
    working_copy.checkpoint()
    (chunk,) = split(
        "diff --git a/notes.md b/notes.md\n--- a/notes.md\n+++ b/notes.md\n"
        "@@ -1,2 +1,2 @@\n first\n-second\n+changed\n"
    )

    assert StrategyApplier().apply(chunk, working_copy) is True
    assert notes_repo.read("notes.md") == "first\nchanged\n"

    working_copy.reset()

    assert notes_repo.read("notes.md") == "first\nsecond\n"


def test_tracked_files_are_left_to_git(notes_repo) -> None:
    checkpoint = notes_repo.working_copy.checkpoint()

    notes_repo.working_copy.write_text("app.ts", "export const value = 2;\n")

    assert "app.ts" in checkpoint.tracked
    assert "app.ts" not in checkpoint.preserved
    notes_repo.working_copy.reset()
    assert notes_repo.read("app.ts") == "export const value = 1;\n"


def test_checkpoint_refuses_dirty_tracked_tree(notes_repo) -> None:
    (notes_repo.root / "app.ts").write_text("local edit\n", encoding="utf-8")

    with pytest.raises(GitError, match="app.ts"):
        notes_repo.working_copy.checkpoint()

    assert notes_repo.read("app.ts") == "local edit\n"


def test_writes_before_checkpoint_are_not_recorded(notes_repo) -> None:
    notes_repo.working_copy.write_text("scratch.md", "x\n")
    checkpoint = notes_repo.working_copy.checkpoint()

    assert checkpoint.preserved == {}
    assert "scratch.md" in checkpoint.baseline_untracked
