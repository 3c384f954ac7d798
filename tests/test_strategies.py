from __future__ import annotations

from pathlib import Path

import pytest

from patchloop.errors import TargetMissing, UnparsableChunk, UnsafePath
from patchloop.tools.chunker import split
from patchloop.tools.strategies import OffsetApplyStrategy, StrategyApplier

LINES = "".join(f"line {number}\n" for number in range(1, 11))


def test_git_apply_handles_clean_patch(make_repo) -> None:
    fixture = make_repo({"notes.txt": "alpha\nbeta\ngamma\n"})
    (chunk,) = split(
        "diff --git a/notes.txt b/notes.txt\n--- a/notes.txt\n+++ b/notes.txt\n"
        "@@ -1,3 +1,3 @@\n alpha\n-beta\n+BETA\n gamma\n"
    )
    applier = StrategyApplier()

    assert applier.apply(chunk, fixture.working_copy) is True
    assert applier.last_strategy in {"git-apply-3way", "git-apply"}
    assert fixture.read("notes.txt") == "alpha\nBETA\ngamma\n"


def test_offset_strategy_relocates_drifted_hunk(make_repo) -> None:
    fixture = make_repo({"numbers.txt": LINES})
    (chunk,) = split(
        "diff --git a/numbers.txt b/numbers.txt\n--- a/numbers.txt\n+++ b/numbers.txt\n"
        "@@ -8,3 +8,3 @@\n line 2\n-line 3\n+line three\n line 4\n"
    )

    ok, detail = OffsetApplyStrategy().run(chunk, Path("unused.diff"), fixture.working_copy)

    assert ok, detail
    assert "offsets" in detail
    assert fixture.read("numbers.txt").splitlines()[1:4] == ["line 2", "line three", "line 4"]


def test_offset_strategy_tolerates_trailing_whitespace(make_repo) -> None:
    fixture = make_repo({"config.txt": "name = demo   \nvalue = 1\n"})
    (chunk,) = split(
        "diff --git a/config.txt b/config.txt\n--- a/config.txt\n+++ b/config.txt\n"
        "@@ -1,2 +1,2 @@\n name = demo\n-value = 1\n+value = 2\n"
    )

    ok, _ = OffsetApplyStrategy().run(chunk, Path("unused.diff"), fixture.working_copy)

    assert ok
    assert fixture.read("config.txt") == "name = demo\nvalue = 2\n"


def test_offset_strategy_applies_bare_hunk_marker_from_top(make_repo) -> None:
    fixture = make_repo({"app.ts": "import a from './a';\nconst x = 1;\n"})
    (chunk,) = split(
        "diff --git a/app.ts b/app.ts\n--- a/app.ts\n+++ b/app.ts\n@@\n-const x = 1;\n+const x = 2;\n"
    )

    ok, _ = OffsetApplyStrategy().run(chunk, Path("unused.diff"), fixture.working_copy)

    assert ok
    assert fixture.read("app.ts") == "import a from './a';\nconst x = 2;\n"


def test_failed_strategies_leave_file_untouched(make_repo) -> None:
    fixture = make_repo({"notes.txt": "alpha\nbeta\n"})
    (chunk,) = split(
        "diff --git a/notes.txt b/notes.txt\n--- a/notes.txt\n+++ b/notes.txt\n"
        "@@ -1,2 +1,2 @@\n missing\n-context\n+replacement\n"
    )
    applier = StrategyApplier()

    assert applier.apply(chunk, fixture.working_copy) is False
    assert len(applier.last_failures) == 3
    assert fixture.read("notes.txt") == "alpha\nbeta\n"
    assert fixture.repo.is_clean()


def test_add_chunk_creates_file_and_updates_snapshot(make_repo) -> None:
    fixture = make_repo()
    (chunk,) = split(
        "diff --git a/src/new.ts b/src/new.ts\nnew file mode 100644\n--- /dev/null\n+++ b/src/new.ts\n"
        "@@ -0,0 +1,2 @@\n+export const a = 1;\n+export const b = 2;\n"
    )

    assert StrategyApplier().apply(chunk, fixture.working_copy) is True
    assert fixture.read("src/new.ts") == "export const a = 1;\nexport const b = 2;\n"
    assert "src/new.ts" in fixture.working_copy.snapshot


def test_modify_of_missing_target_raises(make_repo) -> None:
    fixture = make_repo()
    (chunk,) = split("diff --git a/ghost.ts b/ghost.ts\n--- a/ghost.ts\n+++ b/ghost.ts\n@@ -1 +1 @@\n-a\n+b\n")

    with pytest.raises(TargetMissing):
        StrategyApplier().apply(chunk, fixture.working_copy)


def test_unsafe_and_disallowed_paths_raise(make_repo) -> None:
    fixture = make_repo({"src/a.ts": "a\n", "docs/readme.md": "r\n"}, allowed_paths=("src",))
    escaping = split("diff --git a/../evil.sh b/../evil.sh\n--- a/../evil.sh\n+++ b/../evil.sh\n@@ -1 +1 @@\n-a\n+b\n")
    outside = split(
        "diff --git a/docs/readme.md b/docs/readme.md\n--- a/docs/readme.md\n+++ b/docs/readme.md\n"
        "@@ -1 +1 @@\n-r\n+s\n"
    )

    with pytest.raises(UnsafePath):
        StrategyApplier().apply(escaping[0], fixture.working_copy)
    with pytest.raises(UnsafePath):
        StrategyApplier().apply(outside[0], fixture.working_copy)
    assert fixture.read("docs/readme.md") == "r\n"


def test_unparsable_chunk_raises(make_repo) -> None:
    fixture = make_repo()
    (chunk,) = split("diff --git broken\n@@ -1 +1 @@\n-a\n+b\n")

    with pytest.raises(UnparsableChunk):
        StrategyApplier().apply(chunk, fixture.working_copy)
