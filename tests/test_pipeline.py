from __future__ import annotations

import textwrap

import pytest

from patchloop.changes import FileEntry, FilesChange, PatchChange
from patchloop.errors import NoChunksApplied, NoPatchFound
from patchloop.pipeline import apply_candidate, apply_patch_text
from patchloop.tools.files import FULL_FILE_STRATEGY, apply_files


def test_modify_applies_and_delete_of_missing_file_is_skipped(make_repo) -> None:
    fixture = make_repo({"a.ts": "export const a = 1;\n"})
    patch = textwrap.dedent(
        """\
        ```diff
        diff --git a/a.ts b/a.ts
        --- a/a.ts
        +++ b/a.ts
        @@ -1 +1 @@
        -export const a = 1;
        +export const a = 2;
        diff --git a/b.ts b/b.ts
        deleted file mode 100644
        --- a/b.ts
        +++ /dev/null
        @@ -1 +0,0 @@
        -export const b = 1;
        ```
        """
    )

    report = apply_patch_text(patch, fixture.working_copy)

    assert report.applied_count == 1
    assert [item.path for item in report.applied] == ["a.ts"]
    assert [item.path for item in report.skipped] == ["b.ts"]
    assert report.skipped[0].reason.startswith("target-missing")
    assert fixture.read("a.ts") == "export const a = 2;\n"


def test_later_chunks_see_files_added_by_earlier_chunks(make_repo) -> None:
    fixture = make_repo()
    patch = (
        "diff --git a/src/util.ts b/src/util.ts\nnew file mode 100644\n--- /dev/null\n+++ b/src/util.ts\n"
        "@@ -0,0 +1 @@\n+export const one = 1;\n"
        "diff --git a/src/util.ts b/src/util.ts\n--- a/src/util.ts\n+++ b/src/util.ts\n"
        "@@ -1 +1,2 @@\n export const one = 1;\n+export const two = 2;\n"
    )

    report = apply_patch_text(patch, fixture.working_copy)

    assert report.applied_count == 2
    assert fixture.read("src/util.ts") == "export const one = 1;\nexport const two = 2;\n"


def test_prose_output_raises_before_touching_the_tree(make_repo) -> None:
    fixture = make_repo({"a.ts": "x\n"})
    before = fixture.tree()

    with pytest.raises(NoPatchFound):
        apply_candidate(PatchChange(text="I think you should rename the variable."), fixture.working_copy)

    assert fixture.tree() == before


def test_patch_with_only_skipped_chunks_raises(make_repo) -> None:
    fixture = make_repo()

    with pytest.raises(NoChunksApplied) as excinfo:
        apply_patch_text("diff --git a/gone.ts b/gone.ts\n--- a/gone.ts\n+++ b/gone.ts\n@@ -1 +1 @@\n-a\n+b\n", fixture.working_copy)

    assert excinfo.value.report.skipped[0].path == "gone.ts"


def test_files_change_writes_bodies_and_skips_unsafe_and_unchanged(make_repo) -> None:
    fixture = make_repo({"src/a.ts": "same\n"})
    change = FilesChange(
        entries=(
            FileEntry(path="src/a.ts", content="same\n"),
            FileEntry(path="../outside.ts", content="nope\n"),
            FileEntry(path="./src/b.ts", content="fresh\n"),
        )
    )

    outcomes = apply_files(change, fixture.working_copy)

    assert [item.result for item in outcomes] == ["skipped", "skipped", "applied"]
    assert outcomes[0].reason.startswith("unchanged")
    assert outcomes[1].reason.startswith("unsafe-path")
    assert outcomes[2].path == "src/b.ts"
    assert outcomes[2].strategy == FULL_FILE_STRATEGY
    assert fixture.read("src/b.ts") == "fresh\n"
    assert not (fixture.root.parent / "outside.ts").exists()


def test_apply_candidate_dispatches_files_change(make_repo) -> None:
    fixture = make_repo()

    report = apply_candidate(FilesChange(entries=(FileEntry("docs/x.md", "# x\n"),)), fixture.working_copy)

    assert report.touched_paths == ("docs/x.md",)


def test_apply_candidate_rejects_unknown_payload(make_repo) -> None:
    fixture = make_repo()

    with pytest.raises(TypeError):
        apply_candidate({"files": []}, fixture.working_copy)  # type: ignore[arg-type]
