from __future__ import annotations

import textwrap

from patchloop.tools.chunker import detect_operation, parse_header, split

THREE_FILE_PATCH = textwrap.dedent(
    """\
    diff --git a/src/a.ts b/src/a.ts
    --- a/src/a.ts
    +++ b/src/a.ts
    @@ -1 +1 @@
    -export const a = 1;
    +export const a = 2;
    diff --git a/src/new.ts b/src/new.ts
    new file mode 100644
    --- /dev/null
    +++ b/src/new.ts
    @@ -0,0 +1 @@
    +export const fresh = true;
    diff --git a/src/old.ts b/src/old.ts
    deleted file mode 100644
    --- a/src/old.ts
    +++ /dev/null
    @@ -1 +0,0 @@
    -export const old = true;
    """
)


def test_split_returns_one_chunk_per_header_in_source_order() -> None:
    chunks = split(THREE_FILE_PATCH)

    assert [chunk.index for chunk in chunks] == [0, 1, 2]
    assert [chunk.operation for chunk in chunks] == ["modify", "add", "delete"]
    assert [chunk.path for chunk in chunks] == ["src/a.ts", "src/new.ts", "src/old.ts"]
    for chunk in chunks:
        assert chunk.raw_text.count("diff --git ") == 1
        assert chunk.raw_text.startswith("diff --git ")
        assert chunk.raw_text.endswith("\n")


def test_split_keeps_unparsable_header_as_chunk() -> None:
    chunks = split("diff --git broken\n@@ -1 +1 @@\n-a\n+b\n")

    assert len(chunks) == 1
    assert chunks[0].parsable is False
    assert chunks[0].path is None


def test_split_repairs_hunk_counts() -> None:
    patch = "diff --git a/x.txt b/x.txt\n--- a/x.txt\n+++ b/x.txt\n@@ -1,5 +1,9 @@\n-a\n+b\n"

    (chunk,) = split(patch)

    assert "@@ -1,1 +1,1 @@\n" in chunk.raw_text
    assert any("adjusted hunk counts" in note for note in chunk.adjustments)


def test_split_drops_empty_hunks() -> None:
    patch = "diff --git a/x.txt b/x.txt\n--- a/x.txt\n+++ b/x.txt\n@@ -1 +1 @@\n@@ -3 +3 @@\n-c\n+d\n"

    (chunk,) = split(patch)

    assert "@@ -1 +1 @@" not in chunk.raw_text
    assert chunk.adjustments[0].startswith("dropped empty hunk")


def test_parse_header_strips_prefixes_and_dev_null() -> None:
    assert parse_header("diff --git a/src/a.ts b/src/b.ts") == ("src/a.ts", "src/b.ts")
    assert parse_header("diff --git /dev/null b/src/b.ts") == (None, "src/b.ts")
    assert parse_header("diff --git") == (None, None)


def test_detect_operation_reads_file_mode_lines() -> None:
    assert detect_operation(["diff --git a/x b/x", "--- /dev/null", "+++ b/x"]) == "add"
    assert detect_operation(["diff --git a/x b/x", "--- a/x", "+++ /dev/null"]) == "delete"
    assert detect_operation(["diff --git a/x b/x", "--- a/x", "+++ b/x", "@@ -1 +1 @@"]) == "modify"


def test_rename_chunk_is_reported_as_rename() -> None:
    (chunk,) = split("diff --git a/old.txt b/new.txt\nsimilarity index 100%\nrename from old.txt\nrename to new.txt\n")

    assert chunk.is_rename
    assert chunk.source_path == "old.txt"
    assert chunk.dest_path == "new.txt"
