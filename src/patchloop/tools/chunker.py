"""Split a sanitized patch into per-file chunks."""

from __future__ import annotations

import re

from ..changes import ChunkOperation, PatchChunk
from .sanitize import PATCH_START

_GIT_HEADER_AB = re.compile(r"^diff --git a/(?P<src>.+?) b/(?P<dst>.+?)\s*$")
_GIT_HEADER_PLAIN = re.compile(r"^diff --git (?P<src>\S+) (?P<dst>\S+)\s*$")
HUNK_HEADER = re.compile(
    r"^@@ -(?P<old_start>\d+)(?:,(?P<old_count>\d+))? "
    r"\+(?P<new_start>\d+)(?:,(?P<new_count>\d+))? @@(?P<section>.*)$"
)
_HUNK_BODY_PREFIXES = (" ", "+", "-", "\\")


def _normalise_diff_path(entry: str | None) -> str | None:
    """Translate a header operand into a repository-relative path."""
    if entry is None:
        return None
    entry = entry.strip().strip('"')
    if not entry or entry == "/dev/null":
        return None
    if entry.startswith("a/") or entry.startswith("b/"):
        entry = entry[2:]
    return entry or None


def parse_header(header: str) -> tuple[str | None, str | None]:
    """Return the source and destination paths named by a ``diff --git`` line."""
    match = _GIT_HEADER_AB.match(header) or _GIT_HEADER_PLAIN.match(header)
    if not match:
        return None, None
    return _normalise_diff_path(match.group("src")), _normalise_diff_path(match.group("dst"))


def detect_operation(lines: list[str]) -> ChunkOperation:
    """Classify a chunk as add, delete or modify from its header lines."""
    for line in lines[1:]:
        if line.startswith("@@"):
            break
        if line.startswith("deleted file mode") or line.rstrip() == "+++ /dev/null":
            return "delete"
        if line.startswith("new file mode") or line.rstrip() == "--- /dev/null":
            return "add"
    return "modify"


def _split_sections(text: str) -> list[list[str]]:
    sections: list[list[str]] = []
    current: list[str] | None = None
    for line in text.split("\n"):
        if line.startswith(PATCH_START):
            current = [line]
            sections.append(current)
        elif current is not None:
            current.append(line)
    return sections


def _trim_dangling_hunks(lines: list[str]) -> tuple[list[str], list[str]]:
    """Drop ``@@`` headers that carry no body lines."""
    kept: list[str] = []
    notes: list[str] = []
    for index, line in enumerate(lines):
        if line.startswith("@@"):
            follower = lines[index + 1] if index + 1 < len(lines) else None
            if follower is None or follower.startswith("@@"):
                notes.append(f"dropped empty hunk '{line.strip()}'")
                continue
        kept.append(line)
    return kept, notes


def _format_range(start: str, original_count: str | None, actual: int) -> str:
    if original_count is None and actual == 1:
        return start
    return f"{start},{actual}"


def _recount_hunks(lines: list[str]) -> tuple[list[str], list[str]]:
    """Rewrite ``@@`` line counts to match the hunk bodies that follow."""
    result: list[str] = []
    notes: list[str] = []
    index = 0
    while index < len(lines):
        line = lines[index]
        match = HUNK_HEADER.match(line)
        if not match:
            result.append(line)
            index += 1
            continue

        header_position = len(result)
        result.append(line)
        seen_removed = 0
        seen_added = 0
        index += 1
        while index < len(lines):
            candidate = lines[index]
            if candidate.startswith("@@") or not (candidate == "" or candidate.startswith(_HUNK_BODY_PREFIXES)):
                break
            prefix = candidate[:1]
            if prefix == "+":
                seen_added += 1
            elif prefix == "-":
                seen_removed += 1
            elif prefix != "\\":
                seen_added += 1
                seen_removed += 1
            result.append(candidate)
            index += 1

        expected_removed = int(match.group("old_count")) if match.group("old_count") is not None else 1
        expected_added = int(match.group("new_count")) if match.group("new_count") is not None else 1
        if (seen_removed, seen_added) != (expected_removed, expected_added):
            notes.append(
                f"adjusted hunk counts (-{expected_removed}/+{expected_added} -> -{seen_removed}/+{seen_added})"
            )
            result[header_position] = (
                f"@@ -{_format_range(match.group('old_start'), match.group('old_count'), seen_removed)} "
                f"+{_format_range(match.group('new_start'), match.group('new_count'), seen_added)} @@"
                f"{match.group('section')}"
            )
    return result, notes


def split(patch_text: str) -> list[PatchChunk]:
    """Split ``patch_text`` into one :class:`PatchChunk` per ``diff --git`` header.

    Chunks keep their header line, appear in source order, and have their hunk
    counts repaired. A header without recognisable paths yields a chunk with
    ``None`` paths rather than an error.
    """

    chunks: list[PatchChunk] = []
    for index, lines in enumerate(_split_sections(patch_text)):
        while len(lines) > 1 and not lines[-1].strip():
            lines.pop()
        source, dest = parse_header(lines[0])
        operation = detect_operation(lines)
        lines, trimmed = _trim_dangling_hunks(lines)
        lines, recounted = _recount_hunks(lines)
        chunks.append(
            PatchChunk(
                index=index,
                source_path=source,
                dest_path=dest,
                operation=operation,
                raw_text="\n".join(lines) + "\n",
                adjustments=tuple(trimmed + recounted),
            )
        )
    return chunks


__all__ = ["HUNK_HEADER", "detect_operation", "parse_header", "split"]
