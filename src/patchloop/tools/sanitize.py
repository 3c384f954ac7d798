"""Isolate a unified diff from noisy generator output.

Generators wrap patches in Markdown fences, prepend explanations, append
"TEST PLAN" sections or loose prose, or use the ``*** Begin Patch`` dialect.
:func:`sanitize` strips all of that and returns text that starts at the first
``diff --git`` header and ends with a newline, or raises :class:`NoPatchFound`.
"""

from __future__ import annotations

import re

from ..errors import NoPatchFound

PATCH_START = "diff --git "

_PATCH_START_RE = re.compile(r"^diff --git ", re.MULTILINE)
_FENCE_RE = re.compile(r"^(```|~~~)")
_WRAPPER_RE = re.compile(r"^\s*\*\*\* (Begin|End) Patch\b.*$")
_APPLY_PATCH_FILE_RE = re.compile(r"^\*\*\* (Update|Add|Delete) File: (?P<path>.+)$")
_HUNK_LINE_PREFIXES = (" ", "+", "-", "\\")
_TRAILER_RE = re.compile(
    r"^(?:"
    r"#{1,6}\s*(?:test plan|changes summary|summary|next steps)\b.*"
    r"|```.*|~~~.*"
    r"|\*\*\* End Patch.*"
    r")$",
    re.IGNORECASE,
)


def _normalise_text(raw: str) -> str:
    text = raw.lstrip("\ufeff")
    return text.replace("\r\n", "\n").replace("\r", "\n")


def _has_patch_marker(lines: list[str]) -> bool:
    for index, line in enumerate(lines):
        if line.startswith(PATCH_START) or _APPLY_PATCH_FILE_RE.match(line):
            return True
        if line.startswith("--- ") and index + 1 < len(lines) and lines[index + 1].startswith("+++ "):
            return True
    return False


def _strip_fences(lines: list[str]) -> list[str]:
    """Drop commentary fences; unwrap fences that carry the patch itself."""
    kept: list[str] = []
    index = 0
    while index < len(lines):
        line = lines[index]
        if not _FENCE_RE.match(line):
            kept.append(line)
            index += 1
            continue
        fence = line[:3]
        end = index + 1
        while end < len(lines) and not lines[end].startswith(fence):
            end += 1
        body = lines[index + 1 : end]
        if end >= len(lines):
            # Unterminated fence: keep whatever follows the opener.
            kept.extend(body)
            break
        if _has_patch_marker(body):
            kept.extend(body)
        index = end + 1
    return kept


def _diff_header(operation: str, path: str) -> list[str]:
    clean = path.strip()
    if operation == "Add":
        return [f"diff --git a/{clean} b/{clean}", "new file mode 100644", "--- /dev/null", f"+++ b/{clean}"]
    if operation == "Delete":
        return [f"diff --git a/{clean} b/{clean}", "deleted file mode 100644", f"--- a/{clean}", "+++ /dev/null"]
    return [f"diff --git a/{clean} b/{clean}", f"--- a/{clean}", f"+++ b/{clean}"]


def _convert_apply_patch_format(lines: list[str]) -> list[str]:
    """Translate the ``*** Update File:`` dialect into ``diff --git`` sections."""
    converted: list[str] = []
    index = 0
    while index < len(lines):
        line = lines[index]
        match = _APPLY_PATCH_FILE_RE.match(line)
        if _WRAPPER_RE.match(line):
            index += 1
            continue
        if not match:
            converted.append(line)
            index += 1
            continue

        operation = match.group(1)
        index += 1
        body: list[str] = []
        while index < len(lines):
            candidate = lines[index]
            if _APPLY_PATCH_FILE_RE.match(candidate) or _WRAPPER_RE.match(candidate):
                break
            body.append(candidate)
            index += 1
        while body and not body[-1].strip():
            body.pop()

        converted.extend(_diff_header(operation, match.group("path")))
        if operation == "Add" and body and not body[0].startswith("@@"):
            converted.append(f"@@ -0,0 +1,{len(body)} @@")
        elif operation == "Update" and body and not any(item.startswith("@@") for item in body):
            converted.append("@@")
        converted.extend(body)
    return converted


def _strip_path_operand(raw: str) -> str:
    return raw.split("\t", 1)[0].strip()


def _synthesise_git_headers(lines: list[str]) -> list[str]:
    """Prefix bare ``---``/``+++`` file headers with a ``diff --git`` line."""
    result: list[str] = []
    for index, line in enumerate(lines):
        next_line = lines[index + 1] if index + 1 < len(lines) else ""
        if line.startswith("--- ") and next_line.startswith("+++ ") and not _inside_git_section(result):
            old = _strip_path_operand(line[4:])
            new = _strip_path_operand(next_line[4:])
            old_name = old[2:] if old.startswith("a/") else old
            new_name = new[2:] if new.startswith("b/") else new
            if old == "/dev/null":
                result.extend([f"diff --git a/{new_name} b/{new_name}", "new file mode 100644"])
            elif new == "/dev/null":
                result.extend([f"diff --git a/{old_name} b/{old_name}", "deleted file mode 100644"])
            else:
                result.append(f"diff --git a/{old_name} b/{new_name}")
        result.append(line)
    return result


def _inside_git_section(previous: list[str]) -> bool:
    """Return True when the nearest structural line above is a git header."""
    for candidate in reversed(previous):
        if candidate.startswith(PATCH_START):
            return True
        if candidate.startswith("@@") or candidate.startswith("+++ "):
            return False
    return False


def _truncate_trailers(lines: list[str]) -> list[str]:
    """Cut at the first trailer heading, or at prose once a hunk has started."""
    in_hunk = False
    for index, line in enumerate(lines):
        if index and _TRAILER_RE.match(line):
            return lines[:index]
        if line.startswith("@@"):
            in_hunk = True
        elif line.startswith(PATCH_START):
            in_hunk = False
        elif in_hunk and line and not line.startswith(_HUNK_LINE_PREFIXES):
            return lines[:index]
    return lines


def sanitize(raw: str | None) -> str:
    """Return the patch payload embedded in ``raw``.

    Raises :class:`NoPatchFound` when nothing resembling a unified diff is
    present.
    """

    text = _normalise_text(str(raw or ""))
    lines = _strip_fences(text.split("\n"))
    lines = _convert_apply_patch_format(lines)
    lines = _synthesise_git_headers(lines)

    text = "\n".join(lines)
    match = _PATCH_START_RE.search(text)
    if match is None:
        raise NoPatchFound(
            "Generator output did not contain a unified git diff.",
            details={"head": str(raw or "")[:200]},
        )

    lines = _truncate_trailers(text[match.start() :].split("\n"))
    while lines and not lines[-1].strip():
        lines.pop()
    return "\n".join(lines) + "\n"


__all__ = ["PATCH_START", "sanitize"]
