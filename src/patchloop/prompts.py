"""Prompt templates and render helpers for proposal requests."""

from __future__ import annotations

from typing import Iterable, Mapping, Sequence

from .changes import Representation, RunMode

PATCH_SYSTEM_PROMPT = """\
You are a code patch generator for an automated integration loop.

## Absolute output rules
- Output ONLY a raw unified git diff that `git apply` can apply at the repository root.
- The very first line must start with `diff --git a/<path> b/<path>`.
- For every file you touch include both `--- a/<path>` and `+++ b/<path>` and at least one `@@` hunk.
- Use LF newlines and end the patch with a newline.
- Do not include code fences or prose inside the diff.
- Do not emit `create mode`, `delete mode`, `similarity index`, `rename from/to` or `Binary files differ` lines.
- Allowed operations: modify, add (`--- /dev/null` -> `+++ b/<path>`), delete (`--- a/<path>` -> `+++ /dev/null`).
- Every imported path must exist in the repository tree, or be added in the same patch.
- Keep each file's module style.

## Safety rules
- Do not add external dependencies or edit lockfiles.
- Do not rename or move files.
- Only delete files that exist and that the logs clearly implicate.

## Known safe patterns
- If callers default-import a module that only has a named export of the same name, append
  `export default <name>;` to that module.

After the diff you may append `# TEST PLAN`, `# CHANGES SUMMARY` and `# NEXT STEPS` sections.
"""

FILES_SYSTEM_PROMPT = """\
You are a code generator for an automated integration loop. Your previous change could not be
applied or did not build, so this time return complete file bodies instead of a diff.

Return only JSON, with no markdown fences or commentary:
{"files": [{"path": "<repo-relative path>", "content": "<entire new file content>"}]}

- Paths are relative to the repository root and must not contain `..`.
- `content` is the full file, not a fragment; unchanged files must be omitted.
- Keep each file's module style and do not add external dependencies.
"""

MODE_BRIEFS: Mapping[RunMode, str] = {
    RunMode.FIX: "Fix the failures shown in the logs with the smallest coherent change.",
    RunMode.FEATURE: "No failures were detected. Implement the task as a small, meaningful improvement.",
    RunMode.UPGRADE: "Upgrade the code named in the task while keeping the build green.",
}


def system_prompt_for(representation: Representation) -> str:
    if representation is Representation.FILES:
        return FILES_SYSTEM_PROMPT
    return PATCH_SYSTEM_PROMPT


def render_mode_brief(mode: RunMode, task: str = "") -> str:
    lines = [f"## Mode\n{mode.value}: {MODE_BRIEFS[mode]}"]
    if task.strip():
        lines.append(f"## Task\n{task.strip()}")
    return "\n\n".join(lines)


def render_repo_tree(paths: Iterable[str], *, limit: int = 400) -> str:
    ordered = sorted(paths)
    body = "\n".join(ordered[:limit])
    if len(ordered) > limit:
        body += f"\n... ({len(ordered) - limit} more)"
    return f"## Repository tree\n{body or '(empty)'}"


def render_file_bodies(files: Sequence[tuple[str, str, str]]) -> str:
    """Format ``(path, export summary, content)`` triples."""
    if not files:
        return ""
    blocks = []
    for path, facts, content in files:
        header = f"### {path}" + (f" ({facts})" if facts else "")
        blocks.append(f"{header}\n{content}")
    return "## Files\n" + "\n\n".join(blocks)


def render_issues(issues: Sequence[str]) -> str:
    if not issues:
        return ""
    return "## Issues\n" + "\n".join(f"- {issue}" for issue in issues)


def render_logs(logs: str) -> str:
    if not logs.strip():
        return ""
    return f"## Deployment logs\n{logs.strip()}"


def render_validation_feedback(log: str) -> str:
    """Describe the previous attempt's build failure for a corrective request."""
    if not log.strip():
        return ""
    return (
        "## Previous attempt failed validation\n"
        "The working tree was reset. Fix the cause shown below and return the complete corrected files.\n"
        f"{log.strip()}"
    )


__all__ = [
    "FILES_SYSTEM_PROMPT",
    "MODE_BRIEFS",
    "PATCH_SYSTEM_PROMPT",
    "render_file_bodies",
    "render_issues",
    "render_logs",
    "render_mode_brief",
    "render_repo_tree",
    "render_validation_feedback",
    "system_prompt_for",
]
