"""Narrow corrective edits for chunks that no structural strategy could apply.

The registry is an ordered tuple of :class:`Heuristic` entries. Each entry
pairs a ``match`` guard with an ``apply`` transformation; the guard is
re-evaluated on every call so a heuristic whose corrective state is already
present does nothing.
"""

from __future__ import annotations

import logging
import posixpath
import re
from dataclasses import dataclass
from pathlib import PurePosixPath
from typing import Callable

from ..changes import PatchChunk
from ..telemetry import emit_event
from .workspace import WorkingCopy

LOGGER = logging.getLogger(__name__)

_DEFAULT_EXPORT_RE = re.compile(r"export\s+default\s+|module\.exports\s*=", re.MULTILINE)
_NAMED_EXPORT_RE = re.compile(r"export\s+(?:async\s+)?(?:const|function|class|let|var)\s+([A-Za-z0-9_$]+)")
_DEFAULT_IMPORT_RE = re.compile(
    r"^(?P<lead>[ \t]*import\s+)(?P<name>[A-Za-z_$][\w$]*)(?P<mid>\s+from\s+)"
    r"(?P<quote>['\"])(?P<spec>[^'\"]+)(?P=quote)",
    re.MULTILINE,
)
_PAGE_OR_COMPONENT_RE = re.compile(r"(?:^|/)(?:pages|app|components)/|\.(?:jsx|tsx)$")

SCRIPT_SUFFIXES = (".js", ".jsx", ".ts", ".tsx", ".mjs", ".cjs")
_RESOLVE_SUFFIXES = ("", ".ts", ".tsx", ".js", ".jsx", ".mjs", "/index.ts", "/index.tsx", "/index.js", "/index.jsx")
_ALIAS_ROOTS = ("", "src/")


@dataclass(frozen=True, slots=True)
class ExportFacts:
    """Default/named export summary for a script module."""

    has_default: bool
    named: tuple[str, ...]


def export_facts(text: str | None) -> ExportFacts:
    """Summarise the exports of a JS/TS module body."""
    source = text or ""
    named = tuple(dict.fromkeys(match.group(1) for match in _NAMED_EXPORT_RE.finditer(source)))
    return ExportFacts(has_default=bool(_DEFAULT_EXPORT_RE.search(source)), named=named)


def _shim_name(path: str, facts: ExportFacts) -> str | None:
    """Pick the named export a default shim should point at."""
    stem = PurePosixPath(path).stem
    if stem == "index":
        stem = PurePosixPath(path).parent.name
    for name in facts.named:
        if name == stem or name.lower() == stem.replace("-", "").replace("_", "").lower():
            return name
    if len(facts.named) == 1:
        return facts.named[0]
    return None


def _is_script(path: str | None) -> bool:
    return bool(path) and path.endswith(SCRIPT_SUFFIXES)


def resolve_module(importer: str, specifier: str, working_copy: WorkingCopy) -> str | None:
    """Resolve a relative or ``@/`` import specifier to a known repository path."""
    if specifier.startswith("."):
        bases = [posixpath.normpath(posixpath.join(posixpath.dirname(importer), specifier))]
    elif specifier.startswith("@/") or specifier.startswith("~/"):
        bases = [root + specifier[2:] for root in _ALIAS_ROOTS]
    else:
        return None
    for base in bases:
        for suffix in _RESOLVE_SUFFIXES:
            candidate = base + suffix
            if candidate in working_copy.snapshot and _is_script(candidate):
                return candidate
    return None


# ------------------------------------------------------------ heuristics
@dataclass(frozen=True, slots=True)
class Heuristic:
    """Registered corrective transformation."""

    name: str
    match: Callable[[PatchChunk, WorkingCopy], bool]
    apply: Callable[[PatchChunk, WorkingCopy], bool]


def _match_delete_existing(chunk: PatchChunk, working_copy: WorkingCopy) -> bool:
    return chunk.operation == "delete" and bool(chunk.source_path) and working_copy.exists(chunk.source_path)


def _apply_delete_existing(chunk: PatchChunk, working_copy: WorkingCopy) -> bool:
    assert chunk.source_path is not None
    return working_copy.delete(chunk.source_path)


def reconstruct_added_body(raw_text: str) -> str | None:
    """Rebuild the file body carried by an ``add`` chunk."""
    capture = False
    newline_at_end = True
    body: list[str] = []
    for line in raw_text.split("\n"):
        if line.startswith("@@"):
            capture = True
            continue
        if not capture:
            continue
        if line.startswith("\\ No newline at end of file"):
            newline_at_end = False
            continue
        if line[:1] in {"+", " "}:
            body.append(line[1:])
    if not capture:
        return None
    if not body:
        return ""
    return "\n".join(body) + ("\n" if newline_at_end else "")


def _match_add_existing(chunk: PatchChunk, working_copy: WorkingCopy) -> bool:
    target = chunk.dest_path
    if chunk.operation != "add" or not target or not working_copy.exists(target):
        return False
    body = reconstruct_added_body(chunk.raw_text)
    return body is not None and working_copy.read_text(target) != body


def _apply_add_existing(chunk: PatchChunk, working_copy: WorkingCopy) -> bool:
    assert chunk.dest_path is not None
    body = reconstruct_added_body(chunk.raw_text)
    if body is None:
        return False
    working_copy.write_text(chunk.dest_path, body)
    return True


def _match_default_export_shim(chunk: PatchChunk, working_copy: WorkingCopy) -> bool:
    path = chunk.source_path
    if chunk.operation != "modify" or not _is_script(path) or path not in working_copy.snapshot:
        return False
    facts = export_facts(working_copy.read_text(path))
    return not facts.has_default and _shim_name(path, facts) is not None


def _apply_default_export_shim(chunk: PatchChunk, working_copy: WorkingCopy) -> bool:
    path = chunk.source_path
    assert path is not None
    content = working_copy.read_text(path)
    if content is None:
        return False
    name = _shim_name(path, export_facts(content))
    if name is None:
        return False
    if content and not content.endswith("\n"):
        content += "\n"
    working_copy.write_text(path, f"{content}export default {name};\n")
    return True


def _rewritable_imports(path: str, content: str, working_copy: WorkingCopy) -> list[tuple[re.Match[str], str]]:
    """Return default imports of local modules that only have named exports."""
    found: list[tuple[re.Match[str], str]] = []
    for match in _DEFAULT_IMPORT_RE.finditer(content):
        module = resolve_module(path, match.group("spec"), working_copy)
        if module is None:
            continue
        facts = export_facts(working_copy.read_text(module))
        if facts.has_default or not facts.named:
            continue
        local = match.group("name")
        if local in facts.named:
            found.append((match, f"{{ {local} }}"))
            continue
        target = _shim_name(module, facts)
        if target is not None:
            found.append((match, f"{{ {target} as {local} }}"))
    return found


def _match_named_import_rewrite(chunk: PatchChunk, working_copy: WorkingCopy) -> bool:
    path = chunk.source_path
    if chunk.operation != "modify" or not _is_script(path) or not _PAGE_OR_COMPONENT_RE.search(path or ""):
        return False
    content = working_copy.read_text(path) if path in working_copy.snapshot else None
    return content is not None and bool(_rewritable_imports(path, content, working_copy))


def _apply_named_import_rewrite(chunk: PatchChunk, working_copy: WorkingCopy) -> bool:
    path = chunk.source_path
    assert path is not None
    content = working_copy.read_text(path)
    if content is None:
        return False
    rewrites = _rewritable_imports(path, content, working_copy)
    if not rewrites:
        return False
    pieces: list[str] = []
    cursor = 0
    for match, clause in rewrites:
        pieces.append(content[cursor : match.start("name")])
        pieces.append(clause)
        cursor = match.end("name")
    pieces.append(content[cursor:])
    working_copy.write_text(path, "".join(pieces))
    return True


DEFAULT_HEURISTICS: tuple[Heuristic, ...] = (
    Heuristic("delete-existing-target", _match_delete_existing, _apply_delete_existing),
    Heuristic("add-existing-target", _match_add_existing, _apply_add_existing),
    Heuristic("default-export-shim", _match_default_export_shim, _apply_default_export_shim),
    Heuristic("named-import-rewrite", _match_named_import_rewrite, _apply_named_import_rewrite),
)


class HeuristicFallback:
    """Run the first registered heuristic whose guard matches a chunk."""

    def __init__(self, heuristics: tuple[Heuristic, ...] | None = None) -> None:
        self.heuristics = tuple(heuristics if heuristics is not None else DEFAULT_HEURISTICS)
        self.last_heuristic: str | None = None

    def try_fallback(self, chunk: PatchChunk, working_copy: WorkingCopy) -> bool:
        self.last_heuristic = None
        for heuristic in self.heuristics:
            if not heuristic.match(chunk, working_copy):
                continue
            if heuristic.apply(chunk, working_copy):
                self.last_heuristic = heuristic.name
                emit_event("heuristic_applied", chunk=chunk.index, path=chunk.path, heuristic=heuristic.name)
                return True
            LOGGER.debug("Heuristic %s matched %s but made no change", heuristic.name, chunk.path)
        return False


__all__ = [
    "DEFAULT_HEURISTICS",
    "ExportFacts",
    "Heuristic",
    "HeuristicFallback",
    "export_facts",
    "reconstruct_added_body",
    "resolve_module",
]
