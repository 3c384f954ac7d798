"""Structural application of a single patch chunk.

Strategies are tried in order until one succeeds:

1. ``git apply --3way --whitespace=fix``: context tolerant with a three-way merge,
2. ``git apply --whitespace=fix``: strict,
3. an in-process line-offset applier that relocates hunks near their declared
   line numbers.

Every strategy starts from the same on-disk state; files touched by a failed
strategy are restored before the next one runs.
"""

from __future__ import annotations

import logging
import re
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol, Sequence

from ..changes import PatchChunk
from ..errors import TargetMissing, UnparsableChunk, UnsafePath
from ..telemetry import emit_event
from .workspace import WorkingCopy
from .chunker import HUNK_HEADER

LOGGER = logging.getLogger(__name__)

_GIT_APPLY_ERROR_RE = re.compile(r"^error: (?P<message>.+)$", re.MULTILINE)


class Strategy(Protocol):
    """Structural application strategy for one chunk."""

    name: str

    def run(self, chunk: PatchChunk, patch_file: Path, working_copy: WorkingCopy) -> tuple[bool, str]:
        ...


@dataclass(frozen=True, slots=True)
class GitApplyStrategy:
    """Run ``git apply`` with fixed flags after a ``--check`` dry run."""

    name: str
    args: tuple[str, ...]

    def run(self, chunk: PatchChunk, patch_file: Path, working_copy: WorkingCopy) -> tuple[bool, str]:
        repo = working_copy.repo
        dry_run = repo.git("apply", "--check", *self.args, str(patch_file), check=False)
        if dry_run.returncode != 0:
            return False, _summarise_git_error(dry_run.stderr or dry_run.stdout)
        result = repo.git("apply", *self.args, str(patch_file), check=False)
        if result.returncode != 0:
            return False, _summarise_git_error(result.stderr or result.stdout)
        return True, (result.stderr or result.stdout).strip()


def _summarise_git_error(output: str) -> str:
    messages = [match.group("message").strip() for match in _GIT_APPLY_ERROR_RE.finditer(output or "")]
    if messages:
        return "; ".join(messages[:3])
    stripped = (output or "").strip()
    return stripped.splitlines()[0] if stripped else "git apply failed"


# ---------------------------------------------------------------- offset apply
@dataclass(slots=True)
class _Hunk:
    old_start: int | None
    old_lines: list[str] = field(default_factory=list)
    new_lines: list[str] = field(default_factory=list)
    new_missing_newline: bool = False


def _parse_hunks(raw_text: str) -> list[_Hunk]:
    hunks: list[_Hunk] = []
    current: _Hunk | None = None
    last_prefix = ""
    for line in raw_text.rstrip("\n").split("\n"):
        if line.startswith("@@"):
            match = HUNK_HEADER.match(line)
            current = _Hunk(old_start=int(match.group("old_start")) if match else None)
            hunks.append(current)
            continue
        if current is None:
            continue
        if line.startswith("\\"):
            if last_prefix in {"+", " "}:
                current.new_missing_newline = True
            continue
        prefix, body = line[:1], line[1:]
        if prefix == "+":
            current.new_lines.append(body)
        elif prefix == "-":
            current.old_lines.append(body)
        elif prefix == " " or line == "":
            current.old_lines.append(body)
            current.new_lines.append(body)
        else:
            current = None
            continue
        last_prefix = prefix or " "
    return hunks


def _matches(lines: list[str], position: int, block: list[str], *, loose: bool) -> bool:
    if position < 0 or position + len(block) > len(lines):
        return False
    window = lines[position : position + len(block)]
    if loose:
        return [item.rstrip() for item in window] == [item.rstrip() for item in block]
    return window == block


def _locate(lines: list[str], block: list[str], expected: int, floor: int) -> int | None:
    """Find ``block`` in ``lines`` nearest to ``expected``, never before ``floor``."""
    expected = max(floor, min(expected, len(lines)))
    if not block:
        return expected
    limit = len(lines) - len(block)
    for loose in (False, True):
        for distance in range(0, max(limit, 0) + len(lines) + 1):
            for candidate in (expected - distance, expected + distance):
                if candidate < floor or candidate > limit:
                    continue
                if _matches(lines, candidate, block, loose=loose):
                    return candidate
            if expected - distance < floor and expected + distance > limit:
                break
    return None


def _split_content(text: str) -> tuple[list[str], bool]:
    if not text:
        return [], True
    return text.split("\n")[:-1] if text.endswith("\n") else text.split("\n"), text.endswith("\n")


def _join_content(lines: list[str], trailing_newline: bool) -> str:
    if not lines:
        return ""
    return "\n".join(lines) + ("\n" if trailing_newline else "")


@dataclass(frozen=True, slots=True)
class OffsetApplyStrategy:
    """Apply hunks in-process, relocating them when line numbers drifted."""

    name: str = "line-offset"

    def run(self, chunk: PatchChunk, patch_file: Path, working_copy: WorkingCopy) -> tuple[bool, str]:
        hunks = _parse_hunks(chunk.raw_text)

        if chunk.operation == "add":
            target = chunk.dest_path or chunk.source_path
            if target is None or working_copy.exists(target):
                return False, "destination already exists"
            lines = [line for hunk in hunks for line in hunk.new_lines]
            missing_newline = bool(hunks) and hunks[-1].new_missing_newline
            working_copy.write_text(target, _join_content(lines, not missing_newline))
            return True, "created file"

        source = chunk.source_path or chunk.dest_path
        assert source is not None
        current = working_copy.read_text(source)
        if current is None:
            return False, "target is not readable"
        lines, trailing_newline = _split_content(current)

        if chunk.operation == "delete":
            expected = [line for hunk in hunks for line in hunk.old_lines]
            if hunks and [item.rstrip() for item in expected] != [item.rstrip() for item in lines]:
                return False, "delete hunk does not match file content"
            working_copy.delete(source)
            return True, "deleted file"

        if not hunks and not chunk.is_rename:
            return False, "chunk has no hunks"

        delta = 0
        floor = 0
        offsets: list[int] = []
        for hunk in hunks:
            expected = (hunk.old_start - 1 if hunk.old_start else 0) + delta
            if hunk.old_start is None:
                expected = floor
            position = _locate(lines, hunk.old_lines, expected, floor)
            if position is None:
                return False, f"hunk at line {hunk.old_start or '?'} not found"
            offsets.append(position - expected)
            lines[position : position + len(hunk.old_lines)] = hunk.new_lines
            floor = position + len(hunk.new_lines)
            delta += len(hunk.new_lines) - len(hunk.old_lines)
            if hunk.new_missing_newline:
                trailing_newline = False

        destination = chunk.dest_path or source
        working_copy.write_text(destination, _join_content(lines, trailing_newline))
        if destination != source:
            working_copy.delete(source)
        shifted = [offset for offset in offsets if offset]
        return True, f"applied {len(hunks)} hunk(s)" + (f" with offsets {shifted}" if shifted else "")


DEFAULT_STRATEGIES: tuple[Strategy, ...] = (
    GitApplyStrategy(name="git-apply-3way", args=("--3way", "--whitespace=fix")),
    GitApplyStrategy(name="git-apply", args=("--whitespace=fix",)),
    OffsetApplyStrategy(),
)


# ---------------------------------------------------------------- applier
def _chunk_paths(chunk: PatchChunk) -> list[str]:
    return [path for path in dict.fromkeys((chunk.source_path, chunk.dest_path)) if path]


def _capture(working_copy: WorkingCopy, paths: Sequence[str]) -> dict[str, bytes | None]:
    state: dict[str, bytes | None] = {}
    for path in paths:
        target = working_copy.resolve(path)
        state[path] = target.read_bytes() if target.is_file() else None
    return state


def _restore(working_copy: WorkingCopy, state: dict[str, bytes | None]) -> None:
    for path, content in state.items():
        target = working_copy.resolve(path)
        if content is None:
            if target.is_file():
                target.unlink()
            continue
        current = target.read_bytes() if target.is_file() else None
        if current != content:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(content)
    if state:
        working_copy.repo.git("reset", "--quiet", "--", *state.keys(), check=False)


class StrategyApplier:
    """Apply one chunk using the first structural strategy that succeeds."""

    def __init__(self, strategies: Sequence[Strategy] | None = None) -> None:
        self.strategies: tuple[Strategy, ...] = tuple(strategies or DEFAULT_STRATEGIES)
        self.last_strategy: str | None = None
        self.last_failures: list[str] = []

    def check_preconditions(self, chunk: PatchChunk, working_copy: WorkingCopy) -> None:
        """Raise a :class:`ChunkError` subclass when the chunk cannot be attempted."""
        if not chunk.parsable:
            raise UnparsableChunk("chunk header does not name any path")
        for path in _chunk_paths(chunk):
            if not working_copy.is_path_safe(path):
                raise UnsafePath(f"unsafe path {path}")
            if not working_copy.is_path_allowed(path):
                raise UnsafePath(f"{path} is outside allowed paths")
        if chunk.operation in {"delete", "modify"}:
            source = chunk.source_path or chunk.dest_path
            if source not in working_copy.snapshot:
                raise TargetMissing("target path does not exist", details={"path": source})

    def apply(self, chunk: PatchChunk, working_copy: WorkingCopy) -> bool:
        """Return True when a structural strategy applied ``chunk``."""
        self.last_strategy = None
        self.last_failures = []
        self.check_preconditions(chunk, working_copy)

        paths = _chunk_paths(chunk)
        working_copy.preserve(paths)
        with tempfile.TemporaryDirectory(prefix="patchloop-chunk-") as scratch:
            patch_file = Path(scratch) / f"chunk-{chunk.index}.diff"
            patch_file.write_text(chunk.raw_text, encoding="utf-8", newline="\n")

            for strategy in self.strategies:
                state = _capture(working_copy, paths)
                try:
                    ok, detail = strategy.run(chunk, patch_file, working_copy)
                except OSError as error:
                    ok, detail = False, f"{type(error).__name__}: {error}"
                if ok:
                    self._record_success(chunk, working_copy)
                    self.last_strategy = strategy.name
                    emit_event(
                        "chunk_strategy_succeeded",
                        chunk=chunk.index,
                        path=chunk.path,
                        strategy=strategy.name,
                        detail=detail,
                    )
                    return True
                _restore(working_copy, state)
                self.last_failures.append(f"{strategy.name}: {detail}")
                LOGGER.debug("Strategy %s failed for %s: %s", strategy.name, chunk.path, detail)

        emit_event("chunk_strategies_exhausted", chunk=chunk.index, path=chunk.path, failures=self.last_failures)
        return False

    @staticmethod
    def _record_success(chunk: PatchChunk, working_copy: WorkingCopy) -> None:
        snapshot = working_copy.snapshot
        if chunk.operation == "add" and chunk.dest_path:
            snapshot.add(chunk.dest_path)
        elif chunk.operation == "delete" and chunk.source_path:
            snapshot.discard(chunk.source_path)
        elif chunk.is_rename:
            snapshot.discard(chunk.source_path or "")
            snapshot.add(chunk.dest_path or "")


__all__ = [
    "DEFAULT_STRATEGIES",
    "GitApplyStrategy",
    "OffsetApplyStrategy",
    "Strategy",
    "StrategyApplier",
]
