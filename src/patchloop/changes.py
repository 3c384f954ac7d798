"""Typed payloads flowing through a single integration run."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Literal, Union

ChunkOperation = Literal["add", "modify", "delete"]
OutcomeKind = Literal["applied", "skipped", "heuristic-applied"]


class RunMode(str, Enum):
    """Intent passed to every proposal request of a run."""

    FIX = "FIX"
    FEATURE = "FEATURE"
    UPGRADE = "UPGRADE"


class Representation(str, Enum):
    """Shape requested from the generator."""

    PATCH = "patch"
    FILES = "files"


@dataclass(frozen=True, slots=True)
class PatchChange:
    """Candidate change expressed as unified diff text."""

    text: str

    @property
    def representation(self) -> Representation:
        return Representation.PATCH


@dataclass(frozen=True, slots=True)
class FileEntry:
    """Full replacement body for one repository file."""

    path: str
    content: str


@dataclass(frozen=True, slots=True)
class FilesChange:
    """Candidate change expressed as complete file bodies."""

    entries: tuple[FileEntry, ...]

    @property
    def representation(self) -> Representation:
        return Representation.FILES


CandidateChange = Union[PatchChange, FilesChange]


@dataclass(slots=True)
class PatchChunk:
    """Portion of a patch that touches exactly one file."""

    index: int
    source_path: str | None
    dest_path: str | None
    operation: ChunkOperation
    raw_text: str
    adjustments: tuple[str, ...] = ()

    @property
    def parsable(self) -> bool:
        return self.source_path is not None or self.dest_path is not None

    @property
    def path(self) -> str | None:
        """Return the most descriptive path for diagnostics."""
        if self.operation == "add":
            return self.dest_path or self.source_path
        return self.source_path or self.dest_path

    @property
    def is_rename(self) -> bool:
        return (
            self.operation == "modify"
            and self.source_path is not None
            and self.dest_path is not None
            and self.source_path != self.dest_path
        )


@dataclass(frozen=True, slots=True)
class ApplyOutcome:
    """Result of applying one chunk (or one file entry)."""

    chunk_index: int
    path: str | None
    result: OutcomeKind
    reason: str = ""
    strategy: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "chunk_index": self.chunk_index,
            "path": self.path,
            "result": self.result,
            "reason": self.reason,
            "strategy": self.strategy,
        }


@dataclass(slots=True)
class RunReport:
    """Aggregated per-chunk outcomes for one attempt."""

    applied_count: int = 0
    applied: list[ApplyOutcome] = field(default_factory=list)
    skipped: list[ApplyOutcome] = field(default_factory=list)
    heuristics: list[ApplyOutcome] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.applied_count >= 1

    @property
    def touched_paths(self) -> tuple[str, ...]:
        paths = {item.path for item in (*self.applied, *self.heuristics) if item.path}
        return tuple(sorted(paths))

    def format_summary(self) -> str:
        """Return a human readable summary of the report."""
        lines = [f"Applied chunks: {self.applied_count}"]
        for outcome in self.applied:
            via = f" via {outcome.strategy}" if outcome.strategy else ""
            lines.append(f"- applied #{outcome.chunk_index} {outcome.path or '(unknown)'}{via}")
        for outcome in self.heuristics:
            lines.append(
                f"- heuristic #{outcome.chunk_index} {outcome.path or '(unknown)'} :: {outcome.reason}"
            )
        for outcome in self.skipped:
            lines.append(f"- skipped #{outcome.chunk_index} {outcome.path or '(unknown)'} :: {outcome.reason}")
        return "\n".join(lines)

    def to_dict(self) -> dict[str, Any]:
        return {
            "applied_count": self.applied_count,
            "applied": [item.to_dict() for item in self.applied],
            "skipped": [item.to_dict() for item in self.skipped],
            "heuristics": [item.to_dict() for item in self.heuristics],
        }


@dataclass(slots=True)
class ValidationResult:
    """Outcome of the build/check gate."""

    ok: bool
    log: str = ""
    manifest_errors: tuple[str, ...] = ()
    checks: tuple[Any, ...] = ()


@dataclass(slots=True)
class Attempt:
    """One proposal -> apply -> validate round."""

    mode: RunMode
    representation: Representation
    change: CandidateChange | None = None
    report: RunReport | None = None
    validation: ValidationResult | None = None
    error: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.validation is not None and self.validation.ok

    def to_dict(self) -> dict[str, Any]:
        return {
            "mode": self.mode.value,
            "representation": self.representation.value,
            "report": self.report.to_dict() if self.report else None,
            "validation_ok": self.validation.ok if self.validation else None,
            "error": self.error,
        }


__all__ = [
    "ApplyOutcome",
    "Attempt",
    "CandidateChange",
    "ChunkOperation",
    "FileEntry",
    "FilesChange",
    "OutcomeKind",
    "PatchChange",
    "PatchChunk",
    "Representation",
    "RunMode",
    "RunReport",
    "ValidationResult",
]
