"""Build-gated integration loop for machine-generated code changes."""

from .changes import (
    ApplyOutcome,
    Attempt,
    CandidateChange,
    FileEntry,
    FilesChange,
    PatchChange,
    PatchChunk,
    Representation,
    RunMode,
    RunReport,
    ValidationResult,
)
from .errors import IntegrationError, NoChunksApplied, NoPatchFound, TerminalFailure
from .orchestrator import RetryOrchestrator, RunResult

__all__ = [
    "ApplyOutcome",
    "Attempt",
    "CandidateChange",
    "FileEntry",
    "FilesChange",
    "IntegrationError",
    "NoChunksApplied",
    "NoPatchFound",
    "PatchChange",
    "PatchChunk",
    "Representation",
    "RetryOrchestrator",
    "RunMode",
    "RunReport",
    "RunResult",
    "TerminalFailure",
    "ValidationResult",
]
