"""Error taxonomy for the integration pipeline.

Chunk-level errors (:class:`UnparsableChunk`, :class:`TargetMissing`,
:class:`UnsafePath`) are always recovered locally by skipping the chunk.
Attempt-level errors (:class:`NoPatchFound`, :class:`NoChunksApplied`,
:class:`ValidationFailed`, :class:`ProposalError`) escalate to the next round.
:class:`TerminalFailure` is only raised once every proposal has been used and the
working tree has been reset.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Mapping

if TYPE_CHECKING:
    from .changes import RunReport


class IntegrationError(RuntimeError):
    """Base class for pipeline failures, carrying structured details."""

    def __init__(self, message: str, *, details: Mapping[str, Any] | None = None) -> None:
        super().__init__(message)
        self.details: dict[str, Any] = dict(details or {})


class NoPatchFound(IntegrationError):
    """Raised when generator output contains no recognisable patch marker."""


class ChunkError(IntegrationError):
    """Base class for errors that only disqualify a single chunk."""

    reason = "chunk-error"


class UnparsableChunk(ChunkError):
    """Raised when a chunk header does not yield usable paths."""

    reason = "unparsable-chunk"


class TargetMissing(ChunkError):
    """Raised when a modify/delete chunk targets a path absent from the tree."""

    reason = "target-missing"


class UnsafePath(ChunkError):
    """Raised when a chunk targets a path outside the permitted area."""

    reason = "unsafe-path"


class NoChunksApplied(IntegrationError):
    """Raised when no chunk of a candidate change could be applied."""

    def __init__(
        self,
        message: str,
        *,
        report: "RunReport | None" = None,
        details: Mapping[str, Any] | None = None,
    ) -> None:
        super().__init__(message, details=details)
        self.report = report


class ManifestInvalid(IntegrationError):
    """Raised when a touched manifest file fails to parse."""


class ValidationFailed(IntegrationError):
    """Raised when the build/check step rejects the working tree."""

    def __init__(self, message: str, *, log: str = "", details: Mapping[str, Any] | None = None) -> None:
        super().__init__(message, details=details)
        self.log = log


class ProposalError(IntegrationError):
    """Raised when the generator call fails, times out or returns garbage."""


class TerminalFailure(IntegrationError):
    """Raised when every permitted round failed and the run was aborted."""


__all__ = [
    "ChunkError",
    "IntegrationError",
    "ManifestInvalid",
    "NoChunksApplied",
    "NoPatchFound",
    "ProposalError",
    "TargetMissing",
    "TerminalFailure",
    "UnparsableChunk",
    "UnsafePath",
    "ValidationFailed",
]
