"""Apply one candidate change: sanitize, split, apply each chunk, aggregate."""

from __future__ import annotations

import logging

from .changes import ApplyOutcome, CandidateChange, FilesChange, PatchChange, PatchChunk, RunReport
from .errors import ChunkError
from .telemetry import emit_event
from .tools.aggregate import aggregate
from .tools.chunker import split
from .tools.files import apply_files
from .tools.heuristics import HeuristicFallback
from .tools.sanitize import sanitize
from .tools.strategies import StrategyApplier
from .tools.workspace import WorkingCopy

LOGGER = logging.getLogger(__name__)


def apply_chunk(
    chunk: PatchChunk,
    working_copy: WorkingCopy,
    applier: StrategyApplier,
    fallback: HeuristicFallback,
) -> ApplyOutcome:
    """Apply ``chunk`` structurally, then heuristically; never raises for chunk errors."""

    try:
        applied = applier.apply(chunk, working_copy)
    except ChunkError as error:
        outcome = ApplyOutcome(chunk.index, chunk.path, "skipped", reason=f"{error.reason}: {error}")
    else:
        if applied:
            outcome = ApplyOutcome(chunk.index, chunk.path, "applied", strategy=applier.last_strategy)
        elif fallback.try_fallback(chunk, working_copy):
            outcome = ApplyOutcome(
                chunk.index,
                chunk.path,
                "heuristic-applied",
                reason=fallback.last_heuristic or "",
                strategy=fallback.last_heuristic,
            )
        else:
            failures = "; ".join(applier.last_failures) or "no strategy applied"
            outcome = ApplyOutcome(chunk.index, chunk.path, "skipped", reason=f"strategies-exhausted: {failures}")

    event = "chunk_skipped" if outcome.result == "skipped" else "chunk_applied"
    emit_event(event, outcome=outcome, adjustments=chunk.adjustments, operation=chunk.operation)
    return outcome


def apply_patch_text(
    raw: str,
    working_copy: WorkingCopy,
    *,
    applier: StrategyApplier | None = None,
    fallback: HeuristicFallback | None = None,
) -> RunReport:
    """Sanitize ``raw`` and apply its chunks in source order.

    Raises :class:`NoPatchFound` or :class:`NoChunksApplied`.
    """

    patch_text = sanitize(raw)
    chunks = split(patch_text)
    LOGGER.info("Applying %s chunk(s)", len(chunks))
    applier = applier or StrategyApplier()
    fallback = fallback or HeuristicFallback()
    outcomes = [apply_chunk(chunk, working_copy, applier, fallback) for chunk in chunks]
    return aggregate(outcomes)


def apply_candidate(
    change: CandidateChange,
    working_copy: WorkingCopy,
    *,
    applier: StrategyApplier | None = None,
    fallback: HeuristicFallback | None = None,
) -> RunReport:
    """Apply ``change`` to ``working_copy`` and return the aggregated report.

    The tree snapshot is reloaded first, so each candidate sees the working
    copy as it is on disk.
    """

    working_copy.refresh_snapshot()
    if isinstance(change, PatchChange):
        return apply_patch_text(change.text, working_copy, applier=applier, fallback=fallback)
    if isinstance(change, FilesChange):
        return aggregate(apply_files(change, working_copy))
    raise TypeError(f"Unsupported candidate change: {type(change).__name__}")


__all__ = ["apply_candidate", "apply_chunk", "apply_patch_text"]
