"""Combine per-chunk outcomes into a single run report."""

from __future__ import annotations

import logging
from typing import Iterable

from ..changes import ApplyOutcome, RunReport
from ..errors import NoChunksApplied

LOGGER = logging.getLogger(__name__)


def aggregate(outcomes: Iterable[ApplyOutcome]) -> RunReport:
    """Classify ``outcomes`` into a :class:`RunReport`.

    An attempt succeeds structurally when at least one outcome is ``applied``
    or ``heuristic-applied``; skips alone raise :class:`NoChunksApplied`
    carrying the report so callers can still surface the reasons.
    """

    report = RunReport()
    for outcome in outcomes:
        if outcome.result == "applied":
            report.applied.append(outcome)
        elif outcome.result == "heuristic-applied":
            report.heuristics.append(outcome)
        else:
            report.skipped.append(outcome)
    report.applied_count = len(report.applied) + len(report.heuristics)

    if report.applied_count == 0:
        raise NoChunksApplied(
            "No chunk of the candidate change could be applied.",
            report=report,
            details={"skipped": [item.to_dict() for item in report.skipped]},
        )
    if report.skipped:
        LOGGER.warning(
            "Applied %s chunk(s); skipped %s: %s",
            report.applied_count,
            len(report.skipped),
            ", ".join(f"{item.path or '(unknown)'} ({item.reason})" for item in report.skipped),
        )
    return report


__all__ = ["aggregate"]
