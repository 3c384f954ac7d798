"""Pick the run mode from an explicit override or the latest deployment logs."""

from __future__ import annotations

from .changes import RunMode

FAILURE_PHRASES: tuple[str, ...] = (
    "module not found",
    "cannot find module",
    "build failed",
    "failed to compile",
    "does not contain a default export",
    "type error",
    "typeerror",
    "syntaxerror",
    "referenceerror",
    "command failed with exit code",
    "error: command",
    "unhandled runtime error",
)

FAILED_DEPLOYMENT_STATES = frozenset({"ERROR"})


def logs_indicate_failure(logs: str | None) -> bool:
    lowered = (logs or "").lower()
    return any(phrase in lowered for phrase in FAILURE_PHRASES)


def select_mode(
    override: RunMode | str | None,
    logs: str | None,
    deployment_state: str | None = None,
) -> RunMode:
    """Return the mode used for every proposal of a run.

    An explicit ``override`` always wins. Otherwise a failing deployment (known
    failure phrase in the logs, or a failed deployment state) selects
    :attr:`RunMode.FIX`; anything else is a :attr:`RunMode.FEATURE` run.
    ``UPGRADE`` is never inferred.
    """

    if override:
        return override if isinstance(override, RunMode) else RunMode(str(override).strip().upper())
    if (deployment_state or "").upper() in FAILED_DEPLOYMENT_STATES:
        return RunMode.FIX
    if logs_indicate_failure(logs):
        return RunMode.FIX
    return RunMode.FEATURE


__all__ = ["FAILED_DEPLOYMENT_STATES", "FAILURE_PHRASES", "logs_indicate_failure", "select_mode"]
