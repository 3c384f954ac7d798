"""Bounded proposal -> apply -> validate loop with rollback.

States::

    REQUEST_PATCH -> APPLY -> VALIDATE -> {COMMIT, REQUEST_FILES, ABORT}
    REQUEST_FILES -> APPLY -> VALIDATE -> {COMMIT, ABORT}

A patch that cannot be applied (or a failed generator call) degrades to a
``files`` request for the same task; the patch representation is never
retried. The first validation failure earns one corrective ``files`` round
that is shown the build log. At most three proposals are requested per run,
and every failed attempt is reset before the next one is applied.
"""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Callable, Deque, Optional

from .changes import Attempt, Representation, RunMode, RunReport
from .errors import NoChunksApplied, NoPatchFound, ProposalError, TerminalFailure, ValidationFailed
from .pipeline import apply_candidate
from .proposer import ProposalContext, Proposer
from .telemetry import emit_event
from .tools.gates import ValidationGate, ensure_valid
from .tools.heuristics import HeuristicFallback
from .tools.strategies import StrategyApplier
from .tools.workspace import WorkingCopy

LOGGER = logging.getLogger(__name__)

MAX_PROPOSALS = 3
RETAINED_ATTEMPTS = 2


class RunState(str, Enum):
    REQUEST_PATCH = "REQUEST_PATCH"
    REQUEST_FILES = "REQUEST_FILES"
    APPLY = "APPLY"
    VALIDATE = "VALIDATE"
    COMMIT = "COMMIT"
    ABORT = "ABORT"


@dataclass(slots=True)
class RunResult:
    """Outcome handed to the commit step and to run reporting."""

    ok: bool
    report: RunReport | None
    log: str
    state: RunState
    mode: RunMode
    attempts: tuple[Attempt, ...] = ()
    proposals: int = 0
    commit: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "ok": self.ok,
            "state": self.state.value,
            "mode": self.mode.value,
            "proposals": self.proposals,
            "commit": self.commit,
            "report": self.report.to_dict() if self.report else None,
            "attempts": [attempt.to_dict() for attempt in self.attempts],
        }


CommitHook = Callable[[RunResult], Optional[str]]


@dataclass(slots=True)
class _RunProgress:
    mode: RunMode
    attempts: Deque[Attempt] = field(default_factory=lambda: deque(maxlen=RETAINED_ATTEMPTS))
    proposals: int = 0
    state: RunState = RunState.REQUEST_PATCH
    last_report: RunReport | None = None
    last_log: str = ""


class RetryOrchestrator:
    """Drive one run against an exclusively owned working copy."""

    def __init__(
        self,
        working_copy: WorkingCopy,
        proposer: Proposer,
        gate: ValidationGate,
        *,
        context: ProposalContext | None = None,
        commit: CommitHook | None = None,
        applier: StrategyApplier | None = None,
        fallback: HeuristicFallback | None = None,
        max_proposals: int = MAX_PROPOSALS,
    ) -> None:
        self.working_copy = working_copy
        self.proposer = proposer
        self.gate = gate
        self.context = context or ProposalContext()
        self.commit = commit
        self.applier = applier or StrategyApplier()
        self.fallback = fallback or HeuristicFallback()
        self.max_proposals = max_proposals

    def run_attempt(self, mode: RunMode) -> RunResult:
        """Run the loop for ``mode``; never raises for attempt-level failures."""

        self.working_copy.checkpoint("patchloop-run")
        progress = _RunProgress(mode=mode)
        try:
            result = self._drive(progress)
        except Exception:
            LOGGER.exception("Run interrupted in state %s; resetting working tree", progress.state.value)
            self.working_copy.reset()
            raise

        if result.ok and self.commit is not None:
            result.commit = self.commit(result)
        emit_event("run_finished", result=result)
        return result

    def run_or_raise(self, mode: RunMode) -> RunResult:
        """Like :meth:`run_attempt` but raise :class:`TerminalFailure` on abort."""
        result = self.run_attempt(mode)
        if not result.ok:
            raise TerminalFailure(
                f"Run aborted after {result.proposals} proposal(s).",
                details={"result": result.to_dict(), "log": result.log},
            )
        return result

    # ------------------------------------------------------------------ loop
    def _drive(self, progress: _RunProgress) -> RunResult:
        representation = Representation.PATCH
        feedback = ""
        corrective_used = False

        while progress.proposals < self.max_proposals:
            progress.state = (
                RunState.REQUEST_PATCH if representation is Representation.PATCH else RunState.REQUEST_FILES
            )
            attempt = Attempt(mode=progress.mode, representation=representation)
            progress.attempts.append(attempt)
            progress.proposals += 1
            context = replace(self.context, previous_validation_log=feedback)

            try:
                attempt.change = self.proposer.propose(context, progress.mode, representation)
                progress.state = RunState.APPLY
                report = apply_candidate(
                    attempt.change, self.working_copy, applier=self.applier, fallback=self.fallback
                )
            except (ProposalError, NoPatchFound, NoChunksApplied) as error:
                attempt.error = f"{type(error).__name__}: {error}"
                if isinstance(error, NoChunksApplied):
                    attempt.report = error.report
                    progress.last_report = error.report
                progress.last_log = str(error)
                self._finish_attempt(attempt, progress)
                self.working_copy.reset()
                if representation is Representation.PATCH:
                    representation = Representation.FILES
                    continue
                break

            attempt.report = report
            progress.last_report = report
            progress.state = RunState.VALIDATE
            validation = self.gate.validate(self.working_copy, touched=report.touched_paths)
            attempt.validation = validation
            try:
                ensure_valid(validation)
            except ValidationFailed as error:
                attempt.error = f"{type(error).__name__}: {error}"
                progress.last_log = error.log
            else:
                self._finish_attempt(attempt, progress)
                return self._commit(progress, validation.log)

            self._finish_attempt(attempt, progress)
            self.working_copy.reset()
            if corrective_used:
                break
            corrective_used = True
            representation = Representation.FILES
            feedback = progress.last_log

        return self._abort(progress)

    def _finish_attempt(self, attempt: Attempt, progress: _RunProgress) -> None:
        emit_event("attempt_finished", proposal=progress.proposals, state=progress.state, attempt=attempt)
        if attempt.error:
            LOGGER.warning(
                "Attempt %s (%s) failed: %s", progress.proposals, attempt.representation.value, attempt.error
            )

    def _commit(self, progress: _RunProgress, log: str) -> RunResult:
        progress.state = RunState.COMMIT
        result = self._result(progress, ok=True, log=log)
        LOGGER.info("Run committed after %s proposal(s)", progress.proposals)
        return result

    def _abort(self, progress: _RunProgress) -> RunResult:
        progress.state = RunState.ABORT
        self.working_copy.reset()
        result = self._result(progress, ok=False, log=progress.last_log)
        LOGGER.warning("Run aborted after %s proposal(s); working tree reset", progress.proposals)
        return result

    @staticmethod
    def _result(progress: _RunProgress, *, ok: bool, log: str) -> RunResult:
        return RunResult(
            ok=ok,
            report=progress.last_report,
            log=log,
            state=progress.state,
            mode=progress.mode,
            attempts=tuple(progress.attempts),
            proposals=progress.proposals,
        )


__all__ = ["MAX_PROPOSALS", "RetryOrchestrator", "RunResult", "RunState"]
