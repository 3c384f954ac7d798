"""Stages that turn a candidate change into an applied, validated working tree."""

from .aggregate import aggregate
from .chunker import split
from .files import apply_files
from .gates import ValidationGate, run_build_check
from .heuristics import HeuristicFallback
from .sanitize import sanitize
from .strategies import StrategyApplier
from .vcs import GitCheckpoint, GitError, GitRepository
from .workspace import RepoTreeSnapshot, WorkingCopy

__all__ = [
    "GitCheckpoint",
    "GitError",
    "GitRepository",
    "HeuristicFallback",
    "RepoTreeSnapshot",
    "StrategyApplier",
    "ValidationGate",
    "WorkingCopy",
    "aggregate",
    "apply_files",
    "run_build_check",
    "sanitize",
    "split",
]
