"""Apply a full-file candidate change."""

from __future__ import annotations

import logging

from ..changes import ApplyOutcome, FilesChange
from ..errors import UnsafePath
from .workspace import WorkingCopy, normalise_repo_path

LOGGER = logging.getLogger(__name__)

FULL_FILE_STRATEGY = "full-file"


def apply_files(change: FilesChange, working_copy: WorkingCopy) -> list[ApplyOutcome]:
    """Write every entry of ``change``; entries are outcomes like patch chunks.

    Unsafe or disallowed paths are skipped, and so is an entry whose content
    already matches the file on disk.
    """

    outcomes: list[ApplyOutcome] = []
    for index, entry in enumerate(change.entries):
        path = normalise_repo_path(entry.path)
        if not working_copy.is_path_safe(path) or not working_copy.is_path_allowed(path):
            outcomes.append(
                ApplyOutcome(index, path or entry.path, "skipped", reason=f"{UnsafePath.reason}: {entry.path}")
            )
            continue
        if working_copy.read_text(path) == entry.content:
            outcomes.append(ApplyOutcome(index, path, "skipped", reason="unchanged: content already present"))
            continue
        working_copy.write_text(path, entry.content)
        outcomes.append(ApplyOutcome(index, path, "applied", strategy=FULL_FILE_STRATEGY))
    return outcomes


__all__ = ["FULL_FILE_STRATEGY", "apply_files"]
