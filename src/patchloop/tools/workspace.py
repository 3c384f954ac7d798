"""Working copy handle shared by the apply stages of one attempt."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import Iterable, Iterator

from .vcs import GitCheckpoint, GitError, GitRepository

LOGGER = logging.getLogger(__name__)

IGNORED_DIRECTORIES = frozenset({".git", "node_modules"})


@dataclass(slots=True)
class RepoTreeSnapshot:
    """Known relative paths of the working copy for the current attempt.

    Loaded once per attempt and updated in place as chunks add or delete
    files, so later chunks see the effect of earlier ones.
    """

    paths: set[str] = field(default_factory=set)

    @classmethod
    def load(cls, root: Path) -> "RepoTreeSnapshot":
        return cls(paths=set(walk_repo_tree(root)))

    def __contains__(self, path: object) -> bool:
        return isinstance(path, str) and path in self.paths

    def __len__(self) -> int:
        return len(self.paths)

    def __iter__(self) -> Iterator[str]:
        return iter(sorted(self.paths))

    def add(self, path: str) -> None:
        self.paths.add(path)

    def discard(self, path: str) -> None:
        self.paths.discard(path)


def walk_repo_tree(root: Path) -> list[str]:
    """List files beneath ``root`` as POSIX paths, skipping VCS and dependency folders."""
    found: list[str] = []
    for current, directories, files in os.walk(root):
        directories[:] = sorted(name for name in directories if name not in IGNORED_DIRECTORIES)
        base = Path(current)
        for name in sorted(files):
            found.append((base / name).relative_to(root).as_posix())
    return found


def normalise_repo_path(raw: str) -> str:
    """Return ``raw`` as a clean repository-relative POSIX path."""
    cleaned = raw.strip().replace("\\", "/")
    while cleaned.startswith("./"):
        cleaned = cleaned[2:]
    return PurePosixPath(cleaned).as_posix() if cleaned else ""


class WorkingCopy:
    """Checked-out repository state exclusively owned by the current run."""

    def __init__(self, repo: GitRepository, *, allowed_paths: Iterable[str] = ()) -> None:
        self.repo = repo
        self.root = repo.root
        self.allowed_paths: tuple[str, ...] = tuple(
            normalise_repo_path(entry).rstrip("/") for entry in allowed_paths if entry.strip()
        )
        self.snapshot = RepoTreeSnapshot()
        self._checkpoint: GitCheckpoint | None = None

    # ------------------------------------------------------------- snapshots
    def refresh_snapshot(self) -> RepoTreeSnapshot:
        """Reload the known paths from disk."""
        self.snapshot = RepoTreeSnapshot.load(self.root)
        return self.snapshot

    def list_known_paths(self) -> set[str]:
        return set(self.snapshot.paths)

    # ----------------------------------------------------------------- files
    def resolve(self, path: str) -> Path:
        return self.root / normalise_repo_path(path)

    def exists(self, path: str) -> bool:
        return self.resolve(path).is_file()

    def read_text(self, path: str) -> str | None:
        """Return the content of ``path`` or ``None`` when it is absent."""
        target = self.resolve(path)
        try:
            return target.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except UnicodeDecodeError:
            LOGGER.debug("Skipping non UTF-8 file %s", path)
            return None

    def write_text(self, path: str, content: str) -> None:
        self.preserve((path,))
        target = self.resolve(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content, encoding="utf-8", newline="\n")
        self.snapshot.add(normalise_repo_path(path))

    def delete(self, path: str) -> bool:
        target = self.resolve(path)
        if not target.exists():
            return False
        self.preserve((path,))
        target.unlink()
        self.snapshot.discard(normalise_repo_path(path))
        return True

    def is_path_safe(self, path: str) -> bool:
        """Reject absolute paths, parent escapes and the ``.git`` directory."""
        cleaned = path.strip().replace("\\", "/")
        if not cleaned or cleaned.startswith("/") or (len(cleaned) > 1 and cleaned[1] == ":"):
            return False
        parts = PurePosixPath(cleaned).parts
        if any(part == ".." for part in parts):
            return False
        return not (parts and parts[0] == ".git")

    def is_path_allowed(self, path: str) -> bool:
        """Apply the configured allow-list; an empty list allows every path."""
        if not self.allowed_paths:
            return True
        candidate = normalise_repo_path(path)
        return any(
            candidate == prefix or candidate.startswith(prefix + "/") for prefix in self.allowed_paths
        )

    # ------------------------------------------------------------ lifecycle
    def checkpoint(self, label: str = "patchloop-run") -> GitCheckpoint:
        """Record the known-good state that :meth:`reset` returns to.

        Raises :class:`GitError` when tracked files carry uncommitted edits,
        since the hard reset would discard them.
        """
        dirty = self.repo.working_tree_changes(include_untracked=False)
        if dirty:
            listed = ", ".join(path.as_posix() for path in dirty[:10])
            raise GitError(f"Working tree has uncommitted changes to tracked files: {listed}")
        self._checkpoint = self.repo.create_checkpoint(label)
        return self._checkpoint

    def preserve(self, paths: Iterable[str]) -> None:
        """Record untracked or ignored ``paths`` before they change so :meth:`reset` restores them."""
        if self._checkpoint is None:
            return
        for path in paths:
            self._checkpoint.preserve(normalise_repo_path(path))

    def reset(self) -> None:
        """Hard restore to the last checkpoint and reload the snapshot."""
        if self._checkpoint is None:
            raise RuntimeError("reset() called before checkpoint().")
        self._checkpoint.rollback()
        self.refresh_snapshot()
        LOGGER.info("Working tree reset to %s", self._checkpoint.label)


__all__ = [
    "IGNORED_DIRECTORIES",
    "RepoTreeSnapshot",
    "WorkingCopy",
    "normalise_repo_path",
    "walk_repo_tree",
]
