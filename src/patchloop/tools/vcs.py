"""Git primitives used by the integration loop.

Only the handful of operations the loop needs are wrapped: listing paths,
checkpointing the working tree before a run, restoring it after a failed
attempt, and committing/pushing an accepted change.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Sequence, Set

import shutil
import subprocess
import time


class GitError(RuntimeError):
    """Raised when a git command fails or the repository cannot be used."""


@dataclass(slots=True)
class GitCheckpoint:
    """Known-good state of the working tree.

    Records ``HEAD``, the tracked paths and the untracked paths present when
    the checkpoint was taken. Rolling back restores tracked files (index and
    worktree) to ``HEAD``, removes untracked files that appeared afterwards
    and puts back the original bytes of every untracked or ignored path
    recorded through :meth:`preserve`.
    """

    repo: "GitRepository"
    label: str
    head: str | None
    baseline_untracked: tuple[str, ...]
    created_at: float
    tracked: frozenset[str] = frozenset()
    preserved: dict[str, bytes | None] = field(default_factory=dict)

    def preserve(self, relative: str) -> None:
        """Remember ``relative`` as it was before its first change; tracked paths are skipped."""

        if relative in self.tracked or relative in self.preserved:
            return
        target = self.repo.root / relative
        self.preserved[relative] = target.read_bytes() if target.is_file() else None

    def rollback(self) -> None:
        """Restore the repository to the checkpoint."""

        self.repo.restore_checkpoint(self)


def _decode(process: subprocess.CompletedProcess[bytes]) -> subprocess.CompletedProcess[str]:
    stdout = process.stdout.decode("utf-8", errors="replace") if process.stdout else ""
    stderr = process.stderr.decode("utf-8", errors="replace") if process.stderr else ""
    return subprocess.CompletedProcess(process.args, process.returncode, stdout, stderr)


class GitRepository:
    """Lightweight wrapper around ``git`` commands."""

    def __init__(self, root: Path | str) -> None:
        self.root = Path(root).resolve()
        if not (self.root / ".git").exists():
            raise GitError(f"Not a git repository: {self.root}")

    @classmethod
    def discover(cls, start: Path | str | None = None) -> "GitRepository":
        """Locate the nearest git repository starting from ``start``."""

        path = Path(start or Path.cwd()).resolve()
        for candidate in (path, *path.parents):
            if (candidate / ".git").exists():
                return cls(candidate)
        raise GitError(f"Unable to locate a git repository from {path}")

    @classmethod
    def initialise(cls, root: Path | str, *, message: str = "Initial commit") -> "GitRepository":
        """Initialise a git repository at ``root`` and commit its current content."""

        path = Path(root).resolve()
        path.mkdir(parents=True, exist_ok=True)

        def _run(args: Sequence[str], *, check: bool = True) -> subprocess.CompletedProcess[str]:
            result = _decode(subprocess.run(["git", *args], cwd=path, capture_output=True, check=False))
            if check and result.returncode != 0:
                detail = result.stderr.strip() or result.stdout.strip() or "unknown git error"
                raise GitError(f"git {' '.join(args)} failed: {detail}")
            return result

        if not (path / ".git").exists():
            _run(["init"])

        for key, value in (("user.email", "patchloop@example.com"), ("user.name", "patchloop")):
            configured = _run(["config", "--get", key], check=False)
            if configured.returncode != 0 or not configured.stdout.strip():
                _run(["config", key, value])

        _run(["add", "--all"])
        _run(["commit", "--allow-empty", "-m", message])
        return cls(path)

    # ------------------------------------------------------------------ git IO
    def _run_git(self, args: Sequence[str], *, check: bool = True) -> subprocess.CompletedProcess[str]:
        result = _decode(
            subprocess.run(
                ["git", *args],
                cwd=self.root,
                capture_output=True,
                text=False,
                check=False,
            )
        )
        if check and result.returncode != 0:
            message = result.stderr.strip() or result.stdout.strip() or "unknown git error"
            raise GitError(f"git {' '.join(args)} failed: {message}")
        return result

    def git(self, *args: str, check: bool = True) -> subprocess.CompletedProcess[str]:
        """Execute ``git`` with ``args`` relative to the repository root."""

        return self._run_git(list(args), check=check)

    def list_tracked_paths(self) -> List[Path]:
        """Return every path in the index."""

        result = self._run_git(["ls-files", "-z"], check=True)
        return [Path(entry) for entry in result.stdout.split("\0") if entry]

    def current_branch(self) -> str | None:
        """Return the current branch name or ``None`` when detached."""

        result = self._run_git(["rev-parse", "--abbrev-ref", "HEAD"], check=False)
        if result.returncode != 0:
            return None
        branch = result.stdout.strip()
        if not branch or branch == "HEAD":
            return None
        return branch

    # ------------------------------------------------------------- repo status
    def _status_entries(self) -> List[tuple[str, Path]]:
        result = self._run_git(["status", "--porcelain", "--untracked-files=all"], check=True)
        entries: List[tuple[str, Path]] = []
        for line in result.stdout.splitlines():
            if not line:
                continue
            status = line[:2]
            raw_path = line[3:]
            if status[0] in {"R", "C"} and " -> " in raw_path:
                raw_path = raw_path.split(" -> ", 1)[1]
            entries.append((status.strip() or status, Path(raw_path.strip().strip('"'))))
        return entries

    def untracked_files(self) -> List[Path]:
        """Return untracked files (directories are expanded)."""

        return [path for status, path in self._status_entries() if status == "??"]

    def working_tree_changes(self, *, include_untracked: bool = True) -> List[Path]:
        """Return the set of paths with pending modifications."""

        paths: Set[Path] = set()
        for status, path in self._status_entries():
            if status == "??" and not include_untracked:
                continue
            paths.add(path)
        return sorted(paths, key=lambda item: item.as_posix())

    def is_clean(self, *, include_untracked: bool = True) -> bool:
        """Return ``True`` when the working tree has no pending changes."""

        return not self.working_tree_changes(include_untracked=include_untracked)

    # ------------------------------------------------------------- checkpoints
    def _current_head(self) -> str | None:
        result = self._run_git(["rev-parse", "--verify", "HEAD"], check=False)
        if result.returncode != 0:
            return None
        return result.stdout.strip() or None

    def create_checkpoint(self, label: str | None = None) -> GitCheckpoint:
        """Record the current ``HEAD``, tracked paths and untracked files."""

        head = self._current_head()
        baseline_untracked = tuple(sorted(path.as_posix() for path in self.untracked_files()))
        return GitCheckpoint(
            repo=self,
            label=label or head or "working-tree",
            head=head,
            baseline_untracked=baseline_untracked,
            created_at=time.time(),
            tracked=frozenset(path.as_posix() for path in self.list_tracked_paths()),
        )

    def restore_checkpoint(self, checkpoint: GitCheckpoint) -> None:
        """Restore the repository to the state captured by ``checkpoint``."""

        if checkpoint.repo is not self:
            raise GitError("Checkpoint does not belong to this repository.")

        if checkpoint.head:
            self._run_git(["reset", "--quiet", "--hard", checkpoint.head], check=True)
        else:
            self._run_git(["rm", "-r", "--cached", "--quiet", "--ignore-unmatch", "--", "."], check=True)

        baseline = {Path(entry) for entry in checkpoint.baseline_untracked}
        extra = sorted(
            (path for path in self.untracked_files() if path not in baseline),
            key=lambda item: len(item.parts),
            reverse=True,
        )
        for relative in extra:
            target = self.root / relative
            if target.is_dir() and not target.is_symlink():
                shutil.rmtree(target, ignore_errors=True)
            elif target.exists() or target.is_symlink():
                target.unlink(missing_ok=True)

        removed = list(extra)
        for relative, content in checkpoint.preserved.items():
            target = self.root / relative
            if content is None:
                if target.is_file() or target.is_symlink():
                    target.unlink()
                removed.append(Path(relative))
                continue
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(content)
        self._prune_empty_dirs(removed)

    def _prune_empty_dirs(self, removed: Sequence[Path]) -> None:
        parents = {parent for path in removed for parent in path.parents if parent != Path(".")}
        for relative in sorted(parents, key=lambda item: len(item.parts), reverse=True):
            directory = self.root / relative
            if directory.is_dir() and not any(directory.iterdir()):
                directory.rmdir()

    # -------------------------------------------------------------- commits
    def commit_all(self, message: str, *, allow_empty: bool = False) -> str | None:
        """Stage everything and commit; return the new SHA or ``None`` if nothing changed."""

        self._run_git(["add", "--all"], check=True)

        commit_args: List[str] = ["commit", "-m", message]
        if allow_empty:
            commit_args.append("--allow-empty")

        commit = self._run_git(commit_args, check=False)
        if commit.returncode != 0:
            output = commit.stderr.strip() or commit.stdout.strip() or ""
            if "nothing to commit" in output.lower():
                return None
            raise GitError(f"git commit failed: {output}")

        rev = self._run_git(["rev-parse", "HEAD"], check=True)
        return rev.stdout.strip()

    def push(self, remote: str, branch: str) -> None:
        """Push ``branch`` to ``remote``."""

        self._run_git(["push", remote, branch], check=True)


__all__ = ["GitCheckpoint", "GitError", "GitRepository"]
