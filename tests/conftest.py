from __future__ import annotations

import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Mapping

import pytest

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"

if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from patchloop.tools.vcs import GitRepository  # noqa: E402
from patchloop.tools.workspace import WorkingCopy  # noqa: E402


@dataclass(slots=True)
class RepoFixture:
    """Committed git repository plus the working copy handle used by the pipeline."""

    root: Path
    repo: GitRepository
    working_copy: WorkingCopy

    def read(self, path: str) -> str:
        return (self.root / path).read_text(encoding="utf-8")

    def tree(self) -> dict[str, str]:
        """Return every file (outside ``.git``) mapped to its content."""
        files: dict[str, str] = {}
        for candidate in sorted(self.root.rglob("*")):
            relative = candidate.relative_to(self.root)
            if relative.parts[0] == ".git" or not candidate.is_file():
                continue
            files[relative.as_posix()] = candidate.read_text(encoding="utf-8")
        return files


MakeRepo = Callable[..., RepoFixture]


@pytest.fixture()
def make_repo(tmp_path: Path) -> MakeRepo:
    """Create a committed repository holding ``files`` and return its working copy."""

    def _make(files: Mapping[str, str] | None = None, *, allowed_paths: tuple[str, ...] = ()) -> RepoFixture:
        root = tmp_path / "repo"
        root.mkdir()
        for relative, content in (files or {"README.md": "# fixture\n"}).items():
            target = root / relative
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(content, encoding="utf-8", newline="\n")
        repo = GitRepository.initialise(root, message="fixture")
        working_copy = WorkingCopy(repo, allowed_paths=allowed_paths)
        working_copy.refresh_snapshot()
        return RepoFixture(root=repo.root, repo=repo, working_copy=working_copy)

    return _make
