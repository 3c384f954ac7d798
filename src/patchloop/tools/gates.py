"""Build gate run against the working tree after a change is applied.

The gate first parses every touched manifest (JSON, YAML, TOML) so a broken
``package.json`` fails in milliseconds instead of after a full install, then
runs the project's build commands in order. Without configured commands the
package manager is picked from the lockfiles present in the repository.
"""

from __future__ import annotations

import fnmatch
import json
import logging
import shutil
import subprocess
import time
import tomllib
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import Callable, Iterable, List, Literal, Sequence

import yaml

from ..changes import ValidationResult
from ..config import ValidationConfig
from ..errors import ManifestInvalid, ValidationFailed
from ..telemetry import emit_event
from .workspace import WorkingCopy

LOGGER = logging.getLogger(__name__)

CheckStatus = Literal["passed", "failed"]


@dataclass(slots=True)
class BuildCheck:
    """Description of a build command."""

    name: str
    command: Sequence[str]

    def run(self, cwd: Path, *, timeout: float | None = None) -> "BuildCheckResult":
        executable = self.command[0]
        if shutil.which(executable) is None:
            return BuildCheckResult(
                name=self.name,
                command=list(self.command),
                status="failed",
                exit_code=None,
                stdout="",
                stderr=f"Executable not available: {executable}",
            )

        started = time.monotonic()
        try:
            process = subprocess.run(  # noqa: S603  # command is sourced from run config
                list(self.command),
                cwd=cwd,
                check=False,
                capture_output=True,
                text=True,
                timeout=timeout,
            )
        except subprocess.TimeoutExpired as error:
            return BuildCheckResult(
                name=self.name,
                command=list(self.command),
                status="failed",
                exit_code=None,
                stdout=_as_text(error.stdout),
                stderr=_as_text(error.stderr) + f"\nTimed out after {timeout}s",
                duration=time.monotonic() - started,
            )

        return BuildCheckResult(
            name=self.name,
            command=list(self.command),
            status="passed" if process.returncode == 0 else "failed",
            exit_code=process.returncode,
            stdout=process.stdout,
            stderr=process.stderr,
            duration=time.monotonic() - started,
        )


def _as_text(value: str | bytes | None) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return value


@dataclass(slots=True)
class BuildCheckResult:
    """Result produced by :class:`BuildCheck`."""

    name: str
    command: List[str]
    status: CheckStatus
    exit_code: int | None
    stdout: str
    stderr: str
    duration: float = 0.0

    @property
    def failed(self) -> bool:
        return self.status == "failed"

    def short_message(self) -> str:
        if self.status == "passed":
            return f"{self.name}: passed"
        fallback = self.stderr.strip() or self.stdout.strip()
        snippet = fallback.splitlines()[-1] if fallback else "exit code != 0"
        return f"{self.name}: failed ({snippet})"

    def transcript(self) -> str:
        parts = [f"$ {' '.join(self.command)}"]
        parts.extend(part.rstrip("\n") for part in (self.stdout, self.stderr) if part and part.strip())
        if self.failed:
            parts.append(f"[{self.name} failed: exit code {self.exit_code}]")
        return "\n".join(parts)


# -------------------------------------------------------------- manifests
def is_manifest(path: str, patterns: Iterable[str]) -> bool:
    name = PurePosixPath(path).name
    return any(fnmatch.fnmatch(name, pattern) or fnmatch.fnmatch(path, pattern) for pattern in patterns)


def parse_manifest(path: Path) -> None:
    """Raise :class:`ManifestInvalid` when ``path`` does not parse."""
    text = path.read_text(encoding="utf-8")
    suffix = path.suffix.lower()
    try:
        if suffix == ".json":
            json.loads(text)
        elif suffix in {".yaml", ".yml"}:
            yaml.safe_load(text)
        elif suffix == ".toml":
            tomllib.loads(text)
    except (ValueError, yaml.YAMLError) as error:
        raise ManifestInvalid(f"{path.name} is not valid: {error}", details={"path": path.as_posix()}) from error


def check_manifests(root: Path, touched: Iterable[str], patterns: Iterable[str]) -> list[str]:
    """Return one message per touched manifest that fails to parse."""
    patterns = tuple(patterns)
    errors: list[str] = []
    for relative in sorted(set(touched)):
        if not is_manifest(relative, patterns):
            continue
        target = root / relative
        if not target.is_file():
            continue
        try:
            parse_manifest(target)
        except ManifestInvalid as error:
            errors.append(f"{relative}: {error}")
        except UnicodeDecodeError:
            errors.append(f"{relative}: not valid UTF-8")
    return errors


# -------------------------------------------------------------- build
def detect_package_manager(root: Path) -> str | None:
    """Pick the package manager from lockfiles; ``None`` without ``package.json``."""
    if not (root / "package.json").is_file():
        return None
    if (root / "pnpm-lock.yaml").is_file():
        return "pnpm"
    if (root / "yarn.lock").is_file():
        return "yarn"
    return "npm"


def default_build_checks(root: Path) -> list[BuildCheck]:
    manager = detect_package_manager(root)
    if manager == "pnpm":
        return [
            BuildCheck("install", ["pnpm", "install", "--frozen-lockfile"]),
            BuildCheck("build", ["pnpm", "run", "build"]),
        ]
    if manager == "yarn":
        return [
            BuildCheck("install", ["yarn", "install", "--frozen-lockfile"]),
            BuildCheck("build", ["yarn", "run", "build"]),
        ]
    if manager == "npm":
        install = ["npm", "ci"] if (root / "package-lock.json").is_file() else ["npm", "install"]
        return [BuildCheck("install", install), BuildCheck("build", ["npm", "run", "build"])]
    return []


def trim_log(text: str, max_chars: int) -> str:
    """Keep the tail of ``text``; build errors are reported last."""
    if len(text) <= max_chars:
        return text
    return text[-max_chars:]


def run_build_check(
    root: Path,
    checks: Sequence[BuildCheck],
    *,
    timeout: float | None = None,
    log_max_chars: int = 40_000,
) -> ValidationResult:
    """Run ``checks`` in order, stopping at the first failure."""

    results: list[BuildCheckResult] = []
    for check in checks:
        result = check.run(root, timeout=timeout)
        results.append(result)
        LOGGER.info("Build check %s", result.short_message())
        if result.failed:
            break
    log = "\n".join(result.transcript() for result in results)
    return ValidationResult(
        ok=not any(result.failed for result in results),
        log=trim_log(log, log_max_chars),
        checks=tuple(results),
    )


def ensure_valid(result: ValidationResult) -> None:
    """Raise :class:`ValidationFailed` carrying the build log when ``result`` failed."""
    if result.ok:
        return
    if result.manifest_errors:
        message = f"{len(result.manifest_errors)} manifest(s) failed to parse"
    else:
        failed = [check.short_message() for check in result.checks if getattr(check, "failed", False)]
        message = failed[0] if failed else "build check rejected the change"
    raise ValidationFailed(message, log=result.log, details={"manifest_errors": list(result.manifest_errors)})


class ValidationGate:
    """Manifest pre-check followed by the project build."""

    def __init__(
        self,
        config: ValidationConfig | None = None,
        *,
        build_check: Callable[[Path], ValidationResult] | None = None,
    ) -> None:
        self.config = config or ValidationConfig()
        self._build_check = build_check

    def checks_for(self, root: Path) -> list[BuildCheck]:
        if self.config.commands:
            return [BuildCheck(name=command[0], command=command) for command in self.config.commands if command]
        return default_build_checks(root)

    def validate(self, working_copy: WorkingCopy, touched: Iterable[str] = ()) -> ValidationResult:
        root = working_copy.root
        manifest_errors = check_manifests(root, touched, self.config.manifests)
        if manifest_errors:
            result = ValidationResult(
                ok=False,
                log=trim_log("Manifest pre-check failed:\n" + "\n".join(manifest_errors), self.config.log_max_chars),
                manifest_errors=tuple(manifest_errors),
            )
        elif self._build_check is not None:
            result = self._build_check(root)
        else:
            result = run_build_check(
                root,
                self.checks_for(root),
                timeout=self.config.timeout,
                log_max_chars=self.config.log_max_chars,
            )
        emit_event(
            "validation_finished",
            ok=result.ok,
            manifest_errors=result.manifest_errors,
            checks=[check.short_message() for check in result.checks if isinstance(check, BuildCheckResult)],
        )
        return result


__all__ = [
    "BuildCheck",
    "BuildCheckResult",
    "ValidationGate",
    "check_manifests",
    "default_build_checks",
    "detect_package_manager",
    "ensure_valid",
    "parse_manifest",
    "run_build_check",
    "trim_log",
]
