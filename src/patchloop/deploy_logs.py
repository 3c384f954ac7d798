"""Deployment log retrieval and issue extraction.

The default provider is the Vercel REST API. Fetches go through
:func:`fetch_with_retry`, which retries rate limits and server errors with a
linear back-off. Callers treat a failed fetch as empty logs for that call.
"""

from __future__ import annotations

import json
import logging
import os
import re
import time
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional

LOGGER = logging.getLogger(__name__)

VERCEL_API = "https://api.vercel.com"

Transport = Callable[[str, Mapping[str, str], float], tuple[int, str]]


class DeployLogError(RuntimeError):
    """Raised when deployment logs cannot be fetched."""


def _urllib_transport(url: str, headers: Mapping[str, str], timeout: float) -> tuple[int, str]:
    request = urllib.request.Request(url, headers=dict(headers), method="GET")
    try:
        with urllib.request.urlopen(request, timeout=timeout) as response:
            return getattr(response, "status", 200), response.read().decode("utf-8", errors="replace")
    except urllib.error.HTTPError as error:
        return error.code, error.read().decode("utf-8", errors="replace")


def _default_retry_on(status: int) -> bool:
    return status == 429 or 500 <= status < 600


def fetch_with_retry(
    url: str,
    *,
    headers: Mapping[str, str] | None = None,
    transport: Transport | None = None,
    timeout: float = 30.0,
    retries: int = 3,
    retry_delay: Callable[[int], float] = lambda attempt: 1.0 * (attempt + 1),
    retry_on: Callable[[int], bool] = _default_retry_on,
    error_prefix: str = "",
    max_error_length: int = 500,
    sleep: Callable[[float], None] = time.sleep,
) -> str:
    """GET ``url`` and return the body, retrying retryable statuses and network errors."""

    send = transport or _urllib_transport
    last_error: Exception | None = None
    for attempt in range(retries):
        try:
            status, body = send(url, headers or {}, timeout)
        except OSError as error:
            last_error = error
            if attempt == retries - 1:
                raise DeployLogError(f"{error_prefix}{error}") from error
            sleep(retry_delay(attempt))
            continue

        if status >= 400:
            message = f"{error_prefix}{status}: {body[:max_error_length]}"
            if attempt < retries - 1 and retry_on(status):
                last_error = DeployLogError(message)
                sleep(retry_delay(attempt))
                continue
            raise DeployLogError(message)
        return body

    raise DeployLogError(f"{error_prefix}request failed") from last_error


def concat_and_trim_logs(build_text: str = "", runtime_text: str = "", max_chars: int = 40_000) -> str:
    """Join build and runtime logs under headings, keeping the tail."""
    joined = "\n".join(
        [
            "==== BUILD EVENTS ====",
            build_text or "(none)",
            "",
            "==== RUNTIME LOGS ====",
            runtime_text or "(none)",
        ]
    )
    if len(joined) <= max_chars:
        return joined
    return joined[-max_chars:]


@dataclass(slots=True)
class DeploymentLogs:
    deployment_id: str
    state: str | None
    text: str


class VercelLogClient:
    """Fetch build events and runtime logs for the newest deployment of a project."""

    def __init__(
        self,
        token: Optional[str] = None,
        *,
        project_id: str,
        team_id: Optional[str] = None,
        token_env: str = "VERCEL_TOKEN",
        base_url: str = VERCEL_API,
        timeout: float = 30.0,
        retries: int = 3,
        transport: Transport | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._token = token or os.getenv(token_env)
        if transport is None and not self._token:
            raise ValueError(f"A Vercel token is required (set {token_env}).")
        self.project_id = project_id
        self.team_id = team_id
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._retries = retries
        self._transport = transport
        self._sleep = sleep

    def _url(self, path: str, **params: str) -> str:
        query = {key: value for key, value in params.items() if value}
        if self.team_id:
            query["teamId"] = self.team_id
        suffix = f"?{urllib.parse.urlencode(query)}" if query else ""
        return f"{self._base_url}{path}{suffix}"

    def _get(self, url: str) -> str:
        return fetch_with_retry(
            url,
            headers={"Authorization": f"Bearer {self._token}"} if self._token else {},
            transport=self._transport,
            timeout=self._timeout,
            retries=self._retries,
            error_prefix=f"Vercel {url} -> ",
            sleep=self._sleep,
        )

    def list_deployments(self, limit: int = 5) -> List[Dict[str, Any]]:
        body = self._get(self._url("/v6/deployments", projectId=self.project_id, limit=str(limit)))
        try:
            data = json.loads(body)
        except json.JSONDecodeError as error:
            raise DeployLogError(f"Deployment listing is not JSON: {body[:200]}") from error
        deployments = data.get("deployments") if isinstance(data, dict) else None
        return [item for item in deployments or [] if isinstance(item, dict)]

    def build_events(self, deployment_id: str) -> str:
        return self._get(self._url(f"/v3/deployments/{deployment_id}/events"))

    def runtime_logs(self, deployment_id: str) -> str:
        return self._get(self._url(f"/v1/projects/{self.project_id}/deployments/{deployment_id}/runtime-logs"))

    def latest(self, *, max_chars: int = 40_000) -> DeploymentLogs | None:
        """Return combined logs of the newest deployment, or ``None`` when there is none."""
        deployments = self.list_deployments(limit=1)
        if not deployments:
            return None
        newest = deployments[0]
        deployment_id = str(newest.get("uid") or newest.get("id") or "")
        if not deployment_id:
            return None
        state = newest.get("state") or newest.get("readyState")
        text = concat_and_trim_logs(
            self.build_events(deployment_id),
            self.runtime_logs(deployment_id),
            max_chars=max_chars,
        )
        return DeploymentLogs(deployment_id=deployment_id, state=str(state) if state else None, text=text)


# ------------------------------------------------------------ issue parsing
_DUPLICATE_PAGE_RE = re.compile(
    r"Duplicate page detected\.\s+(?P<a>.+?)\s+and\s+(?P<b>.+?)\s+both resolve to\s+(?P<route>.+?)\.",
    re.IGNORECASE,
)
_DEFAULT_IMPORT_RE = re.compile(
    r"Attempted import error:\s+['\"]?(?P<path>[^'\"]+)['\"]?\s+does not contain a default export"
    r".*imported as\s+'(?P<alias>[^']+)'",
    re.IGNORECASE,
)
_GENERIC_WARN_RE = re.compile(r"^\s*warn\s*-\s*(?P<msg>.+)$", re.IGNORECASE)
_GENERIC_ERROR_RE = re.compile(r"^\s*error\s*-\s*(?P<msg>.+)$", re.IGNORECASE)

STRATEGY_HINTS: Mapping[str, tuple[str, ...]] = {
    "duplicate_page": (
        "Pick a single source of truth for the route.",
        "Prefer the directory index (pages/admin/index.*) over the sibling file (pages/admin.*).",
        "Delete the duplicate and update imports or links if needed.",
    ),
    "missing_default_export": (
        "Open the target module and check its exports.",
        "If there is no default export, change call-sites to a named import.",
        "If many call-sites assume a default, add a one-line default re-export shim.",
    ),
}


def _normalise_log_path(raw: str) -> str:
    cleaned = raw.strip().replace("\\", "/")
    return re.sub(r"^\.?/", "", cleaned)


@dataclass(frozen=True, slots=True)
class LogIssue:
    severity: str
    message: str
    file: str | None = None
    related: tuple[str, ...] = ()
    hint: str | None = None

    def describe(self) -> str:
        location = f" [{self.file}]" if self.file else ""
        related = f" (also {', '.join(self.related)})" if self.related else ""
        hints = " ".join(STRATEGY_HINTS.get(self.hint or "", ()))
        return f"{self.severity}: {self.message}{location}{related}" + (f" Hint: {hints}" if hints else "")


def extract_issues(text: str) -> list[LogIssue]:
    """Recognise known problems in deployment logs, de-duplicated in first-seen order."""

    issues: list[LogIssue] = []
    for line in (text or "").splitlines():
        match = _DUPLICATE_PAGE_RE.search(line)
        if match:
            issues.append(
                LogIssue(
                    severity="warn",
                    message=f"Duplicate route for {match.group('route')}",
                    file=_normalise_log_path(match.group("a")),
                    related=(_normalise_log_path(match.group("b")),),
                    hint="duplicate_page",
                )
            )
            continue
        match = _DEFAULT_IMPORT_RE.search(line)
        if match:
            issues.append(
                LogIssue(
                    severity="error",
                    message="Default import used but module has no default export",
                    file=_normalise_log_path(match.group("path")),
                    hint="missing_default_export",
                )
            )
            continue
        match = _GENERIC_ERROR_RE.match(line)
        if match:
            issues.append(LogIssue(severity="error", message=match.group("msg").strip()))
            continue
        match = _GENERIC_WARN_RE.match(line)
        if match:
            issues.append(LogIssue(severity="warn", message=match.group("msg").strip()))
    return list(dict.fromkeys(issues))


def files_from_issues(issues: Iterable[LogIssue]) -> list[str]:
    """Return every repository path named by ``issues``."""
    paths: dict[str, None] = {}
    for issue in issues:
        if issue.file:
            paths[issue.file] = None
        for related in issue.related:
            paths[related] = None
    return list(paths)


@dataclass(slots=True)
class LogSnapshot:
    """Logs gathered before a run; empty when the fetch failed."""

    text: str = ""
    state: str | None = None
    deployment_id: str | None = None
    issues: list[LogIssue] = field(default_factory=list)


def gather_logs(client: VercelLogClient | None, *, max_chars: int = 40_000) -> LogSnapshot:
    """Fetch and parse the latest logs; fetch failures degrade to empty logs."""
    if client is None:
        return LogSnapshot()
    try:
        latest = client.latest(max_chars=max_chars)
    except DeployLogError as error:
        LOGGER.warning("Could not fetch deployment logs: %s", error)
        return LogSnapshot()
    if latest is None:
        return LogSnapshot()
    return LogSnapshot(
        text=latest.text,
        state=latest.state,
        deployment_id=latest.deployment_id,
        issues=extract_issues(latest.text),
    )


__all__ = [
    "DeployLogError",
    "DeploymentLogs",
    "LogIssue",
    "LogSnapshot",
    "STRATEGY_HINTS",
    "VercelLogClient",
    "concat_and_trim_logs",
    "extract_issues",
    "fetch_with_retry",
    "files_from_issues",
    "gather_logs",
]
