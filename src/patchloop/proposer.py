"""Assemble proposal prompts and turn generator output into candidate changes."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Iterable, List, Protocol

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .changes import CandidateChange, FileEntry, FilesChange, PatchChange, Representation, RunMode
from .errors import ProposalError
from .models.llm_client import LLMClient, LLMClientError, LLMRequest, parse_json_payload
from .prompts import (
    render_file_bodies,
    render_issues,
    render_logs,
    render_mode_brief,
    render_repo_tree,
    render_validation_feedback,
    system_prompt_for,
)
from .tools.heuristics import SCRIPT_SUFFIXES, export_facts
from .tools.workspace import WorkingCopy

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class ProposalContext:
    """Everything a proposal request may show the generator."""

    task: str = ""
    repo_tree: tuple[str, ...] = ()
    files: tuple[tuple[str, str], ...] = ()
    issues: tuple[str, ...] = ()
    logs: str = ""
    previous_validation_log: str = ""


class Proposer(Protocol):
    """External generator contract."""

    def propose(
        self, context: ProposalContext, mode: RunMode, representation: Representation
    ) -> CandidateChange:
        ...


class FileEntryModel(BaseModel):
    model_config = ConfigDict(extra="forbid")

    path: str = Field(min_length=1)
    content: str


class FilesPayload(BaseModel):
    """Schema of a ``files`` response."""

    model_config = ConfigDict(extra="forbid")

    files: List[FileEntryModel] = Field(min_length=1)


def _coerce_files_payload(data: Any) -> Any:
    """Accept a bare ``{path: content}`` mapping or a bare list of entries."""
    if isinstance(data, list):
        return {"files": data}
    if isinstance(data, dict) and "files" not in data and data and all(isinstance(v, str) for v in data.values()):
        return {"files": [{"path": path, "content": content} for path, content in data.items()]}
    return data


def parse_files_payload(raw: str) -> FilesChange:
    """Parse a ``files`` response into a :class:`FilesChange`."""
    try:
        data = parse_json_payload(raw)
    except LLMClientError as error:
        raise ProposalError(str(error), details={"head": raw[:200]}) from error
    try:
        payload = FilesPayload.model_validate(_coerce_files_payload(data))
    except ValidationError as error:
        raise ProposalError(f"Files payload failed validation: {error}", details={"head": raw[:200]}) from error
    return FilesChange(entries=tuple(FileEntry(path=item.path, content=item.content) for item in payload.files))


def collect_context(
    working_copy: WorkingCopy,
    *,
    task: str = "",
    logs: str = "",
    issues: Iterable[str] = (),
    focus_paths: Iterable[str] = (),
    max_file_chars: int = 20_000,
) -> ProposalContext:
    """Snapshot the repository tree and the bodies of ``focus_paths``."""
    working_copy.refresh_snapshot()
    files: list[tuple[str, str]] = []
    for path in dict.fromkeys(focus_paths):
        content = working_copy.read_text(path) if path in working_copy.snapshot else None
        if content is None:
            continue
        if len(content) > max_file_chars:
            content = content[:max_file_chars] + "\n... (truncated)"
        files.append((path, content))
    return ProposalContext(
        task=task,
        repo_tree=tuple(working_copy.snapshot),
        files=tuple(files),
        issues=tuple(issues),
        logs=logs,
    )


class LLMProposer:
    """Proposer backed by an :class:`LLMClient`."""

    def __init__(
        self,
        client: LLMClient,
        *,
        model: str | None = None,
        temperature: float | None = None,
        max_output_tokens: int | None = None,
    ) -> None:
        self.client = client
        self.model = model
        self.temperature = temperature
        self.max_output_tokens = max_output_tokens

    def build_prompt(self, context: ProposalContext, mode: RunMode) -> str:
        file_blocks = []
        for path, content in context.files:
            summary = ""
            if path.endswith(SCRIPT_SUFFIXES):
                facts = export_facts(content)
                summary = f"default export: {'yes' if facts.has_default else 'no'}; named: {', '.join(facts.named) or '-'}"
            file_blocks.append((path, summary, content))
        sections = [
            render_mode_brief(mode, context.task),
            render_validation_feedback(context.previous_validation_log),
            render_issues(context.issues),
            render_logs(context.logs),
            render_file_bodies(file_blocks),
            render_repo_tree(context.repo_tree),
        ]
        return "\n\n".join(section for section in sections if section)

    def propose(self, context: ProposalContext, mode: RunMode, representation: Representation) -> CandidateChange:
        request = LLMRequest(
            prompt=self.build_prompt(context, mode),
            system_prompt=system_prompt_for(representation),
            response_model=FilesPayload if representation is Representation.FILES else None,
            model=self.model,
            metadata={"mode": mode.value, "representation": representation.value},
            temperature=self.temperature,
            max_output_tokens=self.max_output_tokens,
        )
        try:
            raw = self.client.complete(request)
        except LLMClientError as error:
            raise ProposalError(f"Generator call failed: {error}") from error

        LOGGER.debug("Generator returned %s characters for %s request", len(raw), representation.value)
        if representation is Representation.FILES:
            return parse_files_payload(raw)
        return PatchChange(text=raw)


__all__ = [
    "FilesPayload",
    "LLMProposer",
    "ProposalContext",
    "Proposer",
    "collect_context",
    "parse_files_payload",
]
