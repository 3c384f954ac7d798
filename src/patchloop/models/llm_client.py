"""Client base class for the text generator behind proposals."""

from __future__ import annotations

import ast
import json
import re
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Type

from pydantic.type_adapter import TypeAdapter

__all__ = [
    "LLMClient",
    "LLMClientError",
    "LLMRequest",
    "LLMResponseFormatError",
    "LLMRetryError",
    "LLMTransportError",
    "parse_json_payload",
]


def _close_schema(value: Any) -> Any:
    """Recursively tighten JSON Schema objects to disallow unknown keys."""
    if isinstance(value, dict):
        if value.get("type") == "object":
            value["additionalProperties"] = False
            properties = value.get("properties")
            if isinstance(properties, dict):
                value["required"] = list(properties.keys())
        for key, child in list(value.items()):
            value[key] = _close_schema(child)
    elif isinstance(value, list):
        return [_close_schema(item) for item in value]
    return value


class LLMClientError(RuntimeError):
    """Base error raised for LLM client failures."""


class LLMTransportError(LLMClientError):
    """Raised when the underlying transport fails to return a response."""


class LLMResponseFormatError(LLMClientError):
    """Raised when the model returns an empty or undecodable payload."""


class LLMRetryError(LLMClientError):
    """Raised after exhausting retries."""


@dataclass(slots=True)
class LLMRequest:
    """Request sent to the generator.

    ``response_model`` switches the request to JSON-schema output; without it
    the model answers in free text (used for unified diffs).
    """

    prompt: str
    system_prompt: Optional[str] = None
    response_model: Optional[Type[Any]] = None
    model: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    temperature: Optional[float] = None
    max_output_tokens: Optional[int] = None
    max_attempts: Optional[int] = None

    def to_payload(self, default_model: str) -> Dict[str, Any]:
        """Render a transport-ready payload for the Responses API."""

        def _message(role: str, text: str) -> Dict[str, Any]:
            return {"role": role, "content": [{"type": "input_text", "text": text}]}

        messages: list[Dict[str, Any]] = []
        if self.system_prompt:
            messages.append(_message("system", self.system_prompt))
        messages.append(_message("user", self.prompt))

        payload: Dict[str, Any] = {"model": self.model or default_model, "input": messages}
        if self.response_model is not None:
            schema = _close_schema(TypeAdapter(self.response_model).json_schema())
            payload["text"] = {
                "format": {
                    "type": "json_schema",
                    "name": getattr(self.response_model, "__name__", "patchloop_response"),
                    "schema": schema,
                    "strict": True,
                }
            }
        if self.temperature is not None:
            payload["temperature"] = self.temperature
        if self.max_output_tokens:
            payload["max_output_tokens"] = self.max_output_tokens
        if self.metadata:
            payload["metadata"] = {
                key: (value if isinstance(value, str) else json.dumps(value, separators=(",", ":"), sort_keys=True))[:512]
                for key, value in self.metadata.items()
            }
        return payload


class LLMClient:
    """Retrying helper around a single ``_raw_invoke`` transport call."""

    def __init__(self, model: str, *, max_attempts: int = 2, retry_delay: float = 0.5) -> None:
        self._model = model
        self._max_attempts = max_attempts
        self._retry_delay = retry_delay

    @property
    def model(self) -> str:
        """Return the default model name configured for this client."""
        return self._model

    def complete(self, request: LLMRequest) -> str:
        """Return the model's text output, retrying transport and empty responses."""
        attempts = request.max_attempts or self._max_attempts
        last_error: Optional[Exception] = None
        payload = request.to_payload(self._model)

        for attempt in range(1, attempts + 1):
            try:
                raw = self._raw_invoke(payload)
                if not raw or not raw.strip():
                    raise LLMResponseFormatError("Model returned an empty response.")
                return raw
            except (LLMResponseFormatError, LLMTransportError) as error:
                last_error = error
                if attempt >= attempts:
                    break
                time.sleep(self._retry_delay)

        raise LLMRetryError(
            f"No usable response after {attempts} attempt(s) for model {request.model or self._model}"
        ) from last_error

    def _raw_invoke(self, payload: Dict[str, Any]) -> str:
        """Perform the transport call. Subclasses must implement."""
        raise NotImplementedError("Subclasses must implement _raw_invoke().")


def parse_json_payload(raw_response: str) -> Any:
    """Parse a JSON payload, salvaging fenced or noisy model output."""
    text = raw_response.strip()
    if not text:
        raise LLMResponseFormatError("Model returned an empty response.")

    text = _normalise_json_string(text)
    candidates = [text]
    repaired = _repair_json_payload(text)
    if repaired and repaired not in candidates:
        candidates.append(repaired)

    for candidate in candidates:
        try:
            return json.loads(candidate)
        except json.JSONDecodeError:
            pythonic = _coerce_python_literal(candidate)
            if pythonic is not None:
                return pythonic

    raise LLMResponseFormatError(f"Model returned invalid JSON: {text[:200]}")


def _strip_code_fence(payload: str) -> str:
    """Remove Markdown-style code fences that wrap JSON payloads."""
    match = re.match(r"```(?:json)?[^\n]*\n", payload, re.IGNORECASE)
    if not match:
        return payload
    fence_end = payload.find("```", match.end())
    if fence_end == -1:
        return payload[match.end() :].strip()
    return payload[match.end() : fence_end].strip()


def _normalise_json_string(payload: str) -> str:
    """Drop a leading byte-order mark."""
    return payload.lstrip("\ufeff")


def _strip_trailing_commas(payload: str) -> str:
    return re.sub(r",(\s*[}\]])", r"\1", payload)


def _repair_json_payload(raw: str) -> str | None:
    """Attempt to salvage a JSON object embedded in noisy output."""
    stripped = raw.strip()
    fence_start = stripped.find("```")
    if fence_start != -1:
        stripped = _strip_code_fence(stripped[fence_start:])
    if not stripped:
        return None

    opening_idx = None
    expected: list[str] = []
    in_string = False
    escaped = False
    for index, char in enumerate(stripped):
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"' and opening_idx is not None:
            in_string = True
        elif char in "{[":
            if opening_idx is None:
                opening_idx = index
            expected.append("}" if char == "{" else "]")
        elif expected and char == expected[-1]:
            expected.pop()
            if not expected and opening_idx is not None:
                return _strip_trailing_commas(stripped[opening_idx : index + 1].strip())
    return stripped if stripped != raw.strip() else None


def _coerce_python_literal(candidate: str) -> Any | None:
    """Fall back to Python literal parsing when JSON decoding fails."""
    try:
        literal = ast.literal_eval(candidate)
    except (SyntaxError, ValueError):
        return None
    return _normalise_literal(literal)


def _normalise_literal(value: Any) -> Any:
    if isinstance(value, dict):
        return {str(key): _normalise_literal(sub) for key, sub in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [_normalise_literal(item) for item in value]
    if isinstance(value, (str, int, float, bool)) or value is None:
        return value
    return str(value)
