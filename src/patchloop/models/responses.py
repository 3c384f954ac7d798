"""OpenAI Responses API client used by the default proposer."""

from __future__ import annotations

import json
import os
import urllib.error
import urllib.request
from typing import Any, Callable, Dict, Optional

from .llm_client import LLMClient, LLMResponseFormatError, LLMTransportError

__all__ = ["ResponsesClient", "output_text"]


Transport = Callable[[Dict[str, Any]], str]


def output_text(body: Dict[str, Any]) -> str:
    """Join the ``output_text`` parts of every message item in a response body.

    Raises :class:`LLMResponseFormatError` when the model refused, or when a
    response that did not complete carries no text at all.
    """
    parts: list[str] = []
    refusals: list[str] = []
    for item in body.get("output") or []:
        if not isinstance(item, dict) or item.get("type", "message") != "message":
            continue
        for part in item.get("content") or []:
            if not isinstance(part, dict):
                continue
            if part.get("type") == "output_text":
                parts.append(str(part.get("text", "")))
            elif part.get("type") == "refusal":
                refusals.append(str(part.get("refusal", "")))

    if refusals and not parts:
        raise LLMResponseFormatError(f"Model refused the request: {refusals[0][:200]}")

    status = body.get("status")
    if not parts and status not in (None, "completed"):
        reason = (body.get("incomplete_details") or {}).get("reason") or (body.get("error") or {}).get("message")
        raise LLMResponseFormatError(f"Response {status}: {reason or 'no output'}")
    return "".join(parts)


class ResponsesClient(LLMClient):
    """Send prompts to ``/v1/responses``; transport is injectable for tests."""

    def __init__(
        self,
        *,
        api_key: Optional[str] = None,
        api_key_env: str = "OPENAI_API_KEY",
        base_url: str = "https://api.openai.com/v1/responses",
        model: str = "gpt-4o-mini",
        transport: Optional[Transport] = None,
        timeout: float = 120.0,
        max_attempts: int = 2,
        retry_delay: float = 0.5,
    ) -> None:
        super().__init__(model=model, max_attempts=max_attempts, retry_delay=retry_delay)
        self._api_key = api_key or os.getenv(api_key_env)
        if transport is None and not self._api_key:
            raise ValueError(f"{api_key_env} is not set and no transport was given.")
        self._base_url = base_url
        self._timeout = timeout
        self._transport = transport or self._post

    def _raw_invoke(self, payload: Dict[str, Any]) -> str:
        try:
            raw = self._transport(payload)
        except LLMTransportError:
            raise
        except (OSError, ValueError) as error:
            raise LLMTransportError(f"{type(error).__name__}: {error}") from error

        try:
            body = json.loads(raw)
        except json.JSONDecodeError as error:
            raise LLMResponseFormatError(f"Response body is not JSON: {raw[:200]!r}") from error
        if not isinstance(body, dict):
            raise LLMResponseFormatError("Response body is not a JSON object.")
        return output_text(body)

    def _post(self, payload: Dict[str, Any]) -> str:
        request = urllib.request.Request(
            self._base_url,
            data=json.dumps(payload).encode("utf-8"),
            headers={"Content-Type": "application/json", "Authorization": f"Bearer {self._api_key}"},
            method="POST",
        )
        try:
            with urllib.request.urlopen(request, timeout=self._timeout) as response:
                return response.read().decode("utf-8")
        except urllib.error.HTTPError as error:  # pragma: no cover - network-dependent
            detail = error.read().decode("utf-8", errors="replace")
            raise LLMTransportError(f"HTTP {error.code} from {self._base_url}: {detail[:300]}") from error
        except urllib.error.URLError as error:  # pragma: no cover - network-dependent
            raise LLMTransportError(f"Cannot reach {self._base_url}: {error.reason}") from error
