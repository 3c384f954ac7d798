from __future__ import annotations

import json
from typing import Any, Dict, List

import pytest

from patchloop.models import (
    LLMClient,
    LLMRequest,
    LLMResponseFormatError,
    LLMRetryError,
    LLMTransportError,
    ResponsesClient,
    parse_json_payload,
)
from patchloop.models.responses import output_text
from patchloop.proposer import FilesPayload


class QueueClient(LLMClient):
    def __init__(self, responses: List[Any]) -> None:
        super().__init__(model="test-model", max_attempts=2, retry_delay=0)
        self.responses = responses
        self.payloads: List[Dict[str, Any]] = []

    def _raw_invoke(self, payload: Dict[str, Any]) -> str:
        self.payloads.append(payload)
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


def test_complete_retries_empty_responses() -> None:
    client = QueueClient(["   ", "diff --git a/x b/x\n"])

    assert client.complete(LLMRequest(prompt="fix it")) == "diff --git a/x b/x\n"
    assert len(client.payloads) == 2


def test_complete_raises_after_exhausting_attempts() -> None:
    client = QueueClient([LLMTransportError("down"), LLMTransportError("still down")])

    with pytest.raises(LLMRetryError):
        client.complete(LLMRequest(prompt="fix it"))


def test_payload_requests_strict_schema_only_for_structured_output() -> None:
    free_text = LLMRequest(prompt="p", system_prompt="s").to_payload("m")
    structured = LLMRequest(prompt="p", response_model=FilesPayload, metadata={"mode": "FIX"}).to_payload("m")

    assert "text" not in free_text
    assert [message["role"] for message in free_text["input"]] == ["system", "user"]
    schema_format = structured["text"]["format"]
    assert schema_format["type"] == "json_schema"
    assert schema_format["strict"] is True
    assert schema_format["schema"]["additionalProperties"] is False
    assert structured["metadata"] == {"mode": "FIX"}


def test_parse_json_payload_salvages_noisy_output() -> None:
    fenced = 'Here you go:\n```json\n{"files": [{"path": "a.ts", "content": "x"},]}\n```\nDone.'
    pythonic = "{'files': [{'path': 'a.ts', 'content': 'x'}]}"

    assert parse_json_payload(fenced) == {"files": [{"path": "a.ts", "content": "x"}]}
    assert parse_json_payload(pythonic)["files"][0]["path"] == "a.ts"
    assert parse_json_payload('{"braces": "a } inside"}') == {"braces": "a } inside"}


def test_parse_json_payload_rejects_garbage() -> None:
    with pytest.raises(LLMResponseFormatError):
        parse_json_payload("no json at all")
    with pytest.raises(LLMResponseFormatError):
        parse_json_payload("")


def test_responses_client_extracts_output_text() -> None:
    sent: List[Dict[str, Any]] = []

    def transport(payload: Dict[str, Any]) -> str:
        sent.append(payload)
        return json.dumps({"output": [{"content": [{"type": "output_text", "text": "diff --git a/a b/a"}]}]})

    client = ResponsesClient(model="demo-model", transport=transport, retry_delay=0)

    assert client.complete(LLMRequest(prompt="fix")) == "diff --git a/a b/a"
    assert sent[0]["model"] == "demo-model"


def test_responses_client_wraps_transport_errors() -> None:
    def transport(payload: Dict[str, Any]) -> str:
        raise OSError("connection reset")

    client = ResponsesClient(transport=transport, max_attempts=1, retry_delay=0)

    with pytest.raises(LLMRetryError) as excinfo:
        client.complete(LLMRequest(prompt="fix"))

    assert isinstance(excinfo.value.__cause__, LLMTransportError)


def test_responses_client_requires_key_without_transport(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("PATCHLOOP_TEST_KEY", raising=False)

    with pytest.raises(ValueError):
        ResponsesClient(api_key_env="PATCHLOOP_TEST_KEY")


def test_output_text_joins_message_parts_and_skips_reasoning() -> None:
    body = {
        "status": "completed",
        "output": [
            {"type": "reasoning", "summary": []},
            {
                "type": "message",
                "content": [
                    {"type": "output_text", "text": "diff --git a/a b/a\n"},
                    {"type": "output_text", "text": "--- a/a\n"},
                ],
            },
        ],
    }

    assert output_text(body) == "diff --git a/a b/a\n--- a/a\n"


def test_output_text_rejects_refusals_and_incomplete_responses() -> None:
    refusal = {"output": [{"type": "message", "content": [{"type": "refusal", "refusal": "I can't help"}]}]}
    truncated = {"status": "incomplete", "incomplete_details": {"reason": "max_output_tokens"}, "output": []}

    with pytest.raises(LLMResponseFormatError, match="refused"):
        output_text(refusal)
    with pytest.raises(LLMResponseFormatError, match="max_output_tokens"):
        output_text(truncated)


def test_responses_client_rejects_non_json_bodies() -> None:
    client = ResponsesClient(transport=lambda payload: "<html>bad gateway</html>", max_attempts=1, retry_delay=0)

    with pytest.raises(LLMRetryError) as excinfo:
        client.complete(LLMRequest(prompt="fix"))

    assert isinstance(excinfo.value.__cause__, LLMResponseFormatError)
