"""Convenience exports for the generator clients."""

from .llm_client import (
    LLMClient,
    LLMClientError,
    LLMRequest,
    LLMResponseFormatError,
    LLMRetryError,
    LLMTransportError,
    parse_json_payload,
)
from .responses import ResponsesClient

__all__ = [
    "LLMClient",
    "LLMClientError",
    "LLMRequest",
    "LLMResponseFormatError",
    "LLMRetryError",
    "LLMTransportError",
    "ResponsesClient",
    "parse_json_payload",
]
