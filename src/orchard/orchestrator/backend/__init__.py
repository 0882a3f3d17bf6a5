"""LLM endpoint backends."""

from orchard.orchestrator.backend.base import (
    ContentBlock,
    LlmBackend,
    LlmRequest,
    LlmResponse,
    Message,
    StreamEvent,
    ToolDefinition,
)
from orchard.orchestrator.backend.http_backend import BackendRequestError, HttpLlmBackend

__all__ = [
    "BackendRequestError",
    "ContentBlock",
    "HttpLlmBackend",
    "LlmBackend",
    "LlmRequest",
    "LlmResponse",
    "Message",
    "StreamEvent",
    "ToolDefinition",
]
