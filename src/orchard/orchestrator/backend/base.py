"""Wire types and backend interface for Anthropic-compatible LLM endpoints."""

from __future__ import annotations

from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Any, Literal, Protocol

Role = Literal["user", "assistant"]
BlockType = Literal["text", "tool_use", "tool_result"]
StopReason = Literal["end_turn", "tool_use", "max_tokens", "stop_sequence"]


@dataclass(slots=True)
class ContentBlock:
    """One text, tool_use or tool_result block of a message."""

    type: BlockType
    text: str | None = None
    id: str | None = None
    name: str | None = None
    input: dict[str, Any] | None = None
    tool_use_id: str | None = None
    content: str | None = None

    @classmethod
    def text_block(cls, text: str) -> ContentBlock:
        return cls(type="text", text=text)

    @classmethod
    def tool_result(cls, tool_use_id: str | None, content: str) -> ContentBlock:
        return cls(type="tool_result", tool_use_id=tool_use_id, content=content)

    def to_payload(self) -> dict[str, Any]:
        if self.type == "text":
            return {"type": "text", "text": self.text or ""}
        if self.type == "tool_use":
            return {
                "type": "tool_use",
                "id": self.id,
                "name": self.name,
                "input": self.input or {},
            }
        return {
            "type": "tool_result",
            "tool_use_id": self.tool_use_id,
            "content": self.content or "",
        }

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> ContentBlock:
        block_type = payload.get("type")
        if block_type == "tool_use":
            raw_input = payload.get("input")
            return cls(
                type="tool_use",
                id=payload.get("id"),
                name=payload.get("name"),
                input=raw_input if isinstance(raw_input, dict) else {},
            )
        if block_type == "tool_result":
            content = payload.get("content")
            return cls(
                type="tool_result",
                tool_use_id=payload.get("tool_use_id"),
                content=content if isinstance(content, str) else str(content or ""),
            )
        return cls(type="text", text=str(payload.get("text") or ""))


@dataclass(slots=True)
class Message:
    """Role-tagged conversation entry."""

    role: Role
    content: str | list[ContentBlock]

    def to_payload(self) -> dict[str, Any]:
        if isinstance(self.content, str):
            return {"role": self.role, "content": self.content}
        return {"role": self.role, "content": [block.to_payload() for block in self.content]}

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> Message:
        role = payload.get("role")
        if role not in ("user", "assistant"):
            raise ValueError(f"Unsupported message role: {role!r}")
        content = payload.get("content")
        if isinstance(content, str):
            return cls(role=role, content=content)
        if not isinstance(content, list):
            raise ValueError("Message content must be a string or a list of blocks.")
        return cls(
            role=role,
            content=[ContentBlock.from_payload(item) for item in content if isinstance(item, dict)],
        )

    @property
    def is_tool_result(self) -> bool:
        return isinstance(self.content, list) and any(
            block.type == "tool_result" for block in self.content
        )


@dataclass(slots=True)
class ToolDefinition:
    """Tool catalog entry advertised to the model."""

    name: str
    description: str
    input_schema: dict[str, Any]

    def to_payload(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "input_schema": self.input_schema,
        }


@dataclass(slots=True)
class LlmRequest:
    """One messages request."""

    model: str
    messages: list[Message]
    max_tokens: int = 4096
    system: str | None = None
    tools: list[ToolDefinition] = field(default_factory=list)

    def to_payload(self, *, stream: bool = False) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": self.model,
            "max_tokens": self.max_tokens,
            "messages": [message.to_payload() for message in self.messages],
            "stream": stream,
        }
        if self.system:
            payload["system"] = self.system
        if self.tools:
            payload["tools"] = [tool.to_payload() for tool in self.tools]
        return payload


@dataclass(slots=True)
class LlmResponse:
    """Assistant reply with content blocks and a stop reason."""

    content: list[ContentBlock]
    stop_reason: StopReason | None = None
    id: str = ""
    input_tokens: int = 0
    output_tokens: int = 0

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> LlmResponse:
        raw_content = payload.get("content")
        blocks = (
            [ContentBlock.from_payload(item) for item in raw_content if isinstance(item, dict)]
            if isinstance(raw_content, list)
            else []
        )
        usage = payload.get("usage") if isinstance(payload.get("usage"), dict) else {}
        return cls(
            content=blocks,
            stop_reason=payload.get("stop_reason"),
            id=str(payload.get("id") or ""),
            input_tokens=int(usage.get("input_tokens") or 0),
            output_tokens=int(usage.get("output_tokens") or 0),
        )

    @property
    def text_blocks(self) -> list[ContentBlock]:
        return [block for block in self.content if block.type == "text" and block.text]

    @property
    def tool_uses(self) -> list[ContentBlock]:
        return [block for block in self.content if block.type == "tool_use"]

    @property
    def requests_tools(self) -> bool:
        return self.stop_reason == "tool_use" and bool(self.tool_uses)


@dataclass(slots=True)
class StreamEvent:
    """Incremental streaming event carrying partial text or tool-input deltas."""

    type: str
    index: int | None = None
    text_delta: str | None = None
    partial_json: str | None = None
    stop_reason: str | None = None
    error: str | None = None

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> StreamEvent:
        delta = payload.get("delta") if isinstance(payload.get("delta"), dict) else {}
        error = payload.get("error") if isinstance(payload.get("error"), dict) else None
        return cls(
            type=str(payload.get("type") or ""),
            index=payload.get("index"),
            text_delta=delta.get("text"),
            partial_json=delta.get("partial_json"),
            stop_reason=delta.get("stop_reason"),
            error=str(error.get("message")) if error else None,
        )


class LlmBackend(Protocol):
    """Protocol implemented by endpoint clients."""

    async def complete(self, request: LlmRequest) -> LlmResponse:
        """Send a non-streaming request."""

    def stream(self, request: LlmRequest) -> AsyncIterator[StreamEvent]:
        """Send a streaming request and yield incremental events."""

    async def health_check(self) -> bool:
        """Return whether the endpoint currently answers."""

    async def aclose(self) -> None:
        """Release transport resources."""
