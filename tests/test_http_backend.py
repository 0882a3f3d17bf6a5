from __future__ import annotations

import json

import allure
import httpx
import pytest

from orchard.orchestrator.backend import (
    BackendRequestError,
    ContentBlock,
    HttpLlmBackend,
    LlmRequest,
    Message,
    ToolDefinition,
)

pytestmark = [
    allure.epic("Endpoint Pool"),
    allure.feature("Messages API Client"),
]


def _request() -> LlmRequest:
    return LlmRequest(
        model="qwen",
        messages=[
            Message(role="user", content="hi"),
            Message(
                role="assistant",
                content=[
                    ContentBlock(type="tool_use", id="t1", name="list_issues", input={}),
                ],
            ),
            Message(role="user", content=[ContentBlock.tool_result("t1", "No issues found.")]),
        ],
        system="be brief",
        tools=[ToolDefinition(name="list_issues", description="List", input_schema={})],
    )


async def test_complete_posts_messages_payload_and_parses_response() -> None:
    seen: dict[str, object] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["path"] = request.url.path
        seen["headers"] = dict(request.headers)
        seen["body"] = json.loads(request.content)
        return httpx.Response(
            200,
            json={
                "id": "msg_1",
                "content": [
                    {"type": "text", "text": "Let me check."},
                    {"type": "tool_use", "id": "t2", "name": "list_specs", "input": {}},
                ],
                "stop_reason": "tool_use",
                "usage": {"input_tokens": 12, "output_tokens": 5},
            },
        )

    backend = HttpLlmBackend("http://llm.local/", transport=httpx.MockTransport(handler))
    response = await backend.complete(_request())
    await backend.aclose()

    assert seen["path"] == "/v1/messages"
    headers = seen["headers"]
    assert isinstance(headers, dict)
    assert headers["x-api-key"] == "nokey"
    assert headers["anthropic-version"] == "2023-06-01"
    body = seen["body"]
    assert isinstance(body, dict)
    assert body["model"] == "qwen"
    assert body["stream"] is False
    assert body["system"] == "be brief"
    assert body["tools"][0]["name"] == "list_issues"
    assert body["messages"][2]["content"] == [
        {"type": "tool_result", "tool_use_id": "t1", "content": "No issues found."},
    ]

    assert response.requests_tools is True
    assert [block.text for block in response.text_blocks] == ["Let me check."]
    assert [block.name for block in response.tool_uses] == ["list_specs"]
    assert response.input_tokens == 12
    assert response.output_tokens == 5


async def test_complete_raises_on_error_status() -> None:
    transport = httpx.MockTransport(lambda request: httpx.Response(503, text="overloaded"))
    backend = HttpLlmBackend("http://llm.local", transport=transport)

    with pytest.raises(BackendRequestError, match="503") as error:
        await backend.complete(_request())

    assert error.value.status_code == 503
    await backend.aclose()


async def test_complete_wraps_transport_errors() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    backend = HttpLlmBackend("http://llm.local", transport=httpx.MockTransport(handler))

    with pytest.raises(BackendRequestError, match="failed"):
        await backend.complete(_request())
    await backend.aclose()


async def test_stream_parses_sse_data_lines() -> None:
    events = [
        {"type": "message_start"},
        {"type": "content_block_delta", "index": 0, "delta": {"text": "Hel"}},
        {"type": "content_block_delta", "index": 0, "delta": {"text": "lo"}},
        {"type": "message_delta", "delta": {"stop_reason": "end_turn"}},
    ]
    body = "".join(f"event: x\ndata: {json.dumps(event)}\n\n" for event in events)
    body += "data: not-json\n\ndata: [DONE]\n\n"

    def handler(request: httpx.Request) -> httpx.Response:
        assert json.loads(request.content)["stream"] is True
        return httpx.Response(200, text=body, headers={"content-type": "text/event-stream"})

    backend = HttpLlmBackend("http://llm.local", transport=httpx.MockTransport(handler))
    received = [event async for event in backend.stream(_request())]
    await backend.aclose()

    assert [event.type for event in received] == [
        "message_start",
        "content_block_delta",
        "content_block_delta",
        "message_delta",
    ]
    assert "".join(event.text_delta or "" for event in received) == "Hello"
    assert received[-1].stop_reason == "end_turn"


async def test_health_check_uses_models_endpoint() -> None:
    paths: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        paths.append(request.url.path)
        return httpx.Response(200, json={"data": []})

    backend = HttpLlmBackend("http://llm.local", transport=httpx.MockTransport(handler))
    assert await backend.health_check() is True
    await backend.aclose()
    assert paths == ["/v1/models"]


async def test_health_check_is_false_on_error_or_failure_status() -> None:
    def refuse(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    down = HttpLlmBackend("http://llm.local", transport=httpx.MockTransport(refuse))
    failing = HttpLlmBackend(
        "http://llm.local",
        transport=httpx.MockTransport(lambda request: httpx.Response(500)),
    )

    assert await down.health_check() is False
    assert await failing.health_check() is False
    await down.aclose()
    await failing.aclose()


def test_message_payload_round_trip_keeps_tool_blocks() -> None:
    message = Message(
        role="assistant",
        content=[
            ContentBlock.text_block("ok"),
            ContentBlock(type="tool_use", id="t1", name="read_file", input={"path": "a.py"}),
        ],
    )

    restored = Message.from_payload(message.to_payload())

    assert restored == message
    with pytest.raises(ValueError, match="Unsupported message role"):
        Message.from_payload({"role": "system", "content": "x"})
