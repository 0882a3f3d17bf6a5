"""Anthropic messages-compatible HTTP client."""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator

import httpx

from orchard.orchestrator.backend.base import LlmRequest, LlmResponse, StreamEvent

logger = logging.getLogger(__name__)

ANTHROPIC_VERSION = "2023-06-01"
DEFAULT_API_KEY = "nokey"
HEALTH_CHECK_TIMEOUT_SECONDS = 5.0


class BackendRequestError(RuntimeError):
    """Non-success response or transport failure from one endpoint."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class HttpLlmBackend:
    """Async client for `/v1/messages` and `/v1/models` on one base URL."""

    def __init__(
        self,
        base_url: str,
        *,
        api_key: str = DEFAULT_API_KEY,
        timeout_seconds: float = 600.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=httpx.Timeout(timeout_seconds, connect=10.0),
            headers={
                "content-type": "application/json",
                "x-api-key": api_key,
                "anthropic-version": ANTHROPIC_VERSION,
            },
            transport=transport,
        )

    async def complete(self, request: LlmRequest) -> LlmResponse:
        logger.debug("POST %s/v1/messages model=%s", self.base_url, request.model)
        try:
            response = await self._client.post("/v1/messages", json=request.to_payload())
        except httpx.HTTPError as error:
            raise BackendRequestError(f"LLM request to {self.base_url} failed: {error}") from error
        if response.is_error:
            raise BackendRequestError(
                f"LLM request failed ({response.status_code}): {response.text}",
                status_code=response.status_code,
            )
        try:
            payload = response.json()
        except json.JSONDecodeError as error:
            raise BackendRequestError(f"LLM response is not JSON: {error}") from error
        if not isinstance(payload, dict):
            raise BackendRequestError("LLM response is not a JSON object.")
        return LlmResponse.from_payload(payload)

    async def stream(self, request: LlmRequest) -> AsyncIterator[StreamEvent]:
        logger.debug("POST %s/v1/messages (streaming) model=%s", self.base_url, request.model)
        try:
            async with self._client.stream(
                "POST",
                "/v1/messages",
                json=request.to_payload(stream=True),
            ) as response:
                if response.is_error:
                    body = (await response.aread()).decode("utf-8", errors="replace")
                    raise BackendRequestError(
                        f"LLM stream failed ({response.status_code}): {body}",
                        status_code=response.status_code,
                    )
                async for line in response.aiter_lines():
                    if not line.startswith("data: "):
                        continue
                    data = line[len("data: ") :].strip()
                    if data == "[DONE]":
                        return
                    try:
                        payload = json.loads(data)
                    except json.JSONDecodeError:
                        logger.warning("Failed to parse SSE data: %s", data)
                        continue
                    if isinstance(payload, dict):
                        yield StreamEvent.from_payload(payload)
        except httpx.HTTPError as error:
            raise BackendRequestError(f"LLM stream to {self.base_url} failed: {error}") from error

    async def health_check(self) -> bool:
        try:
            response = await self._client.get("/v1/models", timeout=HEALTH_CHECK_TIMEOUT_SECONDS)
        except httpx.HTTPError:
            return False
        return response.is_success

    async def aclose(self) -> None:
        await self._client.aclose()
