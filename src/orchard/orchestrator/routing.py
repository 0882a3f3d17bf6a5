"""Weighted, health-aware routing of LLM requests across endpoints."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections import deque
from collections.abc import AsyncIterator, Callable, Sequence
from dataclasses import dataclass, field
from datetime import datetime

from orchard.config import EndpointSettings
from orchard.orchestrator.backend import (
    HttpLlmBackend,
    LlmBackend,
    LlmRequest,
    LlmResponse,
    StreamEvent,
)
from orchard.storage.common import utc_now

logger = logging.getLogger(__name__)

BackendFactory = Callable[[EndpointSettings], LlmBackend]
CapacityListener = Callable[[], None]


class RouterError(RuntimeError):
    """Base class for routing failures."""


class NoEndpointsAvailableError(RouterError):
    """No healthy endpoint has spare capacity right now."""


class EndpointRequestError(RouterError):
    """A call failed on one endpoint; the endpoint was marked unhealthy."""

    def __init__(self, endpoint_name: str, cause: BaseException) -> None:
        super().__init__(f"Request to endpoint {endpoint_name!r} failed: {cause}")
        self.endpoint_name = endpoint_name


class RouterClosedError(RouterError):
    """The router stopped while the request was still waiting for capacity."""


@dataclass(slots=True)
class EndpointState:
    """Mutable per-endpoint accounting owned by the router."""

    name: str
    url: str
    weight: int
    max_concurrent: int
    backend: LlmBackend
    healthy: bool = True
    last_check: datetime = field(default_factory=utc_now)
    current_requests: int = 0
    reserved_slots: int = 0
    weight_counter: int = 0

    @property
    def in_use(self) -> int:
        return self.current_requests + self.reserved_slots

    @property
    def available(self) -> bool:
        return self.healthy and self.in_use < self.max_concurrent


@dataclass(slots=True)
class EndpointHealth:
    """Read-only snapshot for status displays."""

    name: str
    url: str
    healthy: bool
    last_check: datetime
    current_requests: int
    reserved_slots: int
    max_concurrent: int


@dataclass(slots=True)
class WorkerSlot:
    """Long-lived capacity held on behalf of a worker subprocess."""

    endpoint_name: str
    url: str
    released: bool = False


@dataclass(slots=True)
class _PendingRequest:
    request: LlmRequest
    future: asyncio.Future[LlmResponse]


def _default_backend_factory(endpoint: EndpointSettings) -> LlmBackend:
    return HttpLlmBackend(endpoint.url)


class EndpointRouter:
    """Selects an endpoint per request with weighted round robin.

    Over one full cycle an endpoint of weight *w* is chosen *w* times relative
    to the other available endpoints. Requests that find no capacity wait in a
    FIFO queue that drains whenever a call finishes, a worker slot is released
    or a health sweep runs. A failed call marks its endpoint unhealthy and is
    not retried elsewhere.
    """

    def __init__(
        self,
        endpoints: Sequence[EndpointSettings],
        *,
        health_check_interval_seconds: float = 30.0,
        backend_factory: BackendFactory = _default_backend_factory,
    ) -> None:
        self._endpoints = [
            EndpointState(
                name=endpoint.name,
                url=endpoint.url,
                weight=endpoint.weight,
                max_concurrent=endpoint.max_concurrent,
                backend=backend_factory(endpoint),
            )
            for endpoint in endpoints
        ]
        self.health_check_interval_seconds = health_check_interval_seconds
        self._queue: deque[_PendingRequest] = deque()
        self._dispatched: set[asyncio.Task[LlmResponse]] = set()
        self._health_task: asyncio.Task[None] | None = None
        self._capacity_listeners: list[CapacityListener] = []

    async def start(self) -> None:
        """Probe all endpoints once, then keep probing on the configured interval."""

        await self.check_all_health()
        if self._health_task is None:
            self._health_task = asyncio.create_task(self._health_loop())

    async def stop(self) -> None:
        if self._health_task is not None:
            self._health_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._health_task
            self._health_task = None
        while self._queue:
            pending = self._queue.popleft()
            if not pending.future.done():
                pending.future.set_exception(RouterClosedError("Router stopped."))

    async def aclose(self) -> None:
        await self.stop()
        for endpoint in self._endpoints:
            await endpoint.backend.aclose()

    async def check_all_health(self) -> None:
        """Probe every endpoint concurrently; one slow or failing probe never blocks another."""

        await asyncio.gather(
            *(self._probe(endpoint) for endpoint in self._endpoints),
            return_exceptions=True,
        )
        self._capacity_changed()

    async def complete(self, request: LlmRequest) -> LlmResponse:
        """Run a request now if any endpoint has capacity, else wait in FIFO order."""

        endpoint = self._select_endpoint()
        if endpoint is not None:
            endpoint.current_requests += 1
            return await self._call(endpoint, request)

        future: asyncio.Future[LlmResponse] = asyncio.get_running_loop().create_future()
        self._queue.append(_PendingRequest(request=request, future=future))
        logger.debug("No endpoint available; queued request (queue=%d)", len(self._queue))
        return await future

    async def stream(self, request: LlmRequest) -> AsyncIterator[StreamEvent]:
        """Stream from an endpoint that is available right now; never queues."""

        endpoint = self._select_endpoint()
        if endpoint is None:
            raise NoEndpointsAvailableError("No healthy endpoints available")
        endpoint.current_requests += 1
        try:
            async for event in endpoint.backend.stream(request):
                yield event
        except Exception as error:
            endpoint.healthy = False
            logger.error("Stream from %s failed: %s", endpoint.name, error)
            raise EndpointRequestError(endpoint.name, error) from error
        finally:
            endpoint.current_requests -= 1
            self._capacity_changed()

    def select_worker_endpoint(self) -> EndpointState | None:
        """First healthy endpoint with spare capacity; does not advance round robin."""

        for endpoint in self._endpoints:
            if endpoint.available:
                return endpoint
        return None

    def reserve_worker_slot(self, endpoint_name: str) -> WorkerSlot:
        endpoint = self._get(endpoint_name)
        if not endpoint.available:
            raise NoEndpointsAvailableError(
                f"Endpoint {endpoint_name!r} has no spare capacity for a worker.",
            )
        endpoint.reserved_slots += 1
        logger.info(
            "Reserved worker slot on %s (%d/%d in use)",
            endpoint.name,
            endpoint.in_use,
            endpoint.max_concurrent,
        )
        return WorkerSlot(endpoint_name=endpoint.name, url=endpoint.url)

    def acquire_worker_slot(self) -> WorkerSlot | None:
        endpoint = self.select_worker_endpoint()
        if endpoint is None:
            return None
        return self.reserve_worker_slot(endpoint.name)

    def release_worker_slot(self, slot: WorkerSlot) -> None:
        if slot.released:
            logger.warning("Worker slot on %s released twice; ignoring", slot.endpoint_name)
            return
        slot.released = True
        endpoint = self._get(slot.endpoint_name)
        endpoint.reserved_slots = max(0, endpoint.reserved_slots - 1)
        logger.info("Released worker slot on %s", endpoint.name)
        self._capacity_changed()

    def health(self) -> list[EndpointHealth]:
        return [
            EndpointHealth(
                name=endpoint.name,
                url=endpoint.url,
                healthy=endpoint.healthy,
                last_check=endpoint.last_check,
                current_requests=endpoint.current_requests,
                reserved_slots=endpoint.reserved_slots,
                max_concurrent=endpoint.max_concurrent,
            )
            for endpoint in self._endpoints
        ]

    @property
    def queue_length(self) -> int:
        return len(self._queue)

    def healthy_summary(self) -> str:
        healthy = sum(1 for endpoint in self._endpoints if endpoint.healthy)
        return f"{healthy}/{len(self._endpoints)} healthy"

    def has_healthy_endpoint(self) -> bool:
        return any(endpoint.healthy for endpoint in self._endpoints)

    def on_capacity_change(self, listener: CapacityListener) -> Callable[[], None]:
        """Call `listener` after a call finishes, a slot is released or a health sweep runs."""

        self._capacity_listeners.append(listener)
        return lambda: self._capacity_listeners.remove(listener)

    def _capacity_changed(self) -> None:
        self._drain_queue()
        for listener in list(self._capacity_listeners):
            try:
                listener()
            except Exception:  # noqa: BLE001
                logger.exception("Capacity listener failed")

    def _select_endpoint(self) -> EndpointState | None:
        available = [endpoint for endpoint in self._endpoints if endpoint.available]
        if not available:
            return None

        # max() keeps the first of equal candidates, so ties go to registration order
        best = max(available, key=lambda endpoint: endpoint.weight - endpoint.weight_counter)
        best.weight_counter += 1
        if all(endpoint.weight_counter >= endpoint.weight for endpoint in available):
            for endpoint in self._endpoints:
                endpoint.weight_counter = 0
        return best

    async def _call(self, endpoint: EndpointState, request: LlmRequest) -> LlmResponse:
        """Run one call; the caller has already counted it against `endpoint`."""

        try:
            return await endpoint.backend.complete(request)
        except Exception as error:
            endpoint.healthy = False
            logger.error("Request to %s failed: %s", endpoint.name, error)
            raise EndpointRequestError(endpoint.name, error) from error
        finally:
            endpoint.current_requests -= 1
            self._capacity_changed()

    def _drain_queue(self) -> None:
        while self._queue:
            if self._queue[0].future.done():
                self._queue.popleft()
                continue
            endpoint = self._select_endpoint()
            if endpoint is None:
                return
            pending = self._queue.popleft()
            endpoint.current_requests += 1
            task = asyncio.create_task(self._call(endpoint, pending.request))
            self._dispatched.add(task)
            task.add_done_callback(self._dispatched.discard)
            task.add_done_callback(lambda done, future=pending.future: _settle(future, done))

    async def _health_loop(self) -> None:
        while True:
            await asyncio.sleep(self.health_check_interval_seconds)
            try:
                await self.check_all_health()
            except Exception:  # noqa: BLE001
                logger.exception("Health check cycle failed")

    async def _probe(self, endpoint: EndpointState) -> None:
        was_healthy = endpoint.healthy
        try:
            endpoint.healthy = await endpoint.backend.health_check()
        except Exception as error:  # noqa: BLE001
            logger.warning("Health probe for %s raised: %s", endpoint.name, error)
            endpoint.healthy = False
        endpoint.last_check = utc_now()
        if was_healthy != endpoint.healthy:
            logger.info(
                "Endpoint %s: %s",
                endpoint.name,
                "healthy" if endpoint.healthy else "unhealthy",
            )

    def _get(self, endpoint_name: str) -> EndpointState:
        for endpoint in self._endpoints:
            if endpoint.name == endpoint_name:
                return endpoint
        raise KeyError(f"Unknown endpoint: {endpoint_name!r}")


def _settle(future: asyncio.Future[LlmResponse], task: asyncio.Task[LlmResponse]) -> None:
    if future.done():
        if not task.cancelled():
            task.exception()
        return
    if task.cancelled():
        future.cancel()
        return
    error = task.exception()
    if error is not None:
        future.set_exception(error)
    else:
        future.set_result(task.result())
