"""
Client-side consumer for the recommendation stream.

Posts a prompt, reads the event stream as it arrives and keeps a small
state object (status, accumulated text, metadata, error) that listeners
can subscribe to.
"""

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any

import httpx

from .sse import SSEDecoder, SSEEvent

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "http://127.0.0.1:8001"
RECOMMEND_PATH = "/recommend"
CONNECTION_LOST = "Connection lost."
STREAM_FAILED = "Stream failed."


class StreamStatus(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    STREAMING = "streaming"
    COMPLETED = "completed"
    ERROR = "error"


TERMINAL_STATUSES = frozenset({StreamStatus.COMPLETED, StreamStatus.ERROR})


@dataclass
class StreamSnapshot:
    """Observable state of one recommendation stream."""

    status: StreamStatus = StreamStatus.IDLE
    text: str = ""
    metadata: dict[str, Any] | None = None
    error: str | None = None
    finish_reason: str | None = None
    events: list[str] = field(default_factory=list)

    @property
    def items(self) -> list[dict[str, Any]]:
        return (self.metadata or {}).get("items", [])


Listener = Callable[[StreamSnapshot], None]


def _parse_payload(event: SSEEvent) -> dict[str, Any]:
    try:
        payload = event.json()
    except ValueError:
        logger.warning(f"Failed to parse SSE payload for {event.event}: {event.data!r}")
        return {"message": event.data}
    return payload if isinstance(payload, dict) else {}


class RecommendationStreamClient:
    """
    Streams recommendations from a ``POST /recommend`` endpoint.

    Use as an async context manager, or call ``aclose()`` when done::

        async with RecommendationStreamClient(base_url) as client:
            snapshot = await client.send_prompt("cozy mysteries")
    """

    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        path: str = RECOMMEND_PATH,
        client: httpx.AsyncClient | None = None,
        cookies: dict[str, str] | None = None,
        timeout: float = 60.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.path = path
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            base_url=base_url, cookies=cookies, timeout=timeout, transport=transport
        )
        self._state = StreamSnapshot()
        self._listeners: list[Listener] = []
        self._task: asyncio.Task | None = None
        self._cancelled = False

    async def __aenter__(self) -> "RecommendationStreamClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.aclose()

    @property
    def status(self) -> StreamStatus:
        return self._state.status

    def snapshot(self) -> StreamSnapshot:
        return replace(self._state, events=list(self._state.events))

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a listener for state changes. Returns an unsubscribe callable."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _update(self, **changes: Any) -> None:
        if self._cancelled:
            return
        self._state = replace(self._state, **changes)
        snapshot = self.snapshot()
        for listener in list(self._listeners):
            listener(snapshot)

    async def send_prompt(
        self, prompt: str, filters: dict[str, Any] | None = None
    ) -> StreamSnapshot:
        """
        Send a prompt and consume the stream until it ends.

        A request already in flight is cancelled first. Returns the final
        snapshot; ``status`` is idle if the request was cancelled.
        """
        if self._task is not None and not self._task.done():
            await self.cancel()

        self._cancelled = False
        self._state = StreamSnapshot()
        self._update(status=StreamStatus.CONNECTING)

        body: dict[str, Any] = {"prompt": prompt}
        if filters:
            body["filters"] = filters

        task = asyncio.ensure_future(self._consume(body))
        self._task = task
        try:
            await task
        except asyncio.CancelledError:
            # Our own cancel() only cancels the inner task
            if not task.cancelled() or not self._cancelled:
                raise
        return self.snapshot()

    async def cancel(self) -> None:
        """Abort the in-flight request. The status goes back to idle silently."""
        self._cancelled = True
        self._state = replace(self._state, status=StreamStatus.IDLE)
        task = self._task
        if task is not None and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

    async def aclose(self) -> None:
        if self._task is not None and not self._task.done():
            await self.cancel()
        if self._owns_client:
            await self._client.aclose()

    async def _consume(self, body: dict[str, Any]) -> None:
        decoder = SSEDecoder()
        try:
            async with self._client.stream("POST", self.path, json=body) as response:
                if response.status_code >= 400:
                    await self._handle_error_response(response)
                    return

                async for chunk in response.aiter_bytes():
                    for event in decoder.feed(chunk):
                        self._dispatch(event)
                    if self._state.status in TERMINAL_STATUSES:
                        return

                for event in decoder.flush():
                    self._dispatch(event)
        except httpx.HTTPError as e:
            logger.warning(f"Recommendation stream failed: {e}")
            self._update(status=StreamStatus.ERROR, error=CONNECTION_LOST)
            return

        if self._state.status not in TERMINAL_STATUSES:
            self._update(status=StreamStatus.ERROR, error=CONNECTION_LOST)

    async def _handle_error_response(self, response: httpx.Response) -> None:
        await response.aread()
        message = f"Request failed ({response.status_code})."
        try:
            payload = response.json()
        except ValueError:
            payload = None
        if isinstance(payload, dict) and payload.get("error"):
            message = str(payload["error"])
        self._update(status=StreamStatus.ERROR, error=message)

    def _dispatch(self, event: SSEEvent) -> None:
        if self._state.status in TERMINAL_STATUSES:
            return

        name = event.event or "message"
        payload = _parse_payload(event)
        events = [*self._state.events, name]

        if name == "status":
            self._update(status=StreamStatus.CONNECTING, events=events)
        elif name == "metadata":
            self._update(metadata=payload, events=events)
        elif name == "token":
            delta = payload.get("delta")
            if delta:
                self._update(
                    status=StreamStatus.STREAMING,
                    text=self._state.text + delta,
                    events=events,
                )
        elif name == "error":
            self._update(
                status=StreamStatus.ERROR,
                error=payload.get("message") or STREAM_FAILED,
                events=events,
            )
        elif name == "done":
            self._update(
                status=StreamStatus.COMPLETED,
                finish_reason=payload.get("finishReason") or payload.get("status"),
                events=events,
            )
        else:
            logger.debug(f"Ignoring unknown stream event {name}")
