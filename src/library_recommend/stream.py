"""
Server-push recommendation stream.

A session moves through::

    INIT -> CONNECTED -> METADATA_SENT -> STREAMING -> DONE | ERROR

with CLOSED as the forced end when the client goes away. Nothing is sent
after DONE, ERROR or CLOSED. Each session owns one upstream completion
stream and one downstream transport, and ``close()`` releases both exactly
once however the session ended.
"""

import asyncio
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol

from .errors import StreamClosedError, StreamProtocolError, TransportError, UpstreamError
from .llm import StreamChunk
from .models import EventType, Identity, KeywordResult, RecommendationItem, RecommendationRequest
from .prompts import build_summary_messages
from .sse import format_event

logger = logging.getLogger(__name__)

ERROR_MESSAGE = UpstreamError.public_message


class StreamState(str, Enum):
    INIT = "init"
    CONNECTED = "connected"
    METADATA_SENT = "metadata_sent"
    STREAMING = "streaming"
    DONE = "done"
    ERROR = "error"
    CLOSED = "closed"


TERMINAL_STATES = frozenset({StreamState.DONE, StreamState.ERROR, StreamState.CLOSED})

TRANSITIONS: dict[tuple[StreamState, EventType], StreamState] = {
    (StreamState.INIT, EventType.STATUS): StreamState.CONNECTED,
    (StreamState.CONNECTED, EventType.METADATA): StreamState.METADATA_SENT,
    (StreamState.CONNECTED, EventType.ERROR): StreamState.ERROR,
    (StreamState.METADATA_SENT, EventType.TOKEN): StreamState.STREAMING,
    (StreamState.METADATA_SENT, EventType.DONE): StreamState.DONE,
    (StreamState.METADATA_SENT, EventType.ERROR): StreamState.ERROR,
    (StreamState.STREAMING, EventType.TOKEN): StreamState.STREAMING,
    (StreamState.STREAMING, EventType.DONE): StreamState.DONE,
    (StreamState.STREAMING, EventType.ERROR): StreamState.ERROR,
}


class Transport(Protocol):
    """Downstream connection that SSE frames are written to."""

    async def write(self, data: str) -> None: ...

    async def close(self) -> None: ...


class StreamingCompleter(Protocol):
    def stream_complete(self, messages: list[dict[str, str]]) -> AsyncIterator[StreamChunk]: ...


@dataclass
class RecommendationContext:
    """Everything computed before the stream opens."""

    identity: Identity
    request: RecommendationRequest
    keywords: KeywordResult
    items: list[RecommendationItem] = field(default_factory=list)

    def metadata(self) -> dict[str, Any]:
        """Payload of the ``metadata`` event."""
        return {
            "user": self.identity.to_dict(),
            "query": {
                "prompt": self.request.prompt,
                "filters": self.request.filters.to_dict(),
                "keywords": self.keywords.keywords,
                "exclude": self.keywords.exclude,
                "keywordSource": self.keywords.source.value,
            },
            "items": [item.to_dict() for item in self.items],
        }

    def summary_messages(self) -> list[dict[str, str]]:
        return build_summary_messages(
            self.identity.role,
            self.request.prompt,
            self.keywords.keywords,
            self.items,
        )


class StreamSession:
    """One client's event stream and the upstream call feeding it."""

    def __init__(self, transport: Transport):
        self.transport = transport
        self.state = StreamState.INIT
        self.upstream: Any = None
        self.sent: list[EventType] = []
        self._released = False

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    @property
    def released(self) -> bool:
        return self._released

    def attach_upstream(self, upstream: Any) -> None:
        if self.upstream is not None:
            raise StreamProtocolError("Session already has an upstream stream.")
        self.upstream = upstream

    async def send(self, event: EventType, payload: Any) -> None:
        """
        Write one event, enforcing the event order.

        Raises:
            StreamClosedError: the session already ended
            StreamProtocolError: the event isn't legal in the current state
            TransportError: the write failed (client gone)
        """
        if self.is_terminal:
            raise StreamClosedError(f"Stream already {self.state.value}.")

        next_state = TRANSITIONS.get((self.state, event))
        if next_state is None:
            raise StreamProtocolError(f"Cannot send {event.value} in state {self.state.value}.")

        # Serialize first so a bad payload never leaves a half-written frame
        frame = format_event(event.value, payload)
        try:
            await self.transport.write(frame)
        except TransportError:
            self.state = StreamState.CLOSED
            raise
        except Exception as e:
            self.state = StreamState.CLOSED
            raise TransportError(f"Write failed: {e}") from e

        self.state = next_state
        self.sent.append(event)

    def abort(self) -> None:
        """Mark the session as closed without sending anything."""
        if not self.is_terminal:
            self.state = StreamState.CLOSED

    async def close(self) -> None:
        """Release the upstream stream and the transport. Safe to call repeatedly."""
        if self._released:
            return
        self._released = True
        self.abort()

        upstream, self.upstream = self.upstream, None
        try:
            aclose = getattr(upstream, "aclose", None)
            if aclose is not None:
                await aclose()
        except Exception:
            logger.exception("Error closing upstream completion stream")
        finally:
            try:
                await self.transport.close()
            except Exception:
                logger.exception("Error closing stream transport")


class StreamOrchestrator:
    """Drives a StreamSession from a prepared RecommendationContext."""

    def __init__(self, completer: StreamingCompleter):
        self.completer = completer

    async def run(
        self,
        context: RecommendationContext,
        transport: Transport,
        wait_for_disconnect: Callable[[], Awaitable[Any]] | None = None,
    ) -> StreamSession:
        """
        Stream a recommendation to ``transport``.

        ``wait_for_disconnect`` should return once the client has gone. When
        that happens first, the stream is cancelled between chunks and no
        further events are written.
        """
        session = StreamSession(transport)
        pump = asyncio.ensure_future(self._pump(session, context))
        watcher = asyncio.ensure_future(wait_for_disconnect()) if wait_for_disconnect else None
        tasks = [t for t in (pump, watcher) if t is not None]

        try:
            await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
            if pump.done():
                pump.result()
            else:
                logger.info(f"Client disconnected from stream for user {context.identity.user_id}")
                session.abort()
                pump.cancel()
        finally:
            for task in tasks:
                if not task.done():
                    task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            await session.close()

        return session

    async def _pump(self, session: StreamSession, context: RecommendationContext) -> None:
        try:
            await session.send(EventType.STATUS, {"status": "connected"})
            await session.send(EventType.METADATA, context.metadata())

            if not context.items:
                await session.send(EventType.DONE, {"status": "no-results"})
                return

            upstream = self.completer.stream_complete(context.summary_messages())
            session.attach_upstream(upstream)

            finish_reason = None
            async for chunk in upstream:
                if chunk.finish_reason:
                    finish_reason = chunk.finish_reason
                if chunk.delta:
                    await session.send(EventType.TOKEN, {"delta": chunk.delta})

            await session.send(
                EventType.DONE,
                {"status": "completed", "finishReason": finish_reason or "unknown"},
            )
        except TransportError:
            logger.info("Recommendation stream closed by client")
        except Exception:
            logger.exception("Recommendation stream failed")
            await self._send_error(session)

    async def _send_error(self, session: StreamSession) -> None:
        if session.is_terminal:
            return
        try:
            await session.send(EventType.ERROR, {"message": ERROR_MESSAGE})
        except (TransportError, StreamProtocolError) as e:
            logger.info(f"Could not report stream error to client: {e}")
