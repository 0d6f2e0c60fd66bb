"""Server-Sent Events framing for interactive sessions.

One streamer per request. The worker's turn loop is the only producer and
the HTTP response body is the only consumer, connected by an asyncio.Queue.

Frame lifecycle:
  connected           always first, queued on construction
  ...                 status / claude_* / file_change / input_request
  complete | error    exactly one terminal event
  end                 queued by close(); nothing follows it
"""

import asyncio
import json
import time
from collections.abc import AsyncIterator
from enum import StrEnum
from typing import Any

import structlog

logger = structlog.get_logger(__name__)

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",  # Disable nginx buffering
}


class SSEEventType(StrEnum):
    CONNECTED = "connected"
    STATUS = "status"
    CLAUDE_START = "claude_start"
    CLAUDE_DELTA = "claude_delta"
    CLAUDE_END = "claude_end"
    CLAUDE_MESSAGE = "claude_message"  # reserved for forward-compatible consumers; not emitted
    INPUT_REQUEST = "input_request"
    FILE_CHANGE = "file_change"
    COMPLETE = "complete"
    ERROR = "error"
    END = "end"


TERMINAL_EVENTS = frozenset({SSEEventType.COMPLETE, SSEEventType.ERROR})


def now_ms() -> int:
    return int(time.time() * 1000)


def format_sse(event: str, data: Any) -> str:
    """Render one frame. String payloads are sent as-is, anything else as JSON."""
    payload = data if isinstance(data, str) else json.dumps(data, default=str)
    return f"event: {event}\ndata: {payload}\n\n"


class SSEStreamer:
    """Ordered, single-terminal event stream for one request."""

    def __init__(self, session_id: str | None = None):
        self.session_id = session_id
        self._queue: asyncio.Queue[str | None] = asyncio.Queue()
        self._active = True
        self._closed = False
        self._terminal_sent = False
        self.send(SSEEventType.CONNECTED, {"message": "SSE connection established"})

    @property
    def is_alive(self) -> bool:
        """False once the client disconnected or the stream was closed."""
        return self._active

    @property
    def terminal_sent(self) -> bool:
        return self._terminal_sent

    def send(self, event: SSEEventType | str, data: dict | None = None) -> bool:
        """Queue one frame. Returns False if the frame was dropped.

        Frames are dropped after a disconnect, after close(), and for any
        terminal event once one has already been sent. A ``timestamp`` is
        added to dict payloads that don't carry one.
        """
        if not self._active:
            return False

        if event in TERMINAL_EVENTS:
            if self._terminal_sent:
                logger.warning("sse_duplicate_terminal_dropped", session_id=self.session_id, sse_event=str(event))
                return False
            self._terminal_sent = True

        payload = dict(data or {})
        payload.setdefault("timestamp", now_ms())
        self._queue.put_nowait(format_sse(str(event), payload))
        return True

    def close(self) -> None:
        """Queue the ``end`` frame and the end-of-stream marker. Idempotent."""
        if self._closed:
            return
        if self._active:
            self._queue.put_nowait(format_sse(SSEEventType.END, {"timestamp": now_ms()}))
        self._active = False
        self._closed = True
        self._queue.put_nowait(None)

    def disconnect(self) -> None:
        """Client went away: stop emitting immediately."""
        if self._active:
            logger.info("sse_client_disconnected", session_id=self.session_id)
        self._active = False

    async def frames(self) -> AsyncIterator[str]:
        """Yield frames until close(). Used as the StreamingResponse body.

        If the consumer stops early (client disconnect cancels the response),
        the streamer is marked dead so the producer stops emitting.
        """
        try:
            while True:
                frame = await self._queue.get()
                if frame is None:
                    return
                yield frame
        finally:
            self.disconnect()
