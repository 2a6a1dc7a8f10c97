"""
voicestream - Server-Sent Events channel

An `SSEConnection` is the outbound half of one HTTP response: frames are
queued by the pipeline and drained by Starlette's `StreamingResponse`. An
`EventChannel` layers the event protocol on top of it: framing, the
heartbeat, and a small state machine that guarantees nothing is written
after the stream has closed.
"""

import asyncio
import base64
import json
import logging
import time
from enum import Enum
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Union

from .config import HEARTBEAT_INTERVAL_S
from .exceptions import is_retryable_error

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    # Connection lifecycle
    CONNECTED = "connected"
    CLOSE = "close"

    # Content
    TEXT = "text"
    AUDIO = "audio"
    SUGGESTIONS = "suggestions"
    PRODUCT_CONTEXT = "productContext"

    # Metadata and status
    METADATA = "metadata"
    STATUS = "status"

    COMPLETE = "complete"

    WARNING = "warning"
    ERROR = "error"


EVENT_DESCRIPTIONS = {
    EventType.CONNECTED: "Initial SSE connection established with client",
    EventType.TEXT: "Text content chunk streamed from the response generator",
    EventType.AUDIO: "Audio chunk generated and ready for playback",
    EventType.SUGGESTIONS: "Follow-up question suggestions generated",
    EventType.PRODUCT_CONTEXT: "Product context forwarded from the response generator",
    EventType.METADATA: "Response metadata (intent, intelligence level, etc.)",
    EventType.STATUS: "Processing status update (e.g., \"Generating response...\")",
    EventType.COMPLETE: "Stream completed successfully",
    EventType.WARNING: "Non-fatal issue occurred (e.g., audio unavailable)",
    EventType.ERROR: "Fatal error occurred, stream terminated",
    EventType.CLOSE: "Connection closing gracefully",
}

SSE_HEADERS = {
    "Content-Type": "text/event-stream",
    "Cache-Control": "no-cache, no-transform",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def event_description(event_type: Union[str, EventType]) -> str:
    try:
        return EVENT_DESCRIPTIONS[EventType(event_type)]
    except ValueError:
        return "Unknown event type"


def is_valid_event_type(event_type: Union[str, EventType]) -> bool:
    try:
        EventType(event_type)
    except ValueError:
        return False
    return True


def now_ms() -> int:
    return int(time.time() * 1000)


def format_sse_data(payload: Any) -> str:
    """
    Render a payload as one or more ``data:`` lines.

    Strings are wrapped as ``{"message": ...}``, mappings and lists are sent
    as-is, any other scalar is wrapped as ``{"value": ...}``.
    """
    if isinstance(payload, str):
        body = {"message": payload}
    elif payload is None:
        body = {}
    elif isinstance(payload, (dict, list)):
        body = payload
    else:
        body = {"value": payload}

    json_string = json.dumps(body, ensure_ascii=False, default=str)
    return "".join(f"data: {line}\n" for line in json_string.split("\n"))


def format_event(event_type: Union[str, EventType], payload: Any) -> str:
    name = event_type.value if isinstance(event_type, EventType) else str(event_type)
    return f"event: {name}\n{format_sse_data(payload)}\n"


class SSEConnection:
    """
    Queue of outbound frames for one response.

    `frames()` is handed to `StreamingResponse`. When the response is torn
    down before `end()` was called (client went away), the connection is
    marked disconnected and close callbacks fire.
    """

    def __init__(self):
        self.headers: Dict[str, str] = {}
        self._queue: asyncio.Queue = asyncio.Queue()
        self._ended = False
        self._disconnected = False
        self._close_callbacks: List[Callable[[], Any]] = []
        self._closed_fired = False

    @property
    def writable(self) -> bool:
        return not self._ended and not self._disconnected

    @property
    def disconnected(self) -> bool:
        return self._disconnected

    def set_headers(self, headers: Dict[str, str]) -> None:
        self.headers.update(headers)

    def write(self, frame: str) -> None:
        if not self.writable:
            raise ConnectionError("SSE connection is closed")
        self._queue.put_nowait(frame)

    def end(self) -> None:
        if not self.writable:
            return
        self._ended = True
        self._queue.put_nowait(None)
        self._fire_close()

    def disconnect(self) -> None:
        """The peer went away."""
        if not self.writable:
            return
        self._disconnected = True
        self._queue.put_nowait(None)
        self._fire_close()

    def on_close(self, callback: Callable[[], Any]) -> None:
        if self._closed_fired:
            callback()
        else:
            self._close_callbacks.append(callback)

    def _fire_close(self) -> None:
        if self._closed_fired:
            return
        self._closed_fired = True
        for callback in self._close_callbacks:
            try:
                callback()
            except Exception as e:
                logger.error(f"SSE close callback failed: {e}")
        self._close_callbacks.clear()

    async def frames(self) -> AsyncIterator[str]:
        try:
            while True:
                frame = await self._queue.get()
                if frame is None:
                    break
                yield frame
        finally:
            if not self._ended:
                self.disconnect()


class ChannelState(str, Enum):
    UNINITIALIZED = "uninitialized"
    OPEN = "open"
    CLOSING = "closing"
    CLOSED = "closed"


class EventChannel:
    """
    Typed events over one SSE connection.

    States move UNINITIALIZED -> OPEN -> CLOSING -> CLOSED. `close()`, the
    peer disconnecting and a failed write all end in CLOSED, after which
    every send is a no-op returning False.
    """

    def __init__(self, connection: SSEConnection, heartbeat_interval: float = HEARTBEAT_INTERVAL_S):
        self.connection = connection
        self.heartbeat_interval = heartbeat_interval
        self.state = ChannelState.UNINITIALIZED
        self.client_id: Optional[str] = None
        self.events_sent = 0
        self._heartbeat_task: Optional[asyncio.Task] = None

    def init(self, client_id: Optional[str] = None) -> None:
        """Open the stream: headers, ``connected`` event, heartbeat."""
        if self.state != ChannelState.UNINITIALIZED:
            return

        self.client_id = client_id or f"client-{now_ms()}"
        self.connection.set_headers(SSE_HEADERS)
        self.state = ChannelState.OPEN
        self.connection.on_close(self._on_connection_closed)

        self.send(EventType.CONNECTED, {
            "clientId": self.client_id,
            "timestamp": now_ms(),
            "message": "SSE connection established",
        })

        if self.is_alive():
            self._heartbeat_task = asyncio.create_task(self._heartbeat())
        logger.info(f"SSE connection initialized: {self.client_id}")

    def is_alive(self) -> bool:
        return self.state == ChannelState.OPEN and self.connection.writable

    def send(self, event_type: Union[str, EventType], payload: Any = None) -> bool:
        """Write one event; False when the channel is not open or the write failed."""
        if not self.is_alive():
            return False
        return self._write(event_type, payload)

    def _write(self, event_type: Union[str, EventType], payload: Any) -> bool:
        try:
            self.connection.write(format_event(event_type, payload))
        except Exception as e:
            logger.warning(f"Failed to send SSE event ({event_type}) to {self.client_id}: {e}")
            self._mark_closed()
            return False
        self.events_sent += 1
        return True

    async def _heartbeat(self) -> None:
        while True:
            await asyncio.sleep(self.heartbeat_interval)
            if not self.is_alive():
                return
            try:
                self.connection.write(f":heartbeat {now_ms()}\n\n")
            except Exception as e:
                logger.debug(f"Heartbeat failed for {self.client_id}: {e}")
                self._mark_closed()
                return

    def _stop_heartbeat(self) -> None:
        task = self._heartbeat_task
        self._heartbeat_task = None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    def _on_connection_closed(self) -> None:
        if self.state != ChannelState.CLOSED:
            if self.state == ChannelState.OPEN:
                logger.info(f"SSE connection closed by peer: {self.client_id}")
            self.state = ChannelState.CLOSED
        self._stop_heartbeat()

    def _mark_closed(self) -> None:
        self.state = ChannelState.CLOSED
        self._stop_heartbeat()

    def close(self, reason: str = "complete") -> None:
        """Send ``close`` and end the response. Only the first call has any effect."""
        if self.state in (ChannelState.CLOSING, ChannelState.CLOSED):
            return

        was_alive = self.is_alive()
        self.state = ChannelState.CLOSING
        self._stop_heartbeat()

        if was_alive:
            self._write(EventType.CLOSE, {"reason": reason, "timestamp": now_ms()})
            try:
                self.connection.end()
            except Exception as e:
                logger.error(f"Error closing SSE connection: {e}")

        self.state = ChannelState.CLOSED
        logger.debug(f"SSE channel {self.client_id} closed ({reason}), {self.events_sent} events sent")

    # Typed helpers

    def send_text(self, content: str) -> bool:
        return self.send(EventType.TEXT, {"content": content})

    def send_audio(self, chunk: Union[bytes, str], sequence: int) -> bool:
        if isinstance(chunk, (bytes, bytearray)):
            chunk = base64.b64encode(chunk).decode("ascii")
        return self.send(EventType.AUDIO, {"chunk": chunk, "sequence": sequence, "format": "base64"})

    def send_suggestions(self, suggestions: List[str]) -> bool:
        return self.send(EventType.SUGGESTIONS, {"items": suggestions, "count": len(suggestions)})

    def send_status(self, status: str) -> bool:
        return self.send(EventType.STATUS, {"message": status, "timestamp": now_ms()})

    def send_warning(self, message: str) -> bool:
        return self.send(EventType.WARNING, {"message": message, "timestamp": now_ms()})

    def send_error(self, error: Union[BaseException, str], can_retry: bool = False) -> bool:
        return self.send(EventType.ERROR, {
            "message": str(error),
            "canRetry": can_retry,
            "timestamp": now_ms(),
        })

    def send_metadata(self, metadata: Dict[str, Any]) -> bool:
        return self.send(EventType.METADATA, {**metadata, "timestamp": now_ms()})

    def send_complete(self, **metrics: Any) -> bool:
        return self.send(EventType.COMPLETE, {"success": True, **metrics, "timestamp": now_ms()})

    def handle_stream_error(self, error: BaseException, stage: str = "unknown") -> None:
        """Report a fatal error to the client, then close with reason ``error``."""
        logger.error(f"Stream error at {stage}: {error}")

        if self.is_alive():
            self.send_error(f"Error at {stage}: {error}", is_retryable_error(error))
            self.close("error")

    def stats(self) -> Dict[str, Any]:
        return {
            "client_id": self.client_id,
            "state": self.state.value,
            "alive": self.is_alive(),
            "events_sent": self.events_sent,
        }
