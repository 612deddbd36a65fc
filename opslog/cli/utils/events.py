"""Typed events for live log streams.

Observers subscribe to a closed set of event kinds. Each kind carries one
payload type and ``EventDispatcher.emit`` refuses anything else, so a handler
registered for ``log`` always receives a ``LogEvent``.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Union


logger = logging.getLogger(__name__)


class StreamEventKind(str, Enum):
    """Event kinds a StreamSession publishes."""

    CONNECTED = "connected"
    LOG = "log"
    STATUS = "status"
    COMPLETE = "complete"
    ERROR = "error"
    DISCONNECTED = "disconnected"


class LogEventKind(str, Enum):
    """Event names the log service puts on the wire."""

    LOG = "log"
    STATUS = "status"
    COMPLETE = "complete"
    ERROR = "error"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class LogEvent:
    """A discrete unit of streamed output.

    ``payload`` is the decoded JSON value, or the raw text when the data did
    not decode (``raw`` is then True).
    """

    kind: LogEventKind
    payload: Any
    received_at: datetime
    raw: bool = False
    event_id: Optional[str] = None

    @property
    def text(self) -> str:
        """Printable form of the payload."""
        if isinstance(self.payload, str):
            return self.payload
        if isinstance(self.payload, dict):
            for key in ("content", "message", "log", "line"):
                value = self.payload.get(key)
                if isinstance(value, str):
                    return value
        return json.dumps(self.payload, ensure_ascii=False)


@dataclass(frozen=True)
class Connected:
    url: str
    attempt: int = 0


@dataclass(frozen=True)
class StreamError:
    """Advisory error notice.

    ``terminal`` is True when no further automatic reconnection will happen;
    otherwise ``retry_in`` holds the scheduled reconnect delay (or None for
    errors reported by the server inside an open stream).
    """

    error: Exception
    attempt: int = 0
    terminal: bool = False
    retry_in: Optional[float] = None
    event: Optional[LogEvent] = None


@dataclass(frozen=True)
class Disconnected:
    reason: str = "requested"


EventPayload = Union[Connected, LogEvent, StreamError, Disconnected]
Handler = Callable[[Any], None]

PAYLOAD_TYPES: Dict[StreamEventKind, type] = {
    StreamEventKind.CONNECTED: Connected,
    StreamEventKind.LOG: LogEvent,
    StreamEventKind.STATUS: LogEvent,
    StreamEventKind.COMPLETE: LogEvent,
    StreamEventKind.ERROR: StreamError,
    StreamEventKind.DISCONNECTED: Disconnected,
}


def coerce_kind(kind: Union[str, StreamEventKind]) -> StreamEventKind:
    """Map a kind name onto the closed set, rejecting unknown names."""
    try:
        return StreamEventKind(kind)
    except ValueError:
        valid = ", ".join(k.value for k in StreamEventKind)
        raise ValueError(f"Unknown stream event kind {kind!r} (expected one of: {valid})") from None


class EventDispatcher:
    """Publish/subscribe hub for one stream session."""

    def __init__(self) -> None:
        self._listeners: Dict[StreamEventKind, List[Handler]] = {kind: [] for kind in StreamEventKind}

    def on(self, kind: Union[str, StreamEventKind], handler: Handler) -> None:
        if not callable(handler):
            raise TypeError("Event handler must be callable")
        handlers = self._listeners[coerce_kind(kind)]
        if handler not in handlers:
            handlers.append(handler)

    def off(self, kind: Union[str, StreamEventKind], handler: Handler) -> None:
        handlers = self._listeners[coerce_kind(kind)]
        if handler in handlers:
            handlers.remove(handler)

    def clear(self) -> None:
        """Release every registered handler."""
        for handlers in self._listeners.values():
            handlers.clear()

    def listener_count(self, kind: Optional[Union[str, StreamEventKind]] = None) -> int:
        if kind is None:
            return sum(len(handlers) for handlers in self._listeners.values())
        return len(self._listeners[coerce_kind(kind)])

    def emit(self, kind: Union[str, StreamEventKind], payload: EventPayload) -> None:
        """Deliver ``payload`` to every handler of ``kind`` in registration order.

        A failing handler is logged and does not stop delivery to the others.
        """
        kind = coerce_kind(kind)
        expected = PAYLOAD_TYPES[kind]
        if not isinstance(payload, expected):
            raise TypeError(
                f"'{kind.value}' events carry {expected.__name__}, got {type(payload).__name__}"
            )
        if isinstance(payload, LogEvent) and payload.kind.value != kind.value:
            raise TypeError(f"LogEvent of kind '{payload.kind.value}' emitted as '{kind.value}'")

        # Snapshot so handlers may call on()/off() during delivery
        for handler in list(self._listeners[kind]):
            try:
                handler(payload)
            except Exception:
                logger.exception("Stream event handler failed [%s]", kind.value)
