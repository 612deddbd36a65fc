"""Live log streaming session.

One StreamSession supervises one Server-Sent-Events connection for a work
item:

    IDLE -> CONNECTING -> OPEN -> CLOSED
                 ^          |
                 |          v
                 +------- ERROR   (scheduled reconnection, exponential backoff)

Every transport attempt carries a generation number. Anything that ends an
attempt (failure, disconnect, completion, reconnection) bumps the generation,
so callbacks and reads belonging to an older attempt drop out silently
instead of acting on the new one.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, AsyncContextManager, AsyncIterator, Callable, Optional, Tuple

from opslog.opslog_api_control import (
    ConnectError,
    OpslogAPIError,
    RedirectInProgressError,
    RequestTimeoutError,
    ServerRejectedError,
    TransportUnreachableError,
    UnauthorizedError,
)
from opslog.cli.utils.events import (
    Connected,
    Disconnected,
    EventDispatcher,
    Handler,
    LogEvent,
    LogEventKind,
    StreamError,
    StreamEventKind,
    utcnow,
)
from opslog.cli.utils.sse import DEFAULT_EVENT, SSEDecoder, SSEMessage


logger = logging.getLogger(__name__)

DEFAULT_CONNECT_TIMEOUT = 10.0

# (url, last_event_id) -> async context manager yielding decoded text lines
Opener = Callable[[str, Optional[str]], AsyncContextManager[AsyncIterator[str]]]
# (delay, callback) -> handle with cancel()
Scheduler = Callable[[float, Callable[[], None]], Any]


class ConnectionState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSED = "closed"
    ERROR = "error"


@dataclass(frozen=True)
class ReconnectPolicy:
    """Exponential backoff value: delay for attempt k is base * multiplier^(k-1)."""

    base_delay: float = 1.0
    multiplier: float = 2.0
    max_attempts: int = 5
    attempt: int = 0

    def delay_for(self, attempt: int) -> float:
        return self.base_delay * self.multiplier ** max(attempt - 1, 0)

    @property
    def delay(self) -> float:
        return self.delay_for(self.attempt)

    @property
    def exhausted(self) -> bool:
        return self.attempt >= self.max_attempts

    def next(self) -> "ReconnectPolicy":
        return replace(self, attempt=self.attempt + 1)

    def reset(self) -> "ReconnectPolicy":
        return replace(self, attempt=0)


@dataclass
class StreamConnection:
    """Mutable state of the connection a session supervises."""

    url: str
    target: Optional[Tuple[int, int]] = None
    state: ConnectionState = ConnectionState.IDLE
    policy: ReconnectPolicy = field(default_factory=ReconnectPolicy)
    cursor: Optional[str] = None
    handle: Optional["asyncio.Task[None]"] = None
    generation: int = 0

    @property
    def attempt(self) -> int:
        return self.policy.attempt


def _default_scheduler(delay: float, callback: Callable[[], None]) -> asyncio.TimerHandle:
    return asyncio.get_running_loop().call_later(delay, callback)


def _current_task() -> Optional["asyncio.Task[Any]"]:
    try:
        return asyncio.current_task()
    except RuntimeError:
        return None


def _decode_payload(data: str) -> Tuple[Any, bool]:
    """Return (payload, raw); raw is True when ``data`` is not JSON."""
    try:
        return json.loads(data), False
    except ValueError:
        return data, True


class StreamSession:
    """Supervise one live log stream.

    Args:
        opener: Opens the transport for (url, last_event_id)
        policy: Reconnect policy template (attempt counter is ignored)
        connect_timeout: Seconds each attempt may take to reach OPEN
        scheduler: Timer factory; defaults to the running loop's call_later
        dispatcher: Event hub; a private one is created when omitted
    """

    def __init__(
        self,
        opener: Opener,
        *,
        policy: Optional[ReconnectPolicy] = None,
        connect_timeout: float = DEFAULT_CONNECT_TIMEOUT,
        scheduler: Optional[Scheduler] = None,
        dispatcher: Optional[EventDispatcher] = None,
    ) -> None:
        self._opener = opener
        self._policy = (policy or ReconnectPolicy()).reset()
        self.connect_timeout = connect_timeout
        self._schedule = scheduler or _default_scheduler
        self.dispatcher = dispatcher or EventDispatcher()
        self.connection: Optional[StreamConnection] = None
        self._generation = 0
        self._connect_future: Optional["asyncio.Future[StreamConnection]"] = None
        self._reconnect_handle: Any = None
        self._watchdog_handle: Any = None

    @classmethod
    def for_gateway(cls, gateway, **kwargs) -> "StreamSession":
        """Build a session that opens its transport through a RequestGateway."""

        def opener(url: str, last_event_id: Optional[str]):
            return gateway.open_stream(url, last_event_id=last_event_id)

        return cls(opener, **kwargs)

    @property
    def state(self) -> ConnectionState:
        return self.connection.state if self.connection else ConnectionState.IDLE

    def on(self, kind, handler: Handler) -> None:
        self.dispatcher.on(kind, handler)

    def off(self, kind, handler: Handler) -> None:
        self.dispatcher.off(kind, handler)

    # ------------------------------------------------------------------
    # Public lifecycle
    # ------------------------------------------------------------------

    async def connect(self, url: str, target: Optional[Tuple[int, int]] = None) -> StreamConnection:
        """Open the stream and wait until it is OPEN.

        Raises:
            ConnectError: The reconnect budget ran out, or disconnect() was
                called before the connection opened
        """
        if self.connection is not None:
            self.disconnect("replaced")

        loop = asyncio.get_running_loop()
        self.connection = StreamConnection(url=url, target=target, policy=self._policy)
        self._connect_future = loop.create_future()
        future = self._connect_future
        self._open_transport()
        return await future

    def disconnect(self, reason: str = "requested") -> bool:
        """Close the stream. Safe to call repeatedly and from event handlers.

        Returns:
            True if a connecting or open transport was closed (and a
            ``disconnected`` event emitted), False otherwise.
        """
        self._cancel_reconnect()
        self._cancel_watchdog()

        conn = self.connection
        if conn is None or conn.state in (ConnectionState.IDLE, ConnectionState.CLOSED):
            return False

        had_transport = conn.state in (ConnectionState.CONNECTING, ConnectionState.OPEN)
        conn.state = ConnectionState.CLOSED
        self._bump(conn)
        self._cancel_transport(conn)
        self._fail_connect(ConnectError(f"Log stream closed ({reason}) before it opened", attempts=conn.attempt))

        if had_transport:
            logger.debug("Log stream disconnected: %s", reason)
            self.dispatcher.emit(StreamEventKind.DISCONNECTED, Disconnected(reason=reason))
        return had_transport

    def close(self) -> None:
        """Disconnect and release every registered observer."""
        self.disconnect("closed")
        self.dispatcher.clear()

    # ------------------------------------------------------------------
    # Transport attempts
    # ------------------------------------------------------------------

    def _is_current(self, generation: int) -> bool:
        return self.connection is not None and self.connection.generation == generation

    def _bump(self, conn: StreamConnection) -> int:
        # Session-wide counter so a replaced connection never matches the new one
        self._generation += 1
        conn.generation = self._generation
        return conn.generation

    def _open_transport(self) -> None:
        conn = self.connection
        generation = self._bump(conn)
        conn.state = ConnectionState.CONNECTING
        logger.debug("Opening log stream %s (attempt %d)", conn.url, conn.attempt)

        conn.handle = asyncio.get_running_loop().create_task(self._pump(conn, generation))
        self._cancel_watchdog()
        self._watchdog_handle = self._schedule(self.connect_timeout, lambda: self._on_watchdog(generation))

    async def _pump(self, conn: StreamConnection, generation: int) -> None:
        decoder = SSEDecoder()
        try:
            async with self._opener(conn.url, conn.cursor) as lines:
                if not self._is_current(generation):
                    return
                self._on_open(generation)
                if not self._is_current(generation):
                    return

                async for line in lines:
                    message = decoder.feed(line)
                    if message is None:
                        continue
                    if decoder.last_event_id is not None:
                        conn.cursor = decoder.last_event_id
                    self._deliver(message)
                    if not self._is_current(generation):
                        return

                trailing = decoder.flush()
                if trailing is not None:
                    self._deliver(trailing)
                    if not self._is_current(generation):
                        return

            self._fail(generation, TransportUnreachableError("Log stream ended before the work completed"))
        except asyncio.CancelledError:
            raise
        except OpslogAPIError as e:
            self._fail(generation, e)
        except Exception as e:
            logger.exception("Unexpected log stream failure")
            self._fail(generation, TransportUnreachableError(f"Log stream failed: {e}"))

    def _on_open(self, generation: int) -> None:
        conn = self.connection
        self._cancel_watchdog()
        attempt = conn.attempt
        conn.state = ConnectionState.OPEN
        conn.policy = conn.policy.reset()
        logger.info("Log stream open: %s", conn.url)

        if self._connect_future is not None and not self._connect_future.done():
            self._connect_future.set_result(conn)
        self.dispatcher.emit(StreamEventKind.CONNECTED, Connected(url=conn.url, attempt=attempt))

    def _on_watchdog(self, generation: int) -> None:
        self._watchdog_handle = None
        if self._is_current(generation) and self.connection.state is ConnectionState.CONNECTING:
            self._fail(
                generation,
                RequestTimeoutError(
                    f"Log stream did not open within {self.connect_timeout:g}s",
                    timeout=self.connect_timeout,
                ),
            )

    def _fail(self, generation: int, error: OpslogAPIError) -> None:
        if not self._is_current(generation):
            return
        conn = self.connection
        self._cancel_watchdog()
        conn.state = ConnectionState.ERROR
        self._bump(conn)
        self._cancel_transport(conn)

        if isinstance(error, (UnauthorizedError, RedirectInProgressError)):
            # Session expiry is handled globally; connect() stays pending
            logger.warning("Log stream refused: %s", error)
            self.dispatcher.emit(
                StreamEventKind.ERROR,
                StreamError(error=error, attempt=conn.attempt, terminal=True),
            )
            return

        if conn.policy.exhausted:
            logger.error("Log stream failed after %d reconnect attempts: %s", conn.attempt, error)
            self.dispatcher.emit(
                StreamEventKind.ERROR,
                StreamError(error=error, attempt=conn.attempt, terminal=True),
            )
            self._fail_connect(
                ConnectError(
                    f"Log stream failed after {conn.attempt} reconnect attempts: {error}",
                    attempts=conn.attempt,
                )
            )
            return

        conn.policy = conn.policy.next()
        delay = conn.policy.delay
        self._reconnect_handle = self._schedule(delay, self._reconnect)
        logger.warning(
            "Log stream error (%s), reconnecting in %gs (attempt %d/%d)",
            error,
            delay,
            conn.attempt,
            conn.policy.max_attempts,
        )
        self.dispatcher.emit(
            StreamEventKind.ERROR,
            StreamError(error=error, attempt=conn.attempt, retry_in=delay),
        )

    def _reconnect(self) -> None:
        self._reconnect_handle = None
        if self.connection is None or self.connection.state is not ConnectionState.ERROR:
            return
        self._open_transport()

    # ------------------------------------------------------------------
    # Message mapping
    # ------------------------------------------------------------------

    def _deliver(self, message: SSEMessage) -> None:
        received_at = utcnow()
        payload, raw = _decode_payload(message.data)

        if message.event in (DEFAULT_EVENT, LogEventKind.LOG.value, LogEventKind.STATUS.value):
            if raw or message.event != LogEventKind.STATUS.value:
                kind = LogEventKind.LOG
            else:
                kind = LogEventKind.STATUS
            event = LogEvent(kind=kind, payload=payload, received_at=received_at, raw=raw, event_id=message.id)
            self.dispatcher.emit(StreamEventKind(kind.value), event)

        elif message.event == LogEventKind.COMPLETE.value:
            event = LogEvent(
                kind=LogEventKind.COMPLETE,
                payload=payload,
                received_at=received_at,
                raw=raw,
                event_id=message.id,
            )
            logger.info("Log stream reported completion")
            self.dispatcher.emit(StreamEventKind.COMPLETE, event)
            self.disconnect("complete")

        elif message.event == LogEventKind.ERROR.value:
            event = LogEvent(
                kind=LogEventKind.ERROR,
                payload=payload,
                received_at=received_at,
                raw=raw,
                event_id=message.id,
            )
            self.dispatcher.emit(
                StreamEventKind.ERROR,
                StreamError(
                    error=ServerRejectedError(event.text),
                    attempt=self.connection.attempt,
                    event=event,
                ),
            )

        else:
            logger.debug("Ignoring unknown stream event %r", message.event)

    # ------------------------------------------------------------------
    # Handles
    # ------------------------------------------------------------------

    def _fail_connect(self, error: ConnectError) -> None:
        future = self._connect_future
        if future is not None and not future.done():
            future.set_exception(error)

    def _cancel_transport(self, conn: StreamConnection) -> None:
        handle, conn.handle = conn.handle, None
        # The pump exits on its own via the generation check when it is the caller
        if handle is not None and not handle.done() and handle is not _current_task():
            handle.cancel()

    def _cancel_reconnect(self) -> None:
        handle, self._reconnect_handle = self._reconnect_handle, None
        if handle is not None:
            handle.cancel()

    def _cancel_watchdog(self) -> None:
        handle, self._watchdog_handle = self._watchdog_handle, None
        if handle is not None:
            handle.cancel()
