"""Tests for the live log stream session."""

import asyncio
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, List, Optional, Tuple

import pytest

from opslog.opslog_api_control import (
    ConnectError,
    RequestTimeoutError,
    TransportUnreachableError,
    UnauthorizedError,
)
from opslog.cli.utils.events import LogEventKind, StreamEventKind
from opslog.cli.utils.stream import ConnectionState, ReconnectPolicy, StreamSession

from fakes import FakeScheduler, settle


HANG = object()

STREAM_URL = "/api/v1/task/ansible/42/log/7"


async def _lines(lines: List[Any]) -> AsyncIterator[str]:
    for line in lines:
        if isinstance(line, BaseException):
            raise line
        yield line


class ScriptedOpener:
    """Each open consumes one script: an exception to raise, HANG, or lines to serve."""

    def __init__(self, *scripts: Any) -> None:
        self.scripts = list(scripts)
        self.calls: List[Tuple[str, Optional[str]]] = []

    @asynccontextmanager
    async def __call__(self, url: str, last_event_id: Optional[str]):
        self.calls.append((url, last_event_id))
        script = self.scripts.pop(0)
        if script is HANG:
            await asyncio.Event().wait()
        if isinstance(script, Exception):
            raise script
        yield _lines(script)


def record_all(session: StreamSession) -> List[Tuple[str, Any]]:
    events: List[Tuple[str, Any]] = []
    for kind in StreamEventKind:
        session.on(kind, lambda payload, kind=kind: events.append((kind.value, payload)))
    return events


def drop() -> TransportUnreachableError:
    return TransportUnreachableError("connection reset")


class TestReconnectPolicy:
    def test_delays_double_per_attempt(self) -> None:
        policy = ReconnectPolicy(base_delay=1.0, max_attempts=5)
        assert [policy.delay_for(k) for k in range(1, 6)] == [1.0, 2.0, 4.0, 8.0, 16.0]

    def test_next_and_reset_return_new_values(self) -> None:
        policy = ReconnectPolicy(max_attempts=2)
        advanced = policy.next().next()
        assert policy.attempt == 0
        assert advanced.attempt == 2
        assert advanced.exhausted
        assert advanced.reset().attempt == 0


class TestBackoff:
    @pytest.mark.asyncio
    async def test_three_failures_back_off_then_fourth_is_terminal(self, fake_scheduler: FakeScheduler) -> None:
        """Task 42 / work 7: reconnects after 1s, 2s, 4s; the fourth failure gives up."""
        opener = ScriptedOpener(drop(), drop(), drop(), drop())
        session = StreamSession(opener, policy=ReconnectPolicy(max_attempts=3), scheduler=fake_scheduler)
        events = record_all(session)

        connect_task = asyncio.create_task(session.connect(STREAM_URL, target=(42, 7)))
        await settle()

        observed_delays = []
        for _ in range(3):
            (timer,) = fake_scheduler.pending(session._reconnect)
            observed_delays.append(timer.delay)
            fake_scheduler.fire(timer)
            await settle()

        assert observed_delays == [1.0, 2.0, 4.0]
        assert fake_scheduler.pending(session._reconnect) == []
        assert len(opener.calls) == 4
        assert session.state is ConnectionState.ERROR

        errors = [payload for kind, payload in events if kind == "error"]
        assert [e.retry_in for e in errors] == [1.0, 2.0, 4.0, None]
        assert errors[-1].terminal
        assert not any(e.terminal for e in errors[:-1])

        with pytest.raises(ConnectError) as exc_info:
            await connect_task
        assert exc_info.value.attempts == 3

    @pytest.mark.asyncio
    async def test_counter_resets_on_open_and_cursor_is_resent(self, fake_scheduler: FakeScheduler) -> None:
        opener = ScriptedOpener(
            ["id: 5", "data: first", ""],  # ends without completion
            ["data: second", "", "event: complete", "data: done", ""],
        )
        session = StreamSession(opener, scheduler=fake_scheduler)
        events = record_all(session)

        conn = await session.connect(STREAM_URL)
        await settle()
        assert conn.attempt == 1

        (timer,) = fake_scheduler.pending(session._reconnect)
        fake_scheduler.fire(timer)
        await settle()

        assert opener.calls[1] == (STREAM_URL, "5")
        connected = [payload for kind, payload in events if kind == "connected"]
        assert [c.attempt for c in connected] == [0, 1]
        assert conn.attempt == 0
        assert session.state is ConnectionState.CLOSED

    @pytest.mark.asyncio
    async def test_watchdog_synthesizes_timeout(self, fake_scheduler: FakeScheduler) -> None:
        opener = ScriptedOpener(HANG, HANG)
        session = StreamSession(opener, connect_timeout=10.0, scheduler=fake_scheduler)
        events = record_all(session)

        connect_task = asyncio.create_task(session.connect(STREAM_URL))
        await settle()

        (watchdog,) = [t for t in fake_scheduler.pending() if t.delay == 10.0]
        fake_scheduler.fire(watchdog)
        await settle()

        errors = [payload for kind, payload in events if kind == "error"]
        assert isinstance(errors[0].error, RequestTimeoutError)
        assert errors[0].retry_in == 1.0
        assert session.state is ConnectionState.ERROR
        assert not connect_task.done()

        session.disconnect()
        with pytest.raises(ConnectError):
            await connect_task


class TestEventDelivery:
    @pytest.mark.asyncio
    async def test_complete_is_followed_only_by_disconnected(self, fake_scheduler: FakeScheduler) -> None:
        opener = ScriptedOpener(
            [
                ": heartbeat",
                "event: log",
                'data: {"content": "hello"}',
                "",
                "data: plain text line",
                "",
                "event: complete",
                "data: Task completed with status 3",
                "",
                "data: after completion",
                "",
            ]
        )
        session = StreamSession(opener, scheduler=fake_scheduler)
        events = record_all(session)

        await session.connect(STREAM_URL)
        await settle()

        assert [kind for kind, _ in events] == ["connected", "log", "log", "complete", "disconnected"]
        first_log, second_log = events[1][1], events[2][1]
        assert first_log.text == "hello"
        assert not first_log.raw
        assert second_log.raw
        assert second_log.payload == "plain text line"
        assert events[3][1].text == "Task completed with status 3"
        assert events[4][1].reason == "complete"
        assert fake_scheduler.pending(session._reconnect) == []

    @pytest.mark.asyncio
    async def test_malformed_status_becomes_raw_log(self, fake_scheduler: FakeScheduler) -> None:
        opener = ScriptedOpener(["event: status", "data: {not json", "", "event: status", 'data: {"status": 2}', ""], HANG)
        session = StreamSession(opener, scheduler=fake_scheduler)
        events = record_all(session)

        await session.connect(STREAM_URL)
        await settle()

        log_event = events[1][1]
        assert events[1][0] == "log"
        assert log_event.kind is LogEventKind.LOG
        assert log_event.raw
        assert log_event.payload == "{not json"
        assert log_event.received_at is not None
        assert events[2][0] == "status"
        assert events[2][1].payload == {"status": 2}
        session.close()

    @pytest.mark.asyncio
    async def test_server_error_event_is_advisory(self, fake_scheduler: FakeScheduler) -> None:
        opener = ScriptedOpener(["event: error", "data: disk almost full", "", "data: still going", ""], HANG)
        session = StreamSession(opener, scheduler=fake_scheduler)
        events = record_all(session)

        await session.connect(STREAM_URL)
        await settle()

        kind, error = events[1]
        assert kind == "error"
        assert not error.terminal
        assert error.retry_in is None
        assert "disk almost full" in str(error.error)
        assert events[2][0] == "log"
        session.close()


class TestDisconnect:
    @pytest.mark.asyncio
    async def test_disconnect_twice_is_noop(self, fake_scheduler: FakeScheduler) -> None:
        opener = ScriptedOpener(HANG)
        session = StreamSession(opener, scheduler=fake_scheduler)
        events = record_all(session)

        connect_task = asyncio.create_task(session.connect(STREAM_URL))
        await settle()

        assert session.disconnect() is True
        assert session.disconnect() is False
        assert [kind for kind, _ in events] == ["disconnected"]
        assert session.state is ConnectionState.CLOSED
        with pytest.raises(ConnectError):
            await connect_task

    @pytest.mark.asyncio
    async def test_disconnect_cancels_scheduled_reconnect(self, fake_scheduler: FakeScheduler) -> None:
        opener = ScriptedOpener(drop())
        session = StreamSession(opener, scheduler=fake_scheduler)
        events = record_all(session)

        connect_task = asyncio.create_task(session.connect(STREAM_URL))
        await settle()
        (timer,) = fake_scheduler.pending(session._reconnect)

        # No transport is open while waiting to reconnect
        assert session.disconnect() is False
        assert timer.cancelled
        assert "disconnected" not in [kind for kind, _ in events]

        # A stale callback must not resurrect the session
        timer.callback()
        await settle()
        assert len(opener.calls) == 1
        assert session.state is ConnectionState.CLOSED
        with pytest.raises(ConnectError):
            await connect_task

    @pytest.mark.asyncio
    async def test_disconnect_from_handler(self, fake_scheduler: FakeScheduler) -> None:
        opener = ScriptedOpener(["data: one", "", "data: two", ""])
        session = StreamSession(opener, scheduler=fake_scheduler)
        events = record_all(session)
        session.on("log", lambda event: session.disconnect("seen enough"))

        await session.connect(STREAM_URL)
        await settle()

        assert [kind for kind, _ in events] == ["connected", "log", "disconnected"]
        assert events[-1][1].reason == "seen enough"
        assert fake_scheduler.pending(session._reconnect) == []

    @pytest.mark.asyncio
    async def test_close_releases_listeners(self, fake_scheduler: FakeScheduler) -> None:
        session = StreamSession(ScriptedOpener(HANG), scheduler=fake_scheduler)
        record_all(session)
        assert session.dispatcher.listener_count() == len(StreamEventKind)

        session.close()
        assert session.dispatcher.listener_count() == 0

    def test_disconnect_before_connect(self) -> None:
        session = StreamSession(ScriptedOpener())
        assert session.disconnect() is False
        assert session.state is ConnectionState.IDLE


class TestAuthFailure:
    @pytest.mark.asyncio
    async def test_unauthorized_is_terminal_and_connect_stays_pending(self, fake_scheduler: FakeScheduler) -> None:
        opener = ScriptedOpener(UnauthorizedError("token expired"))
        session = StreamSession(opener, scheduler=fake_scheduler)
        events = record_all(session)

        connect_task = asyncio.create_task(session.connect(STREAM_URL))
        await settle()

        errors = [payload for kind, payload in events if kind == "error"]
        assert len(errors) == 1
        assert errors[0].terminal
        assert fake_scheduler.pending(session._reconnect) == []
        assert not connect_task.done()

        connect_task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await connect_task


class TestUnexpectedFailure:
    @pytest.mark.asyncio
    async def test_crash_while_reading_schedules_reconnect(self, fake_scheduler: FakeScheduler) -> None:
        opener = ScriptedOpener(["data: one", "", RuntimeError("decoder blew up")], HANG)
        session = StreamSession(opener, scheduler=fake_scheduler)
        events = record_all(session)

        await session.connect(STREAM_URL)
        await settle()

        assert [kind for kind, _ in events] == ["connected", "log", "error"]
        error = events[-1][1]
        assert isinstance(error.error, TransportUnreachableError)
        assert "decoder blew up" in str(error.error)
        assert error.retry_in == 1.0
        assert session.state is ConnectionState.ERROR

        (timer,) = fake_scheduler.pending(session._reconnect)
        fake_scheduler.fire(timer)
        await settle()
        assert len(opener.calls) == 2
        assert session.state is ConnectionState.CONNECTING
        session.close()
