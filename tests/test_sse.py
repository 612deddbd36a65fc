"""Tests for event-stream frame decoding."""

from opslog.cli.utils.sse import DEFAULT_EVENT, SSEDecoder, SSEMessage, iter_messages


class TestSSEDecoder:
    def test_comment_lines_are_ignored(self) -> None:
        decoder = SSEDecoder()
        assert decoder.feed(": keep-alive") is None
        assert decoder.feed("") is None

    def test_multiline_data_is_joined(self) -> None:
        messages = list(iter_messages(["event: log", "data: one", "data: two", ""]))
        assert messages == [SSEMessage(event="log", data="one\ntwo")]

    def test_default_event_name(self) -> None:
        (message,) = iter_messages(["data:no space", ""])
        assert message.event == DEFAULT_EVENT
        assert message.data == "no space"

    def test_last_event_id_survives_dispatch(self) -> None:
        decoder = SSEDecoder()
        decoder.feed("id: 41")
        decoder.feed("data: a")
        message = decoder.feed("")
        assert message.id == "41"

        decoder.feed("data: b")
        second = decoder.feed("")
        assert second.id is None
        assert decoder.last_event_id == "41"

    def test_retry_field(self) -> None:
        (message,) = iter_messages(["retry: 3000", "data: x", ""])
        assert message.retry == 3000

    def test_crlf_terminators_are_stripped(self) -> None:
        (message,) = iter_messages(["data: windows\r\n", "\r\n"])
        assert message.data == "windows"

    def test_trailing_message_is_flushed(self) -> None:
        messages = list(iter_messages(["data: first", "", "event: complete", "data: done"]))
        assert [m.event for m in messages] == [DEFAULT_EVENT, "complete"]
