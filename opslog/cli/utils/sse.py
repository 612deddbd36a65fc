"""Server-Sent Events frame decoding.

Implements the text/event-stream line rules: ``field: value`` lines build a
message, a blank line dispatches it, lines starting with ``:`` are comments
(the log service uses them as heartbeats).
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Iterator, List, Optional


DEFAULT_EVENT = "message"


@dataclass(frozen=True)
class SSEMessage:
    """One dispatched server-sent event."""

    event: str
    data: str
    id: Optional[str] = None
    retry: Optional[int] = None


class SSEDecoder:
    """Incremental decoder; feed it one line at a time."""

    def __init__(self) -> None:
        self._event = ""
        self._data: List[str] = []
        self._id: Optional[str] = None
        self._retry: Optional[int] = None
        self.last_event_id: Optional[str] = None

    def feed(self, line: str) -> Optional[SSEMessage]:
        """Consume a line (without its terminator).

        Returns:
            The completed message when ``line`` is the blank dispatch line,
            otherwise None.
        """
        line = line.rstrip("\r\n")

        if not line:
            return self._dispatch()

        if line.startswith(":"):
            return None

        field, sep, value = line.partition(":")
        if sep and value.startswith(" "):
            value = value[1:]

        if field == "event":
            self._event = value
        elif field == "data":
            self._data.append(value)
        elif field == "id":
            if "\0" not in value:
                self._id = value
        elif field == "retry":
            if value.isdigit():
                self._retry = int(value)
        # Unknown fields are ignored per the event-stream format

        return None

    def flush(self) -> Optional[SSEMessage]:
        """Dispatch a trailing message that was not followed by a blank line."""
        return self._dispatch()

    def _dispatch(self) -> Optional[SSEMessage]:
        if self._id is not None:
            self.last_event_id = self._id

        if not self._data and not self._event:
            self._id = None
            self._retry = None
            return None

        message = SSEMessage(
            event=self._event or DEFAULT_EVENT,
            data="\n".join(self._data),
            id=self._id,
            retry=self._retry,
        )
        self._event = ""
        self._data = []
        self._id = None
        self._retry = None
        return message


def iter_messages(lines: Iterable[str]) -> Iterator[SSEMessage]:
    """Decode a complete, already-received event-stream body."""
    decoder = SSEDecoder()
    for line in lines:
        message = decoder.feed(line)
        if message is not None:
            yield message
    trailing = decoder.flush()
    if trailing is not None:
        yield trailing
