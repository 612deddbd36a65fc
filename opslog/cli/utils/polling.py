"""Snapshot log retrieval with escalating timeouts.

Used when live streaming is unavailable, or for logs of finished work. The
backend may block for a long time while it flushes buffered output, so a
timed-out first attempt is retried once with a much larger budget instead of
repeating the same short one.
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

import httpx

from opslog.opslog_api_control import (
    APIEndpoints,
    MalformedPayloadError,
    RequestTimeoutError,
    ServerRejectedError,
    SUCCESS_CODES,
    TERMINAL_WORK_STATUSES,
)
from opslog.cli.utils.gateway import RequestGateway, RequestSpec
from opslog.cli.utils.sse import iter_messages


logger = logging.getLogger(__name__)

FIRST_ATTEMPT_TIMEOUT = 30.0
RETRY_TIMEOUT = 180.0
DIRECT_TIMEOUT = 10.0
DIRECT_TAIL_LINES = 1000

SOURCE_PRIMARY = "primary"
SOURCE_DIRECT = "direct"


def _millis_nonce() -> int:
    return int(time.time() * 1000)


@dataclass
class RetryBudget:
    """Per-request ordered attempt timeouts."""

    timeouts: Tuple[float, ...] = (FIRST_ATTEMPT_TIMEOUT, RETRY_TIMEOUT)
    attempt: int = 0

    @property
    def max_attempts(self) -> int:
        return len(self.timeouts)

    @property
    def timeout(self) -> float:
        """Budget of the current attempt."""
        return self.timeouts[min(self.attempt, len(self.timeouts) - 1)]

    @property
    def exhausted(self) -> bool:
        return self.attempt + 1 >= len(self.timeouts)

    def advance(self) -> None:
        if self.exhausted:
            raise RuntimeError("Retry budget exhausted")
        self.attempt += 1


@dataclass
class LogSnapshot:
    """A point-in-time copy of a work item's log."""

    task_id: int
    work_id: int
    content: str
    status: Optional[Any] = None
    completed: bool = False
    attempts: int = 1
    elapsed: float = 0.0
    source: str = SOURCE_PRIMARY
    raw: Any = field(default=None, repr=False)

    @property
    def lines(self) -> List[str]:
        return self.content.splitlines()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "task_id": self.task_id,
            "work_id": self.work_id,
            "status": self.status,
            "completed": self.completed,
            "attempts": self.attempts,
            "elapsed": round(self.elapsed, 3),
            "source": self.source,
            "content": self.content,
        }


def _is_terminal_status(status: Any) -> bool:
    try:
        return int(status) in TERMINAL_WORK_STATUSES
    except (TypeError, ValueError):
        return False


def _content_from(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, list):
        return "\n".join(item if isinstance(item, str) else json.dumps(item, ensure_ascii=False) for item in value)
    return json.dumps(value, ensure_ascii=False)


def _parse_envelope(body: Dict[str, Any]) -> Tuple[str, Any, bool]:
    if body.get("code") not in SUCCESS_CODES:
        raise ServerRejectedError(
            body.get("message") or f"Log request failed with code {body.get('code')}",
            code=body.get("code"),
        )
    data = body.get("data")
    if not isinstance(data, dict):
        return _content_from(data), None, False

    content = ""
    for key in ("content", "log", "logs"):
        if key in data:
            content = _content_from(data[key])
            break
    status = data.get("status")
    completed = bool(data.get("completed") or data.get("finished")) or _is_terminal_status(status)
    return content, status, completed


def _parse_event_stream(text: str) -> Tuple[str, Any, bool]:
    lines: List[str] = []
    status = None
    completed = False
    for message in iter_messages(text.splitlines()):
        if message.event == "complete":
            completed = True
            continue
        if message.event == "status":
            try:
                status = json.loads(message.data)
            except ValueError:
                status = message.data
            continue
        if message.event == "error":
            logger.warning("Log service reported: %s", message.data)
            continue
        lines.append(message.data)
    return "\n".join(lines), status, completed


def parse_snapshot_body(response: httpx.Response) -> Tuple[str, Any, bool, Any]:
    """Extract (content, status, completed, decoded body) from a log response.

    Raises:
        MalformedPayloadError: The body is neither an envelope nor an event stream
        ServerRejectedError: The envelope carries a failure code
    """
    content_type = response.headers.get("content-type", "")
    text = response.text

    if "text/event-stream" in content_type or text.lstrip().startswith(("data:", "event:", ":")):
        content, status, completed = _parse_event_stream(text)
        return content, status, completed, text

    try:
        body = response.json()
    except ValueError:
        if "json" in content_type:
            raise MalformedPayloadError(f"Invalid JSON log response: {text[:200]}")
        # Plain-text log dump
        return text, None, False, text

    if isinstance(body, dict) and "code" in body:
        content, status, completed = _parse_envelope(body)
        return content, status, completed, body
    raise MalformedPayloadError("Invalid log response format")


class PollingFallbackClient:
    """Fetch log snapshots through the request gateway.

    Args:
        gateway: RequestGateway every call goes through
        first_attempt_timeout: Budget of the first attempt (seconds)
        retry_timeout: Budget of the single retry after a timeout (seconds)
        direct_timeout: Budget of the direct path (seconds)
        clock: Monotonic time source used for the elapsed figure
        nonce: Cache-busting value factory for the ``t`` parameter
    """

    def __init__(
        self,
        gateway: RequestGateway,
        *,
        first_attempt_timeout: float = FIRST_ATTEMPT_TIMEOUT,
        retry_timeout: float = RETRY_TIMEOUT,
        direct_timeout: float = DIRECT_TIMEOUT,
        clock: Callable[[], float] = time.monotonic,
        nonce: Callable[[], int] = _millis_nonce,
    ) -> None:
        self.gateway = gateway
        self.first_attempt_timeout = first_attempt_timeout
        self.retry_timeout = retry_timeout
        self.direct_timeout = direct_timeout
        self._clock = clock
        self._nonce = nonce

    @property
    def endpoints(self) -> APIEndpoints:
        return self.gateway.endpoints

    def new_budget(self) -> RetryBudget:
        return RetryBudget(timeouts=(self.first_attempt_timeout, self.retry_timeout))

    async def fetch_log(self, task_id: int, work_id: int) -> LogSnapshot:
        """Fetch the current log of one work item.

        Only a timeout earns a retry; every other failure surfaces at once.

        Raises:
            RequestTimeoutError: Both attempts timed out (``still_running`` is True)
            NotFoundError: The task or work item does not exist
            ServerRejectedError, TransportUnreachableError: Upstream failures
        """
        budget = self.new_budget()
        started = self._clock()
        path = self.endpoints.task_log(task_id, work_id)

        while True:
            spec = RequestSpec(
                method="GET",
                path=path,
                params={
                    "t": self._nonce(),
                    "realtime": "true",
                    "includeBuffer": "true",
                },
                timeout=budget.timeout,
            )
            try:
                response = await self.gateway.send(spec)
                break
            except RequestTimeoutError as e:
                if budget.exhausted:
                    raise RequestTimeoutError(
                        f"Log request for task {task_id} work {work_id} exceeded "
                        f"{budget.timeout:g}s after {budget.attempt + 1} attempts; "
                        "the backend may still be running a long operation",
                        timeout=budget.timeout,
                        attempts=budget.attempt + 1,
                    ) from e
                logger.warning(
                    "Log request timed out after %ss, retrying with %ss budget",
                    budget.timeout,
                    budget.timeouts[budget.attempt + 1],
                )
                budget.advance()

        content, status, completed, raw = parse_snapshot_body(response)
        return LogSnapshot(
            task_id=task_id,
            work_id=work_id,
            content=content,
            status=status,
            completed=completed,
            attempts=budget.attempt + 1,
            elapsed=self._clock() - started,
            source=SOURCE_PRIMARY,
            raw=raw,
        )

    async def fetch_log_direct(self, task_id: int, work_id: int, lines: int = DIRECT_TAIL_LINES) -> LogSnapshot:
        """Fetch the tail of a log from the direct endpoint. No retry."""
        started = self._clock()
        spec = RequestSpec(
            method="GET",
            path=self.endpoints.task_log_direct(task_id, work_id),
            params={
                "t": self._nonce(),
                "tail": "true",
                "lines": lines,
                "nocache": "true",
            },
            timeout=self.direct_timeout,
        )
        response = await self.gateway.send(spec)
        content, status, completed, raw = parse_snapshot_body(response)
        return LogSnapshot(
            task_id=task_id,
            work_id=work_id,
            content=content,
            status=status,
            completed=completed,
            attempts=1,
            elapsed=self._clock() - started,
            source=SOURCE_DIRECT,
            raw=raw,
        )
