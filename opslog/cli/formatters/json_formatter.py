"""JSON output formatter for CLI commands.

Provides structured JSON output for machine-readable parsing. Live streams
are written as one JSON object per line.
"""

import json
from typing import Any, Dict, Optional

from opslog.cli.utils.events import Connected, Disconnected, LogEvent, StreamError


def format_json(data: Any, success: bool = True) -> str:
    """Format data as JSON output.

    Args:
        data: Data to format (dict, list, or other JSON-serializable)
        success: Whether the operation was successful

    Returns:
        JSON string with standard wrapper
    """
    output = {
        "success": success,
        "data": data
    }
    return json.dumps(output, indent=2, ensure_ascii=False)


def format_json_error(
    error_type: str,
    message: str,
    code: int = 1,
    hint: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
) -> str:
    """Format an error as JSON output.

    Args:
        error_type: Type of error (e.g., "ConfigError", "TimeoutError")
        message: Error message
        code: Exit code
        hint: Optional hint for fixing the error
        details: Optional extra context (timeout budget, attempts, ...)

    Returns:
        JSON string with error details
    """
    error_data: Dict[str, Any] = {
        "type": error_type,
        "code": code,
        "message": message,
    }
    if hint:
        error_data["hint"] = hint
    if details:
        error_data.update(details)

    output = {
        "success": False,
        "error": error_data
    }
    return json.dumps(output, indent=2, ensure_ascii=False)


def format_json_event(kind: str, payload: Any) -> str:
    """Format one stream event as a single-line JSON object."""
    record: Dict[str, Any] = {"event": kind}
    if isinstance(payload, LogEvent):
        record.update(
            {
                "payload": payload.payload,
                "raw": payload.raw,
                "received_at": payload.received_at.isoformat(),
            }
        )
        if payload.event_id is not None:
            record["id"] = payload.event_id
    elif isinstance(payload, StreamError):
        record.update(
            {
                "message": str(payload.error),
                "error_type": type(payload.error).__name__,
                "attempt": payload.attempt,
                "terminal": payload.terminal,
                "retry_in": payload.retry_in,
            }
        )
    elif isinstance(payload, Connected):
        record.update({"url": payload.url, "attempt": payload.attempt})
    elif isinstance(payload, Disconnected):
        record["reason"] = payload.reason
    return json.dumps(record, ensure_ascii=False, default=str)
