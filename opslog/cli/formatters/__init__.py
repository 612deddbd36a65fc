"""Output formatters for CLI commands."""

from opslog.cli.formatters.json_formatter import format_json, format_json_error, format_json_event
from opslog.cli.formatters.human_formatter import (
    format_log_snapshot,
    format_work_status,
    format_user,
    format_error,
    format_success,
    format_warning,
)

__all__ = [
    "format_json",
    "format_json_error",
    "format_json_event",
    "format_log_snapshot",
    "format_work_status",
    "format_user",
    "format_error",
    "format_success",
    "format_warning",
]
