"""Human-readable output formatter for CLI commands.

Provides pretty-printed output with status markers and boxes.
"""

from typing import Any, Dict, List, Optional


# Work status mapping (task service values)
WORK_STATUS_LABELS = {
    1: ("PENDING", "\u23f3"),  # hourglass
    2: ("RUNNING", "\U0001f3c3"),  # runner
    3: ("SUCCEEDED", "\u2705"),  # check mark
    4: ("FAILED", "\u274c"),  # cross mark
}

DEFAULT_STATUS_EMOJI = "\U0001f4ca"  # bar chart


def format_work_status(status: Any) -> str:
    """Render a work status value with its marker."""
    if status is None:
        return "\u2753 UNKNOWN"
    if isinstance(status, dict):
        status = status.get("status", status)
    try:
        label, emoji = WORK_STATUS_LABELS[int(status)]
    except (KeyError, TypeError, ValueError):
        return f"{DEFAULT_STATUS_EMOJI} {status}"
    return f"{emoji} {label}"


def _tail(lines: List[str], count: Optional[int]) -> List[str]:
    if count is None or count <= 0:
        return lines
    return lines[-count:]


def format_log_snapshot(snapshot: Dict[str, Any], tail: Optional[int] = None) -> str:
    """Format a fetched log with a summary header.

    Args:
        snapshot: LogSnapshot.to_dict() output
        tail: Show only the last N lines

    Returns:
        Formatted string
    """
    lines = [
        "",
        "\u256d" + "\u2500" * 50 + "\u256e",
        "\u2502" + f" Task {snapshot['task_id']} / Work {snapshot['work_id']}".ljust(50) + "\u2502",
        "\u251c" + "\u2500" * 50 + "\u2524",
    ]

    fields = [
        ("Status", format_work_status(snapshot.get("status"))),
        ("Completed", "yes" if snapshot.get("completed") else "no"),
        ("Source", snapshot.get("source", "primary")),
        ("Fetched in", f"{snapshot.get('elapsed', 0):.1f}s ({snapshot.get('attempts', 1)} attempt(s))"),
    ]
    for label, value in fields:
        line = f" {label}:".ljust(15) + str(value)
        lines.append("\u2502" + line.ljust(50) + "\u2502")
    lines.append("\u2570" + "\u2500" * 50 + "\u256f")

    content_lines = _tail(snapshot.get("content", "").splitlines(), tail)
    if content_lines:
        lines.append("")
        lines.extend(content_lines)
    else:
        lines.append("\n(no log output yet)")
    return "\n".join(lines)


def format_user(info: Dict[str, Any]) -> str:
    """Format the logged-in user summary."""
    user = info.get("user") or {}
    name = user.get("username") or user.get("name") or user.get("nickName") or "(unknown)"
    permissions = info.get("permissions") or []
    lines = [
        f"\U0001f464 Logged in as {name}",
        f"   Permissions: {len(permissions)}",
        f"   Session:     {info.get('session_file', '')}",
    ]
    return "\n".join(lines)


def format_error(message: str, hint: Optional[str] = None) -> str:
    """Format an error message.

    Args:
        message: Error message
        hint: Optional hint for fixing

    Returns:
        Formatted error string
    """
    lines = [f"\n\u274c Error: {message}"]
    if hint:
        lines.append(f"\U0001f4a1 Hint: {hint}")
    return "\n".join(lines)


def format_success(message: str) -> str:
    """Format a success message."""
    return f"\u2705 {message}"


def format_warning(message: str) -> str:
    """Format a warning message."""
    return f"\u26a0\ufe0f {message}"


def format_reconnecting(attempt: int, max_attempts: int, delay: float, reason: str) -> str:
    """Format the transient reconnecting indicator."""
    return f"\U0001f504 Reconnecting in {delay:g}s (attempt {attempt}/{max_attempts}): {reason}"
