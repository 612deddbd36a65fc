"""Log commands for opslog.

Commands:
    opslog logs fetch  - Fetch a log snapshot of a work item
    opslog logs stream - Follow a work item's log live
"""

import asyncio
import logging
import sys
from typing import Any, Awaitable, Callable, Optional

import click

from opslog.cli.context import (
    Context,
    pass_context,
    EXIT_API_ERROR,
    EXIT_AUTH_ERROR,
    EXIT_CONFIG_ERROR,
    EXIT_INTERRUPTED,
    EXIT_LOG_NOT_FOUND,
    EXIT_STREAM_FAILED,
    EXIT_TIMEOUT,
    EXIT_VALIDATION_ERROR,
    LOGIN_HINT,
)
from opslog.opslog_api_control import (
    ConnectError,
    NotFoundError,
    OpslogAPIError,
    RequestTimeoutError,
    UnauthorizedError,
    validate_task_ids,
)
from opslog.cli.utils.auth import AuthManager, AuthenticationError
from opslog.cli.utils.config import Config, ConfigError
from opslog.cli.utils.events import LogEvent, StreamError, StreamEventKind
from opslog.cli.utils.gateway import RequestGateway
from opslog.cli.utils.polling import LogSnapshot, PollingFallbackClient
from opslog.cli.utils.stream import ReconnectPolicy, StreamSession
from opslog.cli.formatters import json_formatter, human_formatter
from opslog.cli.formatters.human_formatter import format_reconnecting


logger = logging.getLogger(__name__)


@click.group()
def logs() -> None:
    """Fetch or follow task execution logs."""
    pass


def _open_gateway(config: Config) -> RequestGateway:
    return AuthManager.get_gateway(config)


def _notify_expiry(message: str) -> None:
    click.echo(human_formatter.format_warning(message), err=True)


def _run_with_gateway(config: Config, job: Callable[[RequestGateway], Awaitable[Any]]) -> Any:
    """Run ``job`` on an event loop with session-expiry handling installed.

    When the session expires mid-run the expiry coordinator navigates to
    login, which here means cancelling the running job.

    Raises:
        UnauthorizedError: The session expired while the job ran
    """

    async def main() -> Any:
        task = asyncio.current_task()
        expired = []

        def navigate_to_login() -> None:
            expired.append(True)
            task.cancel()

        AuthManager.install_expiry_handling(config, notifier=_notify_expiry, navigator=navigate_to_login)
        async with _open_gateway(config) as gateway:
            try:
                return await job(gateway)
            except asyncio.CancelledError:
                if expired:
                    raise UnauthorizedError("Session expired")
                raise

    return asyncio.run(main())


@logs.command("fetch")
@click.argument("task_id", type=int)
@click.argument("work_id", type=int)
@click.option("--direct", is_flag=True, help="Read the log tail from the direct endpoint (no retry)")
@click.option("--tail", "-n", type=int, help="Show last N lines only")
@pass_context
def fetch(ctx: Context, task_id: int, work_id: int, direct: bool, tail: Optional[int]) -> None:
    """Fetch the current log of a work item.

    The first attempt waits 30s; if it times out the request is retried
    once with a 3 minute budget, since the backend may be flushing a large
    buffer.

    \b
    Examples:
        opslog logs fetch 42 7
        opslog logs fetch 42 7 --tail 100
        opslog logs fetch 42 7 --direct
    """
    error = validate_task_ids(task_id, work_id)
    if error:
        _handle_error(ctx, "ValidationError", error, EXIT_VALIDATION_ERROR)
        return

    try:
        config, _ = Config.from_files_and_env()

        async def job(gateway: RequestGateway) -> LogSnapshot:
            client = PollingFallbackClient(
                gateway,
                first_attempt_timeout=config.poll_timeout,
                retry_timeout=config.poll_retry_timeout,
                direct_timeout=config.direct_timeout,
            )
            if direct:
                return await client.fetch_log_direct(task_id, work_id)
            return await client.fetch_log(task_id, work_id)

        snapshot = _run_with_gateway(config, job)

        data = snapshot.to_dict()
        if ctx.json_output:
            if tail:
                data["content"] = "\n".join(snapshot.lines[-tail:])
            click.echo(json_formatter.format_json(data))
        else:
            click.echo(human_formatter.format_log_snapshot(data, tail=tail))

    except ConfigError as e:
        _handle_error(ctx, "ConfigError", str(e), EXIT_CONFIG_ERROR)
    except (AuthenticationError, UnauthorizedError) as e:
        _handle_error(ctx, "AuthenticationError", str(e), EXIT_AUTH_ERROR, hint=LOGIN_HINT)
    except RequestTimeoutError as e:
        _handle_timeout(ctx, e)
    except NotFoundError as e:
        _handle_error(ctx, "LogNotFound", str(e), EXIT_LOG_NOT_FOUND)
    except OpslogAPIError as e:
        _handle_error(ctx, "APIError", str(e), EXIT_API_ERROR)


class _StreamPrinter:
    """Render stream events to the terminal."""

    def __init__(self, ctx: Context, max_attempts: int):
        self.ctx = ctx
        self.max_attempts = max_attempts

    def __call__(self, kind: StreamEventKind, payload: Any) -> None:
        if self.ctx.json_output:
            click.echo(json_formatter.format_json_event(kind.value, payload))
            return

        if kind is StreamEventKind.LOG:
            click.echo(payload.text)
        elif kind is StreamEventKind.STATUS:
            click.echo(f"-- status: {human_formatter.format_work_status(payload.payload)}", err=True)
        elif kind is StreamEventKind.COMPLETE:
            click.echo(human_formatter.format_success(f"Completed: {payload.text}"), err=True)
        elif kind is StreamEventKind.ERROR:
            self._print_error(payload)
        elif kind is StreamEventKind.CONNECTED and payload.attempt:
            click.echo(human_formatter.format_success("Reconnected"), err=True)

    def _print_error(self, error: StreamError) -> None:
        if error.retry_in is not None:
            click.echo(format_reconnecting(error.attempt, self.max_attempts, error.retry_in, str(error.error)), err=True)
        elif not error.terminal:
            click.echo(human_formatter.format_warning(f"Server reported: {error.error}"), err=True)


async def _follow(
    gateway: RequestGateway,
    config: Config,
    task_id: int,
    work_id: int,
    max_reconnects: int,
    printer: Callable[[StreamEventKind, Any], None],
) -> str:
    """Stream until completion or a terminal failure. Returns the end reason."""
    session = StreamSession.for_gateway(
        gateway,
        policy=ReconnectPolicy(base_delay=config.stream_reconnect_delay, max_attempts=max_reconnects),
        connect_timeout=config.stream_connect_timeout,
    )
    finished = asyncio.get_running_loop().create_future()

    def settle(result: Optional[str] = None, error: Optional[Exception] = None) -> None:
        if finished.done():
            return
        if error is not None:
            finished.set_exception(error)
        else:
            finished.set_result(result)

    for kind in StreamEventKind:
        session.on(kind, lambda payload, kind=kind: printer(kind, payload))

    def on_error(event: StreamError) -> None:
        if event.terminal and not isinstance(event.error, UnauthorizedError):
            settle(error=ConnectError(str(event.error), attempts=event.attempt))

    def on_complete(event: LogEvent) -> None:
        settle("complete")

    def on_disconnected(event: Any) -> None:
        settle(event.reason)

    session.on(StreamEventKind.ERROR, on_error)
    session.on(StreamEventKind.COMPLETE, on_complete)
    session.on(StreamEventKind.DISCONNECTED, on_disconnected)

    try:
        await session.connect(gateway.endpoints.task_log(task_id, work_id), target=(task_id, work_id))
        return await finished
    finally:
        session.close()
        if finished.done() and not finished.cancelled():
            # Mark a terminal error that connect() already raised as retrieved
            finished.exception()


@logs.command("stream")
@click.argument("task_id", type=int)
@click.argument("work_id", type=int)
@click.option(
    "--max-reconnects",
    type=click.IntRange(min=0),
    default=None,
    help="Reconnect attempts before giving up (default: OPSLOG_STREAM_MAX_RECONNECTS or 5)",
)
@pass_context
def stream(ctx: Context, task_id: int, work_id: int, max_reconnects: Optional[int]) -> None:
    """Follow a work item's log live until the work completes.

    Dropped connections are retried with exponential backoff (1s, 2s, 4s,
    ...). With --json every event is printed as one JSON object per line.

    \b
    Examples:
        opslog logs stream 42 7
        opslog --json logs stream 42 7 --max-reconnects 3
    """
    error = validate_task_ids(task_id, work_id)
    if error:
        _handle_error(ctx, "ValidationError", error, EXIT_VALIDATION_ERROR)
        return

    try:
        config, _ = Config.from_files_and_env()
        attempts = config.stream_max_reconnects if max_reconnects is None else max_reconnects
        printer = _StreamPrinter(ctx, attempts)

        reason = _run_with_gateway(
            config,
            lambda gateway: _follow(gateway, config, task_id, work_id, attempts, printer),
        )
        logger.debug("Log stream ended: %s", reason)

    except KeyboardInterrupt:
        click.echo("\nStopped.", err=True)
        sys.exit(EXIT_INTERRUPTED)
    except ConfigError as e:
        _handle_error(ctx, "ConfigError", str(e), EXIT_CONFIG_ERROR)
    except (AuthenticationError, UnauthorizedError) as e:
        _handle_error(ctx, "AuthenticationError", str(e), EXIT_AUTH_ERROR, hint=LOGIN_HINT)
    except ConnectError as e:
        _handle_error(
            ctx,
            "StreamFailed",
            str(e),
            EXIT_STREAM_FAILED,
            hint=f"Try `opslog logs fetch {task_id} {work_id}` for a snapshot",
        )
    except OpslogAPIError as e:
        _handle_error(ctx, "APIError", str(e), EXIT_API_ERROR)


def _handle_timeout(ctx: Context, error: RequestTimeoutError) -> None:
    if error.still_running:
        hint = "The task may still be running; try again later or follow it with `opslog logs stream`"
    else:
        hint = None
    _handle_error(
        ctx,
        "TimeoutError",
        str(error),
        EXIT_TIMEOUT,
        hint=hint,
        details={"timeout": error.timeout, "attempts": error.attempts, "still_running": error.still_running},
    )


def _handle_error(
    ctx: Context,
    error_type: str,
    message: str,
    exit_code: int,
    hint: Optional[str] = None,
    details: Optional[dict] = None,
):
    """Handle and format errors consistently."""
    if ctx.json_output:
        click.echo(json_formatter.format_json_error(error_type, message, exit_code, hint=hint, details=details), err=True)
    else:
        click.echo(human_formatter.format_error(message, hint=hint), err=True)
    sys.exit(exit_code)
