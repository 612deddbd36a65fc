"""Session commands for opslog.

Commands:
    opslog login   - Log in (captcha + credentials) and store the session
    opslog logout  - Remove the stored session
    opslog whoami  - Show the logged-in user
"""

import base64
import binascii
import os
import sys
import tempfile
from typing import Dict, Optional

import click

from opslog.cli.context import (
    Context,
    pass_context,
    EXIT_AUTH_ERROR,
    EXIT_CONFIG_ERROR,
    EXIT_API_ERROR,
    EXIT_VALIDATION_ERROR,
    LOGIN_HINT,
)
from opslog.opslog_api_control import OpslogAPIError, ValidationError
from opslog.cli.utils.auth import AuthManager, AuthenticationError
from opslog.cli.utils.config import Config, ConfigError
from opslog.cli.formatters import json_formatter, human_formatter


def _save_captcha_image(image: str) -> Optional[str]:
    """Write a base64 (data URL) captcha image to a temp file and return its path."""
    if not image:
        return None
    header, _, encoded = image.partition(",")
    if not encoded:
        header, encoded = "", image
    extension = "png"
    if header.startswith("data:image/"):
        extension = header[len("data:image/"):].split(";", 1)[0] or "png"
    try:
        content = base64.b64decode(encoded)
    except (binascii.Error, ValueError):
        return None

    fd, path = tempfile.mkstemp(prefix="opslog-captcha-", suffix=f".{extension}")
    with os.fdopen(fd, "wb") as f:
        f.write(content)
    return path


def _prompt_captcha(captcha: Dict[str, str]) -> str:
    path = _save_captcha_image(captcha.get("image", ""))
    if path:
        click.echo(f"Captcha image saved to: {path}", err=True)
    else:
        click.echo("Captcha image could not be decoded; request a new one if needed.", err=True)
    return click.prompt("Captcha", err=True).strip()


@click.command("login")
@click.option("--username", "-u", help="Account name (default: OPSLOG_USERNAME)")
@click.option("--password", "-p", help="Account password (default: OPSLOG_PASSWORD, else prompted)")
@pass_context
def login(ctx: Context, username: Optional[str], password: Optional[str]) -> None:
    """Log in to the platform and store the session token.

    The platform requires a captcha: its image is written to a temp file
    and the text you read from it is prompted for.

    \b
    Examples:
        opslog login
        opslog login -u admin
        opslog --profile staging login
    """
    try:
        config, _ = Config.from_files_and_env()
        username = username or config.username or click.prompt("Username", err=True)
        password = password or config.password or click.prompt("Password", hide_input=True, err=True)

        payload = AuthManager.login(config, username, password, _prompt_captcha)

        user = payload.get("sysAdmin") or {}
        if ctx.json_output:
            click.echo(
                json_formatter.format_json(
                    {
                        "username": user.get("username", username),
                        "permissions": len(payload.get("permissionList") or []),
                        "base_url": config.base_url,
                    }
                )
            )
        else:
            click.echo(human_formatter.format_success(f"Logged in to {config.base_url} as {username}"))

    except ConfigError as e:
        _handle_error(ctx, "ConfigError", str(e), EXIT_CONFIG_ERROR)
    except ValidationError as e:
        _handle_error(ctx, "ValidationError", str(e), EXIT_VALIDATION_ERROR)
    except AuthenticationError as e:
        _handle_error(ctx, "AuthenticationError", str(e), EXIT_AUTH_ERROR)
    except OpslogAPIError as e:
        _handle_error(ctx, "APIError", str(e), EXIT_API_ERROR)


@click.command("logout")
@pass_context
def logout(ctx: Context) -> None:
    """Remove the stored session."""
    try:
        config, _ = Config.from_files_and_env()
        had_session = AuthManager.logout(config)
    except ConfigError as e:
        _handle_error(ctx, "ConfigError", str(e), EXIT_CONFIG_ERROR)
        return

    if ctx.json_output:
        click.echo(json_formatter.format_json({"logged_out": had_session}))
    elif had_session:
        click.echo(human_formatter.format_success("Logged out"))
    else:
        click.echo("No active session.")


@click.command("whoami")
@pass_context
def whoami(ctx: Context) -> None:
    """Show the logged-in user."""
    try:
        config, _ = Config.from_files_and_env()
        info = AuthManager.current_user(config)
    except ConfigError as e:
        _handle_error(ctx, "ConfigError", str(e), EXIT_CONFIG_ERROR)
        return

    if info is None:
        _handle_error(ctx, "AuthenticationError", "Not logged in", EXIT_AUTH_ERROR, hint=LOGIN_HINT)
        return

    if ctx.json_output:
        click.echo(json_formatter.format_json(info))
    else:
        click.echo(human_formatter.format_user(info))


def _handle_error(ctx: Context, error_type: str, message: str, exit_code: int, hint: Optional[str] = None):
    """Handle and format errors consistently."""
    if ctx.json_output:
        click.echo(json_formatter.format_json_error(error_type, message, exit_code, hint=hint), err=True)
    else:
        click.echo(human_formatter.format_error(message, hint=hint), err=True)
    sys.exit(exit_code)
