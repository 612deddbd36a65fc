"""CLI command modules."""

from opslog.cli.commands.auth import login, logout, whoami
from opslog.cli.commands.logs import logs
from opslog.cli.commands.config import config

__all__ = ["login", "logout", "whoami", "logs", "config"]
