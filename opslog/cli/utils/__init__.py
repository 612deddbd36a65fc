"""CLI utility modules."""

from opslog.cli.utils.config import Config, ConfigError
from opslog.cli.utils.auth import AuthManager
from opslog.opslog_api_control import AuthenticationError

__all__ = ["Config", "ConfigError", "AuthManager", "AuthenticationError"]
