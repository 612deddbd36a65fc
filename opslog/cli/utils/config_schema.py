"""Configuration schema for opslog.

Defines every environment variable and TOML key with the metadata used for
loading, display and validation.
"""

from dataclasses import dataclass
from typing import Any, Callable


@dataclass
class ConfigOption:
    """A single configuration option with metadata.

    Attributes:
        env_var: Environment variable name
        toml_key: TOML configuration key (e.g., "api.base_url")
        field_name: Config dataclass attribute the option fills
        description: Human-readable description
        default: Default value (None if unset by default)
        category: Configuration category for grouping
        secret: If True, value should be hidden in output
        parser: Optional function to parse string value to correct type
    """

    env_var: str
    toml_key: str
    field_name: str
    description: str
    default: Any | None
    category: str
    secret: bool = False
    parser: Callable[[str], Any] | None = None


# Parser functions
def _parse_int(value: str) -> int:
    """Parse string to integer."""
    return int(value)


def _parse_float(value: str) -> float:
    """Parse string to float."""
    return float(value)


def _parse_bool(value: str) -> bool:
    """Parse string to boolean."""
    return value.lower() in ("1", "true", "yes", "on")


CONFIG_OPTIONS: list[ConfigOption] = [
    # Authentication
    ConfigOption(
        env_var="OPSLOG_USERNAME",
        toml_key="auth.username",
        field_name="username",
        description="Platform username (prompted by `opslog login` when unset)",
        default=None,
        category="Authentication",
    ),
    ConfigOption(
        env_var="OPSLOG_PASSWORD",
        toml_key="auth.password",
        field_name="password",
        description="Platform password (use env var for security)",
        default=None,
        category="Authentication",
        secret=True,
    ),
    # API
    ConfigOption(
        env_var="OPSLOG_BASE_URL",
        toml_key="api.base_url",
        field_name="base_url",
        description="Platform base URL",
        default="http://localhost:8000",
        category="API",
    ),
    ConfigOption(
        env_var="OPSLOG_API_PREFIX",
        toml_key="api.prefix",
        field_name="api_prefix",
        description="API path prefix (default: /api/v1)",
        default=None,
        category="API",
    ),
    ConfigOption(
        env_var="OPSLOG_TIMEOUT",
        toml_key="api.timeout",
        field_name="timeout",
        description="Default request timeout in seconds",
        default=15,
        category="API",
        parser=_parse_int,
    ),
    ConfigOption(
        env_var="OPSLOG_MAX_RETRIES",
        toml_key="api.max_retries",
        field_name="max_retries",
        description="Maximum login request retry attempts",
        default=3,
        category="API",
        parser=_parse_int,
    ),
    ConfigOption(
        env_var="OPSLOG_RETRY_DELAY",
        toml_key="api.retry_delay",
        field_name="retry_delay",
        description="Delay between login retries in seconds",
        default=1.0,
        category="API",
        parser=_parse_float,
    ),
    ConfigOption(
        env_var="OPSLOG_SKIP_SSL_VERIFY",
        toml_key="api.skip_ssl_verify",
        field_name="skip_ssl_verify",
        description="Disable TLS certificate verification",
        default=False,
        category="API",
        parser=_parse_bool,
    ),
    # Session
    ConfigOption(
        env_var="OPSLOG_SESSION_FILE",
        toml_key="session.file",
        field_name="session_file",
        description="Session storage file",
        default="~/.opslog/session.json",
        category="Session",
    ),
    ConfigOption(
        env_var="OPSLOG_SESSION_NAMESPACE",
        toml_key="session.namespace",
        field_name="session_namespace",
        description="Namespace key inside the session file",
        default="opslog",
        category="Session",
    ),
    ConfigOption(
        env_var="OPSLOG_EXPIRY_QUIET_WINDOW",
        toml_key="session.expiry_quiet_window",
        field_name="expiry_quiet_window",
        description="Seconds during which repeated expiry signals are ignored",
        default=1.0,
        category="Session",
        parser=_parse_float,
    ),
    # Streaming
    ConfigOption(
        env_var="OPSLOG_STREAM_CONNECT_TIMEOUT",
        toml_key="stream.connect_timeout",
        field_name="stream_connect_timeout",
        description="Seconds a stream attempt may take to open",
        default=10.0,
        category="Streaming",
        parser=_parse_float,
    ),
    ConfigOption(
        env_var="OPSLOG_STREAM_RECONNECT_DELAY",
        toml_key="stream.reconnect_delay",
        field_name="stream_reconnect_delay",
        description="Base reconnect delay in seconds (doubles per attempt)",
        default=1.0,
        category="Streaming",
        parser=_parse_float,
    ),
    ConfigOption(
        env_var="OPSLOG_STREAM_MAX_RECONNECTS",
        toml_key="stream.max_reconnects",
        field_name="stream_max_reconnects",
        description="Reconnect attempts before giving up",
        default=5,
        category="Streaming",
        parser=_parse_int,
    ),
    # Polling
    ConfigOption(
        env_var="OPSLOG_POLL_TIMEOUT",
        toml_key="polling.timeout",
        field_name="poll_timeout",
        description="First snapshot attempt timeout in seconds",
        default=30.0,
        category="Polling",
        parser=_parse_float,
    ),
    ConfigOption(
        env_var="OPSLOG_POLL_RETRY_TIMEOUT",
        toml_key="polling.retry_timeout",
        field_name="poll_retry_timeout",
        description="Timeout of the retry after a timed-out snapshot, in seconds",
        default=180.0,
        category="Polling",
        parser=_parse_float,
    ),
    ConfigOption(
        env_var="OPSLOG_DIRECT_TIMEOUT",
        toml_key="polling.direct_timeout",
        field_name="direct_timeout",
        description="Direct log path timeout in seconds",
        default=10.0,
        category="Polling",
        parser=_parse_float,
    ),
]


# Category order for display
CATEGORY_ORDER = [
    "Authentication",
    "API",
    "Session",
    "Streaming",
    "Polling",
]


def get_options_by_category(category: str) -> list[ConfigOption]:
    """Get all configuration options for a category."""
    return [opt for opt in CONFIG_OPTIONS if opt.category == category]


def get_option_by_env(env_var: str) -> ConfigOption | None:
    """Get configuration option by environment variable name."""
    for opt in CONFIG_OPTIONS:
        if opt.env_var == env_var:
            return opt
    return None


def get_option_by_toml(toml_key: str) -> ConfigOption | None:
    """Get configuration option by TOML key."""
    for opt in CONFIG_OPTIONS:
        if opt.toml_key == toml_key:
            return opt
    return None


def get_categories() -> list[str]:
    """Get all unique categories in order."""
    return [cat for cat in CATEGORY_ORDER if any(opt.category == cat for opt in CONFIG_OPTIONS)]


def get_secret_options() -> list[ConfigOption]:
    """Get all secret configuration options."""
    return [opt for opt in CONFIG_OPTIONS if opt.secret]


def parse_value(option: ConfigOption, value: Any) -> Any:
    """Coerce a raw value (env string or TOML scalar) with the option's parser.

    Raises:
        ValueError: If the value cannot be parsed
    """
    if option.parser is None or value is None:
        return value
    if option.parser is _parse_bool and isinstance(value, bool):
        return value
    try:
        return option.parser(value if isinstance(value, str) else str(value))
    except (ValueError, TypeError) as e:
        raise ValueError(f"Invalid value for {option.env_var}: {value!r}") from e
