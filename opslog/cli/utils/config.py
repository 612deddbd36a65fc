"""Configuration management for opslog.

Reads configuration from environment variables and TOML config files with sensible defaults.

Config precedence (lowest to highest):
    Hardcoded defaults < Global config.toml < Project config.toml < Environment variables
"""

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

try:
    import tomllib
except ImportError:
    # Python < 3.11 fallback
    import tomli as tomllib

from opslog.opslog_api_control import OpslogConfig
from opslog.cli.utils.config_schema import CONFIG_OPTIONS, get_option_by_toml, parse_value

# Config file paths
CONFIG_FILENAME = "config.toml"
PROJECT_CONFIG_DIR = ".opslog"  # ./.opslog/config.toml


class ConfigError(Exception):
    """Configuration error - missing or invalid settings."""

    pass


# Source tracking for config values
SOURCE_DEFAULT = "default"
SOURCE_GLOBAL = "global"
SOURCE_PROJECT = "project"
SOURCE_ENV = "env"

# Settings a named profile may provide: OPSLOG_PROFILE_<NAME>_<SUFFIX>
PROFILE_SUFFIXES = ("BASE_URL", "API_PREFIX", "USERNAME", "SESSION_FILE", "SKIP_SSL_VERIFY")


def apply_env_profile(profile: Optional[str]) -> Optional[str]:
    """Copy OPSLOG_PROFILE_<NAME>_* values onto unset OPSLOG_* variables.

    Explicitly set OPSLOG_* variables win over profile values. A profile
    without its own session file gets ~/.opslog/session-<name>.json.

    Returns:
        The normalized profile name, or None when no profile applies
    """
    if not profile:
        return None
    name = re.sub(r"[^A-Za-z0-9]+", "_", profile.strip()).strip("_").upper()
    if not name:
        return None

    for suffix in PROFILE_SUFFIXES:
        value = os.environ.get(f"OPSLOG_PROFILE_{name}_{suffix}")
        target = f"OPSLOG_{suffix}"
        if value is not None and not os.environ.get(target):
            os.environ[target] = value

    if not os.environ.get("OPSLOG_SESSION_FILE"):
        os.environ["OPSLOG_SESSION_FILE"] = f"~/.opslog/session-{name.lower()}.json"
    return name


@dataclass
class Config:
    """opslog configuration.

    **Platform:**
    - OPSLOG_BASE_URL: Platform base URL (default: http://localhost:8000)
    - OPSLOG_API_PREFIX: API path prefix (default: /api/v1)
    - OPSLOG_USERNAME / OPSLOG_PASSWORD: Login credentials (prompted if unset)

    **Session:**
    - OPSLOG_SESSION_FILE: Session storage file (default: ~/.opslog/session.json)
    - OPSLOG_EXPIRY_QUIET_WINDOW: Expiry de-duplication window (default: 1s)

    **Streaming / polling tuning:**
    - OPSLOG_STREAM_CONNECT_TIMEOUT, OPSLOG_STREAM_RECONNECT_DELAY,
      OPSLOG_STREAM_MAX_RECONNECTS
    - OPSLOG_POLL_TIMEOUT, OPSLOG_POLL_RETRY_TIMEOUT, OPSLOG_DIRECT_TIMEOUT
    """

    username: Optional[str] = None
    password: Optional[str] = None

    # API settings
    base_url: str = "http://localhost:8000"
    api_prefix: Optional[str] = None
    timeout: int = 15
    max_retries: int = 3
    retry_delay: float = 1.0
    skip_ssl_verify: bool = False

    # Session settings
    session_file: str = "~/.opslog/session.json"
    session_namespace: str = "opslog"
    expiry_quiet_window: float = 1.0

    # Streaming
    stream_connect_timeout: float = 10.0
    stream_reconnect_delay: float = 1.0
    stream_max_reconnects: int = 5

    # Polling
    poll_timeout: float = 30.0
    poll_retry_timeout: float = 180.0
    direct_timeout: float = 10.0

    # Where each value came from (field name -> SOURCE_*)
    sources: dict[str, str] = field(default_factory=dict, repr=False, compare=False)
    global_config_path: Optional[Path] = field(default=None, repr=False, compare=False)
    project_config_path: Optional[Path] = field(default=None, repr=False, compare=False)

    # Class-level config paths
    GLOBAL_CONFIG_PATH = Path.home() / ".config" / "opslog" / CONFIG_FILENAME

    @property
    def verify_ssl(self) -> bool:
        return not self.skip_ssl_verify

    def api_config(self) -> OpslogConfig:
        """Settings for the synchronous login client."""
        return OpslogConfig(
            base_url=self.base_url,
            timeout=self.timeout,
            max_retries=self.max_retries,
            retry_delay=self.retry_delay,
            verify_ssl=self.verify_ssl,
            api_prefix=self.api_prefix,
        )

    @classmethod
    def from_env(cls) -> "Config":
        """Create configuration from defaults and environment variables only.

        Raises:
            ConfigError: If an environment variable holds an invalid value
        """
        values: dict[str, Any] = {}
        sources: dict[str, str] = {}
        cls._apply_env(values, sources)
        return cls(sources=sources, **values)

    @classmethod
    def _find_project_config(cls) -> Path | None:
        """Walk up from cwd to find .opslog/config.toml."""
        current = Path.cwd()
        while current != current.parent:
            config_path = current / PROJECT_CONFIG_DIR / CONFIG_FILENAME
            if config_path.exists():
                return config_path
            current = current.parent
        return None

    @staticmethod
    def _load_toml(path: Path) -> dict[str, Any]:
        """Load and parse a TOML config file."""
        try:
            with open(path, "rb") as f:
                return tomllib.load(f)
        except tomllib.TOMLDecodeError as e:
            raise ConfigError(f"Invalid TOML in {path}: {e}")

    @staticmethod
    def _flatten_toml(data: dict[str, Any], prefix: str = "") -> dict[str, Any]:
        """Flatten nested TOML dict to dotted keys (e.g., api.base_url)."""
        result = {}
        for key, value in data.items():
            full_key = f"{prefix}.{key}" if prefix else key
            if isinstance(value, dict):
                result.update(Config._flatten_toml(value, full_key))
            else:
                result[full_key] = value
        return result

    @classmethod
    def _apply_toml(cls, path: Path, source: str, values: dict[str, Any], sources: dict[str, str]) -> None:
        for toml_key, value in cls._flatten_toml(cls._load_toml(path)).items():
            option = get_option_by_toml(toml_key)
            if option is None:
                continue
            try:
                values[option.field_name] = parse_value(option, value)
            except ValueError:
                raise ConfigError(f"Invalid value for {toml_key} in {path}: {value!r}")
            sources[option.field_name] = source

    @staticmethod
    def _apply_env(values: dict[str, Any], sources: dict[str, str]) -> None:
        for option in CONFIG_OPTIONS:
            raw = os.getenv(option.env_var)
            if raw is None or raw == "":
                continue
            try:
                values[option.field_name] = parse_value(option, raw)
            except ValueError:
                raise ConfigError(f"Invalid {option.env_var} value: {raw}")
            sources[option.field_name] = SOURCE_ENV

    @classmethod
    def from_files_and_env(cls) -> tuple["Config", dict[str, str]]:
        """Load config from files + env vars with layered precedence.

        Precedence (lowest to highest):
            Hardcoded defaults < Global config.toml < Project config.toml < Environment variables

        Returns:
            Tuple of (Config instance, dict mapping field names to their sources)

        Raises:
            ConfigError: If a file or variable holds an invalid value
        """
        # 1. Start with defaults
        values: dict[str, Any] = {}
        sources: dict[str, str] = {opt.field_name: SOURCE_DEFAULT for opt in CONFIG_OPTIONS}

        # 2. Merge global config.toml
        global_config_path: Path | None = None
        if cls.GLOBAL_CONFIG_PATH.exists():
            global_config_path = cls.GLOBAL_CONFIG_PATH
            cls._apply_toml(global_config_path, SOURCE_GLOBAL, values, sources)

        # 3. Merge project config.toml (walk up from cwd to find .opslog/config.toml)
        project_config_path = cls._find_project_config()
        if project_config_path:
            cls._apply_toml(project_config_path, SOURCE_PROJECT, values, sources)

        # 4. Override with env vars (highest priority)
        cls._apply_env(values, sources)

        config = cls(
            sources=sources,
            global_config_path=global_config_path,
            project_config_path=project_config_path,
            **values,
        )
        return config, sources
