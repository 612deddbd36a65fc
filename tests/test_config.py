"""Tests for TOML config file loading and layered configuration."""

import os
from pathlib import Path

import pytest

from opslog.cli.utils.config import (
    CONFIG_FILENAME,
    PROJECT_CONFIG_DIR,
    SOURCE_DEFAULT,
    SOURCE_ENV,
    SOURCE_GLOBAL,
    SOURCE_PROJECT,
    Config,
    ConfigError,
    apply_env_profile,
)
from opslog.cli.utils.config_schema import (
    CONFIG_OPTIONS,
    get_categories,
    get_option_by_env,
    get_option_by_toml,
    get_options_by_category,
    get_secret_options,
    parse_value,
)


def write_toml(path: Path, content: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content)
    return path


# ===========================================================================
# Config Schema tests
# ===========================================================================


class TestConfigSchema:
    """Tests for config schema module."""

    def test_all_options_have_required_fields(self) -> None:
        """Every option is fully described and maps onto a Config field."""
        fields = set(Config.__dataclass_fields__)
        for opt in CONFIG_OPTIONS:
            assert opt.env_var.startswith("OPSLOG_"), opt
            assert opt.toml_key, f"Option missing toml_key: {opt}"
            assert opt.description, f"Option missing description: {opt}"
            assert opt.field_name in fields, f"Unknown field: {opt.field_name}"

    def test_lookup_by_env_and_toml(self) -> None:
        opt = get_option_by_env("OPSLOG_POLL_RETRY_TIMEOUT")
        assert opt is not None
        assert opt.toml_key == "polling.retry_timeout"
        assert get_option_by_toml("polling.retry_timeout") is opt
        assert get_option_by_env("NONEXISTENT_VAR") is None
        assert get_option_by_toml("nonexistent.key") is None

    def test_categories_in_display_order(self) -> None:
        assert get_categories() == ["Authentication", "API", "Session", "Streaming", "Polling"]
        assert all(opt.category == "Streaming" for opt in get_options_by_category("Streaming"))

    def test_only_password_is_secret(self) -> None:
        assert [opt.env_var for opt in get_secret_options()] == ["OPSLOG_PASSWORD"]

    def test_parse_value(self) -> None:
        """Env strings and TOML scalars are coerced the same way."""
        bool_opt = get_option_by_env("OPSLOG_SKIP_SSL_VERIFY")
        int_opt = get_option_by_env("OPSLOG_STREAM_MAX_RECONNECTS")
        assert parse_value(bool_opt, "yes") is True
        assert parse_value(bool_opt, True) is True
        assert parse_value(int_opt, "7") == 7
        assert parse_value(int_opt, 7) == 7
        with pytest.raises(ValueError):
            parse_value(int_opt, "seven")


# ===========================================================================
# Layered loading
# ===========================================================================


class TestLayeredConfig:
    """Defaults < global < project < environment."""

    def test_defaults(self, isolated_config: Path) -> None:
        config, sources = Config.from_files_and_env()

        assert config.base_url == "http://localhost:8000"
        assert config.poll_timeout == 30.0
        assert config.poll_retry_timeout == 180.0
        assert config.direct_timeout == 10.0
        assert config.stream_max_reconnects == 5
        assert config.global_config_path is None
        assert config.project_config_path is None
        assert sources["base_url"] == SOURCE_DEFAULT
        assert sources["session_file"] == SOURCE_ENV

    def test_global_then_project_then_env(
        self, isolated_config: Path, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        global_path = write_toml(
            tmp_path / "global" / CONFIG_FILENAME,
            '[api]\nbase_url = "https://global.example"\ntimeout = 20\n\n[stream]\nmax_reconnects = 2\n',
        )
        monkeypatch.setattr(Config, "GLOBAL_CONFIG_PATH", global_path)
        write_toml(
            tmp_path / PROJECT_CONFIG_DIR / CONFIG_FILENAME,
            '[api]\nbase_url = "https://project.example"\n\n[polling]\nretry_timeout = 240\n',
        )
        monkeypatch.setenv("OPSLOG_TIMEOUT", "45")

        config, sources = Config.from_files_and_env()

        assert config.base_url == "https://project.example"
        assert sources["base_url"] == SOURCE_PROJECT
        assert config.stream_max_reconnects == 2
        assert sources["stream_max_reconnects"] == SOURCE_GLOBAL
        assert config.poll_retry_timeout == 240.0
        assert config.timeout == 45
        assert sources["timeout"] == SOURCE_ENV

    def test_project_config_found_from_subdirectory(
        self, isolated_config: Path, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """The project file is found by walking up from the working directory."""
        write_toml(tmp_path / PROJECT_CONFIG_DIR / CONFIG_FILENAME, '[api]\nprefix = "/gateway/api/v1"\n')
        nested = tmp_path / "a" / "b"
        nested.mkdir(parents=True)
        monkeypatch.chdir(nested)

        config, _ = Config.from_files_and_env()
        assert config.api_prefix == "/gateway/api/v1"
        assert config.api_config().api_prefix == "/gateway/api/v1"

    def test_unknown_toml_keys_are_ignored(self, isolated_config: Path, tmp_path: Path) -> None:
        write_toml(tmp_path / PROJECT_CONFIG_DIR / CONFIG_FILENAME, '[extras]\ncolor = "blue"\n')
        config, _ = Config.from_files_and_env()
        assert config.base_url == "http://localhost:8000"

    def test_invalid_toml_raises(self, isolated_config: Path, tmp_path: Path) -> None:
        write_toml(tmp_path / PROJECT_CONFIG_DIR / CONFIG_FILENAME, "[api\nbase_url = ")
        with pytest.raises(ConfigError, match="Invalid TOML"):
            Config.from_files_and_env()

    def test_invalid_env_value_raises(self, isolated_config: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("OPSLOG_POLL_TIMEOUT", "soon")
        with pytest.raises(ConfigError, match="OPSLOG_POLL_TIMEOUT"):
            Config.from_env()

    def test_skip_ssl_verify(self, isolated_config: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("OPSLOG_SKIP_SSL_VERIFY", "1")
        config = Config.from_env()
        assert config.verify_ssl is False
        assert config.api_config().verify_ssl is False


# ===========================================================================
# Env profiles
# ===========================================================================


class TestEnvProfile:
    """Tests for --profile env expansion."""

    def test_profile_fills_unset_variables(self, isolated_config: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        # Empty counts as unset; setting through monkeypatch restores them afterwards
        for name in ("OPSLOG_SESSION_FILE", "OPSLOG_BASE_URL", "OPSLOG_USERNAME"):
            monkeypatch.setenv(name, "")
        monkeypatch.setenv("OPSLOG_PROFILE_STAGING_BASE_URL", "https://staging.example")
        monkeypatch.setenv("OPSLOG_PROFILE_STAGING_USERNAME", "ops")

        assert apply_env_profile("staging") == "STAGING"

        assert os.environ["OPSLOG_BASE_URL"] == "https://staging.example"
        assert os.environ["OPSLOG_USERNAME"] == "ops"
        assert os.environ["OPSLOG_SESSION_FILE"] == "~/.opslog/session-staging.json"

    def test_explicit_variables_win(self, isolated_config: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("OPSLOG_BASE_URL", "https://explicit.example")
        monkeypatch.setenv("OPSLOG_PROFILE_PROD_BASE_URL", "https://prod.example")

        apply_env_profile("prod")

        assert os.environ["OPSLOG_BASE_URL"] == "https://explicit.example"
        assert os.environ["OPSLOG_SESSION_FILE"] == str(isolated_config)

    def test_blank_profile(self) -> None:
        assert apply_env_profile("") is None
        assert apply_env_profile(" -- ") is None
