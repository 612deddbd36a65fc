from pathlib import Path
from typing import Generator

import pytest

from opslog.cli.utils.config import Config
from opslog.cli.utils.config_schema import CONFIG_OPTIONS
from opslog.cli.utils.expiry import shutdown_coordinator
from opslog.cli.utils.storage import SessionStore

from fakes import FakeClock, FakeScheduler


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fake_scheduler() -> FakeScheduler:
    return FakeScheduler()


@pytest.fixture
def store(tmp_path: Path) -> SessionStore:
    return SessionStore(str(tmp_path / "session.json"))


@pytest.fixture(autouse=True)
def reset_coordinator() -> Generator[None, None, None]:
    shutdown_coordinator()
    yield
    shutdown_coordinator()


@pytest.fixture
def isolated_config(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Clear OPSLOG_* variables, hide config files and point the session into tmp_path.

    Returns:
        The session file path
    """
    for option in CONFIG_OPTIONS:
        monkeypatch.delenv(option.env_var, raising=False)
    monkeypatch.setattr(Config, "GLOBAL_CONFIG_PATH", tmp_path / "nonexistent" / "config.toml")
    monkeypatch.chdir(tmp_path)

    session_file = tmp_path / "session.json"
    monkeypatch.setenv("OPSLOG_SESSION_FILE", str(session_file))
    return session_file
