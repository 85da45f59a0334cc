"""Tests for controller configuration."""

from collections.abc import Generator
from pathlib import Path

import pytest
from pydantic import ValidationError

import wifibench.config as config_module
from wifibench.config import Settings, load_config


@pytest.fixture
def env_file(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Generator[Path, None, None]:
    """Use a temporary .env file and a clean environment."""
    for name in ("WIFIBENCH_LOG_LEVEL", "WIFIBENCH_HOSTS_FILE", "WIFIBENCH_MONITOR_INTERFACE"):
        monkeypatch.delenv(name, raising=False)
    env_path = tmp_path / ".env"
    original = config_module._ENV_FILE
    config_module._ENV_FILE = env_path
    yield env_path
    config_module._ENV_FILE = original


class TestDefaults:
    def test_defaults(self, env_file):
        s = load_config()
        assert s.log_level == "info"
        assert s.hosts_file == Path("./hosts.toml")
        assert s.results_dir == Path("./results")
        assert s.monitor_interface == "mon0"
        assert s.server_ready_timeout == 10.0


class TestSources:
    def test_reads_env_file(self, env_file):
        env_file.write_text("WIFIBENCH_HOSTS_FILE=/etc/wifibench/hosts.toml\n")
        assert load_config().hosts_file == Path("/etc/wifibench/hosts.toml")

    def test_environment_overrides_env_file(self, env_file, monkeypatch):
        env_file.write_text("WIFIBENCH_MONITOR_INTERFACE=mon1\n")
        monkeypatch.setenv("WIFIBENCH_MONITOR_INTERFACE", "wlmon")
        assert load_config().monitor_interface == "wlmon"

    def test_missing_env_file_is_fine(self, env_file):
        assert not env_file.exists()
        assert load_config().log_level == "info"


class TestLogLevel:
    def test_any_casing(self):
        assert Settings(log_level="DEBUG").log_level == "debug"

    def test_strips_whitespace(self):
        assert Settings(log_level=" warning ").log_level == "warning"

    def test_unknown_level(self):
        with pytest.raises(ValidationError):
            Settings(log_level="chatty")
