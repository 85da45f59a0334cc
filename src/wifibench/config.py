"""Controller configuration via environment variables and .env file."""

from pathlib import Path

from pydantic import field_validator
from pydantic_settings import BaseSettings
from pydantic_settings.sources import DotEnvSettingsSource, PydanticBaseSettingsSource

# Path to .env file (patch in tests to use tmp_path / ".env")
_ENV_FILE: Path = Path(".env")

_LOG_LEVELS = {"debug", "info", "warning", "error", "critical"}


class Settings(BaseSettings):
    model_config = {
        "env_prefix": "WIFIBENCH_",
        "env_file_encoding": "utf-8",
    }

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        # Load .env from _ENV_FILE (patchable in tests)
        return (
            init_settings,
            env_settings,
            DotEnvSettingsSource(
                settings_cls,
                env_file=_ENV_FILE,
                env_file_encoding="utf-8",
            ),
            file_secret_settings,
        )

    # Logging
    log_level: str = "info"

    # Hosts file and results location
    hosts_file: Path = Path("./hosts.toml")
    results_dir: Path = Path("./results")

    # Name of the monitor mode interface on monitor hosts
    monitor_interface: str = "mon0"

    # Seconds left after all targets joined for the last association
    # responses to reach the discovery capture
    discovery_settle_delay: float = 1.0

    # Experiment servers
    server_ready_timeout: float = 10.0  # seconds to wait for "listening"
    server_exit_timeout: float = 1.0  # seconds before remaining servers are killed

    @field_validator("log_level", mode="before")
    @classmethod
    def parse_log_level(cls, v: object) -> str:
        """Accept any casing; reject unknown level names."""
        level = str(v).strip().lower()
        if level not in _LOG_LEVELS:
            raise ValueError(f"unknown log level: {v!r}")
        return level


def load_config() -> Settings:
    """Load configuration from .env and environment (env overrides .env)."""
    return Settings()
