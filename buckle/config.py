"""
Configuration for the Buckle launcher.

Precedence: CLI flags > env vars (BUCKLE_*) > .env file > `launcher:` section
of the server config file (buckle.yml) > defaults.

Settings are built once at the CLI boundary; the supervisor only ever sees an
immutable LaunchConfig.
"""

import logging
import sys
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic_settings import BaseSettings

from buckle.errors import InvalidConfigError

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path("./buckle.yml")
DEFAULT_PORT = 7260
SERVER_BINARY_NAME = "buckle-server"

# Keys read from the `launcher:` mapping of the server config file
LAUNCHER_KEYS = {
    "port", "host", "state_dir", "server_bin", "log_level",
    "health_path", "health_request_timeout", "health_timeout",
    "health_interval", "stop_timeout",
}


class Settings(BaseSettings):
    """Launcher settings from environment, .env and defaults."""

    config_path: Path = Field(
        default=DEFAULT_CONFIG_PATH,
        description="Server configuration file handed to the server as CONFIG_PATH",
    )
    port: int = Field(default=DEFAULT_PORT, description="Server port")
    host: str = Field(default="localhost", description="Host used for health checks")

    server_bin: Optional[Path] = Field(
        default=None,
        description="Explicit server binary (BUCKLE_SERVER_BIN), skips discovery",
    )
    state_dir: Path = Field(
        default=Path(".buckle"),
        description="Directory holding the PID and log files, relative to the CWD",
    )

    # Health checks
    health_path: str = Field(default="/api/health")
    health_request_timeout: float = Field(default=2.0, gt=0)
    health_timeout: float = Field(default=10.0, gt=0)
    health_interval: float = Field(default=0.2, gt=0)

    # Shutdown
    stop_timeout: float = Field(default=5.0, gt=0)

    # Logging
    log_level: str = Field(default="WARNING", description="Log level")
    log_format: str = Field(
        default="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        description="Log format string",
    )

    model_config = {
        "env_prefix": "BUCKLE_",
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }

    @property
    def log_file(self) -> Path:
        """Log file reserved for detached server output."""
        return self.state_dir / "buckle.log"


def _load_launcher_section(config_path: Path) -> dict[str, Any]:
    """Load the `launcher:` mapping from the server config file, if any."""
    if not config_path.exists():
        return {}
    try:
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        logger.warning(f"Error loading {config_path}: {e}")
        return {}
    if not isinstance(data, dict):
        logger.warning(f"{config_path} is not a mapping, ignoring")
        return {}
    section = data.get("launcher") or {}
    if not isinstance(section, dict):
        logger.warning(f"'launcher' in {config_path} is not a mapping, ignoring")
        return {}
    unknown = set(section) - LAUNCHER_KEYS
    if unknown:
        logger.warning(f"Ignoring unknown launcher keys in {config_path}: {sorted(unknown)}")
    return {k: v for k, v in section.items() if k in LAUNCHER_KEYS}


def load_settings(config_path: Optional[Path] = None) -> Settings:
    """Build settings, using the config file's launcher section as a fallback layer."""
    try:
        settings = Settings()
        if config_path is not None:
            settings = Settings(config_path=config_path)

        fallback = {
            key: value
            for key, value in _load_launcher_section(settings.config_path).items()
            if key not in settings.model_fields_set
        }
        if fallback:
            settings = Settings(config_path=settings.config_path, **fallback)
        return settings
    except ValidationError as e:
        raise InvalidConfigError(f"Invalid launcher settings: {e}") from e


def resolve_server_binary(settings: Settings) -> Path:
    """
    Find the server binary.

    BUCKLE_SERVER_BIN wins (set by package shims that ship the server
    separately). Otherwise the server is expected next to the CLI executable.
    """
    if settings.server_bin:
        return Path(settings.server_bin).expanduser()
    return Path(sys.argv[0]).resolve().parent / SERVER_BINARY_NAME


class LaunchConfig(BaseModel):
    """Immutable description of one server launch."""

    model_config = ConfigDict(frozen=True)

    binary_path: Path
    config_path: Path = DEFAULT_CONFIG_PATH
    port: int = Field(default=DEFAULT_PORT, ge=1, le=65535)
    open_browser: bool = False
    detach: bool = False
    host: str = "localhost"
    health_path: str = "/api/health"

    @field_validator("binary_path", mode="before")
    @classmethod
    def _binary_not_empty(cls, value: Any) -> Any:
        if value is None or not str(value).strip():
            raise ValueError("server binary path must not be empty")
        return value

    @property
    def base_url(self) -> str:
        return f"http://{self.host}:{self.port}"

    @property
    def health_url(self) -> str:
        path = self.health_path if self.health_path.startswith("/") else f"/{self.health_path}"
        return f"{self.base_url}{path}"

    def server_env(self) -> dict[str, str]:
        """Variables injected into the server's environment."""
        return {
            "PORT": str(self.port),
            "CONFIG_PATH": str(self.config_path),
        }


def build_launch_config(
    settings: Settings,
    port: Optional[int] = None,
    open_browser: bool = False,
    detach: bool = False,
) -> LaunchConfig:
    """Combine parsed flags with settings into a LaunchConfig."""
    try:
        return LaunchConfig(
            binary_path=resolve_server_binary(settings),
            config_path=settings.config_path,
            port=port if port is not None else settings.port,
            open_browser=open_browser,
            detach=detach,
            host=settings.host,
            health_path=settings.health_path,
        )
    except ValidationError as e:
        raise InvalidConfigError(f"Invalid launch configuration: {e}") from e
