"""Client configuration.

Settings come from ``TPI_*`` environment variables; command-line options
override them (see :func:`load_client_settings`).
"""

import logging
import os
import sys
from pathlib import Path
from typing import Any, Literal, Optional

from pydantic import Field
from pydantic_settings import BaseSettings

from tpi.common.constants import (
    API_VERSION_V1_1,
    DEFAULT_HOST_NAME,
    DEFAULT_TIMEOUT,
    POLL_INITIAL_DELAY,
    POLL_INTERVAL,
    TOKEN_FILE_NAME,
)

logger = logging.getLogger("tpi.common.config")


class ClientSettings(BaseSettings):
    """Client settings loaded from environment or command-line overrides."""

    # Connection
    host: str = Field(DEFAULT_HOST_NAME, description="BMC host. IPv6 addresses must be wrapped in [].")
    port: Optional[int] = Field(None, description="Connect to a specific port")
    api_version: Literal["v1", "v1-1"] = Field(
        API_VERSION_V1_1,
        description="BMC API version. v1 talks plain HTTP, v1-1 talks HTTPS. Env: TPI_API_VERSION",
    )
    timeout: float = Field(DEFAULT_TIMEOUT, description="HTTP timeout in seconds")

    # Credentials (never persisted)
    user: Optional[str] = Field(None, description="User to log in as. Env: TPI_USER")
    password: Optional[str] = Field(None, description="Password for --user. Env: TPI_PASSWORD")

    # Token cache
    token_file: Optional[Path] = Field(
        None,
        description="Where the bearer token is cached. Default: <user cache dir>/tpi_token. Env: TPI_TOKEN_FILE",
    )

    # Flash progress polling
    poll_initial_delay: float = Field(POLL_INITIAL_DELAY, description="Seconds before the first progress poll")
    poll_interval: float = Field(POLL_INTERVAL, description="Seconds between progress polls")

    # Output
    log_level: str = Field("WARNING", description="Log level for the tpi logger. Env: TPI_LOG_LEVEL")

    class Config:
        env_prefix = "TPI_"

    @property
    def host_with_port(self) -> str:
        if self.port is None:
            return self.host
        return f"{self.host}:{self.port}"

    @property
    def token_path(self) -> Path:
        return self.token_file or default_cache_dir() / TOKEN_FILE_NAME


def default_cache_dir() -> Path:
    """Return the per-user cache directory, or ``.`` when none can be found.

    Linux: ``$XDG_CACHE_HOME`` or ``~/.cache``; macOS: ``~/Library/Caches``;
    Windows: ``%LOCALAPPDATA%``.
    """
    try:
        home = Path.home()
    except RuntimeError:
        return Path(".")

    if sys.platform == "win32":
        local = os.environ.get("LOCALAPPDATA")
        return Path(local) if local else Path(".")
    if sys.platform == "darwin":
        return home / "Library" / "Caches"

    xdg = os.environ.get("XDG_CACHE_HOME", "")
    if xdg and Path(xdg).is_absolute():
        return Path(xdg)
    return home / ".cache"


def load_client_settings(**overrides: Any) -> ClientSettings:
    """Load settings from the environment, then apply non-None overrides."""
    settings = ClientSettings(**{k: v for k, v in overrides.items() if v is not None})
    logger.debug("Loaded settings for %s (api %s)", settings.host_with_port, settings.api_version)
    return settings


def configure_logging(level: str) -> None:
    """Set the ``tpi`` logger level, installing a basic handler if none exists."""
    numeric_level = getattr(logging, level.upper(), logging.WARNING)
    logging.getLogger("tpi").setLevel(numeric_level)
    if not logging.getLogger().handlers:
        logging.basicConfig(level=numeric_level, format="%(asctime)s %(name)s %(levelname)s %(message)s")
