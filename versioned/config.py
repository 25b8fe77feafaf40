"""
Settings and logging setup.

Settings are read from the environment (optionally seeded from a ``.env``
file); nothing here opens a database connection.
"""

import logging
import os
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field

ENV_PREFIX = "VERSIONED_"

DEFAULT_LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def _env_flag(value: Optional[str]) -> Optional[bool]:
    if value is None:
        return None
    return value.strip().lower() in {"1", "true", "yes", "on"}


class VersionedSettings(BaseModel):
    """Runtime configuration for a repository and its logging."""

    database_url: str = Field(default="sqlite:///:memory:", description="SQLAlchemy database URL")
    echo_sql: bool = Field(default=False, description="Log every SQL statement emitted by the engine")
    log_level: str = Field(default="INFO", description="Level for the versioned loggers")
    log_format: str = Field(default=DEFAULT_LOG_FORMAT)

    @classmethod
    def from_env(cls, env_file: Optional[str] = None) -> "VersionedSettings":
        """
        Build settings from ``VERSIONED_*`` environment variables.

        Args:
            env_file: Optional path of a dotenv file to load first. Variables
                already present in the environment win over the file.
        """
        load_dotenv(env_file, override=False)
        values = {}
        url = os.getenv(f"{ENV_PREFIX}DATABASE_URL")
        if url:
            values["database_url"] = url
        echo = _env_flag(os.getenv(f"{ENV_PREFIX}ECHO_SQL"))
        if echo is not None:
            values["echo_sql"] = echo
        level = os.getenv(f"{ENV_PREFIX}LOG_LEVEL")
        if level:
            values["log_level"] = level.upper()
        fmt = os.getenv(f"{ENV_PREFIX}LOG_FORMAT")
        if fmt:
            values["log_format"] = fmt
        return cls(**values)


def configure_logging(settings: Optional[VersionedSettings] = None) -> None:
    """Apply the configured level and format to the root logger."""
    settings = settings or VersionedSettings()
    logging.basicConfig(level=settings.log_level, format=settings.log_format)
    logging.getLogger("sqlalchemy.engine").setLevel(
        logging.INFO if settings.echo_sql else logging.WARNING
    )
