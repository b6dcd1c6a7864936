"""Settings for warmstart entry points, loaded from the environment."""

from enum import Enum
from typing import Annotated

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

__all__ = ["LogFormat", "LogLevel", "WarmstartSettings"]


class LogLevel(str, Enum):
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class LogFormat(str, Enum):
    CONSOLE = "console"
    JSON = "json"


class WarmstartSettings(BaseSettings):
    """Process-level settings, read once per process from ``WARMSTART_*`` variables.

    Attributes:
        log_level: Minimum level of emitted log events.
        log_format: ``json`` for log shippers, ``console`` for local runs.
        preload_modules: Ids of known modules to load on the cold path, so that
            their cost is paid during the first invocation rather than by the
            first invocation that needs them.
    """

    log_level: LogLevel = Field(default=LogLevel.INFO)
    log_format: LogFormat = Field(default=LogFormat.JSON)
    preload_modules: Annotated[list[str], NoDecode] = Field(default_factory=list)

    model_config = SettingsConfigDict(
        env_prefix="WARMSTART_", case_sensitive=False, extra="ignore"
    )

    @field_validator("log_level", mode="before")
    @classmethod
    def _normalise_level(cls, value):
        return value.upper() if isinstance(value, str) else value

    @field_validator("preload_modules", mode="before")
    @classmethod
    def _split_module_ids(cls, value):
        if isinstance(value, str):
            return [module_id.strip() for module_id in value.split(",") if module_id.strip()]
        return value
