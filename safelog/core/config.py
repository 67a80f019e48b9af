from pydantic import Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from safelog.core.constants import DEFAULT_ERROR_LOG_PATH, LogLevel
from safelog.core.exceptions.domain import LoggerConfigurationError


class LoggerSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Runtime
    app_env: str = Field(
        default="development",
        description="Runtime environment name (drives verbosity, pretty print, color, exit policy)",
    )

    # Logger
    logger_level: LogLevel | None = Field(
        default=None,
        description="Explicit verbosity override, takes precedence over app_env",
    )
    logger_error_path: str = Field(
        default=DEFAULT_ERROR_LOG_PATH,
        description="File that receives error-level records",
    )
    logger_app_name: str = Field(
        default="",
        description="Application name used when no project manifest is found",
    )

    @field_validator("logger_level", mode="before")
    @classmethod
    def _normalize_level(cls, value: object) -> object:
        if isinstance(value, str):
            value = value.strip().lower()
            return value or None
        return value


def get_settings() -> LoggerSettings:
    """Read settings from the current environment.

    Not cached: every logger is built from the environment as it is at
    construction time.
    """
    try:
        return LoggerSettings()
    except ValidationError as e:
        raise LoggerConfigurationError(f"Invalid logger settings: {e}") from e
