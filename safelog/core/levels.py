from loguru import logger

from safelog.core.constants import (
    INTERACTIVE_ENVIRONMENTS,
    LEVEL_COLORS,
    LogLevel,
    RuntimeEnvironment,
)

# Our level names mapped onto loguru's level table
LOGURU_LEVELS = {
    LogLevel.ERROR: "ERROR",
    LogLevel.WARN: "WARNING",
    LogLevel.HTTP: "HTTP",
    LogLevel.INFO: "INFO",
    LogLevel.DEBUG: "DEBUG",
}

# Between INFO (20) and WARNING (30)
HTTP_SEVERITY = 25


def register_levels() -> None:
    """Add the HTTP level to loguru and apply the level colors."""
    try:
        logger.level(LOGURU_LEVELS[LogLevel.HTTP])
    except ValueError:
        logger.level(LOGURU_LEVELS[LogLevel.HTTP], no=HTTP_SEVERITY)

    for level, color in LEVEL_COLORS.items():
        logger.level(LOGURU_LEVELS[level], color=f"<{color}>")


def to_loguru_level(level: LogLevel | str) -> str:
    return LOGURU_LEVELS[LogLevel(level)]


def from_loguru_level(name: str) -> str:
    """Map a loguru level name back to ours, lower-casing unknown custom levels."""
    for level, loguru_name in LOGURU_LEVELS.items():
        if loguru_name == name:
            return level.value
    return name.lower()


def resolve_level(environment: str, override: LogLevel | str | None = None) -> LogLevel:
    """Pick the verbosity for a runtime environment.

    An explicit override always wins. ``local-test`` only shows errors,
    the development environments show everything, anything else shows
    info and above.
    """
    if override:
        return LogLevel(override)

    match environment:
        case RuntimeEnvironment.LOCAL_TEST:
            return LogLevel.ERROR
        case RuntimeEnvironment.LOCAL | RuntimeEnvironment.DEV | RuntimeEnvironment.DEVELOPMENT:
            return LogLevel.DEBUG
        case _:
            return LogLevel.INFO


def should_exit_on_error(environment: str) -> bool:
    """Default exit policy: keep interactive environments alive after a crash."""
    return environment not in INTERACTIVE_ENVIRONMENTS


register_levels()
