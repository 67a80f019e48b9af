from enum import StrEnum

REDACTED = "***REDACTED***"
CIRCULAR = "[Circular]"

DEFAULT_SENSITIVE_KEYS = ("SECRET", "PASSWORD", "TOKEN", "KEY")
DEFAULT_PRETTY_ENVIRONMENTS = ("local",)

DEFAULT_ERROR_LOG_PATH = "./logs/error.log"

TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S.%f"

MANIFEST_FILES = ("pyproject.toml", "package.json", "deno.json")


class RuntimeEnvironment(StrEnum):
    LOCAL = "local"
    LOCAL_TEST = "local-test"
    DEV = "dev"
    DEVELOPMENT = "development"


# Environments where a crash is logged but the process is kept alive
INTERACTIVE_ENVIRONMENTS = frozenset(
    {RuntimeEnvironment.LOCAL, RuntimeEnvironment.DEV, RuntimeEnvironment.DEVELOPMENT}
)


class LogLevel(StrEnum):
    ERROR = "error"
    WARN = "warn"
    HTTP = "http"
    INFO = "info"
    DEBUG = "debug"


# 0 is the highest priority
LEVEL_PRIORITIES = {
    LogLevel.ERROR: 0,
    LogLevel.WARN: 1,
    LogLevel.HTTP: 2,
    LogLevel.INFO: 3,
    LogLevel.DEBUG: 4,
}

LEVEL_COLORS = {
    LogLevel.ERROR: "red",
    LogLevel.WARN: "yellow",
    LogLevel.HTTP: "magenta",
    LogLevel.INFO: "green",
    LogLevel.DEBUG: "white",
}
