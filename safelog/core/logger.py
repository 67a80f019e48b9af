import asyncio
import copy
import json
import logging
import os
import sys
import threading
import traceback
from collections.abc import Callable, Iterable, Mapping
from contextlib import suppress
from dataclasses import dataclass, field
from typing import Any
from uuid import uuid4

from loguru import logger

from safelog.core.config import LoggerSettings, get_settings
from safelog.core.constants import (
    DEFAULT_PRETTY_ENVIRONMENTS,
    LEVEL_PRIORITIES,
    TIMESTAMP_FORMAT,
    LogLevel,
    RuntimeEnvironment,
)
from safelog.core.exceptions.domain import LoggerConfigurationError
from safelog.core.levels import from_loguru_level, resolve_level, should_exit_on_error, to_loguru_level
from safelog.utils.app_name import get_app_name
from safelog.utils.sanitize import LogRecord, make_sanitizer, safe_deep_clone

# Keys in record["extra"] owned by this module
HANDLE_KEY = "_safelog_handle"
LINE_KEY = "_safelog_line"
_INTERNAL_KEYS = frozenset({HANDLE_KEY, LINE_KEY})

# Fields the pipeline writes itself; caller fields with these names are dropped
_RESERVED_FIELDS = frozenset({"level", "message", "timestamp", "stack"})


@dataclass(frozen=True)
class SinkSpec:
    """A loguru sink with an optional minimum level and extra ``logger.add`` options."""

    sink: Any
    level: LogLevel | str | None = None
    options: dict[str, Any] = field(default_factory=dict)


def default_sinks(settings: LoggerSettings) -> list[SinkSpec]:
    """Console for everything, plus a rotated file for error-level records."""
    return [
        SinkSpec(sys.stderr),
        SinkSpec(
            settings.logger_error_path,
            level=LogLevel.ERROR,
            options={"rotation": "10 MB", "retention": "30 days"},
        ),
    ]


def _line_format(record: Mapping[str, Any]) -> str:
    return "<level>{extra[" + LINE_KEY + "]}</level>\n"


def _owned_by(handle_id: str) -> Callable[[Mapping[str, Any]], bool]:
    def _filter(record: Mapping[str, Any]) -> bool:
        return record["extra"].get(HANDLE_KEY) == handle_id

    return _filter


def _most_restrictive(*levels: LogLevel) -> LogLevel:
    return min(levels, key=LEVEL_PRIORITIES.__getitem__)


def _remove_default_handler() -> None:
    # loguru ships with a stderr handler (id 0) that would print every record twice
    with suppress(ValueError):
        logger.remove(0)


class JsonLineFormatter:
    """Turns a loguru record into one sanitized JSON line.

    Runs as a loguru patcher, once per log call, before any sink sees the
    record: capture the stack, stamp the time, sanitize, serialize. The
    rendered line is stored in ``record["extra"]`` for the sinks' format.
    """

    def __init__(
        self,
        sanitize: Callable[[LogRecord | None], LogRecord | None],
        scrub: Callable[[str], str] = str,
        pretty: bool = False,
    ):
        self._sanitize = sanitize
        self._scrub = scrub
        self._indent = 2 if pretty else None
        self._separators = None if pretty else (",", ":")

    def __call__(self, record: dict[str, Any]) -> None:
        payload: dict[str, Any] = {
            "message": record["message"],
            "timestamp": record["time"].strftime(TIMESTAMP_FORMAT)[:-3],
        }
        for key, value in record["extra"].items():
            if key not in _INTERNAL_KEYS and key not in _RESERVED_FIELDS:
                payload[key] = value

        exception = record["exception"]
        if exception is not None and exception.value is not None:
            payload["stack"] = "".join(
                traceback.format_exception(exception.type, exception.value, exception.traceback)
            ).rstrip()

        sanitized = self._sanitize(payload) or {}
        # Severity stays outside the sanitized payload
        event = {"level": from_loguru_level(record["level"].name), **sanitized}
        record["extra"][LINE_KEY] = self.serialize(event)

    def _default(self, value: object) -> str:
        # Leaves the sanitizer passes through by reference are only turned
        # into text here, so they get the value scrub now
        return self._scrub(str(value))

    def serialize(self, event: dict[str, Any]) -> str:
        try:
            return json.dumps(
                event, default=self._default, ensure_ascii=False, indent=self._indent, separators=self._separators
            )
        except (TypeError, ValueError):
            # Non-string keys
            return json.dumps(
                event,
                default=self._default,
                ensure_ascii=False,
                indent=self._indent,
                separators=self._separators,
                skipkeys=True,
            )


class AsyncioLogHandler(logging.Handler):
    """Forwards records of the stdlib ``asyncio`` logger to a LoggerHandle.

    Records carrying an exception (a task exception that was never
    retrieved, a failing callback) go through the failure policy.
    """

    def __init__(self, handle: "LoggerHandle"):
        super().__init__(level=logging.WARNING)
        self._handle = handle

    def emit(self, record: logging.LogRecord) -> None:
        try:
            lines = record.getMessage().splitlines()
        except Exception:
            self.handleError(record)
            return
        headline = lines[0] if lines else record.name

        exc_info = record.exc_info
        if exc_info is None or exc_info[1] is None:
            level = LogLevel.ERROR if record.levelno >= logging.ERROR else LogLevel.WARN
            self._handle._logger.log(to_loguru_level(level), headline)
            return

        self._handle._log_failure(f"{headline}: {exc_info[1]}", exc_info)
        self._handle._after_failure()


class LoggerHandle:
    """A configured logger bound to its own set of sinks."""

    def __init__(
        self,
        bound_logger: Any,
        *,
        level: LogLevel,
        environment: str,
        app: str,
        handler_ids: list[int],
        exit_policy: Callable[[str], bool] = should_exit_on_error,
        terminate: Callable[[int], None] | None = None,
    ):
        self._logger = bound_logger
        self.level = level
        self.environment = environment
        self.app = app
        self._handler_ids = handler_ids
        self._exit_policy = exit_policy
        self._terminate = terminate or self._exit_process
        self._owns_hooks = False
        self._previous_excepthook: Any = None
        self._previous_threading_excepthook: Any = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._previous_loop_handler: Any = None
        self._asyncio_log_handler: AsyncioLogHandler | None = None

    # Logging

    def _emit(
        self,
        level: LogLevel | str,
        message: object,
        fields: dict[str, Any],
        *,
        exception: Any = None,
    ) -> None:
        if isinstance(message, BaseException):
            exception = message
            message = str(message)
        elif isinstance(message, Mapping):
            # Clone first so references back to the message itself become markers
            message = safe_deep_clone(message)
            fields = {**{str(k): v for k, v in message.items()}, **fields}
            message = fields.pop("message", "")

        target = self._logger.bind(**fields) if fields else self._logger
        target.opt(exception=exception, depth=2).log(to_loguru_level(level), str(message))

    def log(self, level: LogLevel | str, message: object, **fields: Any) -> None:
        self._emit(level, message, fields)

    def error(self, message: object, **fields: Any) -> None:
        self._emit(LogLevel.ERROR, message, fields)

    def exception(self, message: object, **fields: Any) -> None:
        """Log at error level with the exception currently being handled."""
        self._emit(LogLevel.ERROR, message, fields, exception=True)

    def warn(self, message: object, **fields: Any) -> None:
        self._emit(LogLevel.WARN, message, fields)

    warning = warn

    def http(self, message: object, **fields: Any) -> None:
        self._emit(LogLevel.HTTP, message, fields)

    def info(self, message: object, **fields: Any) -> None:
        self._emit(LogLevel.INFO, message, fields)

    def debug(self, message: object, **fields: Any) -> None:
        self._emit(LogLevel.DEBUG, message, fields)

    def bind(self, **fields: Any) -> "LoggerHandle":
        """Return a child handle that adds ``fields`` to every record.

        The child writes to the same sinks; closing either one closes them.
        """
        child = copy.copy(self)
        child._logger = self._logger.bind(**fields)
        child._owns_hooks = False
        return child

    # Failure policy

    def install_exception_handlers(self) -> None:
        """Route uncaught exceptions from the process, threads and the running loop here."""
        self._previous_excepthook = sys.excepthook
        self._previous_threading_excepthook = threading.excepthook
        sys.excepthook = self._handle_uncaught
        threading.excepthook = self._handle_thread_exception
        self._owns_hooks = True

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None
        if loop is not None:
            self._loop = loop
            self._previous_loop_handler = loop.get_exception_handler()
            loop.set_exception_handler(self.asyncio_exception_handler)

        # Loops created later fall back to asyncio's default handler, which
        # reports through the stdlib "asyncio" logger
        self._asyncio_log_handler = AsyncioLogHandler(self)
        logging.getLogger("asyncio").addHandler(self._asyncio_log_handler)

    def _log_failure(self, message: str, exc_info: tuple[Any, Any, Any]) -> None:
        self._logger.opt(exception=exc_info).log(to_loguru_level(LogLevel.ERROR), message)

    def _after_failure(self) -> None:
        if self._exit_policy(self.environment):
            self._terminate(1)

    def _handle_uncaught(self, exc_type: type[BaseException], exc_value: BaseException, exc_tb: Any) -> None:
        if issubclass(exc_type, KeyboardInterrupt) and self._previous_excepthook is not None:
            self._previous_excepthook(exc_type, exc_value, exc_tb)
            return
        self._log_failure(f"Uncaught {exc_type.__name__}: {exc_value}", (exc_type, exc_value, exc_tb))
        self._after_failure()

    def _handle_thread_exception(self, args: threading.ExceptHookArgs) -> None:
        if args.exc_type is SystemExit:
            return
        thread_name = args.thread.name if args.thread is not None else "unknown"
        self._log_failure(
            f"Uncaught {args.exc_type.__name__} in thread {thread_name}: {args.exc_value}",
            (args.exc_type, args.exc_value, args.exc_traceback),
        )
        self._after_failure()

    def asyncio_exception_handler(self, loop: asyncio.AbstractEventLoop, context: dict[str, Any]) -> None:
        """Exception handler for ``loop.set_exception_handler``."""
        message = context.get("message") or "Unhandled exception in event loop"
        exception = context.get("exception")
        if exception is None:
            # Notices such as unclosed transports are not failures
            self._logger.log(to_loguru_level(LogLevel.ERROR), message)
            return
        self._log_failure(f"{message}: {exception}", (type(exception), exception, exception.__traceback__))
        self._after_failure()

    def _exit_process(self, code: int) -> None:
        self.close()
        os._exit(code)

    # Lifecycle

    def close(self) -> None:
        """Remove this handle's sinks and restore any hooks it installed."""
        for handler_id in self._handler_ids:
            with suppress(ValueError):
                logger.remove(handler_id)
        self._handler_ids.clear()

        if not self._owns_hooks:
            return
        if sys.excepthook == self._handle_uncaught:
            sys.excepthook = self._previous_excepthook
        if threading.excepthook == self._handle_thread_exception:
            threading.excepthook = self._previous_threading_excepthook
        if self._loop is not None and not self._loop.is_closed():
            self._loop.set_exception_handler(self._previous_loop_handler)
        if self._asyncio_log_handler is not None:
            logging.getLogger("asyncio").removeHandler(self._asyncio_log_handler)
            self._asyncio_log_handler = None
        self._owns_hooks = False

    def __enter__(self) -> "LoggerHandle":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


def make_logger(
    sinks: Any = None,
    sensitive_keys: Iterable[str] | None = None,
    pretty_environments: Iterable[str] | None = None,
    *,
    settings: LoggerSettings | None = None,
    exit_policy: Callable[[str], bool] = should_exit_on_error,
    terminate: Callable[[int], None] | None = None,
    handle_exceptions: bool = True,
) -> LoggerHandle:
    """Build a logger that writes sanitized JSON lines to ``sinks``.

    Args:
        sinks: A loguru sink, a SinkSpec, or a list of them. Defaults to
            stderr plus an error-only file at LOGGER_ERROR_PATH.
        sensitive_keys: Key fragments whose values are always redacted.
            Defaults to DEFAULT_SENSITIVE_KEYS.
        pretty_environments: Environments that get indented JSON. Defaults
            to DEFAULT_PRETTY_ENVIRONMENTS.
        settings: Settings to use instead of reading the environment.
        exit_policy: Decides, from the environment name, whether the process
            ends after an uncaught failure has been logged.
        terminate: Called with the exit code when the policy says to exit.
        handle_exceptions: Install the uncaught-exception hooks.

    Raises:
        LoggerConfigurationError: A sink or the settings are invalid.
        ManifestError: A project manifest exists but cannot be read.
    """
    settings = settings or get_settings()
    environment = settings.app_env
    level = resolve_level(environment, settings.logger_level)
    app = get_app_name(fallback=settings.logger_app_name)

    if sinks is None:
        sinks = default_sinks(settings)
    elif not isinstance(sinks, (list, tuple)):
        sinks = [sinks]
    if pretty_environments is None:
        pretty_environments = DEFAULT_PRETTY_ENVIRONMENTS

    sanitize = make_sanitizer(sensitive_keys)
    formatter = JsonLineFormatter(
        sanitize,
        scrub=sanitize.scrub,  # type: ignore[attr-defined]
        pretty=environment in tuple(pretty_environments),
    )
    colorize = environment == RuntimeEnvironment.LOCAL
    handle_id = uuid4().hex

    _remove_default_handler()
    handler_ids: list[int] = []
    try:
        for spec in sinks:
            if not isinstance(spec, SinkSpec):
                spec = SinkSpec(spec)
            sink_level = level if spec.level is None else _most_restrictive(level, LogLevel(spec.level))
            handler_ids.append(
                logger.add(
                    spec.sink,
                    level=to_loguru_level(sink_level),
                    format=_line_format,
                    filter=_owned_by(handle_id),
                    colorize=colorize,
                    backtrace=False,
                    diagnose=False,
                    catch=True,
                    **spec.options,
                )
            )
    except (TypeError, ValueError, OSError) as e:
        for handler_id in handler_ids:
            logger.remove(handler_id)
        raise LoggerConfigurationError(f"Invalid sink configuration: {e}") from e

    bound = logger.bind(**{HANDLE_KEY: handle_id}, app=app, environment=environment).patch(formatter)

    handle = LoggerHandle(
        bound,
        level=level,
        environment=environment,
        app=app,
        handler_ids=handler_ids,
        exit_policy=exit_policy,
        terminate=terminate,
    )
    if handle_exceptions:
        handle.install_exception_handlers()
    return handle
