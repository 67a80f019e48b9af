import os
import re
from collections.abc import Callable, Iterable, Mapping
from typing import Any, TypeAlias

from safelog.core.constants import CIRCULAR, DEFAULT_SENSITIVE_KEYS, REDACTED

LogValue: TypeAlias = (
    str | int | float | bool | None | dict[str, "LogValue"] | list["LogValue"] | tuple["LogValue", ...]
)
LogRecord: TypeAlias = dict[str, LogValue]


def _is_sequence(value: object) -> bool:
    return isinstance(value, (list, tuple))


def _is_composite(value: object) -> bool:
    return isinstance(value, Mapping) or _is_sequence(value)


def safe_deep_clone(value: Any, seen: dict[int, Any] | None = None) -> Any:
    """Deep-clone mappings and sequences, replacing repeated references.

    ``seen`` maps the id of every composite already visited in this traversal
    to its clone. Any composite met a second time, whether it is a true cycle
    or a shared reference, is replaced by the ``[Circular]`` marker.
    Leaves are returned as they are.
    """
    if not _is_composite(value):
        return value

    if seen is None:
        seen = {}
    if id(value) in seen:
        return CIRCULAR

    if isinstance(value, Mapping):
        cloned: dict[Any, Any] = {}
        seen[id(value)] = cloned
        for key, item in value.items():
            cloned[key] = safe_deep_clone(item, seen)
        return cloned

    cloned_items: list[Any] = []
    seen[id(value)] = cloned_items
    for item in value:
        cloned_items.append(safe_deep_clone(item, seen))
    return cloned_items


def is_sensitive_key(key: object, sensitive_keys: Iterable[str]) -> bool:
    """Return True if ``key`` contains any of the fragments, ignoring case."""
    if not isinstance(key, str):
        return False
    upper = key.upper()
    return any(fragment.upper() in upper for fragment in sensitive_keys)


def collect_sensitive_values(
    sensitive_keys: Iterable[str], environ: Mapping[str, str] | None = None
) -> tuple[str, ...]:
    """Snapshot the non-empty values of environment variables with sensitive names."""
    if environ is None:
        environ = os.environ
    fragments = tuple(sensitive_keys)
    values = {value for name, value in environ.items() if value and is_sensitive_key(name, fragments)}
    return tuple(values)


def _build_value_pattern(values: Iterable[str]) -> re.Pattern[str] | None:
    if not values:
        return None
    # The marker comes first so text that is already redacted is left alone
    ordered = sorted(values, key=len, reverse=True)
    alternatives = [re.escape(REDACTED)] + [re.escape(value) for value in ordered]
    return re.compile("|".join(alternatives))


def make_sanitizer(
    sensitive_keys: Iterable[str] | None = None,
) -> Callable[[LogRecord | None], LogRecord | None]:
    """Build a function that returns a redacted deep copy of a log record.

    Two passes protect secrets:

    - values stored under a key containing one of ``sensitive_keys`` are
      replaced with ``***REDACTED***``
    - the values of environment variables with sensitive names are replaced
      wherever they appear inside any string

    ``None`` means DEFAULT_SENSITIVE_KEYS. The environment is read once,
    here. The returned function never mutates its input and never raises for
    dicts, lists, tuples, scalars or ``None``, cyclic graphs included. Its
    ``scrub`` attribute applies the second pass alone to a single string.
    """
    fragments = tuple(DEFAULT_SENSITIVE_KEYS if sensitive_keys is None else sensitive_keys)
    value_pattern = _build_value_pattern(collect_sensitive_values(fragments))

    def sanitize_string(text: str) -> str:
        if value_pattern is None:
            return text
        return value_pattern.sub(REDACTED, text)

    def recursive_sanitize(node: dict[Any, Any] | list[Any]) -> None:
        if isinstance(node, list):
            for index, item in enumerate(node):
                if item is None:
                    continue
                if isinstance(item, str):
                    node[index] = sanitize_string(item)
                elif isinstance(item, (dict, list)):
                    recursive_sanitize(item)
            return

        for key, item in node.items():
            if item is None:
                continue
            if isinstance(item, str):
                if is_sensitive_key(key, fragments):
                    node[key] = REDACTED
                else:
                    node[key] = sanitize_string(item)
            elif isinstance(item, (dict, list)):
                recursive_sanitize(item)

    def sanitize(record: LogRecord | None) -> LogRecord | None:
        if record is None:
            return record
        sanitized = safe_deep_clone(record)
        if isinstance(sanitized, (dict, list)):
            recursive_sanitize(sanitized)
        return sanitized

    sanitize.scrub = sanitize_string  # type: ignore[attr-defined]
    return sanitize
