"""
Key-case conversion for JSON payloads crossing the wire.

Only dict keys are rewritten. Dicts recurse per field, lists and tuples per
element, everything else is returned unchanged.
"""

import re
from enum import Enum
from typing import Any, Callable

_CAMEL_BOUNDARY = re.compile(r"(?<=[a-z0-9])([A-Z])|(?<=[A-Z])([A-Z])(?=[a-z])")
_SNAKE_BOUNDARY = re.compile(r"_+([a-zA-Z0-9])")


class KeyCase(str, Enum):
    """Naming conventions for payload keys."""

    SNAKE = "snake"
    CAMEL = "camel"


def camel_to_snake(name: str) -> str:
    """``orderId`` -> ``order_id``; ``HTTPStatus`` -> ``http_status``."""
    return _CAMEL_BOUNDARY.sub(lambda m: "_" + (m.group(1) or m.group(2)), name).lower()


def snake_to_camel(name: str) -> str:
    """``order_id`` -> ``orderId``. Leading underscores are kept."""
    stripped = name.lstrip("_")
    prefix = name[: len(name) - len(stripped)]
    return prefix + _SNAKE_BOUNDARY.sub(lambda m: m.group(1).upper(), stripped)


_CONVERTERS: dict[KeyCase, Callable[[str], str]] = {
    KeyCase.SNAKE: camel_to_snake,
    KeyCase.CAMEL: snake_to_camel,
}


def transform_keys(value: Any, convert: Callable[[str], str]) -> Any:
    """Rewrite every dict key in a JSON tree with ``convert``."""
    if isinstance(value, dict):
        return {
            (convert(k) if isinstance(k, str) else k): transform_keys(v, convert)
            for k, v in value.items()
        }
    if isinstance(value, list):
        return [transform_keys(item, convert) for item in value]
    if isinstance(value, tuple):
        return tuple(transform_keys(item, convert) for item in value)
    return value


class KeyCodec:
    """
    Translates payload keys between the wire and internal conventions.

    Usage:
        codec = KeyCodec(wire=KeyCase.CAMEL, internal=KeyCase.SNAKE)
        codec.encode({"order_id": 1})   # {"orderId": 1}
        codec.decode({"orderId": 1})    # {"order_id": 1}
    """

    def __init__(
        self,
        wire: KeyCase | str = KeyCase.CAMEL,
        internal: KeyCase | str = KeyCase.SNAKE,
    ):
        self.wire = KeyCase(wire)
        self.internal = KeyCase(internal)

    @property
    def is_identity(self) -> bool:
        return self.wire == self.internal

    def encode(self, value: Any) -> Any:
        """Internal -> wire."""
        if self.is_identity:
            return value
        return transform_keys(value, _CONVERTERS[self.wire])

    def decode(self, value: Any) -> Any:
        """Wire -> internal."""
        if self.is_identity:
            return value
        return transform_keys(value, _CONVERTERS[self.internal])
