"""JSON encoding helpers shared by error bodies and gate responses."""

from __future__ import annotations

from typing import Any, TypeVar

import msgspec

T = TypeVar("T")

_encoder = msgspec.json.Encoder()


def _plain(value: Any) -> Any:
    if isinstance(value, msgspec.Struct):
        return msgspec.to_builtins(value)
    if isinstance(value, dict):
        return {key: _plain(item) for key, item in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [_plain(item) for item in value]
    return value


def json_encode(value: Any) -> bytes:
    """Encode ``value`` as JSON, flattening nested structs with their own encoding rules."""

    return _encoder.encode(_plain(value))


def json_decode(data: bytes | str, *, type: type[T] | None = None) -> Any:
    if type is None:
        return msgspec.json.decode(data)
    return msgspec.json.decode(data, type=type)


__all__ = ["json_decode", "json_encode"]
