"""HTTP statuses reported by coded errors and gate responses."""

from __future__ import annotations

from enum import IntEnum
from http import HTTPStatus


class Status(IntEnum):
    OK = 200
    BAD_REQUEST = 400
    UNAUTHORIZED = 401
    FORBIDDEN = 403
    NOT_FOUND = 404
    CONFLICT = 409
    INTERNAL_SERVER_ERROR = 500
    BAD_GATEWAY = 502


def ensure_status(status: int | Status) -> int:
    """Return ``status`` as an ``int``, rejecting values outside 100-599."""

    code = int(status)
    if not 100 <= code <= 599:
        raise ValueError(f"Invalid HTTP status code: {status}")
    return code


def reason_phrase(status: int | Status) -> str:
    try:
        return HTTPStatus(int(status)).phrase
    except ValueError:
        return "Unknown Status"


__all__ = ["Status", "ensure_status", "reason_phrase"]
