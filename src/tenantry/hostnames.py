"""Hostname to tenant lookup key routing."""

from __future__ import annotations

import logging
from enum import Enum
from typing import Iterable

import rure
from msgspec import Struct

from .exceptions import HostnameError

logger = logging.getLogger(__name__)

_HOSTNAME_ALLOWED_CHARS = frozenset("abcdefghijklmnopqrstuvwxyz0123456789-.")
_MAX_HOSTNAME_LENGTH = 253
_MAX_LABEL_LENGTH = 63

DEFAULT_RESERVED_LABELS = ("www", "app")

_TENANT_SLUG = rure.compile(r"^[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?$")


def is_tenant_slug(value: str) -> bool:
    """Return ``True`` when ``value`` can be used as a subdomain label."""

    return bool(value) and _TENANT_SLUG.is_match(value)


class RouteKind(str, Enum):
    SUBDOMAIN = "subdomain"
    CUSTOM_DOMAIN = "custom_domain"
    NONE = "none"

    def __str__(self) -> str:  # pragma: no cover - trivial
        return self.value


class HostRoute(Struct, frozen=True):
    kind: RouteKind
    lookup_key: str | None = None

    @property
    def matched(self) -> bool:
        return self.kind is not RouteKind.NONE


NO_ROUTE = HostRoute(kind=RouteKind.NONE)


class HostnameRouter:
    """Map request hostnames onto tenant slugs or custom domain keys.

    Hosts under ``root_domain`` route by their first label, everything else is a
    custom domain candidate. The router never consults storage; callers must
    only honor a custom domain whose verification is active.
    """

    def __init__(self, root_domain: str, *, reserved_labels: Iterable[str] = DEFAULT_RESERVED_LABELS) -> None:
        self.root_domain = root_domain.strip().lower().strip(".")
        if not self.root_domain:
            raise ValueError("root_domain must not be empty")
        self.reserved_labels = frozenset(label.lower() for label in reserved_labels)

    def route(self, host: str | None) -> HostRoute:
        if not host:
            return NO_ROUTE
        try:
            hostname = normalize_host(host)
        except HostnameError as exc:
            logger.debug("Ignoring unroutable host %r: %s", host, exc)
            return NO_ROUTE
        if hostname == self.root_domain:
            return NO_ROUTE
        if hostname.endswith(f".{self.root_domain}"):
            label = hostname.split(".", 1)[0]
            if label in self.reserved_labels or not is_tenant_slug(label):
                return NO_ROUTE
            return HostRoute(kind=RouteKind.SUBDOMAIN, lookup_key=label)
        return HostRoute(kind=RouteKind.CUSTOM_DOMAIN, lookup_key=hostname)

    def host_for(self, slug: str) -> str:
        """Return the canonical hostname serving ``slug``."""

        return f"{slug}.{self.root_domain}"


def normalize_host(raw: str) -> str:
    """Validate a ``Host`` header value and return the bare lowercase hostname."""

    if not raw:
        raise HostnameError("Host header is empty")
    candidate = raw
    if candidate != candidate.strip():
        raise HostnameError("Host header contains surrounding whitespace")
    if any(ord(char) <= 31 or char == "\x7f" or char.isspace() for char in candidate):
        raise HostnameError("Host header contains control characters")
    if "/" in candidate or "\\" in candidate:
        raise HostnameError("Host header contains illegal characters")
    hostname, sep, port = candidate.lower().partition(":")
    if sep and not port:
        raise HostnameError("Host header contains an invalid port")
    if not hostname or hostname.startswith(".") or hostname.endswith(".") or ".." in hostname:
        raise HostnameError("Host header is not a valid DNS name")
    labels = hostname.split(".")
    if any(len(label) > _MAX_LABEL_LENGTH for label in labels):
        raise HostnameError("Host header contains an overlong DNS label")
    if len(hostname) > _MAX_HOSTNAME_LENGTH:
        raise HostnameError("Host header is too long")
    if any(char not in _HOSTNAME_ALLOWED_CHARS for char in hostname):
        raise HostnameError("Host header contains invalid characters")
    if port:
        if not port.isdigit():
            raise HostnameError("Host header contains an invalid port")
        port_value = int(port)
        if port_value <= 0 or port_value > 65535:
            raise HostnameError("Host header contains an invalid port")
    return hostname


__all__ = [
    "DEFAULT_RESERVED_LABELS",
    "NO_ROUTE",
    "HostRoute",
    "HostnameRouter",
    "RouteKind",
    "is_tenant_slug",
    "normalize_host",
]
