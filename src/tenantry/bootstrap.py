"""Tenant bootstrap procedures.

:class:`RemoteBootstrapProcedure` calls the privileged bootstrap service over
HTTPS. :class:`DirectoryBootstrapProcedure` is that service's logic, run
directly against the directories.
"""

from __future__ import annotations

import asyncio
import http.client
import inspect
import logging
import re
import secrets
import ssl
import urllib.error
import urllib.request
from typing import Awaitable, Callable, Mapping, Protocol
from urllib.parse import urlparse

import msgspec
from id57 import generate_id57
from msgspec import structs

from .directories import PrincipalDirectory, TenantDirectory
from .exceptions import BootstrapError, Constraint, ConstraintViolation
from .hostnames import is_tenant_slug
from .models import BootstrapOutcome, Principal, Role, Tenant
from .serialization import json_decode, json_encode

logger = logging.getLogger(__name__)

_SLUG_SEPARATORS = re.compile(r"[^a-z0-9]+")
_MAX_SLUG_BASE = 58
DEFAULT_SLUG = "workspace"


def slugify(name: str) -> str:
    """Return the subdomain key derived from ``name``."""

    slug = _SLUG_SEPARATORS.sub("-", name.lower()).strip("-")
    return slug[:_MAX_SLUG_BASE].rstrip("-")


class BootstrapProcedure(Protocol):
    """Create a tenant for ``principal`` and attach it as owner/admin."""

    async def bootstrap(self, name: str, principal: Principal) -> BootstrapOutcome | None: ...


class RemoteBootstrapConfig(msgspec.Struct, frozen=True):
    """Location of the privileged bootstrap service."""

    url: str
    token: str | None = None
    timeout: float = 10.0
    allowed_hosts: tuple[str, ...] = ()


TransportCallable = Callable[[RemoteBootstrapConfig, bytes, Mapping[str, str]], Awaitable[bytes] | bytes]


class _BootstrapResponse(msgspec.Struct):
    tenant: Tenant | None = None
    principal: Principal | None = None
    error: str | None = None


class RemoteBootstrapProcedure:
    """Invoke the bootstrap service with the caller's desired tenant name."""

    def __init__(self, config: RemoteBootstrapConfig, *, transport: TransportCallable | None = None) -> None:
        self.config = config
        self._transport = transport or _default_transport
        parsed = urlparse(config.url)
        if (parsed.scheme or "").lower() != "https":
            raise BootstrapError("Bootstrap service URLs must use HTTPS")
        host = (parsed.hostname or "").lower()
        if not host:
            raise BootstrapError("Bootstrap service URL must include a host")
        allowed = tuple(value.lower() for value in config.allowed_hosts)
        if allowed and host not in allowed:
            raise BootstrapError(f"Bootstrap service host '{host}' is not allowed")
        self.host = host

    async def bootstrap(self, name: str, principal: Principal) -> BootstrapOutcome | None:
        payload = json_encode({"tenant_name": name, "principal_id": principal.id})
        headers = {"content-type": "application/json; charset=utf-8"}
        if self.config.token:
            headers["authorization"] = f"Bearer {self.config.token}"
        body = await _invoke_transport(self._transport, self.config, payload, headers)
        try:
            response = json_decode(body, type=_BootstrapResponse)
        except (msgspec.DecodeError, msgspec.ValidationError) as exc:
            raise BootstrapError("Bootstrap service returned an unreadable response") from exc
        if response.tenant is None:
            logger.warning("Bootstrap service returned no tenant for %s: %s", principal.id, response.error)
            return None
        return BootstrapOutcome(tenant=response.tenant, principal=response.principal)


class DirectoryBootstrapProcedure:
    """Create or adopt the tenant owned by a principal, exactly once.

    A principal that is already linked keeps its tenant. Otherwise the oldest
    tenant it owns is adopted, and only then is a new tenant inserted. A slug
    collision first re-checks ownership, since a concurrent bootstrap for the
    same principal may have won the insert, and finally retries with a random
    suffix.
    """

    def __init__(
        self,
        principals: PrincipalDirectory,
        tenants: TenantDirectory,
        *,
        default_plan: str = "free",
        id_factory: Callable[[], str] | None = None,
        suffix_factory: Callable[[], str] | None = None,
    ) -> None:
        self.principals = principals
        self.tenants = tenants
        self.default_plan = default_plan
        self._id_factory = id_factory or generate_id57
        self._suffix_factory = suffix_factory or (lambda: secrets.token_hex(2))

    async def bootstrap(self, name: str, principal: Principal) -> BootstrapOutcome | None:
        current = await self._ensure_principal(principal)
        if current.tenant_id is not None:
            tenant = await self.tenants.get(current.tenant_id)
            return BootstrapOutcome(tenant=tenant, principal=current)

        tenant = await self._first_owned(current.id)
        if tenant is None:
            tenant_name = name.strip() or _fallback_name(current)
            base = slugify(tenant_name)
            if not is_tenant_slug(base):
                base = DEFAULT_SLUG
            tenant = await self._create(tenant_name, base, current.id)
            if tenant is None:
                tenant = await self._first_owned(current.id)
            if tenant is None:
                tenant = await self._create(tenant_name, f"{base}-{self._suffix_factory()}", current.id)
            if tenant is None:
                logger.warning("Could not create a tenant for principal %s", current.id)
                return None

        linked = await self.principals.update(current.id, tenant_id=tenant.id, role=Role.ADMIN)
        return BootstrapOutcome(tenant=tenant, principal=linked or current)

    async def _ensure_principal(self, principal: Principal) -> Principal:
        existing = await self.principals.get(principal.id)
        if existing is not None:
            return existing
        try:
            return await self.principals.insert(structs.replace(principal, role=Role.ADMIN, tenant_id=None))
        except ConstraintViolation as exc:
            if exc.constraint is not Constraint.PRINCIPAL_EXISTS:
                raise
        existing = await self.principals.get(principal.id)
        if existing is None:  # pragma: no cover - insert raced with a delete
            raise BootstrapError(f"Principal {principal.id} vanished during bootstrap")
        return existing

    async def _first_owned(self, principal_id: str) -> Tenant | None:
        owned = await self.tenants.owned_by(principal_id)
        return owned[0] if owned else None

    async def _create(self, name: str, slug: str, owner_id: str) -> Tenant | None:
        tenant = Tenant(id=self._id_factory(), name=name, slug=slug, owner_id=owner_id, plan=self.default_plan)
        try:
            return await self.tenants.insert(tenant)
        except ConstraintViolation as exc:
            if exc.constraint is not Constraint.SLUG_TAKEN:
                raise
            logger.info("Tenant slug %r already taken", slug)
            return None


def _fallback_name(principal: Principal) -> str:
    if principal.display_name:
        return f"{principal.display_name}'s Organization"
    if principal.email and "@" in principal.email:
        return principal.email.split("@", 1)[0]
    return "Workspace"


async def _invoke_transport(
    transport: TransportCallable,
    config: RemoteBootstrapConfig,
    payload: bytes,
    headers: Mapping[str, str],
) -> bytes:
    result = transport(config, payload, headers)
    if inspect.isawaitable(result):
        return await result
    return result


class _RefuseRedirects(urllib.request.HTTPRedirectHandler):
    """Stop the bearer token from following a redirect anywhere."""

    def __init__(self, allowed_hosts: frozenset[str]) -> None:
        super().__init__()
        self.allowed_hosts = allowed_hosts

    def redirect_request(self, req, fp, code, msg, headers, newurl):  # type: ignore[override]
        parsed = urlparse(newurl)
        if (parsed.scheme or "").lower() != "https":
            raise BootstrapError("Bootstrap service redirected to a non-HTTPS URL")
        host = (parsed.hostname or "").lower()
        if not host:
            raise BootstrapError("Bootstrap service redirect is missing a host")
        if host not in self.allowed_hosts:
            raise BootstrapError(f"Bootstrap service redirect host '{host}' is not allowed")
        raise BootstrapError(f"Bootstrap service redirect to '{host}' is not supported")


def _build_opener(config: RemoteBootstrapConfig, context: ssl.SSLContext) -> urllib.request.OpenerDirector:
    allowed = {value.lower() for value in config.allowed_hosts}
    host = (urlparse(config.url).hostname or "").lower()
    if host:
        allowed.add(host)
    return urllib.request.build_opener(
        _RefuseRedirects(frozenset(allowed)),
        urllib.request.HTTPSHandler(context=context),
    )


async def _default_transport(
    config: RemoteBootstrapConfig,
    payload: bytes,
    headers: Mapping[str, str],
) -> bytes:
    request = urllib.request.Request(config.url, data=payload, headers=dict(headers), method="POST")

    def _send() -> bytes:
        opener = _build_opener(config, ssl.create_default_context())
        try:
            with opener.open(request, timeout=config.timeout) as response:
                return response.read()
        except urllib.error.HTTPError as exc:
            raise BootstrapError(f"Bootstrap service failed with status {exc.code}") from exc
        except urllib.error.URLError as exc:
            raise BootstrapError(f"Failed to reach bootstrap service: {exc.reason}") from exc
        except (OSError, http.client.HTTPException) as exc:
            raise BootstrapError(f"Bootstrap service connection failed: {exc!r}") from exc

    return await asyncio.to_thread(_send)


__all__ = [
    "DEFAULT_SLUG",
    "BootstrapProcedure",
    "DirectoryBootstrapProcedure",
    "RemoteBootstrapConfig",
    "RemoteBootstrapProcedure",
    "TransportCallable",
    "slugify",
]
