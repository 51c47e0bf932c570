"""Tenant resolution: which tenant does an authenticated identity belong to.

The resolver loads (or creates) the caller's principal, honors hostname
routing for principals without a tenant, keeps the "owner is always admin"
invariant healed, and bootstraps a brand new tenant when nothing else applies.
Bootstrap calls are de-duplicated per identity with :class:`SingleFlight`.
"""

from __future__ import annotations

import asyncio
import logging

from .audit import ENTITY_PRINCIPAL, AuditTrail
from .bootstrap import BootstrapProcedure
from .config import AdoptionRolePolicy, TenantryConfig
from .directories import PendingNames, PrincipalDirectory, TenantDirectory
from .exceptions import (
    BootstrapError,
    BootstrapFailed,
    Constraint,
    ConstraintViolation,
    DirectoryError,
    Forbidden,
    NotAuthenticated,
    OrgNotFound,
    ProfileNotFound,
)
from .hostnames import HostnameRouter, RouteKind
from .models import AdminContext, BootstrapOutcome, Identity, Principal, ResolveResult, Role, Tenant
from .observability import Observability
from .singleflight import SingleFlight

logger = logging.getLogger(__name__)

ACTION_ADOPT_BY_HOSTNAME = "adopt_tenant_by_hostname"
ACTION_BOOTSTRAP_ROLE_ADMIN = "bootstrap_role_admin"

DEFAULT_TENANT_NAME = "New Organization"
MIN_NAME_LENGTH = 2


def _usable(name: str | None) -> str | None:
    if name is None:
        return None
    name = name.strip()
    return name if len(name) >= MIN_NAME_LENGTH else None


def name_from_email(email: str | None) -> str | None:
    """``alice@newco.com`` becomes ``Newco``."""

    if not email or email.count("@") != 1:
        return None
    label = email.split("@", 1)[1].split(".", 1)[0].strip()
    if not label:
        return None
    return label[0].upper() + label[1:]


def name_from_display(display_name: str | None) -> str:
    if display_name and display_name.strip():
        return f"{display_name.split()[0]}'s Organization"
    return DEFAULT_TENANT_NAME


async def derive_tenant_name(identity: Identity, pending_names: PendingNames | None = None) -> str:
    """Pick the name for a tenant bootstrapped on behalf of ``identity``.

    Sources in priority order: the invite/metadata signal carried by the
    identity, the ephemeral pending-name marker, and the email domain. A
    candidate shorter than two characters falls through to the next source.
    """

    name = _usable(identity.pending_tenant_name)
    if name is None and pending_names is not None:
        name = _usable(await pending_names.get(identity.id))
    if name is None:
        name = _usable(name_from_email(identity.email))
    return name or name_from_display(identity.display_name)


class TenantResolver:
    """Answer "what tenant is this principal in", creating one if needed."""

    def __init__(
        self,
        principals: PrincipalDirectory,
        tenants: TenantDirectory,
        bootstrap: BootstrapProcedure,
        *,
        router: HostnameRouter | None = None,
        audit: AuditTrail | None = None,
        pending_names: PendingNames | None = None,
        config: TenantryConfig | None = None,
        observability: Observability | None = None,
    ) -> None:
        self.config = config or TenantryConfig()
        self.principals = principals
        self.tenants = tenants
        self.bootstrap = bootstrap
        self.router = router or HostnameRouter(self.config.root_domain, reserved_labels=self.config.reserved_labels)
        self.audit = audit or AuditTrail(None)
        self.pending_names = pending_names
        self.observability = observability or Observability(self.config.observability)
        self._bootstrap_flights: SingleFlight[str, BootstrapOutcome | None] = SingleFlight()

    async def resolve(self, identity: Identity | None, host: str | None = None) -> ResolveResult:
        if identity is None:
            return ResolveResult()
        principal = await self._load_principal(identity)
        if principal is None:
            return ResolveResult()

        candidate = await self._candidate(host)
        if candidate is not None:
            if principal.tenant_id is None:
                adopted = await self._adopt(principal, candidate)
                if adopted is not None:
                    return ResolveResult(tenant_id=candidate.id, tenant=candidate, principal=adopted)
                principal = await self.principals.get(principal.id) or principal
            elif principal.tenant_id != candidate.id:
                logger.info(
                    "Ignoring hostname tenant %s for principal %s of tenant %s",
                    candidate.id,
                    principal.id,
                    principal.tenant_id,
                )

        if principal.tenant_id is not None:
            if candidate is not None and candidate.id == principal.tenant_id:
                tenant: Tenant | None = candidate
            else:
                tenant = await self.tenants.get(principal.tenant_id)
            if tenant is None:
                logger.warning("Principal %s references missing tenant %s", principal.id, principal.tenant_id)
                return ResolveResult(tenant_id=principal.tenant_id, principal=principal)
            principal = await self._heal_owner(identity, principal, tenant)
            return ResolveResult(tenant_id=tenant.id, tenant=tenant, principal=principal)

        name = await derive_tenant_name(identity, self.pending_names)
        outcome = await self._bootstrap_flights.do(identity.id, lambda: self._run_bootstrap(principal, name))
        if outcome is None or outcome.tenant is None:
            return ResolveResult(principal=principal, bootstrapped=True)
        if self.pending_names is not None:
            await self.pending_names.clear(identity.id)
        linked = outcome.principal or await self.principals.get(principal.id) or principal
        return ResolveResult(tenant_id=outcome.tenant.id, tenant=outcome.tenant, principal=linked, bootstrapped=True)

    async def require_tenant_id(self, identity: Identity | None, host: str | None = None) -> str:
        if identity is None:
            raise NotAuthenticated()
        result = await self.resolve(identity, host)
        if result.principal is None:
            raise ProfileNotFound()
        if result.tenant_id is not None:
            return result.tenant_id
        if result.bootstrapped:
            raise BootstrapFailed()
        raise OrgNotFound()

    async def require_admin(self, identity: Identity | None, host: str | None = None) -> AdminContext:
        """Return the caller's :class:`AdminContext` or raise.

        The stored principal is re-read rather than trusted from an earlier
        resolution, so a principal observed mid-bootstrap is resolved again.
        """

        if identity is None:
            raise NotAuthenticated()
        principal = await self.principals.get(identity.id)
        if principal is None or principal.tenant_id is None:
            await self.require_tenant_id(identity, host)
            principal = await self.principals.get(identity.id)
        if principal is None:
            raise ProfileNotFound()
        if principal.tenant_id is None:
            raise OrgNotFound()
        if principal.role is not Role.ADMIN:
            raise Forbidden()
        return AdminContext(
            tenant_id=principal.tenant_id,
            principal_id=principal.id,
            actor_display=principal.display_name or principal.email,
        )

    async def _load_principal(self, identity: Identity) -> Principal | None:
        try:
            existing = await self.principals.get(identity.id)
            if existing is not None:
                return existing
            fresh = Principal(
                id=identity.id,
                role=Role.ADMIN,
                email=identity.email,
                display_name=identity.display_name,
            )
            try:
                return await self.principals.insert(fresh)
            except ConstraintViolation as exc:
                if exc.constraint is not Constraint.PRINCIPAL_EXISTS:
                    raise
            return await self.principals.get(identity.id)
        except DirectoryError:
            logger.warning("Could not load or create principal %s", identity.id, exc_info=True)
            return None

    async def _candidate(self, host: str | None) -> Tenant | None:
        route = self.router.route(host)
        if route.kind is RouteKind.SUBDOMAIN:
            return await self.tenants.get_by_slug(route.lookup_key)
        if route.kind is RouteKind.CUSTOM_DOMAIN:
            return await self.tenants.get_by_custom_domain(route.lookup_key, active_only=True)
        return None

    def _adoption_role(self, principal: Principal, tenant: Tenant) -> Role:
        if tenant.owned_by(principal.id):
            return Role.ADMIN
        if self.config.adoption_role_policy is AdoptionRolePolicy.VIEWER:
            return Role.VIEWER
        return principal.role or Role.VIEWER

    async def _adopt(self, principal: Principal, tenant: Tenant) -> Principal | None:
        role = self._adoption_role(principal, tenant)
        try:
            adopted = await self.principals.update(principal.id, tenant_id=tenant.id, role=role)
        except ConstraintViolation as exc:
            logger.info("Hostname adoption of %s into %s rejected: %s", principal.id, tenant.id, exc.constraint)
            return None
        if adopted is None or adopted.tenant_id != tenant.id:
            return None
        await self.audit.record(
            tenant_id=tenant.id,
            actor_id=principal.id,
            actor_display=principal.display_name or principal.email,
            entity_type=ENTITY_PRINCIPAL,
            entity_id=principal.id,
            action=ACTION_ADOPT_BY_HOSTNAME,
            before=principal.snapshot(),
            after=adopted.snapshot(),
        )
        return adopted

    async def _heal_owner(self, identity: Identity, principal: Principal, tenant: Tenant) -> Principal:
        if not tenant.owned_by(principal.id) or principal.is_admin:
            return principal
        try:
            healed = await self.principals.update(principal.id, role=Role.ADMIN)
        except ConstraintViolation:
            logger.warning("Could not promote owner %s of tenant %s", principal.id, tenant.id, exc_info=True)
            return principal
        if healed is None:
            return principal
        logger.info("Promoted owner %s of tenant %s back to admin", principal.id, tenant.id)
        await self.audit.record(
            tenant_id=tenant.id,
            actor_id=identity.id,
            actor_display=identity.display_name or identity.email,
            entity_type=ENTITY_PRINCIPAL,
            entity_id=principal.id,
            action=ACTION_BOOTSTRAP_ROLE_ADMIN,
            before=principal.snapshot(),
            after=healed.snapshot(),
        )
        return healed

    async def _run_bootstrap(self, principal: Principal, name: str) -> BootstrapOutcome | None:
        context = self.observability.on_bootstrap_start(principal.id, name)
        try:
            outcome = await asyncio.wait_for(
                self.bootstrap.bootstrap(name, principal),
                timeout=self.config.bootstrap_timeout,
            )
        except asyncio.TimeoutError as exc:
            logger.warning(
                "Bootstrap for principal %s timed out after %ss",
                principal.id,
                self.config.bootstrap_timeout,
            )
            self.observability.on_bootstrap_error(context, exc)
            return None
        except (BootstrapError, DirectoryError) as exc:
            logger.warning("Bootstrap for principal %s failed", principal.id, exc_info=True)
            self.observability.on_bootstrap_error(context, exc)
            return None
        tenant_id = outcome.tenant.id if outcome is not None and outcome.tenant is not None else None
        self.observability.on_bootstrap_success(context, tenant_id)
        return outcome


__all__ = [
    "ACTION_ADOPT_BY_HOSTNAME",
    "ACTION_BOOTSTRAP_ROLE_ADMIN",
    "DEFAULT_TENANT_NAME",
    "TenantResolver",
    "derive_tenant_name",
    "name_from_display",
    "name_from_email",
]
