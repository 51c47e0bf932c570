"""Directory contracts consumed by the resolver and gate, plus in-memory backends."""

from __future__ import annotations

from typing import Iterable, Mapping, Protocol, Sequence

from msgspec import UNSET, UnsetType, structs

from .exceptions import Constraint, ConstraintViolation
from .models import AuditEvent, DomainStatus, Principal, Role, Tenant


class PrincipalDirectory(Protocol):
    """One profile per authenticated identity."""

    async def get(self, principal_id: str) -> Principal | None: ...

    async def insert(self, principal: Principal, *, capacity: int | None = None) -> Principal: ...

    async def update(
        self,
        principal_id: str,
        *,
        role: Role | UnsetType = UNSET,
        tenant_id: str | None | UnsetType = UNSET,
        capacity: int | None = None,
    ) -> Principal | None: ...

    async def count_for_tenant(self, tenant_id: str) -> int: ...


class TenantDirectory(Protocol):
    """One record per tenant."""

    async def get(self, tenant_id: str) -> Tenant | None: ...

    async def get_by_slug(self, slug: str) -> Tenant | None: ...

    async def get_by_custom_domain(self, domain: str, *, active_only: bool = True) -> Tenant | None: ...

    async def owned_by(self, principal_id: str) -> Sequence[Tenant]: ...

    async def insert(self, tenant: Tenant) -> Tenant: ...

    async def set_owner(self, tenant_id: str, principal_id: str) -> Tenant | None: ...


class PlanLimits(Protocol):
    async def max_principals(self, plan: str) -> int | None: ...


class PendingNames(Protocol):
    """Ephemeral "pending tenant name" markers left by sign-up flows."""

    async def get(self, identity_id: str) -> str | None: ...

    async def clear(self, identity_id: str) -> None: ...


class AuditSink(Protocol):
    async def append(self, event: AuditEvent) -> None: ...


class MemoryStore:
    """Shared in-memory tables backing the ``Memory*`` directories.

    Every check-then-write runs without awaiting in between, which makes it
    atomic with respect to other coroutines on the same event loop.
    """

    def __init__(self) -> None:
        self.principals: dict[str, Principal] = {}
        self.tenants: dict[str, Tenant] = {}

    def count_for_tenant(self, tenant_id: str) -> int:
        return sum(1 for principal in self.principals.values() if principal.tenant_id == tenant_id)

    def owner_of(self, tenant_id: str | None) -> str | None:
        if tenant_id is None:
            return None
        tenant = self.tenants.get(tenant_id)
        return tenant.owner_id if tenant is not None else None


class MemoryPrincipalDirectory:
    def __init__(self, store: MemoryStore | None = None) -> None:
        self.store = store or MemoryStore()

    async def get(self, principal_id: str) -> Principal | None:
        return self.store.principals.get(principal_id)

    async def insert(self, principal: Principal, *, capacity: int | None = None) -> Principal:
        if principal.id in self.store.principals:
            raise ConstraintViolation(Constraint.PRINCIPAL_EXISTS)
        if capacity is not None and principal.tenant_id is not None:
            if self.store.count_for_tenant(principal.tenant_id) >= capacity:
                raise ConstraintViolation(Constraint.PRINCIPAL_CAPACITY)
        self.store.principals[principal.id] = principal
        return principal

    async def update(
        self,
        principal_id: str,
        *,
        role: Role | UnsetType = UNSET,
        tenant_id: str | None | UnsetType = UNSET,
        capacity: int | None = None,
    ) -> Principal | None:
        current = self.store.principals.get(principal_id)
        if current is None:
            return None
        changes: dict[str, object] = {}
        if tenant_id is not UNSET and tenant_id != current.tenant_id:
            if current.tenant_id is not None:
                raise ConstraintViolation(Constraint.TENANT_ISOLATION)
            if capacity is not None and tenant_id is not None:
                if self.store.count_for_tenant(tenant_id) >= capacity:
                    raise ConstraintViolation(Constraint.PRINCIPAL_CAPACITY)
            changes["tenant_id"] = tenant_id
        if role is not UNSET and role is not current.role:
            if role is not Role.ADMIN and self.store.owner_of(current.tenant_id) == principal_id:
                raise ConstraintViolation(Constraint.OWNER_DEMOTION)
            changes["role"] = role
        if not changes:
            return current
        updated = structs.replace(current, **changes)
        self.store.principals[principal_id] = updated
        return updated

    async def count_for_tenant(self, tenant_id: str) -> int:
        return self.store.count_for_tenant(tenant_id)


class MemoryTenantDirectory:
    def __init__(self, store: MemoryStore | None = None) -> None:
        self.store = store or MemoryStore()

    async def get(self, tenant_id: str) -> Tenant | None:
        return self.store.tenants.get(tenant_id)

    async def get_by_slug(self, slug: str) -> Tenant | None:
        for tenant in self.store.tenants.values():
            if tenant.slug == slug:
                return tenant
        return None

    async def get_by_custom_domain(self, domain: str, *, active_only: bool = True) -> Tenant | None:
        for tenant in self.store.tenants.values():
            if tenant.custom_domain != domain:
                continue
            if active_only and tenant.custom_domain_status is not DomainStatus.ACTIVE:
                continue
            return tenant
        return None

    async def owned_by(self, principal_id: str) -> Sequence[Tenant]:
        return tuple(tenant for tenant in self.store.tenants.values() if tenant.owner_id == principal_id)

    async def insert(self, tenant: Tenant) -> Tenant:
        if any(existing.slug == tenant.slug for existing in self.store.tenants.values()):
            raise ConstraintViolation(Constraint.SLUG_TAKEN)
        self.store.tenants[tenant.id] = tenant
        return tenant

    async def set_owner(self, tenant_id: str, principal_id: str) -> Tenant | None:
        tenant = self.store.tenants.get(tenant_id)
        if tenant is None:
            return None
        principal = self.store.principals.get(principal_id)
        if principal is None or principal.tenant_id != tenant_id or principal.role is not Role.ADMIN:
            raise ConstraintViolation(Constraint.OWNER_MEMBERSHIP)
        updated = structs.replace(tenant, owner_id=principal_id)
        self.store.tenants[tenant_id] = updated
        return updated


class MemoryPlanLimits:
    def __init__(self, limits: Mapping[str, int] | None = None) -> None:
        self.limits = dict(limits or {})

    async def max_principals(self, plan: str) -> int | None:
        return self.limits.get(plan)


class MemoryPendingNames:
    def __init__(self, names: Mapping[str, str] | None = None) -> None:
        self.names = dict(names or {})

    def set(self, identity_id: str, name: str) -> None:
        self.names[identity_id] = name

    async def get(self, identity_id: str) -> str | None:
        return self.names.get(identity_id)

    async def clear(self, identity_id: str) -> None:
        self.names.pop(identity_id, None)


class MemoryAuditSink:
    def __init__(self) -> None:
        self.events: list[AuditEvent] = []

    async def append(self, event: AuditEvent) -> None:
        self.events.append(event)

    def actions(self) -> list[str]:
        return [event.action for event in self.events]


def memory_directories(
    *,
    tenants: Iterable[Tenant] = (),
    principals: Iterable[Principal] = (),
) -> tuple[MemoryPrincipalDirectory, MemoryTenantDirectory]:
    """Return principal and tenant directories sharing one seeded store."""

    store = MemoryStore()
    for tenant in tenants:
        store.tenants[tenant.id] = tenant
    for principal in principals:
        store.principals[principal.id] = principal
    return MemoryPrincipalDirectory(store), MemoryTenantDirectory(store)


__all__ = [
    "AuditSink",
    "MemoryAuditSink",
    "MemoryPendingNames",
    "MemoryPlanLimits",
    "MemoryPrincipalDirectory",
    "MemoryStore",
    "MemoryTenantDirectory",
    "PendingNames",
    "PlanLimits",
    "PrincipalDirectory",
    "TenantDirectory",
    "memory_directories",
]
