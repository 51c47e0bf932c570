"""Typed records exchanged between the resolver, the gate and the directories."""

from __future__ import annotations

import datetime as dt
from enum import Enum
from typing import Any, Mapping

import msgspec


class Role(str, Enum):
    ADMIN = "admin"
    MANAGER = "manager"
    VIEWER = "viewer"

    def __str__(self) -> str:  # pragma: no cover - trivial
        return self.value


DEMOTION_ROLES: frozenset[Role] = frozenset({Role.MANAGER, Role.VIEWER})


class DomainStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    FAILED = "failed"

    def __str__(self) -> str:  # pragma: no cover - trivial
        return self.value


class Identity(msgspec.Struct, frozen=True):
    """An authenticated session as presented by the identity provider."""

    id: str
    email: str | None = None
    display_name: str | None = None
    pending_tenant_name: str | None = None


class Principal(msgspec.Struct, frozen=True):
    """Stored profile of an authenticated identity."""

    id: str
    role: Role
    email: str | None = None
    display_name: str | None = None
    tenant_id: str | None = None

    @property
    def is_admin(self) -> bool:
        return self.role is Role.ADMIN

    def snapshot(self) -> dict[str, Any]:
        return {"role": self.role.value, "tenant_id": self.tenant_id}


class Tenant(msgspec.Struct, frozen=True):
    """An isolated organization."""

    id: str
    name: str
    slug: str
    owner_id: str
    plan: str = "free"
    custom_domain: str | None = None
    custom_domain_status: DomainStatus = DomainStatus.PENDING

    def owned_by(self, principal_id: str) -> bool:
        return self.owner_id == principal_id


class PlanLimit(msgspec.Struct, frozen=True):
    plan: str
    max_principals: int


class AuditEvent(msgspec.Struct, frozen=True, omit_defaults=True):
    """Durable record of an identity or authorization mutation."""

    tenant_id: str | None
    actor_id: str | None
    entity_type: str
    entity_id: str | None
    action: str
    created_at: dt.datetime
    actor_display: str | None = None
    before: Mapping[str, Any] | None = None
    after: Mapping[str, Any] | None = None


class BootstrapOutcome(msgspec.Struct, frozen=True):
    tenant: Tenant | None = None
    principal: Principal | None = None


class ResolveResult(msgspec.Struct, frozen=True):
    """Answer to "which tenant is this principal in"."""

    tenant_id: str | None = None
    tenant: Tenant | None = None
    principal: Principal | None = None
    bootstrapped: bool = False


class AdminContext(msgspec.Struct, frozen=True):
    """A caller verified as an admin of ``tenant_id``."""

    tenant_id: str
    principal_id: str
    actor_display: str | None = None


class GateAction(str, Enum):
    ADD_ADMIN = "add_admin"
    REMOVE_ADMIN = "remove_admin"
    SET_ROLE = "set_role"
    TRANSFER_OWNER = "transfer_owner"
    LINK_PROFILE_ORG = "link_profile_org"
    ADD_PRINCIPAL = "add_principal"

    def __str__(self) -> str:  # pragma: no cover - trivial
        return self.value


class GateRequest(msgspec.Struct, frozen=True, omit_defaults=True):
    """Body accepted by the authorization gate endpoint."""

    action: str = ""
    profile_id: str | None = None
    new_role: str | None = None
    new_owner_id: str | None = None
    email: str | None = None
    display_name: str | None = None
    role: str | None = None


class GateResponse(msgspec.Struct, frozen=True, omit_defaults=True):
    success: bool
    error_code: str | None = None
    http_status: int | None = None
    detail: str | None = None
    principal_id: str | None = None


__all__ = [
    "DEMOTION_ROLES",
    "AdminContext",
    "AuditEvent",
    "BootstrapOutcome",
    "DomainStatus",
    "GateAction",
    "GateRequest",
    "GateResponse",
    "Identity",
    "PlanLimit",
    "Principal",
    "ResolveResult",
    "Role",
    "Tenant",
]
