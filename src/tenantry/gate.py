"""Privileged role and ownership mutations.

Every action runs on behalf of an admin of tenant ``T`` (an
:class:`~tenantry.models.AdminContext`). Guards are evaluated in a fixed
order before anything is written:

1. required parameters (:class:`MissingParameter`)
2. role enumeration (:class:`InvalidRole`)
3. no self mutation (:class:`CannotSelfUpdate`)
4. owner protection (:class:`CannotDemoteOwner`)
5. target lookup (:class:`ProfileNotFound`)
6. tenant isolation (:class:`CrossOrgForbidden`)

The directories re-check the invariants at write time and report violations
as :class:`~tenantry.exceptions.ConstraintViolation`, which is translated
into the matching gate error.
"""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Collection, Mapping, TypeVar

import msgspec
from id57 import generate_id57

from .audit import ENTITY_PRINCIPAL, ENTITY_TENANT, ENTITY_USER_MANAGEMENT, AuditTrail
from .directories import PrincipalDirectory, TenantDirectory
from .exceptions import (
    CannotDemoteOwner,
    CannotSelfUpdate,
    CodedError,
    ConstraintViolation,
    CrossOrgForbidden,
    InvalidRequest,
    InvalidRole,
    MissingParameter,
    OrgNotFound,
    ProfileNotFound,
    UnknownAction,
    gate_error_for,
)
from .models import (
    DEMOTION_ROLES,
    AdminContext,
    GateAction,
    GateRequest,
    GateResponse,
    Identity,
    Principal,
    Role,
    Tenant,
)
from .observability import Observability
from .quota import QuotaGate
from .resolver import TenantResolver
from .serialization import json_decode, json_encode

logger = logging.getLogger(__name__)

ACTION_UPDATE_ROLE = "update_role"
ACTION_TRANSFER_OWNER = "transfer_owner"
ACTION_ADOPT_UNASSIGNED = "adopt_unassigned_profile"
ACTION_INVITE_PRINCIPAL = "invite_principal"

ALL_ROLES: frozenset[Role] = frozenset(Role)

R = TypeVar("R")


def _required(value: str | None, name: str) -> str:
    if not value:
        raise MissingParameter(f"{name} required")
    return value


def _parse_role(value: str | Role, allowed: Collection[Role]) -> Role:
    try:
        role = Role(value)
    except ValueError:
        raise InvalidRole(f"Role '{value}' is not recognised") from None
    if role not in allowed:
        raise InvalidRole(f"Role '{role.value}' is not allowed here")
    return role


def _not_self(context: AdminContext, principal_id: str) -> None:
    if principal_id == context.principal_id:
        raise CannotSelfUpdate()


def _isolated(context: AdminContext, target: Principal, *, allow_unassigned: bool) -> None:
    if target.tenant_id is None and allow_unassigned:
        return
    if target.tenant_id != context.tenant_id:
        raise CrossOrgForbidden()


class AuthorizationGate:
    """Role and ownership mutations for the admins of a tenant."""

    def __init__(
        self,
        resolver: TenantResolver,
        principals: PrincipalDirectory,
        tenants: TenantDirectory,
        quota: QuotaGate,
        audit: AuditTrail | None = None,
        *,
        observability: Observability | None = None,
        id_factory: Callable[[], str] | None = None,
    ) -> None:
        self.resolver = resolver
        self.principals = principals
        self.tenants = tenants
        self.quota = quota
        self.audit = audit or AuditTrail(None)
        self.observability = observability or resolver.observability
        self._id_factory = id_factory or generate_id57

    async def add_admin(self, context: AdminContext, profile_id: str | None) -> Principal:
        return await self._observed(GateAction.ADD_ADMIN, context, self._add_admin(context, profile_id))

    async def remove_admin(
        self,
        context: AdminContext,
        profile_id: str | None,
        new_role: str | Role | None = Role.MANAGER,
    ) -> Principal:
        return await self._observed(
            GateAction.REMOVE_ADMIN,
            context,
            self._demote(context, profile_id, new_role or Role.MANAGER),
        )

    async def set_role(self, context: AdminContext, profile_id: str | None, new_role: str | Role | None) -> Principal:
        return await self._observed(GateAction.SET_ROLE, context, self._set_role(context, profile_id, new_role))

    async def transfer_owner(self, context: AdminContext, new_owner_id: str | None) -> Tenant:
        return await self._observed(GateAction.TRANSFER_OWNER, context, self._transfer_owner(context, new_owner_id))

    async def link_profile_org(self, context: AdminContext, profile_id: str | None) -> Principal:
        return await self._observed(GateAction.LINK_PROFILE_ORG, context, self._link(context, profile_id))

    async def add_principal(
        self,
        context: AdminContext,
        *,
        email: str | None,
        role: str | Role | None,
        display_name: str | None = None,
        profile_id: str | None = None,
    ) -> Principal:
        return await self._observed(
            GateAction.ADD_PRINCIPAL,
            context,
            self._add_principal(context, email, role, display_name, profile_id),
        )

    async def dispatch(self, context: AdminContext, request: GateRequest) -> Principal | Tenant:
        try:
            action = GateAction(request.action)
        except ValueError:
            raise UnknownAction(f"Unknown action '{request.action}'") from None
        if action is GateAction.ADD_ADMIN:
            return await self.add_admin(context, request.profile_id)
        if action is GateAction.REMOVE_ADMIN:
            return await self.remove_admin(context, request.profile_id, request.new_role)
        if action is GateAction.SET_ROLE:
            return await self.set_role(context, request.profile_id, request.new_role)
        if action is GateAction.TRANSFER_OWNER:
            return await self.transfer_owner(context, request.new_owner_id)
        if action is GateAction.LINK_PROFILE_ORG:
            return await self.link_profile_org(context, request.profile_id)
        return await self.add_principal(
            context,
            email=request.email,
            role=request.role,
            display_name=request.display_name,
            profile_id=request.profile_id,
        )

    async def handle(
        self,
        identity: Identity | None,
        payload: bytes | str | Mapping[str, Any],
        *,
        host: str | None = None,
    ) -> GateResponse:
        """Serve one gate request and describe the outcome as a :class:`GateResponse`."""

        try:
            context = await self.resolver.require_admin(identity, host)
            request = decode_request(payload)
            result = await self.dispatch(context, request)
        except CodedError as exc:
            return GateResponse(
                success=False,
                error_code=exc.code.value,
                http_status=int(exc.status),
                detail=str(exc.detail),
            )
        principal_id = result.id if isinstance(result, Principal) else None
        return GateResponse(success=True, principal_id=principal_id)

    async def _observed(self, action: GateAction, context: AdminContext, operation: Awaitable[R]) -> R:
        observation = self.observability.on_gate_start(action.value, context.tenant_id, context.principal_id)
        try:
            result = await operation
        except ConstraintViolation as exc:
            error = gate_error_for(exc)
            self.observability.on_gate_error(observation, error, error_code=error.code.value, expected=True)
            raise error from exc
        except CodedError as exc:
            self.observability.on_gate_error(observation, exc, error_code=exc.code.value, expected=True)
            raise
        except Exception as exc:
            self.observability.on_gate_error(observation, exc)
            raise
        self.observability.on_gate_success(observation)
        return result

    async def _tenant(self, context: AdminContext) -> Tenant:
        tenant = await self.tenants.get(context.tenant_id)
        if tenant is None:
            raise OrgNotFound()
        return tenant

    async def _target(self, principal_id: str) -> Principal:
        target = await self.principals.get(principal_id)
        if target is None:
            raise ProfileNotFound()
        return target

    async def _update(self, principal_id: str, **changes: Any) -> Principal:
        updated = await self.principals.update(principal_id, **changes)
        if updated is None:
            raise ProfileNotFound()
        return updated

    async def _record(
        self,
        context: AdminContext,
        *,
        entity_type: str,
        entity_id: str,
        action: str,
        before: Mapping[str, Any] | None,
        after: Mapping[str, Any] | None,
    ) -> None:
        await self.audit.record(
            tenant_id=context.tenant_id,
            actor_id=context.principal_id,
            actor_display=context.actor_display,
            entity_type=entity_type,
            entity_id=entity_id,
            action=action,
            before=before,
            after=after,
        )

    async def _record_role(self, context: AdminContext, before: Principal, after: Principal) -> None:
        if before == after:
            return
        await self._record(
            context,
            entity_type=ENTITY_PRINCIPAL,
            entity_id=after.id,
            action=ACTION_UPDATE_ROLE,
            before=before.snapshot(),
            after=after.snapshot(),
        )

    async def _add_admin(self, context: AdminContext, profile_id: str | None) -> Principal:
        profile_id = _required(profile_id, "profile_id")
        _not_self(context, profile_id)
        tenant = await self._tenant(context)
        target = await self._target(profile_id)
        if tenant.owned_by(profile_id):
            updated = await self._update(profile_id, role=Role.ADMIN, tenant_id=context.tenant_id)
        else:
            _isolated(context, target, allow_unassigned=True)
            if target.tenant_id is None:
                updated = await self.quota.admit(context.tenant_id, profile_id, role=Role.ADMIN)
            else:
                updated = await self._update(profile_id, role=Role.ADMIN)
        await self._record_role(context, target, updated)
        return updated

    async def _set_role(self, context: AdminContext, profile_id: str | None, new_role: str | Role | None) -> Principal:
        _required(profile_id, "profile_id")
        _required(new_role, "new_role")
        return await self._demote(context, profile_id, new_role)

    async def _demote(self, context: AdminContext, profile_id: str | None, new_role: str | Role) -> Principal:
        profile_id = _required(profile_id, "profile_id")
        role = _parse_role(new_role, DEMOTION_ROLES)
        _not_self(context, profile_id)
        tenant = await self._tenant(context)
        if tenant.owned_by(profile_id):
            raise CannotDemoteOwner()
        target = await self._target(profile_id)
        _isolated(context, target, allow_unassigned=False)
        updated = await self._update(profile_id, role=role)
        await self._record_role(context, target, updated)
        return updated

    async def _transfer_owner(self, context: AdminContext, new_owner_id: str | None) -> Tenant:
        new_owner_id = _required(new_owner_id, "new_owner_id")
        _not_self(context, new_owner_id)
        tenant = await self._tenant(context)
        target = await self._target(new_owner_id)
        _isolated(context, target, allow_unassigned=False)
        if tenant.owned_by(new_owner_id):
            return tenant
        if not target.is_admin:
            promoted = await self._update(new_owner_id, role=Role.ADMIN)
            await self._record_role(context, target, promoted)
        transferred = await self.tenants.set_owner(tenant.id, new_owner_id)
        if transferred is None:
            raise OrgNotFound()
        logger.info("Ownership of tenant %s moved from %s to %s", tenant.id, tenant.owner_id, new_owner_id)
        await self._record(
            context,
            entity_type=ENTITY_TENANT,
            entity_id=tenant.id,
            action=ACTION_TRANSFER_OWNER,
            before={"owner_id": tenant.owner_id},
            after={"owner_id": transferred.owner_id},
        )
        return transferred

    async def _link(self, context: AdminContext, profile_id: str | None) -> Principal:
        profile_id = _required(profile_id, "profile_id")
        _not_self(context, profile_id)
        target = await self._target(profile_id)
        _isolated(context, target, allow_unassigned=True)
        if target.tenant_id == context.tenant_id:
            return target
        linked = await self.quota.admit(context.tenant_id, profile_id)
        await self._record(
            context,
            entity_type=ENTITY_USER_MANAGEMENT,
            entity_id=profile_id,
            action=ACTION_ADOPT_UNASSIGNED,
            before=target.snapshot(),
            after=linked.snapshot(),
        )
        return linked

    async def _add_principal(
        self,
        context: AdminContext,
        email: str | None,
        role: str | Role | None,
        display_name: str | None,
        profile_id: str | None,
    ) -> Principal:
        email = _required(email, "email")
        parsed = _parse_role(_required(role, "role"), ALL_ROLES)
        if profile_id:
            _not_self(context, profile_id)
        existing = await self.principals.get(profile_id) if profile_id else None
        if existing is not None:
            _isolated(context, existing, allow_unassigned=True)
            if existing.tenant_id is None:
                invited = await self.quota.admit(context.tenant_id, existing.id, role=parsed)
            else:
                invited = await self._update(existing.id, role=parsed)
        else:
            principal = Principal(
                id=profile_id or self._id_factory(),
                role=parsed,
                email=email,
                display_name=display_name,
                tenant_id=context.tenant_id,
            )
            invited = await self.quota.create_principal(context.tenant_id, principal)
        await self._record(
            context,
            entity_type=ENTITY_USER_MANAGEMENT,
            entity_id=invited.id,
            action=ACTION_INVITE_PRINCIPAL,
            before=existing.snapshot() if existing is not None else None,
            after={**invited.snapshot(), "email": email},
        )
        return invited


def decode_request(payload: bytes | str | Mapping[str, Any]) -> GateRequest:
    """Decode a gate request body, raising :class:`InvalidRequest` when malformed."""

    try:
        if isinstance(payload, (bytes, bytearray, memoryview, str)):
            return json_decode(payload, type=GateRequest)
        return msgspec.convert(payload, GateRequest)
    except (msgspec.DecodeError, msgspec.ValidationError) as exc:
        raise InvalidRequest(f"Malformed request body: {exc}") from exc


def encode_response(response: GateResponse) -> bytes:
    return json_encode(response)


__all__ = [
    "ACTION_ADOPT_UNASSIGNED",
    "ACTION_INVITE_PRINCIPAL",
    "ACTION_TRANSFER_OWNER",
    "ACTION_UPDATE_ROLE",
    "AuthorizationGate",
    "decode_request",
    "encode_response",
]
