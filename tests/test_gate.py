from __future__ import annotations

import types
from typing import Any, Iterable

import pytest

from tenantry.audit import AuditTrail
from tenantry.directories import MemoryPrincipalDirectory
from tenantry.exceptions import (
    CannotDemoteOwner,
    CannotSelfUpdate,
    CapacityExceeded,
    Constraint,
    ConstraintViolation,
    CrossOrgForbidden,
    InvalidRequest,
    InvalidRole,
    MissingParameter,
    ProfileNotFound,
)
from tenantry.gate import AuthorizationGate, decode_request, encode_response
from tenantry.models import GateRequest, GateResponse, Identity, Principal, Role, Tenant
from tenantry.quota import QuotaGate
from tenantry.resolver import TenantResolver
from tests.support import (
    FailingAuditSink,
    RecordingBootstrap,
    admin_context,
    principal,
    quiet_observability,
    seeded,
    tenant,
)

MEMBERS = [
    principal("owner", Role.ADMIN, "t1", display_name="Olive"),
    principal("ann", Role.ADMIN, "t1"),
    principal("bob", Role.MANAGER, "t1"),
]


def build(
    tenants: Iterable[Tenant] = (tenant("t1"), tenant("t2", owner_id="zed")),
    principals: Iterable[Principal] = (),
    *,
    limits: dict[str, int] | None = None,
    sink: Any = None,
) -> types.SimpleNamespace:
    principal_directory, tenant_directory, plan_limits, memory_sink = seeded(
        tenants,
        [*MEMBERS, *principals],
        limits=limits or {"free": 10},
    )
    sink = sink if sink is not None else memory_sink
    audit = AuditTrail(sink)
    resolver = TenantResolver(
        principal_directory,
        tenant_directory,
        RecordingBootstrap(principal_directory, tenant_directory),
        audit=audit,
        observability=quiet_observability(),
    )
    quota = QuotaGate(principal_directory, tenant_directory, plan_limits)
    gate = AuthorizationGate(
        resolver,
        principal_directory,
        tenant_directory,
        quota,
        audit,
        id_factory=lambda: "new-principal",
    )
    return types.SimpleNamespace(gate=gate, principals=principal_directory, tenants=tenant_directory, sink=sink)


@pytest.mark.asyncio
@pytest.mark.parametrize("action", ["add_admin", "remove_admin", "set_role", "transfer_owner", "link_profile_org"])
async def test_self_mutation_is_rejected(action: str) -> None:
    env = build()
    context = admin_context(principal_id="ann")
    request = GateRequest(action=action, profile_id="ann", new_owner_id="ann", new_role="viewer")

    with pytest.raises(CannotSelfUpdate) as excinfo:
        await env.gate.dispatch(context, request)

    assert excinfo.value.status == 403
    assert env.sink.actions() == []


@pytest.mark.asyncio
async def test_add_admin_self_by_handle() -> None:
    env = build()

    response = await env.gate.handle(Identity(id="ann"), {"action": "add_admin", "profile_id": "ann"})

    assert response == GateResponse(
        success=False,
        error_code="cannot_self_update",
        http_status=403,
        detail=response.detail,
    )


@pytest.mark.asyncio
@pytest.mark.parametrize("action", ["remove_admin", "set_role"])
async def test_owner_cannot_be_demoted(action: str) -> None:
    env = build()
    request = GateRequest(action=action, profile_id="owner", new_role="viewer")

    with pytest.raises(CannotDemoteOwner):
        await env.gate.dispatch(admin_context(principal_id="ann"), request)

    assert (await env.principals.get("owner")).role is Role.ADMIN


@pytest.mark.asyncio
@pytest.mark.parametrize("action", ["add_admin", "remove_admin", "set_role", "transfer_owner", "link_profile_org"])
async def test_cross_tenant_targets_are_rejected(action: str) -> None:
    env = build(principals=[principal("zara", Role.VIEWER, "t2")])
    request = GateRequest(action=action, profile_id="zara", new_owner_id="zara", new_role="manager")

    with pytest.raises(CrossOrgForbidden):
        await env.gate.dispatch(admin_context(), request)

    assert (await env.principals.get("zara")).tenant_id == "t2"
    assert env.sink.actions() == []


@pytest.mark.asyncio
async def test_set_role_on_other_tenant_via_handle() -> None:
    env = build(principals=[principal("zara", Role.VIEWER, "t2")])

    response = await env.gate.handle(
        Identity(id="owner"),
        b'{"action": "set_role", "profile_id": "zara", "new_role": "manager"}',
    )

    assert response.success is False
    assert response.error_code == "cross_org_forbidden"
    assert response.http_status == 403


@pytest.mark.asyncio
async def test_add_admin_promotes_member() -> None:
    env = build()

    promoted = await env.gate.add_admin(admin_context(), "bob")

    assert promoted.role is Role.ADMIN and promoted.tenant_id == "t1"
    assert env.sink.actions() == ["update_role"]
    event = env.sink.events[0]
    assert event.actor_id == "owner"
    assert event.entity_type == "profiles"
    assert event.after == {"role": "admin", "tenant_id": "t1"}


@pytest.mark.asyncio
async def test_add_admin_adopts_unassigned_principal() -> None:
    env = build(principals=[principal("drifter", Role.VIEWER)])

    promoted = await env.gate.add_admin(admin_context(), "drifter")

    assert promoted.tenant_id == "t1" and promoted.role is Role.ADMIN
    assert env.sink.events[0].before == {"role": "viewer", "tenant_id": None}


@pytest.mark.asyncio
async def test_add_admin_adoption_respects_capacity() -> None:
    env = build(principals=[principal("drifter", Role.VIEWER)], limits={"free": 3})

    with pytest.raises(CapacityExceeded):
        await env.gate.add_admin(admin_context(), "drifter")

    assert (await env.principals.get("drifter")).tenant_id is None


@pytest.mark.asyncio
async def test_add_admin_on_owner_is_idempotent() -> None:
    env = build()

    result = await env.gate.add_admin(admin_context(principal_id="ann"), "owner")

    assert result.role is Role.ADMIN and result.tenant_id == "t1"
    assert env.sink.actions() == []


@pytest.mark.asyncio
async def test_remove_admin_defaults_to_manager() -> None:
    env = build()

    demoted = await env.gate.remove_admin(admin_context(), "ann", None)

    assert demoted.role is Role.MANAGER
    assert env.sink.actions() == ["update_role"]


@pytest.mark.asyncio
async def test_set_role_changes_member_role() -> None:
    env = build()

    updated = await env.gate.set_role(admin_context(), "bob", "viewer")

    assert updated.role is Role.VIEWER
    assert env.sink.events[0].before == {"role": "manager", "tenant_id": "t1"}


@pytest.mark.asyncio
@pytest.mark.parametrize("new_role", ["admin", "owner", "superuser"])
async def test_demotions_reject_invalid_roles(new_role: str) -> None:
    env = build()
    with pytest.raises(InvalidRole) as excinfo:
        await env.gate.set_role(admin_context(), "bob", new_role)
    assert excinfo.value.status == 400


@pytest.mark.asyncio
async def test_missing_parameters() -> None:
    env = build()
    with pytest.raises(MissingParameter):
        await env.gate.set_role(admin_context(), "bob", None)
    with pytest.raises(MissingParameter):
        await env.gate.add_admin(admin_context(), "")
    with pytest.raises(MissingParameter):
        await env.gate.transfer_owner(admin_context(), None)


@pytest.mark.asyncio
async def test_guard_order_checks_parameters_before_self() -> None:
    env = build()
    with pytest.raises(InvalidRole):
        await env.gate.set_role(admin_context(principal_id="ann"), "ann", "admin")


@pytest.mark.asyncio
async def test_unknown_target_is_profile_not_found() -> None:
    env = build()
    with pytest.raises(ProfileNotFound) as excinfo:
        await env.gate.set_role(admin_context(), "ghost", "viewer")
    assert excinfo.value.status == 404


@pytest.mark.asyncio
@pytest.mark.parametrize("action", ["remove_admin", "set_role", "transfer_owner"])
async def test_member_only_actions_reject_unassigned_targets(action: str) -> None:
    env = build(principals=[principal("drifter", Role.VIEWER)])
    request = GateRequest(action=action, profile_id="drifter", new_owner_id="drifter", new_role="viewer")

    with pytest.raises(CrossOrgForbidden):
        await env.gate.dispatch(admin_context(), request)


@pytest.mark.asyncio
async def test_transfer_owner_promotes_and_keeps_previous_owner_admin() -> None:
    env = build()

    transferred = await env.gate.transfer_owner(admin_context(), "bob")

    assert transferred.owner_id == "bob"
    assert (await env.principals.get("bob")).role is Role.ADMIN
    assert (await env.principals.get("owner")).role is Role.ADMIN
    assert env.sink.actions() == ["update_role", "transfer_owner"]
    event = env.sink.events[-1]
    assert event.entity_type == "organizations"
    assert event.entity_id == "t1"
    assert event.before == {"owner_id": "owner"}
    assert event.after == {"owner_id": "bob"}

    demoted = await env.gate.set_role(admin_context(principal_id="bob"), "owner", "viewer")
    assert demoted.role is Role.VIEWER


@pytest.mark.asyncio
async def test_transfer_owner_to_current_owner_is_noop() -> None:
    env = build()

    result = await env.gate.transfer_owner(admin_context(principal_id="ann"), "owner")

    assert result.owner_id == "owner"
    assert env.sink.actions() == []


@pytest.mark.asyncio
async def test_link_profile_org_adopts_without_role_change() -> None:
    env = build(principals=[principal("drifter", Role.MANAGER)])

    linked = await env.gate.link_profile_org(admin_context(), "drifter")

    assert linked.tenant_id == "t1" and linked.role is Role.MANAGER
    assert env.sink.actions() == ["adopt_unassigned_profile"]
    assert env.sink.events[0].entity_type == "user_management"


@pytest.mark.asyncio
async def test_link_profile_org_of_member_is_noop() -> None:
    env = build()
    linked = await env.gate.link_profile_org(admin_context(), "bob")
    assert linked.tenant_id == "t1"
    assert env.sink.actions() == []


@pytest.mark.asyncio
async def test_add_principal_creates_within_quota() -> None:
    env = build(limits={"free": 4})

    invited = await env.gate.add_principal(admin_context(), email="dan@acme.io", role="viewer", display_name="Dan")

    assert invited.id == "new-principal"
    assert invited.tenant_id == "t1" and invited.role is Role.VIEWER
    assert env.sink.actions() == ["invite_principal"]
    assert env.sink.events[0].after["email"] == "dan@acme.io"


@pytest.mark.asyncio
async def test_fourth_invite_on_free_plan_exceeds_capacity() -> None:
    env = build(limits={"free": 3})

    response = await env.gate.handle(
        Identity(id="owner"),
        {"action": "add_principal", "email": "dan@acme.io", "role": "viewer"},
    )

    assert response.error_code == "capacity_exceeded"
    assert response.http_status == 403
    assert await env.principals.count_for_tenant("t1") == 3


@pytest.mark.asyncio
async def test_add_principal_existing_identities() -> None:
    env = build(principals=[principal("drifter", Role.ADMIN), principal("zara", Role.VIEWER, "t2")])

    attached = await env.gate.add_principal(admin_context(), email="d@x.io", role="manager", profile_id="drifter")
    assert attached.tenant_id == "t1" and attached.role is Role.MANAGER

    with pytest.raises(CrossOrgForbidden):
        await env.gate.add_principal(admin_context(), email="z@x.io", role="viewer", profile_id="zara")
    with pytest.raises(InvalidRole):
        await env.gate.add_principal(admin_context(), email="z@x.io", role="owner")
    with pytest.raises(MissingParameter):
        await env.gate.add_principal(admin_context(), email=None, role="viewer")


@pytest.mark.asyncio
async def test_audit_failure_does_not_roll_back_mutation() -> None:
    sink = FailingAuditSink()
    env = build(sink=sink)

    updated = await env.gate.set_role(admin_context(), "bob", "viewer")

    assert updated.role is Role.VIEWER
    assert (await env.principals.get("bob")).role is Role.VIEWER
    assert sink.attempts == 1


class RacingPrincipalDirectory(MemoryPrincipalDirectory):
    def __init__(self, store: Any, constraint: Constraint) -> None:
        super().__init__(store)
        self.constraint = constraint

    async def update(self, principal_id: str, **changes: Any) -> Principal | None:
        raise ConstraintViolation(self.constraint)


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "constraint,error_code",
    [
        (Constraint.TENANT_ISOLATION, "cross_org_forbidden"),
        (Constraint.OWNER_DEMOTION, "cannot_demote_owner"),
        (Constraint.PRINCIPAL_CAPACITY, "capacity_exceeded"),
        (Constraint.PRINCIPAL_EXISTS, "conflict"),
    ],
)
async def test_storage_constraints_map_onto_gate_errors(constraint: Constraint, error_code: str) -> None:
    env = build()
    racing = RacingPrincipalDirectory(env.principals.store, constraint)
    env.gate.principals = racing

    response = await env.gate.handle(
        Identity(id="owner"),
        {"action": "set_role", "profile_id": "bob", "new_role": "viewer"},
    )

    assert response.success is False
    assert response.error_code == error_code


@pytest.mark.asyncio
async def test_handle_success_and_encoding() -> None:
    env = build()

    response = await env.gate.handle(Identity(id="owner"), {"action": "set_role", "profile_id": "bob", "new_role": "viewer"})

    assert response == GateResponse(success=True, principal_id="bob")
    assert encode_response(response) == b'{"success":true,"principal_id":"bob"}'


@pytest.mark.asyncio
async def test_handle_transfer_owner_response_has_no_principal() -> None:
    env = build()
    response = await env.gate.handle(Identity(id="owner"), {"action": "transfer_owner", "new_owner_id": "ann"})
    assert response == GateResponse(success=True)


@pytest.mark.asyncio
async def test_handle_rejects_unknown_and_malformed_requests() -> None:
    env = build()
    owner = Identity(id="owner")

    unknown = await env.gate.handle(owner, {"action": "delete_everything"})
    assert (unknown.error_code, unknown.http_status) == ("unknown_action", 400)

    malformed = await env.gate.handle(owner, b"{not json")
    assert (malformed.error_code, malformed.http_status) == ("invalid_request", 400)

    wrong_type = await env.gate.handle(owner, {"action": "add_admin", "profile_id": 42})
    assert wrong_type.error_code == "invalid_request"


@pytest.mark.asyncio
async def test_handle_requires_admin_caller() -> None:
    env = build()

    anonymous = await env.gate.handle(None, {"action": "add_admin", "profile_id": "bob"})
    assert (anonymous.error_code, anonymous.http_status) == ("not_authenticated", 401)

    manager = await env.gate.handle(Identity(id="bob"), {"action": "add_admin", "profile_id": "ann"})
    assert (manager.error_code, manager.http_status) == ("forbidden", 403)


def test_decode_request_variants() -> None:
    assert decode_request(b'{"action": "add_admin", "profile_id": "bob", "extra": 1}') == GateRequest(
        action="add_admin",
        profile_id="bob",
    )
    assert decode_request({"action": "set_role", "new_role": "viewer"}).new_role == "viewer"
    with pytest.raises(InvalidRequest):
        decode_request(b"[]")
