from __future__ import annotations

import datetime as dt
import logging

import pytest

from tenantry.audit import ENTITY_PRINCIPAL, ENTITY_TENANT, AuditTrail
from tenantry.directories import MemoryAuditSink
from tests.support import FailingAuditSink


@pytest.mark.asyncio
async def test_audit_trail_records_event() -> None:
    now = dt.datetime(2024, 1, 1, tzinfo=dt.timezone.utc)
    sink = MemoryAuditSink()
    trail = AuditTrail(sink, clock=lambda: now)

    event = await trail.record(
        tenant_id="t1",
        actor_id="alice",
        actor_display="alice@acme.com",
        entity_type=ENTITY_PRINCIPAL,
        entity_id="bob",
        action="update_role",
        before={"role": "viewer", "tenant_id": "t1"},
        after={"role": "admin", "tenant_id": "t1"},
    )

    assert event is not None
    assert sink.events == [event]
    assert event.created_at == now
    assert event.before == {"role": "viewer", "tenant_id": "t1"}
    assert event.after == {"role": "admin", "tenant_id": "t1"}
    assert sink.actions() == ["update_role"]


@pytest.mark.asyncio
async def test_audit_trail_copies_snapshots() -> None:
    sink = MemoryAuditSink()
    trail = AuditTrail(sink)
    after = {"owner_id": "bob"}

    event = await trail.record(
        tenant_id="t1",
        actor_id="alice",
        entity_type=ENTITY_TENANT,
        entity_id="t1",
        action="transfer_owner",
        after=after,
    )
    after["owner_id"] = "mallory"

    assert event is not None and event.after == {"owner_id": "bob"}
    assert event.before is None
    assert event.created_at.tzinfo is not None


@pytest.mark.asyncio
async def test_audit_failure_is_logged_not_raised(caplog) -> None:
    sink = FailingAuditSink()
    trail = AuditTrail(sink)
    caplog.set_level(logging.WARNING, logger="tenantry.audit")

    event = await trail.record(
        tenant_id="t1",
        actor_id="alice",
        entity_type=ENTITY_PRINCIPAL,
        entity_id="bob",
        action="update_role",
    )

    assert event is None
    assert sink.attempts == 1
    assert any("Audit write failed for update_role bob" in record.getMessage() for record in caplog.records)


@pytest.mark.asyncio
async def test_audit_trail_without_sink_is_noop() -> None:
    trail = AuditTrail(None)
    assert (
        await trail.record(
            tenant_id=None,
            actor_id=None,
            entity_type=ENTITY_PRINCIPAL,
            entity_id="bob",
            action="adopt_tenant_by_hostname",
        )
        is None
    )
