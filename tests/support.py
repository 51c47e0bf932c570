"""Test support utilities for directory, resolver and gate tests."""

from __future__ import annotations

import asyncio
import http.client
import urllib.request
from dataclasses import dataclass
from http import HTTPStatus
from typing import Any, Callable, Iterable, List, Mapping, Sequence

from tenantry.directories import MemoryAuditSink, MemoryPlanLimits, memory_directories
from tenantry.exceptions import BootstrapError
from tenantry.models import AdminContext, BootstrapOutcome, Principal, Role, Tenant
from tenantry.observability import Observability, ObservabilityConfig

_CONTROL_PREFIXES = ("SET ", "BEGIN", "COMMIT", "ROLLBACK")


def quiet_observability() -> Observability:
    return Observability(ObservabilityConfig(enabled=False))


@dataclass
class FakeResult:
    rows: List[dict[str, Any]]

    def result(self) -> List[dict[str, Any]]:
        return self.rows


class FakeConnection:
    def __init__(self) -> None:
        self.calls: list[tuple[str, str, list[Any], bool]] = []
        self._queued: list[list[dict[str, Any]]] = []

    def queue_result(self, rows: Iterable[dict[str, Any]]) -> None:
        self._queued.append([dict(row) for row in rows])

    async def execute(
        self,
        query: str,
        parameters: Sequence[Any] | None = None,
        *,
        prepared: bool = False,
    ) -> FakeResult:
        params = list(parameters or [])
        self.calls.append(("execute", query, params, prepared))
        if query.lstrip().upper().startswith(_CONTROL_PREFIXES):
            return FakeResult([])
        rows = self._queued.pop(0) if self._queued else []
        return FakeResult(rows)

    def queries(self) -> list[str]:
        return [query for _, query, _, _ in self.calls if not query.lstrip().upper().startswith("SET ")]


class _Acquire:
    def __init__(self, connection: FakeConnection) -> None:
        self._connection = connection

    async def __aenter__(self) -> FakeConnection:
        return self._connection

    async def __aexit__(self, exc_type, exc, tb) -> None:
        return None


class FakePool:
    def __init__(self, connection: FakeConnection | None = None) -> None:
        self.connection = connection or FakeConnection()
        self.closed = False

    def acquire(self) -> _Acquire:
        return _Acquire(self.connection)

    def close(self) -> None:
        self.closed = True


class RecordingBootstrap:
    """Bootstrap procedure that creates the tenant in memory and counts calls."""

    def __init__(
        self,
        principals: Any,
        tenants: Any,
        *,
        delay: float = 0.0,
        fail: bool = False,
        empty: bool = False,
    ) -> None:
        self.principals = principals
        self.tenants = tenants
        self.delay = delay
        self.fail = fail
        self.empty = empty
        self.calls: list[tuple[str, str]] = []

    async def bootstrap(self, name: str, principal: Principal) -> BootstrapOutcome | None:
        self.calls.append((name, principal.id))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise BootstrapError("bootstrap service unavailable")
        if self.empty:
            return None
        tenant = Tenant(
            id=f"tenant-{len(self.calls)}",
            name=name,
            slug=f"{name.lower()}-{len(self.calls)}",
            owner_id=principal.id,
        )
        await self.tenants.insert(tenant)
        linked = await self.principals.update(principal.id, tenant_id=tenant.id, role=Role.ADMIN)
        return BootstrapOutcome(tenant=tenant, principal=linked)


class FailingAuditSink:
    def __init__(self) -> None:
        self.attempts = 0

    async def append(self, event: Any) -> None:
        self.attempts += 1
        raise RuntimeError("audit store offline")


def tenant(
    tenant_id: str = "t1",
    *,
    owner_id: str = "owner",
    slug: str | None = None,
    plan: str = "free",
    **fields: Any,
) -> Tenant:
    return Tenant(id=tenant_id, name=tenant_id.upper(), slug=slug or tenant_id, owner_id=owner_id, plan=plan, **fields)


def principal(principal_id: str, role: Role = Role.VIEWER, tenant_id: str | None = None, **fields: Any) -> Principal:
    return Principal(id=principal_id, role=role, tenant_id=tenant_id, **fields)


def admin_context(tenant_id: str = "t1", principal_id: str = "owner") -> AdminContext:
    return AdminContext(tenant_id=tenant_id, principal_id=principal_id)


def seeded(
    tenants: Iterable[Tenant] = (),
    principals: Iterable[Principal] = (),
    *,
    limits: dict[str, int] | None = None,
) -> tuple[Any, Any, MemoryPlanLimits, MemoryAuditSink]:
    principal_directory, tenant_directory = memory_directories(tenants=tenants, principals=principals)
    return principal_directory, tenant_directory, MemoryPlanLimits(limits or {"free": 3}), MemoryAuditSink()


class FakeHTTPSResponse:
    """Enough of ``http.client.HTTPResponse`` for urllib's handler chain."""

    def __init__(
        self,
        status: int = 200,
        body: bytes = b"",
        *,
        headers: Mapping[str, str] | None = None,
        read_error: BaseException | None = None,
    ) -> None:
        self.code = status
        self.status = status
        self.msg = HTTPStatus(status).phrase
        self.body = body
        self.read_error = read_error
        self.headers = http.client.HTTPMessage()
        for name, value in (headers or {}).items():
            self.headers[name] = value
        self.closed = False

    def info(self) -> http.client.HTTPMessage:
        return self.headers

    def read(self, amount: int | None = None) -> bytes:
        if self.read_error is not None:
            raise self.read_error
        return self.body

    def close(self) -> None:
        self.closed = True

    def __enter__(self) -> "FakeHTTPSResponse":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


def script_https(
    monkeypatch: Any,
    reply: Callable[[urllib.request.Request], FakeHTTPSResponse],
) -> list[urllib.request.Request]:
    """Answer HTTPS requests made through ``urllib`` with ``reply``.

    ``reply`` may raise to simulate a dropped connection. Returns the list the
    sent requests are appended to.
    """

    sent: list[urllib.request.Request] = []

    class ScriptedHTTPSHandler(urllib.request.HTTPSHandler):
        def https_open(self, req: urllib.request.Request) -> FakeHTTPSResponse:
            sent.append(req)
            return reply(req)

    monkeypatch.setattr(urllib.request, "HTTPSHandler", ScriptedHTTPSHandler)
    return sent


__all__ = [
    "FailingAuditSink",
    "FakeConnection",
    "FakeHTTPSResponse",
    "FakePool",
    "FakeResult",
    "RecordingBootstrap",
    "admin_context",
    "principal",
    "quiet_observability",
    "script_https",
    "seeded",
    "tenant",
]
