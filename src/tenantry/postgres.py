"""PostgreSQL backed directories.

Storage invariants are enforced with guarded statements (``WHERE`` clauses,
``ON CONFLICT DO NOTHING`` and advisory locks) and reported as
:class:`~tenantry.exceptions.ConstraintViolation` codes. Driver error text is
never inspected.
"""

from __future__ import annotations

from typing import Any, Sequence

import msgspec
from msgspec import UNSET, UnsetType

from .database import Database, DatabaseConnection
from .exceptions import Constraint, ConstraintViolation
from .models import AuditEvent, DomainStatus, Principal, Role, Tenant

_PRINCIPAL_COLUMNS = "id, role, email, display_name, tenant_id"
_TENANT_COLUMNS = "id, name, slug, owner_id, plan, custom_domain, custom_domain_status"

SCHEMA_STATEMENTS: tuple[str, ...] = (
    """
    CREATE TABLE IF NOT EXISTS tenants (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        slug TEXT NOT NULL UNIQUE,
        owner_id TEXT NOT NULL,
        plan TEXT NOT NULL DEFAULT 'free',
        custom_domain TEXT UNIQUE,
        custom_domain_status TEXT NOT NULL DEFAULT 'pending',
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS principals (
        id TEXT PRIMARY KEY,
        role TEXT NOT NULL CHECK (role IN ('admin', 'manager', 'viewer')),
        email TEXT,
        display_name TEXT,
        tenant_id TEXT REFERENCES tenants (id),
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS principals_tenant_id_idx ON principals (tenant_id)",
    """
    CREATE TABLE IF NOT EXISTS plan_limits (
        plan TEXT PRIMARY KEY,
        max_principals INTEGER NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS audit_events (
        id BIGSERIAL PRIMARY KEY,
        tenant_id TEXT,
        actor_id TEXT,
        actor_display TEXT,
        entity_type TEXT NOT NULL,
        entity_id TEXT,
        action TEXT NOT NULL,
        before JSONB,
        after JSONB,
        created_at TIMESTAMPTZ NOT NULL
    )
    """,
)


async def ensure_schema(database: Database) -> None:
    """Create the tables used by the ``Postgres*`` directories if missing."""

    async with database.connection() as connection:
        for statement in SCHEMA_STATEMENTS:
            await connection.execute(statement.strip())


class PostgresPrincipalDirectory:
    def __init__(self, database: Database) -> None:
        self.database = database
        self._table = database.table("principals")
        self._tenants = database.table("tenants")

    async def get(self, principal_id: str) -> Principal | None:
        async with self.database.connection() as connection:
            row = await connection.fetch_one(
                f"SELECT {_PRINCIPAL_COLUMNS} FROM {self._table} WHERE id = $1",
                [principal_id],
            )
        return _principal(row)

    async def insert(self, principal: Principal, *, capacity: int | None = None) -> Principal:
        async with self.database.connection() as connection, connection.transaction():
            if capacity is not None and principal.tenant_id is not None:
                await self._reserve_seat(connection, principal.tenant_id, capacity)
            row = await connection.fetch_one(
                f"INSERT INTO {self._table} ({_PRINCIPAL_COLUMNS}) VALUES ($1, $2, $3, $4, $5) "
                f"ON CONFLICT (id) DO NOTHING RETURNING {_PRINCIPAL_COLUMNS}",
                [
                    principal.id,
                    principal.role.value,
                    principal.email,
                    principal.display_name,
                    principal.tenant_id,
                ],
            )
        if row is None:
            raise ConstraintViolation(Constraint.PRINCIPAL_EXISTS)
        return _principal(row) or principal

    async def update(
        self,
        principal_id: str,
        *,
        role: Role | UnsetType = UNSET,
        tenant_id: str | None | UnsetType = UNSET,
        capacity: int | None = None,
    ) -> Principal | None:
        async with self.database.connection() as connection, connection.transaction():
            current = _principal(
                await connection.fetch_one(
                    f"SELECT {_PRINCIPAL_COLUMNS} FROM {self._table} WHERE id = $1 FOR UPDATE",
                    [principal_id],
                )
            )
            if current is None:
                return None
            assignments: list[str] = []
            parameters: list[Any] = [principal_id]
            if tenant_id is not UNSET and tenant_id != current.tenant_id:
                if current.tenant_id is not None:
                    raise ConstraintViolation(Constraint.TENANT_ISOLATION)
                if capacity is not None and tenant_id is not None:
                    await self._reserve_seat(connection, tenant_id, capacity)
                parameters.append(tenant_id)
                assignments.append(f"tenant_id = ${len(parameters)}")
            if role is not UNSET and role is not current.role:
                if role is not Role.ADMIN and current.tenant_id is not None:
                    owner_id = await connection.fetch_value(
                        f"SELECT owner_id FROM {self._tenants} WHERE id = $1",
                        [current.tenant_id],
                    )
                    if owner_id == principal_id:
                        raise ConstraintViolation(Constraint.OWNER_DEMOTION)
                parameters.append(role.value)
                assignments.append(f"role = ${len(parameters)}")
            if not assignments:
                return current
            row = await connection.fetch_one(
                f"UPDATE {self._table} SET {', '.join(assignments)} "
                f"WHERE id = $1 AND tenant_id IS NOT DISTINCT FROM ${len(parameters) + 1} "
                f"RETURNING {_PRINCIPAL_COLUMNS}",
                [*parameters, current.tenant_id],
            )
        if row is None:
            raise ConstraintViolation(Constraint.TENANT_ISOLATION)
        return _principal(row)

    async def count_for_tenant(self, tenant_id: str) -> int:
        async with self.database.connection() as connection:
            value = await connection.fetch_value(
                f"SELECT count(*) AS total FROM {self._table} WHERE tenant_id = $1",
                [tenant_id],
            )
        return int(value or 0)

    async def _reserve_seat(self, connection: DatabaseConnection, tenant_id: str, capacity: int) -> None:
        await connection.execute("SELECT pg_advisory_xact_lock(hashtext($1))", [tenant_id])
        count = await connection.fetch_value(
            f"SELECT count(*) AS total FROM {self._table} WHERE tenant_id = $1",
            [tenant_id],
        )
        if int(count or 0) >= capacity:
            raise ConstraintViolation(Constraint.PRINCIPAL_CAPACITY)


class PostgresTenantDirectory:
    def __init__(self, database: Database) -> None:
        self.database = database
        self._table = database.table("tenants")
        self._principals = database.table("principals")

    async def get(self, tenant_id: str) -> Tenant | None:
        return await self._one(f"SELECT {_TENANT_COLUMNS} FROM {self._table} WHERE id = $1", [tenant_id])

    async def get_by_slug(self, slug: str) -> Tenant | None:
        return await self._one(f"SELECT {_TENANT_COLUMNS} FROM {self._table} WHERE slug = $1", [slug])

    async def get_by_custom_domain(self, domain: str, *, active_only: bool = True) -> Tenant | None:
        query = f"SELECT {_TENANT_COLUMNS} FROM {self._table} WHERE custom_domain = $1"
        parameters: list[Any] = [domain]
        if active_only:
            query += " AND custom_domain_status = $2"
            parameters.append(DomainStatus.ACTIVE.value)
        return await self._one(query, parameters)

    async def owned_by(self, principal_id: str) -> Sequence[Tenant]:
        async with self.database.connection() as connection:
            rows = await connection.fetch_all(
                f"SELECT {_TENANT_COLUMNS} FROM {self._table} WHERE owner_id = $1 ORDER BY created_at ASC",
                [principal_id],
            )
        return tuple(msgspec.convert(row, Tenant) for row in rows)

    async def insert(self, tenant: Tenant) -> Tenant:
        async with self.database.connection() as connection:
            row = await connection.fetch_one(
                f"INSERT INTO {self._table} ({_TENANT_COLUMNS}) VALUES ($1, $2, $3, $4, $5, $6, $7) "
                f"ON CONFLICT (slug) DO NOTHING RETURNING {_TENANT_COLUMNS}",
                [
                    tenant.id,
                    tenant.name,
                    tenant.slug,
                    tenant.owner_id,
                    tenant.plan,
                    tenant.custom_domain,
                    tenant.custom_domain_status.value,
                ],
            )
        if row is None:
            raise ConstraintViolation(Constraint.SLUG_TAKEN)
        return msgspec.convert(row, Tenant)

    async def set_owner(self, tenant_id: str, principal_id: str) -> Tenant | None:
        async with self.database.connection() as connection:
            row = await connection.fetch_one(
                f"UPDATE {self._table} SET owner_id = $2 WHERE id = $1 AND EXISTS ("
                f"SELECT 1 FROM {self._principals} WHERE id = $2 AND tenant_id = $1 AND role = $3"
                f") RETURNING {_TENANT_COLUMNS}",
                [tenant_id, principal_id, Role.ADMIN.value],
            )
            if row is not None:
                return msgspec.convert(row, Tenant)
            exists = await connection.fetch_value(f"SELECT id FROM {self._table} WHERE id = $1", [tenant_id])
        if exists is None:
            return None
        raise ConstraintViolation(Constraint.OWNER_MEMBERSHIP)

    async def _one(self, query: str, parameters: list[Any]) -> Tenant | None:
        async with self.database.connection() as connection:
            row = await connection.fetch_one(query, parameters)
        if row is None:
            return None
        return msgspec.convert(row, Tenant)


class PostgresPlanLimits:
    def __init__(self, database: Database) -> None:
        self.database = database
        self._table = database.table("plan_limits")

    async def max_principals(self, plan: str) -> int | None:
        async with self.database.connection() as connection:
            value = await connection.fetch_value(
                f"SELECT max_principals FROM {self._table} WHERE plan = $1",
                [plan],
            )
        return int(value) if value is not None else None


class PostgresAuditSink:
    def __init__(self, database: Database) -> None:
        self.database = database
        self._table = database.table("audit_events")

    async def append(self, event: AuditEvent) -> None:
        async with self.database.connection() as connection:
            await connection.execute(
                f"INSERT INTO {self._table} "
                "(tenant_id, actor_id, actor_display, entity_type, entity_id, action, before, after, created_at) "
                "VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)",
                [
                    event.tenant_id,
                    event.actor_id,
                    event.actor_display,
                    event.entity_type,
                    event.entity_id,
                    event.action,
                    msgspec.to_builtins(event.before) if event.before is not None else None,
                    msgspec.to_builtins(event.after) if event.after is not None else None,
                    event.created_at,
                ],
            )


def _principal(row: dict[str, Any] | None) -> Principal | None:
    if row is None:
        return None
    return msgspec.convert(row, Principal)


__all__ = [
    "SCHEMA_STATEMENTS",
    "PostgresAuditSink",
    "PostgresPlanLimits",
    "PostgresPrincipalDirectory",
    "PostgresTenantDirectory",
    "ensure_schema",
]
