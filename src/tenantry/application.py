"""Composition root wiring the resolver, quota gate and authorization gate."""

from __future__ import annotations

from .audit import AuditTrail
from .bootstrap import BootstrapProcedure, DirectoryBootstrapProcedure, RemoteBootstrapProcedure
from .config import TenantryConfig
from .database import Database
from .directories import (
    AuditSink,
    MemoryAuditSink,
    MemoryPlanLimits,
    PendingNames,
    PlanLimits,
    PrincipalDirectory,
    TenantDirectory,
    memory_directories,
)
from .gate import AuthorizationGate
from .hostnames import HostnameRouter
from .observability import Observability
from .postgres import (
    PostgresAuditSink,
    PostgresPlanLimits,
    PostgresPrincipalDirectory,
    PostgresTenantDirectory,
    ensure_schema,
)
from .quota import QuotaGate
from .resolver import TenantResolver


class Tenantry:
    """Tenant resolution and authorization services built from one config.

    With ``config.database`` set the PostgreSQL directories are used,
    otherwise everything lives in memory. The bootstrap procedure is the
    remote service when ``config.bootstrap`` is set and the in-process
    :class:`DirectoryBootstrapProcedure` otherwise. Any collaborator can be
    passed explicitly instead.
    """

    def __init__(
        self,
        config: TenantryConfig | None = None,
        *,
        database: Database | None = None,
        principals: PrincipalDirectory | None = None,
        tenants: TenantDirectory | None = None,
        plan_limits: PlanLimits | None = None,
        audit_sink: AuditSink | None = None,
        pending_names: PendingNames | None = None,
        bootstrap: BootstrapProcedure | None = None,
        observability: Observability | None = None,
    ) -> None:
        self.config = config or TenantryConfig()
        self.database = database or (Database(self.config.database) if self.config.database else None)
        if self.database is not None:
            self.principals = principals or PostgresPrincipalDirectory(self.database)
            self.tenants = tenants or PostgresTenantDirectory(self.database)
            self.plan_limits = plan_limits or PostgresPlanLimits(self.database)
            sink: AuditSink = audit_sink or PostgresAuditSink(self.database)
        else:
            memory_principals, memory_tenants = memory_directories()
            self.principals = principals or memory_principals
            self.tenants = tenants or memory_tenants
            self.plan_limits = plan_limits or MemoryPlanLimits()
            sink = audit_sink or MemoryAuditSink()
        self.observability = observability or Observability(self.config.observability)
        self.audit = AuditTrail(sink)
        if bootstrap is None:
            if self.config.bootstrap is not None:
                bootstrap = RemoteBootstrapProcedure(self.config.bootstrap)
            else:
                bootstrap = DirectoryBootstrapProcedure(
                    self.principals,
                    self.tenants,
                    default_plan=self.config.default_plan,
                )
        self.bootstrap = bootstrap
        self.router = HostnameRouter(self.config.root_domain, reserved_labels=self.config.reserved_labels)
        self.resolver = TenantResolver(
            self.principals,
            self.tenants,
            self.bootstrap,
            router=self.router,
            audit=self.audit,
            pending_names=pending_names,
            config=self.config,
            observability=self.observability,
        )
        self.quota = QuotaGate(
            self.principals,
            self.tenants,
            self.plan_limits,
            default_plan=self.config.default_plan,
            default_max_principals=self.config.default_max_principals,
        )
        self.gate = AuthorizationGate(
            self.resolver,
            self.principals,
            self.tenants,
            self.quota,
            self.audit,
            observability=self.observability,
        )

    async def startup(self, *, create_schema: bool = False) -> None:
        if self.database is None:
            return
        await self.database.startup()
        if create_schema:
            await ensure_schema(self.database)

    async def shutdown(self) -> None:
        if self.database is not None:
            await self.database.shutdown()


__all__ = ["Tenantry"]
