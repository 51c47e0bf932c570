"""Tenantry: tenant identity resolution and authorization boundary."""

from .application import Tenantry
from .audit import AuditTrail
from .bootstrap import (
    BootstrapProcedure,
    DirectoryBootstrapProcedure,
    RemoteBootstrapConfig,
    RemoteBootstrapProcedure,
    slugify,
)
from .config import AdoptionRolePolicy, TenantryConfig, load_config
from .database import Database, DatabaseConfig, PoolConfig
from .directories import (
    AuditSink,
    MemoryAuditSink,
    MemoryPendingNames,
    MemoryPlanLimits,
    MemoryPrincipalDirectory,
    MemoryTenantDirectory,
    PendingNames,
    PlanLimits,
    PrincipalDirectory,
    TenantDirectory,
    memory_directories,
)
from .exceptions import (
    BootstrapError,
    BootstrapFailed,
    CannotDemoteOwner,
    CannotSelfUpdate,
    CapacityExceeded,
    CodedError,
    Conflict,
    Constraint,
    ConstraintViolation,
    CrossOrgForbidden,
    DirectoryError,
    ErrorCode,
    Forbidden,
    GateError,
    HTTPError,
    InvalidRequest,
    InvalidRole,
    MissingParameter,
    NotAuthenticated,
    OrgNotFound,
    ProfileNotFound,
    ResolutionError,
    TenantryError,
    UnknownAction,
)
from .gate import AuthorizationGate
from .hostnames import HostnameRouter, HostRoute, RouteKind
from .models import (
    AdminContext,
    AuditEvent,
    BootstrapOutcome,
    DomainStatus,
    GateAction,
    GateRequest,
    GateResponse,
    Identity,
    PlanLimit,
    Principal,
    ResolveResult,
    Role,
    Tenant,
)
from .observability import Observability, ObservabilityConfig
from .postgres import (
    PostgresAuditSink,
    PostgresPlanLimits,
    PostgresPrincipalDirectory,
    PostgresTenantDirectory,
    ensure_schema,
)
from .quota import QuotaGate
from .resolver import TenantResolver, derive_tenant_name
from .singleflight import SingleFlight

__all__ = [
    "AdminContext",
    "AdoptionRolePolicy",
    "AuditEvent",
    "AuditSink",
    "AuditTrail",
    "AuthorizationGate",
    "BootstrapError",
    "BootstrapFailed",
    "BootstrapOutcome",
    "BootstrapProcedure",
    "CannotDemoteOwner",
    "CannotSelfUpdate",
    "CapacityExceeded",
    "CodedError",
    "Conflict",
    "Constraint",
    "ConstraintViolation",
    "CrossOrgForbidden",
    "Database",
    "DatabaseConfig",
    "DirectoryBootstrapProcedure",
    "DirectoryError",
    "DomainStatus",
    "ErrorCode",
    "Forbidden",
    "GateAction",
    "GateError",
    "GateRequest",
    "GateResponse",
    "HTTPError",
    "HostRoute",
    "HostnameRouter",
    "Identity",
    "InvalidRequest",
    "InvalidRole",
    "MemoryAuditSink",
    "MemoryPendingNames",
    "MemoryPlanLimits",
    "MemoryPrincipalDirectory",
    "MemoryTenantDirectory",
    "MissingParameter",
    "NotAuthenticated",
    "Observability",
    "ObservabilityConfig",
    "OrgNotFound",
    "PendingNames",
    "PlanLimit",
    "PlanLimits",
    "PoolConfig",
    "PostgresAuditSink",
    "PostgresPlanLimits",
    "PostgresPrincipalDirectory",
    "PostgresTenantDirectory",
    "Principal",
    "PrincipalDirectory",
    "ProfileNotFound",
    "QuotaGate",
    "RemoteBootstrapConfig",
    "RemoteBootstrapProcedure",
    "ResolutionError",
    "ResolveResult",
    "Role",
    "RouteKind",
    "SingleFlight",
    "Tenant",
    "TenantDirectory",
    "TenantResolver",
    "Tenantry",
    "TenantryConfig",
    "TenantryError",
    "UnknownAction",
    "derive_tenant_name",
    "ensure_schema",
    "load_config",
    "memory_directories",
    "slugify",
]
