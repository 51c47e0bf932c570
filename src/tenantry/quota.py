"""Plan-tier capacity checks on the principal creation path."""

from __future__ import annotations

import logging

from msgspec import structs

from .directories import PlanLimits, PrincipalDirectory, TenantDirectory
from .exceptions import CapacityExceeded, ConstraintViolation, OrgNotFound, ProfileNotFound, gate_error_for
from .models import Principal, Role, Tenant

logger = logging.getLogger(__name__)


class QuotaGate:
    """Reject principal creation once a tenant reaches its plan's limit.

    :meth:`ensure_capacity` is the plain count-then-reject check. The write
    paths (:meth:`create_principal` and :meth:`admit`) pass the limit down to
    the directory, which re-checks the count atomically with the write, so a
    burst of concurrent invites cannot overshoot the limit.
    """

    def __init__(
        self,
        principals: PrincipalDirectory,
        tenants: TenantDirectory,
        plan_limits: PlanLimits,
        *,
        default_plan: str = "free",
        default_max_principals: int = 3,
    ) -> None:
        self.principals = principals
        self.tenants = tenants
        self.plan_limits = plan_limits
        self.default_plan = default_plan
        self.default_max_principals = default_max_principals

    async def limit_for(self, tenant: Tenant) -> int:
        limit = await self.plan_limits.max_principals(tenant.plan or self.default_plan)
        if limit is None:
            return self.default_max_principals
        return limit

    async def _tenant(self, tenant_id: str) -> Tenant:
        tenant = await self.tenants.get(tenant_id)
        if tenant is None:
            raise OrgNotFound()
        return tenant

    async def ensure_capacity(self, tenant_id: str) -> int:
        """Return the tenant's limit, raising :class:`CapacityExceeded` when it is full."""

        tenant = await self._tenant(tenant_id)
        limit = await self.limit_for(tenant)
        count = await self.principals.count_for_tenant(tenant_id)
        if count >= limit:
            logger.info("Tenant %s is at capacity (%d/%d)", tenant_id, count, limit)
            raise CapacityExceeded(f"Plan '{tenant.plan}' allows {limit} users")
        return limit

    async def create_principal(self, tenant_id: str, principal: Principal) -> Principal:
        limit = await self.ensure_capacity(tenant_id)
        if principal.tenant_id != tenant_id:
            principal = structs.replace(principal, tenant_id=tenant_id)
        try:
            return await self.principals.insert(principal, capacity=limit)
        except ConstraintViolation as exc:
            raise gate_error_for(exc) from exc

    async def admit(self, tenant_id: str, principal_id: str, role: Role | None = None) -> Principal:
        """Attach an existing unassigned principal to ``tenant_id`` within capacity."""

        limit = await self.ensure_capacity(tenant_id)
        try:
            if role is None:
                admitted = await self.principals.update(principal_id, tenant_id=tenant_id, capacity=limit)
            else:
                admitted = await self.principals.update(principal_id, tenant_id=tenant_id, role=role, capacity=limit)
        except ConstraintViolation as exc:
            raise gate_error_for(exc) from exc
        if admitted is None:
            raise ProfileNotFound()
        return admitted


__all__ = ["QuotaGate"]
