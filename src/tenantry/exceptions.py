"""Error types raised by the tenant identity core."""

from __future__ import annotations

from enum import Enum
from typing import Any

from .http import Status, ensure_status, reason_phrase
from .serialization import json_encode


class ErrorCode(str, Enum):
    NOT_AUTHENTICATED = "not_authenticated"
    PROFILE_NOT_FOUND = "profile_not_found"
    ORG_NOT_FOUND = "org_not_found"
    BOOTSTRAP_FAILED = "bootstrap_failed"
    FORBIDDEN = "forbidden"
    CROSS_ORG_FORBIDDEN = "cross_org_forbidden"
    CANNOT_DEMOTE_OWNER = "cannot_demote_owner"
    CANNOT_SELF_UPDATE = "cannot_self_update"
    INVALID_ROLE = "invalid_role"
    CAPACITY_EXCEEDED = "capacity_exceeded"
    MISSING_PARAMETER = "missing_parameter"
    UNKNOWN_ACTION = "unknown_action"
    INVALID_REQUEST = "invalid_request"
    CONFLICT = "conflict"

    def __str__(self) -> str:  # pragma: no cover - trivial
        return self.value

    @property
    def status(self) -> Status:
        return _STATUS_BY_CODE[self]


_STATUS_BY_CODE: dict[ErrorCode, Status] = {
    ErrorCode.NOT_AUTHENTICATED: Status.UNAUTHORIZED,
    ErrorCode.PROFILE_NOT_FOUND: Status.NOT_FOUND,
    ErrorCode.ORG_NOT_FOUND: Status.NOT_FOUND,
    ErrorCode.BOOTSTRAP_FAILED: Status.BAD_GATEWAY,
    ErrorCode.FORBIDDEN: Status.FORBIDDEN,
    ErrorCode.CROSS_ORG_FORBIDDEN: Status.FORBIDDEN,
    ErrorCode.CANNOT_DEMOTE_OWNER: Status.FORBIDDEN,
    ErrorCode.CANNOT_SELF_UPDATE: Status.FORBIDDEN,
    ErrorCode.INVALID_ROLE: Status.BAD_REQUEST,
    ErrorCode.CAPACITY_EXCEEDED: Status.FORBIDDEN,
    ErrorCode.MISSING_PARAMETER: Status.BAD_REQUEST,
    ErrorCode.UNKNOWN_ACTION: Status.BAD_REQUEST,
    ErrorCode.INVALID_REQUEST: Status.BAD_REQUEST,
    ErrorCode.CONFLICT: Status.CONFLICT,
}


class TenantryError(Exception):
    """Base error type."""


class HTTPError(TenantryError):
    """Structured HTTP error that is msgspec serializable."""

    def __init__(self, status: int | Status, detail: Any) -> None:
        status_code = ensure_status(status)
        super().__init__(status_code, detail)
        self.status = status_code
        self.detail = detail
        self.reason = reason_phrase(status_code)

    def to_response_body(self) -> bytes:
        return json_encode({"error": {"status": self.status, "reason": self.reason, "detail": self.detail}})


class CodedError(HTTPError):
    """An :class:`HTTPError` identified by a machine readable :class:`ErrorCode`."""

    code: ErrorCode = ErrorCode.FORBIDDEN
    default_detail = "Forbidden"

    def __init__(self, detail: str | None = None) -> None:
        super().__init__(self.code.status, detail or self.default_detail)

    def to_response_body(self) -> bytes:
        return json_encode(
            {
                "error": {
                    "status": self.status,
                    "reason": self.reason,
                    "code": self.code.value,
                    "detail": self.detail,
                }
            }
        )


class ResolutionError(CodedError):
    """Raised when a principal cannot be mapped to a tenant."""


class GateError(CodedError):
    """Raised when the authorization gate refuses a mutation."""


class NotAuthenticated(ResolutionError):
    code = ErrorCode.NOT_AUTHENTICATED
    default_detail = "Please log in to access this feature"


class ProfileNotFound(ResolutionError, GateError):
    code = ErrorCode.PROFILE_NOT_FOUND
    default_detail = "User profile not found. Please contact support."


class OrgNotFound(ResolutionError):
    code = ErrorCode.ORG_NOT_FOUND
    default_detail = "No organization linked to this profile. Please contact support."


class BootstrapFailed(ResolutionError):
    code = ErrorCode.BOOTSTRAP_FAILED
    default_detail = "Failed to create organization. Please contact support."


class Forbidden(ResolutionError, GateError):
    code = ErrorCode.FORBIDDEN
    default_detail = "Forbidden"


class CrossOrgForbidden(GateError):
    code = ErrorCode.CROSS_ORG_FORBIDDEN
    default_detail = "Profile belongs to another organization"


class CannotDemoteOwner(GateError):
    code = ErrorCode.CANNOT_DEMOTE_OWNER
    default_detail = "The organization owner must remain an admin"


class CannotSelfUpdate(GateError):
    code = ErrorCode.CANNOT_SELF_UPDATE
    default_detail = "You cannot change your own role or membership"


class InvalidRole(GateError):
    code = ErrorCode.INVALID_ROLE
    default_detail = "Invalid role"


class CapacityExceeded(GateError):
    code = ErrorCode.CAPACITY_EXCEEDED
    default_detail = "User limit reached for this plan. Upgrade in Settings to add more users."


class MissingParameter(GateError):
    code = ErrorCode.MISSING_PARAMETER
    default_detail = "Missing required parameter"


class UnknownAction(GateError):
    code = ErrorCode.UNKNOWN_ACTION
    default_detail = "Unknown action"


class InvalidRequest(GateError):
    code = ErrorCode.INVALID_REQUEST
    default_detail = "Malformed request body"


class Conflict(GateError):
    code = ErrorCode.CONFLICT
    default_detail = "Conflicting record already exists"


class Constraint(str, Enum):
    """Invariants enforced by the persistence layer."""

    TENANT_ISOLATION = "tenant_isolation"
    OWNER_DEMOTION = "owner_demotion"
    OWNER_MEMBERSHIP = "owner_membership"
    PRINCIPAL_CAPACITY = "principal_capacity"
    SLUG_TAKEN = "slug_taken"
    PRINCIPAL_EXISTS = "principal_exists"

    def __str__(self) -> str:  # pragma: no cover - trivial
        return self.value


class DirectoryError(TenantryError, RuntimeError):
    """Raised when a directory cannot satisfy an operation."""


class ConstraintViolation(DirectoryError):
    """A write was rejected by a storage level invariant."""

    def __init__(self, constraint: Constraint, detail: str | None = None) -> None:
        super().__init__(detail or constraint.value)
        self.constraint = constraint


class BootstrapError(TenantryError, RuntimeError):
    """Raised when the bootstrap service cannot be reached or misbehaves."""


class HostnameError(TenantryError, ValueError):
    """Raised when a hostname is not a valid DNS name."""


_GATE_ERRORS: dict[Constraint, type[GateError]] = {
    Constraint.TENANT_ISOLATION: CrossOrgForbidden,
    Constraint.OWNER_MEMBERSHIP: CrossOrgForbidden,
    Constraint.OWNER_DEMOTION: CannotDemoteOwner,
    Constraint.PRINCIPAL_CAPACITY: CapacityExceeded,
    Constraint.PRINCIPAL_EXISTS: Conflict,
    Constraint.SLUG_TAKEN: Conflict,
}


def gate_error_for(violation: ConstraintViolation) -> GateError:
    """Translate a storage :class:`ConstraintViolation` into its gate error."""

    return _GATE_ERRORS[violation.constraint]()


__all__ = [
    "BootstrapError",
    "BootstrapFailed",
    "CannotDemoteOwner",
    "CannotSelfUpdate",
    "CapacityExceeded",
    "CodedError",
    "Conflict",
    "Constraint",
    "ConstraintViolation",
    "CrossOrgForbidden",
    "DirectoryError",
    "ErrorCode",
    "Forbidden",
    "GateError",
    "HTTPError",
    "HostnameError",
    "InvalidRequest",
    "InvalidRole",
    "MissingParameter",
    "NotAuthenticated",
    "OrgNotFound",
    "ProfileNotFound",
    "ResolutionError",
    "TenantryError",
    "UnknownAction",
    "gate_error_for",
]
