from __future__ import annotations

import msgspec
import pytest

from tenantry.exceptions import (
    BootstrapFailed,
    CannotDemoteOwner,
    CapacityExceeded,
    CodedError,
    Conflict,
    Constraint,
    ConstraintViolation,
    CrossOrgForbidden,
    ErrorCode,
    Forbidden,
    GateError,
    HTTPError,
    NotAuthenticated,
    ProfileNotFound,
    ResolutionError,
    gate_error_for,
)
from tenantry.http import Status, reason_phrase


@pytest.mark.parametrize(
    "error,status",
    [
        (NotAuthenticated(), 401),
        (ProfileNotFound(), 404),
        (BootstrapFailed(), 502),
        (Forbidden(), 403),
        (CrossOrgForbidden(), 403),
        (CapacityExceeded(), 403),
        (Conflict(), 409),
    ],
)
def test_coded_errors_carry_status(error: CodedError, status: int) -> None:
    assert error.status == status
    assert error.code.status == status


def test_every_code_has_a_status() -> None:
    for code in ErrorCode:
        assert 400 <= code.status < 600


def test_coded_error_body() -> None:
    error = CapacityExceeded()
    body = msgspec.json.decode(error.to_response_body())
    assert body == {
        "error": {
            "status": 403,
            "reason": "Forbidden",
            "code": "capacity_exceeded",
            "detail": "User limit reached for this plan. Upgrade in Settings to add more users.",
        }
    }
    assert msgspec.json.decode(NotAuthenticated("expired").to_response_body())["error"]["detail"] == "expired"


def test_http_error_body_and_validation() -> None:
    error = HTTPError(Status.NOT_FOUND, {"id": "t1"})
    assert msgspec.json.decode(error.to_response_body()) == {
        "error": {"status": 404, "reason": "Not Found", "detail": {"id": "t1"}}
    }
    with pytest.raises(ValueError):
        HTTPError(99, "nope")
    assert reason_phrase(999) == "Unknown Status"


def test_shared_errors_belong_to_both_families() -> None:
    assert isinstance(ProfileNotFound(), ResolutionError)
    assert isinstance(ProfileNotFound(), GateError)
    assert isinstance(Forbidden(), GateError)
    assert not isinstance(NotAuthenticated(), GateError)


@pytest.mark.parametrize(
    "constraint,expected",
    [
        (Constraint.TENANT_ISOLATION, CrossOrgForbidden),
        (Constraint.OWNER_MEMBERSHIP, CrossOrgForbidden),
        (Constraint.OWNER_DEMOTION, CannotDemoteOwner),
        (Constraint.PRINCIPAL_CAPACITY, CapacityExceeded),
        (Constraint.PRINCIPAL_EXISTS, Conflict),
        (Constraint.SLUG_TAKEN, Conflict),
    ],
)
def test_gate_error_for_constraint(constraint: Constraint, expected: type[GateError]) -> None:
    violation = ConstraintViolation(constraint)
    assert str(violation) == constraint.value
    assert type(gate_error_for(violation)) is expected
