import pytest
from app.domain.errors import (
    CapacityExceededError,
    ConflictError,
    DomainError,
    InvalidStateError,
    NotFoundError,
    PersistenceError,
    ValidationError,
)
from app.routers.errors import domain_error_to_http


@pytest.mark.parametrize(
    "error,status_code",
    [
        (NotFoundError("slot not found"), 404),
        (ValidationError("bad window"), 400),
        (CapacityExceededError("full", available=0, requested=2), 400),
        (ConflictError("overlap"), 409),
        (InvalidStateError("already cancelled"), 409),
        (PersistenceError("db down"), 503),
    ],
)
def test_domain_errors_map_to_status_and_code(error: DomainError, status_code: int) -> None:
    exc = domain_error_to_http(error)
    assert exc.status_code == status_code
    assert exc.detail == {"code": str(error.kind), "message": error.message}


def test_capacity_and_validation_share_status_but_not_code() -> None:
    full = domain_error_to_http(CapacityExceededError("full", available=0, requested=1))
    invalid = domain_error_to_http(ValidationError("bad"))
    assert full.status_code == invalid.status_code
    assert full.detail["code"] == "capacity_exceeded"
    assert invalid.detail["code"] == "validation"
