from fastapi import HTTPException, status

from ..domain.errors import DomainError, ErrorKind

STATUS_BY_KIND: dict[ErrorKind, int] = {
    ErrorKind.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorKind.VALIDATION: status.HTTP_400_BAD_REQUEST,
    # Distinct code in the body lets clients render "fully booked".
    ErrorKind.CAPACITY_EXCEEDED: status.HTTP_400_BAD_REQUEST,
    ErrorKind.CONFLICT: status.HTTP_409_CONFLICT,
    ErrorKind.INVALID_STATE: status.HTTP_409_CONFLICT,
    ErrorKind.PERSISTENCE: status.HTTP_503_SERVICE_UNAVAILABLE,
}


def domain_error_to_http(exc: DomainError) -> HTTPException:
    return HTTPException(
        status_code=STATUS_BY_KIND[exc.kind],
        detail={"code": str(exc.kind), "message": exc.message},
    )


def audit_failure() -> HTTPException:
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="failed to write audit log")
