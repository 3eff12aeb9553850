from fastapi import HTTPException, status

from ..domain.errors import (
    ConflictError,
    DomainError,
    InvalidTokenError,
    InvalidTransitionError,
    NotFoundError,
    ReservationExpiredError,
    SlotUnavailableError,
    ValidationError,
)


def to_http(exc: DomainError) -> HTTPException:
    if isinstance(exc, ValidationError):
        return HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc))
    if isinstance(exc, SlotUnavailableError):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail="slot unavailable")
    if isinstance(exc, ReservationExpiredError):
        return HTTPException(status_code=status.HTTP_410_GONE, detail="reservation expired")
    if isinstance(exc, ConflictError):
        return HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={"message": "version conflict", "current_version": exc.current_version},
            headers={"ETag": f'"{exc.current_version}"'},
        )
    if isinstance(exc, InvalidTransitionError):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
    if isinstance(exc, InvalidTokenError):
        return HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=str(exc))
    if isinstance(exc, NotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
