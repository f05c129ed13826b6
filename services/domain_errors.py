# services/domain_errors.py
from __future__ import annotations

from fastapi import HTTPException

from app.errors import (
    AmountMismatchError,
    ConflictError,
    DuplicateError,
    IllegalTransitionError,
    IouError,
    NotAuthorizedError,
    NotFoundError,
    ProviderError,
    ProviderUnavailableError,
    ValidationError,
)

# most specific first; subclasses of IouError added later must be listed here
DOMAIN_ERROR_HTTP_MAP: tuple[tuple[type[IouError], int], ...] = (
    (ValidationError, 422),
    (AmountMismatchError, 422),
    (NotAuthorizedError, 403),
    (NotFoundError, 404),
    (IllegalTransitionError, 409),
    (ConflictError, 409),
    (DuplicateError, 409),
    (ProviderUnavailableError, 503),
    (ProviderError, 502),
)


def http_status_for(exc: IouError) -> int:
    for exc_type, status in DOMAIN_ERROR_HTTP_MAP:
        if isinstance(exc, exc_type):
            return status
    return 500


def raise_http_from_domain_error(exc: Exception) -> None:
    """
    Convert IOU core errors into HTTP responses; otherwise fail closed.
    """
    if isinstance(exc, IouError):
        status = http_status_for(exc)
        if status != 500:
            raise HTTPException(status_code=status, detail={"error": exc.code, "message": exc.message})

    raise HTTPException(status_code=500, detail="Internal server error")
