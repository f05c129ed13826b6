# app/errors.py
from __future__ import annotations


class IouError(Exception):
    """
    Base for every failure the IOU core reports.

    `code` is stable and is what HTTP clients see in `detail.error`.
    """

    code = "IOU_ERROR"

    def __init__(self, message: str | None = None):
        super().__init__(message or self.code)
        self.message = message or self.code


class ValidationError(IouError):
    code = "VALIDATION_ERROR"


class IllegalTransitionError(IouError):
    code = "ILLEGAL_TRANSITION"


class ConflictError(IouError):
    code = "CONFLICT"


class AmountMismatchError(IouError):
    code = "AMOUNT_MISMATCH"


class ProviderUnavailableError(IouError):
    code = "PROVIDER_UNAVAILABLE"


class ProviderError(IouError):
    code = "PROVIDER_ERROR"


class NotFoundError(IouError):
    code = "NOT_FOUND"


class DuplicateError(IouError):
    code = "DUPLICATE"


class NotAuthorizedError(IouError):
    code = "NOT_AUTHORIZED"
