"""Translate domain exceptions into HTTP errors

Callers only ever see the error kind and a generic message; the exception
text (which may contain provider responses) goes to the logs.
"""

import logging

from fastapi import HTTPException

from smartz_gateway.domain.exceptions import (
    AccountNotFoundError,
    AcquisitionFailedError,
    ConcurrencyConflictError,
    DomainException,
    InsufficientFundsError,
    InvalidOrderStateError,
    NotAvailableError,
    OrderNotFoundError,
    PaymentTooSmallError,
    PaymentVerificationError,
    ProviderUnavailableError,
    ValidationError,
)

ERROR_RESPONSES = {
    ValidationError: (422, "Invalid request"),
    NotAvailableError: (404, "Service not available for this country"),
    AccountNotFoundError: (404, "Account not found"),
    OrderNotFoundError: (404, "Order not found"),
    InsufficientFundsError: (402, "Insufficient coins"),
    PaymentVerificationError: (402, "Payment could not be verified"),
    PaymentTooSmallError: (422, "Payment is too small to credit"),
    InvalidOrderStateError: (409, "Order is not in a valid state for this operation"),
    ConcurrencyConflictError: (409, "Conflicting update, please retry"),
    AcquisitionFailedError: (502, "Provider could not supply a number"),
    ProviderUnavailableError: (503, "Provider service unavailable"),
}

# Expected client-side outcomes, not worth a warning
QUIET_ERRORS = (ValidationError, NotAvailableError, InsufficientFundsError)


def to_http_error(error: DomainException, request_id: str) -> HTTPException:
    status_code, message = ERROR_RESPONSES.get(type(error), (500, "Internal server error"))

    log = logging.info if isinstance(error, QUIET_ERRORS) else logging.warning
    log(f"{error.kind}: {error}", extra={"request_id": request_id, "error_kind": error.kind})

    return HTTPException(status_code=status_code, detail={"error": error.kind, "detail": message})


def internal_error(error: Exception, request_id: str) -> HTTPException:
    logging.error(f"Unexpected error: {error}", extra={"request_id": request_id})
    return HTTPException(status_code=500, detail={"error": "internal_error", "detail": "Internal server error"})
