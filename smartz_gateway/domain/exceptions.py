"""Domain-specific exceptions

Every exception carries a stable ``kind`` that the transport layer returns to
callers instead of the underlying error text.
"""


class DomainException(Exception):
    """Base exception for domain layer"""

    kind = "internal_error"


class ValidationError(DomainException):
    """Request fields are missing or malformed"""

    kind = "validation_error"


class NotAvailableError(DomainException):
    """Provider has no price for the service/country combination"""

    kind = "not_available"


class InsufficientFundsError(DomainException):
    """Account balance is below the requested debit"""

    kind = "insufficient_funds"

    def __init__(self, account_id: str, amount: int):
        super().__init__(f"Account {account_id} cannot cover {amount} coins")
        self.account_id = account_id
        self.amount = amount


class AccountNotFoundError(DomainException):
    """Account does not exist in the ledger"""

    kind = "account_not_found"


class OrderNotFoundError(DomainException):
    """Purchase order does not exist or belongs to another account"""

    kind = "order_not_found"


class InvalidOrderStateError(DomainException):
    """Purchase order is not in a state that allows the operation"""

    kind = "invalid_order_state"


class AcquisitionFailedError(DomainException):
    """Provider explicitly refused to hand out a number"""

    kind = "acquisition_failed"

    def __init__(self, reason: str):
        super().__init__(f"Number acquisition failed: {reason}")
        self.reason = reason


class ProviderUnavailableError(DomainException):
    """Provider API timed out, returned an HTTP error or garbage"""

    kind = "provider_unavailable"


class PaymentVerificationError(DomainException):
    """Payment gateway rejected the reference or could not be reached"""

    kind = "payment_verification_failed"


class PaymentTooSmallError(DomainException):
    """Verified payment is worth less than one coin"""

    kind = "payment_too_small"


class ConcurrencyConflictError(DomainException):
    """Store kept reporting conflicting writes; the whole operation may be retried"""

    kind = "concurrency_conflict"
