"""
Error Taxonomy

Every failure the orchestrator can report is one of these classes. Each class
carries a stable machine code (recorded on FAILED transactions), the HTTP
status the REST layer answers with, and whether retrying the whole operation
with the same idempotency key is safe.
"""

from typing import Any, Dict, Optional


class TransactionServiceError(Exception):
    """Base class for all transaction core errors"""
    code = "TRANSACTION_ERROR"
    http_status = 500
    retryable = False

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details: Dict[str, Any] = details

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message, **self.details}


class ValidationError(TransactionServiceError):
    """Malformed or illegal request; never retried, no side effect"""
    code = "VALIDATION_ERROR"
    http_status = 400


class InvalidOperation(ValidationError):
    """Operation that can never succeed, e.g. a transfer to the same account"""
    code = "INVALID_OPERATION"


class CurrencyMismatch(ValidationError):
    code = "CURRENCY_MISMATCH"


class AccountNotFound(TransactionServiceError):
    code = "ACCOUNT_NOT_FOUND"
    http_status = 404

    def __init__(self, account_id: str):
        super().__init__(f"Account not found: {account_id}", account_id=account_id)
        self.account_id = account_id


class AccountInactive(TransactionServiceError):
    code = "ACCOUNT_INACTIVE"
    http_status = 400

    def __init__(self, account_id: str, status: str):
        super().__init__(
            f"Account {account_id} is {status}", account_id=account_id, status=status
        )
        self.account_id = account_id
        self.status = status


class InsufficientFunds(TransactionServiceError):
    code = "INSUFFICIENT_FUNDS"
    http_status = 400


class VersionConflict(TransactionServiceError):
    """Conditional update rejected because the account changed since it was read"""
    code = "VERSION_CONFLICT"
    http_status = 409
    retryable = True


class ConcurrencyExhausted(TransactionServiceError):
    """Contention on an account outlasted the bounded number of retries"""
    code = "CONCURRENCY_EXHAUSTED"
    http_status = 409
    retryable = True


class AccountServiceUnavailable(TransactionServiceError):
    """Transport-level failure talking to the account ledger after retries"""
    code = "ACCOUNT_SERVICE_UNAVAILABLE"
    http_status = 503
    retryable = True


class BalanceOutcomeUnknown(AccountServiceUnavailable):
    """A balance update may or may not have been applied"""
    code = "BALANCE_OUTCOME_UNKNOWN"
    retryable = False


class ReconciliationRequired(TransactionServiceError):
    """Money moved at the account layer but could not be resolved automatically"""
    code = "RECONCILIATION_REQUIRED"
    http_status = 500

    def __init__(self, message: str, transaction_id: Optional[str] = None, **details: Any):
        super().__init__(message, transaction_id=transaction_id, **details)
        self.transaction_id = transaction_id


class TransactionNotFound(TransactionServiceError):
    code = "TRANSACTION_NOT_FOUND"
    http_status = 404

    def __init__(self, transaction_id: str):
        super().__init__(f"Transaction not found: {transaction_id}", transaction_id=transaction_id)
        self.transaction_id = transaction_id


class InvalidStateTransition(TransactionServiceError):
    code = "INVALID_STATE_TRANSITION"
    http_status = 409
