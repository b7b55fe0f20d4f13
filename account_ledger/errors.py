"""
Ledger Error Module

Typed exception hierarchy for the account ledger. Every error carries a
machine-readable code and structured details so a calling service can act
on the failure without parsing messages.

    LedgerError
    +-- ValidationError
    +-- AccountNotFound
    +-- DuplicateAccountNumber
    +-- AccountNotEligible
    +-- InsufficientFunds
    +-- InvalidStatusTransition
    +-- IdempotencyKeyReused
    +-- ConcurrencyConflict
    +-- StoreError
        +-- StoreTimeout
        +-- StoreUnavailable
        +-- DuplicateKeyError
"""

from decimal import Decimal
from typing import Any, Dict, Optional


class LedgerError(Exception):
    """Base class for all ledger errors"""

    code: str = "LEDGER_ERROR"

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details: Dict[str, Any] = details

    def to_dict(self) -> Dict[str, Any]:
        """Structured representation for transports and logs"""
        details = {
            key: str(value) if isinstance(value, Decimal) else value
            for key, value in self.details.items()
        }
        return {"code": self.code, "message": self.message, "details": details}


class ValidationError(LedgerError):
    """Malformed or missing input; fixable by the caller"""

    code = "VALIDATION_ERROR"

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message, field=field)
        self.field = field


class AccountNotFound(LedgerError):
    code = "ACCOUNT_NOT_FOUND"

    def __init__(self, account_id: str):
        super().__init__(f"Account {account_id} not found", account_id=account_id)
        self.account_id = account_id


class DuplicateAccountNumber(LedgerError):
    """Account number already belongs to another account"""

    code = "DUPLICATE_ACCOUNT_NUMBER"

    def __init__(self, account_number: str):
        super().__init__(
            f"Account number {account_number} already exists",
            account_number=account_number,
        )
        self.account_number = account_number


class AccountNotEligible(LedgerError):
    """Account status does not permit the operation"""

    code = "ACCOUNT_NOT_ELIGIBLE"

    def __init__(self, account_id: str, status: str, reason: str):
        super().__init__(
            f"Account {account_id} is {status} and cannot be debited",
            account_id=account_id,
            status=status,
            reason=reason,
        )
        self.account_id = account_id
        self.status = status
        self.reason = reason


class InsufficientFunds(LedgerError):
    code = "INSUFFICIENT_FUNDS"

    def __init__(self, account_id: str, balance: Decimal, requested: Decimal):
        super().__init__(
            f"Insufficient funds: available {balance}, requested {requested}",
            account_id=account_id,
            balance=balance,
            requested=requested,
        )
        self.account_id = account_id
        self.balance = balance
        self.requested = requested


class InvalidStatusTransition(LedgerError):
    """Status change rejected by the closed-account policy"""

    code = "INVALID_STATUS_TRANSITION"

    def __init__(self, account_id: str, from_status: str, to_status: str):
        super().__init__(
            f"Account {account_id} cannot move from {from_status} to {to_status}",
            account_id=account_id,
            from_status=from_status,
            to_status=to_status,
        )
        self.account_id = account_id
        self.from_status = from_status
        self.to_status = to_status


class IdempotencyKeyReused(LedgerError):
    """Idempotency key replayed with a different request body"""

    code = "IDEMPOTENCY_KEY_REUSED"

    def __init__(self, account_id: str, idempotency_key: str):
        super().__init__(
            f"Idempotency key {idempotency_key} was already used for a different debit",
            account_id=account_id,
            idempotency_key=idempotency_key,
        )
        self.account_id = account_id
        self.idempotency_key = idempotency_key


class ConcurrencyConflict(LedgerError):
    """Optimistic retry budget exhausted under contention"""

    code = "CONCURRENCY_CONFLICT"

    def __init__(self, account_id: str, attempts: int):
        super().__init__(
            f"Account {account_id} was modified concurrently; gave up after {attempts} attempts",
            account_id=account_id,
            attempts=attempts,
        )
        self.account_id = account_id
        self.attempts = attempts


class StoreError(LedgerError):
    """Infrastructure failure in the account store"""

    code = "STORE_ERROR"

    def __init__(self, message: str, operation: Optional[str] = None):
        super().__init__(message, operation=operation)
        self.operation = operation


class StoreTimeout(StoreError):
    code = "STORE_TIMEOUT"


class StoreUnavailable(StoreError):
    code = "STORE_UNAVAILABLE"


class DuplicateKeyError(StoreError):
    """Uniqueness constraint violated on insert"""

    code = "DUPLICATE_KEY"

    def __init__(self, table: str, field: str, value: Any = None):
        super().__init__(f"Duplicate value for {table}.{field}", operation="insert")
        self.details.update(table=table, field=field, value=value)
        self.table = table
        self.field = field
        self.value = value
