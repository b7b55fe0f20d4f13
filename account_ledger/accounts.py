"""
Account Entity Module

The account record held by the ledger, its status and type enumerations, and the
pure validation rules applied to caller input before anything reaches the store.
All monetary values are Decimal; floats are converted through their string form.
"""

from decimal import Decimal, Inexact, InvalidOperation, localcontext
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Any, Dict, Optional, Union
from enum import Enum

from .errors import ValidationError


class AccountStatus(Enum):
    """Account lifecycle states"""
    ACTIVE = "ACTIVE"    # Normal operation
    FROZEN = "FROZEN"    # Temporarily suspended, cannot transact
    CLOSED = "CLOSED"    # Soft-deleted


class AccountType(Enum):
    """Deposit product types"""
    SAVINGS = "SAVINGS"
    CHECKING = "CHECKING"


AmountLike = Union[Decimal, str, int, float]

# Widest amount accepted: NUMERIC(56, 18)
MAX_INTEGER_DIGITS = 38
MAX_SCALE = 18


@dataclass
class Account:
    """
    Customer account as stored in the ledger.

    ``version`` is maintained by the store and guards every update.
    """
    account_id: str
    customer_id: str
    account_number: str
    account_type: AccountType
    balance: Decimal
    status: AccountStatus
    daily_transfer_limit: Decimal
    created_at: datetime
    updated_at: datetime
    version: int = 1

    def can_debit(self) -> bool:
        """Check if account can be debited"""
        return self.status == AccountStatus.ACTIVE

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for storage and transport"""
        return {
            "account_id": self.account_id,
            "customer_id": self.customer_id,
            "account_number": self.account_number,
            "account_type": self.account_type.value,
            "balance": str(self.balance),
            "status": self.status.value,
            "daily_transfer_limit": str(self.daily_transfer_limit),
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Account':
        """Create instance from a stored dictionary"""
        return cls(
            account_id=data["account_id"],
            customer_id=data["customer_id"],
            account_number=data["account_number"],
            account_type=AccountType(data["account_type"]),
            balance=Decimal(data["balance"]),
            status=AccountStatus(data["status"]),
            daily_transfer_limit=Decimal(data["daily_transfer_limit"]),
            created_at=datetime.fromisoformat(data["created_at"]),
            updated_at=datetime.fromisoformat(data["updated_at"]),
            version=data.get("version", 1),
        )


@dataclass(frozen=True)
class AccountCreation:
    """Normalized creation input"""
    customer_id: str
    account_number: str
    account_type: AccountType
    initial_deposit: Decimal
    daily_transfer_limit: Optional[Decimal] = None


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_decimal(value: AmountLike, field: str) -> Decimal:
    """Convert a caller-supplied amount to a finite Decimal"""
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be a decimal amount", field=field)
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        raise ValidationError(f"{field} must be a decimal amount", field=field)
    if not amount.is_finite():
        raise ValidationError(f"{field} must be a finite amount", field=field)
    if amount.adjusted() >= MAX_INTEGER_DIGITS or amount.as_tuple().exponent < -MAX_SCALE:
        raise ValidationError(
            f"{field} must have at most {MAX_INTEGER_DIGITS} integer digits "
            f"and {MAX_SCALE} decimal places",
            field=field,
        )
    return amount


def exact_subtract(minuend: Decimal, subtrahend: Decimal) -> Decimal:
    """minuend - subtrahend without rounding, however many digits the operands carry"""
    digits = (max(minuend.adjusted(), subtrahend.adjusted())
              - min(minuend.as_tuple().exponent, subtrahend.as_tuple().exponent) + 2)
    with localcontext() as ctx:
        ctx.prec = max(ctx.prec, digits)
        ctx.traps[Inexact] = True
        return minuend - subtrahend


def _require_text(value: Any, field: str) -> str:
    if value is None or (isinstance(value, str) and not value.strip()):
        raise ValidationError(f"Missing required field: {field}", field=field)
    return str(value).strip()


def _parse_enum(enum_cls, value: Any, field: str):
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(value)
    except (ValueError, TypeError):
        allowed = ", ".join(member.value for member in enum_cls)
        raise ValidationError(f"Invalid {field} '{value}'; expected one of {allowed}", field=field)


def validate_creation(
    customer_id: Any,
    account_number: Any,
    account_type: Any,
    initial_deposit: Optional[AmountLike] = None,
    daily_transfer_limit: Optional[AmountLike] = None,
) -> AccountCreation:
    """
    Validate and normalize account creation input.

    Raises:
        ValidationError: a required field is missing, the account type is
            unknown, or an amount is negative or not a decimal
    """
    customer_id = _require_text(customer_id, "customer_id")
    account_number = _require_text(account_number, "account_number")
    _require_text(account_type, "account_type")
    parsed_type = _parse_enum(AccountType, account_type, "account_type")

    deposit = Decimal("0")
    if initial_deposit is not None:
        deposit = to_decimal(initial_deposit, "initial_deposit")
        if deposit < 0:
            raise ValidationError("initial_deposit must not be negative", field="initial_deposit")
        # "-0" compares equal to zero; store it unsigned
        deposit = deposit.copy_abs()

    limit = None
    if daily_transfer_limit is not None:
        limit = to_decimal(daily_transfer_limit, "daily_transfer_limit")
        if limit < 0:
            raise ValidationError("daily_transfer_limit must not be negative", field="daily_transfer_limit")
        limit = limit.copy_abs()

    return AccountCreation(
        customer_id=customer_id,
        account_number=account_number,
        account_type=parsed_type,
        initial_deposit=deposit,
        daily_transfer_limit=limit,
    )


def validate_status(status: Any) -> AccountStatus:
    """Return the AccountStatus for status or raise ValidationError"""
    if status is None:
        raise ValidationError("Missing required field: status", field="status")
    return _parse_enum(AccountStatus, status, "status")


def validate_amount(amount: Any) -> Decimal:
    """A debit amount must be a decimal strictly greater than zero"""
    if amount is None:
        raise ValidationError("Missing required field: amount", field="amount")
    value = to_decimal(amount, "amount")
    if value <= 0:
        raise ValidationError("amount must be greater than zero", field="amount")
    return value
