"""
Ledger Engine Module

Creates accounts, changes their status, evaluates transaction eligibility and
performs atomic debits. Every mutation of an existing account is a
read-modify-write inside one store transaction, guarded by a compare-and-set on
the record version and retried a bounded number of times, so concurrent
operations on the same account behave as some serial order of them.

Domain events are published only after the store transaction has committed.
"""

from decimal import Decimal
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple
import random
import time
import uuid

from .accounts import (
    Account, AccountStatus, AmountLike, exact_subtract, utcnow,
    validate_amount, validate_creation, validate_status,
)
from .config import LedgerConfig, get_config
from .errors import (
    AccountNotEligible, AccountNotFound, ConcurrencyConflict, DuplicateAccountNumber,
    DuplicateKeyError, IdempotencyKeyReused, InsufficientFunds, InvalidStatusTransition,
    ValidationError,
)
from .events import DomainEvent, EventDispatcher, create_account_event
from .logging_config import get_logger, log_action
from .storage import StorageInterface


ACCOUNTS_TABLE = "accounts"
DEBITS_TABLE = "account_debits"

FROZEN_ACCOUNT = "FROZEN_ACCOUNT"
CLOSED_ACCOUNT = "CLOSED_ACCOUNT"

_INELIGIBLE_MESSAGES = {
    FROZEN_ACCOUNT: "Transaction failed: This account is currently frozen and cannot perform transfers.",
    CLOSED_ACCOUNT: "Transaction failed: This account is closed and cannot perform transfers.",
}


@dataclass
class EligibilityResult:
    """Outcome of an eligibility check"""
    is_eligible: bool
    account_id: str
    account_status: AccountStatus
    message: str
    reason: Optional[str] = None
    available_balance: Optional[Decimal] = None
    daily_limit: Optional[Decimal] = None

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "is_eligible": self.is_eligible,
            "account_status": self.account_status.value,
            "message": self.message,
        }
        if self.reason:
            result["reason"] = self.reason
        if self.available_balance is not None:
            result["available_balance"] = str(self.available_balance)
        if self.daily_limit is not None:
            result["daily_limit"] = str(self.daily_limit)
        return result


@dataclass
class DebitEntry:
    """Append-only record of an applied debit"""
    entry_id: str
    account_id: str
    amount: Decimal
    balance_after: Decimal
    created_at: datetime
    account_snapshot: Dict[str, Any]
    idempotency_key: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entry_id": self.entry_id,
            "account_id": self.account_id,
            "amount": str(self.amount),
            "balance_after": str(self.balance_after),
            "created_at": self.created_at.isoformat(),
            "account_snapshot": self.account_snapshot,
            "idempotency_key": self.idempotency_key,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'DebitEntry':
        return cls(
            entry_id=data["entry_id"],
            account_id=data["account_id"],
            amount=Decimal(data["amount"]),
            balance_after=Decimal(data["balance_after"]),
            created_at=datetime.fromisoformat(data["created_at"]),
            account_snapshot=data["account_snapshot"],
            idempotency_key=data.get("idempotency_key"),
        )


class _DebitReplayed(Exception):
    """Aborts a debit transaction whose idempotency key is already recorded"""

    def __init__(self, account: Account):
        super().__init__(account.account_id)
        self.account = account


def _ineligible_reason(status: AccountStatus) -> str:
    return FROZEN_ACCOUNT if status == AccountStatus.FROZEN else CLOSED_ACCOUNT


class LedgerEngine:
    """
    Authoritative owner of account balances, status and limits.

    The store handle is injected; the engine keeps no mutable state of its own.
    """

    def __init__(
        self,
        storage: StorageInterface,
        event_dispatcher: Optional[EventDispatcher] = None,
        config: Optional[LedgerConfig] = None
    ):
        config = config or get_config()
        self.storage = storage
        self._event_dispatcher = event_dispatcher
        self.max_attempts = max(1, config.debit_max_retries)
        self.retry_backoff_ms = config.debit_retry_backoff_ms
        self.closed_account_terminal = config.closed_account_terminal
        self.default_daily_transfer_limit = Decimal(config.default_daily_transfer_limit)
        self.logger = get_logger("account_ledger.ledger")

        self.storage.ensure_table(ACCOUNTS_TABLE, unique_fields=("account_number",))
        self.storage.ensure_table(DEBITS_TABLE)

    def _publish_event(self, event_type: DomainEvent, account: Account, **extra: Any) -> None:
        if self._event_dispatcher:
            self._event_dispatcher.publish(create_account_event(event_type, account, **extra))

    # ------------------------------------------------------------------
    # Creation and lookup
    # ------------------------------------------------------------------

    def create_account(
        self,
        customer_id: str,
        account_number: str,
        account_type: Any,
        initial_deposit: Optional[AmountLike] = None,
        daily_transfer_limit: Optional[AmountLike] = None
    ) -> Account:
        """
        Create a new ACTIVE account

        Args:
            customer_id: ID of account owner
            account_number: Externally visible, unique account number
            account_type: SAVINGS or CHECKING
            initial_deposit: Opening balance, zero when omitted
            daily_transfer_limit: Advisory limit, configured default when omitted

        Returns:
            Created Account

        Raises:
            ValidationError: missing or malformed input
            DuplicateAccountNumber: account_number already in use
            StoreError: persistence failure
        """
        creation = validate_creation(
            customer_id, account_number, account_type, initial_deposit, daily_transfer_limit
        )
        now = utcnow()
        limit = creation.daily_transfer_limit
        account = Account(
            account_id=str(uuid.uuid4()),
            customer_id=creation.customer_id,
            account_number=creation.account_number,
            account_type=creation.account_type,
            balance=creation.initial_deposit,
            status=AccountStatus.ACTIVE,
            daily_transfer_limit=self.default_daily_transfer_limit if limit is None else limit,
            created_at=now,
            updated_at=now,
        )

        try:
            self.storage.insert(ACCOUNTS_TABLE, account.account_id, account.to_dict())
        except DuplicateKeyError as e:
            if e.field != "account_number":
                raise
            log_action(
                self.logger, "warning", "Account number already exists",
                action="create_account", resource=f"account_number:{creation.account_number}",
                extra={"customer_id": creation.customer_id}
            )
            raise DuplicateAccountNumber(creation.account_number) from e

        log_action(
            self.logger, "info", f"Account created: {account.account_id}",
            action="create_account", resource=f"account:{account.account_id}",
            extra={
                "customer_id": account.customer_id,
                "account_number": account.account_number,
                "account_type": account.account_type.value,
                "balance": str(account.balance)
            }
        )
        self._publish_event(DomainEvent.ACCOUNT_CREATED, account)
        return account

    def _load_account(self, account_id: str, for_update: bool = False) -> Account:
        data = self.storage.load(ACCOUNTS_TABLE, account_id, for_update=for_update)
        if data is None:
            raise AccountNotFound(account_id)
        return Account.from_dict(data)

    def get_account(self, account_id: str) -> Account:
        """Get account by ID; raises AccountNotFound"""
        return self._load_account(account_id)

    def get_account_by_number(self, account_number: str) -> Account:
        """Get account by account number; raises AccountNotFound"""
        found = self.storage.find(ACCOUNTS_TABLE, {"account_number": account_number})
        if not found:
            raise AccountNotFound(account_number)
        return Account.from_dict(found[0])

    def get_customer_accounts(self, customer_id: str) -> List[Account]:
        """Get all accounts for a customer"""
        return [
            Account.from_dict(data)
            for data in self.storage.find(ACCOUNTS_TABLE, {"customer_id": customer_id})
        ]

    def get_debit_history(self, account_id: str) -> List[DebitEntry]:
        """Debits applied to an account, oldest first"""
        self._load_account(account_id)
        entries = [
            DebitEntry.from_dict(data)
            for data in self.storage.find(DEBITS_TABLE, {"account_id": account_id})
        ]
        return sorted(entries, key=lambda entry: entry.created_at)

    # ------------------------------------------------------------------
    # Guarded read-modify-write
    # ------------------------------------------------------------------

    def _backoff(self, attempt: int) -> None:
        if self.retry_backoff_ms > 0:
            time.sleep(random.uniform(0, self.retry_backoff_ms * attempt) / 1000)

    def _update_account(
        self,
        account_id: str,
        operation: str,
        mutate: Callable[[Account], Any],
        after_write: Optional[Callable[[Account], None]] = None
    ) -> Tuple[Account, Any]:
        """
        Apply mutate to the current account state and write it back atomically.

        mutate runs inside the store transaction against a freshly read (and,
        where the store supports it, row-locked) account and may raise to abort.
        after_write runs in the same transaction once the compare-and-set has
        succeeded. A lost compare-and-set restarts from the read.
        """
        for attempt in range(1, self.max_attempts + 1):
            with self.storage.atomic():
                account = self._load_account(account_id, for_update=True)
                expected_version = account.version
                result = mutate(account)
                account.updated_at = utcnow()
                if self.storage.compare_and_set(
                    ACCOUNTS_TABLE, account_id, expected_version, account.to_dict()
                ):
                    account.version = expected_version + 1
                    if after_write:
                        after_write(account)
                    return account, result

            self.logger.debug(
                f"Version conflict on {operation} for account {account_id} (attempt {attempt})"
            )
            if attempt < self.max_attempts:
                self._backoff(attempt)

        log_action(
            self.logger, "warning", f"Concurrency conflict on {operation}",
            action=operation, resource=f"account:{account_id}",
            extra={"attempts": self.max_attempts}
        )
        raise ConcurrencyConflict(account_id, self.max_attempts)

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def set_account_status(self, account_id: str, status: Any) -> Account:
        """
        Overwrite the account status.

        Any transition among ACTIVE, FROZEN and CLOSED is allowed, except leaving
        CLOSED while closed_account_terminal is set.
        """
        target = validate_status(status)

        def apply(account: Account) -> AccountStatus:
            previous = account.status
            if (self.closed_account_terminal and previous == AccountStatus.CLOSED
                    and target != AccountStatus.CLOSED):
                raise InvalidStatusTransition(account_id, previous.value, target.value)
            account.status = target
            return previous

        account, previous = self._update_account(account_id, "set_account_status", apply)

        log_action(
            self.logger, "info", f"Account {account_id} status changed to {target.value}",
            action="set_account_status", resource=f"account:{account_id}",
            extra={"old_status": previous.value, "new_status": target.value}
        )
        self._publish_event(
            DomainEvent.ACCOUNT_STATUS_CHANGED, account,
            old_status=previous.value, new_status=target.value
        )
        return account

    # ------------------------------------------------------------------
    # Eligibility
    # ------------------------------------------------------------------

    def check_eligibility(self, account_id: str, amount: Optional[AmountLike] = None) -> EligibilityResult:
        """
        Advisory, read-only check of whether an account may transact.

        The amount is validated when supplied but limit arithmetic belongs to
        the calling transaction service, which receives the current balance and
        daily limit to do it.

        Raises:
            ValidationError: amount supplied but not a positive decimal
            AccountNotFound: unknown account
        """
        if amount is not None:
            validate_amount(amount)

        account = self._load_account(account_id)

        ineligible = account.status == AccountStatus.FROZEN or (
            self.closed_account_terminal and account.status == AccountStatus.CLOSED
        )
        if ineligible:
            reason = _ineligible_reason(account.status)
            return EligibilityResult(
                is_eligible=False,
                account_id=account_id,
                account_status=account.status,
                reason=reason,
                message=_INELIGIBLE_MESSAGES[reason],
            )

        return EligibilityResult(
            is_eligible=True,
            account_id=account_id,
            account_status=account.status,
            available_balance=account.balance,
            daily_limit=account.daily_transfer_limit,
            message="Account is eligible for transactions.",
        )

    # ------------------------------------------------------------------
    # Debit
    # ------------------------------------------------------------------

    @staticmethod
    def _entry_id(account_id: str, idempotency_key: str) -> str:
        return str(uuid.uuid5(uuid.NAMESPACE_URL, f"account-debit:{account_id}:{idempotency_key}"))

    def _replayed_debit(self, account_id: str, idempotency_key: str, amount: Decimal) -> Optional[Account]:
        """Result of an already applied debit with this key, if any"""
        data = self.storage.load(DEBITS_TABLE, self._entry_id(account_id, idempotency_key))
        if data is None:
            return None
        entry = DebitEntry.from_dict(data)
        if entry.amount != amount:
            raise IdempotencyKeyReused(account_id, idempotency_key)

        log_action(
            self.logger, "info", f"Replayed debit for account {account_id}",
            action="debit", resource=f"account:{account_id}",
            extra={"idempotency_key": idempotency_key, "amount": str(amount)}
        )
        return Account.from_dict(entry.account_snapshot)

    def debit(self, account_id: str, amount: AmountLike, idempotency_key: Optional[str] = None) -> Account:
        """
        Atomically decrement an account balance.

        The status and sufficiency checks and the balance write happen in one
        store transaction; a debit never commits against a non-ACTIVE account or
        below zero. With an idempotency_key, a repeated request returns the
        account as it was right after the original debit instead of debiting
        again.

        Raises:
            ValidationError: amount not strictly positive, or blank key
            AccountNotFound: unknown account
            AccountNotEligible: account is FROZEN or CLOSED
            InsufficientFunds: balance lower than amount
            IdempotencyKeyReused: key already used with another amount
            ConcurrencyConflict: retry budget exhausted
            StoreError: persistence failure or timeout
        """
        value = validate_amount(amount)
        if idempotency_key is not None:
            idempotency_key = str(idempotency_key).strip()
            if not idempotency_key:
                raise ValidationError("idempotency_key must not be blank", field="idempotency_key")
            replay = self._replayed_debit(account_id, idempotency_key, value)
            if replay is not None:
                return replay

        def apply(account: Account) -> Decimal:
            if idempotency_key:
                # Re-checked under the row lock: a concurrent request may have committed since
                replay = self._replayed_debit(account_id, idempotency_key, value)
                if replay is not None:
                    raise _DebitReplayed(replay)
            if not account.can_debit():
                raise AccountNotEligible(
                    account_id, account.status.value, _ineligible_reason(account.status)
                )
            if account.balance < value:
                raise InsufficientFunds(account_id, account.balance, value)
            previous_balance = account.balance
            account.balance = exact_subtract(account.balance, value)
            return previous_balance

        def record(account: Account) -> None:
            entry = DebitEntry(
                entry_id=(self._entry_id(account_id, idempotency_key)
                          if idempotency_key else str(uuid.uuid4())),
                account_id=account_id,
                amount=value,
                balance_after=account.balance,
                created_at=account.updated_at,
                account_snapshot=account.to_dict(),
                idempotency_key=idempotency_key,
            )
            self.storage.insert(DEBITS_TABLE, entry.entry_id, entry.to_dict())

        try:
            account, previous_balance = self._update_account(account_id, "debit", apply, record)
        except _DebitReplayed as replayed:
            return replayed.account
        except (AccountNotEligible, InsufficientFunds) as e:
            log_action(
                self.logger, "warning", f"Debit rejected: {e.code}",
                action="debit", resource=f"account:{account_id}",
                extra={"amount": str(value), **e.to_dict()["details"]}
            )
            raise
        except DuplicateKeyError as e:
            # A concurrent request with the same key committed first
            if idempotency_key and e.table == DEBITS_TABLE:
                replay = self._replayed_debit(account_id, idempotency_key, value)
                if replay is not None:
                    return replay
            raise

        log_action(
            self.logger, "info", f"Account {account_id} debited",
            action="debit", resource=f"account:{account_id}",
            extra={
                "amount": str(value),
                "previous_balance": str(previous_balance),
                "balance": str(account.balance),
                "idempotency_key": idempotency_key
            }
        )
        self._publish_event(
            DomainEvent.ACCOUNT_DEBITED, account, amount=value, balance=account.balance
        )
        return account
