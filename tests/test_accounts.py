"""
Test suite for the account entity module

Tests the Account record, its serialization, and the validation rules applied
to creation, status and amount input.
"""

import pytest
from decimal import Decimal
from datetime import datetime, timezone

from account_ledger.accounts import (
    Account, AccountStatus, AccountType, exact_subtract,
    validate_creation, validate_status, validate_amount, to_decimal
)
from account_ledger.errors import ValidationError


def make_account(**overrides) -> Account:
    now = datetime.now(timezone.utc)
    fields = dict(
        account_id="ACC001",
        customer_id="CUST001",
        account_number="SAV123456",
        account_type=AccountType.SAVINGS,
        balance=Decimal("100.00"),
        status=AccountStatus.ACTIVE,
        daily_transfer_limit=Decimal("10000.00"),
        created_at=now,
        updated_at=now,
    )
    fields.update(overrides)
    return Account(**fields)


class TestAccount:
    """Test Account class functionality"""

    def test_active_account_can_debit(self):
        """Only ACTIVE accounts can be debited"""
        assert make_account().can_debit()
        assert not make_account(status=AccountStatus.FROZEN).can_debit()
        assert not make_account(status=AccountStatus.CLOSED).can_debit()

    def test_to_dict_uses_strings_for_money(self):
        """Decimals and enums are serialized as strings"""
        data = make_account(balance=Decimal("50000.50")).to_dict()

        assert data["balance"] == "50000.50"
        assert data["daily_transfer_limit"] == "10000.00"
        assert data["status"] == "ACTIVE"
        assert data["account_type"] == "SAVINGS"
        assert "version" not in data

    def test_from_dict_restores_account(self):
        """A stored dictionary converts back to an equal account"""
        account = make_account(status=AccountStatus.FROZEN)
        data = account.to_dict()
        data["version"] = 7

        restored = Account.from_dict(data)

        assert restored.balance == Decimal("100.00")
        assert restored.status == AccountStatus.FROZEN
        assert restored.created_at == account.created_at
        assert restored.version == 7


class TestValidateCreation:
    """Test creation input validation"""

    def test_valid_creation_defaults_deposit_to_zero(self):
        """Omitted initial deposit becomes zero"""
        creation = validate_creation("CUST001", "CHK0001", "CHECKING")

        assert creation.initial_deposit == Decimal("0")
        assert creation.account_type == AccountType.CHECKING
        assert creation.daily_transfer_limit is None

    def test_exact_account_type(self):
        """Account types match their exact upper-case names"""
        creation = validate_creation("CUST001", "SAV0001", "SAVINGS", "25.10")

        assert creation.account_type == AccountType.SAVINGS
        assert creation.initial_deposit == Decimal("25.10")

    @pytest.mark.parametrize("account_type", ["savings", "Checking", " SAVINGS"])
    def test_other_spellings_of_account_type_rejected(self, account_type):
        with pytest.raises(ValidationError) as exc_info:
            validate_creation("C1", "N1", account_type)

        assert exc_info.value.field == "account_type"

    @pytest.mark.parametrize("field,args", [
        ("customer_id", (None, "N1", "SAVINGS")),
        ("customer_id", ("  ", "N1", "SAVINGS")),
        ("account_number", ("C1", None, "SAVINGS")),
        ("account_number", ("C1", "", "SAVINGS")),
        ("account_type", ("C1", "N1", None)),
    ])
    def test_missing_required_field(self, field, args):
        """Missing required fields raise ValidationError naming the field"""
        with pytest.raises(ValidationError, match="Missing required field") as exc_info:
            validate_creation(*args)

        assert exc_info.value.field == field

    def test_unknown_account_type(self):
        """Account type outside the closed set is rejected"""
        with pytest.raises(ValidationError, match="Invalid account_type"):
            validate_creation("C1", "N1", "BROKERAGE")

    def test_negative_deposit_rejected(self):
        """Initial deposit must not be negative"""
        with pytest.raises(ValidationError, match="must not be negative"):
            validate_creation("C1", "N1", "SAVINGS", Decimal("-0.01"))

    def test_non_numeric_deposit_rejected(self):
        """Initial deposit must be a decimal"""
        with pytest.raises(ValidationError) as exc_info:
            validate_creation("C1", "N1", "SAVINGS", "lots")

        assert exc_info.value.field == "initial_deposit"

    @pytest.mark.parametrize("value,expected", [("-0", "0"), ("-0.00", "0.00"), (Decimal("-0"), "0")])
    def test_negative_zero_is_stored_unsigned(self, value, expected):
        """A signed zero deposit or limit becomes plain zero"""
        creation = validate_creation("C1", "N1", "SAVINGS", value, daily_transfer_limit=value)

        assert str(creation.initial_deposit) == expected
        assert str(creation.daily_transfer_limit) == expected

    def test_negative_daily_limit_rejected(self):
        """Daily transfer limit must not be negative"""
        with pytest.raises(ValidationError) as exc_info:
            validate_creation("C1", "N1", "SAVINGS", daily_transfer_limit="-5")

        assert exc_info.value.field == "daily_transfer_limit"


class TestValidateStatus:
    """Test status validation"""

    @pytest.mark.parametrize("value,expected", [
        ("ACTIVE", AccountStatus.ACTIVE),
        ("FROZEN", AccountStatus.FROZEN),
        (AccountStatus.CLOSED, AccountStatus.CLOSED),
    ])
    def test_known_statuses(self, value, expected):
        """Members of the status set are accepted"""
        assert validate_status(value) == expected

    @pytest.mark.parametrize("value", ["DORMANT", "", None, "frozen", "Active", " CLOSED", 1])
    def test_unknown_status(self, value):
        """Anything else, other spellings included, is a ValidationError"""
        with pytest.raises(ValidationError):
            validate_status(value)


class TestValidateAmount:
    """Test debit amount validation"""

    def test_positive_amount(self):
        """Positive amounts keep their exact decimal value"""
        assert validate_amount("10000.00") == Decimal("10000.00")
        assert validate_amount(5) == Decimal("5")

    def test_float_goes_through_string_form(self):
        """Floats do not carry binary rounding noise"""
        assert validate_amount(0.1) == Decimal("0.1")

    @pytest.mark.parametrize("value", [0, "0.00", "-1", Decimal("-0.01")])
    def test_non_positive_amount(self, value):
        """Zero and negative amounts are rejected"""
        with pytest.raises(ValidationError, match="greater than zero"):
            validate_amount(value)

    @pytest.mark.parametrize("value", [None, "abc", "NaN", "Infinity", True])
    def test_malformed_amount(self, value):
        """Non-decimal and non-finite amounts are rejected"""
        with pytest.raises(ValidationError):
            validate_amount(value)

    def test_to_decimal_strips_whitespace(self):
        """Surrounding whitespace is ignored"""
        assert to_decimal(" 12.50 ", "amount") == Decimal("12.50")

    @pytest.mark.parametrize("value", [
        "1" + "0" * 38,             # 39 integer digits
        "1E+38",
        "0.0000000000000000001",    # 19 decimal places
    ])
    def test_amount_outside_numeric_bounds(self, value):
        """Amounts wider than NUMERIC(56, 18) are rejected"""
        with pytest.raises(ValidationError, match="at most 38 integer digits"):
            validate_amount(value)

    def test_widest_amount_accepted(self):
        widest = "9" * 38 + "." + "9" * 18

        assert validate_amount(widest) == Decimal(widest)


class TestExactSubtract:
    """Balance arithmetic never rounds"""

    def test_beyond_default_precision(self):
        """Operands wider than the 28-digit default context keep every digit"""
        result = exact_subtract(Decimal("123456789012345678901234567.89"), Decimal("0.01"))

        assert result == Decimal("123456789012345678901234567.88")
        assert str(result) == "123456789012345678901234567.88"

    def test_widest_operands(self):
        balance = Decimal("1" + "0" * 37)

        result = exact_subtract(balance, Decimal("0.000000000000000001"))

        assert str(result) == "9" * 37 + "." + "9" * 18

    def test_keeps_scale(self):
        assert str(exact_subtract(Decimal("100.10"), Decimal("0.30"))) == "99.80"
        assert str(exact_subtract(Decimal("25.00"), Decimal("25.00"))) == "0.00"
