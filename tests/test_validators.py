import uuid
from datetime import datetime, timezone
from decimal import Decimal

import pytest

from tradeledger.errors import ValidationError
from tradeledger.trading_logs.validators import (
    DepositInfo,
    LongInfo,
    StopLossInfo,
    TradingLogValidator,
    WithdrawInfo,
    extract_number,
)
from tradeledger.utils.validators import (
    check_amount_range,
    check_time_range,
    validate_api_permissions,
    validate_email_address,
    validate_username,
)


@pytest.fixture
def validator():
    return TradingLogValidator()


def trade_info(**overrides):
    info = {
        "stock_account_id": str(uuid.uuid4()),
        "currency_account_id": str(uuid.uuid4()),
        "price": 3000,
        "volume": 2,
        "fee": 15,
        "stock": "ETH",
        "currency": "USDT",
    }
    info.update(overrides)
    return info


def flow_info(**overrides):
    info = {"account_id": str(uuid.uuid4()), "amount": 100.5, "currency": "USDT"}
    info.update(overrides)
    return info


class TestTradePayloads:
    def test_valid_long(self, validator):
        info = trade_info()
        typed = validator.validate_info(info, "long")
        assert isinstance(typed, LongInfo)
        assert typed.price == Decimal("3000")
        assert typed.volume == Decimal("2")
        assert typed.fee == Decimal("15")
        assert str(typed.stock_account_id) == info["stock_account_id"]

    def test_stop_loss_gets_its_own_variant(self, validator):
        assert isinstance(validator.validate_info(trade_info(), "stop_loss"), StopLossInfo)

    def test_floats_are_normalised_without_binary_noise(self, validator):
        typed = validator.validate_info(trade_info(price=0.1, volume=0.3, fee=0.0), "short")
        assert typed.price == Decimal("0.1")
        assert typed.volume == Decimal("0.3")
        assert typed.fee == Decimal("0.0")

    @pytest.mark.parametrize(
        "overrides, field",
        [
            ({"volume": 0}, "volume"),
            ({"volume": -1}, "volume"),
            ({"price": 0}, "price"),
            ({"price": -3000}, "price"),
            ({"fee": -0.01}, "fee"),
            ({"stock": ""}, "stock"),
            ({"currency": "X" * 21}, "currency"),
            ({"stock_account_id": "not-a-uuid"}, "stock_account_id"),
            ({"currency_account_id": "1234"}, "currency_account_id"),
            ({"price": "3000"}, "price"),
            ({"volume": True}, "volume"),
            ({"price": float("nan")}, "price"),
            ({"fee": None}, "fee"),
        ],
    )
    def test_rejections_name_the_field(self, validator, overrides, field):
        with pytest.raises(ValidationError) as exc_info:
            validator.validate_info(trade_info(**overrides), "long")
        assert exc_info.value.field == field
        assert exc_info.value.error_type == "long"

    @pytest.mark.parametrize("missing", ["stock_account_id", "currency_account_id", "price", "volume", "fee", "stock", "currency"])
    def test_missing_fields(self, validator, missing):
        info = trade_info()
        del info[missing]
        with pytest.raises(ValidationError) as exc_info:
            validator.validate_info(info, "short")
        assert exc_info.value.field == missing
        assert exc_info.value.field_message == "is required"

    def test_same_account_on_both_sides(self, validator):
        account_id = str(uuid.uuid4())
        with pytest.raises(ValidationError) as exc_info:
            validator.validate_info(
                trade_info(stock_account_id=account_id, currency_account_id=account_id), "long"
            )
        assert exc_info.value.field == "accounts"

    @pytest.mark.parametrize("log_type", ["short", "stop_loss"])
    def test_fee_above_proceeds_on_sells(self, validator, log_type):
        with pytest.raises(ValidationError) as exc_info:
            validator.validate_info(trade_info(price=1, volume=1, fee=5), log_type)
        assert exc_info.value.field == "fee"
        assert exc_info.value.error_type == log_type

        typed = validator.validate_info(trade_info(price=1, volume=1, fee=1), log_type)
        assert typed.fee == Decimal("1")

    def test_long_fee_may_exceed_notional(self, validator):
        typed = validator.validate_info(trade_info(price=1, volume=1, fee=5), "long")
        assert typed.fee == Decimal("5")

    def test_decimal_precision_limit(self, validator):
        with pytest.raises(ValidationError) as exc_info:
            validator.validate_info(trade_info(price=0.123456789), "long")
        assert exc_info.value.field == "price"
        assert exc_info.value.error_type == "precision"

    def test_eight_places_are_fine(self, validator):
        typed = validator.validate_info(trade_info(volume=0.12345678), "long")
        assert typed.volume == Decimal("0.12345678")


class TestFlowPayloads:
    def test_valid_deposit_and_withdraw(self, validator):
        assert isinstance(validator.validate_info(flow_info(), "deposit"), DepositInfo)
        assert isinstance(validator.validate_info(flow_info(amount=1), "withdraw"), WithdrawInfo)

    @pytest.mark.parametrize(
        "overrides, field",
        [
            ({"amount": 0}, "amount"),
            ({"amount": -5}, "amount"),
            ({"currency": ""}, "currency"),
            ({"account_id": "nope"}, "account_id"),
            ({"account_id": 42}, "account_id"),
        ],
    )
    def test_rejections(self, validator, overrides, field):
        with pytest.raises(ValidationError) as exc_info:
            validator.validate_info(flow_info(**overrides), "withdraw")
        assert exc_info.value.field == field

    def test_info_is_required(self, validator):
        with pytest.raises(ValidationError) as exc_info:
            validator.validate_info(None, "deposit")
        assert exc_info.value.field == "info"


class TestLogTypes:
    def test_custom_types_accept_any_info(self, validator):
        assert validator.validate_info({"anything": [1, 2, 3]}, "note") is None
        assert validator.validate_info(None, "signal") is None

    def test_type_is_required(self, validator):
        with pytest.raises(ValidationError) as exc_info:
            validator.validate_type("")
        assert exc_info.value.field == "type"

    def test_type_length(self, validator):
        with pytest.raises(ValidationError):
            validator.validate_type("t" * 51)
        assert validator.validate_type("t" * 50) == "t" * 50


def test_extract_number():
    assert extract_number(5) == Decimal(5)
    assert extract_number(2.5) == Decimal("2.5")
    assert extract_number(Decimal("1.25")) == Decimal("1.25")
    assert extract_number(False) is None
    assert extract_number("1") is None
    assert extract_number(float("inf")) is None


class TestRangeChecks:
    def test_time_range_message(self):
        with pytest.raises(ValidationError) as exc_info:
            check_time_range(datetime(2024, 2, 1, tzinfo=timezone.utc), datetime(2024, 1, 1, tzinfo=timezone.utc))
        assert exc_info.value.field_message == "start date/time cannot be after end date/time"

    def test_amount_range_message(self):
        with pytest.raises(ValidationError) as exc_info:
            check_amount_range(Decimal("10"), Decimal("1"))
        assert exc_info.value.field_message == "min amount cannot be greater than max amount"

    def test_open_ranges_pass(self):
        check_time_range(None, None)
        check_amount_range(Decimal("1"), None)


def test_permissions_are_case_sensitive():
    all_valid, valid, invalid = validate_api_permissions(["read", "Write", "*"])
    assert not all_valid
    assert valid == ["read", "*"]
    assert invalid == ["Write"]


@pytest.mark.parametrize("username, ok", [("ab", False), ("alice", True), ("bad name", False), ("a.b-c_d", True)])
def test_validate_username(username, ok):
    assert validate_username(username)[0] is ok


def test_validate_email_address():
    ok, normalized = validate_email_address("ada@example.com")
    assert ok
    assert normalized == "ada@example.com"

    ok, error = validate_email_address("not-an-email")
    assert not ok
    assert error
