import asyncio
import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from tradeledger.database.connection import DatabaseTransaction
from tradeledger.database.models import EventProcessing, TradingLog, Transaction
from tradeledger.errors import (
    ConflictError,
    InsufficientBalanceError,
    NotFoundError,
    SymbolMismatchError,
    TransientError,
    ValidationError,
)
from tradeledger.ledger.balance import BalanceLedger
from tradeledger.schemas import CreateTradingLogRequest, UpdateBalanceRequest
from tradeledger.trading_logs.service import TradingLogService
from tradeledger.utils.helpers import utc_now


def trade_request(platform_id, log_type, stock_account_id, currency_account_id, price, volume, fee,
                  stock="ETH", currency="USDT", **extra):
    return CreateTradingLogRequest(
        platform_id=platform_id,
        type=log_type,
        source="manual",
        message=f"{log_type} {volume} {stock}",
        info={
            "stock_account_id": str(stock_account_id),
            "currency_account_id": str(currency_account_id),
            "price": price,
            "volume": volume,
            "fee": fee,
            "stock": stock,
            "currency": currency,
        },
        **extra,
    )


def flow_request(platform_id, log_type, account_id, amount, currency="USDT", **extra):
    return CreateTradingLogRequest(
        platform_id=platform_id,
        type=log_type,
        source="manual",
        message=f"{log_type} {amount} {currency}",
        info={"account_id": str(account_id), "amount": amount, "currency": currency},
        **extra,
    )


async def count(session_maker, query):
    async with DatabaseTransaction(session_maker) as tx:
        return (await tx.session.execute(query)).scalar_one()


async def transactions_with_reason(session_maker, reason):
    async with DatabaseTransaction(session_maker) as tx:
        result = await tx.session.execute(
            select(Transaction).where(Transaction.reason == reason).order_by(Transaction.timestamp)
        )
        return list(result.scalars().all())


@pytest.fixture
async def pair(user, platform, make_sub_account):
    """ETH and USDT sub-accounts on the same platform; balances set per test."""
    async def build(eth="0", usdt="0"):
        stock = await make_sub_account(user.id, platform.id, "ETH", balance=eth)
        currency = await make_sub_account(user.id, platform.id, "USDT", balance=usdt)
        return stock, currency

    return build


class TestTrades:
    async def test_long_position(self, trading_log_service, session_maker, user, platform, pair, balance_of):
        """Buying 2 ETH at 3000 with a 15 fee moves 6015 USDT."""
        eth, usdt = await pair(eth="0", usdt="10000")

        response = await trading_log_service.create_trading_log(
            user.id, trade_request(platform.id, "long", eth.id, usdt.id, price=3000, volume=2, fee=15)
        )

        assert await balance_of(eth.id) == Decimal("2")
        assert await balance_of(usdt.id) == Decimal("3985")

        rows = {r.sub_account_id: r for r in await transactions_with_reason(session_maker, "long")}
        stock_tx, currency_tx = rows[eth.id], rows[usdt.id]
        assert (stock_tx.direction, stock_tx.amount, stock_tx.closing_balance) == ("credit", Decimal("2"), Decimal("2"))
        assert (currency_tx.direction, currency_tx.amount, currency_tx.closing_balance) == (
            "debit", Decimal("6015"), Decimal("3985")
        )
        assert stock_tx.price == Decimal("3000")
        assert stock_tx.quote_symbol == "USDT"

        assert response.sub_account_id == eth.id
        assert response.transaction_id == stock_tx.id
        assert response.info["processed_transactions"] == 2
        assert response.info["updated_accounts"] == 2
        assert response.info["transaction_ids"] == [str(stock_tx.id), str(currency_tx.id)]
        assert response.info["trading_type"] == "virtual"
        assert response.info["created_by"] == "api"

    async def test_long_needs_cost_in_currency_account(self, trading_log_service, user, platform, pair, balance_of):
        eth, usdt = await pair(eth="0", usdt="6014.99")

        with pytest.raises(InsufficientBalanceError) as exc_info:
            await trading_log_service.create_trading_log(
                user.id, trade_request(platform.id, "long", eth.id, usdt.id, price=3000, volume=2, fee=15)
            )

        assert exc_info.value.required == Decimal("6015")
        assert await balance_of(usdt.id) == Decimal("6014.99")
        assert await balance_of(eth.id) == Decimal("0")

    async def test_short_position(self, trading_log_service, session_maker, user, platform, pair, balance_of):
        eth, usdt = await pair(eth="3", usdt="0")

        await trading_log_service.create_trading_log(
            user.id, trade_request(platform.id, "short", eth.id, usdt.id, price=2000, volume=1.5, fee=10)
        )

        assert await balance_of(eth.id) == Decimal("1.5")
        assert await balance_of(usdt.id) == Decimal("2990")
        rows = {r.sub_account_id: (r.direction, r.amount) for r in await transactions_with_reason(session_maker, "short")}
        assert rows == {eth.id: ("debit", Decimal("1.5")), usdt.id: ("credit", Decimal("2990"))}

    async def test_short_with_insufficient_stock(self, trading_log_service, session_maker, user, platform,
                                                 pair, balance_of):
        eth, usdt = await pair(eth="0.5", usdt="1000")

        with pytest.raises(InsufficientBalanceError) as exc_info:
            await trading_log_service.create_trading_log(
                user.id, trade_request(platform.id, "short", eth.id, usdt.id, price=2000, volume=1.5, fee=0)
            )

        assert exc_info.value.required == Decimal("1.5")
        assert exc_info.value.available == Decimal("0.5")
        assert await balance_of(eth.id) == Decimal("0.5")
        assert await balance_of(usdt.id) == Decimal("1000")
        assert await transactions_with_reason(session_maker, "short") == []
        assert await count(session_maker, select(func.count(TradingLog.id))) == 0

    async def test_stop_loss_is_tagged(self, trading_log_service, session_maker, user, platform, pair, balance_of):
        eth, usdt = await pair(eth="1", usdt="0")

        await trading_log_service.create_trading_log(
            user.id, trade_request(platform.id, "stop_loss", eth.id, usdt.id, price=1800, volume=1, fee=0)
        )

        rows = await transactions_with_reason(session_maker, "stop_loss")
        assert len(rows) == 2
        assert await balance_of(usdt.id) == Decimal("1800")

    async def test_fee_larger_than_proceeds(self, trading_log_service, user, platform, pair, balance_of):
        eth, usdt = await pair(eth="1", usdt="0")

        with pytest.raises(ValidationError) as exc_info:
            await trading_log_service.create_trading_log(
                user.id, trade_request(platform.id, "short", eth.id, usdt.id, price=1, volume=1, fee=5)
            )
        assert exc_info.value.field == "fee"
        assert await balance_of(eth.id) == Decimal("1")

    async def test_concurrent_overdraw(self, trading_log_service, user, platform, pair, balance_of):
        """Two sells of 6 against 10: exactly one lands."""
        eth, usdt = await pair(eth="10", usdt="0")
        request = trade_request(platform.id, "short", eth.id, usdt.id, price=100, volume=6, fee=0)

        results = await asyncio.gather(
            trading_log_service.create_trading_log(user.id, request),
            trading_log_service.create_trading_log(user.id, request),
            return_exceptions=True,
        )

        failures = [r for r in results if isinstance(r, Exception)]
        assert len(failures) == 1
        assert isinstance(failures[0], InsufficientBalanceError)
        assert await balance_of(eth.id) == Decimal("4")
        assert await balance_of(usdt.id) == Decimal("600")

    async def test_failure_midway_rolls_everything_back(self, session_maker, user, platform, pair, balance_of):
        class FailingLedger(BalanceLedger):
            calls = 0

            async def apply(self, session, *args, **kwargs):
                self.calls += 1
                if self.calls == 2:
                    raise TransientError("database temporarily unavailable")
                return await super().apply(session, *args, **kwargs)

        eth, usdt = await pair(eth="0", usdt="10000")
        service = TradingLogService(session_maker, ledger=FailingLedger())

        with pytest.raises(TransientError):
            await service.create_trading_log(
                user.id, trade_request(platform.id, "long", eth.id, usdt.id, price=3000, volume=2, fee=15)
            )

        assert await balance_of(eth.id) == Decimal("0")
        assert await balance_of(usdt.id) == Decimal("10000")
        assert await transactions_with_reason(session_maker, "long") == []
        assert await count(session_maker, select(func.count(TradingLog.id))) == 0

    async def test_cancellation_midway_rolls_everything_back(self, session_maker, user, platform, pair,
                                                              balance_of):
        class StallingLedger(BalanceLedger):
            calls = 0

            def __init__(self):
                self.stalled = asyncio.Event()

            async def apply(self, session, *args, **kwargs):
                self.calls += 1
                if self.calls == 2:
                    self.stalled.set()
                    await asyncio.sleep(3600)
                return await super().apply(session, *args, **kwargs)

        eth, usdt = await pair(eth="0", usdt="10000")
        ledger = StallingLedger()
        service = TradingLogService(session_maker, ledger=ledger)
        request = trade_request(platform.id, "long", eth.id, usdt.id, price=3000, volume=2, fee=15)

        task = asyncio.create_task(service.create_trading_log(user.id, request))
        await asyncio.wait_for(ledger.stalled.wait(), timeout=10)
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task

        assert await balance_of(eth.id) == Decimal("0")
        assert await balance_of(usdt.id) == Decimal("10000")
        assert await transactions_with_reason(session_maker, "long") == []
        assert await count(session_maker, select(func.count(TradingLog.id))) == 0

        await service.create_trading_log(user.id, request)
        assert await balance_of(eth.id) == Decimal("2")
        assert await balance_of(usdt.id) == Decimal("3985")


class TestFlows:
    async def test_deposit(self, trading_log_service, session_maker, user, platform, pair, balance_of):
        _, usdt = await pair()

        response = await trading_log_service.create_trading_log(
            user.id, flow_request(platform.id, "deposit", usdt.id, 250.75)
        )

        assert await balance_of(usdt.id) == Decimal("250.75")
        rows = await transactions_with_reason(session_maker, "deposit")
        deposit = [r for r in rows if r.sub_account_id == usdt.id][-1]
        assert deposit.direction == "credit"
        assert deposit.price == Decimal("1")
        assert deposit.quote_symbol == "USDT"
        assert response.transaction_id == deposit.id
        assert response.sub_account_id == usdt.id

    async def test_deposit_symbol_mismatch(self, trading_log_service, user, platform, pair, balance_of):
        _, usdt = await pair()

        with pytest.raises(SymbolMismatchError) as exc_info:
            await trading_log_service.create_trading_log(
                user.id, flow_request(platform.id, "deposit", usdt.id, 1, currency="BTC")
            )

        assert exc_info.value.expected == "USDT"
        assert exc_info.value.provided == "BTC"
        assert await balance_of(usdt.id) == Decimal("0")

    async def test_withdraw(self, trading_log_service, session_maker, user, platform, pair, balance_of):
        _, usdt = await pair(usdt="100")

        await trading_log_service.create_trading_log(
            user.id, flow_request(platform.id, "withdraw", usdt.id, 40)
        )
        assert await balance_of(usdt.id) == Decimal("60")

        with pytest.raises(InsufficientBalanceError):
            await trading_log_service.create_trading_log(
                user.id, flow_request(platform.id, "withdraw", usdt.id, 60.01)
            )
        assert await balance_of(usdt.id) == Decimal("60")
        assert len(await transactions_with_reason(session_maker, "withdraw")) == 1


class TestOwnership:
    async def test_cross_user_account_is_not_found(self, trading_log_service, session_maker, make_user,
                                                   make_platform, make_sub_account, balance_of):
        alice = await make_user()
        bob = await make_user()
        alice_platform = await make_platform(alice.id)
        bob_platform = await make_platform(bob.id)
        alice_usdt = await make_sub_account(alice.id, alice_platform.id, "USDT", balance="10000")
        bob_eth = await make_sub_account(bob.id, bob_platform.id, "ETH")

        with pytest.raises(NotFoundError):
            await trading_log_service.create_trading_log(
                alice.id,
                trade_request(alice_platform.id, "long", bob_eth.id, alice_usdt.id, price=1, volume=1, fee=0),
            )

        assert await balance_of(bob_eth.id) == Decimal("0")
        assert await balance_of(alice_usdt.id) == Decimal("10000")
        assert await count(session_maker, select(func.count(TradingLog.id))) == 0
        assert await transactions_with_reason(session_maker, "long") == []

    async def test_foreign_platform_is_not_found(self, trading_log_service, make_user, make_platform):
        alice = await make_user()
        bob = await make_user()
        bob_platform = await make_platform(bob.id)

        with pytest.raises(NotFoundError):
            await trading_log_service.create_trading_log(
                alice.id,
                CreateTradingLogRequest(platform_id=bob_platform.id, type="note", source="manual", message="hi"),
            )

    async def test_referenced_rows_must_be_owned(self, trading_log_service, make_user, make_platform,
                                                 make_sub_account, session_maker):
        alice = await make_user()
        bob = await make_user()
        alice_platform = await make_platform(alice.id)
        bob_platform = await make_platform(bob.id)
        bob_account = await make_sub_account(bob.id, bob_platform.id, "USDT", balance="5")

        async with DatabaseTransaction(session_maker) as tx:
            bob_transaction_id = (await tx.session.execute(
                select(Transaction.id).where(Transaction.user_id == bob.id)
            )).scalar_one()

        for reference in ({"sub_account_id": bob_account.id}, {"transaction_id": bob_transaction_id}):
            with pytest.raises(NotFoundError):
                await trading_log_service.create_trading_log(
                    alice.id,
                    CreateTradingLogRequest(
                        platform_id=alice_platform.id, type="note", source="manual", message="x", **reference
                    ),
                )


class TestCustomLogs:
    async def test_event_time_is_preserved(self, trading_log_service, user, platform):
        event_time = datetime(1900, 1, 1, tzinfo=timezone.utc)

        created = await trading_log_service.create_trading_log(
            user.id,
            CreateTradingLogRequest(
                platform_id=platform.id,
                type="backtest_signal",
                source="bot",
                message="historical replay",
                event_time=event_time,
                info={"strategy": "mean-reversion"},
            ),
        )
        fetched = await trading_log_service.get_trading_log(user.id, created.id)

        assert fetched.event_time == event_time
        assert abs(fetched.created_at - utc_now()) < timedelta(minutes=1)
        assert fetched.info["strategy"] == "mean-reversion"
        assert fetched.sub_account_id is None
        assert fetched.transaction_id is None

    async def test_future_event_time_is_accepted(self, trading_log_service, user, platform):
        event_time = utc_now() + timedelta(days=30)
        created = await trading_log_service.create_trading_log(
            user.id,
            CreateTradingLogRequest(
                platform_id=platform.id, type="note", source="manual", message="later", event_time=event_time
            ),
        )
        assert abs(created.event_time - event_time) < timedelta(seconds=1)

    async def test_trading_id_alias(self, platform):
        request = CreateTradingLogRequest.model_validate(
            {"trading_id": str(platform.id), "type": "note", "source": "manual", "message": "m"}
        )
        assert request.platform_id == platform.id

    async def test_invalid_payload_is_rejected_before_any_write(self, trading_log_service, session_maker,
                                                                user, platform):
        with pytest.raises(ValidationError):
            await trading_log_service.create_trading_log(
                user.id,
                CreateTradingLogRequest(
                    platform_id=platform.id, type="deposit", source="manual", message="m",
                    info={"account_id": str(uuid.uuid4()), "amount": 0, "currency": "USDT"},
                ),
            )
        assert await count(session_maker, select(func.count(TradingLog.id))) == 0

    async def test_delete_manual_but_not_bot_logs(self, trading_log_service, user, platform):
        manual = await trading_log_service.create_trading_log(
            user.id, CreateTradingLogRequest(platform_id=platform.id, type="note", source="manual", message="m")
        )
        bot = await trading_log_service.create_trading_log(
            user.id, CreateTradingLogRequest(platform_id=platform.id, type="note", source="bot", message="b")
        )

        await trading_log_service.delete_trading_log(user.id, manual.id)
        with pytest.raises(NotFoundError):
            await trading_log_service.get_trading_log(user.id, manual.id)

        with pytest.raises(ValidationError) as exc_info:
            await trading_log_service.delete_trading_log(user.id, bot.id)
        assert exc_info.value.field_message == "cannot delete bot-generated trading logs"
        assert (await trading_log_service.get_trading_log(user.id, bot.id)).id == bot.id


class TestIdempotency:
    async def test_redelivery_applies_once(self, trading_log_service, session_maker, user, platform, pair,
                                           balance_of):
        _, usdt = await pair()
        request = flow_request(platform.id, "deposit", usdt.id, 100, event_id="evt-deposit-1")

        first = await trading_log_service.create_trading_log(user.id, request)
        second = await trading_log_service.create_trading_log(user.id, request)

        assert first.id == second.id
        assert second.info["transaction_ids"] == first.info["transaction_ids"]
        assert await balance_of(usdt.id) == Decimal("100")
        assert await count(session_maker, select(func.count(TradingLog.id))) == 1
        assert len(await transactions_with_reason(session_maker, "deposit")) == 1

    async def test_redelivery_after_log_deleted(self, trading_log_service, session_maker, user, platform, pair,
                                                balance_of):
        _, usdt = await pair()
        request = flow_request(platform.id, "deposit", usdt.id, 100, event_id="evt-deleted-log")

        first = await trading_log_service.create_trading_log(user.id, request)
        await trading_log_service.delete_trading_log(user.id, first.id)

        with pytest.raises(ConflictError) as exc_info:
            await trading_log_service.create_trading_log(user.id, request)

        assert "already processed" in exc_info.value.message
        assert await balance_of(usdt.id) == Decimal("100")
        assert len(await transactions_with_reason(session_maker, "deposit")) == 1
        assert await count(session_maker, select(func.count(TradingLog.id))) == 0
        assert await trading_log_service.list_failed_events() == []

    async def test_event_id_of_another_user(self, trading_log_service, make_user, make_platform):
        alice = await make_user()
        bob = await make_user()
        alice_platform = await make_platform(alice.id)
        bob_platform = await make_platform(bob.id)

        await trading_log_service.create_trading_log(
            alice.id,
            CreateTradingLogRequest(platform_id=alice_platform.id, type="note", source="bot",
                                    message="m", event_id="evt-shared"),
        )
        with pytest.raises(ConflictError):
            await trading_log_service.create_trading_log(
                bob.id,
                CreateTradingLogRequest(platform_id=bob_platform.id, type="note", source="bot",
                                        message="m", event_id="evt-shared"),
            )

    async def test_failed_event_retries_until_cap(self, trading_log_service, session_maker, user, platform, pair):
        _, usdt = await pair()
        request = flow_request(platform.id, "withdraw", usdt.id, 10, event_id="evt-withdraw")

        with pytest.raises(InsufficientBalanceError):
            await trading_log_service.create_trading_log(user.id, request)

        failed = await trading_log_service.list_failed_events()
        assert [(e.event_id, e.retry_count, e.status) for e in failed] == [("evt-withdraw", 1, "failed")]

        for _ in range(2):
            with pytest.raises(InsufficientBalanceError):
                await trading_log_service.create_trading_log(user.id, request)

        with pytest.raises(ConflictError) as exc_info:
            await trading_log_service.create_trading_log(user.id, request)
        assert "retry limit" in exc_info.value.message

        assert await trading_log_service.list_failed_events() == []
        async with DatabaseTransaction(session_maker) as tx:
            record = (await tx.session.execute(
                select(EventProcessing).where(EventProcessing.event_id == "evt-withdraw")
            )).scalar_one()
            assert record.retry_count == 3

    async def test_failed_event_succeeds_on_retry(self, trading_log_service, sub_account_service, user,
                                                  platform, pair, balance_of):
        _, usdt = await pair()
        request = flow_request(platform.id, "withdraw", usdt.id, 10, event_id="evt-late-funding")

        with pytest.raises(InsufficientBalanceError):
            await trading_log_service.create_trading_log(user.id, request)

        await sub_account_service.update_balance(
            user.id, usdt.id, UpdateBalanceRequest(amount=Decimal("25"), direction="credit", reason="deposit")
        )
        await trading_log_service.create_trading_log(user.id, request)

        assert await balance_of(usdt.id) == Decimal("15")
        assert await trading_log_service.list_failed_events() == []

    async def test_purge_processed_events(self, trading_log_service, user, platform):
        await trading_log_service.create_trading_log(
            user.id,
            CreateTradingLogRequest(platform_id=platform.id, type="note", source="bot",
                                    message="m", event_id="evt-old"),
        )

        kept = await trading_log_service.purge_processed_events()
        assert kept.purged == 0

        purged = await trading_log_service.purge_processed_events(utc_now() + timedelta(days=1))
        assert purged.purged == 1
