import uuid
from decimal import Decimal

import pydantic
import pytest
from sqlalchemy import select

from tradeledger.database.connection import DatabaseTransaction
from tradeledger.database.models import Transaction
from tradeledger.errors import (
    ConflictError,
    ConflictKind,
    IntegrityViolationError,
    NotFoundError,
    ValidationError,
)
from tradeledger.schemas import (
    CreatePlatformRequest,
    CreateSubAccountRequest,
    UpdateBalanceRequest,
    UpdatePlatformRequest,
    UpdateSubAccountRequest,
    UpdateUserRequest,
)
from tradeledger.services.platforms import MAX_PLATFORMS_PER_USER
from tradeledger.services.users import UserService


def platform_request(name="Binance", api_key="binance-key-0001", api_secret="binance-secret-0001",
                     platform_type="real"):
    return CreatePlatformRequest(name=name, type=platform_type, api_key=api_key, api_secret=api_secret)


@pytest.fixture
def user_service(session_maker):
    return UserService(session_maker)


class TestPlatforms:
    async def test_create_masks_credentials(self, platform_service, user):
        platform = await platform_service.create_platform(user.id, platform_request())

        assert platform.api_key == "****0001"
        assert platform.api_secret == "****0001"
        assert platform.status == "active"
        assert platform.info["created_by"] == "api"

        credentials = await platform_service.get_credentials(user.id, platform.id)
        assert credentials.api_key == "binance-key-0001"
        assert credentials.api_secret == "binance-secret-0001"

    async def test_unknown_type(self, platform_service, user):
        with pytest.raises(ValidationError) as exc_info:
            await platform_service.create_platform(user.id, platform_request(platform_type="exchange"))
        assert exc_info.value.field == "type"

    @pytest.mark.parametrize(
        "second, kind",
        [
            ({"api_key": "other-key", "api_secret": "other-secret"}, ConflictKind.DUPLICATE_NAME),
            ({"name": "Other", "api_secret": "other-secret"}, ConflictKind.DUPLICATE_API_KEY),
            ({"name": "Other", "api_key": "other-key"}, ConflictKind.DUPLICATE_API_SECRET),
        ],
    )
    async def test_duplicates_conflict(self, platform_service, user, second, kind):
        await platform_service.create_platform(user.id, platform_request())

        with pytest.raises(ConflictError) as exc_info:
            await platform_service.create_platform(user.id, platform_request(**second))
        assert exc_info.value.conflict_kind is kind
        assert len(await platform_service.list_platforms(user.id)) == 1

    async def test_duplicates_are_per_user(self, platform_service, user, make_user):
        other = await make_user()
        await platform_service.create_platform(user.id, platform_request())
        await platform_service.create_platform(other.id, platform_request())

    async def test_name_reusable_after_delete(self, platform_service, user):
        first = await platform_service.create_platform(user.id, platform_request())
        await platform_service.delete_platform(user.id, first.id)

        again = await platform_service.create_platform(user.id, platform_request())

        assert again.id != first.id
        with pytest.raises(NotFoundError):
            await platform_service.get_platform(user.id, first.id)

    async def test_platform_limit(self, platform_service, user):
        created = []
        for n in range(MAX_PLATFORMS_PER_USER):
            created.append(await platform_service.create_platform(
                user.id, platform_request(name=f"p{n}", api_key=f"key-{n}", api_secret=f"secret-{n}")
            ))

        with pytest.raises(ValidationError) as exc_info:
            await platform_service.create_platform(user.id, platform_request(name="one too many"))
        assert exc_info.value.error_type == "limit"

        await platform_service.delete_platform(user.id, created[0].id)
        await platform_service.create_platform(user.id, platform_request(name="one too many"))

    async def test_delete_blocked_by_sub_accounts(self, platform_service, sub_account_service, user,
                                                  platform, make_sub_account):
        account = await make_sub_account(user.id, platform.id, "USDT")

        with pytest.raises(IntegrityViolationError):
            await platform_service.delete_platform(user.id, platform.id)

        await sub_account_service.delete_sub_account(user.id, account.id)
        await platform_service.delete_platform(user.id, platform.id)
        assert await platform_service.list_platforms(user.id) == []

    async def test_update(self, platform_service, user):
        platform = await platform_service.create_platform(user.id, platform_request())

        updated = await platform_service.update_platform(
            user.id, platform.id,
            UpdatePlatformRequest(status="inactive", api_key="rotated-key-9999", info={"region": "eu"}),
        )

        assert updated.status == "inactive"
        assert updated.api_key == "****9999"
        assert updated.info["region"] == "eu"
        assert updated.info["created_by"] == "api"
        credentials = await platform_service.get_credentials(user.id, platform.id)
        assert credentials.api_key == "rotated-key-9999"

    async def test_update_rejects_unknown_status(self, platform_service, user, platform):
        with pytest.raises(ValidationError) as exc_info:
            await platform_service.update_platform(user.id, platform.id, UpdatePlatformRequest(status="paused"))
        assert exc_info.value.field == "status"

    async def test_foreign_platform(self, platform_service, user, make_user, make_platform):
        other = await make_user()
        theirs = await make_platform(other.id)

        with pytest.raises(NotFoundError):
            await platform_service.get_credentials(user.id, theirs.id)
        with pytest.raises(NotFoundError):
            await platform_service.update_platform(user.id, theirs.id, UpdatePlatformRequest(name="mine"))
        with pytest.raises(NotFoundError):
            await platform_service.delete_platform(user.id, theirs.id)


class TestSubAccounts:
    async def test_create_and_list(self, sub_account_service, user, platform, make_platform):
        other_platform = await make_platform(user.id)
        await sub_account_service.create_sub_account(
            user.id, CreateSubAccountRequest(platform_id=platform.id, name="spot", symbol="BTC")
        )
        await sub_account_service.create_sub_account(
            user.id, CreateSubAccountRequest(trading_id=other_platform.id, name="spot", symbol="BTC")
        )
        await sub_account_service.create_sub_account(
            user.id, CreateSubAccountRequest(platform_id=platform.id, name="cash", symbol="USDT")
        )

        assert len(await sub_account_service.list_sub_accounts(user.id)) == 3
        assert len(await sub_account_service.list_sub_accounts(user.id, platform.id)) == 2
        btc = await sub_account_service.list_by_symbol(user.id, "BTC")
        assert {a.platform_id for a in btc} == {platform.id, other_platform.id}
        assert all(a.balance == Decimal("0") for a in btc)

    async def test_duplicate_name_on_platform(self, sub_account_service, user, platform):
        request = CreateSubAccountRequest(platform_id=platform.id, name="spot", symbol="BTC")
        await sub_account_service.create_sub_account(user.id, request)

        with pytest.raises(ConflictError) as exc_info:
            await sub_account_service.create_sub_account(user.id, request)
        assert exc_info.value.conflict_kind is ConflictKind.DUPLICATE_SUBACCOUNT_NAME

    async def test_foreign_platform(self, sub_account_service, user, make_user, make_platform):
        theirs = await make_platform((await make_user()).id)
        with pytest.raises(NotFoundError):
            await sub_account_service.create_sub_account(
                user.id, CreateSubAccountRequest(platform_id=theirs.id, name="spot", symbol="BTC")
            )

    async def test_delete_requires_zero_balance(self, sub_account_service, user, platform, make_sub_account):
        account = await make_sub_account(user.id, platform.id, "USDT", balance="0.00000001")

        with pytest.raises(IntegrityViolationError):
            await sub_account_service.delete_sub_account(user.id, account.id)

        empty = await make_sub_account(user.id, platform.id, "BTC")
        await sub_account_service.delete_sub_account(user.id, empty.id)
        with pytest.raises(NotFoundError):
            await sub_account_service.get_sub_account(user.id, empty.id)

    async def test_update(self, sub_account_service, user, platform, make_sub_account):
        account = await make_sub_account(user.id, platform.id, "USDT")

        updated = await sub_account_service.update_sub_account(
            user.id, account.id, UpdateSubAccountRequest(name="renamed", info={"note": "x"})
        )

        assert updated.name == "renamed"
        assert updated.info["note"] == "x"
        assert updated.symbol == "USDT"

    async def test_manual_balance_update(self, sub_account_service, user, platform, make_sub_account):
        account = await make_sub_account(user.id, platform.id, "USDT", balance="10")

        result = await sub_account_service.update_balance(
            user.id, account.id, UpdateBalanceRequest(amount=Decimal("2.5"), direction="debit", reason="fee")
        )

        assert result.sub_account.balance == Decimal("7.5")
        assert result.transaction.closing_balance == Decimal("7.5")
        assert result.transaction.reason == "fee"

    @pytest.mark.parametrize("amount", ["1.123456789", "0.000000001"])
    def test_balance_request_rejects_extra_places(self, amount):
        with pytest.raises(pydantic.ValidationError):
            UpdateBalanceRequest(amount=Decimal(amount), direction="credit", reason="adjust")

    @pytest.mark.parametrize("amount", ["1.123456789", "0.000000001"])
    async def test_ledger_rejects_extra_places(self, sub_account_service, session_maker, user, platform,
                                               make_sub_account, balance_of, amount):
        account = await make_sub_account(user.id, platform.id, "USDT", balance="10")
        unchecked = UpdateBalanceRequest.model_construct(
            amount=Decimal(amount), direction="credit", reason="adjust", info=None
        )

        with pytest.raises(ValidationError) as exc_info:
            await sub_account_service.update_balance(user.id, account.id, unchecked)

        assert exc_info.value.field == "amount"
        assert exc_info.value.error_type == "precision"
        assert await balance_of(account.id) == Decimal("10")
        async with DatabaseTransaction(session_maker) as tx:
            reasons = (await tx.session.execute(
                select(Transaction.reason).where(Transaction.sub_account_id == account.id)
            )).scalars().all()
        assert reasons == ["deposit"]

    async def test_eight_places_are_kept_exactly(self, sub_account_service, user, platform, make_sub_account):
        account = await make_sub_account(user.id, platform.id, "BTC")

        result = await sub_account_service.update_balance(
            user.id, account.id,
            UpdateBalanceRequest(amount=Decimal("0.12345678"), direction="credit", reason="adjust"),
        )

        assert result.transaction.amount == Decimal("0.12345678")
        assert result.sub_account.balance == Decimal("0.12345678")


class TestUsers:
    async def test_update_merges_settings(self, user_service, make_user):
        user = await make_user()
        await user_service.update_current_user(
            user.id, UpdateUserRequest(settings={"ui": {"theme": "dark", "lang": "en"}})
        )

        updated = await user_service.update_current_user(
            user.id,
            UpdateUserRequest(username="new_name", settings={"ui": {"lang": "de"}}, info={"tier": "pro"}),
        )

        assert updated.username == "new_name"
        assert updated.settings == {"ui": {"theme": "dark", "lang": "de"}}
        assert updated.info["tier"] == "pro"

    async def test_username_conflict(self, user_service, make_user):
        await make_user(username="taken_name")
        user = await make_user()

        with pytest.raises(ConflictError) as exc_info:
            await user_service.update_current_user(user.id, UpdateUserRequest(username="taken_name"))
        assert exc_info.value.conflict_kind is ConflictKind.DUPLICATE_USERNAME

    @pytest.mark.parametrize(
        "request_kwargs, field",
        [({"username": "bad name"}, "username"), ({"avatar": "not a url"}, "avatar")],
    )
    async def test_profile_validation(self, user_service, user, request_kwargs, field):
        with pytest.raises(ValidationError) as exc_info:
            await user_service.update_current_user(user.id, UpdateUserRequest(**request_kwargs))
        assert exc_info.value.field == field

    async def test_stats(self, user_service, user, platform, make_platform, make_sub_account):
        second = await make_platform(user.id)
        await make_sub_account(user.id, platform.id, "USDT", balance="100")
        await make_sub_account(user.id, second.id, "USDT", balance="50.5")
        await make_sub_account(user.id, second.id, "BTC")

        stats = await user_service.get_user_stats(user.id)

        assert stats.total_platforms == stats.active_platforms == 2
        assert stats.total_sub_accounts == 3
        assert stats.total_transactions == 2
        assert stats.total_trading_logs == 0
        assert stats.balances == {"USDT": Decimal("150.5"), "BTC": Decimal("0")}

    async def test_disable(self, user_service, user):
        await user_service.disable_user(user.id)

        with pytest.raises(NotFoundError):
            await user_service.get_current_user(user.id)
        assert (await user_service.list_users()).total == 0

    async def test_list_users(self, user_service, make_user):
        for _ in range(3):
            await make_user()

        page = await user_service.list_users(limit=2)
        assert page.total == 3
        assert len(page.items) == 2
        assert page.has_more

    async def test_unknown_user(self, user_service):
        with pytest.raises(NotFoundError):
            await user_service.get_user_by_id(uuid.uuid4())
