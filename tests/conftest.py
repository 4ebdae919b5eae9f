"""
Shared fixtures: a throwaway SQLite database per test, the crypto envelope,
and factories for users, platforms and funded sub-accounts.
"""

import uuid
from decimal import Decimal

import pytest

from tradeledger.auth.oauth import OAuthDriver, OAuthTokens, OAuthUserInfo
from tradeledger.config.settings import OAuthSettings
from tradeledger.database.connection import (
    DatabaseTransaction,
    build_engine,
    build_session_maker,
    init_database,
)
from tradeledger.database.models import SubAccount, User, UserRole
from tradeledger.schemas import (
    CreatePlatformRequest,
    CreateSubAccountRequest,
    UpdateBalanceRequest,
)
from tradeledger.security.crypto import CryptoEnvelope
from tradeledger.services.platforms import PlatformService
from tradeledger.services.sub_accounts import SubAccountService
from tradeledger.trading_logs.service import TradingLogService

TEST_MASTER_KEY = "test-master-key-0123456789abcdefghijkl"
TEST_SIGNING_KEY = "test-signing-key-0123456789abcdefghijk"


@pytest.fixture(scope="session")
def envelope():
    return CryptoEnvelope(TEST_MASTER_KEY, TEST_SIGNING_KEY)


@pytest.fixture
async def engine(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'tradeledger.db'}")
    await init_database(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_maker(engine):
    return build_session_maker(engine)


@pytest.fixture
def platform_service(session_maker, envelope):
    return PlatformService(session_maker, envelope)


@pytest.fixture
def sub_account_service(session_maker):
    return SubAccountService(session_maker)


@pytest.fixture
def trading_log_service(session_maker):
    return TradingLogService(session_maker)


# =============================================================================
# FACTORIES
# =============================================================================

@pytest.fixture
def make_user(session_maker):
    async def factory(username=None, email=None, role=UserRole.USER.value):
        suffix = uuid.uuid4().hex[:8]
        user = User(
            id=uuid.uuid4(),
            username=username or f"trader_{suffix}",
            email=email or f"trader_{suffix}@example.com",
            role=role,
            settings={},
            info={},
        )
        async with DatabaseTransaction(session_maker) as tx:
            tx.session.add(user)
        return user

    return factory


@pytest.fixture
def make_platform(platform_service):
    async def factory(user_id, name=None, platform_type="virtual"):
        suffix = uuid.uuid4().hex[:8]
        return await platform_service.create_platform(
            user_id,
            CreatePlatformRequest(
                name=name or f"platform-{suffix}",
                type=platform_type,
                api_key=f"key-{uuid.uuid4().hex}",
                api_secret=f"secret-{uuid.uuid4().hex}",
            ),
        )

    return factory


@pytest.fixture
def make_sub_account(sub_account_service):
    async def factory(user_id, platform_id, symbol, balance="0", name=None):
        account = await sub_account_service.create_sub_account(
            user_id,
            CreateSubAccountRequest(
                platform_id=platform_id,
                name=name or f"{symbol}-{uuid.uuid4().hex[:6]}",
                symbol=symbol,
            ),
        )
        if Decimal(balance) > 0:
            await sub_account_service.update_balance(
                user_id,
                account.id,
                UpdateBalanceRequest(amount=Decimal(balance), direction="credit", reason="deposit"),
            )
            account = await sub_account_service.get_sub_account(user_id, account.id)
        return account

    return factory


@pytest.fixture
def balance_of(session_maker):
    async def read(sub_account_id):
        async with DatabaseTransaction(session_maker) as tx:
            account = await tx.session.get(SubAccount, sub_account_id)
            return Decimal(account.balance)

    return read


@pytest.fixture
async def user(make_user):
    return await make_user()


@pytest.fixture
async def platform(make_platform, user):
    return await make_platform(user.id)


# =============================================================================
# OAUTH
# =============================================================================

class StubDriver(OAuthDriver):
    """Answers with a fixed profile instead of calling a provider."""

    provider = "google"

    def __init__(self, profile: OAuthUserInfo):
        super().__init__(OAuthSettings())
        self.profile = profile

    def auth_url(self, state: str) -> str:
        return f"https://provider.test/authorize?state={state}"

    async def exchange(self, code: str) -> OAuthTokens:
        return OAuthTokens(access_token=f"access-{code}", refresh_token="provider-refresh", expires_in=3600)

    async def user_info(self, tokens: OAuthTokens) -> OAuthUserInfo:
        return self.profile


@pytest.fixture
def stub_driver():
    def build(provider_user_id="g-1", email="ada@example.com", name="Ada Lovelace", avatar_url=None):
        return StubDriver(OAuthUserInfo(
            provider="google",
            provider_user_id=provider_user_id,
            email=email,
            name=name,
            avatar_url=avatar_url,
        ))

    return build
