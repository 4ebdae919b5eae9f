import uuid
from decimal import Decimal

import httpx
import pytest

from tradeledger.app import app
from tradeledger.auth.jwt_handler import JWTHandler
from tradeledger.auth.oauth import OAuthManager
from tradeledger.config.settings import JWTSettings
from tradeledger.database.connection import get_session_maker
from tradeledger.dependencies.services import get_envelope, get_jwt_handler, get_oauth_manager


JWT_SECRET = "api-test-jwt-secret-0123456789abcdef"


@pytest.fixture
def jwt_handler():
    return JWTHandler(JWTSettings(secret_key=JWT_SECRET))


@pytest.fixture
async def client(session_maker, envelope, jwt_handler, stub_driver):
    driver = stub_driver(provider_user_id="g-42", email="grace@example.com", name="Grace Hopper")
    app.dependency_overrides[get_session_maker] = lambda: session_maker
    app.dependency_overrides[get_envelope] = lambda: envelope
    app.dependency_overrides[get_jwt_handler] = lambda: jwt_handler
    app.dependency_overrides[get_oauth_manager] = lambda: OAuthManager({"google": driver})

    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()


@pytest.fixture
def bearer(jwt_handler):
    def headers(user):
        token = jwt_handler.create_access_token(user.id, user.username, user.email, user.role)
        return {"Authorization": f"Bearer {token}"}

    return headers


async def create_platform(client, headers, name="Kraken"):
    response = await client.post(
        "/api/v1/platforms",
        json={"name": name, "type": "real", "api_key": "kraken-key-abcd", "api_secret": "kraken-secret-wxyz"},
        headers=headers,
    )
    assert response.status_code == 201, response.text
    return response.json()


async def create_sub_account(client, headers, platform_id, symbol="USDT"):
    response = await client.post(
        "/api/v1/sub-accounts",
        json={"platform_id": platform_id, "name": f"{symbol}-main", "symbol": symbol},
        headers=headers,
    )
    assert response.status_code == 201, response.text
    return response.json()


class TestBasics:
    async def test_health(self, client):
        response = await client.get("/health")
        assert response.status_code == 200
        assert response.json()["database"]["connected"] is True

        assert (await client.get("/health/live")).json()["alive"] is True

    async def test_requires_credentials(self, client):
        response = await client.get("/api/v1/platforms")
        assert response.status_code == 401
        assert response.json()["error"] == "auth_invalid"

    async def test_rejects_bad_token(self, client):
        response = await client.get("/api/v1/platforms", headers={"Authorization": "Bearer not-a-jwt"})
        assert response.status_code == 401

    async def test_request_id_header(self, client, user, bearer):
        response = await client.get("/api/v1/platforms", headers=bearer(user))
        assert response.status_code == 200
        assert response.headers["X-Request-ID"]


class TestPlatformsAndLogs:
    async def test_platform_is_masked(self, client, user, bearer):
        platform = await create_platform(client, bearer(user))

        assert platform["api_key"] == "****abcd"
        assert platform["api_secret"] == "****wxyz"

        credentials = await client.get(f"/api/v1/platforms/{platform['id']}/credentials", headers=bearer(user))
        assert credentials.json()["api_key"] == "kraken-key-abcd"

    async def test_request_validation_is_400(self, client, user, bearer):
        response = await client.post("/api/v1/platforms", json={"name": "no credentials"}, headers=bearer(user))

        body = response.json()
        assert response.status_code == 400
        assert body["error"] == "validation"
        assert {f["field"] for f in body["details"]["fields"]} >= {"type", "api_key", "api_secret"}

    async def test_domain_validation_is_400(self, client, user, bearer):
        response = await client.post(
            "/api/v1/platforms",
            json={"name": "x", "type": "exchange", "api_key": "k", "api_secret": "s"},
            headers=bearer(user),
        )
        assert response.status_code == 400
        assert response.json()["details"]["field"] == "type"

    async def test_duplicate_platform_is_409(self, client, user, bearer):
        await create_platform(client, bearer(user))
        response = await client.post(
            "/api/v1/platforms",
            json={"name": "Kraken", "type": "real", "api_key": "k2", "api_secret": "s2"},
            headers=bearer(user),
        )
        assert response.status_code == 409
        assert response.json()["details"]["conflict"] == "duplicate_name"

    async def test_deposit_then_overdraw(self, client, user, bearer):
        headers = bearer(user)
        platform = await create_platform(client, headers)
        account = await create_sub_account(client, headers, platform["id"])

        deposit = await client.post(
            "/api/v1/trading-logs",
            json={
                "trading_id": platform["id"],
                "type": "deposit",
                "source": "manual",
                "message": "initial funding",
                "info": {"account_id": account["id"], "amount": 500, "currency": "USDT"},
            },
            headers=headers,
        )
        assert deposit.status_code == 201, deposit.text
        assert deposit.json()["transaction_id"]

        refreshed = await client.get(f"/api/v1/sub-accounts/{account['id']}", headers=headers)
        assert Decimal(refreshed.json()["balance"]) == Decimal("500")

        overdraw = await client.post(
            "/api/v1/trading-logs",
            json={
                "platform_id": platform["id"],
                "type": "withdraw",
                "source": "manual",
                "message": "too much",
                "info": {"account_id": account["id"], "amount": 501, "currency": "USDT"},
            },
            headers=headers,
        )
        assert overdraw.status_code == 422
        assert overdraw.json()["error"] == "insufficient_balance"

        logs = await client.get("/api/v1/trading-logs", params={"type": "deposit"}, headers=headers)
        assert logs.json()["total"] == 1

    async def test_foreign_platform_is_404(self, client, user, make_user, make_platform, bearer):
        other = await make_user()
        theirs = await make_platform(other.id)

        response = await client.get(f"/api/v1/platforms/{theirs.id}", headers=bearer(user))
        missing = await client.get(f"/api/v1/platforms/{uuid.uuid4()}", headers=bearer(user))

        assert response.status_code == missing.status_code == 404
        assert response.json()["message"] == missing.json()["message"]

    async def test_inverted_time_range(self, client, user, bearer):
        response = await client.get(
            "/api/v1/trading-logs",
            params={"start_date": "2024-02-01T00:00:00Z", "end_date": "2024-01-01T00:00:00Z"},
            headers=bearer(user),
        )
        assert response.status_code == 400
        assert response.json()["details"]["message"] == "start date/time cannot be after end date/time"


class TestAPIKeyAccess:
    async def issue(self, client, headers, permissions):
        response = await client.post(
            "/api/v1/api-keys", json={"name": "reader", "permissions": permissions}, headers=headers
        )
        assert response.status_code == 201, response.text
        return response.json()

    async def test_read_only_key(self, client, user, bearer):
        created = await self.issue(client, bearer(user), ["read"])
        key_headers = {"X-API-Key": created["key"]}

        assert created["masked_key"].endswith(created["key"][-4:])
        assert (await client.get("/api/v1/platforms", headers=key_headers)).status_code == 200

        write = await client.post(
            "/api/v1/platforms",
            json={"name": "x", "type": "real", "api_key": "k", "api_secret": "s"},
            headers=key_headers,
        )
        assert write.status_code == 403

        manage = await client.get("/api/v1/api-keys", headers=key_headers)
        assert manage.status_code == 403

    async def test_key_listing_never_shows_plaintext(self, client, user, bearer):
        created = await self.issue(client, bearer(user), ["read", "trade"])

        listed = await client.get("/api/v1/api-keys", headers=bearer(user))

        assert listed.status_code == 200
        assert created["key"] not in listed.text
        assert listed.json()[0]["permissions"] == ["read", "trade"]

    async def test_rotated_key_stops_working(self, client, user, bearer):
        created = await self.issue(client, bearer(user), ["read"])

        rotated = await client.post(f"/api/v1/api-keys/{created['id']}/rotate", headers=bearer(user))
        assert rotated.status_code == 200
        assert rotated.json()["name"] == "reader (Rotated)"

        old = await client.get("/api/v1/platforms", headers={"X-API-Key": created["key"]})
        new = await client.get("/api/v1/platforms", headers={"X-API-Key": rotated.json()["key"]})
        assert old.status_code == 401
        assert new.status_code == 200

    async def test_malformed_key(self, client):
        response = await client.get("/api/v1/platforms", headers={"X-API-Key": "usr_nope"})
        assert response.status_code == 401


class TestAdmin:
    async def test_non_admin_is_forbidden(self, client, user, bearer):
        response = await client.get("/api/v1/admin/trading-logs", headers=bearer(user))
        assert response.status_code == 403

    async def test_admin_lists_everything(self, client, make_user, bearer):
        admin = await make_user(role="admin")

        logs = await client.get("/api/v1/admin/trading-logs", headers=bearer(admin))
        events = await client.get("/api/v1/admin/events/failed", headers=bearer(admin))

        assert logs.status_code == 200
        assert logs.json()["total"] == 0
        assert events.json() == []


class TestAuthFlow:
    async def test_login_callback_and_refresh(self, client):
        login = await client.post("/api/v1/auth/login", json={"provider": "google"})
        assert login.status_code == 200
        state = login.json()["state"]

        callback = await client.post(
            "/api/v1/auth/callback",
            json={"provider": "google", "code": "abc", "state": state},
            headers={"Cookie": f"oauth_state={state}"},
        )
        assert callback.status_code == 200, callback.text
        tokens = callback.json()
        assert tokens["user"]["username"] == "GraceHopper"

        me = await client.get("/api/v1/users/me", headers={"Authorization": f"Bearer {tokens['access_token']}"})
        assert me.json()["email"] == "grace@example.com"

        refreshed = await client.post("/api/v1/auth/refresh", json={"refresh_token": tokens["refresh_token"]})
        assert refreshed.status_code == 200
        assert refreshed.json()["refresh_token"] == tokens["refresh_token"]

    async def test_callback_without_state_cookie(self, client):
        client.cookies.clear()
        response = await client.post(
            "/api/v1/auth/callback", json={"provider": "google", "code": "abc", "state": "guess"}
        )
        assert response.status_code == 401
