"""
TradeLedger OAuth2 Integration
==============================
Google and WeChat OAuth drivers.

Each driver builds the authorization URL, exchanges the callback code for
provider tokens and fetches the provider profile. The state parameter is
opaque here; the auth service generates and checks it.
"""

import logging
import secrets
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, Optional
from urllib.parse import urlencode

import httpx

from ..config.settings import OAuthSettings, settings
from ..database.models import OAuthProvider
from ..errors import AuthError, TransientError, ValidationError
from ..utils.helpers import utc_now

logger = logging.getLogger(__name__)

PROVIDERS = tuple(p.value for p in OAuthProvider)


@dataclass
class OAuthUserInfo:
    """Standardized OAuth user information"""
    provider: str
    provider_user_id: str
    email: str
    name: Optional[str] = None
    avatar_url: Optional[str] = None
    raw_data: Dict[str, Any] = field(default_factory=dict)


@dataclass
class OAuthTokens:
    """OAuth tokens from provider"""
    access_token: str
    refresh_token: Optional[str] = None
    expires_in: Optional[int] = None
    token_type: str = "bearer"
    scope: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    def expires_at(self, now: Optional[datetime] = None) -> Optional[datetime]:
        if not self.expires_in:
            return None
        return (now or utc_now()) + timedelta(seconds=int(self.expires_in))


def generate_state() -> str:
    """Random CSRF state for one login round trip."""
    return secrets.token_urlsafe(32)


# ============================================================================
# Drivers
# ============================================================================

class OAuthDriver(ABC):
    """Provider driver: authorization URL, code exchange, profile fetch."""

    provider: str = ""

    def __init__(self, config: Optional[OAuthSettings] = None, client: Optional[httpx.AsyncClient] = None):
        self.config = config or settings.oauth
        self._client = client

    @abstractmethod
    def auth_url(self, state: str) -> str:
        ...

    @abstractmethod
    async def exchange(self, code: str) -> OAuthTokens:
        ...

    @abstractmethod
    async def user_info(self, tokens: OAuthTokens) -> OAuthUserInfo:
        ...

    async def _request(self, method: str, url: str, **kwargs) -> Dict[str, Any]:
        """
        Send one request to the provider and return the decoded JSON body.

        Raises:
            TransientError: Network failure or provider 5xx.
            AuthError: Any other non-200 answer.
        """
        try:
            if self._client is not None:
                response = await self._client.request(method, url, **kwargs)
            else:
                async with httpx.AsyncClient(timeout=self.config.http_timeout) as client:
                    response = await client.request(method, url, **kwargs)
        except httpx.TransportError as e:
            logger.warning(f"{self.provider} OAuth request failed: {e}")
            raise TransientError(f"{self.provider} provider unreachable") from e

        if response.status_code >= 500:
            raise TransientError(f"{self.provider} provider returned status {response.status_code}")
        if response.status_code != 200:
            logger.warning(f"{self.provider} OAuth request rejected with status {response.status_code}")
            raise AuthError(f"{self.provider} provider returned status {response.status_code}")

        try:
            return response.json()
        except ValueError as e:
            raise AuthError(f"invalid response from {self.provider} provider") from e


class GoogleOAuthHandler(OAuthDriver):
    """Google OAuth2 authentication handler"""

    provider = OAuthProvider.GOOGLE.value

    AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
    TOKEN_URL = "https://oauth2.googleapis.com/token"
    USERINFO_URL = "https://www.googleapis.com/oauth2/v2/userinfo"

    SCOPES = [
        "https://www.googleapis.com/auth/userinfo.email",
        "https://www.googleapis.com/auth/userinfo.profile",
    ]

    def auth_url(self, state: str) -> str:
        params = {
            "client_id": self.config.google_client_id,
            "redirect_uri": self.config.google_redirect_uri,
            "response_type": "code",
            "scope": " ".join(self.SCOPES),
            "state": state,
            "access_type": "offline",
        }
        return f"{self.AUTH_URL}?{urlencode(params)}"

    async def exchange(self, code: str) -> OAuthTokens:
        data = await self._request(
            "POST",
            self.TOKEN_URL,
            data={
                "client_id": self.config.google_client_id,
                "client_secret": self.config.google_client_secret,
                "code": code,
                "grant_type": "authorization_code",
                "redirect_uri": self.config.google_redirect_uri,
            },
        )
        if not data.get("access_token"):
            raise AuthError("google provider returned no access token")
        return OAuthTokens(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token"),
            expires_in=data.get("expires_in"),
            token_type=data.get("token_type", "bearer"),
            scope=data.get("scope"),
        )

    async def user_info(self, tokens: OAuthTokens) -> OAuthUserInfo:
        data = await self._request(
            "GET",
            self.USERINFO_URL,
            headers={"Authorization": f"Bearer {tokens.access_token}"},
        )
        if not data.get("id") or not data.get("email"):
            raise AuthError("incomplete google user information")
        return OAuthUserInfo(
            provider=self.provider,
            provider_user_id=str(data["id"]),
            email=data["email"],
            name=data.get("name"),
            avatar_url=data.get("picture"),
            raw_data=data,
        )


class WeChatOAuthHandler(OAuthDriver):
    """WeChat OAuth2 handler. WeChat has no email; one is derived from the openid."""

    provider = OAuthProvider.WECHAT.value

    AUTH_URL = "https://open.weixin.qq.com/connect/oauth2/authorize"
    TOKEN_URL = "https://api.weixin.qq.com/sns/oauth2/access_token"
    USERINFO_URL = "https://api.weixin.qq.com/sns/userinfo"
    EMAIL_DOMAIN = "wechat.local"

    def auth_url(self, state: str) -> str:
        params = {
            "appid": self.config.wechat_app_id,
            "redirect_uri": self.config.wechat_redirect_uri,
            "response_type": "code",
            "scope": "snsapi_userinfo",
            "state": state,
        }
        return f"{self.AUTH_URL}?{urlencode(params)}#wechat_redirect"

    async def exchange(self, code: str) -> OAuthTokens:
        data = await self._request(
            "GET",
            self.TOKEN_URL,
            params={
                "appid": self.config.wechat_app_id,
                "secret": self.config.wechat_app_secret,
                "code": code,
                "grant_type": "authorization_code",
            },
        )
        # WeChat reports errors with HTTP 200
        if data.get("errcode"):
            raise AuthError(f"wechat API error {data['errcode']}: {data.get('errmsg', '')}")
        if not data.get("access_token") or not data.get("openid"):
            raise AuthError("wechat provider returned an incomplete token")
        return OAuthTokens(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token"),
            expires_in=data.get("expires_in"),
            scope=data.get("scope"),
            extra={"openid": data["openid"]},
        )

    async def user_info(self, tokens: OAuthTokens) -> OAuthUserInfo:
        openid = tokens.extra.get("openid")
        if not openid:
            raise AuthError("missing openid in wechat token")
        data = await self._request(
            "GET",
            self.USERINFO_URL,
            params={"access_token": tokens.access_token, "openid": openid, "lang": "zh_CN"},
        )
        if data.get("errcode"):
            raise AuthError(f"wechat API error {data['errcode']}: {data.get('errmsg', '')}")
        if not data.get("openid"):
            raise AuthError("incomplete wechat user information")
        return OAuthUserInfo(
            provider=self.provider,
            provider_user_id=data["openid"],
            email=f"{data['openid']}@{self.EMAIL_DOMAIN}",
            name=data.get("nickname"),
            avatar_url=data.get("headimgurl"),
            raw_data=data,
        )


# ============================================================================
# Registry
# ============================================================================

class OAuthManager:
    """Dispatches to the driver registered for a provider name."""

    def __init__(self, drivers: Optional[Dict[str, OAuthDriver]] = None):
        if drivers is None:
            drivers = {
                OAuthProvider.GOOGLE.value: GoogleOAuthHandler(),
                OAuthProvider.WECHAT.value: WeChatOAuthHandler(),
            }
        self.drivers = drivers

    def driver(self, provider: str) -> OAuthDriver:
        driver = self.drivers.get(provider)
        if driver is None:
            raise ValidationError("provider", f"must be one of {', '.join(PROVIDERS)}")
        return driver

    def auth_url(self, provider: str, state: str) -> str:
        return self.driver(provider).auth_url(state)

    async def exchange(self, provider: str, code: str) -> OAuthTokens:
        return await self.driver(provider).exchange(code)

    async def user_info(self, provider: str, tokens: OAuthTokens) -> OAuthUserInfo:
        return await self.driver(provider).user_info(tokens)


__all__ = [
    "OAuthUserInfo",
    "OAuthTokens",
    "OAuthDriver",
    "GoogleOAuthHandler",
    "WeChatOAuthHandler",
    "OAuthManager",
    "generate_state",
    "PROVIDERS",
]
