"""
TradeLedger Configuration Settings
Environment-driven settings, one group per concern, cached behind get_settings().
"""

from functools import lru_cache
from typing import List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class DatabaseSettings(BaseSettings):
    """Database configuration settings."""
    model_config = SettingsConfigDict(env_prefix="DB_")

    host: str = Field(default="localhost", description="Database host")
    port: int = Field(default=5432, description="Database port")
    name: str = Field(default="tradeledger", description="Database name")
    user: str = Field(default="tradeledger", description="Database user")
    password: str = Field(default="", description="Database password")
    url: Optional[str] = Field(default=None, description="Full async URL, overrides host/port/name")

    # Connection pool settings
    pool_size: int = Field(default=20, description="Connection pool size")
    max_overflow: int = Field(default=10, description="Max overflow connections")
    pool_timeout: int = Field(default=30, description="Pool timeout in seconds")
    pool_recycle: int = Field(default=1800, description="Connection recycle time")
    echo: bool = Field(default=False, description="Echo SQL statements")

    # Transient failure handling
    max_retries: int = Field(default=3, description="Retries for transient failures on idempotent paths")

    @property
    def async_url(self) -> str:
        """Build async database URL."""
        if self.url:
            return self.url
        return f"postgresql+asyncpg://{self.user}:{self.password}@{self.host}:{self.port}/{self.name}"


class SecuritySettings(BaseSettings):
    """Cryptographic keys and API key format."""
    model_config = SettingsConfigDict(env_prefix="SECURITY_")

    master_key: str = Field(
        default="change-me-master-key-0123456789abcdef",
        description="Master key for credential encryption (>= 32 chars)"
    )
    signing_key: str = Field(
        default="change-me-signing-key-0123456789abcdef",
        description="Signing key for keyed hashes (>= 32 chars)"
    )
    api_key_prefix: str = Field(default="usr_", description="User API key prefix")
    api_key_bytes: int = Field(default=32, description="Random bytes per API key")
    mask_visible_chars: int = Field(default=4, description="Trailing characters left visible when masking")
    max_decimal_places: int = Field(default=8, description="Max fractional digits for monetary fields")

    @field_validator("master_key", "signing_key")
    @classmethod
    def validate_key_length(cls, v: str) -> str:
        if len(v) < 32:
            raise ValueError("security keys must be at least 32 characters")
        return v

    @field_validator("api_key_bytes")
    @classmethod
    def validate_key_entropy(cls, v: int) -> int:
        if v < 32:
            raise ValueError("API keys need at least 32 random bytes")
        return v


class JWTSettings(BaseSettings):
    """JWT authentication settings."""
    model_config = SettingsConfigDict(env_prefix="JWT_")

    secret_key: str = Field(default="change-me-jwt-secret-0123456789abcdef", description="HS256 signing secret")
    algorithm: str = Field(default="HS256", description="JWT algorithm")
    access_token_expire_seconds: int = Field(default=3600, description="Access token expiry")
    refresh_token_expire_days: int = Field(default=7, description="Refresh token expiry")

    @field_validator("secret_key")
    @classmethod
    def validate_secret_key(cls, v: str) -> str:
        if len(v) < 32:
            raise ValueError("JWT secret key must be at least 32 characters")
        return v


class OAuthSettings(BaseSettings):
    """OAuth provider credentials."""
    model_config = SettingsConfigDict(env_prefix="OAUTH_")

    google_client_id: str = Field(default="", description="Google client ID")
    google_client_secret: str = Field(default="", description="Google client secret")
    google_redirect_uri: str = Field(
        default="http://localhost:8000/api/v1/auth/callback",
        description="Google redirect URI"
    )
    wechat_app_id: str = Field(default="", description="WeChat app ID")
    wechat_app_secret: str = Field(default="", description="WeChat app secret")
    wechat_redirect_uri: str = Field(
        default="http://localhost:8000/api/v1/auth/callback",
        description="WeChat redirect URI"
    )
    http_timeout: float = Field(default=10.0, description="Provider HTTP timeout in seconds")


class EventSettings(BaseSettings):
    """External event idempotency settings."""
    model_config = SettingsConfigDict(env_prefix="EVENTS_")

    max_retries: int = Field(default=3, description="Attempts allowed for a failed event id")
    retention_days: int = Field(default=30, description="Days to keep processed event records")


class QuerySettings(BaseSettings):
    """List/query defaults."""
    model_config = SettingsConfigDict(env_prefix="QUERY_")

    default_limit: int = Field(default=100, description="Default page size")
    max_limit: int = Field(default=1000, description="Largest accepted page size")


class LoggingSettings(BaseSettings):
    """Logging configuration settings."""
    model_config = SettingsConfigDict(env_prefix="LOG_")

    level: str = Field(default="INFO", description="Log level")
    format: str = Field(
        default="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
        description="Log format"
    )
    json_format: bool = Field(default=True, description="Use JSON format for logs")


class ApplicationSettings(BaseSettings):
    """Main application settings aggregating all sub-settings."""
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    # Application info
    app_name: str = Field(default="TradeLedger", description="Application name")
    app_version: str = Field(default="1.0.0", description="Application version")
    debug: bool = Field(default=False, description="Debug mode")
    environment: str = Field(default="development", description="Environment (development/staging/production)")

    # Server settings
    host: str = Field(default="0.0.0.0", description="Server host")
    port: int = Field(default=8000, description="Server port")

    # CORS settings
    cors_origins: List[str] = Field(default=["*"], description="Allowed CORS origins")

    # Sub-settings
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    security: SecuritySettings = Field(default_factory=SecuritySettings)
    jwt: JWTSettings = Field(default_factory=JWTSettings)
    oauth: OAuthSettings = Field(default_factory=OAuthSettings)
    events: EventSettings = Field(default_factory=EventSettings)
    query: QuerySettings = Field(default_factory=QuerySettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)

    @field_validator("cors_origins", mode="before")
    @classmethod
    def parse_cors_origins(cls, v):
        """Parse CORS origins from string or list."""
        if isinstance(v, str):
            return [origin.strip() for origin in v.split(",")]
        return v


@lru_cache()
def get_settings() -> ApplicationSettings:
    """
    Get cached application settings.

    Returns:
        ApplicationSettings: The application settings instance.
    """
    return ApplicationSettings()


# Export settings instance
settings = get_settings()
