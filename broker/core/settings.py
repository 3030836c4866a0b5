"""Application settings loaded from environment variables."""

from pydantic_settings import BaseSettings, SettingsConfigDict

TRANSACTION_TTL_DEFAULT = 3600
ACCESS_TOKEN_TTL_DEFAULT = 3600
REFRESH_TOKEN_TTL_DEFAULT = 2_592_000
AUTH_CODE_TTL_DEFAULT = 60
HTTP_TIMEOUT_DEFAULT = 10.0
DB_POOL_SIZE_DEFAULT = 5
DB_MAX_OVERFLOW_DEFAULT = 10
DB_PORT_DEFAULT = 5432

DEVELOPMENT = "development"


class DatabaseSettings(BaseSettings):
    """PostgreSQL connection settings."""

    model_config = SettingsConfigDict(env_prefix="BROKER_DB_")

    host: str = "localhost"
    port: int = DB_PORT_DEFAULT
    user: str = "broker"
    password: str = "broker"
    database: str = "broker"
    pool_size: int = DB_POOL_SIZE_DEFAULT
    max_overflow: int = DB_MAX_OVERFLOW_DEFAULT

    @property
    def async_url(self) -> str:
        """Build async PostgreSQL connection URL."""
        return (
            f"postgresql+asyncpg://{self.user}:{self.password}"
            f"@{self.host}:{self.port}/{self.database}"
        )


class BrokerSettings(BaseSettings):
    """Broker-side settings: public URL, cookies, transactions, issued tokens."""

    model_config = SettingsConfigDict(env_prefix="BROKER_")

    public_url: str = "http://localhost:8000"
    environment: str = "production"
    cors_origins: str = ""
    transaction_ttl: int = TRANSACTION_TTL_DEFAULT
    transaction_backend: str = "memory"
    sealing_key: str = ""
    access_token_ttl: int = ACCESS_TOKEN_TTL_DEFAULT
    refresh_token_ttl: int = REFRESH_TOKEN_TTL_DEFAULT
    auth_code_ttl: int = AUTH_CODE_TTL_DEFAULT
    log_level: str = "INFO"

    @property
    def is_development(self) -> bool:
        """True when running locally over plain HTTP."""
        return self.environment.lower() == DEVELOPMENT

    @property
    def callback_url(self) -> str:
        """Redirect URI registered with the upstream identity provider."""
        return f"{self.public_url.rstrip('/')}/callback"

    def get_cors_origin_list(self) -> list[str]:
        """Parse comma-separated CORS origins."""
        if not self.cors_origins:
            return []
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]


class UpstreamSettings(BaseSettings):
    """Upstream OIDC identity provider settings."""

    model_config = SettingsConfigDict(env_prefix="UPSTREAM_")

    issuer_url: str = ""
    client_id: str = ""
    client_secret: str = ""
    audience: str = ""
    scope: str = "openid email profile offline_access"
    token_auth_method: str = "client_secret_post"
    id_token_algorithms: list[str] = ["RS256"]
    http_timeout: float = HTTP_TIMEOUT_DEFAULT

    def validate_required(self) -> None:
        """Raise ValueError listing any missing mandatory settings."""
        required = {
            "issuer_url": self.issuer_url,
            "client_id": self.client_id,
            "client_secret": self.client_secret,
        }
        missing = [name for name, value in required.items() if not value]
        if missing:
            raise ValueError(
                f"Missing required upstream configuration: {', '.join(missing)}"
            )
