from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.
    Follows 12-factor app configuration principles.

    Every external collaborator is optional: when its settings are absent the
    service boots with in-memory or synthetic backends and reports the
    collaborator as not configured on /health.
    """

    # env_file is only used as fallback, env vars take precedence
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_ignore_empty=True,
    )

    # Database Configuration
    DATABASE_URL: str = "sqlite:///./bank_token.db"

    # Session cache - in-memory store is used when unset
    REDIS_URL: Optional[str] = None
    SESSION_TTL_SECONDS: int = 3600

    # Logging Configuration
    LOG_LEVEL: str = "INFO"

    # Public base URL used for aggregator callbacks
    BASE_URL: Optional[str] = None

    # Phone normalization
    DEFAULT_COUNTRY_CODE: str = "55"

    # Bank aggregator (Pluggy)
    PLUGGY_API_URL: str = "https://api.pluggy.ai"
    PLUGGY_CONNECT_URL: str = "https://connect.pluggy.ai"
    PLUGGY_CLIENT_ID: Optional[str] = None
    PLUGGY_CLIENT_SECRET: Optional[str] = None
    PLUGGY_WEBHOOK_SECRET: Optional[str] = None
    PLUGGY_TIMEOUT_SECONDS: float = 20.0

    # Messaging channel (WhatsApp-style outbound API)
    WHATSAPP_API_URL: Optional[str] = None
    WHATSAPP_API_KEY: Optional[str] = None
    AUTH_VERIFY_URL: str = "https://auth.yourdomain.com/verify"
    AUTH_TOKEN_TTL_SECONDS: int = 300

    # Ledger
    RPC_ENDPOINT: Optional[str] = None
    PRIVATE_KEY: Optional[str] = None
    ORACLE_UPDATE_KEY: Optional[str] = None
    ORACLE_ADDRESS: Optional[str] = None
    FACTORY_ADDRESS: Optional[str] = None
    TOKEN_ADDRESS: Optional[str] = None
    ENABLE_ONCHAIN_DEPLOY: bool = False
    TX_CONFIRMATION_TIMEOUT_SECONDS: float = 120.0

    # Oracle polling
    BALANCE_POLL_INTERVAL_SECONDS: float = 600.0

    @property
    def pluggy_configured(self) -> bool:
        return bool(self.PLUGGY_CLIENT_ID and self.PLUGGY_CLIENT_SECRET)

    @property
    def oracle_configured(self) -> bool:
        return bool(self.RPC_ENDPOINT and self.ORACLE_UPDATE_KEY and self.ORACLE_ADDRESS)

    @property
    def messaging_configured(self) -> bool:
        return bool(self.WHATSAPP_API_URL)


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Uses lru_cache to avoid reading .env file on every request.
    """
    return Settings()


# Global settings instance
settings = get_settings()
