from __future__ import annotations

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application configuration read from environment variables."""

    # General
    api_bearer_token: str = "testtoken"
    admin_bearer_token: str = "admintoken"
    api_basic_username: str = "docs"
    api_basic_password: str = "docs"
    app_env: str = "local"
    app_version: str = "0.1.0"
    default_currency: str = "AED"
    site_url: str = "http://localhost:3000"
    provider_timeout_seconds: float = 15.0
    recovery_window_hours: int = 168

    # Stripe config
    stripe_secret_key: str = ""
    stripe_webhook_secret: str = ""
    stripe_webhook_tolerance: int = 300

    # Tabby config
    tabby_secret_key: str = ""
    tabby_base_url: str = "https://api.tabby.ai"
    tabby_merchant_code: str = ""
    tabby_webhook_secret: str = ""
    tabby_webhook_header: str = "X-Tabby-Signature"

    # Database (PostgreSQL)
    db_host: str = ""
    db_port: int = 5432
    db_user: str = ""
    db_password: str = ""
    db_name: str = ""
    db_schema: str = "storefront"
    db_pool_max: int = 10

    @property
    def db_enabled(self) -> bool:
        return bool(self.db_host and self.db_user and self.db_name)

    @property
    def db_dsn(self) -> str:
        if not self.db_enabled:
            return ""
        return f"postgresql://{self.db_user}:{self.db_password}@{self.db_host}:{self.db_port}/{self.db_name}"

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )
