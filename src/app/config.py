from __future__ import annotations

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8-sig",
        case_sensitive=False,
        extra="ignore",
    )

    SUPABASE_URL: str = ""
    SUPABASE_SERVICE_ROLE_KEY: str = ""
    APP_ENV: str = "local"
    # "supabase" in deployed environments, "memory" for local runs without a database
    DOCUMENT_STORE: str = "supabase"
    API_HOST: str = "0.0.0.0"
    API_PORT: int = 8000
    FRONTEND_CORS_ORIGINS: list[str] = Field(default_factory=lambda: ["http://localhost:5173"])

    # Shared secrets for the storage/document triggers and the billing webhook
    INTERNAL_EVENTS_SECRET: str = ""
    REVENUECAT_WEBHOOK_SECRET: str = ""
    REVENUECAT_ENTITLEMENT_ID: str = "premium"


settings = Settings()
