"""Application configuration via Pydantic BaseSettings."""

from __future__ import annotations

from enum import Enum
from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Environment(str, Enum):
    development = "development"
    staging = "staging"
    production = "production"


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    # Database
    DATABASE_URL: str = "sqlite+aiosqlite:///./agent_platform.db"
    DATABASE_ECHO: bool = False

    # Environment
    ENVIRONMENT: Environment = Environment.development

    # Logging
    LOG_LEVEL: str = "INFO"

    # JWT Authentication
    JWT_SECRET_KEY: str = "CHANGE-ME-IN-PRODUCTION-use-openssl-rand-hex-32"
    JWT_ALGORITHM: str = "HS256"
    JWT_ACCESS_TOKEN_EXPIRE_MINUTES: int = 60 * 24 * 7

    # CORS
    CORS_ALLOWED_ORIGINS: str = "*"

    # Kommo OAuth
    KOMMO_CLIENT_ID: str = ""
    KOMMO_CLIENT_SECRET: str = ""
    KOMMO_REDIRECT_URI: str = "http://localhost:3001/api/kommo/callback"
    KOMMO_DOMAIN: str = ""  # Account subdomain used to start the OAuth flow
    KOMMO_DEFAULT_API_DOMAIN: str = "api-g.kommo.com"

    # Kommo API pacing (published limit is 7 requests per second)
    KOMMO_RATE_LIMIT: int = 7
    KOMMO_RATE_WINDOW_SECONDS: float = 1.0
    KOMMO_REQUEST_TIMEOUT: float = 15.0
    KOMMO_MAX_RETRIES: int = 3
    KOMMO_SYNC_BATCH_DELAY: float = 1.0

    def cors_origins(self) -> list[str]:
        """Return CORS_ALLOWED_ORIGINS split into a list."""
        if self.CORS_ALLOWED_ORIGINS == "*":
            return ["*"]
        return [o.strip() for o in self.CORS_ALLOWED_ORIGINS.split(",") if o.strip()]


@lru_cache
def get_settings() -> Settings:
    """Singleton settings instance."""
    return Settings()
