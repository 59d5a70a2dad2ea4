from pydantic_settings import BaseSettings
from pydantic import field_validator, model_validator
from functools import lru_cache
from typing import Optional


WEAK_SECRET_KEYS = {
    "development-secret-key-change-in-production",
    "changeme",
    "secret",
    "password",
    "dev",
    "test",
}


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database
    DATABASE_URL: str = "postgresql+asyncpg://localhost:5432/pos_sales_sync"

    @field_validator('DATABASE_URL', mode='before')
    @classmethod
    def convert_database_url(cls, v: str) -> str:
        """Convert postgresql:// to postgresql+asyncpg:// for async support."""
        if v and v.startswith('postgresql://'):
            return v.replace('postgresql://', 'postgresql+asyncpg://', 1)
        return v

    # Auth
    SECRET_KEY: str = "development-secret-key-change-in-production"
    ALGORITHM: str = "HS256"

    # CORS / OAuth redirect target
    FRONTEND_URL: str = "http://localhost:3000"

    # Credential encryption (AES-256-GCM, 32 bytes hex-encoded)
    POS_ENCRYPTION_KEY: str | None = None

    # Square
    SQUARE_CLIENT_ID: str | None = None
    SQUARE_CLIENT_SECRET: str | None = None
    SQUARE_ENVIRONMENT: str = "sandbox"
    SQUARE_REDIRECT_URI: str | None = None
    SQUARE_API_VERSION: str = "2024-10-17"
    SQUARE_WEBHOOK_SIGNATURE_KEY: str | None = None
    SQUARE_WEBHOOK_URL: str | None = None

    # Background sync
    SQUARE_SYNC_ENABLED: bool = False
    SQUARE_SYNC_HOUR: int = 4
    SYNC_RUN_STALE_MINUTES: int = 60

    # Error tracking (disabled when unset)
    SENTRY_DSN: Optional[str] = None
    SENTRY_TRACES_SAMPLE_RATE: float = 0.1

    # Environment
    ENVIRONMENT: str = "development"
    DEBUG: bool = True

    @field_validator('POS_ENCRYPTION_KEY')
    @classmethod
    def validate_encryption_key(cls, v: str | None) -> str | None:
        """Key must be exactly 32 bytes of hex when provided."""
        if v is None or v == "":
            return None
        try:
            raw = bytes.fromhex(v)
        except ValueError:
            raise ValueError("POS_ENCRYPTION_KEY must be hex-encoded")
        if len(raw) != 32:
            raise ValueError("POS_ENCRYPTION_KEY must decode to 32 bytes (64 hex characters)")
        return v

    @field_validator('SQUARE_ENVIRONMENT')
    @classmethod
    def validate_square_environment(cls, v: str) -> str:
        v = v.lower()
        if v not in ("sandbox", "production"):
            raise ValueError("SQUARE_ENVIRONMENT must be 'sandbox' or 'production'")
        return v

    @model_validator(mode='after')
    def validate_production_security(self):
        """Reject insecure configuration outside development."""
        if self.is_production:
            if self.SECRET_KEY in WEAK_SECRET_KEYS or len(self.SECRET_KEY) < 32:
                raise ValueError("SECRET_KEY is too weak for production")
            self.DEBUG = False
        return self

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT in ("production", "staging")

    @property
    def sqlalchemy_echo(self) -> bool:
        # SECURITY: never echo SQL (and bound parameters) in production
        return self.DEBUG and not self.is_production

    @property
    def DOCS_ENABLED(self) -> bool:
        return not self.is_production

    class Config:
        env_file = ".env"
        case_sensitive = True


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()
