"""Configuration management using Pydantic Settings."""

from typing import Optional
from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # FastAPI
    api_host: str = Field(default="0.0.0.0")
    api_port: int = Field(default=8000)
    debug: bool = Field(default=False)
    environment: str = Field(default="production")

    # Database
    database_url: str = Field(...)
    database_pool_size: int = Field(default=20)
    database_max_overflow: int = Field(default=10)

    # Redis
    redis_url: str = Field(...)

    # Celery (defaults to Redis URL if not set)
    celery_broker_url: Optional[str] = Field(default=None)
    celery_result_backend: Optional[str] = Field(default=None)
    celery_timezone: str = Field(default="UTC")

    # Xero endpoints
    xero_authorize_url: str = Field(default="https://login.xero.com/identity/connect/authorize")
    xero_token_url: str = Field(default="https://identity.xero.com/connect/token")
    xero_connections_url: str = Field(default="https://api.xero.com/connections")
    xero_api_base_url: str = Field(default="https://api.xero.com/api.xro/2.0")
    xero_scopes: str = Field(
        default=(
            "openid profile email accounting.transactions "
            "accounting.contacts accounting.settings offline_access"
        )
    )

    # OAuth flow
    oauth_state_ttl_seconds: int = Field(default=600)
    token_refresh_buffer_seconds: int = Field(default=300)

    # Outbound pacing and timeouts (seconds)
    xero_min_request_interval: float = Field(default=0.1)
    xero_rate_limit_cooldown: float = Field(default=2.0)
    xero_token_timeout: float = Field(default=10.0)
    xero_connections_timeout: float = Field(default=10.0)
    xero_api_timeout: float = Field(default=30.0)

    # Dashboard
    xero_dashboard_page_size: int = Field(default=10)

    # Serves canned ledger data instead of calling Xero
    xero_demo_mode: bool = Field(default=False)

    # Security
    token_encryption_key: str = Field(...)

    # Monitoring
    log_level: str = Field(default="INFO")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        v_upper = v.upper()
        if v_upper not in valid_levels:
            raise ValueError(f"Invalid log level: {v}")
        return v_upper

    @model_validator(mode="after")
    def validate_pacing(self) -> "Settings":
        if self.xero_min_request_interval <= 0:
            raise ValueError("xero_min_request_interval must be positive")
        if self.xero_rate_limit_cooldown <= self.xero_min_request_interval:
            raise ValueError("xero_rate_limit_cooldown must exceed xero_min_request_interval")
        return self

    def __init__(self, **data):
        super().__init__(**data)
        # Set Celery URLs to Redis URL if not explicitly provided
        if not self.celery_broker_url:
            self.celery_broker_url = self.redis_url
        if not self.celery_result_backend:
            self.celery_result_backend = self.redis_url

    @property
    def database_url_sync(self) -> str:
        """Synchronous database URL for SQLAlchemy."""
        return self.database_url.replace("postgresql://", "postgresql+psycopg2://")

    @property
    def is_development(self) -> bool:
        """Check if running in development environment."""
        return self.environment == "development"

    @property
    def scope_string(self) -> str:
        """Scopes normalized to single spaces, as sent to the authorize endpoint."""
        return " ".join(self.xero_scopes.split())


# Global settings instance
settings = Settings()
