"""
Laburandik Seller Ops - Configuration
=====================================
Environment-based settings using pydantic-settings.
"""

from functools import lru_cache
from typing import List, Optional

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ==========================================================================
    # Hosted Database (Supabase / PostgREST)
    # ==========================================================================
    supabase_url: str = Field(..., description="Project URL of the hosted database")
    supabase_service_role_key: str = Field(
        ..., description="Service role key used for server-side queries (required)"
    )
    supabase_anon_key: Optional[str] = Field(default=None)

    # ==========================================================================
    # MercadoLibre OAuth / API
    # ==========================================================================
    meli_client_id: str = Field(default="")
    meli_client_secret: str = Field(default="")
    meli_redirect_uri: str = Field(
        default="https://laburandik.vercel.app/api/auth/callback"
    )
    meli_auth_url: str = Field(
        default="https://auth.mercadolibre.com.ar/authorization"
    )
    meli_api_base_url: str = Field(default="https://api.mercadolibre.com")
    app_base_url: str = Field(
        default="https://laburandik.vercel.app",
        description="Frontend origin used for OAuth redirects"
    )

    # Paging and batching against the MercadoLibre API
    meli_page_limit: int = Field(default=50, ge=1, le=50)
    meli_max_orders: int = Field(default=1000, ge=1)
    meli_items_batch_size: int = Field(default=20, ge=1)
    meli_request_delay_seconds: float = Field(default=0.1, ge=0.0)

    # ==========================================================================
    # Token Storage
    # ==========================================================================
    token_storage: str = Field(
        default="database",
        description="Where OAuth tokens live: 'database' or 'kv'"
    )
    redis_url: str = Field(default="redis://localhost:6379/0")
    default_token_ttl_seconds: int = Field(default=3600, ge=60)
    kv_ttl_buffer_seconds: int = Field(default=300, ge=0)

    # ==========================================================================
    # Warehouse / COGS
    # ==========================================================================
    scan_debounce_seconds: float = Field(default=2.0, ge=0.0)
    cogs_batch_size: int = Field(default=50, ge=1, le=500)
    cogs_batch_delay_seconds: float = Field(default=0.1, ge=0.0)

    # ==========================================================================
    # Runtime Configuration
    # ==========================================================================
    http_timeout_seconds: float = Field(default=30.0, gt=0)
    environment: str = Field(default="production")
    log_level: str = Field(default="INFO")
    debug: bool = Field(default=False)
    cors_origins: List[str] = Field(
        default=["http://localhost:3000", "https://laburandik.vercel.app"]
    )

    @property
    def rest_url(self) -> str:
        """PostgREST endpoint of the hosted database."""
        return f"{self.supabase_url}/rest/v1"

    @property
    def auth_url(self) -> str:
        """Auth endpoint of the hosted database."""
        return f"{self.supabase_url}/auth/v1"

    @field_validator("supabase_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")

    @field_validator("supabase_service_role_key")
    @classmethod
    def validate_service_role_key(cls, v: str) -> str:
        """Validate the service role key is not blank."""
        if not v or v.strip() == "":
            raise ValueError("SUPABASE_SERVICE_ROLE_KEY must not be empty")
        return v

    @field_validator("token_storage")
    @classmethod
    def validate_token_storage(cls, v: str) -> str:
        v = v.lower().strip()
        if v not in ("database", "kv"):
            raise ValueError("token_storage must be 'database' or 'kv'")
        return v

    @field_validator("meli_items_batch_size")
    @classmethod
    def validate_items_batch_size(cls, v: int) -> int:
        """MercadoLibre multi-get accepts at most 20 ids per call."""
        if v > 20:
            raise ValueError("meli_items_batch_size must not exceed 20")
        return v

    @model_validator(mode="after")
    def validate_order_limits(self) -> "Settings":
        if self.meli_max_orders < self.meli_page_limit:
            raise ValueError(
                f"meli_max_orders ({self.meli_max_orders}) must be at least "
                f"meli_page_limit ({self.meli_page_limit})"
            )
        return self

    @property
    def meli_configured(self) -> bool:
        return bool(self.meli_client_id and self.meli_client_secret)


@lru_cache
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses LRU cache to avoid re-parsing environment on every call.
    """
    return Settings()
