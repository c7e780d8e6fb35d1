"""Configuration management for the catalog sync engine.

Uses pydantic-settings to load configuration from environment variables
with validation and type coercion. Remote credentials are optional at load
time so that local-only commands (stats, sequence numbers, migrations) work
without them; every remote sync calls ``require_remote_credentials`` first.
"""

from pathlib import Path
from typing import Optional
from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ConfigurationError(Exception):
    """Raised when required configuration is missing or invalid."""
    pass


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Shopify Configuration
    shopify_store_domain: Optional[str] = Field(
        default=None,
        description="Shopify store domain (e.g., your-store.myshopify.com)"
    )
    shopify_access_token: Optional[str] = Field(
        default=None,
        description="Shopify Admin API access token"
    )
    shopify_api_version: str = Field(
        default="2024-07",
        description="Shopify Admin API version"
    )

    # Application Settings
    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR)"
    )
    database_path: Path = Field(
        default=Path("data/catalog.db"),
        description="SQLite document store file path"
    )
    log_file: Path = Field(
        default=Path("logs/sync.log"),
        description="Log file path"
    )

    # Sync Tuning
    shopify_rate_limit_delay: float = Field(
        default=0.5,
        ge=0.0,
        le=5.0,
        description="Delay between Shopify API calls (seconds)"
    )
    order_page_size: int = Field(
        default=25,
        ge=1,
        le=250,
        description="Orders requested per page"
    )
    product_page_size: int = Field(
        default=50,
        ge=1,
        le=250,
        description="Products requested per page"
    )
    batch_ceiling: int = Field(
        default=490,
        ge=1,
        le=499,
        description="Writes per commit; stays below the store's hard limit of 500"
    )
    sequence_max_attempts: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Counter transaction attempts before issuing a fallback number"
    )
    sync_lease_seconds: int = Field(
        default=900,
        ge=1,
        description="How long a sync run holds its feed before another run may take over"
    )

    @field_validator("shopify_store_domain")
    @classmethod
    def validate_store_domain(cls, v: Optional[str]) -> Optional[str]:
        """Normalize the store domain to a bare host name."""
        if v is None:
            return None
        v = v.strip()
        if not v:
            return None
        for scheme in ("https://", "http://"):
            if v.startswith(scheme):
                v = v[len(scheme):]
        v = v.rstrip("/")
        if not v.endswith(".myshopify.com"):
            raise ValueError("Store domain must end with .myshopify.com")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Ensure log level is valid."""
        v = v.upper()
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if v not in valid_levels:
            raise ValueError(f"Log level must be one of: {valid_levels}")
        return v

    @model_validator(mode="after")
    def blank_token_is_missing(self) -> "Settings":
        """Treat an empty access token as not configured."""
        if self.shopify_access_token is not None and not self.shopify_access_token.strip():
            self.shopify_access_token = None
        return self

    @property
    def has_remote_credentials(self) -> bool:
        return bool(self.shopify_store_domain and self.shopify_access_token)

    def require_remote_credentials(self) -> None:
        """Fail fast before any network call when credentials are absent.

        Raises:
            ConfigurationError: If the store domain or access token is missing
        """
        missing = []
        if not self.shopify_store_domain:
            missing.append("SHOPIFY_STORE_DOMAIN")
        if not self.shopify_access_token:
            missing.append("SHOPIFY_ACCESS_TOKEN")
        if missing:
            raise ConfigurationError(
                f"Shopify store domain or access token is not configured "
                f"(missing: {', '.join(missing)})"
            )

    @property
    def graphql_url(self) -> str:
        """Get the Shopify Admin GraphQL endpoint."""
        return (
            f"https://{self.shopify_store_domain}"
            f"/admin/api/{self.shopify_api_version}/graphql.json"
        )

    @property
    def storefront_url(self) -> Optional[str]:
        """Get the public storefront base URL, if a domain is configured."""
        if not self.shopify_store_domain:
            return None
        return f"https://{self.shopify_store_domain}"


def get_settings() -> Settings:
    """Get application settings.

    Returns:
        Settings: Application settings loaded from environment
    """
    return Settings()
