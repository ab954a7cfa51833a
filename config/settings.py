"""Configuration management using pydantic-settings."""
from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Durable cache store (StoreCache table)
    database_url: str = "sqlite:///./product_builder.db"

    # Shopify Admin API
    shopify_api_version: str = "2024-10"
    shopify_access_token: Optional[str] = None
    shopify_request_timeout: float = 30.0

    # Persistent cache (seconds)
    cache_ttl_seconds: int = 900            # 15 minutes
    cache_stale_threshold: float = 0.8      # refresh early at 80% of TTL

    # Request coalescing (seconds)
    request_dedup_ttl_seconds: float = 0.1  # linger after settlement
    max_in_flight_seconds: float = 30.0     # force-evict unsettled entries

    # Per-shop memo (seconds)
    all_product_types_ttl_seconds: int = 3600
    validation_cache_ttl_seconds: int = 300

    # Upstream pagination
    vendors_page_size: int = 1000
    products_page_size: int = 250

    log_level: str = "INFO"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


settings = Settings()
