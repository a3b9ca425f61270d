from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Service configuration, read once from FULFILLMENT_* env vars or .env."""

    # Database
    database_url: str = Field(default="sqlite:///./fulfillment.db")

    # Upstream fulfillment API
    upstream_base_url: str = Field(default="https://api.zinc.io")
    upstream_token: str = Field(default="")
    upstream_timeout_seconds: float = Field(default=30)

    # Secrets for the inbound channels
    webhook_secret: str = Field(default="")
    poll_secret: str = Field(default="")
    public_base_url: str = Field(default="http://localhost:8000")

    # Checkout
    anonymous_checkout_enabled: bool = Field(default=False)
    retailer: str = Field(default="amazon")
    product_id: str = Field(default="B002YM4WME")
    max_price: int = Field(default=1000000)  # cents

    # Returns
    return_method_code: str = Field(default="ups_dropoff")
    default_return_reason: str = Field(default="defective")

    # Poll sweep; 0 disables the background thread
    poll_interval_seconds: float = Field(default=0)
    stale_initiated_after_seconds: float = Field(default=900)

    # Logging
    log_level: str = Field(default="INFO")
    log_format: str = Field(default="%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    model_config = SettingsConfigDict(env_prefix="FULFILLMENT_", env_file=".env", extra="ignore", frozen=True)

    def webhook_url(self, channel: str) -> str:
        return f"{self.public_base_url.rstrip('/')}/webhooks/{channel}?secret={self.webhook_secret}"


@lru_cache
def get_settings() -> Settings:
    return Settings()
