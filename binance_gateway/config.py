"""Gateway configuration loaded from environment variables."""

from __future__ import annotations

from functools import lru_cache
from typing import Optional

from pydantic import Field, SecretStr, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .constants import REST_BASE_URLS, WS_BASE_URLS, Market


class Settings(BaseSettings):
    """Central gateway settings loaded from ``BINANCE_*`` environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="BINANCE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    api_key: Optional[str] = Field(default=None)
    api_secret: Optional[SecretStr] = Field(default=None)

    market: Market = Field(Market.SPOT)
    rest_base_url: Optional[str] = Field(default=None)
    ws_base_url: Optional[str] = Field(default=None)

    recv_window: int = Field(5_000, ge=0, le=60_000)
    request_timeout: float = Field(10.0, gt=0)
    connect_timeout: float = Field(5.0, gt=0)
    max_attempts: int = Field(3, ge=1)
    throttle_retry_ceiling: float = Field(0.0, ge=0)

    backoff_base: float = Field(1.0, ge=0)
    backoff_cap: float = Field(60.0, ge=0)
    backoff_jitter: float = Field(1.0, ge=0)

    liveness_timeout: float = Field(30.0, gt=0)
    ping_timeout: float = Field(10.0, gt=0)
    ack_timeout: float = Field(10.0, gt=0)
    decode_failure_threshold: int = Field(5, ge=1)
    consumer_queue_size: int = Field(1_000, ge=1)
    resubscribe_buffer_size: int = Field(1_000, ge=0)
    subscribe_batch_size: int = Field(50, ge=1, le=1_024)
    control_message_interval: float = Field(0.25, ge=0)

    listen_key_keepalive: float = Field(1_800.0, gt=0)
    exchange_info_ttl: float = Field(600.0, ge=0)

    @model_validator(mode="after")
    def _populate_market_urls(self) -> "Settings":
        """Fill in the market's default hosts when none were configured."""

        if not self.rest_base_url:
            self.rest_base_url = REST_BASE_URLS[self.market]
        if not self.ws_base_url:
            self.ws_base_url = WS_BASE_URLS[self.market]
        self.rest_base_url = self.rest_base_url.rstrip("/")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return cached Settings instance."""

    return Settings()


__all__ = ["Settings", "get_settings"]
