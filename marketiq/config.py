"""Configuration module for the MarketiQ analysis backend.

This module centralizes the reading of environment variables and provides a
`Settings` object that other modules can import.  It uses Pydantic's
`BaseSettings` to automatically read values from a `.env` file when present.

Provider credentials should live in the hosting provider's secrets manager
rather than in version control.  Every vendor integration is optional: a
provider without credentials simply fails its attempt and the chain moves on.
"""

from __future__ import annotations

from functools import lru_cache
from typing import Annotated

from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

CommaList = Annotated[list[str], NoDecode]


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="allow")

    # Quota
    timezone: str = Field(
        default="Europe/Istanbul",
        validation_alias=AliasChoices("TIMEZONE", "QUOTA_TIMEZONE", "TZ_NAME"),
    )
    free_daily_limit: int = 50
    free_monthly_limit: int = 500
    sub_daily_limit: int = 50
    sub_monthly_limit: int | None = None
    owner_ids: CommaList = Field(default_factory=list, validation_alias=AliasChoices("OWNER_IDS", "OWNER_ID"))
    admin_ids: CommaList = Field(default_factory=list)

    # Market data
    market_data_provider_order: CommaList = Field(
        default_factory=lambda: ["binance", "twelvedata", "polygon", "alphavantage", "finnhub", "yahoo"],
        validation_alias=AliasChoices("MARKET_DATA_PROVIDER_ORDER", "MARKET_PROVIDER_ORDER"),
    )
    market_data_timeout_s: float = 7.0
    market_data_candle_limit: int = 120
    market_data_min_candles: int = 60
    market_cache_ttl_s: float = Field(
        default=20.0,
        validation_alias=AliasChoices("MARKET_CACHE_TTL_S", "MARKET_CACHE_TTL_SEC"),
    )

    # Generation
    text_provider_order: CommaList = Field(
        default_factory=lambda: ["openai", "gemini", "compat"],
        validation_alias=AliasChoices("TEXT_PROVIDER_ORDER", "GENERATION_PROVIDER_ORDER"),
    )
    vision_provider_order: CommaList = Field(default_factory=lambda: ["openai", "gemini"])
    generation_timeout_s: float = 11.0
    generation_total_budget_s: float = 20.0
    generation_min_remaining_s: float = 1.5
    generation_temperature: float = 0.25
    repair_temperature: float = 0.0
    generation_cache_ttl_s: float = 600.0
    polish_provider_order: CommaList = Field(default_factory=list)
    polish_timeout_s: float = 9.0
    analysis_language: str = Field(default="en", validation_alias=AliasChoices("ANALYSIS_LANGUAGE", "LANG_CODE"))

    # Vendor credentials
    openai_api_key: str | None = None
    openai_model: str = "gpt-4o-mini"
    openai_vision_model: str = "gpt-4o-mini"
    openai_base_url: str = "https://api.openai.com/v1"
    gemini_api_key: str | None = Field(default=None, validation_alias=AliasChoices("GEMINI_API_KEY", "GOOGLE_API_KEY"))
    gemini_model: str = "gemini-1.5-flash"
    gemini_base_url: str = "https://generativelanguage.googleapis.com/v1beta"
    compat_api_key: str | None = None
    compat_base_url: str | None = None
    compat_model: str | None = None
    binance_base_url: str = "https://api.binance.com"
    twelvedata_api_key: str | None = Field(default=None, validation_alias=AliasChoices("TWELVEDATA_API_KEY", "TWELVE_DATA_API_KEY"))
    polygon_api_key: str | None = Field(default=None, validation_alias=AliasChoices("POLYGON_API_KEY", "MASSIVE_API_KEY"))
    finnhub_api_key: str | None = None
    alphavantage_api_key: str | None = None
    yahoo_base_url: str = "https://query1.finance.yahoo.com"

    # Chart rendering
    chart_service_url: str = Field(
        default="https://quickchart.io",
        validation_alias=AliasChoices("CHART_SERVICE_URL", "QUICKCHART_URL"),
    )
    quickchart_api_key: str | None = None
    chart_width: int = 900
    chart_height: int = 520
    chart_candles: int = 80
    chart_timeout_s: float = 8.0

    # News
    newsdata_api_key: str | None = None
    news_timeout_s: float = 6.0
    news_cache_ttl_s: float = 600.0
    news_max_headlines: int = 5

    # Storage / HTTP surface
    redis_url: str | None = Field(default=None, validation_alias=AliasChoices("REDIS_URL", "KV_URL"))
    job_ttl_s: float = 900.0
    backend_api_key: str | None = None
    log_level: str = "INFO"

    @field_validator(
        "owner_ids",
        "admin_ids",
        "market_data_provider_order",
        "text_provider_order",
        "vision_provider_order",
        "polish_provider_order",
        mode="before",
    )
    @classmethod
    def _split_comma_separated(cls, value: str | list[str]) -> list[str]:
        if isinstance(value, str):
            return [token.strip() for token in value.split(",") if token.strip()]
        return value

    @property
    def privileged_ids(self) -> set[str]:
        return {str(item) for item in (*self.owner_ids, *self.admin_ids)}


@lru_cache()
def get_settings() -> Settings:
    """Return a cached instance of the application settings.

    Pydantic caches the parsed environment variables so that repeated calls
    throughout the application are inexpensive.
    """

    return Settings()


__all__ = ["Settings", "get_settings"]
