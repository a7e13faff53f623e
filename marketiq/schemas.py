"""Request/response schemas and the structured zone envelope."""

from __future__ import annotations

from typing import Any, Literal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator

ZONE_SCHEMA_TAG = "marketiq.zones/v1"
MAX_ZONES = 8
MAX_LEVELS = 8

Timeframe = Literal["M15", "H1", "H4", "D1"]
Risk = Literal["low", "medium", "high"]

_TIMEFRAME_ALIASES = {
    "15M": "M15",
    "15MIN": "M15",
    "M15": "M15",
    "1H": "H1",
    "60M": "H1",
    "H1": "H1",
    "4H": "H4",
    "240M": "H4",
    "H4": "H4",
    "1D": "D1",
    "D": "D1",
    "D1": "D1",
}

_RISK_ALIASES = {
    "کم": "low",
    "متوسط": "medium",
    "زیاد": "high",
    "med": "medium",
}


def normalize_timeframe(value: Any) -> Any:
    if isinstance(value, str):
        token = value.strip().upper().replace(" ", "")
        return _TIMEFRAME_ALIASES.get(token, token)
    return value


class Zone(BaseModel):
    """A price band the analysis expects buyers (demand) or sellers (supply) to defend."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    kind: Literal["demand", "supply"]
    low: float = Field(gt=0, allow_inf_nan=False, validation_alias=AliasChoices("low", "priceLow", "price_low"))
    high: float = Field(gt=0, allow_inf_nan=False, validation_alias=AliasChoices("high", "priceHigh", "price_high"))
    label: str = ""
    confidence: float | None = Field(default=None, ge=0.0, le=1.0, allow_inf_nan=False)

    @field_validator("kind", mode="before")
    @classmethod
    def _lower_kind(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().lower()
        return value

    @field_validator("label", mode="before")
    @classmethod
    def _coerce_label(cls, value: Any) -> str:
        if value is None:
            return ""
        return str(value).strip()

    @model_validator(mode="after")
    def _ordered_bounds(self) -> "Zone":
        if not self.low < self.high:
            raise ValueError(f"zone low {self.low} must be below high {self.high}")
        return self


class Level(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    label: str = ""
    price: float = Field(gt=0, allow_inf_nan=False, validation_alias=AliasChoices("price", "value"))

    @field_validator("label", mode="before")
    @classmethod
    def _coerce_label(cls, value: Any) -> str:
        if value is None:
            return ""
        return str(value).strip()


class ZoneEnvelope(BaseModel):
    """The tagged JSON block a model appends to its prose analysis."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    schema_tag: Literal["marketiq.zones/v1"] = Field(alias="schema")
    zones: list[Zone] = Field(min_length=1)
    levels: list[Level] = Field(default_factory=list)

    @field_validator("zones", mode="before")
    @classmethod
    def _truncate_zones(cls, value: Any) -> Any:
        if isinstance(value, list):
            return value[:MAX_ZONES]
        return value

    @field_validator("levels", mode="before")
    @classmethod
    def _truncate_levels(cls, value: Any) -> Any:
        if value is None:
            return []
        if isinstance(value, list):
            return value[:MAX_LEVELS]
        return value


class AnalyzeRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    user_id: str = Field(min_length=1)
    symbol: str = Field(min_length=1, max_length=32)
    timeframe: Timeframe = "H4"
    market: str | None = None
    style: str = "general"
    risk: Risk = "medium"
    news: bool = False
    language: Literal["en", "fa"] | None = None
    prompt: str | None = Field(default=None, max_length=2000)

    @field_validator("timeframe", mode="before")
    @classmethod
    def _normalize_timeframe(cls, value: Any) -> Any:
        return normalize_timeframe(value)

    @field_validator("risk", mode="before")
    @classmethod
    def _normalize_risk(cls, value: Any) -> Any:
        if isinstance(value, str):
            token = value.strip().lower()
            return _RISK_ALIASES.get(token, token)
        return value

    @field_validator("symbol")
    @classmethod
    def _ensure_symbol(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("Symbol cannot be empty.")
        return value.strip()

    @field_validator("style", mode="before")
    @classmethod
    def _normalize_style(cls, value: Any) -> Any:
        if value is None:
            return "general"
        if isinstance(value, str):
            return value.strip().lower().replace(" ", "_") or "general"
        return value


class ImageAnalyzeRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    user_id: str = Field(min_length=1)
    image_url: str = Field(min_length=1)
    timeframe: Timeframe = "H4"
    symbol: str | None = None
    language: Literal["en", "fa"] | None = None
    prompt: str | None = Field(default=None, max_length=2000)

    @field_validator("timeframe", mode="before")
    @classmethod
    def _normalize_timeframe(cls, value: Any) -> Any:
        return normalize_timeframe(value)

    @field_validator("image_url")
    @classmethod
    def _ensure_image_ref(cls, value: str) -> str:
        token = value.strip()
        if not (token.startswith("https://") or token.startswith("http://") or token.startswith("data:image/")):
            raise ValueError("image_url must be an http(s) URL or a data:image URI.")
        return token


class AnalyzeResponse(BaseModel):
    text: str
    zones: list[Zone] = Field(default_factory=list)
    levels: list[Level] = Field(default_factory=list)
    chart_ref: str | None = None
    quota_remaining: dict[str, int | None] = Field(default_factory=dict)
    validated: bool = False
    zone_source: str = "none"
    provider: str | None = None
    symbol: str | None = None
    timeframe: str | None = None
    cached: bool = False


class ErrorBody(BaseModel):
    error: str
    message: str
    detail: str | None = None


class QuotaStatus(BaseModel):
    user_id: str
    unlimited: bool
    subscribed: bool
    daily_used: int
    daily_limit: int | None
    monthly_used: int
    monthly_limit: int | None
    day_key: str
    month_key: str


__all__ = [
    "MAX_LEVELS",
    "MAX_ZONES",
    "ZONE_SCHEMA_TAG",
    "AnalyzeRequest",
    "AnalyzeResponse",
    "ErrorBody",
    "ImageAnalyzeRequest",
    "Level",
    "QuotaStatus",
    "Risk",
    "Timeframe",
    "Zone",
    "ZoneEnvelope",
    "normalize_timeframe",
]
