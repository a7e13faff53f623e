"""Declarative chart annotations built from candles, zones and levels.

Pure and deterministic: the same inputs always produce the same ``ChartSpec``.
Every annotation spans exactly the plotted candle window.
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Optional, Sequence, Union

from ...providers.base import Candle
from ...schemas import Level, Zone
from .precision import format_price, round_price

DEFAULT_MAX_CANDLES = 80
LABEL_LIMIT = 24

ZONE_COLORS: Dict[str, tuple[str, str]] = {
    # kind: (fill, border)
    "supply": ("rgba(255,77,77,0.12)", "rgba(255,77,77,0.55)"),
    "demand": ("rgba(47,227,165,0.10)", "rgba(47,227,165,0.55)"),
}

LINE_COLORS: Dict[str, str] = {
    "stop": "rgba(255,77,77,0.8)",
    "target": "rgba(47,227,165,0.8)",
    "entry": "rgba(0,209,255,0.8)",
    "other": "rgba(255,255,255,0.6)",
}

_STOP_RE = re.compile(r"حد\s*ضرر|\bsl\b|stop|invalidation", re.IGNORECASE)
_TARGET_RE = re.compile(r"هدف|تارگت|\btp\d*\b|target|take\s*profit", re.IGNORECASE)
_ENTRY_RE = re.compile(r"ورود|entry", re.IGNORECASE)

LevelRole = Literal["stop", "target", "entry", "other"]


@dataclass(slots=True, frozen=True)
class BoxAnnotation:
    zone_kind: str
    x_min: int
    x_max: int
    y_min: float
    y_max: float
    label: str
    fill: str
    border: str
    type: str = "box"


@dataclass(slots=True, frozen=True)
class LineAnnotation:
    role: LevelRole
    x_min: int
    x_max: int
    y: float
    label: str
    color: str
    type: str = "line"


Annotation = Union[BoxAnnotation, LineAnnotation]


@dataclass(slots=True)
class ChartSpec:
    symbol: str
    timeframe: str
    series: List[Candle] = field(default_factory=list)
    annotations: List[Annotation] = field(default_factory=list)

    @property
    def boxes(self) -> List[BoxAnnotation]:
        return [item for item in self.annotations if isinstance(item, BoxAnnotation)]

    @property
    def lines(self) -> List[LineAnnotation]:
        return [item for item in self.annotations if isinstance(item, LineAnnotation)]


def _coerce_float(value: Any) -> Optional[float]:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(number):
        return None
    return number


def _clamp(value: float, lower: float, upper: float) -> float:
    return max(lower, min(upper, value))


def level_role(label: str) -> LevelRole:
    """Infer stop/target/entry from an English or Persian label."""
    token = label or ""
    if _STOP_RE.search(token):
        return "stop"
    if _TARGET_RE.search(token):
        return "target"
    if _ENTRY_RE.search(token):
        return "entry"
    return "other"


def _rounded_series(candles: Sequence[Candle], max_candles: int) -> List[Candle]:
    tail = list(candles)[-max_candles:] if max_candles > 0 else list(candles)
    return [
        Candle(
            timestamp=c.timestamp,
            open=round_price(c.open),
            high=round_price(c.high),
            low=round_price(c.low),
            close=round_price(c.close),
            volume=c.volume,
        )
        for c in tail
    ]


def build_chart_spec(
    symbol: str,
    timeframe: str,
    candles: Sequence[Candle],
    zones: Sequence[Zone] = (),
    levels: Sequence[Level] = (),
    *,
    max_candles: int = DEFAULT_MAX_CANDLES,
) -> ChartSpec:
    series = _rounded_series(candles, max_candles)
    spec = ChartSpec(symbol=symbol, timeframe=timeframe, series=series)
    if not series:
        return spec
    start_ts, end_ts = series[0].timestamp, series[-1].timestamp
    floor = min(c.low for c in series)
    ceiling = max(c.high for c in series)

    for zone in zones:
        low, high = _coerce_float(zone.low), _coerce_float(zone.high)
        if low is None or high is None or low >= high:
            continue
        # Boxes stay inside the plotted price range.
        low, high = _clamp(low, floor, ceiling), _clamp(high, floor, ceiling)
        fill, border = ZONE_COLORS[zone.kind]
        label = (zone.label or f"{zone.kind} zone")[:LABEL_LIMIT]
        spec.annotations.append(
            BoxAnnotation(
                zone_kind=zone.kind,
                x_min=start_ts,
                x_max=end_ts,
                y_min=round_price(low),
                y_max=round_price(high),
                label=label,
                fill=fill,
                border=border,
            )
        )

    for level in levels:
        price = _coerce_float(level.price)
        if price is None:
            continue
        role = level_role(level.label)
        label = (level.label or "level")[:LABEL_LIMIT]
        spec.annotations.append(
            LineAnnotation(
                role=role,
                x_min=start_ts,
                x_max=end_ts,
                y=round_price(price),
                label=f"{label}: {format_price(price)}",
                color=LINE_COLORS[role],
            )
        )
    return spec


__all__ = [
    "Annotation",
    "BoxAnnotation",
    "ChartSpec",
    "LINE_COLORS",
    "LineAnnotation",
    "ZONE_COLORS",
    "build_chart_spec",
    "level_role",
]
