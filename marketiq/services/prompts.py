"""Candle summaries and the prompts sent to generation providers."""

from __future__ import annotations

import json
import math
from dataclasses import asdict, dataclass
from typing import Any, Dict, Sequence

import pandas as pd

from ..providers.base import Candle
from ..schemas import MAX_ZONES, ZONE_SCHEMA_TAG

PROMPT_CANDLES = 80

STYLE_GUIDES: Dict[str, str] = {
    "rtm": "RTM approach: market structure, reversal zones and candle confirmation. Give zones as low/high and "
    "present each setup as zone, trigger, invalidation, targets.",
    "ict": "ICT approach: market structure, liquidity, FVG/OB and PD arrays. Mark OB/FVG areas with exact price "
    "ranges and describe liquidity hunt, re-accumulation or redistribution, then the main move.",
    "price_action": "Price action approach: trend and structure, break and retest, candle patterns (pin, engulfing) "
    "and key levels. State entry conditions on close or wick and give clear invalidation.",
    "smart_money": "Smart money approach: liquidity pools, manipulation, institutional footprint and the reaction "
    "expected at the target level (reversal versus continuation).",
    "scalp": "Scalping: only the nearest zones, tight stops, quick targets.",
    "intraday": "Intraday: session structure and the zones likely to be tested today.",
    "swing": "Swing: higher-timeframe structure, wide zones and multi-day targets.",
}

_RISK_NOTES = {
    "low": "Risk profile: conservative. Prefer confirmation entries and tight invalidation.",
    "medium": "Risk profile: balanced.",
    "high": "Risk profile: aggressive. Early entries are acceptable if invalidation is explicit.",
}

_LANGUAGE_RULES = {
    "en": "Write the analysis in English.",
    "fa": "Write the analysis in Persian (فارسی). Keep prices in Latin digits.",
}


@dataclass(slots=True)
class CandleSummary:
    last_price: float
    change_pct: float
    sma20: float | None
    sma50: float | None
    trend: str
    range_high: float
    range_low: float
    last_timestamp: int
    bars: int

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _rounded(value: float | None, digits: int = 6) -> float | None:
    if value is None or not math.isfinite(value):
        return None
    return round(float(value), digits)


def summarize_candles(candles: Sequence[Candle]) -> CandleSummary | None:
    """Last price, bar-over-bar change, SMA20/SMA50 trend and the 50-bar range."""

    if not candles:
        return None
    frame = pd.DataFrame([candle.to_dict() for candle in candles])
    closes = frame["close"]
    last = float(closes.iloc[-1])
    prev = float(closes.iloc[-2]) if len(closes) > 1 else last
    change_pct = ((last - prev) / prev) * 100.0 if prev else 0.0
    sma20 = float(closes.tail(20).mean()) if len(closes) >= 20 else None
    sma50 = float(closes.tail(50).mean()) if len(closes) >= 50 else None
    if sma20 is not None and sma50 is not None:
        trend = "up" if sma20 > sma50 else "down"
    else:
        trend = "unknown"
    recent = frame.tail(50)
    return CandleSummary(
        last_price=last,
        change_pct=round(change_pct, 3),
        sma20=_rounded(sma20),
        sma50=_rounded(sma50),
        trend=trend,
        range_high=float(recent["high"].max()),
        range_low=float(recent["low"].min()),
        last_timestamp=int(frame["timestamp"].iloc[-1]),
        bars=len(frame),
    )


def candles_to_csv(candles: Sequence[Candle], max_rows: int = PROMPT_CANDLES) -> str:
    tail = list(candles)[-max_rows:]
    return "\n".join(f"{c.timestamp},{c.open},{c.high},{c.low},{c.close}" for c in tail)


def market_block(symbol: str, timeframe: str, candles: Sequence[Candle]) -> str:
    """Deterministic text block describing the series; also hashed into the generation cache key."""

    summary = summarize_candles(candles)
    lines = [f"SYMBOL: {symbol}", f"TIMEFRAME: {timeframe}"]
    if summary is not None:
        lines.append("SNAPSHOT: " + json.dumps(summary.to_dict(), sort_keys=True, separators=(",", ":")))
    lines.append("OHLC_CSV (timestamp_ms,open,high,low,close):")
    lines.append(candles_to_csv(candles))
    return "\n".join(lines)


def schema_instruction() -> str:
    example = {
        "schema": ZONE_SCHEMA_TAG,
        "zones": [{"kind": "demand", "low": 0.0, "high": 0.0, "label": "H4 demand", "confidence": 0.7}],
        "levels": [{"label": "entry", "price": 0.0}, {"label": "stop", "price": 0.0}, {"label": "target 1", "price": 0.0}],
    }
    return (
        "After the prose, append exactly one fenced ```json block with this shape:\n"
        f"{json.dumps(example, ensure_ascii=False)}\n"
        f"Rules: kind is demand or supply; 0 < low < high; confidence between 0 and 1; 1 to {MAX_ZONES} zones; "
        "prices are plain numbers taken from the data above."
    )


def system_prompt(language: str) -> str:
    return (
        "You are a disciplined market analyst. Use only the OHLC data and headlines provided; never invent prices. "
        + _LANGUAGE_RULES.get(language, _LANGUAGE_RULES["en"])
    )


def build_analysis_prompt(
    *,
    symbol: str,
    timeframe: str,
    style: str,
    risk: str,
    market_data: str,
    headlines: Sequence[str] = (),
    user_prompt: str | None = None,
) -> str:
    sections = [
        f"ASSET: {symbol}",
        f"TIMEFRAME: {timeframe}",
        f"USER SETTINGS: style={style}, risk={risk}",
    ]
    guide = STYLE_GUIDES.get(style)
    if guide:
        sections.append(f"STYLE_GUIDE:\n{guide}")
    sections.append(_RISK_NOTES.get(risk, _RISK_NOTES["medium"]))
    sections.append(f"MARKET_DATA:\n{market_data}")
    if headlines:
        sections.append("NEWS_HEADLINES:\n" + "\n".join(f"- {line}" for line in headlines))
    sections.append(f"USER EXTRA REQUEST:\n{(user_prompt or '').strip() or 'Full analysis.'}")
    sections.append(
        "OUTPUT:\n"
        "1. Market structure and trend\n"
        "2. Liquidity and recent traps\n"
        "3. Demand/supply zones with exact price ranges\n"
        "4. Most likely scenario (mention news impact briefly if headlines are given)\n"
        "5. Execution plan: entry, stop, targets, and the candle condition (close/wick) that confirms it"
    )
    sections.append(schema_instruction())
    return "\n\n".join(sections)


def build_vision_prompt(*, timeframe: str, symbol: str | None = None, user_prompt: str | None = None) -> str:
    subject = f"the {symbol} chart" if symbol else "this chart"
    parts = [
        f"TASK: Analyze {subject} on the {timeframe} timeframe from the image.",
        "Read price levels from the axis; if a value is not legible, say so instead of guessing.",
    ]
    if user_prompt and user_prompt.strip():
        parts.append(f"USER EXTRA REQUEST:\n{user_prompt.strip()}")
    parts.append(schema_instruction())
    return "\n\n".join(parts)


REPAIR_SYSTEM_PROMPT = (
    "You convert a market analysis into one JSON object. Output only the JSON object, no prose and no code fence."
)


def build_repair_prompt(raw_text: str, error: str) -> str:
    return (
        f"The analysis below contains a {ZONE_SCHEMA_TAG} block that failed validation: {error}\n"
        f"Return a corrected object with \"schema\": \"{ZONE_SCHEMA_TAG}\", \"zones\" (1 to {MAX_ZONES} items: "
        "kind demand|supply, low < high, both positive, optional confidence 0..1, label) and \"levels\" "
        "(label, positive price). Use only prices stated in the analysis.\n\n"
        f"ANALYSIS:\n{raw_text}"
    )


def polish_system_prompt(language: str) -> str:
    return (
        "You are a strict copy editor for market analyses. Tighten the wording, drop filler, keep the numbered "
        "structure and every price exactly as written. Never add facts or levels. "
        + _LANGUAGE_RULES.get(language, _LANGUAGE_RULES["en"])
    )


def build_polish_prompt(draft: str) -> str:
    return f"Edit the analysis below. Return only the edited text.\n\nANALYSIS:\n{draft}"


__all__ = [
    "CandleSummary",
    "REPAIR_SYSTEM_PROMPT",
    "STYLE_GUIDES",
    "build_analysis_prompt",
    "build_polish_prompt",
    "build_repair_prompt",
    "build_vision_prompt",
    "candles_to_csv",
    "market_block",
    "polish_system_prompt",
    "schema_instruction",
    "summarize_candles",
    "system_prompt",
]
