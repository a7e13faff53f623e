"""Keyword/number heuristics that recover zones and levels from prose.

Used only when the model output carries no tagged block at all.  Understands
English and Persian keywords and Persian/Arabic-Indic digits.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import List, Sequence, Tuple

from pydantic import ValidationError

from ..providers.base import Candle
from ..schemas import Level, Zone

MAX_HEURISTIC_ZONES = 6
MAX_HEURISTIC_LEVELS = 6
MAX_TARGETS = 3
_ZONE_WINDOW = 30
_LEVEL_WINDOW = 25

_DIGITS = str.maketrans("۰۱۲۳۴۵۶۷۸۹٠١٢٣٤٥٦٧٨٩", "01234567890123456789")

_RANGE_RE = re.compile(r"(?<![A-Za-z\d.])(\d+(?:\.\d+)?)\s*(?:-|–|—|تا|to)\s*(\d+(?:\.\d+)?)(?!\.?\d)")
_NUMBER_RE = re.compile(r"(?<![A-Za-z\d.])(\d+(?:\.\d+)?)(?!\.?\d)")

_DEMAND_RE = re.compile(r"حمایت|تقاضا|دیمند|support|demand|\bbuy zone", re.IGNORECASE)
_SUPPLY_RE = re.compile(r"مقاومت|عرضه|ساپلای|resist|supply|\bsell zone", re.IGNORECASE)

_ROLE_PATTERNS: Tuple[Tuple[str, re.Pattern[str]], ...] = (
    ("stop", re.compile(r"حد\s*ضرر|\bsl\b|\bstop", re.IGNORECASE)),
    ("entry", re.compile(r"ورود|\bentry", re.IGNORECASE)),
    ("target", re.compile(r"هدف|تارگت|\btp\d*\b|\btarget", re.IGNORECASE)),
)


def normalize_numbers(text: str) -> str:
    """Latin digits, ``٫`` as decimal point, thousands separators dropped."""
    out = (text or "").translate(_DIGITS).replace("٫", ".").replace("٬", "")
    return re.sub(r"(?<=\d),(?=\d{3}(?!\d))", "", out)


@dataclass(slots=True)
class PriceBand:
    low: float
    high: float

    @classmethod
    def from_candles(cls, candles: Sequence[Candle], lookback: int = 200) -> "PriceBand | None":
        recent = list(candles)[-lookback:]
        if not recent:
            return None
        return cls(min(c.low for c in recent) * 0.7, max(c.high for c in recent) * 1.3)

    def contains(self, value: float) -> bool:
        return self.low <= value <= self.high


def _keyword_rank(pattern: re.Pattern[str], text: str, start: int, end: int, window: int) -> int | None:
    """Rank of the closest ``pattern`` hit around ``text[start:end]``; lower is closer."""
    best: int | None = None
    for match in pattern.finditer(text, max(0, start - window), min(len(text), end + window)):
        if match.start() <= start:
            distance = start - match.end()
        else:
            distance = match.start() - end
        # ties go to the keyword preceding the number
        rank = max(0, distance) * 2 + (0 if match.start() <= start else 1)
        if best is None or rank < best:
            best = rank
    return best


def _zone_kind(text: str, start: int, end: int, low: float, high: float, last_close: float | None) -> str | None:
    demand = _keyword_rank(_DEMAND_RE, text, start, end, _ZONE_WINDOW)
    supply = _keyword_rank(_SUPPLY_RE, text, start, end, _ZONE_WINDOW)
    if demand is not None and (supply is None or demand < supply):
        return "demand"
    if supply is not None and (demand is None or supply < demand):
        return "supply"
    if last_close is None:
        return None
    if high <= last_close:
        return "demand"
    if low >= last_close:
        return "supply"
    return None


def _nearest_role(text: str, start: int, end: int) -> str | None:
    best: Tuple[int, str] | None = None
    for role, pattern in _ROLE_PATTERNS:
        rank = _keyword_rank(pattern, text, start, end, _LEVEL_WINDOW)
        if rank is not None and (best is None or rank < best[0]):
            best = (rank, role)
    return best[1] if best else None


def extract_zones(text: str, candles: Sequence[Candle] = (), *, language: str = "en") -> List[Zone]:
    normalized = normalize_numbers(text)
    band = PriceBand.from_candles(candles)
    last_close = candles[-1].close if candles else None
    labels = {"demand": "ناحیه تقاضا" if language == "fa" else "demand zone",
              "supply": "ناحیه عرضه" if language == "fa" else "supply zone"}

    zones: List[Zone] = []
    seen: set[tuple[str, float, float]] = set()
    for match in _RANGE_RE.finditer(normalized):
        a, b = float(match.group(1)), float(match.group(2))
        low, high = min(a, b), max(a, b)
        if low <= 0 or low == high:
            continue
        if band is not None and not (band.contains(low) and band.contains(high)):
            continue
        kind = _zone_kind(normalized, match.start(), match.end(), low, high, last_close)
        if kind is None:
            continue
        key = (kind, round(low, 6), round(high, 6))
        if key in seen:
            continue
        seen.add(key)
        try:
            zones.append(Zone(kind=kind, low=low, high=high, label=labels[kind]))
        except ValidationError:
            continue
        if len(zones) >= MAX_HEURISTIC_ZONES:
            break
    return zones


def extract_levels(text: str, candles: Sequence[Candle] = (), *, language: str = "en") -> List[Level]:
    normalized = normalize_numbers(text)
    band = PriceBand.from_candles(candles)
    names = {"stop": "حد ضرر" if language == "fa" else "stop",
             "entry": "ورود" if language == "fa" else "entry",
             "target": "هدف" if language == "fa" else "target"}

    stop: Level | None = None
    entry: Level | None = None
    targets: List[Level] = []
    # zone bounds are not levels
    ranges = [match.span() for match in _RANGE_RE.finditer(normalized)]
    for match in _NUMBER_RE.finditer(normalized):
        if any(lo <= match.start() < hi for lo, hi in ranges):
            continue
        value = float(match.group(1))
        if value <= 0 or (band is not None and not band.contains(value)):
            continue
        role = _nearest_role(normalized, match.start(), match.end())
        if role == "stop" and stop is None:
            stop = Level(label=names["stop"], price=value)
        elif role == "entry" and entry is None:
            entry = Level(label=names["entry"], price=value)
        elif role == "target" and len(targets) < MAX_TARGETS:
            if all(abs(t.price - value) > 1e-9 for t in targets):
                targets.append(Level(label=f"{names['target']} {len(targets) + 1}", price=value))

    levels = [level for level in (entry, stop) if level is not None] + targets
    return levels[:MAX_HEURISTIC_LEVELS]


def extract_heuristic(text: str, candles: Sequence[Candle] = (), *, language: str = "en") -> Tuple[List[Zone], List[Level]]:
    return extract_zones(text, candles, language=language), extract_levels(text, candles, language=language)


__all__ = ["PriceBand", "extract_heuristic", "extract_levels", "extract_zones", "normalize_numbers"]
