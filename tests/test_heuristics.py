from __future__ import annotations

from _helpers import make_candles
from marketiq.services.heuristics import PriceBand, extract_heuristic, extract_levels, extract_zones, normalize_numbers


def test_normalize_numbers_handles_persian_digits_and_separators():
    assert normalize_numbers("۱۲۳٫۵") == "123.5"
    assert normalize_numbers("64,250 to 65,100") == "64250 to 65100"
    assert normalize_numbers("1,5") == "1,5"


def test_zones_from_keywords():
    text = "Strong demand zone 100 - 105 holds. Supply sits at 130 to 135."
    zones = extract_zones(text)
    assert [(z.kind, z.low, z.high) for z in zones] == [("demand", 100, 105), ("supply", 130, 135)]


def test_zone_kind_falls_back_to_position_against_last_close():
    candles = make_candles(120)  # last close 160
    zones = extract_zones("watch 150-155 and 170-175", candles)
    assert [(z.kind, z.low) for z in zones] == [("demand", 150), ("supply", 170)]


def test_ranges_outside_the_price_band_are_ignored():
    candles = make_candles(120)
    assert extract_zones("demand 1-2 and demand 2000-2100", candles) == []


def test_persian_text():
    text = "ناحیه تقاضا ۱۰۰ تا ۱۰۵ و حد ضرر ۹۵ و هدف ۱۲۰"
    zones, levels = extract_heuristic(text, language="fa")
    assert zones[0].kind == "demand"
    assert zones[0].label == "ناحیه تقاضا"
    assert {level.label: level.price for level in levels} == {"حد ضرر": 95, "هدف 1": 120}


def test_levels_entry_stop_and_targets():
    text = "Entry 102, stop 97. Targets: TP1 110, TP2 118, TP3 125, TP4 130."
    levels = extract_levels(text)
    assert [(level.label, level.price) for level in levels] == [
        ("entry", 102),
        ("stop", 97),
        ("target 1", 110),
        ("target 2", 118),
        ("target 3", 125),
    ]


def test_price_band_from_candles():
    band = PriceBand.from_candles(make_candles(10, start=100, step=0))
    assert band.contains(80) and band.contains(120)
    assert not band.contains(60)
    assert PriceBand.from_candles([]) is None
