from __future__ import annotations

from _helpers import START_MS, H4_MS, make_candles
from marketiq.services.prompts import (
    build_analysis_prompt,
    build_repair_prompt,
    build_vision_prompt,
    market_block,
    summarize_candles,
    system_prompt,
)


def test_summary_of_rising_series():
    summary = summarize_candles(make_candles(120))

    assert summary is not None
    assert summary.last_price == 160.0
    assert summary.trend == "up"
    assert summary.range_high == 160.25
    assert summary.range_low == 134.75
    assert summary.last_timestamp == START_MS + 119 * H4_MS
    assert summary.bars == 120


def test_summary_without_enough_bars_has_unknown_trend():
    summary = summarize_candles(make_candles(10))
    assert summary is not None
    assert summary.trend == "unknown"
    assert summary.sma20 is None
    assert summarize_candles([]) is None


def test_market_block_is_deterministic():
    candles = make_candles(60)
    assert market_block("BTCUSDT", "H4", candles) == market_block("BTCUSDT", "H4", list(candles))
    assert market_block("BTCUSDT", "H4", candles).startswith("SYMBOL: BTCUSDT\nTIMEFRAME: H4")


def test_analysis_prompt_sections():
    prompt = build_analysis_prompt(
        symbol="XAUUSD",
        timeframe="H1",
        style="scalp",
        risk="low",
        market_data="SYMBOL: XAUUSD",
        headlines=["[reuters] Gold steadies"],
        user_prompt="  focus on London session ",
    )

    assert "USER SETTINGS: style=scalp, risk=low" in prompt
    assert "conservative" in prompt
    assert "NEWS_HEADLINES:\n- [reuters] Gold steadies" in prompt
    assert "focus on London session" in prompt
    assert "marketiq.zones/v1" in prompt


def test_analysis_prompt_defaults_extra_request():
    prompt = build_analysis_prompt(symbol="EURUSD", timeframe="D1", style="general", risk="medium", market_data="x")
    assert "USER EXTRA REQUEST:\nFull analysis." in prompt
    assert "NEWS_HEADLINES" not in prompt


def test_vision_and_repair_prompts():
    assert "this chart" in build_vision_prompt(timeframe="H4")
    assert "the BTCUSDT chart" in build_vision_prompt(timeframe="H4", symbol="BTCUSDT")
    repair = build_repair_prompt("Structure: ...", "zone 1: low must be below high")
    assert "zone 1: low must be below high" in repair
    assert repair.endswith("ANALYSIS:\nStructure: ...")


def test_system_prompt_language():
    assert system_prompt("fa") != system_prompt("en")
    assert system_prompt("de") == system_prompt("en")
