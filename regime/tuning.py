from __future__ import annotations

from dataclasses import dataclass

from engine.errors import ConfigError

_MODE_TABLE: dict[str, dict[str, float]] = {
    "conservative": {
        "atr_period": 14,
        "adx_period": 14,
        "adx_weak_threshold": 22,
        "structure_lookback": 12,
        "small_body_percent_threshold": 55,
        "min_required_candles": 60,
        "chop_score_threshold": 6,
    },
    "balanced": {
        "atr_period": 14,
        "adx_period": 14,
        "adx_weak_threshold": 18,
        "structure_lookback": 10,
        "small_body_percent_threshold": 50,
        "min_required_candles": 60,
        "chop_score_threshold": 5,
    },
    "aggressive": {
        "atr_period": 10,
        "adx_period": 10,
        "adx_weak_threshold": 18,
        "structure_lookback": 8,
        "small_body_percent_threshold": 45,
        "min_required_candles": 40,
        "chop_score_threshold": 4,
    },
}

# Structure range is compared against rolling ATR% scaled by timeframe.
_TIMEFRAME_MULTIPLIER = {"15m": 1.0, "1h": 1.2, "4h": 1.4}

# Widest range (percent) a 15-candle window may span and still count as compressed.
_COMPRESSION_MAX_RANGE_PERCENT = {
    "1m": 0.25,
    "3m": 0.3,
    "5m": 0.4,
    "15m": 0.6,
    "30m": 0.8,
    "1h": 1.0,
    "2h": 1.3,
    "4h": 1.8,
    "6h": 2.2,
    "1d": 3.0,
}


@dataclass(frozen=True)
class RegimeTuning:
    mode: str
    timeframe: str
    atr_period: int
    adx_period: int
    # Reported with the ADX metrics; the chop bands themselves are fixed.
    adx_weak_threshold: float
    structure_lookback: int
    small_body_percent_threshold: float
    min_required_candles: int
    chop_score_threshold: int
    timeframe_multiplier: float
    compression_max_range_percent: float


def timeframe_multiplier(timeframe: str) -> float:
    return _TIMEFRAME_MULTIPLIER.get(str(timeframe or "").strip(), 1.0)


def compression_max_range_percent(timeframe: str) -> float:
    return _COMPRESSION_MAX_RANGE_PERCENT.get(str(timeframe or "").strip(), 1.0)


def select_tuning(mode: str, timeframe: str) -> RegimeTuning:
    """Regime parameters for a trading mode on a timeframe."""
    key = str(mode or "").strip().lower()
    row = _MODE_TABLE.get(key)
    if row is None:
        raise ConfigError(f"unknown trading mode {mode!r}")
    return RegimeTuning(
        mode=key,
        timeframe=str(timeframe),
        atr_period=int(row["atr_period"]),
        adx_period=int(row["adx_period"]),
        adx_weak_threshold=float(row["adx_weak_threshold"]),
        structure_lookback=int(row["structure_lookback"]),
        small_body_percent_threshold=float(row["small_body_percent_threshold"]),
        min_required_candles=int(row["min_required_candles"]),
        chop_score_threshold=int(row["chop_score_threshold"]),
        timeframe_multiplier=timeframe_multiplier(timeframe),
        compression_max_range_percent=compression_max_range_percent(timeframe),
    )
