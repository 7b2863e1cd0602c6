from __future__ import annotations

import math
from typing import Sequence

from engine.models import GREEN, Candle

from .indicators import candles_to_frame

MICRO_CHOP_WINDOWS = (3, 4, 5)
COMPRESSION_MIN_WINDOW = 3
COMPRESSION_MAX_WINDOW = 15


def body_percent(c: Candle) -> float:
    """Body as a percentage of the candle's high-low range (0 for a flat candle)."""
    rng = c.high - c.low
    return 0.0 if rng == 0 else abs(c.close - c.open) / rng * 100.0


def range_percent(candles: Sequence[Candle]) -> float:
    """(max high - min low) / min low, in percent."""
    if not candles:
        return 0.0
    high = max(c.high for c in candles)
    low = min(c.low for c in candles)
    return 0.0 if low == 0 else (high - low) / low * 100.0


def upper_wick_percent(c: Candle) -> float:
    rng = c.high - c.low
    return 0.0 if rng == 0 else (c.high - max(c.open, c.close)) / rng * 100.0


def lower_wick_percent(c: Candle) -> float:
    rng = c.high - c.low
    return 0.0 if rng == 0 else (min(c.open, c.close) - c.low) / rng * 100.0


def closes_near_extreme(c: Candle, *, tolerance: float = 0.25) -> bool:
    """True when the close sits within `tolerance` of the range on the candle's colour side."""
    rng = c.high - c.low
    if rng == 0:
        return False
    if c.color == GREEN:
        return (c.high - c.close) / rng <= tolerance
    return (c.close - c.low) / rng <= tolerance


def opposing_wick_percent(c: Candle) -> float:
    """Upper wick for green candles, lower wick for red ones."""
    return upper_wick_percent(c) if c.color == GREEN else lower_wick_percent(c)


def detect_micro_chop(candles: Sequence[Candle], rolling_atr_avg: float, body_threshold: float) -> bool:
    """Tight 3-5 candle cluster of small bodies where the last candle broke neither side."""
    if len(candles) < max(MICRO_CHOP_WINDOWS):
        return False

    dynamic_threshold = rolling_atr_avg * 0.6
    for size in MICRO_CHOP_WINDOWS:
        window = list(candles[-size:])
        last = window[-1]
        prior = window[:-1]
        high = max(c.high for c in window)
        low = min(c.low for c in window)
        rng_pct = 0.0 if last.close == 0 else (high - low) / last.close * 100.0

        small_bodies = sum(1 for c in window if body_percent(c) < body_threshold)
        no_break = last.high <= max(c.high for c in prior) and last.low >= min(c.low for c in prior)

        if rng_pct < dynamic_threshold and small_bodies >= size - 1 and no_break:
            return True
    return False


def is_volume_contracting(candles: Sequence[Candle]) -> bool:
    """Average volume of the last 5 candles is below 70% of the last 20."""
    if len(candles) < 25:
        return False
    vol = candles_to_frame(candles)["volume"]
    avg20 = float(vol.tail(20).mean())
    avg5 = float(vol.tail(5).mean())
    return avg5 < avg20 * 0.7


def has_strong_breakout(candles: Sequence[Candle], *, window: int = COMPRESSION_MAX_WINDOW) -> bool:
    """Last candle has a >60% body and closes beyond the prior window's high or low."""
    if len(candles) < 2:
        return False
    last = candles[-1]
    prior = list(candles[-(window + 1):-1])
    if body_percent(last) <= 60:
        return False
    prev_high = max(c.high for c in prior)
    prev_low = min(c.low for c in prior)
    return last.close > prev_high or last.close < prev_low


def detect_range_compression(candles: Sequence[Candle], max_range_percent: float) -> bool:
    """Any trailing window of 3..15 candles tighter than the size-scaled max range.

    The threshold for a window of `size` candles is `max_range_percent * sqrt(size / 15)`.
    Never flagged while a strong breakout is present.
    """
    if len(candles) < COMPRESSION_MIN_WINDOW:
        return False
    if has_strong_breakout(candles):
        return False
    for size in range(COMPRESSION_MIN_WINDOW, COMPRESSION_MAX_WINDOW + 1):
        if len(candles) < size:
            break
        threshold = max_range_percent * math.sqrt(size / COMPRESSION_MAX_WINDOW)
        if range_percent(candles[-size:]) < threshold:
            return True
    return False
