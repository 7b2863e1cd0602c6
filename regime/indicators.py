from __future__ import annotations

from typing import Sequence

import numpy as np
import pandas as pd

from engine.models import Candle

CANDLE_COLUMNS = ["timestamp", "open", "high", "low", "close", "volume"]


def candles_to_frame(candles: Sequence[Candle]) -> pd.DataFrame:
    """Candles as a float OHLCV frame, in input order."""
    if not candles:
        return pd.DataFrame(columns=CANDLE_COLUMNS, dtype=float)
    return pd.DataFrame(
        {
            "timestamp": [c.timestamp for c in candles],
            "open": [c.open for c in candles],
            "high": [c.high for c in candles],
            "low": [c.low for c in candles],
            "close": [c.close for c in candles],
            "volume": [c.volume for c in candles],
        }
    ).astype(float)


def true_range(candles: Sequence[Candle]) -> np.ndarray:
    """True range for bars 1..n-1 (bar 0 has no previous close)."""
    if len(candles) < 2:
        return np.empty(0, dtype=float)
    df = candles_to_frame(candles)
    high = df["high"].to_numpy()[1:]
    low = df["low"].to_numpy()[1:]
    prev_close = df["close"].to_numpy()[:-1]
    return np.maximum.reduce([high - low, np.abs(high - prev_close), np.abs(low - prev_close)])


def atr_series(candles: Sequence[Candle], period: int) -> np.ndarray:
    """Wilder ATR aligned to candle index; NaN where the prefix is shorter than period+1.

    Seeded with the simple mean of the first `period` true ranges. The value at
    index i equals `atr(candles[: i + 1], period)`.
    """
    n = len(candles)
    out = np.full(n, np.nan, dtype=float)
    p = int(period)
    if p <= 0 or n < p + 1:
        return out
    trs = true_range(candles)
    value = float(trs[:p].sum()) / p
    out[p] = value
    for i in range(p, len(trs)):
        value = (value * (p - 1) + float(trs[i])) / p
        out[i + 1] = value
    return out


def atr(candles: Sequence[Candle], period: int) -> float:
    """Average True Range of the whole sequence; 0 with fewer than period+1 candles."""
    if len(candles) < int(period) + 1 or int(period) <= 0:
        return 0.0
    return float(atr_series(candles, period)[-1])


def rolling_atr_percent_avg(candles: Sequence[Candle], period: int) -> float:
    """Mean of the last `period` ATR% readings, each taken on the growing prefix.

    Requires at least 2*period candles, else 0.
    """
    p = int(period)
    n = len(candles)
    if p <= 0 or n < p * 2:
        return 0.0
    series = atr_series(candles, p)
    closes = candles_to_frame(candles)["close"].to_numpy()
    pcts: list[float] = []
    for i in range(p, n):
        c = closes[i]
        pcts.append(0.0 if c == 0 else float(series[i]) / float(c) * 100.0)
    last = pcts[-p:]
    return float(sum(last) / len(last))


def adx_series(candles: Sequence[Candle], period: int) -> list[float]:
    """Wilder ADX readings, oldest first; empty with fewer than 2*period candles."""
    p = int(period)
    n = len(candles)
    if p <= 0 or n < p * 2:
        return []

    df = candles_to_frame(candles)
    high = df["high"].to_numpy()
    low = df["low"].to_numpy()

    up = high[1:] - high[:-1]
    down = low[:-1] - low[1:]
    plus_dm = np.where((up > down) & (up > 0), up, 0.0)
    minus_dm = np.where((down > up) & (down > 0), down, 0.0)
    trs = true_range(candles)

    s_tr = float(trs[:p].sum())
    s_plus = float(plus_dm[:p].sum())
    s_minus = float(minus_dm[:p].sum())

    dx: list[float] = []
    for i in range(p, len(trs)):
        s_tr = s_tr - s_tr / p + float(trs[i])
        s_plus = s_plus - s_plus / p + float(plus_dm[i])
        s_minus = s_minus - s_minus / p + float(minus_dm[i])
        if s_tr == 0:
            dx.append(0.0)
            continue
        plus_di = s_plus / s_tr * 100.0
        minus_di = s_minus / s_tr * 100.0
        total = plus_di + minus_di
        dx.append(0.0 if total == 0 else abs(plus_di - minus_di) / total * 100.0)

    # With exactly 2*period candles there are period-1 DX readings; the seed still divides by period.
    value = sum(dx[:p]) / p
    series = [value]
    for i in range(p, len(dx)):
        value = (value * (p - 1) + dx[i]) / p
        series.append(value)
    return series
