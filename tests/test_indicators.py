from __future__ import annotations

import math

import pytest

from engine.models import Candle
from regime.indicators import adx_series, atr, atr_series, candles_to_frame, rolling_atr_percent_avg, true_range


def _c(i: int, o: float, h: float, lo: float, c: float, v: float = 100.0) -> Candle:
    return Candle(timestamp=i * 60_000, open=o, high=h, low=lo, close=c, volume=v)


def _four() -> list[Candle]:
    return [
        _c(0, 10, 12, 9, 11),
        _c(1, 11, 13, 10, 12),
        _c(2, 12, 12.5, 11.5, 12),
        _c(3, 15, 16, 15, 15.5),
    ]


def _uptrend(n: int) -> list[Candle]:
    return [_c(i, 100 + i, 102 + i, 100 + i, 101 + i) for i in range(n)]


def test_candles_to_frame_keeps_order_and_columns() -> None:
    df = candles_to_frame(_four())
    assert list(df.columns) == ["timestamp", "open", "high", "low", "close", "volume"]
    assert df["close"].tolist() == [11.0, 12.0, 12.0, 15.5]
    assert candles_to_frame([]).empty


def test_true_range_uses_previous_close_gaps() -> None:
    assert true_range(_four()).tolist() == [3.0, 1.0, 4.0]
    assert true_range(_four()[:1]).size == 0


def test_atr_series_seeds_with_mean_then_wilder_smooths() -> None:
    series = atr_series(_four(), 2)
    assert math.isnan(series[0]) and math.isnan(series[1])
    assert series[2] == pytest.approx(2.0)
    assert series[3] == pytest.approx(3.0)
    assert atr(_four(), 2) == pytest.approx(3.0)


def test_atr_needs_period_plus_one_candles() -> None:
    assert atr(_four()[:2], 2) == 0.0
    assert atr(_four(), 0) == 0.0


def test_rolling_atr_percent_avg_averages_last_period_readings() -> None:
    expected = (2.0 / 12.0 * 100.0 + 3.0 / 15.5 * 100.0) / 2
    assert rolling_atr_percent_avg(_four(), 2) == pytest.approx(expected)
    assert rolling_atr_percent_avg(_four()[:3], 2) == 0.0


def test_adx_series_for_clean_uptrend_is_100() -> None:
    series = adx_series(_uptrend(30), 5)
    assert len(series) == 20
    assert series == pytest.approx([100.0] * 20)


def test_adx_seed_divides_by_period_with_short_history() -> None:
    # 2*period candles give period-1 DX readings of 100.
    assert adx_series(_uptrend(10), 5) == pytest.approx([80.0])


def test_adx_series_empty_below_two_periods() -> None:
    assert adx_series(_uptrend(9), 5) == []
