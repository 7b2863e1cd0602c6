from __future__ import annotations

import pytest

import regime.detector as detector_mod
from engine.errors import ConfigError
from engine.models import Candle
from regime.detector import MarketRegimeDetector, evaluate_regime
from regime.tuning import select_tuning


def _c(o: float, h: float, lo: float, c: float, v: float = 100.0, i: int = 0) -> Candle:
    return Candle(timestamp=i * 900_000, open=o, high=h, low=lo, close=c, volume=v)


def _flat(n: int) -> list[Candle]:
    return [_c(100.0, 100.5, 99.5, 100.1, i=i) for i in range(n)]


def _strong_green(v: float = 100.0) -> Candle:
    return _c(100.0, 103.0, 99.9, 102.9, v=v, i=999)


def _patch_choppy(monkeypatch, *, range_pct=lambda cs: 0.1) -> None:
    monkeypatch.setattr(detector_mod, "atr", lambda candles, period: 0.5)
    monkeypatch.setattr(detector_mod, "rolling_atr_percent_avg", lambda candles, period: 1.0)
    monkeypatch.setattr(detector_mod, "adx_series", lambda candles, period: [10.0, 9.0])
    monkeypatch.setattr(detector_mod, "range_percent", range_pct)
    monkeypatch.setattr(detector_mod, "detect_micro_chop", lambda *a, **k: True)
    monkeypatch.setattr(detector_mod, "is_volume_contracting", lambda candles: True)
    monkeypatch.setattr(detector_mod, "detect_range_compression", lambda candles, max_range: True)


def test_select_tuning_modes_and_timeframe_tables() -> None:
    t = select_tuning("Balanced", "1h")
    assert t.mode == "balanced"
    assert (t.atr_period, t.adx_period, t.structure_lookback) == (14, 14, 10)
    assert t.timeframe_multiplier == 1.2
    assert t.compression_max_range_percent == 1.0

    a = select_tuning("aggressive", "15m")
    assert (a.atr_period, a.min_required_candles, a.small_body_percent_threshold) == (10, 40, 45.0)
    assert a.compression_max_range_percent == 0.6

    odd = select_tuning("conservative", "7m")
    assert odd.timeframe_multiplier == 1.0
    assert odd.compression_max_range_percent == 1.0

    with pytest.raises(ConfigError):
        select_tuning("yolo", "15m")


def test_insufficient_history_scores_seven_and_blocks() -> None:
    res = evaluate_regime(_flat(1)[0], _flat(59), select_tuning("balanced", "15m"))
    assert res.score == 7
    assert not res.is_allowed
    assert res.metrics["insufficient_data"] is True
    assert res.metrics["required"] == 60


def test_every_chop_signal_gives_max_score(monkeypatch) -> None:
    _patch_choppy(monkeypatch)
    target = _c(100.0, 100.3, 99.7, 100.01)

    res = evaluate_regime(target, _flat(60), select_tuning("balanced", "15m"), min_body_move_percent=0.3)

    assert res.metrics["chop_points"] == 14
    assert res.score == 10
    assert not res.is_allowed
    assert not res.breakout_override_active
    assert res.metrics["target_quality"]["poor"] is True


def test_clean_trend_scores_zero(monkeypatch) -> None:
    monkeypatch.setattr(detector_mod, "atr", lambda candles, period: 1.0)
    monkeypatch.setattr(detector_mod, "rolling_atr_percent_avg", lambda candles, period: 1.0)
    monkeypatch.setattr(detector_mod, "adx_series", lambda candles, period: [25.0, 30.0])
    monkeypatch.setattr(detector_mod, "range_percent", lambda cs: 5.0)
    monkeypatch.setattr(detector_mod, "detect_micro_chop", lambda *a, **k: False)
    monkeypatch.setattr(detector_mod, "is_volume_contracting", lambda candles: False)
    monkeypatch.setattr(detector_mod, "detect_range_compression", lambda candles, max_range: False)

    res = evaluate_regime(_strong_green(), _flat(60), select_tuning("balanced", "15m"), min_body_move_percent=0.3)

    assert res.score == 0
    assert res.is_allowed
    assert res.metrics["adx"]["rising"] is True
    assert res.metrics["adx"]["points"] == 0


def test_breakout_override_allows_despite_high_score(monkeypatch) -> None:
    _patch_choppy(monkeypatch, range_pct=lambda cs: 5.0 if len(cs) == 1 else 0.1)
    bar = _strong_green(v=500.0)
    candles = _flat(59) + [bar]

    res = evaluate_regime(bar, candles, select_tuning("balanced", "15m"), min_body_move_percent=0.3)

    assert res.breakout_override_active
    assert res.metrics["chop_points"] == 8
    assert res.score == 6
    assert res.is_allowed


def test_score_stays_within_bounds_on_real_indicators() -> None:
    trend = [_c(100 + i, 101.5 + i, 99.8 + i, 101.2 + i, v=100 + i, i=i) for i in range(80)]
    for candles in (_flat(60), trend):
        res = evaluate_regime(candles[-1], candles, select_tuning("balanced", "15m"), min_body_move_percent=0.3)
        assert 0 <= res.score <= 10
        assert res.is_allowed == (res.breakout_override_active or res.score <= 4)
        assert {"atr", "adx", "structure", "target_quality", "breakout"} <= set(res.metrics)


def test_detector_emits_regime_score_event() -> None:
    events: list[dict] = []
    det = MarketRegimeDetector(sink=lambda **kw: events.append(kw))

    res = det.score(
        _flat(1)[0],
        _flat(10),
        select_tuning("balanced", "15m"),
        symbol="BTCUSD",
        context={"role": "entry"},
    )

    assert res.score == 7
    assert len(events) == 1
    evt = events[0]
    assert evt["kind"] == "regime_score"
    assert evt["symbol"] == "BTCUSD"
    assert evt["data"]["role"] == "entry"
    assert evt["data"]["timeframe"] == "15m"
    assert evt["data"]["score"] == 7


def _patch_clean(monkeypatch, adx: list[float]) -> None:
    monkeypatch.setattr(detector_mod, "atr", lambda candles, period: 1.0)
    monkeypatch.setattr(detector_mod, "rolling_atr_percent_avg", lambda candles, period: 1.0)
    monkeypatch.setattr(detector_mod, "adx_series", lambda candles, period: list(adx))
    monkeypatch.setattr(detector_mod, "range_percent", lambda cs: 5.0)
    monkeypatch.setattr(detector_mod, "detect_micro_chop", lambda *a, **k: False)
    monkeypatch.setattr(detector_mod, "is_volume_contracting", lambda candles: False)
    monkeypatch.setattr(detector_mod, "detect_range_compression", lambda candles, max_range: False)


@pytest.mark.parametrize("mode", ["conservative", "balanced", "aggressive"])
@pytest.mark.parametrize(
    ("current", "points"),
    [(10.0, 2), (17.9, 2), (18.0, 1), (21.9, 1), (22.0, 0), (23.0, 0), (30.0, 0)],
)
def test_adx_bands_are_the_same_for_every_mode(monkeypatch, mode, current, points) -> None:
    # Falling ADX, so only the band decides.
    _patch_clean(monkeypatch, [current + 1.0, current])

    res = evaluate_regime(_strong_green(), _flat(60), select_tuning(mode, "15m"), min_body_move_percent=0.3)

    assert res.metrics["adx"]["points"] == points
    assert res.metrics["chop_points"] == points


@pytest.mark.parametrize(
    ("series", "points"),
    [
        ([19.0, 21.0], 0),
        ([20.5, 21.9], 0),
        ([19.0, 20.0], 1),
        ([15.0, 17.9], 2),
        ([16.0, 20.5], 0),
        ([21.0], 1),
    ],
)
def test_rising_adx_above_twenty_takes_a_point_off(series, points) -> None:
    got, info = detector_mod._adx_points(series)
    assert got == points
    assert info["rising"] is (len(series) == 2 and series[1] > series[0])


def test_mode_weak_threshold_is_reported_not_scored(monkeypatch) -> None:
    _patch_clean(monkeypatch, [24.0, 23.0])
    res = evaluate_regime(_strong_green(), _flat(60), select_tuning("conservative", "15m"), min_body_move_percent=0.3)
    assert res.metrics["adx"]["mode_weak_threshold"] == 22.0
    assert res.metrics["adx"]["points"] == 0
