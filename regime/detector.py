from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Sequence

from engine.models import Candle
from engine.trade_math import body_move_percent
from engine.utils import round_half_up

from .indicators import adx_series, atr, candles_to_frame, rolling_atr_percent_avg
from .price_action import (
    body_percent,
    closes_near_extreme,
    detect_micro_chop,
    detect_range_compression,
    is_volume_contracting,
    opposing_wick_percent,
    range_percent,
)
from .tuning import RegimeTuning

logger = logging.getLogger(__name__)

# Fixed total weight: seven signals worth 2 points each.
TOTAL_WEIGHT = 14
SIGNAL_POINTS = 2
BREAKOUT_REDUCTION = 4
INSUFFICIENT_DATA_SCORE = 7
MAX_ALLOWED_SCORE = 4

ADX_STRONG_CHOP = 18.0
ADX_WEAK_CHOP = 22.0
ADX_RISING_FLOOR = 20.0


@dataclass(frozen=True)
class RegimeResult:
    score: int
    is_allowed: bool
    breakout_override_active: bool = False
    metrics: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "score": self.score,
            "is_allowed": self.is_allowed,
            "breakout_override_active": self.breakout_override_active,
            "metrics": dict(self.metrics),
        }


def _adx_points(adx: list[float]) -> tuple[int, dict[str, Any]]:
    if not adx:
        return 0, {"current": None, "prev": None, "rising": False, "points": 0}
    current = adx[-1]
    prev = adx[-2] if len(adx) >= 2 else None
    if current < ADX_STRONG_CHOP:
        points = 2
    elif current < ADX_WEAK_CHOP:
        points = 1
    else:
        points = 0
    rising = prev is not None and current > prev
    if rising and current > ADX_RISING_FLOOR:
        points = max(0, points - 1)
    return points, {"current": current, "prev": prev, "rising": rising, "points": points}


def _target_quality(
    target: Candle, atr_percent: float, min_body_move_percent: float
) -> tuple[bool, dict[str, Any]]:
    checks = {
        "narrow_range": range_percent([target]) < atr_percent * 0.8,
        "small_body": body_percent(target) < 30,
        "weak_move": body_move_percent(target) < min_body_move_percent,
        "weak_close": not closes_near_extreme(target),
        "opposing_wick": opposing_wick_percent(target) > 40,
    }
    poor = sum(1 for v in checks.values() if v) >= 3
    return poor, {**checks, "poor": poor}


def _breakout_override(
    candles: Sequence[Candle], lookback: int, atr_avg: float
) -> tuple[bool, dict[str, Any]]:
    last = candles[-1]
    prior = list(candles[-lookback:-1]) if lookback > 1 else []
    if not prior:
        return False, {"active": False}
    prev_high = max(c.high for c in prior)
    prev_low = min(c.low for c in prior)

    beyond = last.close > prev_high or last.close < prev_low
    strong_body = body_percent(last) > 65
    high_volume = False
    if len(candles) >= 20:
        avg_vol = float(candles_to_frame(candles[-20:-1])["volume"].mean())
        high_volume = last.volume > avg_vol * 1.3
    wide_range = range_percent([last]) > atr_avg * 1.2

    active = beyond and strong_body and high_volume and wide_range
    return active, {
        "beyond_structure": beyond,
        "strong_body": strong_body,
        "high_volume": high_volume,
        "wide_range": wide_range,
        "active": active,
    }


def evaluate_regime(
    target: Candle,
    candles: Sequence[Candle],
    tuning: RegimeTuning,
    *,
    min_body_move_percent: float = 0.0,
) -> RegimeResult:
    """Chop score (0-10) and allow/block decision for one timeframe.

    Each chop signal adds 2 points out of a fixed 14; a confirmed breakout removes
    4 points and always allows the entry.
    """
    n = len(candles)
    if n < tuning.min_required_candles:
        return RegimeResult(
            score=INSUFFICIENT_DATA_SCORE,
            is_allowed=False,
            metrics={"insufficient_data": True, "candles": n, "required": tuning.min_required_candles},
        )

    latest_close = candles[-1].close
    atr_value = atr(candles, tuning.atr_period)
    atr_percent = 0.0 if latest_close == 0 else atr_value / latest_close * 100.0
    atr_avg = rolling_atr_percent_avg(candles, tuning.atr_period)

    chop = 0

    atr_choppy = atr_percent < atr_avg * 0.7
    if atr_choppy:
        chop += SIGNAL_POINTS

    adx_pts, adx_info = _adx_points(adx_series(candles, tuning.adx_period))
    adx_info["mode_weak_threshold"] = tuning.adx_weak_threshold
    chop += adx_pts

    recent = list(candles[-tuning.structure_lookback:])
    structure_range = range_percent(recent)
    structure_choppy = structure_range < atr_avg * tuning.timeframe_multiplier
    if structure_choppy:
        chop += SIGNAL_POINTS

    micro_chop = detect_micro_chop(candles, atr_avg, tuning.small_body_percent_threshold)
    if micro_chop:
        chop += SIGNAL_POINTS

    poor_target, target_info = _target_quality(target, atr_percent, min_body_move_percent)
    if poor_target:
        chop += SIGNAL_POINTS

    volume_contracting = is_volume_contracting(candles)
    if volume_contracting:
        chop += SIGNAL_POINTS

    compressed = detect_range_compression(candles, tuning.compression_max_range_percent)
    if compressed:
        chop += SIGNAL_POINTS

    override, breakout_info = _breakout_override(candles, tuning.structure_lookback, atr_avg)
    if override:
        chop -= BREAKOUT_REDUCTION

    score = round_half_up(max(0, chop) / TOTAL_WEIGHT * 10)
    score = max(0, min(10, score))
    is_allowed = override or score <= MAX_ALLOWED_SCORE

    return RegimeResult(
        score=score,
        is_allowed=is_allowed,
        breakout_override_active=override,
        metrics={
            "candles": n,
            "chop_points": chop,
            "chop_score_threshold": tuning.chop_score_threshold,
            "atr": {"value": atr_value, "percent": atr_percent, "rolling_avg": atr_avg, "choppy": atr_choppy},
            "adx": adx_info,
            "structure": {
                "range_percent": structure_range,
                "multiplier": tuning.timeframe_multiplier,
                "choppy": structure_choppy,
            },
            "micro_chop": micro_chop,
            "target_quality": target_info,
            "volume_contracting": volume_contracting,
            "range_compression": compressed,
            "breakout": breakout_info,
        },
    )


class MarketRegimeDetector:
    """Scores one timeframe and reports the decision to an event sink."""

    def __init__(self, *, sink: Callable[..., None] | None = None):
        self._sink = sink

    def score(
        self,
        target: Candle,
        candles: Sequence[Candle],
        tuning: RegimeTuning,
        *,
        symbol: str = "",
        min_body_move_percent: float = 0.0,
        context: dict[str, Any] | None = None,
    ) -> RegimeResult:
        result = evaluate_regime(target, candles, tuning, min_body_move_percent=min_body_move_percent)
        logger.debug(
            "regime %s %s/%s score=%s allowed=%s",
            symbol,
            tuning.mode,
            tuning.timeframe,
            result.score,
            result.is_allowed,
        )
        if self._sink is not None:
            self._sink(
                kind="regime_score",
                symbol=symbol,
                data={
                    **(context or {}),
                    "timeframe": tuning.timeframe,
                    "mode": tuning.mode,
                    **result.to_dict(),
                },
            )
        return result
