from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Sequence

from engine.config import StrategyConfig
from engine.models import GREEN, RED, Candle

from .detector import MarketRegimeDetector, RegimeResult
from .tuning import select_tuning

logger = logging.getLogger(__name__)

LONG = "long"
SHORT = "short"

HARD_BLOCK_SCORE = 6
BASE_ALLOW_SCORE = 4
DIRECTION_LOOKBACK = 10


@dataclass(frozen=True)
class AlignmentResult:
    entry_score: int
    confirmation_score: int
    structure_score: int
    is_allowed: bool
    direction: str | None
    block_reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "entry_score": self.entry_score,
            "confirmation_score": self.confirmation_score,
            "structure_score": self.structure_score,
            "is_allowed": self.is_allowed,
            "direction": self.direction,
            "block_reason": self.block_reason,
        }


def structure_direction(candles: Sequence[Candle]) -> str | None:
    """`long` if the last close clears the prior 9 highs, `short` if it breaks the prior 9 lows."""
    recent = list(candles[-DIRECTION_LOOKBACK:])
    if len(recent) < 2:
        return None
    last = recent[-1]
    prior = recent[:-1]
    if last.close > max(c.high for c in prior):
        return LONG
    if last.close < min(c.low for c in prior):
        return SHORT
    return None


class AlignmentCoordinator:
    """Runs the regime detector on entry, confirmation and structure timeframes and merges the verdicts."""

    def __init__(self, *, detector: MarketRegimeDetector | None = None, sink: Callable[..., None] | None = None):
        self._detector = detector or MarketRegimeDetector(sink=sink)
        self._sink = sink

    def evaluate(
        self,
        target: Candle,
        entry_candles: Sequence[Candle],
        confirmation_candles: Sequence[Candle],
        structure_candles: Sequence[Candle],
        config: StrategyConfig,
    ) -> AlignmentResult:
        ctx = {"config_id": config.config_id, "user_id": config.user_id}

        def _score(candles: Sequence[Candle], timeframe: str, role: str) -> RegimeResult:
            return self._detector.score(
                target,
                candles,
                select_tuning(config.trading_mode, timeframe),
                symbol=config.symbol,
                min_body_move_percent=config.min_movement_percent,
                context={**ctx, "role": role},
            )

        entry = _score(entry_candles, config.timeframe, "entry")
        confirmation = _score(confirmation_candles, config.confirmation_timeframe, "confirmation")
        structure = _score(structure_candles, config.structure_timeframe, "structure")

        direction = structure_direction(structure_candles)
        block_reason: str | None = None

        if structure.score >= HARD_BLOCK_SCORE:
            allowed = False
            block_reason = "structure_choppy"
        elif confirmation.score >= HARD_BLOCK_SCORE:
            allowed = False
            block_reason = "confirmation_choppy"
        else:
            allowed = structure.score <= BASE_ALLOW_SCORE and confirmation.score <= BASE_ALLOW_SCORE and entry.is_allowed
            if not allowed:
                block_reason = "not_aligned"

        if allowed and direction == LONG and target.color == RED:
            allowed = False
            block_reason = "counter_direction"
        if allowed and direction == SHORT and target.color == GREEN:
            allowed = False
            block_reason = "counter_direction"

        result = AlignmentResult(
            entry_score=entry.score,
            confirmation_score=confirmation.score,
            structure_score=structure.score,
            is_allowed=allowed,
            direction=direction,
            block_reason=block_reason,
        )
        logger.info(
            "alignment %s entry=%s confirmation=%s structure=%s direction=%s allowed=%s",
            config.symbol,
            result.entry_score,
            result.confirmation_score,
            result.structure_score,
            result.direction,
            result.is_allowed,
        )
        if self._sink is not None:
            self._sink(
                kind="alignment",
                symbol=config.symbol,
                data={**ctx, "target_color": target.color, **result.to_dict()},
            )
        return result
