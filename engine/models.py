from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any

from .utils import safe_float

GREEN = "green"
RED = "red"

OUTCOME_NONE = "none"
OUTCOME_PENDING = "pending"
OUTCOME_WIN = "win"
OUTCOME_LOSS = "loss"
OUTCOME_CANCELLED = "cancelled"
OUTCOME_PARTIAL_WIN = "partialWin"

OUTCOMES = frozenset(
    {
        OUTCOME_NONE,
        OUTCOME_PENDING,
        OUTCOME_WIN,
        OUTCOME_LOSS,
        OUTCOME_CANCELLED,
        OUTCOME_PARTIAL_WIN,
    }
)


@dataclass(frozen=True)
class Candle:
    timestamp: int  # candle open, epoch ms
    open: float
    high: float
    low: float
    close: float
    volume: float = 0.0

    @property
    def color(self) -> str:
        return GREEN if self.close >= self.open else RED

    @classmethod
    def from_mapping(cls, raw: dict[str, Any]) -> "Candle | None":
        """Build a candle from an exchange row; returns None when a price field is missing.

        Accepts `time` in epoch seconds (Delta) or `timestamp` in epoch ms.
        """
        ts: float | None
        if raw.get("timestamp") is not None:
            ts = safe_float(raw.get("timestamp"))
        else:
            ts = safe_float(raw.get("time"))
            if ts is not None and ts < 100_000_000_000:
                ts = ts * 1000.0
        o = safe_float(raw.get("open"))
        h = safe_float(raw.get("high"))
        lo = safe_float(raw.get("low"))
        c = safe_float(raw.get("close"))
        if ts is None or o is None or h is None or lo is None or c is None:
            return None
        return cls(
            timestamp=int(ts),
            open=float(o),
            high=float(h),
            low=float(lo),
            close=float(c),
            volume=float(safe_float(raw.get("volume"), 0.0) or 0.0),
        )


@dataclass(frozen=True)
class TargetCandle(Candle):
    """The most recently closed candle of the decision timeframe."""

    @classmethod
    def from_candle(cls, candle: Candle) -> "TargetCandle":
        return cls(
            timestamp=candle.timestamp,
            open=candle.open,
            high=candle.high,
            low=candle.low,
            close=candle.close,
            volume=candle.volume,
        )

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["color"] = self.color
        return d


@dataclass(frozen=True)
class MartingaleState:
    config_id: str
    user_id: str
    symbol: str
    current_level: int = 1
    last_trade_outcome: str = OUTCOME_NONE
    last_entry_order_id: str | None = None
    last_stop_loss_order_id: str | None = None
    last_take_profit_order_id: str | None = None
    last_entry_price: float | None = None
    last_sl_price: float | None = None
    last_tp_price: float | None = None
    last_trade_quantity: float | None = None
    pnl: float = 0.0
    cumulative_fees: float = 0.0
    all_time_pnl: float = 0.0
    all_time_fees: float = 0.0

    @property
    def is_pending(self) -> bool:
        return self.last_trade_outcome == OUTCOME_PENDING

    def identity(self) -> tuple[str, str, str]:
        return (self.config_id, self.user_id, self.symbol)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)
