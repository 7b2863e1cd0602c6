from __future__ import annotations

import math
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

from .config import StrategyConfig
from .errors import TradeValidationError
from .models import GREEN, RED, Candle
from .utils import safe_float

BUY = "buy"
SELL = "sell"


def side_for_color(color: str) -> str:
    return BUY if color == GREEN else SELL


def opposite_side(side: str) -> str:
    return SELL if side == BUY else BUY


def clamp_price(price: float, decimals: int) -> float:
    """Round to the product's price precision (half away from zero, like toFixed)."""
    q = Decimal(1).scaleb(-int(decimals))
    return float(Decimal(str(float(price))).quantize(q, rounding=ROUND_HALF_UP))


def format_price(price: float, decimals: int) -> str:
    return f"{clamp_price(price, decimals):.{int(decimals)}f}"


def calculate_tp_price(entry_price: float, side: str, config: StrategyConfig) -> float:
    """Take-profit `TAKE_PROFIT_PERCENT` away from entry; never below one price tick."""
    offset = entry_price * (config.take_profit_percent / 100.0)
    tp = entry_price + offset if side == BUY else entry_price - offset
    if tp <= 0:
        tp = 10 ** (-int(config.price_decimal_places))
    return clamp_price(tp, config.price_decimal_places)


def stop_loss_prices(sl: float, side: str, config: StrategyConfig) -> tuple[float, float]:
    """(trigger, limit) for a stop protecting a position opened on `side`.

    Longs get their stop below `sl`, shorts above; the limit is buffered further
    than the trigger.
    """
    if side == BUY:
        trigger = sl * (1.0 - config.sl_trigger_buffer_percent / 100.0)
        limit = sl * (1.0 - config.sl_limit_buffer_percent / 100.0)
    else:
        trigger = sl * (1.0 + config.sl_trigger_buffer_percent / 100.0)
        limit = sl * (1.0 + config.sl_limit_buffer_percent / 100.0)
    d = config.price_decimal_places
    return clamp_price(trigger, d), clamp_price(limit, d)


def trailing_stop_candidate(target: Candle, current_price: float, side: str, config: StrategyConfig) -> float:
    """New stop level for an open position from the latest closed candle.

    Buys trail at min(candle low, price), sells at max(candle high, price). When the
    current price itself is the candidate it is pushed out by TRAILING_SL_BUFFER_PERCENT.
    """
    if side == BUY:
        sl = min(target.low, current_price)
    else:
        sl = max(target.high, current_price)
    if sl == current_price:
        buf = config.trailing_sl_buffer_percent / 100.0
        sl = sl * (1.0 - buf) if side == BUY else sl * (1.0 + buf)
    return sl


def is_price_moving_in_candle_direction(target: Candle, current_price: float) -> bool:
    if target.color == RED:
        return current_price < target.high
    return current_price > target.low


def price_movement_percent(target: Candle, current_price: float) -> float:
    """Distance of the price from the candle's base extreme (high for red, low for green)."""
    base = target.high if target.color == RED else target.low
    if base == 0:
        return 0.0
    return abs((current_price - base) / base) * 100.0


def is_price_movement_within_range(target: Candle, current_price: float, config: StrategyConfig) -> bool:
    pct = price_movement_percent(target, current_price)
    if pct < config.min_allowed_price_movement_percent:
        return False
    if pct > config.max_allowed_price_movement_percent:
        return False
    return True


def body_move_percent(c: Candle) -> float:
    """Body size relative to the open, in percent."""
    if c.open == 0:
        return 0.0
    return abs(c.close - c.open) / c.open * 100.0


def resolve_entry_price(order: Any) -> float:
    """Fill price of an entry order: average fill, falling back to the limit price."""
    candidates: list[Any] = []
    if isinstance(order, dict):
        result = order.get("result") if isinstance(order.get("result"), dict) else {}
        candidates = [
            order.get("average_fill_price"),
            result.get("average_fill_price"),
            order.get("limit_price"),
            result.get("limit_price"),
        ]
    else:
        candidates = [getattr(order, "average_fill_price", None), getattr(order, "limit_price", None)]
    for raw in candidates:
        v = safe_float(raw)
        if v is not None and v > 0:
            return float(v)
    raise TradeValidationError(f"cannot resolve entry price from order {order!r}")


def next_martingale_quantity(net_debt: float, current_price: float, config: StrategyConfig) -> int:
    """Lots needed to recover `net_debt` on the next trade, on top of the base quantity."""
    if current_price <= 0:
        raise TradeValidationError(f"cannot size martingale step at price {current_price}")
    target_amount = abs(float(net_debt))
    margin_per_lot = current_price * config.lot_size / config.leverage
    # Round away float noise (85 / 0.05 is 1700.0000000000002) before the ceiling.
    lots = math.ceil(round(target_amount / margin_per_lot, 9))
    return int(math.ceil(config.initial_base_quantity)) + int(lots)
