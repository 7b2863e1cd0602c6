from __future__ import annotations

import pytest

from engine.config import StrategyConfig
from engine.errors import TradeValidationError
from engine.models import Candle
from engine.trade_math import (
    BUY,
    SELL,
    body_move_percent,
    calculate_tp_price,
    clamp_price,
    format_price,
    is_price_moving_in_candle_direction,
    is_price_movement_within_range,
    next_martingale_quantity,
    opposite_side,
    price_movement_percent,
    resolve_entry_price,
    side_for_color,
    stop_loss_prices,
    trailing_stop_candidate,
)
from exchange.gateway import MarketOrderResult


def _cfg(**over) -> StrategyConfig:
    raw = {"id": "cfg-1", "USER_ID": "u1", "SYMBOL": "BTCUSD", "PRODUCT_ID": 27}
    raw.update(over)
    return StrategyConfig.from_mapping(raw)


GREEN_BAR = Candle(timestamp=0, open=99.5, high=101.0, low=99.0, close=100.5)
RED_BAR = Candle(timestamp=0, open=100.5, high=101.0, low=99.0, close=99.5)


def test_sides() -> None:
    assert side_for_color("green") == BUY
    assert side_for_color("red") == SELL
    assert opposite_side(BUY) == SELL
    assert opposite_side(SELL) == BUY


def test_clamp_and_format_round_half_up() -> None:
    assert clamp_price(1.005, 2) == 1.01
    assert clamp_price(1.004, 2) == 1.0
    assert clamp_price(12345.678, 0) == 12346.0
    assert format_price(2.5, 2) == "2.50"


def test_take_profit_price() -> None:
    cfg = _cfg()
    assert calculate_tp_price(100.0, BUY, cfg) == 103.0
    assert calculate_tp_price(100.0, SELL, cfg) == 97.0
    # A short TP that would go negative is floored at one tick.
    assert calculate_tp_price(100.0, SELL, _cfg(TAKE_PROFIT_PERCENT=150)) == 0.01


def test_stop_loss_trigger_and_limit_buffers() -> None:
    cfg = _cfg()
    assert stop_loss_prices(100.0, BUY, cfg) == (99.9, 99.8)
    assert stop_loss_prices(100.0, SELL, cfg) == (100.1, 100.2)


def test_trailing_stop_candidate() -> None:
    cfg = _cfg()
    assert trailing_stop_candidate(GREEN_BAR, 100.0, BUY, cfg) == 99.0
    assert trailing_stop_candidate(GREEN_BAR, 98.0, BUY, cfg) == pytest.approx(97.902)
    assert trailing_stop_candidate(RED_BAR, 100.0, SELL, cfg) == 101.0
    assert trailing_stop_candidate(RED_BAR, 102.0, SELL, cfg) == pytest.approx(102.102)


def test_price_direction_and_band() -> None:
    cfg = _cfg()
    assert is_price_moving_in_candle_direction(GREEN_BAR, 99.5)
    assert not is_price_moving_in_candle_direction(GREEN_BAR, 98.0)
    assert is_price_moving_in_candle_direction(RED_BAR, 100.0)
    assert not is_price_moving_in_candle_direction(RED_BAR, 102.0)

    assert price_movement_percent(GREEN_BAR, 99.99) == pytest.approx(1.0)
    assert price_movement_percent(RED_BAR, 99.99) == pytest.approx(1.0)

    assert is_price_movement_within_range(GREEN_BAR, 99.99, cfg)
    assert not is_price_movement_within_range(GREEN_BAR, 99.05, cfg)
    assert not is_price_movement_within_range(GREEN_BAR, 104.0, cfg)


def test_body_move_percent() -> None:
    assert body_move_percent(Candle(0, 100.0, 102.0, 99.0, 101.0)) == pytest.approx(1.0)
    assert body_move_percent(Candle(0, 0.0, 1.0, 0.0, 1.0)) == 0.0


def test_resolve_entry_price_falls_back_to_limit_price() -> None:
    assert resolve_entry_price({"average_fill_price": None, "limit_price": "101.5"}) == 101.5
    assert resolve_entry_price({"result": {"average_fill_price": "100.2"}}) == 100.2
    assert resolve_entry_price(MarketOrderResult(id="1", average_fill_price=99.0)) == 99.0
    assert resolve_entry_price(MarketOrderResult(id="1", limit_price=98.5)) == 98.5
    with pytest.raises(TradeValidationError):
        resolve_entry_price({"average_fill_price": "0"})
    with pytest.raises(TradeValidationError):
        resolve_entry_price(MarketOrderResult(id="1"))


def test_next_martingale_quantity_recovers_debt() -> None:
    cfg = _cfg(LOT_SIZE=0.01, LEVERAGE=20, INITIAL_BASE_QUANTITY=1)
    # margin per lot = 100 * 0.01 / 20 = 0.05; 85 / 0.05 = 1700 lots + 1 base.
    assert next_martingale_quantity(-85.0, 100.0, cfg) == 1701
    assert next_martingale_quantity(-0.01, 100.0, cfg) == 2
    with pytest.raises(TradeValidationError):
        next_martingale_quantity(-85.0, 0.0, cfg)
