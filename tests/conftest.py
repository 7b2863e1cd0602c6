from __future__ import annotations

from typing import Any

import pytest

from engine.models import Candle
from engine.utils import interval_to_ms
from exchange.gateway import BracketResult, MarketOrderResult, OrderDetails, Position, StopLossUpdateResult, Ticker


@pytest.fixture(autouse=True)
def _no_event_log(monkeypatch):
    """Keep decision events out of the repo tree unless a test opts in."""
    monkeypatch.setenv("DMB_EVENT_LOG", "0")
    yield
    from engine.event_logger import _close_for_tests

    _close_for_tests()


class FakeGateway:
    """In-memory exchange: every call is recorded in `calls`; failures are opt-in."""

    def __init__(self):
        self.calls: list[tuple[str, tuple[Any, ...]]] = []
        self.bar = {"open": 100.0, "high": 101.0, "low": 99.5, "close": 100.8, "volume": 100.0}
        self.candles_enabled = True
        self.mark_price: float | None = 100.3
        self.orders: dict[str, OrderDetails] = {}
        self.positions: list[Position] | None = []
        self.fill_price: float | None = 100.3
        self.sl_update: StopLossUpdateResult | Exception = StopLossUpdateResult(success=True, new_limit_price=98.8)
        self.bracket_error: Exception | None = None
        self.cancel_error: Exception | None = None
        self._seq = 0

    def _rec(self, name: str, *args: Any) -> None:
        self.calls.append((name, args))

    def called(self, name: str) -> list[tuple[Any, ...]]:
        return [args for n, args in self.calls if n == name]

    def get_candles(self, symbol, timeframe, start_ms, end_ms):
        self._rec("get_candles", symbol, timeframe, start_ms, end_ms)
        if not self.candles_enabled:
            return []
        dur = interval_to_ms(timeframe)
        first = ((int(start_ms) + dur - 1) // dur) * dur
        return [Candle(timestamp=t, **self.bar) for t in range(first, int(end_ms) + 1, dur)]

    def get_ticker(self, symbol):
        self._rec("get_ticker", symbol)
        return Ticker(symbol=symbol, mark_price=self.mark_price)

    def get_order(self, order_id):
        self._rec("get_order", order_id)
        return self.orders.get(str(order_id))

    def place_market_order(self, symbol, side, qty, *, reduce_only=False, client_order_id=None):
        self._rec("place_market_order", symbol, side, qty, reduce_only)
        self._seq += 1
        return MarketOrderResult(id=f"m{self._seq}", average_fill_price=self.fill_price)

    def place_bracket_order(self, tp, sl, side):
        self._rec("place_bracket_order", tp, sl, side)
        if self.bracket_error is not None:
            raise self.bracket_error
        return BracketResult(tp_order_id="tp-new", sl_order_id="sl-new")

    def update_stop_loss(self, order_id, old_price, product_id, symbol, side, new_price):
        self._rec("update_stop_loss", order_id, old_price, product_id, symbol, side, new_price)
        if isinstance(self.sl_update, Exception):
            raise self.sl_update
        return self.sl_update

    def cancel_all_open_orders(self, product_id):
        self._rec("cancel_all_open_orders", product_id)
        if self.cancel_error is not None:
            raise self.cancel_error

    def cancel_stop_orders(self, product_id):
        self._rec("cancel_stop_orders", product_id)

    def get_positions(self, product_id):
        self._rec("get_positions", product_id)
        return self.positions


@pytest.fixture()
def fake_gateway() -> FakeGateway:
    return FakeGateway()

