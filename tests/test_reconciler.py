from __future__ import annotations

import pytest

from engine.config import StrategyConfig
from engine.errors import DataUnavailableError, ExchangeCallError, TradeValidationError
from engine.models import Candle
from engine.reconciler import PendingOrderReconciler
from engine.state_store import StateStore
from exchange.gateway import OrderDetails, Position, StopLossUpdateResult

GREEN_BAR = Candle(timestamp=0, open=99.5, high=101.0, low=99.0, close=100.5)
RED_BAR = Candle(timestamp=0, open=100.5, high=101.0, low=99.0, close=99.5)


def _cfg() -> StrategyConfig:
    return StrategyConfig.from_mapping(
        {
            "id": "cfg-1",
            "USER_ID": "u1",
            "SYMBOL": "BTCUSD",
            "PRODUCT_ID": 27,
            "LOT_SIZE": 0.01,
            "LEVERAGE": 20,
            "INITIAL_BASE_QUANTITY": 1,
        }
    )


@pytest.fixture()
def store(tmp_path):
    s = StateStore(db_path=str(tmp_path / "state.db"))
    s.ensure()
    yield s
    s.close()


@pytest.fixture()
def events():
    return []


@pytest.fixture()
def reconciler(fake_gateway, store, events):
    return PendingOrderReconciler(
        gateway=fake_gateway, store=store, config=_cfg(), sink=lambda **kw: events.append(kw)
    )


def _pending_state(store, **over):
    st = store.get_or_create(_cfg())
    values = dict(
        last_trade_outcome="pending",
        last_entry_order_id="e1",
        last_stop_loss_order_id="sl1",
        last_take_profit_order_id="tp1",
        last_entry_price=100.0,
        last_sl_price=98.0,
        last_tp_price=103.0,
        last_trade_quantity=1,
    )
    values.update(over)
    return store.update_fields(st, **values)


def _entry(status: str, *, side: str = "buy", commission: float = 1.0) -> OrderDetails:
    return OrderDetails(id="e1", status=status, side=side, average_fill_price=100.0, paid_commission=commission)


def _kinds(events) -> list[str]:
    return [e["kind"] for e in events]


def test_not_pending_is_a_no_op(reconciler, fake_gateway, store) -> None:
    st = store.get_or_create(_cfg())
    res = reconciler.reconcile(st, _entry("OPEN"), GREEN_BAR, 100.2)
    assert res.branch == "not_pending"
    assert res.state == st
    assert fake_gateway.calls == []


def test_open_entry_is_cancelled_and_reconcile_is_idempotent(reconciler, fake_gateway, store) -> None:
    st = _pending_state(store)

    res = reconciler.reconcile(st, _entry("OPEN"), GREEN_BAR, 100.2)
    assert res.branch == "open_cancelled"
    assert not res.still_pending
    assert fake_gateway.called("cancel_all_open_orders") == [(27,)]
    stored = store.get("cfg-1", "u1", "BTCUSD")
    assert stored.last_trade_outcome == "cancelled"
    assert stored.current_level == 1

    again = reconciler.reconcile(stored, _entry("OPEN"), GREEN_BAR, 100.2)
    assert again.branch == "not_pending"
    assert len(fake_gateway.called("cancel_all_open_orders")) == 1


def test_open_entry_cancel_failure_leaves_state_pending(reconciler, fake_gateway, store) -> None:
    st = _pending_state(store)
    fake_gateway.cancel_error = ExchangeCallError("nope", op="cancel_all_orders")

    res = reconciler.reconcile(st, _entry("OPEN"), GREEN_BAR, 100.2)

    assert res.branch == "open_cancel_failed"
    assert res.still_pending
    assert store.get("cfg-1", "u1", "BTCUSD").last_trade_outcome == "pending"


def test_cancelled_entry_marks_state_cancelled(reconciler, store) -> None:
    st = _pending_state(store, current_level=3, last_trade_quantity=700)
    res = reconciler.reconcile(st, _entry("CANCELLED"), GREEN_BAR, 100.2)
    assert res.branch == "entry_cancelled"
    assert res.state.last_trade_outcome == "cancelled"
    assert res.state.current_level == 3
    assert res.state.last_trade_quantity == 700


def test_partial_fill_closes_residual_and_books_commission(reconciler, fake_gateway, store) -> None:
    st = _pending_state(store, cumulative_fees=0.5, all_time_fees=2.0)
    fake_gateway.positions = [Position(product_id=27, size=3.0)]

    res = reconciler.reconcile(st, _entry("PENDING", commission=0.25), GREEN_BAR, 100.2)

    assert res.branch == "partial_fill_cancelled"
    assert fake_gateway.called("cancel_all_open_orders") == [(27,)]
    assert fake_gateway.called("place_market_order") == [("BTCUSD", "sell", 3.0, True)]
    assert res.state.last_trade_outcome == "cancelled"
    assert res.state.cumulative_fees == pytest.approx(0.75)
    assert res.state.all_time_fees == pytest.approx(2.25)
    assert res.state.last_entry_price == 100.0


def test_flat_position_take_profit_is_a_win(reconciler, fake_gateway, store, events) -> None:
    st = _pending_state(store, current_level=2, pnl=-20.0, cumulative_fees=2.0)
    fake_gateway.orders["tp1"] = OrderDetails(id="tp1", status="CLOSED", paid_commission=2.0, meta={"pnl": 50})

    res = reconciler.reconcile(st, _entry("CLOSED"), GREEN_BAR, 100.2)

    assert res.branch == "position_closed"
    assert res.state.last_trade_outcome == "win"
    assert res.state.current_level == 1
    assert fake_gateway.called("get_order") == [("tp1",)]
    assert store.get("cfg-1", "u1", "BTCUSD").last_trade_outcome == "win"
    outcome = [e for e in events if e["kind"] == "martingale_outcome"][0]
    assert outcome["data"]["incremental_pnl"] == pytest.approx(50.0)
    assert outcome["data"]["incremental_fees"] == pytest.approx(3.0)
    assert _kinds(events)[-1] == "reconcile"


def test_flat_position_stop_loss_loss_sizes_next_trade(reconciler, fake_gateway, store) -> None:
    st = _pending_state(store)
    fake_gateway.orders["tp1"] = OrderDetails(id="tp1", status="OPEN")
    fake_gateway.orders["sl1"] = OrderDetails(id="sl1", status="CLOSED", paid_commission=4.0, meta={"pnl": -80})

    res = reconciler.reconcile(st, _entry("CLOSED"), GREEN_BAR, 100.0)

    assert res.branch == "position_closed"
    assert res.state.last_trade_outcome == "loss"
    assert res.state.current_level == 2
    assert res.state.last_trade_quantity == 1701


def test_flat_position_with_unresolved_brackets_stays_pending(reconciler, fake_gateway, store) -> None:
    st = _pending_state(store)
    fake_gateway.orders["tp1"] = OrderDetails(id="tp1", status="OPEN")
    fake_gateway.orders["sl1"] = OrderDetails(id="sl1", status="OPEN")

    res = reconciler.reconcile(st, _entry("CLOSED"), GREEN_BAR, 100.0)

    assert res.branch == "brackets_unresolved"
    assert res.still_pending


def test_flat_position_without_bracket_ids_is_invalid(reconciler, store) -> None:
    st = _pending_state(store, last_take_profit_order_id=None)
    with pytest.raises(TradeValidationError):
        reconciler.reconcile(st, _entry("CLOSED"), GREEN_BAR, 100.0)


def test_positions_unavailable_raises(reconciler, fake_gateway, store) -> None:
    st = _pending_state(store)
    fake_gateway.positions = None
    with pytest.raises(DataUnavailableError):
        reconciler.reconcile(st, _entry("CLOSED"), GREEN_BAR, 100.0)


def test_open_position_trails_stop_with_matching_candle(reconciler, fake_gateway, store, events) -> None:
    st = _pending_state(store)
    fake_gateway.positions = [Position(product_id=27, size=1.0)]

    res = reconciler.reconcile(st, _entry("CLOSED"), GREEN_BAR, 100.2)

    assert res.branch == "trail_updated"
    assert fake_gateway.called("update_stop_loss") == [("sl1", 98.0, 27, "BTCUSD", "buy", 99.0)]
    assert res.state.last_sl_price == 98.8
    assert res.still_pending
    assert "stop_loss_update" in _kinds(events)


def test_open_position_skips_trail_on_opposite_candle(reconciler, fake_gateway, store) -> None:
    st = _pending_state(store)
    fake_gateway.positions = [Position(product_id=27, size=1.0)]

    res = reconciler.reconcile(st, _entry("CLOSED"), RED_BAR, 100.2)

    assert res.branch == "trail_skipped"
    assert fake_gateway.called("update_stop_loss") == []


def test_open_position_unchanged_stop(reconciler, fake_gateway, store) -> None:
    st = _pending_state(store)
    fake_gateway.positions = [Position(product_id=27, size=1.0)]
    fake_gateway.sl_update = StopLossUpdateResult(success=False, is_unchanged=True, new_limit_price=98.0)

    res = reconciler.reconcile(st, _entry("CLOSED"), GREEN_BAR, 100.2)

    assert res.branch == "trail_unchanged"
    assert res.state.last_sl_price == 98.0


def test_failed_trail_replaces_cancelled_bracket(reconciler, fake_gateway, store) -> None:
    st = _pending_state(store)
    fake_gateway.positions = [Position(product_id=27, size=1.0)]
    fake_gateway.sl_update = ExchangeCallError("rejected", op="update_stop_loss")
    fake_gateway.orders["sl1"] = OrderDetails(id="sl1", status="CANCELLED")

    res = reconciler.reconcile(st, _entry("CLOSED"), GREEN_BAR, 100.2)

    assert res.branch == "bracket_replaced"
    assert fake_gateway.called("cancel_stop_orders") == [(27,)]
    assert fake_gateway.called("place_bracket_order") == [(103.0, 99.0, "buy")]
    stored = store.get("cfg-1", "u1", "BTCUSD")
    assert stored.last_stop_loss_order_id == "sl-new"
    assert stored.last_take_profit_order_id == "tp-new"
    assert stored.last_sl_price == 99.0
    assert stored.last_trade_outcome == "pending"


def test_failed_trail_with_live_stop_waits(reconciler, fake_gateway, store) -> None:
    st = _pending_state(store)
    fake_gateway.positions = [Position(product_id=27, size=1.0)]
    fake_gateway.sl_update = ExchangeCallError("rejected", op="update_stop_loss")
    fake_gateway.orders["sl1"] = OrderDetails(id="sl1", status="OPEN")

    res = reconciler.reconcile(st, _entry("CLOSED"), GREEN_BAR, 100.2)

    assert res.branch == "trail_failed"
    assert fake_gateway.called("place_bracket_order") == []
    assert store.get("cfg-1", "u1", "BTCUSD").last_stop_loss_order_id == "sl1"


def test_unknown_entry_status_leaves_state_alone(reconciler, store) -> None:
    st = _pending_state(store)
    res = reconciler.reconcile(st, _entry("UNTRIGGERED"), GREEN_BAR, 100.2)
    assert res.branch == "unknown_status"
    assert res.still_pending


@pytest.mark.parametrize(
    ("stored_sl", "expected_sl"),
    [(99.5, 99.5), (None, 99.0), (100.5, 99.0)],
)
def test_open_position_without_bracket_gets_one(reconciler, fake_gateway, store, stored_sl, expected_sl) -> None:
    st = _pending_state(
        store,
        last_stop_loss_order_id=None,
        last_take_profit_order_id=None,
        last_sl_price=stored_sl,
    )
    fake_gateway.positions = [Position(product_id=27, size=1.0)]

    res = reconciler.reconcile(st, _entry("CLOSED"), GREEN_BAR, 100.2)

    assert res.branch == "bracket_placed"
    assert res.still_pending
    assert fake_gateway.called("update_stop_loss") == []
    assert fake_gateway.called("cancel_stop_orders") == [(27,)]
    assert fake_gateway.called("place_bracket_order") == [(103.0, expected_sl, "buy")]
    stored = store.get("cfg-1", "u1", "BTCUSD")
    assert (stored.last_take_profit_order_id, stored.last_stop_loss_order_id) == ("tp-new", "sl-new")
    assert stored.last_sl_price == expected_sl


def test_sell_side_trails_on_red_candle_and_unknown_side_is_invalid(reconciler, fake_gateway, store) -> None:
    st = _pending_state(store, last_sl_price=102.0)
    fake_gateway.positions = [Position(product_id=27, size=-1.0)]

    res = reconciler.reconcile(st, _entry("CLOSED", side="sell"), RED_BAR, 100.2)

    assert res.branch == "trail_updated"
    assert fake_gateway.called("update_stop_loss") == [("sl1", 102.0, 27, "BTCUSD", "sell", 101.0)]

    with pytest.raises(TradeValidationError):
        reconciler.reconcile(res.state, _entry("CLOSED", side="flat"), RED_BAR, 100.2)
