from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from typing import Any, Callable

from exchange.gateway import (
    ORDER_CANCELLED,
    ORDER_CLOSED,
    ORDER_OPEN,
    ORDER_PENDING,
    ExchangeGateway,
    OrderDetails,
)

from .config import StrategyConfig
from .errors import DataUnavailableError, ExchangeCallError, TradeValidationError
from .event_logger import null_sink
from .martingale import mark_cancelled, resolve_closed_position
from .models import GREEN, RED, Candle, MartingaleState
from .state_store import StateStore
from .trade_math import BUY, SELL, calculate_tp_price, opposite_side, trailing_stop_candidate

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReconcileResult:
    state: MartingaleState
    branch: str

    @property
    def still_pending(self) -> bool:
        return self.state.is_pending


class PendingOrderReconciler:
    """Resolves the previous cycle's entry order against exchange truth.

    Every branch persists its resulting state through the store. Calling it with a
    state that is not pending is a no-op.
    """

    def __init__(
        self,
        *,
        gateway: ExchangeGateway,
        store: StateStore,
        config: StrategyConfig,
        sink: Callable[..., None] = null_sink,
    ):
        self._gw = gateway
        self._store = store
        self._cfg = config
        self._sink = sink

    def _emit(self, kind: str, data: dict[str, Any]) -> None:
        self._sink(kind=kind, symbol=self._cfg.symbol, data={**self._cfg.identity(), **data})

    def _done(self, state: MartingaleState, branch: str, **extra: Any) -> ReconcileResult:
        self._emit("reconcile", {"branch": branch, "outcome": state.last_trade_outcome, **extra})
        return ReconcileResult(state=state, branch=branch)

    def reconcile(
        self,
        state: MartingaleState,
        entry_order: OrderDetails,
        target: Candle,
        current_price: float,
    ) -> ReconcileResult:
        if not state.is_pending:
            logger.debug("reconcile skipped for %s: outcome=%s", state.symbol, state.last_trade_outcome)
            return ReconcileResult(state=state, branch="not_pending")

        status = str(entry_order.status or "").upper()
        logger.info("reconcile %s entry=%s status=%s", state.symbol, entry_order.id, status)

        if status == ORDER_OPEN:
            return self._on_open(state)
        if status == ORDER_CANCELLED:
            saved = self._store.save(mark_cancelled(state))
            return self._done(saved, "entry_cancelled")
        if status == ORDER_PENDING:
            return self._on_partial_fill(state, entry_order)
        if status == ORDER_CLOSED:
            return self._on_closed(state, entry_order, target, current_price)

        logger.warning("reconcile %s: unknown entry order status %r; leaving state pending", state.symbol, status)
        return self._done(state, "unknown_status", status=status)

    def _on_open(self, state: MartingaleState) -> ReconcileResult:
        try:
            self._gw.cancel_all_open_orders(self._cfg.product_id)
        except ExchangeCallError as e:
            logger.warning("reconcile %s: cancel of open entry failed, retry next cycle: %s", state.symbol, e)
            return self._done(state, "open_cancel_failed", error=str(e))
        saved = self._store.save(mark_cancelled(state))
        return self._done(saved, "open_cancelled")

    def _on_partial_fill(self, state: MartingaleState, entry_order: OrderDetails) -> ReconcileResult:
        self._gw.cancel_all_open_orders(self._cfg.product_id)

        closed: list[dict[str, Any]] = []
        for pos in self._gw.get_positions(self._cfg.product_id) or []:
            if not pos.is_open:
                continue
            side = "sell" if pos.size > 0 else "buy"
            res = self._gw.place_market_order(self._cfg.symbol, side, abs(pos.size), reduce_only=True)
            closed.append({"side": side, "size": abs(pos.size), "order_id": res.id})
            logger.info("reconcile %s: closed residual %s %s via %s", state.symbol, side, abs(pos.size), res.id)

        fee = float(entry_order.paid_commission or 0.0)
        new_state = replace(
            mark_cancelled(state),
            cumulative_fees=state.cumulative_fees + fee,
            all_time_fees=state.all_time_fees + fee,
            last_entry_price=entry_order.entry_price,
        )
        saved = self._store.save(new_state)
        return self._done(saved, "partial_fill_cancelled", commission=fee, closed_positions=closed)

    def _on_closed(
        self,
        state: MartingaleState,
        entry_order: OrderDetails,
        target: Candle,
        current_price: float,
    ) -> ReconcileResult:
        positions = self._gw.get_positions(self._cfg.product_id)
        if positions is None:
            raise DataUnavailableError(f"positions unavailable for product {self._cfg.product_id}")

        if any(p.is_open for p in positions):
            return self._manage_open_position(state, entry_order, target, current_price)

        if not state.last_take_profit_order_id or not state.last_stop_loss_order_id:
            raise TradeValidationError(f"pending state for {state.symbol} is missing TP/SL order ids")

        tp_order = self._gw.get_order(state.last_take_profit_order_id)
        sl_order = None
        if tp_order is None or tp_order.status != ORDER_CLOSED:
            sl_order = self._gw.get_order(state.last_stop_loss_order_id)

        outcome = resolve_closed_position(
            state,
            self._cfg,
            tp_order=tp_order,
            sl_order=sl_order,
            entry_commission=float(entry_order.paid_commission or 0.0),
            current_price=current_price,
        )
        if outcome is None:
            logger.warning(
                "reconcile %s: position flat but neither TP (%s) nor SL (%s) resolved; retry next cycle",
                state.symbol,
                tp_order.status if tp_order else None,
                sl_order.status if sl_order else None,
            )
            return self._done(state, "brackets_unresolved")

        saved = self._store.save(outcome.state)
        self._emit(
            "martingale_outcome",
            {
                "outcome": outcome.outcome,
                "resolved_by": outcome.resolved_by,
                "net_pnl": outcome.net_pnl,
                "fees": outcome.fees,
                "incremental_pnl": outcome.incremental_pnl,
                "incremental_fees": outcome.incremental_fees,
                "level": saved.current_level,
                "next_quantity": saved.last_trade_quantity,
            },
        )
        return self._done(saved, "position_closed", resolved_by=outcome.resolved_by)

    def _manage_open_position(
        self,
        state: MartingaleState,
        entry_order: OrderDetails,
        target: Candle,
        current_price: float,
    ) -> ReconcileResult:
        side = entry_order.side
        if side not in (BUY, SELL):
            raise TradeValidationError(f"entry order {entry_order.id} has no usable side: {side!r}")

        if not state.last_stop_loss_order_id:
            return self._place_missing_bracket(state, entry_order, target, current_price, side)
        if state.last_sl_price is None:
            raise TradeValidationError(f"open position on {state.symbol} has no stored stop-loss price")

        wanted = GREEN if side == BUY else RED
        if target.color != wanted:
            return self._done(state, "trail_skipped", target_color=target.color, side=side)

        sl = trailing_stop_candidate(target, current_price, side, self._cfg)
        try:
            res = self._gw.update_stop_loss(
                state.last_stop_loss_order_id,
                state.last_sl_price,
                self._cfg.product_id,
                self._cfg.symbol,
                side,
                sl,
            )
        except ExchangeCallError as e:
            logger.warning("reconcile %s: stop-loss update failed: %s", state.symbol, e)
            return self._recover_bracket(state, entry_order, sl, error=str(e))

        if res.is_unchanged:
            return self._done(state, "trail_unchanged", stop=state.last_sl_price)

        if not res.success or res.new_limit_price is None:
            return self._recover_bracket(state, entry_order, sl, error="update rejected")

        saved = self._store.update_fields(state, last_sl_price=float(res.new_limit_price))
        self._sink(
            kind="stop_loss_update",
            symbol=self._cfg.symbol,
            data={
                **self._cfg.identity(),
                "order_id": state.last_stop_loss_order_id,
                "old_price": state.last_sl_price,
                "new_price": saved.last_sl_price,
                "side": side,
            },
        )
        return self._done(saved, "trail_updated", stop=saved.last_sl_price)

    def _place_missing_bracket(
        self,
        state: MartingaleState,
        entry_order: OrderDetails,
        target: Candle,
        current_price: float,
        side: str,
    ) -> ReconcileResult:
        """Protect a filled entry whose bracket was never placed.

        The stop recorded with the entry is reused while it is still on the protective
        side of the price; otherwise the stop trails from the latest candle.
        """
        sl = state.last_sl_price
        usable = sl is not None and sl > 0 and (sl < current_price if side == BUY else sl > current_price)
        if not usable:
            sl = trailing_stop_candidate(target, current_price, side, self._cfg)
        logger.warning(
            "reconcile %s: open position without a stop order; placing bracket sl=%s", state.symbol, sl
        )
        return self._replace_bracket(state, entry_order, float(sl), side, "bracket_placed")

    def _recover_bracket(
        self, state: MartingaleState, entry_order: OrderDetails, sl: float, *, error: str
    ) -> ReconcileResult:
        """Re-place TP/SL when the stored stop order was cancelled; otherwise wait for the next cycle."""
        sl_order = self._gw.get_order(str(state.last_stop_loss_order_id))
        if sl_order is None or sl_order.status != ORDER_CANCELLED:
            logger.warning(
                "reconcile %s: stop order %s is %s, not re-placing bracket",
                state.symbol,
                state.last_stop_loss_order_id,
                sl_order.status if sl_order else None,
            )
            return self._done(state, "trail_failed", error=error)
        return self._replace_bracket(state, entry_order, sl, str(entry_order.side), "bracket_replaced")

    def _replace_bracket(
        self, state: MartingaleState, entry_order: OrderDetails, sl: float, side: str, branch: str
    ) -> ReconcileResult:
        entry_price = entry_order.entry_price or state.last_entry_price
        if not entry_price:
            raise TradeValidationError(f"entry price unknown for order {entry_order.id}; cannot place bracket")

        self._gw.cancel_stop_orders(self._cfg.product_id)
        tp = calculate_tp_price(float(entry_price), side, self._cfg)
        bracket = self._gw.place_bracket_order(tp, sl, side)
        saved = self._store.update_fields(
            state,
            last_sl_price=sl,
            last_tp_price=tp,
            last_stop_loss_order_id=bracket.sl_order_id,
            last_take_profit_order_id=bracket.tp_order_id,
        )
        logger.info(
            "reconcile %s: bracket placed tp=%s sl=%s (exit side %s)",
            state.symbol,
            tp,
            sl,
            opposite_side(side),
        )
        return self._done(saved, branch, tp=tp, sl=sl)
