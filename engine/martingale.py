"""Martingale position-sizing state machine.

Transitions are pure functions over the frozen `MartingaleState`; persistence is
the caller's concern.

    none -> pending -> win | loss | cancelled | partialWin -> none (reset)

`current_level` only rises on a loss and returns to 1 on a win. Cancellation
never touches the level, so a cancelled entry is retried at the same size.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace

from exchange.gateway import ORDER_CANCELLED, ORDER_CLOSED, OrderDetails

from .config import StrategyConfig
from .models import (
    OUTCOME_CANCELLED,
    OUTCOME_LOSS,
    OUTCOME_NONE,
    OUTCOME_WIN,
    MartingaleState,
)
from .trade_math import next_martingale_quantity

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ClosedOutcome:
    state: MartingaleState
    outcome: str
    net_pnl: float
    fees: float
    incremental_pnl: float
    incremental_fees: float
    resolved_by: str


def reset_state(s: MartingaleState, config: StrategyConfig) -> MartingaleState:
    return replace(
        s,
        current_level=1,
        last_trade_outcome=OUTCOME_NONE,
        last_entry_order_id=None,
        last_stop_loss_order_id=None,
        last_take_profit_order_id=None,
        last_entry_price=None,
        last_sl_price=None,
        last_tp_price=None,
        last_trade_quantity=config.initial_base_quantity,
        pnl=0.0,
        cumulative_fees=0.0,
        all_time_pnl=s.all_time_pnl or 0.0,
        all_time_fees=s.all_time_fees or 0.0,
    )


def handle_win(
    s: MartingaleState,
    config: StrategyConfig,
    *,
    net_pnl: float,
    fees: float,
    incremental_pnl: float,
    incremental_fees: float,
) -> MartingaleState:
    logger.info(
        "martingale WIN %s level=%s net_pnl=%.6f fees=%.6f inc_pnl=%.6f inc_fees=%.6f",
        s.symbol,
        s.current_level,
        net_pnl,
        fees,
        incremental_pnl,
        incremental_fees,
    )
    return replace(
        reset_state(s, config),
        current_level=1,
        last_trade_outcome=OUTCOME_WIN,
        all_time_pnl=(s.all_time_pnl or 0.0) + incremental_pnl,
        all_time_fees=(s.all_time_fees or 0.0) + incremental_fees,
    )


def handle_loss(
    s: MartingaleState,
    config: StrategyConfig,
    *,
    net_debt: float,
    pnl: float,
    fees: float,
    current_price: float,
    incremental_pnl: float,
    incremental_fees: float,
) -> MartingaleState:
    qty = next_martingale_quantity(net_debt, current_price, config)
    logger.info(
        "martingale LOSS %s level=%s->%s net_debt=%.6f next_qty=%s",
        s.symbol,
        s.current_level,
        s.current_level + 1,
        net_debt,
        qty,
    )
    return replace(
        reset_state(s, config),
        current_level=s.current_level + 1,
        last_trade_outcome=OUTCOME_LOSS,
        last_trade_quantity=qty,
        pnl=pnl,
        cumulative_fees=fees,
        all_time_pnl=(s.all_time_pnl or 0.0) + incremental_pnl,
        all_time_fees=(s.all_time_fees or 0.0) + incremental_fees,
    )


def mark_cancelled(s: MartingaleState) -> MartingaleState:
    return replace(s, last_trade_outcome=OUTCOME_CANCELLED)


def resolve_closed_position(
    s: MartingaleState,
    config: StrategyConfig,
    *,
    tp_order: OrderDetails | None,
    sl_order: OrderDetails | None,
    entry_commission: float,
    current_price: float,
) -> ClosedOutcome | None:
    """Settle a flat position from its bracket orders.

    - TP closed: win.
    - SL closed: win if the chain's net PnL after fees is >= 0, else loss.
    - TP and SL both cancelled (closed by hand): loss with no incremental PnL.

    Returns None when neither leg has resolved yet.
    """
    if tp_order is not None and tp_order.status == ORDER_CLOSED:
        inc_pnl = tp_order.pnl
        inc_fees = tp_order.paid_commission + entry_commission
        net_pnl = s.pnl + inc_pnl
        fees = s.cumulative_fees + inc_fees
        new_state = handle_win(
            s, config, net_pnl=net_pnl, fees=fees, incremental_pnl=inc_pnl, incremental_fees=inc_fees
        )
        return ClosedOutcome(new_state, OUTCOME_WIN, net_pnl, fees, inc_pnl, inc_fees, "take_profit")

    if sl_order is not None and sl_order.status == ORDER_CLOSED:
        inc_pnl = sl_order.pnl
        inc_fees = sl_order.paid_commission + entry_commission
        net_pnl = s.pnl + inc_pnl
        fees = s.cumulative_fees + inc_fees
        net_debt = net_pnl - fees
        if net_debt >= 0:
            new_state = handle_win(
                s, config, net_pnl=net_pnl, fees=fees, incremental_pnl=inc_pnl, incremental_fees=inc_fees
            )
            return ClosedOutcome(new_state, OUTCOME_WIN, net_pnl, fees, inc_pnl, inc_fees, "stop_loss")
        new_state = handle_loss(
            s,
            config,
            net_debt=net_debt,
            pnl=net_pnl,
            fees=fees,
            current_price=current_price,
            incremental_pnl=inc_pnl,
            incremental_fees=inc_fees,
        )
        return ClosedOutcome(new_state, OUTCOME_LOSS, net_pnl, fees, inc_pnl, inc_fees, "stop_loss")

    if (
        tp_order is not None
        and sl_order is not None
        and tp_order.status == ORDER_CANCELLED
        and sl_order.status == ORDER_CANCELLED
    ):
        inc_pnl = 0.0
        inc_fees = entry_commission
        net_pnl = s.pnl
        fees = s.cumulative_fees + inc_fees
        new_state = handle_loss(
            s,
            config,
            net_debt=net_pnl - fees,
            pnl=net_pnl,
            fees=fees,
            current_price=current_price,
            incremental_pnl=inc_pnl,
            incremental_fees=inc_fees,
        )
        return ClosedOutcome(new_state, OUTCOME_LOSS, net_pnl, fees, inc_pnl, inc_fees, "brackets_cancelled")

    return None
