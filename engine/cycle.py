"""Single-flight trading cycle for one strategy config.

AcquireLock -> FetchCandles -> FetchPrice -> LoadState -> (pending) Reconcile
-> Alignment -> PriceBand -> PlaceOrders -> Persist -> ReleaseLock

Early exits return a CycleReport; unexpected failures are logged and re-raised.
The lease is released on every path.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Sequence

from exchange.gateway import ExchangeGateway
from regime.alignment import AlignmentCoordinator, AlignmentResult

from .config import StrategyConfig
from .errors import DataUnavailableError, TradeValidationError
from .event_logger import emit_event
from .lock import LeaseLock, lock_key
from .models import GREEN, OUTCOME_PENDING, Candle, MartingaleState, TargetCandle
from .reconciler import PendingOrderReconciler
from .state_store import StateStore
from .trade_math import (
    calculate_tp_price,
    is_price_moving_in_candle_direction,
    is_price_movement_within_range,
    price_movement_percent,
    resolve_entry_price,
    side_for_color,
)
from .utils import candle_open_ms, interval_to_ms, now_ms

logger = logging.getLogger(__name__)

STATUS_LOCK_BUSY = "lock_busy"
STATUS_DATA_UNAVAILABLE = "data_unavailable"
STATUS_VALIDATION_FAILED = "validation_failed"
STATUS_PENDING = "pending"
STATUS_ALIGNMENT_BLOCKED = "alignment_blocked"
STATUS_PRICE_OUT_OF_BAND = "price_out_of_band"
STATUS_DRY_RUN = "dry_run"
STATUS_INVALID_QUANTITY = "invalid_quantity"
STATUS_ORDER_PLACED = "order_placed"


@dataclass(frozen=True)
class CycleReport:
    status: str
    detail: str = ""
    state: MartingaleState | None = None
    alignment: AlignmentResult | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "detail": self.detail,
            "state": self.state.to_dict() if self.state else None,
            "alignment": self.alignment.to_dict() if self.alignment else None,
        }


def closed_candles(candles: Sequence[Candle], current_candle_start_ms: int) -> list[Candle]:
    """Ascending, de-duplicated candles that closed before the current one opened."""
    by_ts: dict[int, Candle] = {}
    for c in candles:
        if c.timestamp < current_candle_start_ms:
            by_ts[c.timestamp] = c
    return [by_ts[ts] for ts in sorted(by_ts)]


class TradingCycle:
    def __init__(
        self,
        *,
        store: StateStore,
        lock: LeaseLock,
        gateway_factory: Callable[[StrategyConfig], ExchangeGateway],
        lock_ttl_s: int = 55,
        history_bars: int = 120,
        sink: Callable[..., None] = emit_event,
        clock_ms: Callable[[], int] = now_ms,
        alignment: AlignmentCoordinator | None = None,
    ):
        self._store = store
        self._lock = lock
        self._gateway_factory = gateway_factory
        self._lock_ttl_s = int(lock_ttl_s)
        self._history_bars = max(1, int(history_bars))
        self._sink = sink
        self._clock_ms = clock_ms
        self._alignment = alignment or AlignmentCoordinator(sink=sink)

    def __call__(self, config: StrategyConfig) -> CycleReport:
        return self.run_trading_cycle(config)

    def _emit(self, kind: str, config: StrategyConfig, data: dict[str, Any] | None = None) -> None:
        self._sink(kind=kind, symbol=config.symbol, data={**config.identity(), **(data or {})})

    def _skip(
        self,
        config: StrategyConfig,
        status: str,
        detail: str = "",
        *,
        state: MartingaleState | None = None,
        alignment: AlignmentResult | None = None,
        **extra: Any,
    ) -> CycleReport:
        logger.info("cycle %s/%s skipped: %s %s", config.config_id, config.symbol, status, detail)
        data: dict[str, Any] = {"reason": status, "detail": detail, **extra}
        if alignment is not None:
            data["alignment"] = alignment.to_dict()
        self._emit("cycle_skip", config, data)
        return CycleReport(status=status, detail=detail, state=state, alignment=alignment)

    def run_trading_cycle(self, config: StrategyConfig) -> CycleReport:
        key = lock_key(config)
        with self._lock.hold(key, self._lock_ttl_s) as lease:
            if lease is None:
                logger.info("cycle %s/%s: another run holds %s", config.config_id, config.symbol, key)
                self._emit("lock_busy", config, {"lock_key": key})
                return CycleReport(status=STATUS_LOCK_BUSY, detail=key)
            try:
                return self._run_locked(config)
            except DataUnavailableError as e:
                logger.warning("cycle %s/%s: data unavailable: %s", config.config_id, config.symbol, e)
                self._emit("cycle_skip", config, {"reason": STATUS_DATA_UNAVAILABLE, "detail": str(e)})
                return CycleReport(status=STATUS_DATA_UNAVAILABLE, detail=str(e))
            except TradeValidationError as e:
                logger.warning("cycle %s/%s: validation failed: %s", config.config_id, config.symbol, e)
                self._emit("cycle_skip", config, {"reason": STATUS_VALIDATION_FAILED, "detail": str(e)})
                return CycleReport(status=STATUS_VALIDATION_FAILED, detail=str(e))
            except Exception as e:
                logger.exception("cycle %s/%s failed", config.config_id, config.symbol)
                self._emit("cycle_error", config, {"error": f"{type(e).__name__}: {e}"})
                raise

    def _fetch_history(
        self, gw: ExchangeGateway, config: StrategyConfig, timeframe: str, now: int
    ) -> tuple[list[Candle], int, int]:
        dur = interval_to_ms(timeframe)
        if dur <= 0:
            raise DataUnavailableError(f"unsupported timeframe {timeframe!r}")
        cur_start = candle_open_ms(now, timeframe)
        start = cur_start - self._history_bars * dur
        raw = gw.get_candles(config.symbol, timeframe, start, now)
        return closed_candles(raw, cur_start), cur_start, dur

    def _run_locked(self, config: StrategyConfig) -> CycleReport:
        gw = self._gateway_factory(config)
        now = int(self._clock_ms())

        entry_candles, cur_start, dur = self._fetch_history(gw, config, config.timeframe, now)
        target_ts = cur_start - dur
        found = next((c for c in reversed(entry_candles) if c.timestamp == target_ts), None)
        if found is None:
            raise DataUnavailableError(f"no closed {config.timeframe} candle at {target_ts} for {config.symbol}")
        target = TargetCandle.from_candle(found)

        confirmation_candles, _, _ = self._fetch_history(gw, config, config.confirmation_timeframe, now)
        structure_candles, _, _ = self._fetch_history(gw, config, config.structure_timeframe, now)

        ticker = gw.get_ticker(config.symbol)
        price = ticker.mark_price if ticker is not None else None
        if price is None or price <= 0:
            raise DataUnavailableError(f"no mark price for {config.symbol}")

        state = self._store.get_or_create(config)

        if state.is_pending:
            if not state.last_entry_order_id:
                raise TradeValidationError(f"pending state for {config.symbol} has no entry order id")
            entry_order = gw.get_order(state.last_entry_order_id)
            if entry_order is None:
                raise DataUnavailableError(f"entry order {state.last_entry_order_id} not found")
            rec = PendingOrderReconciler(gateway=gw, store=self._store, config=config, sink=self._sink)
            result = rec.reconcile(state, entry_order, target, price)
            state = result.state
            if state.is_pending:
                logger.info("cycle %s/%s: trade still pending (%s)", config.config_id, config.symbol, result.branch)
                return CycleReport(status=STATUS_PENDING, detail=result.branch, state=state)

        alignment = self._alignment.evaluate(target, entry_candles, confirmation_candles, structure_candles, config)
        if not alignment.is_allowed:
            return self._skip(
                config,
                STATUS_ALIGNMENT_BLOCKED,
                alignment.block_reason or "",
                state=state,
                alignment=alignment,
            )

        move_pct = price_movement_percent(target, price)
        if not is_price_moving_in_candle_direction(target, price):
            return self._skip(
                config,
                STATUS_PRICE_OUT_OF_BAND,
                "price moving against candle",
                price=price,
                target=target.to_dict(),
                state=state,
                alignment=alignment,
            )
        if not is_price_movement_within_range(target, price, config):
            return self._skip(
                config,
                STATUS_PRICE_OUT_OF_BAND,
                f"move {move_pct:.4f}% outside [{config.min_allowed_price_movement_percent}, "
                f"{config.max_allowed_price_movement_percent}]",
                price=price,
                movement_percent=move_pct,
                state=state,
                alignment=alignment,
            )

        if config.dry_run:
            return self._skip(config, STATUS_DRY_RUN, "dry run", price=price, state=state, alignment=alignment)

        qty = state.last_trade_quantity
        if qty is None or qty <= 0:
            return self._skip(
                config, STATUS_INVALID_QUANTITY, f"quantity {qty!r}", state=state, alignment=alignment
            )
        if config.is_testing:
            qty = 1

        return self._place(gw, config, state, target, price, float(qty), alignment)

    def _place(
        self,
        gw: ExchangeGateway,
        config: StrategyConfig,
        state: MartingaleState,
        target: TargetCandle,
        price: float,
        qty: float,
        alignment: AlignmentResult,
    ) -> CycleReport:
        side = side_for_color(target.color)
        entry = gw.place_market_order(config.symbol, side, qty)

        try:
            entry_price = resolve_entry_price(entry)
        except TradeValidationError:
            details = gw.get_order(entry.id)
            try:
                entry_price = resolve_entry_price(details) if details is not None else price
            except TradeValidationError:
                logger.warning("entry %s fill price unknown; using mark price %s", entry.id, price)
                entry_price = price

        tp = calculate_tp_price(entry_price, side, config)
        sl = target.low if target.color == GREEN else target.high

        # Persist the entry (and its intended stop) before the bracket: a failed bracket
        # never leads to a second entry, and the next reconcile places the missing bracket.
        state = self._store.update_fields(
            state,
            last_trade_outcome=OUTCOME_PENDING,
            last_entry_order_id=entry.id,
            last_entry_price=entry_price,
            last_trade_quantity=qty,
            last_sl_price=sl or None,
            last_tp_price=tp,
        )
        if not sl:
            raise TradeValidationError(f"invalid stop-loss price {sl!r} from target candle")

        bracket = gw.place_bracket_order(tp, sl, side)
        state = self._store.update_fields(
            state,
            last_stop_loss_order_id=bracket.sl_order_id,
            last_take_profit_order_id=bracket.tp_order_id,
        )
        self._store.record_trade(
            config=config,
            side=side,
            quantity=qty,
            state=state,
            entry_order_id=entry.id,
            take_profit_order_id=bracket.tp_order_id,
            stop_loss_order_id=bracket.sl_order_id,
            entry_price=entry_price,
            tp_price=tp,
            sl_price=sl,
        )
        logger.info(
            "cycle %s/%s: %s %s @ %s tp=%s sl=%s level=%s",
            config.config_id,
            config.symbol,
            side,
            qty,
            entry_price,
            tp,
            sl,
            state.current_level,
        )
        self._emit(
            "order_placed",
            config,
            {
                "side": side,
                "quantity": qty,
                "entry_order_id": entry.id,
                "entry_price": entry_price,
                "tp_price": tp,
                "sl_price": sl,
                "tp_order_id": bracket.tp_order_id,
                "sl_order_id": bracket.sl_order_id,
                "level": state.current_level,
                "alignment": alignment.to_dict(),
            },
        )
        return CycleReport(status=STATUS_ORDER_PLACED, detail=entry.id, state=state, alignment=alignment)
