from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol

from engine.models import Candle
from engine.utils import safe_float

ORDER_OPEN = "OPEN"
ORDER_CLOSED = "CLOSED"
ORDER_CANCELLED = "CANCELLED"
ORDER_PENDING = "PENDING"


@dataclass(frozen=True)
class Ticker:
    symbol: str
    mark_price: float | None
    raw: dict[str, Any] = field(default_factory=dict, repr=False)


@dataclass(frozen=True)
class OrderDetails:
    id: str
    status: str
    side: str | None = None
    average_fill_price: float | None = None
    limit_price: float | None = None
    paid_commission: float = 0.0
    meta: dict[str, Any] = field(default_factory=dict)
    product_id: int | None = None
    product_symbol: str | None = None
    size: float | None = None
    client_order_id: str | None = None

    @property
    def pnl(self) -> float:
        """Realised PnL reported in the order's meta data (0 when absent)."""
        return float(safe_float(self.meta.get("pnl"), 0.0) or 0.0)

    @property
    def entry_price(self) -> float | None:
        return self.average_fill_price or safe_float(self.meta.get("entry_price"))

    @classmethod
    def from_mapping(cls, raw: dict[str, Any]) -> "OrderDetails | None":
        status = str(raw.get("state") or raw.get("status") or "").strip().upper()
        if not status or raw.get("id") is None:
            return None
        meta = raw.get("meta_data") if isinstance(raw.get("meta_data"), dict) else {}
        pid = safe_float(raw.get("product_id"))
        return cls(
            id=str(raw.get("id")),
            status=status,
            side=(str(raw.get("side")).lower() if raw.get("side") else None),
            average_fill_price=safe_float(raw.get("average_fill_price")),
            limit_price=safe_float(raw.get("limit_price")),
            paid_commission=float(safe_float(raw.get("paid_commission"), 0.0) or 0.0),
            meta=dict(meta or {}),
            product_id=(int(pid) if pid is not None else None),
            product_symbol=raw.get("product_symbol"),
            size=safe_float(raw.get("size")),
            client_order_id=raw.get("client_order_id"),
        )


@dataclass(frozen=True)
class MarketOrderResult:
    id: str
    average_fill_price: float | None = None
    limit_price: float | None = None
    raw: dict[str, Any] = field(default_factory=dict, repr=False)


@dataclass(frozen=True)
class BracketResult:
    tp_order_id: str
    sl_order_id: str


@dataclass(frozen=True)
class StopLossUpdateResult:
    success: bool
    is_unchanged: bool = False
    new_limit_price: float | None = None


@dataclass(frozen=True)
class Position:
    product_id: int | None
    size: float
    entry_price: float | None = None
    raw: dict[str, Any] = field(default_factory=dict, repr=False)

    @property
    def is_open(self) -> bool:
        return self.size != 0

    @classmethod
    def from_mapping(cls, raw: dict[str, Any]) -> "Position":
        pid = safe_float(raw.get("product_id"))
        return cls(
            product_id=(int(pid) if pid is not None else None),
            size=float(safe_float(raw.get("size"), 0.0) or 0.0),
            entry_price=safe_float(raw.get("entry_price")),
            raw=dict(raw),
        )


class ExchangeGateway(Protocol):
    """Exchange operations a trading cycle depends on.

    Lookups return None when the exchange has nothing usable; mutating calls raise
    `engine.errors.ExchangeCallError` when rejected.
    """

    def get_candles(self, symbol: str, timeframe: str, start_ms: int, end_ms: int) -> list[Candle]: ...

    def get_ticker(self, symbol: str) -> Ticker | None: ...

    def get_order(self, order_id: str) -> OrderDetails | None: ...

    def place_market_order(
        self,
        symbol: str,
        side: str,
        qty: float,
        *,
        reduce_only: bool = False,
        client_order_id: str | None = None,
    ) -> MarketOrderResult: ...

    def place_bracket_order(self, tp: float | None, sl: float | None, side: str) -> BracketResult: ...

    def update_stop_loss(
        self,
        order_id: str,
        old_price: float,
        product_id: int,
        symbol: str,
        side: str,
        new_price: float,
    ) -> StopLossUpdateResult: ...

    def cancel_all_open_orders(self, product_id: int) -> None: ...

    def cancel_stop_orders(self, product_id: int) -> None: ...

    def get_positions(self, product_id: int) -> list[Position] | None: ...
