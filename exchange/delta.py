from __future__ import annotations

import hashlib
import hmac
import json
import logging
import math
import time
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass
from typing import Any

from engine.config import StrategyConfig
from engine.errors import ExchangeCallError
from engine.models import Candle
from engine.trade_math import clamp_price, format_price, stop_loss_prices
from engine.utils import Backoff, _env_int, json_loads_safe, now_ms, safe_float

from .gateway import (
    BracketResult,
    MarketOrderResult,
    OrderDetails,
    Position,
    StopLossUpdateResult,
    Ticker,
)

logger = logging.getLogger(__name__)

API_PREFIX = "/v2"
USER_AGENT = "dmb-engine/1.0"
_BODY_METHODS = {"POST", "PUT", "PATCH", "DELETE"}


@dataclass
class RestResult:
    ok: bool
    data: Any | None
    error: str | None = None
    fetched_at_ms: int | None = None
    status: int | None = None


def sign_request(secret: str, method: str, timestamp: int, path: str, body: str = "") -> str:
    """HMAC-SHA256 over `method + timestamp + path(+query) + body`, hex encoded."""
    msg = f"{method}{timestamp}{path}{body}"
    return hmac.new(str(secret).encode("utf-8"), msg.encode("utf-8"), hashlib.sha256).hexdigest()


class DeltaExchangeGateway:
    """Signed REST client for Delta Exchange perpetual futures, one instance per strategy config.

    `_request` never raises; typed methods map failures of mutating calls to
    ExchangeCallError and failures of lookups to None.
    """

    def __init__(
        self,
        *,
        config: StrategyConfig,
        timeout_s: float = 10.0,
        get_retries: int | None = None,
    ):
        self._cfg = config
        self._base_url = str(config.base_url).rstrip("/")
        self._timeout_s = max(0.5, min(float(timeout_s), 60.0))
        if get_retries is None:
            get_retries = _env_int("DMB_REST_GET_RETRIES", 1)
        self._get_retries = max(1, min(5, int(get_retries)))

    @classmethod
    def from_config(cls, config: StrategyConfig, *, timeout_s: float = 10.0) -> "DeltaExchangeGateway":
        return cls(config=config, timeout_s=timeout_s)

    def _headers(self, method: str, signature: str, timestamp: int) -> dict[str, str]:
        h = {
            "Accept": "application/json",
            "User-Agent": USER_AGENT,
            "api-key": self._cfg.api_key,
            "signature": signature,
            "timestamp": str(timestamp),
        }
        if method in _BODY_METHODS:
            h["Content-Type"] = "application/json"
        return h

    def _request(
        self,
        method: str,
        endpoint: str,
        *,
        body: dict[str, Any] | None = None,
        query: dict[str, Any] | None = None,
    ) -> RestResult:
        method = method.upper()
        qs = urllib.parse.urlencode(query or {})
        q = f"?{qs}" if qs else ""
        body_s = json.dumps(body, separators=(",", ":")) if body else ""
        url = f"{self._base_url}{API_PREFIX}{endpoint}{q}"

        max_retries = self._get_retries if method == "GET" else 1
        backoff = Backoff(base_s=0.5, max_s=5.0, jitter_pct=0.25)
        last_err: str | None = None
        for attempt in range(1, max_retries + 1):
            # Server rejects timestamps from the future; stay a little behind.
            ts = int(time.time()) - 2
            sig = sign_request(self._cfg.api_secret, method, ts, f"{API_PREFIX}{endpoint}{q}", body_s)
            req = urllib.request.Request(
                url,
                data=(body_s.encode("utf-8") if body_s and method in _BODY_METHODS else None),
                headers=self._headers(method, sig, ts),
                method=method,
            )
            try:
                with urllib.request.urlopen(req, timeout=self._timeout_s) as resp:
                    raw_body = resp.read()
                    code = int(getattr(resp, "status", 200) or 200)
                return RestResult(ok=True, data=json_loads_safe(raw_body), fetched_at_ms=now_ms(), status=code)
            except urllib.error.HTTPError as e:
                code = int(getattr(e, "code", 0) or 0)
                detail: Any = None
                try:
                    detail = json_loads_safe(e.read())
                except Exception:
                    detail = None
                last_err = f"HTTP {code or '?'}: {detail if detail is not None else e}"
                if 500 <= code < 600 and attempt < max_retries:
                    time.sleep(backoff.delay(attempt))
                    continue
                logger.warning("[delta] %s %s failed: %s", method, endpoint, last_err)
                return RestResult(ok=False, data=detail, error=last_err, fetched_at_ms=now_ms(), status=code)
            except Exception as e:
                last_err = str(e)
                if attempt < max_retries:
                    time.sleep(backoff.delay(attempt))
                    continue
                logger.warning("[delta] %s %s failed: %s", method, endpoint, last_err)
                return RestResult(ok=False, data=None, error=last_err, fetched_at_ms=now_ms())
        return RestResult(ok=False, data=None, error=last_err, fetched_at_ms=now_ms())

    @staticmethod
    def _result(res: RestResult) -> Any:
        if not res.ok or not isinstance(res.data, dict):
            return None
        return res.data.get("result")

    @staticmethod
    def _succeeded(res: RestResult) -> bool:
        return bool(res.ok and isinstance(res.data, dict) and res.data.get("success"))

    def _raise_for(self, op: str, res: RestResult) -> None:
        raise ExchangeCallError(
            f"delta {op} failed for {self._cfg.symbol}: {res.error or res.data}",
            op=op,
            detail=res.error or json.dumps(res.data, default=str)[:500],
        )

    # Lookups

    def get_candles(self, symbol: str, timeframe: str, start_ms: int, end_ms: int) -> list[Candle]:
        res = self._request(
            "GET",
            "/history/candles",
            query={
                "symbol": symbol,
                "resolution": timeframe,
                "start": int(start_ms) // 1000,
                "end": int(end_ms) // 1000,
            },
        )
        rows = self._result(res)
        if not isinstance(rows, list):
            logger.warning("[delta] no candle rows for %s %s: %s", symbol, timeframe, res.error)
            return []
        out: list[Candle] = []
        for r in rows:
            if isinstance(r, dict):
                c = Candle.from_mapping(r)
            elif isinstance(r, (list, tuple)) and len(r) >= 5:
                c = Candle.from_mapping(
                    {"time": r[0], "open": r[1], "high": r[2], "low": r[3], "close": r[4], "volume": r[5] if len(r) > 5 else 0}
                )
            else:
                c = None
            if c is not None:
                out.append(c)
        out.sort(key=lambda c: c.timestamp)
        return out

    def get_ticker(self, symbol: str) -> Ticker | None:
        r = self._result(self._request("GET", f"/tickers/{urllib.parse.quote(symbol)}"))
        if not isinstance(r, dict):
            return None
        return Ticker(symbol=str(r.get("symbol") or symbol), mark_price=safe_float(r.get("mark_price")), raw=r)

    def get_order(self, order_id: str) -> OrderDetails | None:
        r = self._result(self._request("GET", f"/orders/{urllib.parse.quote(str(order_id))}"))
        if not isinstance(r, dict):
            return None
        return OrderDetails.from_mapping(r)

    def get_positions(self, product_id: int) -> list[Position] | None:
        res = self._request("GET", "/positions", query={"product_id": int(product_id)})
        if not res.ok:
            return None
        r = self._result(res)
        if r is None:
            return []
        rows = r if isinstance(r, list) else [r]
        return [Position.from_mapping(p) for p in rows if isinstance(p, dict)]

    # Mutations

    def place_market_order(
        self,
        symbol: str,
        side: str,
        qty: float,
        *,
        reduce_only: bool = False,
        client_order_id: str | None = None,
    ) -> MarketOrderResult:
        size = int(math.floor(float(qty)))
        if size <= 0:
            raise ExchangeCallError(f"market order size must be >= 1 lot, got {qty}", op="place_market_order")
        payload: dict[str, Any] = {
            "product_id": int(self._cfg.product_id),
            "product_symbol": symbol,
            "side": side,
            "size": size,
            "order_type": "market_order",
            "time_in_force": "gtc",
            "client_order_id": client_order_id or f"dmb-{now_ms()}",
        }
        if reduce_only:
            payload["reduce_only"] = True
        res = self._request("POST", "/orders", body=payload)
        r = self._result(res)
        if not isinstance(r, dict) or r.get("id") is None:
            self._raise_for("place_market_order", res)
        logger.info("[delta] market %s %s x%s -> order %s", side, symbol, size, r.get("id"))
        return MarketOrderResult(
            id=str(r.get("id")),
            average_fill_price=safe_float(r.get("average_fill_price")),
            limit_price=safe_float(r.get("limit_price")),
            raw=r,
        )

    def bracket_payload(self, tp: float | None, sl: float | None, side: str) -> dict[str, Any]:
        d = self._cfg.price_decimal_places
        payload: dict[str, Any] = {
            "product_id": int(self._cfg.product_id),
            "product_symbol": self._cfg.symbol,
            "bracket_stop_trigger_method": "last_traded_price",
        }
        if tp:
            payload["take_profit_order"] = {
                "order_type": "limit_order",
                "stop_price": format_price(tp, d),
                "limit_price": format_price(tp, d),
            }
        if sl:
            trigger, limit = stop_loss_prices(sl, side, self._cfg)
            payload["stop_loss_order"] = {
                "order_type": "limit_order",
                "stop_price": format_price(trigger, d),
                "limit_price": format_price(limit, d),
            }
        return payload

    def place_bracket_order(self, tp: float | None, sl: float | None, side: str) -> BracketResult:
        payload = self.bracket_payload(tp, sl, side)
        if "take_profit_order" not in payload and "stop_loss_order" not in payload:
            raise ExchangeCallError("bracket order needs a take-profit or stop-loss price", op="place_bracket_order")
        res = self._request("POST", "/orders/bracket", body=payload)
        r = self._result(res)
        if not isinstance(r, dict):
            self._raise_for("place_bracket_order", res)
        tp_id = (r.get("take_profit_order") or {}).get("id")
        sl_id = (r.get("stop_loss_order") or {}).get("id")
        logger.info("[delta] bracket %s tp=%s sl=%s -> tp_order=%s sl_order=%s", self._cfg.symbol, tp, sl, tp_id, sl_id)
        return BracketResult(
            tp_order_id=("" if tp_id is None else str(tp_id)),
            sl_order_id=("" if sl_id is None else str(sl_id)),
        )

    def update_stop_loss(
        self,
        order_id: str,
        old_price: float,
        product_id: int,
        symbol: str,
        side: str,
        new_price: float,
    ) -> StopLossUpdateResult:
        d = self._cfg.price_decimal_places
        trigger, limit = stop_loss_prices(new_price, side, self._cfg)
        if clamp_price(limit, d) == clamp_price(float(old_price), d):
            logger.debug("[delta] SL %s unchanged at %s", order_id, limit)
            return StopLossUpdateResult(success=False, is_unchanged=True, new_limit_price=float(old_price))

        payload = {
            "id": int(order_id) if str(order_id).isdigit() else order_id,
            "product_id": int(product_id),
            "product_symbol": symbol,
            "limit_price": format_price(limit, d),
            "stop_price": format_price(trigger, d),
        }
        res = self._request("PUT", "/orders", body=payload)
        if not self._succeeded(res):
            self._raise_for("update_stop_loss", res)
        return StopLossUpdateResult(success=True, is_unchanged=False, new_limit_price=limit)

    def _cancel_all(self, product_id: int, *, limit_orders: bool, stop_orders: bool, reduce_only: bool) -> None:
        payload = {
            "product_id": int(product_id),
            "contract_types": "perpetual_futures",
            "cancel_limit_orders": limit_orders,
            "cancel_stop_orders": stop_orders,
            "cancel_reduce_only_orders": reduce_only,
        }
        res = self._request("DELETE", "/orders/all", body=payload)
        if not self._succeeded(res):
            self._raise_for("cancel_all_orders", res)

    def cancel_all_open_orders(self, product_id: int) -> None:
        self._cancel_all(product_id, limit_orders=True, stop_orders=True, reduce_only=True)

    def cancel_stop_orders(self, product_id: int) -> None:
        self._cancel_all(product_id, limit_orders=False, stop_orders=True, reduce_only=False)
