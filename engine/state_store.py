from __future__ import annotations

import logging
import os
import sqlite3
import threading
from dataclasses import fields
from typing import Any

from .config import StrategyConfig
from .errors import StateConsistencyError
from .models import OUTCOME_NONE, OUTCOMES, MartingaleState
from .utils import json_dumps_safe, json_loads_safe, now_ms

logger = logging.getLogger(__name__)

_IDENTITY_COLUMNS = ("config_id", "user_id", "symbol")
_STATE_COLUMNS = tuple(f.name for f in fields(MartingaleState))
_MUTABLE_COLUMNS = frozenset(c for c in _STATE_COLUMNS if c not in _IDENTITY_COLUMNS)


class StateStore:
    """SQLite-backed MartingaleState rows plus an append-only executed-trade log.

    Every write is a conditional update scoped to the (config_id, user_id, symbol)
    identity; a write that matches no row raises StateConsistencyError.
    """

    def __init__(self, *, db_path: str, timeout_s: float = 30.0):
        self._db_path = str(db_path)
        self._timeout_s = float(timeout_s)
        self._thread_local = threading.local()
        raw = str(os.getenv("DMB_DB_PERSISTENT_CONN", "1") or "1").strip().lower()
        self._persistent_conn = raw not in {"0", "false", "no", "off"}

    def _connect(self) -> sqlite3.Connection:
        if self._persistent_conn:
            conn = getattr(self._thread_local, "conn", None)
            if isinstance(conn, sqlite3.Connection):
                return conn
        conn = sqlite3.connect(self._db_path, timeout=self._timeout_s)
        conn.row_factory = sqlite3.Row
        try:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA synchronous=NORMAL")
        except Exception:
            logger.debug("PRAGMA setup failed for state DB", exc_info=True)
        if self._persistent_conn:
            self._thread_local.conn = conn
        return conn

    def _close(self, conn: sqlite3.Connection | None) -> None:
        if conn is None:
            return
        if self._persistent_conn and conn is getattr(self._thread_local, "conn", None):
            return
        try:
            conn.close()
        except Exception:
            logger.debug("failed to close state DB connection", exc_info=True)

    def close(self) -> None:
        conn = getattr(self._thread_local, "conn", None)
        if conn is None:
            return
        try:
            conn.close()
        except Exception:
            logger.debug("failed to close persistent state DB connection", exc_info=True)
        finally:
            self._thread_local.conn = None

    def ensure(self) -> None:
        conn = self._connect()
        cur = conn.cursor()
        try:
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS martingale_state (
                    config_id TEXT NOT NULL,
                    user_id TEXT NOT NULL,
                    symbol TEXT NOT NULL,
                    current_level INTEGER NOT NULL DEFAULT 1,
                    last_trade_outcome TEXT NOT NULL DEFAULT 'none',
                    last_entry_order_id TEXT,
                    last_stop_loss_order_id TEXT,
                    last_take_profit_order_id TEXT,
                    last_entry_price REAL,
                    last_sl_price REAL,
                    last_tp_price REAL,
                    last_trade_quantity REAL,
                    pnl REAL NOT NULL DEFAULT 0,
                    cumulative_fees REAL NOT NULL DEFAULT 0,
                    all_time_pnl REAL NOT NULL DEFAULT 0,
                    all_time_fees REAL NOT NULL DEFAULT 0,
                    created_ts_ms INTEGER NOT NULL,
                    updated_ts_ms INTEGER NOT NULL,
                    PRIMARY KEY (config_id, user_id, symbol)
                )
                """
            )
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS executed_trades (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    ts_ms INTEGER NOT NULL,
                    config_id TEXT NOT NULL,
                    user_id TEXT NOT NULL,
                    symbol TEXT NOT NULL,
                    product_id INTEGER,
                    side TEXT NOT NULL,
                    quantity REAL NOT NULL,
                    level INTEGER,
                    entry_order_id TEXT,
                    take_profit_order_id TEXT,
                    stop_loss_order_id TEXT,
                    entry_price REAL,
                    tp_price REAL,
                    sl_price REAL,
                    state_json TEXT
                )
                """
            )
            cur.execute("CREATE INDEX IF NOT EXISTS idx_executed_trades_symbol_ts ON executed_trades(symbol, ts_ms)")
            conn.commit()
        finally:
            self._close(conn)

    @staticmethod
    def _row_to_state(row: sqlite3.Row) -> MartingaleState:
        data = {c: row[c] for c in _STATE_COLUMNS}
        for c in ("pnl", "cumulative_fees", "all_time_pnl", "all_time_fees"):
            data[c] = float(data[c] or 0.0)
        data["current_level"] = int(data["current_level"] or 1)
        return MartingaleState(**data)

    def get(self, config_id: str, user_id: str, symbol: str) -> MartingaleState | None:
        conn = self._connect()
        try:
            row = conn.execute(
                f"SELECT {', '.join(_STATE_COLUMNS)} FROM martingale_state "
                "WHERE config_id = ? AND user_id = ? AND symbol = ?",
                (str(config_id), str(user_id), str(symbol)),
            ).fetchone()
        finally:
            self._close(conn)
        return None if row is None else self._row_to_state(row)

    def get_or_create(self, config: StrategyConfig) -> MartingaleState:
        """Load the state for a config, creating the level-1 row on first use."""
        ts = now_ms()
        conn = self._connect()
        try:
            conn.execute(
                """
                INSERT OR IGNORE INTO martingale_state (
                    config_id, user_id, symbol, current_level, last_trade_outcome,
                    last_trade_quantity, created_ts_ms, updated_ts_ms
                ) VALUES (?, ?, ?, 1, ?, ?, ?, ?)
                """,
                (
                    config.config_id,
                    config.user_id,
                    config.symbol,
                    OUTCOME_NONE,
                    float(config.initial_base_quantity),
                    ts,
                    ts,
                ),
            )
            conn.commit()
        finally:
            self._close(conn)
        state = self.get(config.config_id, config.user_id, config.symbol)
        if state is None:
            raise StateConsistencyError(
                f"martingale state missing after create for {config.config_id}/{config.user_id}/{config.symbol}"
            )
        return state

    def save(self, state: MartingaleState) -> MartingaleState:
        """Write every mutable field of `state` onto its existing row."""
        values = {c: getattr(state, c) for c in _MUTABLE_COLUMNS}
        return self._update(state, values)

    def update_fields(self, state: MartingaleState, **values: Any) -> MartingaleState:
        """Write a subset of fields; returns the row as stored."""
        if not values:
            return state
        return self._update(state, values)

    def _update(self, state: MartingaleState, values: dict[str, Any]) -> MartingaleState:
        invalid = set(values) - _MUTABLE_COLUMNS
        if invalid:
            raise ValueError(f"Invalid martingale_state column names: {sorted(invalid)}")
        outcome = values.get("last_trade_outcome")
        if outcome is not None and outcome not in OUTCOMES:
            raise ValueError(f"Invalid last_trade_outcome: {outcome!r}")

        cols = sorted(values)
        sets = ", ".join(f"{c} = ?" for c in cols)
        params: list[Any] = [values[c] for c in cols]
        params.append(now_ms())
        params.extend([state.config_id, state.user_id, state.symbol])

        conn = self._connect()
        try:
            # Column names come from the MartingaleState field allowlist above.
            cur = conn.execute(
                f"UPDATE martingale_state SET {sets}, updated_ts_ms = ? "
                "WHERE config_id = ? AND user_id = ? AND symbol = ?",
                tuple(params),
            )
            conn.commit()
            matched = cur.rowcount
        finally:
            self._close(conn)

        if matched == 0:
            raise StateConsistencyError(
                f"martingale state update matched no row for {state.config_id}/{state.user_id}/{state.symbol}"
            )
        stored = self.get(state.config_id, state.user_id, state.symbol)
        if stored is None:
            raise StateConsistencyError(
                f"martingale state vanished after update for {state.config_id}/{state.user_id}/{state.symbol}"
            )
        return stored

    def record_trade(
        self,
        *,
        config: StrategyConfig,
        side: str,
        quantity: float,
        state: MartingaleState,
        entry_order_id: str | None = None,
        take_profit_order_id: str | None = None,
        stop_loss_order_id: str | None = None,
        entry_price: float | None = None,
        tp_price: float | None = None,
        sl_price: float | None = None,
    ) -> int:
        conn = self._connect()
        try:
            cur = conn.execute(
                """
                INSERT INTO executed_trades (
                    ts_ms, config_id, user_id, symbol, product_id, side, quantity, level,
                    entry_order_id, take_profit_order_id, stop_loss_order_id,
                    entry_price, tp_price, sl_price, state_json
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    now_ms(),
                    config.config_id,
                    config.user_id,
                    config.symbol,
                    int(config.product_id),
                    str(side),
                    float(quantity),
                    int(state.current_level),
                    entry_order_id,
                    take_profit_order_id,
                    stop_loss_order_id,
                    entry_price,
                    tp_price,
                    sl_price,
                    json_dumps_safe(state.to_dict()),
                ),
            )
            conn.commit()
            return int(cur.lastrowid or 0)
        finally:
            self._close(conn)

    def list_trades(self, *, symbol: str | None = None, limit: int = 100) -> list[dict[str, Any]]:
        sql = "SELECT * FROM executed_trades"
        params: list[Any] = []
        if symbol:
            sql += " WHERE symbol = ?"
            params.append(str(symbol))
        sql += " ORDER BY id DESC LIMIT ?"
        params.append(max(1, int(limit)))

        conn = self._connect()
        try:
            rows = conn.execute(sql, tuple(params)).fetchall()
        finally:
            self._close(conn)

        out: list[dict[str, Any]] = []
        for r in rows:
            d = dict(r)
            d["state"] = json_loads_safe(d.pop("state_json", None))
            out.append(d)
        return out
