"""Operator CLI.

  python -m engine.cli trigger --config config/strategy_configs.yaml --id cfg-1 --set DRY_RUN=true
  python -m engine.cli state --config config/strategy_configs.yaml --id cfg-1
  python -m engine.cli trades --symbol BTCUSD --limit 20
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from dataclasses import replace
from typing import Any, Sequence

import yaml

from .config import RuntimeSettings, StrategyConfig, load_strategy_configs
from .daemon import build_cycle
from .errors import ConfigError
from .state_store import StateStore


def _parse_overrides(pairs: Sequence[str] | None) -> dict[str, Any]:
    """`KEY=VALUE` pairs; values are parsed as YAML scalars so numbers and booleans keep their type."""
    out: dict[str, Any] = {}
    for raw in pairs or []:
        key, sep, value = str(raw).partition("=")
        key = key.strip()
        if not sep or not key:
            raise ConfigError(f"override must be KEY=VALUE, got {raw!r}")
        out[key] = yaml.safe_load(value) if value.strip() else ""
    return out


def _select_config(path: str, config_id: str | None) -> StrategyConfig:
    configs = load_strategy_configs(path)
    if not configs:
        raise ConfigError(f"{path}: no strategy configs")
    if config_id is None:
        if len(configs) > 1:
            raise ConfigError(f"{path}: {len(configs)} configs found, pick one with --id")
        return configs[0]
    for cfg in configs:
        if cfg.config_id == str(config_id):
            return cfg
    raise ConfigError(f"{path}: no config with id {config_id!r}")


def _print_json(obj: Any) -> None:
    print(json.dumps(obj, indent=2, sort_keys=True, default=str))


def _cmd_trigger(args: argparse.Namespace, settings: RuntimeSettings) -> int:
    cfg = _select_config(args.config, args.id)
    overrides = _parse_overrides(args.set)
    if args.dry_run:
        overrides["DRY_RUN"] = True
    if overrides:
        cfg = cfg.with_overrides(overrides)

    store = StateStore(db_path=settings.db_path)
    store.ensure()
    try:
        report = build_cycle(settings, store)(cfg)
    finally:
        store.close()
    _print_json(report.to_dict())
    return 0


def _cmd_state(args: argparse.Namespace, settings: RuntimeSettings) -> int:
    cfg = _select_config(args.config, args.id)
    store = StateStore(db_path=settings.db_path)
    store.ensure()
    try:
        state = store.get(cfg.config_id, cfg.user_id, cfg.symbol)
    finally:
        store.close()
    if state is None:
        print(f"[state] no martingale state for {cfg.config_id}/{cfg.symbol}", file=sys.stderr)
        return 1
    _print_json(state.to_dict())
    return 0


def _cmd_trades(args: argparse.Namespace, settings: RuntimeSettings) -> int:
    store = StateStore(db_path=settings.db_path)
    store.ensure()
    try:
        rows = store.list_trades(symbol=args.symbol, limit=args.limit)
    finally:
        store.close()
    _print_json(rows)
    return 0


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="dmb", description="Martingale trading-cycle engine")
    parser.add_argument("--db", default=None, help="State DB path (default: DMB_DB_PATH)")
    parser.add_argument("-v", "--verbose", action="store_true")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("trigger", help="Run one trading cycle for a config and print the report")
    p.add_argument("--config", required=True, help="Strategy config YAML")
    p.add_argument("--id", default=None, help="Config id (required when the file has several)")
    p.add_argument("--set", action="append", metavar="KEY=VALUE", help="Override a config field; repeatable")
    p.add_argument("--dry-run", action="store_true", help="Evaluate without placing orders")
    p.set_defaults(func=_cmd_trigger)

    p = sub.add_parser("state", help="Print the stored martingale state for a config")
    p.add_argument("--config", required=True)
    p.add_argument("--id", default=None)
    p.set_defaults(func=_cmd_state)

    p = sub.add_parser("trades", help="Print recently executed trades")
    p.add_argument("--symbol", default=None)
    p.add_argument("--limit", type=int, default=20)
    p.set_defaults(func=_cmd_trades)
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    args = _build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else os.getenv("DMB_LOG_LEVEL", "WARNING").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    settings = RuntimeSettings.from_env()
    if args.db:
        settings = replace(settings, db_path=str(args.db))
    try:
        return int(args.func(args, settings))
    except ConfigError as e:
        print(f"[dmb] config error: {e}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    raise SystemExit(main())
