from __future__ import annotations

import copy
import logging
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Callable

import yaml

from .errors import ConfigError
from .utils import _env_bool, _env_float, _env_int, _env_str, deep_merge, sha256_json

logger = logging.getLogger(__name__)

TRADING_MODES = ("conservative", "balanced", "aggressive")

DEFAULT_BASE_URL = "https://api.india.delta.exchange"

_REDACTED = "***"


def _as_bool(v: Any) -> bool:
    if isinstance(v, bool):
        return v
    if v is None:
        return False
    if isinstance(v, (int, float)):
        return v != 0
    return str(v).strip().lower() in {"1", "true", "yes", "y", "on"}


def _as_float(v: Any) -> float:
    try:
        return float(v)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"expected a number, got {v!r}") from e


def _as_int(v: Any) -> int:
    try:
        return int(float(v))
    except (TypeError, ValueError) as e:
        raise ConfigError(f"expected an integer, got {v!r}") from e


def _as_str(v: Any) -> str:
    return "" if v is None else str(v).strip()


# attribute -> (canonical key, aliases, caster)
_FIELD_SPECS: dict[str, tuple[str, tuple[str, ...], Callable[[Any], Any]]] = {
    "config_id": ("id", ("ID", "_id", "CONFIG_ID"), _as_str),
    "user_id": ("USER_ID", (), _as_str),
    "product_id": ("PRODUCT_ID", (), _as_int),
    "symbol": ("SYMBOL", (), _as_str),
    "lot_size": ("LOT_SIZE", (), _as_float),
    "price_decimal_places": ("PRICE_DECIMAL_PLACES", (), _as_int),
    "timeframe": ("TIMEFRAME", (), _as_str),
    "confirmation_timeframe": ("CONFIRMATION_TIMEFRAME", (), _as_str),
    "structure_timeframe": ("STRUCTURE_TIMEFRAME", (), _as_str),
    "leverage": ("LEVERAGE", (), _as_float),
    "initial_base_quantity": ("INITIAL_BASE_QUANTITY", (), _as_float),
    "trading_mode": ("TRADING_MODE", ("RISK_MODE",), _as_str),
    "min_movement_percent": ("MIN_MOVEMENT_PERCENT", ("MIN_CANDLE_BODY_PERCENT",), _as_float),
    "min_allowed_price_movement_percent": ("MIN_ALLOWED_PRICE_MOVEMENT_PERCENT", (), _as_float),
    "max_allowed_price_movement_percent": ("MAX_ALLOWED_PRICE_MOVEMENT_PERCENT", (), _as_float),
    "take_profit_percent": ("TAKE_PROFIT_PERCENT", (), _as_float),
    "sl_trigger_buffer_percent": ("SL_TRIGGER_BUFFER_PERCENT", (), _as_float),
    "sl_limit_buffer_percent": ("SL_LIMIT_BUFFER_PERCENT", (), _as_float),
    "trailing_sl_buffer_percent": ("TRAILING_SL_BUFFER_PERCENT", (), _as_float),
    "api_key": ("DELTA_EXCHANGE_API_KEY", (), _as_str),
    "api_secret": ("DELTA_EXCHANGE_SECRET_KEY", (), _as_str),
    "base_url": ("DELTA_EXCHANGE_BASE_URL", ("DELTA_EXCHANGE_BASE_URL_INDIA",), _as_str),
    "dry_run": ("DRY_RUN", (), _as_bool),
    "is_testing": ("IS_TESTING", (), _as_bool),
}

_SECRET_FIELDS = frozenset({"api_key", "api_secret"})
_REQUIRED_FIELDS = ("config_id", "user_id", "symbol", "product_id")


@dataclass(frozen=True)
class StrategyConfig:
    """Immutable settings for one (user, symbol, product) pairing.

    Built with `from_mapping`, which accepts the upstream UPPER_SNAKE keys or the
    attribute names. Threaded explicitly through every cycle step.
    """

    config_id: str
    user_id: str
    product_id: int
    symbol: str
    lot_size: float = 0.01
    price_decimal_places: int = 2
    timeframe: str = "15m"
    confirmation_timeframe: str = "1h"
    structure_timeframe: str = "4h"
    leverage: float = 20.0
    initial_base_quantity: float = 1.0
    trading_mode: str = "balanced"
    min_movement_percent: float = 0.3
    min_allowed_price_movement_percent: float = 0.1
    max_allowed_price_movement_percent: float = 4.0
    take_profit_percent: float = 3.0
    sl_trigger_buffer_percent: float = 0.1
    sl_limit_buffer_percent: float = 0.2
    trailing_sl_buffer_percent: float = 0.1
    api_key: str = ""
    api_secret: str = ""
    base_url: str = DEFAULT_BASE_URL
    dry_run: bool = False
    is_testing: bool = False

    @classmethod
    def from_mapping(cls, raw: dict[str, Any]) -> "StrategyConfig":
        if not isinstance(raw, dict):
            raise ConfigError(f"strategy config must be a mapping, got {type(raw).__name__}")

        kwargs: dict[str, Any] = {}
        for attr, (key, aliases, caster) in _FIELD_SPECS.items():
            for candidate in (key, attr, *aliases):
                if candidate in raw and raw[candidate] is not None:
                    kwargs[attr] = caster(raw[candidate])
                    break

        missing = [a for a in _REQUIRED_FIELDS if not kwargs.get(a)]
        if missing:
            names = ", ".join(_FIELD_SPECS[a][0] for a in missing)
            raise ConfigError(f"strategy config missing required field(s): {names}")

        for tf_attr in ("timeframe", "confirmation_timeframe", "structure_timeframe"):
            if tf_attr in kwargs and not kwargs[tf_attr]:
                del kwargs[tf_attr]
        if kwargs.get("trading_mode"):
            kwargs["trading_mode"] = str(kwargs["trading_mode"]).lower()
        if "base_url" in kwargs:
            kwargs["base_url"] = _normalise_base_url(kwargs["base_url"])

        cfg = cls(**kwargs)
        cfg.validate()
        return cfg

    def validate(self) -> None:
        if self.trading_mode not in TRADING_MODES:
            raise ConfigError(f"invalid TRADING_MODE {self.trading_mode!r} (expected one of {', '.join(TRADING_MODES)})")
        if self.leverage <= 0:
            raise ConfigError(f"LEVERAGE must be positive, got {self.leverage}")
        if self.lot_size <= 0:
            raise ConfigError(f"LOT_SIZE must be positive, got {self.lot_size}")
        if self.initial_base_quantity <= 0:
            raise ConfigError(f"INITIAL_BASE_QUANTITY must be positive, got {self.initial_base_quantity}")
        if self.price_decimal_places < 0:
            raise ConfigError(f"PRICE_DECIMAL_PLACES must be >= 0, got {self.price_decimal_places}")
        if self.min_allowed_price_movement_percent > self.max_allowed_price_movement_percent:
            raise ConfigError("MIN_ALLOWED_PRICE_MOVEMENT_PERCENT exceeds MAX_ALLOWED_PRICE_MOVEMENT_PERCENT")

    def to_mapping(self, *, redact: bool = False) -> dict[str, Any]:
        out: dict[str, Any] = {}
        for f in fields(self):
            key = _FIELD_SPECS[f.name][0]
            val = getattr(self, f.name)
            if redact and f.name in _SECRET_FIELDS and val:
                val = _REDACTED
            out[key] = val
        return out

    def with_overrides(self, override: dict[str, Any] | None) -> "StrategyConfig":
        """Merge a caller-supplied partial config onto this one and re-validate."""
        base = self.to_mapping()
        merged = deep_merge(copy.deepcopy(base), _canonical_keys(override or {}))
        return StrategyConfig.from_mapping(merged)

    def fingerprint(self) -> str:
        return sha256_json(self.to_mapping(redact=True))

    def identity(self) -> dict[str, Any]:
        return {
            "config_id": self.config_id,
            "user_id": self.user_id,
            "symbol": self.symbol,
            "product_id": self.product_id,
        }


def _normalise_base_url(url: str) -> str:
    u = str(url or "").strip().rstrip("/")
    if u.endswith("/v2"):
        u = u[: -len("/v2")]
    return u or DEFAULT_BASE_URL


def _canonical_keys(raw: dict[str, Any]) -> dict[str, Any]:
    """Rewrite attribute names and aliases to the canonical keys so merges replace, not duplicate."""
    lookup: dict[str, str] = {}
    for attr, (key, aliases, _caster) in _FIELD_SPECS.items():
        lookup[attr] = key
        lookup[key] = key
        for a in aliases:
            lookup[a] = key
    return {lookup.get(k, k): v for k, v in raw.items()}


def load_strategy_configs(path: str | Path) -> list[StrategyConfig]:
    """Load strategy configs from YAML.

    The root is either a list of config mappings or
    `{defaults: {...}, configs: [...]}` where each entry is merged onto `defaults`.
    """
    p = Path(path).expanduser()
    data = yaml.safe_load(p.read_text(encoding="utf-8")) or []

    defaults: dict[str, Any] = {}
    entries: Any = data
    if isinstance(data, dict):
        defaults = data.get("defaults") or {}
        entries = data.get("configs") or []
        if not isinstance(defaults, dict):
            raise ConfigError(f"{p}: 'defaults' must be a mapping")
    if not isinstance(entries, list):
        raise ConfigError(f"{p}: expected a list of strategy configs")

    out: list[StrategyConfig] = []
    for i, entry in enumerate(entries):
        if not isinstance(entry, dict):
            raise ConfigError(f"{p}: config #{i} is not a mapping")
        merged = deep_merge(_canonical_keys(copy.deepcopy(defaults)), _canonical_keys(entry))
        out.append(StrategyConfig.from_mapping(merged))
    logger.debug("loaded %d strategy config(s) from %s", len(out), p)
    return out


@dataclass(frozen=True)
class RuntimeSettings:
    db_path: str = "dmb_state.db"
    redis_url: str = ""
    lock_ttl_s: int = 55
    lock_backend: str = "sqlite"
    workers: int = 5
    schedule_secs: float = 300.0
    config_source_url: str = ""
    config_yaml: str = ""
    config_timeframe: str = "1m"
    config_page_limit: int = 500
    candle_history_bars: int = 120
    http_timeout_s: float = 10.0
    queue_name: str = "dmb:trading-cycle"

    @classmethod
    def from_env(cls) -> "RuntimeSettings":
        redis_url = _env_str("DMB_REDIS_URL", "").strip()
        backend = _env_str("DMB_LOCK_BACKEND", "").strip().lower()
        if backend not in {"redis", "sqlite"}:
            backend = "redis" if redis_url else "sqlite"
        return cls(
            db_path=_env_str("DMB_DB_PATH", "dmb_state.db").strip() or "dmb_state.db",
            redis_url=redis_url,
            lock_ttl_s=max(1, _env_int("DMB_LOCK_TTL_S", 55)),
            lock_backend=backend,
            workers=max(1, _env_int("DMB_WORKERS", 5)),
            schedule_secs=max(1.0, _env_float("DMB_SCHEDULE_SECS", 300.0)),
            config_source_url=_env_str("DMB_CONFIG_SOURCE_URL", "").strip(),
            config_yaml=_env_str("DMB_CONFIG_YAML", "").strip(),
            config_timeframe=_env_str("DMB_CONFIG_TIMEFRAME", "1m").strip() or "1m",
            config_page_limit=max(1, _env_int("DMB_CONFIG_PAGE_LIMIT", 500)),
            candle_history_bars=max(30, _env_int("DMB_CANDLE_HISTORY_BARS", 120)),
            http_timeout_s=max(0.5, _env_float("DMB_HTTP_TIMEOUT_S", 10.0)),
            queue_name=_env_str("DMB_QUEUE_NAME", "dmb:trading-cycle").strip() or "dmb:trading-cycle",
        )

    @property
    def event_log_enabled(self) -> bool:
        return _env_bool("DMB_EVENT_LOG", True)
