from __future__ import annotations

import hashlib
import json
import math
import os
import random
import time
import logging
from dataclasses import dataclass
from typing import Any

logger = logging.getLogger(__name__)


def _env_str(name: str, default: str = "") -> str:
    raw = os.getenv(name)
    return default if raw is None else str(raw)


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return bool(default)
    return str(raw).strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_int(name: str, default: int) -> int:
    try:
        raw = os.getenv(name)
        if raw is None:
            return int(default)
        return int(float(str(raw).strip()))
    except Exception:
        return int(default)


def _env_float(name: str, default: float) -> float:
    try:
        raw = os.getenv(name)
        if raw is None:
            return float(default)
        return float(str(raw).strip())
    except Exception:
        return float(default)


def deep_merge(base: dict[str, Any], override: Any) -> dict[str, Any]:
    """Recursively merges `override` into `base`.

    Rules:
    - dict + dict: merge recursively
    - everything else: override replaces base

    Notes:
    - This mutates `base` and returns it.
    - Lists are replaced (not concatenated).
    """
    if not isinstance(base, dict):
        return base
    if override is None:
        return base
    if not isinstance(override, dict):
        logger.warning("deep_merge override ignored: expected dict, got %s", type(override).__name__)
        return base
    for k, v in (override or {}).items():
        if isinstance(v, dict) and isinstance(base.get(k), dict):
            deep_merge(base[k], v)
        else:
            base[k] = v
    return base


def sha256_json(obj: Any) -> str:
    """Deterministic SHA-256 hash for nested dict/list primitives."""
    try:
        b = json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode("utf-8")
    except Exception:
        b = repr(obj).encode("utf-8")
    return hashlib.sha256(b).hexdigest()


def json_dumps_safe(obj: Any) -> str:
    try:
        return json.dumps(obj, ensure_ascii=False, separators=(",", ":"), default=str)
    except Exception:
        try:
            return json.dumps(str(obj), ensure_ascii=False, separators=(",", ":"))
        except Exception:
            return ""


def json_loads_safe(text: str | bytes | None) -> Any:
    """Parse JSON, returning the raw text when it is not JSON."""
    if text is None:
        return None
    if isinstance(text, bytes):
        text = text.decode("utf-8", errors="replace")
    try:
        return json.loads(text)
    except Exception:
        return text


def safe_float(v: Any, default: float | None = None) -> float | None:
    try:
        if v is None or v == "":
            return default
        f = float(v)
    except Exception:
        return default
    if not math.isfinite(f):
        return default
    return f


def round_half_up(x: float) -> int:
    """Round like JavaScript's Math.round (halves go up), not banker's rounding."""
    return int(math.floor(float(x) + 0.5))


@dataclass(frozen=True)
class Backoff:
    base_s: float = 1.0
    max_s: float = 30.0
    jitter_pct: float = 0.25

    def delay(self, attempt: int) -> float:
        """Exponential backoff with jitter.

        attempt is 1-indexed.
        """
        a = max(1, int(attempt))
        d = min(self.max_s, self.base_s * (2 ** (a - 1)))
        j = max(0.0, float(self.jitter_pct))
        lo = d * (1.0 - j)
        hi = d * (1.0 + j)
        return random.uniform(lo, hi)


def now_ms() -> int:
    return int(time.time() * 1000)


def interval_to_ms(interval: str) -> int:
    """Convert a candle resolution such as `15m`, `1h`, `4h`, `1d` to milliseconds.

    Returns 0 for unparseable input so callers can treat it as "no candles".
    """
    s = str(interval or "").strip()
    if len(s) < 2:
        return 0
    unit = s[-1]
    try:
        n = float(s[:-1])
    except Exception:
        return 0
    if unit == "M":
        return int(n * 30 * 24 * 60 * 60 * 1000)
    unit = unit.lower()
    if unit == "m":
        return int(n * 60.0 * 1000.0)
    if unit == "h":
        return int(n * 60.0 * 60.0 * 1000.0)
    if unit == "d":
        return int(n * 24.0 * 60.0 * 60.0 * 1000.0)
    if unit == "w":
        return int(n * 7 * 24 * 60 * 60 * 1000)
    return 0


def candle_open_ms(ts_ms: int, interval: str) -> int:
    """Start of the candle that contains `ts_ms` for the given resolution."""
    dur = interval_to_ms(interval)
    if dur <= 0:
        return int(ts_ms)
    return (int(ts_ms) // dur) * dur
