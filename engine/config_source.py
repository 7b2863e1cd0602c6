from __future__ import annotations

import json
import logging
import time
import urllib.error
import urllib.parse
import urllib.request
from pathlib import Path
from typing import Any, Protocol

from .config import load_strategy_configs
from .utils import Backoff

logger = logging.getLogger(__name__)

CONFIGS_ENDPOINT = "/api/v1/trading-configs"


class ConfigSource(Protocol):
    def fetch_configs(self) -> list[dict[str, Any]]: ...


def _extract_configs(payload: Any) -> list[dict[str, Any]]:
    """Accept a bare list, or a list under `data`, `configs` or `result`."""
    if isinstance(payload, list):
        rows = payload
    elif isinstance(payload, dict):
        rows = payload.get("data") or payload.get("configs") or payload.get("result") or []
    else:
        rows = []
    if not isinstance(rows, list):
        return []
    return [r for r in rows if isinstance(r, dict)]


class HttpConfigSource:
    """Pages strategy configs from the client service over HTTP."""

    def __init__(
        self,
        *,
        base_url: str,
        timeframe: str = "1m",
        limit: int = 500,
        timeout_s: float = 10.0,
        max_retries: int = 3,
    ):
        self._base_url = str(base_url).rstrip("/")
        self._timeframe = str(timeframe)
        self._limit = max(1, int(limit))
        self._timeout_s = max(0.5, float(timeout_s))
        self._max_retries = max(1, int(max_retries))

    @property
    def url(self) -> str:
        qs = urllib.parse.urlencode({"timeframe": self._timeframe, "limit": self._limit})
        return f"{self._base_url}{CONFIGS_ENDPOINT}?{qs}"

    def fetch_configs(self) -> list[dict[str, Any]]:
        req = urllib.request.Request(self.url, headers={"Accept": "application/json"}, method="GET")
        backoff = Backoff(base_s=1.0, max_s=15.0, jitter_pct=0.25)
        last_err: Exception | None = None
        for attempt in range(1, self._max_retries + 1):
            try:
                with urllib.request.urlopen(req, timeout=self._timeout_s) as resp:
                    raw_body = resp.read()
                return _extract_configs(json.loads(raw_body))
            except urllib.error.HTTPError as e:
                last_err = e
                code = int(getattr(e, "code", 0) or 0)
                if 500 <= code < 600 and attempt < self._max_retries:
                    time.sleep(backoff.delay(attempt))
                    continue
                raise
            except (urllib.error.URLError, TimeoutError, OSError) as e:
                last_err = e
                if attempt < self._max_retries:
                    time.sleep(backoff.delay(attempt))
                    continue
                raise
        raise RuntimeError(f"config fetch failed: {last_err}")


class YamlConfigSource:
    """Reads configs from a local YAML file on every fetch, so edits apply on the next tick."""

    def __init__(self, path: str | Path):
        self._path = Path(path).expanduser()

    def fetch_configs(self) -> list[dict[str, Any]]:
        return [c.to_mapping() for c in load_strategy_configs(self._path)]
