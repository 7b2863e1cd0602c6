"""Decision-event log.

Cycles, reconciles and regime checks hand structured events to `emit_event`.
Events are appended as `dmb_event_v1` JSON lines by a background writer so the
trading path never waits on disk.

Without DMB_EVENT_LOG_PATH the log rolls over per UTC day:
`artifacts/events/decisions-YYYYMMDD.jsonl`.
"""

from __future__ import annotations

import atexit
import json
import logging
import os
import queue
import threading
import time
from contextlib import suppress
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable

from .utils import _env_bool, _env_float, _env_int, _env_str

logger = logging.getLogger(__name__)

SCHEMA = "dmb_event_v1"
DMB_ROOT = Path(__file__).resolve().parents[1]

# Lifted from `data` into the envelope so a single config's history can be grepped.
_ENVELOPE_KEYS = ("config_id", "user_id")


def _utc_iso(ts_ms: int) -> str:
    return datetime.fromtimestamp(ts_ms / 1000.0, tz=timezone.utc).isoformat()


def _daily_path(ts_ms: int) -> Path:
    day = datetime.fromtimestamp(ts_ms / 1000.0, tz=timezone.utc).strftime("%Y%m%d")
    return DMB_ROOT / "artifacts" / "events" / f"decisions-{day}.jsonl"


def _path_resolver() -> Callable[[int], Path]:
    fixed = _env_str("DMB_EVENT_LOG_PATH", "").strip()
    if fixed:
        p = Path(fixed).expanduser().resolve()
        return lambda _ts_ms: p
    return _daily_path


def _jsonable(obj: Any) -> Any:
    if obj is None or isinstance(obj, (str, int, bool)):
        return obj
    if isinstance(obj, float):
        # NaN/inf are not valid JSON.
        return obj if obj == obj and obj not in (float("inf"), float("-inf")) else None
    if isinstance(obj, dict):
        return {str(k): _jsonable(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple, set)):
        return [_jsonable(v) for v in obj]
    to_dict = getattr(obj, "to_dict", None)
    if callable(to_dict):
        with suppress(Exception):
            return _jsonable(to_dict())
    return str(obj)


def build_event(*, kind: str, symbol: str | None, data: dict[str, Any] | None, ts_ms: int) -> dict[str, Any]:
    event: dict[str, Any] = {
        "schema": SCHEMA,
        "ts_ms": int(ts_ms),
        "ts": _utc_iso(ts_ms),
        "pid": os.getpid(),
        "kind": str(kind),
    }
    sym = (symbol or "").strip().upper()
    if sym:
        event["symbol"] = sym
    if data:
        body = _jsonable(data)
        for key in _ENVELOPE_KEYS:
            if body.get(key) is not None:
                event[key] = body[key]
        event["data"] = body
    return event


class DecisionEventSink:
    """Queue-backed JSONL appender; `write` drops events rather than block when the queue is full."""

    def __init__(self, *, path_for: Callable[[int], Path], start: bool = True):
        self._path_for = path_for
        self._flush_every_s = max(0.05, _env_float("DMB_EVENT_LOG_FLUSH_SECS", 0.25))
        self._batch_size = max(10, _env_int("DMB_EVENT_LOG_BATCH", 200))
        self._q: queue.Queue[tuple[int, str]] = queue.Queue(maxsize=max(1000, _env_int("DMB_EVENT_LOG_MAX_QUEUE", 10000)))
        self._stop = threading.Event()
        self._dropped = 0

        self._t = threading.Thread(target=self._run, name="decision_event_writer", daemon=True)
        if start:
            self._t.start()
            atexit.register(self.close)

    @property
    def dropped(self) -> int:
        return self._dropped

    def write(self, event: dict[str, Any]) -> None:
        try:
            line = json.dumps(event, separators=(",", ":"), ensure_ascii=False)
        except (TypeError, ValueError) as exc:
            logger.warning("event log: cannot encode %s event: %s", event.get("kind"), exc)
            return
        try:
            self._q.put_nowait((int(event.get("ts_ms") or 0), line))
        except queue.Full:
            self._dropped += 1
            if self._dropped == 1 or self._dropped % 1000 == 0:
                logger.warning("event log: queue full, %d event(s) dropped so far", self._dropped)

    def close(self) -> None:
        if self._stop.is_set():
            return
        self._stop.set()
        if self._t.is_alive():
            self._t.join(timeout=1.5)

    def _next_batch(self) -> list[tuple[int, str]]:
        try:
            batch = [self._q.get(timeout=self._flush_every_s)]
        except queue.Empty:
            return []
        while len(batch) < self._batch_size:
            try:
                batch.append(self._q.get_nowait())
            except queue.Empty:
                break
        return batch

    def _append(self, batch: list[tuple[int, str]]) -> None:
        by_path: dict[Path, list[str]] = {}
        for ts_ms, line in batch:
            by_path.setdefault(self._path_for(ts_ms), []).append(line)
        for path, lines in by_path.items():
            path.parent.mkdir(parents=True, exist_ok=True)
            with path.open("a", encoding="utf-8") as fh:
                fh.write("\n".join(lines) + "\n")

    def _run(self) -> None:
        backoff_s = 0.05
        while not (self._stop.is_set() and self._q.empty()):
            batch = self._next_batch()
            if not batch:
                continue
            try:
                self._append(batch)
                backoff_s = 0.05
            except OSError:
                logger.error("event log: failed to append %d event(s)", len(batch), exc_info=True)
                self._dropped += len(batch)
                time.sleep(backoff_s)
                backoff_s = min(2.0, backoff_s * 1.8)


_SINK_LOCK = threading.Lock()
_SINK: DecisionEventSink | None = None


def _get_sink() -> DecisionEventSink | None:
    global _SINK
    if not _env_bool("DMB_EVENT_LOG", True):
        return None
    with _SINK_LOCK:
        if _SINK is None:
            _SINK = DecisionEventSink(path_for=_path_resolver())
        return _SINK


def emit_event(*, kind: str, symbol: str | None = None, data: dict[str, Any] | None = None) -> None:
    """Default decision sink. Never raises into the caller."""
    try:
        sink = _get_sink()
        if sink is not None:
            sink.write(build_event(kind=kind, symbol=symbol, data=data, ts_ms=int(time.time() * 1000)))
    except Exception:
        logger.debug("event log: emit failed for %s", kind, exc_info=True)


def null_sink(*, kind: str, symbol: str | None = None, data: dict[str, Any] | None = None) -> None:
    return None


def _close_for_tests() -> None:
    global _SINK
    with _SINK_LOCK:
        if _SINK is None:
            return
        _SINK.close()
        _SINK = None
