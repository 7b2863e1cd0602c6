"""Scheduler + worker-pool daemon.

Usage:
  DMB_CONFIG_SOURCE_URL=http://client:3000 DMB_REDIS_URL=redis://localhost:6379/0 python -m engine.daemon
  DMB_CONFIG_YAML=config/strategy_configs.yaml python -m engine.daemon

Every DMB_SCHEDULE_SECS the scheduler fetches one page of strategy configs and
enqueues one job per config. DMB_WORKERS threads pop jobs and run a trading
cycle for each; the per-key lease lock keeps cycles for the same
(user, symbol, product) from overlapping across workers and processes.
"""

from __future__ import annotations

import atexit
import fcntl
import json
import logging
import os
import queue
import signal
import threading
import time
from typing import Any, Callable, Protocol

import redis

from exchange.delta import DeltaExchangeGateway

from .config import RuntimeSettings, StrategyConfig
from .config_source import ConfigSource, HttpConfigSource, YamlConfigSource
from .cycle import TradingCycle
from .event_logger import emit_event
from .lock import build_lock
from .state_store import StateStore

logger = logging.getLogger(__name__)


class JobQueue(Protocol):
    def push(self, payload: dict[str, Any]) -> None: ...

    def pop(self, timeout_s: float) -> dict[str, Any] | None: ...


class LocalJobQueue:
    """In-process queue for single-host runs and tests."""

    def __init__(self, maxsize: int = 0):
        self._q: queue.Queue[dict[str, Any]] = queue.Queue(maxsize=maxsize)

    def push(self, payload: dict[str, Any]) -> None:
        self._q.put(payload)

    def pop(self, timeout_s: float) -> dict[str, Any] | None:
        try:
            return self._q.get(timeout=max(0.01, float(timeout_s)))
        except queue.Empty:
            return None

    def qsize(self) -> int:
        return self._q.qsize()


class RedisJobQueue:
    """Durable FIFO on a Redis list: RPUSH to enqueue, BLPOP to consume."""

    def __init__(self, client: Any, *, name: str = "dmb:trading-cycle"):
        self._client = client
        self._name = str(name)

    @classmethod
    def from_url(cls, url: str, *, name: str) -> "RedisJobQueue":
        return cls(redis.Redis.from_url(url), name=name)

    def push(self, payload: dict[str, Any]) -> None:
        self._client.rpush(self._name, json.dumps(payload, separators=(",", ":"), default=str))

    def pop(self, timeout_s: float) -> dict[str, Any] | None:
        res = self._client.blpop([self._name], timeout=max(1, int(round(float(timeout_s)))))
        if not res:
            return None
        _key, raw = res
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8", errors="replace")
        try:
            job = json.loads(raw)
        except Exception:
            logger.error("dropping undecodable job from %s: %r", self._name, raw[:200])
            return None
        return job if isinstance(job, dict) else None


class CycleScheduler:
    def __init__(self, *, source: ConfigSource, queue: JobQueue):
        self._source = source
        self._queue = queue

    def enqueue_once(self) -> int:
        """Fetch one page of configs and enqueue a job per config; never raises."""
        t0 = time.monotonic()
        n = 0
        try:
            configs = self._source.fetch_configs()
            for cfg in configs:
                self._queue.push({"config": cfg})
                n += 1
            logger.info("scheduler: enqueued %d job(s)", n)
        except Exception:
            logger.exception("scheduler: failed to enqueue jobs")
        finally:
            logger.info("scheduler: finished in %dms", int((time.monotonic() - t0) * 1000))
        return n


class CycleWorkerPool:
    """N daemon threads consuming cycle jobs; a failing job never stops its worker."""

    def __init__(
        self,
        *,
        queue: JobQueue,
        runner: Callable[[StrategyConfig], Any],
        workers: int = 5,
        poll_timeout_s: float = 1.0,
    ):
        self._queue = queue
        self._runner = runner
        self._workers = max(1, int(workers))
        self._poll_timeout_s = float(poll_timeout_s)
        self._stop = threading.Event()
        self._threads: list[threading.Thread] = []

    @property
    def running(self) -> bool:
        return any(t.is_alive() for t in self._threads)

    def start(self) -> None:
        if self._threads:
            return
        self._stop.clear()
        for i in range(self._workers):
            t = threading.Thread(target=self._run, name=f"cycle_worker_{i}", daemon=True)
            t.start()
            self._threads.append(t)

    def stop(self) -> None:
        self._stop.set()

    def join(self, timeout_s: float | None = None) -> None:
        for t in self._threads:
            t.join(timeout=timeout_s)
        self._threads = [t for t in self._threads if t.is_alive()]

    def process(self, job: dict[str, Any]) -> Any:
        raw = job.get("config") if isinstance(job, dict) else None
        config_id = raw.get("id") if isinstance(raw, dict) else None
        try:
            if not isinstance(raw, dict):
                raise ValueError("job payload missing 'config' object")
            config = StrategyConfig.from_mapping(raw)
            return self._runner(config)
        except Exception:
            logger.exception("worker: cycle failed for configId=%s", config_id)
            return None

    def _run(self) -> None:
        while not self._stop.is_set():
            try:
                job = self._queue.pop(self._poll_timeout_s)
            except Exception:
                logger.exception("worker: queue pop failed")
                self._stop.wait(1.0)
                continue
            if job is None:
                continue
            self.process(job)


def acquire_lock_or_exit(lock_path: str):
    """Prevent two daemons from sharing one state DB (flock on a pid file)."""
    lock_file = open(lock_path, "a+", encoding="utf-8")
    try:
        fcntl.flock(lock_file, fcntl.LOCK_EX | fcntl.LOCK_NB)
    except OSError:
        lock_file.close()
        raise SystemExit(f"another daemon holds {lock_path}")
    lock_file.seek(0)
    lock_file.truncate()
    lock_file.write(str(os.getpid()))
    lock_file.flush()
    return lock_file


def _close_lock_file(lock_file) -> None:
    try:
        lock_file.close()
    except Exception:
        logger.debug("failed to close daemon lock file", exc_info=True)


def _register_lock_cleanup(lock_file, *, register_fn=atexit.register) -> None:
    register_fn(_close_lock_file, lock_file)


def build_config_source(settings: RuntimeSettings) -> ConfigSource:
    if settings.config_source_url:
        return HttpConfigSource(
            base_url=settings.config_source_url,
            timeframe=settings.config_timeframe,
            limit=settings.config_page_limit,
            timeout_s=settings.http_timeout_s,
        )
    if settings.config_yaml:
        return YamlConfigSource(settings.config_yaml)
    raise SystemExit("set DMB_CONFIG_SOURCE_URL or DMB_CONFIG_YAML")


def build_queue(settings: RuntimeSettings) -> JobQueue:
    if settings.redis_url:
        return RedisJobQueue.from_url(settings.redis_url, name=settings.queue_name)
    return LocalJobQueue()


def build_cycle(settings: RuntimeSettings, store: StateStore) -> TradingCycle:
    timeout_s = settings.http_timeout_s
    return TradingCycle(
        store=store,
        lock=build_lock(settings),
        gateway_factory=lambda cfg: DeltaExchangeGateway.from_config(cfg, timeout_s=timeout_s),
        lock_ttl_s=settings.lock_ttl_s,
        history_bars=settings.candle_history_bars,
        sink=emit_event,
    )


def main() -> None:
    logging.basicConfig(
        level=os.getenv("DMB_LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(threadName)s %(name)s: %(message)s",
    )
    settings = RuntimeSettings.from_env()

    lock_path = os.getenv("DMB_DAEMON_LOCK_PATH", f"{settings.db_path}.daemon.lock")
    lock_file = acquire_lock_or_exit(lock_path)
    _register_lock_cleanup(lock_file)

    store = StateStore(db_path=settings.db_path)
    store.ensure()

    job_queue = build_queue(settings)
    scheduler = CycleScheduler(source=build_config_source(settings), queue=job_queue)
    pool = CycleWorkerPool(queue=job_queue, runner=build_cycle(settings, store), workers=settings.workers)

    stop = threading.Event()

    def _on_signal(signum, _frame) -> None:
        logger.info("signal %s received, stopping", signum)
        stop.set()

    signal.signal(signal.SIGINT, _on_signal)
    signal.signal(signal.SIGTERM, _on_signal)

    pool.start()
    print(
        f"🚀 trading-cycle daemon started. workers={settings.workers} "
        f"every={settings.schedule_secs:.0f}s lock={settings.lock_backend}"
    )
    try:
        while not stop.is_set():
            scheduler.enqueue_once()
            stop.wait(settings.schedule_secs)
    finally:
        pool.stop()
        pool.join(timeout_s=5.0)
        store.close()
        print("🛑 trading-cycle daemon stopped.")


if __name__ == "__main__":
    main()
