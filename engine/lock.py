from __future__ import annotations

import logging
import sqlite3
import threading
import uuid
from contextlib import contextmanager
from typing import Any, Callable, Iterator, Protocol

import redis

from .config import StrategyConfig
from .utils import now_ms

logger = logging.getLogger(__name__)

# Delete the key only while it still holds our token.
_RELEASE_LUA = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
else
    return 0
end
"""


def lock_key(config: StrategyConfig) -> str:
    return f"trading-cycle:{config.user_id}:{config.symbol}:{config.product_id}"


def _decode(raw: Any) -> str:
    if raw is None:
        return ""
    if isinstance(raw, bytes):
        try:
            return raw.decode("utf-8")
        except Exception:
            return str(raw)
    return str(raw)


class Lease:
    """A held lock. `release()` is delete-if-owner and safe to call more than once."""

    def __init__(self, *, key: str, token: str, expires_at_ms: int, releaser: Callable[[str, str], None]):
        self.key = key
        self.token = token
        self.expires_at_ms = int(expires_at_ms)
        self._releaser = releaser
        self._released = False
        self._mu = threading.Lock()

    @property
    def released(self) -> bool:
        return self._released

    def release(self) -> None:
        with self._mu:
            if self._released:
                return
            self._released = True
        try:
            self._releaser(self.key, self.token)
        except Exception:
            # The lease expires on its own; a failed release only delays the next cycle.
            logger.warning("lock release failed for %s", self.key, exc_info=True)

    def __repr__(self) -> str:
        return f"Lease(key={self.key!r}, expires_at_ms={self.expires_at_ms}, released={self._released})"


class LeaseLock(Protocol):
    def acquire(self, key: str, ttl_s: int) -> Lease | None: ...

    def hold(self, key: str, ttl_s: int) -> Any: ...


class _HoldMixin:
    def acquire(self, key: str, ttl_s: int) -> Lease | None:  # pragma: no cover - overridden
        raise NotImplementedError

    @contextmanager
    def hold(self, key: str, ttl_s: int) -> Iterator[Lease | None]:
        """Yield the lease (or None when another holder has it); always release on exit."""
        lease = self.acquire(key, ttl_s)
        try:
            yield lease
        finally:
            if lease is not None:
                lease.release()


class RedisLeaseLock(_HoldMixin):
    """`SET key token NX EX ttl` lease over a redis-py client."""

    def __init__(self, client: Any):
        self._client = client

    @classmethod
    def from_url(cls, url: str) -> "RedisLeaseLock":
        return cls(redis.Redis.from_url(url))

    def acquire(self, key: str, ttl_s: int) -> Lease | None:
        token = uuid.uuid4().hex
        ttl = max(1, int(ttl_s or 1))
        acquired = bool(self._client.set(key, token, nx=True, ex=ttl))
        if not acquired:
            logger.info("lock busy: %s", key)
            return None
        return Lease(key=key, token=token, expires_at_ms=now_ms() + ttl * 1000, releaser=self._release)

    def _release(self, key: str, token: str) -> None:
        self._client.eval(_RELEASE_LUA, 1, key, token)

    def owner(self, key: str) -> str:
        return _decode(self._client.get(key))


class SqliteLeaseLock(_HoldMixin):
    """Single-host lease lock on a SQLite table; expired rows are taken over on acquire."""

    def __init__(self, *, db_path: str, timeout_s: float = 30.0):
        self._db_path = str(db_path)
        self._timeout_s = float(timeout_s)
        self._thread_local = threading.local()

    def _connect(self) -> sqlite3.Connection:
        conn = getattr(self._thread_local, "conn", None)
        if isinstance(conn, sqlite3.Connection):
            return conn
        conn = sqlite3.connect(self._db_path, timeout=self._timeout_s, isolation_level=None)
        try:
            conn.execute("PRAGMA journal_mode=WAL")
        except Exception:
            logger.debug("PRAGMA setup failed for lock DB", exc_info=True)
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS cycle_leases (
                lock_key TEXT PRIMARY KEY,
                token TEXT NOT NULL,
                expires_at_ms INTEGER NOT NULL
            )
            """
        )
        self._thread_local.conn = conn
        return conn

    def close(self) -> None:
        conn = getattr(self._thread_local, "conn", None)
        if conn is None:
            return
        try:
            conn.close()
        finally:
            self._thread_local.conn = None

    def acquire(self, key: str, ttl_s: int) -> Lease | None:
        token = uuid.uuid4().hex
        ttl = max(1, int(ttl_s or 1))
        now = now_ms()
        expires = now + ttl * 1000
        conn = self._connect()
        conn.execute("BEGIN IMMEDIATE")
        try:
            conn.execute("DELETE FROM cycle_leases WHERE lock_key = ? AND expires_at_ms <= ?", (key, now))
            cur = conn.execute(
                "INSERT OR IGNORE INTO cycle_leases (lock_key, token, expires_at_ms) VALUES (?, ?, ?)",
                (key, token, expires),
            )
            acquired = cur.rowcount == 1
            conn.execute("COMMIT")
        except Exception:
            conn.execute("ROLLBACK")
            raise
        if not acquired:
            logger.info("lock busy: %s", key)
            return None
        return Lease(key=key, token=token, expires_at_ms=expires, releaser=self._release)

    def _release(self, key: str, token: str) -> None:
        conn = self._connect()
        conn.execute("DELETE FROM cycle_leases WHERE lock_key = ? AND token = ?", (key, token))


def build_lock(settings: Any) -> RedisLeaseLock | SqliteLeaseLock:
    if getattr(settings, "lock_backend", "sqlite") == "redis":
        if not settings.redis_url:
            raise ValueError("DMB_LOCK_BACKEND=redis requires DMB_REDIS_URL")
        return RedisLeaseLock.from_url(settings.redis_url)
    return SqliteLeaseLock(db_path=settings.db_path)
