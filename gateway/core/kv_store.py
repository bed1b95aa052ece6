# core/kv_store.py
"""
TTL key/value storage used for rate-limit buckets and the webhook
duplicate-detection cache.

Two backends share one interface:
- RedisKeyValueStore: production, shared across processes
- MemoryKeyValueStore: single process (development, tests)

Values are JSON-serializable objects. Every write may carry a TTL in
seconds; expired keys are invisible to readers.
"""

import json
import threading
import time
from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterator, List, Optional, Protocol, Tuple

import redis

from gateway.core.logger import logger


class KeyValueStore(Protocol):
    def get(self, key: str) -> Optional[Any]: ...
    def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None: ...
    def set_if_absent(self, key: str, value: Any, ttl: Optional[int] = None) -> bool: ...
    def delete(self, key: str) -> bool: ...
    def keys(self, prefix: str) -> List[str]: ...
    def lock(self, key: str): ...
    def purge_expired(self, prefix: str = "") -> int: ...
    def ping(self) -> bool: ...


# ---------------------------------------------------------------------------
# Redis implementation
# ---------------------------------------------------------------------------

class RedisKeyValueStore:
    """
    Redis-backed store. TTLs are native Redis expirations, set-if-absent is
    SET NX, and per-key locks are Redis locks so they hold across workers.
    """

    def __init__(self, client: redis.Redis, namespace: str = "gateway", lock_timeout: int = 5):
        self.redis = client
        self.namespace = namespace
        self.lock_timeout = lock_timeout

    def _key(self, key: str) -> str:
        return f"{self.namespace}:{key}"

    def get(self, key: str) -> Optional[Any]:
        data = self.redis.get(self._key(key))
        if data is None:
            return None
        return json.loads(data)

    def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        self.redis.set(self._key(key), json.dumps(value), ex=ttl)

    def set_if_absent(self, key: str, value: Any, ttl: Optional[int] = None) -> bool:
        return bool(self.redis.set(self._key(key), json.dumps(value), ex=ttl, nx=True))

    def delete(self, key: str) -> bool:
        return bool(self.redis.delete(self._key(key)))

    def keys(self, prefix: str) -> List[str]:
        strip = len(self.namespace) + 1
        return [
            name[strip:]
            for name in self.redis.scan_iter(match=f"{self._key(prefix)}*")
        ]

    def lock(self, key: str):
        """
        Redis lock scoped to one key. Usable as a context manager.
        """
        return self.redis.lock(
            self._key(f"lock:{key}"),
            timeout=self.lock_timeout,
            blocking_timeout=self.lock_timeout,
        )

    def purge_expired(self, prefix: str = "") -> int:
        # Redis evicts expired keys itself
        return 0

    def ping(self) -> bool:
        try:
            return bool(self.redis.ping())
        except redis.RedisError as e:
            logger.error(f"Redis ping failed: {e}")
            return False


# ---------------------------------------------------------------------------
# In-memory implementation
# ---------------------------------------------------------------------------

class MemoryKeyValueStore:
    """
    Dict-backed store with lazy expiry. ``clock`` returns epoch seconds and
    can be replaced to control time.
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._data: Dict[str, Tuple[str, Optional[float]]] = {}
        self._mutex = threading.Lock()
        self._locks: Dict[str, threading.Lock] = {}

    def _alive(self, key: str) -> Optional[str]:
        entry = self._data.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and expires_at <= self._clock():
            del self._data[key]
            return None
        return value

    def _expiry(self, ttl: Optional[int]) -> Optional[float]:
        return self._clock() + ttl if ttl else None

    def get(self, key: str) -> Optional[Any]:
        with self._mutex:
            value = self._alive(key)
        return None if value is None else json.loads(value)

    def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        with self._mutex:
            self._data[key] = (json.dumps(value), self._expiry(ttl))

    def set_if_absent(self, key: str, value: Any, ttl: Optional[int] = None) -> bool:
        with self._mutex:
            if self._alive(key) is not None:
                return False
            self._data[key] = (json.dumps(value), self._expiry(ttl))
            return True

    def delete(self, key: str) -> bool:
        with self._mutex:
            return self._data.pop(key, None) is not None

    def keys(self, prefix: str) -> List[str]:
        with self._mutex:
            return [k for k in list(self._data) if k.startswith(prefix) and self._alive(k) is not None]

    @contextmanager
    def lock(self, key: str) -> Iterator[None]:
        with self._mutex:
            key_lock = self._locks.setdefault(key, threading.Lock())
        with key_lock:
            yield

    def purge_expired(self, prefix: str = "") -> int:
        now = self._clock()
        with self._mutex:
            expired = [
                k for k, (_, expires_at) in self._data.items()
                if k.startswith(prefix) and expires_at is not None and expires_at <= now
            ]
            for k in expired:
                del self._data[k]
                self._locks.pop(k, None)
        return len(expired)

    def ping(self) -> bool:
        return True
