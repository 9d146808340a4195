# mission_control/kv_store.py
"""
Keyed state store shared by the admission, integrity and monitor systems.

Values are byte strings with an optional per-key time-to-live. Consistency is
best-effort: callers read, modify and write back without any atomicity, so two
workers touching the same key may race.
"""
import logging
import threading
from typing import Callable, Dict, List, Optional, Tuple

from redis import Redis, exceptions as RedisExceptions

from mission_control.exceptions import StoreUnavailableError
from mission_control.utils.clock import now_ms

logger = logging.getLogger(__name__)


class KeyValueStore:
    """Interface implemented by every store backend."""

    def get(self, key: str) -> Optional[bytes]:
        raise NotImplementedError

    def put(self, key: str, value: bytes, ttl_seconds: Optional[int] = None) -> None:
        raise NotImplementedError

    def delete(self, key: str) -> None:
        raise NotImplementedError

    def list(self, prefix: str = "") -> List[str]:
        raise NotImplementedError

    def ping(self) -> bool:
        raise NotImplementedError


class RedisStore(KeyValueStore):
    """Store backed by Redis, connecting lazily on first use."""

    def __init__(self, redis_url: str, socket_timeout: float = 1.0, client: Optional[Redis] = None):
        self.redis_url = redis_url
        self.socket_timeout = socket_timeout
        self._client: Optional[Redis] = client
        self._lock = threading.Lock()

    @property
    def client(self) -> Redis:
        """Provides a lazy-loading, thread-safe Redis client."""
        if self._client is not None:
            return self._client
        with self._lock:
            if self._client is None:
                try:
                    self._client = Redis.from_url(
                        self.redis_url,
                        socket_connect_timeout=self.socket_timeout,
                        socket_timeout=self.socket_timeout,
                    )
                except ValueError as e:
                    raise StoreUnavailableError(f"Invalid REDIS_URL: {e}") from e
                logger.info("Redis store configured for %s", self._masked_url())
        return self._client

    def _masked_url(self) -> str:
        if "@" not in self.redis_url:
            return self.redis_url
        scheme, rest = self.redis_url.split("://", 1)
        return f"{scheme}://****@{rest.split('@', 1)[1]}"

    def get(self, key: str) -> Optional[bytes]:
        try:
            return self.client.get(key)
        except RedisExceptions.RedisError as e:
            raise StoreUnavailableError(f"GET {key} failed: {e}") from e

    def put(self, key: str, value: bytes, ttl_seconds: Optional[int] = None) -> None:
        try:
            self.client.set(key, value, ex=ttl_seconds)
        except RedisExceptions.RedisError as e:
            raise StoreUnavailableError(f"SET {key} failed: {e}") from e

    def delete(self, key: str) -> None:
        try:
            self.client.delete(key)
        except RedisExceptions.RedisError as e:
            raise StoreUnavailableError(f"DEL {key} failed: {e}") from e

    def list(self, prefix: str = "") -> List[str]:
        try:
            keys = self.client.scan_iter(match=f"{prefix}*", count=500)
            return sorted(k.decode() if isinstance(k, bytes) else k for k in keys)
        except RedisExceptions.RedisError as e:
            raise StoreUnavailableError(f"SCAN {prefix}* failed: {e}") from e

    def ping(self) -> bool:
        try:
            return bool(self.client.ping())
        except (RedisExceptions.RedisError, StoreUnavailableError) as e:
            logger.warning(f"Redis ping failed: {e}")
            return False


class InMemoryStore(KeyValueStore):
    """
    Process-local store with per-key expiry.

    Used when no Redis URL is configured and throughout the tests. Expiry is
    evaluated lazily against the injected clock (epoch milliseconds).
    """

    def __init__(self, clock: Callable[[], int] = now_ms):
        self._clock = clock
        self._data: Dict[str, Tuple[bytes, Optional[int]]] = {}
        self._lock = threading.Lock()

    def _alive(self, key: str) -> bool:
        entry = self._data.get(key)
        if entry is None:
            return False
        _, expires_at = entry
        if expires_at is not None and expires_at <= self._clock():
            del self._data[key]
            return False
        return True

    def get(self, key: str) -> Optional[bytes]:
        with self._lock:
            if not self._alive(key):
                return None
            return self._data[key][0]

    def put(self, key: str, value: bytes, ttl_seconds: Optional[int] = None) -> None:
        if isinstance(value, str):
            value = value.encode()
        expires_at = self._clock() + ttl_seconds * 1000 if ttl_seconds else None
        with self._lock:
            self._data[key] = (value, expires_at)

    def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def list(self, prefix: str = "") -> List[str]:
        with self._lock:
            return sorted(k for k in list(self._data) if k.startswith(prefix) and self._alive(k))

    def ping(self) -> bool:
        return True


def create_store(redis_url: Optional[str], clock: Callable[[], int] = now_ms) -> KeyValueStore:
    """Builds the store for the configured backend."""
    if redis_url:
        return RedisStore(redis_url)
    logger.warning("REDIS_URL not set. Using in-memory store; state will not be shared across workers.")
    return InMemoryStore(clock=clock)
