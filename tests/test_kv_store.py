import pytest
from redis import exceptions as RedisExceptions

from mission_control.exceptions import StoreUnavailableError
from mission_control.kv_store import InMemoryStore, RedisStore, create_store


class BrokenRedis:
    def _fail(self, *args, **kwargs):
        raise RedisExceptions.ConnectionError("connection refused")

    get = set = delete = scan_iter = ping = _fail


def test_in_memory_store_round_trip(clock):
    store = InMemoryStore(clock=clock)
    store.put("rl:a", b"one")
    store.put("rl:b", "two")
    assert store.get("rl:a") == b"one"
    assert store.get("rl:b") == b"two"
    store.delete("rl:a")
    assert store.get("rl:a") is None


def test_in_memory_store_expires_keys(clock):
    store = InMemoryStore(clock=clock)
    store.put("fuse:x", b"lease", ttl_seconds=300)
    clock.advance(299_999)
    assert store.get("fuse:x") == b"lease"
    clock.advance(1)
    assert store.get("fuse:x") is None


def test_in_memory_store_lists_live_keys_by_prefix(clock):
    store = InMemoryStore(clock=clock)
    store.put("audit:2:b", b"x")
    store.put("audit:1:a", b"x")
    store.put("health:host", b"x")
    store.put("audit:3:c", b"x", ttl_seconds=1)
    clock.advance(1000)
    assert store.list("audit:") == ["audit:1:a", "audit:2:b"]


def test_redis_errors_surface_as_store_unavailable():
    store = RedisStore("redis://localhost:6379/0", client=BrokenRedis())
    with pytest.raises(StoreUnavailableError):
        store.get("rl:x")
    with pytest.raises(StoreUnavailableError):
        store.put("rl:x", b"1", ttl_seconds=5)
    with pytest.raises(StoreUnavailableError):
        store.list("rl:")
    assert store.ping() is False


def test_create_store_falls_back_to_memory():
    assert isinstance(create_store(None), InMemoryStore)
    assert isinstance(create_store("redis://localhost:6379/0"), RedisStore)
