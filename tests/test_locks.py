"""Tests for maintenance single-flight locks."""

from unittest.mock import patch

from amre.maintenance.locks import InMemoryJobLock, RedisJobLock, lock_key, single_flight


def test_lock_key_format():
    assert lock_key("dedup", "u1") == "amre:maintenance:dedup:u1"
    assert lock_key("dedup", None) == "amre:maintenance:dedup:*"


def test_in_memory_lock_is_single_flight_per_scope():
    lock = InMemoryJobLock()
    token = lock.acquire("backfill", "u1")
    assert token is not None
    assert lock.acquire("backfill", "u1") is None
    assert lock.acquire("backfill", "u2") is not None
    assert lock.acquire("dedup", "u1") is not None
    assert lock.release("backfill", "u1", "wrong-token") is False
    assert lock.release("backfill", "u1", token) is True
    assert lock.acquire("backfill", "u1") is not None


def test_in_memory_lock_expires_after_ttl():
    lock = InMemoryJobLock(ttl_sec=0)
    assert lock.acquire("reap", "*") is not None
    assert lock.acquire("reap", "*") is not None


def test_single_flight_releases_on_exit():
    lock = InMemoryJobLock()
    with single_flight(lock, "dedup", None) as first:
        with single_flight(lock, "dedup", None) as second:
            assert first is True
            assert second is False
    with single_flight(lock, "dedup", None) as third:
        assert third is True


def test_single_flight_releases_on_error():
    lock = InMemoryJobLock()
    try:
        with single_flight(lock, "reap", "u1"):
            raise RuntimeError("job crashed")
    except RuntimeError:
        pass
    assert lock.acquire("reap", "u1") is not None


def test_redis_lock_uses_set_nx_ex(mock_redis):
    with patch("amre.maintenance.locks.redis.Redis.from_url", return_value=mock_redis) as from_url:
        lock = RedisJobLock("redis://localhost:6379/0", ttl_sec=120)
    from_url.assert_called_once_with("redis://localhost:6379/0", decode_responses=True)

    token = lock.acquire("backfill", "u1")
    assert token is not None
    mock_redis.set.assert_called_with("amre:maintenance:backfill:u1", token, nx=True, ex=120)
    assert lock.acquire("backfill", "u1") is None

    assert lock.release("backfill", "u1", "stale") is False
    assert lock.release("backfill", "u1", token) is True
    assert "amre:maintenance:backfill:u1" not in mock_redis.data
    assert lock.ping() is True
