from __future__ import annotations

import threading
import time
import uuid
from contextlib import contextmanager
from typing import Dict, Iterator, Optional, Protocol, Tuple

import redis

_RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
end
return 0
"""


class JobLock(Protocol):
    """Single-flight guard for one maintenance job type per user scope."""

    def acquire(self, job: str, scope: str) -> Optional[str]:
        ...

    def release(self, job: str, scope: str, token: str) -> bool:
        ...


def lock_key(job: str, scope: Optional[str]) -> str:
    return f"amre:maintenance:{job}:{scope or '*'}"


class InMemoryJobLock:
    def __init__(self, ttl_sec: int = 900) -> None:
        self._ttl_sec = ttl_sec
        self._lock = threading.Lock()
        self._held: Dict[str, Tuple[str, float]] = {}

    def acquire(self, job: str, scope: str) -> Optional[str]:
        key = lock_key(job, scope)
        now = time.monotonic()
        with self._lock:
            held = self._held.get(key)
            if held is not None and held[1] > now:
                return None
            token = uuid.uuid4().hex
            self._held[key] = (token, now + self._ttl_sec)
            return token

    def release(self, job: str, scope: str, token: str) -> bool:
        key = lock_key(job, scope)
        with self._lock:
            held = self._held.get(key)
            if held is None or held[0] != token:
                return False
            del self._held[key]
            return True


class RedisJobLock:
    """``SET NX EX`` lock; release only deletes a key still holding our token."""

    def __init__(self, url: str, ttl_sec: int = 900) -> None:
        self._client = redis.Redis.from_url(url, decode_responses=True)
        self._ttl_sec = ttl_sec

    def acquire(self, job: str, scope: str) -> Optional[str]:
        token = uuid.uuid4().hex
        if self._client.set(lock_key(job, scope), token, nx=True, ex=self._ttl_sec):
            return token
        return None

    def release(self, job: str, scope: str, token: str) -> bool:
        return bool(self._client.eval(_RELEASE_SCRIPT, 1, lock_key(job, scope), token))

    def ping(self) -> bool:
        return bool(self._client.ping())


@contextmanager
def single_flight(lock: JobLock, job: str, scope: Optional[str]) -> Iterator[bool]:
    """Yield ``True`` when the lock was taken, ``False`` when another run holds it."""
    token = lock.acquire(job, scope or "*")
    try:
        yield token is not None
    finally:
        if token is not None:
            lock.release(job, scope or "*", token)
