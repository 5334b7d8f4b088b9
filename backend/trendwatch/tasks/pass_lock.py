"""
Redis lock that keeps two workers from running the same batch pass at once.

Acquire is SET NX EX with a per-holder token; release is a Lua
compare-and-delete so an expired-and-reacquired lock is never freed by the
previous holder. Without Redis the lock degrades to "no lock".
"""
import logging
from contextlib import contextmanager
from typing import Iterator, Optional
from uuid import uuid4

from redis.exceptions import RedisError

from ..config import settings
from ..services.redis_pool import get_redis_client

logger = logging.getLogger(__name__)

LOCK_KEY_PREFIX = "trendwatch:pass_lock:"
_LOCK_RELEASE_LUA = """
if redis.call('get', KEYS[1]) == ARGV[1] then
    return redis.call('del', KEYS[1])
end
return 0
"""


def lock_key(pass_name: str) -> str:
    return f"{LOCK_KEY_PREFIX}{pass_name}"


class PassLock:
    """Single-holder lock for one pass name."""

    def __init__(self, pass_name: str, *, ttl_seconds: Optional[int] = None, client=None):
        self.pass_name = pass_name
        self.key = lock_key(pass_name)
        self.ttl_seconds = ttl_seconds or settings.trend_pass_lock_ttl_seconds
        self._client = client
        self.token: Optional[str] = None
        self.degraded = False

    def _get_client(self):
        if self._client is None:
            self._client = get_redis_client()
        return self._client

    def acquire(self, holder: str = "worker") -> bool:
        """True when this caller may run the pass (held, or Redis unavailable)."""
        client = self._get_client()
        if client is None:
            logger.warning("Redis unavailable; running %s without a pass lock", self.pass_name)
            self.degraded = True
            return True
        token = f"{holder}:{uuid4().hex}"
        try:
            acquired = client.set(self.key, token, nx=True, ex=self.ttl_seconds)
        except RedisError as exc:
            logger.warning("Pass lock acquire failed for %s, running unlocked: %s", self.pass_name, exc)
            self.degraded = True
            return True
        if not acquired:
            logger.info("Pass %s already running elsewhere; skipping", self.pass_name)
            return False
        self.token = token
        return True

    def release(self) -> bool:
        if self.token is None:
            return False
        client = self._get_client()
        token, self.token = self.token, None
        try:
            return bool(client.eval(_LOCK_RELEASE_LUA, 1, self.key, token))
        except RedisError as exc:
            logger.warning("Failed to release pass lock for %s: %s", self.pass_name, exc)
            return False


@contextmanager
def pass_lock(pass_name: str, holder: str = "worker", *, client=None) -> Iterator[bool]:
    """Yields whether the pass may run; always releases what it acquired."""
    lock = PassLock(pass_name, client=client)
    acquired = lock.acquire(holder)
    try:
        yield acquired
    finally:
        if acquired:
            lock.release()
