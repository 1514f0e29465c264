# marketplace/services/lock_service.py
import uuid
from contextlib import contextmanager

import redis

from marketplace.domain.errors import ConcurrencyConflict
from marketplace.utils.retry import redis_retry
from marketplace.utils.settings import REDIS_URL, LOCK_TTL_SECONDS
from marketplace.utils.logging import get_logger

logger = get_logger(__name__)

#LUA porownaj i usun, zwolnic moze tylko wlasciciel klucza
_RELEASE_LUA = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
    return redis.call('DEL', KEYS[1])
else
    return 0
end
"""


class LockService:
    """
    Short-lived cross-process locks:
    - cart-owner:<kind>:<id> around cart creation and merges
    - payment:<reference> around webhook reconciliation
    - cart:<id>:checkout around order conversion
    Row locks in the database still guard the data itself.
    """

    def __init__(self, url: str | None = None, client: redis.Redis | None = None):
        self.redis = client or redis.Redis.from_url(
            url or REDIS_URL,
            decode_responses=True,
        )

    @redis_retry()
    def acquire(self, key: str, owner: str, ttl: int = LOCK_TTL_SECONDS) -> bool:
        logger.debug(f"Acquire lock {key} for {owner}")
        # SET key owner NX EX ttl
        return bool(self.redis.set(name=key, value=owner, nx=True, ex=ttl))

    @redis_retry()
    def release(self, key: str, owner: str) -> bool:
        logger.debug(f"Release lock {key} for {owner}")
        res = self.redis.eval(_RELEASE_LUA, 1, key, owner)
        return bool(res)

    @contextmanager
    def hold(self, key: str, ttl: int = LOCK_TTL_SECONDS):
        owner = uuid.uuid4().hex
        if not self.acquire(key, owner, ttl):
            raise ConcurrencyConflict(f"Resource {key} is busy, retry shortly", lock=key)
        try:
            yield owner
        finally:
            try:
                self.release(key, owner)
            except redis.RedisError as e:
                # klucz i tak wygasa po ttl
                logger.warning(f"Failed to release lock {key}: {e}", extra={"lock": key})
