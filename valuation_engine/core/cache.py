import redis
from cachetools import TTLCache
from .config import Settings, settings


class Cache:
    """
    Short-lived counters for the rate limiter, in Redis when enabled
    so every worker shares them, in process otherwise.
    Comparable responses are not kept here; they live in the query-cache table.
    """
    def __init__(self, conf: Settings = settings):
        self.ttl = conf.RATE_LIMIT_CACHE_TTL_SECONDS
        self.backend = None
        if conf.USE_REDIS:
            self.backend = redis.Redis.from_url(conf.REDIS_URL, decode_responses=True)
        self._local = TTLCache(maxsize=4096, ttl=self.ttl)

    def incr(self, key: str) -> int:
        """Increment a counter, starting its TTL on first use."""
        if self.backend:
            pipe = self.backend.pipeline()
            pipe.incr(key)
            pipe.expire(key, self.ttl, nx=True)
            count, _ = pipe.execute()
            return int(count)
        count = int(self._local.get(key, 0)) + 1
        self._local[key] = count
        return count


cache = Cache()
