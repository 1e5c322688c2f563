"""Redis token bucket guarding the checkout endpoint."""

from time import time

import redis

from orderflow.common.errors import RateLimitedError
from orderflow.common.logging import logger


class TokenBucket:
    """Capacity = refill rate = `limit_per_minute`, one bucket hash per key."""

    def __init__(self, client: redis.Redis, limit_per_minute: int, prefix: str = "tokenbucket:checkout") -> None:
        self.client = client
        self.limit_per_minute = limit_per_minute
        self.prefix = prefix

    @classmethod
    def from_url(cls, url: str, limit_per_minute: int) -> "TokenBucket":
        return cls(redis.Redis.from_url(url, decode_responses=True), limit_per_minute)

    def take(self, key: str) -> None:
        """Consume one token for `key` or raise `RateLimitedError`.

        Redis outages fail open.
        """

        if self.limit_per_minute <= 0:
            return
        bucket = f"{self.prefix}:{key}"
        now = time()
        capacity = float(self.limit_per_minute)
        refill_per_sec = capacity / 60.0
        try:
            values = self.client.hmget(bucket, "tokens", "updated_at")
            tokens = float(values[0]) if values[0] is not None else capacity
            updated_at = float(values[1]) if values[1] is not None else now
            tokens = min(capacity, tokens + max(0.0, now - updated_at) * refill_per_sec)
            allowed = tokens >= 1.0
            if allowed:
                tokens -= 1.0
            self.client.hset(bucket, mapping={"tokens": tokens, "updated_at": now})
            self.client.expire(bucket, 120)
        except redis.RedisError as exc:
            logger.warning("rate_limit_store_unavailable: %s", exc)
            return
        if not allowed:
            raise RateLimitedError("too many checkout attempts, slow down", retry_after_seconds=60)
