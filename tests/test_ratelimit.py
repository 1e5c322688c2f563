import pytest
import redis

from orderflow.common.errors import RateLimitedError
from orderflow.common.ratelimit import TokenBucket


class DictRedis:
    """Just enough of the redis client surface for the token bucket."""

    def __init__(self):
        self.hashes = {}

    def hmget(self, name, *keys):
        stored = self.hashes.get(name, {})
        return [stored.get(k) for k in keys]

    def hset(self, name, mapping):
        self.hashes.setdefault(name, {}).update({k: str(v) for k, v in mapping.items()})

    def expire(self, name, seconds):
        return True


class DownRedis(DictRedis):
    def hmget(self, name, *keys):
        raise redis.ConnectionError("connection refused")


def test_bucket_allows_up_to_capacity_then_rejects():
    bucket = TokenBucket(DictRedis(), limit_per_minute=3)

    for _ in range(3):
        bucket.take("10.0.0.1")
    with pytest.raises(RateLimitedError) as exc:
        bucket.take("10.0.0.1")

    assert exc.value.status_code == 429
    assert exc.value.to_dict()["retry_after_seconds"] == 60


def test_buckets_are_per_key():
    bucket = TokenBucket(DictRedis(), limit_per_minute=1)

    bucket.take("10.0.0.1")
    bucket.take("10.0.0.2")


def test_zero_limit_disables_throttling():
    bucket = TokenBucket(DownRedis(), limit_per_minute=0)

    for _ in range(10):
        bucket.take("10.0.0.1")


def test_store_outage_fails_open():
    bucket = TokenBucket(DownRedis(), limit_per_minute=1)

    bucket.take("10.0.0.1")
    bucket.take("10.0.0.1")
