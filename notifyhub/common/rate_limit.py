"""Redis token bucket guarding provider sends per (tenant, channel)."""

from time import time

import redis

from notifyhub.common.config import settings
from notifyhub.common.logging import logger


class TokenBucketLimiter:
    """Capacity = refill rate = `per_minute` tokens.

    `acquire` returns 0.0 when a token was taken, otherwise the number of
    seconds until the next token becomes available. Refill and take run as one
    WATCH/MULTI transaction on the bucket key, so workers sharing a bucket can
    never spend the same token twice.
    """

    def __init__(
        self,
        rdb,
        per_minute: int,
        key_ttl_seconds: int = 120,
        clock=time,
        max_conflicts: int = 10,
    ) -> None:
        self.rdb = rdb
        self.capacity = float(per_minute)
        self.refill_per_sec = self.capacity / 60.0
        self.key_ttl_seconds = key_ttl_seconds
        self.clock = clock
        self.max_conflicts = max_conflicts

    @staticmethod
    def bucket_key(tenant_id: str, channel: str) -> str:
        return f"tokenbucket:{tenant_id}:{channel}"

    def _refill(self, values, now: float) -> float:
        tokens = float(values[0]) if values[0] is not None else self.capacity
        updated_at = float(values[1]) if values[1] is not None else now
        elapsed = max(0.0, now - updated_at)
        return min(self.capacity, tokens + elapsed * self.refill_per_sec)

    def acquire(self, tenant_id: str, channel: str) -> float:
        key = self.bucket_key(tenant_id, channel)
        with self.rdb.pipeline() as pipe:
            for _ in range(self.max_conflicts):
                try:
                    pipe.watch(key)
                    now = self.clock()
                    tokens = self._refill(pipe.hmget(key, "tokens", "updated_at"), now)
                    wait = 0.0 if tokens >= 1.0 else (1.0 - tokens) / self.refill_per_sec
                    if wait == 0.0:
                        tokens -= 1.0
                    pipe.multi()
                    pipe.hset(key, mapping={"tokens": tokens, "updated_at": now})
                    pipe.expire(key, self.key_ttl_seconds)
                    pipe.execute()
                    return wait
                except redis.WatchError:
                    continue
        # Heavy contention on one bucket: defer rather than spin.
        logger.warning("rate_limit_contended key=%s conflicts=%s", key, self.max_conflicts)
        return 1.0 / self.refill_per_sec


def build_limiter() -> TokenBucketLimiter:
    rdb = redis.Redis.from_url(settings.redis_url, decode_responses=True)
    return TokenBucketLimiter(rdb, settings.rate_limit_per_minute)
