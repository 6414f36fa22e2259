import logging
import math
import time
import uuid
from dataclasses import dataclass
from typing import Dict, Optional

import redis.asyncio as redis
from fastapi import Request
from redis.exceptions import RedisError

from .config import API_KEY_WINDOW_SECONDS, INTERNAL_TOKEN_HEADER, RATE_LIMIT_NAMESPACE, Settings
from .credentials import Credential
from .errors import RateLimited, RateLimiterUnavailable
from .security import client_ip, ip_in_networks, parse_networks, peer_ip, tokens_match

logger = logging.getLogger(__name__)

# Sliding window over a Redis sorted set, one member per request scored by its
# timestamp. A single MULTI pipeline prunes members older than the window
# (ZREMRANGEBYSCORE), adds the new request (ZADD), counts the window (ZCARD),
# reads the oldest member to compute the reset time and refreshes the key
# expiry so idle keys get garbage collected. The count comes from Redis
# itself, so concurrent gateways never race on a read-then-write.
#
# A request that ends up over the limit is removed again so that a client
# hammering a closed window does not keep pushing its own reset time out.


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    limit: int
    remaining: int
    reset_at: float
    retry_after: int = 0

    def headers(self) -> Dict[str, str]:
        return {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(int(self.reset_at)),
        }


class RateLimiter:
    def __init__(self, redis_client: redis.Redis, clock=time.time):
        self._redis = redis_client
        self._clock = clock

    async def check(self, key: str, limit: int, window_seconds: int) -> RateLimitDecision:
        now = self._clock()
        redis_key = f"{RATE_LIMIT_NAMESPACE}{key}"
        member = f"{now}-{uuid.uuid4()}"

        pipe = self._redis.pipeline()
        pipe.zremrangebyscore(redis_key, 0, now - window_seconds)
        pipe.zadd(redis_key, {member: now})
        pipe.zcard(redis_key)
        pipe.zrange(redis_key, 0, 0, withscores=True)
        pipe.expire(redis_key, int(window_seconds) + 1)
        results = await pipe.execute()

        current_requests = results[2]
        oldest = results[3]
        oldest_score = float(oldest[0][1]) if oldest else now
        reset_at = oldest_score + window_seconds

        if current_requests > limit:
            await self._redis.zrem(redis_key, member)
            return RateLimitDecision(
                allowed=False,
                limit=limit,
                remaining=0,
                reset_at=reset_at,
                retry_after=max(0, math.ceil(reset_at - now)),
            )

        return RateLimitDecision(
            allowed=True, limit=limit, remaining=limit - current_requests, reset_at=reset_at
        )


class RateLimitGate:
    """
    Decides who is limited, under which key and with which budget, then asks
    the limiter. Returns None when the caller bypasses limiting entirely.
    """

    def __init__(self, limiter: RateLimiter, settings: Settings):
        self._limiter = limiter
        self._settings = settings
        self._allowlist = parse_networks(settings.RATE_LIMIT_ALLOWLIST)

    def is_exempt(self, request: Request) -> bool:
        if ip_in_networks(peer_ip(request), self._allowlist):
            return True
        if tokens_match(request.headers.get(INTERNAL_TOKEN_HEADER), self._settings.INTERNAL_SERVICE_TOKEN):
            return True
        path = request.url.path
        return any(path.startswith(prefix) for prefix in self._settings.RATE_LIMIT_EXEMPT_PATHS)

    def budget(self, request: Request, credential: Optional[Credential]):
        """(limiter key, limit, window seconds) for this caller."""
        if credential is not None and credential.api_key is not None:
            return (
                f"apikey:{credential.api_key.key}",
                credential.api_key.rate_limit_per_hour,
                API_KEY_WINDOW_SECONDS,
            )
        return (
            f"ip:{client_ip(request)}",
            self._settings.RATE_LIMIT_ANONYMOUS_MAX,
            self._settings.RATE_LIMIT_ANONYMOUS_WINDOW_SECONDS,
        )

    async def enforce(self, request: Request, credential: Optional[Credential] = None) -> Optional[RateLimitDecision]:
        if self.is_exempt(request):
            return None

        key, limit, window = self.budget(request, credential)
        try:
            decision = await self._limiter.check(key, limit, window)
        except (RedisError, OSError) as e:
            if self._settings.RATE_LIMIT_FAIL_OPEN:
                logger.error(f"Rate limiter unavailable, allowing request: {e}", exc_info=True)
                return None
            logger.error(f"Rate limiter unavailable, rejecting request: {e}", exc_info=True)
            raise RateLimiterUnavailable(str(e))

        if not decision.allowed:
            logger.warning(
                f"Rate limit exceeded for {key.split(':', 1)[0]} caller {client_ip(request)} on {request.method} {request.url.path}"
            )
            retry_after = decision.retry_after
            raise RateLimited(
                f"Rate limit exceeded, retry in {retry_after} seconds",
                headers={"Retry-After": str(retry_after), **decision.headers()},
            )
        return decision
