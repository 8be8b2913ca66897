"""
Fixed-window rate limiter keyed by (client ip, user-agent), backed by Redis.
Volume control only; the engine stays correct without it.
"""
import logging

import redis
from fastapi import HTTPException, Request, status

from order_gate.core.config import settings
from order_gate.utils.metrics import rate_limited_total

logger = logging.getLogger("ratelimit")

RATE_LIMIT_MESSAGE = "Too many requests, please try again later or contact support"


def get_client_ip(request: Request) -> str:
    """Client IP (supports X-Forwarded-For from trusted proxy)."""
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded and settings.is_production:
        trusted = settings.trusted_proxy_ips_set
        if trusted and request.client and request.client.host in trusted:
            return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "127.0.0.1"


class RateLimiter:
    def __init__(self, scope: str, limit: int, window_seconds: int, client: redis.Redis | None = None) -> None:
        self.scope = scope
        self.limit = limit
        self.window_seconds = window_seconds
        self._client = client

    @property
    def client(self) -> redis.Redis:
        if self._client is None:
            self._client = redis.Redis.from_url(settings.redis_url, decode_responses=True)
        return self._client

    def key(self, client_ip: str, user_agent: str) -> str:
        return f"ratelimit:{self.scope}:{client_ip}:{user_agent}"

    def hit(self, client_ip: str, user_agent: str) -> bool:
        """
        Count one request. Returns True if allowed, False if rate limited.
        Fails open when Redis is unavailable.
        """
        try:
            key = self.key(client_ip, user_agent)
            current = self.client.incr(key)
            if current == 1:
                self.client.expire(key, self.window_seconds)
            if current > self.limit:
                rate_limited_total.labels(scope=self.scope).inc()
                logger.warning(
                    "rate_limited",
                    extra={"ip": client_ip, "count": current, "reason": self.scope},
                )
                return False
            return True
        except redis.RedisError as e:
            logger.warning("rate_limit_redis_error", extra={"error": str(e)})
            return True

    def __call__(self, request: Request) -> None:
        """FastAPI dependency."""
        if not settings.rate_limit_enabled:
            return
        if not self.hit(get_client_ip(request), request.headers.get("user-agent", "")):
            raise HTTPException(status_code=status.HTTP_429_TOO_MANY_REQUESTS, detail=RATE_LIMIT_MESSAGE)


verify_rate_limit = RateLimiter(
    "verify", settings.verify_rate_limit_requests, settings.rate_limit_window_seconds
)
api_rate_limit = RateLimiter(
    "api", settings.api_rate_limit_requests, settings.rate_limit_window_seconds
)
