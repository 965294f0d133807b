"""Anti-fraud rate limiter guarding trial consumption."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

import redis

from core.env import env_int, env_str
from core.logging import get_logger
from services.trial_types import TrialLedger, utcnow

logger = get_logger(__name__)

_SCOPE = "trial_consume"
_WINDOW_SECONDS = 3600


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    remaining: Optional[int]
    reset_at: Optional[datetime]
    retry_after: int = 0
    backend_error: bool = False


class TrialRateLimiter:
    """Caps consumption attempts per ``(fingerprint, ip)`` within a rolling hour.

    With a Redis URL configured the counter lives in Redis (INCRBY + TTL). Without
    one, or when Redis errors, the ledger's own action log over the last hour is
    counted instead.
    """

    def __init__(
        self,
        *,
        limit: int,
        window_seconds: int = _WINDOW_SECONDS,
        redis_url: Optional[str] = None,
        key_prefix: str = "trial",
        client: Optional["redis.Redis"] = None,
    ) -> None:
        self.limit = limit
        self.window_seconds = window_seconds
        self._redis_url = redis_url
        self._key_prefix = key_prefix
        self._client = client
        self._client_error_logged = False

    @classmethod
    def from_env(cls, *, limit: int) -> "TrialRateLimiter":
        return cls(
            limit=limit,
            window_seconds=env_int("TRIAL_RATE_LIMIT_WINDOW_SECONDS", _WINDOW_SECONDS, minimum=60),
            redis_url=env_str("TRIAL_RATE_LIMIT_REDIS_URL"),
            key_prefix=env_str("TRIAL_RATE_LIMIT_PREFIX") or "trial",
        )

    @property
    def uses_redis(self) -> bool:
        return self._client is not None or bool(self._redis_url)

    def _get_client(self) -> Optional["redis.Redis"]:
        if self._client is not None:
            return self._client
        if not self._redis_url:
            return None
        try:
            self._client = redis.Redis.from_url(self._redis_url, decode_responses=False)
        except (redis.RedisError, ValueError) as exc:
            if not self._client_error_logged:
                logger.warning("Trial rate limiter Redis init failed: %s", exc)
                self._client_error_logged = True
            self._client = None
        return self._client

    def key_for(self, fingerprint: str, ip_address: Optional[str]) -> str:
        return f"{self._key_prefix}:{_SCOPE}:{fingerprint}:{ip_address or 'unknown'}"

    def check(
        self,
        fingerprint: str,
        ip_address: Optional[str],
        *,
        ledger: Optional[TrialLedger] = None,
        now: Optional[datetime] = None,
    ) -> RateLimitResult:
        if self.limit <= 0:
            return RateLimitResult(allowed=True, remaining=None, reset_at=None)

        moment = now or utcnow()
        client = self._get_client()
        if client is not None:
            key = self.key_for(fingerprint, ip_address)
            try:
                pipeline = client.pipeline()
                pipeline.incrby(key, 1)
                pipeline.ttl(key)
                count, ttl = pipeline.execute()
                if ttl is None or ttl < 0:
                    client.expire(key, self.window_seconds)
                    ttl = self.window_seconds
                allowed = int(count) <= self.limit
                remaining = max(self.limit - int(count), 0)
                ttl_seconds = max(int(ttl), 0)
                return RateLimitResult(
                    allowed=allowed,
                    remaining=remaining,
                    reset_at=moment + timedelta(seconds=ttl_seconds),
                    retry_after=0 if allowed else max(ttl_seconds, 1),
                )
            except redis.RedisError as exc:
                logger.warning("Trial rate limiter failed for %s:%s - %s", fingerprint, ip_address, exc)
                result = self._check_ledger_window(ledger, moment)
                return RateLimitResult(
                    allowed=result.allowed,
                    remaining=result.remaining,
                    reset_at=result.reset_at,
                    retry_after=result.retry_after,
                    backend_error=True,
                )
        return self._check_ledger_window(ledger, moment)

    def _check_ledger_window(self, ledger: Optional[TrialLedger], now: datetime) -> RateLimitResult:
        if ledger is None:
            return RateLimitResult(allowed=True, remaining=self.limit, reset_at=None)
        window_start = now - timedelta(seconds=self.window_seconds)
        recent = sorted(action.timestamp for action in ledger.actions if action.timestamp > window_start)
        count = len(recent)
        allowed = count < self.limit
        remaining = max(self.limit - count, 0)
        reset_at = recent[0] + timedelta(seconds=self.window_seconds) if recent else None
        retry_after = 0
        if not allowed and reset_at is not None:
            retry_after = max(int((reset_at - now).total_seconds()), 1)
        return RateLimitResult(allowed=allowed, remaining=remaining, reset_at=reset_at, retry_after=retry_after)


__all__ = ["RateLimitResult", "TrialRateLimiter"]
