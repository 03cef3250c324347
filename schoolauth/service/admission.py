from __future__ import annotations

import math
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple

from schoolauth.logging import get_logger
from schoolauth.service.errors import RateLimitError
from schoolauth.storage.redis_cache import RedisCache

logger = get_logger(__name__)


@dataclass(frozen=True)
class RoutePolicy:
    name: str
    limit: int
    window_seconds: int


@dataclass(frozen=True)
class AdmissionDecision:
    allowed: bool
    limit: int
    remaining: int
    retry_after: int


LOGIN = "login"
REGISTER = "register"
PASSWORD_RESET = "password_reset"
RESEND_VERIFICATION = "resend_verification"
REFRESH = "refresh"


class AdmissionController:
    """Per-route, per-client token buckets checked before any business logic.

    Uses Redis when a cache is configured so limits hold across instances;
    otherwise buckets live in this process.
    """

    def __init__(
        self,
        policies: Dict[str, RoutePolicy],
        *,
        cache: Optional[RedisCache] = None,
        clock: Callable[[], float] = time.monotonic,
        max_buckets: int = 10_000,
    ) -> None:
        self.policies = dict(policies)
        self.cache = cache
        self._clock = clock
        self._buckets: Dict[str, Tuple[float, float]] = {}
        self._lock = threading.Lock()
        self.max_buckets = max_buckets
        self._last_sweep = float("-inf")

    @classmethod
    def from_settings(cls, settings, cache: Optional[RedisCache] = None, **kwargs) -> "AdmissionController":
        s = settings
        policies = [
            RoutePolicy(LOGIN, s.login_rate_limit, s.login_rate_window_seconds),
            RoutePolicy(REGISTER, s.register_rate_limit, s.register_rate_window_seconds),
            RoutePolicy(PASSWORD_RESET, s.reset_rate_limit, s.reset_rate_window_seconds),
            RoutePolicy(
                RESEND_VERIFICATION,
                s.resend_verification_rate_limit,
                s.resend_verification_rate_window_seconds,
            ),
            RoutePolicy(REFRESH, s.refresh_rate_limit, s.refresh_rate_window_seconds),
        ]
        return cls({p.name: p for p in policies}, cache=cache, **kwargs)

    def _sweep(self, now: float) -> None:
        """Drop buckets that have refilled completely; caller holds the lock."""
        if now - self._last_sweep < 1.0:
            return
        self._last_sweep = now
        stale = []
        for key, (tokens, last) in self._buckets.items():
            policy = self.policies.get(key.split(":", 1)[0])
            if policy is None:
                stale.append(key)
                continue
            rate = float(policy.limit) / float(policy.window_seconds)
            if tokens + max(0.0, now - last) * rate >= policy.limit:
                stale.append(key)
        for key in stale:
            del self._buckets[key]
        if stale:
            logger.debug("admission_buckets_pruned", pruned=len(stale), remaining=len(self._buckets))

    def _take_local(self, key: str, policy: RoutePolicy) -> Tuple[bool, int, int]:
        now = self._clock()
        refill_rate = float(policy.limit) / float(policy.window_seconds)
        with self._lock:
            if len(self._buckets) >= self.max_buckets:
                self._sweep(now)
            tokens, last = self._buckets.get(key, (float(policy.limit), now))
            tokens = min(float(policy.limit), tokens + max(0.0, now - last) * refill_rate)
            if tokens >= 1.0:
                tokens -= 1.0
                self._buckets[key] = (tokens, now)
                return True, int(tokens), 0
            self._buckets[key] = (tokens, now)
            retry_after = max(
                1, math.ceil((1.0 - tokens) * policy.window_seconds / policy.limit)
            )
            return False, 0, retry_after

    async def check(self, route: str, identity: str) -> AdmissionDecision:
        policy = self.policies.get(route)
        if policy is None or policy.limit <= 0:
            return AdmissionDecision(True, 0, 0, 0)
        key = f"{route}:{identity or 'anonymous'}"
        if self.cache is not None:
            allowed, remaining, retry_after = await self.cache.check_rate_limit(
                key, policy.limit, policy.window_seconds
            )
        else:
            allowed, remaining, retry_after = self._take_local(key, policy)
        return AdmissionDecision(allowed, policy.limit, remaining, retry_after)

    async def admit(self, route: str, identity: str) -> AdmissionDecision:
        """Consume one request or raise ``RateLimitError`` with a retry hint."""
        decision = await self.check(route, identity)
        if not decision.allowed:
            logger.warning(
                "admission_rejected",
                route=route,
                identity=identity,
                retry_after=decision.retry_after,
            )
            raise RateLimitError(retry_after=decision.retry_after, detail={"limit": decision.limit})
        return decision

    def reset(self) -> None:
        with self._lock:
            self._buckets.clear()
