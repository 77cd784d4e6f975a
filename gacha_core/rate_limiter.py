"""Rate limiting utilities for protecting sensitive endpoints."""

from __future__ import annotations

import asyncio
import math
import time
from collections import deque
from dataclasses import dataclass
from typing import Literal, Mapping

from .config import RateLimitRule
from .constants import (
    RATE_LIMIT_ALERT_COOLDOWN_SECONDS,
    RATE_LIMIT_ALERT_THRESHOLD,
    RATE_LIMIT_ALERT_WINDOW_SECONDS,
    RATE_LIMIT_SWEEP_INTERVAL_SECONDS,
)
from .logger import get_logger
from .utils.errors import RateLimitedError

logger = get_logger()

RateLimitScope = Literal["user", "ip", "global"]


@dataclass(frozen=True)
class RateLimitSettings:
    """Normalized settings applied to a rate limited endpoint."""

    key: str
    cooldown: int
    max_uses: int
    scope: RateLimitScope


class RateLimitBucket:
    """Tracks endpoint usage for a specific entity (user/ip/global)."""

    __slots__ = ("cooldown", "max_uses", "timestamps", "lock")

    def __init__(self, cooldown: int, max_uses: int) -> None:
        self.cooldown = cooldown
        self.max_uses = max_uses
        self.timestamps: deque[float] = deque()
        self.lock = asyncio.Lock()

    def _prune(self, now: float) -> None:
        cooldown = self.cooldown
        timestamps = self.timestamps
        while timestamps and (now - timestamps[0]) >= cooldown:
            timestamps.popleft()

    def is_idle(self, now: float) -> bool:
        self._prune(now)
        return not self.timestamps and not self.lock.locked()

    async def acquire(self) -> tuple[bool, int, int]:
        """
        Attempt to consume a rate limit token.

        Returns:
            allowed: Whether execution may continue
            retry_after: Seconds before the next available token (0 if allowed)
            remaining_uses: Remaining uses within the current window
        """
        async with self.lock:
            now = time.monotonic()
            self._prune(now)

            if len(self.timestamps) >= self.max_uses:
                oldest = self.timestamps[0]
                retry_after = math.ceil(self.cooldown - (now - oldest))
                return False, max(retry_after, 1), 0

            self.timestamps.append(now)
            remaining = max(0, self.max_uses - len(self.timestamps))
            return True, 0, remaining


class RateLimiter:
    """In-memory rate limiter shared across request handlers."""

    def __init__(self) -> None:
        self._buckets: dict[str, RateLimitBucket] = {}
        self._violation_history: dict[tuple[str, str], deque[float]] = {}
        self._violation_lock = asyncio.Lock()
        self.alert_threshold = RATE_LIMIT_ALERT_THRESHOLD
        self.alert_window = RATE_LIMIT_ALERT_WINDOW_SECONDS
        self.alert_cooldown = RATE_LIMIT_ALERT_COOLDOWN_SECONDS
        self._last_alert: dict[tuple[str, str], float] = {}
        self.sweep_interval = RATE_LIMIT_SWEEP_INTERVAL_SECONDS
        self._last_sweep = time.monotonic()

    def _bucket_key(self, endpoint_key: str, scope: RateLimitScope, identifier: str) -> str:
        return f"{endpoint_key}:{scope}:{identifier}"

    def _get_bucket(self, key: str, cooldown: int, max_uses: int) -> RateLimitBucket:
        bucket = self._buckets.get(key)
        if bucket is None or bucket.cooldown != cooldown or bucket.max_uses != max_uses:
            bucket = RateLimitBucket(cooldown, max_uses)
            self._buckets[key] = bucket
        return bucket

    async def try_acquire(
        self,
        endpoint_key: str,
        scope: RateLimitScope,
        identifier: str,
        cooldown: int,
        max_uses: int,
    ) -> tuple[bool, int, int]:
        """Attempt to use a rate limited operation."""
        now = time.monotonic()
        if now - self._last_sweep >= self.sweep_interval:
            self.prune_idle(now)

        bucket_key = self._bucket_key(endpoint_key, scope, identifier)
        bucket = self._get_bucket(bucket_key, cooldown, max_uses)
        return await bucket.acquire()

    def prune_idle(self, now: float | None = None) -> int:
        """
        Drop buckets with no uses left in their window, and violation
        records older than the alert window or cooldown.

        Returns the number of buckets removed.
        """
        now = time.monotonic() if now is None else now
        self._last_sweep = now

        idle = [key for key, bucket in self._buckets.items() if bucket.is_idle(now)]
        for key in idle:
            del self._buckets[key]

        stale = [
            key
            for key, history in self._violation_history.items()
            if not history or now - history[-1] > self.alert_window
        ]
        for key in stale:
            del self._violation_history[key]

        expired = [key for key, alerted_at in self._last_alert.items() if now - alerted_at > self.alert_cooldown]
        for key in expired:
            del self._last_alert[key]

        if idle or stale:
            logger.debug(f"Pruned {len(idle)} idle rate limit buckets and {len(stale)} violation records")
        return len(idle)

    async def record_violation(self, identifier: str, endpoint_key: str) -> tuple[int, bool]:
        """
        Record a violation and determine if it should trigger an alert.

        Returns:
            (violation_count, alert)
        """
        key = (identifier, endpoint_key)
        now = time.monotonic()
        async with self._violation_lock:
            history = self._violation_history.setdefault(key, deque())
            history.append(now)
            while history and (now - history[0]) > self.alert_window:
                history.popleft()

            alert = (
                len(history) >= self.alert_threshold
                and (key not in self._last_alert or (now - self._last_alert[key]) > self.alert_cooldown)
            )
            if alert:
                self._last_alert[key] = now
            return len(history), alert


def _normalize_scope(scope: str) -> RateLimitScope:
    value = str(scope).lower()
    if value not in {"user", "ip", "global"}:
        return "user"
    return value  # type: ignore[return-value]


def resolve_settings(
    rules: Mapping[str, RateLimitRule] | None,
    key: str,
    *,
    default_cooldown: int,
    default_max_uses: int,
    default_scope: RateLimitScope = "user",
) -> RateLimitSettings:
    """Configured rule for ``key`` if present, otherwise the defaults."""
    if rules and key in rules:
        rule = rules[key]
        return RateLimitSettings(
            key=key,
            cooldown=int(rule.cooldown),
            max_uses=int(rule.max_uses),
            scope=_normalize_scope(rule.per),
        )
    return RateLimitSettings(
        key=key,
        cooldown=int(default_cooldown),
        max_uses=int(default_max_uses),
        scope=default_scope,
    )


async def enforce_rate_limit(
    limiter: RateLimiter,
    settings: RateLimitSettings,
    *,
    user_id: str | None,
    client_ip: str,
) -> int:
    """
    Consume a token for the caller or raise ``RateLimitedError``.

    Returns the remaining uses in the current window.
    """
    if settings.scope == "global":
        identifier = "*"
    elif settings.scope == "ip" or not user_id:
        identifier = client_ip
    else:
        identifier = user_id

    allowed, retry_after, remaining = await limiter.try_acquire(
        endpoint_key=settings.key,
        scope=settings.scope,
        identifier=identifier,
        cooldown=settings.cooldown,
        max_uses=settings.max_uses,
    )
    if allowed:
        return remaining

    logger.warning(
        "Rate limit triggered | endpoint=%s user=%s scope=%s id=%s",
        settings.key,
        user_id,
        settings.scope,
        identifier,
    )
    violation_count, alert = await limiter.record_violation(identifier, settings.key)
    if alert:
        logger.error(
            "Repeated rate limit violations | endpoint=%s id=%s violations=%s limit=%s per %ss",
            settings.key,
            identifier,
            violation_count,
            settings.max_uses,
            settings.cooldown,
        )
    raise RateLimitedError(retry_after)
