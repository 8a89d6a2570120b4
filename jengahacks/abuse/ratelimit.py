"""Fixed-window rate limiting keyed by (identifier, dimension, window).

Window state is never held in-process: the window a timestamp falls in is a
pure function of the clock, and attempt counters live in the ``AbuseStore``.
An attempt exactly on a window boundary belongs to the new window.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional, Tuple

from jengahacks.store.base import AbuseStore

from .config import AbuseConfig
from .identifiers import Identifier

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def window_key(now: datetime, window_seconds: int) -> int:
    """Index of the fixed window containing ``now``: floor(now / window)."""
    if window_seconds <= 0:
        raise ValueError("window_seconds must be > 0")
    return math.floor(now.timestamp() / window_seconds)


def window_bounds(now: datetime, window_seconds: int) -> Tuple[datetime, datetime]:
    """Start (inclusive) and end (exclusive) of the window containing ``now``."""
    key = window_key(now, window_seconds)
    start = datetime.fromtimestamp(key * window_seconds, tz=timezone.utc)
    end = datetime.fromtimestamp((key + 1) * window_seconds, tz=timezone.utc)
    return start, end


@dataclass(frozen=True)
class RateLimitDecision:
    """Outcome of a rate check or attempt for one identifier."""

    identifier: Identifier
    allowed: bool
    attempts: int
    limit: int
    window_start: datetime
    window_end: datetime
    retry_after_seconds: int = 0
    # False for informational dimensions: over_limit is reported, never enforced
    gated: bool = True
    over_limit: bool = False

    def as_info(self) -> Dict[str, Any]:
        return {
            "identifier": self.identifier.value,
            "dimension": self.identifier.dimension.value,
            "allowed": self.allowed,
            "attempts": self.attempts,
            "limit": self.limit,
            "retry_after_seconds": self.retry_after_seconds,
            "window_start": self.window_start.isoformat(),
            "window_end": self.window_end.isoformat(),
        }


class RateLimitEvaluator:
    """Evaluates per-dimension limits against the store's window counters."""

    def __init__(
        self,
        store: AbuseStore,
        config: Optional[AbuseConfig] = None,
        *,
        clock: Optional[Clock] = None,
    ) -> None:
        self.store = store
        self.config = config or AbuseConfig()
        self._clock = clock or utcnow

    def now(self) -> datetime:
        return self._clock()

    def _decide(self, identifier: Identifier, attempts: int, over_limit: bool, now: datetime) -> RateLimitDecision:
        policy = self.config.policy(identifier.dimension)
        start, end = window_bounds(now, policy.window_seconds)
        retry_after = max(1, math.ceil((end - now).total_seconds())) if over_limit else 0
        return RateLimitDecision(
            identifier=identifier,
            allowed=not (over_limit and policy.gated),
            attempts=attempts,
            limit=policy.limit,
            window_start=start,
            window_end=end,
            retry_after_seconds=retry_after,
            gated=policy.gated,
            over_limit=over_limit,
        )

    async def check(self, identifier: Identifier, now: Optional[datetime] = None) -> RateLimitDecision:
        """Dry run: would another attempt be allowed? Never increments."""
        now = now or self.now()
        policy = self.config.policy(identifier.dimension)
        start, _ = window_bounds(now, policy.window_seconds)
        attempts = await self.store.get_attempts(identifier, start)
        return self._decide(identifier, attempts, attempts >= policy.limit, now)

    async def attempt(self, identifier: Identifier, now: Optional[datetime] = None) -> RateLimitDecision:
        """Record one attempt and decide it.

        The increment and read are a single store operation, so of L+1
        concurrent attempts exactly L see a count within the limit.
        """
        now = now or self.now()
        policy = self.config.policy(identifier.dimension)
        start, end = window_bounds(now, policy.window_seconds)
        attempts = await self.store.increment_attempt(identifier, start, end)
        decision = self._decide(identifier, attempts, attempts > policy.limit, now)
        if decision.over_limit:
            logger.debug(
                {
                    "rate_limit": "over_limit",
                    "identifier": identifier.masked(),
                    "dimension": identifier.dimension.value,
                    "attempts": attempts,
                    "limit": policy.limit,
                    "gated": policy.gated,
                }
            )
        return decision

    async def rate_limit_info(self, identifier: Identifier, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Admin view of the current window: allowed, attempts, limit, retry_after_seconds."""
        return (await self.check(identifier, now)).as_info()

    async def prune_expired(self, now: Optional[datetime] = None) -> int:
        """Drop counters for windows that have closed. Run from a scheduled job."""
        pruned = await self.store.prune_counters(now or self.now())
        logger.info({"rate_limit": "counters_pruned", "deleted": pruned})
        return pruned


__all__ = [
    "Clock",
    "RateLimitDecision",
    "RateLimitEvaluator",
    "utcnow",
    "window_bounds",
    "window_key",
]
