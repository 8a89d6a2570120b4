"""Append-only violation logging.

Logging is best-effort: a failed write is reported on the operational log
and swallowed, so it can never fail or retry the registration request.
"""

from __future__ import annotations

import logging
from typing import Optional

from jengahacks.shared.log_colors import LogColors
from jengahacks.store.base import AbuseStore

from .models import RequestMetadata, ViolationRecord
from .ratelimit import Clock, RateLimitDecision, utcnow

logger = logging.getLogger(__name__)


class ViolationLogger:
    def __init__(self, store: AbuseStore, *, clock: Optional[Clock] = None) -> None:
        self.store = store
        self._clock = clock or utcnow

    async def log(
        self,
        decision: RateLimitDecision,
        metadata: Optional[RequestMetadata] = None,
    ) -> Optional[ViolationRecord]:
        """Record a denied (or over-limit) attempt.

        Returns the record, or None when the write failed or was a duplicate
        of one already logged for the same request and dimension.
        """
        meta = metadata or RequestMetadata()
        record = ViolationRecord(
            identifier=decision.identifier.value,
            dimension=decision.identifier.dimension,
            attempt_count=decision.attempts,
            limit_threshold=decision.limit,
            created_at=self._clock(),
            retry_after_seconds=decision.retry_after_seconds,
            user_agent=meta.user_agent,
            request_path=meta.request_path,
            ip_address=meta.ip_address,
            email=meta.email,
            client_fingerprint=meta.client_fingerprint,
            request_id=meta.request_id,
        )
        try:
            inserted = await self.store.append_violation(record)
        except Exception as e:
            logger.warning(
                f"{LogColors.STORE_LABEL} violation_log_failed: "
                f"{decision.identifier.dimension.value}={decision.identifier.masked()}, "
                f"error={type(e).__name__}: {e}"
            )
            return None

        if not inserted:
            logger.debug({"violation_logger": "duplicate", "request_id": meta.request_id})
            return None

        logger.warning(
            f"{LogColors.ABUSE_LABEL} rate_limited: "
            f"{decision.identifier.dimension.value}={decision.identifier.masked()}, "
            f"attempts={decision.attempts}, limit={decision.limit}"
        )
        return record


__all__ = ["ViolationLogger"]
