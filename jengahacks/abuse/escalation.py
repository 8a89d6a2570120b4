"""Promotes persistent violators from rate-limited to blocked.

Runs only when explicitly invoked (admin action or a scheduled job), never
on the request path. Only gated dimensions are escalated. Violations that
predate the most recent unblock of an identifier do not count toward a new
block, so an admin unblock is not immediately undone by the next run.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import List, Optional

from jengahacks.shared.log_colors import LogColors
from jengahacks.store.base import AbuseStore

from .alerts import ViolationAlerts, severity_for
from .blocks import BlockRegistry
from .config import AbuseConfig, Dimension
from .identifiers import Identifier
from .models import AlertType, BlockEntry
from .ratelimit import Clock, utcnow

logger = logging.getLogger(__name__)


@dataclass
class EscalatedIdentifier:
    identifier: Identifier
    violation_count: int
    block: BlockEntry

    def to_dict(self) -> dict:
        return {
            "identifier": self.identifier.value,
            "dimension": self.identifier.dimension.value,
            "violation_count": self.violation_count,
            "blocked_by": self.block.blocked_by,
            "reason": self.block.reason,
            "expires_at": self.block.expires_at.isoformat() if self.block.expires_at else None,
        }


class AutoEscalation:
    def __init__(
        self,
        store: AbuseStore,
        config: Optional[AbuseConfig] = None,
        *,
        blocks: Optional[BlockRegistry] = None,
        alerts: Optional[ViolationAlerts] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self.store = store
        self.config = config or AbuseConfig()
        self._clock = clock or utcnow
        self.blocks = blocks or BlockRegistry(store, clock=self._clock)
        self.alerts = alerts or ViolationAlerts(store, self.config, clock=self._clock)

    async def auto_block_persistent_violators(
        self,
        threshold: Optional[int] = None,
        lookback_hours: Optional[int] = None,
    ) -> List[EscalatedIdentifier]:
        """Block every gated identifier with ``threshold`` or more violations.

        Returns only the identifiers newly blocked by this run; a second run
        with no new violations returns an empty list.
        """
        cfg = self.config.escalation
        threshold = threshold or cfg.violation_threshold
        lookback_hours = lookback_hours or cfg.lookback_hours
        now = self._clock()
        since = now - timedelta(hours=lookback_hours)
        gated = set(self.config.gated_dimensions())

        rows = await self.store.list_violations(since=since, until=now)
        grouped: dict[Identifier, list] = {}
        for r in rows:
            if Dimension(r.dimension) in gated:
                grouped.setdefault(r.key, []).append(r)

        escalated: List[EscalatedIdentifier] = []
        for ident, records in grouped.items():
            if len(records) < threshold:
                continue
            if await self.store.get_active_block(ident, now) is not None:
                continue

            latest = await self.store.get_latest_block(ident)
            if latest is not None and latest.unblocked_at is not None:
                records = [r for r in records if r.created_at > latest.unblocked_at]
            count = len(records)
            if count < threshold:
                continue

            entry, created = await self.blocks.block(
                ident,
                cfg.reason,
                cfg.blocked_by,
                ttl_seconds=cfg.block_ttl_seconds,
                violation_count=count,
            )
            if not created:
                continue

            escalated.append(EscalatedIdentifier(identifier=ident, violation_count=count, block=entry))
            await self.alerts.raise_alert(
                AlertType.AUTO_BLOCKED,
                severity_for(count, threshold),
                ident.value,
                ident.dimension,
                count,
                f"Auto-blocked {ident.dimension.value} {ident.masked()} after {count} violations in {lookback_hours}h",
                {"threshold": threshold, "lookback_hours": lookback_hours},
            )

        logger.info(
            f"{LogColors.ADMIN_LABEL} escalation_complete: candidates={len(grouped)}, "
            f"blocked={len(escalated)}, threshold={threshold}, lookback_hours={lookback_hours}"
        )
        return escalated


__all__ = ["AutoEscalation", "EscalatedIdentifier"]
