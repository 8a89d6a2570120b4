"""Violation alerts derived from the violation log.

Alerts are advisory records for the admin view. An unresolved alert of a
given type for an identifier is never duplicated; resolving is manual.
"""

from __future__ import annotations

import logging
from collections import Counter
from datetime import timedelta
from typing import Any, Dict, List, Optional

from jengahacks.shared.log_colors import LogColors
from jengahacks.store.base import AbuseStore

from .config import AbuseConfig, Dimension
from .identifiers import mask_identifier
from .models import AlertType, Severity, ViolationAlert
from .ratelimit import Clock, utcnow

logger = logging.getLogger(__name__)


def severity_for(count: int, threshold: int) -> Severity:
    """Scale severity with how far past the threshold a count is."""
    if count >= threshold * 3:
        return Severity.CRITICAL
    if count >= threshold * 2:
        return Severity.HIGH
    if count >= threshold:
        return Severity.MEDIUM
    return Severity.LOW


class ViolationAlerts:
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

    async def raise_alert(
        self,
        alert_type: AlertType,
        severity: Severity,
        identifier: str,
        dimension: Optional[Dimension],
        violation_count: int,
        message: str,
        context: Optional[Dict[str, Any]] = None,
    ) -> Optional[ViolationAlert]:
        """Create an alert unless an unresolved one of the same type exists."""
        existing = await self.store.find_open_alert(alert_type, identifier, dimension)
        if existing is not None:
            return None
        alert = await self.store.add_alert(
            ViolationAlert(
                alert_type=alert_type,
                severity=severity,
                identifier=identifier,
                dimension=dimension,
                violation_count=violation_count,
                message=message,
                created_at=self._clock(),
                context=dict(context or {}),
            )
        )
        logger.warning(
            f"{LogColors.ABUSE_LABEL} alert_raised: type={alert_type.value}, "
            f"severity={severity.value}, identifier={identifier if dimension is None else mask_identifier(identifier, dimension)}"
        )
        return alert

    async def _threshold_scan(
        self,
        alert_type: AlertType,
        threshold: int,
        window: timedelta,
        describe: str,
    ) -> List[ViolationAlert]:
        now = self._clock()
        rows = await self.store.list_violations(since=now - window, until=now)
        counts = Counter((r.identifier, r.dimension) for r in rows)
        raised: List[ViolationAlert] = []
        for (identifier, dimension), count in counts.most_common():
            if count < threshold:
                break
            alert = await self.raise_alert(
                alert_type,
                severity_for(count, threshold) if alert_type == AlertType.REPEATED_VIOLATOR else Severity.HIGH,
                identifier,
                dimension,
                count,
                f"{count} {describe} for {dimension.value} {mask_identifier(identifier, dimension)}",
                {"threshold": threshold, "window_seconds": int(window.total_seconds())},
            )
            if alert is not None:
                raised.append(alert)
        return raised

    async def check_repeated_violators(
        self,
        threshold: Optional[int] = None,
        window_hours: Optional[int] = None,
    ) -> List[ViolationAlert]:
        cfg = self.config.alerts
        threshold = threshold or cfg.repeated_violator_threshold
        window_hours = window_hours or cfg.repeated_violator_window_hours
        return await self._threshold_scan(
            AlertType.REPEATED_VIOLATOR,
            threshold,
            timedelta(hours=window_hours),
            f"violations in {window_hours}h",
        )

    async def check_high_violation_rate(
        self,
        threshold: Optional[int] = None,
        window_minutes: Optional[int] = None,
    ) -> List[ViolationAlert]:
        cfg = self.config.alerts
        threshold = threshold or cfg.high_rate_threshold
        window_minutes = window_minutes or cfg.high_rate_window_minutes
        return await self._threshold_scan(
            AlertType.HIGH_RATE,
            threshold,
            timedelta(minutes=window_minutes),
            f"violations in {window_minutes} minutes",
        )

    async def list_alerts(
        self,
        *,
        resolved: Optional[bool] = None,
        severity: Optional[Severity] = None,
        limit: int = 50,
    ) -> List[ViolationAlert]:
        return await self.store.list_alerts(resolved=resolved, severity=severity, limit=limit)

    async def resolve_alert(self, alert_id: int, resolved_by: str) -> bool:
        resolved = await self.store.resolve_alert(alert_id, resolved_by, self._clock())
        if resolved:
            logger.info(f"{LogColors.ADMIN_LABEL} alert_resolved: id={alert_id}, by={resolved_by}")
        return resolved


__all__ = ["ViolationAlerts", "severity_for"]
