"""Heuristic pattern detection over the violation log.

Patterns are advisory output for human review. Detection persists what it
finds and may raise a ``suspicious_pattern`` alert, but never blocks.

Detected pattern types:
- distributed: one IP address behind many distinct emails in a short window
- shared_client: one client fingerprint behind many distinct emails
- burst: one identifier violating many times in a short window

Confidence is the product of a count factor (distinct identifiers, or burst
size, over ``saturation``, clipped to [0, 1]) and the mean recency weight of
the contributing violations, which halves every quarter of the lookback.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np

from jengahacks.store.base import AbuseStore

from .alerts import ViolationAlerts
from .config import AbuseConfig, Dimension
from .identifiers import UNKNOWN_IP, mask_identifier
from .models import AlertType, PatternType, Severity, ViolationPattern, ViolationRecord
from .ratelimit import Clock, utcnow

logger = logging.getLogger(__name__)


@dataclass
class _Window:
    records: List[ViolationRecord]
    members: List[str]


def _email_of(record: ViolationRecord) -> Optional[str]:
    if record.email:
        return record.email
    if record.dimension == Dimension.EMAIL:
        return record.identifier
    return None


def _densest_window(
    records: Sequence[ViolationRecord],
    window: timedelta,
    member: Callable[[ViolationRecord], Optional[str]],
) -> Optional[_Window]:
    """The window of length ``window`` holding the most distinct members.

    Ties go to the most recent window.
    """
    if not records:
        return None
    ordered = sorted(records, key=lambda r: r.created_at)
    ts = np.array([r.created_at.timestamp() for r in ordered], dtype=float)
    ends = np.searchsorted(ts, ts + window.total_seconds(), side="right")

    best: Optional[_Window] = None
    for start, end in enumerate(ends):
        chunk = ordered[start:int(end)]
        members = list(dict.fromkeys(m for m in (member(r) for r in chunk) if m))
        if best is None or len(members) >= len(best.members):
            best = _Window(records=chunk, members=members)
    return best


class PatternDetector:
    def __init__(
        self,
        store: AbuseStore,
        config: Optional[AbuseConfig] = None,
        *,
        alerts: Optional[ViolationAlerts] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self.store = store
        self.config = config or AbuseConfig()
        self._clock = clock or utcnow
        self.alerts = alerts or ViolationAlerts(store, self.config, clock=self._clock)

    def _confidence(self, count: int, records: Iterable[ViolationRecord], now: datetime, lookback: timedelta) -> float:
        cfg = self.config.patterns
        ages = np.array([max(0.0, (now - r.created_at).total_seconds()) for r in records], dtype=float)
        if ages.size == 0:
            return 0.0
        half_life = max(lookback.total_seconds() / 4.0, 1.0)
        recency = float(np.mean(np.power(0.5, ages / half_life)))
        count_factor = float(np.clip(count / max(cfg.saturation, 1), 0.0, 1.0))
        return round(count_factor * recency, 4)

    def _correlated(
        self,
        rows: Sequence[ViolationRecord],
        pattern_type: PatternType,
        anchor_of: Callable[[ViolationRecord], Optional[str]],
        label: str,
        now: datetime,
        lookback: timedelta,
    ) -> List[ViolationPattern]:
        cfg = self.config.patterns
        window = timedelta(minutes=cfg.correlation_window_minutes)
        groups: Dict[str, List[ViolationRecord]] = defaultdict(list)
        for r in rows:
            anchor = anchor_of(r)
            if anchor:
                groups[anchor].append(r)

        found: List[ViolationPattern] = []
        for anchor, records in groups.items():
            best = _densest_window(records, window, _email_of)
            if best is None or len(best.members) < cfg.min_distinct_identifiers:
                continue
            found.append(
                ViolationPattern(
                    pattern_type=pattern_type,
                    description=(
                        f"{len(best.members)} distinct emails from {label} {anchor} "
                        f"within {cfg.correlation_window_minutes} minutes"
                    ),
                    identifiers=best.members,
                    violation_count=len(best.records),
                    confidence_score=self._confidence(len(best.members), best.records, now, lookback),
                    detected_at=now,
                    anchor=anchor,
                )
            )
        return found

    def _bursts(
        self,
        rows: Sequence[ViolationRecord],
        skip: set[str],
        now: datetime,
        lookback: timedelta,
    ) -> List[ViolationPattern]:
        cfg = self.config.patterns
        window = timedelta(minutes=cfg.correlation_window_minutes)
        groups: Dict[Tuple[str, Dimension], List[ViolationRecord]] = defaultdict(list)
        for r in rows:
            groups[(r.identifier, Dimension(r.dimension))].append(r)

        found: List[ViolationPattern] = []
        for (identifier, dimension), records in groups.items():
            # Already explained by a correlated pattern anchored on it
            if identifier in skip:
                continue
            # Count records, not members: every record is its own member
            best = _densest_window(records, window, lambda r: str(id(r)))
            if best is None or len(best.records) < cfg.burst_threshold:
                continue
            found.append(
                ViolationPattern(
                    pattern_type=PatternType.BURST,
                    description=(
                        f"{len(best.records)} violations from {dimension.value} "
                        f"{mask_identifier(identifier, dimension)} within {cfg.correlation_window_minutes} minutes"
                    ),
                    identifiers=[identifier],
                    violation_count=len(best.records),
                    confidence_score=self._confidence(len(best.records), best.records, now, lookback),
                    detected_at=now,
                    anchor=identifier,
                )
            )
        return found

    async def detect_patterns(
        self,
        lookback_hours: Optional[int] = None,
        min_confidence: Optional[float] = None,
        *,
        persist: bool = True,
    ) -> List[ViolationPattern]:
        """Scan the lookback window and return patterns at or above ``min_confidence``."""
        cfg = self.config.patterns
        lookback = timedelta(hours=lookback_hours or cfg.lookback_hours)
        threshold = cfg.min_confidence if min_confidence is None else min_confidence
        now = self._clock()

        rows = await self.store.list_violations(since=now - lookback, until=now)

        def ip_anchor(r: ViolationRecord) -> Optional[str]:
            ip = r.ip_address or (r.identifier if r.dimension == Dimension.IP else None)
            return ip if ip and ip != UNKNOWN_IP else None

        def client_anchor(r: ViolationRecord) -> Optional[str]:
            return r.client_fingerprint or (r.identifier if r.dimension == Dimension.CLIENT else None)

        patterns = self._correlated(rows, PatternType.DISTRIBUTED, ip_anchor, "IP", now, lookback)
        patterns += self._correlated(rows, PatternType.SHARED_CLIENT, client_anchor, "client", now, lookback)
        anchors = {p.anchor for p in patterns if p.anchor}
        patterns += self._bursts(rows, anchors, now, lookback)

        patterns = [p for p in patterns if p.confidence_score > 0 and p.confidence_score >= threshold]
        patterns.sort(key=lambda p: p.confidence_score, reverse=True)

        logger.info(
            {
                "pattern_detector": "scan_complete",
                "violations": len(rows),
                "patterns": len(patterns),
                "lookback_hours": lookback.total_seconds() / 3600,
            }
        )

        if persist and patterns:
            patterns = await self.store.save_patterns(patterns)
            for p in patterns:
                if p.confidence_score >= cfg.alert_confidence:
                    await self.alerts.raise_alert(
                        AlertType.SUSPICIOUS_PATTERN,
                        Severity.HIGH if p.pattern_type != PatternType.BURST else Severity.MEDIUM,
                        p.anchor or ",".join(p.identifiers),
                        None,
                        p.violation_count,
                        p.description,
                        {"pattern_type": p.pattern_type.value, "confidence_score": p.confidence_score},
                    )
        return patterns

    async def get_violation_patterns(
        self,
        hours: int = 24,
        min_confidence: float = 0.5,
    ) -> List[ViolationPattern]:
        """Previously detected patterns, highest confidence first."""
        return await self.store.list_patterns(since=self._clock() - timedelta(hours=hours), min_confidence=min_confidence)


__all__ = ["PatternDetector"]
