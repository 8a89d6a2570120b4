"""In-process stores for tests and single-process development.

Every operation runs to completion under one lock without awaiting, so
``increment_attempt`` and ``insert_registration`` are atomic with respect to
concurrent coroutines in the same process.
"""

from __future__ import annotations

import itertools
import uuid
from copy import deepcopy
from dataclasses import replace
from datetime import datetime, timezone
from threading import Lock
from typing import Dict, List, Optional, Sequence, Tuple

from jengahacks.abuse.config import Dimension
from jengahacks.abuse.identifiers import Identifier
from jengahacks.abuse.models import (
    AlertType,
    BlockEntry,
    Severity,
    ViolationAlert,
    ViolationPattern,
    ViolationRecord,
)
from jengahacks.registration.models import Registration, RegistrationStatus, RegistrationUpdate

from .base import AbuseStore, AccessTokenConflict, DuplicateEmailConflict, RegistrationStore

_CounterKey = Tuple[str, Dimension, datetime]
_BlockKey = Tuple[str, Dimension]


class MemoryAbuseStore(AbuseStore):
    def __init__(self) -> None:
        self._lock = Lock()
        self._ids = itertools.count(1)
        # {(identifier, dimension, window_start): (count, window_end)}
        self._counters: Dict[_CounterKey, Tuple[int, datetime]] = {}
        # Block history per key, newest last; at most one active entry
        self._blocks: Dict[_BlockKey, List[BlockEntry]] = {}
        self._violations: List[ViolationRecord] = []
        self._violation_keys: set[Tuple[str, Dimension]] = set()
        self._alerts: List[ViolationAlert] = []
        self._patterns: List[ViolationPattern] = []

    # Rate-limit counters

    async def increment_attempt(self, identifier: Identifier, window_start: datetime, window_end: datetime) -> int:
        key = (identifier.value, identifier.dimension, window_start)
        with self._lock:
            count, _ = self._counters.get(key, (0, window_end))
            count += 1
            self._counters[key] = (count, window_end)
            self._prune_counters(window_start)
            return count

    async def get_attempts(self, identifier: Identifier, window_start: datetime) -> int:
        with self._lock:
            count, _ = self._counters.get((identifier.value, identifier.dimension, window_start), (0, window_start))
            return count

    async def prune_counters(self, now: Optional[datetime] = None) -> int:
        with self._lock:
            return self._prune_counters(now or datetime.now(timezone.utc))

    def _prune_counters(self, now: datetime) -> int:
        expired = [k for k, (_, end) in self._counters.items() if end <= now]
        for k in expired:
            del self._counters[k]
        return len(expired)

    # Block registry

    def _active(self, key: _BlockKey) -> Optional[BlockEntry]:
        for entry in reversed(self._blocks.get(key, [])):
            if entry.is_active:
                return entry
        return None

    async def get_active_block(self, identifier: Identifier, now: datetime) -> Optional[BlockEntry]:
        with self._lock:
            entry = self._active((identifier.value, identifier.dimension))
            if entry is not None and entry.is_effective(now):
                return deepcopy(entry)
            return None

    async def get_latest_block(self, identifier: Identifier) -> Optional[BlockEntry]:
        with self._lock:
            history = self._blocks.get((identifier.value, identifier.dimension))
            return deepcopy(history[-1]) if history else None

    async def upsert_block(self, entry: BlockEntry) -> Tuple[BlockEntry, bool]:
        key = (entry.identifier, Dimension(entry.dimension))
        with self._lock:
            current = self._active(key)
            if current is not None and not current.is_effective(entry.blocked_at):
                # Expired; re-blocking starts a new entry
                current.is_active = False
                current = None
            if current is not None:
                current.reason = entry.reason
                current.blocked_by = entry.blocked_by
                current.expires_at = entry.expires_at
                current.violation_count = max(current.violation_count, entry.violation_count)
                return deepcopy(current), False
            stored = replace(entry, id=next(self._ids), is_active=True)
            self._blocks.setdefault(key, []).append(stored)
            return deepcopy(stored), True

    async def deactivate_block(self, identifier: Identifier, unblocked_by: str, now: datetime) -> bool:
        with self._lock:
            current = self._active((identifier.value, identifier.dimension))
            if current is None:
                return False
            current.is_active = False
            current.unblocked_at = now
            current.unblocked_by = unblocked_by
            return True

    async def list_blocks(self, *, active_only: bool = True, now: Optional[datetime] = None) -> List[BlockEntry]:
        now = now or datetime.now(timezone.utc)
        with self._lock:
            entries = [e for history in self._blocks.values() for e in history]
        if active_only:
            entries = [e for e in entries if e.is_effective(now)]
        return [deepcopy(e) for e in sorted(entries, key=lambda e: e.blocked_at, reverse=True)]

    # Violation log

    async def append_violation(self, record: ViolationRecord) -> bool:
        with self._lock:
            if record.request_id:
                dedupe = (record.request_id, Dimension(record.dimension))
                if dedupe in self._violation_keys:
                    return False
                self._violation_keys.add(dedupe)
            self._violations.append(replace(record, id=next(self._ids)))
            return True

    async def list_violations(
        self,
        *,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        dimension: Optional[Dimension] = None,
        identifier: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[ViolationRecord]:
        with self._lock:
            rows = list(self._violations)
        if since is not None:
            rows = [r for r in rows if r.created_at >= since]
        if until is not None:
            rows = [r for r in rows if r.created_at <= until]
        if dimension is not None:
            rows = [r for r in rows if r.dimension == Dimension(dimension)]
        if identifier is not None:
            rows = [r for r in rows if r.identifier == identifier]
        rows.sort(key=lambda r: r.created_at)
        if limit is not None:
            rows = rows[:limit]
        return rows

    # Alerts

    async def add_alert(self, alert: ViolationAlert) -> ViolationAlert:
        with self._lock:
            stored = replace(alert, id=next(self._ids))
            self._alerts.append(stored)
            return deepcopy(stored)

    async def find_open_alert(
        self,
        alert_type: AlertType,
        identifier: str,
        dimension: Optional[Dimension],
    ) -> Optional[ViolationAlert]:
        with self._lock:
            for alert in reversed(self._alerts):
                if (
                    not alert.is_resolved
                    and alert.alert_type == alert_type
                    and alert.identifier == identifier
                    and alert.dimension == dimension
                ):
                    return deepcopy(alert)
        return None

    async def list_alerts(
        self,
        *,
        resolved: Optional[bool] = None,
        severity: Optional[Severity] = None,
        limit: int = 50,
    ) -> List[ViolationAlert]:
        with self._lock:
            rows = list(self._alerts)
        if resolved is not None:
            rows = [a for a in rows if a.is_resolved == resolved]
        if severity is not None:
            rows = [a for a in rows if a.severity == Severity(severity)]
        rows.sort(key=lambda a: (a.created_at, a.id or 0), reverse=True)
        return [deepcopy(a) for a in rows[:limit]]

    async def resolve_alert(self, alert_id: int, resolved_by: str, now: datetime) -> bool:
        with self._lock:
            for alert in self._alerts:
                if alert.id == alert_id and not alert.is_resolved:
                    alert.is_resolved = True
                    alert.resolved_at = now
                    alert.resolved_by = resolved_by
                    return True
        return False

    # Patterns

    async def save_patterns(self, patterns: Sequence[ViolationPattern]) -> List[ViolationPattern]:
        with self._lock:
            stored = [replace(p, id=next(self._ids)) for p in patterns]
            self._patterns.extend(stored)
            return [deepcopy(p) for p in stored]

    async def list_patterns(self, *, since: datetime, min_confidence: float = 0.0) -> List[ViolationPattern]:
        with self._lock:
            rows = [p for p in self._patterns if p.detected_at >= since and p.confidence_score >= min_confidence]
        rows.sort(key=lambda p: (p.confidence_score, p.detected_at), reverse=True)
        return [deepcopy(p) for p in rows]


class MemoryRegistrationStore(RegistrationStore):
    def __init__(self) -> None:
        self._lock = Lock()
        self._rows: List[Registration] = []

    async def insert_registration(self, registration: Registration) -> Registration:
        with self._lock:
            if any(r.email == registration.email for r in self._rows):
                raise DuplicateEmailConflict(registration.email)
            if any(r.access_token == registration.access_token for r in self._rows):
                raise AccessTokenConflict("access_token")
            stored = replace(
                registration,
                id=registration.id or str(uuid.uuid4()),
                created_at=registration.created_at or datetime.now(timezone.utc),
                status=RegistrationStatus.ACTIVE,
            )
            self._rows.append(stored)
            return deepcopy(stored)

    async def count_active(self, *, include_waitlist: bool = False) -> int:
        with self._lock:
            return sum(
                1
                for r in self._rows
                if r.status == RegistrationStatus.ACTIVE and (include_waitlist or not r.is_waitlist)
            )

    async def waitlist_position(self, email: str) -> Optional[int]:
        with self._lock:
            waitlisted = [r for r in self._rows if r.is_waitlist and r.status == RegistrationStatus.ACTIVE]
        waitlisted.sort(key=lambda r: r.created_at)
        for position, row in enumerate(waitlisted, start=1):
            if row.email == email:
                return position
        return None

    def _find_active(self, access_token: str) -> Optional[Registration]:
        for row in self._rows:
            if row.access_token == access_token and row.status == RegistrationStatus.ACTIVE:
                return row
        return None

    async def get_by_token(self, access_token: str) -> Optional[Registration]:
        with self._lock:
            row = self._find_active(access_token)
            return deepcopy(row) if row else None

    async def update_by_token(self, access_token: str, update: RegistrationUpdate) -> Optional[Registration]:
        with self._lock:
            row = self._find_active(access_token)
            if row is None:
                return None
            for name, value in update.changes().items():
                setattr(row, name, value)
            return deepcopy(row)

    async def cancel_by_token(self, access_token: str, now: datetime) -> bool:
        with self._lock:
            row = self._find_active(access_token)
            if row is None:
                return False
            row.status = RegistrationStatus.CANCELLED
            return True


__all__ = ["MemoryAbuseStore", "MemoryRegistrationStore"]
