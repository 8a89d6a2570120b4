"""Aggregate statistics and exports over the violation log (admin only)."""

from __future__ import annotations

import csv
import json
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from io import StringIO
from typing import Any, Dict, List, Optional

from jengahacks.store.base import AbuseStore

from .config import Dimension
from .models import ViolationRecord
from .ratelimit import Clock, utcnow

EXPORT_COLUMNS = [
    ("ID", "id"),
    ("Violation Type", "dimension"),
    ("Identifier", "identifier"),
    ("Attempt Count", "attempt_count"),
    ("Limit Threshold", "limit_threshold"),
    ("Retry After (seconds)", "retry_after_seconds"),
    ("User Agent", "user_agent"),
    ("Request Path", "request_path"),
    ("IP Address", "ip_address"),
    ("Created At", "created_at"),
]

DEFAULT_EXPORT_LIMIT = 10000


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    # Naive bounds from query strings are taken as UTC
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class ViolationReports:
    def __init__(self, store: AbuseStore, *, clock: Optional[Clock] = None) -> None:
        self.store = store
        self._clock = clock or utcnow

    async def violation_stats(self, hours: int = 24) -> List[Dict[str, Any]]:
        """Per-dimension totals: total_count, unique_identifiers, recent_violations (last hour)."""
        now = self._clock()
        rows = await self.store.list_violations(since=now - timedelta(hours=hours), until=now)
        recent_cutoff = now - timedelta(hours=1)

        stats: Dict[Dimension, Dict[str, Any]] = {}
        for r in rows:
            dim = Dimension(r.dimension)
            s = stats.setdefault(dim, {"total": 0, "identifiers": set(), "recent": 0})
            s["total"] += 1
            s["identifiers"].add(r.identifier)
            if r.created_at >= recent_cutoff:
                s["recent"] += 1

        return [
            {
                "violation_type": dim.value,
                "total_count": s["total"],
                "unique_identifiers": len(s["identifiers"]),
                "recent_violations": s["recent"],
            }
            for dim, s in sorted(stats.items(), key=lambda kv: kv[1]["total"], reverse=True)
        ]

    async def top_violators(self, limit: int = 10, hours: int = 24) -> List[Dict[str, Any]]:
        now = self._clock()
        rows = await self.store.list_violations(since=now - timedelta(hours=hours), until=now)
        grouped: Dict[tuple, List[ViolationRecord]] = defaultdict(list)
        for r in rows:
            grouped[(r.identifier, Dimension(r.dimension))].append(r)

        ranked = sorted(
            grouped.items(),
            key=lambda kv: (len(kv[1]), kv[1][-1].created_at),
            reverse=True,
        )
        return [
            {
                "violation_type": dim.value,
                "identifier": identifier,
                "violation_count": len(records),
                "first_violation": records[0].created_at.isoformat(),
                "last_violation": records[-1].created_at.isoformat(),
            }
            for (identifier, dim), records in ranked[:limit]
        ]

    async def _export_rows(
        self,
        start: Optional[datetime],
        end: Optional[datetime],
        dimension: Optional[Dimension],
        limit: int,
    ) -> List[ViolationRecord]:
        start, end = _aware(start), _aware(end)
        rows = await self.store.list_violations(since=start, until=end, dimension=dimension)
        # Newest first, like the admin table
        rows.reverse()
        return rows[:limit]

    async def export_csv(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        dimension: Optional[Dimension] = None,
        limit: int = DEFAULT_EXPORT_LIMIT,
    ) -> str:
        rows = await self._export_rows(start, end, dimension, limit)
        output = StringIO()
        writer = csv.writer(output, quoting=csv.QUOTE_ALL, lineterminator="\n")
        writer.writerow([header for header, _ in EXPORT_COLUMNS])
        for r in rows:
            data = r.to_dict()
            writer.writerow(["" if data.get(field) is None else data[field] for _, field in EXPORT_COLUMNS])
        return output.getvalue()

    async def export_json(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        dimension: Optional[Dimension] = None,
        limit: int = DEFAULT_EXPORT_LIMIT,
    ) -> str:
        rows = await self._export_rows(start, end, dimension, limit)
        return json.dumps([r.to_dict() for r in rows], indent=2)

    async def summary(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        end = _aware(end) or self._clock()
        start = _aware(start) or end - timedelta(days=7)
        rows = await self.store.list_violations(since=start, until=end)

        by_dimension: Dict[str, int] = defaultdict(int)
        by_day: Dict[str, int] = defaultdict(int)
        identifiers = set()
        for r in rows:
            by_dimension[Dimension(r.dimension).value] += 1
            by_day[r.created_at.date().isoformat()] += 1
            identifiers.add((r.identifier, Dimension(r.dimension)))

        blocks = await self.store.list_blocks(active_only=True, now=end)
        return {
            "period": {"start": start.isoformat(), "end": end.isoformat()},
            "total_violations": len(rows),
            "unique_identifiers": len(identifiers),
            "by_dimension": dict(by_dimension),
            "by_day": dict(sorted(by_day.items())),
            "active_blocks": len(blocks),
        }


__all__ = ["EXPORT_COLUMNS", "ViolationReports"]
