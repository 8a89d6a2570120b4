"""Postgres-backed stores over ``DBM``.

Every operation is a single statement, so the atomicity the abuse controls
rely on comes from Postgres itself:
- attempt counting is one INSERT ... ON CONFLICT DO UPDATE ... RETURNING
- the partial unique index on active blocks keeps one active block per key
- violations dedupe on (request_id, dimension) with ON CONFLICT DO NOTHING
- unique email / access token constraints surface as conflict exceptions
"""

from __future__ import annotations

import json
import logging
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Dict, List, Mapping, Optional, Sequence, Tuple

from sqlalchemy import text
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from jengahacks.abuse.config import Dimension
from jengahacks.abuse.identifiers import Identifier
from jengahacks.abuse.models import (
    AlertType,
    BlockEntry,
    PatternType,
    Severity,
    ViolationAlert,
    ViolationPattern,
    ViolationRecord,
)
from jengahacks.database.dbm import DBM
from jengahacks.registration.models import Registration, RegistrationStatus, RegistrationUpdate

from .base import AbuseStore, AccessTokenConflict, DuplicateEmailConflict, RegistrationStore, StoreError

logger = logging.getLogger(__name__)


@asynccontextmanager
async def _store_errors(operation: str) -> AsyncIterator[None]:
    """Translate SQLAlchemy / driver failures into store exceptions."""
    try:
        yield
    except IntegrityError as e:
        detail = str(getattr(e, "orig", e))
        if "uq_registrations_email" in detail:
            raise DuplicateEmailConflict(operation) from e
        if "uq_registrations_access_token" in detail:
            raise AccessTokenConflict(operation) from e
        raise StoreError(f"{operation}: integrity error") from e
    except (SQLAlchemyError, OSError) as e:
        raise StoreError(f"{operation}: {type(e).__name__}") from e


def _json(value: Any) -> Any:
    # asyncpg hands JSON columns back as text when no type is bound
    if isinstance(value, (str, bytes)):
        return json.loads(value)
    return value


# ---------------------------------------------------------------------------
# Rate-limit counters
# ---------------------------------------------------------------------------

_INCREMENT_ATTEMPT = text("""
    INSERT INTO rate_limit_counters (identifier, dimension, window_start, window_end, attempt_count)
    VALUES (:identifier, :dimension, :window_start, :window_end, 1)
    ON CONFLICT (identifier, dimension, window_start) DO UPDATE SET
        attempt_count = rate_limit_counters.attempt_count + 1
    RETURNING attempt_count
""")

_GET_ATTEMPTS = text("""
    SELECT attempt_count
    FROM rate_limit_counters
    WHERE identifier = :identifier AND dimension = :dimension AND window_start = :window_start
""")

_PRUNE_COUNTERS = text("""
    DELETE FROM rate_limit_counters WHERE window_end <= :now
""")

# ---------------------------------------------------------------------------
# Block registry
# ---------------------------------------------------------------------------

_BLOCK_COLUMNS = """
    id, identifier, dimension, reason, blocked_by, violation_count, blocked_at,
    expires_at, is_active, unblocked_at, unblocked_by
"""

_GET_ACTIVE_BLOCK = text(f"""
    SELECT {_BLOCK_COLUMNS}
    FROM blocked_identifiers
    WHERE identifier = :identifier
      AND dimension = :dimension
      AND is_active
      AND (expires_at IS NULL OR expires_at > :now)
    LIMIT 1
""")

_GET_LATEST_BLOCK = text(f"""
    SELECT {_BLOCK_COLUMNS}
    FROM blocked_identifiers
    WHERE identifier = :identifier AND dimension = :dimension
    ORDER BY blocked_at DESC, id DESC
    LIMIT 1
""")

_UPSERT_BLOCK = text(f"""
    INSERT INTO blocked_identifiers
        (identifier, dimension, reason, blocked_by, violation_count, blocked_at, expires_at, is_active)
    VALUES (:identifier, :dimension, :reason, :blocked_by, :violation_count, :blocked_at, :expires_at, true)
    ON CONFLICT (identifier, dimension) WHERE is_active DO UPDATE SET
        reason = EXCLUDED.reason,
        blocked_by = EXCLUDED.blocked_by,
        expires_at = EXCLUDED.expires_at,
        violation_count = GREATEST(blocked_identifiers.violation_count, EXCLUDED.violation_count)
    RETURNING {_BLOCK_COLUMNS}, (xmax = 0) AS was_inserted
""")

# An expired block no longer counts as the active one; re-blocking starts a new entry
_RETIRE_EXPIRED_BLOCK = text("""
    UPDATE blocked_identifiers
    SET is_active = false
    WHERE identifier = :identifier AND dimension = :dimension AND is_active
      AND expires_at IS NOT NULL AND expires_at <= :now
""")

_DEACTIVATE_BLOCK = text("""
    UPDATE blocked_identifiers
    SET is_active = false, unblocked_at = :now, unblocked_by = :unblocked_by
    WHERE identifier = :identifier AND dimension = :dimension AND is_active
""")

_LIST_ACTIVE_BLOCKS = text(f"""
    SELECT {_BLOCK_COLUMNS}
    FROM blocked_identifiers
    WHERE is_active AND (expires_at IS NULL OR expires_at > :now)
    ORDER BY blocked_at DESC
""")

_LIST_ALL_BLOCKS = text(f"""
    SELECT {_BLOCK_COLUMNS}
    FROM blocked_identifiers
    ORDER BY blocked_at DESC
""")

# ---------------------------------------------------------------------------
# Violations, alerts, patterns
# ---------------------------------------------------------------------------

_VIOLATION_COLUMNS = """
    id, request_id, identifier, dimension, attempt_count, limit_threshold, retry_after_seconds,
    user_agent, request_path, ip_address, email, client_fingerprint, created_at
"""

_APPEND_VIOLATION = text("""
    INSERT INTO rate_limit_violations
        (request_id, identifier, dimension, attempt_count, limit_threshold, retry_after_seconds,
         user_agent, request_path, ip_address, email, client_fingerprint, created_at)
    VALUES
        (:request_id, :identifier, :dimension, :attempt_count, :limit_threshold, :retry_after_seconds,
         :user_agent, :request_path, :ip_address, :email, :client_fingerprint, :created_at)
    ON CONFLICT (request_id, dimension) DO NOTHING
    RETURNING id
""")

_ALERT_COLUMNS = """
    id, alert_type, severity, identifier, dimension, violation_count, message, context,
    is_resolved, resolved_at, resolved_by, created_at
"""

_ADD_ALERT = text("""
    INSERT INTO violation_alerts
        (alert_type, severity, identifier, dimension, violation_count, message, context, is_resolved, created_at)
    VALUES
        (:alert_type, :severity, :identifier, :dimension, :violation_count, :message,
         CAST(:context AS JSON), false, :created_at)
    RETURNING id
""")

_FIND_OPEN_ALERT = text(f"""
    SELECT {_ALERT_COLUMNS}
    FROM violation_alerts
    WHERE alert_type = :alert_type
      AND identifier = :identifier
      AND dimension IS NOT DISTINCT FROM :dimension
      AND NOT is_resolved
    ORDER BY created_at DESC
    LIMIT 1
""")

_RESOLVE_ALERT = text("""
    UPDATE violation_alerts
    SET is_resolved = true, resolved_at = :now, resolved_by = :resolved_by
    WHERE id = :alert_id AND NOT is_resolved
""")

_PATTERN_COLUMNS = """
    id, pattern_type, description, anchor, identifiers, violation_count, confidence_score, detected_at
"""

_SAVE_PATTERN = text("""
    INSERT INTO violation_patterns
        (pattern_type, description, anchor, identifiers, violation_count, confidence_score, detected_at)
    VALUES
        (:pattern_type, :description, :anchor, CAST(:identifiers AS JSON), :violation_count,
         :confidence_score, :detected_at)
    RETURNING id
""")

_LIST_PATTERNS = text(f"""
    SELECT {_PATTERN_COLUMNS}
    FROM violation_patterns
    WHERE detected_at >= :since AND confidence_score >= :min_confidence
    ORDER BY confidence_score DESC, detected_at DESC
""")


def _block_from_row(row: Mapping[str, Any]) -> BlockEntry:
    return BlockEntry(
        id=row["id"],
        identifier=row["identifier"],
        dimension=Dimension(row["dimension"]),
        reason=row["reason"],
        blocked_by=row["blocked_by"],
        violation_count=row["violation_count"] or 0,
        blocked_at=row["blocked_at"],
        expires_at=row["expires_at"],
        is_active=bool(row["is_active"]),
        unblocked_at=row["unblocked_at"],
        unblocked_by=row["unblocked_by"],
    )


def _violation_from_row(row: Mapping[str, Any]) -> ViolationRecord:
    return ViolationRecord(
        id=row["id"],
        request_id=row["request_id"],
        identifier=row["identifier"],
        dimension=Dimension(row["dimension"]),
        attempt_count=row["attempt_count"],
        limit_threshold=row["limit_threshold"],
        retry_after_seconds=row["retry_after_seconds"],
        user_agent=row["user_agent"],
        request_path=row["request_path"],
        ip_address=row["ip_address"],
        email=row["email"],
        client_fingerprint=row["client_fingerprint"],
        created_at=row["created_at"],
    )


def _alert_from_row(row: Mapping[str, Any]) -> ViolationAlert:
    return ViolationAlert(
        id=row["id"],
        alert_type=AlertType(row["alert_type"]),
        severity=Severity(row["severity"]),
        identifier=row["identifier"],
        dimension=Dimension(row["dimension"]) if row["dimension"] else None,
        violation_count=row["violation_count"],
        message=row["message"],
        context=_json(row["context"]) or {},
        is_resolved=bool(row["is_resolved"]),
        resolved_at=row["resolved_at"],
        resolved_by=row["resolved_by"],
        created_at=row["created_at"],
    )


def _pattern_from_row(row: Mapping[str, Any]) -> ViolationPattern:
    return ViolationPattern(
        id=row["id"],
        pattern_type=PatternType(row["pattern_type"]),
        description=row["description"],
        anchor=row["anchor"],
        identifiers=list(_json(row["identifiers"]) or []),
        violation_count=row["violation_count"],
        confidence_score=float(row["confidence_score"]),
        detected_at=row["detected_at"],
    )


class SqlAbuseStore(AbuseStore):
    def __init__(self, database: DBM) -> None:
        self.database = database

    @staticmethod
    def _key(identifier: Identifier) -> Dict[str, Any]:
        return {"identifier": identifier.value, "dimension": identifier.dimension.value}

    # Rate-limit counters

    async def increment_attempt(self, identifier: Identifier, window_start: datetime, window_end: datetime) -> int:
        async with _store_errors("increment_attempt"):
            rows = await self.database.write(
                _INCREMENT_ATTEMPT,
                params={**self._key(identifier), "window_start": window_start, "window_end": window_end},
                return_rows=True,
                mappings=True,
            )
        return int(rows[0]["attempt_count"])

    async def get_attempts(self, identifier: Identifier, window_start: datetime) -> int:
        async with _store_errors("get_attempts"):
            rows = await self.database.read(
                _GET_ATTEMPTS,
                params={**self._key(identifier), "window_start": window_start},
                mappings=True,
            )
        return int(rows[0]["attempt_count"]) if rows else 0

    async def prune_counters(self, now: Optional[datetime] = None) -> int:
        """Delete counters whose window has closed. Safe to run at any time."""
        async with _store_errors("prune_counters"):
            deleted = await self.database.write(
                _PRUNE_COUNTERS,
                params={"now": now or datetime.now(timezone.utc)},
            )
        logger.debug({"sql_abuse_store": "counters_pruned", "deleted": deleted})
        return int(deleted)

    # Block registry

    async def get_active_block(self, identifier: Identifier, now: datetime) -> Optional[BlockEntry]:
        async with _store_errors("get_active_block"):
            rows = await self.database.read(
                _GET_ACTIVE_BLOCK,
                params={**self._key(identifier), "now": now},
                mappings=True,
            )
        return _block_from_row(rows[0]) if rows else None

    async def get_latest_block(self, identifier: Identifier) -> Optional[BlockEntry]:
        async with _store_errors("get_latest_block"):
            rows = await self.database.read(_GET_LATEST_BLOCK, params=self._key(identifier), mappings=True)
        return _block_from_row(rows[0]) if rows else None

    async def upsert_block(self, entry: BlockEntry) -> Tuple[BlockEntry, bool]:
        async with _store_errors("upsert_block"):
            await self.database.write(
                _RETIRE_EXPIRED_BLOCK,
                params={
                    "identifier": entry.identifier,
                    "dimension": Dimension(entry.dimension).value,
                    "now": entry.blocked_at,
                },
            )
            rows = await self.database.write(
                _UPSERT_BLOCK,
                params={
                    "identifier": entry.identifier,
                    "dimension": Dimension(entry.dimension).value,
                    "reason": entry.reason,
                    "blocked_by": entry.blocked_by,
                    "violation_count": entry.violation_count,
                    "blocked_at": entry.blocked_at,
                    "expires_at": entry.expires_at,
                },
                return_rows=True,
                mappings=True,
            )
        row = rows[0]
        return _block_from_row(row), bool(row["was_inserted"])

    async def deactivate_block(self, identifier: Identifier, unblocked_by: str, now: datetime) -> bool:
        async with _store_errors("deactivate_block"):
            updated = await self.database.write(
                _DEACTIVATE_BLOCK,
                params={**self._key(identifier), "unblocked_by": unblocked_by, "now": now},
            )
        return int(updated) > 0

    async def list_blocks(self, *, active_only: bool = True, now: Optional[datetime] = None) -> List[BlockEntry]:
        async with _store_errors("list_blocks"):
            if active_only:
                rows = await self.database.read(
                    _LIST_ACTIVE_BLOCKS,
                    params={"now": now or datetime.now(timezone.utc)},
                    mappings=True,
                )
            else:
                rows = await self.database.read(_LIST_ALL_BLOCKS, mappings=True)
        return [_block_from_row(r) for r in rows]

    # Violation log

    async def append_violation(self, record: ViolationRecord) -> bool:
        async with _store_errors("append_violation"):
            rows = await self.database.write(
                _APPEND_VIOLATION,
                params={
                    "request_id": record.request_id,
                    "identifier": record.identifier,
                    "dimension": Dimension(record.dimension).value,
                    "attempt_count": record.attempt_count,
                    "limit_threshold": record.limit_threshold,
                    "retry_after_seconds": record.retry_after_seconds,
                    "user_agent": record.user_agent,
                    "request_path": record.request_path,
                    "ip_address": record.ip_address,
                    "email": record.email,
                    "client_fingerprint": record.client_fingerprint,
                    "created_at": record.created_at,
                },
                return_rows=True,
                mappings=True,
            )
        return bool(rows)

    async def list_violations(
        self,
        *,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        dimension: Optional[Dimension] = None,
        identifier: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[ViolationRecord]:
        clauses = ["TRUE"]
        params: Dict[str, Any] = {}
        if since is not None:
            clauses.append("created_at >= :since")
            params["since"] = since
        if until is not None:
            clauses.append("created_at <= :until")
            params["until"] = until
        if dimension is not None:
            clauses.append("dimension = :dimension")
            params["dimension"] = Dimension(dimension).value
        if identifier is not None:
            clauses.append("identifier = :identifier")
            params["identifier"] = identifier
        limit_sql = ""
        if limit is not None:
            limit_sql = "LIMIT :limit"
            params["limit"] = int(limit)

        query = text(
            f"SELECT {_VIOLATION_COLUMNS} FROM rate_limit_violations "
            f"WHERE {' AND '.join(clauses)} ORDER BY created_at ASC, id ASC {limit_sql}"
        )
        async with _store_errors("list_violations"):
            rows = await self.database.read(query, params=params, mappings=True)
        return [_violation_from_row(r) for r in rows]

    # Alerts

    async def add_alert(self, alert: ViolationAlert) -> ViolationAlert:
        async with _store_errors("add_alert"):
            rows = await self.database.write(
                _ADD_ALERT,
                params={
                    "alert_type": AlertType(alert.alert_type).value,
                    "severity": Severity(alert.severity).value,
                    "identifier": alert.identifier,
                    "dimension": Dimension(alert.dimension).value if alert.dimension else None,
                    "violation_count": alert.violation_count,
                    "message": alert.message,
                    "context": json.dumps(alert.context or {}, default=str),
                    "created_at": alert.created_at,
                },
                return_rows=True,
                mappings=True,
            )
        alert.id = rows[0]["id"]
        return alert

    async def find_open_alert(
        self,
        alert_type: AlertType,
        identifier: str,
        dimension: Optional[Dimension],
    ) -> Optional[ViolationAlert]:
        async with _store_errors("find_open_alert"):
            rows = await self.database.read(
                _FIND_OPEN_ALERT,
                params={
                    "alert_type": AlertType(alert_type).value,
                    "identifier": identifier,
                    "dimension": Dimension(dimension).value if dimension else None,
                },
                mappings=True,
            )
        return _alert_from_row(rows[0]) if rows else None

    async def list_alerts(
        self,
        *,
        resolved: Optional[bool] = None,
        severity: Optional[Severity] = None,
        limit: int = 50,
    ) -> List[ViolationAlert]:
        clauses = ["TRUE"]
        params: Dict[str, Any] = {"limit": int(limit)}
        if resolved is not None:
            clauses.append("is_resolved = :resolved")
            params["resolved"] = resolved
        if severity is not None:
            clauses.append("severity = :severity")
            params["severity"] = Severity(severity).value
        query = text(
            f"SELECT {_ALERT_COLUMNS} FROM violation_alerts "
            f"WHERE {' AND '.join(clauses)} ORDER BY created_at DESC, id DESC LIMIT :limit"
        )
        async with _store_errors("list_alerts"):
            rows = await self.database.read(query, params=params, mappings=True)
        return [_alert_from_row(r) for r in rows]

    async def resolve_alert(self, alert_id: int, resolved_by: str, now: datetime) -> bool:
        async with _store_errors("resolve_alert"):
            updated = await self.database.write(
                _RESOLVE_ALERT,
                params={"alert_id": alert_id, "resolved_by": resolved_by, "now": now},
            )
        return int(updated) > 0

    # Patterns

    async def save_patterns(self, patterns: Sequence[ViolationPattern]) -> List[ViolationPattern]:
        saved: List[ViolationPattern] = []
        async with _store_errors("save_patterns"):
            for p in patterns:
                rows = await self.database.write(
                    _SAVE_PATTERN,
                    params={
                        "pattern_type": PatternType(p.pattern_type).value,
                        "description": p.description,
                        "anchor": p.anchor,
                        "identifiers": json.dumps(list(p.identifiers)),
                        "violation_count": p.violation_count,
                        "confidence_score": p.confidence_score,
                        "detected_at": p.detected_at,
                    },
                    return_rows=True,
                    mappings=True,
                )
                p.id = rows[0]["id"]
                saved.append(p)
        return saved

    async def list_patterns(self, *, since: datetime, min_confidence: float = 0.0) -> List[ViolationPattern]:
        async with _store_errors("list_patterns"):
            rows = await self.database.read(
                _LIST_PATTERNS,
                params={"since": since, "min_confidence": min_confidence},
                mappings=True,
            )
        return [_pattern_from_row(r) for r in rows]


# ---------------------------------------------------------------------------
# Registrations
# ---------------------------------------------------------------------------

_REGISTRATION_COLUMNS = """
    id, full_name, email, whatsapp_number, linkedin_url, resume_path, ip_address,
    is_waitlist, access_token, status, created_at
"""

_INSERT_REGISTRATION = text(f"""
    INSERT INTO registrations
        (id, full_name, email, whatsapp_number, linkedin_url, resume_path, ip_address,
         is_waitlist, access_token, status)
    VALUES
        (:id, :full_name, :email, :whatsapp_number, :linkedin_url, :resume_path, :ip_address,
         :is_waitlist, :access_token, 'active')
    RETURNING {_REGISTRATION_COLUMNS}
""")

_COUNT_ADMITTED = text("""
    SELECT COUNT(*) AS n FROM registrations WHERE status = 'active' AND NOT is_waitlist
""")

_COUNT_ACTIVE = text("""
    SELECT COUNT(*) AS n FROM registrations WHERE status = 'active'
""")

_WAITLIST_POSITION = text("""
    SELECT position FROM (
        SELECT email, ROW_NUMBER() OVER (ORDER BY created_at ASC, id ASC) AS position
        FROM registrations
        WHERE is_waitlist AND status = 'active'
    ) AS w
    WHERE email = :email
""")

_GET_BY_TOKEN = text(f"""
    SELECT {_REGISTRATION_COLUMNS}
    FROM registrations
    WHERE access_token = :access_token AND status = 'active'
""")

_UPDATE_BY_TOKEN = text(f"""
    UPDATE registrations SET
        full_name = COALESCE(:full_name, full_name),
        whatsapp_number = COALESCE(:whatsapp_number, whatsapp_number),
        linkedin_url = COALESCE(:linkedin_url, linkedin_url),
        resume_path = COALESCE(:resume_path, resume_path),
        updated_at = now()
    WHERE access_token = :access_token AND status = 'active'
    RETURNING {_REGISTRATION_COLUMNS}
""")

_CANCEL_BY_TOKEN = text("""
    UPDATE registrations SET status = 'cancelled', updated_at = :now
    WHERE access_token = :access_token AND status = 'active'
""")


def _registration_from_row(row: Mapping[str, Any]) -> Registration:
    return Registration(
        id=str(row["id"]),
        full_name=row["full_name"],
        email=row["email"],
        whatsapp_number=row["whatsapp_number"],
        linkedin_url=row["linkedin_url"],
        resume_path=row["resume_path"],
        ip_address=row["ip_address"],
        is_waitlist=bool(row["is_waitlist"]),
        access_token=row["access_token"],
        status=RegistrationStatus(row["status"]),
        created_at=row["created_at"],
    )


class SqlRegistrationStore(RegistrationStore):
    def __init__(self, database: DBM) -> None:
        self.database = database

    async def insert_registration(self, registration: Registration) -> Registration:
        async with _store_errors("insert_registration"):
            rows = await self.database.write(
                _INSERT_REGISTRATION,
                params={
                    "id": registration.id or str(uuid.uuid4()),
                    "full_name": registration.full_name,
                    "email": registration.email,
                    "whatsapp_number": registration.whatsapp_number,
                    "linkedin_url": registration.linkedin_url,
                    "resume_path": registration.resume_path,
                    "ip_address": registration.ip_address,
                    "is_waitlist": registration.is_waitlist,
                    "access_token": registration.access_token,
                },
                return_rows=True,
                mappings=True,
            )
        return _registration_from_row(rows[0])

    async def count_active(self, *, include_waitlist: bool = False) -> int:
        async with _store_errors("count_active"):
            rows = await self.database.read(
                _COUNT_ACTIVE if include_waitlist else _COUNT_ADMITTED,
                mappings=True,
            )
        return int(rows[0]["n"]) if rows else 0

    async def waitlist_position(self, email: str) -> Optional[int]:
        async with _store_errors("waitlist_position"):
            rows = await self.database.read(_WAITLIST_POSITION, params={"email": email}, mappings=True)
        return int(rows[0]["position"]) if rows else None

    async def get_by_token(self, access_token: str) -> Optional[Registration]:
        async with _store_errors("get_by_token"):
            rows = await self.database.read(_GET_BY_TOKEN, params={"access_token": access_token}, mappings=True)
        return _registration_from_row(rows[0]) if rows else None

    async def update_by_token(self, access_token: str, update: RegistrationUpdate) -> Optional[Registration]:
        async with _store_errors("update_by_token"):
            rows = await self.database.write(
                _UPDATE_BY_TOKEN,
                params={
                    "access_token": access_token,
                    "full_name": update.full_name,
                    "whatsapp_number": update.whatsapp_number,
                    "linkedin_url": update.linkedin_url,
                    "resume_path": update.resume_path,
                },
                return_rows=True,
                mappings=True,
            )
        return _registration_from_row(rows[0]) if rows else None

    async def cancel_by_token(self, access_token: str, now: datetime) -> bool:
        async with _store_errors("cancel_by_token"):
            updated = await self.database.write(
                _CANCEL_BY_TOKEN,
                params={"access_token": access_token, "now": now},
            )
        return int(updated) > 0


__all__ = ["SqlAbuseStore", "SqlRegistrationStore"]
