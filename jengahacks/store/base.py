"""Store interfaces for abuse-control state and registrations.

All counters, blocks and violation logs live behind these interfaces so the
request path keeps no shared in-process state. Implementations must make
``increment_attempt`` atomic (check-and-increment in one operation) and
``upsert_block`` keep at most one active block per (identifier, dimension).
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import List, Optional, Sequence, Tuple

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
from jengahacks.registration.models import Registration, RegistrationUpdate


class StoreError(Exception):
    """The backing store could not be reached or the operation failed."""


class DuplicateEmailConflict(StoreError):
    """Insert rejected by the unique email constraint."""


class AccessTokenConflict(StoreError):
    """Insert rejected by the unique access token constraint."""


class AbuseStore(ABC):
    """Rate-limit counters, block registry, violation log, alerts and patterns."""

    # Rate-limit counters

    @abstractmethod
    async def increment_attempt(
        self,
        identifier: Identifier,
        window_start: datetime,
        window_end: datetime,
    ) -> int:
        """Atomically add one attempt to the window and return the new count."""

    @abstractmethod
    async def prune_counters(self, now: Optional[datetime] = None) -> int:
        """Delete counters whose window closed at or before ``now``. Returns the count."""

    @abstractmethod
    async def get_attempts(self, identifier: Identifier, window_start: datetime) -> int:
        """Attempts recorded in the window, without side effects."""

    # Block registry

    @abstractmethod
    async def get_active_block(self, identifier: Identifier, now: datetime) -> Optional[BlockEntry]:
        """The active, unexpired block for the identifier, if any."""

    @abstractmethod
    async def get_latest_block(self, identifier: Identifier) -> Optional[BlockEntry]:
        """Most recent block for the identifier, active or not."""

    @abstractmethod
    async def upsert_block(self, entry: BlockEntry) -> Tuple[BlockEntry, bool]:
        """Create the active block or update the existing one. Returns (entry, created)."""

    @abstractmethod
    async def deactivate_block(self, identifier: Identifier, unblocked_by: str, now: datetime) -> bool:
        """Deactivate the active block. False when nothing was active."""

    @abstractmethod
    async def list_blocks(self, *, active_only: bool = True, now: Optional[datetime] = None) -> List[BlockEntry]:
        ...

    # Violation log

    @abstractmethod
    async def append_violation(self, record: ViolationRecord) -> bool:
        """Append a record. False when a record with the same request id and dimension exists."""

    @abstractmethod
    async def list_violations(
        self,
        *,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        dimension: Optional[Dimension] = None,
        identifier: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[ViolationRecord]:
        """Violations ordered oldest first."""

    # Alerts

    @abstractmethod
    async def add_alert(self, alert: ViolationAlert) -> ViolationAlert:
        ...

    @abstractmethod
    async def find_open_alert(
        self,
        alert_type: AlertType,
        identifier: str,
        dimension: Optional[Dimension],
    ) -> Optional[ViolationAlert]:
        ...

    @abstractmethod
    async def list_alerts(
        self,
        *,
        resolved: Optional[bool] = None,
        severity: Optional[Severity] = None,
        limit: int = 50,
    ) -> List[ViolationAlert]:
        """Alerts ordered newest first."""

    @abstractmethod
    async def resolve_alert(self, alert_id: int, resolved_by: str, now: datetime) -> bool:
        ...

    # Patterns

    @abstractmethod
    async def save_patterns(self, patterns: Sequence[ViolationPattern]) -> List[ViolationPattern]:
        ...

    @abstractmethod
    async def list_patterns(self, *, since: datetime, min_confidence: float = 0.0) -> List[ViolationPattern]:
        ...


class RegistrationStore(ABC):
    """Persistence for registrations. Email uniqueness is enforced here."""

    @abstractmethod
    async def insert_registration(self, registration: Registration) -> Registration:
        """Insert or raise DuplicateEmailConflict / AccessTokenConflict."""

    @abstractmethod
    async def count_active(self, *, include_waitlist: bool = False) -> int:
        ...

    @abstractmethod
    async def waitlist_position(self, email: str) -> Optional[int]:
        """1-based position among active waitlisted registrations."""

    @abstractmethod
    async def get_by_token(self, access_token: str) -> Optional[Registration]:
        """Active registration for the token."""

    @abstractmethod
    async def update_by_token(self, access_token: str, update: RegistrationUpdate) -> Optional[Registration]:
        ...

    @abstractmethod
    async def cancel_by_token(self, access_token: str, now: datetime) -> bool:
        ...


__all__ = [
    "AbuseStore",
    "AccessTokenConflict",
    "DuplicateEmailConflict",
    "RegistrationStore",
    "StoreError",
]
