"""Records kept by the abuse-control subsystem."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from .config import Dimension
from .identifiers import Identifier


class AlertType(str, Enum):
    HIGH_RATE = "high_rate"
    REPEATED_VIOLATOR = "repeated_violator"
    SUSPICIOUS_PATTERN = "suspicious_pattern"
    AUTO_BLOCKED = "auto_blocked"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class PatternType(str, Enum):
    # One IP behind many distinct emails
    DISTRIBUTED = "distributed"
    # One client fingerprint behind many distinct emails
    SHARED_CLIENT = "shared_client"
    # One identifier violating many times in a short window
    BURST = "burst"


@dataclass
class BlockEntry:
    """A block on one (identifier, dimension)."""

    identifier: str
    dimension: Dimension
    reason: str
    blocked_by: str
    blocked_at: datetime
    expires_at: Optional[datetime] = None  # None = permanent until unblocked
    violation_count: int = 0
    is_active: bool = True
    unblocked_at: Optional[datetime] = None
    unblocked_by: Optional[str] = None
    id: Optional[int] = None

    def is_effective(self, now: datetime) -> bool:
        return self.is_active and (self.expires_at is None or self.expires_at > now)

    def to_dict(self) -> Dict[str, Any]:
        return _jsonable(asdict(self))


@dataclass
class RequestMetadata:
    """Request context attached to violation records."""

    user_agent: Optional[str] = None
    request_path: str = "/register"
    request_id: Optional[str] = None
    ip_address: Optional[str] = None
    email: Optional[str] = None
    client_fingerprint: Optional[str] = None


@dataclass
class ViolationRecord:
    """One denied (or over-limit) attempt. Append-only."""

    identifier: str
    dimension: Dimension
    attempt_count: int
    limit_threshold: int
    created_at: datetime
    retry_after_seconds: Optional[int] = None
    user_agent: Optional[str] = None
    request_path: str = "/register"
    ip_address: Optional[str] = None
    email: Optional[str] = None
    client_fingerprint: Optional[str] = None
    request_id: Optional[str] = None
    id: Optional[int] = None

    @property
    def key(self) -> Identifier:
        return Identifier(self.identifier, Dimension(self.dimension))

    def to_dict(self) -> Dict[str, Any]:
        return _jsonable(asdict(self))


@dataclass
class ViolationAlert:
    alert_type: AlertType
    severity: Severity
    identifier: str
    dimension: Optional[Dimension]
    violation_count: int
    message: str
    created_at: datetime
    context: Dict[str, Any] = field(default_factory=dict)
    is_resolved: bool = False
    resolved_at: Optional[datetime] = None
    resolved_by: Optional[str] = None
    id: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return _jsonable(asdict(self))


@dataclass
class ViolationPattern:
    """Advisory grouping of correlated identifiers. Never enforced on its own."""

    pattern_type: PatternType
    description: str
    identifiers: List[str]
    violation_count: int
    confidence_score: float
    detected_at: datetime
    anchor: Optional[str] = None  # The shared signal (IP, fingerprint, identifier)
    id: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return _jsonable(asdict(self))


def _jsonable(data: Any) -> Any:
    if isinstance(data, dict):
        return {k: _jsonable(v) for k, v in data.items()}
    if isinstance(data, list):
        return [_jsonable(v) for v in data]
    if isinstance(data, Enum):
        return data.value
    if isinstance(data, datetime):
        return data.isoformat()
    return data


__all__ = [
    "AlertType",
    "BlockEntry",
    "PatternType",
    "RequestMetadata",
    "Severity",
    "ViolationAlert",
    "ViolationPattern",
    "ViolationRecord",
]
