"""Abuse-control configuration for rate limiting, blocking and escalation."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Optional


class Dimension(str, Enum):
    """Identifier dimensions that registrations are tracked by."""

    EMAIL = "email"
    IP = "ip"
    # Client fingerprint: a soft, spoofable signal. Counted and logged for
    # pattern detection, never used on its own to deny a request.
    CLIENT = "client"


class FailurePolicy(str, Enum):
    """What a check does when its backing store call fails."""

    # Deny the registration with an internal error
    FAIL_CLOSED = "fail_closed"
    # Skip the check and continue as if it had passed
    FAIL_OPEN = "fail_open"


@dataclass
class DimensionPolicy:
    """Per-dimension limits and failure behaviour."""

    limit: int
    window_seconds: int = 3600
    # When False the dimension is counted and logged but never denies
    gated: bool = True
    # Consult the block registry for this dimension
    enforce_blocks: bool = True
    block_check_failure: FailurePolicy = FailurePolicy.FAIL_CLOSED
    rate_check_failure: FailurePolicy = FailurePolicy.FAIL_CLOSED


def _default_policies() -> Dict[Dimension, DimensionPolicy]:
    return {
        # Strictest: the primary identity signal
        Dimension.EMAIL: DimensionPolicy(
            limit=2,
            window_seconds=3600,
            block_check_failure=FailurePolicy.FAIL_CLOSED,
            rate_check_failure=FailurePolicy.FAIL_CLOSED,
        ),
        # Looser: many attendees share one conference Wi-Fi address.
        # IP limiting is best-effort, so store failures fail open.
        Dimension.IP: DimensionPolicy(
            limit=5,
            window_seconds=3600,
            block_check_failure=FailurePolicy.FAIL_OPEN,
            rate_check_failure=FailurePolicy.FAIL_OPEN,
        ),
        Dimension.CLIENT: DimensionPolicy(
            limit=10,
            window_seconds=3600,
            gated=False,
            enforce_blocks=False,
            block_check_failure=FailurePolicy.FAIL_OPEN,
            rate_check_failure=FailurePolicy.FAIL_OPEN,
        ),
    }


@dataclass
class EscalationConfig:
    """Configuration for promoting persistent violators to blocks."""

    violation_threshold: int = 5  # Violations within lookback before blocking
    lookback_hours: int = 24
    block_ttl_seconds: Optional[int] = None  # None = permanent until unblocked
    reason: str = "auto: persistent violator"
    blocked_by: str = "auto-escalation"


@dataclass
class PatternConfig:
    """Configuration for the violation pattern detector."""

    lookback_hours: int = 24
    min_confidence: float = 0.5
    correlation_window_minutes: int = 10  # "short window" for correlated signals
    min_distinct_identifiers: int = 3  # Distinct emails behind one IP/client
    burst_threshold: int = 5  # Violations from a single identifier in the window
    saturation: int = 6  # Distinct identifiers (or burst size) at which the count factor reaches 1.0
    alert_confidence: float = 0.8  # Patterns at or above this raise an alert


@dataclass
class AlertConfig:
    """Configuration for violation alerts."""

    repeated_violator_threshold: int = 3
    repeated_violator_window_hours: int = 24
    high_rate_threshold: int = 10
    high_rate_window_minutes: int = 15


@dataclass
class AbuseConfig:
    """Combined abuse-control configuration."""

    policies: Dict[Dimension, DimensionPolicy] = field(default_factory=_default_policies)
    escalation: EscalationConfig = field(default_factory=EscalationConfig)
    patterns: PatternConfig = field(default_factory=PatternConfig)
    alerts: AlertConfig = field(default_factory=AlertConfig)

    # Feature flags
    enforce_blocks: bool = True  # Check the block registry on admission
    enforce_rate_limits: bool = True  # Apply rate limits on admission

    def policy(self, dimension: Dimension) -> DimensionPolicy:
        return self.policies[Dimension(dimension)]

    def gated_dimensions(self) -> tuple[Dimension, ...]:
        return tuple(d for d, p in self.policies.items() if p.gated)


__all__ = [
    "AbuseConfig",
    "AlertConfig",
    "Dimension",
    "DimensionPolicy",
    "EscalationConfig",
    "FailurePolicy",
    "PatternConfig",
]
