"""Abuse-control tables: counters, blocks, violations, alerts and patterns."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    Float,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base


class RateLimitCounter(Base):
    """Fixed-window attempt counters keyed by (identifier, dimension, window)."""

    __tablename__ = "rate_limit_counters"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    identifier: Mapped[str] = mapped_column(
        String(320),
        nullable=False,
        comment="Normalized identifier (email, IP address or client fingerprint)",
    )
    dimension: Mapped[str] = mapped_column(
        String(16),
        nullable=False,
        comment="Identifier dimension: 'email', 'ip' or 'client'",
    )
    window_start: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        comment="Start of the fixed window (UTC)",
    )
    window_end: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        comment="End of the fixed window; rows past it can be pruned",
    )
    attempt_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    __table_args__ = (
        UniqueConstraint(
            "identifier",
            "dimension",
            "window_start",
            name="uq_rate_limit_counters_window",
        ),
        Index("ix_rate_limit_counters_window_end", "window_end"),
    )


class BlockedIdentifier(Base):
    """Block registry. At most one active row per (identifier, dimension)."""

    __tablename__ = "blocked_identifiers"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    identifier: Mapped[str] = mapped_column(String(320), nullable=False)
    dimension: Mapped[str] = mapped_column(String(16), nullable=False)
    reason: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        comment="Human-readable reason for the block",
    )
    blocked_by: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        comment="Admin name or 'auto-escalation'",
    )
    violation_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    blocked_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    expires_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        comment="When the block expires (NULL = permanent until unblocked)",
    )
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    unblocked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    unblocked_by: Mapped[str | None] = mapped_column(String(64))

    __table_args__ = (
        Index(
            "uq_blocked_identifiers_active",
            "identifier",
            "dimension",
            unique=True,
            postgresql_where=text("is_active"),
        ),
        Index("ix_blocked_identifiers_lookup", "identifier", "dimension", "blocked_at"),
    )


class RateLimitViolation(Base):
    """Append-only log of denied attempts. Sole input to pattern detection."""

    __tablename__ = "rate_limit_violations"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    request_id: Mapped[str | None] = mapped_column(
        String(64),
        comment="Request id; makes logging the same denial twice a no-op",
    )
    identifier: Mapped[str] = mapped_column(String(320), nullable=False)
    dimension: Mapped[str] = mapped_column(String(16), nullable=False)
    attempt_count: Mapped[int] = mapped_column(Integer, nullable=False)
    limit_threshold: Mapped[int] = mapped_column(Integer, nullable=False)
    retry_after_seconds: Mapped[int | None] = mapped_column(Integer)
    user_agent: Mapped[str | None] = mapped_column(Text)
    request_path: Mapped[str] = mapped_column(String(255), nullable=False, default="/register")
    ip_address: Mapped[str | None] = mapped_column(String(64))
    email: Mapped[str | None] = mapped_column(String(320))
    client_fingerprint: Mapped[str | None] = mapped_column(String(256))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    __table_args__ = (
        UniqueConstraint("request_id", "dimension", name="uq_rate_limit_violations_request"),
        Index("ix_rate_limit_violations_created", "created_at"),
        Index("ix_rate_limit_violations_identifier", "identifier", "dimension", "created_at"),
        Index("ix_rate_limit_violations_ip", "ip_address", "created_at"),
    )


class ViolationAlertRow(Base):
    __tablename__ = "violation_alerts"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    alert_type: Mapped[str] = mapped_column(String(32), nullable=False)
    severity: Mapped[str] = mapped_column(String(16), nullable=False)
    identifier: Mapped[str] = mapped_column(String(320), nullable=False)
    dimension: Mapped[str | None] = mapped_column(String(16))
    violation_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    context: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    is_resolved: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    resolved_by: Mapped[str | None] = mapped_column(String(64))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    __table_args__ = (
        Index("ix_violation_alerts_open", "alert_type", "identifier", "is_resolved"),
        Index("ix_violation_alerts_created", "created_at"),
    )


class ViolationPatternRow(Base):
    __tablename__ = "violation_patterns"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    pattern_type: Mapped[str] = mapped_column(String(32), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    anchor: Mapped[str | None] = mapped_column(String(320))
    identifiers: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    violation_count: Mapped[int] = mapped_column(Integer, nullable=False)
    confidence_score: Mapped[float] = mapped_column(Float, nullable=False)
    detected_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    __table_args__ = (Index("ix_violation_patterns_detected", "detected_at"),)


__all__ = [
    "BlockedIdentifier",
    "RateLimitCounter",
    "RateLimitViolation",
    "ViolationAlertRow",
    "ViolationPatternRow",
]
