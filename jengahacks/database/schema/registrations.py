"""Registration table."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, CheckConstraint, DateTime, Index, String, Text, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base


class RegistrationRow(Base):
    """Hackathon registrations.

    Email uniqueness is enforced by ``uq_registrations_email``; that constraint
    is the authoritative duplicate check.
    """

    __tablename__ = "registrations"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    full_name: Mapped[str] = mapped_column(String(100), nullable=False)
    email: Mapped[str] = mapped_column(String(254), nullable=False)
    whatsapp_number: Mapped[str | None] = mapped_column(String(20))
    linkedin_url: Mapped[str | None] = mapped_column(Text)
    resume_path: Mapped[str | None] = mapped_column(String(512))
    ip_address: Mapped[str | None] = mapped_column(
        String(64),
        comment="Client address at registration; never returned to clients",
    )
    is_waitlist: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
        comment="Decided once at admission and never recomputed",
    )
    access_token: Mapped[str] = mapped_column(String(64), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="active")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    __table_args__ = (
        UniqueConstraint("email", name="uq_registrations_email"),
        UniqueConstraint("access_token", name="uq_registrations_access_token"),
        CheckConstraint("status IN ('active', 'cancelled')", name="ck_registrations_status"),
        Index("ix_registrations_status_created", "status", "created_at"),
        Index("ix_registrations_waitlist", "is_waitlist", "created_at"),
    )


__all__ = ["RegistrationRow"]
