"""Registration records and admission requests."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional


class RegistrationStatus(str, Enum):
    ACTIVE = "active"
    CANCELLED = "cancelled"


@dataclass
class RegistrationRequest:
    """One inbound registration attempt, as received at the boundary."""

    full_name: str
    email: str
    whatsapp_number: Optional[str] = None
    linkedin_url: Optional[str] = None
    resume_path: Optional[str] = None
    # Request context (resolved by the HTTP layer)
    ip_address: Optional[str] = None
    client_fingerprint: Optional[str] = None
    user_agent: Optional[str] = None
    request_path: str = "/register"
    request_id: Optional[str] = None


@dataclass
class Registration:
    """A persisted registration."""

    full_name: str
    email: str
    is_waitlist: bool
    access_token: str
    whatsapp_number: Optional[str] = None
    linkedin_url: Optional[str] = None
    resume_path: Optional[str] = None
    ip_address: Optional[str] = None
    status: RegistrationStatus = RegistrationStatus.ACTIVE
    created_at: Optional[datetime] = None
    id: Optional[str] = None

    def public_view(self) -> Dict[str, Any]:
        """Fields returned to the registrant; never the IP address."""
        return {
            "id": self.id,
            "full_name": self.full_name,
            "email": self.email,
            "whatsapp_number": self.whatsapp_number,
            "linkedin_url": self.linkedin_url,
            "resume_path": self.resume_path,
            "is_waitlist": self.is_waitlist,
            "status": RegistrationStatus(self.status).value,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


@dataclass
class RegistrationUpdate:
    """Partial self-service update; None leaves a field unchanged."""

    full_name: Optional[str] = None
    whatsapp_number: Optional[str] = None
    linkedin_url: Optional[str] = None
    resume_path: Optional[str] = None

    def changes(self) -> Dict[str, Any]:
        return {k: v for k, v in self.__dict__.items() if v is not None}


@dataclass
class WaitlistDecision:
    is_waitlist: bool
    active_count: int
    capacity: Optional[int]
    extra: Dict[str, Any] = field(default_factory=dict)


__all__ = [
    "Registration",
    "RegistrationRequest",
    "RegistrationStatus",
    "RegistrationUpdate",
    "WaitlistDecision",
]
