"""Registration admission and self-service management."""

from .models import (
    Registration,
    RegistrationRequest,
    RegistrationStatus,
    RegistrationUpdate,
    WaitlistDecision,
)

__all__ = [
    "Registration",
    "RegistrationRequest",
    "RegistrationStatus",
    "RegistrationUpdate",
    "WaitlistDecision",
]
