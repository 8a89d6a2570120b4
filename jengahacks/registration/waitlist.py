"""Waitlist admission policy.

The decision is made once per request, before the insert, and persisted
with the registration. Nothing recomputes it afterwards.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Optional

from jengahacks.store.base import RegistrationStore

from .models import WaitlistDecision


class WaitlistPolicy(ABC):
    @abstractmethod
    async def should_waitlist(self) -> WaitlistDecision:
        ...


class CapacityWaitlistPolicy(WaitlistPolicy):
    """Waitlist once admitted (non-waitlist, active) registrations reach capacity.

    ``capacity=None`` never waitlists.
    """

    def __init__(self, store: RegistrationStore, capacity: Optional[int]) -> None:
        self.store = store
        self.capacity = capacity

    async def should_waitlist(self) -> WaitlistDecision:
        if self.capacity is None:
            return WaitlistDecision(is_waitlist=False, active_count=0, capacity=None)
        active = await self.store.count_active(include_waitlist=False)
        return WaitlistDecision(
            is_waitlist=active >= self.capacity,
            active_count=active,
            capacity=self.capacity,
        )


__all__ = ["CapacityWaitlistPolicy", "WaitlistPolicy"]
