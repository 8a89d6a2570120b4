"""Block registry over the abuse store.

At most one active block exists per (identifier, dimension). Blocking twice
updates the reason and expiry in place; unblocking something that is not
blocked is a no-op. Store failures propagate as ``StoreError`` so the caller
can apply its configured failure policy.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import List, Optional, Tuple

from jengahacks.shared.log_colors import LogColors
from jengahacks.store.base import AbuseStore

from .identifiers import Identifier
from .models import BlockEntry
from .ratelimit import Clock, utcnow

logger = logging.getLogger(__name__)


class BlockRegistry:
    def __init__(self, store: AbuseStore, *, clock: Optional[Clock] = None) -> None:
        self.store = store
        self._clock = clock or utcnow

    async def get_block(self, identifier: Identifier, now: Optional[datetime] = None) -> Optional[BlockEntry]:
        """The block currently in force, or None. Expired blocks read as None."""
        return await self.store.get_active_block(identifier, now or self._clock())

    async def is_blocked(self, identifier: Identifier, now: Optional[datetime] = None) -> bool:
        return await self.get_block(identifier, now) is not None

    async def block(
        self,
        identifier: Identifier,
        reason: str,
        blocked_by: str,
        *,
        ttl_seconds: Optional[int] = None,
        violation_count: int = 0,
    ) -> Tuple[BlockEntry, bool]:
        """Block or re-block. Returns (entry, created)."""
        if not reason or not reason.strip():
            raise ValueError("block reason must not be empty")
        if ttl_seconds is not None and ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be > 0")
        now = self._clock()
        entry = BlockEntry(
            identifier=identifier.value,
            dimension=identifier.dimension,
            reason=reason.strip(),
            blocked_by=blocked_by,
            blocked_at=now,
            expires_at=now + timedelta(seconds=ttl_seconds) if ttl_seconds else None,
            violation_count=violation_count,
        )
        stored, created = await self.store.upsert_block(entry)
        logger.info(
            f"{LogColors.ADMIN_LABEL} {'blocked' if created else 'block_updated'}: "
            f"{identifier.dimension.value}={identifier.masked()}, by={blocked_by}, "
            f"expires_at={stored.expires_at.isoformat() if stored.expires_at else 'never'}"
        )
        return stored, created

    async def unblock(self, identifier: Identifier, unblocked_by: str) -> bool:
        """Deactivate the active block. Returns False when nothing was blocked."""
        removed = await self.store.deactivate_block(identifier, unblocked_by, self._clock())
        if removed:
            logger.info(
                f"{LogColors.ADMIN_LABEL} unblocked: "
                f"{identifier.dimension.value}={identifier.masked()}, by={unblocked_by}"
            )
        else:
            logger.debug({"block_registry": "unblock_noop", "identifier": identifier.masked()})
        return removed

    async def list_blocks(self, *, active_only: bool = True) -> List[BlockEntry]:
        return await self.store.list_blocks(active_only=active_only, now=self._clock())


__all__ = ["BlockRegistry"]
