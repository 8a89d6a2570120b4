"""Self-service registration management by access token.

The access token is the only credential; cancelled registrations behave as
not found. Email and waitlist status are not editable.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Optional

from jengahacks.errors import InternalError, RegistrationNotFound, ValidationError
from jengahacks.shared.log_colors import LogColors
from jengahacks.store.base import RegistrationStore, StoreError

from .models import Registration, RegistrationUpdate
from .validation import normalize_whatsapp, sanitize_url, validate_full_name, validate_resume_path

logger = logging.getLogger(__name__)

MAX_TOKEN_LENGTH = 128


def _check_token(token: Optional[str]) -> str:
    token = (token or "").strip()
    if not token or len(token) > MAX_TOKEN_LENGTH:
        # Malformed tokens look the same as unknown ones
        raise RegistrationNotFound()
    return token


class RegistrationManager:
    def __init__(self, store: RegistrationStore) -> None:
        self.store = store

    async def get(self, token: str) -> Registration:
        token = _check_token(token)
        try:
            registration = await self.store.get_by_token(token)
        except StoreError as e:
            logger.error(f"{LogColors.STORE_LABEL} registration_lookup_failed: {type(e).__name__}: {e}")
            raise InternalError("registration lookup failed") from e
        if registration is None:
            raise RegistrationNotFound()
        return registration

    async def update(
        self,
        token: str,
        *,
        full_name: Optional[str] = None,
        whatsapp_number: Optional[str] = None,
        linkedin_url: Optional[str] = None,
        resume_path: Optional[str] = None,
    ) -> Registration:
        token = _check_token(token)
        update = RegistrationUpdate(
            full_name=validate_full_name(full_name) if full_name is not None else None,
            whatsapp_number=normalize_whatsapp(whatsapp_number),
            linkedin_url=sanitize_url(linkedin_url),
            resume_path=validate_resume_path(resume_path),
        )
        if not update.changes():
            raise ValidationError("No fields to update")
        try:
            registration = await self.store.update_by_token(token, update)
        except StoreError as e:
            logger.error(f"{LogColors.STORE_LABEL} registration_update_failed: {type(e).__name__}: {e}")
            raise InternalError("registration update failed") from e
        if registration is None:
            raise RegistrationNotFound()
        logger.info({"registration_manager": "updated", "fields": sorted(update.changes())})
        return registration

    async def cancel(self, token: str) -> None:
        token = _check_token(token)
        try:
            cancelled = await self.store.cancel_by_token(token, datetime.now(timezone.utc))
        except StoreError as e:
            logger.error(f"{LogColors.STORE_LABEL} registration_cancel_failed: {type(e).__name__}: {e}")
            raise InternalError("registration cancel failed") from e
        if not cancelled:
            raise RegistrationNotFound()
        logger.info({"registration_manager": "cancelled"})


__all__ = ["RegistrationManager"]
