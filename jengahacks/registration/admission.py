"""Admission control for one registration request.

State sequence::

    RECEIVED -> BLOCK_CHECKED -> RATE_CHECKED -> WAITLIST_DECIDED
             -> TOKEN_GENERATED -> PERSISTED -> ADMITTED | WAITLISTED

``REJECTED`` is reachable from every state before ``PERSISTED``. The
controller holds no lock and no state between requests; all counters,
blocks and registrations live in the stores. The unique email constraint
on insert is the authoritative duplicate check.
"""

from __future__ import annotations

import asyncio
import logging
import secrets
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from jengahacks.abuse.blocks import BlockRegistry
from jengahacks.abuse.config import AbuseConfig, Dimension, FailurePolicy
from jengahacks.abuse.identifiers import Identifier, normalize_email, try_normalize
from jengahacks.abuse.models import RequestMetadata
from jengahacks.abuse.ratelimit import Clock, RateLimitDecision, RateLimitEvaluator, utcnow
from jengahacks.abuse.violations import ViolationLogger
from jengahacks.errors import (
    Blocked,
    DuplicateEmail,
    InternalError,
    RateLimitExceeded,
    RegistrationError,
    ValidationError,
)
from jengahacks.shared.log_colors import LogColors
from jengahacks.store.base import (
    AbuseStore,
    AccessTokenConflict,
    DuplicateEmailConflict,
    RegistrationStore,
    StoreError,
)

from .models import Registration, RegistrationRequest
from .validation import normalize_whatsapp, sanitize_url, validate_full_name, validate_resume_path
from .waitlist import CapacityWaitlistPolicy, WaitlistPolicy

logger = logging.getLogger(__name__)

# Reported rate-limit denial when several dimensions deny at once
_DENIAL_PRECEDENCE = (Dimension.EMAIL, Dimension.IP, Dimension.CLIENT)


class AdmissionState(str, Enum):
    RECEIVED = "RECEIVED"
    BLOCK_CHECKED = "BLOCK_CHECKED"
    RATE_CHECKED = "RATE_CHECKED"
    WAITLIST_DECIDED = "WAITLIST_DECIDED"
    TOKEN_GENERATED = "TOKEN_GENERATED"
    PERSISTED = "PERSISTED"
    ADMITTED = "ADMITTED"
    WAITLISTED = "WAITLISTED"
    REJECTED = "REJECTED"


@dataclass
class AdmissionResult:
    state: AdmissionState = AdmissionState.RECEIVED
    trail: List[AdmissionState] = field(default_factory=lambda: [AdmissionState.RECEIVED])
    registration: Optional[Registration] = None
    waitlist_position: Optional[int] = None
    error: Optional[RegistrationError] = None
    decisions: List[RateLimitDecision] = field(default_factory=list)

    def advance(self, state: AdmissionState) -> None:
        self.state = state
        self.trail.append(state)

    def reject(self, error: RegistrationError) -> "AdmissionResult":
        self.error = error
        self.advance(AdmissionState.REJECTED)
        return self

    @property
    def admitted(self) -> bool:
        return self.state in (AdmissionState.ADMITTED, AdmissionState.WAITLISTED)

    @property
    def code(self) -> Optional[str]:
        return self.error.code.value if self.error else None

    def to_payload(self) -> Dict[str, Any]:
        if self.error is not None:
            return self.error.to_payload()
        reg = self.registration
        return {
            "success": True,
            "data": {
                "id": reg.id if reg else None,
                "email": reg.email if reg else None,
                "is_waitlist": bool(reg and reg.is_waitlist),
                "access_token": reg.access_token if reg else None,
                "waitlist_position": self.waitlist_position,
            },
        }


def generate_access_token() -> str:
    return secrets.token_urlsafe(32)


class AdmissionController:
    """Single entry point deciding one registration attempt."""

    def __init__(
        self,
        abuse_store: AbuseStore,
        registration_store: RegistrationStore,
        config: Optional[AbuseConfig] = None,
        *,
        waitlist: Optional[WaitlistPolicy] = None,
        capacity: Optional[int] = None,
        token_attempts: int = 3,
        timeout_seconds: Optional[float] = None,
        token_factory: Optional[Callable[[], str]] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self.config = config or AbuseConfig()
        self.registrations = registration_store
        self._clock = clock or utcnow
        self.rate_limits = RateLimitEvaluator(abuse_store, self.config, clock=self._clock)
        self.blocks = BlockRegistry(abuse_store, clock=self._clock)
        self.violations = ViolationLogger(abuse_store, clock=self._clock)
        self.waitlist = waitlist or CapacityWaitlistPolicy(registration_store, capacity)
        self.token_attempts = max(1, token_attempts)
        self.timeout_seconds = timeout_seconds
        self._token_factory = token_factory or generate_access_token

    async def admit(self, request: RegistrationRequest) -> AdmissionResult:
        """Run the admission sequence. Rejections are returned, not raised.

        The timeout covers every step up to and including the insert. Once
        the row is persisted the request is never rejected; the waitlist
        position lookup that follows is best-effort.
        """
        result = AdmissionResult()
        try:
            if self.timeout_seconds:
                await asyncio.wait_for(self._admit(request, result), self.timeout_seconds)
            else:
                await self._admit(request, result)
        except asyncio.TimeoutError:
            if result.state != AdmissionState.PERSISTED:
                # Treated as not persisted; the unique email guards a client retry
                logger.error(
                    f"{LogColors.STORE_LABEL} admission_timeout: state={result.state.value}, "
                    f"timeout={self.timeout_seconds}s"
                )
                return result.reject(InternalError("admission timed out"))
        if result.state != AdmissionState.PERSISTED:
            return result
        return await self._finish(result)

    async def _admit(self, request: RegistrationRequest, result: AdmissionResult) -> AdmissionResult:
        # Normalize and validate; only a bad email or field rejects
        try:
            email = Identifier(normalize_email(request.email), Dimension.EMAIL)
            full_name = validate_full_name(request.full_name)
            whatsapp = normalize_whatsapp(request.whatsapp_number)
            linkedin = sanitize_url(request.linkedin_url)
            resume = validate_resume_path(request.resume_path)
        except ValidationError as e:
            logger.info({"admission": "validation_failed", "field": e.field})
            return result.reject(e)

        ip = try_normalize(request.ip_address, Dimension.IP)
        client = try_normalize(request.client_fingerprint, Dimension.CLIENT)
        identifiers = [i for i in (email, ip, client) if i is not None]
        if ip is None:
            logger.debug({"admission": "ip_unresolved", "raw": bool(request.ip_address)})

        # Block check
        if self.config.enforce_blocks:
            blocked = await self._check_blocks(identifiers)
            if blocked is not None:
                return result.reject(blocked)
        result.advance(AdmissionState.BLOCK_CHECKED)

        # Rate check
        if self.config.enforce_rate_limits:
            meta = RequestMetadata(
                user_agent=request.user_agent,
                request_path=request.request_path,
                request_id=request.request_id or uuid.uuid4().hex,
                ip_address=ip.value if ip else None,
                email=email.value,
                client_fingerprint=client.value if client else None,
            )
            denied = await self._check_rates(identifiers, meta, result)
            if denied is not None:
                return result.reject(denied)
        result.advance(AdmissionState.RATE_CHECKED)

        # Waitlist decision, made exactly once
        try:
            decision = await self.waitlist.should_waitlist()
            is_waitlist = decision.is_waitlist
        except StoreError as e:
            logger.warning(
                f"{LogColors.STORE_LABEL} waitlist_check_failed: error={type(e).__name__}: {e}; admitting"
            )
            is_waitlist = False
        result.advance(AdmissionState.WAITLIST_DECIDED)

        registration = Registration(
            full_name=full_name,
            email=email.value,
            is_waitlist=is_waitlist,
            access_token=self._token_factory(),
            whatsapp_number=whatsapp,
            linkedin_url=linkedin,
            resume_path=resume,
            ip_address=ip.value if ip else None,
        )
        result.advance(AdmissionState.TOKEN_GENERATED)

        stored = await self._persist(registration)
        if isinstance(stored, RegistrationError):
            return result.reject(stored)
        result.registration = stored
        result.advance(AdmissionState.PERSISTED)
        return result

    async def _finish(self, result: AdmissionResult) -> AdmissionResult:
        stored = result.registration
        if stored.is_waitlist:
            try:
                lookup = self.registrations.waitlist_position(stored.email)
                if self.timeout_seconds:
                    lookup = asyncio.wait_for(lookup, self.timeout_seconds)
                result.waitlist_position = await lookup
            except (StoreError, asyncio.TimeoutError) as e:
                logger.warning({"admission": "waitlist_position_failed", "error": type(e).__name__})
            result.advance(AdmissionState.WAITLISTED)
        else:
            result.advance(AdmissionState.ADMITTED)

        logger.info(
            f"{LogColors.SUCCESS_LABEL} registered: email={Identifier(stored.email, Dimension.EMAIL).masked()}, "
            f"waitlist={stored.is_waitlist}, position={result.waitlist_position}"
        )
        return result

    async def _check_blocks(self, identifiers: List[Identifier]) -> Optional[RegistrationError]:
        for ident in identifiers:
            policy = self.config.policy(ident.dimension)
            if not policy.enforce_blocks:
                continue
            try:
                block = await self.blocks.get_block(ident)
            except StoreError as e:
                if policy.block_check_failure == FailurePolicy.FAIL_OPEN:
                    logger.warning(
                        f"{LogColors.STORE_LABEL} block_check_failed: dimension={ident.dimension.value}, "
                        f"policy=fail_open, error={type(e).__name__}: {e}"
                    )
                    continue
                logger.error(
                    f"{LogColors.STORE_LABEL} block_check_failed: dimension={ident.dimension.value}, "
                    f"policy=fail_closed, error={type(e).__name__}: {e}"
                )
                return InternalError(f"block check failed for {ident.dimension.value}")
            if block is not None:
                logger.warning(
                    f"{LogColors.ABUSE_LABEL} blocked: {ident.dimension.value}={ident.masked()}, "
                    f"reason={block.reason}"
                )
                return Blocked(dimension=ident.dimension.value)
        return None

    async def _check_rates(
        self,
        identifiers: List[Identifier],
        meta: RequestMetadata,
        result: AdmissionResult,
    ) -> Optional[RegistrationError]:
        # Every present dimension is evaluated so each denial gets logged
        for ident in identifiers:
            policy = self.config.policy(ident.dimension)
            try:
                decision = await self.rate_limits.attempt(ident)
            except StoreError as e:
                if policy.rate_check_failure == FailurePolicy.FAIL_OPEN:
                    logger.warning(
                        f"{LogColors.STORE_LABEL} rate_check_failed: dimension={ident.dimension.value}, "
                        f"policy=fail_open, error={type(e).__name__}: {e}"
                    )
                    continue
                logger.error(
                    f"{LogColors.STORE_LABEL} rate_check_failed: dimension={ident.dimension.value}, "
                    f"policy=fail_closed, error={type(e).__name__}: {e}"
                )
                return InternalError(f"rate check failed for {ident.dimension.value}")
            result.decisions.append(decision)

        for decision in result.decisions:
            if decision.over_limit:
                await self.violations.log(decision, meta)

        denying = {d.identifier.dimension: d for d in result.decisions if not d.allowed}
        for dim in _DENIAL_PRECEDENCE:
            if dim in denying:
                d = denying[dim]
                return RateLimitExceeded(
                    dimension=dim.value,
                    retry_after_seconds=d.retry_after_seconds,
                )
        return None

    async def _persist(self, registration: Registration):
        """Insert, regenerating the token on collision. Returns the row or an error."""
        for attempt in range(1, self.token_attempts + 1):
            try:
                return await self.registrations.insert_registration(registration)
            except DuplicateEmailConflict:
                logger.info({"admission": "duplicate_email", "email": registration.email})
                return DuplicateEmail()
            except AccessTokenConflict:
                logger.warning({"admission": "access_token_collision", "attempt": attempt})
                registration.access_token = self._token_factory()
            except StoreError as e:
                logger.error(f"{LogColors.STORE_LABEL} insert_failed: error={type(e).__name__}: {e}")
                return InternalError("registration insert failed")
        return InternalError("access token generation exhausted")


__all__ = [
    "AdmissionController",
    "AdmissionResult",
    "AdmissionState",
    "generate_access_token",
]
