"""Wiring of stores and components shared by the HTTP app and the admin CLI."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Tuple

from jengahacks.abuse.alerts import ViolationAlerts
from jengahacks.abuse.blocks import BlockRegistry
from jengahacks.abuse.config import AbuseConfig
from jengahacks.abuse.escalation import AutoEscalation
from jengahacks.abuse.patterns import PatternDetector
from jengahacks.abuse.ratelimit import Clock, RateLimitEvaluator, utcnow
from jengahacks.abuse.reports import ViolationReports
from jengahacks.captcha import CaptchaVerifier
from jengahacks.config.core import Settings
from jengahacks.database.dbm import DBM
from jengahacks.registration.admission import AdmissionController
from jengahacks.registration.manage import RegistrationManager
from jengahacks.store.base import AbuseStore, RegistrationStore
from jengahacks.store.memory import MemoryAbuseStore, MemoryRegistrationStore
from jengahacks.store.sql import SqlAbuseStore, SqlRegistrationStore

logger = logging.getLogger(__name__)


def open_stores(settings: Settings) -> Tuple[AbuseStore, RegistrationStore, Optional[DBM]]:
    """Postgres stores when a database URL is configured, in-memory otherwise."""
    if settings.database.url:
        dbm = DBM.get_manager(settings)
        return SqlAbuseStore(dbm), SqlRegistrationStore(dbm), dbm
    logger.warning(
        {"services": "memory_stores", "note": "no database url configured; state is per-process"}
    )
    return MemoryAbuseStore(), MemoryRegistrationStore(), None


@dataclass
class Services:
    settings: Settings
    config: AbuseConfig
    abuse_store: AbuseStore
    registration_store: RegistrationStore
    admission: AdmissionController
    manager: RegistrationManager
    rate_limits: RateLimitEvaluator
    blocks: BlockRegistry
    alerts: ViolationAlerts
    patterns: PatternDetector
    escalation: AutoEscalation
    reports: ViolationReports
    captcha: CaptchaVerifier
    database: Optional[DBM] = None

    @classmethod
    def build(
        cls,
        settings: Settings,
        *,
        abuse_store: Optional[AbuseStore] = None,
        registration_store: Optional[RegistrationStore] = None,
        captcha_verifier: Optional[CaptchaVerifier] = None,
        clock: Optional[Clock] = None,
    ) -> "Services":
        database: Optional[DBM] = None
        if abuse_store is None or registration_store is None:
            default_abuse, default_regs, database = open_stores(settings)
            abuse_store = abuse_store or default_abuse
            registration_store = registration_store or default_regs

        clock = clock or utcnow
        config = settings.abuse.to_abuse_config()
        alerts = ViolationAlerts(abuse_store, config, clock=clock)
        blocks = BlockRegistry(abuse_store, clock=clock)
        captcha = captcha_verifier or CaptchaVerifier(
            settings.captcha.secret_key,
            verify_url=settings.captcha.verify_url,
            min_score=settings.captcha.min_score,
            timeout_seconds=settings.captcha.timeout_seconds,
        )
        return cls(
            settings=settings,
            config=config,
            abuse_store=abuse_store,
            registration_store=registration_store,
            admission=AdmissionController(
                abuse_store,
                registration_store,
                config,
                capacity=settings.registration.capacity,
                token_attempts=settings.registration.token_attempts,
                timeout_seconds=settings.api.request_timeout_seconds,
                clock=clock,
            ),
            manager=RegistrationManager(registration_store),
            rate_limits=RateLimitEvaluator(abuse_store, config, clock=clock),
            blocks=blocks,
            alerts=alerts,
            patterns=PatternDetector(abuse_store, config, alerts=alerts, clock=clock),
            escalation=AutoEscalation(abuse_store, config, blocks=blocks, alerts=alerts, clock=clock),
            reports=ViolationReports(abuse_store, clock=clock),
            captcha=captcha,
            database=database,
        )

    async def close(self) -> None:
        if self.database is not None:
            await self.database.dispose()


__all__ = ["Services", "open_stores"]
