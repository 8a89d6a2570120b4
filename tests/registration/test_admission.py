"""Tests for the admission controller state machine."""

from __future__ import annotations

import asyncio
import itertools

import pytest

from jengahacks.abuse.blocks import BlockRegistry
from jengahacks.abuse.config import AbuseConfig, Dimension, FailurePolicy
from jengahacks.abuse.identifiers import Identifier
from jengahacks.abuse.ratelimit import RateLimitEvaluator
from jengahacks.errors import ErrorCode, InternalError
from jengahacks.registration.admission import AdmissionController, AdmissionState
from jengahacks.registration.models import RegistrationRequest
from jengahacks.store.base import StoreError
from jengahacks.store.memory import MemoryAbuseStore, MemoryRegistrationStore

IP = "203.0.113.9"


class FlakyAbuseStore(MemoryAbuseStore):
    """Memory store whose block/counter/violation calls fail for chosen dimensions."""

    def __init__(self, *, block_fail=(), rate_fail=(), log_fail=False):
        super().__init__()
        self.block_fail = set(block_fail)
        self.rate_fail = set(rate_fail)
        self.log_fail = log_fail

    async def get_active_block(self, identifier, now):
        if identifier.dimension in self.block_fail:
            raise StoreError("block store unreachable")
        return await super().get_active_block(identifier, now)

    async def increment_attempt(self, identifier, window_start, window_end):
        if identifier.dimension in self.rate_fail:
            raise StoreError("counter store unreachable")
        return await super().increment_attempt(identifier, window_start, window_end)

    async def append_violation(self, record):
        if self.log_fail:
            raise StoreError("violation log unreachable")
        return await super().append_violation(record)


class FlakyRegistrationStore(MemoryRegistrationStore):
    def __init__(self, *, count_fail=False, insert_fail=False, insert_delay=0.0, position_delay=0.0):
        super().__init__()
        self.position_delay = position_delay
        self.count_fail = count_fail
        self.insert_fail = insert_fail
        self.insert_delay = insert_delay

    async def count_active(self, *, include_waitlist=False):
        if self.count_fail:
            raise StoreError("count failed")
        return await super().count_active(include_waitlist=include_waitlist)

    async def insert_registration(self, registration):
        if self.insert_delay:
            await asyncio.sleep(self.insert_delay)
        if self.insert_fail:
            raise StoreError("insert failed")
        return await super().insert_registration(registration)

    async def waitlist_position(self, email):
        if self.position_delay:
            await asyncio.sleep(self.position_delay)
        return await super().waitlist_position(email)


def _request(email="a@x.com", ip=IP, **extra):
    return RegistrationRequest(full_name="Amina Otieno", email=email, ip_address=ip, **extra)


@pytest.fixture
def controller(abuse_store, registration_store, clock):
    return AdmissionController(abuse_store, registration_store, clock=clock)


class TestHappyPath:
    @pytest.mark.asyncio
    async def test_admitted_trail(self, controller):
        result = await controller.admit(_request())
        assert result.state == AdmissionState.ADMITTED
        assert result.trail == [
            AdmissionState.RECEIVED,
            AdmissionState.BLOCK_CHECKED,
            AdmissionState.RATE_CHECKED,
            AdmissionState.WAITLIST_DECIDED,
            AdmissionState.TOKEN_GENERATED,
            AdmissionState.PERSISTED,
            AdmissionState.ADMITTED,
        ]
        payload = result.to_payload()
        assert payload["success"] is True
        assert payload["data"]["email"] == "a@x.com"
        assert payload["data"]["is_waitlist"] is False
        assert payload["data"]["access_token"]
        assert payload["data"]["waitlist_position"] is None

    @pytest.mark.asyncio
    async def test_fields_are_normalized_before_persisting(self, controller, registration_store):
        result = await controller.admit(
            RegistrationRequest(
                full_name="  Amina   Otieno ",
                email="  Amina@Example.COM ",
                whatsapp_number="+254 712 345 678",
                linkedin_url="linkedin.com/in/amina",
                resume_path="resumes/amina.pdf",
                ip_address=IP,
            )
        )
        stored = await registration_store.get_by_token(result.registration.access_token)
        assert stored.full_name == "Amina Otieno"
        assert stored.email == "amina@example.com"
        assert stored.whatsapp_number == "+254712345678"
        assert stored.linkedin_url == "https://linkedin.com/in/amina"
        assert stored.ip_address == IP


class TestValidation:
    @pytest.mark.asyncio
    async def test_malformed_email_rejected_without_counting(self, controller, abuse_store, clock):
        result = await controller.admit(_request(email="not-an-email"))
        assert result.state == AdmissionState.REJECTED
        assert result.code == "VALIDATION_ERROR"
        assert result.trail == [AdmissionState.RECEIVED, AdmissionState.REJECTED]
        info = await RateLimitEvaluator(abuse_store, clock=clock).check(Identifier(IP, Dimension.IP))
        assert info.attempts == 0

    @pytest.mark.asyncio
    async def test_bad_optional_field_rejected(self, controller):
        result = await controller.admit(_request(whatsapp_number="call me"))
        assert result.code == "VALIDATION_ERROR"
        assert result.to_payload()["field"] == "whatsapp_number"


class TestRateLimits:
    @pytest.mark.asyncio
    async def test_same_email_three_times_in_an_hour(self, controller, abuse_store):
        """1st admitted, 2nd passes the rate gate, 3rd is rate limited (429)."""
        first = await controller.admit(_request())
        second = await controller.admit(_request())
        third = await controller.admit(_request())

        assert first.state == AdmissionState.ADMITTED
        # The email is already taken; the rate gate itself let it through
        assert AdmissionState.RATE_CHECKED in second.trail
        assert second.code == "DUPLICATE_EMAIL"
        assert third.code == "RATE_LIMIT_EXCEEDED"
        assert third.error.status_code == 429
        assert third.error.dimension == "email"
        assert third.error.retry_after_seconds == 3600

        violations = await abuse_store.list_violations()
        assert [(v.dimension, v.attempt_count) for v in violations] == [(Dimension.EMAIL, 3)]
        assert violations[0].ip_address == IP
        assert violations[0].request_id

    @pytest.mark.asyncio
    async def test_ip_limit_across_distinct_emails(self, controller):
        results = [await controller.admit(_request(email=f"user{i}@x.com")) for i in range(6)]
        assert [r.state for r in results[:5]] == [AdmissionState.ADMITTED] * 5
        assert results[5].code == "RATE_LIMIT_EXCEEDED"
        assert results[5].error.dimension == "ip"

    @pytest.mark.asyncio
    async def test_email_denial_reported_when_both_deny(self, abuse_store, registration_store, clock):
        config = AbuseConfig()
        config.policy(Dimension.IP).limit = 2
        controller = AdmissionController(abuse_store, registration_store, config, clock=clock)
        for _ in range(2):
            await controller.admit(_request())
        result = await controller.admit(_request())

        assert result.error.dimension == "email"
        logged = {v.dimension for v in await abuse_store.list_violations()}
        assert logged == {Dimension.EMAIL, Dimension.IP}

    @pytest.mark.asyncio
    async def test_concurrent_attempts_admit_exactly_limit(self, controller):
        results = await asyncio.gather(*(controller.admit(_request(email=f"c{i}@x.com")) for i in range(6)))
        admitted = [r for r in results if r.admitted]
        limited = [r for r in results if r.code == "RATE_LIMIT_EXCEEDED"]
        assert len(admitted) == 5
        assert len(limited) == 1

    @pytest.mark.asyncio
    async def test_client_fingerprint_never_denies(self, controller, abuse_store):
        """Over-limit fingerprints are logged for pattern detection only."""
        results = [
            await controller.admit(_request(email=f"f{i}@x.com", ip=f"198.51.100.{i}", client_fingerprint="fp-1"))
            for i in range(11)
        ]
        assert all(r.admitted for r in results)
        violations = await abuse_store.list_violations(dimension=Dimension.CLIENT)
        assert len(violations) == 1
        assert violations[0].attempt_count == 11

    @pytest.mark.asyncio
    async def test_rate_limits_can_be_disabled(self, abuse_store, registration_store, clock):
        config = AbuseConfig(enforce_rate_limits=False)
        controller = AdmissionController(abuse_store, registration_store, config, clock=clock)
        results = [await controller.admit(_request(email=f"u{i}@x.com")) for i in range(8)]
        assert all(r.admitted for r in results)


class TestBlocks:
    @pytest.mark.asyncio
    async def test_blocked_ip_rejects_fresh_email(self, controller, abuse_store, clock):
        """A blocked IP is rejected even when the email alone would pass."""
        await BlockRegistry(abuse_store, clock=clock).block(Identifier(IP, Dimension.IP), "spam", "admin")

        result = await controller.admit(_request(email="fresh@x.com"))

        assert result.code == "BLOCKED"
        assert result.error.status_code == 403
        assert result.trail == [AdmissionState.RECEIVED, AdmissionState.REJECTED]
        # Nothing extra is logged or counted
        assert await abuse_store.list_violations() == []
        email = Identifier("fresh@x.com", Dimension.EMAIL)
        assert (await RateLimitEvaluator(abuse_store, clock=clock).check(email)).attempts == 0

    @pytest.mark.asyncio
    async def test_blocked_email(self, controller, abuse_store, clock):
        await BlockRegistry(abuse_store, clock=clock).block(Identifier("a@x.com", Dimension.EMAIL), "fraud", "admin")
        result = await controller.admit(_request(email=" A@X.com "))
        assert result.code == "BLOCKED"
        assert result.error.dimension == "email"

    @pytest.mark.asyncio
    async def test_client_blocks_not_enforced(self, controller, abuse_store, clock):
        await BlockRegistry(abuse_store, clock=clock).block(Identifier("fp-1", Dimension.CLIENT), "noise", "admin")
        result = await controller.admit(_request(client_fingerprint="fp-1"))
        assert result.admitted


class TestUnresolvedIp:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("ip", [None, "", "not-an-ip"])
    async def test_ip_dimension_skipped(self, controller, ip):
        """Without a resolvable IP only email and block checks apply."""
        results = [await controller.admit(_request(email=f"n{i}@x.com", ip=ip)) for i in range(7)]
        assert all(r.admitted for r in results)
        assert {d.identifier.dimension for d in results[0].decisions} == {Dimension.EMAIL}
        assert results[0].registration.ip_address is None


class TestFailurePolicies:
    @pytest.mark.asyncio
    async def test_email_block_check_fails_closed(self, registration_store, clock):
        store = FlakyAbuseStore(block_fail={Dimension.EMAIL})
        result = await AdmissionController(store, registration_store, clock=clock).admit(_request())
        assert result.code == "INTERNAL_ERROR"
        assert result.to_payload()["error"] == InternalError.default_message

    @pytest.mark.asyncio
    async def test_email_block_check_can_fail_open(self, registration_store, clock):
        config = AbuseConfig()
        config.policy(Dimension.EMAIL).block_check_failure = FailurePolicy.FAIL_OPEN
        store = FlakyAbuseStore(block_fail={Dimension.EMAIL})
        result = await AdmissionController(store, registration_store, config, clock=clock).admit(_request())
        assert result.admitted

    @pytest.mark.asyncio
    async def test_ip_failures_fail_open(self, registration_store, clock):
        store = FlakyAbuseStore(block_fail={Dimension.IP}, rate_fail={Dimension.IP})
        result = await AdmissionController(store, registration_store, clock=clock).admit(_request())
        assert result.admitted
        assert {d.identifier.dimension for d in result.decisions} == {Dimension.EMAIL}

    @pytest.mark.asyncio
    async def test_email_rate_check_fails_closed(self, registration_store, clock):
        store = FlakyAbuseStore(rate_fail={Dimension.EMAIL})
        result = await AdmissionController(store, registration_store, clock=clock).admit(_request())
        assert result.code == "INTERNAL_ERROR"

    @pytest.mark.asyncio
    async def test_violation_log_failure_keeps_rate_limit_response(self, registration_store, clock):
        store = FlakyAbuseStore(log_fail=True)
        controller = AdmissionController(store, registration_store, clock=clock)
        for _ in range(2):
            await controller.admit(_request())
        result = await controller.admit(_request())
        assert result.code == "RATE_LIMIT_EXCEEDED"

    @pytest.mark.asyncio
    async def test_waitlist_failure_admits(self, abuse_store, clock):
        registrations = FlakyRegistrationStore(count_fail=True)
        controller = AdmissionController(abuse_store, registrations, capacity=1, clock=clock)
        result = await controller.admit(_request())
        assert result.state == AdmissionState.ADMITTED
        assert result.registration.is_waitlist is False

    @pytest.mark.asyncio
    async def test_insert_failure_is_internal_error(self, abuse_store, clock):
        registrations = FlakyRegistrationStore(insert_fail=True)
        result = await AdmissionController(abuse_store, registrations, clock=clock).admit(_request())
        assert result.code == "INTERNAL_ERROR"
        assert result.registration is None

    @pytest.mark.asyncio
    async def test_timeout_is_not_persisted(self, abuse_store, clock):
        registrations = FlakyRegistrationStore(insert_delay=1.0)
        controller = AdmissionController(abuse_store, registrations, timeout_seconds=0.05, clock=clock)
        result = await controller.admit(_request())
        assert result.code == "INTERNAL_ERROR"
        assert result.registration is None
        assert await registrations.count_active(include_waitlist=True) == 0

    @pytest.mark.asyncio
    async def test_slow_position_lookup_keeps_persisted_row(self, abuse_store, clock):
        registrations = FlakyRegistrationStore(position_delay=0.2)
        controller = AdmissionController(
            abuse_store, registrations, capacity=0, timeout_seconds=0.05, clock=clock
        )
        result = await controller.admit(_request())

        assert result.state == AdmissionState.WAITLISTED
        assert result.error is None
        assert AdmissionState.REJECTED not in result.trail
        assert result.trail[-2:] == [AdmissionState.PERSISTED, AdmissionState.WAITLISTED]
        assert result.registration.access_token
        assert result.waitlist_position is None
        assert await registrations.count_active(include_waitlist=True) == 1


class TestDuplicatesAndTokens:
    @pytest.mark.asyncio
    async def test_concurrent_same_email_one_row(self, controller, registration_store):
        """Two simultaneous inserts of one email: one admitted, one DUPLICATE_EMAIL."""
        first, second = await asyncio.gather(
            controller.admit(_request(email="new@x.com", ip="198.51.100.1")),
            controller.admit(_request(email="new@x.com", ip="198.51.100.2")),
        )
        codes = sorted([first.code or "OK", second.code or "OK"])
        assert codes == ["DUPLICATE_EMAIL", "OK"]
        rejected = first if first.code else second
        assert rejected.error.status_code == 409
        assert await registration_store.count_active(include_waitlist=True) == 1

    @pytest.mark.asyncio
    async def test_token_collision_regenerates(self, abuse_store, registration_store, clock):
        tokens = iter(["tok-1", "tok-1", "tok-2"])
        controller = AdmissionController(
            abuse_store, registration_store, token_factory=lambda: next(tokens), clock=clock
        )
        await controller.admit(_request(email="one@x.com"))
        result = await controller.admit(_request(email="two@x.com"))
        assert result.admitted
        assert result.registration.access_token == "tok-2"

    @pytest.mark.asyncio
    async def test_token_attempts_exhausted(self, abuse_store, registration_store, clock):
        controller = AdmissionController(
            abuse_store,
            registration_store,
            token_attempts=2,
            token_factory=lambda: "same-token",
            clock=clock,
        )
        await controller.admit(_request(email="one@x.com"))
        result = await controller.admit(_request(email="two@x.com"))
        assert result.code == ErrorCode.INTERNAL_ERROR.value


class TestWaitlist:
    @pytest.mark.asyncio
    async def test_capacity_waitlists_with_position(self, abuse_store, registration_store, clock):
        controller = AdmissionController(abuse_store, registration_store, capacity=2, clock=clock)
        ips = (f"198.51.100.{i}" for i in itertools.count(1))
        results = [await controller.admit(_request(email=f"w{i}@x.com", ip=next(ips))) for i in range(4)]

        assert [r.state for r in results] == [
            AdmissionState.ADMITTED,
            AdmissionState.ADMITTED,
            AdmissionState.WAITLISTED,
            AdmissionState.WAITLISTED,
        ]
        assert [r.waitlist_position for r in results[2:]] == [1, 2]
        payload = results[3].to_payload()
        assert payload["data"]["is_waitlist"] is True
        assert payload["data"]["waitlist_position"] == 2
