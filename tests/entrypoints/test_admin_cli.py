"""Tests for the operator CLI."""

from __future__ import annotations

import csv
import io
import json
from datetime import timedelta

import pytest

from jengahacks.abuse.config import Dimension
from jengahacks.abuse.identifiers import Identifier
from jengahacks.abuse.models import ViolationRecord
from jengahacks.config.core import Settings
from jengahacks.entrypoints.admin import build_parser, run
from jengahacks.services import Services


@pytest.fixture
def services(abuse_store, registration_store, clock):
    return Services.build(
        Settings(),
        abuse_store=abuse_store,
        registration_store=registration_store,
        clock=clock,
    )


async def _violations(store, clock, identifier, count, dimension=Dimension.EMAIL):
    for i in range(count):
        await store.append_violation(
            ViolationRecord(
                identifier=identifier,
                dimension=dimension,
                attempt_count=3,
                limit_threshold=2,
                created_at=clock() - timedelta(minutes=i),
                request_id=f"{identifier}-{i}",
            )
        )


async def _run(services, *argv):
    out = io.StringIO()
    code = await run(build_parser().parse_args(list(argv)), services, out=out)
    return code, out.getvalue()


class TestParser:
    def test_block_requires_dimension_and_reason(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["block", "203.0.113.9"])

    def test_rejects_unknown_dimension(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["unblock", "x", "--dimension", "phone"])

    def test_export_parses_timestamps(self):
        args = build_parser().parse_args(["export", "--start", "2026-03-01T00:00:00", "--dimension", "IP"])
        assert args.start.year == 2026
        assert args.dimension == Dimension.IP
        assert args.format == "csv"


class TestCommands:
    @pytest.mark.asyncio
    async def test_block_and_unblock(self, services):
        code, out = await _run(services, "block", "Spam@Example.com", "--dimension", "email", "--reason", "spam")
        assert code == 0
        payload = json.loads(out)
        assert payload["created"] is True
        assert payload["block"]["identifier"] == "spam@example.com"
        assert payload["block"]["blocked_by"] == "admin-cli"

        code, out = await _run(services, "unblock", "spam@example.com", "--dimension", "email")
        assert code == 0
        assert json.loads(out) == {"unblocked": True}
        assert await services.blocks.get_block(Identifier("spam@example.com", Dimension.EMAIL)) is None

    @pytest.mark.asyncio
    async def test_malformed_identifier_exits_2(self, services):
        code, out = await _run(services, "block", "not-an-email", "--dimension", "email", "--reason", "spam")
        assert code == 2
        assert out == ""

    @pytest.mark.asyncio
    async def test_unparsable_ip_exits_2(self, services):
        code, out = await _run(services, "block", "not-an-ip", "--dimension", "ip", "--reason", "spam")
        assert code == 2
        assert out == ""
        assert await services.blocks.list_blocks() == []

        code, _ = await _run(services, "unblock", "garbage", "--dimension", "ip")
        assert code == 2

    @pytest.mark.asyncio
    async def test_escalate(self, services, abuse_store, clock):
        await _violations(abuse_store, clock, "a@x.com", 5)
        await _violations(abuse_store, clock, "b@x.com", 2)

        code, out = await _run(services, "escalate")
        assert code == 0
        payload = json.loads(out)
        assert payload["count"] == 1
        assert payload["blocked"][0]["identifier"] == "a@x.com"

        code, out = await _run(services, "escalate", "--threshold", "2")
        assert json.loads(out)["count"] == 1

    @pytest.mark.asyncio
    async def test_alerts_check(self, services, abuse_store, clock):
        await _violations(abuse_store, clock, "a@x.com", 3)
        code, out = await _run(services, "alerts", "--check")
        payload = json.loads(out)
        assert code == 0
        assert payload["raised"] == 1
        assert payload["alerts"][0]["alert_type"] == "repeated_violator"

    @pytest.mark.asyncio
    async def test_patterns_detect_then_list(self, services, abuse_store, clock):
        for i in range(6):
            await abuse_store.append_violation(
                ViolationRecord(
                    identifier=f"user{i}@x.com",
                    dimension=Dimension.EMAIL,
                    attempt_count=3,
                    limit_threshold=2,
                    created_at=clock() - timedelta(minutes=i),
                    ip_address="203.0.113.9",
                )
            )
        code, out = await _run(services, "patterns")
        assert code == 0
        assert json.loads(out)["count"] >= 1

        code, out = await _run(services, "patterns", "--list")
        assert json.loads(out)["patterns"][0]["anchor"] == "203.0.113.9"

    @pytest.mark.asyncio
    async def test_export_to_stdout(self, services, abuse_store, clock):
        await _violations(abuse_store, clock, "a@x.com", 2)
        await _violations(abuse_store, clock, "203.0.113.9", 1, Dimension.IP)

        code, out = await _run(services, "export", "--dimension", "email")
        assert code == 0
        rows = list(csv.reader(io.StringIO(out)))
        assert len(rows) == 3

        code, out = await _run(services, "export", "--format", "json", "--limit", "1")
        assert len(json.loads(out)) == 1

    @pytest.mark.asyncio
    async def test_export_to_file(self, services, abuse_store, clock, tmp_path):
        await _violations(abuse_store, clock, "a@x.com", 1)
        target = tmp_path / "violations.csv"
        code, out = await _run(services, "export", "--output", str(target))
        assert code == 0
        assert out == ""
        assert "a@x.com" in target.read_text(encoding="utf-8")

    @pytest.mark.asyncio
    async def test_prune_counters(self, services, abuse_store, clock):
        email = Identifier("a@x.com", Dimension.EMAIL)
        old = clock() - timedelta(hours=2)
        await abuse_store.increment_attempt(email, clock(), clock() + timedelta(hours=1))
        # Increments only prune windows closed before their own start
        await abuse_store.increment_attempt(email, old, old + timedelta(hours=1))

        code, out = await _run(services, "prune-counters")
        assert code == 0
        assert json.loads(out) == {"pruned": 1}
        assert await abuse_store.get_attempts(email, clock()) == 1

        code, out = await _run(services, "prune-counters")
        assert json.loads(out) == {"pruned": 0}

    @pytest.mark.asyncio
    async def test_init_db_without_database(self, services):
        code, _ = await _run(services, "init-db")
        assert code == 2
