"""Tests for ``DBM`` guards that do not need a live database."""

from __future__ import annotations

import pytest
from sqlalchemy import text

from jengahacks.config.core import Settings
from jengahacks.database.dbm import DBM
from jengahacks.database.schema import Base

URL = "postgresql+asyncpg://jenga:pw@localhost:5432/hack"


@pytest.fixture
def dbm():
    return DBM(Settings(database={"url": URL}), use_null_pool=True)


class TestDBM:
    def test_requires_url(self, monkeypatch):
        monkeypatch.delenv("DATABASE_URL", raising=False)
        with pytest.raises(ValueError):
            DBM(Settings(database={"url": None}))

    @pytest.mark.asyncio
    async def test_rejects_raw_sql(self, dbm):
        with pytest.raises(TypeError):
            await dbm.read("SELECT 1")
        await dbm.dispose()

    @pytest.mark.asyncio
    async def test_write_requires_params(self, dbm):
        with pytest.raises(ValueError):
            await dbm.write(text("DELETE FROM rate_limit_counters"))
        await dbm.dispose()


class TestSchema:
    def test_tables(self):
        assert set(Base.metadata.tables) == {
            "registrations",
            "rate_limit_counters",
            "blocked_identifiers",
            "rate_limit_violations",
            "violation_alerts",
            "violation_patterns",
        }

    def test_unique_constraints(self):
        registrations = Base.metadata.tables["registrations"]
        names = {c.name for c in registrations.constraints} | {i.name for i in registrations.indexes}
        assert {"uq_registrations_email", "uq_registrations_access_token"} <= names

        blocks = Base.metadata.tables["blocked_identifiers"]
        active = next(i for i in blocks.indexes if i.name == "uq_blocked_identifiers_active")
        assert active.unique
        assert active.dialect_options["postgresql"]["where"] is not None
