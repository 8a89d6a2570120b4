"""Tests for settings loading, validation and redaction."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from jengahacks.abuse.config import Dimension, FailurePolicy
from jengahacks.config.core import Settings, last_yaml_path, load_settings, sanitize_dict


@pytest.fixture(autouse=True)
def _isolated(monkeypatch, tmp_path):
    # No stray config file or env overrides from the host
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv("JENGAHACKS_CONFIG_FILE", raising=False)
    monkeypatch.delenv("DATABASE_URL", raising=False)


class TestDefaults:
    def test_abuse_defaults(self):
        config = load_settings().abuse.to_abuse_config()
        email = config.policies[Dimension.EMAIL]
        ip = config.policies[Dimension.IP]
        client = config.policies[Dimension.CLIENT]

        assert (email.limit, email.window_seconds, email.rate_check_failure) == (2, 3600, FailurePolicy.FAIL_CLOSED)
        assert (ip.limit, ip.block_check_failure) == (5, FailurePolicy.FAIL_OPEN)
        assert client.limit == 10
        assert client.gated is False
        assert config.escalation.violation_threshold == 5
        assert config.patterns.min_distinct_identifiers == 3

    def test_no_database_by_default(self):
        assert Settings().database.url is None


class TestSources:
    def test_env_override(self, monkeypatch):
        monkeypatch.setenv("JENGAHACKS_ABUSE__EMAIL__LIMIT", "4")
        monkeypatch.setenv("JENGAHACKS_API__ADMIN_KEY", "k")
        settings = Settings()
        assert settings.abuse.email.limit == 4
        assert settings.api.admin_key == "k"

    def test_yaml_file(self, monkeypatch, tmp_path):
        path = tmp_path / "custom.yaml"
        path.write_text("registration:\n  capacity: 50\nabuse:\n  ip:\n    limit: 7\n", encoding="utf-8")
        monkeypatch.setenv("JENGAHACKS_CONFIG_FILE", str(path))

        settings = Settings()
        assert settings.registration.capacity == 50
        assert settings.abuse.ip.limit == 7
        assert last_yaml_path() == str(path)

    def test_init_wins_over_env(self, monkeypatch):
        monkeypatch.setenv("JENGAHACKS_REGISTRATION__CAPACITY", "10")
        assert load_settings(registration={"capacity": 3}).registration.capacity == 3


class TestValidation:
    def test_rejects_sync_database_url(self):
        with pytest.raises(ValidationError):
            Settings(database={"url": "postgresql://u:p@db/jenga"})

    def test_composes_url(self):
        settings = Settings(database={"user": "jenga", "password": "pw", "host": "db", "name": "hack"})
        assert settings.database.url == "postgresql+asyncpg://jenga:pw@db:5432/hack"

    @pytest.mark.parametrize("limit", [0, -1])
    def test_rejects_non_positive_limits(self, limit):
        with pytest.raises(ValidationError):
            Settings(abuse={"email": {"limit": limit}})

    def test_rejects_bad_timeout(self):
        with pytest.raises(ValidationError):
            Settings(api={"request_timeout_seconds": 0})


class TestSanitize:
    def test_redacts_secrets(self):
        data = Settings(
            api={"admin_key": "hunter2"},
            database={"url": "postgresql+asyncpg://jenga:pw@db:5432/hack"},
            captcha={"secret_key": "recaptcha"},
        ).model_dump()
        clean = sanitize_dict(data)
        assert clean["api"]["admin_key"] == "***"
        assert clean["captcha"]["secret_key"] == "***"
        assert clean["database"]["url"] == "postgresql+asyncpg://jenga:***@db:5432/hack"
        assert clean["abuse"]["email"]["limit"] == 2
