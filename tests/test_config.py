"""
Tests for Settings / AgentSettings validation.
"""
from __future__ import annotations

import pytest
from pydantic import ValidationError

from config import AgentSettings, Settings


class TestSettings:
    def test_ca_preset_resolves_directory(self):
        s = Settings(CA_PROVIDER="letsencrypt_staging")
        assert s.ACME_DIRECTORY_URL == "https://acme-staging-v02.api.letsencrypt.org/directory"

    def test_custom_ca_requires_directory(self):
        with pytest.raises(ValidationError, match="ACME_DIRECTORY_URL"):
            Settings(CA_PROVIDER="custom", ACME_DIRECTORY_URL="")

    def test_custom_ca_directory_kept(self):
        s = Settings(CA_PROVIDER="custom", ACME_DIRECTORY_URL="https://localhost:14000/dir")
        assert s.ACME_DIRECTORY_URL == "https://localhost:14000/dir"

    @pytest.mark.parametrize("value", ["3:00", "24:00", "03:60", "noon"])
    def test_schedule_time_format(self, value):
        with pytest.raises(ValidationError):
            Settings(RENEW_SCHEDULE_TIME=value)

    @pytest.mark.parametrize("field", [
        "CHALLENGE_TIMEOUT_SECONDS", "RETRY_SWEEP_MINUTES", "DOWNLOAD_RATE_LIMIT", "AGENT_DEFAULT_POLL_INTERVAL",
    ])
    def test_positive_fields(self, field):
        with pytest.raises(ValidationError):
            Settings(**{field: 0})

    @pytest.mark.parametrize("key", ["abcd", "zz" * 32])
    def test_encryption_key_validated(self, key):
        with pytest.raises(ValidationError):
            Settings(ENCRYPTION_KEY=key)

    def test_webhook_urls_from_comma_separated_env(self, monkeypatch):
        monkeypatch.setenv("NOTIFY_WEBHOOK_URLS", "https://a.example/hook, https://b.example/hook")
        assert Settings().NOTIFY_WEBHOOK_URLS == ["https://a.example/hook", "https://b.example/hook"]

    def test_public_url(self):
        assert Settings(SERVER_HOST="0.0.0.0", SERVER_PORT=9000).public_url == "http://localhost:9000"
        assert Settings(PUBLIC_URL="https://certs.example.com/").public_url == "https://certs.example.com"


class TestAgentSettings:
    def test_env_prefix(self, monkeypatch):
        monkeypatch.setenv("LETSYNC_AGENT_STATE_PATH", "/tmp/agent-state.json")
        monkeypatch.setenv("LETSYNC_AGENT_ALLOWED_PATHS", "/srv/certs,/opt/tls")
        s = AgentSettings()
        assert s.STATE_PATH == "/tmp/agent-state.json"
        assert s.ALLOWED_PATHS == ["/srv/certs", "/opt/tls"]
