"""
Smoke tests for the letsync and letsync-agent command lines.

The server CLI runs against an in-memory store; nothing touches the
network or the configured database.
"""
from __future__ import annotations

from unittest.mock import MagicMock, patch

import pytest

import main as cli
from agent import cli as agent_cli
from lifecycle.credentials import decrypt_credentials
from lifecycle.models import ProviderType


@pytest.fixture()
def run(store, encryption_key, monkeypatch):
    from config import settings

    monkeypatch.setattr(settings, "ENCRYPTION_KEY", encryption_key)
    monkeypatch.setattr(settings, "AGENT_SECRET", "cli-test-secret")
    monkeypatch.setattr(settings, "PUBLIC_URL", "https://certs.example.com")
    monkeypatch.setattr(cli, "open_store", lambda: store)
    return cli.main


class TestProviderCommands:
    def test_add_encrypts_credentials(self, run, store, encryption_key, capsys):
        assert run(["provider", "add", "pod", "dnspod", "--cred", "api_id=1", "--cred", "api_token=t0k"]) == 0

        provider = store.get_provider_by_name("pod")
        assert provider.type == ProviderType.DNSPOD
        assert "t0k" not in provider.credentials
        assert decrypt_credentials(provider.credentials, encryption_key) == {"api_id": "1", "api_token": "t0k"}
        assert "Added DNS provider" in capsys.readouterr().out

    def test_missing_credential_rejected(self, run, store):
        assert run(["provider", "add", "gd", "godaddy", "--cred", "api_key=k"]) == 1
        assert store.list_providers() == []

    def test_malformed_credential_rejected(self, run, store):
        assert run(["provider", "add", "pod", "dnspod", "--cred", "api_id"]) == 1

    def test_delete_in_use_refused(self, run, store, provider_record, certificate):
        assert run(["provider", "delete", str(provider_record.id)]) == 1
        assert store.get_provider(provider_record.id)


class TestCertificateCommands:
    def test_add_and_list(self, run, store, provider_record, capsys):
        assert run(["cert", "add", "Example.ORG", "--san", "www.example.org", "--provider", "cf-main"]) == 0

        cert = store.list_certificates()[0]
        assert cert.domain == "example.org"
        assert cert.san == ["www.example.org"]

        assert run(["cert", "list"]) == 0
        assert "never issued" in capsys.readouterr().out

    def test_unknown_provider(self, run):
        assert run(["cert", "add", "example.org", "--provider", "nope"]) == 1

    def test_logs(self, run, store, certificate, capsys):
        from lifecycle.models import TaskStatus, TaskType
        from lifecycle.task_log import TaskLogger

        tasks = TaskLogger(store)
        task_id = tasks.start(certificate.id, TaskType.ISSUE, "example.com")
        tasks.finish(task_id, TaskStatus.FAILED)

        assert run(["cert", "logs", str(certificate.id)]) == 0
        out = capsys.readouterr().out
        assert "issue failed" in out
        assert "Starting certificate issuance for example.com" in out


class TestAgentCommands:
    def test_add_prints_connect_url(self, run, store, capsys):
        assert run(["agent", "add", "web-01", "--poll-interval", "120"]) == 0

        agent = store.list_agents()[0]
        assert agent.poll_interval == 120
        out = capsys.readouterr().out
        assert f"https://certs.example.com/agent/{agent.uuid}/{agent.signature}" in out

    def test_bind_and_unbind(self, run, store, certificate):
        run(["agent", "add", "web-01"])
        agent = store.list_agents()[0]

        assert run([
            "agent", "bind", str(agent.id), str(certificate.id),
            "--path", "/etc/nginx/ssl/example.com", "--key-file", "example.key",
            "--reload", "systemctl reload nginx",
        ]) == 0
        binding = store.get_binding(agent.id, certificate.id)
        assert binding.file_mapping.key == "example.key"
        assert binding.reload_cmd == "systemctl reload nginx"

        assert run(["agent", "unbind", str(agent.id), str(certificate.id)]) == 0
        assert store.list_bindings_for_agent(agent.id) == []


class TestSweepCommands:
    @pytest.mark.parametrize("command,method", [("sweep", "daily_sweep"), ("retry", "retry_sweep")])
    def test_exit_code_reflects_failures(self, run, monkeypatch, command, method):
        scheduler = MagicMock()
        getattr(scheduler, method).return_value = {"renewed": [], "failed": ["example.com"], "skipped": []}
        monkeypatch.setattr(cli, "build_scheduler", lambda store: scheduler)

        assert run([command]) == 1
        getattr(scheduler, method).assert_called_once_with()

    def test_serve_requires_agent_secret(self, run, monkeypatch):
        from config import settings

        monkeypatch.setattr(settings, "AGENT_SECRET", "")
        with patch("uvicorn.run") as uvicorn_run:
            assert run(["serve"]) == 1
        uvicorn_run.assert_not_called()


class TestAgentCli:
    def test_once_runs_single_cycle(self):
        runner = MagicMock()
        with patch.object(agent_cli, "build_runner", return_value=runner) as build:
            assert agent_cli.main(["--once", "https://certs.example.com/agent/u/s"]) == 0
        build.assert_called_once_with("https://certs.example.com/agent/u/s")
        runner.run_cycle.assert_called_once_with()
        runner.run_forever.assert_not_called()
