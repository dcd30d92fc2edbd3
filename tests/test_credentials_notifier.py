"""
Tests for sealed DNS credentials, the task logger and renewal notifiers.
"""
from __future__ import annotations

import json
from unittest.mock import Mock

import pytest
import requests
import responses as resp_lib

from lifecycle.credentials import decrypt_credentials, encrypt_credentials, generate_key
from lifecycle.errors import ProviderError, TaskAlreadyFinished
from lifecycle.models import TaskStatus, TaskType
from lifecycle.notifier import LogNotifier, MultiNotifier, WebhookNotifier
from lifecycle.task_log import TaskLogger


class TestCredentials:
    def test_roundtrip(self, encryption_key):
        creds = {"access_key_id": "AKIA123", "secret_access_key": "s3cr3t"}
        blob = encrypt_credentials(creds, encryption_key)
        assert "s3cr3t" not in blob
        assert decrypt_credentials(blob, encryption_key) == creds

    def test_fresh_nonce_per_blob(self, encryption_key):
        creds = {"api_token": "t"}
        assert encrypt_credentials(creds, encryption_key) != encrypt_credentials(creds, encryption_key)

    def test_wrong_key(self, encryption_key):
        blob = encrypt_credentials({"api_token": "t"}, encryption_key)
        with pytest.raises(ProviderError, match="could not be decrypted"):
            decrypt_credentials(blob, generate_key())

    def test_tampered_blob(self, encryption_key):
        blob = encrypt_credentials({"api_token": "t"}, encryption_key)
        flipped = blob[:-4] + ("AAAA" if blob[-4:] != "AAAA" else "BBBB")
        with pytest.raises(ProviderError):
            decrypt_credentials(flipped, encryption_key)

    @pytest.mark.parametrize("blob", ["not base64!!", "AAAA"])
    def test_malformed_blob(self, encryption_key, blob):
        with pytest.raises(ProviderError):
            decrypt_credentials(blob, encryption_key)

    @pytest.mark.parametrize("key", ["zz" * 32, "ab" * 10])
    def test_invalid_key(self, key):
        with pytest.raises(ProviderError, match="encryption key"):
            encrypt_credentials({"a": "b"}, key)

    def test_generated_key_is_32_bytes_hex(self):
        assert len(bytes.fromhex(generate_key())) == 32


class TestTaskLogger:
    def test_start_opens_running_task(self, store, certificate):
        tasks = TaskLogger(store)
        task_id = tasks.start(certificate.id, TaskType.ISSUE, "example.com")

        assert store.get_task_status(task_id).status == TaskStatus.RUNNING
        assert store.list_task_logs(task_id)[0].message == "Starting certificate issuance for example.com"

    def test_levels_and_finish(self, store, certificate):
        tasks = TaskLogger(store)
        task_id = tasks.start(certificate.id, TaskType.RENEW)
        tasks.warn(task_id, "slow DNS")
        tasks.error(task_id, "gave up")
        tasks.finish(task_id, TaskStatus.FAILED)

        assert [e.level for e in store.list_task_logs(task_id)] == ["info", "warn", "error"]
        with pytest.raises(TaskAlreadyFinished):
            tasks.finish(task_id, TaskStatus.COMPLETED)

    def test_mirrored_to_python_logging(self, store, certificate, caplog):
        tasks = TaskLogger(store)
        with caplog.at_level("INFO", logger="lifecycle.task_log"):
            tasks.start(certificate.id, TaskType.RENEW, "example.com")
        assert "Starting certificate renewal for example.com" in caplog.text


class TestNotifiers:
    @resp_lib.activate
    def test_webhook_payload(self):
        resp_lib.add(resp_lib.POST, "https://hooks.example.com/a", json={})
        WebhookNotifier(["https://hooks.example.com/a"]).send("Certificate renewed", "ok")

        payload = json.loads(resp_lib.calls[0].request.body)
        assert payload["title"] == "Certificate renewed"
        assert payload["body"] == "ok"
        assert payload["source"] == "letsync"
        assert payload["timestamp"]

    @resp_lib.activate
    def test_webhook_failure_does_not_raise(self):
        resp_lib.add(resp_lib.POST, "https://hooks.example.com/a",
                     body=requests.exceptions.ConnectionError("down"))
        resp_lib.add(resp_lib.POST, "https://hooks.example.com/b", status=500)
        resp_lib.add(resp_lib.POST, "https://hooks.example.com/c", json={})

        WebhookNotifier([
            "https://hooks.example.com/a", "https://hooks.example.com/b", "https://hooks.example.com/c",
        ]).send("t", "b")

        assert len(resp_lib.calls) == 3

    def test_multi_notifier_isolates_channels(self):
        broken = Mock()
        broken.send.side_effect = RuntimeError("boom")
        healthy = Mock()

        MultiNotifier([broken, healthy]).send("title", "body")

        healthy.send.assert_called_once_with("title", "body")

    def test_log_notifier(self, caplog):
        with caplog.at_level("INFO", logger="lifecycle.notifier"):
            LogNotifier().send("Certificate renewal failed", "example.com")
        assert "Certificate renewal failed" in caplog.text
