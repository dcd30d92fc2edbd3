"""
LifecycleStore contract tests, run against both MemoryStore and SQLiteStore.
"""
from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from lifecycle.errors import AlreadyExists, NotFound, ResourceInUse, TaskAlreadyFinished
from lifecycle.models import (
    Agent,
    AgentCert,
    Certificate,
    CertStatus,
    DNSProvider,
    FileMapping,
    IssuedCertificate,
    ProviderType,
    SyncStatus,
    TaskStatus,
    TaskType,
)
from lifecycle.sqlite_store import SQLiteStore
from lifecycle.store import ISSUANCE_LOCK_STALE_AFTER

NOW = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


def _material(expires_at: datetime, tag: bytes = b"a") -> IssuedCertificate:
    return IssuedCertificate(
        cert_pem=b"LEAF-" + tag,
        key_pem=b"KEY-" + tag,
        ca_pem=b"CA",
        fullchain_pem=b"LEAF-" + tag + b"CA",
        issued_at=expires_at - timedelta(days=90),
        expires_at=expires_at,
        fingerprint="sha256:" + tag.decode() * 64,
    )


@pytest.fixture()
def provider(any_store):
    return any_store.create_provider(DNSProvider(name="cf", type=ProviderType.CLOUDFLARE, credentials="blob"))


@pytest.fixture()
def cert(any_store, provider):
    return any_store.create_certificate(Certificate(
        domain="example.com", san=["www.example.com"], dns_provider_id=provider.id,
    ))


@pytest.fixture()
def agent(any_store):
    return any_store.create_agent(Agent(uuid="uuid-1", signature="sig", name="web-01", poll_interval=60))


# ─── Providers ────────────────────────────────────────────────────────────────


class TestProviders:
    def test_create_and_lookup(self, any_store, provider):
        assert provider.id
        assert any_store.get_provider(provider.id).name == "cf"
        assert any_store.get_provider_by_name("cf").type == ProviderType.CLOUDFLARE

    def test_name_unique(self, any_store, provider):
        with pytest.raises(AlreadyExists):
            any_store.create_provider(DNSProvider(name="cf", type=ProviderType.DNSPOD, credentials="x"))

    def test_update(self, any_store, provider):
        provider.credentials = "rotated"
        any_store.update_provider(provider)
        assert any_store.get_provider(provider.id).credentials == "rotated"

    def test_delete_refused_while_referenced(self, any_store, provider, cert):
        with pytest.raises(ResourceInUse, match="example.com"):
            any_store.delete_provider(provider.id)

    def test_delete_unreferenced(self, any_store, provider):
        any_store.delete_provider(provider.id)
        with pytest.raises(NotFound):
            any_store.get_provider(provider.id)


# ─── Certificates ─────────────────────────────────────────────────────────────


class TestCertificates:
    def test_new_certificate_has_no_material(self, any_store, cert):
        stored = any_store.get_certificate(cert.id)
        assert stored.domains == ["example.com", "www.example.com"]
        assert not stored.has_material
        assert stored.fingerprint == ""
        assert stored.fail_count == 0

    def test_missing_certificate(self, any_store):
        with pytest.raises(NotFound):
            any_store.get_certificate(4242)

    def test_returned_copies_are_detached(self, any_store, cert):
        fetched = any_store.get_certificate(cert.id)
        fetched.san.append("evil.example.com")
        assert any_store.get_certificate(cert.id).san == ["www.example.com"]

    def test_save_issued_is_one_step(self, any_store, cert):
        expires = NOW + timedelta(days=90)
        any_store.save_issued(cert.id, _material(expires))

        stored = any_store.get_certificate(cert.id)
        assert stored.status == CertStatus.ACTIVE
        assert stored.fullchain_pem == b"LEAF-aCA"
        assert stored.key_pem == b"KEY-a"
        assert stored.fingerprint == "sha256:" + "a" * 64
        assert stored.expires_at == expires
        assert stored.issued_at == expires - timedelta(days=90)

    def test_save_issued_flips_bindings_pending(self, any_store, cert, agent):
        any_store.create_binding(AgentCert(agent_id=agent.id, cert_id=cert.id, deploy_path="/etc/ssl/a"))
        any_store.update_sync_status(agent.id, cert.id, "sha256:old", SyncStatus.SYNCED, NOW)

        any_store.save_issued(cert.id, _material(NOW + timedelta(days=90)))

        assert any_store.get_binding(agent.id, cert.id).sync_status == SyncStatus.PENDING

    def test_delete_refused_while_bound(self, any_store, cert, agent):
        any_store.create_binding(AgentCert(agent_id=agent.id, cert_id=cert.id, deploy_path="/etc/ssl/a"))
        with pytest.raises(ResourceInUse):
            any_store.delete_certificate(cert.id)

    def test_update_editable_fields(self, any_store, cert):
        cert.san = ["api.example.com"]
        any_store.update_certificate(cert)
        assert any_store.get_certificate(cert.id).san == ["api.example.com"]

    def test_retry_bookkeeping(self, any_store, cert):
        assert any_store.increment_fail_count(cert.id) == 1
        assert any_store.increment_fail_count(cert.id) == 2
        any_store.set_next_retry(cert.id, NOW + timedelta(minutes=30))
        any_store.record_renew_attempt(cert.id, NOW)

        stored = any_store.get_certificate(cert.id)
        assert stored.fail_count == 2
        assert stored.next_retry_at == NOW + timedelta(minutes=30)
        assert stored.last_renew_attempt == NOW

        any_store.reset_retry_state(cert.id)
        stored = any_store.get_certificate(cert.id)
        assert stored.fail_count == 0
        assert stored.next_retry_at is None


class TestSweepQueries:
    def _cert(self, store, domain, expires_at=None):
        cert = store.create_certificate(Certificate(domain=domain))
        if expires_at is not None:
            store.save_issued(cert.id, _material(expires_at))
        return cert

    def test_expiring_within(self, any_store):
        soon = self._cert(any_store, "soon.example.com", NOW + timedelta(days=29))
        edge = self._cert(any_store, "edge.example.com", NOW + timedelta(days=30))
        self._cert(any_store, "later.example.com", NOW + timedelta(days=31))
        self._cert(any_store, "never.example.com")

        due = any_store.certs_expiring_within(30, NOW)

        assert [c.id for c in due] == [soon.id, edge.id]

    def test_expiring_within_ignores_retry_state(self, any_store):
        cert = self._cert(any_store, "a.example.com", NOW + timedelta(days=5))
        any_store.increment_fail_count(cert.id)
        any_store.set_next_retry(cert.id, NOW + timedelta(hours=4))
        assert [c.id for c in any_store.certs_expiring_within(30, NOW)] == [cert.id]

    def test_due_for_retry(self, any_store):
        ready = self._cert(any_store, "ready.example.com")
        waiting = self._cert(any_store, "waiting.example.com")
        healthy = self._cert(any_store, "healthy.example.com")
        for c, when in ((ready, NOW), (waiting, NOW + timedelta(seconds=1))):
            any_store.increment_fail_count(c.id)
            any_store.set_next_retry(c.id, when)
        any_store.set_next_retry(healthy.id, NOW - timedelta(days=1))

        assert [c.id for c in any_store.certs_due_for_retry(NOW)] == [ready.id]

    def test_mark_expired(self, any_store):
        gone = self._cert(any_store, "gone.example.com", NOW - timedelta(seconds=1))
        self._cert(any_store, "fine.example.com", NOW + timedelta(days=1))
        broken = self._cert(any_store, "broken.example.com", NOW - timedelta(days=1))
        any_store.set_certificate_status(broken.id, CertStatus.ERROR)

        assert any_store.mark_expired(NOW) == [gone.id]
        assert any_store.get_certificate(gone.id).status == CertStatus.EXPIRED
        assert any_store.get_certificate(broken.id).status == CertStatus.ERROR
        assert any_store.mark_expired(NOW) == []


class TestIssuanceLock:
    def test_exclusive_until_released(self, any_store, cert):
        assert any_store.acquire_issuance(cert.id)
        assert not any_store.acquire_issuance(cert.id)
        any_store.release_issuance(cert.id)
        assert any_store.acquire_issuance(cert.id)

    def test_locks_are_per_certificate(self, any_store, cert):
        other = any_store.create_certificate(Certificate(domain="other.example.com"))
        assert any_store.acquire_issuance(cert.id)
        assert any_store.acquire_issuance(other.id)

    def test_release_without_lock_is_harmless(self, any_store, cert):
        any_store.release_issuance(cert.id)


def test_stale_sqlite_lock_is_reclaimed(sqlite_store):
    cert = sqlite_store.create_certificate(Certificate(domain="example.com"))
    stale = datetime.now(timezone.utc) - ISSUANCE_LOCK_STALE_AFTER - timedelta(minutes=1)
    with sqlite_store._tx() as conn:
        conn.execute(
            "INSERT INTO issuance_locks (cert_id, acquired_at) VALUES (?, ?)",
            (cert.id, stale.isoformat(timespec="microseconds")),
        )
    assert sqlite_store.acquire_issuance(cert.id)


# ─── Agents & bindings ────────────────────────────────────────────────────────


class TestAgents:
    def test_uuid_unique(self, any_store, agent):
        with pytest.raises(AlreadyExists):
            any_store.create_agent(Agent(uuid="uuid-1", signature="x", name="dup"))

    def test_lookup_by_uuid(self, any_store, agent):
        assert any_store.get_agent_by_uuid("uuid-1").id == agent.id
        with pytest.raises(NotFound):
            any_store.get_agent_by_uuid("nope")

    def test_heartbeat(self, any_store, agent):
        any_store.record_heartbeat(agent.id, "10.0.0.9", "1.0.0", NOW)
        stored = any_store.get_agent(agent.id)
        assert (stored.ip, stored.version, stored.last_seen) == ("10.0.0.9", "1.0.0", NOW)

    def test_delete_cascades_to_bindings(self, any_store, agent, cert):
        any_store.create_binding(AgentCert(agent_id=agent.id, cert_id=cert.id, deploy_path="/etc/ssl/a"))

        any_store.delete_agent(agent.id)

        assert any_store.list_bindings_for_certificate(cert.id) == []
        any_store.delete_certificate(cert.id)


class TestBindings:
    def test_binding_roundtrip(self, any_store, agent, cert):
        any_store.create_binding(AgentCert(
            agent_id=agent.id, cert_id=cert.id, deploy_path="/etc/nginx/ssl",
            file_mapping=FileMapping(key="site.key"), reload_cmd="nginx -s reload",
        ))
        stored = any_store.get_binding(agent.id, cert.id)
        assert stored.file_mapping == FileMapping(cert="cert.pem", key="site.key", fullchain="fullchain.pem")
        assert stored.sync_status == SyncStatus.PENDING
        assert stored.reload_cmd == "nginx -s reload"

    def test_pair_unique(self, any_store, agent, cert):
        any_store.create_binding(AgentCert(agent_id=agent.id, cert_id=cert.id, deploy_path="/a"))
        with pytest.raises(AlreadyExists):
            any_store.create_binding(AgentCert(agent_id=agent.id, cert_id=cert.id, deploy_path="/b"))

    def test_binding_requires_existing_rows(self, any_store, agent):
        with pytest.raises(NotFound):
            any_store.create_binding(AgentCert(agent_id=agent.id, cert_id=999, deploy_path="/a"))

    def test_sync_status(self, any_store, agent, cert):
        any_store.create_binding(AgentCert(agent_id=agent.id, cert_id=cert.id, deploy_path="/a"))
        any_store.update_sync_status(agent.id, cert.id, "sha256:f", SyncStatus.SYNCED, NOW)
        stored = any_store.get_binding(agent.id, cert.id)
        assert (stored.last_fingerprint, stored.sync_status, stored.last_sync) == ("sha256:f", SyncStatus.SYNCED, NOW)

    def test_sync_status_for_unbound_pair(self, any_store, agent, cert):
        with pytest.raises(NotFound):
            any_store.update_sync_status(agent.id, cert.id, "sha256:f", SyncStatus.SYNCED, NOW)

    def test_delete_binding(self, any_store, agent, cert):
        any_store.create_binding(AgentCert(agent_id=agent.id, cert_id=cert.id, deploy_path="/a"))
        any_store.delete_binding(agent.id, cert.id)
        assert any_store.list_bindings_for_agent(agent.id) == []
        with pytest.raises(NotFound):
            any_store.delete_binding(agent.id, cert.id)


# ─── Task log ─────────────────────────────────────────────────────────────────


class TestTaskLog:
    def test_task_lifecycle(self, any_store, cert):
        task = any_store.create_task(cert.id, TaskType.RENEW)
        assert task.status == TaskStatus.RUNNING
        any_store.append_task_log(task.task_id, "info", "first")
        any_store.append_task_log(task.task_id, "warn", "second")

        any_store.complete_task(task.task_id, TaskStatus.COMPLETED)

        done = any_store.get_task_status(task.task_id)
        assert done.status == TaskStatus.COMPLETED
        assert done.end_time is not None
        assert [(e.level, e.message) for e in any_store.list_task_logs(task.task_id)] == [
            ("info", "first"), ("warn", "second"),
        ]

    def test_terminal_status_is_final(self, any_store, cert):
        task = any_store.create_task(cert.id, TaskType.ISSUE)
        any_store.complete_task(task.task_id, TaskStatus.FAILED)
        with pytest.raises(TaskAlreadyFinished):
            any_store.complete_task(task.task_id, TaskStatus.COMPLETED)
        assert any_store.get_task_status(task.task_id).status == TaskStatus.FAILED

    def test_task_ids_unique_and_filterable(self, any_store, cert):
        other = any_store.create_certificate(Certificate(domain="other.example.com"))
        ids = {any_store.create_task(cert.id, TaskType.ISSUE).task_id for _ in range(5)}
        any_store.create_task(other.id, TaskType.ISSUE)

        assert len(ids) == 5
        assert {t.task_id for t in any_store.list_task_statuses(cert_id=cert.id)} == ids
        assert len(any_store.list_task_statuses()) == 6

    def test_log_for_unknown_task(self, any_store):
        with pytest.raises(NotFound):
            any_store.append_task_log("missing", "info", "x")


def test_sqlite_survives_reopen(tmp_path):
    path = tmp_path / "letsync.db"
    first = SQLiteStore(path)
    cert = first.create_certificate(Certificate(domain="example.com"))
    first.save_issued(cert.id, _material(NOW + timedelta(days=90)))
    first.close()

    second = SQLiteStore(path)
    try:
        stored = second.get_certificate(cert.id)
        assert stored.fullchain_pem == b"LEAF-aCA"
        assert stored.expires_at == NOW + timedelta(days=90)
    finally:
        second.close()
