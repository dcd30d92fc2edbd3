"""
SQLite-backed LifecycleStore.

One connection shared across threads (check_same_thread=False) and
serialized by a lock; the scheduler thread, the API workers and the CLI all
go through the same instance.  Timestamps are stored as UTC ISO-8601 text
with fixed microsecond precision so string comparison in SQL is
chronological.
"""
from __future__ import annotations

import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Iterator, List, Optional

from lifecycle.errors import AlreadyExists, NotFound, ResourceInUse, TaskAlreadyFinished
from lifecycle.models import (
    Agent,
    AgentCert,
    Certificate,
    CertStatus,
    ChallengeType,
    DNSProvider,
    FileMapping,
    IssuedCertificate,
    ProviderType,
    SyncStatus,
    TaskLog,
    TaskLogStatus,
    TaskStatus,
    TaskType,
    utcnow,
)
from lifecycle.store import ISSUANCE_LOCK_STALE_AFTER, LifecycleStore, new_task_id

logger = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS dns_providers (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    name        TEXT NOT NULL UNIQUE,
    type        TEXT NOT NULL,
    credentials TEXT NOT NULL,
    created_at  TEXT NOT NULL,
    updated_at  TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS certificates (
    id                 INTEGER PRIMARY KEY AUTOINCREMENT,
    domain             TEXT NOT NULL,
    san                TEXT NOT NULL DEFAULT '[]',
    dns_provider_id    INTEGER,
    challenge_type     TEXT NOT NULL,
    cert_pem           BLOB NOT NULL DEFAULT x'',
    key_pem            BLOB NOT NULL DEFAULT x'',
    ca_pem             BLOB NOT NULL DEFAULT x'',
    fullchain_pem      BLOB NOT NULL DEFAULT x'',
    fingerprint        TEXT NOT NULL DEFAULT '',
    issued_at          TEXT,
    expires_at         TEXT,
    status             TEXT NOT NULL,
    fail_count         INTEGER NOT NULL DEFAULT 0,
    next_retry_at      TEXT,
    last_renew_attempt TEXT,
    created_at         TEXT NOT NULL,
    updated_at         TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_certificates_expires_at ON certificates(expires_at);
CREATE TABLE IF NOT EXISTS agents (
    id            INTEGER PRIMARY KEY AUTOINCREMENT,
    uuid          TEXT NOT NULL UNIQUE,
    signature     TEXT NOT NULL,
    name          TEXT NOT NULL,
    poll_interval INTEGER NOT NULL,
    last_seen     TEXT,
    ip            TEXT NOT NULL DEFAULT '',
    version       TEXT NOT NULL DEFAULT '',
    created_at    TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS agent_certs (
    id               INTEGER PRIMARY KEY AUTOINCREMENT,
    agent_id         INTEGER NOT NULL REFERENCES agents(id) ON DELETE CASCADE,
    cert_id          INTEGER NOT NULL REFERENCES certificates(id),
    deploy_path      TEXT NOT NULL,
    file_mapping     TEXT NOT NULL,
    reload_cmd       TEXT NOT NULL DEFAULT '',
    last_sync        TEXT,
    last_fingerprint TEXT NOT NULL DEFAULT '',
    sync_status      TEXT NOT NULL,
    UNIQUE (agent_id, cert_id)
);
CREATE TABLE IF NOT EXISTS task_log_status (
    task_id    TEXT PRIMARY KEY,
    cert_id    INTEGER NOT NULL,
    task_type  TEXT NOT NULL,
    status     TEXT NOT NULL,
    start_time TEXT NOT NULL,
    end_time   TEXT
);
CREATE TABLE IF NOT EXISTS task_logs (
    id         INTEGER PRIMARY KEY AUTOINCREMENT,
    task_id    TEXT NOT NULL REFERENCES task_log_status(task_id),
    cert_id    INTEGER NOT NULL,
    task_type  TEXT NOT NULL,
    level      TEXT NOT NULL,
    message    TEXT NOT NULL,
    created_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_task_logs_task_id ON task_logs(task_id);
CREATE TABLE IF NOT EXISTS issuance_locks (
    cert_id     INTEGER PRIMARY KEY,
    acquired_at TEXT NOT NULL
);
"""


def _ts(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is None:
        raise ValueError("Naive datetime not allowed in SQLite")
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _dt(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromisoformat(value)


class SQLiteStore(LifecycleStore):
    def __init__(self, db_path: str | Path) -> None:
        self.db_path = Path(db_path)
        if str(db_path) != ":memory:":
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._conn = sqlite3.connect(str(db_path), check_same_thread=False, timeout=30.0)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA foreign_keys=ON")
        with self._conn:
            self._conn.executescript(_SCHEMA)
        logger.debug("Opened lifecycle database %s", db_path)

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    @contextmanager
    def _tx(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            with self._conn:
                yield self._conn

    # ── Row mapping ───────────────────────────────────────────────────────

    @staticmethod
    def _provider(row: sqlite3.Row) -> DNSProvider:
        return DNSProvider(
            id=row["id"],
            name=row["name"],
            type=ProviderType(row["type"]),
            credentials=row["credentials"],
            created_at=_dt(row["created_at"]),
            updated_at=_dt(row["updated_at"]),
        )

    @staticmethod
    def _certificate(row: sqlite3.Row) -> Certificate:
        return Certificate(
            id=row["id"],
            domain=row["domain"],
            san=json.loads(row["san"]),
            dns_provider_id=row["dns_provider_id"],
            challenge_type=ChallengeType(row["challenge_type"]),
            cert_pem=bytes(row["cert_pem"]),
            key_pem=bytes(row["key_pem"]),
            ca_pem=bytes(row["ca_pem"]),
            fullchain_pem=bytes(row["fullchain_pem"]),
            fingerprint=row["fingerprint"],
            issued_at=_dt(row["issued_at"]),
            expires_at=_dt(row["expires_at"]),
            status=CertStatus(row["status"]),
            fail_count=row["fail_count"],
            next_retry_at=_dt(row["next_retry_at"]),
            last_renew_attempt=_dt(row["last_renew_attempt"]),
            created_at=_dt(row["created_at"]),
            updated_at=_dt(row["updated_at"]),
        )

    @staticmethod
    def _agent(row: sqlite3.Row) -> Agent:
        return Agent(
            id=row["id"],
            uuid=row["uuid"],
            signature=row["signature"],
            name=row["name"],
            poll_interval=row["poll_interval"],
            last_seen=_dt(row["last_seen"]),
            ip=row["ip"],
            version=row["version"],
            created_at=_dt(row["created_at"]),
        )

    @staticmethod
    def _binding(row: sqlite3.Row) -> AgentCert:
        return AgentCert(
            id=row["id"],
            agent_id=row["agent_id"],
            cert_id=row["cert_id"],
            deploy_path=row["deploy_path"],
            file_mapping=FileMapping.from_dict(json.loads(row["file_mapping"])),
            reload_cmd=row["reload_cmd"],
            last_sync=_dt(row["last_sync"]),
            last_fingerprint=row["last_fingerprint"],
            sync_status=SyncStatus(row["sync_status"]),
        )

    @staticmethod
    def _task(row: sqlite3.Row) -> TaskLogStatus:
        return TaskLogStatus(
            task_id=row["task_id"],
            cert_id=row["cert_id"],
            task_type=TaskType(row["task_type"]),
            status=TaskStatus(row["status"]),
            start_time=_dt(row["start_time"]),
            end_time=_dt(row["end_time"]),
        )

    def _one(self, sql: str, params: tuple, what: str) -> sqlite3.Row:
        with self._lock:
            row = self._conn.execute(sql, params).fetchone()
        if row is None:
            raise NotFound(f"{what} not found")
        return row

    def _all(self, sql: str, params: tuple = ()) -> List[sqlite3.Row]:
        with self._lock:
            return self._conn.execute(sql, params).fetchall()

    def _touch_cert(self, sql: str, params: tuple, cert_id: int) -> None:
        with self._tx() as conn:
            cur = conn.execute(sql, params)
        if cur.rowcount == 0:
            raise NotFound(f"certificate {cert_id} not found")

    # ── DNS providers ─────────────────────────────────────────────────────

    def create_provider(self, provider: DNSProvider) -> DNSProvider:
        now = utcnow()
        try:
            with self._tx() as conn:
                cur = conn.execute(
                    "INSERT INTO dns_providers (name, type, credentials, created_at, updated_at) "
                    "VALUES (?, ?, ?, ?, ?)",
                    (provider.name, ProviderType(provider.type).value, provider.credentials, _ts(now), _ts(now)),
                )
        except sqlite3.IntegrityError:
            raise AlreadyExists(f"DNS provider name {provider.name!r} already exists") from None
        return self.get_provider(cur.lastrowid)

    def get_provider(self, provider_id: int) -> DNSProvider:
        row = self._one("SELECT * FROM dns_providers WHERE id = ?", (provider_id,), f"DNS provider {provider_id}")
        return self._provider(row)

    def get_provider_by_name(self, name: str) -> DNSProvider:
        row = self._one("SELECT * FROM dns_providers WHERE name = ?", (name,), f"DNS provider {name!r}")
        return self._provider(row)

    def list_providers(self) -> List[DNSProvider]:
        return [self._provider(r) for r in self._all("SELECT * FROM dns_providers ORDER BY id")]

    def update_provider(self, provider: DNSProvider) -> DNSProvider:
        try:
            with self._tx() as conn:
                cur = conn.execute(
                    "UPDATE dns_providers SET name = ?, type = ?, credentials = ?, updated_at = ? WHERE id = ?",
                    (provider.name, ProviderType(provider.type).value, provider.credentials, _ts(utcnow()), provider.id),
                )
        except sqlite3.IntegrityError:
            raise AlreadyExists(f"DNS provider name {provider.name!r} already exists") from None
        if cur.rowcount == 0:
            raise NotFound(f"DNS provider {provider.id} not found")
        return self.get_provider(provider.id)

    def delete_provider(self, provider_id: int) -> None:
        with self._tx() as conn:
            users = conn.execute(
                "SELECT domain FROM certificates WHERE dns_provider_id = ?", (provider_id,)
            ).fetchall()
            if users:
                domains = ", ".join(r["domain"] for r in users)
                raise ResourceInUse(
                    f"DNS provider {provider_id} is used by {len(users)} certificate(s): {domains}"
                )
            cur = conn.execute("DELETE FROM dns_providers WHERE id = ?", (provider_id,))
        if cur.rowcount == 0:
            raise NotFound(f"DNS provider {provider_id} not found")

    # ── Certificates ──────────────────────────────────────────────────────

    def create_certificate(self, cert: Certificate) -> Certificate:
        now = utcnow()
        with self._tx() as conn:
            cur = conn.execute(
                "INSERT INTO certificates (domain, san, dns_provider_id, challenge_type, status, "
                "created_at, updated_at) VALUES (?, ?, ?, ?, ?, ?, ?)",
                (
                    cert.domain,
                    json.dumps(list(cert.san)),
                    cert.dns_provider_id,
                    ChallengeType(cert.challenge_type).value,
                    CertStatus(cert.status).value,
                    _ts(now),
                    _ts(now),
                ),
            )
        return self.get_certificate(cur.lastrowid)

    def get_certificate(self, cert_id: int) -> Certificate:
        row = self._one("SELECT * FROM certificates WHERE id = ?", (cert_id,), f"certificate {cert_id}")
        return self._certificate(row)

    def list_certificates(self) -> List[Certificate]:
        return [self._certificate(r) for r in self._all("SELECT * FROM certificates ORDER BY id")]

    def update_certificate(self, cert: Certificate) -> Certificate:
        self._touch_cert(
            "UPDATE certificates SET domain = ?, san = ?, dns_provider_id = ?, challenge_type = ?, "
            "updated_at = ? WHERE id = ?",
            (
                cert.domain,
                json.dumps(list(cert.san)),
                cert.dns_provider_id,
                ChallengeType(cert.challenge_type).value,
                _ts(utcnow()),
                cert.id,
            ),
            cert.id,
        )
        return self.get_certificate(cert.id)

    def delete_certificate(self, cert_id: int) -> None:
        with self._tx() as conn:
            bound = conn.execute(
                "SELECT COUNT(*) FROM agent_certs WHERE cert_id = ?", (cert_id,)
            ).fetchone()[0]
            if bound:
                raise ResourceInUse(f"certificate {cert_id} is bound to {bound} agent(s)")
            cur = conn.execute("DELETE FROM certificates WHERE id = ?", (cert_id,))
        if cur.rowcount == 0:
            raise NotFound(f"certificate {cert_id} not found")

    def save_issued(self, cert_id: int, material: IssuedCertificate) -> Certificate:
        with self._tx() as conn:
            cur = conn.execute(
                "UPDATE certificates SET cert_pem = ?, key_pem = ?, ca_pem = ?, fullchain_pem = ?, "
                "fingerprint = ?, issued_at = ?, expires_at = ?, status = ?, updated_at = ? WHERE id = ?",
                (
                    material.cert_pem,
                    material.key_pem,
                    material.ca_pem,
                    material.fullchain_pem,
                    material.fingerprint,
                    _ts(material.issued_at),
                    _ts(material.expires_at),
                    CertStatus.ACTIVE.value,
                    _ts(utcnow()),
                    cert_id,
                ),
            )
            if cur.rowcount == 0:
                raise NotFound(f"certificate {cert_id} not found")
            conn.execute(
                "UPDATE agent_certs SET sync_status = ? WHERE cert_id = ?",
                (SyncStatus.PENDING.value, cert_id),
            )
        return self.get_certificate(cert_id)

    def set_certificate_status(self, cert_id: int, status: CertStatus) -> None:
        self._touch_cert(
            "UPDATE certificates SET status = ? WHERE id = ?", (CertStatus(status).value, cert_id), cert_id
        )

    def record_renew_attempt(self, cert_id: int, attempted_at: datetime) -> None:
        self._touch_cert(
            "UPDATE certificates SET last_renew_attempt = ? WHERE id = ?", (_ts(attempted_at), cert_id), cert_id
        )

    def increment_fail_count(self, cert_id: int) -> int:
        with self._tx() as conn:
            cur = conn.execute("UPDATE certificates SET fail_count = fail_count + 1 WHERE id = ?", (cert_id,))
            if cur.rowcount == 0:
                raise NotFound(f"certificate {cert_id} not found")
            return conn.execute("SELECT fail_count FROM certificates WHERE id = ?", (cert_id,)).fetchone()[0]

    def set_next_retry(self, cert_id: int, next_retry_at: Optional[datetime]) -> None:
        self._touch_cert(
            "UPDATE certificates SET next_retry_at = ? WHERE id = ?", (_ts(next_retry_at), cert_id), cert_id
        )

    def reset_retry_state(self, cert_id: int) -> None:
        self._touch_cert(
            "UPDATE certificates SET fail_count = 0, next_retry_at = NULL WHERE id = ?", (cert_id,), cert_id
        )

    def mark_expired(self, now: datetime) -> List[int]:
        with self._tx() as conn:
            rows = conn.execute(
                "SELECT id FROM certificates WHERE expires_at IS NOT NULL AND expires_at <= ? AND status = ?",
                (_ts(now), CertStatus.ACTIVE.value),
            ).fetchall()
            ids = [r["id"] for r in rows]
            conn.executemany(
                "UPDATE certificates SET status = ? WHERE id = ?",
                [(CertStatus.EXPIRED.value, i) for i in ids],
            )
        return ids

    def certs_expiring_within(self, days: int, now: datetime) -> List[Certificate]:
        horizon = now + timedelta(days=days)
        rows = self._all(
            "SELECT * FROM certificates WHERE expires_at IS NOT NULL AND expires_at <= ? ORDER BY id",
            (_ts(horizon),),
        )
        return [self._certificate(r) for r in rows]

    def certs_due_for_retry(self, now: datetime) -> List[Certificate]:
        rows = self._all(
            "SELECT * FROM certificates WHERE fail_count > 0 AND next_retry_at IS NOT NULL "
            "AND next_retry_at <= ? ORDER BY id",
            (_ts(now),),
        )
        return [self._certificate(r) for r in rows]

    # ── In-flight issuance guard ──────────────────────────────────────────

    def acquire_issuance(self, cert_id: int) -> bool:
        now = utcnow()
        with self._tx() as conn:
            conn.execute(
                "DELETE FROM issuance_locks WHERE cert_id = ? AND acquired_at < ?",
                (cert_id, _ts(now - ISSUANCE_LOCK_STALE_AFTER)),
            )
            cur = conn.execute(
                "INSERT OR IGNORE INTO issuance_locks (cert_id, acquired_at) VALUES (?, ?)",
                (cert_id, _ts(now)),
            )
            return cur.rowcount == 1

    def release_issuance(self, cert_id: int) -> None:
        with self._tx() as conn:
            conn.execute("DELETE FROM issuance_locks WHERE cert_id = ?", (cert_id,))

    # ── Agents ────────────────────────────────────────────────────────────

    def create_agent(self, agent: Agent) -> Agent:
        try:
            with self._tx() as conn:
                cur = conn.execute(
                    "INSERT INTO agents (uuid, signature, name, poll_interval, created_at) VALUES (?, ?, ?, ?, ?)",
                    (agent.uuid, agent.signature, agent.name, agent.poll_interval, _ts(utcnow())),
                )
        except sqlite3.IntegrityError:
            raise AlreadyExists(f"agent uuid {agent.uuid} already exists") from None
        return self.get_agent(cur.lastrowid)

    def get_agent(self, agent_id: int) -> Agent:
        return self._agent(self._one("SELECT * FROM agents WHERE id = ?", (agent_id,), f"agent {agent_id}"))

    def get_agent_by_uuid(self, agent_uuid: str) -> Agent:
        return self._agent(self._one("SELECT * FROM agents WHERE uuid = ?", (agent_uuid,), "agent"))

    def list_agents(self) -> List[Agent]:
        return [self._agent(r) for r in self._all("SELECT * FROM agents ORDER BY id")]

    def update_agent(self, agent: Agent) -> Agent:
        with self._tx() as conn:
            cur = conn.execute(
                "UPDATE agents SET uuid = ?, signature = ?, name = ?, poll_interval = ?, last_seen = ?, "
                "ip = ?, version = ? WHERE id = ?",
                (
                    agent.uuid,
                    agent.signature,
                    agent.name,
                    agent.poll_interval,
                    _ts(agent.last_seen),
                    agent.ip,
                    agent.version,
                    agent.id,
                ),
            )
        if cur.rowcount == 0:
            raise NotFound(f"agent {agent.id} not found")
        return self.get_agent(agent.id)

    def delete_agent(self, agent_id: int) -> None:
        with self._tx() as conn:
            conn.execute("DELETE FROM agent_certs WHERE agent_id = ?", (agent_id,))
            cur = conn.execute("DELETE FROM agents WHERE id = ?", (agent_id,))
        if cur.rowcount == 0:
            raise NotFound(f"agent {agent_id} not found")

    def record_heartbeat(self, agent_id: int, ip: str, version: str, seen_at: datetime) -> None:
        with self._tx() as conn:
            cur = conn.execute(
                "UPDATE agents SET last_seen = ?, ip = ?, version = ? WHERE id = ?",
                (_ts(seen_at), ip, version, agent_id),
            )
        if cur.rowcount == 0:
            raise NotFound(f"agent {agent_id} not found")

    # ── Bindings ──────────────────────────────────────────────────────────

    def create_binding(self, binding: AgentCert) -> AgentCert:
        self.get_agent(binding.agent_id)
        self.get_certificate(binding.cert_id)
        try:
            with self._tx() as conn:
                conn.execute(
                    "INSERT INTO agent_certs (agent_id, cert_id, deploy_path, file_mapping, reload_cmd, "
                    "last_fingerprint, sync_status) VALUES (?, ?, ?, ?, ?, ?, ?)",
                    (
                        binding.agent_id,
                        binding.cert_id,
                        binding.deploy_path,
                        json.dumps(binding.file_mapping.to_dict()),
                        binding.reload_cmd,
                        binding.last_fingerprint,
                        SyncStatus(binding.sync_status).value,
                    ),
                )
        except sqlite3.IntegrityError:
            raise AlreadyExists(
                f"certificate {binding.cert_id} is already bound to agent {binding.agent_id}"
            ) from None
        return self.get_binding(binding.agent_id, binding.cert_id)

    def get_binding(self, agent_id: int, cert_id: int) -> AgentCert:
        row = self._one(
            "SELECT * FROM agent_certs WHERE agent_id = ? AND cert_id = ?",
            (agent_id, cert_id),
            f"binding of certificate {cert_id} to agent {agent_id}",
        )
        return self._binding(row)

    def list_bindings_for_agent(self, agent_id: int) -> List[AgentCert]:
        rows = self._all("SELECT * FROM agent_certs WHERE agent_id = ? ORDER BY id", (agent_id,))
        return [self._binding(r) for r in rows]

    def list_bindings_for_certificate(self, cert_id: int) -> List[AgentCert]:
        rows = self._all("SELECT * FROM agent_certs WHERE cert_id = ? ORDER BY id", (cert_id,))
        return [self._binding(r) for r in rows]

    def update_binding(self, binding: AgentCert) -> AgentCert:
        with self._tx() as conn:
            cur = conn.execute(
                "UPDATE agent_certs SET deploy_path = ?, file_mapping = ?, reload_cmd = ?, last_sync = ?, "
                "last_fingerprint = ?, sync_status = ? WHERE agent_id = ? AND cert_id = ?",
                (
                    binding.deploy_path,
                    json.dumps(binding.file_mapping.to_dict()),
                    binding.reload_cmd,
                    _ts(binding.last_sync),
                    binding.last_fingerprint,
                    SyncStatus(binding.sync_status).value,
                    binding.agent_id,
                    binding.cert_id,
                ),
            )
        if cur.rowcount == 0:
            raise NotFound(f"certificate {binding.cert_id} is not bound to agent {binding.agent_id}")
        return self.get_binding(binding.agent_id, binding.cert_id)

    def delete_binding(self, agent_id: int, cert_id: int) -> None:
        with self._tx() as conn:
            cur = conn.execute(
                "DELETE FROM agent_certs WHERE agent_id = ? AND cert_id = ?", (agent_id, cert_id)
            )
        if cur.rowcount == 0:
            raise NotFound(f"certificate {cert_id} is not bound to agent {agent_id}")

    def update_sync_status(
        self,
        agent_id: int,
        cert_id: int,
        fingerprint: str,
        status: SyncStatus,
        synced_at: datetime,
    ) -> None:
        with self._tx() as conn:
            cur = conn.execute(
                "UPDATE agent_certs SET last_sync = ?, last_fingerprint = ?, sync_status = ? "
                "WHERE agent_id = ? AND cert_id = ?",
                (_ts(synced_at), fingerprint, SyncStatus(status).value, agent_id, cert_id),
            )
        if cur.rowcount == 0:
            raise NotFound(f"certificate {cert_id} is not bound to agent {agent_id}")

    # ── Task log ──────────────────────────────────────────────────────────

    def create_task(self, cert_id: int, task_type: TaskType) -> TaskLogStatus:
        task_id = new_task_id()
        with self._tx() as conn:
            conn.execute(
                "INSERT INTO task_log_status (task_id, cert_id, task_type, status, start_time) "
                "VALUES (?, ?, ?, ?, ?)",
                (task_id, cert_id, TaskType(task_type).value, TaskStatus.RUNNING.value, _ts(utcnow())),
            )
        return self.get_task_status(task_id)

    def append_task_log(self, task_id: str, level: str, message: str) -> None:
        task = self.get_task_status(task_id)
        with self._tx() as conn:
            conn.execute(
                "INSERT INTO task_logs (task_id, cert_id, task_type, level, message, created_at) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                (task_id, task.cert_id, task.task_type.value, level, message, _ts(utcnow())),
            )

    def complete_task(self, task_id: str, status: TaskStatus) -> None:
        with self._tx() as conn:
            cur = conn.execute(
                "UPDATE task_log_status SET status = ?, end_time = ? WHERE task_id = ? AND status = ?",
                (TaskStatus(status).value, _ts(utcnow()), task_id, TaskStatus.RUNNING.value),
            )
        if cur.rowcount == 0:
            task = self.get_task_status(task_id)
            raise TaskAlreadyFinished(f"task {task_id} already {task.status.value}")

    def get_task_status(self, task_id: str) -> TaskLogStatus:
        return self._task(
            self._one("SELECT * FROM task_log_status WHERE task_id = ?", (task_id,), f"task {task_id}")
        )

    def list_task_statuses(self, cert_id: Optional[int] = None) -> List[TaskLogStatus]:
        if cert_id is None:
            rows = self._all("SELECT * FROM task_log_status ORDER BY start_time")
        else:
            rows = self._all(
                "SELECT * FROM task_log_status WHERE cert_id = ? ORDER BY start_time", (cert_id,)
            )
        return [self._task(r) for r in rows]

    def list_task_logs(self, task_id: str) -> List[TaskLog]:
        rows = self._all("SELECT * FROM task_logs WHERE task_id = ? ORDER BY id", (task_id,))
        return [
            TaskLog(
                task_id=r["task_id"],
                cert_id=r["cert_id"],
                task_type=TaskType(r["task_type"]),
                level=r["level"],
                message=r["message"],
                created_at=_dt(r["created_at"]),
            )
            for r in rows
        ]
