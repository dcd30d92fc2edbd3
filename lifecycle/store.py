"""
LifecycleStore: the persistence contract the lifecycle core depends on.

Two implementations ship with the project:
  MemoryStore  — dict-backed, lock-guarded; used by tests and one-shot runs
  SQLiteStore  — lifecycle.sqlite_store, used by the long-running server

Every method returns detached copies, so callers may mutate what they get
back without affecting stored state.  Missing ids raise NotFound.
"""
from __future__ import annotations

import copy
import threading
import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Tuple

from lifecycle.errors import (
    AlreadyExists,
    NotFound,
    ResourceInUse,
    TaskAlreadyFinished,
)
from lifecycle.models import (
    Agent,
    AgentCert,
    Certificate,
    CertStatus,
    DNSProvider,
    IssuedCertificate,
    SyncStatus,
    TaskLog,
    TaskLogStatus,
    TaskStatus,
    TaskType,
    utcnow,
)

# An issuance lock older than this is considered abandoned (crashed process).
ISSUANCE_LOCK_STALE_AFTER = timedelta(hours=1)


class LifecycleStore(ABC):
    """CRUD + query contract for certificates, providers, agents, bindings and task logs."""

    # ── DNS providers ─────────────────────────────────────────────────────

    @abstractmethod
    def create_provider(self, provider: DNSProvider) -> DNSProvider: ...

    @abstractmethod
    def get_provider(self, provider_id: int) -> DNSProvider: ...

    @abstractmethod
    def get_provider_by_name(self, name: str) -> DNSProvider: ...

    @abstractmethod
    def list_providers(self) -> List[DNSProvider]: ...

    @abstractmethod
    def update_provider(self, provider: DNSProvider) -> DNSProvider: ...

    @abstractmethod
    def delete_provider(self, provider_id: int) -> None:
        """Refused with ResourceInUse while any certificate references the provider."""

    # ── Certificates ──────────────────────────────────────────────────────

    @abstractmethod
    def create_certificate(self, cert: Certificate) -> Certificate: ...

    @abstractmethod
    def get_certificate(self, cert_id: int) -> Certificate: ...

    @abstractmethod
    def list_certificates(self) -> List[Certificate]: ...

    @abstractmethod
    def update_certificate(self, cert: Certificate) -> Certificate:
        """Update operator-editable fields (domain, SAN, provider, challenge type)."""

    @abstractmethod
    def delete_certificate(self, cert_id: int) -> None:
        """Refused with ResourceInUse while the certificate is bound to any agent."""

    @abstractmethod
    def save_issued(self, cert_id: int, material: IssuedCertificate) -> Certificate:
        """
        Persist freshly issued material in one step: PEM blobs, fingerprint,
        validity dates and status=active.  Every binding of the certificate
        is flipped to sync_status=pending.
        """

    @abstractmethod
    def set_certificate_status(self, cert_id: int, status: CertStatus) -> None: ...

    @abstractmethod
    def record_renew_attempt(self, cert_id: int, attempted_at: datetime) -> None: ...

    @abstractmethod
    def increment_fail_count(self, cert_id: int) -> int:
        """Increment and return the new consecutive-failure count."""

    @abstractmethod
    def set_next_retry(self, cert_id: int, next_retry_at: Optional[datetime]) -> None: ...

    @abstractmethod
    def reset_retry_state(self, cert_id: int) -> None:
        """fail_count = 0, next_retry_at = None."""

    @abstractmethod
    def mark_expired(self, now: datetime) -> List[int]:
        """Flip issued certificates past expires_at to status=expired; return their ids."""

    @abstractmethod
    def certs_expiring_within(self, days: int, now: datetime) -> List[Certificate]:
        """Issued certificates with expires_at - now <= days, whatever their retry state."""

    @abstractmethod
    def certs_due_for_retry(self, now: datetime) -> List[Certificate]:
        """Certificates with fail_count > 0 and next_retry_at <= now."""

    # ── In-flight issuance guard ──────────────────────────────────────────

    @abstractmethod
    def acquire_issuance(self, cert_id: int) -> bool:
        """Take the per-certificate issuance lock; False if someone else holds it."""

    @abstractmethod
    def release_issuance(self, cert_id: int) -> None: ...

    # ── Agents ────────────────────────────────────────────────────────────

    @abstractmethod
    def create_agent(self, agent: Agent) -> Agent: ...

    @abstractmethod
    def get_agent(self, agent_id: int) -> Agent: ...

    @abstractmethod
    def get_agent_by_uuid(self, agent_uuid: str) -> Agent: ...

    @abstractmethod
    def list_agents(self) -> List[Agent]: ...

    @abstractmethod
    def update_agent(self, agent: Agent) -> Agent: ...

    @abstractmethod
    def delete_agent(self, agent_id: int) -> None:
        """Deletes the agent and all of its bindings."""

    @abstractmethod
    def record_heartbeat(self, agent_id: int, ip: str, version: str, seen_at: datetime) -> None: ...

    # ── Bindings ──────────────────────────────────────────────────────────

    @abstractmethod
    def create_binding(self, binding: AgentCert) -> AgentCert: ...

    @abstractmethod
    def get_binding(self, agent_id: int, cert_id: int) -> AgentCert: ...

    @abstractmethod
    def list_bindings_for_agent(self, agent_id: int) -> List[AgentCert]: ...

    @abstractmethod
    def list_bindings_for_certificate(self, cert_id: int) -> List[AgentCert]: ...

    @abstractmethod
    def update_binding(self, binding: AgentCert) -> AgentCert: ...

    @abstractmethod
    def delete_binding(self, agent_id: int, cert_id: int) -> None: ...

    @abstractmethod
    def update_sync_status(
        self,
        agent_id: int,
        cert_id: int,
        fingerprint: str,
        status: SyncStatus,
        synced_at: datetime,
    ) -> None: ...

    # ── Task log ──────────────────────────────────────────────────────────

    @abstractmethod
    def create_task(self, cert_id: int, task_type: TaskType) -> TaskLogStatus:
        """Open a new task (status=running) under a freshly generated task id."""

    @abstractmethod
    def append_task_log(self, task_id: str, level: str, message: str) -> None: ...

    @abstractmethod
    def complete_task(self, task_id: str, status: TaskStatus) -> None:
        """Set the terminal status; TaskAlreadyFinished if one is already set."""

    @abstractmethod
    def get_task_status(self, task_id: str) -> TaskLogStatus: ...

    @abstractmethod
    def list_task_statuses(self, cert_id: Optional[int] = None) -> List[TaskLogStatus]: ...

    @abstractmethod
    def list_task_logs(self, task_id: str) -> List[TaskLog]: ...


def new_task_id() -> str:
    return uuid.uuid4().hex


# ─── In-memory implementation ─────────────────────────────────────────────────


class MemoryStore(LifecycleStore):
    """Thread-safe dict-backed store."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._providers: Dict[int, DNSProvider] = {}
        self._certs: Dict[int, Certificate] = {}
        self._agents: Dict[int, Agent] = {}
        self._bindings: Dict[Tuple[int, int], AgentCert] = {}
        self._tasks: Dict[str, TaskLogStatus] = {}
        self._logs: List[TaskLog] = []
        self._issuing: Dict[int, datetime] = {}
        self._next_id = 1

    def _allocate_id(self) -> int:
        next_id = self._next_id
        self._next_id += 1
        return next_id

    def _cert(self, cert_id: int) -> Certificate:
        try:
            return self._certs[cert_id]
        except KeyError:
            raise NotFound(f"certificate {cert_id} not found") from None

    def _agent(self, agent_id: int) -> Agent:
        try:
            return self._agents[agent_id]
        except KeyError:
            raise NotFound(f"agent {agent_id} not found") from None

    # ── DNS providers ─────────────────────────────────────────────────────

    def create_provider(self, provider: DNSProvider) -> DNSProvider:
        with self._lock:
            if any(p.name == provider.name for p in self._providers.values()):
                raise AlreadyExists(f"DNS provider name {provider.name!r} already exists")
            stored = copy.deepcopy(provider)
            stored.id = self._allocate_id()
            self._providers[stored.id] = stored
            return copy.deepcopy(stored)

    def get_provider(self, provider_id: int) -> DNSProvider:
        with self._lock:
            if provider_id not in self._providers:
                raise NotFound(f"DNS provider {provider_id} not found")
            return copy.deepcopy(self._providers[provider_id])

    def get_provider_by_name(self, name: str) -> DNSProvider:
        with self._lock:
            for provider in self._providers.values():
                if provider.name == name:
                    return copy.deepcopy(provider)
            raise NotFound(f"DNS provider {name!r} not found")

    def list_providers(self) -> List[DNSProvider]:
        with self._lock:
            return [copy.deepcopy(p) for p in self._providers.values()]

    def update_provider(self, provider: DNSProvider) -> DNSProvider:
        with self._lock:
            if provider.id not in self._providers:
                raise NotFound(f"DNS provider {provider.id} not found")
            if any(p.name == provider.name and p.id != provider.id for p in self._providers.values()):
                raise AlreadyExists(f"DNS provider name {provider.name!r} already exists")
            stored = copy.deepcopy(provider)
            stored.updated_at = utcnow()
            self._providers[provider.id] = stored
            return copy.deepcopy(stored)

    def delete_provider(self, provider_id: int) -> None:
        with self._lock:
            if provider_id not in self._providers:
                raise NotFound(f"DNS provider {provider_id} not found")
            users = [c.domain for c in self._certs.values() if c.dns_provider_id == provider_id]
            if users:
                raise ResourceInUse(
                    f"DNS provider {provider_id} is used by {len(users)} certificate(s): {', '.join(users)}"
                )
            del self._providers[provider_id]

    # ── Certificates ──────────────────────────────────────────────────────

    def create_certificate(self, cert: Certificate) -> Certificate:
        with self._lock:
            stored = copy.deepcopy(cert)
            stored.id = self._allocate_id()
            self._certs[stored.id] = stored
            return copy.deepcopy(stored)

    def get_certificate(self, cert_id: int) -> Certificate:
        with self._lock:
            return copy.deepcopy(self._cert(cert_id))

    def list_certificates(self) -> List[Certificate]:
        with self._lock:
            return [copy.deepcopy(c) for c in self._certs.values()]

    def update_certificate(self, cert: Certificate) -> Certificate:
        with self._lock:
            stored = self._cert(cert.id)
            stored.domain = cert.domain
            stored.san = list(cert.san)
            stored.dns_provider_id = cert.dns_provider_id
            stored.challenge_type = cert.challenge_type
            stored.updated_at = utcnow()
            return copy.deepcopy(stored)

    def delete_certificate(self, cert_id: int) -> None:
        with self._lock:
            self._cert(cert_id)
            bound = [b for b in self._bindings.values() if b.cert_id == cert_id]
            if bound:
                raise ResourceInUse(f"certificate {cert_id} is bound to {len(bound)} agent(s)")
            del self._certs[cert_id]

    def save_issued(self, cert_id: int, material: IssuedCertificate) -> Certificate:
        with self._lock:
            stored = self._cert(cert_id)
            stored.cert_pem = material.cert_pem
            stored.key_pem = material.key_pem
            stored.ca_pem = material.ca_pem
            stored.fullchain_pem = material.fullchain_pem
            stored.fingerprint = material.fingerprint
            stored.issued_at = material.issued_at
            stored.expires_at = material.expires_at
            stored.status = CertStatus.ACTIVE
            stored.updated_at = utcnow()
            for binding in self._bindings.values():
                if binding.cert_id == cert_id:
                    binding.sync_status = SyncStatus.PENDING
            return copy.deepcopy(stored)

    def set_certificate_status(self, cert_id: int, status: CertStatus) -> None:
        with self._lock:
            self._cert(cert_id).status = status

    def record_renew_attempt(self, cert_id: int, attempted_at: datetime) -> None:
        with self._lock:
            self._cert(cert_id).last_renew_attempt = attempted_at

    def increment_fail_count(self, cert_id: int) -> int:
        with self._lock:
            stored = self._cert(cert_id)
            stored.fail_count += 1
            return stored.fail_count

    def set_next_retry(self, cert_id: int, next_retry_at: Optional[datetime]) -> None:
        with self._lock:
            self._cert(cert_id).next_retry_at = next_retry_at

    def reset_retry_state(self, cert_id: int) -> None:
        with self._lock:
            stored = self._cert(cert_id)
            stored.fail_count = 0
            stored.next_retry_at = None

    def mark_expired(self, now: datetime) -> List[int]:
        with self._lock:
            expired = []
            for cert in self._certs.values():
                if (
                    cert.expires_at is not None
                    and cert.expires_at <= now
                    and cert.status == CertStatus.ACTIVE
                ):
                    cert.status = CertStatus.EXPIRED
                    expired.append(cert.id)
            return expired

    def certs_expiring_within(self, days: int, now: datetime) -> List[Certificate]:
        horizon = now + timedelta(days=days)
        with self._lock:
            return [
                copy.deepcopy(c)
                for c in sorted(self._certs.values(), key=lambda c: c.id)
                if c.expires_at is not None and c.expires_at <= horizon
            ]

    def certs_due_for_retry(self, now: datetime) -> List[Certificate]:
        with self._lock:
            return [
                copy.deepcopy(c)
                for c in sorted(self._certs.values(), key=lambda c: c.id)
                if c.fail_count > 0 and c.next_retry_at is not None and c.next_retry_at <= now
            ]

    # ── In-flight issuance guard ──────────────────────────────────────────

    def acquire_issuance(self, cert_id: int) -> bool:
        now = utcnow()
        with self._lock:
            held_since = self._issuing.get(cert_id)
            if held_since is not None and now - held_since < ISSUANCE_LOCK_STALE_AFTER:
                return False
            self._issuing[cert_id] = now
            return True

    def release_issuance(self, cert_id: int) -> None:
        with self._lock:
            self._issuing.pop(cert_id, None)

    # ── Agents ────────────────────────────────────────────────────────────

    def create_agent(self, agent: Agent) -> Agent:
        with self._lock:
            if any(a.uuid == agent.uuid for a in self._agents.values()):
                raise AlreadyExists(f"agent uuid {agent.uuid} already exists")
            stored = copy.deepcopy(agent)
            stored.id = self._allocate_id()
            self._agents[stored.id] = stored
            return copy.deepcopy(stored)

    def get_agent(self, agent_id: int) -> Agent:
        with self._lock:
            return copy.deepcopy(self._agent(agent_id))

    def get_agent_by_uuid(self, agent_uuid: str) -> Agent:
        with self._lock:
            for agent in self._agents.values():
                if agent.uuid == agent_uuid:
                    return copy.deepcopy(agent)
            raise NotFound("agent not found")

    def list_agents(self) -> List[Agent]:
        with self._lock:
            return [copy.deepcopy(a) for a in self._agents.values()]

    def update_agent(self, agent: Agent) -> Agent:
        with self._lock:
            self._agent(agent.id)
            self._agents[agent.id] = copy.deepcopy(agent)
            return copy.deepcopy(agent)

    def delete_agent(self, agent_id: int) -> None:
        with self._lock:
            self._agent(agent_id)
            del self._agents[agent_id]
            for key in [k for k in self._bindings if k[0] == agent_id]:
                del self._bindings[key]

    def record_heartbeat(self, agent_id: int, ip: str, version: str, seen_at: datetime) -> None:
        with self._lock:
            agent = self._agent(agent_id)
            agent.last_seen = seen_at
            agent.ip = ip
            agent.version = version

    # ── Bindings ──────────────────────────────────────────────────────────

    def create_binding(self, binding: AgentCert) -> AgentCert:
        with self._lock:
            self._agent(binding.agent_id)
            self._cert(binding.cert_id)
            key = (binding.agent_id, binding.cert_id)
            if key in self._bindings:
                raise AlreadyExists(
                    f"certificate {binding.cert_id} is already bound to agent {binding.agent_id}"
                )
            stored = copy.deepcopy(binding)
            stored.id = self._allocate_id()
            self._bindings[key] = stored
            return copy.deepcopy(stored)

    def get_binding(self, agent_id: int, cert_id: int) -> AgentCert:
        with self._lock:
            try:
                return copy.deepcopy(self._bindings[(agent_id, cert_id)])
            except KeyError:
                raise NotFound(f"certificate {cert_id} is not bound to agent {agent_id}") from None

    def list_bindings_for_agent(self, agent_id: int) -> List[AgentCert]:
        with self._lock:
            return [
                copy.deepcopy(b)
                for b in sorted(self._bindings.values(), key=lambda b: b.id)
                if b.agent_id == agent_id
            ]

    def list_bindings_for_certificate(self, cert_id: int) -> List[AgentCert]:
        with self._lock:
            return [
                copy.deepcopy(b)
                for b in sorted(self._bindings.values(), key=lambda b: b.id)
                if b.cert_id == cert_id
            ]

    def update_binding(self, binding: AgentCert) -> AgentCert:
        with self._lock:
            key = (binding.agent_id, binding.cert_id)
            if key not in self._bindings:
                raise NotFound(f"certificate {binding.cert_id} is not bound to agent {binding.agent_id}")
            self._bindings[key] = copy.deepcopy(binding)
            return copy.deepcopy(binding)

    def delete_binding(self, agent_id: int, cert_id: int) -> None:
        with self._lock:
            if self._bindings.pop((agent_id, cert_id), None) is None:
                raise NotFound(f"certificate {cert_id} is not bound to agent {agent_id}")

    def update_sync_status(
        self,
        agent_id: int,
        cert_id: int,
        fingerprint: str,
        status: SyncStatus,
        synced_at: datetime,
    ) -> None:
        with self._lock:
            binding = self._bindings.get((agent_id, cert_id))
            if binding is None:
                raise NotFound(f"certificate {cert_id} is not bound to agent {agent_id}")
            binding.last_sync = synced_at
            binding.last_fingerprint = fingerprint
            binding.sync_status = status

    # ── Task log ──────────────────────────────────────────────────────────

    def create_task(self, cert_id: int, task_type: TaskType) -> TaskLogStatus:
        with self._lock:
            task = TaskLogStatus(task_id=new_task_id(), cert_id=cert_id, task_type=task_type)
            self._tasks[task.task_id] = task
            return copy.deepcopy(task)

    def append_task_log(self, task_id: str, level: str, message: str) -> None:
        with self._lock:
            task = self._tasks.get(task_id)
            if task is None:
                raise NotFound(f"task {task_id} not found")
            self._logs.append(
                TaskLog(
                    task_id=task_id,
                    cert_id=task.cert_id,
                    task_type=task.task_type,
                    level=level,
                    message=message,
                )
            )

    def complete_task(self, task_id: str, status: TaskStatus) -> None:
        with self._lock:
            task = self._tasks.get(task_id)
            if task is None:
                raise NotFound(f"task {task_id} not found")
            if task.is_terminal:
                raise TaskAlreadyFinished(f"task {task_id} already {task.status.value}")
            task.status = status
            task.end_time = utcnow()

    def get_task_status(self, task_id: str) -> TaskLogStatus:
        with self._lock:
            task = self._tasks.get(task_id)
            if task is None:
                raise NotFound(f"task {task_id} not found")
            return copy.deepcopy(task)

    def list_task_statuses(self, cert_id: Optional[int] = None) -> List[TaskLogStatus]:
        with self._lock:
            return [
                copy.deepcopy(t)
                for t in self._tasks.values()
                if cert_id is None or t.cert_id == cert_id
            ]

    def list_task_logs(self, task_id: str) -> List[TaskLog]:
        with self._lock:
            return [copy.deepcopy(entry) for entry in self._logs if entry.task_id == task_id]
