"""
Data model shared by the lifecycle engine, the scheduler and the agent registry.

Key decisions:
  - PEM material is kept as bytes; the server never interprets it beyond
    parsing validity dates and hashing the fullchain.
  - issued_at / expires_at are derived from the issued leaf certificate and
    only ever written through LifecycleStore.save_issued().
  - Agent.status is not stored at all; it is computed from last_seen.
  - All timestamps are timezone-aware UTC datetimes.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ChallengeType(str, Enum):
    DNS01 = "dns-01"
    HTTP01 = "http-01"  # placeholder; not implemented


class CertStatus(str, Enum):
    ACTIVE = "active"
    EXPIRED = "expired"
    ERROR = "error"


class RenewalState(str, Enum):
    CURRENT = "current"
    DUE = "due"
    RETRYING = "retrying"


class ProviderType(str, Enum):
    CLOUDFLARE = "cloudflare"
    ALIYUN = "aliyun"
    DNSPOD = "dnspod"
    ROUTE53 = "route53"
    GODADDY = "godaddy"


class AgentStatus(str, Enum):
    PENDING = "pending"
    ONLINE = "online"
    OFFLINE = "offline"


class SyncStatus(str, Enum):
    PENDING = "pending"
    SYNCED = "synced"
    FAILED = "failed"


class TaskType(str, Enum):
    ISSUE = "issue"
    RENEW = "renew"


class TaskStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


# ─── Certificates & providers ─────────────────────────────────────────────────


@dataclass
class DNSProvider:
    name: str
    type: ProviderType
    credentials: str                  # encrypted blob, see lifecycle.credentials
    id: int = 0
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class Certificate:
    domain: str
    san: List[str] = field(default_factory=list)
    dns_provider_id: Optional[int] = None
    challenge_type: ChallengeType = ChallengeType.DNS01
    id: int = 0

    cert_pem: bytes = b""
    key_pem: bytes = b""
    ca_pem: bytes = b""
    fullchain_pem: bytes = b""
    fingerprint: str = ""
    issued_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None

    status: CertStatus = CertStatus.ACTIVE
    fail_count: int = 0
    next_retry_at: Optional[datetime] = None
    last_renew_attempt: Optional[datetime] = None

    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def domains(self) -> List[str]:
        """Primary domain followed by SANs, de-duplicated, order preserved."""
        return list(dict.fromkeys([self.domain] + list(self.san)))

    @property
    def has_material(self) -> bool:
        return bool(self.fullchain_pem) and self.expires_at is not None

    def renewal_state(self, now: datetime, renew_before_days: int) -> RenewalState:
        if self.fail_count > 0:
            return RenewalState.RETRYING
        if self.expires_at is not None and self.expires_at - now <= timedelta(days=renew_before_days):
            return RenewalState.DUE
        return RenewalState.CURRENT


@dataclass
class IssuedCertificate:
    """Everything one successful ACME order produces."""

    cert_pem: bytes
    key_pem: bytes
    ca_pem: bytes
    fullchain_pem: bytes
    issued_at: datetime
    expires_at: datetime
    fingerprint: str


# ─── Agents & bindings ────────────────────────────────────────────────────────


@dataclass
class Agent:
    uuid: str
    signature: str
    name: str
    poll_interval: int = 300
    id: int = 0
    last_seen: Optional[datetime] = None
    ip: str = ""
    version: str = ""
    created_at: datetime = field(default_factory=utcnow)

    def status(self, now: Optional[datetime] = None) -> AgentStatus:
        if self.last_seen is None:
            return AgentStatus.PENDING
        now = now or utcnow()
        if now - self.last_seen > timedelta(seconds=2 * self.poll_interval):
            return AgentStatus.OFFLINE
        return AgentStatus.ONLINE


@dataclass
class FileMapping:
    cert: str = "cert.pem"
    key: str = "key.pem"
    fullchain: str = "fullchain.pem"

    def to_dict(self) -> dict:
        return {"cert": self.cert, "key": self.key, "fullchain": self.fullchain}

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "FileMapping":
        data = data or {}
        defaults = cls()
        return cls(
            cert=data.get("cert") or defaults.cert,
            key=data.get("key") or defaults.key,
            fullchain=data.get("fullchain") or defaults.fullchain,
        )


@dataclass
class AgentCert:
    agent_id: int
    cert_id: int
    deploy_path: str
    file_mapping: FileMapping = field(default_factory=FileMapping)
    reload_cmd: str = ""
    id: int = 0
    last_sync: Optional[datetime] = None
    last_fingerprint: str = ""
    sync_status: SyncStatus = SyncStatus.PENDING

    def needs_redeploy(self, cert: Certificate) -> bool:
        return self.last_fingerprint != cert.fingerprint


# ─── Audit ────────────────────────────────────────────────────────────────────


@dataclass
class TaskLog:
    task_id: str
    cert_id: int
    task_type: TaskType
    level: str
    message: str
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class TaskLogStatus:
    task_id: str
    cert_id: int
    task_type: TaskType
    status: TaskStatus = TaskStatus.RUNNING
    start_time: datetime = field(default_factory=utcnow)
    end_time: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status != TaskStatus.RUNNING
