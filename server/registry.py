"""
AgentRegistry — server-side view of deployment agents.

Owns agent identities (uuid + HMAC signature), certificate bindings and the
data served to agents over the sync protocol.  The HTTP layer (server.api)
is a thin adapter over these methods.
"""
from __future__ import annotations

import logging
import uuid
from datetime import datetime
from typing import Callable, Iterable, List, Optional

from lifecycle.errors import NotFound, SignatureMismatch
from lifecycle.models import Agent, AgentCert, FileMapping, SyncStatus, utcnow
from lifecycle.store import LifecycleStore
from server.signing import sign_agent, verify_agent

logger = logging.getLogger(__name__)


class AgentRegistry:
    def __init__(
        self,
        store: LifecycleStore,
        secret: str,
        public_url: str = "",
        default_poll_interval: int = 300,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.secret = secret
        self.public_url = public_url.rstrip("/")
        self.default_poll_interval = default_poll_interval
        self._clock = clock

    # ── Identity ──────────────────────────────────────────────────────────

    def create_agent(self, name: str, poll_interval: Optional[int] = None) -> Agent:
        agent_uuid = str(uuid.uuid4())
        agent = Agent(
            uuid=agent_uuid,
            signature=sign_agent(agent_uuid, self.secret),
            name=name,
            poll_interval=poll_interval or self.default_poll_interval,
        )
        agent = self.store.create_agent(agent)
        logger.info("Created agent %s (%s)", agent.name, agent.uuid)
        return agent

    def regenerate_credentials(self, agent_id: int) -> Agent:
        """Issue a new uuid + signature; the old connect URL stops working."""
        agent = self.store.get_agent(agent_id)
        agent.uuid = str(uuid.uuid4())
        agent.signature = sign_agent(agent.uuid, self.secret)
        agent = self.store.update_agent(agent)
        logger.info("Regenerated credentials for agent %s", agent.name)
        return agent

    def connect_url(self, agent: Agent) -> str:
        return f"{self.public_url}/agent/{agent.uuid}/{agent.signature}"

    def authenticate(self, agent_uuid: str, signature: str) -> Agent:
        """
        Resolve the agent behind a <uuid>/<signature> path pair.

        The signature is checked before the store is consulted; every failure
        raises the same SignatureMismatch.
        """
        if not verify_agent(agent_uuid, signature, self.secret):
            raise SignatureMismatch()
        try:
            return self.store.get_agent_by_uuid(agent_uuid)
        except NotFound:
            raise SignatureMismatch() from None

    def list_agents(self) -> List[dict]:
        now = self._clock()
        return [
            {
                "id": a.id,
                "name": a.name,
                "status": a.status(now).value,
                "last_seen": a.last_seen.isoformat() if a.last_seen else None,
                "ip": a.ip,
                "version": a.version,
                "poll_interval": a.poll_interval,
                "certs": len(self.store.list_bindings_for_agent(a.id)),
            }
            for a in self.store.list_agents()
        ]

    # ── Bindings ──────────────────────────────────────────────────────────

    def bind(
        self,
        agent_id: int,
        cert_id: int,
        deploy_path: str,
        file_mapping: Optional[FileMapping] = None,
        reload_cmd: str = "",
    ) -> AgentCert:
        binding = AgentCert(
            agent_id=agent_id,
            cert_id=cert_id,
            deploy_path=deploy_path,
            file_mapping=file_mapping or FileMapping(),
            reload_cmd=reload_cmd,
        )
        return self.store.create_binding(binding)

    def update_binding(
        self,
        agent_id: int,
        cert_id: int,
        deploy_path: Optional[str] = None,
        file_mapping: Optional[FileMapping] = None,
        reload_cmd: Optional[str] = None,
    ) -> AgentCert:
        """Change deployment settings; the agent re-syncs the certificate."""
        binding = self.store.get_binding(agent_id, cert_id)
        if deploy_path is not None:
            binding.deploy_path = deploy_path
        if file_mapping is not None:
            binding.file_mapping = file_mapping
        if reload_cmd is not None:
            binding.reload_cmd = reload_cmd
        binding.sync_status = SyncStatus.PENDING
        return self.store.update_binding(binding)

    def unbind(self, agent_id: int, cert_id: int) -> None:
        self.store.delete_binding(agent_id, cert_id)

    # ── Sync protocol ─────────────────────────────────────────────────────

    def build_config(self, agent: Agent) -> dict:
        certs = []
        for binding in self.store.list_bindings_for_agent(agent.id):
            cert = self.store.get_certificate(binding.cert_id)
            certs.append({
                "id": cert.id,
                "domain": cert.domain,
                "fingerprint": cert.fingerprint,
                "deploy_path": binding.deploy_path,
                "file_mapping": binding.file_mapping.to_dict(),
                "reload_cmd": binding.reload_cmd,
            })
        return {
            "agent_id": agent.id,
            "name": agent.name,
            "poll_interval": agent.poll_interval,
            "certs": certs,
        }

    def list_certificates(self, agent: Agent) -> List[dict]:
        result = []
        for binding in self.store.list_bindings_for_agent(agent.id):
            cert = self.store.get_certificate(binding.cert_id)
            result.append({"id": cert.id, "domain": cert.domain, "fingerprint": cert.fingerprint})
        return result

    def certificate_bundle(self, agent: Agent, cert_id: int) -> dict:
        """PEM material for a certificate bound to *agent*."""
        self.store.get_binding(agent.id, cert_id)
        cert = self.store.get_certificate(cert_id)
        if not cert.has_material:
            raise NotFound(f"certificate {cert_id} has not been issued yet")
        return {
            "cert_pem": cert.cert_pem.decode(),
            "key_pem": cert.key_pem.decode(),
            "fullchain_pem": cert.fullchain_pem.decode(),
            "fingerprint": cert.fingerprint,
        }

    def record_heartbeat(self, agent: Agent, ip: str, version: str = "") -> None:
        self.store.record_heartbeat(agent.id, ip, version, self._clock())

    def record_sync_reports(self, agent: Agent, reports: Iterable[dict]) -> int:
        """Apply agent-reported outcomes; returns how many were recorded."""
        now = self._clock()
        recorded = 0
        for report in reports:
            cert_id = report["cert_id"]
            try:
                self.store.update_sync_status(
                    agent.id, cert_id, report.get("fingerprint", ""), SyncStatus(report["status"]), now
                )
            except NotFound:
                logger.warning("Agent %s reported status for unbound certificate %s", agent.name, cert_id)
                continue
            recorded += 1
        return recorded


def make_registry(store: LifecycleStore) -> AgentRegistry:
    from config import settings  # noqa: PLC0415

    return AgentRegistry(
        store,
        secret=settings.AGENT_SECRET,
        public_url=settings.public_url,
        default_poll_interval=settings.AGENT_DEFAULT_POLL_INTERVAL,
    )
