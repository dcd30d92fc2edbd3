"""
SyncRunner — one agent poll cycle, and the loop around it.

    config → diff fingerprints → download + deploy changed certificates
           → reload each distinct command once → report outcomes → heartbeat

A certificate whose download or write fails keeps its previous local
fingerprint, so it is picked up again next cycle.  The poll interval comes
from the server config and is adopted for the following wait.
"""
from __future__ import annotations

import logging
import socket
import threading
from typing import Dict, List, Optional

import structlog

from agent.client import AgentClient
from agent.deployer import Deployer
from agent.errors import DeployError, NetworkError, ReloadError
from agent.reloader import Reloader
from agent.state import LocalState

logger = logging.getLogger(__name__)
log = structlog.get_logger(__name__)

MIN_POLL_INTERVAL = 10


def local_ip() -> str:
    """Best-effort outbound interface address; empty when undeterminable."""
    try:
        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as sock:
            sock.connect(("8.8.8.8", 80))
            return sock.getsockname()[0]
    except OSError:
        return ""


class SyncRunner:
    def __init__(
        self,
        client: AgentClient,
        state: LocalState,
        deployer: Deployer,
        reloader: Reloader,
        poll_interval: int = 300,
    ) -> None:
        self.client = client
        self.state = state
        self.deployer = deployer
        self.reloader = reloader
        self.poll_interval = poll_interval

    def run_cycle(self) -> int:
        """Run one sync cycle; returns the poll interval to wait before the next."""
        try:
            config = self.client.get_config()
        except NetworkError as exc:
            log.error("config_fetch_failed", error=str(exc), retry_in=self.poll_interval)
            return self.poll_interval

        interval = max(int(config.get("poll_interval") or self.poll_interval), MIN_POLL_INTERVAL)
        if interval != self.poll_interval:
            log.info("poll_interval_changed", old=self.poll_interval, new=interval)
            self.poll_interval = interval

        certs = config.get("certs", [])
        reports: List[dict] = []
        reload_cmds: Dict[str, None] = {}

        for cert in certs:
            cert_id = cert["id"]
            server_fp = cert.get("fingerprint", "")
            if not server_fp:
                log.debug("cert_not_issued", cert_id=cert_id, domain=cert.get("domain"))
                continue
            if not self.state.needs_update(cert_id, server_fp):
                continue

            try:
                bundle = self.client.get_certificate(cert_id)
                self.deployer.deploy(cert, bundle)
            except (NetworkError, DeployError) as exc:
                log.error("cert_sync_failed", cert_id=cert_id, domain=cert.get("domain"), error=str(exc))
                reports.append(self._failed(cert_id))
                continue

            deployed_fp = bundle.get("fingerprint") or server_fp
            try:
                self.state.record(cert_id, deployed_fp)
            except OSError as exc:
                log.error("state_write_failed", cert_id=cert_id, domain=cert.get("domain"), error=str(exc))
                reports.append(self._failed(cert_id))
                continue
            reports.append({"cert_id": cert_id, "fingerprint": deployed_fp, "status": "synced"})
            log.info("cert_synced", cert_id=cert_id, domain=cert.get("domain"), fingerprint=deployed_fp)
            if cert.get("reload_cmd", "").strip():
                reload_cmds[cert["reload_cmd"].strip()] = None

        for cmd in reload_cmds:
            try:
                self.reloader.reload(cmd)
            except ReloadError as exc:
                log.error("reload_failed", command=cmd, error=str(exc))

        if reports:
            try:
                self.client.report_status(reports)
            except NetworkError as exc:
                log.warning("status_report_failed", error=str(exc))

        try:
            self.client.send_heartbeat(local_ip())
        except NetworkError as exc:
            log.warning("heartbeat_failed", error=str(exc))

        log.info(
            "sync_cycle_finished",
            certs=len(certs),
            synced=sum(1 for r in reports if r["status"] == "synced"),
            failed=sum(1 for r in reports if r["status"] == "failed"),
            reloads=len(reload_cmds),
            next_poll=self.poll_interval,
        )
        return self.poll_interval

    def _failed(self, cert_id: int) -> dict:
        """Failure report carrying the fingerprint still deployed locally."""
        return {"cert_id": cert_id, "fingerprint": self.state.fingerprint(cert_id) or "", "status": "failed"}

    def run_forever(self, stop: Optional[threading.Event] = None) -> None:
        """Cycle until *stop* is set; a running cycle is always allowed to finish."""
        stop = stop or threading.Event()
        while not stop.is_set():
            try:
                interval = self.run_cycle()
            except Exception as exc:
                logger.exception("Sync cycle failed: %s", exc)
                interval = self.poll_interval
            if stop.wait(interval):
                break
        logger.info("Sync loop stopped")
