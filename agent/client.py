"""
HTTP client for the agent side of the sync protocol.

The server URL given to the agent already carries its identity:
    https://letsync.example.com/agent/<uuid>/<signature>
so every call is a plain request relative to that base.
"""
from __future__ import annotations

import json
import logging
from typing import Iterable, List, Optional

import requests

from agent.errors import NetworkError

logger = logging.getLogger(__name__)

AGENT_VERSION = "1.0.0"
MAX_RESPONSE_BYTES = 10 * 1024 * 1024


class AgentClient:
    def __init__(
        self,
        base_url: str,
        timeout: float = 30.0,
        version: str = AGENT_VERSION,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.version = version
        self._session = session or requests.Session()
        self._session.headers.update({"User-Agent": f"letsync-agent/{version}"})
        if not self.base_url.startswith("https://"):
            logger.warning("Server URL is not HTTPS; private keys will cross the network in clear: %s", self.base_url)

    # ── Protocol calls ────────────────────────────────────────────────────

    def get_config(self) -> dict:
        """{agent_id, name, poll_interval, certs: [...]}"""
        return self._request("GET", "/config")

    def list_certificates(self) -> List[dict]:
        return self._request("GET", "/certs").get("certs", [])

    def get_certificate(self, cert_id: int) -> dict:
        """{cert_pem, key_pem, fullchain_pem, fingerprint}"""
        return self._request("GET", f"/cert/{cert_id}")

    def send_heartbeat(self, ip: str) -> None:
        self._request("POST", "/heartbeat", json={"ip": ip, "version": self.version})

    def report_status(self, reports: Iterable[dict]) -> None:
        self._request("POST", "/status", json=list(reports))

    # ── Internal ──────────────────────────────────────────────────────────

    def _request(self, method: str, path: str, **kwargs) -> dict:
        url = self.base_url + path
        try:
            resp = self._session.request(method, url, timeout=self.timeout, stream=True, **kwargs)
        except requests.RequestException as exc:
            raise NetworkError(f"{method} {path} failed: {exc}") from exc
        try:
            body = _read_limited(resp)
        finally:
            resp.close()
        if resp.status_code != 200:
            raise NetworkError(
                f"{method} {path} returned {resp.status_code}: {body[:200].decode(errors='replace')}"
            )
        try:
            return json.loads(body) if body else {}
        except ValueError as exc:
            raise NetworkError(f"{method} {path} returned invalid JSON: {exc}") from exc


def _read_limited(resp: requests.Response) -> bytes:
    chunks = []
    size = 0
    try:
        for chunk in resp.iter_content(chunk_size=65536):
            size += len(chunk)
            if size > MAX_RESPONSE_BYTES:
                raise NetworkError(f"response exceeds {MAX_RESPONSE_BYTES} bytes")
            chunks.append(chunk)
    except requests.RequestException as exc:
        raise NetworkError(f"reading response failed: {exc}") from exc
    return b"".join(chunks)
