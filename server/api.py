"""
Agent sync protocol over HTTP.

Every route lives under /agent/{uuid}/{signature}; the auth dependency runs
before the handler and answers 401 {"detail": "unauthorized"} for any bad
identity, never saying whether the uuid exists.
"""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request, status
from pydantic import BaseModel

from lifecycle.errors import NotFound, SignatureMismatch
from lifecycle.models import Agent, SyncStatus
from scheduler.renewal import RenewalScheduler
from server.rate_limit import DownloadRateLimiter
from server.registry import AgentRegistry

logger = logging.getLogger(__name__)


class Heartbeat(BaseModel):
    ip: str = ""
    version: str = ""


class SyncReport(BaseModel):
    cert_id: int
    fingerprint: str = ""
    status: SyncStatus


def build_router(registry: AgentRegistry, limiter: DownloadRateLimiter) -> APIRouter:
    router = APIRouter(prefix="/agent/{agent_uuid}/{signature}", tags=["agent"])

    def authenticated_agent(agent_uuid: str, signature: str) -> Agent:
        try:
            return registry.authenticate(agent_uuid, signature)
        except SignatureMismatch:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="unauthorized") from None

    @router.get("/config")
    def get_config(agent: Agent = Depends(authenticated_agent)) -> dict:
        """Agent name, recommended poll interval and bound certificates."""
        return registry.build_config(agent)

    @router.get("/certs")
    def list_certs(agent: Agent = Depends(authenticated_agent)) -> dict:
        return {"certs": registry.list_certificates(agent)}

    @router.get("/cert/{cert_id}")
    def download_cert(cert_id: int, request: Request, agent: Agent = Depends(authenticated_agent)) -> dict:
        client_ip = request.client.host if request.client else "unknown"
        if not limiter.allow(client_ip):
            logger.warning("Download rate limit exceeded for %s (agent %s)", client_ip, agent.name)
            raise HTTPException(status_code=status.HTTP_429_TOO_MANY_REQUESTS, detail="rate limit exceeded")
        try:
            return registry.certificate_bundle(agent, cert_id)
        except NotFound:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="certificate not found") from None

    @router.post("/heartbeat")
    def heartbeat(body: Heartbeat, request: Request, agent: Agent = Depends(authenticated_agent)) -> dict:
        ip = body.ip or (request.client.host if request.client else "")
        registry.record_heartbeat(agent, ip, body.version)
        return {"status": "ok"}

    @router.post("/status")
    def report_status(reports: List[SyncReport], agent: Agent = Depends(authenticated_agent)) -> dict:
        recorded = registry.record_sync_reports(
            agent,
            ({"cert_id": r.cert_id, "fingerprint": r.fingerprint, "status": r.status.value} for r in reports),
        )
        return {"status": "ok", "recorded": recorded}

    return router


def create_app(
    registry: AgentRegistry,
    limiter: DownloadRateLimiter,
    scheduler: Optional[RenewalScheduler] = None,
) -> FastAPI:
    """Build the agent-facing application; the lifespan owns background threads."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        limiter.start()
        if scheduler is not None:
            scheduler.start()
        yield
        if scheduler is not None:
            scheduler.stop()
        limiter.stop()

    app = FastAPI(title="letsync", lifespan=lifespan)
    app.include_router(build_router(registry, limiter))

    @app.get("/health")
    def health() -> dict:
        return {"status": "ok"}

    return app
