"""
Agent identity: the server hands out <uuid>/<signature> pairs where the
signature is HMAC-SHA256(secret, uuid).  Only the server knows the secret, so
a UUID on its own never grants access.
"""
from __future__ import annotations

import hashlib
import hmac


def sign_agent(agent_uuid: str, secret: str) -> str:
    """Hex HMAC-SHA256 of *agent_uuid* keyed by *secret*."""
    if not secret:
        raise ValueError("AGENT_SECRET must be set to sign agent identities")
    return hmac.new(secret.encode(), agent_uuid.encode(), hashlib.sha256).hexdigest()


def verify_agent(agent_uuid: str, signature: str, secret: str) -> bool:
    """Constant-time check of *signature* against the recomputed HMAC."""
    if not agent_uuid or not signature or not secret:
        return False
    # A hex digest is pure ASCII; compare_digest raises TypeError on anything else
    if not signature.isascii():
        return False
    return hmac.compare_digest(sign_agent(agent_uuid, secret), signature.lower())
