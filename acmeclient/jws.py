"""
JWK / JWS / EAB utilities for the ACME protocol (RFC 8555 + RFC 8739).

Uses *josepy* for the JWK model of the account key.

Responsibilities (boundary with acmeclient/crypto.py):
  - Generate / load / persist the **account** RSA key
  - Compute the JWK thumbprint and DNS-01 key-authorizations
  - Sign ACME POST bodies as JWS (with jwk or kid header)
  - Build the EAB outer-JWS for CAs that require account binding (ZeroSSL)
"""
from __future__ import annotations

import base64
import hashlib
import hmac
import json
import logging
from pathlib import Path
from typing import Any

from josepy.jwk import JWKRSA
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa

from storage.atomic import atomic_write_bytes

logger = logging.getLogger(__name__)


# ─── Account key I/O ──────────────────────────────────────────────────────────


def generate_account_key(key_size: int = 2048) -> JWKRSA:
    """Generate a new RSA account key wrapped in a josepy JWKRSA."""
    private_key = rsa.generate_private_key(public_exponent=65537, key_size=key_size)
    return JWKRSA(key=private_key)


def save_account_key(jwk: JWKRSA, path: str) -> None:
    """Persist the account key as PKCS8 PEM, mode 0600, written atomically."""
    pem = jwk.key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )
    atomic_write_bytes(Path(path), pem, mode=0o600)


def load_account_key(path: str) -> JWKRSA:
    pem = Path(path).read_bytes()
    private_key = serialization.load_pem_private_key(pem, password=None)
    return JWKRSA(key=private_key)


def load_or_create_account_key(path: str) -> JWKRSA:
    """Load the account key at *path*, generating and saving one on first use."""
    if Path(path).exists():
        return load_account_key(path)
    logger.info("No ACME account key at %s — generating a new one", path)
    jwk = generate_account_key()
    save_account_key(jwk, path)
    return jwk


# ─── Thumbprint & key authorization ───────────────────────────────────────────


def compute_jwk_thumbprint(jwk: JWKRSA) -> str:
    """Base64url SHA-256 thumbprint of the public JWK (RFC 7638)."""
    pub_dict = jwk.public_key().fields_to_partial_json()
    pub_dict["kty"] = "RSA"
    canonical = json.dumps(
        {k: pub_dict[k] for k in ("e", "kty", "n")}, sort_keys=True, separators=(",", ":")
    )
    return _b64url(hashlib.sha256(canonical.encode()).digest())


def compute_key_authorization(token: str, jwk: JWKRSA) -> str:
    """key_authorization = token + "." + thumbprint"""
    return f"{token}.{compute_jwk_thumbprint(jwk)}"


def compute_dns_txt_value(key_authorization: str) -> str:
    """Return base64url(SHA-256(key_authorization)) with no padding (RFC 8555 §8.4)."""
    digest = hashlib.sha256(key_authorization.encode("ascii")).digest()
    return _b64url(digest)


# ─── JWS signing ─────────────────────────────────────────────────────────────


def sign_request(
    payload: dict | None,
    account_key: JWKRSA,
    nonce: str,
    url: str,
    account_url: str | None = None,
) -> dict:
    """
    Sign an ACME request payload and return the flattened JWS dict to POST.

    Without *account_url* the protected header carries the full JWK (used
    for newAccount); with it, the shorter "kid" form.  A None payload
    produces a POST-as-GET body.
    """
    header: dict[str, Any] = {
        "alg": "RS256",
        "nonce": nonce,
        "url": url,
    }
    if account_url:
        header["kid"] = account_url
    else:
        header["jwk"] = _public_jwk(account_key)

    protected = _b64url(json.dumps(header).encode())
    payload_b64 = "" if payload is None else _b64url(json.dumps(payload).encode())

    signing_input = f"{protected}.{payload_b64}".encode()
    signature = account_key.key.sign(signing_input, padding.PKCS1v15(), hashes.SHA256())

    return {
        "protected": protected,
        "payload": payload_b64,
        "signature": _b64url(signature),
    }


# ─── EAB (External Account Binding) ──────────────────────────────────────────


def create_eab_jws(
    account_jwk: JWKRSA,
    eab_kid: str,
    eab_hmac_key_b64url: str,
    new_account_url: str,
) -> dict:
    """
    Build the EAB outer-JWS (RFC 8555 §7.3.4).

      - Protected header: {"alg":"HS256","kid":<eab_kid>,"url":<newAccount url>}
      - Payload: the account public JWK
      - Signature: HMAC-SHA256 keyed with the decoded EAB HMAC key

    Raises ValueError for an empty kid, a key that is not base64url, or a
    decoded key shorter than 16 bytes.
    """
    if not eab_kid or not eab_kid.strip():
        raise ValueError("EAB key ID (eab_kid) cannot be empty")
    if not eab_hmac_key_b64url or not eab_hmac_key_b64url.strip():
        raise ValueError("EAB HMAC key cannot be empty")

    try:
        hmac_key = _b64url_decode(eab_hmac_key_b64url)
    except ValueError as exc:
        raise ValueError(f"EAB HMAC key is not valid base64url: {exc!s}") from exc

    if len(hmac_key) < 16:
        raise ValueError(
            f"EAB HMAC key is too short: {len(hmac_key)} bytes. Must be at least 16 bytes."
        )

    protected = _b64url(json.dumps({"alg": "HS256", "kid": eab_kid, "url": new_account_url}).encode())
    payload = _b64url(json.dumps(_public_jwk(account_jwk)).encode())

    signing_input = f"{protected}.{payload}".encode()
    mac = hmac.new(hmac_key, signing_input, hashlib.sha256).digest()

    return {
        "protected": protected,
        "payload": payload,
        "signature": _b64url(mac),
    }


# ─── Internal helpers ─────────────────────────────────────────────────────────


def _public_jwk(jwk: JWKRSA) -> dict:
    pub = jwk.public_key().fields_to_partial_json()
    pub["kty"] = "RSA"
    return pub


def _b64url(data: bytes) -> str:
    """URL-safe base64 encoding with no padding (as required by JOSE)."""
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode()


def _b64url_decode(s: str) -> bytes:
    """URL-safe base64 decode, adding padding as needed (binascii.Error is a ValueError)."""
    pad = 4 - len(s) % 4
    if pad != 4:
        s += "=" * pad
    return base64.urlsafe_b64decode(s)
