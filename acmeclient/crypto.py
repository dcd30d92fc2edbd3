"""
Domain private-key generation, CSR creation and issued-chain handling.

Boundary: this module owns everything cryptographic that is *domain*-specific.
Account-key operations (JWK, JWS, EAB) live in acmeclient/jws.py.
"""
from __future__ import annotations

import hashlib
import re
from datetime import datetime, timezone

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, rsa
from cryptography.x509.oid import NameOID

PrivateKey = rsa.RSAPrivateKey | ec.EllipticCurvePrivateKey

_PEM_CERT_RE = re.compile(
    rb"-----BEGIN CERTIFICATE-----\r?\n.+?\r?\n-----END CERTIFICATE-----", re.DOTALL
)


def generate_domain_key(key_type: str = "ec256") -> PrivateKey:
    """Generate the certificate key: ec256 (default), ec384, rsa2048 or rsa4096."""
    if key_type == "ec256":
        return ec.generate_private_key(ec.SECP256R1())
    if key_type == "ec384":
        return ec.generate_private_key(ec.SECP384R1())
    if key_type in ("rsa2048", "rsa4096"):
        return rsa.generate_private_key(public_exponent=65537, key_size=int(key_type[3:]))
    raise ValueError(f"Unsupported key type: {key_type!r}")


def private_key_to_pem(key: PrivateKey) -> bytes:
    """Serialize a private key to an unencrypted PKCS8 PEM."""
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )


def create_csr(
    private_key: PrivateKey,
    domain: str,
    san_domains: list[str] | None = None,
) -> bytes:
    """
    Create a DER-encoded CSR for *domain*.

    *domain* is always the first SubjectAlternativeName; *san_domains* follow
    with duplicates dropped and order preserved.
    """
    all_domains = list(dict.fromkeys([domain] + (san_domains or [])))

    builder = (
        x509.CertificateSigningRequestBuilder()
        .subject_name(x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, domain)]))
        .add_extension(
            x509.SubjectAlternativeName([x509.DNSName(d) for d in all_domains]),
            critical=False,
        )
    )

    csr = builder.sign(private_key, hashes.SHA256())
    return csr.public_bytes(serialization.Encoding.DER)


def split_pem_chain(full_chain_pem: bytes) -> tuple[bytes, bytes]:
    """
    Split a PEM chain into (leaf, intermediates).

    Raises ValueError if the chain contains no certificate at all.
    """
    blocks = _PEM_CERT_RE.findall(full_chain_pem)
    if not blocks:
        raise ValueError("No PEM certificate found in chain")
    leaf = blocks[0] + b"\n"
    chain = b"".join(block + b"\n" for block in blocks[1:])
    return leaf, chain


def certificate_validity(cert_pem: bytes) -> tuple[datetime, datetime]:
    """Return (not_before, not_after) of a PEM certificate as aware UTC datetimes."""
    cert = x509.load_pem_x509_certificate(cert_pem)
    try:
        return cert.not_valid_before_utc, cert.not_valid_after_utc
    except AttributeError:
        # cryptography < 42
        return (
            cert.not_valid_before.replace(tzinfo=timezone.utc),
            cert.not_valid_after.replace(tzinfo=timezone.utc),
        )


def fingerprint(fullchain_pem: bytes) -> str:
    """Content fingerprint of a certificate bundle: "sha256:" + hex digest."""
    return "sha256:" + hashlib.sha256(fullchain_pem).hexdigest()
