"""
Shared pytest fixtures.

Nothing here talks to a real CA, DNS provider or resolver:

  FakeAcme          in-memory stand-in for AcmeClient, issuing chains from a
                    throwaway CA built with `cryptography`
  FakeDNSProvider   DNSChallengeProvider that keeps TXT records in a dict
  ZonePropagation   PropagationChecker that "resolves" from FakeDNSProvider
  FrozenClock       datetime clock that tests advance explicitly
"""
from __future__ import annotations

import copy
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Dict, List, Optional, Set

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID

from acmeclient import jws as jwslib
from acmeclient.client import AcmeError
from challenge.coordinator import ChallengeCoordinator
from challenge.dns_providers import DNSChallengeProvider
from challenge.propagation import PropagationChecker
from lifecycle.credentials import encrypt_credentials, generate_key
from lifecycle.errors import ProviderError
from lifecycle.models import Certificate, DNSProvider, ProviderType
from lifecycle.notifier import Notifier
from lifecycle.sqlite_store import SQLiteStore
from lifecycle.store import MemoryStore


# ─── Certificate chains ───────────────────────────────────────────────────────


def make_chain(
    domains: List[str],
    not_before: Optional[datetime] = None,
    days: int = 90,
) -> bytes:
    """Return a PEM fullchain (leaf + issuing CA) valid for *days* from *not_before*."""
    not_before = (not_before or datetime.now(timezone.utc)).replace(microsecond=0)
    not_after = not_before + timedelta(days=days)

    ca_key = ec.generate_private_key(ec.SECP256R1())
    ca_name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, "Test Issuing CA")])
    ca_cert = (
        x509.CertificateBuilder()
        .subject_name(ca_name)
        .issuer_name(ca_name)
        .public_key(ca_key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(not_before - timedelta(days=1))
        .not_valid_after(not_after + timedelta(days=365))
        .add_extension(x509.BasicConstraints(ca=True, path_length=None), critical=True)
        .sign(ca_key, hashes.SHA256())
    )

    leaf_key = ec.generate_private_key(ec.SECP256R1())
    leaf_cert = (
        x509.CertificateBuilder()
        .subject_name(x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, domains[0])]))
        .issuer_name(ca_name)
        .public_key(leaf_key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(not_before)
        .not_valid_after(not_after)
        .add_extension(x509.SubjectAlternativeName([x509.DNSName(d) for d in domains]), critical=False)
        .sign(ca_key, hashes.SHA256())
    )
    return (
        leaf_cert.public_bytes(serialization.Encoding.PEM)
        + ca_cert.public_bytes(serialization.Encoding.PEM)
    )


@pytest.fixture()
def chain_factory():
    return make_chain


# ─── Clocks ───────────────────────────────────────────────────────────────────


class FrozenClock:
    """Callable datetime clock; advance() moves it forward."""

    def __init__(self, now: Optional[datetime] = None) -> None:
        self.now = now or datetime(2026, 1, 15, 3, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class FakeMonotonic:
    """Monotonic clock whose sleep() advances time instantly."""

    def __init__(self) -> None:
        self.t = 1000.0
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.t

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.t += seconds


@pytest.fixture()
def clock():
    return FrozenClock()


@pytest.fixture()
def monotonic():
    return FakeMonotonic()


# ─── Stores ───────────────────────────────────────────────────────────────────


@pytest.fixture()
def store():
    return MemoryStore()


@pytest.fixture()
def sqlite_store(tmp_path: Path):
    s = SQLiteStore(tmp_path / "letsync.db")
    yield s
    s.close()


@pytest.fixture(params=["memory", "sqlite"])
def any_store(request, tmp_path: Path):
    """Run a test against both LifecycleStore implementations."""
    if request.param == "memory":
        yield MemoryStore()
    else:
        s = SQLiteStore(tmp_path / "letsync.db")
        yield s
        s.close()


@pytest.fixture(scope="session")
def encryption_key() -> str:
    return generate_key()


# ─── DNS ──────────────────────────────────────────────────────────────────────


class FakeDNSProvider(DNSChallengeProvider):
    type = ProviderType.CLOUDFLARE
    resolvers = ("192.0.2.53",)

    def __init__(self, credentials: Optional[dict] = None) -> None:
        super().__init__(credentials or {})
        self.records: Dict[str, Set[str]] = {}
        self.created: List[tuple] = []
        self.removed: List[tuple] = []
        self.fail_create = False
        self.fail_remove = False
        # Names whose records never become visible to resolvers
        self.invisible: Set[str] = set()

    def create_record(self, zone: str, name: str, value: str) -> None:
        if self.fail_create:
            raise ProviderError("fake provider: create refused")
        self.created.append((zone, name, value))
        self.records.setdefault(name, set()).add(value)

    def remove_record(self, zone: str, name: str, value: str) -> None:
        if self.fail_remove:
            raise ProviderError("fake provider: delete refused")
        self.removed.append((zone, name, value))
        self.records.get(name, set()).discard(value)

    def visible(self, name: str) -> Set[str]:
        if name in self.invisible:
            return set()
        return set(self.records.get(name, set()))


class ZonePropagation(PropagationChecker):
    """PropagationChecker answering from a FakeDNSProvider instead of the network."""

    def __init__(self, provider: FakeDNSProvider, monotonic: FakeMonotonic, timeout: float = 300.0) -> None:
        super().__init__(timeout=timeout, interval=5.0, sleep=monotonic.sleep, clock=monotonic)
        self.provider = provider
        self.queried_nameservers: List[list] = []

    def lookup_txt(self, name, nameservers):
        self.queried_nameservers.append(list(nameservers))
        return self.provider.visible(name)


@pytest.fixture()
def fake_dns():
    return FakeDNSProvider()


@pytest.fixture()
def propagation(fake_dns, monotonic):
    return ZonePropagation(fake_dns, monotonic)


# ─── ACME ─────────────────────────────────────────────────────────────────────


class FakeAcme:
    """
    Plays the CA side of one or more orders.

    Knobs:
      invalid_domains   authorizations for these names are marked invalid
      order_error       exception raised by create_order
      valid_days        lifetime of issued leaf certificates
    """

    account_url = "https://acme.test/acct/1"

    def __init__(self) -> None:
        self.registered = False
        self.invalid_domains: Set[str] = set()
        self.already_valid: Set[str] = set()
        self.order_error: Optional[Exception] = None
        self.valid_days = 90
        self.authz: Dict[str, dict] = {}
        self.orders: List[List[str]] = []
        self.responded: List[str] = []
        self.csrs: List[bytes] = []
        self.issued: List[bytes] = []
        self.calls: List[str] = []

    def get_nonce(self) -> str:
        self.calls.append("nonce")
        return "nonce-0"

    def lookup_account(self, account_key, nonce):
        self.calls.append("lookup_account")
        return (self.account_url if self.registered else None), "nonce-1"

    def create_account(self, account_key, nonce, email="", eab_key_id="", eab_hmac_key=""):
        self.calls.append("create_account")
        self.registered = True
        return self.account_url, "nonce-2"

    def create_order(self, domains, account_key, account_url, nonce):
        self.calls.append("create_order")
        if self.order_error is not None:
            raise self.order_error
        self.orders.append(list(domains))
        n = len(self.orders)
        urls = []
        for i, domain in enumerate(domains):
            url = f"https://acme.test/authz/{n}/{i}"
            base = domain[2:] if domain.startswith("*.") else domain
            self.authz[url] = {
                "identifier": {"type": "dns", "value": base},
                "status": "valid" if domain in self.already_valid else "pending",
                "wildcard": domain.startswith("*."),
                "challenges": [
                    {"type": "http-01", "url": f"https://acme.test/chall/{n}/{i}/http", "token": f"h{n}{i}"},
                    {"type": "dns-01", "url": f"https://acme.test/chall/{n}/{i}/dns", "token": f"tok{n}{i}"},
                ],
            }
            urls.append(url)
        order = {"status": "pending", "authorizations": urls, "finalize": f"https://acme.test/finalize/{n}"}
        return order, f"https://acme.test/order/{n}", "nonce-3"

    def get_authorization(self, auth_url, account_key, account_url):
        self.calls.append("get_authorization")
        return copy.deepcopy(self.authz[auth_url])

    def respond_to_challenge(self, challenge_url, account_key, account_url, nonce):
        self.calls.append("respond")
        self.responded.append(challenge_url)
        return {"status": "processing"}, "nonce-4"

    def poll_authorization(self, auth_url, account_key, account_url, timeout=300.0, poll_interval=2.0):
        self.calls.append("poll_authorization")
        authz = self.authz[auth_url]
        if authz["identifier"]["value"] in self.invalid_domains:
            authz["status"] = "invalid"
            raise AcmeError(200, {
                "type": "urn:ietf:params:acme:error:dns",
                "detail": f"No TXT record found at _acme-challenge.{authz['identifier']['value']}",
            })
        authz["status"] = "valid"
        return copy.deepcopy(authz)

    def finalize_order(self, finalize_url, csr_der, account_key, account_url, nonce):
        self.calls.append("finalize")
        self.csrs.append(csr_der)
        return {"status": "processing"}, "nonce-5"

    def poll_order_for_certificate(self, order_url, account_key, account_url, timeout=300.0, poll_interval=3.0):
        self.calls.append("poll_order")
        return order_url.replace("/order/", "/cert/")

    def download_certificate(self, cert_url, account_key, account_url, nonce):
        self.calls.append("download")
        chain = make_chain(self.orders[-1], days=self.valid_days)
        self.issued.append(chain)
        return chain, "nonce-6"


@pytest.fixture()
def fake_acme():
    return FakeAcme()


@pytest.fixture(scope="session")
def account_key_file(tmp_path_factory) -> str:
    """One RSA account key for the whole session; generating 2048-bit keys is slow."""
    path = tmp_path_factory.mktemp("acme") / "account.key"
    jwslib.save_account_key(jwslib.generate_account_key(), str(path))
    return str(path)


# ─── Lifecycle objects ────────────────────────────────────────────────────────


class RecordingNotifier(Notifier):
    def __init__(self) -> None:
        self.sent: List[tuple] = []

    def send(self, title: str, body: str) -> None:
        self.sent.append((title, body))


@pytest.fixture()
def notifier():
    return RecordingNotifier()


@pytest.fixture()
def provider_record(store, encryption_key):
    return store.create_provider(DNSProvider(
        name="cf-main",
        type=ProviderType.CLOUDFLARE,
        credentials=encrypt_credentials({"api_token": "test-token"}, encryption_key),
    ))


@pytest.fixture()
def certificate(store, provider_record):
    return store.create_certificate(Certificate(
        domain="example.com",
        san=["www.example.com"],
        dns_provider_id=provider_record.id,
    ))


@pytest.fixture()
def coordinator(store, fake_acme, fake_dns, propagation, encryption_key, account_key_file):
    return ChallengeCoordinator(
        store,
        fake_acme,
        encryption_key=encryption_key,
        account_key_path=account_key_file,
        email="ops@example.com",
        challenge_timeout=300,
        propagation=propagation,
        provider_factory=lambda record, key: fake_dns,
    )
