"""
ChallengeCoordinator — drives one ACME DNS-01 issuance end to end.

    order → per-authorization TXT record → propagation wait → CA validation
          → finalize with a fresh key + CSR → download chain → persist

issue(cert_id) and renew(cert_id) differ only in the task type recorded in
the audit log.  Both:
  * refuse to start while another issuance holds the certificate's lock
    (IssuanceInProgress), before any audit row is written
  * record every step in a TaskLog task that ends completed or failed
  * always try to remove the TXT records they created; removal failures are
    logged and never turn a successful issuance into a failure
  * persist nothing unless the whole order succeeded
  * raise an IssuanceError subclass on failure
"""
from __future__ import annotations

import logging
from typing import Callable, List, Optional, Tuple

import requests

from acmeclient import jws as jwslib
from acmeclient.client import AcmeClient, AcmeError, AcmeTimeout
from acmeclient.crypto import (
    certificate_validity,
    create_csr,
    fingerprint,
    generate_domain_key,
    private_key_to_pem,
    split_pem_chain,
)
from challenge.dns_providers import DNSChallengeProvider, challenge_record_name, make_dns_provider
from challenge.propagation import PropagationChecker
from lifecycle.errors import (
    IssuanceError,
    IssuanceInProgress,
    NotFound,
    PropagationTimeout,
    ProviderError,
    RateLimited,
    ValidationRejected,
)
from lifecycle.models import (
    Certificate,
    CertStatus,
    ChallengeType,
    DNSProvider,
    IssuedCertificate,
    TaskStatus,
    TaskType,
)
from lifecycle.store import LifecycleStore
from lifecycle.task_log import TaskLogger

logger = logging.getLogger(__name__)

ProviderFactory = Callable[[DNSProvider, str], DNSChallengeProvider]

# Operator-facing hints appended to the task log, keyed by ACME problem type suffix
_PROBLEM_HINTS = {
    "dns": "DNS validation failed: check that the TXT record is published in the right zone",
    "connection": "The CA could not reach the validation target; check network connectivity",
    "rateLimited": "The CA is rate limiting this account or domain; the retry backoff will space attempts out",
    "unauthorized": "Validation was refused; check the DNS provider credentials and zone",
    "timeout": "Timed out waiting for the CA; DNS propagation may be slow",
}


class ChallengeCoordinator:
    def __init__(
        self,
        store: LifecycleStore,
        acme: AcmeClient,
        encryption_key: str,
        account_key_path: str,
        email: str = "",
        eab_key_id: str = "",
        eab_hmac_key: str = "",
        key_type: str = "ec256",
        challenge_timeout: float = 300.0,
        poll_interval: float = 2.0,
        propagation: Optional[PropagationChecker] = None,
        provider_factory: ProviderFactory = make_dns_provider,
    ) -> None:
        self.store = store
        self.acme = acme
        self.encryption_key = encryption_key
        self.account_key_path = account_key_path
        self.email = email
        self.eab_key_id = eab_key_id
        self.eab_hmac_key = eab_hmac_key
        self.key_type = key_type
        self.challenge_timeout = challenge_timeout
        self.poll_interval = poll_interval
        self.propagation = propagation or PropagationChecker(timeout=challenge_timeout)
        self.provider_factory = provider_factory
        self.tasks = TaskLogger(store)
        self._account_url: Optional[str] = None

    # ── Public API ────────────────────────────────────────────────────────

    def issue(self, cert_id: int) -> IssuedCertificate:
        return self._run(cert_id, TaskType.ISSUE)

    def renew(self, cert_id: int) -> IssuedCertificate:
        return self._run(cert_id, TaskType.RENEW)

    # ── Attempt wrapper ───────────────────────────────────────────────────

    def _run(self, cert_id: int, task_type: TaskType) -> IssuedCertificate:
        cert = self.store.get_certificate(cert_id)
        if not self.store.acquire_issuance(cert_id):
            raise IssuanceInProgress(cert_id)

        task_id = self.tasks.start(cert_id, task_type, cert.domain)
        try:
            try:
                provider = self._provider_for(cert)
                self.tasks.info(task_id, f"Requesting certificate for {', '.join(cert.domains)}")
                material = self.obtain(cert, provider, task_id)
                self.store.save_issued(cert_id, material)
            except (AcmeError, requests.RequestException, ValueError, OSError) as exc:
                raise _translate(exc) from exc
        except Exception as exc:
            self.tasks.error(task_id, f"Certificate request failed: {exc}")
            hint = _hint_for(exc)
            if hint:
                self.tasks.warn(task_id, hint)
            self.tasks.finish(task_id, TaskStatus.FAILED)
            if not cert.has_material:
                self.store.set_certificate_status(cert_id, CertStatus.ERROR)
            raise
        finally:
            self.store.release_issuance(cert_id)

        self.tasks.info(
            task_id,
            f"Certificate issued: valid {material.issued_at:%Y-%m-%d} → {material.expires_at:%Y-%m-%d}, "
            f"fingerprint {material.fingerprint}",
        )
        self.tasks.finish(task_id, TaskStatus.COMPLETED)
        return material

    def _provider_for(self, cert: Certificate) -> DNSChallengeProvider:
        if not cert.domain:
            raise ValidationRejected(f"certificate {cert.id} has no domain")
        if cert.challenge_type != ChallengeType.DNS01:
            raise ValidationRejected(f"challenge type {cert.challenge_type.value} is not supported")
        if cert.dns_provider_id is None:
            raise ProviderError(f"certificate {cert.domain} has no DNS provider configured")
        try:
            record = self.store.get_provider(cert.dns_provider_id)
        except NotFound:
            raise ProviderError(f"DNS provider {cert.dns_provider_id} no longer exists") from None
        return self.provider_factory(record, self.encryption_key)

    # ── ACME protocol ─────────────────────────────────────────────────────

    def _ensure_account(self, account_key) -> Tuple[str, str]:
        nonce = self.acme.get_nonce()
        if self._account_url:
            return self._account_url, nonce
        account_url, nonce = self.acme.lookup_account(account_key, nonce)
        if not account_url:
            account_url, nonce = self.acme.create_account(
                account_key, nonce, self.email, self.eab_key_id, self.eab_hmac_key
            )
            logger.info("Registered ACME account %s", account_url)
        self._account_url = account_url
        return account_url, nonce

    def obtain(self, cert: Certificate, provider: DNSChallengeProvider, task_id: str) -> IssuedCertificate:
        """Run the ACME order for *cert*; returns material without persisting it."""
        account_key = jwslib.load_or_create_account_key(self.account_key_path)
        account_url, nonce = self._ensure_account(account_key)

        order, order_url, nonce = self.acme.create_order(cert.domains, account_key, account_url, nonce)
        self.tasks.info(task_id, f"Order created with {len(order.get('authorizations', []))} authorization(s)")

        published: List[Tuple[str, str, str]] = []
        try:
            pending = []
            for auth_url in order.get("authorizations", []):
                authz = self.acme.get_authorization(auth_url, account_key, account_url)
                domain = authz.get("identifier", {}).get("value", "")
                if authz.get("status") == "valid":
                    self.tasks.info(task_id, f"Authorization for {domain} already valid")
                    continue
                challenge = next((c for c in authz.get("challenges", []) if c.get("type") == "dns-01"), None)
                if challenge is None:
                    raise ValidationRejected(f"CA offered no dns-01 challenge for {domain}")

                key_auth = jwslib.compute_key_authorization(challenge["token"], account_key)
                value = jwslib.compute_dns_txt_value(key_auth)
                name = challenge_record_name(domain)
                zone = provider.zone_for(domain)
                provider.create_record(zone, name, value)
                published.append((zone, name, value))
                self.tasks.info(task_id, f"Created TXT record {name} in zone {zone}")
                pending.append((auth_url, challenge["url"], name, value))

            for _, _, name, value in pending:
                self.tasks.info(task_id, f"Waiting for {name} to propagate (timeout {self.challenge_timeout:.0f}s)")
                self.propagation.wait_for_txt(name, value, provider.resolvers)

            for auth_url, challenge_url, name, _ in pending:
                _, nonce = self.acme.respond_to_challenge(challenge_url, account_key, account_url, nonce)
                self.acme.poll_authorization(
                    auth_url, account_key, account_url,
                    timeout=self.challenge_timeout, poll_interval=self.poll_interval,
                )
                self.tasks.info(task_id, f"CA validated {name}")
        finally:
            self._cleanup(provider, published, task_id)

        domain_key = generate_domain_key(self.key_type)
        csr_der = create_csr(domain_key, cert.domain, list(cert.san))
        self.tasks.info(task_id, f"Finalizing order with a new {self.key_type} key")
        _, nonce = self.acme.finalize_order(order["finalize"], csr_der, account_key, account_url, nonce)
        cert_url = self.acme.poll_order_for_certificate(
            order_url, account_key, account_url,
            timeout=self.challenge_timeout, poll_interval=self.poll_interval,
        )
        fullchain_pem, _ = self.acme.download_certificate(cert_url, account_key, account_url, "")

        leaf_pem, ca_pem = split_pem_chain(fullchain_pem)
        issued_at, expires_at = certificate_validity(leaf_pem)
        return IssuedCertificate(
            cert_pem=leaf_pem,
            key_pem=private_key_to_pem(domain_key),
            ca_pem=ca_pem,
            fullchain_pem=fullchain_pem,
            issued_at=issued_at,
            expires_at=expires_at,
            fingerprint=fingerprint(fullchain_pem),
        )

    def _cleanup(self, provider: DNSChallengeProvider, published: List[Tuple[str, str, str]], task_id: str) -> None:
        for zone, name, value in published:
            try:
                provider.remove_record(zone, name, value)
                self.tasks.info(task_id, f"Removed TXT record {name}")
            except Exception as exc:
                logger.warning("Failed to remove TXT record %s: %s", name, exc)
                self.tasks.warn(task_id, f"Could not remove TXT record {name}: {exc}")


def _translate(exc: Exception) -> IssuanceError:
    if isinstance(exc, AcmeError):
        if exc.is_rate_limited:
            return RateLimited(str(exc))
        if isinstance(exc, AcmeTimeout):
            return ValidationRejected(f"CA did not complete validation in time: {exc.detail}")
        return ValidationRejected(str(exc))
    if isinstance(exc, requests.RequestException):
        return IssuanceError(f"CA request failed: {exc}")
    return IssuanceError(str(exc))


def _hint_for(exc: BaseException) -> str:
    cause = exc.__cause__ if isinstance(exc.__cause__, AcmeError) else exc
    if isinstance(cause, AcmeError):
        suffix = cause.problem_type.rsplit(":", 1)[-1]
        return _PROBLEM_HINTS.get(suffix, "")
    if isinstance(exc, PropagationTimeout):
        return _PROBLEM_HINTS["timeout"]
    return ""


def make_coordinator(store: LifecycleStore) -> ChallengeCoordinator:
    """
    Build a ChallengeCoordinator from the current application settings.
    Late-imports config to avoid circular imports at module load time.
    """
    from config import settings  # noqa: PLC0415
    from acmeclient.client import make_client  # noqa: PLC0415

    return ChallengeCoordinator(
        store,
        make_client(),
        encryption_key=settings.ENCRYPTION_KEY,
        account_key_path=settings.ACCOUNT_KEY_PATH,
        email=settings.ACME_EMAIL,
        eab_key_id=settings.ACME_EAB_KEY_ID,
        eab_hmac_key=settings.ACME_EAB_HMAC_KEY,
        key_type=settings.ACME_KEY_TYPE,
        challenge_timeout=settings.CHALLENGE_TIMEOUT_SECONDS,
        propagation=PropagationChecker(
            timeout=settings.CHALLENGE_TIMEOUT_SECONDS,
            interval=settings.PROPAGATION_POLL_SECONDS,
        ),
    )
