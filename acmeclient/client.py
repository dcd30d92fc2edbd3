"""
Low-level ACME RFC 8555 HTTP client.

This client is intentionally **stateless** about accounts and orders: the
account key, account URL and current nonce are passed in by the caller
(challenge.coordinator), which keeps it easy to test with mocked HTTP.

RFC 8555 compliance notes
--------------------------
* POST-as-GET: orders, authorizations and the certificate are fetched with a
  signed empty payload, not plain GET.
* badNonce retry: ACME servers return a fresh `Replay-Nonce` header even on
  error responses.  `_post_signed` re-signs with it up to `_NONCE_RETRIES`
  times.
* Polling is bounded by a wall-clock deadline rather than an attempt count,
  so a slow CA and a fast poll interval cannot exceed the challenge timeout.
"""
from __future__ import annotations

import base64
import time
from typing import Callable, Optional

from josepy.jwk import JWKRSA
import requests

from acmeclient import jws as jwslib

_NONCE_RETRIES = 3

RATE_LIMITED = "urn:ietf:params:acme:error:rateLimited"
BAD_NONCE = "urn:ietf:params:acme:error:badNonce"


class AcmeError(Exception):
    """Raised when the ACME server returns an error response."""

    def __init__(self, status_code: int, body: dict, new_nonce: str = "") -> None:
        self.status_code = status_code
        self.body = body
        self.new_nonce = new_nonce
        self.detail = body.get("detail", str(body))
        super().__init__(f"ACME {status_code}: {self.problem_type} ({self.detail})")

    @property
    def problem_type(self) -> str:
        return self.body.get("type", "unknown")

    @property
    def is_rate_limited(self) -> bool:
        return self.problem_type == RATE_LIMITED


class AcmeTimeout(AcmeError):
    """An authorization or order did not reach a final state before the deadline."""

    def __init__(self, detail: str) -> None:
        super().__init__(0, {"type": "timeout", "detail": detail})


class AcmeClient:
    """
    Implements the subset of RFC 8555 needed for DNS-01 issuance.
    Works with Let's Encrypt (production and staging), ZeroSSL and Pebble.
    """

    def __init__(
        self,
        directory_url: str,
        timeout: int = 30,
        ca_bundle: str = "",
        insecure: bool = False,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.directory_url = directory_url
        self.timeout = timeout
        self._sleep = sleep
        self._clock = clock
        self._directory: dict | None = None
        self._session = requests.Session()
        self._session.headers.update({"User-Agent": "letsync/1.0"})

        if insecure:
            import urllib3
            urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)
            self._session.verify = False
        elif ca_bundle:
            self._session.verify = ca_bundle

    # ── Directory & nonce ─────────────────────────────────────────────────

    def get_directory(self) -> dict:
        """GET /directory — discover ACME endpoint URLs (cached per client)."""
        if self._directory is None:
            resp = self._session.get(self.directory_url, timeout=self.timeout)
            resp.raise_for_status()
            self._directory = resp.json()
        return self._directory

    def get_nonce(self) -> str:
        """HEAD /newNonce — fetch a fresh anti-replay nonce."""
        resp = self._session.head(self.get_directory()["newNonce"], timeout=self.timeout)
        nonce = resp.headers.get("Replay-Nonce")
        if not nonce:
            raise AcmeError(resp.status_code, {"detail": "No Replay-Nonce header"})
        return nonce

    # ── Account ───────────────────────────────────────────────────────────

    def create_account(
        self,
        account_key: JWKRSA,
        nonce: str,
        email: str = "",
        eab_key_id: str = "",
        eab_hmac_key: str = "",
    ) -> tuple[str, str]:
        """
        POST /newAccount, agreeing to the terms of service.
        Adds a mailto: contact and an EAB binding when provided.
        Returns (account_url, new_nonce).
        """
        new_account_url = self.get_directory()["newAccount"]
        payload: dict = {"termsOfServiceAgreed": True}
        if email:
            payload["contact"] = [f"mailto:{email}"]
        if eab_key_id and eab_hmac_key:
            payload["externalAccountBinding"] = jwslib.create_eab_jws(
                account_key, eab_key_id, eab_hmac_key, new_account_url
            )

        resp = self._post_signed(payload, account_key, nonce, new_account_url)
        return resp.headers.get("Location", ""), resp.headers.get("Replay-Nonce", "")

    def lookup_account(self, account_key: JWKRSA, nonce: str) -> tuple[Optional[str], str]:
        """
        POST /newAccount with onlyReturnExisting=True.
        Returns (account_url or None, new_nonce).
        """
        new_account_url = self.get_directory()["newAccount"]
        try:
            resp = self._post_signed({"onlyReturnExisting": True}, account_key, nonce, new_account_url)
            return resp.headers.get("Location"), resp.headers.get("Replay-Nonce", "")
        except AcmeError as e:
            if e.status_code == 400 and e.problem_type.endswith("accountDoesNotExist"):
                return None, e.new_nonce
            raise

    # ── Orders ────────────────────────────────────────────────────────────

    def create_order(
        self,
        domains: list[str],
        account_key: JWKRSA,
        account_url: str,
        nonce: str,
    ) -> tuple[dict, str, str]:
        """
        POST /newOrder — one order covering every identifier.
        Returns (order_body, order_url, new_nonce).
        """
        payload = {"identifiers": [{"type": "dns", "value": d} for d in domains]}
        resp = self._post_signed(payload, account_key, nonce, self.get_directory()["newOrder"], account_url)
        return resp.json(), resp.headers.get("Location", ""), resp.headers.get("Replay-Nonce", "")

    def get_order(self, order_url: str, account_key: JWKRSA, account_url: str) -> dict:
        """POST-as-GET an order object."""
        resp = self._post_signed(None, account_key, self.get_nonce(), order_url, account_url)
        return resp.json()

    # ── Authorizations & challenges ───────────────────────────────────────

    def get_authorization(self, auth_url: str, account_key: JWKRSA, account_url: str) -> dict:
        """POST-as-GET an authorization object (RFC 8555 §7.5)."""
        resp = self._post_signed(None, account_key, self.get_nonce(), auth_url, account_url)
        return resp.json()

    def respond_to_challenge(
        self,
        challenge_url: str,
        account_key: JWKRSA,
        account_url: str,
        nonce: str,
    ) -> tuple[dict, str]:
        """
        POST the challenge URL with an empty object to ask the CA to validate.
        Returns (challenge_body, new_nonce).
        """
        resp = self._post_signed({}, account_key, nonce, challenge_url, account_url)
        return resp.json(), resp.headers.get("Replay-Nonce", "")

    def poll_authorization(
        self,
        auth_url: str,
        account_key: JWKRSA,
        account_url: str,
        timeout: float = 300.0,
        poll_interval: float = 2.0,
    ) -> dict:
        """
        Poll an authorization until it is 'valid'.

        Raises AcmeError carrying the challenge's problem document if the CA
        marks the authorization invalid, AcmeTimeout once *timeout* elapses.
        """
        deadline = self._clock() + timeout
        while True:
            authz = self.get_authorization(auth_url, account_key, account_url)
            status = authz.get("status", "pending")
            if status == "valid":
                return authz
            if status == "invalid":
                raise AcmeError(200, _authorization_problem(authz))
            if self._clock() + poll_interval > deadline:
                raise AcmeTimeout(f"Authorization {auth_url} still {status} after {timeout:.0f}s")
            self._sleep(poll_interval)

    # ── Finalization & certificate download ───────────────────────────────

    def finalize_order(
        self,
        finalize_url: str,
        csr_der: bytes,
        account_key: JWKRSA,
        account_url: str,
        nonce: str,
    ) -> tuple[dict, str]:
        """
        POST /finalize with the DER CSR.
        Returns (order_body, new_nonce).
        """
        csr_b64 = base64.urlsafe_b64encode(csr_der).rstrip(b"=").decode()
        resp = self._post_signed({"csr": csr_b64}, account_key, nonce, finalize_url, account_url)
        return resp.json(), resp.headers.get("Replay-Nonce", "")

    def poll_order_for_certificate(
        self,
        order_url: str,
        account_key: JWKRSA,
        account_url: str,
        timeout: float = 300.0,
        poll_interval: float = 3.0,
    ) -> str:
        """Poll an order until it is 'valid' and return its certificate URL."""
        deadline = self._clock() + timeout
        while True:
            order = self.get_order(order_url, account_key, account_url)
            status = order.get("status")
            if status == "valid":
                cert_url = order.get("certificate")
                if not cert_url:
                    raise AcmeError(0, {"detail": "Order valid but no certificate URL"})
                return cert_url
            if status == "invalid":
                raise AcmeError(200, order.get("error") or {"detail": f"Order became invalid: {order}"})
            if self._clock() + poll_interval > deadline:
                raise AcmeTimeout(f"Order {order_url} still {status} after {timeout:.0f}s")
            self._sleep(poll_interval)

    def download_certificate(
        self,
        cert_url: str,
        account_key: JWKRSA,
        account_url: str,
        nonce: str,
    ) -> tuple[bytes, str]:
        """POST-as-GET the certificate URL; returns (full_chain_pem, new_nonce)."""
        resp = self._post_signed(
            None, account_key, nonce, cert_url, account_url,
            accept="application/pem-certificate-chain",
        )
        return resp.content, resp.headers.get("Replay-Nonce", "")

    # ── Internal ──────────────────────────────────────────────────────────

    def _post_signed(
        self,
        payload: dict | None,
        account_key: JWKRSA,
        nonce: str,
        url: str,
        account_url: str | None = None,
        accept: str = "application/json",
    ) -> requests.Response:
        """
        Sign *payload* with *account_key* and POST to *url*, retrying up to
        `_NONCE_RETRIES` times on `badNonce` responses.
        """
        current_nonce = nonce or self.get_nonce()
        for attempt in range(_NONCE_RETRIES):
            body = jwslib.sign_request(payload, account_key, current_nonce, url, account_url)
            resp = self._session.post(
                url,
                json=body,
                headers={
                    "Content-Type": "application/jose+json",
                    "Accept": accept,
                },
                timeout=self.timeout,
            )
            if resp.ok:
                return resp

            try:
                error_body = resp.json()
            except ValueError:
                error_body = {"detail": resp.text}

            if error_body.get("type") == BAD_NONCE and attempt < _NONCE_RETRIES - 1:
                current_nonce = resp.headers.get("Replay-Nonce") or self.get_nonce()
                continue

            raise AcmeError(resp.status_code, error_body, resp.headers.get("Replay-Nonce", ""))

        raise AcmeError(0, {"detail": "Exceeded nonce retry limit"})


def _authorization_problem(authz: dict) -> dict:
    """Pull the most specific problem document out of an invalid authorization."""
    for challenge in authz.get("challenges", []):
        if challenge.get("status") == "invalid" and challenge.get("error"):
            return challenge["error"]
    identifier = authz.get("identifier", {}).get("value", "?")
    return {
        "type": "urn:ietf:params:acme:error:unauthorized",
        "detail": f"Authorization for {identifier} is invalid",
    }


def make_client() -> AcmeClient:
    """
    Create an AcmeClient from the current application settings.
    Late-imports config to avoid circular imports at module load time.
    """
    from config import settings  # noqa: PLC0415

    return AcmeClient(
        directory_url=settings.ACME_DIRECTORY_URL,
        ca_bundle=settings.ACME_CA_BUNDLE,
        insecure=settings.ACME_INSECURE,
    )
