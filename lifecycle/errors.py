"""
Failure taxonomy for the certificate lifecycle.

Every error that can end an issuance attempt derives from IssuanceError, so
the renewal scheduler can absorb them all through one except clause and
apply the same backoff regardless of cause.
"""
from __future__ import annotations


class LifecycleError(Exception):
    """Base class for all lifecycle errors."""


# ─── Issuance failures (fatal to one attempt, retried on schedule) ────────────


class IssuanceError(LifecycleError):
    """An issuance or renewal attempt failed."""


class ProviderError(IssuanceError):
    """The DNS provider API refused or failed a record operation."""


class PropagationTimeout(IssuanceError):
    """The challenge TXT record was not visible before the deadline."""

    def __init__(self, name: str, timeout: float) -> None:
        self.name = name
        self.timeout = timeout
        super().__init__(f"TXT record {name} not visible after {timeout:.0f}s")


class ValidationRejected(IssuanceError):
    """The CA marked an authorization or order invalid, or refused a request."""


class RateLimited(IssuanceError):
    """The CA throttled us (urn:ietf:params:acme:error:rateLimited)."""


class IssuanceInProgress(IssuanceError):
    """Another issuance already holds the lock for this certificate."""

    def __init__(self, cert_id: int) -> None:
        self.cert_id = cert_id
        super().__init__(f"issuance already in progress for certificate {cert_id}")


# ─── Store / registry errors ──────────────────────────────────────────────────


class NotFound(LifecycleError):
    """The requested record does not exist."""


class AlreadyExists(LifecycleError):
    """A unique key (provider name, agent/cert binding) is already taken."""


class ResourceInUse(LifecycleError):
    """A delete was refused because the record is still referenced."""


class TaskAlreadyFinished(LifecycleError):
    """A terminal TaskLogStatus may not be overwritten."""


class SignatureMismatch(LifecycleError):
    """Agent credentials did not verify. Deliberately carries no detail."""

    def __init__(self) -> None:
        super().__init__("unauthorized")
