"""
RenewalScheduler — time-driven renewal and retry sweeps.

Two triggers funnel into one per-certificate routine (renew_one), so the
success/failure bookkeeping does not depend on which sweep picked a
certificate up:

  daily sweep  (RENEW_SCHEDULE_TIME)   mark past-expiry certificates expired,
                                       then renew everything inside the
                                       renewal window, retrying or not
  retry sweep  (every N minutes)       renew certificates with
                                       fail_count > 0 and next_retry_at <= now

Certificates are processed one at a time.  There is no terminal failure
state: retries continue forever at the capped backoff interval.
"""
from __future__ import annotations

import logging
import threading
from datetime import datetime, timedelta
from typing import Callable, List, Optional

import schedule
import structlog

from challenge.coordinator import ChallengeCoordinator
from lifecycle.errors import IssuanceInProgress, NotFound
from lifecycle.models import Certificate, RenewalState, utcnow
from lifecycle.notifier import Notifier
from lifecycle.store import LifecycleStore

logger = logging.getLogger(__name__)
log = structlog.get_logger(__name__)

RETRY_BACKOFF: List[timedelta] = [
    timedelta(minutes=10),
    timedelta(minutes=30),
    timedelta(hours=1),
    timedelta(hours=2),
    timedelta(hours=4),
    timedelta(hours=8),
    timedelta(hours=24),
]


def backoff(fail_count: int) -> timedelta:
    """Delay before the next attempt after *fail_count* consecutive failures."""
    index = min(max(fail_count, 1), len(RETRY_BACKOFF)) - 1
    return RETRY_BACKOFF[index]


class RenewalScheduler:
    def __init__(
        self,
        store: LifecycleStore,
        coordinator: ChallengeCoordinator,
        notifier: Notifier,
        renew_before_days: int = 30,
        schedule_time: str = "03:00",
        retry_minutes: int = 10,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.coordinator = coordinator
        self.notifier = notifier
        self.renew_before_days = renew_before_days
        self.schedule_time = schedule_time
        self.retry_minutes = retry_minutes
        self._clock = clock

        self._scheduler = schedule.Scheduler()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._sweep_lock = threading.Lock()

    # ── Sweeps ────────────────────────────────────────────────────────────

    def daily_sweep(self) -> dict:
        """Expire stale certificates, then renew everything inside the window."""
        with self._sweep_lock:
            now = self._clock()
            expired = self.store.mark_expired(now)
            if expired:
                log.warning("certificates_expired", cert_ids=expired)
            due = self.store.certs_expiring_within(self.renew_before_days, now)
            retrying = [c for c in due if c.renewal_state(now, self.renew_before_days) is RenewalState.RETRYING]
            log.info(
                "daily_sweep_started",
                due=len(due),
                retrying=len(retrying),
                renew_before_days=self.renew_before_days,
            )
            return self._renew_all(due)

    def retry_sweep(self) -> dict:
        """Renew certificates whose backoff has elapsed."""
        with self._sweep_lock:
            due = self.store.certs_due_for_retry(self._clock())
            if due:
                log.info("retry_sweep_started", due=len(due))
            return self._renew_all(due)

    def _renew_all(self, certs: List[Certificate]) -> dict:
        summary = {"renewed": [], "failed": [], "skipped": []}
        for cert in certs:
            try:
                outcome = self.renew_one(cert)
            except NotFound:
                log.info("renewal_skipped", cert_id=cert.id, domain=cert.domain, reason="deleted")
                outcome = "skipped"
            summary[outcome].append(cert.domain)
        if certs:
            log.info(
                "sweep_finished",
                renewed=len(summary["renewed"]),
                failed=len(summary["failed"]),
                skipped=len(summary["skipped"]),
            )
        return summary

    # ── Per-certificate routine ───────────────────────────────────────────

    def renew_one(self, cert: Certificate) -> str:
        """
        Attempt one renewal and apply the retry bookkeeping.
        Returns "renewed", "failed" or "skipped" (another issuance in flight).
        """
        attempted_at = self._clock()
        try:
            self.store.record_renew_attempt(cert.id, attempted_at)
            self.coordinator.renew(cert.id)
        except IssuanceInProgress:
            log.info("renewal_skipped", cert_id=cert.id, domain=cert.domain, reason="issuance in progress")
            return "skipped"
        except Exception as exc:
            fail_count = self.store.increment_fail_count(cert.id)
            next_retry = attempted_at + backoff(fail_count)
            self.store.set_next_retry(cert.id, next_retry)
            log.error(
                "renewal_failed",
                cert_id=cert.id,
                domain=cert.domain,
                fail_count=fail_count,
                next_retry=next_retry.isoformat(),
                error=str(exc),
            )
            self.notifier.send(
                "Certificate renewal failed",
                f"Certificate for {cert.domain} failed to renew (attempt {fail_count}).\n"
                f"Error: {exc}\n"
                f"Next retry: {next_retry:%Y-%m-%d %H:%M:%S} UTC",
            )
            return "failed"

        self.store.reset_retry_state(cert.id)
        log.info("renewal_succeeded", cert_id=cert.id, domain=cert.domain)
        self.notifier.send("Certificate renewed", f"Certificate for {cert.domain} renewed successfully")
        return "renewed"

    # ── Background thread ─────────────────────────────────────────────────

    def start(self) -> None:
        if self._thread is not None:
            return
        self._scheduler.clear()
        self._scheduler.every().day.at(self.schedule_time).do(self._guarded, self.daily_sweep)
        self._scheduler.every(self.retry_minutes).minutes.do(self._guarded, self.retry_sweep)
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="renewal-scheduler", daemon=True)
        self._thread.start()
        logger.info(
            "Renewal scheduler started: daily sweep at %s, retry sweep every %d min",
            self.schedule_time,
            self.retry_minutes,
        )

    def stop(self, timeout: float = 10.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        self._scheduler.clear()
        logger.info("Renewal scheduler stopped")

    def run_now(self) -> threading.Thread:
        """Trigger a daily sweep in the background; returns the worker thread."""
        worker = threading.Thread(
            target=self._guarded, args=(self.daily_sweep,), name="renewal-sweep", daemon=True
        )
        worker.start()
        return worker

    def _loop(self) -> None:
        while not self._stop.wait(1.0):
            self._scheduler.run_pending()

    @staticmethod
    def _guarded(job: Callable[[], dict]) -> None:
        try:
            job()
        except Exception as exc:
            logger.exception("Scheduled sweep failed: %s", exc)


def make_scheduler(store: LifecycleStore, coordinator: ChallengeCoordinator, notifier: Notifier) -> RenewalScheduler:
    """Build a RenewalScheduler from the current application settings."""
    from config import settings  # noqa: PLC0415

    return RenewalScheduler(
        store,
        coordinator,
        notifier,
        renew_before_days=settings.RENEW_BEFORE_DAYS,
        schedule_time=settings.RENEW_SCHEDULE_TIME,
        retry_minutes=settings.RETRY_SWEEP_MINUTES,
    )
