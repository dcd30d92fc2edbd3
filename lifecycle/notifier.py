"""
Notifier — one send(title, body) capability for renewal outcomes.

Delivery is best-effort: a channel that fails is logged and skipped, and
send() never raises into the scheduler.
"""
from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Iterable, List

import requests

logger = logging.getLogger(__name__)


class Notifier(ABC):
    @abstractmethod
    def send(self, title: str, body: str) -> None:
        """Deliver one alert.  Must not raise."""


class LogNotifier(Notifier):
    """Writes notifications to the application log only."""

    def send(self, title: str, body: str) -> None:
        logger.info("NOTIFY %s: %s", title, body)


class WebhookNotifier(Notifier):
    """POSTs a JSON document to every configured webhook URL."""

    def __init__(self, urls: Iterable[str], timeout: float = 10.0, session: requests.Session | None = None) -> None:
        self.urls: List[str] = [u for u in urls if u]
        self.timeout = timeout
        self._session = session or requests.Session()
        self._session.headers.update({"User-Agent": "letsync/1.0"})

    def send(self, title: str, body: str) -> None:
        payload = {
            "title": title,
            "body": body,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "source": "letsync",
        }
        for url in self.urls:
            try:
                resp = self._session.post(url, json=payload, timeout=self.timeout)
            except requests.RequestException as exc:
                logger.error("Webhook notification to %s failed: %s", url, exc)
                continue
            if resp.status_code >= 400:
                logger.warning("Webhook %s answered HTTP %d", url, resp.status_code)


class MultiNotifier(Notifier):
    """Fans one notification out to several notifiers."""

    def __init__(self, notifiers: Iterable[Notifier]) -> None:
        self.notifiers = list(notifiers)

    def send(self, title: str, body: str) -> None:
        for notifier in self.notifiers:
            try:
                notifier.send(title, body)
            except Exception as exc:
                logger.error("Notifier %s raised: %s", type(notifier).__name__, exc)


def make_notifier() -> Notifier:
    """Build the notifier chain from settings (late import, like make_client())."""
    from config import settings  # noqa: PLC0415

    notifiers: List[Notifier] = [LogNotifier()]
    if settings.NOTIFY_WEBHOOK_URLS:
        notifiers.append(WebhookNotifier(settings.NOTIFY_WEBHOOK_URLS))
    return MultiNotifier(notifiers)
