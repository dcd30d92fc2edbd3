"""
DNS propagation check for DNS-01 challenge records.

Before asking the CA to validate, poll public recursive resolvers until the
challenge TXT value is visible, sleeping between attempts, bounded by the
challenge timeout.  Resolver order comes from the DNS provider (Cloudflare
zones are asked through 1.1.1.1 first, Aliyun through 223.5.5.5, ...).
"""
from __future__ import annotations

import logging
import time
from typing import Callable, Iterable

import dns.exception
import dns.resolver

from lifecycle.errors import PropagationTimeout

logger = logging.getLogger(__name__)


class PropagationChecker:
    def __init__(
        self,
        timeout: float = 300.0,
        interval: float = 5.0,
        query_timeout: float = 5.0,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.timeout = timeout
        self.interval = interval
        self.query_timeout = query_timeout
        self._sleep = sleep
        self._clock = clock

    def lookup_txt(self, name: str, nameservers: Iterable[str]) -> set[str]:
        """Return the TXT strings currently visible for *name*; empty set if none."""
        resolver = dns.resolver.Resolver(configure=False)
        resolver.nameservers = list(nameservers)
        resolver.timeout = self.query_timeout
        resolver.lifetime = self.query_timeout
        try:
            answers = resolver.resolve(name, "TXT")
        except (
            dns.resolver.NXDOMAIN,
            dns.resolver.NoAnswer,
            dns.resolver.NoNameservers,
            dns.exception.Timeout,
        ):
            return set()
        return {b"".join(rdata.strings).decode() for rdata in answers}

    def wait_for_txt(self, name: str, value: str, nameservers: Iterable[str]) -> None:
        """
        Block until *value* is visible at *name*.
        Raises PropagationTimeout once the timeout has elapsed.
        """
        nameservers = list(nameservers)
        deadline = self._clock() + self.timeout
        attempt = 0
        while True:
            attempt += 1
            if value in self.lookup_txt(name, nameservers):
                logger.info("TXT %s visible after %d check(s)", name, attempt)
                return
            if self._clock() + self.interval > deadline:
                raise PropagationTimeout(name, self.timeout)
            logger.debug("TXT %s not visible yet (check %d), retrying in %.0fs", name, attempt, self.interval)
            self._sleep(self.interval)
