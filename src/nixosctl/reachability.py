"""Bounded waiting for a host to accept ssh sessions."""
from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field

from .providers.base import ReachabilityTimeoutError

log = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ProbeReport:
    """Outcome of a successful probe."""

    attempts: int
    elapsed: float


@dataclass(slots=True)
class ReachabilityProbe:
    """Retry an attempt with exponential backoff inside a fixed time budget.

    ``attempt`` receives the seconds it may spend (never less than
    ``min_attempt``) and returns ``True`` once a session was established.
    Sleeps never overrun the deadline, so :meth:`wait` returns within
    ``timeout + min_attempt`` plus the cost of the last attempt's process.
    """

    initial_delay: float = 1.0
    max_delay: float = 10.0
    backoff: float = 2.0
    min_attempt: float = 1.0
    clock: Callable[[], float] = field(default=time.monotonic, repr=False)
    sleep: Callable[[float], None] = field(default=time.sleep, repr=False)

    def wait(
        self,
        attempt: Callable[[float], bool],
        timeout: float,
        *,
        target: str = "host",
    ) -> ProbeReport:
        """Return once *attempt* succeeds; raise when the budget is spent."""
        start = self.clock()
        deadline = start + max(timeout, 0.0)
        delay = self.initial_delay
        attempts = 0
        while True:
            attempts += 1
            budget = max(deadline - self.clock(), self.min_attempt)
            if attempt(budget):
                elapsed = self.clock() - start
                log.debug("%s reachable after %d attempt(s), %.1fs", target, attempts, elapsed)
                return ProbeReport(attempts=attempts, elapsed=elapsed)
            remaining = deadline - self.clock()
            if remaining <= 0:
                log.info("%s unreachable after %d attempt(s)", target, attempts)
                raise ReachabilityTimeoutError(target, timeout, attempts)
            self.sleep(min(delay, remaining))
            delay = min(delay * self.backoff, self.max_delay)


__all__ = ["ProbeReport", "ReachabilityProbe"]
