"""Per-dependency circuit breaker."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

from .constants import DEFAULT_BREAKER_RESET_MS, DEFAULT_BREAKER_THRESHOLD
from .errors import CircuitOpenError
from .utils import utcnow

logger = logging.getLogger(__name__)

T = TypeVar("T")

CLOSED = "closed"
OPEN = "open"
HALF_OPEN = "half-open"


class CircuitBreaker:
    """Gate calls to one external service.

    States:
      closed    -- calls pass, consecutive failures are counted
      open      -- calls are rejected until ``next_attempt``
      half-open -- a single probe is admitted; its outcome closes or reopens

    All transitions happen in synchronous methods, so they are atomic with
    respect to other coroutines on the loop.
    """

    def __init__(
        self,
        service: str,
        threshold: int = DEFAULT_BREAKER_THRESHOLD,
        reset_timeout: float = DEFAULT_BREAKER_RESET_MS / 1000,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.service = service
        self.threshold = threshold
        self.reset_timeout = reset_timeout
        self._clock = clock
        self.state = CLOSED
        self.failures = 0
        self.last_failure: Optional[datetime] = None
        self.next_attempt: Optional[datetime] = None
        self._probe_in_flight = False

    def _reject(self) -> CircuitOpenError:
        return CircuitOpenError(
            f"Service {self.service} is unavailable (circuit {self.state})",
            details={
                "service": self.service,
                "nextAttempt": self.next_attempt.isoformat() if self.next_attempt else None,
            },
        )

    def before_call(self) -> None:
        """Admit or reject a call; raises ``CircuitOpenError`` when rejected."""
        if self.state == OPEN:
            if self.next_attempt is not None and self._clock() >= self.next_attempt:
                self.state = HALF_OPEN
                self._probe_in_flight = True
                logger.info(f"Circuit for {self.service} half-open, admitting probe")
                return
            raise self._reject()
        if self.state == HALF_OPEN:
            if self._probe_in_flight:
                raise self._reject()
            self._probe_in_flight = True

    def record_success(self) -> None:
        if self.state != CLOSED:
            logger.info(f"Circuit for {self.service} closed")
        self.state = CLOSED
        self.failures = 0
        self.next_attempt = None
        self._probe_in_flight = False

    def record_failure(self) -> None:
        now = self._clock()
        self.failures += 1
        self.last_failure = now
        if self.state == HALF_OPEN or self.failures >= self.threshold:
            self._open(now)

    def release_probe(self) -> None:
        """Give the probe slot back without recording an outcome."""
        self._probe_in_flight = False

    def _open(self, now: datetime) -> None:
        self.state = OPEN
        self._probe_in_flight = False
        self.next_attempt = now + timedelta(seconds=self.reset_timeout)
        logger.warning(
            f"Circuit for {self.service} opened after {self.failures} failures; "
            f"next attempt at {self.next_attempt.isoformat()}"
        )

    def reset(self) -> None:
        self.state = CLOSED
        self.failures = 0
        self.last_failure = None
        self.next_attempt = None
        self._probe_in_flight = False

    async def call(self, operation: Callable[[], Awaitable[T]]) -> T:
        self.before_call()
        try:
            result = await operation()
        except CircuitOpenError:
            self.release_probe()
            raise
        except Exception:
            self.record_failure()
            raise
        except BaseException:
            self.release_probe()
            raise
        self.record_success()
        return result

    def snapshot(self) -> Dict[str, Any]:
        return {
            "service": self.service,
            "state": self.state,
            "failures": self.failures,
            "threshold": self.threshold,
            "resetTimeout": self.reset_timeout,
            "lastFailure": self.last_failure.isoformat() if self.last_failure else None,
            "nextAttempt": self.next_attempt.isoformat() if self.next_attempt else None,
        }
