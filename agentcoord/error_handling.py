"""Retry engine, circuit breakers and error reporting shared by every service."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, Mapping, Optional, TypeVar

from .circuit import CircuitBreaker
from .config import CircuitBreakerConfig
from .constants import ERROR_EVENT_PREFIX
from .errors import (
    CircuitOpenError,
    CoordinationError,
    ErrorSeverity,
    MessagingError,
    classify,
    error_class_for,
    error_envelope,
)
from .utils import utcnow
from .utils.retry import BUILTIN_POLICIES, RetryPolicy, calculate_delay

if TYPE_CHECKING:
    from .bus import MessageBus

logger = logging.getLogger(__name__)

T = TypeVar("T")

_LOG_LEVELS = {
    ErrorSeverity.INFO: logging.INFO,
    ErrorSeverity.WARNING: logging.WARNING,
    ErrorSeverity.ERROR: logging.ERROR,
    ErrorSeverity.CRITICAL: logging.CRITICAL,
}


class ErrorHandlingService:
    """Owns the retry-policy table and one circuit breaker per service name."""

    def __init__(
        self,
        bus: Optional["MessageBus"] = None,
        *,
        policies: Optional[Mapping[str, RetryPolicy]] = None,
        breakers: Optional[Mapping[str, CircuitBreakerConfig]] = None,
        production: bool = False,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.bus = bus
        self.production = production
        self._clock = clock
        self._sleep = sleep
        self.retry_policies: Dict[str, RetryPolicy] = {**BUILTIN_POLICIES, **(policies or {})}
        self._breaker_configs: Dict[str, CircuitBreakerConfig] = dict(breakers or {})
        self._breakers: Dict[str, CircuitBreaker] = {}

    # ------------------------------------------------------------------
    # Retry policies
    def get_retry_policy(self, name: str) -> RetryPolicy:
        policy = self.retry_policies.get(name)
        if policy is None:
            logger.warning(f"Unknown retry policy {name}, using default")
            return self.retry_policies["default"]
        return policy

    def set_retry_policy(self, name: str, policy: RetryPolicy) -> None:
        self.retry_policies[name] = policy

    # ------------------------------------------------------------------
    # Circuit breakers
    def get_circuit_breaker(self, service: str) -> CircuitBreaker:
        breaker = self._breakers.get(service)
        if breaker is None:
            cfg = self._breaker_configs.get(service, CircuitBreakerConfig())
            breaker = CircuitBreaker(
                service,
                threshold=cfg.threshold,
                reset_timeout=cfg.reset_timeout / 1000,
                clock=self._clock,
            )
            self._breakers[service] = breaker
        return breaker

    def configure_circuit_breaker(
        self, service: str, threshold: int, reset_timeout_ms: int
    ) -> CircuitBreaker:
        self._breaker_configs[service] = CircuitBreakerConfig(
            threshold=threshold, reset_timeout=reset_timeout_ms
        )
        self._breakers.pop(service, None)
        return self.get_circuit_breaker(service)

    def reset_circuit_breaker(self, service: str) -> bool:
        breaker = self._breakers.get(service)
        if breaker is None:
            return False
        breaker.reset()
        logger.info(f"Circuit breaker for {service} reset")
        return True

    def circuit_breakers(self) -> Dict[str, Dict[str, Any]]:
        return {name: b.snapshot() for name, b in self._breakers.items()}

    # ------------------------------------------------------------------
    async def execute_with_retry(
        self,
        operation: Callable[[], Awaitable[T]],
        policy_name: str = "default",
        *,
        service: Optional[str] = None,
    ) -> T:
        """Run ``operation`` under the named retry policy.

        The breaker for ``service`` is consulted before each attempt. A
        rejection by an open breaker is never retried.
        """
        policy = self.get_retry_policy(policy_name)
        breaker = self.get_circuit_breaker(service) if service else None
        attempt = 0
        while True:
            attempt += 1
            if breaker is not None:
                breaker.before_call()
            try:
                result = await operation()
            except CircuitOpenError:
                if breaker is not None:
                    breaker.release_probe()
                raise
            except Exception as e:
                if breaker is not None:
                    breaker.record_failure()
                category = classify(e)
                if not policy.should_retry(category) or attempt > policy.max_retries:
                    raise
                delay = calculate_delay(policy, attempt)
                logger.warning(
                    f"Attempt {attempt}/{policy.max_retries + 1} failed "
                    f"({category.value}): {e}; retrying in {delay:.2f}s"
                )
                await self._sleep(delay)
                continue
            except BaseException:
                if breaker is not None:
                    breaker.release_probe()
                raise
            if breaker is not None:
                breaker.record_success()
            return result

    # ------------------------------------------------------------------
    def create_error(
        self, category: str, message: str, **kwargs: Any
    ) -> CoordinationError:
        return error_class_for(category)(message, **kwargs)

    async def handle_error(
        self, error: BaseException, context: Optional[Mapping[str, Any]] = None
    ) -> Dict[str, Any]:
        """Log ``error``, publish ``error.{category}`` and return the envelope."""
        if not isinstance(error, CoordinationError):
            wrapped = error_class_for(classify(error))(
                str(error) or error.__class__.__name__,
                details={"type": error.__class__.__name__},
            )
            wrapped.__cause__ = error
            wrapped.__traceback__ = error.__traceback__
            error = wrapped
        if context:
            error.details = {**error.details, "context": dict(context)}

        logger.log(
            _LOG_LEVELS[error.severity],
            f"[{error.reference}] {error.category.value}/{error.code}: {error.message}",
        )

        if self.bus is not None:
            try:
                await self.bus.publish_event(
                    f"{ERROR_EVENT_PREFIX}.{error.category.value}", error.to_dict()
                )
            except MessagingError as e:
                logger.warning(f"Could not publish error event {error.reference}: {e}")
        return error_envelope(error, include_details=not self.production)
