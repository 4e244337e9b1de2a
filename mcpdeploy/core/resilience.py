"""
Retry and circuit-breaker policies for calls to downstream dependencies.

Breakers are built once at startup (one per dependency) and injected into the
Railway client, the orchestrator and the health monitor. Retry is applied only
to operations that are safe to repeat.
"""

import asyncio
import inspect
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    RetryError,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from mcpdeploy.core.errors import (
    DeploymentError,
    ErrorCode,
    ProviderApiError,
    ValidationError,
)

logger = logging.getLogger(__name__)

NON_RETRYABLE_MESSAGE_MARKERS = (
    "invalid project name",
    "auth",
    "unauthorized",
    "permission",
    "forbidden",
)


class CircuitState(str, Enum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


class CircuitBreaker:
    """
    Shared failure counter for one dependency.

    CLOSED -> OPEN after ``failure_threshold`` consecutive failures. While OPEN
    every call fails fast with CIRCUIT_BREAKER_OPEN. Once ``recovery_timeout``
    seconds have elapsed a single trial call is admitted (HALF_OPEN); its
    outcome closes or re-opens the circuit. Callers arriving while the trial is
    in flight are rejected.
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        recovery_timeout: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
        is_failure: Optional[Callable[[Exception], bool]] = None,
    ):
        self.name = name
        self._is_failure = is_failure
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self._clock = clock
        self._lock = asyncio.Lock()

        self.state = CircuitState.CLOSED
        self.failures = 0
        self.last_failure_time: Optional[float] = None
        self._trial_in_flight = False

    async def call(self, func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        """Run ``func`` (sync or async) under breaker protection."""
        async with self._lock:
            if self.state == CircuitState.OPEN:
                elapsed = self._clock() - (self.last_failure_time or 0)
                if elapsed < self.recovery_timeout:
                    raise self._open_error(self.recovery_timeout - elapsed)
                self.state = CircuitState.HALF_OPEN
                self._trial_in_flight = False
                logger.info(f"Circuit breaker '{self.name}' transitioning to HALF_OPEN")
            if self.state == CircuitState.HALF_OPEN:
                if self._trial_in_flight:
                    raise self._open_error(0)
                self._trial_in_flight = True

        try:
            result = func(*args, **kwargs)
            if inspect.isawaitable(result):
                result = await result
        except asyncio.CancelledError:
            async with self._lock:
                self._trial_in_flight = False
            raise
        except Exception as e:
            if self._is_failure is None or self._is_failure(e):
                await self._on_failure(e)
            else:
                await self._on_success()
            raise

        await self._on_success()
        return result

    async def _on_success(self):
        async with self._lock:
            if self.state != CircuitState.CLOSED:
                logger.info(f"Circuit breaker '{self.name}' recovered to CLOSED")
            self.state = CircuitState.CLOSED
            self.failures = 0
            self._trial_in_flight = False

    async def _on_failure(self, error: Exception):
        async with self._lock:
            self.failures += 1
            self.last_failure_time = self._clock()
            if self.state == CircuitState.HALF_OPEN:
                self.state = CircuitState.OPEN
                self._trial_in_flight = False
                logger.warning(f"Circuit breaker '{self.name}' returning to OPEN after failed trial: {error}")
            elif self.failures >= self.failure_threshold and self.state == CircuitState.CLOSED:
                self.state = CircuitState.OPEN
                logger.warning(f"Circuit breaker '{self.name}' opening after {self.failures} failures: {error}")

    def _open_error(self, retry_after: float) -> DeploymentError:
        return DeploymentError(
            f"Service temporarily unavailable: circuit breaker '{self.name}' is open",
            ErrorCode.CIRCUIT_BREAKER_OPEN,
            503,
            {"service": self.name, "retry_after_seconds": round(max(retry_after, 0), 1)},
        )

    def reset(self):
        """Force CLOSED with zero failures. Operator action."""
        self.state = CircuitState.CLOSED
        self.failures = 0
        self.last_failure_time = None
        self._trial_in_flight = False
        logger.info(f"Circuit breaker '{self.name}' manually reset")

    def get_state(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "state": self.state.value,
            "failures": self.failures,
            "last_failure_time": self.last_failure_time,
        }


class CircuitBreakerRegistry:
    """Named breakers for the process. Created once at startup."""

    def __init__(self, breakers: Dict[str, CircuitBreaker]):
        self._breakers = dict(breakers)

    @classmethod
    def from_settings(cls, settings) -> "CircuitBreakerRegistry":
        return cls({
            "railway": CircuitBreaker(
                "railway",
                failure_threshold=settings.railway_breaker_failure_threshold,
                recovery_timeout=settings.railway_breaker_recovery_timeout,
                is_failure=counts_as_failure,
            ),
            "supabase": CircuitBreaker(
                "supabase",
                failure_threshold=settings.supabase_breaker_failure_threshold,
                recovery_timeout=settings.supabase_breaker_recovery_timeout,
                is_failure=counts_as_failure,
            ),
        })

    @property
    def railway(self) -> CircuitBreaker:
        return self._breakers["railway"]

    @property
    def supabase(self) -> CircuitBreaker:
        return self._breakers["supabase"]

    def names(self):
        return list(self._breakers)

    def get(self, name: str) -> CircuitBreaker:
        if name not in self._breakers:
            raise KeyError(f"Unknown circuit breaker: {name}")
        return self._breakers[name]

    def reset(self, service: str = "all") -> Dict[str, Dict[str, Any]]:
        """Reset one breaker by name, or every breaker with ``all``."""
        if service == "all":
            targets = list(self._breakers.values())
        else:
            targets = [self.get(service)]
        for breaker in targets:
            breaker.reset()
        return self.get_states()

    def get_states(self) -> Dict[str, Dict[str, Any]]:
        return {name: breaker.get_state() for name, breaker in self._breakers.items()}


@dataclass
class RetryConfig:
    max_attempts: int = 3
    base_delay: float = 1.0  # seconds
    max_delay: float = 10.0
    multiplier: float = 2.0

    @classmethod
    def from_settings(cls, settings) -> "RetryConfig":
        return cls(
            max_attempts=settings.retry_max_attempts,
            base_delay=settings.retry_base_delay,
            max_delay=settings.retry_max_delay,
            multiplier=settings.retry_backoff_multiplier,
        )


def compute_backoff_delay(attempt: int, config: RetryConfig) -> float:
    """Delay before retry number ``attempt`` (0-based): base * multiplier^attempt, capped."""
    return min(config.base_delay * (config.multiplier ** attempt), config.max_delay)


def should_not_retry(error: BaseException) -> bool:
    if isinstance(error, ValidationError):
        return True
    if isinstance(error, DeploymentError):
        if error.code == ErrorCode.CIRCUIT_BREAKER_OPEN.value:
            return True
        if 400 <= error.status_code < 500 and error.status_code != 429:
            return True
    if isinstance(error, ProviderApiError):
        if 400 <= error.status_code < 500 and error.status_code != 429:
            return True
    message = str(error).lower()
    return any(marker in message for marker in NON_RETRYABLE_MESSAGE_MARKERS)


def is_retryable(error: BaseException) -> bool:
    return not should_not_retry(error)


def counts_as_failure(error: Exception) -> bool:
    """Client-side rejections (bad input, missing resource) say nothing about dependency health."""
    if isinstance(error, ValidationError):
        return False
    if isinstance(error, (ProviderApiError, DeploymentError)):
        return not (400 <= error.status_code < 500 and error.status_code != 429)
    return True


def _log_retry(retry_state: RetryCallState):
    error = retry_state.outcome.exception() if retry_state.outcome else None
    delay = retry_state.next_action.sleep if retry_state.next_action else 0
    logger.warning(
        f"Attempt {retry_state.attempt_number} failed ({error}); retrying in {delay:.1f}s"
    )


async def with_retry(
    func: Callable[[], Any],
    config: Optional[RetryConfig] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> Any:
    """
    Call ``func`` until it succeeds, a non-retryable error is raised, or
    ``config.max_attempts`` is spent. Non-retryable errors propagate unchanged.
    Exhaustion raises DeploymentError(RETRY_EXHAUSTED) chained from the last cause.
    """
    config = config or RetryConfig()
    retrying = AsyncRetrying(
        stop=stop_after_attempt(config.max_attempts),
        wait=wait_exponential(
            multiplier=config.base_delay,
            exp_base=config.multiplier,
            max=config.max_delay,
        ),
        retry=retry_if_exception(is_retryable),
        sleep=sleep,
        before_sleep=_log_retry,
    )
    try:
        async for attempt in retrying:
            with attempt:
                result = func()
                if inspect.isawaitable(result):
                    result = await result
    except RetryError as e:
        last_error = e.last_attempt.exception()
        logger.error(f"All {config.max_attempts} attempts failed: {last_error}")
        raise DeploymentError(
            f"Operation failed after {config.max_attempts} attempts: {last_error}",
            ErrorCode.RETRY_EXHAUSTED,
            503,
            {"attempts": config.max_attempts, "last_error": str(last_error)},
        ) from last_error
    return result
