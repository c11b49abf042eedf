"""
Circuit breaker guarding the analytics upload endpoint.

Repeated transient upload failures trip the breaker so the sync engine stops
hammering an unreachable server and treats the device as offline until the
recovery timeout elapses.

Circuit Breaker States:
- CLOSED: Normal operation, uploads pass through
- OPEN: Server considered unreachable, uploads are deferred
- HALF_OPEN: One trial upload is allowed to test recovery
"""
import asyncio
import logging
from typing import Any, Callable, Optional, Type, Dict, List, Tuple
from datetime import datetime, timedelta
from enum import Enum
from dataclasses import dataclass, field


logger = logging.getLogger(__name__)


class CircuitState(str, Enum):
    """Circuit breaker states."""
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class CircuitBreakerMetrics:
    """Metrics tracking for circuit breaker."""
    total_requests: int = 0
    successful_requests: int = 0
    failed_requests: int = 0
    rejected_requests: int = 0
    state_changes: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def success_rate(self) -> float:
        if self.total_requests == 0:
            return 1.0
        return self.successful_requests / self.total_requests

    def record_state_change(self, from_state: CircuitState, to_state: CircuitState, reason: str):
        self.state_changes.append({
            'timestamp': datetime.utcnow().isoformat(),
            'from_state': from_state,
            'to_state': to_state,
            'reason': reason
        })
        # Keep only recent transitions
        del self.state_changes[:-20]


class CircuitBreakerError(Exception):
    """Raised when the circuit is open and the call was not attempted."""
    pass


class CircuitBreaker:
    """
    Async circuit breaker.

    Only exceptions listed in ``trip_on`` count as failures; anything else
    (for instance a permanent 4xx rejection) passes through without changing
    state because the server is evidently reachable.
    """

    def __init__(
        self,
        failure_threshold: int = 3,
        recovery_timeout: int = 120,
        trip_on: Tuple[Type[Exception], ...] = (Exception,),
        name: Optional[str] = None,
        clock: Callable[[], datetime] = datetime.utcnow
    ):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.trip_on = trip_on
        self.name = name or f"CircuitBreaker_{id(self)}"
        self._clock = clock

        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.last_failure_time: Optional[datetime] = None
        self.next_attempt_time: Optional[datetime] = None
        self.metrics = CircuitBreakerMetrics()
        self._lock = asyncio.Lock()

    @property
    def allows_requests(self) -> bool:
        """True unless the circuit is open and still cooling down."""
        if self.state != CircuitState.OPEN:
            return True
        return self.next_attempt_time is not None and self._clock() >= self.next_attempt_time

    async def call(self, func: Callable, *args, **kwargs) -> Any:
        """
        Execute an async call through the circuit breaker.

        Raises:
            CircuitBreakerError: When circuit is open
            Exception: Any exception from the wrapped function
        """
        async with self._lock:
            self.metrics.total_requests += 1
            self._check_state_transition()

            if self.state == CircuitState.OPEN:
                self.metrics.rejected_requests += 1
                logger.debug(f"Circuit breaker '{self.name}' is OPEN - deferring call")
                raise CircuitBreakerError(f"Circuit breaker '{self.name}' is open")

        try:
            result = await func(*args, **kwargs)
        except self.trip_on as e:
            async with self._lock:
                self._on_failure(str(e) or type(e).__name__)
            raise

        async with self._lock:
            self._on_success()
        return result

    def _check_state_transition(self):
        if self.state == CircuitState.OPEN and self.allows_requests:
            self._transition(CircuitState.HALF_OPEN, "Recovery timeout reached, probing server")

    def _on_success(self):
        self.metrics.successful_requests += 1
        self.failure_count = 0
        if self.state == CircuitState.HALF_OPEN:
            self._transition(CircuitState.CLOSED, "Trial request succeeded")

    def _on_failure(self, reason: str):
        self.metrics.failed_requests += 1
        self.failure_count += 1
        self.last_failure_time = self._clock()

        if self.state == CircuitState.HALF_OPEN:
            self._open(f"Trial request failed: {reason}")
        elif self.state == CircuitState.CLOSED and self.failure_count >= self.failure_threshold:
            self._open(f"Failure threshold reached ({self.failure_count}/{self.failure_threshold})")

    def _open(self, reason: str):
        self.next_attempt_time = self._clock() + timedelta(seconds=self.recovery_timeout)
        self._transition(CircuitState.OPEN, reason)
        logger.warning(
            f"Circuit breaker '{self.name}' OPENED: {reason}. "
            f"Next attempt at {self.next_attempt_time}"
        )

    def _transition(self, to_state: CircuitState, reason: str):
        old_state = self.state
        self.state = to_state
        if to_state == CircuitState.CLOSED:
            self.failure_count = 0
            self.next_attempt_time = None
        self.metrics.record_state_change(old_state, to_state, reason)
        logger.info(f"Circuit breaker '{self.name}' {old_state.value} -> {to_state.value}: {reason}")

    async def reset(self, reason: str = "Manual reset"):
        """Force the breaker closed, e.g. when connectivity is regained."""
        async with self._lock:
            if self.state != CircuitState.CLOSED:
                self._transition(CircuitState.CLOSED, reason)
            self.failure_count = 0

    def get_status(self) -> Dict[str, Any]:
        """Get current status and metrics."""
        return {
            'name': self.name,
            'state': self.state.value,
            'failure_count': self.failure_count,
            'last_failure_time': self.last_failure_time.isoformat() if self.last_failure_time else None,
            'next_attempt_time': self.next_attempt_time.isoformat() if self.next_attempt_time else None,
            'metrics': {
                'total_requests': self.metrics.total_requests,
                'successful_requests': self.metrics.successful_requests,
                'failed_requests': self.metrics.failed_requests,
                'rejected_requests': self.metrics.rejected_requests,
                'success_rate': self.metrics.success_rate,
                'state_changes': self.metrics.state_changes[-10:]
            }
        }
