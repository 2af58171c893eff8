"""
Reliability utilities.

Circuit breaker in front of the notification gateway, so an outage fails
alerts fast instead of stalling every overdue sweep on timeouts.
"""

import logging
import time
from typing import Callable, Any

logger = logging.getLogger(__name__)


class CircuitOpenError(Exception):
    pass


class CircuitBreaker:
    """
    After `failure_threshold` consecutive failures the circuit OPENs and
    rejects calls for `reset_timeout` seconds. The next call is a probe
    (HALF_OPEN): success closes the circuit, failure opens it again.
    """

    def __init__(self, failure_threshold: int = 5, reset_timeout: float = 60, name: str = "circuit"):
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout
        self.name = name
        self.failures = 0
        self.opened_at = 0.0
        self.state = "CLOSED"  # CLOSED, OPEN, HALF_OPEN

    async def call(self, func: Callable, *args, **kwargs) -> Any:
        if self.state == "OPEN":
            if time.monotonic() - self.opened_at < self.reset_timeout:
                raise CircuitOpenError(f"{self.name} circuit is OPEN")
            self.state = "HALF_OPEN"

        try:
            result = await func(*args, **kwargs)
        except Exception:
            self.record_failure()
            raise

        self.reset_state()
        return result

    def record_failure(self) -> None:
        self.failures += 1
        if self.state == "HALF_OPEN" or self.failures >= self.failure_threshold:
            if self.state != "OPEN":
                logger.warning("%s circuit OPEN after %d failures", self.name, self.failures)
            self.state = "OPEN"
            self.opened_at = time.monotonic()

    def reset_state(self) -> None:
        if self.state != "CLOSED":
            logger.info("%s circuit CLOSED", self.name)
        self.failures = 0
        self.state = "CLOSED"


notification_circuit_breaker = CircuitBreaker(failure_threshold=5, reset_timeout=30, name="notification-gateway")
