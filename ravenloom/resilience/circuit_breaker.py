"""
Circuit breaker guarding calls to the LLM capability.

Features:
- State machine: closed -> open -> half-open -> closed
- Configurable failure threshold and recovery timeout
- Per-service circuit breaker instances
"""
import logging
import threading
import time
from typing import Any, Dict, Literal, Optional

from ravenloom.observability.metrics import update_circuit_breaker_state

logger = logging.getLogger(__name__)


class CircuitOpenError(Exception):
    """Raised when circuit breaker is open and calls are blocked."""

    def __init__(self, service: str, message: str = "Circuit is open"):
        self.service = service
        self.message = message
        super().__init__(f"{service}: {message}")


CIRCUIT_CONFIGS: Dict[str, Dict[str, Any]] = {
    "llm": {
        "failure_threshold": 5,
        "recovery_timeout": 30,
    },
}


class ServiceCircuitBreaker:
    """
    Circuit breaker implementation with state machine.

    States:
    - closed: Normal operation, failures are counted
    - open: Circuit is tripped, calls are blocked
    - half_open: Recovery attempt, allows one trial call

    Usage:
        cb = ServiceCircuitBreaker("llm", failure_threshold=5)
        with cb:
            result = client.chat(...)
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        recovery_timeout: float = 30.0,
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout

        self._state: Literal["closed", "open", "half_open"] = "closed"
        self._failure_count = 0
        self._last_failure_time: Optional[float] = None
        self._lock = threading.Lock()

    @property
    def state(self) -> str:
        """Get current circuit state, checking for timeout transitions."""
        with self._lock:
            if self._state == "open" and self._should_attempt_recovery():
                self._transition("half_open")
            return self._state

    @property
    def retry_after(self) -> float:
        """Seconds until an open circuit admits a trial call."""
        with self._lock:
            if self._state != "open" or self._last_failure_time is None:
                return 0.0
            remaining = self.recovery_timeout - (time.time() - self._last_failure_time)
            return max(0.0, remaining)

    def _should_attempt_recovery(self) -> bool:
        if self._last_failure_time is None:
            return False
        return time.time() - self._last_failure_time >= self.recovery_timeout

    def _transition(self, state: Literal["closed", "open", "half_open"]) -> None:
        if state != self._state:
            logger.info("Circuit %s: %s -> %s", self.name, self._state, state)
        self._state = state
        update_circuit_breaker_state(self.name, state)

    def _force_half_open(self) -> None:
        """Force transition to half-open state (for testing)."""
        with self._lock:
            self._transition("half_open")

    def __enter__(self):
        current_state = self.state

        with self._lock:
            if current_state == "open":
                raise CircuitOpenError(self.name)
            return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        with self._lock:
            if exc_type is None:
                self._on_success()
            else:
                self._on_failure()

        # Don't suppress the exception
        return False

    def _on_success(self) -> None:
        if self._state == "half_open":
            self._transition("closed")
            self._failure_count = 0
            self._last_failure_time = None
        elif self._state == "closed":
            self._failure_count = 0

    def _on_failure(self) -> None:
        self._failure_count += 1

        if self._state == "half_open":
            # Trial call failed, reopen with a fresh timeout
            self._transition("open")
            self._last_failure_time = time.time()
        elif self._state == "closed" and self._failure_count >= self.failure_threshold:
            self._transition("open")
            self._last_failure_time = time.time()


_circuit_registry: Dict[str, ServiceCircuitBreaker] = {}
_registry_lock = threading.Lock()


def get_circuit_breaker(service: str) -> ServiceCircuitBreaker:
    """
    Get or create a circuit breaker for a service.

    Args:
        service: Service name

    Returns:
        ServiceCircuitBreaker instance
    """
    with _registry_lock:
        if service not in _circuit_registry:
            config = CIRCUIT_CONFIGS.get(service, {})
            _circuit_registry[service] = ServiceCircuitBreaker(
                name=service,
                failure_threshold=config.get("failure_threshold", 5),
                recovery_timeout=config.get("recovery_timeout", 30),
            )
        return _circuit_registry[service]


def get_all_circuit_states() -> Dict[str, str]:
    """Get states of all registered circuit breakers."""
    with _registry_lock:
        return {name: cb.state for name, cb in _circuit_registry.items()}


def reset_circuit_breakers() -> None:
    """Drop all registered breakers (for testing purposes)."""
    with _registry_lock:
        _circuit_registry.clear()
