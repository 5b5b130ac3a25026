"""
Resilience helpers.

Provides:
- Circuit breakers for external capability calls (the LLM)
"""
from ravenloom.resilience.circuit_breaker import (
    CIRCUIT_CONFIGS,
    CircuitOpenError,
    ServiceCircuitBreaker,
    get_all_circuit_states,
    get_circuit_breaker,
    reset_circuit_breakers,
)

__all__ = [
    "CIRCUIT_CONFIGS",
    "CircuitOpenError",
    "ServiceCircuitBreaker",
    "get_all_circuit_states",
    "get_circuit_breaker",
    "reset_circuit_breakers",
]
