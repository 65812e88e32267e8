"""
HookWarden Resilience

Circuit breaking for hook callbacks.
"""

from hookwarden.resilience.circuit_breaker import (
    CircuitBreaker,
    CircuitRecord,
    CircuitState,
)

__all__ = [
    "CircuitBreaker",
    "CircuitRecord",
    "CircuitState",
]
