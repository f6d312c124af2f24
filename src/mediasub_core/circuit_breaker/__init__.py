"""Framework-agnostic async circuit breaker.

This package implements the circuit breaker pattern from *Release It!*.

Key behavior notes:
  - The circuit opens when the rolling window holds at least
    ``volume_threshold`` calls and the failure percentage reaches
    ``error_threshold_percentage``.
  - ``OPEN`` becomes ``HALF_OPEN`` lazily, on the first call after
    ``reset_timeout`` has elapsed. That call is the single probe.
  - If an excluded exception is raised during a probe, the probe is treated as
    if it never happened: the circuit stays ``HALF_OPEN`` and the next call
    becomes the probe.
"""

from mediasub_core.circuit_breaker.breaker import CircuitBreaker, CircuitBreakerConfig
from mediasub_core.circuit_breaker.exceptions import (
    CircuitBreakerError,
    CircuitOpenError,
)
from mediasub_core.circuit_breaker.metrics import (
    BreakerListener,
    LoggingBreakerListener,
)
from mediasub_core.circuit_breaker.state import BreakerSnapshot, CircuitState
from mediasub_core.circuit_breaker.window import RollingWindow

__all__ = [
    "BreakerListener",
    "BreakerSnapshot",
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitBreakerError",
    "CircuitOpenError",
    "CircuitState",
    "LoggingBreakerListener",
    "RollingWindow",
]
