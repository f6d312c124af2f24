"""Observability hooks for circuit breakers."""

from __future__ import annotations

from typing import Protocol

import structlog

from mediasub_core.circuit_breaker.state import CircuitState
from mediasub_core.logging import StructuredLogger, log_info, log_warning


class BreakerListener(Protocol):
    """Listener protocol for circuit breaker events.

    Notes:
        Every edge is reported, including ``OPEN -> HALF_OPEN`` when the probe
        window opens and ``HALF_OPEN -> CLOSED``/``HALF_OPEN -> OPEN`` when the
        probe settles.
    """

    async def on_state_change(
        self, name: str, old: CircuitState, new: CircuitState
    ) -> None:
        """Handle circuit state transitions."""

    async def on_call_rejected(self, name: str) -> None:
        """Handle call rejection while the circuit is open."""

    async def on_call_succeeded(self, name: str, elapsed: float) -> None:
        """Handle successful protected call completion."""

    async def on_call_failed(
        self, name: str, exc: BaseException, elapsed: float
    ) -> None:
        """Handle failed protected call completion."""


class LoggingBreakerListener:
    """Emit one structured log event per breaker transition or rejection."""

    def __init__(self, logger: StructuredLogger | None = None) -> None:
        self._logger: StructuredLogger = (
            structlog.stdlib.get_logger(__name__) if logger is None else logger
        )

    async def on_state_change(
        self, name: str, old: CircuitState, new: CircuitState
    ) -> None:
        if new == CircuitState.OPEN:
            log_warning(
                self._logger,
                "circuit_breaker.opened",
                breaker=name,
                previous_state=str(old),
            )
            return
        log_info(
            self._logger,
            f"circuit_breaker.{new}",
            breaker=name,
            previous_state=str(old),
        )

    async def on_call_rejected(self, name: str) -> None:
        log_warning(self._logger, "circuit_breaker.call_rejected", breaker=name)

    async def on_call_succeeded(self, name: str, elapsed: float) -> None:
        _ = (name, elapsed)

    async def on_call_failed(
        self, name: str, exc: BaseException, elapsed: float
    ) -> None:
        _ = (name, exc, elapsed)
