"""Circuit breaker state primitives."""

from dataclasses import dataclass
from datetime import datetime
from enum import StrEnum


class CircuitState(StrEnum):
    """Circuit breaker state values."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass(frozen=True)
class BreakerSnapshot:
    """Point-in-time view of breaker internals useful for metrics/logging.

    Attributes:
        name: Breaker name.
        state: Current breaker state.
        window_successes: Successful calls inside the rolling window.
        window_failures: Failed calls inside the rolling window.
        opened_at: Timestamp when the breaker last entered ``OPEN``, if open.
    """

    name: str
    state: CircuitState
    window_successes: int
    window_failures: int
    opened_at: datetime | None

    @property
    def window_volume(self) -> int:
        return self.window_successes + self.window_failures

    @property
    def failure_percentage(self) -> float:
        if self.window_volume == 0:
            return 0.0
        return self.window_failures / self.window_volume * 100.0
