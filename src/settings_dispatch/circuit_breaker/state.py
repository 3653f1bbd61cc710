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
    """Point-in-time view of one action's breaker.

    Attributes:
        name: Breaker name (the request action).
        state: Persisted breaker state.
        failure_count: Consecutive counted failures.
        last_failure_at: Timestamp of the last counted failure, if any.
        opened_at: Timestamp when the breaker entered ``OPEN``, if open.
        open_count: Consecutive openings without an intervening recovery.
        cooldown: Seconds the current opening lasts before a probe is allowed.
    """

    name: str
    state: CircuitState
    failure_count: int
    last_failure_at: datetime | None
    opened_at: datetime | None
    open_count: int = 0
    cooldown: float = 0.0
