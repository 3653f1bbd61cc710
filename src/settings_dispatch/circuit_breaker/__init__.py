"""Per-action async circuit breaker.

This package implements the circuit breaker pattern from *Release It!*.

Key behavior notes:
  - Storage persists only ``CLOSED`` and ``OPEN``. ``HALF_OPEN`` is an ephemeral,
    per-instance probe mode and is emitted to listeners for observability only.
  - At most one in-flight probe call is permitted per ``CircuitBreaker``
    instance while half-open.
  - Each consecutive reopening doubles the cooldown, up to
    ``CircuitBreakerConfig.max_recovery_timeout``. A successful probe closes
    the breaker and resets the escalation.
  - Exceptions rejected by ``CircuitBreakerConfig.is_failure`` are neutral: no
    storage changes and no listener events. During a probe the circuit stays
    ``OPEN`` and a later call may attempt a fresh probe.
"""

from settings_dispatch.circuit_breaker.breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
)
from settings_dispatch.circuit_breaker.exceptions import (
    CircuitBreakerError,
    CircuitOpenError,
)
from settings_dispatch.circuit_breaker.metrics import (
    BreakerListener,
    LoggingBreakerListener,
)
from settings_dispatch.circuit_breaker.state import BreakerSnapshot, CircuitState
from settings_dispatch.circuit_breaker.storage import (
    AbstractBreakerStorage,
    InMemoryBreakerStorage,
)

__all__ = [
    "AbstractBreakerStorage",
    "BreakerListener",
    "BreakerSnapshot",
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitBreakerError",
    "CircuitOpenError",
    "CircuitState",
    "InMemoryBreakerStorage",
    "LoggingBreakerListener",
]
