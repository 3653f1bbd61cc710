"""Observability hooks for circuit breakers."""

from typing import Protocol

from settings_dispatch.circuit_breaker.state import CircuitState
from settings_dispatch.logging import StructuredLogger, log_info, log_warning


class BreakerListener(Protocol):
    """Listener protocol for circuit breaker events.

    Notes:
        ``on_state_change(OPEN → HALF_OPEN)`` is emitted per probe attempt per
        breaker instance. Storage does not persist ``HALF_OPEN``.
    """

    async def on_state_change(
        self, name: str, old: CircuitState, new: CircuitState
    ) -> None:
        """Handle circuit state transitions."""

    async def on_call_rejected(self, name: str) -> None:
        """Handle call rejection while the circuit is open."""

    async def on_call_succeeded(self, name: str, elapsed: float) -> None:
        """Handle successful protected call completion."""

    async def on_call_failed(self, name: str, exc: Exception, elapsed: float) -> None:
        """Handle failed protected call completion."""


class LoggingBreakerListener:
    """Emit structured log events for breaker transitions and rejections."""

    def __init__(self, logger: StructuredLogger) -> None:
        self._logger = logger

    async def on_state_change(
        self, name: str, old: CircuitState, new: CircuitState
    ) -> None:
        if new == CircuitState.OPEN:
            log_warning(
                self._logger,
                "circuit_state_changed",
                action=name,
                old_state=str(old),
                new_state=str(new),
            )
            return
        log_info(
            self._logger,
            "circuit_state_changed",
            action=name,
            old_state=str(old),
            new_state=str(new),
        )

    async def on_call_rejected(self, name: str) -> None:
        log_warning(self._logger, "circuit_call_rejected", action=name)

    async def on_call_succeeded(self, name: str, elapsed: float) -> None:
        return

    async def on_call_failed(self, name: str, exc: Exception, elapsed: float) -> None:
        return
