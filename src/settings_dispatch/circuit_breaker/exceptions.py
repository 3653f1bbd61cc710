"""Circuit breaker exceptions.

Callers can distinguish between:
  - A call being rejected because the circuit is open.
"""

from settings_dispatch.errors import DispatchError


class CircuitBreakerError(DispatchError):
    """Base exception for the circuit breaker package."""


class CircuitOpenError(CircuitBreakerError):
    """Raised when a call is rejected because the circuit is open.

    The transport is never invoked for a rejected call.

    Attributes:
        breaker_name: Name of the breaker rejecting the call.
        retry_after: Seconds until a half-open probe may be attempted.
    """

    def __init__(self, breaker_name: str, retry_after: float) -> None:
        """Initialize a circuit-open exception payload.

        Args:
            breaker_name: Breaker rejecting the call.
            retry_after: Seconds until the next probe window opens.
        """
        self.breaker_name = breaker_name
        self.retry_after = retry_after
        super().__init__(f"circuit_open: {breaker_name} retry_after={retry_after:g}s")

    @property
    def user_message(self) -> str:
        """Message suitable for rendering in the settings UI."""
        return "The server is temporarily unavailable. Please try again shortly."
