"""Core circuit breaker implementation."""

import time
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import ParamSpec, TypeVar

from settings_dispatch.circuit_breaker.exceptions import CircuitOpenError
from settings_dispatch.circuit_breaker.metrics import BreakerListener
from settings_dispatch.circuit_breaker.state import BreakerSnapshot, CircuitState
from settings_dispatch.circuit_breaker.storage import (
    AbstractBreakerStorage,
    InMemoryBreakerStorage,
)

T = TypeVar("T")
P = ParamSpec("P")


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _count_every_failure(exc: Exception) -> bool:
    return True


@dataclass(slots=True)
class CircuitBreakerConfig:
    """Circuit breaker configuration values.

    Attributes:
        failure_threshold: Consecutive failures required while ``CLOSED``
            before opening.
        recovery_timeout: Seconds the first opening lasts before a probe.
        max_recovery_timeout: Upper bound for the cooldown, which doubles on
            every consecutive reopening.
        is_failure: Decides whether an exception counts as a failure.
            Exceptions that do not count leave the breaker untouched.
    """

    failure_threshold: int = 5
    recovery_timeout: float = 60.0
    max_recovery_timeout: float = 600.0
    is_failure: Callable[[Exception], bool] = field(default=_count_every_failure)

    def __post_init__(self) -> None:
        if self.failure_threshold < 1:
            raise ValueError("failure_threshold must be >= 1")
        if self.recovery_timeout < 0:
            raise ValueError("recovery_timeout must be >= 0")
        if self.max_recovery_timeout < self.recovery_timeout:
            raise ValueError("max_recovery_timeout must be >= recovery_timeout")

    def cooldown_for(self, open_count: int) -> float:
        """Return the cooldown for the ``open_count``-th consecutive opening."""
        exponent = max(open_count - 1, 0)
        return min(self.recovery_timeout * (2**exponent), self.max_recovery_timeout)


class CircuitBreaker:
    """Stateful proxy around one action's transport calls."""

    def __init__(
        self,
        name: str,
        *,
        config: CircuitBreakerConfig | None = None,
        storage: AbstractBreakerStorage | None = None,
        listeners: Sequence[BreakerListener] | None = None,
    ) -> None:
        """Build a circuit breaker with optional custom dependencies.

        Args:
            name: Unique breaker name used for storage and metrics.
            config: Breaker behavior configuration. Defaults to
                ``CircuitBreakerConfig()``.
            storage: State storage backend. Defaults to in-memory storage.
            listeners: Optional listener hooks for breaker events.
        """
        self.name = name
        self.config = CircuitBreakerConfig() if config is None else config
        self._storage = InMemoryBreakerStorage() if storage is None else storage
        self._listeners = tuple(listeners) if listeners is not None else ()
        self._probe_in_flight = False

    async def _emit_state_change(self, old: CircuitState, new: CircuitState) -> None:
        for listener in self._listeners:
            try:
                await listener.on_state_change(self.name, old, new)
            except Exception:
                continue

    async def _emit_call_rejected(self) -> None:
        for listener in self._listeners:
            try:
                await listener.on_call_rejected(self.name)
            except Exception:
                continue

    async def _emit_call_succeeded(self, elapsed: float) -> None:
        for listener in self._listeners:
            try:
                await listener.on_call_succeeded(self.name, elapsed)
            except Exception:
                continue

    async def _emit_call_failed(self, exc: Exception, elapsed: float) -> None:
        for listener in self._listeners:
            try:
                await listener.on_call_failed(self.name, exc, elapsed)
            except Exception:
                continue

    @staticmethod
    def _retry_after(snapshot: BreakerSnapshot, now: datetime) -> float:
        opened_at = now if snapshot.opened_at is None else snapshot.opened_at
        elapsed = (now - opened_at).total_seconds()
        return max(snapshot.cooldown - elapsed, 0.0)

    async def call(
        self,
        func: Callable[P, Awaitable[T]],
        *args: P.args,
        **kwargs: P.kwargs,
    ) -> T:
        """Invoke an async callable under circuit breaker protection.

        Args:
            func: Async callable to execute.
            *args: Positional arguments forwarded to ``func``.
            **kwargs: Keyword arguments forwarded to ``func``.

        Returns:
            The result of ``func`` when allowed and successful.

        Raises:
            CircuitOpenError: When the circuit is open and the call is rejected.
            Exception: The original exception from ``func``.
        """
        snapshot = await self._storage.get_state(self.name)
        now = _utcnow()
        is_probe = False

        if snapshot.state == CircuitState.OPEN:
            retry_after = self._retry_after(snapshot, now)
            if retry_after > 0:
                await self._emit_call_rejected()
                raise CircuitOpenError(self.name, retry_after=retry_after)

            if self._probe_in_flight:
                await self._emit_call_rejected()
                raise CircuitOpenError(self.name, retry_after=0.0)

            is_probe = True
            self._probe_in_flight = True

        start = time.monotonic()
        try:
            result = await func(*args, **kwargs)
        except Exception as exc:
            if not self.config.is_failure(exc):
                raise
            elapsed = max(time.monotonic() - start, 0.0)
            await self._emit_call_failed(exc, elapsed)

            if is_probe:
                await self._emit_state_change(CircuitState.OPEN, CircuitState.HALF_OPEN)
                failed = await self._storage.record_failure(self.name)
                await self._storage.force_open(
                    self.name,
                    cooldown=self.config.cooldown_for(failed.open_count + 1),
                )
                await self._emit_state_change(CircuitState.HALF_OPEN, CircuitState.OPEN)
            else:
                failed = await self._storage.record_failure(self.name)
                if (
                    failed.state == CircuitState.CLOSED
                    and failed.failure_count >= self.config.failure_threshold
                ):
                    await self._storage.force_open(
                        self.name,
                        cooldown=self.config.cooldown_for(failed.open_count + 1),
                    )
                    await self._emit_state_change(
                        CircuitState.CLOSED, CircuitState.OPEN
                    )
            raise
        else:
            elapsed = max(time.monotonic() - start, 0.0)

            if is_probe:
                await self._emit_state_change(CircuitState.OPEN, CircuitState.HALF_OPEN)
                await self._storage.reset(self.name)
                await self._emit_state_change(
                    CircuitState.HALF_OPEN, CircuitState.CLOSED
                )
            else:
                await self._storage.record_success(self.name)

            await self._emit_call_succeeded(elapsed)
            return result
        finally:
            if is_probe:
                self._probe_in_flight = False
