"""State storage for circuit breakers.

Storage is decoupled from breaker logic so the per-action state can be
inspected and reset independently of the breakers using it.

Storage persists only ``CLOSED`` and ``OPEN``. ``HALF_OPEN`` is an ephemeral,
per-instance probe mode and should not be persisted by backends.
"""

from abc import ABC, abstractmethod
from datetime import UTC, datetime

from settings_dispatch.circuit_breaker.state import BreakerSnapshot, CircuitState


def _utcnow() -> datetime:
    return datetime.now(UTC)


class AbstractBreakerStorage(ABC):
    """Abstract breaker storage interface."""

    @abstractmethod
    async def get_state(self, name: str) -> BreakerSnapshot:
        """Return the current breaker snapshot for ``name``."""

    @abstractmethod
    async def record_success(self, name: str) -> BreakerSnapshot:
        """Record a successful call and return the updated snapshot."""

    @abstractmethod
    async def record_failure(self, name: str) -> BreakerSnapshot:
        """Record a failed call and return the updated snapshot."""

    @abstractmethod
    async def force_open(self, name: str, *, cooldown: float) -> BreakerSnapshot:
        """Force breaker ``name`` into ``OPEN`` for ``cooldown`` seconds."""

    @abstractmethod
    async def reset(self, name: str) -> BreakerSnapshot:
        """Reset breaker ``name`` to a healthy ``CLOSED`` state."""

    @abstractmethod
    def snapshots(self) -> dict[str, BreakerSnapshot]:
        """Return a copy of every known breaker snapshot keyed by name."""


class InMemoryBreakerStorage(AbstractBreakerStorage):
    """In-memory storage owned by a single event loop.

    All mutation happens from one control flow, so no locking is needed.
    """

    def __init__(self) -> None:
        """Initialize the in-memory snapshot registry."""
        self._snapshots: dict[str, BreakerSnapshot] = {}

    def _default_snapshot(self, name: str) -> BreakerSnapshot:
        return BreakerSnapshot(
            name=name,
            state=CircuitState.CLOSED,
            failure_count=0,
            last_failure_at=None,
            opened_at=None,
        )

    async def get_state(self, name: str) -> BreakerSnapshot:
        """Return the current snapshot, creating a default one if missing."""
        snapshot = self._snapshots.get(name)
        if snapshot is None:
            snapshot = self._default_snapshot(name)
            self._snapshots[name] = snapshot
        return snapshot

    async def record_success(self, name: str) -> BreakerSnapshot:
        """Record a successful call.

        A healthy snapshot is returned unchanged to avoid hot-path writes.
        """
        snapshot = self._snapshots.get(name, self._default_snapshot(name))
        if (
            snapshot.state == CircuitState.CLOSED
            and snapshot.failure_count == 0
            and snapshot.last_failure_at is None
            and snapshot.opened_at is None
        ):
            self._snapshots[name] = snapshot
            return snapshot
        updated = BreakerSnapshot(
            name=name,
            state=CircuitState.CLOSED,
            failure_count=0,
            last_failure_at=None,
            opened_at=None,
            open_count=snapshot.open_count,
        )
        self._snapshots[name] = updated
        return updated

    async def record_failure(self, name: str) -> BreakerSnapshot:
        """Increment the consecutive failure counter."""
        snapshot = self._snapshots.get(name, self._default_snapshot(name))
        updated = BreakerSnapshot(
            name=name,
            state=snapshot.state,
            failure_count=snapshot.failure_count + 1,
            last_failure_at=_utcnow(),
            opened_at=snapshot.opened_at,
            open_count=snapshot.open_count,
            cooldown=snapshot.cooldown,
        )
        self._snapshots[name] = updated
        return updated

    async def force_open(self, name: str, *, cooldown: float) -> BreakerSnapshot:
        """Open the circuit, restart the cooldown window and count the opening."""
        snapshot = self._snapshots.get(name, self._default_snapshot(name))
        updated = BreakerSnapshot(
            name=name,
            state=CircuitState.OPEN,
            failure_count=snapshot.failure_count,
            last_failure_at=snapshot.last_failure_at,
            opened_at=_utcnow(),
            open_count=snapshot.open_count + 1,
            cooldown=cooldown,
        )
        self._snapshots[name] = updated
        return updated

    async def reset(self, name: str) -> BreakerSnapshot:
        """Reset breaker state, counters and cooldown escalation."""
        updated = self._default_snapshot(name)
        self._snapshots[name] = updated
        return updated

    def snapshots(self) -> dict[str, BreakerSnapshot]:
        """Return a copy of every known breaker snapshot keyed by name."""
        return dict(self._snapshots)
