"""Priority request queue with deduplication, admission control and persistence.

The queue owns every logical request from submission until its waiters have
been notified. It never talks to the network: the orchestrator asks it for
admitted entries, runs them, and reports the outcome back.
"""

from __future__ import annotations

import asyncio
import dataclasses
import itertools
import time
from collections import deque
from collections.abc import Callable, Iterator, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import StrEnum
from typing import Any

from settings_dispatch.backlog import BacklogRecord, BacklogStore, NullBacklogStore
from settings_dispatch.errors import RequestCancelledError, RequestValidationError
from settings_dispatch.logging import (
    StructuredLogger,
    get_logger,
    log_exception,
    log_info,
    log_warning,
)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class Priority(StrEnum):
    """Dispatch priority tiers."""

    HIGH = "high"
    NORMAL = "normal"
    LOW = "low"


PRIORITY_ORDER: tuple[Priority, ...] = (Priority.HIGH, Priority.NORMAL, Priority.LOW)
_PRIORITY_RANK = {priority: rank for rank, priority in enumerate(PRIORITY_ORDER)}


class RequestState(StrEnum):
    """Lifecycle states of a queued request."""

    PENDING = "pending"
    ADMITTED = "admitted"
    EXECUTING = "executing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATES = frozenset(
    {RequestState.SUCCEEDED, RequestState.FAILED, RequestState.CANCELLED}
)


def parse_priority(value: object) -> Priority:
    """Coerce ``value`` to a ``Priority`` or raise ``RequestValidationError``."""
    if isinstance(value, Priority):
        return value
    if isinstance(value, str):
        try:
            return Priority(value.strip().lower())
        except ValueError:
            pass
    choices = ", ".join(PRIORITY_ORDER)
    raise RequestValidationError(f"priority must be one of: {choices}")


@dataclass(frozen=True)
class Request:
    """One logical call to the settings backend."""

    id: str
    action: str
    payload: Mapping[str, Any]
    priority: Priority
    created_at: datetime
    dedupe_key: str
    timeout: float
    max_retries: int


class RequestHandle:
    """Caller-side view of a submitted request.

    Awaiting the handle returns the request result or raises its error. Each
    caller gets its own handle, including callers deduplicated onto an
    existing entry.
    """

    __slots__ = ("_future", "action", "detached", "entry_id")

    def __init__(self, entry_id: str, action: str, future: asyncio.Future[Any]) -> None:
        self.entry_id = entry_id
        self.action = action
        self.detached = False
        self._future = future

    @property
    def future(self) -> asyncio.Future[Any]:
        return self._future

    def done(self) -> bool:
        return self._future.done()

    def __await__(self):  # type: ignore[no-untyped-def]
        return self._future.__await__()

    def __repr__(self) -> str:
        return f"RequestHandle(entry_id={self.entry_id!r}, action={self.action!r})"


@dataclass(eq=False)
class QueueEntry:
    """A request plus queue bookkeeping."""

    request: Request
    sequence: int
    enqueued_at: float
    state: RequestState = RequestState.PENDING
    attempt: int = 0
    last_error: BaseException | None = None
    admitted_at: float | None = None
    cancel_requested: bool = False
    waiters: list[RequestHandle] = field(default_factory=list)
    abort: asyncio.Event = field(default_factory=asyncio.Event)

    @property
    def id(self) -> str:
        return self.request.id

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES


@dataclass
class QueueStats:
    """Running counters kept by the queue."""

    total_enqueued: int = 0
    total_deduplicated: int = 0
    total_admitted: int = 0
    total_wait_seconds: float = 0.0
    max_depth: int = 0

    @property
    def average_wait_ms(self) -> float:
        """Average time between enqueue and admission."""
        if self.total_admitted == 0:
            return 0.0
        return self.total_wait_seconds / self.total_admitted * 1000


def consume_outcome(future: asyncio.Future[Any]) -> None:
    """Mark a finished future's exception as retrieved."""
    if not future.cancelled():
        future.exception()


class RequestQueue:
    """Priority queue of logical requests with a global concurrency limit."""

    def __init__(
        self,
        *,
        max_concurrent: int = 5,
        store: BacklogStore | None = None,
        max_backlog_age: float | None = None,
        logger: StructuredLogger | None = None,
    ) -> None:
        """Create an empty queue.

        Args:
            max_concurrent: Bound on admitted plus executing entries.
            store: Durable storage for the unexecuted backlog.
            max_backlog_age: Seconds after which restored records are dropped.
            logger: Structured logger for queue events.
        """
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be >= 1")
        self._max_concurrent = max_concurrent
        self._store: BacklogStore = NullBacklogStore() if store is None else store
        self._max_backlog_age = max_backlog_age
        self._logger = get_logger(__name__) if logger is None else logger
        self._tiers: dict[Priority, deque[QueueEntry]] = {
            priority: deque() for priority in PRIORITY_ORDER
        }
        self._entries: dict[str, QueueEntry] = {}
        self._active: dict[str, QueueEntry] = {}
        self._by_dedupe: dict[str, QueueEntry] = {}
        self._sequence = itertools.count()
        self.stats = QueueStats()
        self._restoring = False

    @property
    def max_concurrent(self) -> int:
        return self._max_concurrent

    @max_concurrent.setter
    def max_concurrent(self, value: int) -> None:
        if value < 1:
            raise ValueError("max_concurrent must be >= 1")
        self._max_concurrent = value

    @property
    def depth(self) -> int:
        """Number of pending entries."""
        return sum(len(tier) for tier in self._tiers.values())

    @property
    def in_flight(self) -> int:
        """Number of admitted plus executing entries."""
        return len(self._active)

    @property
    def executing_count(self) -> int:
        return sum(
            1 for entry in self._active.values() if entry.state == RequestState.EXECUTING
        )

    def has_capacity(self) -> bool:
        return len(self._active) < self._max_concurrent

    def get(self, entry_id: str) -> QueueEntry | None:
        """Return the live (non-terminal) entry with ``entry_id``."""
        return self._entries.get(entry_id)

    def pending_entries(self) -> list[QueueEntry]:
        """Pending entries in dispatch order."""
        return [entry for priority in PRIORITY_ORDER for entry in self._tiers[priority]]

    def active_entries(self) -> list[QueueEntry]:
        """Admitted and executing entries in admission order."""
        return list(self._active.values())

    def entries_by_state(self) -> dict[RequestState, int]:
        counts = {state: 0 for state in RequestState if state not in TERMINAL_STATES}
        for entry in self._entries.values():
            counts[entry.state] += 1
        return counts

    def _validate(self, request: Request) -> Request:
        if not isinstance(request.action, str) or not request.action.strip():
            raise RequestValidationError("action is required")
        if not isinstance(request.payload, Mapping):
            raise RequestValidationError("payload must be a mapping")
        if not isinstance(request.dedupe_key, str) or not request.dedupe_key:
            raise RequestValidationError("dedupe_key is required")
        if request.timeout <= 0:
            raise RequestValidationError("timeout must be > 0")
        if request.max_retries < 0:
            raise RequestValidationError("max_retries must be >= 0")
        priority = parse_priority(request.priority)
        if priority is not request.priority:
            request = dataclasses.replace(request, priority=priority)
        return request

    def _new_handle(self, entry: QueueEntry) -> RequestHandle:
        future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        handle = RequestHandle(entry.id, entry.request.action, future)
        entry.waiters.append(handle)
        return handle

    def enqueue(self, request: Request) -> RequestHandle:
        """Queue ``request`` or attach the caller to an identical live request.

        Raises:
            RequestValidationError: When the request is malformed.
        """
        request = self._validate(request)

        existing = self._by_dedupe.get(request.dedupe_key)
        if existing is not None and not existing.is_terminal:
            handle = self._new_handle(existing)
            self.stats.total_deduplicated += 1
            log_info(
                self._logger,
                "request_deduplicated",
                request_id=existing.id,
                action=request.action,
                dedupe_key=request.dedupe_key,
                waiters=len(existing.waiters),
            )
            return handle

        entry = QueueEntry(
            request=request,
            sequence=next(self._sequence),
            enqueued_at=time.monotonic(),
        )
        self._entries[entry.id] = entry
        self._by_dedupe[request.dedupe_key] = entry
        self._tiers[request.priority].append(entry)
        handle = self._new_handle(entry)

        self.stats.total_enqueued += 1
        self.stats.max_depth = max(self.stats.max_depth, self.depth)
        log_info(
            self._logger,
            "request_enqueued",
            request_id=entry.id,
            action=request.action,
            priority=str(request.priority),
            depth=self.depth,
        )
        self._persist()
        return handle

    def admit_next(self) -> QueueEntry | None:
        """Promote the highest-priority, oldest pending entry when a slot is free."""
        if not self.has_capacity():
            return None
        for priority in PRIORITY_ORDER:
            tier = self._tiers[priority]
            if not tier:
                continue
            entry = tier.popleft()
            now = time.monotonic()
            entry.state = RequestState.ADMITTED
            entry.admitted_at = now
            self._active[entry.id] = entry
            self.stats.total_admitted += 1
            self.stats.total_wait_seconds += max(now - entry.enqueued_at, 0.0)
            log_info(
                self._logger,
                "request_admitted",
                request_id=entry.id,
                action=entry.request.action,
                priority=str(priority),
                in_flight=self.in_flight,
            )
            self._persist()
            return entry
        return None

    def admit_ready(self) -> list[QueueEntry]:
        """Admit pending entries until no slot or no pending entry remains."""
        admitted: list[QueueEntry] = []
        while True:
            entry = self.admit_next()
            if entry is None:
                return admitted
            admitted.append(entry)

    def mark_executing(self, entry: QueueEntry, attempt: int | None = None) -> None:
        """Record that ``entry`` is issuing a transport attempt."""
        if entry.is_terminal:
            return
        entry.attempt = entry.attempt + 1 if attempt is None else attempt
        if entry.state != RequestState.EXECUTING:
            entry.state = RequestState.EXECUTING
            self._persist()

    def mark_retrying(self, entry: QueueEntry, error: BaseException) -> None:
        """Return an executing entry to ``admitted`` while it waits out a backoff."""
        if entry.state != RequestState.EXECUTING:
            return
        entry.state = RequestState.ADMITTED
        entry.last_error = error
        self._persist()

    def complete(self, entry: QueueEntry, result: Any) -> RequestState | None:
        """Finish ``entry`` successfully. Returns the terminal state reached."""
        if entry.is_terminal:
            return None
        if entry.cancel_requested:
            return self._finish(
                entry, RequestState.CANCELLED, error=RequestCancelledError(entry.id)
            )
        return self._finish(entry, RequestState.SUCCEEDED, result=result)

    def fail(self, entry: QueueEntry, error: BaseException) -> RequestState | None:
        """Finish ``entry`` with ``error``. Returns the terminal state reached."""
        if entry.is_terminal:
            return None
        entry.last_error = error
        if entry.cancel_requested or isinstance(error, RequestCancelledError):
            return self._finish(
                entry, RequestState.CANCELLED, error=RequestCancelledError(entry.id)
            )
        return self._finish(entry, RequestState.FAILED, error=error)

    def cancel(self, handle: RequestHandle) -> bool:
        """Cancel the request behind ``handle``.

        Pending and admitted entries are cancelled immediately. Executing
        entries get an abort request and reach ``cancelled`` once the
        execution finishes. When other callers share the entry only this
        handle is detached. Returns ``False`` when there was nothing to cancel.
        """
        entry = self._entries.get(handle.entry_id)
        if entry is None or entry.is_terminal or handle.detached or handle.done():
            return False

        live_waiters = [waiter for waiter in entry.waiters if not waiter.done()]
        if len(live_waiters) > 1:
            handle.detached = True
            entry.waiters.remove(handle)
            handle.future.set_exception(RequestCancelledError(entry.id))
            consume_outcome(handle.future)
            log_info(
                self._logger,
                "request_waiter_detached",
                request_id=entry.id,
                action=entry.request.action,
                waiters=len(entry.waiters),
            )
            return True

        if entry.state == RequestState.PENDING:
            self._tiers[entry.request.priority].remove(entry)
            self._finish(entry, RequestState.CANCELLED, error=RequestCancelledError(entry.id))
            return True

        if entry.state == RequestState.ADMITTED:
            entry.abort.set()
            self._finish(entry, RequestState.CANCELLED, error=RequestCancelledError(entry.id))
            return True

        if entry.cancel_requested:
            return False
        entry.cancel_requested = True
        entry.abort.set()
        self._release_dedupe_key(entry)
        log_info(
            self._logger,
            "request_cancel_requested",
            request_id=entry.id,
            action=entry.request.action,
        )
        return True

    def _release_dedupe_key(self, entry: QueueEntry) -> None:
        if self._by_dedupe.get(entry.request.dedupe_key) is entry:
            del self._by_dedupe[entry.request.dedupe_key]

    def _finish(
        self,
        entry: QueueEntry,
        state: RequestState,
        *,
        result: Any = None,
        error: BaseException | None = None,
    ) -> RequestState:
        entry.state = state
        self._entries.pop(entry.id, None)
        self._active.pop(entry.id, None)
        self._release_dedupe_key(entry)

        for waiter in entry.waiters:
            future = waiter.future
            if future.done():
                continue
            if error is None:
                future.set_result(result)
            else:
                future.set_exception(error)

        if state == RequestState.CANCELLED:
            log_info(
                self._logger,
                "request_cancelled",
                request_id=entry.id,
                action=entry.request.action,
            )
        self._persist()
        return state

    def _iter_backlog(self) -> Iterator[QueueEntry]:
        backlog = [
            entry
            for entry in self._entries.values()
            if entry.state in (RequestState.PENDING, RequestState.ADMITTED)
        ]
        backlog.sort(
            key=lambda entry: (_PRIORITY_RANK[entry.request.priority], entry.sequence)
        )
        return iter(backlog)

    def snapshot(self) -> list[BacklogRecord]:
        """Copy the unexecuted backlog in priority/FIFO order."""
        return [
            BacklogRecord(
                action=entry.request.action,
                payload=dict(entry.request.payload),
                priority=str(entry.request.priority),
                dedupe_key=entry.request.dedupe_key,
                created_at=entry.request.created_at,
            )
            for entry in self._iter_backlog()
        ]

    def _persist(self) -> None:
        if self._restoring:
            return
        records = self.snapshot()
        try:
            self._store.save(records)
        except Exception:
            log_exception(
                self._logger,
                "backlog_persist_failed",
                backlog_size=len(records),
            )

    def restore(
        self, build_request: Callable[[BacklogRecord], Request]
    ) -> list[RequestHandle]:
        """Re-queue the persisted backlog as pending entries.

        Nothing is admitted here. Records older than the configured maximum
        age, or that no longer validate, are dropped.
        """
        try:
            records = self._store.load()
        except Exception:
            log_exception(self._logger, "backlog_restore_failed")
            self._persist()
            return []
        if not records:
            return []

        cutoff = None
        if self._max_backlog_age is not None:
            cutoff = _utcnow() - timedelta(seconds=self._max_backlog_age)

        handles: list[RequestHandle] = []
        dropped = 0
        # The stored snapshot stays intact until every record is re-queued.
        self._restoring = True
        try:
            for record in records:
                if cutoff is not None and record.created_at < cutoff:
                    dropped += 1
                    continue
                try:
                    handle = self.enqueue(build_request(record))
                except RequestValidationError as exc:
                    dropped += 1
                    log_warning(
                        self._logger,
                        "backlog_record_rejected",
                        action=record.action,
                        error=str(exc),
                    )
                    continue
                handle.future.add_done_callback(consume_outcome)
                handles.append(handle)
        finally:
            self._restoring = False

        self._persist()
        log_info(
            self._logger,
            "backlog_restored",
            restored=len(handles),
            dropped=dropped,
        )
        return handles
