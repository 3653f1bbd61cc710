"""Request orchestration façade.

``RequestOrchestrator`` ties the queue, the retry engine and the transport
together. Admitted entries are dispatched as asyncio tasks; whenever an entry
leaves execution the orchestrator pumps admission again.
"""

from __future__ import annotations

import asyncio
import functools
import hashlib
import json
import random
import time
import uuid
from collections.abc import Awaitable, Callable, Iterable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

import httpx

from settings_dispatch.backlog import (
    BacklogRecord,
    BacklogStore,
    JsonFileBacklogStore,
    NullBacklogStore,
)
from settings_dispatch.circuit_breaker import AbstractBreakerStorage, CircuitOpenError
from settings_dispatch.errors import (
    BatchAbortedError,
    RequestCancelledError,
    RequestValidationError,
)
from settings_dispatch.history import (
    HistoryEntry,
    HistoryFilter,
    MetricsSnapshot,
    Outcome,
    RequestHistory,
    build_metrics,
)
from settings_dispatch.logging import (
    StructuredLogger,
    bound_request_context,
    get_logger,
    log_error,
    log_info,
    log_warning,
)
from settings_dispatch.queue import (
    Priority,
    QueueEntry,
    Request,
    RequestHandle,
    RequestQueue,
    RequestState,
    consume_outcome,
    parse_priority,
)
from settings_dispatch.retry import RetryEngine, classify_error
from settings_dispatch.settings import DispatchSettings
from settings_dispatch.transport import (
    Credentials,
    HttpTokenRefresher,
    HttpTransport,
    NullTokenRefresher,
    TokenRefresher,
    Transport,
)

_UNSTARTED_STATES = frozenset({RequestState.PENDING, RequestState.ADMITTED})
_OUTCOMES = {
    RequestState.SUCCEEDED: Outcome.SUCCEEDED,
    RequestState.FAILED: Outcome.FAILED,
    RequestState.CANCELLED: Outcome.CANCELLED,
}


def _utcnow() -> datetime:
    return datetime.now(UTC)


def derive_dedupe_key(action: str, payload: Mapping[str, Any]) -> str:
    """Return ``action`` plus a stable digest of the canonical JSON payload."""
    canonical = json.dumps(
        payload, sort_keys=True, separators=(",", ":"), default=str
    )
    digest = hashlib.sha256(canonical.encode("utf-8")).hexdigest()[:16]
    return f"{action}:{digest}"


def error_kind_label(error: BaseException) -> str:
    """Label recorded in history and metrics for a failed request."""
    if isinstance(error, CircuitOpenError):
        return "circuit_open"
    return str(classify_error(error))


@dataclass(frozen=True)
class BatchRequest:
    """One member of ``RequestOrchestrator.submit_batch``."""

    action: str
    payload: Mapping[str, Any] | None = None
    priority: Priority | str = Priority.NORMAL
    dedupe_key: str | None = None
    timeout_ms: int | None = None
    max_retries: int | None = None


@dataclass(frozen=True)
class BatchItemResult:
    """Outcome of one batch member."""

    ok: bool
    value: Any = None
    error: BaseException | None = None


@dataclass(eq=False)
class _CoalescedMember:
    request: Request
    handle: RequestHandle
    inner: RequestHandle | None = None


@dataclass(eq=False)
class _CoalescingWindow:
    """Same-action submissions waiting to be flushed as one batch."""

    action: str
    members: list[_CoalescedMember] = field(default_factory=list)
    timer: asyncio.TimerHandle | None = None


def _relay_outcome(
    target: asyncio.Future[Any], request_id: str, source: asyncio.Future[Any]
) -> None:
    if target.done():
        return
    if source.cancelled():
        target.set_exception(RequestCancelledError(request_id))
    elif source.exception() is not None:
        target.set_exception(source.exception())  # type: ignore[arg-type]
    else:
        target.set_result(source.result())


class RequestOrchestrator:
    """Submit, track and cancel settings requests."""

    def __init__(
        self,
        *,
        settings: DispatchSettings,
        transport: Transport,
        retry_engine: RetryEngine,
        queue: RequestQueue,
        history: RequestHistory,
        logger: StructuredLogger | None = None,
        owned_client: httpx.AsyncClient | None = None,
    ) -> None:
        """Wire already-built collaborators. Prefer ``create_orchestrator``.

        Args:
            settings: Current validated configuration.
            transport: Single-exchange transport.
            retry_engine: Retry, breaker and token refresh policy.
            queue: Request queue owning admission.
            history: Ring buffer for terminal requests.
            logger: Structured logger for orchestration events.
            owned_client: HTTP client closed by ``aclose``.
        """
        self._settings = settings
        self._transport = transport
        self._retry_engine = retry_engine
        self._queue = queue
        self._history = history
        self._logger = get_logger(__name__) if logger is None else logger
        self._owned_client = owned_client
        self._tasks: set[asyncio.Task[Any]] = set()
        self._windows: dict[str, _CoalescingWindow] = {}
        self._coalesced: dict[RequestHandle, _CoalescedMember] = {}
        self._closed = False

    @property
    def settings(self) -> DispatchSettings:
        return self._settings

    @property
    def queue(self) -> RequestQueue:
        return self._queue

    @property
    def retry_engine(self) -> RetryEngine:
        return self._retry_engine

    def _build_request(
        self,
        action: object,
        payload: Mapping[str, Any] | None,
        *,
        priority: Priority | str,
        dedupe_key: str | None,
        timeout_ms: int | None,
        max_retries: int | None,
        created_at: datetime | None = None,
    ) -> Request:
        if not isinstance(action, str) or not action.strip():
            raise RequestValidationError("action is required")
        action = action.strip()
        if payload is None:
            payload = {}
        if not isinstance(payload, Mapping):
            raise RequestValidationError("payload must be a mapping")
        if timeout_ms is not None and timeout_ms <= 0:
            raise RequestValidationError("timeout_ms must be > 0")
        if max_retries is not None and max_retries < 0:
            raise RequestValidationError("max_retries must be >= 0")
        if dedupe_key is not None and not dedupe_key.strip():
            raise RequestValidationError("dedupe_key must be non-empty")

        payload = dict(payload)
        return Request(
            id=uuid.uuid4().hex,
            action=action,
            payload=payload,
            priority=parse_priority(priority),
            created_at=_utcnow() if created_at is None else created_at,
            dedupe_key=dedupe_key or derive_dedupe_key(action, payload),
            timeout=(
                self._settings.default_timeout if timeout_ms is None else timeout_ms / 1000
            ),
            max_retries=(
                self._settings.max_retries if max_retries is None else max_retries
            ),
        )

    def _request_from_record(self, record: BacklogRecord) -> Request:
        return self._build_request(
            record.action,
            record.payload,
            priority=record.priority,
            dedupe_key=record.dedupe_key,
            timeout_ms=None,
            max_retries=None,
            created_at=record.created_at,
        )

    def _ensure_open(self) -> None:
        if self._closed:
            raise RuntimeError("orchestrator is closed")

    def submit(
        self,
        action: str,
        payload: Mapping[str, Any] | None = None,
        *,
        priority: Priority | str = Priority.NORMAL,
        dedupe_key: str | None = None,
        timeout_ms: int | None = None,
        max_retries: int | None = None,
        coalesce: bool = False,
    ) -> RequestHandle:
        """Queue one request and return an awaitable handle.

        With ``coalesce`` a batchable action waits in a per-action window
        instead. The window restarts with every addition and is flushed as one
        batch when it elapses or reaches ``max_batch_size``.

        Raises:
            RequestValidationError: When the submission is malformed.
        """
        self._ensure_open()
        request = self._build_request(
            action,
            payload,
            priority=priority,
            dedupe_key=dedupe_key,
            timeout_ms=timeout_ms,
            max_retries=max_retries,
        )
        if coalesce and self._can_coalesce(request.action):
            return self._add_to_window(request)
        handle = self._queue.enqueue(request)
        self._pump()
        return handle

    def _can_coalesce(self, action: str) -> bool:
        settings = self._settings
        return settings.batch_window_ms > 0 and action in settings.batchable_actions

    def _add_to_window(self, request: Request) -> RequestHandle:
        loop = asyncio.get_running_loop()
        window = self._windows.get(request.action)
        if window is None:
            window = self._windows[request.action] = _CoalescingWindow(request.action)
        handle = RequestHandle(request.id, request.action, loop.create_future())
        member = _CoalescedMember(request=request, handle=handle)
        window.members.append(member)
        self._coalesced[handle] = member
        handle.future.add_done_callback(lambda _: self._coalesced.pop(handle, None))

        if window.timer is not None:
            window.timer.cancel()
            window.timer = None
        if len(window.members) >= self._settings.max_batch_size:
            self._flush_window(request.action, reason="size")
        else:
            window.timer = loop.call_later(
                self._settings.batch_window,
                self._flush_window,
                request.action,
                "timer",
            )
        return handle

    def _flush_window(self, action: str, reason: str) -> None:
        window = self._windows.pop(action, None)
        if window is None:
            return
        if window.timer is not None:
            window.timer.cancel()
        members = [member for member in window.members if not member.handle.done()]
        if not members:
            return
        log_info(
            self._logger,
            "batch_window_flushed",
            action=action,
            batch_size=len(members),
            reason=reason,
        )
        task = asyncio.create_task(
            self._run_window(members), name=f"settings-dispatch:window:{action}"
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run_window(self, members: list[_CoalescedMember]) -> None:
        def _should_submit(index: int) -> bool:
            return not members[index].handle.done()

        def _on_enqueued(index: int, inner: RequestHandle) -> None:
            member = members[index]
            member.inner = inner
            member.handle.entry_id = inner.entry_id
            inner.future.add_done_callback(
                functools.partial(
                    _relay_outcome, member.handle.future, member.request.id
                )
            )

        try:
            results = await self._run_batch(
                [member.request for member in members],
                max_concurrent=3,
                fail_fast=False,
                should_submit=_should_submit,
                on_enqueued=_on_enqueued,
            )
        except Exception as exc:
            for member in members:
                if not member.handle.done():
                    member.handle.future.set_exception(exc)
            return
        for member, item in zip(members, results, strict=True):
            if not member.handle.done() and item.error is not None:
                member.handle.future.set_exception(item.error)

    def _pump(self) -> None:
        for entry in self._queue.admit_ready():
            task = asyncio.create_task(
                self._dispatch(entry), name=f"settings-dispatch:{entry.id}"
            )
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    async def _dispatch(self, entry: QueueEntry) -> None:
        with bound_request_context(request_id=entry.id, action=entry.request.action):
            await self._run_entry(entry)

    async def _run_entry(self, entry: QueueEntry) -> None:
        request = entry.request
        started_at = _utcnow()
        start = time.monotonic()

        def _on_attempt(attempt: int) -> None:
            self._queue.mark_executing(entry, attempt)

        def _on_retry(attempt: int, error: BaseException, delay: float) -> None:
            self._queue.mark_retrying(entry, error)

        async def _transport_call() -> Any:
            return await self._transport.call(
                request.action,
                request.payload,
                timeout=request.timeout,
                abort=entry.abort,
            )

        try:
            result = await self._retry_engine.execute(
                request,
                _transport_call,
                abort=entry.abort,
                on_attempt=_on_attempt,
                on_retry=_on_retry,
            )
        except asyncio.CancelledError:
            state = self._queue.fail(entry, RequestCancelledError(entry.id))
            self._record(entry, state, started_at, start)
            raise
        except Exception as exc:
            state = self._queue.fail(entry, exc)
            self._record(entry, state, started_at, start, error=exc)
        else:
            state = self._queue.complete(entry, result)
            self._record(entry, state, started_at, start)
        finally:
            if not self._closed:
                self._pump()

    def _record(
        self,
        entry: QueueEntry,
        state: RequestState | None,
        started_at: datetime,
        start: float,
        *,
        error: BaseException | None = None,
    ) -> None:
        if state is None:
            return
        duration_ms = max(time.monotonic() - start, 0.0) * 1000
        outcome = _OUTCOMES[state]
        error_kind = None
        if outcome == Outcome.FAILED and error is not None:
            error_kind = error_kind_label(error)

        self._history.append(
            HistoryEntry(
                request_id=entry.id,
                action=entry.request.action,
                outcome=outcome,
                started_at=started_at,
                duration_ms=duration_ms,
                attempt=entry.attempt,
                error_kind=error_kind,
            )
        )
        if outcome == Outcome.SUCCEEDED:
            log_info(
                self._logger,
                "request_succeeded",
                request_id=entry.id,
                action=entry.request.action,
                attempts=entry.attempt,
                duration_ms=round(duration_ms, 3),
            )
        elif outcome == Outcome.FAILED:
            log_fn = log_warning if isinstance(error, CircuitOpenError) else log_error
            log_fn(
                self._logger,
                "request_failed",
                request_id=entry.id,
                action=entry.request.action,
                attempts=entry.attempt,
                error_kind=error_kind,
                error=str(error),
                duration_ms=round(duration_ms, 3),
            )

    def cancel(self, handle: RequestHandle) -> bool:
        """Cancel the request behind ``handle``. Returns ``False`` on a no-op."""
        member = self._coalesced.get(handle)
        if member is not None:
            return self._cancel_coalesced(member)
        entry = self._queue.get(handle.entry_id)
        cancelled = self._queue.cancel(handle)
        if cancelled and entry is not None and entry.state == RequestState.CANCELLED:
            self._record(entry, entry.state, _utcnow(), time.monotonic())
            if not self._closed:
                self._pump()
        return cancelled

    def _cancel_coalesced(self, member: _CoalescedMember) -> bool:
        if member.handle.done():
            return False
        if member.inner is not None:
            return self.cancel(member.inner)
        window = self._windows.get(member.request.action)
        if window is not None and member in window.members:
            window.members.remove(member)
            if not window.members:
                if window.timer is not None:
                    window.timer.cancel()
                del self._windows[member.request.action]
        member.handle.future.set_exception(RequestCancelledError(member.request.id))
        consume_outcome(member.handle.future)
        log_info(
            self._logger,
            "request_cancelled",
            request_id=member.request.id,
            action=member.request.action,
            coalesced=True,
        )
        return True

    async def submit_batch(
        self,
        requests: Iterable[BatchRequest],
        *,
        max_concurrent: int = 3,
        fail_fast: bool = False,
    ) -> list[BatchItemResult]:
        """Run several requests with a batch-local concurrency sub-limit.

        Every member is validated before any is submitted. With ``fail_fast``
        the first failure (other than a cancellation) cancels members that
        have not started executing and raises ``BatchAbortedError``.

        Returns:
            One ``BatchItemResult`` per member, in input order.
        """
        self._ensure_open()
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be >= 1")
        built = [
            self._build_request(
                item.action,
                item.payload,
                priority=item.priority,
                dedupe_key=item.dedupe_key,
                timeout_ms=item.timeout_ms,
                max_retries=item.max_retries,
            )
            for item in requests
        ]
        return await self._run_batch(built, max_concurrent=max_concurrent, fail_fast=fail_fast)

    async def _run_batch(
        self,
        built: list[Request],
        *,
        max_concurrent: int,
        fail_fast: bool,
        should_submit: Callable[[int], bool] | None = None,
        on_enqueued: Callable[[int, RequestHandle], None] | None = None,
    ) -> list[BatchItemResult]:
        limit = min(max_concurrent, self._queue.max_concurrent)
        results: list[BatchItemResult | None] = [None] * len(built)
        running: dict[asyncio.Future[Any], tuple[int, RequestHandle]] = {}
        next_index = 0
        aborted: tuple[int, BaseException] | None = None

        while running or (aborted is None and next_index < len(built)):
            while aborted is None and next_index < len(built) and len(running) < limit:
                index = next_index
                next_index += 1
                if self._closed or (should_submit is not None and not should_submit(index)):
                    results[index] = BatchItemResult(
                        ok=False, error=RequestCancelledError(built[index].id)
                    )
                    continue
                handle = self._queue.enqueue(built[index])
                running[handle.future] = (index, handle)
                if on_enqueued is not None:
                    on_enqueued(index, handle)
            if not running:
                break
            if not self._closed:
                self._pump()

            done, _ = await asyncio.wait(running, return_when=asyncio.FIRST_COMPLETED)
            for future in sorted(done, key=lambda fut: running[fut][0]):
                index, handle = running.pop(future)
                if future.cancelled():
                    item = BatchItemResult(
                        ok=False, error=RequestCancelledError(handle.entry_id)
                    )
                elif future.exception() is not None:
                    item = BatchItemResult(ok=False, error=future.exception())
                else:
                    item = BatchItemResult(ok=True, value=future.result())
                results[index] = item

                if (
                    fail_fast
                    and aborted is None
                    and item.error is not None
                    and not isinstance(item.error, RequestCancelledError)
                ):
                    aborted = (index, item.error)
                    for _other_index, other in list(running.values()):
                        other_entry = self._queue.get(other.entry_id)
                        if other_entry is not None and other_entry.state in _UNSTARTED_STATES:
                            self.cancel(other)

        if aborted is not None:
            index, error = aborted
            log_warning(
                self._logger,
                "batch_aborted",
                failed_index=index,
                batch_size=len(built),
                submitted=next_index,
                error=str(error),
            )
            raise BatchAbortedError(index, error, list(results))
        return [item for item in results if item is not None]

    def get_metrics(self) -> MetricsSnapshot:
        """Derive current metrics from history, queue gauges and breakers."""
        stats = self._queue.stats
        return build_metrics(
            self._history,
            queue_depth=self._queue.depth,
            in_flight=self._queue.in_flight,
            total_enqueued=stats.total_enqueued,
            total_deduplicated=stats.total_deduplicated,
            max_queue_depth=stats.max_depth,
            average_wait_ms=stats.average_wait_ms,
            breakers=self._retry_engine.breaker_snapshots(),
        )

    def get_history(self, history_filter: HistoryFilter | None = None) -> list[HistoryEntry]:
        """Return recorded terminal requests, newest first."""
        return self._history.entries(history_filter)

    def clear_history(self) -> None:
        self._history.clear()

    def configure(self, **options: Any) -> DispatchSettings:
        """Apply runtime options atomically.

        Raises:
            ValueError: When an option is unknown or a value is invalid. The
                current configuration is left untouched.
        """
        settings = self._settings.with_options(**options)
        self._settings = settings
        self._queue.max_concurrent = settings.max_concurrent_requests
        self._retry_engine.configure(
            policy=settings.retry_policy(),
            breaker_config=settings.breaker_config(),
        )
        self._history.resize(settings.max_history_size)
        log_info(
            self._logger,
            "configuration_updated",
            options=sorted(options),
        )
        if not self._closed:
            self._pump()
        return settings

    def restore(self) -> list[RequestHandle]:
        """Re-queue the persisted backlog and start admitting it."""
        self._ensure_open()
        handles = self._queue.restore(self._request_from_record)
        self._pump()
        return handles

    async def aclose(self) -> None:
        """Cancel outstanding work and wait for dispatched tasks to finish."""
        if self._closed:
            return
        self._closed = True
        for member in list(self._coalesced.values()):
            if member.inner is None:
                self._cancel_coalesced(member)
        for entry in self._queue.pending_entries() + self._queue.active_entries():
            for handle in list(entry.waiters):
                self.cancel(handle)
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
        if self._owned_client is not None:
            await self._owned_client.aclose()

    async def __aenter__(self) -> RequestOrchestrator:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()


def create_orchestrator(
    settings: DispatchSettings | None = None,
    *,
    transport: Transport | None = None,
    client: httpx.AsyncClient | None = None,
    credentials: Credentials | None = None,
    token_refresher: TokenRefresher | None = None,
    backlog_store: BacklogStore | None = None,
    breaker_storage: AbstractBreakerStorage | None = None,
    logger: StructuredLogger | None = None,
    sleep: Callable[[float], Awaitable[None]] | None = None,
    rng: random.Random | None = None,
) -> RequestOrchestrator:
    """Build one owned orchestrator from settings.

    Optional capabilities are chosen here once: an HTTP transport and token
    refresher when none are given, and a JSON file backlog when
    ``settings.backlog_path`` is set.
    """
    settings = DispatchSettings() if settings is None else settings
    logger = get_logger("settings_dispatch") if logger is None else logger
    credentials = Credentials(token=settings.token) if credentials is None else credentials

    owned_client: httpx.AsyncClient | None = None
    if transport is None:
        if client is None:
            client = owned_client = httpx.AsyncClient()
        transport = HttpTransport(
            client,
            endpoint_url=settings.endpoint_url,
            credentials=credentials,
            action_prefix=settings.action_prefix,
        )
        if token_refresher is None:
            token_refresher = HttpTokenRefresher(
                client,
                endpoint_url=settings.endpoint_url,
                action=settings.refresh_action,
                action_prefix=settings.action_prefix,
                timeout=settings.default_timeout,
            )
    if token_refresher is None:
        token_refresher = NullTokenRefresher()

    if backlog_store is None:
        backlog_store = (
            NullBacklogStore()
            if settings.backlog_path is None
            else JsonFileBacklogStore(settings.backlog_path)
        )

    retry_engine = RetryEngine(
        policy=settings.retry_policy(),
        breaker_config=settings.breaker_config(),
        breaker_storage=breaker_storage,
        credentials=credentials,
        token_refresher=token_refresher,
        logger=logger,
        sleep=sleep,
        rng=rng,
    )
    queue = RequestQueue(
        max_concurrent=settings.max_concurrent_requests,
        store=backlog_store,
        max_backlog_age=settings.backlog_max_age_seconds,
        logger=logger,
    )
    return RequestOrchestrator(
        settings=settings,
        transport=transport,
        retry_engine=retry_engine,
        queue=queue,
        history=RequestHistory(settings.max_history_size),
        logger=logger,
        owned_client=owned_client,
    )
