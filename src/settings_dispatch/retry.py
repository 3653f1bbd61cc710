from __future__ import annotations

import asyncio
import dataclasses
import random
from collections.abc import Awaitable, Callable
from contextlib import suppress
from dataclasses import dataclass
from typing import Protocol, TypeVar

from tenacity import AsyncRetrying, RetryCallState, stop_after_attempt
from tenacity.retry import retry_base
from tenacity.wait import wait_base

from settings_dispatch.circuit_breaker import (
    AbstractBreakerStorage,
    BreakerSnapshot,
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitOpenError,
    InMemoryBreakerStorage,
    LoggingBreakerListener,
)
from settings_dispatch.errors import (
    ErrorKind,
    HTTPError,
    NetworkError,
    RequestCancelledError,
    RequestFailedError,
    RequestTimeoutError,
)
from settings_dispatch.logging import StructuredLogger, get_logger, log_info, log_warning
from settings_dispatch.transport import Credentials, NullTokenRefresher, TokenRefresher

T = TypeVar("T")

RETRYABLE_KINDS = frozenset({ErrorKind.TRANSIENT, ErrorKind.RATE_LIMITED})

AttemptHook = Callable[[int], None]
RetryHook = Callable[[int, BaseException, float], None]


class RetryableRequest(Protocol):
    """Request surface the retry engine needs."""

    @property
    def id(self) -> str: ...

    @property
    def action(self) -> str: ...

    @property
    def max_retries(self) -> int: ...


@dataclass(frozen=True)
class RetryBackoffPolicy:
    """Retry count and capped exponential backoff with proportional jitter."""

    max_retries: int = 3
    base_seconds: float = 1.0
    max_seconds: float = 30.0
    jitter_factor: float = 0.2

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if self.base_seconds < 0:
            raise ValueError("base_seconds must be >= 0")
        if self.max_seconds < 0:
            raise ValueError("max_seconds must be >= 0")
        if self.max_seconds < self.base_seconds:
            raise ValueError("max_seconds must be >= base_seconds")
        if not 0.0 <= self.jitter_factor < 1.0:
            raise ValueError("jitter_factor must be >= 0 and < 1")


def classify_error(error: BaseException) -> ErrorKind:
    """Map a failed attempt onto its retry classification."""
    if isinstance(error, RequestFailedError):
        return error.kind
    if isinstance(error, (NetworkError, RequestTimeoutError)):
        return ErrorKind.TRANSIENT
    if isinstance(error, HTTPError):
        if error.status == 429:
            return ErrorKind.RATE_LIMITED
        if error.status in (401, 403):
            return ErrorKind.AUTH_EXPIRED
        if 500 <= error.status < 600:
            return ErrorKind.TRANSIENT
        return ErrorKind.FATAL
    return ErrorKind.FATAL


def compute_backoff_delay(
    attempt: int,
    policy: RetryBackoffPolicy,
    rng: random.Random | None = None,
) -> float:
    """Return the delay in seconds after failed attempt number ``attempt``.

    ``delay = min(cap, base * 2 ** (attempt - 1)) * (1 ± jitter_factor)``
    """
    if attempt < 1:
        raise ValueError("attempt must be >= 1")
    raw = min(policy.max_seconds, policy.base_seconds * (2 ** (attempt - 1)))
    if policy.jitter_factor == 0:
        return raw
    source = random if rng is None else rng
    spread = source.uniform(-policy.jitter_factor, policy.jitter_factor)
    return max(raw * (1 + spread), 0.0)


class retry_if_retryable(retry_base):  # noqa: N801
    """Retry only failures classified as transient or rate limited."""

    def __call__(self, retry_state: RetryCallState) -> bool:
        outcome = retry_state.outcome
        if outcome is None or not outcome.failed:
            return False
        error = outcome.exception()
        return error is not None and classify_error(error) in RETRYABLE_KINDS


class wait_backoff_or_retry_after(wait_base):  # noqa: N801
    """Backoff with jitter, preferring a server retry-after hint when rate limited."""

    def __init__(
        self, policy: RetryBackoffPolicy, rng: random.Random | None = None
    ) -> None:
        self.policy = policy
        self.rng = rng

    def __call__(self, retry_state: RetryCallState) -> float:
        outcome = retry_state.outcome
        error = None if outcome is None else outcome.exception()
        if (
            isinstance(error, HTTPError)
            and classify_error(error) == ErrorKind.RATE_LIMITED
            and error.retry_after is not None
        ):
            return max(error.retry_after, 0.0)
        return compute_backoff_delay(retry_state.attempt_number, self.policy, self.rng)


def build_interruptible_sleep(
    stop_event: asyncio.Event,
) -> Callable[[float], Awaitable[None]]:
    """Build an async sleep that exits early when an abort is requested."""

    async def _interruptible_sleep(delay: float) -> None:
        if stop_event.is_set():
            return

        bounded_delay = max(delay, 0.0)
        with suppress(TimeoutError):
            await asyncio.wait_for(stop_event.wait(), timeout=bounded_delay)

    return _interruptible_sleep


def build_backoff_retrying(
    *,
    policy: RetryBackoffPolicy,
    max_retries: int,
    sleep: Callable[[float], Awaitable[None]],
    before_sleep: Callable[[RetryCallState], None] | None = None,
    rng: random.Random | None = None,
) -> AsyncRetrying:
    """Build an ``AsyncRetrying`` allowing ``max_retries`` retries after the first try."""
    wait = wait_backoff_or_retry_after(policy, rng)
    stop = stop_after_attempt(max_retries + 1)
    if before_sleep is None:
        return AsyncRetrying(
            retry=retry_if_retryable(),
            wait=wait,
            stop=stop,
            sleep=sleep,
            reraise=True,
        )
    return AsyncRetrying(
        retry=retry_if_retryable(),
        wait=wait,
        stop=stop,
        sleep=sleep,
        before_sleep=before_sleep,
        reraise=True,
    )


class RetryEngine:
    """Run transport calls under per-action circuit breakers with retries.

    ``auth_expired`` failures trigger exactly one token refresh followed by one
    immediate retry that does not consume the retry budget. A failed refresh,
    or any later auth failure, is fatal.
    """

    def __init__(
        self,
        *,
        policy: RetryBackoffPolicy | None = None,
        breaker_config: CircuitBreakerConfig | None = None,
        breaker_storage: AbstractBreakerStorage | None = None,
        credentials: Credentials | None = None,
        token_refresher: TokenRefresher | None = None,
        logger: StructuredLogger | None = None,
        sleep: Callable[[float], Awaitable[None]] | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self._policy = RetryBackoffPolicy() if policy is None else policy
        self._breaker_config = self._with_failure_predicate(
            CircuitBreakerConfig() if breaker_config is None else breaker_config
        )
        self._storage = (
            InMemoryBreakerStorage() if breaker_storage is None else breaker_storage
        )
        self._credentials = Credentials() if credentials is None else credentials
        self._token_refresher = (
            NullTokenRefresher() if token_refresher is None else token_refresher
        )
        self._logger = get_logger(__name__) if logger is None else logger
        self._sleep = sleep
        self._rng = rng
        self._breakers: dict[str, CircuitBreaker] = {}
        self._listener = LoggingBreakerListener(self._logger)

    @property
    def policy(self) -> RetryBackoffPolicy:
        return self._policy

    @property
    def credentials(self) -> Credentials:
        return self._credentials

    @staticmethod
    def classify(error: BaseException) -> ErrorKind:
        """Map a failed attempt onto its retry classification."""
        return classify_error(error)

    @staticmethod
    def _counts_against_breaker(error: Exception) -> bool:
        return classify_error(error) in RETRYABLE_KINDS

    def _with_failure_predicate(
        self, config: CircuitBreakerConfig
    ) -> CircuitBreakerConfig:
        return dataclasses.replace(config, is_failure=self._counts_against_breaker)

    def configure(
        self,
        *,
        policy: RetryBackoffPolicy | None = None,
        breaker_config: CircuitBreakerConfig | None = None,
    ) -> None:
        """Swap the retry policy and/or breaker configuration."""
        if policy is not None:
            self._policy = policy
        if breaker_config is not None:
            self._breaker_config = self._with_failure_predicate(breaker_config)
            for breaker in self._breakers.values():
                breaker.config = self._breaker_config

    def breaker_for(self, action: str) -> CircuitBreaker:
        """Return the circuit breaker guarding ``action``."""
        breaker = self._breakers.get(action)
        if breaker is None:
            breaker = CircuitBreaker(
                action,
                config=self._breaker_config,
                storage=self._storage,
                listeners=[self._listener],
            )
            self._breakers[action] = breaker
        return breaker

    def breaker_snapshots(self) -> dict[str, BreakerSnapshot]:
        """Return the stored breaker snapshot of every action seen so far."""
        return self._storage.snapshots()

    async def reset_breaker(self, action: str) -> None:
        """Close the breaker for ``action`` and clear its escalation."""
        await self._storage.reset(action)

    async def _refresh_token(self, request: RetryableRequest, attempts: int) -> None:
        try:
            token = await self._token_refresher.refresh()
        except Exception as exc:
            log_warning(
                self._logger,
                "token_refresh_failed",
                request_id=request.id,
                action=request.action,
                error=str(exc),
            )
            raise RequestFailedError(
                ErrorKind.FATAL, attempts=attempts, cause=exc
            ) from exc
        self._credentials.token = token
        log_info(
            self._logger,
            "token_refreshed",
            request_id=request.id,
            action=request.action,
        )

    async def execute(
        self,
        request: RetryableRequest,
        transport_call: Callable[[], Awaitable[T]],
        *,
        abort: asyncio.Event | None = None,
        on_attempt: AttemptHook | None = None,
        on_retry: RetryHook | None = None,
    ) -> T:
        """Run ``transport_call`` for ``request`` until success or a final failure.

        Args:
            request: Request being executed.
            transport_call: Zero-argument callable issuing one exchange.
            abort: Cooperative cancellation signal. Backoff sleeps end early
                when it is set and no further attempt is made.
            on_attempt: Called with the attempt number before every exchange.
            on_retry: Called with ``(attempt, error, delay)`` before sleeping.

        Returns:
            The transport result.

        Raises:
            RequestFailedError: Final failure with its classification.
            CircuitOpenError: The action's breaker rejected an attempt.
            RequestCancelledError: ``abort`` was observed before an attempt.
        """
        abort_event = asyncio.Event() if abort is None else abort
        breaker = self.breaker_for(request.action)
        sleep = (
            build_interruptible_sleep(abort_event) if self._sleep is None else self._sleep
        )
        attempts = 0
        refreshed = False

        def _start_attempt() -> None:
            nonlocal attempts
            if abort_event.is_set():
                raise RequestCancelledError(request.id)
            attempts += 1
            if on_attempt is not None:
                on_attempt(attempts)

        async def _attempt() -> T:
            nonlocal refreshed
            _start_attempt()
            try:
                return await breaker.call(transport_call)
            except HTTPError as exc:
                if classify_error(exc) != ErrorKind.AUTH_EXPIRED:
                    raise
                if refreshed:
                    raise RequestFailedError(
                        ErrorKind.FATAL, attempts=attempts, cause=exc
                    ) from exc
            refreshed = True
            await self._refresh_token(request, attempts)
            return await _attempt()

        def _before_sleep(retry_state: RetryCallState) -> None:
            outcome = retry_state.outcome
            error = None if outcome is None else outcome.exception()
            next_action = retry_state.next_action
            delay = 0.0 if next_action is None else next_action.sleep
            if error is None:
                return
            log_warning(
                self._logger,
                "request_retry_scheduled",
                request_id=request.id,
                action=request.action,
                attempt=attempts,
                error_kind=str(classify_error(error)),
                delay_seconds=round(delay, 3),
                error=str(error),
            )
            if on_retry is not None:
                on_retry(attempts, error, delay)

        retrying = build_backoff_retrying(
            policy=self._policy,
            max_retries=request.max_retries,
            sleep=sleep,
            before_sleep=_before_sleep,
            rng=self._rng,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    result = await _attempt()
        except (CircuitOpenError, RequestCancelledError, RequestFailedError):
            raise
        except Exception as exc:
            raise RequestFailedError(
                classify_error(exc), attempts=attempts, cause=exc
            ) from exc
        return result
