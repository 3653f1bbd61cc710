from __future__ import annotations

import asyncio
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

import pytest
from tenacity import AsyncRetrying, RetryCallState

from settings_dispatch.circuit_breaker import (
    CircuitBreakerConfig,
    CircuitOpenError,
    CircuitState,
)
from settings_dispatch.errors import (
    ErrorKind,
    HTTPError,
    NetworkError,
    RequestCancelledError,
    RequestFailedError,
    RequestTimeoutError,
    TokenRefreshError,
)
from settings_dispatch.retry import (
    RetryBackoffPolicy,
    RetryEngine,
    build_backoff_retrying,
    build_interruptible_sleep,
    classify_error,
    compute_backoff_delay,
)
from settings_dispatch.transport import Credentials
from tests.settings_dispatch.support.runtime_fakes import (
    FakeLogger,
    FakeTokenRefresher,
    RecordingSleep,
)

pytestmark = pytest.mark.asyncio

_NO_JITTER = RetryBackoffPolicy(
    max_retries=3, base_seconds=1.0, max_seconds=30.0, jitter_factor=0.0
)


@dataclass(frozen=True)
class _Request:
    id: str = "req-1"
    action: str = "save_settings"
    max_retries: int = 3


def _scripted(*outcomes: object) -> tuple[Callable[[], Awaitable[object]], list[int]]:
    remaining = list(outcomes)
    calls: list[int] = []

    async def _call() -> object:
        calls.append(len(calls) + 1)
        outcome = remaining.pop(0) if remaining else "ok"
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome

    return _call, calls


def _engine(
    *,
    sleep: RecordingSleep,
    logger: FakeLogger | None = None,
    refresher: FakeTokenRefresher | None = None,
    credentials: Credentials | None = None,
    breaker_config: CircuitBreakerConfig | None = None,
    policy: RetryBackoffPolicy = _NO_JITTER,
) -> RetryEngine:
    return RetryEngine(
        policy=policy,
        breaker_config=breaker_config,
        credentials=credentials,
        token_refresher=refresher,
        logger=FakeLogger() if logger is None else logger,
        sleep=sleep,
        rng=random.Random(0),
    )


@pytest.mark.parametrize(
    ("kwargs", "message"),
    [
        ({"max_retries": -1}, "max_retries must be >= 0"),
        ({"base_seconds": -0.1}, "base_seconds must be >= 0"),
        ({"max_seconds": -0.1}, "max_seconds must be >= 0"),
        ({"base_seconds": 2.0, "max_seconds": 1.0}, "max_seconds must be >= base_seconds"),
        ({"jitter_factor": 1.0}, "jitter_factor must be >= 0 and < 1"),
    ],
)
async def test_retry_backoff_policy_validation(
    kwargs: dict[str, float], message: str
) -> None:
    with pytest.raises(ValueError, match=message):
        RetryBackoffPolicy(**kwargs)


@pytest.mark.parametrize(
    ("error", "kind"),
    [
        (NetworkError("connection reset"), ErrorKind.TRANSIENT),
        (RequestTimeoutError(10.0), ErrorKind.TRANSIENT),
        (HTTPError(500), ErrorKind.TRANSIENT),
        (HTTPError(503), ErrorKind.TRANSIENT),
        (HTTPError(429, retry_after=3.0), ErrorKind.RATE_LIMITED),
        (HTTPError(401), ErrorKind.AUTH_EXPIRED),
        (HTTPError(403), ErrorKind.AUTH_EXPIRED),
        (HTTPError(400), ErrorKind.FATAL),
        (HTTPError(404), ErrorKind.FATAL),
        (ValueError("unexpected"), ErrorKind.FATAL),
        (
            RequestFailedError(ErrorKind.RATE_LIMITED, attempts=1, cause=HTTPError(429)),
            ErrorKind.RATE_LIMITED,
        ),
    ],
)
async def test_classify_error_is_total(error: BaseException, kind: ErrorKind) -> None:
    assert classify_error(error) == kind
    assert RetryEngine.classify(error) == kind


async def test_unjittered_backoff_is_non_decreasing_up_to_cap() -> None:
    policy = RetryBackoffPolicy(base_seconds=1.0, max_seconds=30.0, jitter_factor=0.0)

    delays = [compute_backoff_delay(attempt, policy) for attempt in range(1, 10)]

    assert delays[:6] == [1.0, 2.0, 4.0, 8.0, 16.0, 30.0]
    assert all(a <= b for a, b in zip(delays, delays[1:], strict=False))
    assert max(delays) == 30.0


async def test_jittered_backoff_stays_within_bounds() -> None:
    policy = RetryBackoffPolicy(base_seconds=1.0, max_seconds=30.0, jitter_factor=0.2)
    rng = random.Random(1234)

    for attempt in range(1, 12):
        raw = min(30.0, 2 ** (attempt - 1))
        for _ in range(25):
            delay = compute_backoff_delay(attempt, policy, rng)
            assert 0.0 <= delay <= 30.0 * 1.2
            assert raw * 0.8 <= delay <= raw * 1.2


async def test_compute_backoff_delay_rejects_attempt_zero() -> None:
    with pytest.raises(ValueError, match="attempt must be >= 1"):
        compute_backoff_delay(0, _NO_JITTER)


async def test_interruptible_sleep_returns_immediately_when_stop_event_is_set() -> None:
    stop_event = asyncio.Event()
    stop_event.set()
    sleep = build_interruptible_sleep(stop_event)

    await asyncio.wait_for(sleep(30.0), timeout=0.1)


async def test_interruptible_sleep_waits_for_delay_when_not_interrupted() -> None:
    stop_event = asyncio.Event()
    sleep = build_interruptible_sleep(stop_event)

    await asyncio.wait_for(sleep(0.01), timeout=0.2)


async def test_build_retrying_without_before_sleep(recording_sleep: RecordingSleep) -> None:
    retrying = build_backoff_retrying(
        policy=_NO_JITTER, max_retries=1, sleep=recording_sleep
    )

    assert isinstance(retrying, AsyncRetrying)


async def test_build_retrying_retries_only_retryable_failures(
    recording_sleep: RecordingSleep,
) -> None:
    before_sleep_calls: list[int] = []

    def _before_sleep(state: RetryCallState) -> None:
        before_sleep_calls.append(state.attempt_number)

    retrying = build_backoff_retrying(
        policy=_NO_JITTER,
        max_retries=2,
        sleep=recording_sleep,
        before_sleep=_before_sleep,
    )

    attempts = 0
    with pytest.raises(NetworkError):
        async for attempt in retrying:
            with attempt:
                attempts += 1
                raise NetworkError("down")

    assert attempts == 3
    assert before_sleep_calls == [1, 2]
    assert recording_sleep.delays == [1.0, 2.0]

    attempts = 0
    with pytest.raises(HTTPError):
        async for attempt in build_backoff_retrying(
            policy=_NO_JITTER, max_retries=2, sleep=recording_sleep
        ):
            with attempt:
                attempts += 1
                raise HTTPError(400)
    assert attempts == 1


async def test_execute_retries_transient_failures_then_succeeds(
    recording_sleep: RecordingSleep,
) -> None:
    logger = FakeLogger()
    engine = _engine(sleep=recording_sleep, logger=logger)
    call, calls = _scripted(NetworkError("reset"), HTTPError(502), {"saved": True})
    seen_attempts: list[int] = []
    seen_retries: list[tuple[int, float]] = []

    result = await engine.execute(
        _Request(),
        call,
        on_attempt=seen_attempts.append,
        on_retry=lambda attempt, error, delay: seen_retries.append((attempt, delay)),
    )

    assert result == {"saved": True}
    assert len(calls) == 3
    assert seen_attempts == [1, 2, 3]
    assert seen_retries == [(1, 1.0), (2, 2.0)]
    assert recording_sleep.delays == [1.0, 2.0]
    assert [event for _, event, _ in logger.calls].count("request_retry_scheduled") == 2


async def test_execute_exhausts_retry_budget(recording_sleep: RecordingSleep) -> None:
    engine = _engine(sleep=recording_sleep)
    call, calls = _scripted(*(NetworkError("down") for _ in range(10)))

    with pytest.raises(RequestFailedError) as excinfo:
        await engine.execute(_Request(max_retries=2), call)

    assert excinfo.value.kind == ErrorKind.TRANSIENT
    assert excinfo.value.attempts == 3
    assert isinstance(excinfo.value.cause, NetworkError)
    assert len(calls) == 3


async def test_execute_never_retries_fatal(recording_sleep: RecordingSleep) -> None:
    engine = _engine(sleep=recording_sleep)
    call, calls = _scripted(HTTPError(400, code="invalid_option", message="Bad value"))

    with pytest.raises(RequestFailedError) as excinfo:
        await engine.execute(_Request(), call)

    assert excinfo.value.kind == ErrorKind.FATAL
    assert excinfo.value.status == 400
    assert excinfo.value.user_message == "Bad value"
    assert len(calls) == 1
    assert recording_sleep.delays == []


async def test_rate_limited_uses_server_retry_after_hint(
    recording_sleep: RecordingSleep,
) -> None:
    engine = _engine(sleep=recording_sleep)
    call, _ = _scripted(HTTPError(429, retry_after=7.5), HTTPError(429), "ok")

    assert await engine.execute(_Request(), call) == "ok"
    assert recording_sleep.delays == [7.5, 2.0]


async def test_auth_expired_refreshes_once_without_consuming_retry(
    recording_sleep: RecordingSleep,
) -> None:
    logger = FakeLogger()
    refresher = FakeTokenRefresher("new-nonce")
    credentials = Credentials(token="old-nonce")
    engine = _engine(
        sleep=recording_sleep,
        logger=logger,
        refresher=refresher,
        credentials=credentials,
    )
    call, calls = _scripted(HTTPError(403, code="invalid_nonce"), {"ok": 1})

    result = await engine.execute(_Request(max_retries=0), call)

    assert result == {"ok": 1}
    assert refresher.calls == 1
    assert credentials.token == "new-nonce"
    assert len(calls) == 2
    assert recording_sleep.delays == []
    assert "token_refreshed" in logger.events


async def test_second_auth_expired_escalates_to_fatal(
    recording_sleep: RecordingSleep,
) -> None:
    refresher = FakeTokenRefresher("new-nonce")
    engine = _engine(sleep=recording_sleep, refresher=refresher)
    call, calls = _scripted(HTTPError(401), HTTPError(401), "never")

    with pytest.raises(RequestFailedError) as excinfo:
        await engine.execute(_Request(), call)

    assert excinfo.value.kind == ErrorKind.FATAL
    assert isinstance(excinfo.value.cause, HTTPError)
    assert excinfo.value.cause.status == 401
    assert refresher.calls == 1
    assert len(calls) == 2
    assert recording_sleep.delays == []


async def test_auth_failure_after_a_refresh_and_transient_retry_is_fatal(
    recording_sleep: RecordingSleep,
) -> None:
    refresher = FakeTokenRefresher("new-nonce")
    engine = _engine(sleep=recording_sleep, refresher=refresher)
    call, calls = _scripted(HTTPError(403), HTTPError(503), HTTPError(403), "never")

    with pytest.raises(RequestFailedError) as excinfo:
        await engine.execute(_Request(), call)

    assert excinfo.value.kind == ErrorKind.FATAL
    assert refresher.calls == 1
    assert len(calls) == 3
    assert len(recording_sleep.delays) == 1


async def test_token_refresh_failure_escalates_to_fatal(
    recording_sleep: RecordingSleep,
) -> None:
    logger = FakeLogger()
    refresher = FakeTokenRefresher(TokenRefreshError("refresh endpoint down"))
    engine = _engine(sleep=recording_sleep, logger=logger, refresher=refresher)
    call, calls = _scripted(HTTPError(403))

    with pytest.raises(RequestFailedError) as excinfo:
        await engine.execute(_Request(), call)

    assert excinfo.value.kind == ErrorKind.FATAL
    assert isinstance(excinfo.value.cause, TokenRefreshError)
    assert len(calls) == 1
    assert logger.named("token_refresh_failed")


async def test_missing_refresher_turns_auth_expired_into_fatal(
    recording_sleep: RecordingSleep,
) -> None:
    engine = _engine(sleep=recording_sleep)
    call, _ = _scripted(HTTPError(403))

    with pytest.raises(RequestFailedError) as excinfo:
        await engine.execute(_Request(), call)

    assert excinfo.value.kind == ErrorKind.FATAL


async def test_open_circuit_rejects_without_invoking_transport(
    recording_sleep: RecordingSleep,
) -> None:
    engine = _engine(
        sleep=recording_sleep,
        breaker_config=CircuitBreakerConfig(failure_threshold=3, recovery_timeout=60.0),
    )
    call, calls = _scripted(*(NetworkError("down") for _ in range(10)))

    with pytest.raises(CircuitOpenError):
        await engine.execute(_Request(max_retries=5), call)

    assert len(calls) == 3
    snapshot = engine.breaker_snapshots()["save_settings"]
    assert snapshot.state == CircuitState.OPEN

    with pytest.raises(CircuitOpenError) as excinfo:
        await engine.execute(_Request(id="req-2"), call)
    assert excinfo.value.retry_after > 0
    assert len(calls) == 3

    await engine.reset_breaker("save_settings")
    ok_call, _ = _scripted("ok")
    assert await engine.execute(_Request(id="req-3"), ok_call) == "ok"


async def test_fatal_failures_do_not_count_against_breaker(
    recording_sleep: RecordingSleep,
) -> None:
    engine = _engine(
        sleep=recording_sleep,
        breaker_config=CircuitBreakerConfig(failure_threshold=1),
    )

    for index in range(3):
        call, _ = _scripted(HTTPError(400))
        with pytest.raises(RequestFailedError):
            await engine.execute(_Request(id=f"req-{index}"), call)

    snapshot = engine.breaker_snapshots()["save_settings"]
    assert snapshot.state == CircuitState.CLOSED
    assert snapshot.failure_count == 0


async def test_abort_before_attempt_raises_cancelled(
    recording_sleep: RecordingSleep,
) -> None:
    engine = _engine(sleep=recording_sleep)
    abort = asyncio.Event()
    abort.set()
    call, calls = _scripted("ok")

    with pytest.raises(RequestCancelledError):
        await engine.execute(_Request(), call, abort=abort)

    assert calls == []


async def test_abort_during_backoff_stops_further_attempts() -> None:
    abort = asyncio.Event()
    engine = RetryEngine(policy=_NO_JITTER, logger=FakeLogger())
    calls = 0

    async def _call() -> str:
        nonlocal calls
        calls += 1
        abort.set()
        raise NetworkError("down")

    with pytest.raises(RequestCancelledError):
        await asyncio.wait_for(engine.execute(_Request(), _call, abort=abort), timeout=1.0)

    assert calls == 1


async def test_configure_swaps_policy_and_breaker_config(
    recording_sleep: RecordingSleep,
) -> None:
    engine = _engine(sleep=recording_sleep)
    breaker = engine.breaker_for("save_settings")
    new_policy = RetryBackoffPolicy(max_retries=1, base_seconds=0.5, max_seconds=1.0)

    engine.configure(
        policy=new_policy,
        breaker_config=CircuitBreakerConfig(failure_threshold=9),
    )

    assert engine.policy == new_policy
    assert breaker.config.failure_threshold == 9
    assert breaker.config.is_failure(HTTPError(400)) is False
    assert breaker.config.is_failure(HTTPError(503)) is True
