"""Single-exchange transport to the settings backend.

A transport performs exactly one exchange per ``call``. It never retries and
never queues. Every failure is normalized into ``NetworkError``,
``RequestTimeoutError`` or ``HTTPError`` so retry classification stays a total
function over a closed set.
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import Mapping
from contextlib import suppress
from dataclasses import dataclass
from datetime import UTC, datetime
from email.utils import parsedate_to_datetime
from typing import Any, Protocol

import httpx

from settings_dispatch.errors import (
    HTTPError,
    NetworkError,
    RequestCancelledError,
    RequestTimeoutError,
    TokenRefreshError,
)

AUTH_ERROR_CODES = frozenset(
    {
        "invalid_nonce",
        "nonce_expired",
        "rest_cookie_invalid_nonce",
        "security_check_failed",
    }
)
RATE_LIMIT_ERROR_CODES = frozenset(
    {"rate_limited", "rate_limit_exceeded", "too_many_requests"}
)

# admin-ajax.php answers "-1" when the nonce check fails and "0" for an
# unknown action.
_NONCE_REJECTED_BODY = "-1"
_UNKNOWN_ACTION_BODY = "0"


@dataclass(slots=True)
class Credentials:
    """Opaque session/CSRF token shared by the transport and the retry engine."""

    token: str | None = None


class Transport(Protocol):
    """One logical exchange with the settings backend."""

    async def call(
        self,
        action: str,
        payload: Mapping[str, Any],
        *,
        timeout: float,
        abort: asyncio.Event | None = None,
    ) -> Any:
        """Send ``payload`` for ``action`` and return the response data.

        Raises:
            NetworkError: The exchange could not complete.
            HTTPError: The backend answered with a failure.
            RequestTimeoutError: ``timeout`` seconds elapsed first.
            RequestCancelledError: ``abort`` was set before completion.
        """


class TokenRefresher(Protocol):
    """Out-of-band security token refresh collaborator."""

    async def refresh(self) -> str:
        """Return a fresh token or raise."""


class NullTokenRefresher:
    """Token refresher used when no refresh capability is configured."""

    async def refresh(self) -> str:
        raise TokenRefreshError("token refresh is not configured")


def parse_retry_after(value: str | None, *, now: datetime | None = None) -> float | None:
    """Parse a ``Retry-After`` header value into seconds.

    Accepts delta-seconds or an HTTP date. Returns ``None`` when absent or
    unparseable.
    """
    if value is None:
        return None
    stripped = value.strip()
    if not stripped:
        return None
    with suppress(ValueError):
        return max(float(stripped), 0.0)
    try:
        when = parsedate_to_datetime(stripped)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=UTC)
    reference = datetime.now(UTC) if now is None else now
    return max((when - reference).total_seconds(), 0.0)


def encode_form(
    action: str, token: str | None, payload: Mapping[str, Any]
) -> dict[str, str]:
    """Build the form body for one admin-ajax style exchange.

    Non-scalar values are JSON encoded and ``None`` values are dropped.
    """
    form: dict[str, str] = {"action": action}
    if token is not None:
        form["nonce"] = token
    for key, value in payload.items():
        if value is None or key in ("action", "nonce"):
            continue
        if isinstance(value, bool):
            form[key] = "1" if value else "0"
        elif isinstance(value, (str, int, float)):
            form[key] = str(value)
        else:
            form[key] = json.dumps(value, separators=(",", ":"), sort_keys=True)
    return form


def _envelope_fields(body: Mapping[str, Any]) -> tuple[str | None, str | None, bool]:
    data = body.get("data")
    message = body.get("message")
    code = body.get("code")
    retry_suggested = bool(body.get("retry_suggested", False))
    if isinstance(data, Mapping):
        message = message or data.get("message")
        code = code or data.get("error_code") or data.get("code")
        retry_suggested = retry_suggested or bool(data.get("retry_suggested", False))
    elif isinstance(data, str):
        message = message or data
    return (
        None if message is None else str(message),
        None if code is None else str(code),
        retry_suggested,
    )


def failure_from_envelope(
    body: Mapping[str, Any], *, retry_after: float | None = None
) -> HTTPError:
    """Map a ``{success: false, ...}`` envelope onto an ``HTTPError``."""
    message, code, retry_suggested = _envelope_fields(body)
    normalized_code = (code or "").strip().lower()
    normalized_message = (message or "").lower()
    if normalized_code in AUTH_ERROR_CODES or "nonce" in normalized_message:
        status = 403
    elif normalized_code in RATE_LIMIT_ERROR_CODES:
        status = 429
    elif retry_suggested:
        status = 503
    else:
        status = 400
    return HTTPError(status, retry_after=retry_after, code=code, message=message)


def _decode_body(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return response.text


def interpret_response(response: httpx.Response) -> Any:
    """Return the data of a successful exchange or raise ``HTTPError``."""
    retry_after = parse_retry_after(response.headers.get("retry-after"))
    body = _decode_body(response)

    if not response.is_success:
        message: str | None = None
        code: str | None = None
        if isinstance(body, Mapping):
            message, code, _ = _envelope_fields(body)
        elif isinstance(body, str) and body.strip():
            message = body.strip()
        raise HTTPError(
            response.status_code,
            retry_after=retry_after,
            code=code,
            message=message,
        )

    stripped = response.text.strip()
    if stripped == _NONCE_REJECTED_BODY:
        raise HTTPError(403, code="invalid_nonce", message="Invalid nonce")
    if stripped == _UNKNOWN_ACTION_BODY:
        raise HTTPError(400, code="unknown_action", message="Unknown action")
    if isinstance(body, str):
        return body

    if isinstance(body, Mapping) and "success" in body:
        if body["success"] is True:
            return body.get("data")
        raise failure_from_envelope(body, retry_after=retry_after)
    return body


class HttpTransport:
    """Transport posting admin-ajax style form requests through httpx."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        *,
        endpoint_url: str,
        credentials: Credentials,
        action_prefix: str = "",
    ) -> None:
        """Create a transport bound to one backend endpoint.

        Args:
            client: Shared async HTTP client. The caller owns its lifecycle.
            endpoint_url: URL receiving every exchange.
            credentials: Token holder read on every call.
            action_prefix: Prefix added to action names on the wire.
        """
        self._client = client
        self._endpoint_url = endpoint_url
        self._credentials = credentials
        self._action_prefix = action_prefix

    async def _exchange(self, action: str, payload: Mapping[str, Any], timeout: float) -> Any:
        form = encode_form(
            f"{self._action_prefix}{action}", self._credentials.token, payload
        )
        try:
            response = await self._client.post(
                self._endpoint_url,
                data=form,
                headers={"X-Requested-With": "XMLHttpRequest"},
                timeout=timeout,
            )
        except httpx.TimeoutException as exc:
            raise RequestTimeoutError(timeout) from exc
        except httpx.RequestError as exc:
            raise NetworkError(str(exc) or exc.__class__.__name__) from exc
        return interpret_response(response)

    async def call(
        self,
        action: str,
        payload: Mapping[str, Any],
        *,
        timeout: float,
        abort: asyncio.Event | None = None,
    ) -> Any:
        exchange = asyncio.ensure_future(self._exchange(action, payload, timeout))
        waiters: set[asyncio.Future[Any]] = {exchange}
        abort_waiter: asyncio.Future[Any] | None = None
        if abort is not None:
            abort_waiter = asyncio.ensure_future(abort.wait())
            waiters.add(abort_waiter)
        try:
            done, _ = await asyncio.wait(
                waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
            )
        except asyncio.CancelledError:
            exchange.cancel()
            raise
        finally:
            if abort_waiter is not None:
                abort_waiter.cancel()

        if exchange in done:
            return exchange.result()

        exchange.cancel()
        with suppress(asyncio.CancelledError, Exception):
            await exchange
        if abort is not None and abort.is_set():
            raise RequestCancelledError(action)
        raise RequestTimeoutError(timeout)


class HttpTokenRefresher:
    """Fetch a fresh nonce from the backend's refresh action."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        *,
        endpoint_url: str,
        action: str = "refresh_nonce",
        action_prefix: str = "",
        timeout: float = 10.0,
    ) -> None:
        self._client = client
        self._endpoint_url = endpoint_url
        self._action = f"{action_prefix}{action}"
        self._timeout = timeout

    async def refresh(self) -> str:
        try:
            response = await self._client.post(
                self._endpoint_url,
                data={"action": self._action},
                headers={"X-Requested-With": "XMLHttpRequest"},
                timeout=self._timeout,
            )
            data = interpret_response(response)
        except (httpx.HTTPError, HTTPError) as exc:
            raise TokenRefreshError(f"token refresh failed: {exc}") from exc

        token = data.get("nonce") if isinstance(data, Mapping) else data
        if not isinstance(token, str) or not token.strip():
            raise TokenRefreshError("token refresh returned no nonce")
        return token.strip()
