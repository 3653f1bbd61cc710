from __future__ import annotations

import json
import logging
import sys
from collections.abc import Callable
from typing import Protocol, cast

import pytest
import structlog

from settings_dispatch.logging import (
    bound_request_context,
    configure_structlog,
    get_log_level_value,
    get_logger,
    log_error,
    log_exception,
    log_info,
    log_warning,
    redact_secrets,
)


def _configured_renderer() -> object:
    root_handler = logging.getLogger().handlers[0]
    formatter = root_handler.formatter
    assert isinstance(formatter, structlog.stdlib.ProcessorFormatter)
    return formatter.processors[-1]


def test_get_log_level_value_maps_known_levels() -> None:
    assert get_log_level_value("debug") == logging.DEBUG
    assert get_log_level_value("INFO") == logging.INFO
    assert get_log_level_value(" warning ") == logging.WARNING
    assert get_log_level_value("ERROR") == logging.ERROR
    assert get_log_level_value("critical") == logging.CRITICAL


def test_get_log_level_value_rejects_unknown_level() -> None:
    with pytest.raises(ValueError, match="log_level must be one of"):
        get_log_level_value("TRACE")


def test_configure_structlog_idempotent(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(sys.stderr, "isatty", lambda: False, raising=False)

    first_logger = configure_structlog(log_level="INFO")
    second_logger = configure_structlog(log_level="DEBUG")

    assert len(logging.getLogger().handlers) == 1
    assert logging.getLogger().level == logging.DEBUG
    assert first_logger is not None
    assert second_logger is not None


def test_configure_structlog_uses_console_renderer_for_tty(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setattr(sys.stderr, "isatty", lambda: True, raising=False)

    configure_structlog(log_level="INFO")
    renderer = _configured_renderer()

    assert isinstance(renderer, structlog.dev.ConsoleRenderer)


def test_configure_structlog_uses_json_renderer_for_non_tty(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setattr(sys.stderr, "isatty", lambda: False, raising=False)

    configure_structlog(log_level="INFO")
    renderer = _configured_renderer()

    assert isinstance(renderer, structlog.processors.JSONRenderer)


def test_get_logger_returns_structlog_proxy() -> None:
    logger = get_logger("settings_dispatch.queue")

    assert hasattr(logger, "info")
    assert hasattr(logger, "exception")


class _CaptureHandler(logging.Handler):
    def __init__(self) -> None:
        super().__init__()
        self.records: list[logging.LogRecord] = []

    def emit(self, record: logging.LogRecord) -> None:
        self.records.append(record)


class _FakeStructuredLogger:
    def __init__(self) -> None:
        self.calls: list[tuple[str, str, dict[str, object]]] = []

    def info(self, event: str, **kwargs: object) -> None:
        self.calls.append(("info", event, dict(kwargs)))

    def warning(self, event: str, **kwargs: object) -> None:
        self.calls.append(("warning", event, dict(kwargs)))

    def error(self, event: str, **kwargs: object) -> None:
        self.calls.append(("error", event, dict(kwargs)))

    def exception(self, event: str, **kwargs: object) -> None:
        self.calls.append(("exception", event, dict(kwargs)))


class _RecordWithStructuredFields(Protocol):
    action: str
    attempt: int


@pytest.mark.parametrize(
    ("log_fn", "level"),
    [
        (log_info, "info"),
        (log_warning, "warning"),
        (log_error, "error"),
        (log_exception, "exception"),
    ],
)
def test_structured_log_helpers_forward_keyword_fields(
    log_fn: Callable[..., None],
    level: str,
) -> None:
    logger = _FakeStructuredLogger()

    log_fn(logger, "request_retry_scheduled", action="save_settings", attempt=3)

    assert logger.calls == [
        (
            level,
            "request_retry_scheduled",
            {"action": "save_settings", "attempt": 3},
        )
    ]


def test_structured_log_helpers_support_stdlib_logger_extra() -> None:
    logger = logging.getLogger("tests.settings_dispatch.logging.helpers")
    logger.handlers.clear()
    logger.propagate = False
    logger.setLevel(logging.INFO)
    handler = _CaptureHandler()
    logger.addHandler(handler)

    log_info(logger, "request_enqueued", action="save_settings", attempt=1)

    assert len(handler.records) == 1
    record = handler.records[0]
    typed_record = cast(_RecordWithStructuredFields, record)
    assert record.getMessage() == "request_enqueued"
    assert typed_record.action == "save_settings"
    assert typed_record.attempt == 1


def test_redact_secrets_masks_nonce_and_token_values() -> None:
    event_dict = {
        "event": "token_refreshed",
        "nonce": "abc123",
        "token": "xyz",
        "security_token": None,
        "action": "save_settings",
    }

    redacted = redact_secrets(None, "info", event_dict)

    assert redacted == {
        "event": "token_refreshed",
        "nonce": "[redacted]",
        "token": "[redacted]",
        "security_token": None,
        "action": "save_settings",
    }


def test_bound_request_context_is_scoped() -> None:
    structlog.contextvars.clear_contextvars()

    with bound_request_context(request_id="req-1", action="save_settings"):
        assert structlog.contextvars.get_contextvars() == {
            "request_id": "req-1",
            "action": "save_settings",
        }

    assert structlog.contextvars.get_contextvars() == {}


def test_rendered_events_carry_request_context_without_secrets(
    monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    monkeypatch.setattr(sys.stderr, "isatty", lambda: False, raising=False)
    configure_structlog(log_level="INFO")
    logger = get_logger("settings_dispatch.tests")

    with bound_request_context(request_id="req-9", action="load_settings"):
        logger.info("token_refreshed", nonce="abc123")

    line = capsys.readouterr().err.strip().splitlines()[-1]
    payload = json.loads(line)
    assert payload["event"] == "token_refreshed"
    assert payload["request_id"] == "req-9"
    assert payload["action"] == "load_settings"
    assert payload["nonce"] == "[redacted]"
