from __future__ import annotations

import random

import pytest

from settings_dispatch.backlog import InMemoryBacklogStore
from settings_dispatch.orchestrator import RequestOrchestrator, create_orchestrator
from settings_dispatch.settings import DispatchSettings
from tests.settings_dispatch.support.runtime_fakes import (
    FakeLogger,
    FakeTokenRefresher,
    FakeTransport,
    RecordingSleep,
)


@pytest.fixture
def fake_logger() -> FakeLogger:
    """Provide a fresh structured logger test double per test."""
    return FakeLogger()


@pytest.fixture
def fake_transport() -> FakeTransport:
    """Provide a fresh scripted transport double per test."""
    return FakeTransport()


@pytest.fixture
def fake_refresher() -> FakeTokenRefresher:
    """Provide a token refresher that always hands out ``fresh-token``."""
    return FakeTokenRefresher()


@pytest.fixture
def recording_sleep() -> RecordingSleep:
    """Provide a sleep double that records backoff delays."""
    return RecordingSleep()


@pytest.fixture
def backlog_store() -> InMemoryBacklogStore:
    """Provide an empty in-memory backlog store."""
    return InMemoryBacklogStore()


@pytest.fixture
def orchestrator(
    fake_transport: FakeTransport,
    fake_refresher: FakeTokenRefresher,
    fake_logger: FakeLogger,
    recording_sleep: RecordingSleep,
    backlog_store: InMemoryBacklogStore,
) -> RequestOrchestrator:
    """Provide an orchestrator wired to in-process doubles."""
    return create_orchestrator(
        DispatchSettings(),
        transport=fake_transport,
        token_refresher=fake_refresher,
        backlog_store=backlog_store,
        logger=fake_logger,
        sleep=recording_sleep,
        rng=random.Random(7),
    )
