"""Durable storage collaborators for the queue backlog.

The snapshot is a list of ``BacklogRecord`` in dispatch order. Only requests
that have not started executing are ever persisted.
"""

from __future__ import annotations

import os
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Protocol

from pydantic import BaseModel, ConfigDict, TypeAdapter, field_validator


class BacklogRecord(BaseModel):
    """Serializable form of one unexecuted request."""

    model_config = ConfigDict(frozen=True)

    action: str
    payload: dict[str, Any]
    priority: str
    dedupe_key: str
    created_at: datetime

    @field_validator("action", "dedupe_key")
    @classmethod
    def _validate_non_empty(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("must be non-empty")
        return value

    @field_validator("created_at")
    @classmethod
    def _assume_utc(cls, value: datetime) -> datetime:
        # Naive timestamps written by older snapshots are UTC.
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value


_RECORDS_ADAPTER = TypeAdapter(list[BacklogRecord])


def dump_records(records: list[BacklogRecord]) -> bytes:
    """Serialize a backlog snapshot to JSON bytes."""
    return _RECORDS_ADAPTER.dump_json(records)


def load_records(raw: bytes | str) -> list[BacklogRecord]:
    """Parse a backlog snapshot from JSON.

    Raises:
        pydantic.ValidationError: When the document is not a valid snapshot.
    """
    return _RECORDS_ADAPTER.validate_json(raw)


class BacklogStore(Protocol):
    """Durable storage for the queue backlog."""

    def save(self, records: list[BacklogRecord]) -> None:
        """Replace the stored snapshot with ``records``."""

    def load(self) -> list[BacklogRecord] | None:
        """Return the stored snapshot, or ``None`` when nothing is stored."""


class NullBacklogStore:
    """Backlog store used when persistence is disabled."""

    def save(self, records: list[BacklogRecord]) -> None:
        return

    def load(self) -> list[BacklogRecord] | None:
        return None


class InMemoryBacklogStore:
    """Process-local backlog store, mainly for embedding and tests."""

    def __init__(self, records: list[BacklogRecord] | None = None) -> None:
        self._records = None if records is None else list(records)
        self.save_count = 0

    def save(self, records: list[BacklogRecord]) -> None:
        self._records = list(records)
        self.save_count += 1

    def load(self) -> list[BacklogRecord] | None:
        return None if self._records is None else list(self._records)


class JsonFileBacklogStore:
    """Persist the backlog as a JSON document on local disk."""

    def __init__(self, path: Path | str) -> None:
        self._path = Path(path)

    @property
    def path(self) -> Path:
        return self._path

    def save(self, records: list[BacklogRecord]) -> None:
        """Write the snapshot atomically through a sibling temporary file."""
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.with_name(f"{self._path.name}.tmp")
        tmp_path.write_bytes(dump_records(records))
        os.replace(tmp_path, self._path)

    def load(self) -> list[BacklogRecord] | None:
        if not self._path.exists():
            return None
        return load_records(self._path.read_bytes())
