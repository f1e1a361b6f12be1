from __future__ import annotations

import threading
from collections.abc import Callable, Iterator
from datetime import datetime, timedelta

import pytest
from sqlalchemy.pool import StaticPool

from sms_codes.config import get_settings
from sms_codes.db import init_db, make_engine, make_session_factory
from sms_codes.scheduler import PollingScheduler
from sms_codes.sms import RawMessage
from sms_codes.storage import NewMessage, SmsStore

MONITORED = "+15550001111"


class FakeSource:
    """In-memory message source that records calls and replays scripted batches."""

    def __init__(self, batches: list[list[RawMessage]] | None = None) -> None:
        self.batches = list(batches or [])
        self.errors: list[Exception] = []
        self.connect_error: Exception | None = None
        self.calls: list[tuple[str, datetime, int]] = []
        # When set, list_messages blocks until the event is released.
        self.gate: threading.Event | None = None

    def test_connection(self) -> None:
        if self.connect_error is not None:
            raise self.connect_error

    def list_messages(self, destination: str, since: datetime, limit: int) -> list[RawMessage]:
        self.calls.append((destination, since, limit))
        if self.gate is not None:
            self.gate.wait(timeout=5)
        if self.errors:
            raise self.errors.pop(0)
        if self.batches:
            return self.batches.pop(0)
        return []


@pytest.fixture(autouse=True)
def _clear_settings_cache() -> Iterator[None]:
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def store() -> SmsStore:
    """Store backed by a private in-memory sqlite database."""
    engine = make_engine("sqlite://", poolclass=StaticPool)
    init_db(engine)
    return SmsStore(make_session_factory(engine))


@pytest.fixture
def fake_source() -> FakeSource:
    return FakeSource()


@pytest.fixture
def make_scheduler(
    store: SmsStore, fake_source: FakeSource
) -> Callable[..., PollingScheduler]:
    def _make(**kwargs: object) -> PollingScheduler:
        kwargs.setdefault("poll_interval", 3600.0)
        kwargs.setdefault("fetch_timeout", 2.0)
        return PollingScheduler(store, MONITORED, lambda: fake_source, **kwargs)  # type: ignore[arg-type]

    return _make


def new_message(sid: str, from_number: str = "+15559990000", body: str = "hello") -> NewMessage:
    return NewMessage(
        id=f"id-{sid}",
        phone_number=MONITORED,
        from_number=from_number,
        body_text=body,
        date_sent="2024-05-01T10:00:00+00:00",
        message_sid=sid,
    )


def raw(sid: str, body: str = "hello", from_number: str = "+15559990000") -> RawMessage:
    return RawMessage(
        provider_id=sid,
        from_number=from_number,
        body=body,
        sent_at=datetime(2024, 5, 1, 10, 0) + timedelta(minutes=len(sid)),
    )
