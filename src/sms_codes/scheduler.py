from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any

from .db import utcnow
from .errors import ErrorKind, classify_error
from .pipeline import BatchResult, process_batch
from .sources import MessageSource
from .storage import SmsStore

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL_SECONDS = 30.0
DEFAULT_LOOKBACK = timedelta(minutes=5)
DEFAULT_FETCH_TIMEOUT_SECONDS = 10.0
DEFAULT_FETCH_LIMIT = 20


class SchedulerState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    POLLING = "polling"
    # polling stopped after an auth failure; needs an explicit connect()
    STOPPED = "stopped"


@dataclass(frozen=True)
class ServiceStatus:
    connected: bool
    phone_number: str
    polling: bool
    state: SchedulerState
    last_checked: datetime | None

    def to_dict(self) -> dict[str, Any]:
        return {
            "connected": self.connected,
            "phone_number": self.phone_number,
            "polling": self.polling,
            "state": self.state.value,
            "last_checked": self.last_checked.isoformat() if self.last_checked else None,
        }


class PollingScheduler:
    """
    Periodically fetches inbound SMS for one number and feeds the pipeline.

    One asyncio task does the polling. It waits poll_interval after a tick
    has finished before starting the next one, so ticks never overlap; a
    direct fetch_tick() call made while a tick is running is skipped.

    Fetch errors never kill the loop: rate limits and transient failures are
    logged and retried on the next tick; auth failures stop polling until
    connect() is called again.
    """

    def __init__(
        self,
        store: SmsStore,
        phone_number: str,
        source_factory: Callable[[], MessageSource],
        *,
        provider_name: str = "SMS provider",
        poll_interval: float = DEFAULT_POLL_INTERVAL_SECONDS,
        lookback: timedelta = DEFAULT_LOOKBACK,
        fetch_timeout: float = DEFAULT_FETCH_TIMEOUT_SECONDS,
        fetch_limit: int = DEFAULT_FETCH_LIMIT,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._phone_number = phone_number
        self._source_factory = source_factory
        self._provider_name = provider_name
        self._poll_interval = poll_interval
        self._lookback = lookback
        self._fetch_timeout = fetch_timeout
        self._fetch_limit = fetch_limit
        self._clock = clock

        self._state = SchedulerState.DISCONNECTED
        self._source: MessageSource | None = None
        self._task: asyncio.Task[None] | None = None
        self._tick_lock = asyncio.Lock()
        self._last_checked: datetime | None = None

    @property
    def state(self) -> SchedulerState:
        return self._state

    @property
    def phone_number(self) -> str:
        return self._phone_number

    # --- lifecycle ---

    async def connect(self) -> None:
        """
        Check the message source and start polling.

        On failure the scheduler stays disconnected and the error is raised
        to the caller; there is no automatic retry.
        """
        if self._state is SchedulerState.POLLING:
            logger.info("Already polling %s", self._phone_number)
            return

        self._state = SchedulerState.CONNECTING
        try:
            source = self._source_factory()
            await asyncio.wait_for(
                asyncio.to_thread(source.test_connection), timeout=self._fetch_timeout
            )
        except Exception as exc:
            self._state = SchedulerState.DISCONNECTED
            self._source = None
            logger.error("%s connection error: %s", self._provider_name, exc)
            raise

        self._source = source
        self._state = SchedulerState.POLLING
        logger.info("Connected to %s for %s", self._provider_name, self._phone_number)
        self._start_polling()

    def disconnect(self) -> None:
        """Stop polling and drop the source handle. Safe to call repeatedly."""
        self._stop_polling(SchedulerState.DISCONNECTED)
        self._source = None
        logger.info("SMS service disconnected")

    async def aclose(self) -> None:
        """Disconnect and wait for the polling task to wind down."""
        task = self._task
        self.disconnect()
        if task is not None and task is not asyncio.current_task():
            with contextlib.suppress(asyncio.CancelledError):
                await task

    def status(self) -> ServiceStatus:
        polling = (
            self._state is SchedulerState.POLLING
            and self._task is not None
            and not self._task.done()
        )
        return ServiceStatus(
            connected=self._state is SchedulerState.POLLING,
            phone_number=self._phone_number,
            polling=polling,
            state=self._state,
            last_checked=self._last_checked,
        )

    # --- polling ---

    def _start_polling(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
        logger.info("Starting SMS polling every %ss", self._poll_interval)
        self._task = asyncio.create_task(self._poll_loop(), name="sms-poller")

    def _stop_polling(self, new_state: SchedulerState) -> None:
        self._state = new_state
        task, self._task = self._task, None
        if task is None or task.done():
            return
        # When called from inside the loop, the state change ends it.
        if task is not asyncio.current_task():
            task.cancel()
        logger.info("SMS polling stopped")

    async def _poll_loop(self) -> None:
        while self._state is SchedulerState.POLLING:
            await self.fetch_tick()
            if self._state is not SchedulerState.POLLING:
                break
            await asyncio.sleep(self._poll_interval)

    async def fetch_tick(self) -> BatchResult | None:
        """
        Run one fetch: list recent messages, store them oldest first, extract codes.

        Returns the batch counts, or None when nothing was processed
        (not polling, a tick already running, or the fetch failed).
        """
        if self._state is not SchedulerState.POLLING or self._source is None:
            logger.warning("Cannot fetch messages: not connected")
            return None
        if self._tick_lock.locked():
            logger.warning("Previous fetch still running, skipping this tick")
            return None

        async with self._tick_lock:
            source = self._source
            since = self._clock() - self._lookback
            try:
                messages = await asyncio.wait_for(
                    asyncio.to_thread(
                        source.list_messages, self._phone_number, since, self._fetch_limit
                    ),
                    timeout=self._fetch_timeout,
                )
            except Exception as exc:
                self._handle_fetch_error(exc)
                return None

            # Providers list newest first; store oldest first so the latest
            # message is also the last one inserted.
            oldest_first = list(reversed(messages))
            result = await asyncio.to_thread(
                process_batch, self._store, self._phone_number, oldest_first
            )

            if oldest_first:
                self._last_checked = self._clock()
            if result.inserted or result.failed:
                logger.info(
                    "Fetched %s messages: %s new, %s duplicate, %s codes, %s failed",
                    len(oldest_first),
                    result.inserted,
                    result.duplicates,
                    result.codes,
                    result.failed,
                )
            return result

    def _handle_fetch_error(self, exc: Exception) -> None:
        if isinstance(exc, TimeoutError):
            logger.error("Fetching messages timed out after %ss", self._fetch_timeout)
            return

        kind = classify_error(exc)
        if kind is ErrorKind.RATE_LIMITED:
            logger.warning("Rate limited, continuing to poll: %s", exc)
        elif kind is ErrorKind.AUTH:
            logger.error("Authentication failed, stopping polling: %s", exc)
            self._stop_polling(SchedulerState.STOPPED)
            self._source = None
        else:
            logger.error("Error fetching messages: %s", exc)


class RetentionSweeper:
    """Deletes stored messages past the retention window, now and then periodically."""

    def __init__(self, store: SmsStore, retention_days: int, interval_seconds: float) -> None:
        self._store = store
        self._retention_days = retention_days
        self._interval_seconds = interval_seconds
        self._task: asyncio.Task[None] | None = None

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run(), name="sms-retention")

    async def sweep(self) -> int | None:
        try:
            return await asyncio.to_thread(self._store.prune_older_than, self._retention_days)
        except Exception:
            logger.exception("Cleanup error")
            return None

    async def _run(self) -> None:
        while True:
            await self.sweep()
            await asyncio.sleep(self._interval_seconds)

    async def aclose(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
