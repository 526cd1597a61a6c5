"""Checkpointed ledger polling loop.

The loop enforces a strict order per cycle:
1) Skip if another cycle is in flight (try-lock, no queueing)
2) On the first cycle, load or initialize the cursor and stop there
3) Query events newer than the cursor, retrying transient failures
4) Hand every event to the fan-out, one variant group at a time
5) Advance and persist the cursor only after the whole batch was handled

This design favors at-least-once delivery over exactly-once: a cycle that
fails partway leaves the cursor alone and the window is reprocessed.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional

from core.config import PollerConfig
from core.errors import EventSourceError
from core.fanout import NotificationFanout
from core.models import EventBatch
from core.ports import CheckpointPort, EventSourcePort

LOGGER = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]


@dataclass
class PollerState:
    """Mutable state owned by one EventPoller."""

    cursor: Optional[int] = None
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    polls: int = 0

    @property
    def is_polling(self) -> bool:
        return self.lock.locked()


class EventPoller:
    """Pull ledger events since the cursor and fan them out."""

    def __init__(
        self,
        source: EventSourcePort,
        fanout: NotificationFanout,
        checkpoint: CheckpointPort,
        config: PollerConfig,
        state: Optional[PollerState] = None,
        clock: Callable[[], float] = time.time,
        sleep: Sleep = asyncio.sleep,
        status_reporter: Optional[Callable[[], Any]] = None,
    ) -> None:
        self._source = source
        self._fanout = fanout
        self._checkpoint = checkpoint
        self._config = config
        self.state = state or PollerState()
        self._clock = clock
        self._sleep = sleep
        self.status_reporter = status_reporter
        self._tasks: set[asyncio.Task] = set()

    async def run_once(self) -> None:
        """Run one poll cycle; a no-op if a cycle is already running."""

        if self.state.lock.locked():
            LOGGER.debug("Poll already in flight; skipping tick")
            return

        async with self.state.lock:
            if self.state.cursor is None:
                self._initialize_cursor()
                return

            self.state.polls += 1
            if self._config.heartbeat_every and self.state.polls % self._config.heartbeat_every == 0:
                self._heartbeat()

            batch = await self._query_with_retry(self.state.cursor)
            if batch is None:
                return

            try:
                await self._fanout.handle_batch(batch)
            except Exception:
                LOGGER.exception("Event processing failed; cursor held at %s", self.state.cursor)
                return

            self._advance(batch.latest_timestamp)

    def _heartbeat(self) -> None:
        if self.status_reporter is None:
            LOGGER.info("Heartbeat: polling ledger (cursor=%s)", self.state.cursor)
            return
        LOGGER.info("Heartbeat: polling ledger (%s)", self.status_reporter())

    def _initialize_cursor(self) -> None:
        persisted = self._checkpoint.load_cursor()
        if persisted and persisted > 0:
            self.state.cursor = persisted
            LOGGER.info("Resuming from persisted cursor %s", persisted)
            return

        # Start from now; history before the first run is never replayed.
        self.state.cursor = int(self._clock())
        self._checkpoint.save_cursor(self.state.cursor)
        LOGGER.info("Starting fresh from current timestamp %s", self.state.cursor)

    async def _query_with_retry(self, cursor: int) -> Optional[EventBatch]:
        attempts = self._config.max_retries + 1
        for attempt in range(attempts):
            try:
                batch = await self._source.query_events_since(cursor)
            except EventSourceError as exc:
                if attempt + 1 >= attempts:
                    LOGGER.error("Ledger query failed after %s attempts: %s", attempts, exc)
                    return None
                delay = self._config.base_delay_seconds * (2**attempt)
                LOGGER.warning("Ledger query failed (%s); retrying in %.0fs", exc, delay)
                await self._sleep(delay)
                continue
            except Exception:
                LOGGER.exception("Ledger query failed unexpectedly; cursor held at %s", cursor)
                return None
            if len(batch):
                LOGGER.info("Found %s new events since %s", len(batch), cursor)
            return batch
        return None

    def _advance(self, latest_timestamp: int) -> None:
        current = self.state.cursor or 0
        if latest_timestamp <= current:
            return
        self.state.cursor = latest_timestamp
        self._checkpoint.save_cursor(latest_timestamp)
        LOGGER.debug("Cursor advanced to %s", latest_timestamp)

    async def run_forever(self) -> None:
        """Launch a cycle now and on every interval; overlapping ticks are dropped."""

        while True:
            task = asyncio.create_task(self.run_once())
            self._tasks.add(task)
            task.add_done_callback(self._collect)
            await asyncio.sleep(self._config.interval_seconds)

    def _collect(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            LOGGER.error("Poll cycle crashed", exc_info=task.exception())
