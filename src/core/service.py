"""Service facade tying the poller, fan-out, and scheduler together."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Mapping

from core.fanout import NotificationFanout, resolve_event_kind
from core.models import Event, EventKind, StatusSnapshot
from core.poller import EventPoller
from core.scheduler import DeadlineScheduler

LOGGER = logging.getLogger(__name__)

EventParser = Callable[[EventKind, Mapping[str, Any]], Event]


class NotificationService:
    """Entry points exposed to the app layer: run, simulate, and status."""

    def __init__(
        self,
        poller: EventPoller,
        scheduler: DeadlineScheduler,
        fanout: NotificationFanout,
        parse_event: EventParser,
    ) -> None:
        self.poller = poller
        self.scheduler = scheduler
        self._fanout = fanout
        self._parse_event = parse_event
        poller.status_reporter = self.status

    async def simulate(self, event_type: str, raw_payload: Mapping[str, Any]) -> Event:
        """Route a synthetic ledger record into the matching fan-out handler."""

        kind = resolve_event_kind(event_type)
        event = self._parse_event(kind, raw_payload)
        LOGGER.info("Simulating %s event %s", kind.value, event.id)
        await self._fanout.handle(event)
        return event

    def status(self) -> StatusSnapshot:
        return StatusSnapshot(
            cursor=self.poller.state.cursor,
            is_polling=self.poller.state.is_polling,
            dedup_key_count=len(self.scheduler.state.dedup),
        )

    async def run(self) -> None:
        """Run polling and deadline scheduling until cancelled."""

        await asyncio.gather(self.poller.run_forever(), self.scheduler.run_forever())
