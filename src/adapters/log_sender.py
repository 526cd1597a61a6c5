"""Dry-run push adapter that writes notifications to the log."""

from __future__ import annotations

import logging
from typing import Optional

from adapters.notification_formatting import format_push
from core.models import NotificationPayload

LOGGER = logging.getLogger(__name__)


class LogSender:
    def __init__(self, frontend_base_url: Optional[str] = None) -> None:
        self._frontend_base_url = frontend_base_url

    async def send_push(self, address: str, payload: NotificationPayload) -> None:
        LOGGER.info(
            "Push to %s:\n%s",
            address,
            format_push(payload, mode="text", frontend_base_url=self._frontend_base_url),
        )
