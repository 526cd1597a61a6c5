"""Delivery dispatcher.

Applies per-user preference filtering and hands each eligible recipient to
the push transport, one call per recipient. Per-recipient failures are
counted into a DeliveryResult and never raised.
"""

from __future__ import annotations

import logging
from typing import Iterable

from core.errors import PushDeliveryError
from core.models import DeliveryResult, NotificationPayload
from core.ports import PreferencePort, SenderPort

LOGGER = logging.getLogger(__name__)

INVALID_SUBSCRIPTION_STATUS = frozenset({404, 410})

NO_SUBSCRIPTION = "no subscription found"
PUSH_DISABLED = "push notifications disabled by user"
TYPE_DISABLED = "notification type disabled by user"


class DeliveryDispatcher:
    """Send one payload to many recipients and aggregate the outcome."""

    def __init__(self, preferences: PreferencePort, sender: SenderPort) -> None:
        self._preferences = preferences
        self._sender = sender

    async def send(self, recipients: Iterable[str], payload: NotificationPayload) -> DeliveryResult:
        result = DeliveryResult()
        for address in recipients:
            address = address.lower()
            preferences = self._preferences.get_preferences(address)
            if preferences is None:
                self._fail(result, address, NO_SUBSCRIPTION)
                continue
            if not preferences.push_enabled:
                self._fail(result, address, PUSH_DISABLED)
                continue
            if not preferences.allows(payload.type):
                self._fail(result, address, TYPE_DISABLED)
                continue

            try:
                await self._sender.send_push(address, payload)
            except PushDeliveryError as exc:
                LOGGER.warning("Push to %s failed (%s): %s", address, exc.status_code, exc)
                self._fail(result, address, str(exc))
                if exc.status_code in INVALID_SUBSCRIPTION_STATUS:
                    result.invalid.append(address)
                continue
            result.sent += 1

        if result.invalid:
            LOGGER.info("Subscriptions reported gone: %s", ", ".join(result.invalid))
        return result

    @staticmethod
    def _fail(result: DeliveryResult, address: str, reason: str) -> None:
        result.failed += 1
        result.errors.append(f"{address}: {reason}")
